"""Quality gate runner.

Runs the enabled checks of an ``EffectivePlan`` concurrently against one
workspace, joins them, and classifies the outcome into a verdict.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Literal, Mapping

from . import exec as exec_util
from . import log as seamline_log
from .checks import DEFAULT_CHECKS, CheckContext, CheckFn, CheckResult, timed
from .policy import CheckPlanEntry, EffectivePlan
from .services.errors import ToolExecutionError

Verdict = Literal["pass", "pass-with-warnings", "fail", "critical-fail"]
Severity = Literal["warning", "failed", "critical"]

MAX_GATE_WORKERS = 5
JOIN_GRACE_SECONDS = 0.5
IDLE_POLL_SECONDS = 0.05

_log = seamline_log.scoped("gate")


@dataclass(frozen=True)
class Violation:
    check: str
    severity: Severity
    blocking: bool
    message: str


@dataclass(frozen=True)
class GateResult:
    """Aggregated check outcomes for one workspace."""

    workspace_path: Path
    mode: str
    verdict: Verdict
    checks: tuple[CheckResult, ...]
    violations: tuple[Violation, ...]
    duration_seconds: float = 0.0

    def check(self, name: str) -> CheckResult | None:
        return next((result for result in self.checks if result.name == name), None)

    @property
    def halted(self) -> bool:
        return self.verdict in {"fail", "critical-fail"}


class _AttemptClock:
    """Start time of the running attempt per check, ``None`` while idle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started: dict[str, float | None] = {}

    def begin(self, category: str) -> None:
        with self._lock:
            self._started[category] = time.monotonic()

    def end(self, category: str) -> None:
        with self._lock:
            self._started[category] = None

    def started(self, category: str) -> float | None:
        with self._lock:
            return self._started.get(category)


def classify(plan: EffectivePlan, results: list[CheckResult]) -> tuple[Verdict, list[Violation]]:
    """Derive violations and the verdict from check results.

    Non-blocking failures are downgraded to warning violations.
    """
    violations: list[Violation] = []
    for result in results:
        entry = plan.entry(result.name)
        if result.status == "failed" and result.critical:
            violations.append(Violation(result.name, "critical", True, result.message))
        elif result.status == "failed" and entry.blocking:
            violations.append(Violation(result.name, "failed", True, result.message))
        elif result.status in {"failed", "warning"}:
            violations.append(Violation(result.name, "warning", False, result.message))
    severities = {violation.severity for violation in violations}
    if "critical" in severities:
        return "critical-fail", violations
    if "failed" in severities:
        return "fail", violations
    if "warning" in severities:
        return "pass-with-warnings", violations
    return "pass", violations


class QualityGateRunner:
    """Execute an effective check plan against a workspace."""

    def __init__(
        self,
        *,
        runner: exec_util.CommandRunner | None = None,
        git_path: str | None = None,
        max_workers: int = MAX_GATE_WORKERS,
        retry_backoff_seconds: float = 0.5,
        checks: Mapping[str, CheckFn] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner
        self.git_path = git_path
        self.max_workers = max(1, min(max_workers, MAX_GATE_WORKERS))
        self.retry_backoff_seconds = retry_backoff_seconds
        self.checks = {**DEFAULT_CHECKS, **(checks or {})}
        self._sleep = sleep

    def _run_check(
        self,
        workspace: Path,
        entry: CheckPlanEntry,
        context: CheckContext,
        clock: _AttemptClock,
    ) -> CheckResult:
        fn = self.checks[entry.category]
        attempts = entry.retries + 1
        for attempt in range(1, attempts + 1):
            clock.begin(entry.category)
            try:
                result = timed(fn, workspace, entry, context)
                return replace(result, attempts=attempt)
            except ToolExecutionError as exc:
                clock.end(entry.category)
                if exc.transient and attempt < attempts:
                    delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                    _log.debug(f"{entry.category} attempt {attempt} failed ({exc}); retry in {delay:g}s")
                    self._sleep(delay)
                    continue
                return CheckResult(
                    name=entry.category,
                    status="failed",
                    message=str(exc),
                    attempts=attempt,
                )
            except Exception as exc:  # check bugs must not abort the gate
                _log.warning(f"{entry.category} check crashed: {exc}")
                return CheckResult(
                    name=entry.category,
                    status="failed",
                    message=f"check error: {exc}",
                    attempts=attempt,
                )
        raise AssertionError("unreachable")

    def _allowance(self, entry: CheckPlanEntry) -> float:
        """Worst-case wall time for a check including retries and backoff."""
        backoff = sum(self.retry_backoff_seconds * (2**index) for index in range(entry.retries))
        return (entry.timeout_seconds + JOIN_GRACE_SECONDS) * (entry.retries + 1) + backoff

    def _await(
        self,
        future: Future[CheckResult],
        entry: CheckPlanEntry,
        clock: _AttemptClock,
        gate_deadline: float,
    ) -> CheckResult:
        """Join a check, failing it once an attempt outlives its timeout.

        Time spent queued for a worker or sleeping between retries does not
        count against the attempt timeout; ``gate_deadline`` bounds both.
        """
        limit = entry.timeout_seconds + JOIN_GRACE_SECONDS
        while True:
            if future.done():
                return future.result()
            now = time.monotonic()
            started = clock.started(entry.category)
            if (started is not None and now - started >= limit) or now >= gate_deadline:
                future.cancel()
                _log.warning(f"{entry.category} timed out after {entry.timeout_seconds:g}s")
                return CheckResult(
                    name=entry.category,
                    status="failed",
                    message=f"timed out after {entry.timeout_seconds:g}s",
                    duration_seconds=round(now - started, 3) if started is not None else 0.0,
                )
            wait = started + limit - now if started is not None else IDLE_POLL_SECONDS
            try:
                return future.result(timeout=max(min(wait, gate_deadline - now), 0.01))
            except FuturesTimeoutError:
                continue

    def run(self, workspace: Path, plan: EffectivePlan) -> GateResult:
        """Run every enabled check and return the classified result."""
        started = time.monotonic()
        context = CheckContext(mode=plan.mode, runner=self.runner, git_path=self.git_path)
        results: dict[str, CheckResult] = {}
        enabled = [entry for entry in plan.entries if entry.enabled]
        for entry in plan.entries:
            if not entry.enabled:
                results[entry.category] = CheckResult(
                    name=entry.category, status="skipped", message="disabled by policy"
                )
        _log.debug(
            f"{plan.mode} plan for {workspace}: {', '.join(e.category for e in enabled) or 'no checks'}"
        )
        clock = _AttemptClock()
        gate_deadline = started + sum(self._allowance(entry) for entry in enabled)
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="seamline-gate")
        try:
            futures: dict[str, Future[CheckResult]] = {
                entry.category: pool.submit(self._run_check, workspace, entry, context, clock)
                for entry in enabled
                if entry.category != "test"
            }
            test_entry = next((entry for entry in enabled if entry.category == "test"), None)
            if test_entry is not None:
                build_future = futures.pop("build", None)
                if build_future is not None:
                    results["build"] = self._await(
                        build_future, plan.entry("build"), clock, gate_deadline
                    )
                if results.get("build") is not None and results["build"].status == "failed":
                    results["test"] = CheckResult(
                        name="test", status="skipped", message="skipped because build failed"
                    )
                else:
                    futures["test"] = pool.submit(
                        self._run_check, workspace, test_entry, context, clock
                    )
            for category, future in futures.items():
                results[category] = self._await(
                    future, plan.entry(category), clock, gate_deadline
                )
        finally:
            # hung checks keep their worker thread; the gate does not wait for them
            pool.shutdown(wait=False, cancel_futures=True)

        ordered = [results[entry.category] for entry in plan.entries]
        verdict, violations = classify(plan, ordered)
        gate = GateResult(
            workspace_path=workspace,
            mode=plan.mode,
            verdict=verdict,
            checks=tuple(ordered),
            violations=tuple(violations),
            duration_seconds=round(time.monotonic() - started, 3),
        )
        if verdict == "pass":
            _log.success(f"{workspace.name}: all checks passed")
        elif verdict == "pass-with-warnings":
            _log.warning(f"{workspace.name}: passed with {len(violations)} warning(s)")
        else:
            _log.error(f"{workspace.name}: {verdict} ({len(violations)} violation(s))")
        return gate


_STATUS_ICONS = {
    "passed": "✅",
    "warning": "⚠️",
    "failed": "❌",
    "skipped": "⏭️",
}

_VERDICT_LABELS = {
    "pass": "✅ PASSED",
    "pass-with-warnings": "⚠️ PASSED WITH WARNINGS",
    "fail": "❌ FAILED",
    "critical-fail": "🛑 CRITICAL FAILURE",
}


def render_gate_report(result: GateResult) -> str:
    """Render a gate result as a markdown section."""
    lines = [
        "## Safety Check Results",
        "",
        f"**Mode:** {result.mode}",
        f"**Overall:** {_VERDICT_LABELS[result.verdict]}",
        "",
    ]
    for check in result.checks:
        icon = _STATUS_ICONS.get(check.status, "•")
        lines.append(f"- {icon} **{check.name}**: {check.message}")
    if result.violations:
        lines.extend(["", "### Violations", ""])
        for violation in result.violations:
            suffix = " (blocking)" if violation.blocking else ""
            lines.append(f"- `{violation.severity}` {violation.check}: {violation.message}{suffix}")
    return "\n".join(lines) + "\n"
