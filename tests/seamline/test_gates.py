from __future__ import annotations

import threading
import time
from pathlib import Path

from seamline import gates, policy
from seamline.checks import CheckContext, CheckResult
from seamline.models import CheckSettings
from seamline.policy import CheckPlanEntry
from seamline.services.errors import ToolExecutionError


def _passing(name: str):
    def check(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
        return CheckResult(name=name, status="passed", message="ok")

    return check


def _result(name: str, status: str, *, critical: bool = False):
    def check(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
        return CheckResult(name=name, status=status, message=f"{name} {status}", critical=critical)

    return check


def _all_passing() -> dict:
    return {
        name: _passing(name)
        for name in ("git-status", "build", "lint", "test", "conflict-detection")
    }


def test_all_passing_checks_yield_pass(tmp_path: Path) -> None:
    runner = gates.QualityGateRunner(checks=_all_passing())

    result = runner.run(tmp_path, policy.resolve_plan("strict"))

    assert result.verdict == "pass"
    assert result.violations == ()
    assert [check.status for check in result.checks] == ["passed"] * 5


def test_disabled_checks_are_reported_skipped(tmp_path: Path) -> None:
    runner = gates.QualityGateRunner(checks=_all_passing())

    result = runner.run(tmp_path, policy.resolve_plan("permissive"))

    assert result.check("git-status").status == "passed"
    assert result.check("build").status == "skipped"
    assert result.check("build").message == "disabled by policy"


def test_non_blocking_lint_failure_is_a_warning(tmp_path: Path) -> None:
    checks = {**_all_passing(), "lint": _result("lint", "failed")}
    runner = gates.QualityGateRunner(checks=checks)

    result = runner.run(tmp_path, policy.resolve_plan("standard"))

    assert result.verdict == "pass-with-warnings"
    assert result.violations == (
        gates.Violation(check="lint", severity="warning", blocking=False, message="lint failed"),
    )


def test_blocking_lint_failure_fails_gate(tmp_path: Path) -> None:
    checks = {**_all_passing(), "lint": _result("lint", "failed")}
    runner = gates.QualityGateRunner(checks=checks)

    result = runner.run(tmp_path, policy.resolve_plan("standard", fail_on_error=True))

    assert result.verdict == "fail"
    assert result.halted


def test_strict_warnings_do_not_fail_the_gate(tmp_path: Path) -> None:
    checks = {**_all_passing(), "git-status": _result("git-status", "warning")}
    runner = gates.QualityGateRunner(checks=checks)

    result = runner.run(tmp_path, policy.resolve_plan("strict"))

    assert result.verdict == "pass-with-warnings"


def test_critical_violation_wins_in_every_mode(tmp_path: Path) -> None:
    checks = {**_all_passing(), "git-status": _result("git-status", "failed", critical=True)}
    runner = gates.QualityGateRunner(checks=checks)

    for mode in ("permissive", "standard", "strict"):
        result = runner.run(tmp_path, policy.resolve_plan(mode))
        assert result.verdict == "critical-fail"
        assert result.violations[0].severity == "critical"


def test_test_check_is_skipped_when_build_fails(tmp_path: Path) -> None:
    calls: list[str] = []

    def test_check(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
        calls.append("test")
        return CheckResult(name="test", status="passed", message="ok")

    checks = {**_all_passing(), "build": _result("build", "failed"), "test": test_check}
    runner = gates.QualityGateRunner(checks=checks)

    result = runner.run(tmp_path, policy.resolve_plan("strict"))

    assert calls == []
    assert result.check("test").status == "skipped"
    assert result.verdict == "fail"


def test_transient_failures_retry_with_backoff(tmp_path: Path) -> None:
    attempts: list[int] = []
    sleeps: list[float] = []

    def flaky(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
        attempts.append(1)
        if len(attempts) < 3:
            raise ToolExecutionError("timed out", transient=True)
        return CheckResult(name="lint", status="passed", message="ok")

    runner = gates.QualityGateRunner(
        checks={**_all_passing(), "lint": flaky},
        retry_backoff_seconds=0.5,
        sleep=sleeps.append,
    )

    result = runner.run(tmp_path, policy.resolve_plan("standard"))

    assert result.check("lint").status == "passed"
    assert result.check("lint").attempts == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_record_failure(tmp_path: Path) -> None:
    def always_times_out(
        workspace: Path, entry: CheckPlanEntry, context: CheckContext
    ) -> CheckResult:
        raise ToolExecutionError("lint timed out", transient=True)

    runner = gates.QualityGateRunner(
        checks={**_all_passing(), "lint": always_times_out}, sleep=lambda _: None
    )
    plan = policy.resolve_plan("standard", {"lint": CheckSettings(retries=1)})

    result = runner.run(tmp_path, plan)

    lint = result.check("lint")
    assert lint.status == "failed"
    assert lint.attempts == 2
    assert lint.message == "lint timed out"


def test_unexpected_check_error_becomes_failed_result(tmp_path: Path) -> None:
    def broken(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
        raise RuntimeError("kaboom")

    runner = gates.QualityGateRunner(checks={**_all_passing(), "build": broken})

    result = runner.run(tmp_path, policy.resolve_plan("strict"))

    assert result.check("build").status == "failed"
    assert "kaboom" in result.check("build").message
    assert result.verdict == "fail"


def test_checks_run_concurrently_within_worker_limit(tmp_path: Path) -> None:
    active = 0
    peak = 0
    lock = threading.Lock()

    def slow(name: str):
        def check(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
            return CheckResult(name=name, status="passed", message="ok")

        return check

    checks = {
        **_all_passing(),
        **{name: slow(name) for name in ("git-status", "build", "lint", "conflict-detection")},
    }
    runner = gates.QualityGateRunner(checks=checks, max_workers=2)

    result = runner.run(tmp_path, policy.resolve_plan("strict"))

    assert result.verdict == "pass"
    assert 1 < peak <= 2


def _hanging(name: str, release: threading.Event):
    def check(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
        release.wait(10)
        return CheckResult(name=name, status="passed", message="ok")

    return check


def test_hung_check_fails_at_its_timeout(tmp_path: Path) -> None:
    release = threading.Event()
    checks = {**_all_passing(), "lint": _hanging("lint", release)}
    runner = gates.QualityGateRunner(checks=checks)
    plan = policy.resolve_plan("standard", {"lint": CheckSettings(timeout_seconds=0.2, retries=0)})

    started = time.monotonic()
    try:
        result = runner.run(tmp_path, plan)
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 3
    assert result.check("lint").status == "failed"
    assert result.check("lint").message == "timed out after 0.2s"
    assert result.check("git-status").status == "passed"
    assert result.verdict == "pass-with-warnings"


def test_hung_build_counts_as_failed_and_skips_tests(tmp_path: Path) -> None:
    release = threading.Event()
    checks = {**_all_passing(), "build": _hanging("build", release)}
    runner = gates.QualityGateRunner(checks=checks)
    plan = policy.resolve_plan("strict", {"build": CheckSettings(timeout_seconds=0.2, retries=0)})

    try:
        result = runner.run(tmp_path, plan)
    finally:
        release.set()

    assert result.check("build").message == "timed out after 0.2s"
    assert result.check("test").status == "skipped"
    assert result.verdict == "fail"


def test_worker_limit_is_capped_at_five() -> None:
    assert gates.QualityGateRunner(max_workers=32).max_workers == 5


def test_render_gate_report_lists_checks_and_violations(tmp_path: Path) -> None:
    checks = {**_all_passing(), "lint": _result("lint", "failed")}
    result = gates.QualityGateRunner(checks=checks).run(tmp_path, policy.resolve_plan("standard"))

    report = gates.render_gate_report(result)

    assert report.startswith("## Safety Check Results")
    assert "**Mode:** standard" in report
    assert "PASSED WITH WARNINGS" in report
    assert "**lint**: lint failed" in report
    assert "`warning` lint: lint failed" in report
