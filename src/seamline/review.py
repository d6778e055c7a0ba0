"""Hosted review service port, request state machine, and GitHub adapter."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import exec as exec_util
from . import log as seamline_log
from .services.errors import ExternalCommandFailedError

RequestState = Literal[
    "open",
    "checks-pending",
    "checks-passed",
    "checks-failed",
    "ready-to-merge",
    "merged",
    "closed",
]
TERMINAL_STATES = frozenset({"merged", "closed"})

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "open": frozenset({"checks-pending", "checks-passed", "checks-failed", "ready-to-merge"}),
    "checks-pending": frozenset({"checks-passed", "checks-failed", "ready-to-merge"}),
    "checks-passed": frozenset({"checks-pending", "checks-failed", "ready-to-merge"}),
    "checks-failed": frozenset({"checks-pending", "checks-passed", "ready-to-merge"}),
    "ready-to-merge": frozenset({"checks-pending", "checks-failed", "checks-passed"}),
    "merged": frozenset(),
    "closed": frozenset(),
}

CheckRunStatus = Literal["pending", "success", "failure", "neutral"]

_GH_TIMEOUT_SECONDS = 30.0
_GH_RETRY_ATTEMPTS = 3
_GH_RETRY_BACKOFF_SECONDS = 0.5
_GH_RETRY_ERROR_MARKERS = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
    "connection refused",
    "network",
    "rate limit",
    "502",
    "503",
    "504",
)
_PR_URL_PATTERN = re.compile(r"/pull/(\d+)")
_SUCCESS_CONCLUSIONS = {"SUCCESS", "NEUTRAL", "SKIPPED"}
_FAILURE_CONCLUSIONS = {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"}

_log = seamline_log.scoped("review")


def is_transition_allowed(previous: str, current: str) -> bool:
    """Return whether ``previous -> current`` is a legal request transition.

    Terminal states are reachable from any non-terminal state since they are
    observed by polling.

    Example:
        >>> is_transition_allowed("checks-failed", "checks-pending")
        True
        >>> is_transition_allowed("merged", "open")
        False
    """
    if previous == current:
        return True
    if previous in TERMINAL_STATES:
        return False
    if current in TERMINAL_STATES:
        return True
    return current in ALLOWED_TRANSITIONS.get(previous, frozenset())


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: CheckRunStatus


@dataclass(frozen=True)
class ReviewStatus:
    """Snapshot of a hosted review request."""

    state: Literal["open", "merged", "closed"]
    draft: bool = False
    mergeable: bool | None = None
    review_decision: str | None = None
    checks: tuple[CheckRun, ...] = ()
    url: str | None = None

    def failing_checks(self) -> list[str]:
        return [check.name for check in self.checks if check.status == "failure"]


@dataclass(frozen=True)
class CreatedRequest:
    id: str
    url: str | None = None


class ReviewService(Protocol):
    """Hosted review operations used by the executor and monitor."""

    def create_request(
        self, *, title: str, body: str, head: str, base: str, draft: bool = False
    ) -> CreatedRequest: ...

    def get_status(self, request_id: str) -> ReviewStatus: ...

    def merge(self, request_id: str, *, method: str = "squash") -> None: ...

    def close(self, request_id: str) -> None: ...


def _relevant_checks(
    checks: tuple[CheckRun, ...], required: list[str] | tuple[str, ...]
) -> tuple[list[CheckRun], list[str]]:
    if not required:
        return list(checks), []
    by_name = {check.name: check for check in checks}
    relevant = [by_name[name] for name in required if name in by_name]
    missing = [name for name in required if name not in by_name]
    return relevant, missing


def derive_request_state(
    status: ReviewStatus,
    *,
    required_checks: list[str] | tuple[str, ...] = (),
    require_approval: bool = False,
) -> RequestState:
    """Map a hosted status snapshot onto the request state machine.

    Evaluation order: merged, closed, failing checks, pending checks, then
    readiness (not draft, approvals satisfied, not conflicting).

    Example:
        >>> derive_request_state(ReviewStatus(state="open", checks=(CheckRun("ci", "pending"),)))
        'checks-pending'
        >>> derive_request_state(ReviewStatus(state="open", mergeable=True, checks=(CheckRun("ci", "success"),)))
        'ready-to-merge'
    """
    if status.state == "merged":
        return "merged"
    if status.state == "closed":
        return "closed"
    relevant, missing = _relevant_checks(status.checks, required_checks)
    if any(check.status == "failure" for check in relevant):
        return "checks-failed"
    if missing or any(check.status == "pending" for check in relevant):
        return "checks-pending"
    decision = (status.review_decision or "").upper()
    approved = decision == "APPROVED" or (not require_approval and decision != "CHANGES_REQUESTED")
    if not status.draft and approved and status.mergeable is not False:
        return "ready-to-merge"
    if relevant:
        return "checks-passed"
    return "open"


def _clean_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


class GithubCheckBoundary(BaseModel):
    """One ``statusCheckRollup`` entry (CheckRun or StatusContext)."""

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    context: str | None = None
    status: str | None = None
    conclusion: str | None = None
    state: str | None = None

    def to_check_run(self) -> CheckRun | None:
        name = _clean_str(self.name) or _clean_str(self.context)
        if name is None:
            return None
        conclusion = (self.conclusion or "").upper()
        state = (self.state or "").upper()
        run_status = (self.status or "").upper()
        if conclusion in _SUCCESS_CONCLUSIONS or state == "SUCCESS":
            return CheckRun(name, "success")
        if conclusion in _FAILURE_CONCLUSIONS or state in {"FAILURE", "ERROR"}:
            return CheckRun(name, "failure")
        if run_status == "COMPLETED" and conclusion:
            return CheckRun(name, "neutral")
        return CheckRun(name, "pending")


class GithubPullRequestBoundary(BaseModel):
    """Validated ``gh pr view --json`` payload."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    number: int | None = None
    url: str | None = None
    state: str = "OPEN"
    is_draft: bool = Field(default=False, alias="isDraft")
    mergeable: str | None = None
    review_decision: str | None = Field(default=None, alias="reviewDecision")
    merged_at: str | None = Field(default=None, alias="mergedAt")
    closed_at: str | None = Field(default=None, alias="closedAt")
    status_check_rollup: list[GithubCheckBoundary] = Field(
        default_factory=list, alias="statusCheckRollup"
    )

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_state(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper() or "OPEN"
        return "OPEN" if value is None else value

    @field_validator("status_check_rollup", mode="before")
    @classmethod
    def _normalize_rollup(cls, value: object) -> object:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict)]

    def to_status(self) -> ReviewStatus:
        if self.merged_at or self.state == "MERGED":
            state: Literal["open", "merged", "closed"] = "merged"
        elif self.closed_at or self.state == "CLOSED":
            state = "closed"
        else:
            state = "open"
        mergeable_raw = (self.mergeable or "").upper()
        mergeable = {"MERGEABLE": True, "CONFLICTING": False}.get(mergeable_raw)
        checks = tuple(
            run for run in (entry.to_check_run() for entry in self.status_check_rollup) if run
        )
        return ReviewStatus(
            state=state,
            draft=self.is_draft,
            mergeable=mergeable,
            review_decision=_clean_str(self.review_decision),
            checks=checks,
            url=self.url,
        )


def _is_retryable_message(message: str) -> bool:
    normalized = message.strip().lower()
    if not normalized:
        return False
    return any(marker in normalized for marker in _GH_RETRY_ERROR_MARKERS)


def parse_request_id(output: str) -> CreatedRequest:
    """Extract the pull request number and url from ``gh pr create`` output.

    Example:
        >>> parse_request_id("https://github.com/org/repo/pull/42\\n")
        CreatedRequest(id='42', url='https://github.com/org/repo/pull/42')
    """
    for line in reversed(output.strip().splitlines()):
        match = _PR_URL_PATTERN.search(line)
        if match:
            return CreatedRequest(id=match.group(1), url=line.strip())
    raise ExternalCommandFailedError(f"could not find a pull request url in: {output.strip()!r}")


class GithubReviewService:
    """Review service backed by the GitHub CLI."""

    def __init__(
        self,
        repo_root: Path,
        *,
        repo_slug: str | None = None,
        runner: exec_util.CommandRunner | None = None,
        timeout_seconds: float = _GH_TIMEOUT_SECONDS,
        retry_attempts: int = _GH_RETRY_ATTEMPTS,
        retry_backoff_seconds: float = _GH_RETRY_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo_root = repo_root
        self.repo_slug = repo_slug
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep

    def _repo_args(self) -> list[str]:
        return ["--repo", self.repo_slug] if self.repo_slug else []

    def run(self, args: list[str]) -> exec_util.CommandResult:
        argv = ("gh", *args)
        attempts = max(int(self.retry_attempts), 1)
        last_error = f"command failed: {' '.join(argv)}"
        for attempt in range(1, attempts + 1):
            result = exec_util.run_with_runner(
                exec_util.CommandRequest(
                    argv=argv, cwd=self.repo_root, timeout_seconds=self.timeout_seconds
                ),
                runner=self.runner,
            )
            if result is None:
                raise ExternalCommandFailedError(
                    "missing required command: gh",
                    recovery_hint="install the GitHub CLI and run `gh auth login`",
                )
            if result.ok:
                return result
            last_error = result.output or last_error
            if result.timed_out:
                last_error = f"timed out: {' '.join(argv)}"
            if attempt < attempts and _is_retryable_message(last_error):
                _log.debug(f"gh attempt {attempt} failed ({last_error}); retrying")
                self._sleep(self.retry_backoff_seconds * attempt)
                continue
            break
        raise ExternalCommandFailedError(last_error)

    def create_request(
        self, *, title: str, body: str, head: str, base: str, draft: bool = False
    ) -> CreatedRequest:
        args = [
            "pr",
            "create",
            *self._repo_args(),
            "--head",
            head,
            "--base",
            base,
            "--title",
            title,
            "--body",
            body,
        ]
        if draft:
            args.append("--draft")
        created = parse_request_id(self.run(args).stdout)
        _log.success(f"created pull request #{created.id}")
        return created

    def get_status(self, request_id: str) -> ReviewStatus:
        result = self.run(
            [
                "pr",
                "view",
                request_id,
                *self._repo_args(),
                "--json",
                "number,url,state,isDraft,mergeable,reviewDecision,mergedAt,closedAt,statusCheckRollup",
            ]
        )
        try:
            boundary = exec_util.parse_json_model(
                result, model_type=GithubPullRequestBoundary, context="gh pr view"
            )
        except exec_util.CommandParseError as exc:
            raise ExternalCommandFailedError(str(exc)) from exc
        return boundary.to_status()

    def merge(self, request_id: str, *, method: str = "squash") -> None:
        self.run(["pr", "merge", request_id, *self._repo_args(), f"--{method}", "--delete-branch"])

    def close(self, request_id: str) -> None:
        self.run(["pr", "close", request_id, *self._repo_args()])
