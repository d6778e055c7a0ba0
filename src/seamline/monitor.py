"""Integration monitor: one background watcher per open review request.

Watchers poll the hosted review service, drive the request state machine,
auto-merge when allowed, and run post-merge propagation and cleanup.
Notifications are delivered through ``MonitorSubscription`` channels.
"""

from __future__ import annotations

import datetime as dt
import queue
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

from pydantic import BaseModel, ConfigDict, Field

from . import config
from . import log as seamline_log
from .locks import KeyedLocks
from .models import IntegrationSection, MonitorSection
from .review import (
    TERMINAL_STATES,
    ReviewService,
    ReviewStatus,
    derive_request_state,
    is_transition_allowed,
)
from .services.errors import IoFailedError, MonitoringError, ServiceFailure, ValidationFailedError
from .status import StatusPropagator
from .workspaces import WorkspaceManager

MonitorEventKind = Literal[
    "monitoring-started",
    "status-changed",
    "poll-failed",
    "checks-failed",
    "manual-merge-required",
    "auto-merged",
    "merge-failed",
    "cleanup-completed",
    "monitoring-stopped",
    "monitoring-failed",
]
MonitoringStatus = Literal["active", "paused", "stopped", "failed", "completed"]

STATE_VERSION = 1

_log = seamline_log.scoped("monitor")


@dataclass(frozen=True)
class MonitorEvent:
    kind: MonitorEventKind
    request_id: str
    timestamp: str
    state: str | None = None
    message: str = ""
    data: dict[str, object] = field(default_factory=dict)


class IntegrationRequest(BaseModel):
    """A tracked review request, persisted across restarts."""

    model_config = ConfigDict(extra="allow")

    request_id: str
    url: str | None = None
    task_id: str | None = None
    workspace_id: str | None = None
    source_branch: str | None = None
    target_branch: str | None = None
    title: str = ""
    auto_merge: bool = False
    merge_method: str = "squash"
    required_checks: list[str] = Field(default_factory=list)
    require_approval: bool = False
    state: str = "open"
    monitoring: MonitoringStatus = "active"
    started_at: str = Field(default_factory=config.utc_now)
    last_checked: str | None = None
    failures: int = 0
    last_error: str | None = None
    stop_reason: str | None = None
    events: list[dict] = Field(default_factory=list)


class MonitorState(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int = STATE_VERSION
    requests: dict[str, IntegrationRequest] = Field(default_factory=dict)


@dataclass
class CleanupReport:
    request_id: str
    completed: list[str] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class MonitorSubscription:
    """Queue-backed notification channel for monitor events."""

    def __init__(self, on_close: Callable[[MonitorSubscription], None]) -> None:
        self._queue: queue.Queue[MonitorEvent] = queue.Queue()
        self._on_close = on_close
        self.closed = False

    def publish(self, event: MonitorEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def get(self, timeout: float | None = None) -> MonitorEvent | None:
        """Return the next event, or ``None`` once ``timeout`` elapses."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[MonitorEvent]:
        events: list[MonitorEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._on_close(self)

    def __enter__(self) -> MonitorSubscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class _Watcher:
    stop: threading.Event
    thread: threading.Thread | None = None


def _utc_now_dt() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


class IntegrationMonitor:
    """Track review requests until they merge, close, or monitoring gives up."""

    def __init__(
        self,
        review_service: ReviewService,
        *,
        status_propagator: StatusPropagator | None = None,
        workspace_manager: WorkspaceManager | None = None,
        settings: MonitorSection | None = None,
        state_path: Path | None = None,
        clock: Callable[[], dt.datetime] = _utc_now_dt,
    ) -> None:
        self.review_service = review_service
        self.status_propagator = status_propagator
        self.workspace_manager = workspace_manager
        self.settings = settings or MonitorSection()
        self.state_path = state_path
        self._clock = clock
        self._lock = threading.RLock()
        self._poll_locks = KeyedLocks()
        self._requests: dict[str, IntegrationRequest] = {}
        self._watchers: dict[str, _Watcher] = {}
        self._subscribers: list[MonitorSubscription] = []

    def _now(self) -> str:
        return config.format_timestamp(self._clock())

    # -- subscriptions -------------------------------------------------

    def subscribe(self) -> MonitorSubscription:
        subscription = MonitorSubscription(self._unsubscribe)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: MonitorSubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _emit(
        self,
        request: IntegrationRequest,
        kind: MonitorEventKind,
        message: str = "",
        **data: object,
    ) -> MonitorEvent:
        event = MonitorEvent(
            kind=kind,
            request_id=request.request_id,
            timestamp=self._now(),
            state=request.state,
            message=message,
            data=dict(data),
        )
        with self._lock:
            request.events.append(
                {"kind": kind, "timestamp": event.timestamp, "state": request.state, "message": message}
            )
            overflow = len(request.events) - self.settings.event_log_limit
            if overflow > 0:
                del request.events[:overflow]
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.publish(event)
        return event

    # -- persistence ---------------------------------------------------

    def _persist(self) -> None:
        """Write tracked requests to ``state_path``.

        A failed write is logged; in-memory tracking continues and the next
        mutation writes the full state again.
        """
        if self.state_path is None:
            return
        with self._lock:
            state = MonitorState(requests=dict(self._requests))
            try:
                config.write_json(self.state_path, state.model_dump(mode="json"))
            except IoFailedError as exc:
                _log.warning(f"could not persist monitor state: {exc}")

    def resume(self) -> list[str]:
        """Load persisted requests and restart watchers for active ones."""
        if self.state_path is None:
            return []
        payload = config.load_json(self.state_path)
        if payload is None:
            return []
        state = MonitorState.model_validate(payload)
        resumed: list[str] = []
        with self._lock:
            for request_id, request in state.requests.items():
                if request_id in self._requests:
                    continue
                self._requests[request_id] = request
                if request.monitoring == "active":
                    resumed.append(request_id)
        for request_id in resumed:
            self._start_watcher(request_id)
        if resumed:
            _log.info(f"resumed monitoring for {len(resumed)} request(s)")
        return resumed

    # -- lifecycle -----------------------------------------------------

    def start_monitoring(
        self, request: IntegrationRequest, *, start_watcher: bool = True
    ) -> IntegrationRequest:
        """Begin tracking ``request``; returns the tracked record."""
        with self._lock:
            existing = self._requests.get(request.request_id)
            if existing is not None and existing.monitoring == "active":
                return existing
            request.monitoring = "active"
            request.stop_reason = None
            request.failures = 0
            self._requests[request.request_id] = request
        self._emit(request, "monitoring-started", f"watching request {request.request_id}")
        self._persist()
        _log.info(f"monitoring request {request.request_id} (auto-merge={request.auto_merge})")
        if start_watcher:
            self._start_watcher(request.request_id)
        return request

    def _start_watcher(self, request_id: str) -> None:
        stop = threading.Event()
        watcher = _Watcher(stop=stop)
        thread = threading.Thread(
            target=self._watch,
            args=(request_id, stop),
            name=f"seamline-monitor-{request_id}",
            daemon=True,
        )
        watcher.thread = thread
        with self._lock:
            previous = self._watchers.get(request_id)
            if previous is not None:
                previous.stop.set()
            self._watchers[request_id] = watcher
        thread.start()

    def _watch(self, request_id: str, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self._poll(request_id, stop)
            except Exception as exc:
                self._watch_failed(request_id, exc, stop)
            if stop.wait(self.settings.poll_seconds):
                break

    def _watch_failed(self, request_id: str, exc: Exception, stop: threading.Event) -> None:
        """Count an unexpected watcher error as a failed poll."""
        with self._lock:
            request = self._requests.get(request_id)
        if request is None:
            stop.set()
            return
        error = exc if isinstance(exc, MonitoringError) else MonitoringError(
            f"{type(exc).__name__}: {exc}", request_id=request_id
        )
        with self._poll_locks.hold(request_id):
            self._record_poll_failure(request, error, stop)

    def _halt_watcher(self, request_id: str, *, join: bool) -> None:
        with self._lock:
            watcher = self._watchers.pop(request_id, None)
        if watcher is None:
            return
        watcher.stop.set()
        thread = watcher.thread
        if join and thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def stop_monitoring(self, request_id: str, reason: str = "stopped") -> bool:
        """Cancel a watcher; an in-flight poll finishes without acting."""
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.monitoring not in {"active", "paused"}:
                return False
            request.monitoring = "stopped"
            request.stop_reason = reason
        self._halt_watcher(request_id, join=True)
        self._emit(request, "monitoring-stopped", reason)
        self._persist()
        _log.info(f"stopped monitoring {request_id}: {reason}")
        return True

    def pause(self, request_id: str) -> bool:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.monitoring != "active":
                return False
            request.monitoring = "paused"
        self._halt_watcher(request_id, join=True)
        self._persist()
        _log.info(f"paused monitoring {request_id}")
        return True

    def unpause(self, request_id: str, *, start_watcher: bool = True) -> bool:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.monitoring != "paused":
                return False
            request.monitoring = "active"
        self._persist()
        if start_watcher:
            self._start_watcher(request_id)
        _log.info(f"resumed monitoring {request_id}")
        return True

    def shutdown(self) -> None:
        """Stop every watcher thread, keeping persisted state for ``resume``."""
        with self._lock:
            request_ids = list(self._watchers)
        for request_id in request_ids:
            self._halt_watcher(request_id, join=True)

    # -- introspection -------------------------------------------------

    def get(self, request_id: str) -> IntegrationRequest:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise ValidationFailedError(f"unknown integration request: {request_id}")
            return request.model_copy(deep=True)

    def tracked(self) -> list[IntegrationRequest]:
        with self._lock:
            return [request.model_copy(deep=True) for request in self._requests.values()]

    def active_request_ids(self) -> list[str]:
        with self._lock:
            return [rid for rid, request in self._requests.items() if request.monitoring == "active"]

    def event_log(self, request_id: str) -> list[dict]:
        return list(self.get(request_id).events)

    def monitoring_stats(self) -> dict[str, object]:
        with self._lock:
            requests = list(self._requests.values())
        by_monitoring: dict[str, int] = {}
        by_state: dict[str, int] = {}
        for request in requests:
            by_monitoring[request.monitoring] = by_monitoring.get(request.monitoring, 0) + 1
            by_state[request.state] = by_state.get(request.state, 0) + 1
        return {"total": len(requests), "monitoring": by_monitoring, "states": by_state}

    # -- polling -------------------------------------------------------

    def poll(self, request_id: str) -> IntegrationRequest:
        """Poll one request synchronously and return its updated record."""
        return self._poll(request_id, None)

    def _is_active(self, request: IntegrationRequest, stop: threading.Event | None) -> bool:
        if stop is not None and stop.is_set():
            return False
        return request.monitoring == "active"

    def _poll(self, request_id: str, stop: threading.Event | None) -> IntegrationRequest:
        with self._poll_locks.hold(request_id):
            with self._lock:
                request = self._requests.get(request_id)
            if request is None:
                raise ValidationFailedError(f"unknown integration request: {request_id}")
            if not self._is_active(request, stop):
                return request
            started = config.parse_timestamp(request.started_at)
            if started is not None:
                elapsed = (self._clock() - started).total_seconds()
                if elapsed > self.settings.max_duration_seconds:
                    self._give_up(request, f"gave up after {elapsed:.0f}s without resolution")
                    return request
            try:
                status = self.review_service.get_status(request_id)
            except ServiceFailure as exc:
                error = MonitoringError(str(exc), request_id=request_id)
                self._record_poll_failure(request, error, stop)
                return request
            except Exception as exc:
                error = MonitoringError(f"{type(exc).__name__}: {exc}", request_id=request_id)
                self._record_poll_failure(request, error, stop)
                return request
            if not self._is_active(request, stop):
                return request
            self._apply_status(request, status)
            self._persist()
            return request

    def _record_poll_failure(
        self, request: IntegrationRequest, error: MonitoringError, stop: threading.Event | None
    ) -> None:
        if not self._is_active(request, stop):
            return
        request.failures += 1
        request.last_error = str(error)
        request.last_checked = self._now()
        _log.warning(
            f"poll {request.failures}/{self.settings.max_retries} for {request.request_id} failed: {error}"
        )
        self._emit(request, "poll-failed", str(error), failures=request.failures)
        if request.failures >= self.settings.max_retries:
            self._give_up(request, f"{request.failures} consecutive poll failures: {error}")
            return
        self._persist()

    def _give_up(self, request: IntegrationRequest, reason: str) -> None:
        request.monitoring = "failed"
        request.stop_reason = reason
        self._halt_watcher(request.request_id, join=False)
        _log.warning(f"monitoring failed for {request.request_id}: {reason}")
        self._emit(request, "monitoring-failed", reason)
        self._persist()

    def _apply_status(self, request: IntegrationRequest, status: ReviewStatus) -> None:
        current = derive_request_state(
            status,
            required_checks=request.required_checks,
            require_approval=request.require_approval,
        )
        request.failures = 0
        request.last_error = None
        request.last_checked = self._now()
        if status.url and not request.url:
            request.url = status.url
        previous = request.state
        changed = current != previous
        if changed:
            if not is_transition_allowed(previous, current):
                _log.warning(f"{request.request_id}: unexpected transition {previous} -> {current}")
            request.state = current
            _log.debug(f"{request.request_id}: {previous} -> {current}")
            self._emit(request, "status-changed", f"{previous} -> {current}", previous=previous)

        if current == "checks-failed" and changed:
            failing = status.failing_checks()
            self._emit(
                request,
                "checks-failed",
                f"failing checks: {', '.join(failing) or 'unknown'}",
                failing_checks=failing,
            )
        elif current == "ready-to-merge" and changed:
            self._handle_ready(request, status)
        elif current == "merged":
            self.handle_merged(request)
        elif current == "closed":
            request.monitoring = "completed"
            request.stop_reason = "closed"
            self._halt_watcher(request.request_id, join=False)
            self._emit(request, "monitoring-stopped", "request closed without merging")
            _log.info(f"{request.request_id} closed; task status left unchanged")

    def can_auto_merge(
        self, request: IntegrationRequest, status: ReviewStatus
    ) -> tuple[bool, str]:
        """Final safety re-check before an automatic merge."""
        if request.state in TERMINAL_STATES:
            return False, f"request is already {request.state}"
        if status.state != "open":
            return False, f"request is {status.state}"
        if status.draft:
            return False, "request is a draft"
        if status.mergeable is False:
            return False, "request has merge conflicts"
        if (status.review_decision or "").upper() == "CHANGES_REQUESTED":
            return False, "changes requested by a reviewer"
        if request.require_approval and (status.review_decision or "").upper() != "APPROVED":
            return False, "approval required"
        failing = status.failing_checks()
        if failing:
            return False, f"failing checks: {', '.join(failing)}"
        reported = {check.name: check.status for check in status.checks}
        for name in request.required_checks:
            if reported.get(name) != "success":
                return False, f"required check {name} has not passed"
        return True, "all safety checks passed"

    def _handle_ready(self, request: IntegrationRequest, status: ReviewStatus) -> None:
        if not request.auto_merge:
            self._emit(request, "manual-merge-required", "ready to merge; auto-merge disabled")
            return
        allowed, reason = self.can_auto_merge(request, status)
        if not allowed:
            self._emit(request, "manual-merge-required", f"auto-merge blocked: {reason}")
            return
        try:
            self.review_service.merge(request.request_id, method=request.merge_method)
        except ServiceFailure as exc:
            _log.error(f"auto-merge of {request.request_id} failed: {exc}")
            self._emit(request, "merge-failed", str(exc))
            self._emit(request, "manual-merge-required", "auto-merge failed; merge manually")
            return
        previous = request.state
        request.state = "merged"
        self._emit(request, "auto-merged", f"merged with {request.merge_method}")
        self._emit(request, "status-changed", f"{previous} -> merged", previous=previous)
        _log.success(f"auto-merged {request.request_id}")
        self.handle_merged(request)

    def handle_merged(self, request: IntegrationRequest) -> CleanupReport:
        """Run post-merge steps in order; each step is best-effort."""
        request.monitoring = "completed"
        request.stop_reason = "merged"
        self._halt_watcher(request.request_id, join=False)
        report = CleanupReport(request_id=request.request_id)
        if self.status_propagator is not None and request.task_id:
            try:
                update = self.status_propagator.complete_deferred(request.task_id)
            except Exception as exc:  # best-effort post-merge step
                report.errors.append(("status", str(exc)))
                _log.warning(f"status propagation for task {request.task_id} failed: {exc}")
            else:
                report.completed.append("status")
                if update.parent is not None:
                    report.completed.append("parent-cascade")
        if (
            self.settings.cleanup_after_merge
            and self.workspace_manager is not None
            and request.workspace_id
        ):
            try:
                self.workspace_manager.reclaim(request.workspace_id)
            except Exception as exc:  # best-effort post-merge step
                report.errors.append(("workspace-cleanup", str(exc)))
                _log.warning(f"workspace cleanup for {request.workspace_id} failed: {exc}")
            else:
                report.completed.append("workspace-cleanup")
        self._emit(
            request,
            "cleanup-completed",
            "post-merge cleanup finished" if report.ok else "post-merge cleanup finished with errors",
            completed=list(report.completed),
            errors=[{"step": step, "error": error} for step, error in report.errors],
        )
        self._persist()
        return report


def request_from_outcome(
    request_id: str,
    *,
    url: str | None,
    task_id: str,
    workspace_id: str,
    source_branch: str | None,
    target_branch: str | None,
    title: str,
    integration: IntegrationSection,
) -> IntegrationRequest:
    """Build a tracked request from a freshly created review request."""
    return IntegrationRequest(
        request_id=request_id,
        url=url,
        task_id=task_id,
        workspace_id=workspace_id,
        source_branch=source_branch,
        target_branch=target_branch,
        title=title,
        auto_merge=integration.auto_merge,
        merge_method=integration.merge_method,
        required_checks=list(integration.required_checks),
        require_approval=integration.require_approval,
    )
