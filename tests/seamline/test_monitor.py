from __future__ import annotations

import datetime as dt
import time
from pathlib import Path

import pytest

from seamline.models import IntegrationSection, MonitorSection
from seamline.monitor import IntegrationMonitor, IntegrationRequest, request_from_outcome
from seamline.review import CheckRun, ReviewStatus
from seamline.services.errors import ExternalCommandFailedError, ValidationFailedError
from seamline.status import StatusPropagator
from seamline.tasks import Task
from tests.seamline.helpers import (
    FakeReviewService,
    InMemoryTaskStore,
    make_manager,
    parent_with_subtasks,
    pending_status,
    ready_status,
)


def _monitor(
    tmp_path: Path,
    review: FakeReviewService,
    *,
    store: InMemoryTaskStore | None = None,
    settings: MonitorSection | None = None,
    state_path: Path | None = None,
    workspace: str | None = "task-7",
    **kwargs: object,
) -> IntegrationMonitor:
    store = store or InMemoryTaskStore([Task(id="7", status="in-progress")])
    manager = make_manager(tmp_path, task_store=store)
    if workspace is not None:
        manager.create(workspace)
    return IntegrationMonitor(
        review,
        status_propagator=StatusPropagator(store),
        workspace_manager=manager,
        settings=settings,
        state_path=state_path,
        **kwargs,
    )


def _request(request_id: str = "42", *, task_id: str = "7", **fields: object) -> IntegrationRequest:
    return IntegrationRequest(request_id=request_id, task_id=task_id, workspace_id="task-7", **fields)


def _kinds(events: list) -> list[str]:
    return [event.kind for event in events]


def test_auto_merge_runs_post_merge_steps(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", pending_status(), ready_status())
    store = InMemoryTaskStore([Task(id="7", status="in-progress")])
    monitor = _monitor(tmp_path, review, store=store)

    with monitor.subscribe() as events:
        monitor.start_monitoring(_request(auto_merge=True, merge_method="rebase"), start_watcher=False)
        assert monitor.poll("42").state == "checks-pending"
        final = monitor.poll("42")
        received = events.drain()

    assert final.state == "merged"
    assert final.monitoring == "completed"
    assert review.merged == [("42", "rebase")]
    assert store.status("7") == "done"
    with pytest.raises(ValidationFailedError):
        monitor.workspace_manager.get("task-7")
    assert _kinds(received) == [
        "monitoring-started",
        "status-changed",
        "status-changed",
        "auto-merged",
        "status-changed",
        "cleanup-completed",
    ]
    assert received[-1].data["completed"] == ["status", "workspace-cleanup"]


def test_ready_without_auto_merge_asks_for_manual_merge(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ready_status())
    store = InMemoryTaskStore([Task(id="7", status="in-progress")])
    monitor = _monitor(tmp_path, review, store=store)
    monitor.start_monitoring(_request(), start_watcher=False)

    with monitor.subscribe() as events:
        request = monitor.poll("42")
        monitor.poll("42")
        received = events.drain()

    assert request.state == "ready-to-merge"
    assert request.monitoring == "active"
    assert _kinds(received) == ["status-changed", "manual-merge-required"]
    assert review.merged == []
    assert store.status("7") == "in-progress"


def test_failing_checks_emit_names(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script(
        "42",
        ReviewStatus(state="open", checks=(CheckRun("ci", "failure"), CheckRun("lint", "success"))),
    )
    monitor = _monitor(tmp_path, review)
    monitor.start_monitoring(_request(auto_merge=True), start_watcher=False)

    with monitor.subscribe() as events:
        request = monitor.poll("42")
        received = events.drain()

    assert request.state == "checks-failed"
    assert received[-1].kind == "checks-failed"
    assert received[-1].data["failing_checks"] == ["ci"]
    assert review.merged == []


def test_checks_recovering_from_failure_reach_ready(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script(
        "42",
        ReviewStatus(state="open", checks=(CheckRun("ci", "failure"),)),
        pending_status(),
        ready_status(),
    )
    monitor = _monitor(tmp_path, review)
    monitor.start_monitoring(_request(), start_watcher=False)

    states = [monitor.poll("42").state for _ in range(3)]

    assert states == ["checks-failed", "checks-pending", "ready-to-merge"]


def test_merge_failure_requires_manual_merge(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ready_status())
    review.merge_error = ExternalCommandFailedError("Pull request is not mergeable")
    store = InMemoryTaskStore([Task(id="7", status="in-progress")])
    monitor = _monitor(tmp_path, review, store=store)
    monitor.start_monitoring(_request(auto_merge=True), start_watcher=False)

    with monitor.subscribe() as events:
        request = monitor.poll("42")
        received = events.drain()

    assert request.state == "ready-to-merge"
    assert request.monitoring == "active"
    assert _kinds(received)[-2:] == ["merge-failed", "manual-merge-required"]
    assert store.status("7") == "in-progress"


def test_auto_merge_blocked_by_safety_recheck(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ready_status("ci"))
    monitor = _monitor(tmp_path, review)
    monitor.start_monitoring(
        _request(auto_merge=True, required_checks=["ci"], require_approval=False),
        start_watcher=False,
    )
    status = ReviewStatus(state="open", mergeable=True, checks=(CheckRun("ci", "pending"),))

    allowed, reason = monitor.can_auto_merge(monitor.get("42"), status)

    assert allowed is False
    assert "ci" in reason
    assert monitor.can_auto_merge(monitor.get("42"), ready_status("ci")) == (
        True,
        "all safety checks passed",
    )
    approval = _request("43", require_approval=True)
    assert monitor.can_auto_merge(approval, ready_status()) == (False, "approval required")
    conflicting = ReviewStatus(state="open", mergeable=False)
    assert monitor.can_auto_merge(approval, conflicting)[1] == "request has merge conflicts"


def test_merged_by_hand_completes_subtask_and_parent(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ReviewStatus(state="merged"))
    store = InMemoryTaskStore(parent_with_subtasks("7", ["done", "in-progress"]))
    monitor = _monitor(tmp_path, review, store=store)
    monitor.start_monitoring(_request(task_id="7.2"), start_watcher=False)

    with monitor.subscribe() as events:
        request = monitor.poll("42")
        received = events.drain()

    assert request.state == "merged"
    assert store.status("7.2") == "done"
    assert store.status("7") == "done"
    assert received[-1].data["completed"] == ["status", "parent-cascade", "workspace-cleanup"]


def test_cleanup_steps_are_best_effort(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ReviewStatus(state="merged"))
    store = InMemoryTaskStore([Task(id="7", status="in-progress")])
    monitor = _monitor(tmp_path, review, store=store, workspace=None)
    monitor.start_monitoring(_request(), start_watcher=False)

    with monitor.subscribe() as events:
        monitor.poll("42")
        received = events.drain()

    assert store.status("7") == "done"
    cleanup = received[-1]
    assert cleanup.kind == "cleanup-completed"
    assert cleanup.message == "post-merge cleanup finished with errors"
    assert cleanup.data["completed"] == ["status"]
    assert cleanup.data["errors"][0]["step"] == "workspace-cleanup"


def test_closed_request_leaves_task_status(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ReviewStatus(state="closed"))
    store = InMemoryTaskStore([Task(id="7", status="in-progress")])
    monitor = _monitor(tmp_path, review, store=store)
    monitor.start_monitoring(_request(), start_watcher=False)

    request = monitor.poll("42")

    assert request.state == "closed"
    assert request.monitoring == "completed"
    assert store.writes == []
    assert monitor.workspace_manager.get("task-7").id == "task-7"


def test_consecutive_poll_failures_give_up(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ExternalCommandFailedError("HTTP 503"))
    monitor = _monitor(tmp_path, review, settings=MonitorSection(max_retries=3))
    monitor.start_monitoring(_request(), start_watcher=False)

    with monitor.subscribe() as events:
        for _ in range(4):
            request = monitor.poll("42")
        received = events.drain()

    assert request.monitoring == "failed"
    assert request.failures == 3
    assert "HTTP 503" in (request.last_error or "")
    assert review.polls["42"] == 3
    assert _kinds(received) == ["poll-failed", "poll-failed", "poll-failed", "monitoring-failed"]
    assert monitor.active_request_ids() == []


def test_successful_poll_resets_failure_count(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ExternalCommandFailedError("timeout"), pending_status())
    monitor = _monitor(tmp_path, review)
    monitor.start_monitoring(_request(), start_watcher=False)

    assert monitor.poll("42").failures == 1
    request = monitor.poll("42")

    assert request.failures == 0
    assert request.last_error is None
    assert request.monitoring == "active"


def _wait_for(events, kind: str) -> list:
    received = []
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        event = events.get(timeout=0.1)
        if event is None:
            continue
        received.append(event)
        if event.kind == kind:
            break
    return received


def test_unexpected_poll_errors_count_toward_giving_up(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", ConnectionError("connection reset by peer"))
    monitor = _monitor(
        tmp_path, review, settings=MonitorSection(max_retries=2, poll_seconds=0.01)
    )

    with monitor.subscribe() as events:
        monitor.start_monitoring(_request())
        received = _wait_for(events, "monitoring-failed")

    request = monitor.get("42")
    assert request.monitoring == "failed"
    assert request.failures == 2
    assert "ConnectionError: connection reset by peer" in (request.last_error or "")
    assert _kinds(received) == [
        "monitoring-started",
        "poll-failed",
        "poll-failed",
        "monitoring-failed",
    ]
    assert review.polls["42"] == 2


class _MalformedStatusReview(FakeReviewService):
    def get_status(self, request_id: str) -> ReviewStatus:
        super().get_status(request_id)
        return None  # type: ignore[return-value]


def test_watcher_survives_errors_while_applying_status(tmp_path: Path) -> None:
    review = _MalformedStatusReview()
    monitor = _monitor(
        tmp_path, review, settings=MonitorSection(max_retries=3, poll_seconds=0.01)
    )

    with monitor.subscribe() as events:
        monitor.start_monitoring(_request())
        received = _wait_for(events, "monitoring-failed")

    request = monitor.get("42")
    assert request.monitoring == "failed"
    assert request.failures == 3
    assert (request.last_error or "").startswith("AttributeError")
    assert _kinds(received)[-1] == "monitoring-failed"


def test_unwritable_state_file_does_not_stop_monitoring(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory\n", encoding="utf-8")
    review = FakeReviewService()
    review.script("42", pending_status())
    monitor = _monitor(tmp_path, review, state_path=blocker / "monitor.json")

    monitor.start_monitoring(_request(), start_watcher=False)
    request = monitor.poll("42")

    assert request.state == "checks-pending"
    assert request.monitoring == "active"
    assert not (blocker / "monitor.json").exists()


def test_gives_up_after_max_duration(tmp_path: Path) -> None:
    review = FakeReviewService()
    later = dt.datetime.now(tz=dt.timezone.utc) + dt.timedelta(hours=2)
    monitor = _monitor(
        tmp_path,
        review,
        settings=MonitorSection(max_duration_seconds=3600),
        clock=lambda: later,
    )
    monitor.start_monitoring(
        _request(started_at=(later - dt.timedelta(hours=2)).strftime("%Y-%m-%dT%H:%M:%SZ")),
        start_watcher=False,
    )

    request = monitor.poll("42")

    assert request.monitoring == "failed"
    assert "gave up" in (request.stop_reason or "")
    assert review.polls == {}


def test_event_log_is_capped(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script(
        "42",
        pending_status(),
        ReviewStatus(state="open", checks=(CheckRun("ci", "failure"),)),
        pending_status(),
        ReviewStatus(state="open", checks=(CheckRun("ci", "failure"),)),
    )
    monitor = _monitor(tmp_path, review, settings=MonitorSection(event_log_limit=3))
    monitor.start_monitoring(_request(), start_watcher=False)

    for _ in range(4):
        monitor.poll("42")
    log = monitor.event_log("42")

    assert len(log) == 3
    assert [entry["kind"] for entry in log] == ["status-changed", "status-changed", "checks-failed"]


def test_state_persists_and_resumes(tmp_path: Path) -> None:
    state_path = tmp_path / "state" / "monitor.json"
    review = FakeReviewService()
    review.script("42", pending_status())
    first = _monitor(tmp_path, review, state_path=state_path)
    first.start_monitoring(_request(url="https://github.com/org/repo/pull/42"), start_watcher=False)
    first.start_monitoring(_request("43"), start_watcher=False)
    first.pause("43")

    second = IntegrationMonitor(
        review, state_path=state_path, settings=MonitorSection(poll_seconds=60)
    )
    with second.subscribe() as events:
        resumed = second.resume()
        event = events.get(timeout=5)
        second.shutdown()

    assert resumed == ["42"]
    assert event is not None
    assert event.kind == "status-changed"
    assert second.get("42").url == "https://github.com/org/repo/pull/42"
    assert second.get("43").monitoring == "paused"
    assert second.monitoring_stats()["monitoring"] == {"active": 1, "paused": 1}


def test_stop_monitoring_halts_watcher(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", pending_status())
    monitor = _monitor(tmp_path, review, settings=MonitorSection(poll_seconds=0.01))
    monitor.start_monitoring(_request())

    deadline = time.monotonic() + 5
    while review.polls.get("42", 0) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert monitor.stop_monitoring("42", reason="session cancelled") is True
    polls_after_stop = review.polls["42"]
    time.sleep(0.1)

    assert review.polls["42"] == polls_after_stop
    request = monitor.get("42")
    assert request.monitoring == "stopped"
    assert request.stop_reason == "session cancelled"
    assert request.events[-1]["kind"] == "monitoring-stopped"
    assert monitor.stop_monitoring("42") is False


def test_paused_request_is_not_polled(tmp_path: Path) -> None:
    review = FakeReviewService()
    review.script("42", pending_status())
    monitor = _monitor(tmp_path, review)
    monitor.start_monitoring(_request(), start_watcher=False)

    assert monitor.pause("42") is True
    monitor.poll("42")
    assert review.polls == {}
    assert monitor.unpause("42", start_watcher=False) is True
    assert monitor.poll("42").state == "checks-pending"


def test_start_monitoring_is_idempotent(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, FakeReviewService())
    first = monitor.start_monitoring(_request(), start_watcher=False)

    again = monitor.start_monitoring(_request(auto_merge=True), start_watcher=False)

    assert again is first
    assert monitor.get("42").auto_merge is False


def test_unknown_request(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, FakeReviewService())

    with pytest.raises(ValidationFailedError):
        monitor.poll("404")


def test_request_from_outcome_copies_integration_settings() -> None:
    request = request_from_outcome(
        "42",
        url="https://github.com/org/repo/pull/42",
        task_id="7",
        workspace_id="task-7",
        source_branch="task-7",
        target_branch="main",
        title="Task 7: Parser",
        integration=IntegrationSection(
            auto_merge=True, merge_method="merge", required_checks="ci, e2e"
        ),
    )

    assert request.auto_merge is True
    assert request.merge_method == "merge"
    assert request.required_checks == ["ci", "e2e"]
    assert request.state == "open"
