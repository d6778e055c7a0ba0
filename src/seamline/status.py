"""Task status propagation and parent completion cascade."""

from __future__ import annotations

from dataclasses import dataclass

from . import log as seamline_log
from .executor import IntegrationOutcome, Route
from .locks import KeyedLocks
from .services.errors import ValidationFailedError
from .tasks import Task, TaskStore

_log = seamline_log.scoped("status")


@dataclass(frozen=True)
class ParentCompletion:
    parent_id: str
    completed: bool
    changed: bool
    remaining: int


@dataclass(frozen=True)
class StatusUpdate:
    task_id: str
    status: str
    changed: bool
    deferred: bool = False
    parent: ParentCompletion | None = None


class StatusPropagator:
    """Write completion status back to the task store."""

    def __init__(self, task_store: TaskStore) -> None:
        self.task_store = task_store
        self._locks = KeyedLocks()

    def _require(self, task_id: str) -> Task:
        task = self.task_store.get_task(task_id)
        if task is None:
            raise ValidationFailedError(f"unknown task: {task_id}")
        return task

    def mark_complete(
        self, task_id: str, route: Route, outcome: IntegrationOutcome
    ) -> StatusUpdate:
        """Record an integration outcome.

        Local merges and approved manual integrations complete the task now;
        review requests defer completion until the merge is observed.
        """
        task = self._require(task_id)
        if route == "create-review-request" and outcome.success:
            _log.info(f"task {task_id}: completion deferred until the review request merges")
            return StatusUpdate(task_id=task_id, status=task.status, changed=False, deferred=True)
        if not outcome.success:
            return StatusUpdate(task_id=task_id, status=task.status, changed=False)
        return self.complete(task_id)

    def complete(self, task_id: str) -> StatusUpdate:
        """Set a task to ``done`` and re-evaluate its parent."""
        with self._locks.hold(task_id):
            task = self._require(task_id)
            changed = task.status != "done"
            if changed:
                self.task_store.set_task_status(task_id, "done")
                _log.success(f"task {task_id} marked done")
        parent = None
        if task.parent_id is not None:
            parent = self.check_parent_completion(task.parent_id)
        return StatusUpdate(task_id=task_id, status="done", changed=changed, parent=parent)

    def complete_deferred(self, task_id: str) -> StatusUpdate:
        """Completion callback once a review request is observed merged."""
        return self.complete(task_id)

    def check_parent_completion(self, parent_id: str) -> ParentCompletion:
        """Mark ``parent_id`` done iff all of its subtasks are done.

        Idempotent: a parent already ``done`` is not written again.
        """
        with self._locks.hold(parent_id):
            parent = self._require(parent_id)
            remaining = 0
            for subtask_id in parent.subtask_ids:
                subtask = self.task_store.get_task(subtask_id)
                if subtask is None or subtask.status != "done":
                    remaining += 1
            if remaining or not parent.subtask_ids:
                return ParentCompletion(
                    parent_id=parent_id,
                    completed=parent.status == "done",
                    changed=False,
                    remaining=remaining,
                )
            if parent.status == "done":
                return ParentCompletion(parent_id=parent_id, completed=True, changed=False, remaining=0)
            self.task_store.set_task_status(parent_id, "done")
        _log.success(f"parent task {parent_id} marked done: all subtasks complete")
        if parent.parent_id is not None:
            self.check_parent_completion(parent.parent_id)
        return ParentCompletion(parent_id=parent_id, completed=True, changed=True, remaining=0)
