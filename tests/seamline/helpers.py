# ruff: noqa: E402

from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Callable

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from seamline import exec as exec_util
from seamline.checks import CheckResult
from seamline.gates import GateResult, Verdict, Violation
from seamline.review import CheckRun, CreatedRequest, ReviewStatus
from seamline.services.errors import ExternalCommandFailedError, ValidationFailedError
from seamline.tasks import Task
from seamline.workspaces import WorkspaceManager, WorkspaceRegistry
from seamline.worktrees import WorktreeEntry

Handler = Callable[[exec_util.CommandRequest], "exec_util.CommandResult | None"]


def ok(stdout: str = "", *, argv: tuple[str, ...] = ()) -> exec_util.CommandResult:
    return exec_util.CommandResult(argv=argv, returncode=0, stdout=stdout, stderr="")


def failed(
    stderr: str = "boom", *, returncode: int = 1, argv: tuple[str, ...] = ()
) -> exec_util.CommandResult:
    return exec_util.CommandResult(argv=argv, returncode=returncode, stdout="", stderr=stderr)


def timed_out(argv: tuple[str, ...] = ()) -> exec_util.CommandResult:
    return exec_util.CommandResult(
        argv=argv, returncode=124, stdout="", stderr="", timed_out=True
    )


class FakeRunner:
    """Command runner that records requests and answers from a handler."""

    def __init__(self, handler: Handler | None = None) -> None:
        self.handler = handler
        self.requests: list[exec_util.CommandRequest] = []
        self._lock = threading.Lock()

    def run(self, request: exec_util.CommandRequest) -> exec_util.CommandResult | None:
        with self._lock:
            self.requests.append(request)
        if self.handler is None:
            return ok(argv=request.argv)
        return self.handler(request)

    def commands(self) -> list[tuple[str, ...]]:
        return [request.argv for request in self.requests]

    def git_subcommands(self) -> list[tuple[str, ...]]:
        """Git argv with the ``git -C <path>`` prefix stripped."""
        return [argv[3:] for argv in self.commands() if argv[:2] == ("git", "-C")]


class InMemoryTaskStore:
    def __init__(self, tasks: list[Task] | None = None) -> None:
        self.tasks: dict[str, Task] = {task.id: task for task in tasks or []}
        self.writes: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self.tasks.get(task_id)
            return task.model_copy() if task is not None else None

    def set_task_status(self, task_id: str, status: str) -> None:
        with self._lock:
            task = self.tasks.get(task_id)
            if task is None:
                raise ValidationFailedError(f"unknown task: {task_id}")
            self.tasks[task_id] = task.model_copy(update={"status": status})
            self.writes.append((task_id, status))

    def status(self, task_id: str) -> str:
        return self.tasks[task_id].status


def parent_with_subtasks(
    parent_id: str, statuses: list[str], *, title: str = "Parent"
) -> list[Task]:
    subtask_ids = [f"{parent_id}.{index}" for index in range(1, len(statuses) + 1)]
    tasks = [Task(id=parent_id, title=title, subtask_ids=subtask_ids)]
    for subtask_id, status in zip(subtask_ids, statuses):
        tasks.append(
            Task(id=subtask_id, title=f"Sub {subtask_id}", status=status, parent_id=parent_id)
        )
    return tasks


class FakeProvider:
    """In-memory workspace provider that mirrors worktrees as directories."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root
        self.entries: dict[Path, WorktreeEntry] = {}
        self.branches: set[str] = {"main"}
        self.dirty: set[Path] = set()
        self.fail_remove: set[Path] = set()
        self.calls: list[tuple[str, ...]] = []
        self._lock = threading.Lock()

    def create(self, path: Path, branch: str, base: str) -> None:
        with self._lock:
            self.calls.append(("create", str(path), branch, base))
            path.mkdir(parents=True)
            self.entries[path] = WorktreeEntry(path=path, branch=branch)
            self.branches.add(branch)

    def list(self) -> list[WorktreeEntry]:
        with self._lock:
            main = WorktreeEntry(path=self.repo_root, branch="main", is_main=True)
            return [main, *self.entries.values()]

    def remove(self, path: Path, *, force: bool = False) -> None:
        with self._lock:
            self.calls.append(("remove", str(path), "force" if force else ""))
            if path in self.fail_remove:
                raise ExternalCommandFailedError(f"cannot remove {path}")
            entry = self.entries.get(path)
            if entry is not None and entry.locked:
                raise ExternalCommandFailedError(f"{path} is locked")
            self.entries.pop(path, None)

    def lock(self, path: Path, reason: str) -> None:
        with self._lock:
            self.calls.append(("lock", str(path), reason))
            entry = self.entries[path]
            self.entries[path] = WorktreeEntry(
                path=path, branch=entry.branch, locked=True, lock_reason=reason
            )

    def unlock(self, path: Path) -> None:
        with self._lock:
            self.calls.append(("unlock", str(path)))
            entry = self.entries[path]
            self.entries[path] = WorktreeEntry(path=path, branch=entry.branch)

    def status(self, path: Path) -> list[str]:
        return [" M file.py"] if path in self.dirty else []

    def diff_stat(self, path: Path, base: str) -> list[str]:
        return []

    def branch_exists(self, branch: str) -> bool:
        return branch in self.branches


def make_manager(
    tmp_path: Path,
    *,
    task_store: InMemoryTaskStore | None = None,
    provider: FakeProvider | None = None,
) -> WorkspaceManager:
    repo_root = tmp_path / "repo"
    repo_root.mkdir(exist_ok=True)
    return WorkspaceManager(
        repo_root,
        provider=provider or FakeProvider(repo_root),
        registry=WorkspaceRegistry(tmp_path / "data" / "workspaces.json"),
        worktrees_root=tmp_path / "data" / "worktrees",
        task_store=task_store,
    )


def make_gate(
    verdict: Verdict = "pass",
    *,
    mode: str = "standard",
    workspace_path: Path = Path("/tmp/ws"),
    violations: tuple[Violation, ...] = (),
) -> GateResult:
    return GateResult(
        workspace_path=workspace_path,
        mode=mode,
        verdict=verdict,
        checks=(CheckResult(name="git-status", status="passed", message="working tree clean"),),
        violations=violations,
    )


class FakeReviewService:
    """Scripted review service; statuses are consumed per poll."""

    def __init__(self) -> None:
        self.created: list[dict[str, object]] = []
        self.merged: list[tuple[str, str]] = []
        self.closed: list[str] = []
        self.statuses: dict[str, list[ReviewStatus | Exception]] = {}
        self.polls: dict[str, int] = {}
        self.merge_error: Exception | None = None
        self.next_id = 42
        self._lock = threading.Lock()

    def script(self, request_id: str, *statuses: ReviewStatus | Exception) -> None:
        self.statuses[request_id] = list(statuses)

    def create_request(
        self, *, title: str, body: str, head: str, base: str, draft: bool = False
    ) -> CreatedRequest:
        with self._lock:
            request_id = str(self.next_id)
            self.next_id += 1
            self.created.append(
                {"title": title, "body": body, "head": head, "base": base, "draft": draft}
            )
        return CreatedRequest(id=request_id, url=f"https://github.com/org/repo/pull/{request_id}")

    def get_status(self, request_id: str) -> ReviewStatus:
        with self._lock:
            self.polls[request_id] = self.polls.get(request_id, 0) + 1
            queue = self.statuses.get(request_id) or [ReviewStatus(state="open")]
            current = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(current, Exception):
            raise current
        return current

    def merge(self, request_id: str, *, method: str = "squash") -> None:
        if self.merge_error is not None:
            raise self.merge_error
        self.merged.append((request_id, method))

    def close(self, request_id: str) -> None:
        self.closed.append(request_id)


def ready_status(*check_names: str) -> ReviewStatus:
    return ReviewStatus(
        state="open",
        mergeable=True,
        checks=tuple(CheckRun(name, "success") for name in check_names or ("ci",)),
    )


def pending_status(*check_names: str) -> ReviewStatus:
    return ReviewStatus(
        state="open",
        checks=tuple(CheckRun(name, "pending") for name in check_names or ("ci",)),
    )
