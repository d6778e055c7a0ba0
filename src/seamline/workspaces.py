"""Workspace manager: inventory of isolated, branch-bound working trees.

The manager owns the persisted workspace registry and delegates filesystem
and VCS work to a ``WorkspaceProvider``. Mutations on one workspace id are
serialized; different ids proceed concurrently.
"""

from __future__ import annotations

import datetime as dt
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import config
from . import log as seamline_log
from .locks import KeyedLocks
from .models import WorkspaceSection
from .services.errors import (
    ConflictError,
    ExternalCommandFailedError,
    PolicyBlockedError,
    ValidationFailedError,
    WorkspaceLockError,
)
from .tasks import TaskStore
from .worktrees import WorkspaceProvider, WorktreeEntry

MAIN_WORKSPACE_ID = "main"
REGISTRY_VERSION = 1

_log = seamline_log.scoped("workspace")


def sanitize_name(name: str) -> str:
    """Normalize a workspace name into a branch/path-safe token.

    Example:
        >>> sanitize_name("  task 7  fix ")
        'task-7-fix'
    """
    return re.sub(r"\s+", "-", name.strip())


class WorkspaceRecord(BaseModel):
    """Persisted registry entry for one workspace."""

    model_config = ConfigDict(extra="allow", alias_generator=to_camel, populate_by_name=True)

    path: str
    branch: str | None = None
    source_branch: str | None = None
    linked_tasks: list[str] = Field(default_factory=list)
    created_at: str
    last_updated: str
    last_accessed: str | None = None
    description: str = ""
    status: str = "active"
    locked: bool = False
    lock_reason: str | None = None


class RegistryDocument(BaseModel):
    model_config = ConfigDict(extra="allow")

    version: int = REGISTRY_VERSION
    workspaces: dict[str, WorkspaceRecord] = Field(default_factory=dict)


@dataclass(frozen=True)
class Workspace:
    """Read-only view of one workspace."""

    id: str
    path: Path
    branch: str | None
    source_branch: str | None = None
    locked: bool = False
    lock_reason: str | None = None
    created_at: str | None = None
    last_accessed: str | None = None
    linked_tasks: tuple[str, ...] = ()
    description: str = ""
    status: str = "active"
    is_main: bool = False


@dataclass(frozen=True)
class RemovalRecord:
    workspace_id: str
    path: Path
    branch: str | None
    removed_at: str
    reason: str
    idle_days: float | None = None


@dataclass(frozen=True)
class LinkResult:
    workspace_id: str
    linked_tasks: tuple[str, ...]
    added: tuple[str, ...]


@dataclass(frozen=True)
class SweepResult:
    removed: tuple[RemovalRecord, ...] = ()
    skipped: dict[str, str] = field(default_factory=dict)


class WorkspaceRegistry:
    """JSON-backed registry, loaded once and rewritten after each mutation."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()
        payload = config.load_json(path)
        if payload is None:
            self._document = RegistryDocument()
        else:
            self._document = RegistryDocument.model_validate(payload)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def snapshot(self) -> dict[str, WorkspaceRecord]:
        with self._lock:
            return {name: record.model_copy(deep=True) for name, record in self._document.workspaces.items()}

    def get(self, name: str) -> WorkspaceRecord | None:
        with self._lock:
            record = self._document.workspaces.get(name)
            return record.model_copy(deep=True) if record is not None else None

    def put(self, name: str, record: WorkspaceRecord) -> None:
        with self._lock:
            self._document.workspaces[name] = record
            self._persist()

    def drop(self, name: str) -> None:
        with self._lock:
            if self._document.workspaces.pop(name, None) is not None:
                self._persist()

    def replace_all(self, records: dict[str, WorkspaceRecord]) -> None:
        with self._lock:
            self._document.workspaces = dict(records)
            self._persist()

    def _persist(self) -> None:
        config.write_json(self.path, self._document.model_dump(mode="json", by_alias=True))


def _to_workspace(name: str, record: WorkspaceRecord) -> Workspace:
    return Workspace(
        id=name,
        path=Path(record.path),
        branch=record.branch,
        source_branch=record.source_branch,
        locked=record.locked,
        lock_reason=record.lock_reason,
        created_at=record.created_at,
        last_accessed=record.last_accessed or record.created_at,
        linked_tasks=tuple(record.linked_tasks),
        description=record.description,
        status=record.status,
    )


def _same_path(left: Path, right: Path) -> bool:
    return left.expanduser().resolve() == right.expanduser().resolve()


class WorkspaceManager:
    """Create, list, lock, link and reclaim workspaces."""

    def __init__(
        self,
        repo_root: Path,
        *,
        provider: WorkspaceProvider,
        registry: WorkspaceRegistry,
        worktrees_root: Path,
        task_store: TaskStore | None = None,
        settings: WorkspaceSection | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.provider = provider
        self.registry = registry
        self.worktrees_root = worktrees_root
        self.task_store = task_store
        self.settings = settings or WorkspaceSection()
        self._locks = KeyedLocks()

    def _require(self, workspace_id: str) -> WorkspaceRecord:
        record = self.registry.get(workspace_id)
        if record is None:
            raise ValidationFailedError(
                f"unknown workspace: {workspace_id}",
                recovery_hint="list workspaces to see registered names",
            )
        return record

    def _main_workspace(self, entries: list[WorktreeEntry] | None = None) -> Workspace:
        if entries is None:
            entries = self.provider.list()
        main = next((entry for entry in entries if entry.is_main), None)
        return Workspace(
            id=MAIN_WORKSPACE_ID,
            path=main.path if main is not None else self.repo_root,
            branch=main.branch if main is not None else None,
            is_main=True,
        )

    def create(
        self, name: str, base_branch: str | None = None, *, description: str = ""
    ) -> Workspace:
        """Create a workspace on a new branch forked from ``base_branch``."""
        workspace_id = sanitize_name(name)
        if not workspace_id:
            raise ValidationFailedError("workspace name must not be empty")
        if workspace_id == MAIN_WORKSPACE_ID:
            raise ValidationFailedError(f"workspace name {MAIN_WORKSPACE_ID!r} is reserved")
        with self._locks.hold(workspace_id):
            if self.registry.get(workspace_id) is not None:
                raise ConflictError(f"workspace already exists: {workspace_id}")
            path = self.worktrees_root / workspace_id
            if path.exists():
                raise ConflictError(f"workspace path already exists: {path}")
            branch = f"{self.settings.branch_prefix}{workspace_id}"
            if self.provider.branch_exists(branch):
                raise ConflictError(
                    f"branch already exists: {branch}",
                    recovery_hint="choose another workspace name or delete the branch",
                )
            base = base_branch or "HEAD"
            self.provider.create(path, branch, base)
            now = config.utc_now()
            record = WorkspaceRecord(
                path=str(path),
                branch=branch,
                source_branch=base_branch,
                created_at=now,
                last_updated=now,
                last_accessed=now,
                description=description,
            )
            self.registry.put(workspace_id, record)
        _log.success(f"created workspace {workspace_id} at {path} on {branch}")
        return _to_workspace(workspace_id, record)

    def list(self) -> list[Workspace]:
        """Reconcile disk and registry, then return every workspace.

        The disk listing is taken under the registry lock so a concurrent
        create or remove cannot land between the listing and the reconcile.
        """
        with self.registry.lock:
            entries = self.provider.list()
            records = self.registry.snapshot()
            changed = False
            disk = [entry for entry in entries if not entry.is_main]
            for name in list(records):
                record_path = Path(records[name].path)
                if not any(_same_path(entry.path, record_path) for entry in disk):
                    _log.debug(f"pruning {name}: {record_path} no longer on disk")
                    del records[name]
                    changed = True
            for entry in disk:
                if any(_same_path(entry.path, Path(r.path)) for r in records.values()):
                    continue
                name = sanitize_name(entry.path.name)
                suffix = 2
                while name in records or name == MAIN_WORKSPACE_ID:
                    name = f"{sanitize_name(entry.path.name)}-{suffix}"
                    suffix += 1
                now = config.utc_now()
                records[name] = WorkspaceRecord(
                    path=str(entry.path),
                    branch=entry.branch,
                    created_at=now,
                    last_updated=now,
                    last_accessed=now,
                    description="adopted from disk",
                    locked=entry.locked,
                    lock_reason=entry.lock_reason,
                )
                _log.debug(f"adopted {name} from {entry.path}")
                changed = True
            if changed:
                self.registry.replace_all(records)
        workspaces = [_to_workspace(name, record) for name, record in sorted(records.items())]
        return [self._main_workspace(entries), *workspaces]

    def get(self, workspace_id: str) -> Workspace:
        if workspace_id == MAIN_WORKSPACE_ID:
            return self._main_workspace()
        return _to_workspace(workspace_id, self._require(workspace_id))

    def lock(self, workspace_id: str, reason: str) -> Workspace:
        """Lock a workspace; locking an already locked workspace fails."""
        if workspace_id == MAIN_WORKSPACE_ID:
            raise PolicyBlockedError("the main workspace cannot be locked")
        with self._locks.hold(workspace_id):
            record = self._require(workspace_id)
            if record.locked:
                raise WorkspaceLockError(
                    f"workspace {workspace_id} is already locked"
                    + (f": {record.lock_reason}" if record.lock_reason else "")
                )
            self.provider.lock(Path(record.path), reason)
            record.locked = True
            record.lock_reason = reason
            record.last_updated = config.utc_now()
            self.registry.put(workspace_id, record)
        _log.info(f"locked {workspace_id}: {reason}")
        return _to_workspace(workspace_id, record)

    def unlock(self, workspace_id: str) -> Workspace:
        """Unlock a workspace; unlocking an unlocked workspace fails."""
        with self._locks.hold(workspace_id):
            record = self._require(workspace_id)
            if not record.locked:
                raise WorkspaceLockError(f"workspace {workspace_id} is not locked")
            self.provider.unlock(Path(record.path))
            record.locked = False
            record.lock_reason = None
            record.last_updated = config.utc_now()
            self.registry.put(workspace_id, record)
        _log.info(f"unlocked {workspace_id}")
        return _to_workspace(workspace_id, record)

    def remove(
        self, workspace_id: str, *, force: bool = False, reason: str = "removed"
    ) -> RemovalRecord:
        """Remove a workspace; the main workspace is never removable."""
        if workspace_id == MAIN_WORKSPACE_ID:
            raise PolicyBlockedError("refusing to remove the main workspace")
        with self._locks.hold(workspace_id):
            record = self._require(workspace_id)
            path = Path(record.path)
            if record.locked and not force:
                raise PolicyBlockedError(
                    f"workspace {workspace_id} is locked",
                    recovery_hint="unlock it first or pass force",
                )
            if record.locked:
                self.provider.unlock(path)
            try:
                self.provider.remove(path, force=force)
            except ExternalCommandFailedError:
                if record.locked:
                    self.provider.lock(path, record.lock_reason or "locked")
                raise
            self.registry.drop(workspace_id)
        _log.success(f"removed workspace {workspace_id}")
        return RemovalRecord(
            workspace_id=workspace_id,
            path=path,
            branch=record.branch,
            removed_at=config.utc_now(),
            reason=reason,
        )

    def reclaim(self, workspace_id: str) -> RemovalRecord:
        """Unlock if needed and force-remove a workspace after its work merged."""
        return self.remove(workspace_id, force=True, reason="merged")

    def touch(self, workspace_id: str) -> None:
        with self._locks.hold(workspace_id):
            record = self._require(workspace_id)
            record.last_accessed = config.utc_now()
            self.registry.put(workspace_id, record)

    def _expand_task_ids(self, task_ids: list[str], include_subtasks: bool) -> list[str]:
        if self.task_store is None:
            raise ValidationFailedError("no task store configured for task linking")
        expanded: list[str] = []
        for task_id in task_ids:
            task = self.task_store.get_task(task_id)
            if task is None:
                raise ValidationFailedError(f"unknown task: {task_id}")
            candidates = [task.id]
            if include_subtasks:
                candidates.extend(task.subtask_ids)
            for candidate in candidates:
                if candidate not in expanded:
                    expanded.append(candidate)
        return expanded

    def link_tasks(
        self, workspace_id: str, task_ids: list[str], *, include_subtasks: bool = True
    ) -> LinkResult:
        """Link tasks to a workspace, deduplicated, with subtasks by default."""
        with self._locks.hold(workspace_id):
            record = self._require(workspace_id)
            expanded = self._expand_task_ids(task_ids, include_subtasks)
            added = tuple(task_id for task_id in expanded if task_id not in record.linked_tasks)
            record.linked_tasks = [*record.linked_tasks, *added]
            record.last_updated = config.utc_now()
            self.registry.put(workspace_id, record)
        _log.debug(f"linked {len(added)} task(s) to {workspace_id}")
        return LinkResult(
            workspace_id=workspace_id, linked_tasks=tuple(record.linked_tasks), added=added
        )

    def unlink_task(self, workspace_id: str, task_id: str) -> LinkResult:
        with self._locks.hold(workspace_id):
            record = self._require(workspace_id)
            if task_id not in record.linked_tasks:
                raise ValidationFailedError(
                    f"task {task_id} is not linked to workspace {workspace_id}"
                )
            record.linked_tasks = [linked for linked in record.linked_tasks if linked != task_id]
            record.last_updated = config.utc_now()
            self.registry.put(workspace_id, record)
        return LinkResult(
            workspace_id=workspace_id, linked_tasks=tuple(record.linked_tasks), added=()
        )

    def workspaces_for_task(self, task_id: str) -> list[Workspace]:
        return [
            _to_workspace(name, record)
            for name, record in sorted(self.registry.snapshot().items())
            if task_id in record.linked_tasks
        ]

    def idle_sweep(
        self, max_age_days: float | None = None, *, now: dt.datetime | None = None
    ) -> SweepResult:
        """Remove unlocked workspaces idle for longer than ``max_age_days``.

        Dirty workspaces and workspaces the provider refuses to remove are
        reported as skipped, never force-removed.
        """
        threshold = max_age_days if max_age_days is not None else self.settings.idle_cleanup_days
        current = now or dt.datetime.now(tz=dt.timezone.utc)
        removed: list[RemovalRecord] = []
        skipped: dict[str, str] = {}
        for name, record in sorted(self.registry.snapshot().items()):
            if record.locked:
                continue
            accessed = config.parse_timestamp(record.last_accessed or record.created_at)
            if accessed is None:
                skipped[name] = "missing last-accessed timestamp"
                continue
            idle_days = (current - accessed).total_seconds() / 86400
            if idle_days < threshold:
                continue
            try:
                if self.provider.status(Path(record.path)):
                    skipped[name] = "uncommitted changes"
                    _log.warning(f"idle sweep skipped {name}: uncommitted changes")
                    continue
                removal = self.remove(name, reason="idle")
            except (ExternalCommandFailedError, PolicyBlockedError, ValidationFailedError) as exc:
                skipped[name] = str(exc)
                _log.warning(f"idle sweep skipped {name}: {exc}")
                continue
            removed.append(
                RemovalRecord(
                    workspace_id=removal.workspace_id,
                    path=removal.path,
                    branch=removal.branch,
                    removed_at=removal.removed_at,
                    reason="idle",
                    idle_days=round(idle_days, 2),
                )
            )
        if removed:
            _log.info(f"idle sweep reclaimed {len(removed)} workspace(s)")
        return SweepResult(removed=tuple(removed), skipped=skipped)
