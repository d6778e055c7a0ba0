"""Workspace provider port and its git-worktree adapter."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from . import exec as exec_util
from . import git
from .services.errors import ExternalCommandFailedError


@dataclass(frozen=True)
class WorktreeEntry:
    """One working tree reported by the provider."""

    path: Path
    branch: str | None
    head: str | None = None
    locked: bool = False
    lock_reason: str | None = None
    is_main: bool = False
    prunable: bool = False


class WorkspaceProvider(Protocol):
    """Operations the workspace manager needs from the underlying VCS."""

    def create(self, path: Path, branch: str, base: str) -> None: ...

    def list(self) -> list[WorktreeEntry]: ...

    def remove(self, path: Path, *, force: bool = False) -> None: ...

    def lock(self, path: Path, reason: str) -> None: ...

    def unlock(self, path: Path) -> None: ...

    def status(self, path: Path) -> list[str]: ...

    def diff_stat(self, path: Path, base: str) -> list[str]: ...

    def branch_exists(self, branch: str) -> bool: ...


def parse_worktree_porcelain(raw: str) -> list[WorktreeEntry]:
    """Parse ``git worktree list --porcelain`` output.

    The first record is the main working tree.

    Example:
        >>> entries = parse_worktree_porcelain(
        ...     "worktree /repo\\nHEAD abc\\nbranch refs/heads/main\\n\\n"
        ...     "worktree /wt/task-7\\nHEAD def\\nbranch refs/heads/task-7\\nlocked busy\\n"
        ... )
        >>> [(e.branch, e.is_main, e.locked, e.lock_reason) for e in entries]
        [('main', True, False, None), ('task-7', False, True, 'busy')]
    """
    entries: list[WorktreeEntry] = []
    record: dict[str, str | bool] = {}

    def flush() -> None:
        path = record.get("worktree")
        if not isinstance(path, str):
            record.clear()
            return
        branch = record.get("branch")
        if isinstance(branch, str) and branch.startswith("refs/heads/"):
            branch = branch[len("refs/heads/") :]
        reason = record.get("locked")
        head = record.get("HEAD")
        entries.append(
            WorktreeEntry(
                path=Path(path),
                branch=branch if isinstance(branch, str) else None,
                head=head if isinstance(head, str) else None,
                locked="locked" in record,
                lock_reason=reason if isinstance(reason, str) and reason else None,
                is_main=not entries,
                prunable="prunable" in record,
            )
        )
        record.clear()

    for line in raw.splitlines():
        if not line.strip():
            flush()
            continue
        key, _, value = line.partition(" ")
        record[key] = value.strip() if value else True
    flush()
    return entries


class GitWorktreeProvider:
    """Workspace provider backed by ``git worktree``.

    All commands run against ``repo_root`` or the worktree path passed in.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        git_path: str | None = None,
        runner: exec_util.CommandRunner | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.git_path = git_path
        self.runner = runner

    def _git(self, args: list[str], *, cwd: Path | None = None) -> exec_util.CommandResult:
        try:
            return git.run_git(
                cwd or self.repo_root, args, git_path=self.git_path, runner=self.runner
            )
        except exec_util.CommandExecutionError as exc:
            raise ExternalCommandFailedError(str(exc)) from exc

    def create(self, path: Path, branch: str, base: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._git(["worktree", "add", "-b", branch, str(path), base])

    def list(self) -> list[WorktreeEntry]:
        result = self._git(["worktree", "list", "--porcelain"])
        return parse_worktree_porcelain(result.stdout)

    def remove(self, path: Path, *, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self._git(args)

    def lock(self, path: Path, reason: str) -> None:
        self._git(["worktree", "lock", "--reason", reason, str(path)])

    def unlock(self, path: Path) -> None:
        self._git(["worktree", "unlock", str(path)])

    def prune(self) -> None:
        self._git(["worktree", "prune"])

    def status(self, path: Path) -> list[str]:
        try:
            return git.git_status_porcelain(path, git_path=self.git_path, runner=self.runner)
        except exec_util.CommandExecutionError as exc:
            raise ExternalCommandFailedError(str(exc)) from exc

    def diff_stat(self, path: Path, base: str) -> list[str]:
        return git.git_diff_stat(path, base, git_path=self.git_path, runner=self.runner)

    def branch_exists(self, branch: str) -> bool:
        return git.git_ref_exists(
            self.repo_root, f"refs/heads/{branch}", git_path=self.git_path, runner=self.runner
        )
