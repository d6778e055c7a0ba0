"""Git helper functions.

Every helper takes the repository or worktree path explicitly and runs
``git -C <path>``; none of them depends on the process working directory.
"""

from __future__ import annotations

import re
from pathlib import Path
from urllib.parse import urlparse

from . import exec as exec_util

UNMERGED_STATUS_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})


def git_command(args: list[str], *, git_path: str | None = None) -> list[str]:
    """Build a git command using an optional executable path."""
    resolved = git_path.strip() if isinstance(git_path, str) else ""
    if not resolved:
        resolved = "git"
    return [resolved, *args]


def _request(
    repo_dir: Path,
    args: list[str],
    *,
    git_path: str | None = None,
    timeout_seconds: float | None = None,
) -> exec_util.CommandRequest:
    return exec_util.CommandRequest(
        argv=tuple(git_command(["-C", str(repo_dir), *args], git_path=git_path)),
        timeout_seconds=timeout_seconds,
    )


def run_git(
    repo_dir: Path,
    args: list[str],
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> exec_util.CommandResult:
    """Run git in ``repo_dir`` and raise ``CommandExecutionError`` on failure."""
    return exec_util.run_checked(
        _request(repo_dir, args, git_path=git_path, timeout_seconds=timeout_seconds),
        runner=runner,
    )


def _run_git_capture(
    repo_dir: Path,
    args: list[str],
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> exec_util.CommandResult | None:
    request = _request(repo_dir, args, git_path=git_path)
    result = exec_util.run_with_runner(request, runner=runner)
    if result is None:
        raise exec_util.CommandExecutionError(
            request=request, detail="missing required command: git"
        )
    if not result.ok:
        return None
    return result


def strip_git_suffix(path: str) -> str:
    """Remove a trailing ``.git`` suffix from a path string.

    Example:
        >>> strip_git_suffix("example/repo.git")
        'example/repo'
    """
    normalized = path.strip().rstrip("/")
    if normalized.lower().endswith(".git"):
        return normalized[: -len(".git")]
    return normalized


def normalize_origin_url(value: str) -> str:
    """Normalize a Git remote URL to ``host/owner/repo`` when it is hosted.

    Local paths are returned as absolute POSIX paths.

    Example:
        >>> normalize_origin_url("git@github.com:org/repo.git")
        'github.com/org/repo'
        >>> normalize_origin_url("https://github.com/org/repo")
        'github.com/org/repo'
    """
    raw = value.strip()
    if not raw:
        return ""

    scp_match = re.match(r"^(?P<user>[^@/]+)@(?P<host>[^:]+):(?P<path>.+)$", raw)
    if scp_match:
        host = scp_match.group("host").lower()
        path = strip_git_suffix(scp_match.group("path").lstrip("/"))
        return f"{host}/{path}"

    if "://" in raw:
        parsed = urlparse(raw)
        scheme = (parsed.scheme or "").lower()
        host = (parsed.hostname or "").lower()
        path = strip_git_suffix((parsed.path or "").lstrip("/"))
        if scheme in {"http", "https", "ssh", "git"} and host:
            return f"{host}/{path}"
        if scheme == "file":
            return Path(parsed.path).expanduser().resolve().as_posix()

    local_path = Path(raw).expanduser()
    if not local_path.is_absolute():
        local_path = local_path.resolve()
    return local_path.as_posix()


def git_remote_url(
    repo_dir: Path,
    remote: str = "origin",
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> str | None:
    """Return the configured URL for ``remote`` or ``None`` when unset."""
    result = _run_git_capture(
        repo_dir, ["remote", "get-url", remote], git_path=git_path, runner=runner
    )
    if result is None:
        return None
    return result.stdout.strip() or None


def git_current_branch(
    repo_dir: Path,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> str | None:
    """Return the checked-out branch name, or ``None`` when detached."""
    result = _run_git_capture(
        repo_dir, ["rev-parse", "--abbrev-ref", "HEAD"], git_path=git_path, runner=runner
    )
    if result is None:
        return None
    branch = result.stdout.strip()
    if not branch or branch == "HEAD":
        return None
    return branch


def git_ref_exists(
    repo_dir: Path,
    ref: str,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> bool:
    """Check whether a git ref exists (e.g. ``refs/heads/main``)."""
    result = _run_git_capture(
        repo_dir, ["show-ref", "--verify", "--quiet", ref], git_path=git_path, runner=runner
    )
    return result is not None


def git_default_branch(
    repo_dir: Path,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> str | None:
    """Determine the default branch from ``origin/HEAD`` or common names."""
    result = _run_git_capture(
        repo_dir,
        ["symbolic-ref", "refs/remotes/origin/HEAD"],
        git_path=git_path,
        runner=runner,
    )
    if result is not None:
        ref = result.stdout.strip()
        prefix = "refs/remotes/origin/"
        if ref.startswith(prefix) and ref[len(prefix) :].strip():
            return ref[len(prefix) :].strip()
    for candidate in ("main", "master"):
        if git_ref_exists(repo_dir, f"refs/heads/{candidate}", git_path=git_path, runner=runner):
            return candidate
    return git_current_branch(repo_dir, git_path=git_path, runner=runner)


def git_status_porcelain(
    repo_dir: Path,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> list[str]:
    """Return ``git status --porcelain`` lines; raises when git fails."""
    result = run_git(
        repo_dir,
        ["status", "--porcelain"],
        git_path=git_path,
        runner=runner,
        timeout_seconds=timeout_seconds,
    )
    return [line for line in result.stdout.splitlines() if line.strip()]


def unmerged_paths(status_lines: list[str]) -> list[str]:
    """Return paths whose porcelain status marks an unresolved merge.

    Example:
        >>> unmerged_paths(["UU src/app.py", " M README.md"])
        ['src/app.py']
    """
    paths: list[str] = []
    for line in status_lines:
        if line[:2] in UNMERGED_STATUS_CODES:
            paths.append(line[3:].strip())
    return paths


def git_ls_files(
    repo_dir: Path,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
    timeout_seconds: float | None = None,
) -> list[str]:
    """Return tracked file paths; raises when git fails."""
    result = run_git(
        repo_dir, ["ls-files"], git_path=git_path, runner=runner, timeout_seconds=timeout_seconds
    )
    return [line for line in result.stdout.splitlines() if line.strip()]


def git_diff_stat(
    repo_dir: Path,
    base: str,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> list[str]:
    """Return ``git diff --stat`` lines between ``base`` and ``HEAD``."""
    result = _run_git_capture(
        repo_dir, ["diff", "--stat", f"{base}...HEAD"], git_path=git_path, runner=runner
    )
    if result is None:
        return []
    return [line for line in result.stdout.splitlines() if line.strip()]


def git_commit_all(
    repo_dir: Path,
    message: str,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> bool:
    """Stage and commit every outstanding change.

    Returns:
        ``True`` when a commit was created, ``False`` when there was nothing
        to commit.
    """
    if not git_status_porcelain(repo_dir, git_path=git_path, runner=runner):
        return False
    run_git(repo_dir, ["add", "-A"], git_path=git_path, runner=runner)
    run_git(repo_dir, ["commit", "-m", message], git_path=git_path, runner=runner)
    return True


def git_push_branch(
    repo_dir: Path,
    branch: str,
    *,
    remote: str = "origin",
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> None:
    """Push ``branch`` to ``remote`` and set its upstream."""
    run_git(repo_dir, ["push", "-u", remote, branch], git_path=git_path, runner=runner)


def git_merge_no_ff(
    repo_dir: Path,
    source_branch: str,
    target_branch: str,
    *,
    git_path: str | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> None:
    """Merge ``source_branch`` into the checked-out ``target_branch`` with a merge commit."""
    message = f"Merge branch '{source_branch}' into {target_branch}"
    run_git(
        repo_dir,
        ["merge", source_branch, "--no-ff", "-m", message],
        git_path=git_path,
        runner=runner,
    )


def github_repo_slug(remote_url: str | None) -> str | None:
    """Extract ``owner/repo`` from a GitHub remote URL.

    Example:
        >>> github_repo_slug("git@github.com:org/repo.git")
        'org/repo'
        >>> github_repo_slug("/srv/git/repo") is None
        True
    """
    if not remote_url:
        return None
    normalized = normalize_origin_url(remote_url)
    if not normalized.startswith("github.com/"):
        return None
    parts = normalized.split("/")
    if len(parts) < 3 or not parts[1] or not parts[2]:
        return None
    return f"{parts[1]}/{parts[2]}"
