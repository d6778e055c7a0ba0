"""Quality checks run against one workspace.

Each check receives the workspace path explicitly and returns a
``CheckResult``. Tool crashes and timeouts raise ``ToolExecutionError`` so the
gate runner can retry them.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Literal

from . import exec as exec_util
from . import git
from . import log as seamline_log
from .policy import CheckPlanEntry
from .services.errors import ToolExecutionError

CheckStatus = Literal["passed", "warning", "failed", "skipped"]

NO_TEST_SCRIPT_MARKER = "no test specified"
CONFLICT_MARKER_PATTERN = re.compile(r"^(<{7}|>{7})(?: |$)", re.MULTILINE)
MAX_SCANNED_FILE_BYTES = 2 * 1024 * 1024
MAX_REPORTED_FILES = 10

_log = seamline_log.scoped("checks")


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one check."""

    name: str
    status: CheckStatus
    message: str
    detail: str = ""
    critical: bool = False
    attempts: int = 1
    duration_seconds: float = 0.0


@dataclass(frozen=True)
class CheckContext:
    """Shared inputs for check implementations."""

    mode: str = "standard"
    runner: exec_util.CommandRunner | None = None
    git_path: str | None = None


CheckFn = Callable[[Path, CheckPlanEntry, CheckContext], CheckResult]


def _tail(text: str, *, lines: int = 20) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def _run_tool(
    argv: tuple[str, ...],
    workspace: Path,
    entry: CheckPlanEntry,
    context: CheckContext,
) -> exec_util.CommandResult:
    request = exec_util.CommandRequest(
        argv=argv, cwd=workspace, timeout_seconds=entry.timeout_seconds
    )
    result = exec_util.run_with_runner(request, runner=context.runner)
    if result is None:
        raise ToolExecutionError(f"missing required command: {argv[0]}")
    if result.timed_out:
        raise ToolExecutionError(
            f"{' '.join(argv)} timed out after {entry.timeout_seconds:g}s", transient=True
        )
    if result.returncode < 0 or (result.returncode != 0 and not result.output):
        raise ToolExecutionError(
            f"{' '.join(argv)} exited {result.returncode} without output", transient=True
        )
    return result


def _package_manager(workspace: Path) -> str:
    if (workspace / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (workspace / "yarn.lock").exists():
        return "yarn"
    return "npm"


def _package_scripts(workspace: Path) -> dict[str, str]:
    manifest = workspace / "package.json"
    if not manifest.exists():
        return {}
    try:
        payload = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        _log.warning(f"unreadable package.json in {workspace}")
        return {}
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    if not isinstance(scripts, dict):
        return {}
    return {str(key): str(value) for key, value in scripts.items()}


def _script_argv(workspace: Path, script: str) -> tuple[str, ...]:
    manager = _package_manager(workspace)
    if manager == "yarn":
        return ("yarn", script)
    return (manager, "run", script)


def _makefile_targets(workspace: Path) -> set[str]:
    makefile = workspace / "Makefile"
    if not makefile.exists():
        return set()
    try:
        text = makefile.read_text(encoding="utf-8")
    except OSError:
        return set()
    return set(re.findall(r"^([A-Za-z0-9_.-]+)\s*:(?!=)", text, re.MULTILINE))


def _pyproject_text(workspace: Path) -> str:
    pyproject = workspace / "pyproject.toml"
    if not pyproject.exists():
        return ""
    try:
        return pyproject.read_text(encoding="utf-8")
    except OSError:
        return ""


def detect_command(workspace: Path, category: str) -> tuple[str, ...] | None:
    """Find the project command for ``build``, ``lint`` or ``test``.

    Detection order: ``package.json`` scripts, ``Makefile`` targets, then
    Python tooling declared in ``pyproject.toml``.
    """
    scripts = _package_scripts(workspace)
    script = scripts.get(category)
    if script is not None:
        if category == "test" and NO_TEST_SCRIPT_MARKER in script:
            return None
        return _script_argv(workspace, category)
    if category in _makefile_targets(workspace):
        return ("make", category)
    pyproject = _pyproject_text(workspace)
    if category == "lint" and "[tool.ruff" in pyproject:
        return ("ruff", "check", ".")
    if category == "test" and ("[tool.pytest" in pyproject or (workspace / "tests").is_dir()):
        if pyproject or (workspace / "setup.py").exists():
            return ("python", "-m", "pytest")
    return None


def detect_fix_command(workspace: Path) -> tuple[str, ...] | None:
    """Find the auto-fix command paired with the detected lint command."""
    scripts = _package_scripts(workspace)
    if "lint:fix" in scripts:
        return _script_argv(workspace, "lint:fix")
    if "lint" in scripts:
        return (*_script_argv(workspace, "lint"), "--", "--fix")
    if "lint-fix" in _makefile_targets(workspace):
        return ("make", "lint-fix")
    if "[tool.ruff" in _pyproject_text(workspace):
        return ("ruff", "check", "--fix", ".")
    return None


def check_git_status(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
    try:
        lines = git.git_status_porcelain(
            workspace,
            git_path=context.git_path,
            runner=context.runner,
            timeout_seconds=entry.timeout_seconds,
        )
    except exec_util.CommandExecutionError as exc:
        raise ToolExecutionError(str(exc), transient=exc.timed_out) from exc
    conflicted = git.unmerged_paths(lines)
    if conflicted:
        return CheckResult(
            name="git-status",
            status="failed",
            message=f"{len(conflicted)} path(s) with unresolved merge conflicts",
            detail="\n".join(conflicted[:MAX_REPORTED_FILES]),
            critical=True,
        )
    if lines:
        return CheckResult(
            name="git-status",
            status="warning",
            message=f"{len(lines)} uncommitted change(s)",
            detail="\n".join(lines[:MAX_REPORTED_FILES]),
        )
    return CheckResult(name="git-status", status="passed", message="working tree clean")


def _file_has_conflict_markers(path: Path) -> bool:
    try:
        if path.stat().st_size > MAX_SCANNED_FILE_BYTES:
            return False
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return False
    return CONFLICT_MARKER_PATTERN.search(text) is not None


def check_conflicts(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
    try:
        tracked = git.git_ls_files(
            workspace,
            git_path=context.git_path,
            runner=context.runner,
            timeout_seconds=entry.timeout_seconds,
        )
    except exec_util.CommandExecutionError as exc:
        raise ToolExecutionError(str(exc), transient=exc.timed_out) from exc
    deadline = time.monotonic() + entry.timeout_seconds
    flagged: list[str] = []
    for scanned, name in enumerate(tracked):
        if time.monotonic() >= deadline:
            raise ToolExecutionError(
                f"conflict scan timed out after {entry.timeout_seconds:g}s"
                f" ({scanned} of {len(tracked)} files scanned)"
            )
        if _file_has_conflict_markers(workspace / name):
            flagged.append(name)
    if flagged:
        return CheckResult(
            name="conflict-detection",
            status="failed",
            message=f"conflict markers found in {len(flagged)} file(s)",
            detail="\n".join(flagged[:MAX_REPORTED_FILES]),
            critical=True,
        )
    return CheckResult(
        name="conflict-detection",
        status="passed",
        message=f"no conflict markers in {len(tracked)} tracked file(s)",
    )


def _command_check(
    category: str,
    workspace: Path,
    entry: CheckPlanEntry,
    context: CheckContext,
) -> CheckResult:
    argv = entry.command or detect_command(workspace, category)
    if argv is None:
        if category == "test" and context.mode == "strict":
            return CheckResult(
                name=category,
                status="warning",
                message="no test command configured or detected",
            )
        return CheckResult(name=category, status="skipped", message=f"no {category} command found")
    result = _run_tool(argv, workspace, entry, context)
    command_text = " ".join(argv)
    if result.returncode == 0:
        return CheckResult(name=category, status="passed", message=f"{command_text} succeeded")
    return CheckResult(
        name=category,
        status="failed",
        message=f"{command_text} exited {result.returncode}",
        detail=_tail(result.output),
    )


def check_build(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
    return _command_check("build", workspace, entry, context)


def check_lint(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
    if entry.auto_fix:
        fix_argv = entry.fix_command or detect_fix_command(workspace)
        if fix_argv is not None:
            fix_result = exec_util.run_with_runner(
                exec_util.CommandRequest(
                    argv=fix_argv, cwd=workspace, timeout_seconds=entry.timeout_seconds
                ),
                runner=context.runner,
            )
            if fix_result is None or not fix_result.ok:
                _log.warning(f"lint auto-fix did not complete in {workspace}")
    result = _command_check("lint", workspace, entry, context)
    if entry.auto_fix and result.status == "passed":
        return replace(result, message=f"{result.message} (after auto-fix)")
    return result


def check_tests(workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
    return _command_check("test", workspace, entry, context)


DEFAULT_CHECKS: dict[str, CheckFn] = {
    "git-status": check_git_status,
    "build": check_build,
    "lint": check_lint,
    "test": check_tests,
    "conflict-detection": check_conflicts,
}


def timed(fn: CheckFn, workspace: Path, entry: CheckPlanEntry, context: CheckContext) -> CheckResult:
    """Run ``fn`` and stamp its wall-clock duration on the result."""
    started = time.monotonic()
    result = fn(workspace, entry, context)
    return replace(result, duration_seconds=round(time.monotonic() - started, 3))
