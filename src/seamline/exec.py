"""Typed subprocess boundary for git, gh and project tooling."""

from __future__ import annotations

import json
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)

TIMEOUT_RETURNCODE = 124


@dataclass(frozen=True)
class CommandRequest:
    """Typed command invocation request.

    ``cwd`` is always passed explicitly; the process working directory is
    never changed.
    """

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout_seconds: float | None = None


@dataclass(frozen=True)
class CommandResult:
    """Typed command execution result."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stderr/stdout, stripped, for diagnostics."""
        parts = [part.strip() for part in (self.stderr, self.stdout) if part and part.strip()]
        return "\n".join(parts)


class CommandRunner(Protocol):
    """Runtime command-execution interface.

    Returns ``None`` when the executable cannot be found.
    """

    def run(self, request: CommandRequest) -> CommandResult | None: ...


class SubprocessCommandRunner:
    """Default command-runner adapter backed by subprocess."""

    def run(self, request: CommandRequest) -> CommandResult | None:
        run_kwargs: dict[str, object] = {
            "cwd": request.cwd,
            "env": request.env,
            "check": False,
            "capture_output": True,
            "text": True,
        }
        if request.timeout_seconds is not None:
            run_kwargs["timeout"] = request.timeout_seconds
        try:
            completed = subprocess.run(list(request.argv), **run_kwargs)
        except FileNotFoundError:
            return None
        except subprocess.TimeoutExpired as exc:
            stdout = exc.stdout if isinstance(exc.stdout, str) else ""
            stderr = exc.stderr if isinstance(exc.stderr, str) else ""
            return CommandResult(
                argv=request.argv,
                returncode=TIMEOUT_RETURNCODE,
                stdout=stdout,
                stderr=stderr,
                timed_out=True,
            )

        stdout = completed.stdout if isinstance(completed.stdout, str) else ""
        stderr = completed.stderr if isinstance(completed.stderr, str) else ""
        return CommandResult(
            argv=request.argv,
            returncode=completed.returncode,
            stdout=stdout,
            stderr=stderr,
        )


_DEFAULT_COMMAND_RUNNER: CommandRunner = SubprocessCommandRunner()


def executable_available(name: str) -> bool:
    """Return whether ``name`` resolves on PATH."""
    return shutil.which(name) is not None


@dataclass(frozen=True)
class CommandExecutionError(RuntimeError):
    """Raised when a command is missing, times out, or exits non-zero."""

    request: CommandRequest
    detail: str
    result: CommandResult | None = None

    def __str__(self) -> str:
        return self.detail

    @property
    def timed_out(self) -> bool:
        return self.result is not None and self.result.timed_out


@dataclass(frozen=True)
class CommandParseError(RuntimeError):
    """Raised when command output parsing fails."""

    request: CommandRequest
    detail: str
    context: str | None = None

    def __str__(self) -> str:
        return self.detail


def run_with_runner(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult | None:
    """Execute a typed command request with the given runner."""
    active_runner = runner or _DEFAULT_COMMAND_RUNNER
    return active_runner.run(request)


def _missing_command_detail(request: CommandRequest) -> str:
    if not request.argv:
        return "missing required command"
    return f"missing required command: {request.argv[0]}"


def _command_failure_detail(request: CommandRequest, result: CommandResult) -> str:
    command_text = " ".join(request.argv)
    if result.timed_out:
        return f"command timed out after {request.timeout_seconds}s: {command_text}"
    if result.output:
        return f"command failed: {command_text}\n{result.output}"
    return f"command failed: {command_text}"


def run_checked(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult:
    """Execute a command and raise ``CommandExecutionError`` unless it succeeds."""
    result = run_with_runner(request, runner=runner)
    if result is None:
        raise CommandExecutionError(request=request, detail=_missing_command_detail(request))
    if not result.ok:
        raise CommandExecutionError(
            request=request,
            result=result,
            detail=_command_failure_detail(request, result),
        )
    return result


def parse_json_model(
    result: CommandResult, *, model_type: type[ModelT], context: str | None = None
) -> ModelT:
    """Parse command stdout JSON into a validated Pydantic model."""
    context_suffix = f" ({context})" if context else ""
    raw = (result.stdout or "").strip()
    if not raw:
        raise CommandParseError(
            request=CommandRequest(argv=result.argv),
            detail=f"failed to parse command output{context_suffix}: empty output",
            context=context,
        )
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CommandParseError(
            request=CommandRequest(argv=result.argv),
            detail=f"failed to parse command output{context_suffix}: {exc}",
            context=context,
        ) from exc
    try:
        return model_type.model_validate(payload)
    except ValidationError as exc:
        raise CommandParseError(
            request=CommandRequest(argv=result.argv),
            detail=f"failed to validate command output{context_suffix}: {exc}",
            context=context,
        ) from exc
