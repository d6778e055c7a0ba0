"""Tests for typed command execution helpers."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest
from pydantic import BaseModel

from seamline import exec as exec_util


class _Payload(BaseModel):
    number: int


def test_subprocess_command_runner_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """Runner returns typed output and forwards execution options."""
    calls: dict[str, object] = {}

    def fake_run(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        calls["argv"] = argv
        calls["kwargs"] = kwargs
        return subprocess.CompletedProcess(argv, 0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    request = exec_util.CommandRequest(
        argv=("npm", "run", "lint"),
        cwd=Path("/tmp"),
        env={"CI": "1"},
        timeout_seconds=30.0,
    )
    result = exec_util.SubprocessCommandRunner().run(request)

    assert result == exec_util.CommandResult(
        argv=("npm", "run", "lint"), returncode=0, stdout="ok", stderr=""
    )
    assert calls["argv"] == ["npm", "run", "lint"]
    run_kwargs = calls["kwargs"]
    assert isinstance(run_kwargs, dict)
    assert run_kwargs["cwd"] == Path("/tmp")
    assert run_kwargs["env"] == {"CI": "1"}
    assert run_kwargs["timeout"] == 30.0
    assert run_kwargs["check"] is False


def test_subprocess_command_runner_returns_none_when_missing_executable(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Runner returns None when the executable is not found."""

    def fake_run(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        del argv, kwargs
        raise FileNotFoundError

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert exec_util.SubprocessCommandRunner().run(exec_util.CommandRequest(argv=("nope",))) is None


def test_subprocess_command_runner_reports_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    """Timeouts become a result flagged ``timed_out`` instead of raising."""

    def fake_run(argv: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(argv, 1.0, output="partial", stderr=None)

    monkeypatch.setattr(subprocess, "run", fake_run)

    result = exec_util.SubprocessCommandRunner().run(
        exec_util.CommandRequest(argv=("pytest",), timeout_seconds=1.0)
    )

    assert result is not None
    assert result.timed_out is True
    assert result.returncode == exec_util.TIMEOUT_RETURNCODE
    assert result.ok is False
    assert result.stdout == "partial"


def test_run_checked_raises_on_failure() -> None:
    """Non-zero exits raise with the combined output in the message."""

    class FailingRunner:
        def run(self, request: exec_util.CommandRequest) -> exec_util.CommandResult:
            return exec_util.CommandResult(
                argv=request.argv, returncode=2, stdout="out", stderr="err"
            )

    with pytest.raises(exec_util.CommandExecutionError) as excinfo:
        exec_util.run_checked(exec_util.CommandRequest(argv=("make", "build")), runner=FailingRunner())

    assert str(excinfo.value) == "command failed: make build\nerr\nout"
    assert excinfo.value.timed_out is False


def test_run_checked_timeout_detail() -> None:
    class SlowRunner:
        def run(self, request: exec_util.CommandRequest) -> exec_util.CommandResult:
            return exec_util.CommandResult(
                argv=request.argv, returncode=124, stdout="", stderr="", timed_out=True
            )

    with pytest.raises(exec_util.CommandExecutionError) as excinfo:
        exec_util.run_checked(
            exec_util.CommandRequest(argv=("pytest",), timeout_seconds=5.0), runner=SlowRunner()
        )

    assert excinfo.value.timed_out is True
    assert "timed out after 5.0s" in str(excinfo.value)


def test_parse_json_model_validates_stdout() -> None:
    """Command stdout is parsed through a Pydantic model."""
    result = exec_util.CommandResult(
        argv=("gh", "pr", "view"), returncode=0, stdout='{"number": 7}\n', stderr=""
    )

    assert exec_util.parse_json_model(result, model_type=_Payload, context="gh pr view").number == 7


@pytest.mark.parametrize("stdout", ["", "not json", '{"number": "x"}'])
def test_parse_json_model_rejects_bad_output(stdout: str) -> None:
    result = exec_util.CommandResult(argv=("gh",), returncode=0, stdout=stdout, stderr="")

    with pytest.raises(exec_util.CommandParseError, match="command output"):
        exec_util.parse_json_model(result, model_type=_Payload)
