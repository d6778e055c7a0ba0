"""Service failure contracts.

Components return typed outcomes on success and raise ServiceFailure on
expected domain, policy or runtime failures. Programmer bugs raise normal
exceptions.
"""

from __future__ import annotations

from typing import Literal

ServiceFailureCode = Literal[
    "validation_failed",
    "conflict",
    "policy_blocked",
    "external_command_failed",
    "tool_execution_failed",
    "integration_failed",
    "monitoring_failed",
    "io_failed",
]


class ServiceFailure(Exception):
    """Expected failure: validation, policy, or runtime error.

    Use ``raise ServiceFailure(...) from exc`` to chain a causing exception;
    it is available as ``__cause__``.
    """

    def __init__(
        self,
        code: ServiceFailureCode,
        message: str,
        *,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.recovery_hint = recovery_hint


class ValidationFailedError(ServiceFailure):
    """Invalid input: unknown workspace or task, invalid mode."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("validation_failed", message, recovery_hint=recovery_hint)


ValidationError = ValidationFailedError


class ConflictError(ServiceFailure):
    """The requested resource collides with an existing one."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("conflict", message, recovery_hint=recovery_hint)


class WorkspaceLockError(ConflictError):
    """Lock guard violated (double lock, unlock while unlocked)."""


class PolicyBlockedError(ServiceFailure):
    """Policy gate blocked the operation."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("policy_blocked", message, recovery_hint=recovery_hint)


class ExternalCommandFailedError(ServiceFailure):
    """External command (git, gh, etc.) failed."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("external_command_failed", message, recovery_hint=recovery_hint)


class ToolExecutionError(ServiceFailure):
    """A check tool failed to run; ``transient`` failures are retried."""

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__("tool_execution_failed", message, recovery_hint=recovery_hint)
        self.transient = transient


class IntegrationError(ServiceFailure):
    """An integration step (commit, push, merge, create-request) failed.

    The workspace is left as-is for manual recovery.
    """

    def __init__(
        self,
        step: str,
        message: str,
        *,
        workspace_id: str | None = None,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__("integration_failed", message, recovery_hint=recovery_hint)
        self.step = step
        self.workspace_id = workspace_id


class MonitoringError(ServiceFailure):
    """Polling a tracked integration request failed."""

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__("monitoring_failed", message, recovery_hint=recovery_hint)
        self.request_id = request_id


class IoFailedError(ServiceFailure):
    """I/O operation failed (read, write, config)."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("io_failed", message, recovery_hint=recovery_hint)
