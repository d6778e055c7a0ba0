"""Service contracts shared by the pipeline components."""

from .base import BaseService
from .errors import (
    ConflictError,
    ExternalCommandFailedError,
    IntegrationError,
    IoFailedError,
    MonitoringError,
    PolicyBlockedError,
    ServiceFailure,
    ToolExecutionError,
    ValidationError,
    ValidationFailedError,
    WorkspaceLockError,
)

__all__ = [
    "BaseService",
    "ConflictError",
    "ExternalCommandFailedError",
    "IntegrationError",
    "IoFailedError",
    "MonitoringError",
    "PolicyBlockedError",
    "ServiceFailure",
    "ToolExecutionError",
    "ValidationError",
    "ValidationFailedError",
    "WorkspaceLockError",
]
