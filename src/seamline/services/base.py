"""Base service ABC.

Services extend BaseService and implement _run(request) -> T, raising
ServiceFailure on expected errors. __call__ catches ServiceFailure and hands
it to _handle_failure, which re-raises by default; subclasses override it to
convert failures into typed outcomes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from .errors import ServiceFailure

R = TypeVar("R")
T = TypeVar("T")


class BaseService(ABC, Generic[R, T]):
    """Abstract base for orchestration services."""

    def __call__(self, request: R) -> T:
        try:
            return self._run(request)
        except ServiceFailure as exc:
            return self._handle_failure(request, exc)

    @abstractmethod
    def _run(self, request: R) -> T:
        """Execute the service logic. Raise ServiceFailure on expected errors."""
        ...

    def _handle_failure(self, request: R, error: ServiceFailure) -> T:
        """Handle ServiceFailure. Default re-raises; override for recovery."""
        raise error
