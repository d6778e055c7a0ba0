"""Safety policy resolution.

Maps a safety mode plus configuration overrides to the effective check plan
the quality gate runs. Resolution is pure: no I/O, no clock.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from .models import (
    CHECK_CATEGORY_VALUES,
    DEFAULT_CHECK_TIMEOUTS,
    SAFETY_MODE_VALUES,
    CheckCategory,
    CheckSettings,
    SafetyMode,
)
from .services.errors import ValidationFailedError

DEFAULT_SAFETY_MODE: SafetyMode = "standard"

_ENABLED_BY_MODE: dict[str, frozenset[str]] = {
    "permissive": frozenset({"git-status"}),
    "standard": frozenset({"git-status", "lint"}),
    "strict": frozenset(CHECK_CATEGORY_VALUES),
}


@dataclass(frozen=True)
class CheckPlanEntry:
    """Effective settings for one check category."""

    category: CheckCategory
    enabled: bool
    blocking: bool
    auto_fix: bool = False
    timeout_seconds: float = 30.0
    retries: int = 0
    command: tuple[str, ...] | None = None
    fix_command: tuple[str, ...] | None = None


@dataclass(frozen=True)
class EffectivePlan:
    """Resolved check plan for one session."""

    mode: SafetyMode
    entries: tuple[CheckPlanEntry, ...]

    def entry(self, category: str) -> CheckPlanEntry:
        for entry in self.entries:
            if entry.category == category:
                return entry
        raise KeyError(category)

    @property
    def enabled(self) -> frozenset[str]:
        return frozenset(entry.category for entry in self.entries if entry.enabled)

    @property
    def blocking(self) -> frozenset[str]:
        return frozenset(
            entry.category for entry in self.entries if entry.enabled and entry.blocking
        )


def normalize_mode(value: str) -> SafetyMode:
    """Validate a safety mode string.

    Example:
        >>> normalize_mode(" STRICT ")
        'strict'
    """
    normalized = value.strip().lower()
    if normalized not in SAFETY_MODE_VALUES:
        raise ValidationFailedError(
            f"invalid safety mode: {value!r}",
            recovery_hint=f"use one of: {', '.join(SAFETY_MODE_VALUES)}",
        )
    return normalized  # type: ignore[return-value]


def resolve_safety_mode(
    explicit: str | None = None,
    pipeline: str | None = None,
    task: str | None = None,
) -> SafetyMode:
    """Pick the session's safety mode.

    Precedence: explicit override, pipeline config, task-level override,
    then the ``standard`` default.

    Example:
        >>> resolve_safety_mode(None, "strict", "permissive")
        'strict'
        >>> resolve_safety_mode(None, None, None)
        'standard'
    """
    for candidate in (explicit, pipeline, task):
        if candidate is not None and candidate.strip():
            return normalize_mode(candidate)
    return DEFAULT_SAFETY_MODE


def _default_blocking(mode: SafetyMode, category: str, fail_on_error: bool) -> bool:
    if mode == "strict":
        return True
    if mode == "standard":
        return category == "lint" and fail_on_error
    return False


def resolve_plan(
    mode: SafetyMode,
    overrides: Mapping[str, CheckSettings] | None = None,
    *,
    fail_on_error: bool = False,
    default_retries: int = 2,
) -> EffectivePlan:
    """Resolve the effective check plan for ``mode``.

    Overrides apply identically in every mode. ``permissive`` never blocks;
    in ``standard`` an override's ``fail_on_error`` makes that check blocking;
    ``strict`` blocks every enabled check.
    """
    mode = normalize_mode(mode)
    overrides = overrides or {}
    entries: list[CheckPlanEntry] = []
    for category in CHECK_CATEGORY_VALUES:
        override = overrides.get(category) or CheckSettings()
        enabled = category in _ENABLED_BY_MODE[mode]
        if override.enabled is not None:
            enabled = override.enabled
        check_fail_on_error = (
            override.fail_on_error if override.fail_on_error is not None else fail_on_error
        )
        if mode == "standard" and override.fail_on_error is not None:
            blocking = override.fail_on_error
        else:
            blocking = _default_blocking(mode, category, check_fail_on_error)
        entries.append(
            CheckPlanEntry(
                category=category,
                enabled=enabled,
                blocking=enabled and blocking,
                auto_fix=bool(override.auto_fix) and category == "lint",
                timeout_seconds=override.timeout_seconds or DEFAULT_CHECK_TIMEOUTS[category],
                retries=override.retries if override.retries is not None else default_retries,
                command=tuple(override.command) if override.command else None,
                fix_command=tuple(override.fix_command) if override.fix_command else None,
            )
        )
    return EffectivePlan(mode=mode, entries=tuple(entries))
