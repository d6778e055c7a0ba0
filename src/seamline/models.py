"""Pydantic models for seamline pipeline configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SAFETY_MODE_VALUES = ("permissive", "standard", "strict")
SafetyMode = Literal["permissive", "standard", "strict"]

CHECK_CATEGORY_VALUES = ("git-status", "build", "lint", "test", "conflict-detection")
CheckCategory = Literal["git-status", "build", "lint", "test", "conflict-detection"]

MERGE_METHOD_VALUES = ("squash", "merge", "rebase")
MergeMethod = Literal["squash", "merge", "rebase"]

DEFAULT_CHECK_TIMEOUTS: dict[str, float] = {
    "git-status": 30.0,
    "build": 120.0,
    "lint": 30.0,
    "test": 180.0,
    "conflict-detection": 30.0,
}


def _strip_lower(value: object) -> object:
    if isinstance(value, str):
        return value.strip().lower()
    return value


class CheckSettings(BaseModel):
    """Per-check overrides layered over the safety mode defaults.

    ``None`` means "use the mode default".

    Attributes:
        enabled: Force the check on or off.
        auto_fix: Run the fix command before checking (lint only).
        fail_on_error: Treat a failure as blocking.
        timeout_seconds: Per-attempt timeout.
        command: Explicit command argv replacing detection.
        fix_command: Explicit fix argv used with ``auto_fix``.
        retries: Extra attempts for transient tool failures.

    Example:
        >>> CheckSettings(enabled=True, command="make lint").command
        ['make', 'lint']
    """

    model_config = ConfigDict(extra="allow")

    enabled: bool | None = None
    auto_fix: bool | None = None
    fail_on_error: bool | None = None
    timeout_seconds: float | None = Field(default=None, gt=0)
    command: list[str] | None = None
    fix_command: list[str] | None = None
    retries: int | None = Field(default=None, ge=0)

    @field_validator("command", "fix_command", mode="before")
    @classmethod
    def split_command(cls, value: object) -> object:
        if isinstance(value, str):
            parts = value.split()
            return parts or None
        return value


class SafetySection(BaseModel):
    """Safety policy configuration.

    Attributes:
        mode: Pipeline-level safety mode; ``None`` defers to task/default.
        fail_on_error: Make lint failures blocking in standard mode.
        checks: Per-check overrides keyed by check category.

    Example:
        >>> SafetySection(mode=" Strict ").mode
        'strict'
    """

    model_config = ConfigDict(extra="allow")

    mode: SafetyMode | None = None
    fail_on_error: bool = False
    checks: dict[CheckCategory, CheckSettings] = Field(default_factory=dict)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: object) -> object:
        value = _strip_lower(value)
        if value == "":
            return None
        return value


class GateSection(BaseModel):
    """Quality gate runner tuning.

    Attributes:
        max_workers: Concurrent check workers (at most 5).
        retry_attempts: Default extra attempts for transient failures.
        retry_backoff_seconds: Initial backoff, doubled per attempt.
    """

    model_config = ConfigDict(extra="allow")

    max_workers: int = Field(default=5, ge=1, le=5)
    retry_attempts: int = Field(default=2, ge=0)
    retry_backoff_seconds: float = Field(default=0.5, ge=0)


class IntegrationSection(BaseModel):
    """Integration routing and execution settings.

    Attributes:
        automation: Allow automatic review-request creation.
        remote: Remote used for pushes.
        target_branch: Merge target; ``None`` resolves the default branch.
        auto_merge: Merge review requests automatically once ready.
        merge_method: Hosted merge method (squash|merge|rebase).
        required_checks: Hosted check names that must pass before merging.
        require_approval: Require an approved review before auto-merge.
        local_merge_into_target: After a local commit, merge into the target
            branch when it is checked out in the main repository.
        draft: Create review requests as drafts.

    Example:
        >>> IntegrationSection(merge_method="SQUASH").merge_method
        'squash'
    """

    model_config = ConfigDict(extra="allow")

    automation: bool = True
    remote: str = "origin"
    target_branch: str | None = None
    auto_merge: bool = False
    merge_method: MergeMethod = "squash"
    required_checks: list[str] = Field(default_factory=list)
    require_approval: bool = False
    local_merge_into_target: bool = False
    draft: bool = False

    @field_validator("merge_method", mode="before")
    @classmethod
    def normalize_merge_method(cls, value: object) -> object:
        return _strip_lower(value)

    @field_validator("target_branch", mode="before")
    @classmethod
    def normalize_target_branch(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip() or None
        return value

    @field_validator("required_checks", mode="before")
    @classmethod
    def normalize_required_checks(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class MonitorSection(BaseModel):
    """Integration monitor polling settings.

    Attributes:
        poll_seconds: Interval between polls of one request.
        max_retries: Consecutive failed polls tolerated before giving up.
        max_duration_seconds: Total tracking time before giving up.
        cleanup_after_merge: Reclaim the workspace after a merge.
        event_log_limit: Events kept per tracked request.
    """

    model_config = ConfigDict(extra="allow")

    poll_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    max_duration_seconds: float = Field(default=86400.0, gt=0)
    cleanup_after_merge: bool = True
    event_log_limit: int = Field(default=100, ge=1)


class WorkspaceSection(BaseModel):
    """Workspace manager settings.

    Attributes:
        branch_prefix: Prefix applied to workspace branch names.
        idle_cleanup_days: Age after which idle workspaces are reclaimed.
        git_path: Git executable path.
    """

    model_config = ConfigDict(extra="allow")

    branch_prefix: str = ""
    idle_cleanup_days: float = Field(default=7.0, gt=0)
    git_path: str = "git"

    @field_validator("branch_prefix", mode="before")
    @classmethod
    def normalize_prefix(cls, value: object) -> object:
        if value is None:
            return ""
        return value

    @field_validator("git_path", mode="before")
    @classmethod
    def normalize_git_path(cls, value: object) -> object:
        if value is None:
            return "git"
        if isinstance(value, str):
            return value.strip() or "git"
        return value


class PipelineConfig(BaseModel):
    """Full pipeline configuration document.

    Example:
        >>> config = PipelineConfig.model_validate({"monitor": {"poll_seconds": 5}})
        >>> (config.monitor.poll_seconds, config.safety.mode)
        (5.0, None)
    """

    model_config = ConfigDict(extra="allow")

    safety: SafetySection = Field(default_factory=SafetySection)
    gates: GateSection = Field(default_factory=GateSection)
    integration: IntegrationSection = Field(default_factory=IntegrationSection)
    monitor: MonitorSection = Field(default_factory=MonitorSection)
    workspaces: WorkspaceSection = Field(default_factory=WorkspaceSection)
