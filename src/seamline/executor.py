"""Integration routing and execution.

``decide_route`` picks how a gated workspace rejoins the main codebase;
``IntegrationExecutor`` performs that route. Failed steps are never rolled
back: the outcome names the step and the workspace is left for manual
recovery.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from . import exec as exec_util
from . import git
from . import log as seamline_log
from .gates import GateResult, Verdict, render_gate_report
from .models import IntegrationSection
from .review import CreatedRequest, ReviewService
from .services.base import BaseService
from .services.errors import ExternalCommandFailedError, IntegrationError, ServiceFailure
from .tasks import Task, root_task_id
from .workspaces import Workspace

Route = Literal["create-review-request", "merge-local", "manual-approval-required"]
OutcomeStatus = Literal["merged-local", "request-created", "awaiting-approval", "failed"]

_log = seamline_log.scoped("integrate")


@dataclass(frozen=True)
class RepositoryInfo:
    """Remote capabilities that drive routing."""

    has_remote: bool
    supports_hosted_requests: bool = False
    automation_enabled: bool = True
    repo_slug: str | None = None

    @classmethod
    def detect(
        cls,
        repo_root: Path,
        *,
        remote: str = "origin",
        automation_enabled: bool = True,
        git_path: str | None = None,
        runner: exec_util.CommandRunner | None = None,
    ) -> RepositoryInfo:
        remote_url = git.git_remote_url(repo_root, remote, git_path=git_path, runner=runner)
        slug = git.github_repo_slug(remote_url)
        return cls(
            has_remote=remote_url is not None,
            supports_hosted_requests=slug is not None and exec_util.executable_available("gh"),
            automation_enabled=automation_enabled,
            repo_slug=slug,
        )


def decide_route(verdict: Verdict, repository: RepositoryInfo, *, mode: str) -> Route:
    """Choose the integration route for a gated session.

    Example:
        >>> decide_route("critical-fail", RepositoryInfo(has_remote=False), mode="permissive")
        'manual-approval-required'
        >>> decide_route("pass", RepositoryInfo(has_remote=False), mode="strict")
        'merge-local'
    """
    if verdict == "critical-fail":
        return "manual-approval-required"
    if mode == "strict" and verdict != "pass":
        return "manual-approval-required"
    if not repository.has_remote:
        return "merge-local"
    if repository.supports_hosted_requests and repository.automation_enabled:
        return "create-review-request"
    return "merge-local"


def commit_message(task: Task) -> str:
    """Build the commit message for a task or subtask.

    Example:
        >>> commit_message(Task(id="7.2", title="Add parser"))
        'feat(task-7): complete subtask 7.2 - Add parser'
    """
    scope = f"task-{root_task_id(task.id)}"
    title = task.title.strip() or f"task {task.id}"
    if task.is_subtask:
        return f"feat({scope}): complete subtask {task.id} - {title}"
    return f"feat({scope}): {title}"


def request_title(task: Task) -> str:
    title = task.title.strip()
    return f"Task {task.id}: {title}" if title else f"Task {task.id}"


def request_body(task: Task, gate: GateResult, *, workspace: Workspace) -> str:
    """Build the review request body, embedding the gate report."""
    sections = [f"Implements task {task.id}."]
    if task.description.strip():
        sections.append(task.description.strip())
    sections.append(render_gate_report(gate))
    sections.append(f"Workspace: `{workspace.id}` (branch `{workspace.branch}`)")
    return "\n\n".join(sections) + "\n"


@dataclass(frozen=True)
class IntegrationContext:
    """Everything the executor needs for one session."""

    workspace: Workspace
    task: Task
    gate: GateResult
    target_branch: str | None = None
    approved: bool = False


@dataclass(frozen=True)
class IntegrationOutcome:
    route: Route
    status: OutcomeStatus
    workspace_id: str
    committed: bool = False
    request: CreatedRequest | None = None
    target_branch: str | None = None
    failed_step: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status in {"merged-local", "request-created"}


@dataclass(frozen=True)
class ExecutionRequest:
    route: Route
    context: IntegrationContext


class IntegrationExecutor(BaseService[ExecutionRequest, IntegrationOutcome]):
    """Perform a chosen integration route against one workspace."""

    def __init__(
        self,
        repo_root: Path,
        *,
        review_service: ReviewService | None = None,
        settings: IntegrationSection | None = None,
        git_path: str | None = None,
        runner: exec_util.CommandRunner | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.review_service = review_service
        self.settings = settings or IntegrationSection()
        self.git_path = git_path
        self.runner = runner

    def execute(self, route: Route, context: IntegrationContext) -> IntegrationOutcome:
        return self(ExecutionRequest(route=route, context=context))

    def _run(self, request: ExecutionRequest) -> IntegrationOutcome:
        context = request.context
        if request.route == "manual-approval-required" and not context.approved:
            _log.warning(
                f"{context.workspace.id}: manual approval required ({context.gate.verdict});"
                " nothing executed"
            )
            return IntegrationOutcome(
                route=request.route,
                status="awaiting-approval",
                workspace_id=context.workspace.id,
            )
        if request.route == "create-review-request":
            return self._create_review_request(context)
        return self._merge_local(request.route, context)

    def _handle_failure(
        self, request: ExecutionRequest, error: ServiceFailure
    ) -> IntegrationOutcome:
        if not isinstance(error, IntegrationError):
            raise error
        _log.error(
            f"{request.context.workspace.id}: {error.step} failed: {error};"
            " workspace left as-is for manual recovery"
        )
        return IntegrationOutcome(
            route=request.route,
            status="failed",
            workspace_id=request.context.workspace.id,
            failed_step=error.step,
            error=str(error),
        )

    def _target_branch(self, context: IntegrationContext) -> str:
        target = (
            context.target_branch
            or self.settings.target_branch
            or context.workspace.source_branch
            or git.git_default_branch(self.repo_root, git_path=self.git_path, runner=self.runner)
        )
        if not target or target == "HEAD":
            raise IntegrationError(
                "resolve-target",
                "unable to resolve the target branch",
                workspace_id=context.workspace.id,
                recovery_hint="set integration.target_branch",
            )
        return target

    def _commit(self, context: IntegrationContext) -> bool:
        try:
            committed = git.git_commit_all(
                context.workspace.path,
                commit_message(context.task),
                git_path=self.git_path,
                runner=self.runner,
            )
        except exec_util.CommandExecutionError as exc:
            raise IntegrationError("commit", str(exc), workspace_id=context.workspace.id) from exc
        if committed:
            _log.info(f"{context.workspace.id}: committed outstanding changes")
        else:
            _log.debug(f"{context.workspace.id}: nothing to commit")
        return committed

    def _merge_local(self, route: Route, context: IntegrationContext) -> IntegrationOutcome:
        committed = self._commit(context)
        target: str | None = None
        if self.settings.local_merge_into_target:
            target = self._target_branch(context)
            branch = context.workspace.branch
            current = git.git_current_branch(
                self.repo_root, git_path=self.git_path, runner=self.runner
            )
            if not branch or current != target:
                raise IntegrationError(
                    "merge-target",
                    f"target branch {target} is not checked out in {self.repo_root}",
                    workspace_id=context.workspace.id,
                    recovery_hint=f"check out {target} in the main workspace and merge manually",
                )
            try:
                git.git_merge_no_ff(
                    self.repo_root, branch, target, git_path=self.git_path, runner=self.runner
                )
            except exec_util.CommandExecutionError as exc:
                raise IntegrationError(
                    "merge-target", str(exc), workspace_id=context.workspace.id
                ) from exc
            _log.success(f"merged {branch} into {target}")
        return IntegrationOutcome(
            route=route,
            status="merged-local",
            workspace_id=context.workspace.id,
            committed=committed,
            target_branch=target,
        )

    def _create_review_request(self, context: IntegrationContext) -> IntegrationOutcome:
        workspace = context.workspace
        if self.review_service is None:
            raise IntegrationError(
                "create-request", "no review service configured", workspace_id=workspace.id
            )
        if not workspace.branch:
            raise IntegrationError(
                "push", "workspace has no branch checked out", workspace_id=workspace.id
            )
        target = self._target_branch(context)
        committed = self._commit(context)
        try:
            git.git_push_branch(
                workspace.path,
                workspace.branch,
                remote=self.settings.remote,
                git_path=self.git_path,
                runner=self.runner,
            )
        except exec_util.CommandExecutionError as exc:
            raise IntegrationError("push", str(exc), workspace_id=workspace.id) from exc
        try:
            created = self.review_service.create_request(
                title=request_title(context.task),
                body=request_body(context.task, context.gate, workspace=workspace),
                head=workspace.branch,
                base=target,
                draft=self.settings.draft,
            )
        except ExternalCommandFailedError as exc:
            raise IntegrationError(
                "create-request", str(exc), workspace_id=workspace.id
            ) from exc
        _log.success(f"{workspace.id}: review request {created.id} opened against {target}")
        return IntegrationOutcome(
            route="create-review-request",
            status="request-created",
            workspace_id=workspace.id,
            committed=committed,
            request=created,
            target_branch=target,
        )
