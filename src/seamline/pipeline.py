"""Session pipeline: gate, route, execute and hand off completed sessions."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from . import config as config_util
from . import exec as exec_util
from . import log as seamline_log
from . import paths
from .executor import (
    IntegrationContext,
    IntegrationExecutor,
    IntegrationOutcome,
    RepositoryInfo,
    Route,
    decide_route,
    request_title,
)
from .gates import GateResult, QualityGateRunner
from .locks import KeyedLocks
from .models import PipelineConfig
from .monitor import IntegrationMonitor, request_from_outcome
from .policy import resolve_plan, resolve_safety_mode
from .review import GithubReviewService
from .services.errors import ServiceFailure, ValidationFailedError
from .status import StatusPropagator, StatusUpdate
from .tasks import TaskStore
from .workspaces import WorkspaceManager, WorkspaceRegistry
from .worktrees import GitWorktreeProvider

_log = seamline_log.scoped("pipeline")


@dataclass(frozen=True)
class SessionCompleted:
    """Input signalling that a coding session finished in a workspace."""

    session_id: str
    workspace_id: str
    task_id: str
    safety_mode: str | None = None
    task_safety_mode: str | None = None
    approved: bool = False


@dataclass(frozen=True)
class SessionReport:
    session_id: str
    workspace_id: str
    task_id: str
    mode: str | None = None
    gate: GateResult | None = None
    route: Route | None = None
    outcome: IntegrationOutcome | None = None
    status: StatusUpdate | None = None
    monitored_request_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.outcome is not None and self.outcome.success


class SessionPipeline:
    """One logical flow per completed session."""

    def __init__(
        self,
        *,
        workspace_manager: WorkspaceManager,
        task_store: TaskStore,
        gate_runner: QualityGateRunner,
        executor: IntegrationExecutor,
        status_propagator: StatusPropagator,
        repository: RepositoryInfo,
        monitor: IntegrationMonitor | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.workspace_manager = workspace_manager
        self.task_store = task_store
        self.gate_runner = gate_runner
        self.executor = executor
        self.status_propagator = status_propagator
        self.repository = repository
        self.monitor = monitor
        self.config = config or PipelineConfig()
        self._workspace_locks = KeyedLocks()

    def process(self, event: SessionCompleted) -> SessionReport:
        """Run gate, route, execute, status and monitor hand-off for one session."""
        with self._workspace_locks.hold(event.workspace_id):
            return self._process(event)

    def _process(self, event: SessionCompleted) -> SessionReport:
        task = self.task_store.get_task(event.task_id)
        if task is None:
            raise ValidationFailedError(f"unknown task: {event.task_id}")
        workspace = self.workspace_manager.get(event.workspace_id)
        if not workspace.is_main:
            self.workspace_manager.touch(workspace.id)

        mode = resolve_safety_mode(
            event.safety_mode,
            self.config.safety.mode,
            event.task_safety_mode or task.safety_mode,
        )
        plan = resolve_plan(
            mode,
            self.config.safety.checks,
            fail_on_error=self.config.safety.fail_on_error,
            default_retries=self.config.gates.retry_attempts,
        )
        _log.info(f"session {event.session_id}: gating {workspace.id} in {mode} mode")
        gate = self.gate_runner.run(workspace.path, plan)
        route = decide_route(gate.verdict, self.repository, mode=mode)
        _log.info(f"session {event.session_id}: verdict {gate.verdict}, route {route}")

        context = IntegrationContext(
            workspace=workspace,
            task=task,
            gate=gate,
            approved=event.approved and gate.verdict != "critical-fail",
        )
        outcome = self.executor.execute(route, context)
        status = self.status_propagator.mark_complete(task.id, route, outcome)

        monitored: str | None = None
        if outcome.request is not None and self.monitor is not None:
            tracked = self.monitor.start_monitoring(
                request_from_outcome(
                    outcome.request.id,
                    url=outcome.request.url,
                    task_id=task.id,
                    workspace_id=workspace.id,
                    source_branch=workspace.branch,
                    target_branch=outcome.target_branch,
                    title=request_title(task),
                    integration=self.config.integration,
                )
            )
            monitored = tracked.request_id
        return SessionReport(
            session_id=event.session_id,
            workspace_id=workspace.id,
            task_id=task.id,
            mode=mode,
            gate=gate,
            route=route,
            outcome=outcome,
            status=status,
            monitored_request_id=monitored,
            error=outcome.error,
        )

    def _process_reported(self, event: SessionCompleted) -> SessionReport:
        try:
            return self.process(event)
        except ServiceFailure as exc:
            _log.error(f"session {event.session_id} failed: {exc}")
            return SessionReport(
                session_id=event.session_id,
                workspace_id=event.workspace_id,
                task_id=event.task_id,
                error=str(exc),
            )

    def process_many(
        self, events: list[SessionCompleted], *, max_workers: int = 4
    ) -> list[SessionReport]:
        """Process sessions concurrently; reports keep the input order."""
        if not events:
            return []
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(events)))) as pool:
            return list(pool.map(self._process_reported, events))


def build_pipeline(
    repo_root: Path,
    *,
    task_store: TaskStore,
    config: PipelineConfig | None = None,
    data_dir: Path | None = None,
    runner: exec_util.CommandRunner | None = None,
) -> SessionPipeline:
    """Wire the default git/GitHub adapters for ``repo_root``."""
    project_path = paths.project_dir(repo_root, data_dir=data_dir)
    if config is None:
        config = config_util.load_pipeline_config(paths.config_path(project_path))
    git_path = config.workspaces.git_path
    repository = RepositoryInfo.detect(
        repo_root,
        remote=config.integration.remote,
        automation_enabled=config.integration.automation,
        git_path=git_path,
        runner=runner,
    )
    review_service = GithubReviewService(repo_root, repo_slug=repository.repo_slug, runner=runner)
    workspace_manager = WorkspaceManager(
        repo_root,
        provider=GitWorktreeProvider(repo_root, git_path=git_path, runner=runner),
        registry=WorkspaceRegistry(paths.registry_path(project_path)),
        worktrees_root=paths.worktrees_dir(project_path),
        task_store=task_store,
        settings=config.workspaces,
    )
    status_propagator = StatusPropagator(task_store)
    monitor = IntegrationMonitor(
        review_service,
        status_propagator=status_propagator,
        workspace_manager=workspace_manager,
        settings=config.monitor,
        state_path=paths.monitor_state_path(project_path),
    )
    return SessionPipeline(
        workspace_manager=workspace_manager,
        task_store=task_store,
        gate_runner=QualityGateRunner(
            runner=runner,
            git_path=git_path,
            max_workers=config.gates.max_workers,
            retry_backoff_seconds=config.gates.retry_backoff_seconds,
        ),
        executor=IntegrationExecutor(
            repo_root,
            review_service=review_service,
            settings=config.integration,
            git_path=git_path,
            runner=runner,
        ),
        status_propagator=status_propagator,
        repository=repository,
        monitor=monitor,
        config=config,
    )
