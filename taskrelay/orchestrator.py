"""Task orchestrator: the only place that records what a workflow run means.

The executor decides which stages run. The orchestrator owns everything with
a lasting effect:

- the pipeline record (init, per-stage updates, terminal transition)
- the manual-processing queue fallback
- notifications and the per-task audit log
- reruns of single stages and startup recovery of stale pipelines

Stage recording works by wrapping each runner handed to the executor in a
RecordingRunner, so the executor itself never sees a store.
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable

from . import config as taskrelay_config
from .decisions import DecisionProvider, TerminalDecisionProvider
from .errors import (
    PipelineExistsError,
    PipelineNotFoundError,
    RepoConfigError,
    StagePreconditionError,
    TaskRelayError,
)
from .executor import WorkflowExecutor
from .models import PipelineData, PipelineSummary, RepositoryConfig, Task, iso_timestamp
from .notifications import NotificationManager, build_notification_manager
from .pipeline_store import PipelineStore
from .stages import AgentRunner, StageConfig, StageContext, StageResult, get_stage_config
from .storage import Stores, open_stores
from .task_logger import TaskLogger

logger = logging.getLogger(__name__)


@dataclass
class ProcessTaskResult:
    success: bool
    task_id: str
    branch: str | None = None
    error: str | None = None
    failed_stage: str | None = None
    analysis: dict[str, Any] | None = None
    pipeline: PipelineData | None = None


@dataclass
class RerunResult:
    success: bool
    task_id: str
    stage: str
    branch: str | None = None
    error: str | None = None


class RecordingRunner:
    """Wraps an AgentRunner and records every attempt in the pipeline store.

    Before the attempt the stage is (re-)entered with update_stage; afterwards
    it is completed or failed. The audit log, agent execution record and
    stage notifications are written alongside.
    """

    def __init__(
        self,
        runner: AgentRunner,
        stage: StageConfig,
        pipeline: PipelineStore,
        notifications: NotificationManager,
        task_logger: Callable[[str], TaskLogger],
        display_name: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.runner = runner
        self.stage = stage
        self.pipeline = pipeline
        self.notifications = notifications
        self.task_logger = task_logger
        self.display_name = display_name or stage.display_name
        self._clock = clock

    def run(self, context: StageContext) -> StageResult:
        task_id = context.task_id
        pipeline_stage = self.stage.pipeline_stage
        task_log = self.task_logger(task_id)

        self.pipeline.update_stage(task_id, pipeline_stage, {"name": self.display_name})
        self.pipeline.store_agent_execution(
            task_id, self.stage.name, {"attempt": context.attempt, "status": "running"}
        )
        task_log.log_stage_started(pipeline_stage, attempt=context.attempt)
        self.notifications.notify_stage_started(task_id, pipeline_stage)

        try:
            result = self.runner.run(context)
        except TaskRelayError:
            raise
        except Exception as e:
            self._record_failure(context, str(e) or type(e).__name__, task_log)
            raise

        if result.success:
            record = self.pipeline.complete_stage(task_id, pipeline_stage, result.data)
            self._record_artifacts(context, result)
            entry = record.find_stage(pipeline_stage)
            duration = entry.duration if entry else None
            self.pipeline.store_agent_execution(
                task_id,
                self.stage.name,
                {
                    "attempt": context.attempt,
                    "status": "completed",
                    "completed_at": iso_timestamp(self._clock()),
                },
            )
            task_log.log_stage_completed(pipeline_stage, duration=duration)
            self.notifications.notify_stage_completed(task_id, pipeline_stage)
        else:
            self._record_failure(
                context, result.error or f"{self.stage.display_name} failed", task_log
            )

        return result

    def _record_artifacts(self, context: StageContext, result: StageResult) -> None:
        """Copy cross-stage outputs (analysis file, branch, PR number) into metadata."""
        task_id = context.task_id
        data = result.data
        updates: dict[str, Any] = {}

        if self.stage.name == "analysis":
            analysis_file = data.get("analysis_file") or data.get("file")
            if analysis_file:
                updates["analysis_file"] = analysis_file
            updates["analysis_fallback"] = bool(
                data.get("analysis_fallback", data.get("fallback", False))
            )
        elif self.stage.name == "implementation":
            self.pipeline.record_branch(task_id, data.get("branch") or context.branch)

        if data.get("pr_number") is not None:
            updates["pr_number"] = data["pr_number"]

        if updates:
            self.pipeline.update_metadata(task_id, updates)

    def _record_failure(self, context: StageContext, error: str, task_log: TaskLogger) -> None:
        task_id = context.task_id
        pipeline_stage = self.stage.pipeline_stage

        self.pipeline.fail_stage(task_id, pipeline_stage, error)
        self.pipeline.store_agent_execution(
            task_id,
            self.stage.name,
            {
                "attempt": context.attempt,
                "status": "failed",
                "error": error,
                "completed_at": iso_timestamp(self._clock()),
            },
        )
        task_log.log_stage_failed(pipeline_stage, error, attempt=context.attempt)
        self.notifications.notify_stage_failed(task_id, pipeline_stage, error)


class TaskOrchestrator:
    """Drives a task through the workflow and records the outcome.

    Args:
        stores: Opened stores (see storage.open_stores)
        runners: Stage name -> AgentRunner
        decisions: Consulted when a stage attempt fails
        notifications: Receives lifecycle events
        repo_config_resolver: Returns the active RepositoryConfig or raises RepoConfigError
        max_attempts: Attempts per stage before the workflow gives up
        skip_stages: Stages never run by process_task
        stale_timeout_ms: Default inactivity threshold for recover_stale_pipelines
        logs_dir: Directory for per-task audit logs (default: state dir)
    """

    def __init__(
        self,
        stores: Stores,
        runners: dict[str, AgentRunner],
        decisions: DecisionProvider,
        notifications: NotificationManager,
        repo_config_resolver: Callable[[], RepositoryConfig] = taskrelay_config.resolve_repo_config,
        max_attempts: int = taskrelay_config.DEFAULT_PIPELINE_CONFIG["max_stage_attempts"],
        skip_stages: Iterable[str] = (),
        stale_timeout_ms: int | None = None,
        logs_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.stores = stores
        self.runners = dict(runners)
        self.notifications = notifications
        self.repo_config_resolver = repo_config_resolver
        self.skip_stages = list(skip_stages)
        self.stale_timeout_ms = (
            stale_timeout_ms
            if stale_timeout_ms is not None
            else taskrelay_config.get_stale_timeout_ms({})
        )
        self.logs_dir = logs_dir
        self._clock = clock

        recording = {
            name: self._recording_runner(name, runner) for name, runner in self.runners.items()
        }
        self.executor = WorkflowExecutor(recording, decisions, max_attempts=max_attempts)

    @property
    def pipeline(self) -> PipelineStore:
        return self.stores.pipeline

    def _task_logger(self, task_id: str) -> TaskLogger:
        return TaskLogger(task_id, logs_dir=self.logs_dir, clock=self._clock)

    def _recording_runner(
        self, stage_name: str, runner: AgentRunner, display_name: str | None = None
    ) -> RecordingRunner:
        return RecordingRunner(
            runner,
            get_stage_config(stage_name),
            self.pipeline,
            self.notifications,
            self._task_logger,
            display_name=display_name,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Full workflow
    # ------------------------------------------------------------------

    def process_task(
        self, task: Task | dict[str, Any], skip_stages: Iterable[str] | None = None
    ) -> ProcessTaskResult:
        """Run the full workflow for ``task``.

        Never raises: every failure is recorded on the pipeline, the task is
        queued for manual processing and a failure notification is sent.
        A task whose pipeline is already in progress is refused untouched.
        """
        if isinstance(task, dict):
            task = Task.from_dict(task)
        task_id = task.id
        skip = self.skip_stages if skip_stages is None else list(skip_stages)

        logger.info("Processing task %s: %s", task_id, task.name)

        try:
            self.pipeline.init(task_id, task.name)
        except PipelineExistsError as e:
            logger.warning("Task %s is already being processed", task_id)
            return ProcessTaskResult(success=False, task_id=task_id, error=str(e))
        except Exception as e:
            logger.exception("Could not initialize pipeline for task %s", task_id)
            self.notifications.notify_workflow_failed(task_id, str(e))
            return ProcessTaskResult(success=False, task_id=task_id, error=str(e))

        self._task_logger(task_id).log_created(task.name)
        repo_config = None

        try:
            self.pipeline.update_metadata(task_id, {"repository": task.repository or "default"})

            try:
                repo_config = self.repo_config_resolver()
            except RepoConfigError as e:
                logger.error("Repository setup failed for task %s: %s", task_id, e)
                return self._handle_failure(task, f"Repository configuration error: {e}")

            if task.repository and task.repository != repo_config.repo:
                logger.warning(
                    "Task %s names repository %s but the active one is %s; using the active one",
                    task_id,
                    task.repository,
                    repo_config.repo,
                )

            result = self.executor.execute(task, repo_config, skip_stages=skip)

            if not result.success:
                return self._handle_failure(
                    task,
                    result.error or "Workflow failed",
                    stage=result.failed_stage,
                    repo_config=repo_config,
                    analysis=result.analysis,
                )

            current = self.pipeline.get(task_id)
            branch = (current and current.metadata.branch) or f"task-{task_id}"
            record = self.pipeline.complete(task_id, {"branch": branch})

        except Exception as e:
            logger.exception("Orchestration error for task %s", task_id)
            return self._handle_failure(task, str(e) or type(e).__name__, repo_config=repo_config)

        # The pipeline is completed from here on; nothing below may fail the task
        try:
            self._task_logger(task_id).log_completed(branch=branch)
        except Exception:
            logger.exception("Could not write completion log for task %s", task_id)
        self.notifications.notify_workflow_complete(task_id, branch=branch)

        return ProcessTaskResult(
            success=True,
            task_id=task_id,
            branch=branch,
            analysis=result.analysis,
            pipeline=record,
        )

    def _handle_failure(
        self,
        task: Task,
        error: str,
        stage: str | None = None,
        repo_config: RepositoryConfig | None = None,
        analysis: dict[str, Any] | None = None,
    ) -> ProcessTaskResult:
        """Fail the pipeline, queue the task and notify. Each step is attempted."""
        task_id = task.id
        record = None

        try:
            record = self.pipeline.fail(task_id, error)
        except Exception:
            logger.exception("Could not mark pipeline failed for task %s", task_id)

        try:
            outcome = self.stores.queue.add(task, repo_config)
            task_log = self._task_logger(task_id)
            task_log.log_failed(error, stage=stage)
            if outcome.get("success"):
                task_log.log_queued(reason="workflow failed")
        except Exception:
            logger.exception("Could not queue task %s for manual processing", task_id)

        self.notifications.notify_workflow_failed(task_id, error, stage=stage)

        return ProcessTaskResult(
            success=False,
            task_id=task_id,
            error=error,
            failed_stage=stage,
            analysis=analysis,
            pipeline=record,
        )

    # ------------------------------------------------------------------
    # Single-stage reruns
    # ------------------------------------------------------------------

    def rerun_codex_review(self, task_id: str) -> RerunResult:
        """Run the review stage once more for an implemented task."""
        return self._rerun(task_id, "review")

    def rerun_claude_fixes(self, task_id: str) -> RerunResult:
        """Run the fixes stage once more for an implemented task."""
        return self._rerun(task_id, "fixes")

    def _rerun(self, task_id: str, stage_name: str) -> RerunResult:
        """Single-shot rerun: no retry/skip/abort decisions.

        Raises:
            PipelineNotFoundError: the task has no pipeline
            StagePreconditionError: implementation hasn't completed, or no runner
            RepoConfigError: no usable repository configuration
        """
        stage = get_stage_config(stage_name)
        record = self.pipeline.get(task_id)
        if record is None:
            raise PipelineNotFoundError(task_id)

        implementing = record.find_stage("implementing")
        if implementing is None or implementing.status != "completed":
            raise StagePreconditionError(task_id, "implementation stage not completed")

        runner = self.runners.get(stage_name)
        if runner is None:
            raise StagePreconditionError(task_id, f"no runner configured for stage '{stage_name}'")

        repo_config = self.repo_config_resolver()
        branch = implementing.branch or f"task-{task_id}"
        task = Task(id=task_id, name=record.task_name, repository=record.metadata.repository)
        context = StageContext(task=task, repo_config=repo_config, rerun=True)

        logger.info("Re-running %s for task %s", stage_name, task_id)
        recorder = self._recording_runner(
            stage_name, runner, display_name=f"{stage.display_name} (Re-run)"
        )

        try:
            result = recorder.run(context)
        except TaskRelayError:
            raise
        except Exception as e:
            logger.exception("Rerun of %s raised for task %s", stage_name, task_id)
            result = StageResult.failed(str(e) or type(e).__name__)

        if result.success:
            branch = result.data.get("branch") or branch
            self.notifications.notify_rerun_complete(task_id, stage.pipeline_stage, branch=branch)
            return RerunResult(success=True, task_id=task_id, stage=stage_name, branch=branch)

        error = result.error or f"{stage.display_name} failed"
        self.notifications.notify_rerun_failed(task_id, stage.pipeline_stage, error)
        return RerunResult(success=False, task_id=task_id, stage=stage_name, error=error)

    # ------------------------------------------------------------------
    # Status and recovery
    # ------------------------------------------------------------------

    def get_task_status(self, task_id: str) -> PipelineSummary | None:
        return self.pipeline.get_summary(task_id)

    def get_active_tasks(self) -> list[PipelineData]:
        return self.pipeline.get_active()

    def recover_stale_pipelines(self, timeout_ms: int | None = None) -> int:
        """Fail every in-progress pipeline idle for longer than ``timeout_ms``.

        Meant to run once at startup, before any new task is processed.

        Returns:
            Number of pipelines recovered
        """
        return recover_stale_pipelines(
            self.pipeline,
            self.notifications,
            self.stale_timeout_ms if timeout_ms is None else timeout_ms,
            task_logger=self._task_logger,
            clock=self._clock,
        )


def recover_stale_pipelines(
    pipeline: PipelineStore,
    notifications: NotificationManager,
    timeout_ms: int,
    task_logger: Callable[[str], TaskLogger] = TaskLogger,
    clock: Callable[[], float] = time.time,
) -> int:
    """Startup sweep over stale pipelines; usable without any stage runners.

    Each stale pipeline is failed with a recovery message and a failure
    notification is sent. A record that can't be recovered is logged and
    skipped; an error listing the stale records propagates.

    Returns:
        Number of pipelines recovered
    """
    minutes = timeout_ms / 1000 / 60

    stale = pipeline.find_stale(timeout_ms)
    if not stale:
        logger.info("No stale tasks found")
        return 0

    logger.warning("Found %d stale task(s)", len(stale))
    recovered = 0

    for record in stale:
        task_id = record.task_id
        stage = record.current_stage
        try:
            pipeline.fail(
                task_id,
                f"Task marked as stale (stuck at stage '{stage}' for more than "
                f"{minutes:g} minutes). System recovered on startup.",
            )
            idle_ms = round(clock() * 1000) - record.last_updated_at
            task_logger(task_id).log_recovered(stage, idle_minutes=idle_ms // 60000)
            notifications.notify_stale_recovered(
                task_id,
                stage,
                f"Task was stuck at stage '{stage}' and marked as stale during system recovery.",
            )
            recovered += 1
            logger.info("Marked stale task %s (%s) as failed", task_id, record.task_name)
        except Exception:
            logger.exception("Failed to recover stale task %s", task_id)

    logger.info("Stale task recovery complete: %d of %d recovered", recovered, len(stale))
    return recovered


def build_orchestrator(
    runners: dict[str, AgentRunner],
    decisions: DecisionProvider | None = None,
    config: dict[str, Any] | None = None,
    clock: Callable[[], float] = time.time,
) -> TaskOrchestrator:
    """Wire an orchestrator for process start from config.yaml and the state dir."""
    if config is None:
        config = taskrelay_config.load_config()

    return TaskOrchestrator(
        stores=open_stores(clock=clock),
        runners=runners,
        decisions=decisions or TerminalDecisionProvider(),
        notifications=build_notification_manager(config),
        max_attempts=taskrelay_config.get_max_stage_attempts(config),
        skip_stages=taskrelay_config.get_skip_stages(config),
        stale_timeout_ms=taskrelay_config.get_stale_timeout_ms(config),
        clock=clock,
    )
