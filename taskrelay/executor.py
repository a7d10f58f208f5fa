"""Workflow executor: runs the fixed stage sequence for one task.

The executor only decides what runs next. Recording the outcome in the
pipeline store, queueing failures and notifying people is the orchestrator's
job, so nothing here touches a store or a notifier.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import DEFAULT_PIPELINE_CONFIG
from .decisions import Decision, DecisionProvider
from .errors import RetryLimitExceededError, TaskRelayError, WorkflowAbortedError
from .models import RepositoryConfig, Task
from .stages import WORKFLOW_STAGES, AgentRunner, StageConfig, StageContext, StageResult, get_stage_config

logger = logging.getLogger(__name__)

# Stage outcomes reported in WorkflowResult.outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_NOT_RUN = "not_run"


@dataclass
class WorkflowResult:
    success: bool
    analysis: dict[str, Any] | None = None
    error: str | None = None
    failed_stage: str | None = None
    outcomes: dict[str, str] = field(default_factory=dict)


class WorkflowExecutor:
    """Run analysis, implementation, review and fixes in order.

    Args:
        runners: Stage name -> AgentRunner. ``implementation`` is required;
            optional stages without a runner are not run.
        decisions: Consulted after every failed attempt
        max_attempts: Upper bound on attempts per stage
    """

    def __init__(
        self,
        runners: dict[str, AgentRunner],
        decisions: DecisionProvider,
        max_attempts: int = DEFAULT_PIPELINE_CONFIG["max_stage_attempts"],
    ):
        unknown = set(runners) - set(WORKFLOW_STAGES)
        if unknown:
            raise ValueError(f"Unknown stage runner(s): {', '.join(sorted(unknown))}")
        for name in WORKFLOW_STAGES:
            if get_stage_config(name).critical and name not in runners:
                raise ValueError(f"A runner for critical stage '{name}' is required")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.runners = runners
        self.decisions = decisions
        self.max_attempts = max_attempts

    def execute(
        self,
        task: Task,
        repo_config: RepositoryConfig,
        skip_stages: Iterable[str] = (),
    ) -> WorkflowResult:
        """Run every stage not listed in ``skip_stages``.

        Returns a failed WorkflowResult when a stage is aborted or exhausts its
        attempts; remaining stages are never started. Errors raised by
        taskrelay itself (store failures) propagate.
        """
        skip = set(skip_stages)
        context = StageContext(task=task, repo_config=repo_config)
        outcomes = {name: OUTCOME_NOT_RUN for name in WORKFLOW_STAGES}

        logger.info("Starting workflow for task %s (%s)", task.id, repo_config.full_name)

        try:
            for name in WORKFLOW_STAGES:
                stage = get_stage_config(name)
                runner = self.runners.get(name)

                if name in skip:
                    logger.info("Skipping stage %s for task %s (requested)", name, task.id)
                    outcomes[name] = OUTCOME_SKIPPED
                    continue
                if runner is None:
                    logger.debug("No runner for stage %s, not running it", name)
                    outcomes[name] = OUTCOME_SKIPPED
                    continue

                result = self._run_stage(stage, runner, context)
                if result is None:
                    outcomes[name] = OUTCOME_SKIPPED
                    continue

                outcomes[name] = OUTCOME_COMPLETED
                context.previous[name] = result
                if name == "analysis":
                    context.analysis = result.data

        except WorkflowAbortedError as e:
            logger.error("Workflow for task %s aborted: %s", task.id, e)
            return WorkflowResult(
                success=False,
                analysis=context.analysis,
                error=str(e),
                failed_stage=e.stage,
                outcomes=outcomes,
            )

        logger.info("Workflow complete for task %s", task.id)
        return WorkflowResult(success=True, analysis=context.analysis, outcomes=outcomes)

    def _run_stage(
        self, stage: StageConfig, runner: AgentRunner, context: StageContext
    ) -> StageResult | None:
        """Run one stage until it succeeds, is skipped, or is aborted.

        Returns:
            The successful StageResult, or None if the stage was skipped

        Raises:
            WorkflowAbortedError: operator aborted the workflow
            RetryLimitExceededError: retry chosen after max_attempts attempts
        """
        attempt = 1
        while True:
            context.attempt = attempt
            logger.info("Stage %s: attempt %d for task %s", stage.name, attempt, context.task_id)

            result = self._attempt(runner, context, stage)
            if result.success:
                return result

            error = result.error or f"{stage.display_name} failed"
            decision = self.decisions.decide(stage, error, attempt)

            if decision is Decision.SKIP and stage.critical:
                logger.warning("Stage %s is critical and cannot be skipped; aborting", stage.name)
                decision = Decision.ABORT

            if decision is Decision.RETRY:
                if attempt >= self.max_attempts:
                    raise RetryLimitExceededError(stage.name, attempt, error)
                attempt += 1
                continue

            if decision is Decision.SKIP:
                logger.warning("Stage %s skipped for task %s: %s", stage.name, context.task_id, error)
                return None

            raise WorkflowAbortedError(stage.name, error)

    @staticmethod
    def _attempt(runner: AgentRunner, context: StageContext, stage: StageConfig) -> StageResult:
        """Run a single attempt, turning a runner exception into a failed result."""
        try:
            return runner.run(context)
        except TaskRelayError:
            raise
        except Exception as e:
            logger.exception("Stage %s raised for task %s", stage.name, context.task_id)
            return StageResult.failed(str(e) or type(e).__name__)
