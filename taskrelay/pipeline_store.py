"""Durable per-task pipeline state.

One JSON document maps task id -> pipeline record:

    {
        "86evcknq0": {
            "task_id": "86evcknq0",
            "current_stage": "implementing",
            "status": "in_progress",
            "stages": [{"stage": "detected", "status": "completed", ...}, ...],
            "metadata": {...},
            "errors": [...]
        }
    }

Every operation is a single locked load-mutate-save round trip; returned
records are copies and never alias the stored document.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable

from .config import PIPELINE_STAGES, TOTAL_PROGRESS_STAGES, PipelineStage
from .errors import PipelineExistsError, PipelineFinishedError, PipelineNotFoundError
from .json_store import JsonFileStore
from .models import (
    PipelineData,
    PipelineErrorRecord,
    PipelineMetadata,
    PipelineSummary,
    StageEntry,
    iso_from_ms,
    iso_to_ms,
)

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_MS = 7 * 24 * 60 * 60 * 1000


def _error_message(error: BaseException | str) -> str:
    return str(error) if isinstance(error, BaseException) else error


class PipelineStore:
    """Pipeline Store: one PipelineData per task id.

    Args:
        path: Path to pipeline-state.json
        clock: Returns epoch seconds (injectable for tests)
    """

    def __init__(self, path: Path | str, clock: Callable[[], float] = time.time):
        self._store = JsonFileStore(path, dict)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._store.path

    def _now(self) -> tuple[str, int]:
        """Current time as (ISO string, epoch ms) from a single clock reading."""
        now_ms = round(self._clock() * 1000)
        return iso_from_ms(now_ms), now_ms

    @staticmethod
    def _touch(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
        pipeline.updated_at = now_iso
        pipeline.last_updated_at = now_ms

    def _mutate(self, task_id: str, fn: Callable[[PipelineData, str, int], None]) -> PipelineData:
        """Apply ``fn`` to the record for ``task_id`` and save it.

        Raises:
            PipelineNotFoundError: if the task has no pipeline
        """
        with self._store.transaction() as pipelines:
            raw = pipelines.get(task_id)
            if raw is None:
                raise PipelineNotFoundError(task_id)

            pipeline = PipelineData.from_dict(raw)
            now_iso, now_ms = self._now()
            fn(pipeline, now_iso, now_ms)
            pipelines[task_id] = pipeline.to_dict()

        return pipeline

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def init(self, task_id: str, task_name: str = "", overwrite: bool = False) -> PipelineData:
        """Create a fresh pipeline record at stage ``detected``.

        An existing terminal record is replaced (the task is being reprocessed).
        An existing in-progress record is left alone unless ``overwrite`` is set.

        Raises:
            PipelineExistsError: if the task is already in progress and overwrite is False
        """
        with self._store.transaction() as pipelines:
            existing = pipelines.get(task_id)
            if existing is not None and not overwrite:
                if existing.get("status") not in ("completed", "failed"):
                    raise PipelineExistsError(task_id)
                logger.info("Replacing finished pipeline for task %s", task_id)

            now_iso, now_ms = self._now()
            pipeline = PipelineData(
                task_id=task_id,
                task_name=task_name,
                current_stage="detected",
                status="in_progress",
                created_at=now_iso,
                updated_at=now_iso,
                last_updated_at=now_ms,
                stages=[
                    StageEntry(
                        name="detection",
                        stage="detected",
                        status="completed",
                        started_at=now_iso,
                        completed_at=now_iso,
                        duration=0,
                    )
                ],
                metadata=PipelineMetadata(),
                errors=[],
            )
            pipelines[task_id] = pipeline.to_dict()

        return pipeline

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def update_stage(
        self, task_id: str, stage: PipelineStage, stage_data: dict[str, Any] | None = None
    ) -> PipelineData:
        """Enter (or re-enter) ``stage``: status in_progress, fresh started_at.

        Raises:
            ValueError: if ``stage`` is not a pipeline stage
            PipelineNotFoundError: if the task has no pipeline
        """
        if stage not in PIPELINE_STAGES:
            raise ValueError(f"Unknown pipeline stage: {stage!r}")
        stage_data = dict(stage_data or {})

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            entry = pipeline.find_stage(stage)
            if entry is None:
                entry = StageEntry(
                    name=stage_data.get("name") or stage,
                    stage=stage,
                    status="in_progress",
                    started_at=now_iso,
                )
                pipeline.stages.append(entry)
            else:
                entry.status = "in_progress"
                entry.started_at = now_iso
                entry.completed_at = None
                entry.duration = None
                entry.error = None

            entry.merge(stage_data)
            pipeline.current_stage = stage
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    def complete_stage(
        self, task_id: str, stage: PipelineStage, result: dict[str, Any] | None = None
    ) -> PipelineData:
        """Mark ``stage`` completed and record its duration from its own started_at."""

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            entry = pipeline.find_stage(stage)
            if entry is not None:
                entry.merge(result or {})
                entry.status = "completed"
                entry.completed_at = now_iso
                entry.duration = now_ms - iso_to_ms(entry.started_at)
            else:
                logger.warning("complete_stage: task %s never entered stage %s", task_id, stage)
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    def fail_stage(
        self, task_id: str, stage: PipelineStage, error: BaseException | str
    ) -> PipelineData:
        """Mark ``stage`` failed and append to the error trail.

        The pipeline's overall status is unchanged.
        """
        message = _error_message(error)

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            entry = pipeline.find_stage(stage)
            if entry is not None:
                entry.status = "failed"
                entry.completed_at = now_iso
                entry.duration = now_ms - iso_to_ms(entry.started_at)
                entry.error = message
            pipeline.errors.append(
                PipelineErrorRecord(stage=stage, error=message, timestamp=now_iso)
            )
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    def update_metadata(self, task_id: str, metadata: dict[str, Any]) -> PipelineData:
        """Shallow-merge ``metadata`` into the record's metadata."""

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            pipeline.metadata.merge(metadata)
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    def record_branch(self, task_id: str, branch: str) -> PipelineData:
        """Make ``branch`` the task's current branch and add it to the branch list."""

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            pipeline.metadata.branch = branch
            if branch not in pipeline.metadata.branches:
                pipeline.metadata.branches.append(branch)
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    def store_agent_execution(
        self, task_id: str, agent: str, execution_info: dict[str, Any]
    ) -> PipelineData:
        """Record execution details for one agent (started_at defaults to now)."""

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            info = dict(execution_info)
            info.setdefault("started_at", now_iso)
            pipeline.metadata.agent_execution[agent] = info
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def complete(self, task_id: str, result: dict[str, Any] | None = None) -> PipelineData:
        """Terminal success: status/current_stage completed, total duration fixed.

        Raises:
            PipelineFinishedError: if the pipeline already completed or failed
        """

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            if pipeline.is_terminal:
                raise PipelineFinishedError(task_id, pipeline.status)
            pipeline.status = "completed"
            pipeline.current_stage = "completed"
            pipeline.completed_at = now_iso
            pipeline.total_duration = now_ms - iso_to_ms(pipeline.created_at)
            pipeline.metadata.merge(result or {})
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    def fail(self, task_id: str, error: BaseException | str) -> PipelineData:
        """Terminal failure: status/current_stage failed, error appended.

        The error record names the stage the pipeline was in when it failed.

        Raises:
            PipelineFinishedError: if the pipeline already completed or failed
        """
        message = _error_message(error)

        def apply(pipeline: PipelineData, now_iso: str, now_ms: int) -> None:
            if pipeline.is_terminal:
                raise PipelineFinishedError(task_id, pipeline.status)
            pipeline.errors.append(
                PipelineErrorRecord(
                    stage=pipeline.current_stage, error=message, timestamp=now_iso
                )
            )
            pipeline.status = "failed"
            pipeline.current_stage = "failed"
            pipeline.failed_at = now_iso
            self._touch(pipeline, now_iso, now_ms)

        return self._mutate(task_id, apply)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, task_id: str) -> PipelineData | None:
        raw = self._store.snapshot().get(task_id)
        return PipelineData.from_dict(raw) if raw is not None else None

    def exists(self, task_id: str) -> bool:
        return task_id in self._store.snapshot()

    def get_all(self) -> list[PipelineData]:
        return [PipelineData.from_dict(raw) for raw in self._store.snapshot().values()]

    def get_active(self) -> list[PipelineData]:
        """All pipelines currently in progress."""
        return [p for p in self.get_all() if p.status == "in_progress"]

    def find_stale(self, timeout_ms: int) -> list[PipelineData]:
        """In-progress pipelines not updated for more than ``timeout_ms``."""
        _, now_ms = self._now()
        return [p for p in self.get_active() if now_ms - p.last_updated_at > timeout_ms]

    def get_agent_execution(self, task_id: str, agent: str | None = None) -> Any:
        pipeline = self.get(task_id)
        if pipeline is None:
            return None
        if agent:
            return pipeline.metadata.agent_execution.get(agent)
        return pipeline.metadata.agent_execution

    def get_summary(self, task_id: str) -> PipelineSummary | None:
        pipeline = self.get(task_id)
        if pipeline is None:
            return None

        return PipelineSummary(
            task_id=pipeline.task_id,
            task_name=pipeline.task_name,
            current_stage=pipeline.current_stage,
            status=pipeline.status,
            progress=self._calculate_progress(pipeline),
            duration=self._calculate_duration(pipeline),
            review_iterations=pipeline.metadata.review_iterations,
            has_errors=len(pipeline.errors) > 0,
        )

    @staticmethod
    def _calculate_progress(pipeline: PipelineData) -> int:
        completed = sum(1 for s in pipeline.stages if s.status == "completed")
        return min(100, int(completed / TOTAL_PROGRESS_STAGES * 100 + 0.5))

    def _calculate_duration(self, pipeline: PipelineData) -> int:
        end = pipeline.completed_at or pipeline.failed_at
        end_ms = iso_to_ms(end) if end else self._now()[1]
        return end_ms - iso_to_ms(pipeline.created_at)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def remove(self, task_id: str) -> bool:
        with self._store.transaction() as pipelines:
            return pipelines.pop(task_id, None) is not None

    def cleanup(self, older_than_ms: int = DEFAULT_CLEANUP_MS) -> int:
        """Delete finished pipelines older than ``older_than_ms``.

        Returns:
            Number of records removed
        """
        _, now_ms = self._now()
        cutoff = now_ms - older_than_ms

        with self._store.transaction() as pipelines:
            expired = [
                task_id
                for task_id, raw in pipelines.items()
                if (raw.get("completed_at") or raw.get("failed_at"))
                and iso_to_ms(raw.get("completed_at") or raw["failed_at"]) < cutoff
            ]
            for task_id in expired:
                del pipelines[task_id]

        if expired:
            logger.info("Cleaned up %d finished pipeline(s)", len(expired))
        return len(expired)
