"""Stores that follow a task after its branch is pushed.

- PRTrackingStore: branches waiting for a pull request to show up
- ReviewTrackingStore: review/fix cycles on an open pull request
- ProcessedCommentsStore: ids of PR comments already acted on
"""

import logging
import time
from pathlib import Path
from typing import Callable

from .config import DEFAULT_PIPELINE_CONFIG
from .errors import ReviewIterationLimitError
from .json_store import JsonFileStore
from .models import RepositoryConfig, ReviewEntry, Task, TrackingEntry, iso_timestamp, iso_to_ms

logger = logging.getLogger(__name__)

# Review cycle sub-states
WAITING_FOR_CODEX_REVIEW = "waiting_for_codex_review"
WAITING_FOR_CLAUDE_FIXES = "waiting_for_claude_fixes"


class PRTrackingStore:
    """List of TrackingEntry, at most one per task."""

    def __init__(self, path: Path | str, clock: Callable[[], float] = time.time):
        self._store = JsonFileStore(path, list)
        self._clock = clock

    def start(self, task: Task, repo_config: RepositoryConfig | None = None) -> TrackingEntry:
        """Begin waiting for a PR on ``task-<id>``, replacing any previous entry."""
        entry = TrackingEntry(
            task_id=task.id,
            task_name=task.name,
            branch=f"task-{task.id}",
            started_at=iso_timestamp(self._clock()),
            owner=repo_config.owner if repo_config else None,
            repo=repo_config.repo if repo_config else None,
        )

        with self._store.transaction() as data:
            data[:] = [e for e in data if e.get("task_id") != task.id]
            data.append(entry.to_dict())

        logger.info("Started PR tracking for task %s", task.id)
        return entry

    def get(self, task_id: str) -> TrackingEntry | None:
        for raw in self._store.snapshot():
            if raw.get("task_id") == task_id:
                return TrackingEntry.from_dict(raw)
        return None

    def get_all(self) -> list[TrackingEntry]:
        return [TrackingEntry.from_dict(raw) for raw in self._store.snapshot()]

    def remove(self, task_id: str) -> bool:
        with self._store.transaction() as data:
            before = len(data)
            data[:] = [e for e in data if e.get("task_id") != task_id]
            return len(data) != before

    def find_expired(self, timeout_ms: int) -> list[TrackingEntry]:
        """Entries that have waited longer than ``timeout_ms`` without a PR."""
        now_ms = round(self._clock() * 1000)
        return [e for e in self.get_all() if now_ms - iso_to_ms(e.started_at) > timeout_ms]


class ReviewTrackingStore:
    """List of ReviewEntry, at most one active cycle per task."""

    def __init__(self, path: Path | str, clock: Callable[[], float] = time.time):
        self._store = JsonFileStore(path, list)
        self._clock = clock

    def start_cycle(
        self,
        task: Task,
        pr_number: int,
        pr_url: str,
        branch: str | None = None,
        repo_config: RepositoryConfig | None = None,
        repository: str | None = None,
        max_iterations: int = DEFAULT_PIPELINE_CONFIG["max_review_iterations"],
    ) -> bool:
        """Open a review cycle for ``task``.

        Returns:
            False if a cycle already exists for the task
        """
        with self._store.transaction() as data:
            if any(e.get("task_id") == task.id for e in data):
                logger.warning("Review cycle already exists for task %s", task.id)
                return False

            entry = ReviewEntry(
                task_id=task.id,
                task_name=task.name,
                branch=branch or f"task-{task.id}",
                pr_number=pr_number,
                pr_url=pr_url,
                stage=WAITING_FOR_CODEX_REVIEW,
                iteration=0,
                max_iterations=max_iterations,
                started_at=iso_timestamp(self._clock()),
                repository=repository or "default",
                owner=repo_config.owner if repo_config else None,
                repo=repo_config.repo if repo_config else None,
                repo_path=repo_config.path if repo_config else None,
            )
            data.append(entry.to_dict())

        logger.info("Started review cycle for task %s (PR #%s)", task.id, pr_number)
        return True

    def get(self, task_id: str) -> ReviewEntry | None:
        for raw in self._store.snapshot():
            if raw.get("task_id") == task_id:
                return ReviewEntry.from_dict(raw)
        return None

    def get_all(self) -> list[ReviewEntry]:
        return [ReviewEntry.from_dict(raw) for raw in self._store.snapshot()]

    def _update(self, task_id: str, **fields) -> ReviewEntry | None:
        with self._store.transaction() as data:
            for raw in data:
                if raw.get("task_id") == task_id:
                    raw.update(fields)
                    return ReviewEntry.from_dict(raw)
        return None

    def record_commit(self, task_id: str, sha: str) -> ReviewEntry | None:
        return self._update(task_id, last_commit_sha=sha)

    def set_stage(self, task_id: str, stage: str) -> ReviewEntry | None:
        return self._update(task_id, stage=stage)

    def advance_iteration(self, task_id: str) -> ReviewEntry | None:
        """Count one more review/fix round.

        Raises:
            ReviewIterationLimitError: if the cycle is already at max_iterations
        """
        with self._store.transaction() as data:
            for raw in data:
                if raw.get("task_id") != task_id:
                    continue
                entry = ReviewEntry.from_dict(raw)
                if not entry.has_iterations_left:
                    raise ReviewIterationLimitError(task_id, entry.max_iterations)
                raw["iteration"] = entry.iteration + 1
                return ReviewEntry.from_dict(raw)
        return None

    def remove(self, task_id: str) -> bool:
        with self._store.transaction() as data:
            before = len(data)
            data[:] = [e for e in data if e.get("task_id") != task_id]
            return len(data) != before


class ProcessedCommentsStore:
    """Set of comment ids, persisted as a JSON list."""

    def __init__(self, path: Path | str):
        self._store = JsonFileStore(path, list)

    def has(self, comment_id: str) -> bool:
        return comment_id in set(self._store.snapshot())

    def add(self, comment_id: str) -> bool:
        """Returns False if the comment was already recorded."""
        with self._store.transaction() as data:
            if comment_id in data:
                return False
            data.append(comment_id)
        return True

    def get_all(self) -> set[str]:
        return set(self._store.snapshot())

    def clear(self) -> None:
        with self._store.transaction() as data:
            data.clear()
