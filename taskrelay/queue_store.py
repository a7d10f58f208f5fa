"""Manual-processing queue for tasks the automated pipeline could not finish.

Persisted as ``{"pending": [QueuedTask...], "completed": [QueuedTask...]}``.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable

from .json_store import JsonFileStore
from .models import QueuedTask, RepositoryConfig, Task, iso_timestamp

logger = logging.getLogger(__name__)


def _empty_queue() -> dict[str, list]:
    return {"pending": [], "completed": []}


def build_queued_task(task: Task, repo_config: RepositoryConfig | None, queued_at: str) -> QueuedTask:
    """Derive the queue entry for ``task``: branch, commit message and PR text."""
    title = task.name
    description = task.description or "No description provided"

    pr_body = (
        "## Task\n\n"
        f"**Task:** {title}\n"
        f"**ID:** {task.id}\n"
        f"**URL:** {task.url or 'n/a'}\n\n"
        "## Description\n\n"
        f"{description}\n\n"
        "---\n\n"
        "Queued by taskrelay for manual processing"
    )

    return QueuedTask(
        id=task.id,
        title=title,
        description=description,
        url=task.url,
        queued_at=queued_at,
        repo_path=repo_config.path if repo_config else None,
        owner=repo_config.owner if repo_config else None,
        repo=repo_config.repo if repo_config else None,
        branch=f"task-{task.id}",
        commit_message=f"feat: {title} (#{task.id})",
        pr_title=f"[Task #{task.id}] {title}",
        pr_body=pr_body,
    )


class QueueStore:
    """Queue Store: pending and completed lists of QueuedTask."""

    def __init__(self, path: Path | str, clock: Callable[[], float] = time.time):
        self._store = JsonFileStore(path, _empty_queue)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._store.path

    def _load(self) -> dict[str, list]:
        data = self._store.snapshot()
        data.setdefault("pending", [])
        data.setdefault("completed", [])
        return data

    def add(self, task: Task, repo_config: RepositoryConfig | None = None) -> dict[str, Any]:
        """Enqueue ``task`` unless it is already pending.

        Returns:
            ``{"success": True}`` or ``{"already_queued": True}``
        """
        with self._store.transaction() as data:
            pending = data.setdefault("pending", [])
            data.setdefault("completed", [])

            if any(entry.get("id") == task.id for entry in pending):
                logger.warning("Task %s already queued", task.id)
                return {"already_queued": True}

            entry = build_queued_task(task, repo_config, iso_timestamp(self._clock()))
            pending.append(entry.to_dict())

        logger.info("Queued task %s for manual processing", task.id)
        return {"success": True}

    def get_pending(self) -> list[QueuedTask]:
        return [QueuedTask.from_dict(e) for e in self._load()["pending"]]

    def get_completed(self) -> list[QueuedTask]:
        return [QueuedTask.from_dict(e) for e in self._load()["completed"]]

    def is_queued(self, task_id: str) -> bool:
        return any(e.get("id") == task_id for e in self._load()["pending"])

    def mark_completed(self, task_id: str) -> bool:
        """Move a pending entry to the completed list.

        Returns:
            False if the task was not pending
        """
        with self._store.transaction() as data:
            pending = data.setdefault("pending", [])
            completed = data.setdefault("completed", [])
            for i, entry in enumerate(pending):
                if entry.get("id") == task_id:
                    completed.append(pending.pop(i))
                    return True
        return False

    def remove(self, task_id: str) -> bool:
        """Drop a task from both lists."""
        with self._store.transaction() as data:
            removed = False
            for key in ("pending", "completed"):
                entries = data.setdefault(key, [])
                kept = [e for e in entries if e.get("id") != task_id]
                if len(kept) != len(entries):
                    data[key] = kept
                    removed = True
        return removed
