"""Cache of tasks already seen upstream, so a poller never picks one up twice."""

import logging
import time
from pathlib import Path
from typing import Callable

from .json_store import JsonFileStore
from .models import ProcessedTask, Task, iso_timestamp

logger = logging.getLogger(__name__)


class CacheStore:
    """Cache Store: a list of ProcessedTask, write-once per id.

    Older cache files stored bare task ids (``["t1", "t2"]``). Those are
    migrated on load into ProcessedTask entries titled "Unknown".
    """

    def __init__(self, path: Path | str, clock: Callable[[], float] = time.time):
        self._store = JsonFileStore(path, list)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._store.path

    def _migrate(self, data: list) -> list[dict]:
        if data and isinstance(data[0], str):
            detected_at = iso_timestamp(self._clock())
            logger.info("Migrating %d legacy cache entries in %s", len(data), self.path)
            return [
                ProcessedTask(
                    id=task_id, title="Unknown", description="", detected_at=detected_at
                ).to_dict()
                for task_id in data
            ]
        return data

    def get_all(self) -> list[ProcessedTask]:
        return [ProcessedTask.from_dict(e) for e in self._migrate(self._store.snapshot())]

    def get_ids(self) -> set[str]:
        return {entry.id for entry in self.get_all()}

    def has(self, task_id: str) -> bool:
        return task_id in self.get_ids()

    def add(self, task: Task) -> bool:
        """Record ``task`` as processed.

        Returns:
            False if it was already cached (the cache is left unchanged)
        """
        with self._store.transaction() as data:
            migrated = self._migrate(data)
            if any(entry.get("id") == task.id for entry in migrated):
                return False

            migrated.append(
                ProcessedTask(
                    id=task.id,
                    title=task.name,
                    description=task.description,
                    detected_at=iso_timestamp(self._clock()),
                ).to_dict()
            )
            data[:] = migrated

        logger.debug("Cached task %s", task.id)
        return True
