"""Per-task audit log of pipeline lifecycle events.

Each task gets an append-only file that outlives its pipeline record, so the
history survives cleanup and reprocessing.

Log format:
    [ISO-timestamp] EVENT_TYPE field=value field=value ...

Values containing whitespace are shell-quoted. Example:
    [2026-03-02T09:14:05+00:00] CREATED name='Add login page'
    [2026-03-02T09:14:06+00:00] STAGE_STARTED stage=implementing attempt=1
    [2026-03-02T09:41:52+00:00] STAGE_COMPLETED stage=implementing duration=1666000
    [2026-03-02T09:52:10+00:00] COMPLETED branch=task-86evcknq0
"""

import shlex
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable


class TaskLogger:
    """Persistent logger for one task's lifecycle events.

    Each task gets its own log file at:
        .taskrelay/logs/tasks/TASK-{id}.log
    """

    def __init__(
        self,
        task_id: str,
        logs_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize TaskLogger for a specific task.

        Args:
            task_id: Task identifier (with or without TASK- prefix)
            logs_dir: Override default logs directory (useful for testing)
            clock: Returns epoch seconds
        """
        if not task_id.startswith("TASK-"):
            task_id = f"TASK-{task_id}"

        self.task_id = task_id

        if logs_dir is None:
            from .config import get_task_logs_dir
            logs_dir = get_task_logs_dir()

        self.logs_dir = Path(logs_dir)
        self.log_path = self.logs_dir / f"{task_id}.log"
        self._clock = clock

        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def _write_event(self, event: str, **fields: Any) -> None:
        timestamp = datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(timespec="seconds")

        # One event per line: collapse embedded newlines before quoting
        parts = [
            f"{k}={shlex.quote(' '.join(str(v).split()))}"
            for k, v in fields.items()
            if v is not None
        ]

        log_line = f"[{timestamp}] {event}"
        if parts:
            log_line += " " + " ".join(parts)

        with open(self.log_path, "a") as f:
            f.write(log_line + "\n")

    def log_created(self, name: str, **extra: Any) -> None:
        self._write_event("CREATED", name=name, **extra)

    def log_stage_started(self, stage: str, attempt: int | None = None, **extra: Any) -> None:
        self._write_event("STAGE_STARTED", stage=stage, attempt=attempt, **extra)

    def log_stage_completed(self, stage: str, duration: int | None = None, **extra: Any) -> None:
        """Log a completed stage.

        Args:
            stage: Pipeline stage name
            duration: Stage duration in milliseconds
        """
        self._write_event("STAGE_COMPLETED", stage=stage, duration=duration, **extra)

    def log_stage_failed(self, stage: str, error: str, **extra: Any) -> None:
        self._write_event("STAGE_FAILED", stage=stage, error=error, **extra)

    def log_completed(self, branch: str | None = None, **extra: Any) -> None:
        self._write_event("COMPLETED", branch=branch, **extra)

    def log_failed(self, error: str, stage: str | None = None, **extra: Any) -> None:
        self._write_event("FAILED", error=error, stage=stage, **extra)

    def log_queued(self, reason: str | None = None, **extra: Any) -> None:
        """Log the task being parked in the manual-processing queue."""
        self._write_event("QUEUED", reason=reason, **extra)

    def log_recovered(self, stage: str, idle_minutes: int | None = None, **extra: Any) -> None:
        """Log a stale pipeline being failed during startup recovery."""
        self._write_event("RECOVERED", stage=stage, idle_minutes=idle_minutes, **extra)

    def get_events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        """Parse and return log events.

        Args:
            event_type: Filter by event type (e.g., "STAGE_FAILED"), or None for all

        Returns:
            List of event dicts with 'timestamp', 'event', and parsed fields
        """
        if not self.log_path.exists():
            return []

        events = []

        with open(self.log_path) as f:
            for line in f:
                line = line.strip()
                if not line.startswith("["):
                    continue

                try:
                    end_bracket = line.index("]")
                    timestamp = line[1:end_bracket]
                    tokens = shlex.split(line[end_bracket + 1:])
                except ValueError:
                    # Malformed line, skip it
                    continue

                if not tokens:
                    continue

                event = tokens[0]
                if event_type and event != event_type:
                    continue

                fields: dict[str, Any] = {"timestamp": timestamp, "event": event}
                for token in tokens[1:]:
                    if "=" in token:
                        key, value = token.split("=", 1)
                        fields[key] = value

                events.append(fields)

        return events


def get_task_logger(task_id: str) -> TaskLogger:
    """Get a TaskLogger writing under the current state directory."""
    return TaskLogger(task_id)
