"""Lifecycle notifications.

The orchestrator reports every lifecycle event to a NotificationManager,
which fans it out to the configured notifiers. Notifying is fire-and-forget:
a notifier that fails is logged and never breaks the pipeline.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import requests

from .config import get_notifications_config

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    WORKFLOW_COMPLETE = "workflow_complete"
    WORKFLOW_FAILED = "workflow_failed"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    RERUN_COMPLETE = "rerun_complete"
    RERUN_FAILED = "rerun_failed"
    STALE_RECOVERED = "stale_recovered"


@dataclass
class NotificationEvent:
    task_id: str
    kind: EventKind
    status: str
    stage: str | None = None
    branch: str | None = None
    error: str | None = None
    timestamp: str | None = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    def summary(self) -> str:
        parts = [f"[{self.kind.value}] task {self.task_id}: {self.status}"]
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.branch:
            parts.append(f"branch={self.branch}")
        if self.error:
            parts.append(f"error={self.error}")
        return " ".join(parts)


class Notifier(Protocol):
    def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotifier:
    """Writes events to the taskrelay log. Failures are logged at error level."""

    def notify(self, event: NotificationEvent) -> None:
        failed = event.kind in (
            EventKind.WORKFLOW_FAILED,
            EventKind.STAGE_FAILED,
            EventKind.RERUN_FAILED,
            EventKind.STALE_RECOVERED,
        )
        logger.log(logging.ERROR if failed else logging.INFO, "%s", event.summary())


class WebhookNotifier:
    """POSTs each event as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = 10, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, event: NotificationEvent) -> None:
        response = self.session.post(self.url, json=event.to_dict(), timeout=self.timeout)
        response.raise_for_status()


class NotificationManager:
    """Fans events out to every registered notifier."""

    def __init__(self, notifiers: list[Notifier] | None = None):
        self.notifiers: list[Notifier] = list(notifiers or [])

    def register(self, notifier: Notifier) -> None:
        self.notifiers.append(notifier)

    def notify(self, event: NotificationEvent) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(event)
            except Exception:
                logger.exception(
                    "Notifier %s failed for %s on task %s",
                    type(notifier).__name__,
                    event.kind.value,
                    event.task_id,
                )

    # Convenience wrappers used by the orchestrator

    def notify_workflow_complete(self, task_id: str, branch: str | None = None) -> None:
        self.notify(NotificationEvent(task_id, EventKind.WORKFLOW_COMPLETE, "completed", branch=branch))

    def notify_workflow_failed(self, task_id: str, error: str, stage: str | None = None) -> None:
        self.notify(NotificationEvent(task_id, EventKind.WORKFLOW_FAILED, "failed", stage=stage, error=error))

    def notify_stage_started(self, task_id: str, stage: str) -> None:
        self.notify(NotificationEvent(task_id, EventKind.STAGE_STARTED, "in_progress", stage=stage))

    def notify_stage_completed(self, task_id: str, stage: str) -> None:
        self.notify(NotificationEvent(task_id, EventKind.STAGE_COMPLETED, "completed", stage=stage))

    def notify_stage_failed(self, task_id: str, stage: str, error: str) -> None:
        self.notify(NotificationEvent(task_id, EventKind.STAGE_FAILED, "failed", stage=stage, error=error))

    def notify_rerun_complete(self, task_id: str, stage: str, branch: str | None = None) -> None:
        self.notify(
            NotificationEvent(task_id, EventKind.RERUN_COMPLETE, "completed", stage=stage, branch=branch)
        )

    def notify_rerun_failed(self, task_id: str, stage: str, error: str) -> None:
        self.notify(NotificationEvent(task_id, EventKind.RERUN_FAILED, "failed", stage=stage, error=error))

    def notify_stale_recovered(self, task_id: str, stage: str, error: str) -> None:
        self.notify(NotificationEvent(task_id, EventKind.STALE_RECOVERED, "failed", stage=stage, error=error))


def build_notification_manager(config: dict[str, Any] | None = None) -> NotificationManager:
    """Logging notifier always; webhook notifier when a URL is configured."""
    settings = get_notifications_config(config)
    manager = NotificationManager([LoggingNotifier()])
    if settings.get("webhook_url"):
        manager.register(
            WebhookNotifier(settings["webhook_url"], timeout=float(settings["timeout_seconds"]))
        )
    return manager
