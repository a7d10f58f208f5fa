"""Tests for notification fan-out and notifiers."""

import logging
from unittest.mock import MagicMock

import requests

from taskrelay.notifications import (
    EventKind,
    LoggingNotifier,
    NotificationEvent,
    NotificationManager,
    WebhookNotifier,
    build_notification_manager,
)


class TestNotificationManager:
    def test_fans_out(self, recorder):
        other = MagicMock()
        manager = NotificationManager([recorder, other])

        manager.notify_workflow_complete("T1", branch="task-T1")

        [event] = recorder.events
        assert event.kind is EventKind.WORKFLOW_COMPLETE
        assert event.branch == "task-T1"
        other.notify.assert_called_once_with(event)

    def test_failing_notifier_does_not_stop_others(self, recorder, caplog):
        broken = MagicMock()
        broken.notify.side_effect = RuntimeError("discord down")
        manager = NotificationManager([broken, recorder])

        with caplog.at_level(logging.ERROR):
            manager.notify_workflow_failed("T1", "boom", stage="implementation")

        assert recorder.kinds() == ["workflow_failed"]
        assert "discord down" in caplog.text

    def test_convenience_methods(self, recorder):
        manager = NotificationManager([recorder])
        manager.notify_stage_started("T1", "analyzing")
        manager.notify_stage_completed("T1", "analyzing")
        manager.notify_stage_failed("T1", "codex_reviewing", "err")
        manager.notify_rerun_complete("T1", "claude_fixing", branch="task-T1")
        manager.notify_rerun_failed("T1", "claude_fixing", "err")
        manager.notify_stale_recovered("T1", "implementing", "stale")

        assert recorder.kinds() == [
            "stage_started", "stage_completed", "stage_failed",
            "rerun_complete", "rerun_failed", "stale_recovered",
        ]
        assert recorder.events[2].status == "failed"


class TestLoggingNotifier:
    def test_failure_logged_as_error(self, caplog):
        with caplog.at_level(logging.INFO, logger="taskrelay.notifications"):
            LoggingNotifier().notify(
                NotificationEvent("T1", EventKind.WORKFLOW_FAILED, "failed", error="boom")
            )

        [record] = caplog.records
        assert record.levelno == logging.ERROR
        assert "task T1" in record.getMessage()
        assert "error=boom" in record.getMessage()


class TestWebhookNotifier:
    def test_posts_json(self):
        session = MagicMock()
        notifier = WebhookNotifier("https://hooks.example.com/x", timeout=5, session=session)

        notifier.notify(NotificationEvent("T1", EventKind.WORKFLOW_COMPLETE, "completed", branch="task-T1"))

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args == ("https://hooks.example.com/x",)
        assert kwargs["timeout"] == 5
        assert kwargs["json"]["kind"] == "workflow_complete"
        assert kwargs["json"]["branch"] == "task-T1"
        session.post.return_value.raise_for_status.assert_called_once()

    def test_http_error_is_contained_by_manager(self, recorder):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        manager = NotificationManager([WebhookNotifier("https://x", session=session), recorder])

        manager.notify_workflow_complete("T1")

        assert recorder.kinds() == ["workflow_complete"]


class TestBuildNotificationManager:
    def test_logging_only_by_default(self):
        manager = build_notification_manager({})
        assert [type(n) for n in manager.notifiers] == [LoggingNotifier]

    def test_webhook_from_config(self):
        manager = build_notification_manager(
            {"notifications": {"webhook_url": "https://hooks.example.com/x", "timeout_seconds": 3}}
        )
        webhook = manager.notifiers[-1]
        assert isinstance(webhook, WebhookNotifier)
        assert webhook.timeout == 3.0
