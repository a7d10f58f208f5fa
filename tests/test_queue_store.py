"""Tests for the manual-processing queue."""

import pytest

from taskrelay.models import Task, iso_timestamp
from taskrelay.queue_store import QueueStore


@pytest.fixture
def queue(state_dir, clock):
    return QueueStore(state_dir / "state" / "task-queue.json", clock=clock)


class TestAdd:
    def test_add(self, queue, task, repo_config, clock):
        assert queue.add(task, repo_config) == {"success": True}

        [entry] = queue.get_pending()
        assert entry.id == "T1"
        assert entry.title == "Add login page"
        assert entry.url == "https://tracker.example.com/t/T1"
        assert entry.queued_at == iso_timestamp(clock())
        assert entry.owner == "acme"
        assert entry.repo == "webapp"
        assert entry.repo_path == "/src/webapp"

    def test_derived_fields(self, queue, task):
        queue.add(task)

        [entry] = queue.get_pending()
        assert entry.branch == "task-T1"
        assert entry.commit_message == "feat: Add login page (#T1)"
        assert entry.pr_title == "[Task #T1] Add login page"
        assert "**ID:** T1" in entry.pr_body
        assert "Users need a way to log in" in entry.pr_body
        assert entry.owner is None

    def test_duplicate_pending(self, queue, task):
        """Adding the same task twice reports already_queued and keeps one entry."""
        queue.add(task)
        assert queue.add(task) == {"already_queued": True}
        assert len(queue.get_pending()) == 1

    def test_missing_description(self, queue):
        queue.add(Task(id="T2", name="No details"))
        assert queue.get_pending()[0].description == "No description provided"

    def test_completed_task_can_be_queued_again(self, queue, task):
        queue.add(task)
        queue.mark_completed("T1")

        assert queue.add(task) == {"success": True}
        assert queue.is_queued("T1")


class TestRelocation:
    def test_mark_completed(self, queue, task):
        queue.add(task)

        assert queue.mark_completed("T1") is True
        assert queue.get_pending() == []
        assert [t.id for t in queue.get_completed()] == ["T1"]
        assert queue.is_queued("T1") is False

    def test_mark_completed_unknown(self, queue):
        assert queue.mark_completed("nope") is False

    def test_remove(self, queue, task):
        queue.add(task)
        queue.mark_completed("T1")

        assert queue.remove("T1") is True
        assert queue.get_completed() == []
        assert queue.remove("T1") is False


class TestPersistence:
    def test_empty_when_missing(self, queue):
        assert queue.get_pending() == []
        assert queue.get_completed() == []

    def test_layout(self, queue, task):
        import json

        queue.add(task)
        data = json.loads(queue.path.read_text())
        assert set(data) == {"pending", "completed"}
        assert data["pending"][0]["id"] == "T1"
