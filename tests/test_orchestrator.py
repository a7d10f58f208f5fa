"""Tests for the task orchestrator."""

from unittest.mock import MagicMock

import pytest

from taskrelay.decisions import AbortDecisionProvider, Decision, FixedPolicyDecisionProvider
from taskrelay.errors import (
    PipelineNotFoundError,
    RepoConfigError,
    StagePreconditionError,
    StoreWriteError,
)
from taskrelay.orchestrator import TaskOrchestrator, build_orchestrator, recover_stale_pipelines
from taskrelay.stages import StageResult
from taskrelay.task_logger import TaskLogger

from conftest import FakeRunner


@pytest.fixture
def runners(clock):
    return {
        "analysis": FakeRunner(StageResult.ok(summary="plan"), clock=clock, takes_ms=1000),
        "implementation": FakeRunner(StageResult.ok(branch="task-T1"), clock=clock, takes_ms=5000),
        "review": FakeRunner(clock=clock, takes_ms=2000),
        "fixes": FakeRunner(clock=clock, takes_ms=2000),
    }


@pytest.fixture
def make_orchestrator(stores, notifications, repo_config, runners, state_dir, clock):
    def factory(decisions=None, resolver=None, **kwargs):
        return TaskOrchestrator(
            stores=stores,
            runners=kwargs.pop("runners", runners),
            decisions=decisions or AbortDecisionProvider(),
            notifications=notifications,
            repo_config_resolver=resolver or (lambda: repo_config),
            logs_dir=state_dir / "logs" / "tasks",
            clock=clock,
            **kwargs,
        )
    return factory


def task_log(state_dir, task_id="T1"):
    return TaskLogger(task_id, logs_dir=state_dir / "logs" / "tasks")


class TestProcessTaskSuccess:
    def test_completes_pipeline(self, make_orchestrator, stores, task):
        result = make_orchestrator().process_task(task)

        assert result.success is True
        assert result.branch == "task-T1"
        assert result.analysis == {"summary": "plan"}

        record = stores.pipeline.get("T1")
        assert record.status == "completed"
        assert record.current_stage == "completed"
        assert record.metadata.branch == "task-T1"
        assert record.metadata.repository == "default"

    def test_records_every_stage(self, make_orchestrator, stores, task):
        make_orchestrator().process_task(task)

        record = stores.pipeline.get("T1")
        assert [(s.stage, s.status) for s in record.stages] == [
            ("detected", "completed"),
            ("analyzing", "completed"),
            ("implementing", "completed"),
            ("codex_reviewing", "completed"),
            ("claude_fixing", "completed"),
        ]
        assert record.find_stage("implementing").duration == 5000
        assert record.find_stage("implementing").branch == "task-T1"
        assert record.metadata.agent_execution["implementation"]["status"] == "completed"

    def test_stage_outputs_reach_metadata(self, make_orchestrator, stores, runners, task):
        runners["analysis"] = FakeRunner(StageResult.ok(analysis_file="/tmp/plan.md", fallback=True))
        runners["implementation"] = FakeRunner(StageResult.ok(branch="feature/login"))
        runners["fixes"] = FakeRunner(StageResult.ok(pr_number=42))

        result = make_orchestrator(runners=runners).process_task(task)

        metadata = stores.pipeline.get("T1").metadata
        assert metadata.analysis_file == "/tmp/plan.md"
        assert metadata.analysis_fallback is True
        assert metadata.branch == "feature/login"
        assert metadata.branches == ["feature/login"]
        assert metadata.pr_number == 42
        assert result.branch == "feature/login"

    def test_completion_log_failure_keeps_task_completed(
        self, make_orchestrator, stores, recorder, task, monkeypatch
    ):
        monkeypatch.setattr(TaskLogger, "log_completed", MagicMock(side_effect=OSError("disk full")))

        result = make_orchestrator().process_task(task)

        assert result.success is True
        assert stores.pipeline.get("T1").status == "completed"
        assert stores.queue.get_pending() == []
        assert "workflow_complete" in recorder.kinds()
        assert "workflow_failed" not in recorder.kinds()

    def test_notifications_and_log(self, make_orchestrator, recorder, state_dir, task):
        make_orchestrator().process_task(task)

        assert recorder.kinds()[-1] == "workflow_complete"
        assert recorder.kinds().count("stage_completed") == 4
        events = [e["event"] for e in task_log(state_dir).get_events()]
        assert events[0] == "CREATED"
        assert events[-1] == "COMPLETED"

    def test_queue_untouched(self, make_orchestrator, stores, task):
        make_orchestrator().process_task(task)
        assert stores.queue.get_pending() == []

    def test_accepts_raw_dict(self, make_orchestrator, stores):
        result = make_orchestrator().process_task({"id": "T9", "title": "From tracker"})

        assert result.success
        assert stores.pipeline.get("T9").task_name == "From tracker"

    def test_skip_stages_from_constructor(self, make_orchestrator, runners, task):
        make_orchestrator(skip_stages=["review", "fixes"]).process_task(task)

        assert runners["review"].call_count == 0
        assert runners["fixes"].call_count == 0


class TestProcessTaskConfigFailure:
    def test_repo_config_failure(self, make_orchestrator, stores, runners, recorder, task):
        """Config failure: pipeline failed, task queued, no stage ever runs."""
        def broken():
            raise RepoConfigError("No repository configured")

        result = make_orchestrator(resolver=broken).process_task(task)

        assert result.success is False
        assert "No repository configured" in result.error
        assert stores.pipeline.get("T1").status == "failed"
        assert [t.id for t in stores.queue.get_pending()] == ["T1"]
        assert all(r.call_count == 0 for r in runners.values())
        assert recorder.kinds() == ["workflow_failed"]


class TestProcessTaskWorkflowFailure:
    def test_critical_abort(self, make_orchestrator, stores, recorder, state_dir, runners, task):
        runners["implementation"] = FakeRunner(StageResult.failed("tests fail"))

        result = make_orchestrator().process_task(task)

        assert result.success is False
        assert result.failed_stage == "implementation"
        assert runners["review"].call_count == 0

        record = stores.pipeline.get("T1")
        assert record.status == "failed"
        assert record.find_stage("implementing").status == "failed"
        # Stage failure plus the terminal failure
        assert len(record.errors) == 2
        assert record.errors[-1].stage == "implementing"

        assert stores.queue.is_queued("T1")
        assert recorder.kinds()[-1] == "workflow_failed"
        assert recorder.events[-1].stage == "implementation"

        events = [e["event"] for e in task_log(state_dir).get_events()]
        assert events[-2:] == ["FAILED", "QUEUED"]

    def test_retry_is_recorded_on_one_entry(self, make_orchestrator, stores, runners, task):
        runners["review"] = FakeRunner(StageResult.failed("timeout"), StageResult.ok())
        decisions = MagicMock()
        decisions.decide.return_value = Decision.RETRY

        result = make_orchestrator(decisions=decisions).process_task(task)

        assert result.success
        record = stores.pipeline.get("T1")
        reviews = [s for s in record.stages if s.stage == "codex_reviewing"]
        assert len(reviews) == 1
        assert reviews[0].status == "completed"
        assert [e.error for e in record.errors] == ["timeout"]

    def test_skipped_optional_stage_still_completes(self, make_orchestrator, stores, runners, task):
        runners["analysis"] = FakeRunner(StageResult.failed("gemini quota"))

        result = make_orchestrator(decisions=FixedPolicyDecisionProvider(retries=0)).process_task(task)

        assert result.success
        assert result.analysis is None
        assert stores.pipeline.get("T1").find_stage("analyzing").status == "failed"

    def test_unexpected_exception_is_contained(self, make_orchestrator, stores, task, monkeypatch):
        monkeypatch.setattr(
            stores.pipeline, "complete", MagicMock(side_effect=StoreWriteError("/x", "disk full"))
        )

        result = make_orchestrator().process_task(task)

        assert result.success is False
        assert "disk full" in result.error
        assert stores.pipeline.get("T1").status == "failed"
        assert stores.queue.is_queued("T1")

    def test_failure_while_failing_is_logged(self, make_orchestrator, stores, recorder, task, monkeypatch):
        def broken():
            raise RepoConfigError("bad config")

        monkeypatch.setattr(stores.queue, "add", MagicMock(side_effect=StoreWriteError("/q", "read-only")))

        result = make_orchestrator(resolver=broken).process_task(task)

        assert result.success is False
        assert stores.pipeline.get("T1").status == "failed"
        assert recorder.kinds() == ["workflow_failed"]


class TestProcessTaskAlreadyRunning:
    def test_in_progress_task_is_refused(self, make_orchestrator, stores, recorder, runners, task):
        stores.pipeline.init("T1", "Add login page")
        stores.pipeline.update_stage("T1", "implementing")

        result = make_orchestrator().process_task(task)

        assert result.success is False
        assert "already in progress" in result.error
        assert stores.pipeline.get("T1").current_stage == "implementing"
        assert stores.queue.get_pending() == []
        assert recorder.events == []
        assert runners["implementation"].call_count == 0

    def test_finished_task_can_be_reprocessed(self, make_orchestrator, stores, task):
        stores.pipeline.init("T1", "Add login page")
        stores.pipeline.fail("T1", "earlier failure")

        assert make_orchestrator().process_task(task).success


class TestReruns:
    def test_rerun_review(self, make_orchestrator, stores, recorder, runners, task, clock):
        orchestrator = make_orchestrator()
        orchestrator.process_task(task)
        runners["review"].calls.clear()

        result = orchestrator.rerun_codex_review("T1")

        assert result.success is True
        assert result.branch == "task-T1"
        assert runners["review"].call_count == 1
        entry = stores.pipeline.get("T1").find_stage("codex_reviewing")
        assert entry.name == "Code Review (Re-run)"
        assert entry.status == "completed"
        assert recorder.kinds()[-1] == "rerun_complete"

    def test_rerun_fixes_failure(self, make_orchestrator, stores, recorder, runners, task):
        orchestrator = make_orchestrator()
        orchestrator.process_task(task)
        runners["fixes"].outcomes = [RuntimeError("claude crashed")]

        result = orchestrator.rerun_claude_fixes("T1")

        assert result.success is False
        assert result.error == "claude crashed"
        assert runners["fixes"].call_count == 2
        assert stores.pipeline.get("T1").find_stage("claude_fixing").status == "failed"
        assert recorder.kinds()[-1] == "rerun_failed"

    def test_rerun_is_single_shot(self, make_orchestrator, runners, task):
        decisions = MagicMock()
        orchestrator = make_orchestrator(decisions=decisions)
        orchestrator.process_task(task)
        runners["review"].outcomes = [StageResult.failed("still broken")]

        assert orchestrator.rerun_codex_review("T1").success is False
        decisions.decide.assert_not_called()

    def test_requires_completed_implementation(self, make_orchestrator, stores):
        stores.pipeline.init("T1", "task")

        with pytest.raises(StagePreconditionError):
            make_orchestrator().rerun_codex_review("T1")

    def test_unknown_task(self, make_orchestrator):
        with pytest.raises(PipelineNotFoundError):
            make_orchestrator().rerun_claude_fixes("missing")


class TestStatus:
    def test_get_task_status(self, make_orchestrator, task):
        orchestrator = make_orchestrator()
        orchestrator.process_task(task)

        summary = orchestrator.get_task_status("T1")
        assert summary.status == "completed"
        assert summary.progress == 50
        assert orchestrator.get_task_status("missing") is None

    def test_get_active_tasks(self, make_orchestrator, stores):
        stores.pipeline.init("A", "a")
        stores.pipeline.init("B", "b")
        stores.pipeline.complete("B")

        assert [p.task_id for p in make_orchestrator().get_active_tasks()] == ["A"]


class TestRecoverStalePipelines:
    def test_recovers_stale(self, make_orchestrator, stores, recorder, clock, state_dir):
        stores.pipeline.init("old", "stuck task")
        stores.pipeline.update_stage("old", "implementing")
        clock.advance(3_600_000)
        stores.pipeline.init("fresh", "running task")

        recovered = make_orchestrator().recover_stale_pipelines()

        assert recovered == 1
        record = stores.pipeline.get("old")
        assert record.status == "failed"
        assert "stuck at stage 'implementing'" in record.errors[-1].error
        assert "30 minutes" in record.errors[-1].error
        assert stores.pipeline.get("fresh").status == "in_progress"
        assert recorder.kinds() == ["stale_recovered"]
        assert task_log(state_dir, "old").get_events("RECOVERED")[0]["idle_minutes"] == "60"

    def test_nothing_stale(self, make_orchestrator, stores):
        stores.pipeline.init("T1", "task")
        assert make_orchestrator().recover_stale_pipelines() == 0

    def test_explicit_timeout(self, make_orchestrator, stores, clock):
        stores.pipeline.init("T1", "task")
        clock.advance(10 * 60 * 1000)

        assert make_orchestrator().recover_stale_pipelines(timeout_ms=5 * 60 * 1000) == 1

    def test_one_bad_record_does_not_stop_sweep(self, stores, notifications, clock, state_dir, monkeypatch):
        stores.pipeline.init("A", "a")
        stores.pipeline.init("B", "b")
        clock.advance(3_600_000)

        real_fail = stores.pipeline.fail

        def flaky_fail(task_id, error):
            if task_id == "A":
                raise StoreWriteError("/x", "disk full")
            return real_fail(task_id, error)

        monkeypatch.setattr(stores.pipeline, "fail", flaky_fail)

        recovered = recover_stale_pipelines(
            stores.pipeline,
            notifications,
            1_800_000,
            task_logger=lambda tid: TaskLogger(tid, logs_dir=state_dir / "logs"),
            clock=clock,
        )

        assert recovered == 1
        assert stores.pipeline.get("A").status == "in_progress"
        assert stores.pipeline.get("B").status == "failed"


class TestBuildOrchestrator:
    def test_wires_config(self, state_dir, runners):
        config = {
            "pipeline": {"max_stage_attempts": 2, "skip_stages": ["fixes"], "stale_timeout_minutes": 10},
        }

        orchestrator = build_orchestrator(runners, decisions=AbortDecisionProvider(), config=config)

        assert orchestrator.executor.max_attempts == 2
        assert orchestrator.skip_stages == ["fixes"]
        assert orchestrator.stale_timeout_ms == 600_000
        assert orchestrator.pipeline.path == state_dir / "state" / "pipeline-state.json"
