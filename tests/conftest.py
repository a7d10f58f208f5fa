"""Shared test fixtures for taskrelay tests."""

from pathlib import Path

import pytest

from taskrelay.models import RepositoryConfig, Task
from taskrelay.notifications import NotificationManager
from taskrelay.stages import StageResult
from taskrelay.storage import open_stores

# 2023-11-14T22:13:20Z
START_TIME = 1_700_000_000.0


class FakeClock:
    """Deterministic epoch-seconds clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms / 1000


class FakeRunner:
    """AgentRunner returning queued outcomes in order.

    Each outcome is a StageResult or an exception instance to raise. The last
    outcome repeats once the queue is exhausted.
    """

    def __init__(self, *outcomes, clock: FakeClock | None = None, takes_ms: int = 0):
        self.outcomes = list(outcomes) or [StageResult.ok()]
        self.calls = []
        self.clock = clock
        self.takes_ms = takes_ms

    def run(self, context):
        self.calls.append(context.attempt)
        if self.clock and self.takes_ms:
            self.clock.advance(self.takes_ms)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    @property
    def call_count(self) -> int:
        return len(self.calls)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event):
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind.value for e in self.events]


@pytest.fixture
def state_dir(tmp_path, monkeypatch) -> Path:
    """Point taskrelay at a throwaway state directory."""
    state = tmp_path / ".taskrelay"
    state.mkdir()
    monkeypatch.setenv("TASKRELAY_DIR", str(state))
    return state


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stores(state_dir, clock):
    return open_stores(clock=clock)


@pytest.fixture
def recorder() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def notifications(recorder) -> NotificationManager:
    return NotificationManager([recorder])


@pytest.fixture
def repo_config() -> RepositoryConfig:
    return RepositoryConfig(owner="acme", repo="webapp", path="/src/webapp")


@pytest.fixture
def task() -> Task:
    return Task(
        id="T1",
        name="Add login page",
        description="Users need a way to log in",
        url="https://tracker.example.com/t/T1",
    )
