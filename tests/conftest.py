"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that
`import reply_pipeline` and `from tests.utils import ...` work in all tests.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from reply_pipeline.pipeline.runtime import build_runtime  # noqa: E402
from reply_pipeline.services.event_bus import EventPublisher  # noqa: E402
from tests.utils import (  # noqa: E402
    FakeClock,
    InMemoryRedis,
    RecordingDispatcher,
    ScriptedCompletion,
    make_session_factory,
)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def redis(clock) -> InMemoryRedis:
    return InMemoryRedis(now_fn=clock)


@pytest.fixture()
def session_factory():
    factory = make_session_factory()
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture()
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture()
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture()
def make_runtime(redis, clock, dispatcher, completion, session_factory):
    """
    Build a PipelineRuntime wired to the in-memory doubles and the fake clock.

    Keyword arguments override build_runtime options.
    """

    def _build(**overrides):
        options = dict(
            dispatcher=dispatcher,
            completion=completion,
            session_factory=session_factory,
            events=EventPublisher(redis, channel="test:events", enabled=True),
            worker_id="worker-test",
            now_fn=clock,
            sleep_fn=clock.sleep,
            clock=clock,
            processor_options={
                "initial_ttl": 30,
                "extend_seconds": 60,
                "heartbeat_seconds": 0,
                "persist_grace": 10,
                "urgent_retries": 2,
                "urgent_backoff": 0.5,
            },
            buffer_options={"timeout": 30, "poll_interval": 1},
        )
        options.update(overrides)
        return build_runtime(redis, **options)

    return _build
