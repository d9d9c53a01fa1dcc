from __future__ import annotations

import pytest

from streamchat.application.sse.event_channel import EventChannel
from streamchat.domain.annotation.annotation_resolver import AnnotationResolver
from streamchat.domain.conversation.state_manager import ConversationStateManager, build_request_options
from streamchat.domain.models.conversation_state import TurnContext
from streamchat.domain.orchestration.core.orchestrator import StreamOrchestrator
from streamchat.domain.tool.tool_registry import ToolRegistry
from tests.fakes import FakeArtifactSource, FakePersistence, FakeStore


@pytest.fixture
def persistence() -> FakePersistence:
    return FakePersistence()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def artifact_source() -> FakeArtifactSource:
    return FakeArtifactSource()


@pytest.fixture
def resolver(artifact_source, store) -> AnnotationResolver:
    return AnnotationResolver(artifact_source, store)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry(timeout_seconds=2.0)


@pytest.fixture
def make_context():
    def _make(**overrides) -> TurnContext:
        values = {
            "thread_id": "thread-1",
            "user_message": "hello",
            "user_id": "user-hash",
            "request_options": build_request_options("gpt-4.1", []),
        }
        values.update(overrides)
        return TurnContext(**values)

    return _make


@pytest.fixture
def channel() -> EventChannel:
    return EventChannel(max_size=1000)


@pytest.fixture
def make_orchestrator(resolver, persistence):
    def _make(upstream, max_continuations: int = 8):
        manager = ConversationStateManager(upstream, system_prompt="You are a test assistant.")
        orchestrator = StreamOrchestrator(
            manager,
            resolver,
            persistence,
            max_continuations=max_continuations,
            drain_timeout_seconds=0.5,
        )
        return orchestrator, manager

    return _make
