import json

import pytest

from streamchat.domain.conversation.state_manager import ConversationStateManager
from streamchat.domain.errors import TurnCancelled
from streamchat.domain.models.conversation_state import (
    FunctionCallItem,
    FunctionCallOutputItem,
    ToolCallRecord,
    ToolResult,
)
from tests.fakes import FakeUpstream


def test_create_seeds_system_history_and_user(make_context):
    manager = ConversationStateManager(FakeUpstream([]), system_prompt="Be brief.")
    history = [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
        {"role": "tool", "content": "ignored"},
    ]

    state = manager.create(make_context(user_message="new question"), history)

    roles = [item.role for item in state.items]
    assert roles == ["system", "user", "assistant", "user"]
    assert state.items[0].content.startswith("Be brief.")
    assert "Today's Date:" in state.items[0].content
    assert state.items[-1].content == "new question"
    assert state.message_id


def test_create_with_image_builds_multimodal_user_item(make_context):
    manager = ConversationStateManager(FakeUpstream([]))

    state = manager.create(make_context(user_message="what is this?", image_url="https://img.example/cat.png"))

    assert state.items[-1].content == [
        {"type": "input_text", "text": "what is this?"},
        {"type": "input_image", "image_url": "https://img.example/cat.png"},
    ]


def test_append_function_result_adds_the_pair_and_keeps_message_id(make_context):
    manager = ConversationStateManager(FakeUpstream([]))
    state = manager.create(make_context())
    call = ToolCallRecord(name="create_image", call_id="call_1", arguments='{"prompt":"cat"}')

    updated = manager.append_function_result(state, call, ToolResult(call_id="call_1", output='{"url":"u"}'))

    assert len(updated.items) == len(state.items) + 2
    assert isinstance(updated.items[-2], FunctionCallItem)
    assert isinstance(updated.items[-1], FunctionCallOutputItem)
    assert updated.items[-1].call_id == updated.items[-2].call_id == "call_1"
    assert updated.message_id == state.message_id
    assert len(state.items) == 2


def test_append_without_result_carries_error_payload(make_context):
    manager = ConversationStateManager(FakeUpstream([]))
    state = manager.create(make_context())
    call = ToolCallRecord(name="lookup", call_id="call_9", arguments="{}")

    updated = manager.append_function_result(state, call, error="endpoint unreachable")

    assert json.loads(updated.items[-1].output) == {"error": "endpoint unreachable"}


def test_strip_stale_container_switches_to_auto():
    options = {
        "model": "gpt-4.1",
        "tools": [
            {"type": "code_interpreter", "container": "cntr_old"},
            {"type": "function", "name": "create_image"},
        ],
    }

    stripped, changed = ConversationStateManager.strip_stale_container(options)

    assert changed
    assert stripped["tools"][0]["container"] == {"type": "auto"}
    assert stripped["tools"][1] == {"type": "function", "name": "create_image"}
    assert options["tools"][0]["container"] == "cntr_old"


@pytest.mark.asyncio
async def test_start_and_continue_send_full_input(make_context):
    upstream = FakeUpstream([[], []])
    manager = ConversationStateManager(upstream)
    state = manager.create(make_context())

    await manager.start(state)
    call = ToolCallRecord(name="x", call_id="c1", arguments="{}")
    state = manager.append_function_result(state, call, ToolResult(call_id="c1", output="{}"))
    await manager.continue_stream(state)

    assert len(upstream.requests[0]["input"]) == 2
    assert len(upstream.requests[1]["input"]) == 4
    assert upstream.requests[1]["input"][-1] == {"type": "function_call_output", "call_id": "c1", "output": "{}"}
    assert upstream.requests[0]["options"]["model"] == "gpt-4.1"


@pytest.mark.asyncio
async def test_start_refuses_cancelled_turn(make_context):
    manager = ConversationStateManager(FakeUpstream([[]]))
    context = make_context()
    context.cancel_token.cancel()

    with pytest.raises(TurnCancelled):
        await manager.start(manager.create(context))
