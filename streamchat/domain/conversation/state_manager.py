from typing import Dict, Any, List, Optional, AsyncIterator, Tuple
from datetime import datetime
import copy
import json

import structlog

from streamchat.domain.models.conversation_state import (
    ConversationState,
    FunctionCallOutputItem,
    MessageItem,
    ToolCallRecord,
    ToolResult,
    TurnContext,
    new_message_id,
)
from streamchat.domain.ports import UpstreamClient

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant. Use the available tools when they help answer the user."


def build_request_options(
    model: str,
    tools: List[Dict[str, Any]],
    parallel_tool_calls: bool = False,
    reasoning_effort: Optional[str] = None
) -> Dict[str, Any]:
    """Request configuration shared by every stream of a turn"""

    options: Dict[str, Any] = {
        "model": model,
        "store": False,
        "tools": tools,
        "tool_choice": "auto",
        "parallel_tool_calls": parallel_tool_calls,
    }
    if reasoning_effort:
        options["reasoning"] = {"effort": reasoning_effort, "summary": "auto"}
    return options


class ConversationStateManager:
    """Owns the conversation input list and issues upstream stream requests"""

    def __init__(self, upstream: UpstreamClient, system_prompt: str = DEFAULT_SYSTEM_PROMPT):
        self.upstream = upstream
        self.system_prompt = system_prompt

    def _system_item(self) -> MessageItem:
        today = datetime.now().strftime("%Y-%m-%d %H:%M")
        return MessageItem(role="system", content=f"{self.system_prompt}\n\nToday's Date: {today}")

    @staticmethod
    def _user_item(context: TurnContext) -> MessageItem:
        if context.image_url:
            return MessageItem(
                role="user",
                content=[
                    {"type": "input_text", "text": context.user_message},
                    {"type": "input_image", "image_url": context.image_url},
                ]
            )
        return MessageItem(role="user", content=context.user_message)

    def create(
        self,
        context: TurnContext,
        history: Optional[List[Dict[str, Any]]] = None,
        message_id: Optional[str] = None
    ) -> ConversationState:
        """Seed the input with the system item, prior turns and the new user item"""

        items = [self._system_item()]
        for message in history or []:
            if message.get("role") not in ("user", "assistant") or not message.get("content"):
                continue
            items.append(MessageItem(role=message["role"], content=message["content"]))
        items.append(self._user_item(context))

        state = ConversationState(
            items=items,
            context=context,
            message_id=message_id or new_message_id()
        )
        logger.debug("Conversation created", thread_id=context.thread_id, items=len(items))
        return state

    async def _open(self, state: ConversationState) -> AsyncIterator[Dict[str, Any]]:
        token = state.context.cancel_token
        token.raise_if_cancelled()
        return await token.run(
            self.upstream.create_stream(state.input_payload(), state.context.request_options)
        )

    async def start(self, state: ConversationState) -> AsyncIterator[Dict[str, Any]]:
        """Open the first upstream stream of the turn"""

        logger.info(
            "Starting conversation stream",
            model=state.context.request_options.get("model"),
            tools=len(state.context.request_options.get("tools") or []),
        )
        return await self._open(state)

    async def continue_stream(self, state: ConversationState) -> AsyncIterator[Dict[str, Any]]:
        """Open a fresh upstream stream carrying the input as grown by tool calls

        The upstream protocol cannot resume a closed stream, so a continuation
        always resends the full history.
        """

        logger.info("Continuing conversation stream", items=len(state.items))
        return await self._open(state)

    @staticmethod
    def append_function_result(
        state: ConversationState,
        call: ToolCallRecord,
        result: Optional[ToolResult] = None,
        error: Optional[str] = None
    ) -> ConversationState:
        """Return a new state with the call and its output appended as one pair

        Without a result the output carries a structured error, so the model
        always sees a matched call/output.
        """

        if result is not None:
            output = result.output
        else:
            output = json.dumps({"error": error or "Function execution failed"})

        items = list(state.items)
        items.append(call.to_input_item())
        items.append(FunctionCallOutputItem(call_id=call.call_id, output=output))
        return state.model_copy(update={"items": items})

    @staticmethod
    def strip_stale_container(request_options: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Point every code-execution tool at an automatically created container

        Returns the new options and whether anything changed.
        """

        options = copy.deepcopy(request_options)
        changed = False
        for tool in options.get("tools") or []:
            if tool.get("type") != "code_interpreter":
                continue
            if tool.get("container") != {"type": "auto"}:
                tool["container"] = {"type": "auto"}
                changed = True
        return options, changed
