from typing import List, Optional

import structlog

from streamchat.application.sse.event_channel import EventChannel
from streamchat.application.sse.schema.events import (
    AbortEvent,
    BaseEvent,
    ContentEvent,
    ErrorEvent,
    EventType,
    FinalContentEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    ReasoningEvent,
)

logger = structlog.get_logger(__name__)


class ClientEventEncoder:
    """Serializes decoded turn increments onto the outward event channel

    Exactly one terminal event (finalContent, abort or error) is written per
    turn; anything sent after it is dropped.
    """

    def __init__(self, channel: EventChannel, message_id: str):
        self.channel = channel
        self.message_id = message_id
        self.terminal_event: Optional[BaseEvent] = None
        self.sent: List[EventType] = []

    @property
    def finished(self) -> bool:
        return self.terminal_event is not None

    async def _emit(self, event: BaseEvent) -> bool:
        if self.terminal_event is not None:
            logger.debug("Dropping event after terminal", event_type=event.type.value)
            return False

        if event.is_terminal:
            self.terminal_event = event

        delivered = await self.channel.send(event.to_sse(), wait=event.is_terminal)
        if delivered:
            self.sent.append(event.type)
        return delivered

    async def send_content(self, text: str) -> bool:
        if not text:
            return False
        return await self._emit(ContentEvent(id=self.message_id, text=text))

    async def send_reasoning(self, text: str) -> bool:
        if not text:
            return False
        return await self._emit(ReasoningEvent(text=text))

    async def send_function_call(self, name: str, arguments: str, call_id: str) -> bool:
        return await self._emit(FunctionCallEvent(name=name, arguments=arguments, call_id=call_id))

    async def send_function_call_result(self, result: str, call_id: str) -> bool:
        return await self._emit(FunctionCallResultEvent(result=result, call_id=call_id))

    async def send_final_content(self, text: str) -> bool:
        return await self._emit(FinalContentEvent(text=text))

    async def send_abort(self, reason: str) -> bool:
        return await self._emit(AbortEvent(reason=reason))

    async def send_error(self, message: str) -> bool:
        return await self._emit(ErrorEvent(message=message))

    async def close(self):
        await self.channel.close()
