from typing import Literal, Union
from pydantic import BaseModel, Field
from enum import Enum


class EventType(str, Enum):
    """Outward stream event types"""
    CONTENT = "content"
    REASONING = "reasoning"
    FUNCTION_CALL = "functionCall"
    FUNCTION_CALL_RESULT = "functionCallResult"
    FINAL_CONTENT = "finalContent"
    ABORT = "abort"
    ERROR = "error"


TERMINAL_EVENT_TYPES = {EventType.FINAL_CONTENT, EventType.ABORT, EventType.ERROR}


class BaseEvent(BaseModel):
    """Base model for every event written to the client stream"""
    type: EventType

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_sse(self) -> str:
        """Frame as `event: <type>` / `data: <json>` followed by a blank line"""
        return f"event: {self.type.value}\ndata: {self.model_dump_json()}\n\n"


class ContentEvent(BaseEvent):
    """Incremental text; carries only the new delta"""
    type: Literal[EventType.CONTENT] = EventType.CONTENT
    id: str = Field(description="Stable message id of the turn")
    text: str


class ReasoningEvent(BaseEvent):
    type: Literal[EventType.REASONING] = EventType.REASONING
    text: str


class FunctionCallEvent(BaseEvent):
    type: Literal[EventType.FUNCTION_CALL] = EventType.FUNCTION_CALL
    name: str
    arguments: str
    call_id: str


class FunctionCallResultEvent(BaseEvent):
    type: Literal[EventType.FUNCTION_CALL_RESULT] = EventType.FUNCTION_CALL_RESULT
    result: str
    call_id: str


class FinalContentEvent(BaseEvent):
    """Fully annotation-resolved answer of the turn"""
    type: Literal[EventType.FINAL_CONTENT] = EventType.FINAL_CONTENT
    text: str


class AbortEvent(BaseEvent):
    type: Literal[EventType.ABORT] = EventType.ABORT
    reason: str


class ErrorEvent(BaseEvent):
    type: Literal[EventType.ERROR] = EventType.ERROR
    message: str


ClientEvent = Union[
    ContentEvent,
    ReasoningEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    FinalContentEvent,
    AbortEvent,
    ErrorEvent,
]
