from typing import Dict, Any, List, Optional, Union, Literal, Annotated
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from enum import Enum
import uuid

from streamchat.domain.cancellation import CancellationToken


def new_message_id() -> str:
    """Generate a message identifier for one assistant turn"""
    return uuid.uuid4().hex


class MessageItem(BaseModel):
    """Plain conversation message (system, user or assistant)"""
    type: Literal["message"] = "message"
    role: Literal["system", "developer", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]


class FunctionCallItem(BaseModel):
    """Function call requested by the model"""
    type: Literal["function_call"] = "function_call"
    name: str
    arguments: str = Field(description="Raw JSON argument string as produced by the model")
    call_id: str


class FunctionCallOutputItem(BaseModel):
    """Result of a function call, fed back to the model"""
    type: Literal["function_call_output"] = "function_call_output"
    call_id: str
    output: str


ConversationInputItem = Annotated[
    Union[MessageItem, FunctionCallItem, FunctionCallOutputItem],
    Field(discriminator="type"),
]


class TurnContext(BaseModel):
    """Immutable per-turn context threaded through every component"""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    thread_id: str = Field(description="Chat thread identifier")
    user_message: str = Field(description="Original user text for this turn")
    user_id: Optional[str] = Field(None, description="Identity forwarded to dynamic tools")
    image_url: Optional[str] = Field(None, description="Optional multimodal image for the user item")
    cancel_token: CancellationToken = Field(default_factory=CancellationToken)
    request_options: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict, description="Per-request headers for tool calls")


class ConversationState(BaseModel):
    """Append-only conversation input plus the stable message id of the turn"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    items: List[ConversationInputItem] = Field(default_factory=list)
    context: TurnContext
    message_id: str = Field(default_factory=new_message_id)

    def input_payload(self) -> List[Dict[str, Any]]:
        """Serialize the input items for an upstream request"""
        return [item.model_dump(mode="json") for item in self.items]


class ToolCallStatus(str, Enum):
    """Lifecycle of a tool call inside one stream"""
    STARTED = "started"
    ARGUMENTS_COMPLETE = "arguments_complete"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolCallRecord(BaseModel):
    """Tool call being assembled from upstream deltas"""
    name: str
    call_id: str
    item_type: str = "function_call"
    item_id: Optional[str] = None
    output_index: Optional[int] = None
    arguments: str = ""
    result: Optional[str] = None
    status: ToolCallStatus = Field(default=ToolCallStatus.STARTED)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_input_item(self) -> FunctionCallItem:
        return FunctionCallItem(name=self.name, arguments=self.arguments, call_id=self.call_id)


class ToolResult(BaseModel):
    """Output of the Tool Dispatcher; output is always a string"""
    call_id: str
    output: str
    success: bool = True


class ResolvedArtifact(BaseModel):
    """A referenced file that has been copied to durable storage"""
    source_id: str
    filename: str
    url: str
    content_type: str = "application/octet-stream"

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


class AnnotationMapping(BaseModel):
    """Rewrite rule from a reference in the text to its durable location"""
    reference_key: str
    resolved_url: str
    replacement: str


class TurnProgress(BaseModel):
    """Everything accumulated for one logical turn across continuation streams"""
    segments: List[str] = Field(default_factory=list)
    reasoning_blocks: List[str] = Field(default_factory=list)
    tool_call_history: List[ToolCallRecord] = Field(default_factory=list)
    dispatched_call_ids: List[str] = Field(default_factory=list)
    continuations: int = 0
    persisted: bool = False

    @property
    def text(self) -> str:
        return "\n\n".join(segment for segment in self.segments if segment)

    @property
    def reasoning_text(self) -> str:
        return "\n\n".join(block for block in self.reasoning_blocks if block)

    def reset(self):
        """Drop everything produced by a discarded attempt"""
        self.segments.clear()
        self.reasoning_blocks.clear()
        self.tool_call_history.clear()
        self.dispatched_call_ids.clear()
        self.continuations = 0
