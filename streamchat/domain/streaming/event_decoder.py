from typing import Dict, Any, AsyncIterator, Awaitable, Callable, Optional
import structlog

from streamchat.application.sse.event_encoder import ClientEventEncoder
from streamchat.domain.annotation.annotation_resolver import AnnotationResolver
from streamchat.domain.conversation.state_manager import ConversationStateManager
from streamchat.domain.errors import TurnCancelled, UpstreamStreamError
from streamchat.domain.models.conversation_state import (
    ConversationState,
    ResolvedArtifact,
    ToolCallRecord,
    ToolCallStatus,
    TurnProgress,
)
from streamchat.domain.ports import PersistenceSink
from streamchat.domain.streaming.upstream_events import OutputItemType, TurnOutcome, UpstreamEventType
from streamchat.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

SEGMENT_SEPARATOR = "\n\n"

INCOMPLETE_REASONS = {
    "max_output_tokens": "The model reached the maximum output tokens limit.",
    "content_filter": "The response was blocked by the content filter.",
}
DEFAULT_INCOMPLETE_REASON = "The response was incomplete."
CANCELLED_REASON = "The response was cancelled."

STREAM_ENDED_CODE = "stream_ended"
DEFAULT_ERROR_MESSAGE = "Something went wrong while generating the response."


def user_facing_error(error: UpstreamStreamError) -> str:
    """Short, reason-mapped text for the client; raw details stay in the logs"""

    code = (error.code or "").lower()
    if code == STREAM_ENDED_CODE:
        return "The response ended unexpectedly."
    if error.is_stale_resource:
        return "The code execution session expired. Please try again."
    if error.status_code == 429 or code in ("rate_limit_exceeded", "rate_limit_error"):
        return "The service is busy right now. Please try again in a moment."
    if code == "context_length_exceeded":
        return "The conversation is too long for the model. Please start a new chat."
    if (error.status_code or 0) >= 500 or code == "server_error":
        return "The AI service is temporarily unavailable. Please try again."
    return DEFAULT_ERROR_MESSAGE


_END = object()

EventHandler = Callable[[Dict[str, Any]], Awaitable[Optional[TurnOutcome]]]
StreamOpener = Callable[[ConversationState], Awaitable[AsyncIterator[Dict[str, Any]]]]


async def _next_event(stream: AsyncIterator[Dict[str, Any]]) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


class EventDecoder:
    """Interprets upstream stream events for one logical turn

    A decoder instance lives as long as the turn: text, reasoning, tool history
    and resolved artifacts accumulate across every continuation stream. Each
    call to `decode` consumes exactly one upstream stream and reports how it
    ended.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        resolver: AnnotationResolver,
        state_manager: ConversationStateManager,
        encoder: ClientEventEncoder,
        persistence: PersistenceSink
    ):
        self.registry = registry
        self.resolver = resolver
        self.state_manager = state_manager
        self.encoder = encoder
        self.persistence = persistence

        self.progress = TurnProgress()
        self.artifacts: Dict[str, ResolvedArtifact] = {}
        self.allow_stale_retry = True
        self.last_error: Optional[UpstreamStreamError] = None
        self.state: Optional[ConversationState] = None

        self._seen_references: set = set()
        self._tool_calls: Dict[int, ToolCallRecord] = {}
        self._segment_index: Optional[int] = None
        self._reasoning_positions: Dict[int, int] = {}
        self._pending_continue = False

        self._handlers: Dict[UpstreamEventType, EventHandler] = {
            UpstreamEventType.RESPONSE_CREATED: self._on_lifecycle,
            UpstreamEventType.RESPONSE_QUEUED: self._on_lifecycle,
            UpstreamEventType.RESPONSE_IN_PROGRESS: self._on_lifecycle,
            UpstreamEventType.RESPONSE_COMPLETED: self._on_completed,
            UpstreamEventType.RESPONSE_INCOMPLETE: self._on_incomplete,
            UpstreamEventType.RESPONSE_FAILED: self._on_failed,
            UpstreamEventType.ERROR: self._on_error,
            UpstreamEventType.OUTPUT_TEXT_DELTA: self._on_text_delta,
            UpstreamEventType.OUTPUT_TEXT_DONE: self._on_text_done,
            UpstreamEventType.OUTPUT_TEXT_ANNOTATION_ADDED: self._on_annotation_added,
            UpstreamEventType.OUTPUT_ITEM_ADDED: self._on_item_added,
            UpstreamEventType.OUTPUT_ITEM_DONE: self._on_item_done,
            UpstreamEventType.FUNCTION_CALL_ARGUMENTS_DELTA: self._on_arguments_delta,
            UpstreamEventType.FUNCTION_CALL_ARGUMENTS_DONE: self._on_arguments_done,
            UpstreamEventType.REASONING_SUMMARY_TEXT_DELTA: self._on_reasoning_delta,
            UpstreamEventType.REASONING_SUMMARY_TEXT_DONE: self._on_reasoning_done,
            UpstreamEventType.IMAGE_GENERATION_IN_PROGRESS: self._on_tool_progress,
            UpstreamEventType.IMAGE_GENERATION_GENERATING: self._on_tool_progress,
            UpstreamEventType.IMAGE_GENERATION_PARTIAL_IMAGE: self._on_tool_progress,
            UpstreamEventType.IMAGE_GENERATION_COMPLETED: self._on_tool_progress,
            UpstreamEventType.WEB_SEARCH_IN_PROGRESS: self._on_tool_progress,
            UpstreamEventType.WEB_SEARCH_SEARCHING: self._on_tool_progress,
            UpstreamEventType.WEB_SEARCH_COMPLETED: self._on_tool_progress,
            UpstreamEventType.CODE_INTERPRETER_IN_PROGRESS: self._on_tool_progress,
            UpstreamEventType.CODE_INTERPRETER_INTERPRETING: self._on_tool_progress,
            UpstreamEventType.CODE_INTERPRETER_COMPLETED: self._on_tool_progress,
            UpstreamEventType.CODE_INTERPRETER_CODE_DELTA: self._on_code_progress,
            UpstreamEventType.CODE_INTERPRETER_CODE_DONE: self._on_code_progress,
            UpstreamEventType.UNKNOWN: self._on_unknown,
        }

    # ------------------------------------------------------------------ #
    # stream loop
    # ------------------------------------------------------------------ #

    def reset(self):
        """Forget everything produced by an attempt that is being retried"""
        self.progress.reset()
        self.artifacts.clear()
        self._seen_references.clear()
        self.last_error = None

    def _begin_stream(self, state: ConversationState):
        self.state = state
        self._tool_calls = {}
        self._segment_index = None
        self._reasoning_positions = {}
        self._pending_continue = False

    @property
    def _parallel_tool_calls(self) -> bool:
        return bool(self.state.context.request_options.get("parallel_tool_calls", False))

    async def decode(self, state: ConversationState, open_stream: StreamOpener) -> TurnOutcome:
        """Open and consume one upstream stream

        `self.state` holds the conversation as grown by tool calls afterwards.
        """

        self._begin_stream(state)
        token = state.context.cancel_token
        stream: Optional[AsyncIterator[Dict[str, Any]]] = None

        try:
            stream = await open_stream(state)
            while True:
                event = await token.run(_next_event(stream))
                if event is _END:
                    return await self._on_stream_end()

                event_type = UpstreamEventType.parse(event.get("type", ""))
                outcome = await self._handlers[event_type](event)
                if outcome is not None:
                    return outcome

        except TurnCancelled:
            return await self._on_cancelled()
        except UpstreamStreamError as e:
            return await self._on_upstream_error(e)
        finally:
            if stream is not None:
                await self._close_stream(stream)

    @staticmethod
    async def _close_stream(stream: AsyncIterator[Dict[str, Any]]):
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("Upstream stream did not close cleanly", error=str(e))

    # ------------------------------------------------------------------ #
    # terminal handling
    # ------------------------------------------------------------------ #

    async def persist(self, text: str):
        """Hand the turn's message to the persistence sink, at most once"""

        if self.progress.persisted:
            return
        self.progress.persisted = True

        context = self.state.context
        history = [record.model_dump(mode="json") for record in self.progress.tool_call_history]
        try:
            await self.persistence.upsert_message(
                context.thread_id,
                self.state.message_id,
                "assistant",
                text,
                reasoning_text=self.progress.reasoning_text or None,
                tool_call_history=history or None,
            )
        except Exception as e:
            logger.error("Failed to persist message", message_id=self.state.message_id, error=str(e))

    async def persist_partial(self):
        if self.progress.text or self.progress.reasoning_text or self.progress.tool_call_history:
            await self.persist(self.progress.text)

    async def _complete(self) -> TurnOutcome:
        text = self.progress.text
        mappings = self.resolver.build_mappings(text, self.artifacts.values())
        final_text = self.resolver.apply_mappings(text, mappings)
        if mappings:
            logger.info("Rewrote artifact references", mappings=len(mappings))

        await self.persist(final_text)
        await self.encoder.send_final_content(final_text)
        return TurnOutcome.COMPLETED

    async def _on_stream_end(self) -> TurnOutcome:
        if self._pending_continue:
            return TurnOutcome.CONTINUE
        if self.progress.text:
            logger.warning("Upstream stream ended without a terminal event, completing with accumulated text")
            return await self._complete()
        return await self._on_upstream_error(
            UpstreamStreamError("stream ended without a terminal event", code=STREAM_ENDED_CODE)
        )

    async def _on_cancelled(self) -> TurnOutcome:
        logger.info("Turn cancelled", message_id=self.state.message_id)
        await self.persist_partial()
        await self.encoder.send_abort(CANCELLED_REASON)
        return TurnOutcome.ABORTED

    async def _on_upstream_error(self, error: UpstreamStreamError) -> TurnOutcome:
        self.last_error = error
        if error.is_stale_resource and self.allow_stale_retry:
            logger.warning("Execution container is stale, retrying turn", code=error.code, error=error.message)
            return TurnOutcome.STALE_RESOURCE

        logger.error("Upstream stream error", code=error.code, status_code=error.status_code, error=error.message)
        return await self.fail_turn(user_facing_error(error))

    async def fail_turn(self, message: str = DEFAULT_ERROR_MESSAGE) -> TurnOutcome:
        """End the turn with an error event after persisting what was produced"""
        await self.persist_partial()
        await self.encoder.send_error(message)
        return TurnOutcome.FAILED

    # ------------------------------------------------------------------ #
    # lifecycle events
    # ------------------------------------------------------------------ #

    async def _on_lifecycle(self, event: Dict[str, Any]) -> None:
        response = event.get("response") or {}
        logger.debug("Upstream lifecycle event", event_type=event.get("type"), response_id=response.get("id"))

    async def _on_completed(self, event: Dict[str, Any]) -> TurnOutcome:
        response = event.get("response") or {}
        for item in response.get("output") or []:
            if item.get("type") == OutputItemType.MESSAGE.value:
                await self._collect_message_annotations(item)

        if self._pending_continue:
            return TurnOutcome.CONTINUE
        return await self._complete()

    async def _on_incomplete(self, event: Dict[str, Any]) -> TurnOutcome:
        response = event.get("response") or {}
        reason = (response.get("incomplete_details") or {}).get("reason")
        message = INCOMPLETE_REASONS.get(reason, DEFAULT_INCOMPLETE_REASON)

        logger.warning("Upstream response incomplete", reason=reason)
        await self.persist(self.progress.text)
        await self.encoder.send_abort(message)
        return TurnOutcome.ABORTED

    async def _on_failed(self, event: Dict[str, Any]) -> None:
        response = event.get("response") or {}
        error = response.get("error") or {}
        raise UpstreamStreamError(error.get("message") or "response failed", code=error.get("code"))

    async def _on_error(self, event: Dict[str, Any]) -> None:
        raise UpstreamStreamError(event.get("message") or "upstream error", code=event.get("code"))

    async def _on_unknown(self, event: Dict[str, Any]) -> None:
        logger.debug("Skipping unrecognized upstream event", event_type=event.get("type"))

    # ------------------------------------------------------------------ #
    # text and reasoning
    # ------------------------------------------------------------------ #

    async def _append_text(self, delta: str):
        if not delta:
            return

        segments = self.progress.segments
        if self._segment_index is None:
            if self.progress.text:
                # joins this stream's text to what earlier streams produced
                await self.encoder.send_content(SEGMENT_SEPARATOR)
            segments.append("")
            self._segment_index = len(segments) - 1

        segments[self._segment_index] += delta
        await self.encoder.send_content(delta)

    async def _on_text_delta(self, event: Dict[str, Any]) -> None:
        await self._append_text(event.get("delta") or "")

    async def _on_text_done(self, event: Dict[str, Any]) -> None:
        # the text was already delivered delta by delta
        logger.debug("Output text done", item_id=event.get("item_id"))

    def _reasoning_slot(self, event: Dict[str, Any]) -> int:
        summary_index = event.get("summary_index") or 0
        if summary_index not in self._reasoning_positions:
            self.progress.reasoning_blocks.append("")
            self._reasoning_positions[summary_index] = len(self.progress.reasoning_blocks) - 1
        return self._reasoning_positions[summary_index]

    async def _on_reasoning_delta(self, event: Dict[str, Any]) -> None:
        delta = event.get("delta") or ""
        if not delta:
            return
        slot = self._reasoning_slot(event)
        self.progress.reasoning_blocks[slot] += delta
        await self.encoder.send_reasoning(delta)

    async def _on_reasoning_done(self, event: Dict[str, Any]) -> None:
        text = event.get("text")
        if text is None:
            return
        slot = self._reasoning_slot(event)
        self.progress.reasoning_blocks[slot] = text

    # ------------------------------------------------------------------ #
    # annotations
    # ------------------------------------------------------------------ #

    async def _collect_annotation(self, annotation: Dict[str, Any]):
        reference = self.resolver.parse_annotation(annotation or {})
        if reference is None or reference.key in self._seen_references:
            return
        self._seen_references.add(reference.key)

        artifact = await self.resolver.resolve(reference, self.state.context)
        if artifact is not None:
            self.artifacts[reference.key] = artifact

    async def _collect_message_annotations(self, item: Dict[str, Any]):
        for part in item.get("content") or []:
            for annotation in part.get("annotations") or []:
                await self._collect_annotation(annotation)

    async def _on_annotation_added(self, event: Dict[str, Any]) -> None:
        await self._collect_annotation(event.get("annotation") or {})

    # ------------------------------------------------------------------ #
    # function calls
    # ------------------------------------------------------------------ #

    def _find_record(self, event: Dict[str, Any]) -> Optional[ToolCallRecord]:
        output_index = event.get("output_index")
        if output_index in self._tool_calls:
            return self._tool_calls[output_index]

        item_id = event.get("item_id")
        call_id = (event.get("item") or {}).get("call_id")
        for record in self._tool_calls.values():
            if item_id and record.item_id == item_id:
                return record
            if call_id and record.call_id == call_id:
                return record
        return None

    def _open_record(self, item: Dict[str, Any], output_index: Optional[int]) -> ToolCallRecord:
        record = ToolCallRecord(
            name=item.get("name", ""),
            call_id=item.get("call_id") or item.get("id", ""),
            item_id=item.get("id"),
            output_index=output_index,
        )
        key = output_index if output_index is not None else len(self._tool_calls)
        self._tool_calls[key] = record
        self.progress.tool_call_history.append(record)
        return record

    async def _dispatch_tool(self, record: ToolCallRecord):
        """Run the call once and fold the call/output pair into the conversation"""

        if record.call_id in self.progress.dispatched_call_ids:
            logger.debug("Ignoring already dispatched call", call_id=record.call_id)
            return
        self.progress.dispatched_call_ids.append(record.call_id)
        record.status = ToolCallStatus.ARGUMENTS_COMPLETE

        await self.encoder.send_function_call(record.name, record.arguments, record.call_id)

        result = await self.registry.execute(record, self.state.context)
        record.result = result.output
        record.status = ToolCallStatus.COMPLETED if result.success else ToolCallStatus.FAILED

        self.state = self.state_manager.append_function_result(self.state, record, result)
        self._pending_continue = True

        await self.encoder.send_function_call_result(result.output, record.call_id)

    async def _on_arguments_delta(self, event: Dict[str, Any]) -> None:
        record = self._find_record(event)
        if record is None:
            logger.warning("Arguments delta for unknown call", item_id=event.get("item_id"))
            return
        record.arguments += event.get("delta") or ""

    async def _on_arguments_done(self, event: Dict[str, Any]) -> None:
        record = self._find_record(event)
        if record is None:
            logger.warning("Arguments done for unknown call", item_id=event.get("item_id"))
            return

        arguments = event.get("arguments")
        if arguments is not None:
            if arguments != record.arguments:
                logger.debug("Accumulated arguments differ from final arguments", call_id=record.call_id)
            record.arguments = arguments
        await self._dispatch_tool(record)

    async def _on_item_added(self, event: Dict[str, Any]) -> None:
        item = event.get("item") or {}
        item_type = item.get("type")
        if item_type == OutputItemType.FUNCTION_CALL.value:
            record = self._open_record(item, event.get("output_index"))
            logger.debug("Function call started", name=record.name, call_id=record.call_id)
        else:
            logger.debug("Output item added", item_type=item_type, item_id=item.get("id"))

    async def _on_item_done(self, event: Dict[str, Any]) -> Optional[TurnOutcome]:
        item = event.get("item") or {}
        item_type = item.get("type")

        if item_type == OutputItemType.FUNCTION_CALL.value:
            return await self._on_function_call_done(event, item)
        if item_type == OutputItemType.IMAGE_GENERATION_CALL.value:
            await self._on_image_generation_done(item)
        elif item_type == OutputItemType.CODE_INTERPRETER_CALL.value:
            await self._on_code_interpreter_done(item)
        elif item_type == OutputItemType.WEB_SEARCH_CALL.value:
            logger.info("Web search completed", item_id=item.get("id"), status=item.get("status"))
        elif item_type == OutputItemType.MESSAGE.value:
            await self._collect_message_annotations(item)
        return None

    async def _on_function_call_done(self, event: Dict[str, Any], item: Dict[str, Any]) -> Optional[TurnOutcome]:
        record = self._find_record(event)
        if record is None:
            record = self._open_record(item, event.get("output_index"))

        if record.call_id not in self.progress.dispatched_call_ids:
            # arguments-done never arrived; the finished item carries the full arguments
            record.arguments = item.get("arguments") or record.arguments
            await self._dispatch_tool(record)

        if not self._parallel_tool_calls:
            return TurnOutcome.CONTINUE
        return None

    # ------------------------------------------------------------------ #
    # hosted tools
    # ------------------------------------------------------------------ #

    async def _on_image_generation_done(self, item: Dict[str, Any]):
        image_base64 = item.get("result")
        if not image_base64:
            logger.warning("Image generation finished without a result", item_id=item.get("id"))
            return

        artifact = await self.resolver.store_image(image_base64, self.state.context, item.get("id", ""))
        if artifact is not None:
            await self._append_text(f"\n\n![generated image]({artifact.url})\n\n")

    async def _on_code_interpreter_done(self, item: Dict[str, Any]):
        for output in item.get("outputs") or []:
            output_type = output.get("type")
            if output_type == "image" and output.get("url"):
                artifact = await self.resolver.resolve_url(output["url"], self.state.context)
                if artifact is not None:
                    await self._append_text(f"\n\n![generated image]({artifact.url})\n\n")
            elif output_type == "logs":
                logger.debug("Code execution logs", item_id=item.get("id"), logs=output.get("logs"))

    async def _on_tool_progress(self, event: Dict[str, Any]) -> None:
        logger.debug("Hosted tool progress", event_type=event.get("type"), item_id=event.get("item_id"))

    async def _on_code_progress(self, event: Dict[str, Any]) -> None:
        logger.debug("Code execution source", event_type=event.get("type"), item_id=event.get("item_id"))
