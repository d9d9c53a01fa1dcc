from typing import TypedDict, Dict, Any, Optional
from langgraph.graph import StateGraph, END
from langchain_core.runnables import RunnableConfig
import structlog

from streamchat.application.sse.event_channel import EventChannel
from streamchat.application.sse.event_encoder import ClientEventEncoder
from streamchat.domain.annotation.annotation_resolver import AnnotationResolver
from streamchat.domain.conversation.state_manager import ConversationStateManager
from streamchat.domain.models.conversation_state import ConversationState
from streamchat.domain.ports import PersistenceSink
from streamchat.domain.streaming.event_decoder import DEFAULT_ERROR_MESSAGE, EventDecoder
from streamchat.domain.streaming.upstream_events import TurnOutcome
from streamchat.domain.tool.tool_registry import ToolRegistry
from streamchat.infrastructure.observability.logging import turn_logger

logger = structlog.get_logger(__name__)

TOO_MANY_CONTINUATIONS = "The response needed too many tool calls to complete."


class TurnGraphState(TypedDict):
    """State carried between the nodes of one turn"""
    conversation: ConversationState
    initial: ConversationState
    outcome: Optional[TurnOutcome]
    hops: int


class StreamOrchestrator:
    """Drives one turn through Streaming -> ToolPending -> Streaming ... -> Terminal

    Every continuation is a fresh upstream stream opened with the full input;
    a stale execution container restarts the turn once from its initial input.
    """

    def __init__(
        self,
        state_manager: ConversationStateManager,
        resolver: AnnotationResolver,
        persistence: PersistenceSink,
        max_continuations: int = 8,
        drain_timeout_seconds: float = 5.0
    ):
        self.state_manager = state_manager
        self.resolver = resolver
        self.persistence = persistence
        self.max_continuations = max_continuations
        self.drain_timeout_seconds = drain_timeout_seconds
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        workflow = StateGraph(TurnGraphState)

        workflow.add_node("streaming", self.streaming_node)
        workflow.add_node("tool_pending", self.tool_pending_node)
        workflow.add_node("stale_retry", self.stale_retry_node)

        workflow.set_entry_point("streaming")

        workflow.add_conditional_edges(
            "streaming",
            self.route_after_stream,
            {
                "continue": "tool_pending",
                "retry": "stale_retry",
                "end": END
            }
        )
        workflow.add_conditional_edges(
            "tool_pending",
            self.route_after_tool,
            {
                "stream": "streaming",
                "end": END
            }
        )
        workflow.add_edge("stale_retry", "streaming")

        return workflow.compile()

    @staticmethod
    def _decoder(config: RunnableConfig) -> EventDecoder:
        return config["configurable"]["decoder"]

    async def _open_stream(self, hops: int, state: ConversationState):
        if hops == 0:
            return await self.state_manager.start(state)
        return await self.state_manager.continue_stream(state)

    async def streaming_node(self, state: TurnGraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Open the next upstream stream and decode it to its end"""

        decoder = self._decoder(config)
        hops = state["hops"]

        async def open_stream(conversation: ConversationState):
            return await self._open_stream(hops, conversation)

        outcome = await decoder.decode(state["conversation"], open_stream)
        return {"conversation": decoder.state, "outcome": outcome}

    async def tool_pending_node(self, state: TurnGraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Count the continuation and enforce the hop limit"""

        decoder = self._decoder(config)
        hops = state["hops"] + 1
        decoder.progress.continuations = hops

        if hops > self.max_continuations:
            logger.warning("Continuation limit reached", hops=hops, limit=self.max_continuations)
            outcome = await decoder.fail_turn(TOO_MANY_CONTINUATIONS)
            return {"hops": hops, "outcome": outcome}

        turn_logger.log_transition(
            state["conversation"].context.thread_id,
            "tool_pending",
            "streaming",
            hops=hops,
            items=len(state["conversation"].items)
        )
        return {"hops": hops}

    async def stale_retry_node(self, state: TurnGraphState, config: RunnableConfig) -> Dict[str, Any]:
        """Restart from the initial input with code execution on a fresh container"""

        decoder = self._decoder(config)
        decoder.reset()
        decoder.allow_stale_retry = False

        initial = state["initial"]
        options, changed = self.state_manager.strip_stale_container(initial.context.request_options)
        context = initial.context.model_copy(update={"request_options": options})
        conversation = initial.model_copy(update={"context": context})

        logger.info("Retrying turn without stale container", reconfigured=changed)
        return {"conversation": conversation, "initial": conversation, "hops": 0, "outcome": None}

    @staticmethod
    def route_after_stream(state: TurnGraphState) -> str:
        outcome = state["outcome"]
        if outcome == TurnOutcome.CONTINUE:
            return "continue"
        if outcome == TurnOutcome.STALE_RESOURCE:
            return "retry"
        return "end"

    @staticmethod
    def route_after_tool(state: TurnGraphState) -> str:
        if state["outcome"] == TurnOutcome.FAILED:
            return "end"
        return "stream"

    async def run_turn(
        self,
        state: ConversationState,
        registry: ToolRegistry,
        channel: EventChannel
    ) -> TurnOutcome:
        """Run a whole turn, writing its events to `channel`, and close the channel"""

        encoder = ClientEventEncoder(channel, state.message_id)
        decoder = EventDecoder(registry, self.resolver, self.state_manager, encoder, self.persistence)
        thread_id = state.context.thread_id

        structlog.contextvars.bind_contextvars(thread_id=thread_id, message_id=state.message_id)
        turn_logger.log_turn_event("started", thread_id, state.message_id)

        try:
            result = await self.workflow.ainvoke(
                {"conversation": state, "initial": state, "outcome": None, "hops": 0},
                config={
                    "configurable": {"decoder": decoder},
                    "recursion_limit": 4 * self.max_continuations + 10,
                }
            )
            outcome = result["outcome"]
        except Exception as e:
            logger.exception("Turn failed unexpectedly", error=str(e))
            outcome = await decoder.fail_turn(DEFAULT_ERROR_MESSAGE)

        if not encoder.finished:
            logger.error("Turn ended without a terminal event", outcome=outcome)
            await encoder.send_error(DEFAULT_ERROR_MESSAGE)

        await encoder.close()
        await channel.wait_drained(timeout=self.drain_timeout_seconds)

        turn_logger.log_turn_event(
            "finished",
            thread_id,
            state.message_id,
            data={"outcome": outcome.value if outcome else None, "continuations": decoder.progress.continuations}
        )
        structlog.contextvars.unbind_contextvars("thread_id", "message_id")
        return outcome
