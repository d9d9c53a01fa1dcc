from typing import Dict, List, Optional
import asyncio
import uuid

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, Field

from streamchat.application.sse.event_channel import EventChannel
from streamchat.domain.annotation.annotation_resolver import AnnotationResolver, content_type_for
from streamchat.domain.conversation.state_manager import ConversationStateManager, build_request_options
from streamchat.domain.errors import ToolRegistrationError
from streamchat.domain.models.conversation_state import TurnContext, new_message_id
from streamchat.domain.orchestration.core.orchestrator import StreamOrchestrator
from streamchat.domain.ports import ArtifactSource, DocumentSearch, ImageGenerator, UpstreamClient
from streamchat.domain.tool.builtin_tools import register_builtin_tools
from streamchat.domain.tool.tool_executor import DynamicToolDescriptor, DynamicToolExecutor
from streamchat.domain.tool.tool_registry import ToolRegistry
from streamchat.infrastructure.config.settings import Settings, get_settings
from streamchat.infrastructure.observability.logging import setup_logging
from streamchat.infrastructure.storage.local_store import (
    InMemoryDocumentIndex,
    InMemoryMessageStore,
    LocalFileStore,
    safe_name,
)
from streamchat.infrastructure.upstream.openai_responses import (
    OpenAIArtifactSource,
    OpenAIImageGenerator,
    OpenAIResponsesClient,
    create_client,
)

logger = structlog.get_logger(__name__)


class ChatRequest(BaseModel):
    """Incoming user message for one turn"""
    thread_id: Optional[str] = Field(None, description="Existing thread, a new one is created when empty")
    message: str = Field(min_length=1)
    image_url: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Identity forwarded to dynamic tools")
    tools: List[DynamicToolDescriptor] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict, description="Resolved secrets for dynamic tools")


class EngineServices:
    """Process-wide collaborators shared by every turn"""

    def __init__(
        self,
        settings: Settings,
        upstream: UpstreamClient,
        message_store: InMemoryMessageStore,
        file_store: LocalFileStore,
        artifact_source: ArtifactSource,
        image_generator: ImageGenerator,
        document_search: DocumentSearch,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.settings = settings
        self.message_store = message_store
        self.file_store = file_store
        self.document_search = document_search

        executor = DynamicToolExecutor(client=http_client, timeout=settings.tool_timeout_seconds)
        self.registry = register_builtin_tools(
            ToolRegistry(executor=executor, timeout_seconds=settings.tool_timeout_seconds),
            image_generator,
            file_store,
            document_search,
        )
        self.state_manager = ConversationStateManager(upstream, settings.system_prompt)
        self.orchestrator = StreamOrchestrator(
            self.state_manager,
            AnnotationResolver(artifact_source, file_store),
            message_store,
            max_continuations=settings.max_continuations,
            drain_timeout_seconds=settings.drain_timeout_seconds,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineServices":
        client = create_client(settings)
        return cls(
            settings=settings,
            upstream=OpenAIResponsesClient(client),
            message_store=InMemoryMessageStore(),
            file_store=LocalFileStore(settings.storage_dir, settings.public_base_url),
            artifact_source=OpenAIArtifactSource(client),
            image_generator=OpenAIImageGenerator(client, model=settings.image_model),
            document_search=InMemoryDocumentIndex(),
        )


def _log_turn_result(task: asyncio.Task):
    if task.cancelled():
        logger.warning("Turn task cancelled")
    elif task.exception() is not None:
        logger.error("Turn task crashed", error=str(task.exception()))


def create_app(services: Optional[EngineServices] = None) -> FastAPI:
    settings = services.settings if services is not None else get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    services = services or EngineServices.from_settings(settings)

    app = FastAPI(title="StreamChat Conversation Server")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.post("/api/chat")
    async def chat(request: ChatRequest):
        thread_id = request.thread_id or uuid.uuid4().hex

        registry = services.registry.fork()
        for descriptor in request.tools:
            try:
                registry.register_dynamic(descriptor)
            except ToolRegistrationError as e:
                raise HTTPException(status_code=400, detail=str(e))

        history = await services.message_store.get_history(thread_id)
        await services.message_store.add_user_message(thread_id, request.message, new_message_id())

        request_options = build_request_options(
            settings.model,
            registry.get_tool_definitions() + settings.hosted_tools(),
            parallel_tool_calls=settings.parallel_tool_calls,
            reasoning_effort=settings.reasoning_effort if settings.supports_reasoning else None,
        )
        context = TurnContext(
            thread_id=thread_id,
            user_message=request.message,
            user_id=request.user_id,
            image_url=request.image_url,
            request_options=request_options,
            headers=request.headers,
        )
        state = services.state_manager.create(context, history)

        channel = EventChannel(max_size=settings.event_queue_size)
        task = asyncio.create_task(services.orchestrator.run_turn(state, registry, channel))
        task.add_done_callback(_log_turn_result)

        async def event_stream():
            try:
                async for frame in channel.frames():
                    yield frame
            finally:
                channel.detach()
                if not task.done():
                    # client went away before the turn finished
                    context.cancel_token.cancel()

        logger.info("Chat turn accepted", thread_id=thread_id, message_id=state.message_id, tools=len(request.tools))
        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Thread-Id": thread_id,
                "X-Message-Id": state.message_id,
            },
        )

    @app.get("/files/{thread_id}/{name}")
    async def get_file(thread_id: str, name: str):
        path = services.file_store.path_for(thread_id, name)
        if safe_name(name) != name or not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")

        content_type = content_type_for(name)
        return FileResponse(
            path,
            media_type=content_type,
            filename=name,
            content_disposition_type="inline" if content_type.startswith("image/") else "attachment",
        )

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": settings.service_name}

    return app


def main():
    uvicorn.run("streamchat.application.api.api_server:create_app", factory=True, host="0.0.0.0", port=8000)
