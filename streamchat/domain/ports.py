"""
Narrow interfaces to the collaborators the engine does not own.

The upstream completion service, the message store, durable file storage,
the artifact sources (execution container / file store), image generation and
document search are all consumed through these protocols only.
"""

from typing import Dict, Any, List, Optional, Protocol, Tuple, AsyncIterator


class UpstreamClient(Protocol):
    """Streaming completion backend"""

    async def create_stream(
        self,
        input_items: List[Dict[str, Any]],
        request_options: Dict[str, Any],
    ) -> AsyncIterator[Dict[str, Any]]:
        """Open one upstream stream carrying the full input list"""
        ...


class PersistenceSink(Protocol):
    """Receives the final assistant message of a turn"""

    async def upsert_message(
        self,
        thread_id: str,
        message_id: str,
        role: str,
        content: str,
        reasoning_text: Optional[str] = None,
        tool_call_history: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        ...


class DurableStore(Protocol):
    """Long-lived storage for generated and downloaded artifacts"""

    async def upload(self, thread_id: str, filename: str, data: bytes, content_type: str) -> str:
        """Store the bytes and return a URL clients can fetch"""
        ...


class ArtifactSource(Protocol):
    """Where model-referenced files originally live"""

    async def download_container_file(self, container_id: str, file_id: str) -> bytes:
        ...

    async def download_file(self, file_id: str) -> Tuple[bytes, Optional[str]]:
        """Return the file bytes and, when known, its original filename"""
        ...

    async def download_url(self, url: str) -> bytes:
        ...


class ImageGenerator(Protocol):

    async def generate(self, prompt: str) -> Tuple[bytes, Optional[str]]:
        """Return PNG bytes and the revised prompt, if any"""
        ...


class DocumentSearch(Protocol):

    async def search(self, thread_id: str, query: str, top: int, skip: int) -> List[Dict[str, Any]]:
        """Return documents shaped as {id, content, metadata, score}"""
        ...
