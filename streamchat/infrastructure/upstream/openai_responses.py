"""
OpenAI Responses API adapter.

Streams come back as plain event dicts so the decoder never depends on SDK
classes; SDK errors are translated into UpstreamStreamError at this boundary.
"""

from typing import Dict, Any, List, Optional, AsyncIterator, Tuple
import base64

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from streamchat.domain.errors import UpstreamStreamError
from streamchat.infrastructure.config.settings import Settings

logger = structlog.get_logger(__name__)


def _to_stream_error(error: openai.APIError) -> UpstreamStreamError:
    return UpstreamStreamError(
        error.message,
        code=getattr(error, "code", None),
        status_code=getattr(error, "status_code", None),
    )


def create_client(settings: Settings) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=settings.openai_api_key or None, base_url=settings.openai_base_url)


class OpenAIResponsesClient:
    """UpstreamClient over `responses.create(stream=True)`"""

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def _iterate(self, stream) -> AsyncIterator[Dict[str, Any]]:
        try:
            async for event in stream:
                yield event.model_dump(mode="json", exclude_none=True)
        except openai.APIError as e:
            raise _to_stream_error(e) from e
        finally:
            await stream.close()

    async def create_stream(
        self,
        input_items: List[Dict[str, Any]],
        request_options: Dict[str, Any]
    ) -> AsyncIterator[Dict[str, Any]]:
        try:
            stream = await self.client.responses.create(
                **request_options,
                input=input_items,
                stream=True,
            )
        except openai.APIError as e:
            raise _to_stream_error(e) from e

        logger.debug("Upstream stream opened", model=request_options.get("model"), items=len(input_items))
        return self._iterate(stream)


class OpenAIArtifactSource:
    """ArtifactSource backed by execution containers, the file store and plain URLs"""

    def __init__(self, client: AsyncOpenAI, http_client: Optional[httpx.AsyncClient] = None):
        self.client = client
        self.http_client = http_client

    async def download_container_file(self, container_id: str, file_id: str) -> bytes:
        response = await self.client.containers.files.content.retrieve(file_id, container_id=container_id)
        return response.content

    async def download_file(self, file_id: str) -> Tuple[bytes, Optional[str]]:
        metadata = await self.client.files.retrieve(file_id)
        response = await self.client.files.content(file_id)
        return response.content, getattr(metadata, "filename", None)

    async def download_url(self, url: str) -> bytes:
        if self.http_client is not None:
            response = await self.http_client.get(url)
        else:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response.content


class OpenAIImageGenerator:
    """ImageGenerator over the images endpoint"""

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-image-1", size: str = "1024x1024"):
        self.client = client
        self.model = model
        self.size = size

    async def generate(self, prompt: str) -> Tuple[bytes, Optional[str]]:
        response = await self.client.images.generate(model=self.model, prompt=prompt, size=self.size, n=1)
        image = response.data[0]
        if not image.b64_json:
            raise UpstreamStreamError("image generation returned no image data")
        return base64.b64decode(image.b64_json), image.revised_prompt
