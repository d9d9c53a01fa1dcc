from typing import Dict, Any, Optional, Literal
from urllib.parse import urlencode
import json
import re

import httpx
import structlog
from pydantic import BaseModel, Field

from streamchat.domain.errors import ToolExecutionError
from streamchat.domain.models.conversation_state import TurnContext

logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_WRITE_METHODS = {"POST", "PUT", "PATCH"}

IDENTITY_HEADER = "authorization"


class DynamicToolDescriptor(BaseModel):
    """Declarative description of an HTTP-backed tool"""
    name: str = Field(description="Function name exposed to the model")
    description: str = Field("", description="Function description exposed to the model")
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON schema of the function arguments"
    )
    endpoint: str = Field(description="Target URL, may contain {placeholder} segments")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict, description="Static tool headers")


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def build_url(endpoint: str, query: Optional[Dict[str, Any]]) -> str:
    """Substitute {placeholders} from the query object and append the rest as a query string"""

    query = dict(query or {})

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key in query:
            return str(query.pop(key))
        return match.group(0)

    url = _PLACEHOLDER.sub(_substitute, endpoint)

    remaining = {key: _query_value(value) for key, value in query.items() if value is not None}
    if remaining:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{urlencode(remaining)}"
    return url


def merge_headers(descriptor: DynamicToolDescriptor, context: TurnContext) -> httpx.Headers:
    """Static tool headers < per-request context headers < user identity"""

    headers = httpx.Headers({"Content-Type": "application/json"})
    headers.update(descriptor.headers)
    headers.update(context.headers)
    if context.user_id:
        headers[IDENTITY_HEADER] = context.user_id
    return headers


class DynamicToolExecutor:
    """Interprets a DynamicToolDescriptor as one HTTP request per call"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.client = client
        self.timeout = timeout

    async def execute(
        self,
        descriptor: DynamicToolDescriptor,
        arguments: Dict[str, Any],
        context: TurnContext
    ) -> Any:
        """Call the endpoint and return its decoded JSON (or raw text) body"""

        url = build_url(descriptor.endpoint, arguments.get("query"))
        headers = merge_headers(descriptor, context)

        body = None
        if descriptor.method in _WRITE_METHODS and arguments.get("body") is not None:
            body = json.dumps(arguments["body"])

        logger.info("Calling dynamic tool", tool_name=descriptor.name, method=descriptor.method, url=url)

        if self.client is not None:
            response = await self.client.request(descriptor.method, url, headers=headers, content=body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(descriptor.method, url, headers=headers, content=body)

        if not response.is_success:
            raise ToolExecutionError(
                f"API call failed: {response.status_code} {response.reason_phrase} {response.text}".strip()
            )

        try:
            return response.json()
        except ValueError:
            return response.text
