from typing import Dict, Any, List
import uuid

import structlog

from streamchat.domain.errors import ToolExecutionError
from streamchat.domain.models.conversation_state import TurnContext
from streamchat.domain.ports import DocumentSearch, DurableStore, ImageGenerator
from streamchat.domain.tool.tool_registry import ToolRegistry

logger = structlog.get_logger(__name__)

DEFAULT_TOP = 10
MAX_CONTEXT_CHARS = 500


class CreateImageTool:
    """Generates an image from a prompt and stores it durably"""

    name = "create_image"
    description = (
        "Create an image from a text description. Use this when the user asks for a "
        "picture, drawing or illustration. Returns the URL of the stored image."
    )
    parameters = {
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "Detailed description of the image to generate."
            }
        }
    }

    def __init__(self, generator: ImageGenerator, store: DurableStore):
        self.generator = generator
        self.store = store

    async def __call__(self, arguments: Dict[str, Any], context: TurnContext) -> Dict[str, Any]:
        prompt = (arguments.get("prompt") or "").strip()
        if not prompt:
            raise ToolExecutionError("prompt must not be empty")

        image_bytes, revised_prompt = await self.generator.generate(prompt)
        filename = f"{uuid.uuid4()}.png"
        url = await self.store.upload(context.thread_id, filename, image_bytes, "image/png")

        logger.info("Image created", thread_id=context.thread_id, filename=filename)
        return {"url": url, "revised_prompt": revised_prompt or prompt}


class SearchDocumentsTool:
    """Semantic search over the documents attached to the current thread"""

    name = "search_documents"
    description = (
        "Search through documents attached to the current chat to find relevant information. "
        "Use this when the user asks questions that might be answered by their documents. "
        "Iterate using top (max results) and skip (offset) to paginate until you gather enough context."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "The search query, either the raw question or a summarized version of it."
            },
            "top": {
                "type": ["number", "null"],
                "description": "Maximum number of documents to return (default: 10)."
            },
            "skip": {
                "type": ["number", "null"],
                "description": "Number of documents to skip (default: 0), used to paginate."
            }
        }
    }

    def __init__(self, search: DocumentSearch):
        self.search = search

    @staticmethod
    def _context_text(documents: List[Dict[str, Any]]) -> str:
        blocks = []
        for index, document in enumerate(documents, start=1):
            content = str(document.get("content", ""))
            if len(content) > MAX_CONTEXT_CHARS:
                content = content[:MAX_CONTEXT_CHARS] + "..."
            blocks.append(f"[Document {index}] {document.get('metadata', '')}\nContent: {content}\n")
        return "\n---\n".join(blocks)

    async def __call__(self, arguments: Dict[str, Any], context: TurnContext) -> Dict[str, Any]:
        query = arguments.get("query") or ""
        top = int(arguments.get("top") or DEFAULT_TOP)
        skip = int(arguments.get("skip") or 0)

        logger.info("Searching documents", thread_id=context.thread_id, top=top, skip=skip)

        try:
            documents = await self.search.search(context.thread_id, query, top, skip)
        except Exception as e:
            logger.error("Document search failed", thread_id=context.thread_id, error=str(e))
            return {
                "query": query,
                "documents": [],
                "summary": "Search failed: the document index could not be queried.",
                "error": True
            }

        return {
            "query": query,
            "documents": documents,
            "contextText": self._context_text(documents),
            "summary": (
                f'Found {len(documents)} relevant documents for: "{query}". '
                "Use the document content to provide detailed answers."
            ),
            "documentCount": len(documents)
        }


def register_builtin_tools(
    registry: ToolRegistry,
    image_generator: ImageGenerator,
    store: DurableStore,
    document_search: DocumentSearch
) -> ToolRegistry:
    """Register the built-in tools on a process-level base registry"""

    for tool in (CreateImageTool(image_generator, store), SearchDocumentsTool(document_search)):
        registry.register(
            tool.name,
            tool,
            description=tool.description,
            parameters=tool.parameters,
            builtin=True
        )
    return registry
