from typing import Dict, List, Any, Optional
from collections import defaultdict
from datetime import datetime
from pathlib import Path
import asyncio
import re

import structlog

logger = structlog.get_logger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")
_WORD = re.compile(r"\w+")


def safe_name(value: str) -> str:
    """Reduce a thread id or filename to a single safe path component"""
    cleaned = _SAFE_NAME.sub("_", value or "").lstrip(".")
    return cleaned or "_"


class LocalFileStore:
    """Durable store writing artifacts under a local directory"""

    def __init__(self, root: str, public_base_url: str):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    def path_for(self, thread_id: str, filename: str) -> Path:
        return self.root / safe_name(thread_id) / safe_name(filename)

    def _write(self, path: Path, data: bytes):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def upload(self, thread_id: str, filename: str, data: bytes, content_type: str) -> str:
        path = self.path_for(thread_id, filename)
        await asyncio.to_thread(self._write, path, data)

        logger.info("Stored artifact", thread_id=thread_id, filename=path.name, size=len(data), content_type=content_type)
        return f"{self.public_base_url}/files/{path.parent.name}/{path.name}"


class InMemoryMessageStore:
    """Thread history and persistence sink kept in process memory"""

    def __init__(self, max_messages: int = 100):
        self.conversations: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.max_messages = max_messages
        self._lock = asyncio.Lock()

    async def add_user_message(self, thread_id: str, content: str, message_id: str) -> None:
        await self.upsert_message(thread_id, message_id, "user", content)

    async def upsert_message(
        self,
        thread_id: str,
        message_id: str,
        role: str,
        content: str,
        reasoning_text: Optional[str] = None,
        tool_call_history: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        """Insert the message or replace the one with the same id"""

        message = {
            "id": message_id,
            "role": role,
            "content": content,
            "reasoning_text": reasoning_text,
            "tool_call_history": tool_call_history,
            "timestamp": datetime.utcnow().isoformat(),
        }

        async with self._lock:
            messages = self.conversations[thread_id]
            for index, existing in enumerate(messages):
                if existing["id"] == message_id:
                    messages[index] = message
                    break
            else:
                messages.append(message)

            if len(messages) > self.max_messages:
                self.conversations[thread_id] = messages[-self.max_messages:]

    async def get_history(self, thread_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        """Most recent messages of a thread, oldest first"""

        async with self._lock:
            return [dict(message) for message in self.conversations.get(thread_id, [])[-limit:]]


class InMemoryDocumentIndex:
    """Document search over per-thread documents using term overlap scores"""

    def __init__(self):
        self.documents: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add(self, thread_id: str, content: str, metadata: str = "") -> str:
        async with self._lock:
            document_id = f"{thread_id}_{len(self.documents[thread_id])}"
            self.documents[thread_id].append({"id": document_id, "content": content, "metadata": metadata})
            return document_id

    @staticmethod
    def _score(query_terms: set, content: str) -> float:
        terms = set(_WORD.findall(content.lower()))
        if not query_terms or not terms:
            return 0.0
        return len(query_terms & terms) / len(query_terms)

    async def search(self, thread_id: str, query: str, top: int, skip: int) -> List[Dict[str, Any]]:
        query_terms = set(_WORD.findall(query.lower()))

        async with self._lock:
            candidates = list(self.documents.get(thread_id, []))

        scored = []
        for document in candidates:
            score = self._score(query_terms, document["content"])
            if score > 0:
                scored.append({**document, "score": score})

        scored.sort(key=lambda document: document["score"], reverse=True)
        return scored[skip:skip + top]
