"""In-memory stand-ins for the engine's external collaborators."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple


class FakeUpstream:
    """Replays one scripted event list per opened stream and records every request"""

    def __init__(self, scripts: List[List[Any]]):
        self.scripts = list(scripts)
        self.requests: List[Dict[str, Any]] = []
        self.closed = 0

    async def _iterate(self, events: List[Any]):
        try:
            for event in events:
                if isinstance(event, BaseException):
                    raise event
                if event == "hang":
                    await asyncio.Event().wait()
                await asyncio.sleep(0)
                yield event
        finally:
            self.closed += 1

    async def create_stream(self, input_items, request_options):
        self.requests.append({"input": list(input_items), "options": dict(request_options)})
        if not self.scripts:
            raise AssertionError("no scripted stream left")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        return self._iterate(script)


class FakePersistence:
    def __init__(self, fail: bool = False):
        self.calls: List[Dict[str, Any]] = []
        self.fail = fail

    async def upsert_message(self, thread_id, message_id, role, content, reasoning_text=None, tool_call_history=None):
        self.calls.append(
            {
                "thread_id": thread_id,
                "message_id": message_id,
                "role": role,
                "content": content,
                "reasoning_text": reasoning_text,
                "tool_call_history": tool_call_history,
            }
        )
        if self.fail:
            raise RuntimeError("store unavailable")


class FakeStore:
    def __init__(self, base_url: str = "https://files.example"):
        self.base_url = base_url
        self.uploads: List[Dict[str, Any]] = []

    async def upload(self, thread_id: str, filename: str, data: bytes, content_type: str) -> str:
        self.uploads.append(
            {"thread_id": thread_id, "filename": filename, "data": data, "content_type": content_type}
        )
        return f"{self.base_url}/{thread_id}/{filename}"


class FakeArtifactSource:
    def __init__(
        self,
        container_files: Optional[Dict[str, bytes]] = None,
        files: Optional[Dict[str, Tuple[bytes, Optional[str]]]] = None,
        urls: Optional[Dict[str, bytes]] = None,
    ):
        self.container_files = container_files or {}
        self.files = files or {}
        self.urls = urls or {}
        self.downloads: List[str] = []

    async def download_container_file(self, container_id: str, file_id: str) -> bytes:
        self.downloads.append(file_id)
        if file_id not in self.container_files:
            raise FileNotFoundError(file_id)
        return self.container_files[file_id]

    async def download_file(self, file_id: str):
        self.downloads.append(file_id)
        if file_id not in self.files:
            raise FileNotFoundError(file_id)
        return self.files[file_id]

    async def download_url(self, url: str) -> bytes:
        self.downloads.append(url)
        if url not in self.urls:
            raise FileNotFoundError(url)
        return self.urls[url]


class FakeImageGenerator:
    def __init__(self):
        self.prompts: List[str] = []

    async def generate(self, prompt: str):
        self.prompts.append(prompt)
        return b"\x89PNG fake", f"a detailed {prompt}"


class FakeDocumentSearch:
    def __init__(self, documents: Optional[List[Dict[str, Any]]] = None, fail: bool = False):
        self.documents = documents or []
        self.fail = fail
        self.queries: List[Tuple[str, str, int, int]] = []

    async def search(self, thread_id: str, query: str, top: int, skip: int):
        self.queries.append((thread_id, query, top, skip))
        if self.fail:
            raise RuntimeError("index offline")
        return self.documents[skip:skip + top]


# upstream event builders

def text_delta(delta: str, item_id: str = "msg_1") -> Dict[str, Any]:
    return {"type": "response.output_text.delta", "item_id": item_id, "output_index": 0, "content_index": 0, "delta": delta}


def completed(output: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {"type": "response.completed", "response": {"id": "resp_1", "status": "completed", "output": output or []}}


def incomplete(reason: str) -> Dict[str, Any]:
    return {"type": "response.incomplete", "response": {"id": "resp_1", "incomplete_details": {"reason": reason}}}


def function_call_events(name: str, arguments: str, call_id: str, output_index: int = 0, chunks: int = 3) -> List[Dict[str, Any]]:
    """added -> arguments deltas -> arguments done -> item done"""

    item_id = f"fc_{call_id}"
    item = {"type": "function_call", "id": item_id, "name": name, "call_id": call_id, "arguments": ""}
    events: List[Dict[str, Any]] = [
        {"type": "response.output_item.added", "output_index": output_index, "item": item}
    ]
    size = max(1, len(arguments) // chunks + 1)
    for start in range(0, len(arguments), size):
        events.append(
            {
                "type": "response.function_call_arguments.delta",
                "item_id": item_id,
                "output_index": output_index,
                "delta": arguments[start:start + size],
            }
        )
    events.append(
        {
            "type": "response.function_call_arguments.done",
            "item_id": item_id,
            "output_index": output_index,
            "arguments": arguments,
        }
    )
    events.append(
        {
            "type": "response.output_item.done",
            "output_index": output_index,
            "item": {**item, "arguments": arguments, "status": "completed"},
        }
    )
    return events


def parse_frames(frames: List[str]) -> List[Tuple[str, Dict[str, Any]]]:
    parsed = []
    for frame in frames:
        event_line, data_line = frame.strip("\n").split("\n")
        assert event_line.startswith("event: ")
        assert data_line.startswith("data: ")
        parsed.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return parsed
