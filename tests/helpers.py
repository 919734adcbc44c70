"""Shared test helpers and stub classes.

Import from here instead of duplicating these fakes in individual test files::

    from tests.helpers import FakeModelClient, response_json
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Sequence

from workbench.ai.client import AIStreamEvent
from workbench.ai.generation import BinaryInput, Citation, SearchResult
from workbench.ai.media import VideoMetadata


def response_json(
    *,
    thought: str = "Working on it",
    actions: Sequence[Mapping[str, Any]] = (),
    final_answer: str | None = None,
    plan: Sequence[str] = (),
) -> str:
    payload: dict[str, Any] = {
        "thought": thought,
        "plan": list(plan),
        "actions": [dict(action) for action in actions],
        "risk_assessment": {"has_destructive_actions": False, "confirmation_required_ids": []},
    }
    if final_answer is not None:
        payload["final_answer"] = final_answer
    return json.dumps(payload)


class FakeModelClient:
    """Scripted ``stream_chat`` transport.

    Each script item is either a string (streamed in ``chunk_size`` pieces) or an
    exception raised when the stream opens.
    """

    def __init__(self, script: Sequence[str | BaseException], *, chunk_size: int = 7, model: str = "fake-model"):
        self.script = list(script)
        self.chunk_size = chunk_size
        self.model = model
        self.calls: list[list[dict[str, Any]]] = []

    async def stream_chat(self, messages, *, response_format=None, temperature=None, **_: Any) -> AsyncIterator[AIStreamEvent]:
        self.calls.append([dict(message) for message in messages])
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        for start in range(0, len(item), self.chunk_size):
            yield AIStreamEvent(type="content.delta", content=item[start : start + self.chunk_size])


@dataclass
class FakeGeneration:
    image: bytes = b"\x89PNG-generated"
    video: bytes = b"video-bytes"
    calls: list[tuple[str, Any]] = field(default_factory=list)

    async def generate_image(self, prompt: str) -> bytes:
        self.calls.append(("generate_image", prompt))
        return self.image

    async def edit_image(self, prompt: str, image: BinaryInput) -> bytes:
        self.calls.append(("edit_image", (prompt, image)))
        return self.image

    async def compose_image(self, prompt: str, images: Sequence[BinaryInput]) -> bytes:
        self.calls.append(("compose_image", (prompt, list(images))))
        return self.image

    async def generate_video(self, prompt: str, image: BinaryInput | None = None) -> bytes:
        self.calls.append(("generate_video", (prompt, image)))
        return self.video

    async def web_search(self, query: str) -> SearchResult:
        self.calls.append(("web_search", query))
        return SearchResult(
            query=query,
            summary="Python 3.13 is the latest release.",
            citations=(Citation(title="python.org", uri="https://www.python.org"),),
        )


@dataclass
class FakeMedia:
    metadata: VideoMetadata = field(default_factory=lambda: VideoMetadata(duration=12.5, width=1280, height=720))
    trimmed: bytes = b"trimmed"
    calls: list[tuple[str, Any]] = field(default_factory=list)

    async def probe_video(self, data: bytes, mime_type: str) -> VideoMetadata:
        self.calls.append(("probe_video", mime_type))
        return self.metadata

    async def trim_video(self, data: bytes, mime_type: str, start: float, end: float) -> bytes:
        self.calls.append(("trim_video", (mime_type, start, end)))
        return self.trimmed
