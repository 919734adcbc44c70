"""Image, video and web-search collaborators used by generative actions."""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from openai import AsyncOpenAI

from .errors import GenerationError
from .prompts import format_search_result

__all__ = [
    "BinaryInput",
    "Citation",
    "SearchResult",
    "GenerationBackend",
    "OpenAIGenerationBackend",
]

LOGGER = logging.getLogger(__name__)

_VIDEO_DONE_STATES = frozenset({"completed", "failed", "cancelled", "expired"})


@dataclass(slots=True, frozen=True)
class BinaryInput:
    """A resolved source file handed to a generator."""

    data: bytes
    mime_type: str
    name: str = "image.png"

    def as_upload(self) -> tuple[str, bytes, str]:
        return (self.name, self.data, self.mime_type)


@dataclass(slots=True, frozen=True)
class Citation:
    title: str
    uri: str


@dataclass(slots=True, frozen=True)
class SearchResult:
    query: str
    summary: str
    citations: tuple[Citation, ...] = ()

    def format(self) -> str:
        return format_search_result(self.query, self.summary, [(item.title, item.uri) for item in self.citations])


class GenerationBackend(Protocol):
    """Opaque generation endpoints; every call either returns output or raises."""

    async def generate_image(self, prompt: str) -> bytes:
        ...

    async def edit_image(self, prompt: str, image: BinaryInput) -> bytes:
        ...

    async def compose_image(self, prompt: str, images: Sequence[BinaryInput]) -> bytes:
        ...

    async def generate_video(self, prompt: str, image: BinaryInput | None = None) -> bytes:
        ...

    async def web_search(self, query: str) -> SearchResult:
        ...


class OpenAIGenerationBackend:
    """Generation backend on the OpenAI images, videos and responses APIs."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        image_model: str = "gpt-image-1",
        video_model: str = "sora-2",
        search_model: str = "gpt-4o-mini",
        image_size: str = "1024x1024",
        poll_interval: float = 5.0,
        max_poll_seconds: float = 600.0,
    ) -> None:
        self._client = client
        self._image_model = image_model
        self._video_model = video_model
        self._search_model = search_model
        self._image_size = image_size
        self._poll_interval = poll_interval
        self._max_poll_seconds = max_poll_seconds

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    async def generate_image(self, prompt: str) -> bytes:
        LOGGER.debug("Generating image via %s", self._image_model)
        response = await self._client.images.generate(
            model=self._image_model,
            prompt=prompt,
            size=self._image_size,
            n=1,
        )
        return _first_image(response)

    async def edit_image(self, prompt: str, image: BinaryInput) -> bytes:
        return await self.compose_image(prompt, [image])

    async def compose_image(self, prompt: str, images: Sequence[BinaryInput]) -> bytes:
        if not images:
            raise GenerationError(message="At least one source image is required.")
        LOGGER.debug("Editing %s image(s) via %s", len(images), self._image_model)
        uploads = [image.as_upload() for image in images]
        response = await self._client.images.edit(
            model=self._image_model,
            image=uploads if len(uploads) > 1 else uploads[0],
            prompt=prompt,
            n=1,
        )
        return _first_image(response)

    # ------------------------------------------------------------------
    # Video
    # ------------------------------------------------------------------
    async def generate_video(self, prompt: str, image: BinaryInput | None = None) -> bytes:
        params: dict[str, Any] = {"model": self._video_model, "prompt": prompt}
        if image is not None:
            params["input_reference"] = image.as_upload()
        video = await self._client.videos.create(**params)
        LOGGER.debug("Video job %s started via %s", video.id, self._video_model)

        waited = 0.0
        while getattr(video, "status", None) not in _VIDEO_DONE_STATES:
            if waited >= self._max_poll_seconds:
                raise GenerationError(message=f"Video generation timed out after {self._max_poll_seconds:g}s.")
            await asyncio.sleep(self._poll_interval)
            waited += self._poll_interval
            video = await self._client.videos.retrieve(video.id)

        if video.status != "completed":
            reason = getattr(getattr(video, "error", None), "message", None) or video.status
            raise GenerationError(message=f"Video generation failed: {reason}")
        content = await self._client.videos.download_content(video.id, variant="video")
        data = content.content
        if not data:
            raise GenerationError(message="Video generation failed: empty download.")
        return bytes(data)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    async def web_search(self, query: str) -> SearchResult:
        response = await self._client.responses.create(
            model=self._search_model,
            tools=[{"type": "web_search"}],
            input=(
                "Please answer the following query using web search. Provide a summary of the "
                f'findings and list the sources: "{query}"'
            ),
        )
        summary = getattr(response, "output_text", "") or "No results found."
        return SearchResult(query=query, summary=summary, citations=tuple(_citations(response)))


def _first_image(response: Any) -> bytes:
    for item in getattr(response, "data", None) or ():
        encoded = getattr(item, "b64_json", None)
        if encoded:
            return base64.b64decode(encoded)
    raise GenerationError(message="No image generated in response.")


def _citations(response: Any) -> list[Citation]:
    seen: set[str] = set()
    citations: list[Citation] = []
    for item in getattr(response, "output", None) or ():
        if getattr(item, "type", None) != "message":
            continue
        for part in getattr(item, "content", None) or ():
            for annotation in getattr(part, "annotations", None) or ():
                if getattr(annotation, "type", None) != "url_citation":
                    continue
                url = getattr(annotation, "url", "")
                if not url or url in seen:
                    continue
                seen.add(url)
                citations.append(Citation(title=getattr(annotation, "title", "") or url, uri=url))
    return citations
