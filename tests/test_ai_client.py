"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Iterable, cast

import httpx
import pytest

from openai import APIConnectionError, AsyncOpenAI, BadRequestError

from workbench.ai.client import STREAM_RESET, AIClient, AIStreamEvent, ClientSettings

_REQUEST = httpx.Request("POST", "http://local/chat/completions")


@dataclass
class _FakeEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    content: str | None = None


class _FakeStream:
    def __init__(self, events: Iterable[_FakeEvent], fail_after: int | None = None, error: Exception | None = None):
        self._events = list(events)
        self._index = 0
        self._fail_after = fail_after
        self._error = error

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> _FakeEvent:
        if self._fail_after is not None and self._index == self._fail_after and self._error is not None:
            raise self._error
        if self._index >= len(self._events):
            raise StopAsyncIteration
        event = self._events[self._index]
        self._index += 1
        return event


class _FakeStreamContext:
    def __init__(self, stream: _FakeStream):
        self._stream = stream

    async def __aenter__(self) -> _FakeStream:
        return self._stream

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class _FakeCompletions:
    """Serves one scripted stream per call; the last script is reused."""

    def __init__(self, *streams: _FakeStream):
        self._streams = list(streams)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        stream = self._streams.pop(0) if len(self._streams) > 1 else self._streams[0]
        return _FakeStreamContext(stream)


def _make_client(*streams: _FakeStream) -> SimpleNamespace:
    completions = _FakeCompletions(*streams)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _settings(**overrides: Any) -> ClientSettings:
    values: dict[str, Any] = dict(
        base_url="http://local",
        api_key="test",
        model="gpt-4o-mini",
        max_retries=3,
        retry_min_seconds=0,
        retry_max_seconds=0,
    )
    values.update(overrides)
    return ClientSettings(**values)


async def _collect(client: AIClient, **kwargs: Any) -> list[AIStreamEvent]:
    return [event async for event in client.stream_chat([{"role": "user", "content": "Hi"}], **kwargs)]


@pytest.mark.asyncio
async def test_stream_chat_forwards_only_content_deltas() -> None:
    events = [
        _FakeEvent(type="chunk"),
        _FakeEvent(type="content.delta", delta="Hel"),
        _FakeEvent(type="content.delta", delta=""),
        _FakeEvent(type="content.delta", delta="lo"),
        _FakeEvent(type="content.done", content="Hello"),
    ]
    fake_client = _make_client(_FakeStream(events))
    client = AIClient(_settings(), client=cast(AsyncOpenAI, fake_client))

    collected = await _collect(client)

    assert [(event.type, event.content) for event in collected] == [
        ("content.delta", "Hel"),
        ("content.delta", "lo"),
    ]


@pytest.mark.asyncio
async def test_stream_chat_builds_payload() -> None:
    fake_client = _make_client(_FakeStream([_FakeEvent(type="content.done", content="{}")]))
    client = AIClient(_settings(metadata={"app": "workbench"}), client=cast(AsyncOpenAI, fake_client))

    await _collect(client, response_format={"type": "json_object"}, temperature=0.1, metadata={"run": "1"})

    call = fake_client.chat.completions.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["response_format"] == {"type": "json_object"}
    assert call["temperature"] == 0.1
    assert call["metadata"] == {"app": "workbench", "run": "1"}
    assert call["messages"] == [{"role": "user", "content": "Hi"}]


@pytest.mark.asyncio
async def test_stream_chat_requires_messages() -> None:
    client = AIClient(_settings(), client=cast(AsyncOpenAI, _make_client(_FakeStream([]))))

    with pytest.raises(ValueError):
        async for _ in client.stream_chat([]):
            pass


@pytest.mark.asyncio
async def test_transient_failure_mid_stream_emits_reset() -> None:
    error = APIConnectionError(request=_REQUEST)
    broken = _FakeStream([_FakeEvent(type="content.delta", delta="par")], fail_after=1, error=error)
    healthy = _FakeStream([_FakeEvent(type="content.delta", delta="full"), _FakeEvent(type="content.done", content="full")])
    fake_client = _make_client(broken, healthy)
    client = AIClient(_settings(), client=cast(AsyncOpenAI, fake_client))

    collected = await _collect(client)

    assert [event.type for event in collected] == ["content.delta", STREAM_RESET, "content.delta"]
    assert len(fake_client.chat.completions.calls) == 2


@pytest.mark.asyncio
async def test_fatal_status_is_not_retried() -> None:
    error = BadRequestError("bad request", response=httpx.Response(400, request=_REQUEST), body=None)
    fake_client = _make_client(_FakeStream([], fail_after=0, error=error))
    client = AIClient(_settings(), client=cast(AsyncOpenAI, fake_client))

    with pytest.raises(BadRequestError):
        await _collect(client)

    assert len(fake_client.chat.completions.calls) == 1


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    closed: list[bool] = []

    async def _close() -> None:
        closed.append(True)

    fake_client = _make_client(_FakeStream([]))
    fake_client.close = _close
    client = AIClient(_settings(), client=cast(AsyncOpenAI, fake_client))

    await client.aclose()

    assert closed == [True]
