"""End-to-end wiring through :func:`workbench.agent.create_agent`."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, cast

import pytest
from openai import AsyncOpenAI

from workbench.agent import create_agent
from workbench.ai.orchestration.controller import TurnStatus
from workbench.services.settings import Settings
from workbench.workspace.files import FileStoreSnapshot, VirtualFile

from tests.helpers import FakeGeneration, FakeMedia, response_json


class _Stream:
    def __init__(self, text: str) -> None:
        self._events = [SimpleNamespace(type="content.delta", delta=text[i : i + 16]) for i in range(0, len(text), 16)]
        self._events.append(SimpleNamespace(type="content.done", content=text, parsed=None))

    async def __aenter__(self) -> "_Stream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event


class _ScriptedCompletions:
    def __init__(self, *texts: str) -> None:
        self.texts = list(texts)
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _Stream:
        self.calls.append(kwargs)
        return _Stream(self.texts.pop(0))


def _openai(completions: _ScriptedCompletions) -> AsyncOpenAI:
    closed: list[bool] = []

    async def close() -> None:
        closed.append(True)

    return cast(AsyncOpenAI, SimpleNamespace(chat=SimpleNamespace(completions=completions), close=close, closed=closed))


@pytest.mark.asyncio
async def test_agent_runs_a_full_conversation() -> None:
    completions = _ScriptedCompletions(
        response_json(
            thought="Summarise the notes into a new file",
            actions=[
                {"id": "1", "type": "read", "path": "notes.txt"},
                {"id": "2", "type": "write", "path": "summary.md", "content": "# Summary\nhello"},
            ],
        ),
        response_json(thought="Done", final_answer="Created summary.md"),
    )
    settings = Settings(api_key="sk-test", model="test-model", inter_turn_delay=0)
    agent = create_agent(
        settings,
        files=FileStoreSnapshot([VirtualFile.text("notes.txt", "hello")]),
        generation=FakeGeneration(),
        media=FakeMedia(),
        openai_client=_openai(completions),
    )

    result = await agent.send("Summarise my notes")
    await agent.aclose()

    assert result.status is TurnStatus.FINAL_ANSWER
    assert result.final_answer == "Created summary.md"
    assert "summary.md" in result.files
    assert completions.calls[0]["model"] == "test-model"
    assert completions.calls[0]["response_format"] == {"type": "json_object"}
    observation = completions.calls[1]["messages"][-1]["content"]
    assert "Action READ 'notes.txt' success. Content:\nhello" in observation
    assert "Action WRITE 'summary.md' success." in observation
    assert "summary.md" in observation


@pytest.mark.asyncio
async def test_agent_honours_turn_limit_from_settings() -> None:
    completions = _ScriptedCompletions(
        response_json(thought="Still thinking about it"),
        response_json(thought="Still thinking about it more"),
    )
    settings = Settings(api_key="sk-test", max_turns=2, inter_turn_delay=0)
    agent = create_agent(settings, generation=FakeGeneration(), media=FakeMedia(), openai_client=_openai(completions))

    result = await agent.send("go")

    assert result.status is TurnStatus.MAX_TURNS
    assert result.turns == 2
    assert agent.controller.entries[-1].text == "System: Maximum iteration limit (2) reached. Stopping execution."
