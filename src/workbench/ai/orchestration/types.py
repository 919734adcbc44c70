"""Core value types that flow through the agent loop.

The model's structured response, its actions, and the conversation entries
built around them. Action and response values are frozen; conversation
entries are mutable only so the controller can swap in the final response of
the model entry it is currently streaming into.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Sequence

from ...workspace.files import FileStoreSnapshot, VirtualFile

__all__ = [
    "ActionType",
    "Action",
    "RiskAssessment",
    "StructuredResponse",
    "ConversationEntry",
    "StreamUpdate",
    "DispatchOutcome",
    "EntryRole",
    "FILE_ACTIONS",
    "GENERATIVE_ACTIONS",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

_ACTION_ALIASES: Mapping[str, str] = {
    "calculate_math": "calculate",
    "google_search": "web_search",
    "search": "web_search",
}


class ActionType(str, Enum):
    """Closed set of operations the model may request."""

    READ = "read"
    WRITE = "write"
    APPEND = "append"
    MOVE = "move"
    DELETE = "delete"
    MKDIR = "mkdir"
    GENERATE_IMAGE = "generate_image"
    EDIT_IMAGE = "edit_image"
    COMPOSE_IMAGE = "compose_image"
    CALCULATE = "calculate"
    GENERATE_VIDEO = "generate_video"
    TRIM_VIDEO = "trim_video"
    RUN_SCRIPT = "run_script"
    WEB_SEARCH = "web_search"

    @classmethod
    def _missing_(cls, value: object) -> ActionType | None:
        if not isinstance(value, str):
            return None
        key = value.strip().lower().replace("-", "_")
        key = _ACTION_ALIASES.get(key, key)
        for member in cls:
            if member.value == key:
                return member
        return None

    @classmethod
    def wire_values(cls) -> list[str]:
        """Every spelling accepted on the wire, canonical values first."""

        canonical = [member.value for member in cls]
        return canonical + list(_ACTION_ALIASES) + [value.replace("_", "-") for value in canonical if "_" in value]

    @property
    def label(self) -> str:
        return self.value.upper()


FILE_ACTIONS: frozenset[ActionType] = frozenset(
    {ActionType.READ, ActionType.WRITE, ActionType.APPEND, ActionType.MOVE, ActionType.DELETE, ActionType.MKDIR}
)
GENERATIVE_ACTIONS: frozenset[ActionType] = frozenset(
    {
        ActionType.GENERATE_IMAGE,
        ActionType.EDIT_IMAGE,
        ActionType.COMPOSE_IMAGE,
        ActionType.GENERATE_VIDEO,
        ActionType.TRIM_VIDEO,
    }
)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _optional_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(slots=True, frozen=True)
class Action:
    """One operation requested by the model.

    ``path`` is always present; its meaning depends on ``type`` (the output
    path for generators, the script for ``run_script``, a free-form topic for
    ``web_search``).
    """

    id: str
    type: ActionType
    path: str
    content: str | None = None
    source_path: str | None = None
    source_paths: tuple[str, ...] | None = None
    description: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Action:
        source_paths = payload.get("source_paths")
        return cls(
            id=str(payload.get("id") or uuid.uuid4().hex[:8]),
            type=ActionType(payload["type"]),
            path=str(payload.get("path", "")),
            content=_optional_str(payload.get("content")),
            source_path=_optional_str(payload.get("source_path")) or None,
            source_paths=tuple(str(item) for item in source_paths) if isinstance(source_paths, Sequence) and not isinstance(source_paths, str) else None,
            description=_optional_str(payload.get("description")),
            start_time=_optional_float(payload.get("start_time")),
            end_time=_optional_float(payload.get("end_time")),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "type": self.type.value, "path": self.path}
        if self.content is not None:
            data["content"] = self.content
        if self.source_path is not None:
            data["source_path"] = self.source_path
        if self.source_paths is not None:
            data["source_paths"] = list(self.source_paths)
        if self.description is not None:
            data["description"] = self.description
        if self.start_time is not None:
            data["start_time"] = self.start_time
        if self.end_time is not None:
            data["end_time"] = self.end_time
        return data

    def signature(self) -> str:
        """Fingerprint of the semantic fields; ``id`` and ``description`` are ignored."""

        return json.dumps(
            {
                "type": self.type.value,
                "path": self.path,
                "content": self.content,
                "source_path": self.source_path,
                "source_paths": sorted(self.source_paths) if self.source_paths is not None else None,
                "start_time": self.start_time,
                "end_time": self.end_time,
            },
            sort_keys=True,
            ensure_ascii=False,
        )

    def repeats(self, other: Action) -> bool:
        """Loose equality used for cross-turn repetition detection."""

        return self.type is other.type and self.path == other.path and self.content == other.content


# -----------------------------------------------------------------------------
# Structured response
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RiskAssessment:
    has_destructive_actions: bool = False
    confirmation_required_ids: tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> RiskAssessment:
        if not payload:
            return cls()
        ids = payload.get("confirmation_required_ids") or ()
        return cls(
            has_destructive_actions=bool(payload.get("has_destructive_actions", False)),
            confirmation_required_ids=tuple(str(item) for item in ids),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_destructive_actions": self.has_destructive_actions,
            "confirmation_required_ids": list(self.confirmation_required_ids),
        }


@dataclass(slots=True, frozen=True)
class StructuredResponse:
    """The model's answer for one turn.

    A non-empty ``final_answer`` ends the loop; otherwise ``thought`` and
    ``actions`` drive the next step.
    """

    thought: str
    plan: tuple[str, ...] = ()
    actions: tuple[Action, ...] = ()
    risk_assessment: RiskAssessment = field(default_factory=RiskAssessment)
    final_answer: str | None = None
    raw_text: str | None = None

    @property
    def is_final(self) -> bool:
        return bool(self.final_answer)

    @classmethod
    def placeholder(cls) -> StructuredResponse:
        return cls(thought="Thinking...")

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, raw_text: str | None = None) -> StructuredResponse:
        final_answer = payload.get("final_answer")
        return cls(
            thought=str(payload.get("thought") or ""),
            plan=tuple(str(step) for step in payload.get("plan") or ()),
            actions=tuple(Action.from_mapping(item) for item in payload.get("actions") or ()),
            risk_assessment=RiskAssessment.from_mapping(payload.get("risk_assessment")),
            final_answer=str(final_answer) if final_answer else None,
            raw_text=raw_text,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "thought": self.thought,
            "plan": list(self.plan),
            "actions": [action.to_dict() for action in self.actions],
            "risk_assessment": self.risk_assessment.to_dict(),
        }
        if self.final_answer is not None:
            data["final_answer"] = self.final_answer
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def merged_with(self, update: StreamUpdate) -> StructuredResponse:
        """Overlay streamed display fields onto this (placeholder) response."""

        return StructuredResponse(
            thought=update.thought or self.thought,
            plan=tuple(update.plan) if update.plan else self.plan,
            actions=self.actions,
            risk_assessment=self.risk_assessment,
            final_answer=update.final_answer if update.final_answer is not None else self.final_answer,
            raw_text=update.raw_text,
        )


@dataclass(slots=True, frozen=True)
class StreamUpdate:
    """Best-effort display fields extracted from a still-open stream."""

    thought: str = ""
    plan: tuple[str, ...] = ()
    final_answer: str | None = None
    raw_text: str = ""


# -----------------------------------------------------------------------------
# Conversation
# -----------------------------------------------------------------------------

EntryRole = Literal["user", "model"]


@dataclass(slots=True)
class ConversationEntry:
    """One message in the append-only conversation.

    Observation entries are synthetic user turns injected by the controller.
    """

    role: EntryRole
    text: str
    attachments: tuple[VirtualFile, ...] = ()
    structured_response: StructuredResponse | None = None
    is_observation: bool = False
    is_error: bool = False
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def user(cls, text: str, attachments: Sequence[VirtualFile] = ()) -> ConversationEntry:
        return cls(role="user", text=text, attachments=tuple(attachments))

    @classmethod
    def observation(cls, text: str, attachments: Sequence[VirtualFile] = ()) -> ConversationEntry:
        return cls(role="user", text=text, attachments=tuple(attachments), is_observation=True)

    @classmethod
    def model(cls, response: StructuredResponse | None = None, text: str = "") -> ConversationEntry:
        return cls(role="model", text=text, structured_response=response)

    @classmethod
    def error(cls, text: str) -> ConversationEntry:
        return cls(role="model", text=text, is_error=True)


@dataclass(slots=True)
class DispatchOutcome:
    """Result of one action batch."""

    files: FileStoreSnapshot
    observations: list[str] = field(default_factory=list)
    attachments: list[VirtualFile] = field(default_factory=list)
