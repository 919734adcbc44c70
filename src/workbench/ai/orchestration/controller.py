"""Multi-turn state machine driving the agent loop.

One :class:`TurnController` owns one conversation: the append-only entry list,
the published file snapshot and the per-run :class:`LoopState`. Runs are
serialised; starting a new run cancels the one in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Sequence

from ...services.settings import Settings
from ...workspace.files import FileStoreSnapshot, VirtualFile
from ..errors import TurnCancelledError
from ..prompts import (
    CONTINUE_REASONING_PROMPT,
    NO_PROGRESS_WARNING,
    OBSERVATION_HEADER,
    REPETITION_WARNING,
    STOPPED_BY_USER,
    max_turns_notice,
    verification_failed_notice,
    verification_retry_directive,
)
from .cancellation import CancellationToken
from .model_call import StreamCallback
from .types import Action, ActionType, ConversationEntry, DispatchOutcome, StreamUpdate, StructuredResponse

__all__ = [
    "TurnController",
    "ControllerConfig",
    "LoopState",
    "TurnListener",
    "TurnResult",
    "TurnState",
    "TurnStatus",
]

LOGGER = logging.getLogger(__name__)

_VERIFIED_ACTIONS = frozenset({ActionType.WRITE, ActionType.MKDIR})
_SUBSTANTIVE_THOUGHT_CHARS = 10

RetryKey = tuple[ActionType, str]


class TurnState(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    TERMINATED = "terminated"


class TurnStatus(str, Enum):
    FINAL_ANSWER = "final_answer"
    MAX_TURNS = "max_turns"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class ControllerConfig:
    """Loop limits.

    Attributes:
        max_turns: Model calls per run before the loop stops itself.
        max_write_retries: Retry directives issued per unverified write/mkdir target.
        inter_turn_delay: Seconds yielded between iterations.
    """

    max_turns: int = 50
    max_write_retries: int = 3
    inter_turn_delay: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> ControllerConfig:
        return cls(
            max_turns=settings.max_turns,
            max_write_retries=settings.max_write_retries,
            inter_turn_delay=settings.inter_turn_delay,
        )


@dataclass(slots=True)
class LoopState:
    """Counters for one run; replaced at the start of every run."""

    turn: int = 0
    write_retries: dict[RetryKey, int] = field(default_factory=dict)
    exhausted: set[RetryKey] = field(default_factory=set)


@dataclass(slots=True, frozen=True)
class TurnResult:
    status: TurnStatus
    turns: int
    final_answer: str | None
    files: FileStoreSnapshot


class TurnListener(Protocol):
    """Observer for UI layers; every method is optional."""

    def on_entry_added(self, entry: ConversationEntry) -> None:
        ...

    def on_entry_updated(self, entry: ConversationEntry) -> None:
        ...

    def on_stream_update(self, entry: ConversationEntry, update: StreamUpdate) -> None:
        ...

    def on_files_changed(self, files: FileStoreSnapshot) -> None:
        ...

    def on_state_changed(self, state: TurnState) -> None:
        ...


class Responder(Protocol):
    async def respond(
        self,
        history: Sequence[ConversationEntry],
        context: str,
        *,
        on_stream: StreamCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> StructuredResponse:
        ...


class Dispatcher(Protocol):
    async def dispatch(self, snapshot: FileStoreSnapshot, actions: Sequence[Action]) -> DispatchOutcome:
        ...


class TurnController:
    """Runs model turns until a final answer, the turn cap or cancellation."""

    def __init__(
        self,
        model: Responder,
        dispatcher: Dispatcher,
        *,
        files: FileStoreSnapshot | None = None,
        config: ControllerConfig | None = None,
        listener: TurnListener | None = None,
    ) -> None:
        self._model = model
        self._dispatcher = dispatcher
        self._files = files.copy() if files is not None else FileStoreSnapshot()
        self._config = config or ControllerConfig()
        self._listener = listener
        self._entries: list[ConversationEntry] = []
        self._loop = LoopState()
        self._state = TurnState.IDLE
        self._token: CancellationToken | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    @property
    def entries(self) -> tuple[ConversationEntry, ...]:
        return tuple(self._entries)

    @property
    def files(self) -> FileStoreSnapshot:
        return self._files

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def loop_state(self) -> LoopState:
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def set_listener(self, listener: TurnListener | None) -> None:
        self._listener = listener

    def cancel(self) -> None:
        """Request cancellation of the run in flight, if any."""

        if self._token is not None:
            self._token.cancel("cancelled")

    def reset(self) -> None:
        """Forget the conversation; the file store is kept."""

        if self.is_running:
            raise RuntimeError("Cannot reset while a run is in progress")
        self._entries.clear()
        self._loop = LoopState()

    async def send(self, text: str, attachments: Sequence[VirtualFile] = ()) -> TurnResult:
        """Start a run for a new user message.

        Any run in flight is cancelled first. Cancellation is reported through
        the returned :class:`TurnResult`; unrecoverable model errors are
        recorded in the conversation and re-raised.
        """

        if self._token is not None:
            self._token.cancel("superseded")
        token = CancellationToken()
        self._token = token

        async with self._lock:
            if token.cancelled:
                return TurnResult(status=TurnStatus.CANCELLED, turns=0, final_answer=None, files=self._files)
            self._loop = LoopState()
            try:
                if attachments:
                    files = self._files.copy()
                    files.merge(attachments)
                    self._publish_files(files)
                self._append(ConversationEntry.user(text, attachments))
                return await self._run_loop(token)
            except TurnCancelledError:
                LOGGER.info("Run cancelled after %s turn(s)", self._loop.turn)
                self._append(ConversationEntry.error(STOPPED_BY_USER))
                return TurnResult(
                    status=TurnStatus.CANCELLED,
                    turns=self._loop.turn,
                    final_answer=None,
                    files=self._files,
                )
            except Exception as exc:
                LOGGER.error("Run failed after %s turn(s): %s", self._loop.turn, exc)
                self._append(ConversationEntry.error(f"Error: {exc}"))
                raise
            finally:
                self._set_state(TurnState.TERMINATED)
                if self._token is token:
                    self._token = None

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    async def _run_loop(self, token: CancellationToken) -> TurnResult:
        config = self._config
        loop = self._loop
        while loop.turn < config.max_turns:
            token.raise_if_cancelled()
            loop.turn += 1
            self._set_state(TurnState.AWAITING_MODEL)

            context = self._files.context_summary()
            if self._is_repeating():
                LOGGER.warning("Repeated actions detected before turn %s", loop.turn)
                context = f"{context}\n\n{REPETITION_WARNING}"

            history = list(self._entries)
            placeholder = ConversationEntry.model(StructuredResponse.placeholder())
            self._append(placeholder)
            response = await self._model.respond(
                history,
                context,
                on_stream=self._stream_into(placeholder, token),
                cancel=token,
            )
            token.raise_if_cancelled()

            placeholder.structured_response = response
            placeholder.text = response.to_json()
            self._notify("on_entry_updated", placeholder)

            if response.is_final:
                LOGGER.debug("Final answer after %s turn(s)", loop.turn)
                return TurnResult(
                    status=TurnStatus.FINAL_ANSWER,
                    turns=loop.turn,
                    final_answer=response.final_answer,
                    files=self._files,
                )

            self._append(await self._observe(response))

            if loop.turn >= config.max_turns:
                break
            await asyncio.sleep(config.inter_turn_delay)

        LOGGER.warning("Turn limit of %s reached", config.max_turns)
        self._append(ConversationEntry.error(max_turns_notice(config.max_turns)))
        return TurnResult(status=TurnStatus.MAX_TURNS, turns=loop.turn, final_answer=None, files=self._files)

    async def _observe(self, response: StructuredResponse) -> ConversationEntry:
        if not response.actions:
            if len(response.thought) > _SUBSTANTIVE_THOUGHT_CHARS:
                return ConversationEntry.observation(CONTINUE_REASONING_PROMPT)
            return ConversationEntry.observation(NO_PROGRESS_WARNING)

        self._set_state(TurnState.DISPATCHING)
        outcome = await self._dispatcher.dispatch(self._files, response.actions)
        self._publish_files(outcome.files)
        lines = list(outcome.observations)
        lines.extend(self._verify_writes(response.actions))
        text = OBSERVATION_HEADER + "\n" + "\n".join(lines)
        return ConversationEntry.observation(text, outcome.attachments)

    def _verify_writes(self, actions: Sequence[Action]) -> list[str]:
        """Return retry directives for write/mkdir targets missing after dispatch."""

        directives: list[str] = []
        limit = self._config.max_write_retries
        loop = self._loop
        checked: set[RetryKey] = set()
        for action in actions:
            if action.type not in _VERIFIED_ACTIONS:
                continue
            key: RetryKey = (action.type, action.path)
            if key in checked:
                continue
            checked.add(key)
            if action.path in self._files:
                loop.write_retries.pop(key, None)
                loop.exhausted.discard(key)
                continue
            if key in loop.exhausted:
                continue
            attempts = loop.write_retries.get(key, 0)
            if attempts < limit:
                attempts += 1
                loop.write_retries[key] = attempts
                directives.append(verification_retry_directive(action.type.label, action.path, attempts, limit))
            else:
                LOGGER.warning("Giving up on %s %s after %s retries", action.type.value, action.path, limit)
                loop.exhausted.add(key)
                directives.append(verification_failed_notice(action.type.label, action.path, limit))
        return directives

    def _is_repeating(self) -> bool:
        responses = [
            entry.structured_response
            for entry in self._entries
            if entry.role == "model" and entry.structured_response is not None
        ]
        if len(responses) < 2:
            return False
        previous, latest = responses[-2], responses[-1]
        if not latest.actions or len(latest.actions) != len(previous.actions):
            return False
        return latest.actions[0].repeats(previous.actions[0])

    def _stream_into(self, entry: ConversationEntry, token: CancellationToken) -> StreamCallback:
        def _on_stream(update: StreamUpdate) -> None:
            if token.cancelled:
                return
            current = entry.structured_response or StructuredResponse.placeholder()
            entry.structured_response = current.merged_with(update)
            self._notify("on_stream_update", entry, update)

        return _on_stream

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    def _append(self, entry: ConversationEntry) -> None:
        self._entries.append(entry)
        self._notify("on_entry_added", entry)

    def _publish_files(self, files: FileStoreSnapshot) -> None:
        self._files = files
        self._notify("on_files_changed", files)

    def _set_state(self, state: TurnState) -> None:
        if state is self._state:
            return
        self._state = state
        self._notify("on_state_changed", state)

    def _notify(self, method: str, *args: Any) -> None:
        listener = self._listener
        if listener is None:
            return
        callback = getattr(listener, method, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.debug("Listener %s failed", method, exc_info=True)
