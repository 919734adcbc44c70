"""Model call with streaming display updates and bounded corrective retries."""

from __future__ import annotations

import base64
import logging
from typing import Any, Callable, Dict, List, Sequence

from openai import APIStatusError, AuthenticationError, PermissionDeniedError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_none

from ...workspace.files import VirtualFile
from ..client import STREAM_RESET, ModelClient
from ..errors import MalformedResponseError, ModelPermissionError, TurnCancelledError
from ..prompts import ATTACHMENT_LIMIT_BYTES, CORRECTIVE_JSON_MESSAGE, attachment_notice, system_instruction
from .cancellation import CancellationToken
from .response_parser import parse_structured_response
from .stream_fields import partial_update
from .types import ConversationEntry, StreamUpdate, StructuredResponse

__all__ = ["AgentModel", "StreamCallback", "build_messages", "attachment_parts"]

LOGGER = logging.getLogger(__name__)

StreamCallback = Callable[[StreamUpdate], None]

_RESPONSE_FORMAT = {"type": "json_object"}
_PERMISSION_STATUS_CODES = frozenset({401, 403})
_INLINE_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/webp", "image/gif"})
_AUDIO_FORMATS = {"audio/wav": "wav", "audio/x-wav": "wav", "audio/mp3": "mp3", "audio/mpeg": "mp3"}


class AgentModel:
    """Wraps one structured model call.

    Every attempt streams the completion, feeding live display updates to the
    caller, then parses the full text. Malformed output is retried with a
    corrective user message appended to the outgoing messages; permission
    failures and cancellation are never retried.
    """

    def __init__(
        self,
        client: ModelClient,
        *,
        max_attempts: int = 3,
        temperature: float | None = 0.2,
        instruction: str | None = None,
    ) -> None:
        self._client = client
        self._max_attempts = max(1, int(max_attempts))
        self._temperature = temperature
        self._instruction = instruction or system_instruction()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def respond(
        self,
        history: Sequence[ConversationEntry],
        context: str,
        *,
        on_stream: StreamCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> StructuredResponse:
        """Return the parsed response for ``history`` with ``context`` attached.

        Raises:
            TurnCancelledError: ``cancel`` fired before or during an attempt.
            ModelPermissionError: the credential may not use the model.
            MalformedResponseError: every attempt produced unusable output.
        """

        _check_cancelled(cancel)
        messages = await build_messages(history, context, instruction=self._instruction)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_none(),
            retry=retry_if_exception(_should_retry),
            before_sleep=lambda state: self._prepare_retry(state, messages),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                _check_cancelled(cancel)
                return await self._attempt(messages, on_stream, cancel)
        raise MalformedResponseError("Failed to get valid response after retries")  # pragma: no cover

    async def _attempt(
        self,
        messages: List[Dict[str, Any]],
        on_stream: StreamCallback | None,
        cancel: CancellationToken | None,
    ) -> StructuredResponse:
        text = ""
        try:
            async for event in self._client.stream_chat(
                list(messages),
                response_format=_RESPONSE_FORMAT,
                temperature=self._temperature,
            ):
                _check_cancelled(cancel)
                if event.type == STREAM_RESET:
                    text = ""
                    continue
                if event.type != "content.delta" or not event.content:
                    continue
                text += event.content
                if on_stream is not None:
                    on_stream(partial_update(text))
        except (TurnCancelledError, ModelPermissionError):
            raise
        except Exception as exc:
            if _is_permission_error(exc):
                raise ModelPermissionError(
                    f"Permission denied: the API key does not have access to model "
                    f"'{_model_name(self._client)}'.",
                    model=_model_name(self._client),
                    status_code=getattr(exc, "status_code", None),
                ) from exc
            raise
        _check_cancelled(cancel)
        return parse_structured_response(text)

    def _prepare_retry(self, state: RetryCallState, messages: List[Dict[str, Any]]) -> None:
        error = state.outcome.exception() if state.outcome is not None else None
        LOGGER.warning(
            "Model attempt %s/%s failed: %s",
            state.attempt_number,
            self._max_attempts,
            error,
        )
        if isinstance(error, MalformedResponseError):
            messages.append({"role": "user", "content": CORRECTIVE_JSON_MESSAGE})


def _should_retry(exc: BaseException) -> bool:
    if not isinstance(exc, Exception):
        return False
    return not isinstance(exc, (TurnCancelledError, ModelPermissionError))


def _check_cancelled(cancel: CancellationToken | None) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def _is_permission_error(exc: BaseException) -> bool:
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return True
    status = exc.status_code if isinstance(exc, APIStatusError) else getattr(exc, "status_code", None)
    if status in _PERMISSION_STATUS_CODES:
        return True
    return "PERMISSION_DENIED" in str(exc)


def _model_name(client: ModelClient) -> str:
    return str(getattr(client, "model", "") or "unknown")


# -----------------------------------------------------------------------------
# Message assembly
# -----------------------------------------------------------------------------


async def build_messages(
    history: Sequence[ConversationEntry],
    context: str,
    *,
    instruction: str | None = None,
) -> List[Dict[str, Any]]:
    """Translate the conversation into chat messages.

    ``context`` is appended to the most recent user entry of the outgoing copy
    only; the conversation itself is never modified.
    """

    messages: List[Dict[str, Any]] = [{"role": "system", "content": instruction or system_instruction()}]
    last_user = max((index for index, entry in enumerate(history) if entry.role == "user"), default=-1)

    for index, entry in enumerate(history):
        if entry.role == "model":
            body = entry.text or (entry.structured_response.to_json() if entry.structured_response else "")
            messages.append({"role": "assistant", "content": body})
            continue

        text = entry.text
        if index == last_user and context:
            text = f"{text}\n\n{context}"
        if not entry.attachments:
            messages.append({"role": "user", "content": text})
            continue

        text += attachment_notice(len(entry.attachments))
        parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
        for attachment in entry.attachments:
            parts.extend(await attachment_parts(attachment))
        messages.append({"role": "user", "content": parts})
    return messages


async def attachment_parts(file: VirtualFile) -> List[Dict[str, Any]]:
    """Return the content parts that carry ``file`` to the model."""

    if file.size > ATTACHMENT_LIMIT_BYTES:
        return [_text_part(f"\n[System: File {file.name} is too large (>20MB) to attach to LLM context directly.]")]

    data = await file.resolve()
    if isinstance(data, str):
        return [_text_part(f"\n--- Attached File: {file.name} ---\n{data}\n--- End Attached File ---\n")]

    mime_type = file.mime_type or "application/octet-stream"
    encoded = base64.b64encode(data).decode("ascii")
    label = _text_part(f'[User attached file: "{file.name}"]')
    if mime_type in _INLINE_IMAGE_TYPES:
        return [label, {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}}]
    if mime_type == "application/pdf":
        return [
            label,
            {"type": "file", "file": {"filename": file.name, "file_data": f"data:{mime_type};base64,{encoded}"}},
        ]
    if mime_type in _AUDIO_FORMATS:
        return [label, {"type": "input_audio", "input_audio": {"data": encoded, "format": _AUDIO_FORMATS[mime_type]}}]
    return [
        _text_part(
            f"[System: Attached file {file.name} has MIME type {mime_type} which is not supported for inline analysis.]"
        )
    ]


def _text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}
