"""Sequential executor for one batch of model-requested actions.

Each batch works on a private copy of the file snapshot. Actions run strictly
in order, since later actions may read what earlier ones wrote, and every
failure is contained at the per-action boundary and reported as an
observation line.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Sequence

from ...workspace.files import FileStoreSnapshot, VirtualFile
from ..errors import (
    ActionError,
    CalculationError,
    CollaboratorUnavailableError,
    ErrorCode,
    FileNotFoundActionError,
    FileTooLargeError,
    InvalidSourceError,
    MediaError,
    MissingParameterError,
    ScriptError,
)
from ..generation import BinaryInput, GenerationBackend
from ..media import MediaToolkit
from ..prompts import (
    APPEND_LIMIT_BYTES,
    ATTACHMENT_LIMIT_BYTES,
    DEFAULT_COMPOSE_PROMPT,
    INLINE_READ_LIMIT_BYTES,
)
from .calculator import Calculator
from .sandbox import ScriptSandbox, erase_annotations
from .types import Action, ActionType, DispatchOutcome

__all__ = ["ActionDispatcher"]

LOGGER = logging.getLogger(__name__)

_START_RE = re.compile(r"start[\"\s:]+(\d+(?:\.\d+)?)", re.IGNORECASE)
_END_RE = re.compile(r"end[\"\s:]+(\d+(?:\.\d+)?)", re.IGNORECASE)
_MIB = 1024 * 1024


@dataclass(slots=True)
class _Batch:
    files: FileStoreSnapshot
    observations: list[str] = field(default_factory=list)
    attachments: list[VirtualFile] = field(default_factory=list)

    def note(self, text: str) -> None:
        self.observations.append(text)

    def require(self, path: str, *, role: str = "File") -> VirtualFile:
        file = self.files.get(path)
        if file is None:
            raise FileNotFoundActionError.for_path(path, role=role)
        return file


Handler = Callable[[_Batch, Action], Awaitable[None]]


class ActionDispatcher:
    """Executes action batches against a file snapshot.

    Collaborators are optional; an action whose collaborator is missing fails
    on its own without affecting the rest of the batch.
    """

    def __init__(
        self,
        *,
        generation: GenerationBackend | None = None,
        media: MediaToolkit | None = None,
        calculator: Calculator | None = None,
        sandbox: ScriptSandbox | None = None,
        calculation_timeout: float = 5.0,
    ) -> None:
        self._generation = generation
        self._calculation_timeout = calculation_timeout
        self._media = media
        self._calculator = calculator or Calculator()
        self._sandbox = sandbox or ScriptSandbox()
        self._handlers: Mapping[ActionType, Handler] = {
            ActionType.READ: self._read,
            ActionType.WRITE: self._write,
            ActionType.APPEND: self._append,
            ActionType.MOVE: self._move,
            ActionType.DELETE: self._delete,
            ActionType.MKDIR: self._mkdir,
            ActionType.GENERATE_IMAGE: self._generate_image,
            ActionType.EDIT_IMAGE: self._edit_image,
            ActionType.COMPOSE_IMAGE: self._compose_image,
            ActionType.CALCULATE: self._calculate,
            ActionType.GENERATE_VIDEO: self._generate_video,
            ActionType.TRIM_VIDEO: self._trim_video,
            ActionType.RUN_SCRIPT: self._run_script,
            ActionType.WEB_SEARCH: self._web_search,
        }
        missing = [member.value for member in ActionType if member not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler registered for action types: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    async def dispatch(self, snapshot: FileStoreSnapshot, actions: Sequence[Action]) -> DispatchOutcome:
        """Run ``actions`` in order and return the mutated copy of ``snapshot``."""

        batch = _Batch(files=snapshot.copy())
        seen: set[str] = set()
        for action in actions:
            signature = action.signature()
            if signature in seen:
                batch.note(
                    f"[System Warning] Skipped duplicate action in same batch: "
                    f"{action.type.value} '{action.path}'. Executed once."
                )
                continue
            seen.add(signature)

            LOGGER.debug("Dispatching %s %s", action.type.value, action.path)
            try:
                await self._handlers[action.type](batch, action)
            except ActionError as exc:
                LOGGER.debug("Action %s failed: %s", action.id, exc.to_dict())
                batch.note(_failure(action, exc.message))
            except Exception as exc:
                LOGGER.exception("Action %s %s failed unexpectedly", action.type.value, action.path)
                batch.note(_failure(action, str(exc) or exc.__class__.__name__))

        return DispatchOutcome(files=batch.files, observations=batch.observations, attachments=batch.attachments)

    # ------------------------------------------------------------------
    # File actions
    # ------------------------------------------------------------------
    async def _read(self, batch: _Batch, action: Action) -> None:
        file = batch.files.get(action.path)
        if file is None:
            raise FileNotFoundActionError()
        if file.is_directory:
            raise InvalidSourceError(message="Path is a directory.")
        if file.is_text and file.size <= INLINE_READ_LIMIT_BYTES:
            text = await file.resolve_text()
            batch.note(f"Action READ '{action.path}' success. Content:\n{text}")
            return
        if file.size > ATTACHMENT_LIMIT_BYTES:
            raise FileTooLargeError(
                message=(
                    f"File is too large ({file.size / _MIB:.2f}MB) for direct analysis. "
                    "Please ask user to summarize or split it."
                ),
                details={"size": file.size},
            )
        batch.attachments.append(file)
        metadata = await self._video_metadata(file) if file.is_video else ""
        batch.note(
            f"Action READ '{action.path}' success. The file content is attached for analysis "
            f"(Size: {file.size} bytes).{metadata}"
        )

    async def _write(self, batch: _Batch, action: Action) -> None:
        if action.content is None:
            raise MissingParameterError(message="Missing content.")
        batch.files.put(VirtualFile.text(action.path, action.content))
        batch.note(f"Action WRITE '{action.path}' success.")

    async def _append(self, batch: _Batch, action: Action) -> None:
        existing = batch.files.get(action.path)
        if existing is None:
            if action.content is None:
                raise FileNotFoundActionError(message="File not found and no content to create it.")
            batch.files.put(VirtualFile.text(action.path, action.content))
            batch.note(f"Action APPEND '{action.path}' (new file) success.")
            return
        if existing.is_directory:
            raise InvalidSourceError(message="Cannot append to a directory.")
        if existing.size > APPEND_LIMIT_BYTES:
            raise FileTooLargeError(message="File is too large to append text directly.", details={"size": existing.size})
        text = await existing.resolve_text()
        batch.files.put(existing.with_text(text + (action.content or "")))
        batch.note(f"Action APPEND '{action.path}' success.")

    async def _move(self, batch: _Batch, action: Action) -> None:
        if not action.source_path:
            raise MissingParameterError(message="Missing source_path.")
        source = batch.require(action.source_path, role="Source")
        batch.files.remove(source.path)
        batch.files.put(source.moved_to(action.path))
        batch.note(f"Action MOVE '{action.source_path}' to '{action.path}' success.")

    async def _delete(self, batch: _Batch, action: Action) -> None:
        if batch.files.remove(action.path) is None:
            raise FileNotFoundActionError()
        batch.note(f"Action DELETE '{action.path}' success.")

    async def _mkdir(self, batch: _Batch, action: Action) -> None:
        batch.files.put(VirtualFile.directory(action.path))
        batch.note(f"Action MKDIR '{action.path}' success (virtual).")

    # ------------------------------------------------------------------
    # Generative actions
    # ------------------------------------------------------------------
    async def _generate_image(self, batch: _Batch, action: Action) -> None:
        backend = self._require_generation()
        if not action.content:
            raise MissingParameterError(message="Missing prompt (content).")
        data = await backend.generate_image(action.content)
        batch.files.put(VirtualFile.binary(action.path, data, mime_type="image/png"))
        batch.note(f"Action GENERATE_IMAGE '{action.path}' success.")

    async def _edit_image(self, batch: _Batch, action: Action) -> None:
        backend = self._require_generation()
        source_path = action.source_path or self._auto_select_image(batch, action)
        if not action.content or not source_path:
            raise MissingParameterError(
                message="Missing prompt (content) or source_path (and could not auto-detect unique image)."
            )
        source = await self._binary_source(batch, source_path, role="Source file", kind="appears to be text, not an image")
        data = await backend.edit_image(action.content, source)
        batch.files.put(VirtualFile.binary(action.path, data, mime_type="image/png"))
        batch.note(f"Action EDIT_IMAGE '{action.path}' success.")

    async def _compose_image(self, batch: _Batch, action: Action) -> None:
        backend = self._require_generation()
        paths = list(action.source_paths or ([action.source_path] if action.source_path else []))
        if not paths:
            selected = self._auto_select_image(batch, action)
            if selected is None:
                available = ", ".join(item.path for item in batch.files.images()) or "none"
                raise MissingParameterError(message=f"No 'source_paths' provided. Available images: {available}")
            paths = [selected]

        prompt = action.content
        if not prompt:
            if action.description:
                prompt = action.description
                batch.note(
                    f'[System Warning] Action COMPOSE_IMAGE missing \'content\'. Using description as fallback: "{prompt}"'
                )
            else:
                prompt = DEFAULT_COMPOSE_PROMPT
                batch.note(
                    f'[System Warning] Action COMPOSE_IMAGE missing \'content\'. Using default fallback: "{prompt}"'
                )

        sources = [await self._binary_source(batch, path, role="File", kind="is text, not binary") for path in paths]
        data = await backend.compose_image(prompt, sources)
        batch.files.put(VirtualFile.binary(action.path, data, mime_type="image/png"))
        batch.note(f"Action COMPOSE_IMAGE '{action.path}' success.")

    async def _generate_video(self, batch: _Batch, action: Action) -> None:
        backend = self._require_generation()
        if not action.content:
            raise MissingParameterError(message="Missing prompt in content.")
        image: BinaryInput | None = None
        if action.source_path:
            source = batch.files.get(action.source_path)
            if source is None:
                batch.note(
                    f"Action GENERATE_VIDEO warning: Source file '{action.source_path}' not found, "
                    "proceeding with text-to-video only."
                )
            else:
                payload = await source.resolve()
                if isinstance(payload, str):
                    batch.note(
                        f"Action GENERATE_VIDEO warning: Source file '{action.source_path}' is text, "
                        "ignoring for image-to-video."
                    )
                else:
                    image = BinaryInput(data=payload, mime_type=source.mime_type, name=source.name)
        data = await backend.generate_video(action.content, image)
        batch.files.put(VirtualFile.binary(action.path, data, mime_type="video/mp4"))
        batch.note(f"Action GENERATE_VIDEO '{action.path}' success.")

    async def _trim_video(self, batch: _Batch, action: Action) -> None:
        media = self._require_media()
        start, end = _trim_range(action)
        if start is None or end is None:
            raise MissingParameterError(message="Missing start/end times in 'content' JSON.")
        if not action.source_path:
            raise MissingParameterError(message="Missing source_path.")
        source = batch.require(action.source_path, role="Source file")
        payload = await source.resolve()
        if isinstance(payload, str):
            raise InvalidSourceError(message=f"File '{action.source_path}' is text.")
        try:
            data = await media.trim_video(payload, source.mime_type or "video/mp4", start, end)
        except MediaError as exc:
            raise ActionError(error_code=ErrorCode.GENERATION_FAILED, message=str(exc)) from exc
        batch.files.put(VirtualFile.binary(action.path, data, mime_type="video/mp4"))
        batch.note(f"Action TRIM_VIDEO '{action.path}' success. (Trimmed {start:g}s to {end:g}s).")

    # ------------------------------------------------------------------
    # Compute and search
    # ------------------------------------------------------------------
    async def _calculate(self, batch: _Batch, action: Action) -> None:
        if not action.content:
            raise MissingParameterError(message="Missing content (expression).")
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._calculator.calculate, action.content),
                timeout=self._calculation_timeout,
            )
        except CalculationError as exc:
            raise ActionError(error_code=ErrorCode.CALCULATION_FAILED, message=str(exc)) from exc
        except asyncio.TimeoutError as exc:
            message = f"Calculation timed out after {self._calculation_timeout:g}s"
            raise ActionError(error_code=ErrorCode.CALCULATION_FAILED, message=message) from exc
        batch.note(f"Action CALCULATE success.\nExpression: {action.content}\nResult: {result}")

    async def _run_script(self, batch: _Batch, action: Action) -> None:
        script = batch.require(action.path)
        source = await script.resolve_text()
        try:
            source = erase_annotations(source)
        except SyntaxError as exc:
            batch.note(f"Action RUN_SCRIPT transpilation failed: {exc.msg} (line {exc.lineno})")
            return

        async def read(path: str) -> str:
            file = batch.files.get(path)
            if file is None:
                raise FileNotFoundError(f"File '{path}' not found")
            return await file.resolve_text()

        async def write(path: str, text: str) -> None:
            batch.files.put(VirtualFile.text(path, text))

        try:
            run = await self._sandbox.run(source, read=read, write=write)
        except ScriptError as exc:
            logs = "\n[Logs so far]:\n" + "\n".join(exc.logs) if exc.logs else ""
            batch.note(f"Action RUN_SCRIPT '{action.path}' execution failed: {exc}{logs}")
            return
        batch.note(f"Action RUN_SCRIPT '{action.path}' executed successfully.\n[Console Output]:\n{run.output}")

    async def _web_search(self, batch: _Batch, action: Action) -> None:
        backend = self._require_generation()
        if not action.content:
            raise MissingParameterError(message="Missing query in content.")
        result = await backend.web_search(action.content)
        batch.note(result.format())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_generation(self) -> GenerationBackend:
        if self._generation is None:
            raise CollaboratorUnavailableError(message="No generation backend is configured.")
        return self._generation

    def _require_media(self) -> MediaToolkit:
        if self._media is None:
            raise CollaboratorUnavailableError(message="No media toolkit is configured.")
        return self._media

    @staticmethod
    def _auto_select_image(batch: _Batch, action: Action) -> str | None:
        images = batch.files.images()
        if len(images) != 1:
            return None
        selected = images[0].path
        batch.note(f"[System Warning] Action {action.type.label} missing source_path. Auto-selected '{selected}'.")
        return selected

    @staticmethod
    async def _binary_source(batch: _Batch, path: str, *, role: str, kind: str) -> BinaryInput:
        file = batch.require(path, role=role)
        payload = await file.resolve()
        if isinstance(payload, str):
            raise InvalidSourceError(message=f"{role} '{path}' {kind}.", details={"path": path})
        return BinaryInput(data=payload, mime_type=file.mime_type, name=file.name)

    async def _video_metadata(self, file: VirtualFile) -> str:
        if self._media is None or file.size == 0:
            return ""
        try:
            payload = await file.resolve_bytes()
            metadata = await self._media.probe_video(payload, file.mime_type)
        except (MediaError, OSError) as exc:
            LOGGER.warning("Failed to extract video metadata for %s: %s", file.path, exc)
            return ""
        return metadata.describe()


def _failure(action: Action, message: str) -> str:
    return f"Action {action.type.label} '{action.path}' failed: {message}"


def _trim_range(action: Action) -> tuple[float | None, float | None]:
    start, end = action.start_time, action.end_time
    if start is not None and end is not None:
        return start, end
    if not action.content:
        return start, end
    try:
        params = json.loads(action.content)
    except json.JSONDecodeError:
        params = None
    if isinstance(params, dict):
        return _as_float(params.get("start"), start), _as_float(params.get("end"), end)
    start_match = _START_RE.search(action.content)
    end_match = _END_RE.search(action.content)
    return (
        float(start_match.group(1)) if start_match else start,
        float(end_match.group(1)) if end_match else end,
    )


def _as_float(value: object, fallback: float | None) -> float | None:
    if value is None or isinstance(value, bool):
        return fallback
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return fallback
