"""Virtual file model and the path-keyed file store the agent operates on.

Files are immutable values. Content is either an unresolved handle onto
external bytes (an uploaded file on disk, for example) or a resolved text or
binary payload. Resolution is explicit, asynchronous and never mutates the
file; callers that want to keep resolved content store a new value.
"""

from __future__ import annotations

import asyncio
import mimetypes
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Protocol, Union, runtime_checkable

__all__ = [
    "FileKind",
    "ContentHandle",
    "LocalFileHandle",
    "UnresolvedContent",
    "ResolvedContent",
    "FileContent",
    "VirtualFile",
    "FileStoreSnapshot",
    "MAX_TEXT_RESOLVE_BYTES",
    "TEXT_HEAD_BYTES",
    "basename",
    "format_size",
    "guess_mime_type",
    "is_text_path",
]

# Text files above this size are only read up to TEXT_HEAD_BYTES.
MAX_TEXT_RESOLVE_BYTES = 5 * 1024 * 1024
TEXT_HEAD_BYTES = 10_000
_TRUNCATION_NOTICE = "\n... [Content truncated for memory safety. File too large.]"

_TEXT_PATH_RE = re.compile(
    r"\.(txt|md|json|js|ts|tsx|jsx|html|css|py|c|cpp|h|java|xml|yml|yaml|ini|env|csv|log|sh|bat)$",
    re.IGNORECASE,
)

_MIME_TABLE: Mapping[str, str] = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "pdf": "application/pdf",
    "mp3": "audio/mp3",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/mov",
    "avi": "video/avi",
    "mpeg": "video/mpeg",
    "mpg": "video/mpg",
    "3gp": "video/3gpp",
    "wmv": "video/wmv",
    "flv": "video/x-flv",
    "json": "application/json",
    "txt": "text/plain",
    "md": "text/markdown",
    "py": "text/x-python",
    "js": "text/javascript",
    "ts": "text/plain",
    "tsx": "text/plain",
    "html": "text/html",
    "css": "text/css",
    "csv": "text/csv",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def basename(path: str) -> str:
    """Return the last non-empty segment of a slash-delimited path."""

    parts = [part for part in path.split("/") if part]
    return parts[-1] if parts else path


def is_text_path(path: str) -> bool:
    """Return ``True`` when the extension marks the file as plain text."""

    return bool(_TEXT_PATH_RE.search(path))


def guess_mime_type(path: str) -> str:
    """Return the MIME type implied by the path's extension."""

    name = basename(path)
    ext = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    if ext in _MIME_TABLE:
        return _MIME_TABLE[ext]
    guessed, _ = mimetypes.guess_type(name)
    if guessed:
        return guessed
    if is_text_path(name):
        return "text/plain"
    return "application/octet-stream"


def format_size(size: int) -> str:
    if size > 1024 * 1024:
        return f"{size / (1024 * 1024):.2f} MB"
    return f"{size} bytes"


class FileKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


@runtime_checkable
class ContentHandle(Protocol):
    """Opaque reference to bytes that live outside the store."""

    async def read_bytes(self) -> bytes:
        ...

    async def read_head(self, limit: int) -> bytes:
        ...


@dataclass(slots=True, frozen=True)
class LocalFileHandle:
    """Handle onto a file on the local disk; reads happen in a worker thread."""

    path: Path

    async def read_bytes(self) -> bytes:
        return await asyncio.to_thread(self.path.read_bytes)

    async def read_head(self, limit: int) -> bytes:
        def _read() -> bytes:
            with self.path.open("rb") as handle:
                return handle.read(limit)

        return await asyncio.to_thread(_read)


@dataclass(slots=True, frozen=True)
class UnresolvedContent:
    handle: ContentHandle


@dataclass(slots=True, frozen=True)
class ResolvedContent:
    data: str | bytes


FileContent = Union[UnresolvedContent, ResolvedContent]


@dataclass(slots=True, frozen=True)
class VirtualFile:
    """A single entry of the virtual workspace.

    Attributes:
        path: Unique slash-delimited key; stored as given.
        name: Basename of ``path``.
        content: Unresolved handle or resolved payload.
        size: Byte size; authoritative even while content is unresolved.
        mime_type: MIME type used for attachment and generation decisions.
        last_modified: UTC timestamp of the last mutation.
        kind: File or directory.
    """

    path: str
    name: str
    content: FileContent
    size: int
    mime_type: str = "application/octet-stream"
    last_modified: datetime = field(default_factory=_utcnow)
    kind: FileKind = FileKind.FILE

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------
    @classmethod
    def text(cls, path: str, text: str, *, mime_type: str | None = None) -> VirtualFile:
        return cls(
            path=path,
            name=basename(path),
            content=ResolvedContent(text),
            size=len(text.encode("utf-8")),
            mime_type=mime_type or guess_mime_type(path),
        )

    @classmethod
    def binary(cls, path: str, data: bytes, *, mime_type: str | None = None) -> VirtualFile:
        return cls(
            path=path,
            name=basename(path),
            content=ResolvedContent(bytes(data)),
            size=len(data),
            mime_type=mime_type or guess_mime_type(path),
        )

    @classmethod
    def directory(cls, path: str) -> VirtualFile:
        return cls(
            path=path,
            name=basename(path),
            content=ResolvedContent(""),
            size=0,
            mime_type="inode/directory",
            kind=FileKind.DIRECTORY,
        )

    @classmethod
    def from_disk(cls, source: Path | str, *, store_path: str | None = None) -> VirtualFile:
        """Reference a local file lazily; only its metadata is read now."""

        disk_path = Path(source)
        stat = disk_path.stat()
        path = store_path or disk_path.name
        return cls(
            path=path,
            name=basename(path),
            content=UnresolvedContent(LocalFileHandle(disk_path)),
            size=stat.st_size,
            mime_type=guess_mime_type(path),
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    @property
    def is_directory(self) -> bool:
        return self.kind is FileKind.DIRECTORY

    @property
    def is_text(self) -> bool:
        return is_text_path(self.name)

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    @property
    def is_resolved(self) -> bool:
        return isinstance(self.content, ResolvedContent)

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------
    async def resolve(self) -> str | bytes:
        """Return the payload, reading an unresolved handle if needed.

        Text-classified files come back as ``str``, everything else as ``bytes``.
        Text files above :data:`MAX_TEXT_RESOLVE_BYTES` are cut to their head.
        """

        content = self.content
        if isinstance(content, ResolvedContent):
            return content.data
        if self.is_text:
            if self.size > MAX_TEXT_RESOLVE_BYTES:
                head = await content.handle.read_head(TEXT_HEAD_BYTES)
                return head.decode("utf-8", errors="replace") + _TRUNCATION_NOTICE
            raw = await content.handle.read_bytes()
            return raw.decode("utf-8", errors="replace")
        return await content.handle.read_bytes()

    async def resolve_text(self) -> str:
        data = await self.resolve()
        if isinstance(data, bytes):
            return data.decode("utf-8", errors="replace")
        return data

    async def resolve_bytes(self) -> bytes:
        data = await self.resolve()
        if isinstance(data, str):
            return data.encode("utf-8")
        return data

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------
    def with_text(self, text: str) -> VirtualFile:
        return replace(
            self,
            content=ResolvedContent(text),
            size=len(text.encode("utf-8")),
            last_modified=_utcnow(),
        )

    def moved_to(self, path: str) -> VirtualFile:
        return replace(self, path=path, name=basename(path))


class FileStoreSnapshot:
    """Path-keyed mapping of :class:`VirtualFile` values.

    A snapshot is handed to a dispatch call by value (see :meth:`copy`) and the
    mutated copy is returned; the controller swaps its reference afterwards.
    """

    __slots__ = ("_files",)

    def __init__(self, files: Iterable[VirtualFile] = ()) -> None:
        self._files: dict[str, VirtualFile] = {}
        self.merge(files)

    def __contains__(self, path: object) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[VirtualFile]:
        return iter(list(self._files.values()))

    def __repr__(self) -> str:
        return f"FileStoreSnapshot({len(self._files)} files)"

    def get(self, path: str | None) -> VirtualFile | None:
        if path is None:
            return None
        return self._files.get(path)

    def put(self, file: VirtualFile) -> None:
        self._files[file.path] = file

    def remove(self, path: str) -> VirtualFile | None:
        return self._files.pop(path, None)

    def merge(self, files: Iterable[VirtualFile]) -> None:
        for item in files:
            self.put(item)

    def files(self) -> list[VirtualFile]:
        return list(self._files.values())

    def paths(self) -> list[str]:
        return list(self._files)

    def images(self) -> list[VirtualFile]:
        return [item for item in self._files.values() if item.is_image]

    def copy(self) -> FileStoreSnapshot:
        clone = FileStoreSnapshot()
        clone._files = dict(self._files)
        return clone

    def context_summary(self) -> str:
        """Describe the store for the model: one sorted line per file."""

        if not self._files:
            return "[System: No files currently in the virtual workspace.]"
        lines = [
            "[[ VIRTUAL FILE SYSTEM STATE ]]",
            "The following files are available for you to read, edit, or process:",
        ]
        for item in sorted(self._files.values(), key=lambda entry: entry.path):
            lines.append(f"- {item.path} (Type: {item.mime_type or 'unknown'}, Size: {format_size(item.size)})")
        lines.append("")
        lines.append(
            "Instructions: Files are NOT automatically read. To see content, you MUST use the `read` action. "
            "If the file is binary or large (>1MB), the system will attach it. "
            "Do NOT try to read >10MB files as text."
        )
        return "\n".join(lines)
