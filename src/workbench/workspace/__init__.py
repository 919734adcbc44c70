"""Virtual workspace: files and the path-keyed store."""

from .files import (
    ContentHandle,
    FileKind,
    FileStoreSnapshot,
    LocalFileHandle,
    ResolvedContent,
    UnresolvedContent,
    VirtualFile,
    guess_mime_type,
    is_text_path,
)

__all__ = [
    "ContentHandle",
    "FileKind",
    "FileStoreSnapshot",
    "LocalFileHandle",
    "ResolvedContent",
    "UnresolvedContent",
    "VirtualFile",
    "guess_mime_type",
    "is_text_path",
]
