"""Video probing and trimming collaborators backed by ffprobe/ffmpeg."""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from .errors import MediaError

__all__ = ["VideoMetadata", "MediaToolkit", "FFmpegToolkit"]

LOGGER = logging.getLogger(__name__)

_SUFFIXES = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/mov": ".mov",
    "video/quicktime": ".mov",
    "video/avi": ".avi",
    "video/mpeg": ".mpeg",
    "video/mpg": ".mpg",
    "video/3gpp": ".3gp",
    "video/wmv": ".wmv",
    "video/x-flv": ".flv",
}


@dataclass(slots=True, frozen=True)
class VideoMetadata:
    duration: float
    width: int
    height: int

    def describe(self) -> str:
        return f" [Metadata: Duration={self.duration:.2f}s, Resolution={self.width}x{self.height}]"


class MediaToolkit(Protocol):
    async def probe_video(self, data: bytes, mime_type: str) -> VideoMetadata:
        ...

    async def trim_video(self, data: bytes, mime_type: str, start: float, end: float) -> bytes:
        ...


class FFmpegToolkit:
    """Runs ffprobe/ffmpeg as subprocesses over temporary files; output is MP4."""

    def __init__(self, *, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe", timeout: float = 120.0) -> None:
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe
        self._timeout = timeout

    async def probe_video(self, data: bytes, mime_type: str) -> VideoMetadata:
        with tempfile.TemporaryDirectory(prefix="workbench-media-") as workdir:
            source = Path(workdir) / f"input{_SUFFIXES.get(mime_type, '.bin')}"
            await asyncio.to_thread(source.write_bytes, data)
            out = await self._run(
                [
                    self._ffprobe,
                    "-v",
                    "error",
                    "-select_streams",
                    "v:0",
                    "-show_entries",
                    "stream=width,height:format=duration",
                    "-of",
                    "json",
                    str(source),
                ]
            )
        try:
            payload = json.loads(out or b"{}")
            stream = (payload.get("streams") or [{}])[0]
            return VideoMetadata(
                duration=float(payload.get("format", {}).get("duration", 0.0)),
                width=int(stream.get("width", 0)),
                height=int(stream.get("height", 0)),
            )
        except (ValueError, TypeError, AttributeError) as exc:
            raise MediaError(f"Unreadable ffprobe output: {exc}") from exc

    async def trim_video(self, data: bytes, mime_type: str, start: float, end: float) -> bytes:
        if start < 0 or end <= start:
            raise MediaError(f"Invalid trim range {start:g}s to {end:g}s")
        with tempfile.TemporaryDirectory(prefix="workbench-media-") as workdir:
            source = Path(workdir) / f"input{_SUFFIXES.get(mime_type, '.bin')}"
            target = Path(workdir) / "output.mp4"
            await asyncio.to_thread(source.write_bytes, data)
            await self._run(
                [
                    self._ffmpeg,
                    "-y",
                    "-v",
                    "error",
                    "-i",
                    str(source),
                    "-ss",
                    f"{start:.3f}",
                    "-to",
                    f"{end:.3f}",
                    "-c:v",
                    "libx264",
                    "-c:a",
                    "aac",
                    "-movflags",
                    "+faststart",
                    str(target),
                ]
            )
            if not target.exists():
                raise MediaError("ffmpeg produced no output")
            return await asyncio.to_thread(target.read_bytes)

    async def _run(self, argv: Sequence[str]) -> bytes:
        LOGGER.debug("Running %s", argv[0])
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise MediaError(f"{argv[0]} is not installed") from exc
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise MediaError(f"{argv[0]} timed out after {self._timeout:g}s") from exc
        if proc.returncode != 0:
            detail = err.decode("utf-8", errors="replace").strip().splitlines()
            raise MediaError(f"{argv[0]} failed: {detail[-1] if detail else proc.returncode}")
        return out
