from __future__ import annotations

import asyncio
import json
import sys
import threading
from typing import Any

import pytest

from workbench.ai.errors import MediaError
from workbench.ai.orchestration.dispatcher import ActionDispatcher
from workbench.ai.orchestration.sandbox import ScriptSandbox
from workbench.ai.orchestration.types import Action, ActionType
from workbench.workspace.files import FileStoreSnapshot, UnresolvedContent, VirtualFile

from tests.helpers import FakeGeneration, FakeMedia


def _action(kind: str, path: str, **extra: Any) -> Action:
    return Action.from_mapping({"id": extra.pop("id", kind), "type": kind, "path": path, **extra})


class _UntouchableHandle:
    """Content handle that records any attempt to read it."""

    def __init__(self) -> None:
        self.reads = 0

    async def read_bytes(self) -> bytes:
        self.reads += 1
        return b""

    async def read_head(self, limit: int) -> bytes:
        self.reads += 1
        return b""


def _large_file(path: str, size: int, mime_type: str, handle: _UntouchableHandle) -> VirtualFile:
    return VirtualFile(path=path, name=path, content=UnresolvedContent(handle), size=size, mime_type=mime_type)


@pytest.fixture
def dispatcher(fake_generation: FakeGeneration, fake_media: FakeMedia) -> ActionDispatcher:
    return ActionDispatcher(
        generation=fake_generation,
        media=fake_media,
        sandbox=ScriptSandbox(timeout=10.0, python=sys.executable),
    )


@pytest.mark.asyncio
async def test_write_then_append_in_one_batch(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(
        FileStoreSnapshot(),
        [_action("write", "hello.txt", content="hi"), _action("append", "hello.txt", content="!")],
    )

    file = outcome.files.get("hello.txt")
    assert file is not None
    assert await file.resolve() == "hi!"
    assert file.size == 3
    assert outcome.observations == [
        "Action WRITE 'hello.txt' success.",
        "Action APPEND 'hello.txt' success.",
    ]


@pytest.mark.asyncio
async def test_dispatch_does_not_mutate_the_input_snapshot(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(store, [_action("delete", "notes.txt")])

    assert "notes.txt" in store
    assert "notes.txt" not in outcome.files


@pytest.mark.asyncio
async def test_duplicate_actions_execute_once(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(
        FileStoreSnapshot(),
        [
            _action("append", "log.txt", content="x", id="first"),
            _action("append", "log.txt", content="x", id="second", description="again"),
        ],
    )

    assert await outcome.files.get("log.txt").resolve() == "x"  # type: ignore[union-attr]
    assert outcome.observations[1] == (
        "[System Warning] Skipped duplicate action in same batch: append 'log.txt'. Executed once."
    )


@pytest.mark.asyncio
async def test_failure_is_contained_per_action(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(
        FileStoreSnapshot(),
        [_action("read", "missing.txt"), _action("write", "ok.txt", content="fine")],
    )

    assert outcome.observations[0] == "Action READ 'missing.txt' failed: File not found."
    assert outcome.observations[1] == "Action WRITE 'ok.txt' success."
    assert "ok.txt" in outcome.files


@pytest.mark.asyncio
async def test_read_inlines_small_text(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(store, [_action("read", "notes.txt")])

    assert outcome.observations == ["Action READ 'notes.txt' success. Content:\nhello world"]
    assert outcome.attachments == []


@pytest.mark.asyncio
async def test_read_attaches_binary(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(store, [_action("read", "photo.png")])

    assert [item.path for item in outcome.attachments] == ["photo.png"]
    assert "attached for analysis (Size: 9 bytes)" in outcome.observations[0]


@pytest.mark.asyncio
async def test_read_video_includes_metadata(dispatcher: ActionDispatcher, fake_media: FakeMedia) -> None:
    store = FileStoreSnapshot([VirtualFile.binary("clip.mp4", b"video")])

    outcome = await dispatcher.dispatch(store, [_action("read", "clip.mp4")])

    assert outcome.observations[0].endswith("[Metadata: Duration=12.50s, Resolution=1280x720]")
    assert fake_media.calls == [("probe_video", "video/mp4")]


@pytest.mark.asyncio
async def test_read_video_metadata_failure_is_not_fatal(fake_generation: FakeGeneration) -> None:
    class _BrokenMedia(FakeMedia):
        async def probe_video(self, data: bytes, mime_type: str):  # type: ignore[override]
            raise MediaError("ffprobe is not installed")

    dispatcher = ActionDispatcher(generation=fake_generation, media=_BrokenMedia())
    store = FileStoreSnapshot([VirtualFile.binary("clip.mp4", b"video")])

    outcome = await dispatcher.dispatch(store, [_action("read", "clip.mp4")])

    assert outcome.observations[0].endswith("(Size: 5 bytes).")
    assert len(outcome.attachments) == 1


@pytest.mark.asyncio
async def test_write_without_content_fails(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("write", "a.txt")])

    assert outcome.observations == ["Action WRITE 'a.txt' failed: Missing content."]
    assert len(outcome.files) == 0


@pytest.mark.asyncio
async def test_append_creates_missing_file(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("append", "new.txt", content="start")])

    assert outcome.observations == ["Action APPEND 'new.txt' (new file) success."]
    assert outcome.files.get("new.txt").size == 5  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_move_renames(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(store, [_action("move", "archive/notes.txt", source_path="notes.txt")])

    assert "notes.txt" not in outcome.files
    moved = outcome.files.get("archive/notes.txt")
    assert moved is not None and moved.name == "notes.txt"
    assert outcome.observations == ["Action MOVE 'notes.txt' to 'archive/notes.txt' success."]


@pytest.mark.asyncio
async def test_failed_move_leaves_store_unchanged(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(store, [_action("move", "dest.txt", source_path="ghost.txt")])

    assert sorted(outcome.files.paths()) == sorted(store.paths())
    assert outcome.observations == ["Action MOVE 'dest.txt' failed: Source 'ghost.txt' not found."]


@pytest.mark.asyncio
async def test_move_without_source_path(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("move", "dest.txt")])

    assert outcome.observations == ["Action MOVE 'dest.txt' failed: Missing source_path."]


@pytest.mark.asyncio
async def test_delete_and_mkdir(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(
        store,
        [_action("delete", "photo.png"), _action("delete", "photo.png", id="again", content="x"), _action("mkdir", "out")],
    )

    assert outcome.observations == [
        "Action DELETE 'photo.png' success.",
        "Action DELETE 'photo.png' failed: File not found.",
        "Action MKDIR 'out' success (virtual).",
    ]
    assert outcome.files.get("out").is_directory  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_generate_image_writes_png(dispatcher: ActionDispatcher, fake_generation: FakeGeneration) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("generate_image", "cat.png", content="a cat")])

    image = outcome.files.get("cat.png")
    assert image is not None and image.mime_type == "image/png"
    assert await image.resolve() == fake_generation.image
    assert fake_generation.calls == [("generate_image", "a cat")]


@pytest.mark.asyncio
async def test_generate_image_requires_prompt(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("generate_image", "cat.png")])

    assert outcome.observations == ["Action GENERATE_IMAGE 'cat.png' failed: Missing prompt (content)."]


@pytest.mark.asyncio
async def test_generative_action_without_backend_fails_alone() -> None:
    dispatcher = ActionDispatcher()

    outcome = await dispatcher.dispatch(
        FileStoreSnapshot(),
        [_action("generate_image", "cat.png", content="a cat"), _action("write", "a.txt", content="x")],
    )

    assert outcome.observations[0] == "Action GENERATE_IMAGE 'cat.png' failed: No generation backend is configured."
    assert outcome.observations[1] == "Action WRITE 'a.txt' success."


@pytest.mark.asyncio
async def test_edit_image_auto_selects_single_image(
    dispatcher: ActionDispatcher, store: FileStoreSnapshot, fake_generation: FakeGeneration
) -> None:
    outcome = await dispatcher.dispatch(store, [_action("edit_image", "edited.png", content="make it blue")])

    assert outcome.observations[0] == "[System Warning] Action EDIT_IMAGE missing source_path. Auto-selected 'photo.png'."
    assert outcome.observations[1] == "Action EDIT_IMAGE 'edited.png' success."
    name, (prompt, source) = fake_generation.calls[0]
    assert name == "edit_image"
    assert prompt == "make it blue"
    assert source.data == b"\x89PNG-data"


@pytest.mark.asyncio
async def test_edit_image_rejects_text_source(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    outcome = await dispatcher.dispatch(
        store, [_action("edit_image", "edited.png", content="blue", source_path="notes.txt")]
    )

    assert outcome.observations == [
        "Action EDIT_IMAGE 'edited.png' failed: Source file 'notes.txt' appears to be text, not an image."
    ]


@pytest.mark.asyncio
async def test_compose_image_uses_description_fallback(
    dispatcher: ActionDispatcher, fake_generation: FakeGeneration
) -> None:
    store = FileStoreSnapshot([VirtualFile.binary("a.png", b"a"), VirtualFile.binary("b.png", b"b")])

    outcome = await dispatcher.dispatch(
        store,
        [_action("compose_image", "out.png", source_paths=["a.png", "b.png"], description="side by side")],
    )

    assert outcome.observations[0].startswith("[System Warning] Action COMPOSE_IMAGE missing 'content'.")
    assert outcome.observations[-1] == "Action COMPOSE_IMAGE 'out.png' success."
    name, (prompt, sources) = fake_generation.calls[0]
    assert prompt == "side by side"
    assert [item.name for item in sources] == ["a.png", "b.png"]


@pytest.mark.asyncio
async def test_compose_image_lists_available_images_when_ambiguous(dispatcher: ActionDispatcher) -> None:
    store = FileStoreSnapshot([VirtualFile.binary("a.png", b"a"), VirtualFile.binary("b.png", b"b")])

    outcome = await dispatcher.dispatch(store, [_action("compose_image", "out.png", content="merge")])

    assert outcome.observations == [
        "Action COMPOSE_IMAGE 'out.png' failed: No 'source_paths' provided. Available images: a.png, b.png"
    ]


@pytest.mark.asyncio
async def test_generate_video_ignores_missing_source(
    dispatcher: ActionDispatcher, fake_generation: FakeGeneration
) -> None:
    outcome = await dispatcher.dispatch(
        FileStoreSnapshot(), [_action("generate_video", "clip.mp4", content="waves", source_path="ghost.png")]
    )

    assert "proceeding with text-to-video only" in outcome.observations[0]
    assert outcome.observations[1] == "Action GENERATE_VIDEO 'clip.mp4' success."
    assert outcome.files.get("clip.mp4").mime_type == "video/mp4"  # type: ignore[union-attr]
    assert fake_generation.calls == [("generate_video", ("waves", None))]


@pytest.mark.asyncio
async def test_trim_video_reads_range_from_content_json(dispatcher: ActionDispatcher, fake_media: FakeMedia) -> None:
    store = FileStoreSnapshot([VirtualFile.binary("clip.mp4", b"video")])

    outcome = await dispatcher.dispatch(
        store,
        [_action("trim_video", "short.mp4", source_path="clip.mp4", content=json.dumps({"start": 1.5, "end": 4}))],
    )

    assert outcome.observations == ["Action TRIM_VIDEO 'short.mp4' success. (Trimmed 1.5s to 4s)."]
    assert fake_media.calls == [("trim_video", ("video/mp4", 1.5, 4.0))]
    assert await outcome.files.get("short.mp4").resolve() == b"trimmed"  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_trim_video_accepts_loose_content(dispatcher: ActionDispatcher, fake_media: FakeMedia) -> None:
    store = FileStoreSnapshot([VirtualFile.binary("clip.mp4", b"video")])

    await dispatcher.dispatch(
        store, [_action("trim_video", "short.mp4", source_path="clip.mp4", content="start: 2, end: 5")]
    )

    assert fake_media.calls == [("trim_video", ("video/mp4", 2.0, 5.0))]


@pytest.mark.asyncio
async def test_trim_video_requires_range(dispatcher: ActionDispatcher) -> None:
    store = FileStoreSnapshot([VirtualFile.binary("clip.mp4", b"video")])

    outcome = await dispatcher.dispatch(store, [_action("trim_video", "short.mp4", source_path="clip.mp4")])

    assert outcome.observations == [
        "Action TRIM_VIDEO 'short.mp4' failed: Missing start/end times in 'content' JSON."
    ]


@pytest.mark.asyncio
async def test_calculate_reports_result(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("calculate", "math", content="2^10 + 1")])

    assert outcome.observations == ["Action CALCULATE success.\nExpression: 2^10 + 1\nResult: 1025"]


@pytest.mark.asyncio
async def test_calculate_failure(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("calculate", "math", content="1/0")])

    assert outcome.observations[0].startswith("Action CALCULATE 'math' failed:")


class _SlowCalculator:
    def __init__(self) -> None:
        self.release = threading.Event()

    def calculate(self, expression: str) -> str:
        self.release.wait(5)
        return "42"


@pytest.mark.asyncio
async def test_calculate_runs_off_the_event_loop_and_times_out() -> None:
    slow = _SlowCalculator()
    dispatcher = ActionDispatcher(calculator=slow, calculation_timeout=0.2)  # type: ignore[arg-type]
    ticks = 0

    async def ticker() -> None:
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0.01)

    task = asyncio.create_task(ticker())
    try:
        outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("calculate", "math", content="1+1")])
    finally:
        task.cancel()
        slow.release.set()

    assert outcome.observations == ["Action CALCULATE 'math' failed: Calculation timed out after 0.2s"]
    assert ticks > 5


@pytest.mark.asyncio
async def test_calculate_rejects_oversized_results(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(
        FileStoreSnapshot(), [_action("calculate", "math", content="((9**999)**999)**9")]
    )

    assert outcome.observations[0].startswith("Action CALCULATE 'math' failed: Result is larger than")


@pytest.mark.asyncio
async def test_web_search_formats_sources(dispatcher: ActionDispatcher) -> None:
    outcome = await dispatcher.dispatch(FileStoreSnapshot(), [_action("web_search", "news", content="python release")])

    text = outcome.observations[0]
    assert text.startswith('[Web Search Result for: "python release"]')
    assert "- [python.org](https://www.python.org)" in text


@pytest.mark.asyncio
async def test_run_script_reads_and_writes_store(dispatcher: ActionDispatcher, store: FileStoreSnapshot) -> None:
    script = (
        "text: str = fs.read('notes.txt')\n"
        "fs.write('upper.txt', text.upper())\n"
        "console.log('done', len(text))\n"
    )
    store.put(VirtualFile.text("job.py", script))

    outcome = await dispatcher.dispatch(store, [_action("run_script", "job.py")])

    assert outcome.observations == ["Action RUN_SCRIPT 'job.py' executed successfully.\n[Console Output]:\ndone 11"]
    assert await outcome.files.get("upper.txt").resolve() == "HELLO WORLD"  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_run_script_reports_errors_with_logs(dispatcher: ActionDispatcher) -> None:
    store = FileStoreSnapshot([VirtualFile.text("job.py", "print('before')\nraise ValueError('boom')\n")])

    outcome = await dispatcher.dispatch(store, [_action("run_script", "job.py")])

    text = outcome.observations[0]
    assert text.startswith("Action RUN_SCRIPT 'job.py' execution failed: ValueError: boom")
    assert text.endswith("[Logs so far]:\nbefore")


@pytest.mark.asyncio
async def test_run_script_syntax_error(dispatcher: ActionDispatcher) -> None:
    store = FileStoreSnapshot([VirtualFile.text("job.py", "def broken(:\n")])

    outcome = await dispatcher.dispatch(store, [_action("run_script", "job.py")])

    assert outcome.observations[0].startswith("Action RUN_SCRIPT transpilation failed:")


def test_every_action_type_has_a_handler() -> None:
    dispatcher = ActionDispatcher()

    assert set(dispatcher._handlers) == set(ActionType)


@pytest.mark.asyncio
async def test_read_above_attachment_ceiling_fails_without_attaching(dispatcher: ActionDispatcher) -> None:
    handle = _UntouchableHandle()
    store = FileStoreSnapshot([_large_file("movie.mp4", 21 * 1024 * 1024, "video/mp4", handle)])

    outcome = await dispatcher.dispatch(store, [_action("read", "movie.mp4")])

    assert outcome.observations == [
        "Action READ 'movie.mp4' failed: File is too large (21.00MB) for direct analysis. "
        "Please ask user to summarize or split it."
    ]
    assert outcome.attachments == []
    assert handle.reads == 0


@pytest.mark.asyncio
async def test_append_to_oversized_file_fails_and_leaves_store_unchanged(dispatcher: ActionDispatcher) -> None:
    handle = _UntouchableHandle()
    big = _large_file("huge.log", 6 * 1024 * 1024, "text/plain", handle)
    store = FileStoreSnapshot([big])

    outcome = await dispatcher.dispatch(store, [_action("append", "huge.log", content="more")])

    assert outcome.observations == ["Action APPEND 'huge.log' failed: File is too large to append text directly."]
    assert outcome.files.get("huge.log") is big
    assert handle.reads == 0
