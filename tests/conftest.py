"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from tests.helpers import FakeGeneration, FakeMedia
from workbench.workspace.files import FileStoreSnapshot, VirtualFile


@pytest.fixture
def fake_generation() -> FakeGeneration:
    return FakeGeneration()


@pytest.fixture
def fake_media() -> FakeMedia:
    return FakeMedia()


@pytest.fixture
def store() -> FileStoreSnapshot:
    return FileStoreSnapshot(
        [
            VirtualFile.text("notes.txt", "hello world"),
            VirtualFile.binary("photo.png", b"\x89PNG-data"),
        ]
    )
