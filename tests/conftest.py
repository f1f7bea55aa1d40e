"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from streamchat.store import DiskTranscriptStore  # noqa: E402


class ScriptedBackend:
    """Backend double replaying fixed fragments, optionally failing or waiting on a gate."""

    assistant_role = "assistant"

    def __init__(
        self,
        fragments: Optional[List[str]] = None,
        *,
        error: Optional[Exception] = None,
        title: str = "Un titre",
        gated: bool = False,
    ) -> None:
        self.fragments = list(fragments or [])
        self.error = error
        self.title = title
        self.requests = []
        self.prompts: List[str] = []
        self.gate = asyncio.Event() if gated else None

    async def stream(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        for f in self.fragments:
            yield f
        if self.error is not None:
            raise self.error

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.title


class SpyStore(DiskTranscriptStore):
    """Disk store that records title updates and can be told to fail writes."""

    def __init__(self, data_dir: str, *, fail_inserts: bool = False) -> None:
        super().__init__(data_dir)
        self.fail_inserts = fail_inserts
        self.title_updates: List[tuple] = []

    def insert_message(self, conversation_id, role, content, *, created_at=None):
        if self.fail_inserts:
            raise OSError("disk full")
        return super().insert_message(conversation_id, role, content, created_at=created_at)

    def update_conversation_title(self, conversation_id, title):
        self.title_updates.append((conversation_id, title))
        super().update_conversation_title(conversation_id, title)


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for transcripts during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "STREAMCHAT_CONFIG" or var.startswith("STREAMCHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def backend_cls():
    return ScriptedBackend


@pytest.fixture
def spy_store(tmp_data_dir: Path) -> SpyStore:
    return SpyStore(str(tmp_data_dir))


@pytest.fixture
def spy_store_cls():
    return SpyStore
