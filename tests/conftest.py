"""
Core pytest configuration and fixtures for branchchat testing.

This module provides shared test fixtures, configuration, and utilities
that support the pillar-based testing architecture: message trees, every
store engine, a scripted streaming transport and ready-made sessions.
"""

import asyncio
import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional

import pytest
from branchchat.config import Settings
from branchchat.llm import DONE_FRAME, LLM
from branchchat.models import ASSISTANT_ROLE, USER_ROLE, Message
from branchchat.notifications import TOAST, Notifier
from branchchat.registry import StreamRegistry
from branchchat.session import ChatSession
from branchchat.store import InMemory

# ===== TEST UTILITIES =====

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_message(
    id: str,
    parent_id: Optional[str] = None,
    role: str = USER_ROLE,
    branch_index: int = 0,
    chat_id: str = "chat-1",
    content: Optional[str] = None,
    minute: int = 0,
) -> Message:
    """Builds a message with a deterministic id and timestamp."""
    return Message(
        id=id,
        chat_id=chat_id,
        role=role,
        content=content if content is not None else f"content of {id}",
        parent_id=parent_id,
        branch_index=branch_index,
        created_at=BASE_TIME + timedelta(minutes=minute),
    )


def sse(type: str, **fields: Any) -> str:
    """Renders one wire frame, the way the streaming endpoint does."""
    return f"data: {json.dumps({'type': type, **fields})}\n\n"


class ScriptedLLM(LLM):
    """
    Replays canned SSE frames.

    When ``pause_after`` is set, the stream stops after that many frames,
    sets ``paused`` and waits for ``release`` before continuing. Every request
    is recorded in ``requests``.
    """

    def __init__(self, frames: Optional[List[str]] = None, pause_after: Optional[int] = None):
        self.frames = list(frames or [])
        self.pause_after = pause_after
        self.paused = asyncio.Event()
        self.release = asyncio.Event()
        self.requests = []
        self.closed = False

    async def stream(self, request):
        self.requests.append(request)
        try:
            for index, frame in enumerate(self.frames):
                if index == self.pause_after:
                    self.paused.set()
                    await self.release.wait()
                yield frame
        finally:
            self.closed = True


# ===== TEST DATA FIXTURES =====


@pytest.fixture
def branched_messages() -> List[Message]:
    """
    A tree with a branch point at the root's reply and an edited user turn.

        u1
        ├── a1 (branch 0)
        └── a2 (branch 1)
            ├── u2 (branch 0)
            │   └── a3
            └── u3 (branch 1, edit)
                └── a4
    """
    return [
        make_message("u1", minute=0),
        make_message("a1", "u1", ASSISTANT_ROLE, 0, minute=1),
        make_message("a2", "u1", ASSISTANT_ROLE, 1, minute=2),
        make_message("u2", "a2", USER_ROLE, 0, minute=3),
        make_message("a3", "u2", ASSISTANT_ROLE, 0, minute=4),
        make_message("u3", "a2", USER_ROLE, 1, minute=5),
        make_message("a4", "u3", ASSISTANT_ROLE, 0, minute=6),
    ]


@pytest.fixture
def hello_frames() -> List[str]:
    """A single-model response: "Hi", then done."""
    return [
        sse("content", content="Hi"),
        sse("done"),
        DONE_FRAME,
    ]


# ===== DIRECTORY FIXTURES =====


@pytest.fixture
def temp_dir():
    """Temporary directory for file-based tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ===== PILLAR IMPLEMENTATION FIXTURES =====


@pytest.fixture(params=["InMemory", "File", "SQLite"])
def any_store(request, temp_dir):
    """Each store implementation in turn, for contract testing."""
    from branchchat import store

    if request.param == "InMemory":
        return store.InMemory()
    if request.param == "File":
        return store.File(str(temp_dir / "file_store"))
    return store.SQLite(str(temp_dir / "test.db"))


@pytest.fixture
def settings() -> Settings:
    """Settings with a credential and nothing read from the environment file."""
    return Settings(_env_file=None, api_key="sk-test", auto_mode=False, default_models=["model-a"])


@pytest.fixture
def memory_store() -> InMemory:
    return InMemory()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def toasts(notifier) -> List[tuple]:
    """Collects every toast emitted through the shared notifier."""
    received: List[tuple] = []
    notifier.subscribe(TOAST, lambda message, level: received.append((message, level)))
    return received


@pytest.fixture
def make_session(memory_store, settings, notifier):
    """Factory for sessions over the in-memory store and a given transport."""

    def factory(llm: LLM, **kwargs) -> ChatSession:
        kwargs.setdefault("store", memory_store)
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("registry", StreamRegistry())
        kwargs.setdefault("notifier", notifier)
        return ChatSession(llm=llm, **kwargs)

    return factory


# ===== CONFIGURATION =====


def pytest_configure(config):
    """Pytest configuration."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on location."""
    for item in items:
        # Mark integration tests
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
