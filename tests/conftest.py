"""Shared test fixtures for the Voice Scheduler test suite."""

from __future__ import annotations

import os

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ["METRICS_ENABLED"] = "false"
    os.environ.pop("OPENAI_API_KEY", None)


@pytest.fixture
def store():
    """A fresh in-memory booking store."""
    from voice_scheduler.services.store import BookingStore

    return BookingStore.from_url("sqlite:///:memory:")


@pytest.fixture
def executor(store):
    from voice_scheduler.tools.executor import ToolExecutor

    return ToolExecutor(store)


@pytest.fixture
def context(store):
    """Context for a freshly started, unidentified session."""
    from voice_scheduler.context import ConversationContext

    session = store.create_call_session()
    return ConversationContext(session_id=session.id)


@pytest.fixture
def make_context(store):
    """Factory for additional sessions (e.g. a second concurrent caller)."""
    from voice_scheduler.context import ConversationContext

    def _make() -> ConversationContext:
        return ConversationContext(session_id=store.create_call_session().id)

    return _make
