"""
Pytest configuration for Anti-Dip engine tests.

This module provides:
1. A fixed clock and timestamp helpers
2. Fake collaborators (voice, visual, text generator, failing store)
3. Common fixtures wiring the engine over an in-memory store
"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest

from antidip.config import EngineSettings
from antidip.cooldown_ledger import CooldownLedger
from antidip.errors import PersistenceError
from antidip.notification_engine import NotificationDispatcher, NotificationHistoryStore
from antidip.persistence import InMemoryKeyValueStore
from antidip.task_model import Pillar, Task, format_timestamp


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------
NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def days_ago(days: float, now: datetime = NOW) -> str:
    return format_timestamp(now - timedelta(days=days))


def make_task(
    task_id: Any = 1,
    progress: int = 0,
    updated_days_ago: Optional[float] = 0,
    created_days_ago: Optional[float] = None,
    **overrides,
) -> Task:
    """Helper to create test tasks relative to NOW."""
    fields = {
        "id": task_id,
        "name": f"Task {task_id}",
        "progress": progress,
        "status": "done" if progress == 100 else "active",
        "last_progress_update": days_ago(updated_days_ago) if updated_days_ago is not None else None,
        "created_at": days_ago(created_days_ago) if created_days_ago is not None else None,
    }
    fields.update(overrides)
    return Task(**fields)


def make_pillar(pillar_id: Any = "p1", tasks=(), **overrides) -> Pillar:
    fields = {"id": pillar_id, "name": f"Goal {pillar_id}", "tasks": tuple(tasks)}
    fields.update(overrides)
    return Pillar(**fields)


# -----------------------------------------------------------------------------
# Fake collaborators
# -----------------------------------------------------------------------------
class FakeVoice:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.spoken: List[tuple] = []

    def speak(self, text, priority):
        if self.fail:
            raise RuntimeError("speech synthesis unavailable")
        self.spoken.append((text, priority))


class FakeVisual:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.shown = []

    async def show(self, payload):
        if self.fail:
            raise RuntimeError("notifications blocked")
        self.shown.append(payload)


class FakeTextGenerator:
    """Returns canned text (or None) and records prompts."""

    def __init__(self, reply: Optional[str] = None, error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt, **kwargs):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.reply


class FailingStore(InMemoryKeyValueStore):
    """Store whose reads fail for selected keys."""

    def __init__(self, failing_keys=(), initial=None):
        super().__init__(initial)
        self.failing_keys = set(failing_keys)

    def get(self, key):
        if key in self.failing_keys:
            raise PersistenceError("read", key, "storage unavailable")
        return super().get(key)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def settings():
    """Default settings with an immediate encouragement follow-up."""
    return EngineSettings(encouragement_delay_seconds=0)


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def ledger(store):
    return CooldownLedger(store)


@pytest.fixture
def history(store, settings):
    return NotificationHistoryStore(store, limit=settings.history_limit)


@pytest.fixture
def voice():
    return FakeVoice()


@pytest.fixture
def visual():
    return FakeVisual()


@pytest.fixture
def dispatcher(history, ledger, voice, visual, settings):
    return NotificationDispatcher(
        history, ledger, voice=voice, visual=visual, settings=settings, clock=lambda: NOW
    )
