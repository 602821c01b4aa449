"""Shared fixtures for the memory engine tests."""

from datetime import datetime, timedelta, timezone

import pytest

from brain_memory.config import EngineConfig
from brain_memory.memory_store import BrainStateStore, MemoryStore
from brain_memory.memory_types import MemoryRecord

PROJECT = "demo-project"
FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    """A fixed clock so decay and freshness are reproducible."""
    return FIXED_NOW


@pytest.fixture
def days_ago(now):
    def _days_ago(days: float) -> str:
        return (now - timedelta(days=days)).isoformat()
    return _days_ago


@pytest.fixture
def make_record(now):
    """Factory for in-memory records with sensible defaults."""
    counter = {'n': 0}

    def _make(**overrides) -> MemoryRecord:
        counter['n'] += 1
        fields = {
            'id': f"m{counter['n']:03d}",
            'project_id': PROJECT,
            'type': 'pain',
            'title': f"Memory {counter['n']}",
            'content': '',
            'rule': '',
            'tags': [],
            'severity': 'low',
            'created_at': now.isoformat(),
        }
        fields.update(overrides)
        return MemoryRecord(**fields)

    return _make


@pytest.fixture
def store(tmp_path):
    return MemoryStore(tmp_path, PROJECT)


@pytest.fixture
def state_store(tmp_path):
    return BrainStateStore(tmp_path, PROJECT)


@pytest.fixture
def small_config():
    return EngineConfig(context_phase_mid=10, context_phase_late=20, checkpoint_interval=6)
