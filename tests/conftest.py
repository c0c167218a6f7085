"""
Pytest configuration and fixtures for LogTrains tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Generator

import pytest

from logtrains.store import EntryStore


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir: Path) -> EntryStore:
    """An empty Entry Store in a temporary directory."""
    return EntryStore(temp_dir / "history")


@pytest.fixture
def populated_store(store: EntryStore) -> EntryStore:
    """A store holding three entries captured a minute apart."""
    base = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    store.add("A", command_text="make", exit_code=2, captured_at=base)
    store.add("BB", command_text="make test", exit_code=1, captured_at=base + timedelta(minutes=1))
    store.add("CCC", command_text="cargo build", exit_code=0, captured_at=base + timedelta(minutes=2))
    return store


@pytest.fixture
def isolated_home(temp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point LogTrains at a throwaway home so no user config or history is touched."""
    home = temp_dir / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("LOGTRAINS_HOME", str(home / "logtrains"))
    monkeypatch.delenv("LOGTRAINS_CONFIG", raising=False)
    return home
