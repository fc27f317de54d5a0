"""Shared fixtures for catalog resolution tests."""

from __future__ import annotations

from unittest.mock import MagicMock, Mock

import pytest

from caskmatch.config import Settings
from caskmatch.entity_resolution.models import CanonicalEntry


@pytest.fixture()
def mock_conn() -> MagicMock:
    """A psycopg-like connection whose cursors and savepoints never swallow errors."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value.__enter__ = Mock(return_value=cursor)
    conn.cursor.return_value.__exit__ = Mock(return_value=False)
    conn.transaction.return_value.__enter__ = Mock(return_value=None)
    conn.transaction.return_value.__exit__ = Mock(return_value=False)
    return conn


@pytest.fixture()
def settings() -> Settings:
    """Default thresholds, isolated from any local ``.env`` file."""
    return Settings(_env_file=None)


@pytest.fixture()
def make_entry():
    """Factory for canonical entries with sensible defaults."""

    def _make(entry_id: str = "entry-1", name: str = "Blanton's", **kwargs) -> CanonicalEntry:
        kwargs.setdefault("brand", "Blanton's")
        kwargs.setdefault("distillery", "Buffalo Trace")
        return CanonicalEntry(id=entry_id, name=name, **kwargs)

    return _make
