"""Shared test fixtures."""

from __future__ import annotations

import pytest

from finwire.adapters.db.facade import DB


@pytest.fixture
def db() -> DB:
    """In-memory database with the full schema."""
    database = DB("sqlite:///:memory:")
    database.create_schema()
    return database
