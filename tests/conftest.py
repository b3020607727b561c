"""Shared pytest fixtures."""

import os
import tempfile

import pytest
import structlog

from ai_spend_guard.storage.repository import initialize_schema


@pytest.fixture(autouse=True)
def reset_logging():
    """Restore default structlog config after tests that configure it."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def db_path():
    """Path to a freshly initialized SQLite database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path
