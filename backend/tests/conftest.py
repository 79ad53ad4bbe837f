"""Pytest configuration and fixtures."""

import pytest

from optiondesk.config import Settings


@pytest.fixture
def settings():
    """Simulator settings with a private in-memory database."""
    return Settings(db_path=":memory:", market_interval=60.0, chain_interval=60.0)
