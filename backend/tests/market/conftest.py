"""Fixtures for market data tests."""

import pytest
from fakes import FakeClock, FakeGateway

from optiondesk.market.store import open_database


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def db():
    conn = open_database(":memory:")
    yield conn
    conn.close()
