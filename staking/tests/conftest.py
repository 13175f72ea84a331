from datetime import datetime, timezone

import pytest

from staking.config import Settings
from staking.repository import LedgerRepository
from staking.service import StakingService
from staking.store import InMemoryDocumentStore

from .factories import FixedClock


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def repo(store):
    return LedgerRepository(store)


@pytest.fixture
def service(store, settings, clock):
    return StakingService(store=store, settings=settings, clock=clock)
