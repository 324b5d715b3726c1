from types import SimpleNamespace
from unittest.mock import Mock
from uuid import uuid4

import pytest
from fakes import FakeClock

from wabot.services.cache import MemoryTier, TwoTierCache


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return TwoTierCache("test", MemoryTier(ttl_seconds=3600, max_entries=100, clock=clock))


@pytest.fixture
def business():
    return SimpleNamespace(
        id=uuid4(),
        name="Demo Salon",
        status="active",
        phone_number_id="1000001",
        config={},
        is_active=True,
        tone_prompt=None,
        faq_source={},
    )
