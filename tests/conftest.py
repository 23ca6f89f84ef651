from contextlib import ExitStack
from unittest.mock import AsyncMock, Mock, patch

import pytest

from tests.fakes import REPOSITORY_TARGETS, FakeClock, FakeRedis, FakeStore


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def store():
    fake = FakeStore()
    with ExitStack() as stack:
        for target in REPOSITORY_TARGETS:
            stack.enter_context(patch(target, fake))
        yield fake


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def fanout():
    mock = Mock()
    mock.notify_message = AsyncMock()
    mock.notify_status = AsyncMock()
    mock.notify_critical = AsyncMock()
    mock.notify_failed = AsyncMock()
    mock.notify_referral = AsyncMock()
    return mock


@pytest.fixture
def notifier():
    mock = Mock()
    mock.notify_critical = AsyncMock(return_value=1)
    return mock
