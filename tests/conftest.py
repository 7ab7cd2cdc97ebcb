"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["START_METER"] = "false"

from phonebooth.config import BillingConfig  # noqa: E402
from phonebooth.service import AccountingService  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock so billing instants are exact."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def temp_db(tmp_path):
    """Database URL of a fresh SQLite file."""
    return f"sqlite:///{tmp_path / 'phonebooth.db'}"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(temp_db):
    return BillingConfig(
        database_url=temp_db,
        billing_unit_seconds=60,
        meter_interval_seconds=0.05,
        ring_timeout_seconds=60,
        lock_timeout_seconds=1.0,
        meter_lock_timeout_seconds=0.1,
        start_meter=False,
    )


@pytest.fixture
def service(config, clock):
    svc = AccountingService(config=config, clock=clock)
    yield svc
    svc.shutdown(timeout=2)
    svc.db.close()


@pytest.fixture
def user(service):
    """A user with an empty balance."""
    return service.create_user("alice@example.com", "+15550001")


@pytest.fixture
def us_rate(service):
    """US/+1 at 100 minor units per minute."""
    return service.set_rate("US", 1, 100)


@pytest.fixture
def funded(service, user, us_rate):
    """Returns a helper that credits the user and hands back their id."""
    def fund(amount: int) -> int:
        if amount:
            service.top_up(user.id, amount)
        return user.id
    return fund
