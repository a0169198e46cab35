"""
Shared fixtures: in-memory store and queue, and the services built on them
"""
import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("OAUTH_STATE_SECRET", "test-oauth-state-secret")
os.environ.setdefault("PASSWORD_HASH_ROUNDS", "4")

import pytest

from multichannel_auth.core.config import Tenant
from multichannel_auth.core.queue import InMemoryJobQueue
from multichannel_auth.core.store import InMemoryStore
from multichannel_auth.services.multipass import MultipassService
from multichannel_auth.services.oauth_service import OAuthService
from multichannel_auth.services.otp_service import OTPService
from multichannel_auth.services.session_service import SessionService
from tests.helpers.fakes import TEST_SECRET, TEST_SHOP, FakeCustomerDirectory, ManualClock


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue("sms", attempts=3, backoff_seconds=1.0, poll_interval=0.01, clock=clock)


@pytest.fixture
def otp_service(store):
    return OTPService(store)


@pytest.fixture
def customers():
    return FakeCustomerDirectory()


@pytest.fixture
def sessions(store):
    return SessionService(store)


@pytest.fixture
def tenant():
    return Tenant(shop_domain=TEST_SHOP, multipass_secret=TEST_SECRET)


@pytest.fixture
def multipass():
    return MultipassService()


@pytest.fixture
def oauth():
    return OAuthService()
