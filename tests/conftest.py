"""
Shared fixtures.

Argon2 runs with light parameters here so the suite stays fast; the
production defaults are exercised in test_credentials.
"""

import pytest

from zauth.auth.credentials import CredentialHasher, CredentialStore
from zauth.auth.records import InMemoryUserStore, UserRecord
from zauth.auth.session_guard import (
    AuthBinding, MemorySession, ResponseRecorder, SessionGuard
)
from zauth.auth.totp import TOTPManager
from zauth.integration.event_logger import EventLogger


# Start of a 30 second time step, so T..T+29 share one TOTP counter
T0 = 1_700_000_010

PASSWORD = "longenough1"


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=8192, parallelism=1)


@pytest.fixture
def users():
    return InMemoryUserStore()


@pytest.fixture
def events():
    return EventLogger()


@pytest.fixture
def totp(users, events):
    return TOTPManager(users, issuer_name="ZauthTest", event_logger=events)


@pytest.fixture
def credentials(users, hasher, totp, events):
    return CredentialStore(users, hasher=hasher, totp=totp, event_logger=events)


@pytest.fixture
def make_user(credentials):
    """Create and persist a user with a known password."""
    def _make(email="a@example.com", password=PASSWORD, **attrs):
        user = UserRecord(email=email, password=password,
                          password_confirmation=password, **attrs)
        result = credentials.save(user)
        assert result['success'], result['errors']
        return user
    return _make


@pytest.fixture
def binding(users):
    return AuthBinding(users=users, session_auth_key='user_id',
                       location_store_key='return_to')


@pytest.fixture
def make_guard(binding, credentials, totp, events):
    """Build a guard for one request against `session`."""
    def _make(session=None, single_device_sessions=False, **kwargs):
        kwargs.setdefault('responder', ResponseRecorder())
        kwargs.setdefault('credentials', credentials)
        kwargs.setdefault('totp', totp)
        kwargs.setdefault('event_logger', events)
        return SessionGuard(
            binding,
            session if session is not None else MemorySession(),
            single_device_sessions=single_device_sessions,
            **kwargs
        )
    return _make
