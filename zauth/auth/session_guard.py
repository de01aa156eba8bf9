"""
Session Guard Module

Login state of one request, kept in the host's session store.

Implements:
- Current-user resolution from the session, memoized per request
- Single-device sessions (only the most recent login of a user is trusted)
- Idle session rotation that keeps the pending redirect target
- Login requirement / access denial hooks
- Redirect-after-login bookkeeping
- The password -> second factor -> session login flow

One guard is created per request. Several auth domains (e.g. admin and
public users) live side by side in one session by giving each its own
AuthBinding; the keys of two domains must never be shared.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import MutableMapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from .credentials import CredentialStore
from .errors import ConfigurationError, missing_setting
from .records import UserRecord, UserStore
from .totp import TOTPManager
from ..integration.event_logger import EventLogger, EventType


logger = logging.getLogger(__name__)


# Session configuration
SESSION_ID_BYTES = 16
SESSION_IDLE_SECONDS = 60 * 60  # rotate after 60 minutes of inactivity
SESSION_CREATED_AT_KEY = 'created_at'

ACCESS_DENIED_MESSAGE = "Couldn't authenticate you"
LOGIN_FAILED_MESSAGE = "Invalid credentials"


def generate_session_id() -> str:
    """Generate a secure random session identifier."""
    return secrets.token_hex(SESSION_ID_BYTES)


# ============================================================================
# Host contracts
# ============================================================================

class SessionStore(MutableMapping):
    """
    Request-scoped key/value session with an externally managed identifier.
    """

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Identifier of the session as seen by the transport layer."""

    @abstractmethod
    def reset(self) -> None:
        """Drop every key and reissue the identifier."""


class MemorySession(SessionStore):
    """
    Dict-backed session.

    Example:
        >>> session = MemorySession()
        >>> old_id = session.session_id
        >>> session['return_to'] = '/reports'
        >>> session.reset()
        >>> session.session_id != old_id, dict(session)
        (True, {})
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None, session_id: Optional[str] = None):
        self._data: Dict[str, Any] = dict(data or {})
        self._session_id = session_id or generate_session_id()

    @property
    def session_id(self) -> str:
        return self._session_id

    def reset(self) -> None:
        self._data.clear()
        self._session_id = generate_session_id()

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"MemorySession(id='{self._session_id[:8]}...', keys={sorted(self._data)})"


class Responder(ABC):
    """What the guard needs from the host's response layer."""

    @abstractmethod
    def unauthorized(self, message: str) -> Any:
        """Emit a 401 response with a plain-text body."""

    @abstractmethod
    def redirect(self, url: str) -> Any:
        """Emit a redirect to `url`."""


@dataclass
class Response:
    status: int
    body: str = ''
    location: Optional[str] = None


class ResponseRecorder(Responder):
    """Responder that records what was emitted instead of sending it."""

    def __init__(self):
        self.responses: List[Response] = []

    def unauthorized(self, message: str) -> Response:
        response = Response(status=401, body=message)
        self.responses.append(response)
        return response

    def redirect(self, url: str) -> Response:
        response = Response(status=302, location=url)
        self.responses.append(response)
        return response

    @property
    def last(self) -> Optional[Response]:
        return self.responses[-1] if self.responses else None


@dataclass
class AuthBinding:
    """
    Identity binding of one auth domain.

    Attributes:
        users: Store of the domain's identity records
        session_auth_key: Session key holding the authenticated user id
        location_store_key: Session key holding the post-login redirect target
    """
    users: Optional[UserStore] = None
    session_auth_key: Optional[str] = None
    location_store_key: Optional[str] = None

    def require(self, name: str) -> Any:
        value = getattr(self, name)
        if value is None or value == '':
            raise missing_setting('AuthBinding', name)
        return value


# ============================================================================
# Guard
# ============================================================================

class Resolution(Enum):
    """Memoized outcome of current-user resolution."""
    UNRESOLVED = 'unresolved'
    NONE = 'none'
    USER = 'user'


class GuardState(Enum):
    ANONYMOUS = 'anonymous'
    UNTRUSTED_DEVICE = 'untrusted_device'
    AUTHENTICATED = 'authenticated'


class SessionGuard:
    """
    Authentication state machine over one session.

    Subclass and override `authorized` to add authorization rules, and
    `access_denied` for a different denial response.

    Example:
        >>> users = InMemoryUserStore()
        >>> alice = users.save(UserRecord(email="alice@example.com"))
        >>> binding = AuthBinding(users, 'user_id', 'return_to')
        >>> guard = SessionGuard(binding, MemorySession(), ResponseRecorder())
        >>> guard.set_current_user(alice) is alice
        True
        >>> guard.is_logged_in()
        True
    """

    def __init__(self, binding: AuthBinding, session: SessionStore,
                 responder: Optional[Responder] = None,
                 request_path: Optional[str] = None,
                 single_device_sessions: bool = False,
                 credentials: Optional[CredentialStore] = None,
                 totp: Optional[TOTPManager] = None,
                 event_logger: Optional[EventLogger] = None,
                 idle_timeout: int = SESSION_IDLE_SECONDS):
        """
        Args:
            binding: Identity binding of this guard's auth domain
            session: The request's session store
            responder: Host response layer (denials, redirects)
            request_path: Full path of the current request
            single_device_sessions: Trust only the user's most recent session
            credentials: Credential store used by `login`
            totp: TOTP manager used by `login`; None disables the second factor
            event_logger: Optional audit trail
            idle_timeout: Seconds of inactivity before the session is rotated
        """
        self.binding = binding
        self.session = session
        self.responder = responder
        self.request_path = request_path
        self.single_device_sessions = single_device_sessions
        self.credentials = credentials
        self.totp = totp
        self._events = event_logger
        self.idle_timeout = idle_timeout

        self._resolution = Resolution.UNRESOLVED
        self._user: Optional[UserRecord] = None
        self._state = GuardState.ANONYMOUS

    @classmethod
    def from_config(cls, binding: AuthBinding, session: SessionStore, config,
                    **kwargs) -> 'SessionGuard':
        """Build a guard whose policy values come from an AuthConfig."""
        kwargs.setdefault('single_device_sessions', config.SINGLE_DEVICE_SESSIONS)
        kwargs.setdefault('idle_timeout', config.session_idle_seconds)
        return cls(binding, session, **kwargs)

    # ------------------------------------------------------------------
    # Bindings
    # ------------------------------------------------------------------

    @property
    def users(self) -> UserStore:
        return self.binding.require('users')

    @property
    def auth_model_class(self) -> type:
        return getattr(self.users, 'model_class', UserRecord)

    @property
    def session_auth_key(self) -> str:
        return self.binding.require('session_auth_key')

    @property
    def location_store_key(self) -> str:
        return self.binding.require('location_store_key')

    # ------------------------------------------------------------------
    # Current user
    # ------------------------------------------------------------------

    @property
    def state(self) -> GuardState:
        self.current_user()
        return self._state

    def current_user(self) -> Optional[UserRecord]:
        """
        The authenticated user of this request, or None.

        A user whose trusted session is another device's resolves to None
        while single-device sessions are enforced.
        """
        if self._resolution is Resolution.UNRESOLVED:
            self._resolve()
        return self._user if self._resolution is Resolution.USER else None

    def _resolve(self) -> None:
        user_id = self.session.get(self.session_auth_key)
        user = self.users.find_by_id(user_id) if user_id is not None else None

        if not isinstance(user, self.auth_model_class):
            self._remember(None, GuardState.ANONYMOUS)
            return

        if self.single_device_sessions and user.current_session_id != self.session.session_id:
            logger.debug("User %s is trusted on another session", user.id)
            if self._events is not None:
                self._events.log(EventType.DEVICE_MISMATCH, user.email)
            self._remember(None, GuardState.UNTRUSTED_DEVICE)
            return

        self._remember(user, GuardState.AUTHENTICATED)

    def _remember(self, user: Optional[UserRecord], state: GuardState) -> None:
        self._user = user
        self._resolution = Resolution.USER if user is not None else Resolution.NONE
        self._state = state

    def is_logged_in(self) -> bool:
        user = self.current_user()
        if user is None:
            return False
        if self.single_device_sessions:
            return user.current_session_id == self.session.session_id
        return True

    def set_current_user(self, user: Optional[UserRecord], now: float = None) -> Optional[UserRecord]:
        """
        Attach `user` to the session, or detach whoever is attached for None.

        Attaching claims this session as the user's trusted device, which
        evicts the trust of any other device.
        """
        self.setup_session(now)

        if user is None or not isinstance(user, self.auth_model_class):
            self.session.pop(self.session_auth_key, None)
            self._remember(None, GuardState.ANONYMOUS)
            return None

        self.session[self.session_auth_key] = user.id
        user.current_session_id = self.session.session_id
        self._save_user(user)
        self._remember(user, GuardState.AUTHENTICATED)
        return user

    def _save_user(self, user: UserRecord) -> None:
        if self.credentials is not None:
            self.credentials.persist(user)
        else:
            self.users.save(user)

    def setup_session(self, now: float = None) -> None:
        """
        Rotate an idle session and restamp its activity clock.

        The pending redirect target survives the rotation.
        """
        now = time.time() if now is None else now
        created_at = self.session.get(SESSION_CREATED_AT_KEY)

        if isinstance(created_at, (int, float)) and created_at < now - self.idle_timeout:
            stored_location = self.session.get(self.location_store_key)
            old_id = self.session.session_id
            self.session.reset()
            if stored_location is not None:
                self.session[self.location_store_key] = stored_location
            logger.info("Rotated idle session %s...", old_id[:8])
            if self._events is not None:
                self._events.log(EventType.SESSION_ROTATED)

        self.session[SESSION_CREATED_AT_KEY] = now

    # ------------------------------------------------------------------
    # Access control
    # ------------------------------------------------------------------

    def authorized(self) -> bool:
        """Authorization hook; override to restrict access."""
        return True

    def require_login(self) -> bool:
        """Pre-action guard: True when logged in and authorized."""
        if self.is_logged_in() and self.authorized():
            return True
        return self.access_denied()

    def access_denied(self) -> bool:
        """Emit a 401 response. Always returns False."""
        if self._events is not None:
            self._events.log(EventType.ACCESS_DENIED, path=self.request_path)
        if self.responder is not None:
            self.responder.unauthorized(ACCESS_DENIED_MESSAGE)
        return False

    # ------------------------------------------------------------------
    # Redirects
    # ------------------------------------------------------------------

    def store_location(self, url: Optional[str] = None) -> None:
        """Remember `url` (or the current request path) for after login."""
        self.session[self.location_store_key] = url or self.request_path

    def redirect_back_or_default(self, default: str) -> Any:
        """Redirect to the stored location, once, or to `default`."""
        if self.responder is None:
            raise ConfigurationError("SessionGuard requires a responder to redirect")
        target = self.session.get(self.location_store_key) or default
        self.session.pop(self.location_store_key, None)
        return self.responder.redirect(target)

    # ------------------------------------------------------------------
    # Login flow
    # ------------------------------------------------------------------

    def login(self, email: str, password: str,
              totp_code: Optional[str] = None,
              totp_cookie: Optional[str] = None,
              remember_device: bool = False,
              now: float = None) -> Dict:
        """
        Authenticate a user and attach them to this session.

        Args:
            email: Login handle
            password: Password to verify
            totp_code: Second-factor code, when the user has TOTP enabled
            totp_cookie: Remembered-device cookie presented by the client
            remember_device: Issue a remembered-device cookie on success
            now: Unix timestamp (uses current time if None)

        Returns:
            Dict with 'success', 'message', and on success 'user_id' and
            'totp_cookie' (None unless one was issued)
        """
        if self.credentials is None:
            raise ConfigurationError("SessionGuard.login requires a CredentialStore")

        user = self.credentials.authenticate(email, password)
        if user is None:
            return self._login_failed(email)

        if self.totp is not None and not self.totp.is_disabled(user):
            trusted = self.totp.is_totp_cookie_valid_on_device(user, totp_cookie, now)
            if not trusted:
                if not totp_code:
                    return {
                        'success': False,
                        'message': 'TOTP code required',
                        'requires_totp': True,
                    }
                if not self.totp.authenticate_totp(user, totp_code, now):
                    return self._login_failed(email)

        self.credentials.record_login(user, now)
        self.set_current_user(user, now)

        cookie = None
        if remember_device and self.totp is not None and not self.totp.is_disabled(user):
            cookie = self.totp.update_totp_cookie(user, now)

        if self._events is not None:
            self._events.log_login(email, True, self.session.session_id)

        return {
            'success': True,
            'message': 'Login successful',
            'user_id': user.id,
            'totp_cookie': cookie,
        }

    def _login_failed(self, email: str) -> Dict:
        if self._events is not None:
            self._events.log_login(email, False)
        return {'success': False, 'message': LOGIN_FAILED_MESSAGE}

    def logout(self) -> None:
        """Forget the user and reissue the session."""
        user = self.current_user()
        self.session.reset()
        self._remember(None, GuardState.ANONYMOUS)
        if self._events is not None:
            self._events.log_logout(user.email if user else None)
