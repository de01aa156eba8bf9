"""
Event Logger Module

Security audit trail for the authentication kernel.

Features:
- Login / logout events
- TOTP verification, activation and remembered-device events
- Session rotation and device-mismatch events
- Password reset events
- Privacy-preserving user hashes (SHA-256 of the login handle)

Every event is kept in a bounded in-memory trail, handed to registered
callbacks and mirrored to the standard logging module under `zauth.audit`.
Passwords, TOTP codes, secrets and cookie values never enter an event.
"""

import hashlib
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Deque


# ============================================================================
# Constants
# ============================================================================

EVENT_VERSION = "1.0"
DEFAULT_MAX_EVENTS = 1000
AUDIT_LOGGER_NAME = "zauth.audit"

logger = logging.getLogger(__name__)


# ============================================================================
# Privacy Functions
# ============================================================================

def get_user_hash(handle: str) -> str:
    """
    Compute privacy-preserving hash of a login handle.

    Handles are never written to the audit trail in plaintext, while events
    for the same user can still be correlated.

    Args:
        handle: The plaintext login handle (email)

    Returns:
        Hex-encoded SHA-256 hash of the handle
    """
    return hashlib.sha256((handle or '').encode()).hexdigest()


# ============================================================================
# Event Types
# ============================================================================

class EventType(Enum):
    """Types of security events that can be logged."""

    # Authentication events
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    TOTP_VERIFIED = "totp_verified"
    TOTP_FAILED = "totp_failed"

    # Second factor lifecycle
    TOTP_ACTIVATED = "totp_activated"
    TOTP_COOKIE_ISSUED = "totp_cookie_issued"

    # Session events
    SESSION_ROTATED = "session_rotated"
    DEVICE_MISMATCH = "device_mismatch"
    ACCESS_DENIED = "access_denied"

    # Password reset events
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_CLEARED = "password_reset_cleared"


# Events worth a warning rather than info in the application log
_WARNING_EVENTS = {
    EventType.LOGIN_FAILED,
    EventType.TOTP_FAILED,
    EventType.DEVICE_MISMATCH,
    EventType.ACCESS_DENIED,
}


# ============================================================================
# Event Structure
# ============================================================================

@dataclass
class SecurityEvent:
    """
    Represents a security event to be logged.

    All user-identifying information is hashed for privacy.
    """
    event_type: EventType
    user_hash: str  # SHA-256 hash of the login handle
    timestamp: int  # Unix timestamp
    details: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> str:
        """Serialize the event as compact JSON."""
        return json.dumps({
            'version': EVENT_VERSION,
            'type': self.event_type.value,
            'user': self.user_hash[:16],
            'time': self.timestamp,
            'iso_time': datetime.fromtimestamp(self.timestamp).isoformat(),
            'details': self.details,
        }, separators=(',', ':'))

    @classmethod
    def from_record(cls, record: str) -> 'SecurityEvent':
        """Parse an event serialized by `to_record`."""
        data = json.loads(record)
        return cls(
            event_type=EventType(data['type']),
            user_hash=data['user'],
            timestamp=data['time'],
            details=data.get('details', {}),
        )


# ============================================================================
# Event Logger
# ============================================================================

class EventLogger:
    """
    In-memory security audit trail.

    Example:
        >>> events = EventLogger()
        >>> event = events.log_login("alice@example.com", success=True)
        >>> len(events.get_events_by_type(EventType.LOGIN_SUCCESS))
        1
    """

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS,
                 audit_logger: Optional[logging.Logger] = None):
        """
        Initialize the event logger.

        Args:
            max_events: Size of the in-memory trail; oldest events drop off
            audit_logger: Logger events are mirrored to (default `zauth.audit`)
        """
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._audit = audit_logger or logging.getLogger(AUDIT_LOGGER_NAME)
        self._callbacks: List[Callable[[SecurityEvent], None]] = []

    def _add_event(self, event: SecurityEvent) -> SecurityEvent:
        self._events.append(event)

        level = logging.WARNING if event.event_type in _WARNING_EVENTS else logging.INFO
        self._audit.log(level, event.to_record())

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                # a broken subscriber must not break the login path
                logger.exception("Audit callback %r failed", callback)

        return event

    def log(self, event_type: EventType, handle: Optional[str] = None,
            **details: Any) -> SecurityEvent:
        """
        Record an event.

        Args:
            event_type: What happened
            handle: Login handle of the user involved (hashed before storage)
            **details: Extra non-sensitive context

        Returns:
            The logged event
        """
        event = SecurityEvent(
            event_type=event_type,
            user_hash=get_user_hash(handle) if handle else "anonymous",
            timestamp=int(time.time()),
            details={k: v for k, v in details.items() if v is not None},
        )
        return self._add_event(event)

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    # ========================================================================
    # Authentication Events
    # ========================================================================

    def log_login(self, handle: str, success: bool,
                  session_id: Optional[str] = None) -> SecurityEvent:
        """
        Log a login attempt.

        Args:
            handle: The login handle (will be hashed)
            success: Whether login was successful
            session_id: Session the user was attached to (shortened)
        """
        return self.log(
            EventType.LOGIN_SUCCESS if success else EventType.LOGIN_FAILED,
            handle,
            session=session_id[:8] if session_id else None,
        )

    def log_logout(self, handle: Optional[str]) -> SecurityEvent:
        """Log a logout event."""
        return self.log(EventType.LOGOUT, handle)

    def log_totp(self, handle: str, success: bool, method: Optional[str] = None) -> SecurityEvent:
        """Log TOTP verification attempt."""
        return self.log(
            EventType.TOTP_VERIFIED if success else EventType.TOTP_FAILED,
            handle,
            method=method,
        )

    # ========================================================================
    # Queries
    # ========================================================================

    def get_all_events(self) -> List[SecurityEvent]:
        """All events still held in the trail, oldest first."""
        return list(self._events)

    def get_user_events(self, handle: str) -> List[SecurityEvent]:
        """Get all events for a specific login handle."""
        user_hash = get_user_hash(handle)
        return [e for e in self._events if e.user_hash == user_hash]

    def get_events_by_type(self, event_type: EventType) -> List[SecurityEvent]:
        """Get all events of a specific type."""
        return [e for e in self._events if e.event_type == event_type]

    def export_log(self) -> str:
        """Export the trail as a JSON array of event records."""
        return json.dumps([json.loads(e.to_record()) for e in self._events])

    def __len__(self) -> int:
        return len(self._events)
