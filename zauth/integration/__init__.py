# Integration Module
"""
Security audit logging for the authentication kernel.

All events are logged with privacy-preserving user hashes.
"""

from .event_logger import (
    EventType,
    SecurityEvent,
    EventLogger,
    get_user_hash,
)

__all__ = [
    'EventType',
    'SecurityEvent',
    'EventLogger',
    'get_user_hash',
]
