# Authentication Module
"""
Authentication kernel:
- Credential store (Argon2id password hashing, reset codes) - credentials.py
- Session guard (current user, single-device sessions, idle rotation) - session_guard.py
- TOTP second factor (RFC 6238, remembered devices) - totp.py

Security features:
- Argon2id for password hashing (PHC winner)
- Constant-time comparison for codes and cookies
- Cryptographically secure random secrets, nonces and session ids
- Generic login failures that do not reveal which factor failed
"""

from .errors import ConfigurationError

from .records import (
    UserRecord,
    UserStore,
    InMemoryUserStore,
)

from .credentials import (
    CredentialHasher,
    CredentialStore,
    validate_password,
    generate_reset_code,
)

from .totp import (
    TOTPManager,
    TotpMethod,
    generate_secret,
    totp_code,
    verify_totp,
)

from .session_guard import (
    AuthBinding,
    GuardState,
    MemorySession,
    Resolution,
    Responder,
    ResponseRecorder,
    SessionGuard,
    SessionStore,
)

__all__ = [
    'ConfigurationError',
    # Records
    'UserRecord',
    'UserStore',
    'InMemoryUserStore',
    # Credentials
    'CredentialHasher',
    'CredentialStore',
    'validate_password',
    'generate_reset_code',
    # TOTP
    'TOTPManager',
    'TotpMethod',
    'generate_secret',
    'totp_code',
    'verify_totp',
    # Sessions
    'AuthBinding',
    'GuardState',
    'MemorySession',
    'Resolution',
    'Responder',
    'ResponseRecorder',
    'SessionGuard',
    'SessionStore',
]
