"""
Credential Store Module

Password-based credentials for a user record.

Features:
- Argon2id password hashing (per-hash random salt, embedded parameters)
- Validation of login handle and password before anything is hashed
- Password reset nonces
- Login audit fields

Security considerations:
- Plaintext passwords only live on the transient record fields and are
  cleared once hashed
- An open reset code is invalidated by every successful ordinary login
- Unknown handles and wrong passwords are indistinguishable to the caller
"""

import logging
import secrets
import time
from typing import Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import VerificationError, InvalidHashError

from .records import UserRecord, UserStore
from ..integration.event_logger import EventLogger, EventType


logger = logging.getLogger(__name__)


# Argon2id configuration
# - time_cost: number of iterations
# - memory_cost: memory usage in KiB
# - parallelism: number of parallel threads
ARGON2_CONFIG = {
    'time_cost': 3,          # Number of iterations
    'memory_cost': 65536,    # 64 MiB memory
    'parallelism': 4,        # 4 parallel threads
    'hash_len': 32,          # 256-bit hash
    'salt_len': 16,          # 128-bit salt
    'type': Type.ID          # Argon2id (hybrid)
}

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 40

RESET_CODE_BYTES = 20        # 40 hex characters
RANDOM_PASSWORD_BYTES = 24   # 32 url-safe characters, inside the length limits


class CredentialHasher:
    """
    Password hasher using Argon2id.

    Example:
        >>> hasher = CredentialHasher()
        >>> digest = hasher.derive("longenough1")
        >>> hasher.verify("longenough1", digest)
        True
    """

    def __init__(self, **kwargs):
        """
        Args:
            **kwargs: Override default Argon2 parameters
        """
        config = ARGON2_CONFIG.copy()
        config.update(kwargs)
        self._hasher = PasswordHasher(**config)
        self._dummy_hash = None

    def derive(self, password: str) -> str:
        """
        Derive an opaque hash from a password.

        The salt is generated per call and stored inside the returned string
        together with the cost parameters.
        """
        return self._hasher.hash(password)

    def verify(self, password: str, hash_str: Optional[str]) -> bool:
        """Check a password against a stored hash in constant time."""
        if not hash_str:
            return False
        try:
            return self._hasher.verify(hash_str, password)
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hash_str: str) -> bool:
        """True when the hash was produced with other cost parameters."""
        try:
            return self._hasher.check_needs_rehash(hash_str)
        except InvalidHashError:
            return True

    def burn(self, password: str) -> None:
        """Spend the time of one verification without a real hash to check."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(password, self._dummy_hash)


def validate_password(password: Optional[str], confirmation: Optional[str]) -> List[str]:
    """
    Validate a candidate password against its confirmation.

    Returns:
        List of error messages, empty when the password is acceptable
    """
    errors = []
    password = password or ''

    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"is too short (minimum is {PASSWORD_MIN_LENGTH} characters)")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"is too long (maximum is {PASSWORD_MAX_LENGTH} characters)")
    if confirmation is not None and password != confirmation:
        errors.append("doesn't match confirmation")

    return errors


def generate_reset_code() -> str:
    """Fresh, unpredictable password reset nonce."""
    return secrets.token_hex(RESET_CODE_BYTES)


class CredentialStore:
    """
    Derives, verifies and rotates password credentials of user records.

    `save` is the single normalize-then-persist pipeline: stage a random
    password for brand new records, validate, hash, let the TOTP manager
    normalize its fields, then hand the record to the user store.

    Example:
        >>> creds = CredentialStore(InMemoryUserStore())
        >>> user = UserRecord(email="a@example.com", password="longenough1",
        ...                   password_confirmation="longenough1")
        >>> creds.save(user)['success']
        True
        >>> creds.authenticate("a@example.com", "longenough1").id == user.id
        True
    """

    def __init__(self, users: UserStore, hasher: Optional[CredentialHasher] = None,
                 totp=None, event_logger: Optional[EventLogger] = None):
        """
        Args:
            users: Durable record store
            hasher: Password hasher (Argon2id defaults if None)
            totp: Optional TOTPManager whose normalization runs on every save
            event_logger: Optional audit trail
        """
        self._users = users
        self._hasher = hasher or CredentialHasher()
        self._totp = totp
        self._events = event_logger

    @property
    def users(self) -> UserStore:
        return self._users

    @property
    def hasher(self) -> CredentialHasher:
        return self._hasher

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, email: str, password: str) -> Optional[UserRecord]:
        """
        Authenticate a user by login handle and plaintext password.

        Args:
            email: Login handle
            password: Candidate password

        Returns:
            The user record, or None for an unknown handle or wrong password
        """
        user = self._users.find_by_email(email)
        if user is None:
            self._hasher.burn(password or '')
            return None

        if not self.verify(user, password):
            return None

        if self._hasher.needs_rehash(user.password_hash):
            logger.info("Upgrading password hash parameters for user %s", user.id)
            user.password_hash = self._hasher.derive(password)
            self.persist(user)

        # a pending reset request must not outlive a successful login
        if user.password_reset_code is not None:
            self.clear_password_reset_code(user, persist=True)

        return user

    def verify(self, user: UserRecord, password: Optional[str]) -> bool:
        """True when `password` matches the user's stored hash."""
        if not password:
            return False
        return self._hasher.verify(password, user.password_hash)

    def derive(self, password: str) -> str:
        """Derive an opaque hash from a password."""
        return self._hasher.derive(password)

    def record_login(self, user: UserRecord, timestamp: float = None) -> UserRecord:
        """Update the login audit fields after a successful authentication."""
        user.last_login_at = time.time() if timestamp is None else timestamp
        user.login_count = (user.login_count or 0) + 1
        return self.persist(user)

    # ------------------------------------------------------------------
    # Validation and persistence
    # ------------------------------------------------------------------

    def is_password_required(self, user: UserRecord) -> bool:
        """Whether password length/confirmation rules apply to this save."""
        return (
            not user.password_hash
            or bool(user.password)
            or bool(user.password_reset_code)
        )

    def validate(self, user: UserRecord) -> Dict[str, List[str]]:
        """
        Validate a record before it is persisted.

        Returns:
            Dict of field name -> error messages; empty when valid
        """
        errors: Dict[str, List[str]] = {}

        if not user.email:
            errors.setdefault('email', []).append("can't be blank")
        else:
            other = self._users.find_by_email(user.email)
            if other is not None and other.id != user.id:
                errors.setdefault('email', []).append("has already been taken")

        if self.is_password_required(user):
            password_errors = validate_password(user.password, user.password_confirmation)
            if password_errors:
                errors['password'] = password_errors

        return errors

    def save(self, user: UserRecord, validate: bool = True) -> Dict:
        """
        Normalize and persist a record.

        Args:
            user: Record to save
            validate: Run validation first; nothing is written when it fails

        Returns:
            Dict with 'success' and 'errors'
        """
        self.init_password(user)

        if validate:
            errors = self.validate(user)
            if errors:
                logger.debug("Validation failed for user %s: %s", user.id, sorted(errors))
                return {'success': False, 'errors': errors}

        self.encrypt_password(user)
        self.persist(user)
        return {'success': True, 'errors': {}}

    def change_password(self, user: UserRecord, password: str, confirmation: str) -> Dict:
        """Stage a new password and save it with validation."""
        user.password = password
        user.password_confirmation = confirmation
        return self.save(user)

    def init_password(self, user: UserRecord) -> None:
        """Stage a random password on a record that has never had one."""
        if not user.password and not user.password_hash:
            self.create_random_password(user)

    def create_random_password(self, user: UserRecord) -> None:
        user.password = user.password_confirmation = secrets.token_urlsafe(RANDOM_PASSWORD_BYTES)

    def encrypt_password(self, user: UserRecord) -> None:
        """Hash a staged password into `password_hash` and drop the plaintext."""
        if not user.password:
            return
        user.password_hash = self._hasher.derive(user.password)
        user.password = None
        user.password_confirmation = None

    def persist(self, user: UserRecord) -> UserRecord:
        """
        Write the record without validating or hashing.

        Only TOTP normalization runs; a staged password is left unhashed and
        the store drops it.
        """
        if self._totp is not None:
            self._totp.normalize(user)
        return self._users.save(user)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def create_password_reset_code(self, user: UserRecord, persist: bool = False) -> str:
        """
        Open a password reset request.

        Args:
            user: Record to update
            persist: Write immediately, bypassing validation

        Returns:
            The new reset code
        """
        user.password_reset_code = generate_reset_code()
        if persist:
            self.persist(user)
        if self._events is not None:
            self._events.log(EventType.PASSWORD_RESET_REQUESTED, user.email)
        return user.password_reset_code

    def clear_password_reset_code(self, user: UserRecord, persist: bool = False) -> None:
        """Close any open password reset request."""
        had_code = user.password_reset_code is not None
        user.password_reset_code = None
        if persist:
            self.persist(user)
        if had_code and self._events is not None:
            self._events.log(EventType.PASSWORD_RESET_CLEARED, user.email)
