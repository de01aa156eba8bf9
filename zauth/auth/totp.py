"""
TOTP (Time-based One-Time Password) Second Factor

Implements RFC 6238 second-factor enrollment and verification for a user
record, on top of pyotp.

Features:
- Secret provisioning, plus a staged candidate secret for no-downtime rotation
- App-delivered and email-delivered codes with asymmetric drift tolerance
- Remembered-device trust cookie
- Provisioning URIs and QR codes for authenticator apps

Used with:
- Google Authenticator
- Authy
- Microsoft Authenticator
- Any RFC 6238 compliant authenticator
"""

import base64
import hashlib
import hmac
import io
import logging
import secrets
import time
from enum import Enum
from typing import Optional, Union

import pyotp
import qrcode
from pyotp.utils import build_uri, strings_equal

from .errors import ConfigurationError
from .records import UserRecord, UserStore
from ..integration.event_logger import EventLogger, EventType


logger = logging.getLogger(__name__)


# TOTP configuration (RFC 6238 defaults)
TOTP_DIGITS = 6           # Number of digits in OTP
TOTP_TIME_STEP = 30       # Time step in seconds
TOTP_SECRET_BYTES = 10    # 10 random bytes encode to 16 base32 characters

# Email delivery is slow, so email codes stay valid a while after their step.
# Codes from the future are never accepted.
APP_DRIFT_BEHIND = 0
EMAIL_DRIFT_BEHIND = 120

TOTP_COOKIE_LIFETIME = 30 * 24 * 60 * 60  # 30 days


class TotpMethod(str, Enum):
    """How a user receives second-factor codes."""
    APP = 'app'
    EMAIL = 'email'
    NONE = 'none'

    @classmethod
    def parse(cls, value: Union[str, 'TotpMethod', None]) -> 'TotpMethod':
        if value is None:
            return cls.NONE
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown TOTP method {value!r}, expected one of "
                f"{', '.join(m.value for m in cls)}"
            ) from None


ENABLED_METHODS = (TotpMethod.APP.value, TotpMethod.EMAIL.value)


def generate_secret(length: int = TOTP_SECRET_BYTES) -> str:
    """
    Generate a random base32 secret.

    Args:
        length: Secret length in bytes before encoding

    Returns:
        Base32-encoded string (no padding)
    """
    return base64.b32encode(secrets.token_bytes(length)).decode('ascii').rstrip('=')


def get_time_counter(timestamp: float = None, time_step: int = TOTP_TIME_STEP) -> int:
    """Time counter T = floor(time / time_step)."""
    if timestamp is None:
        timestamp = time.time()
    return int(timestamp) // time_step


def _totp(secret: str) -> pyotp.TOTP:
    return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_TIME_STEP)


def totp_code(secret: str, timestamp: float = None) -> str:
    """Code for the time step containing `timestamp` (now if None)."""
    return _totp(secret).generate_otp(get_time_counter(timestamp))


def verify_totp(secret: Optional[str], code,
                timestamp: float = None,
                drift_behind: int = 0,
                drift_ahead: int = 0) -> bool:
    """
    Verify a TOTP code with drift tolerance.

    Every time step between `timestamp - drift_behind` and
    `timestamp + drift_ahead` is checked.

    Args:
        secret: Base32 secret; a missing secret never verifies
        code: Code to verify
        timestamp: Unix timestamp (uses current time if None)
        drift_behind: Seconds of past codes still accepted
        drift_ahead: Seconds of future codes accepted

    Returns:
        True if code is valid, False otherwise
    """
    if not secret or code is None:
        return False

    code = str(code).replace(' ', '').strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False

    if timestamp is None:
        timestamp = time.time()

    generator = _totp(secret)
    first = get_time_counter(timestamp - drift_behind)
    last = get_time_counter(timestamp + drift_ahead)

    for counter in range(first, last + 1):
        if strings_equal(code, generator.generate_otp(counter)):
            return True
    return False


class TOTPManager:
    """
    Second-factor state of user records.

    The manager owns the TOTP fields of a record. Writes it makes on its own
    (activation, cookie issuance) are persisted straight to the user store
    without validation, so they succeed even when other fields of the record
    currently fail validation.

    Example:
        >>> totp = TOTPManager(InMemoryUserStore(), issuer_name="Example")
        >>> user = UserRecord(email="a@example.com")
        >>> candidate = totp.generate_new_secret(user)
        >>> totp.authenticate_new_totp(user, totp_code(candidate))
        True
        >>> totp.activate_totp(user, "app")
        >>> user.totp_secret_key == candidate
        True
    """

    def __init__(self, users: UserStore,
                 issuer_name: Optional[str] = None,
                 secret_length: int = TOTP_SECRET_BYTES,
                 cookie_lifetime: int = TOTP_COOKIE_LIFETIME,
                 email_drift_behind: int = EMAIL_DRIFT_BEHIND,
                 cookie_key: Optional[bytes] = None,
                 event_logger: Optional[EventLogger] = None):
        """
        Args:
            users: Durable record store
            issuer_name: Service name shown in authenticator apps
            secret_length: Random bytes per generated secret
            cookie_lifetime: Remembered-device validity in seconds
            email_drift_behind: Seconds an email-delivered code stays valid
            cookie_key: Server-side HMAC key for cookies (random if None)
            event_logger: Optional audit trail
        """
        self._users = users
        self._issuer_name = issuer_name
        self._secret_length = secret_length
        self._cookie_lifetime = cookie_lifetime
        self._email_drift_behind = email_drift_behind
        self._cookie_key = cookie_key or secrets.token_bytes(32)
        self._events = event_logger

    @classmethod
    def from_config(cls, users: UserStore, config, **kwargs) -> 'TOTPManager':
        """Build a manager from an AuthConfig."""
        return cls(
            users,
            issuer_name=config.TOTP_ISSUER_NAME,
            secret_length=config.TOTP_SECRET_LENGTH,
            cookie_lifetime=config.totp_cookie_seconds,
            email_drift_behind=config.EMAIL_DRIFT_BEHIND,
            **kwargs
        )

    @property
    def issuer_name(self) -> str:
        if not self._issuer_name:
            raise ConfigurationError(
                "TOTPManager requires an issuer name; pass issuer_name= "
                "or set TOTP_ISSUER_NAME in the configuration"
            )
        return self._issuer_name

    def random_secret(self) -> str:
        return generate_secret(self._secret_length)

    # ------------------------------------------------------------------
    # Record normalization
    # ------------------------------------------------------------------

    def normalize(self, user: UserRecord) -> None:
        """
        Bring the TOTP fields in line before the record is written.

        A disabled method purges all TOTP material. A record that was never
        persisted receives a seed secret afterwards.
        """
        if self.is_disabled(user):
            user.totp_secret_key = None
            user.totp_new_secret_key = None
            user.totp_cookie = None
            user.totp_cookie_expiration = None

        if user.is_new_record and not user.totp_secret_key:
            self.regenerate_secret(user)

    def _persist(self, user: UserRecord) -> UserRecord:
        self.normalize(user)
        return self._users.save(user)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def regenerate_secret(self, user: UserRecord) -> str:
        """Replace the active secret."""
        user.totp_secret_key = self.random_secret()
        return user.totp_secret_key

    def generate_new_secret(self, user: UserRecord, force: bool = False) -> str:
        """
        Stage a rotation-candidate secret next to the active one.

        The candidate is kept when already staged unless `force` is set.
        """
        if force or not user.totp_new_secret_key:
            user.totp_new_secret_key = self.random_secret()
        return user.totp_new_secret_key

    def activate_totp(self, user: UserRecord, method, commit_new_secret: bool = True) -> None:
        """
        Set the delivery method and persist.

        Args:
            user: Record to update
            method: 'app', 'email' or 'none'
            commit_new_secret: Promote the staged candidate to active

        Raises:
            ValueError: For an unknown method
        """
        method = TotpMethod.parse(method)
        user.totp_method = method.value

        if commit_new_secret and user.totp_new_secret_key:
            user.totp_secret_key = user.totp_new_secret_key
            user.totp_new_secret_key = None

        # email codes still need a seed secret
        if method is TotpMethod.EMAIL and not user.totp_secret_key:
            self.regenerate_secret(user)

        self._persist(user)
        logger.info("TOTP method for user %s set to %s", user.id, method.value)
        if self._events is not None:
            self._events.log(EventType.TOTP_ACTIVATED, user.email, method=method.value)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def drift_behind(self, user: UserRecord) -> int:
        return self._email_drift_behind if self.is_by_email(user) else APP_DRIFT_BEHIND

    def authenticate_totp(self, user: UserRecord, code, timestamp: float = None) -> bool:
        """Verify a code against the active secret."""
        valid = verify_totp(user.totp_secret_key, code, timestamp,
                            drift_behind=self.drift_behind(user))
        if self._events is not None:
            self._events.log_totp(user.email, valid, method=user.totp_method)
        return valid

    def authenticate_new_totp(self, user: UserRecord, code, timestamp: float = None) -> bool:
        """Verify a code against the staged candidate secret."""
        valid = verify_totp(user.totp_new_secret_key, code, timestamp,
                            drift_behind=self.drift_behind(user))
        if self._events is not None:
            self._events.log_totp(user.email, valid, method=user.totp_method)
        return valid

    def current_code(self, user: UserRecord, timestamp: float = None) -> Optional[str]:
        """Current code of the active secret, for delivery by email."""
        if not user.totp_secret_key:
            return None
        return totp_code(user.totp_secret_key, timestamp)

    # ------------------------------------------------------------------
    # Remembered-device cookie
    # ------------------------------------------------------------------

    def _cookie_digest(self, user: UserRecord, expiration: float) -> str:
        data = f"{user.id}--{expiration}"
        return hmac.new(self._cookie_key, data.encode(), hashlib.sha256).hexdigest()

    def update_totp_cookie(self, user: UserRecord, timestamp: float = None) -> str:
        """
        Issue a new remembered-device token and persist it.

        Returns:
            The token to hand to the client as a cookie
        """
        now = time.time() if timestamp is None else timestamp
        user.totp_cookie_expiration = now + self._cookie_lifetime
        user.totp_cookie = self._cookie_digest(user, user.totp_cookie_expiration)
        self._persist(user)
        if self._events is not None:
            self._events.log(EventType.TOTP_COOKIE_ISSUED, user.email)
        return user.totp_cookie

    def is_totp_cookie_valid_on_device(self, user: UserRecord, cookie_value: Optional[str],
                                       timestamp: float = None) -> bool:
        """True iff the value matches the stored cookie and it has not expired."""
        if not cookie_value or not user.totp_cookie:
            return False
        return (
            hmac.compare_digest(str(cookie_value), user.totp_cookie)
            and not self.is_totp_cookie_expired(user, timestamp)
        )

    def is_totp_cookie_expired(self, user: UserRecord, timestamp: float = None) -> bool:
        """A missing cookie or missing expiry counts as expired."""
        if not user.totp_cookie or user.totp_cookie_expiration is None:
            return True
        now = time.time() if timestamp is None else timestamp
        return user.totp_cookie_expiration < now

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def _account(self, user: UserRecord, account: Optional[str]) -> str:
        return account or getattr(user, 'email', None) or ''

    def _provisioning_uri(self, secret: Optional[str], account: str) -> str:
        if not secret:
            raise ValueError("No TOTP secret to provision")
        return build_uri(
            secret,
            account,
            issuer=self.issuer_name,
            digits=TOTP_DIGITS,
            period=TOTP_TIME_STEP,
        )

    def provisioning_uri(self, user: UserRecord, account: Optional[str] = None) -> str:
        """otpauth:// URI for the active secret."""
        return self._provisioning_uri(user.totp_secret_key, self._account(user, account))

    def new_provisioning_uri(self, user: UserRecord, account: Optional[str] = None) -> str:
        """otpauth:// URI for the staged candidate secret."""
        return self._provisioning_uri(user.totp_new_secret_key, self._account(user, account))

    def provisioning_qr(self, user: UserRecord, account: Optional[str] = None,
                        new_secret: bool = False) -> str:
        """ASCII QR code of a provisioning URI, for terminals and plain-text pages."""
        uri = (self.new_provisioning_uri if new_secret else self.provisioning_uri)(user, account)

        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(uri)
        qr.make(fit=True)

        f = io.StringIO()
        qr.print_ascii(out=f)
        return f.getvalue()

    # ------------------------------------------------------------------
    # Method predicates
    # ------------------------------------------------------------------

    def is_disabled(self, user: UserRecord) -> bool:
        return user.totp_method not in ENABLED_METHODS

    def is_by_email(self, user: UserRecord) -> bool:
        return user.totp_method == TotpMethod.EMAIL.value

    def is_by_app(self, user: UserRecord) -> bool:
        return user.totp_method == TotpMethod.APP.value
