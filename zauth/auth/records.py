"""
User Record Module

The single record type the credential store, session guard and TOTP manager
all operate on, plus the durable-record contract the host application
implements (find by handle, find by id, save).

The transient `password` / `password_confirmation` fields only live on the
in-memory object; stores never persist them.
"""

import copy
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional


TRANSIENT_FIELDS = ('password', 'password_confirmation')


@dataclass
class UserRecord:
    """Authenticatable user."""
    email: str = ''
    id: Optional[str] = None
    password_hash: Optional[str] = None
    password_reset_code: Optional[str] = None
    current_session_id: Optional[str] = None
    last_login_at: Optional[float] = None
    login_count: int = 0
    totp_secret_key: Optional[str] = None
    totp_new_secret_key: Optional[str] = None
    totp_method: Optional[str] = None
    totp_cookie: Optional[str] = None
    totp_cookie_expiration: Optional[float] = None
    # transient, never persisted
    password: Optional[str] = field(default=None, repr=False, compare=False)
    password_confirmation: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def is_new_record(self) -> bool:
        return self.id is None


class UserStore(ABC):
    """
    Durable record contract.

    `model_class` is the record type this store hands out; the session guard
    uses it to refuse records belonging to another auth domain.
    """

    model_class = UserRecord

    @abstractmethod
    def find_by_email(self, email: str) -> Optional[UserRecord]:
        """Look a record up by its login handle."""

    @abstractmethod
    def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        """Look a record up by its identifier."""

    @abstractmethod
    def save(self, user: UserRecord) -> UserRecord:
        """Persist `user`, assigning an id on first save."""


class InMemoryUserStore(UserStore):
    """
    Dict-backed store.

    Records are copied on the way in and on the way out, so every find
    behaves like a reload from durable storage.

    Example:
        >>> store = InMemoryUserStore()
        >>> user = store.save(UserRecord(email="a@example.com"))
        >>> store.find_by_id(user.id).email
        'a@example.com'
    """

    def __init__(self, model_class: type = UserRecord):
        self.model_class = model_class
        self._records: Dict[str, UserRecord] = {}

    def _load(self, record: Optional[UserRecord]) -> Optional[UserRecord]:
        return copy.deepcopy(record) if record is not None else None

    def find_by_email(self, email: str) -> Optional[UserRecord]:
        for record in self._records.values():
            if record.email == email:
                return self._load(record)
        return None

    def find_by_id(self, user_id: str) -> Optional[UserRecord]:
        if user_id is None:
            return None
        return self._load(self._records.get(str(user_id)))

    def save(self, user: UserRecord) -> UserRecord:
        if user.id is None:
            user.id = secrets.token_hex(16)
        stored = copy.deepcopy(user)
        for name in TRANSIENT_FIELDS:
            setattr(stored, name, None)
        self._records[user.id] = stored
        return user

    def __len__(self) -> int:
        return len(self._records)
