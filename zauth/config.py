import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import yaml

ROOT_PATH = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_FILE_PATH = os.environ.get("ZAUTH_CONFIG", os.path.join(ROOT_PATH, "zauth.yaml"))

# deployment tiers where only the most recent login of a user stays trusted
SINGLE_DEVICE_TIERS = ("staging", "production")


def load_config_data(path: Optional[str] = None) -> dict:
    path = path or CONFIG_FILE_PATH
    if not os.path.exists(path):
        return dict()
    with open(path, "r") as r_file:
        return yaml.safe_load(r_file) or dict()


@dataclass
class AuthConfig:
    TIER: str = "development"
    SINGLE_DEVICE_SESSIONS: Optional[bool] = None
    SESSION_IDLE_MINUTES: int = 60
    TOTP_ISSUER_NAME: Optional[str] = None
    TOTP_SECRET_LENGTH: int = 10
    TOTP_COOKIE_DAYS: int = 30
    EMAIL_DRIFT_BEHIND: int = 120
    LOG_LEVEL: str = "INFO"

    def __post_init__(self):
        if self.SINGLE_DEVICE_SESSIONS is None:
            self.SINGLE_DEVICE_SESSIONS = self.TIER in SINGLE_DEVICE_TIERS
        self.SINGLE_DEVICE_SESSIONS = bool(self.SINGLE_DEVICE_SESSIONS)

    @classmethod
    def for_tier(cls, tier: str, **overrides) -> "AuthConfig":
        return cls(TIER=tier, **overrides)

    @classmethod
    def load(cls, path: Optional[str] = None) -> "AuthConfig":
        data = load_config_data(path)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def session_idle_seconds(self) -> int:
        return int(self.SESSION_IDLE_MINUTES) * 60

    @property
    def totp_cookie_seconds(self) -> int:
        return int(self.TOTP_COOKIE_DAYS) * 24 * 60 * 60


def configure_logging(config: Optional[AuthConfig] = None) -> None:
    """Route `zauth` and `zauth.audit` records to stderr at the configured level."""
    config = config or AuthConfig.load()
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("zauth").setLevel(config.LOG_LEVEL)
