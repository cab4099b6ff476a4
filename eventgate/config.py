import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError


def _flag(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    signing_secret: str
    redis_url: Optional[str] = None
    # When false only signed payloads may drive check-in/check-out.
    allow_unauthenticated_scans: bool = True
    scan_rate_limit_per_minute: int = 60


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    secret = environ.get("TICKET_SIGNING_SECRET", "").strip()
    if not secret:
        raise ConfigError("TICKET_SIGNING_SECRET must be set; refusing to sign tickets with a default key")

    try:
        rate = int(environ.get("SCAN_RATE_LIMIT_PER_MINUTE", "60"))
    except ValueError:
        raise ConfigError("SCAN_RATE_LIMIT_PER_MINUTE must be an integer")

    return Settings(
        signing_secret=secret,
        redis_url=environ.get("REDIS_URL") or None,
        allow_unauthenticated_scans=_flag(environ.get("ALLOW_UNAUTHENTICATED_SCANS"), True),
        scan_rate_limit_per_minute=rate,
    )
