from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv

DEFAULT_API_BASE_URL = "https://traewelling.de/api/v1"


class ConfigError(ValueError):
    """Invalid exporter configuration."""


@dataclass(frozen=True)
class AccountConfig:
    """One Traewelling user polled by the exporter."""

    account_id: str
    label: str
    token: Optional[str] = None
    poll_interval_seconds: Optional[float] = None


@dataclass(frozen=True)
class Settings:
    api_base_url: str
    api_token: Optional[str]
    accounts: Tuple[AccountConfig, ...]

    listen_host: str
    listen_port: int

    poll_interval_seconds: float
    max_pages_per_cycle: int
    max_backoff_seconds: float
    backoff_jitter: bool
    request_timeout_seconds: float
    shutdown_timeout_seconds: float

    log_level: str

    def interval_for(self, account: AccountConfig) -> float:
        if account.poll_interval_seconds is not None:
            return account.poll_interval_seconds
        return self.poll_interval_seconds

    def token_for(self, account: AccountConfig) -> Optional[str]:
        return account.token or self.api_token


def _token_env_name(account_id: str) -> str:
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in account_id)
    return f"TRAEWELLING_TOKEN_{cleaned.upper()}"


def parse_accounts(raw: str) -> List[AccountConfig]:
    """Parse ``username[:label[:interval]]`` entries separated by commas.

    A per-account token is read from ``TRAEWELLING_TOKEN_<USERNAME>`` when set.
    """
    accounts: List[AccountConfig] = []
    seen = set()
    seen_labels = set()
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue

        parts = [p.strip() for p in entry.split(":")]
        if len(parts) > 3 or not parts[0]:
            raise ConfigError(f"Invalid account entry: {entry!r}")

        account_id = parts[0]
        label = parts[1] if len(parts) > 1 and parts[1] else account_id

        interval: Optional[float] = None
        if len(parts) == 3 and parts[2]:
            try:
                interval = float(parts[2])
            except ValueError:
                raise ConfigError(f"Invalid poll interval for account {account_id!r}: {parts[2]!r}")
            if interval <= 0:
                raise ConfigError(f"Poll interval for account {account_id!r} must be > 0")

        if account_id in seen:
            raise ConfigError(f"Duplicate account: {account_id!r}")
        if label in seen_labels:
            raise ConfigError(f"Duplicate account label: {label!r}")
        seen.add(account_id)
        seen_labels.add(label)

        accounts.append(
            AccountConfig(
                account_id=account_id,
                label=label,
                token=os.getenv(_token_env_name(account_id)) or None,
                poll_interval_seconds=interval,
            )
        )
    return accounts


def _get_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


def _get_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def validate_settings(settings: Settings) -> None:
    errors: List[str] = []

    if not settings.accounts:
        errors.append("TRAEWELLING_ACCOUNTS must name at least one account")
    if settings.poll_interval_seconds <= 0:
        errors.append(f"POLL_INTERVAL_SECONDS must be > 0, got {settings.poll_interval_seconds}")
    if settings.max_pages_per_cycle < 1:
        errors.append(f"MAX_PAGES_PER_CYCLE must be >= 1, got {settings.max_pages_per_cycle}")
    if settings.max_backoff_seconds <= 0:
        errors.append(f"MAX_BACKOFF_SECONDS must be > 0, got {settings.max_backoff_seconds}")
    if settings.request_timeout_seconds <= 0:
        errors.append(f"REQUEST_TIMEOUT_SECONDS must be > 0, got {settings.request_timeout_seconds}")
    if settings.shutdown_timeout_seconds < 0:
        errors.append(f"SHUTDOWN_TIMEOUT_SECONDS must be >= 0, got {settings.shutdown_timeout_seconds}")
    if not (1 <= settings.listen_port <= 65535):
        errors.append(f"EXPORTER_PORT must be between 1 and 65535, got {settings.listen_port}")

    if errors:
        raise ConfigError("Configuration errors:\n  " + "\n  ".join(errors))


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("EXPORTER_ENV_FILE", ".env")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    settings = Settings(
        api_base_url=os.getenv("TRAEWELLING_API", DEFAULT_API_BASE_URL).rstrip("/"),
        api_token=os.getenv("TRAEWELLING_TOKEN") or None,
        accounts=tuple(parse_accounts(os.getenv("TRAEWELLING_ACCOUNTS", ""))),
        listen_host=os.getenv("EXPORTER_HOST", "0.0.0.0"),
        listen_port=_get_int("EXPORTER_PORT", "3000"),
        poll_interval_seconds=_get_float("POLL_INTERVAL_SECONDS", "60"),
        max_pages_per_cycle=_get_int("MAX_PAGES_PER_CYCLE", "10"),
        max_backoff_seconds=_get_float("MAX_BACKOFF_SECONDS", "900"),
        backoff_jitter=os.getenv("BACKOFF_JITTER", "0").strip().lower() in ("1", "true", "yes", "on"),
        request_timeout_seconds=_get_float("REQUEST_TIMEOUT_SECONDS", "10"),
        shutdown_timeout_seconds=_get_float("SHUTDOWN_TIMEOUT_SECONDS", "10"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
    validate_settings(settings)
    return settings
