from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable

from dotenv import load_dotenv


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class EngineConfig:
    enable_optimistic_updates: bool = True
    sync_interval_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0

    @property
    def stale_after_seconds(self) -> float:
        return self.sync_interval_seconds


@dataclass(frozen=True)
class GatewayConfig:
    api_base_url: str
    timeout_seconds: float = 10.0
    get_retries: int = 2
    retry_backoff_seconds: float = 0.3
    verify_ssl: bool = True


def _require(values: dict[str, str | None], required: Iterable[str]) -> None:
    missing = [key for key in required if not values.get(key)]
    if missing:
        raise ConfigError(f"Missing required config values: {', '.join(missing)}")


def _coerce_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _read_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {name}: expected a number, got {raw!r}") from exc


def _read_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {name}: expected an integer, got {raw!r}") from exc


def _validate(condition: bool, message: str) -> None:
    if not condition:
        raise ConfigError(message)


def load_engine_config(env_file: str | None = None) -> EngineConfig:
    """Load engine behaviour settings from the environment with optional .env override."""
    load_dotenv(env_file)

    sync_interval_seconds = _read_float("TABLESYNC_SYNC_INTERVAL_SECONDS", "30")
    _validate(
        sync_interval_seconds > 0,
        f"Invalid TABLESYNC_SYNC_INTERVAL_SECONDS: expected > 0, got {sync_interval_seconds}",
    )

    max_retries = _read_int("TABLESYNC_MAX_RETRIES", "3")
    _validate(max_retries >= 1, f"Invalid TABLESYNC_MAX_RETRIES: expected >= 1, got {max_retries}")

    retry_base_delay_seconds = _read_float("TABLESYNC_RETRY_BASE_DELAY_SECONDS", "1.0")
    _validate(
        retry_base_delay_seconds >= 0,
        (
            "Invalid TABLESYNC_RETRY_BASE_DELAY_SECONDS: "
            f"expected >= 0, got {retry_base_delay_seconds}"
        ),
    )

    return EngineConfig(
        enable_optimistic_updates=_coerce_bool(os.getenv("TABLESYNC_OPTIMISTIC_UPDATES"), True),
        sync_interval_seconds=sync_interval_seconds,
        max_retries=max_retries,
        retry_base_delay_seconds=retry_base_delay_seconds,
    )


def load_gateway_config(env_file: str | None = None) -> GatewayConfig:
    """Load persistence API connection settings from the environment."""
    load_dotenv(env_file)

    api_base_url = (os.getenv("TABLESYNC_API_BASE_URL") or "").strip()
    _require({"TABLESYNC_API_BASE_URL": api_base_url}, ["TABLESYNC_API_BASE_URL"])

    timeout_seconds = _read_float("TABLESYNC_TIMEOUT_SECONDS", "10")
    _validate(
        timeout_seconds > 0,
        f"Invalid TABLESYNC_TIMEOUT_SECONDS: expected > 0, got {timeout_seconds}",
    )

    get_retries = _read_int("TABLESYNC_GET_RETRIES", "2")
    _validate(get_retries >= 0, f"Invalid TABLESYNC_GET_RETRIES: expected >= 0, got {get_retries}")

    retry_backoff_seconds = _read_float("TABLESYNC_RETRY_BACKOFF_SECONDS", "0.3")
    _validate(
        retry_backoff_seconds >= 0,
        f"Invalid TABLESYNC_RETRY_BACKOFF_SECONDS: expected >= 0, got {retry_backoff_seconds}",
    )

    return GatewayConfig(
        api_base_url=api_base_url.rstrip("/"),
        timeout_seconds=timeout_seconds,
        get_retries=get_retries,
        retry_backoff_seconds=retry_backoff_seconds,
        verify_ssl=_coerce_bool(os.getenv("TABLESYNC_VERIFY_SSL"), True),
    )
