# File: evbooking/config.py
"""
Application settings for the EV Charging Booking Platform

Settings are resolved in three layers, later layers winning:
1. Defaults declared on the Settings dataclass
2. An optional YAML file
3. Environment variables prefixed with EVBOOKING_ (e.g. EVBOOKING_DATABASE_URL)
"""

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional
import logging
import os

import yaml

from .domain.aggregates import BookingPolicies
from .domain.exceptions import ConfigurationError, InvalidConfiguration

ENV_PREFIX = "EVBOOKING_"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Tunable rules and connection strings"""
    database_url: str = "sqlite:///./evbooking.db"
    redis_url: Optional[str] = None
    redis_channel: str = "evbooking.bookings"

    # Booking rules
    max_advance_days: int = 7
    modification_cutoff_hours: int = 12
    min_duration_minutes: int = 30
    max_duration_minutes: int = 240
    duration_step_minutes: int = 30

    # Slot generation
    slot_horizon_days: int = 8

    # Contention handling
    conflict_retry_backoff_ms: int = 50
    sqlite_busy_timeout_seconds: float = 15.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.slot_horizon_days <= self.max_advance_days:
            raise ConfigurationError(
                f"slot_horizon_days ({self.slot_horizon_days}) must exceed "
                f"max_advance_days ({self.max_advance_days}) so every bookable start has slots"
            )
        if self.conflict_retry_backoff_ms < 0:
            raise ConfigurationError("conflict_retry_backoff_ms cannot be negative")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")
        try:
            self.booking_policies()
        except InvalidConfiguration as e:
            raise ConfigurationError(e.reason) from e

    def booking_policies(self) -> BookingPolicies:
        return BookingPolicies(
            max_advance_days=self.max_advance_days,
            modification_cutoff_hours=self.modification_cutoff_hours,
            min_duration_minutes=self.min_duration_minutes,
            max_duration_minutes=self.max_duration_minutes,
            duration_step_minutes=self.duration_step_minutes
        )

    @property
    def conflict_retry_backoff(self) -> float:
        """Backoff before the single contention retry, in seconds"""
        return self.conflict_retry_backoff_ms / 1000.0


# Target type per field; Optional fields accept an empty value as None
_FIELD_TYPES = {
    "database_url": str,
    "redis_url": str,
    "redis_channel": str,
    "max_advance_days": int,
    "modification_cutoff_hours": int,
    "min_duration_minutes": int,
    "max_duration_minutes": int,
    "duration_step_minutes": int,
    "slot_horizon_days": int,
    "conflict_retry_backoff_ms": int,
    "sqlite_busy_timeout_seconds": float,
    "log_level": str,
    "log_file": str,
}
_OPTIONAL_FIELDS = {"redis_url", "log_file"}


def _coerce(name: str, value: Any) -> Any:
    if value is None or (isinstance(value, str) and value.strip() == ""):
        if name in _OPTIONAL_FIELDS:
            return None
        raise ConfigurationError(f"Setting {name} cannot be empty")

    target = _FIELD_TYPES[name]
    if target is int and isinstance(value, bool):
        raise ConfigurationError(f"Setting {name} must be an integer, got {value!r}")
    try:
        return target(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Setting {name} must be {target.__name__}, got {value!r}") from e


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as e:
        raise ConfigurationError(f"Cannot read settings file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in settings file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")

    unknown = set(data) - set(_FIELD_TYPES)
    if unknown:
        raise ConfigurationError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")
    return data


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from defaults, an optional YAML file and the environment

    Args:
        path: YAML file to read; EVBOOKING_CONFIG is used when omitted
        environ: environment mapping (defaults to os.environ)
    """
    environ = os.environ if environ is None else environ
    path = path or environ.get(f"{ENV_PREFIX}CONFIG")

    overrides: Dict[str, Any] = {}
    if path:
        for name, value in _read_yaml(path).items():
            overrides[name] = _coerce(name, value)
        logger.info(f"Loaded settings file {path}")

    for field in fields(Settings):
        key = f"{ENV_PREFIX}{field.name.upper()}"
        if key in environ:
            overrides[field.name] = _coerce(field.name, environ[key])

    return replace(Settings(), **overrides) if overrides else Settings()
