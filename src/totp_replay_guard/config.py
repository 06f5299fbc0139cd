"""Configuration via pydantic-settings. Loaded at runtime, never at import time."""

from __future__ import annotations

import logging
from typing import Protocol

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ReplayGuardError(Exception):
    """Base class for all replay guard exceptions."""


class ConfigurationUnavailable(ReplayGuardError):
    """Raised when the TOTP period cannot be determined (fail closed)."""


class GuardSettings(BaseSettings):
    """All env vars for the TOTP replay guard."""

    # Length of one TOTP time step, in seconds
    period: int = Field(default=30, gt=0)

    # How often stale usage records are purged
    sweep_interval_seconds: float = Field(default=60.0, gt=0)

    # Lock stripes guarding the usage store
    stripes: int = Field(default=64, gt=0)

    # Retry cap for the stale-record race in use_code
    max_attempts: int = Field(default=16, gt=0)

    model_config = {"env_prefix": "TOTP_", "env_file": ".env", "extra": "ignore"}


class ConfigurationProvider(Protocol):
    """Capability exposing the TOTP period to the usage tracker."""

    def get_period(self) -> int:
        """Return the TOTP period in seconds. May raise."""
        ...


class StaticConfigurationProvider:
    """Fixed period, for embedding hosts that already know their settings."""

    def __init__(self, period: int) -> None:
        self._period = period

    def get_period(self) -> int:
        return self._period


class SettingsConfigurationProvider:
    """Reads the period from ``GuardSettings``, loading them on first use.

    Any failure to load or validate the settings raises
    ``ConfigurationUnavailable``; there is no silent default.
    """

    def __init__(self, settings: GuardSettings | None = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> GuardSettings:
        if self._settings is None:
            try:
                self._settings = GuardSettings()
            except ValidationError as e:
                raise ConfigurationUnavailable(f"Invalid TOTP settings: {e}") from e
            logger.info("TOTP settings loaded (period=%ds).", self._settings.period)
        return self._settings

    def get_period(self) -> int:
        return self.settings.period

    def reload(self) -> None:
        """Drop cached settings so the next read picks up new env vars."""
        self._settings = None
