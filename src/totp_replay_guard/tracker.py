"""Per-user tracking of consumed TOTP codes to block replay."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from totp_replay_guard.config import ConfigurationProvider, ConfigurationUnavailable
from totp_replay_guard.store import StripedCodeStore
from totp_replay_guard.sweeper import DEFAULT_SWEEP_INTERVAL_SECONDS, EvictionSweeper

logger = logging.getLogger(__name__)

INVALID_INTERVAL = 2
"""Number of periods a used code stays blocked after its first accepted use."""

DEFAULT_MAX_ATTEMPTS = 16


def _current_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class UsedCode:
    """A valid code that a particular user has already submitted."""

    username: str
    code: str


class CodeUsageTracker:
    """Tracks past valid uses of TOTP codes, one record per (username, code).

    The caller MUST have validated the code against the user's secret first;
    this only decides whether the code was already consumed. A background
    sweeper purges records old enough that the secret would no longer yield
    that code anyway. Correctness never depends on the sweeper: stale records
    found by ``use_code`` are replaced on the spot.

    The sweep schedule starts here. The host must call ``shutdown()`` once at
    teardown; the worker is a daemon thread so a missed call cannot block
    interpreter exit.
    """

    def __init__(
        self,
        config: ConfigurationProvider,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        stripes: int = 64,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self._config = config
        self._max_attempts = max_attempts
        self._invalid_codes: StripedCodeStore[UsedCode] = StripedCodeStore(stripes)
        self._sweeper = EvictionSweeper(self.evict_expired, sweep_interval_seconds)
        self._sweeper.start()
        logger.info("TOTP code usage tracker started.")

    @property
    def size(self) -> int:
        return len(self._invalid_codes)

    @property
    def sweeper(self) -> EvictionSweeper:
        return self._sweeper

    def _blocking_window_millis(self) -> int:
        try:
            period = self._config.get_period()
        except ConfigurationUnavailable:
            raise
        except Exception as e:
            raise ConfigurationUnavailable(f"TOTP period could not be read: {e}") from e

        if isinstance(period, bool) or not isinstance(period, int) or period <= 0:
            raise ConfigurationUnavailable(f"TOTP period must be a positive integer, got {period!r}.")
        return period * 1000 * INVALID_INTERVAL

    def use_code(self, username: str, code: str) -> bool:
        """Mark *code* as used by *username*.

        Returns True if the code had not been used by that user within the
        blocking window (and is now recorded), False if it is a replay.
        Raises ``ConfigurationUnavailable`` if the period cannot be read.
        """
        if not isinstance(username, str) or not isinstance(code, str):
            raise TypeError("username and code must be strings")

        used_code = UsedCode(username, code)
        for _ in range(self._max_attempts):
            current = _current_millis()
            invalid_until = current + self._blocking_window_millis()

            expires = self._invalid_codes.put_if_absent(used_code, invalid_until)
            if expires is None:
                return True

            if expires > current:
                logger.debug("Rejected reuse of TOTP code by %s.", username)
                return False

            # Stale record the sweeper has not reached yet; drop it only if
            # nobody refreshed it in the meantime, then try again
            self._invalid_codes.remove_if_equals(used_code, expires)

        logger.warning(
            "Gave up marking TOTP code used by %s after %d attempts; rejecting.",
            username,
            self._max_attempts,
        )
        return False

    def evict_expired(self, now: int | None = None) -> int:
        """Remove every record whose blocking window ended by *now*.

        Returns the number of records removed.
        """
        started = time.monotonic()
        check_start = _current_millis() if now is None else now
        removed = 0
        for used_code, invalid_until in self._invalid_codes.snapshot():
            if check_start >= invalid_until and self._invalid_codes.remove_if_equals(
                used_code, invalid_until
            ):
                removed += 1

        logger.debug(
            "TOTP tracking cleanup removed %d record(s) in %d ms.",
            removed,
            (time.monotonic() - started) * 1000,
        )
        return removed

    def shutdown(self) -> None:
        """Cancel background eviction. Does not wait for an in-flight sweep."""
        if self._sweeper.cancelled:
            return
        self._sweeper.cancel()
        logger.info("TOTP code usage tracker shut down.")

    def __enter__(self) -> CodeUsageTracker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
