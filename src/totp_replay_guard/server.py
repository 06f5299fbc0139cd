"""FastMCP app hosting the process-wide TOTP code usage tracker."""

from __future__ import annotations

import atexit
import logging
from typing import Annotated, Any

from pydantic import Field

logger = logging.getLogger(__name__)

from fastmcp import FastMCP

from totp_replay_guard.config import (
    ConfigurationUnavailable,
    GuardSettings,
    SettingsConfigurationProvider,
)
from totp_replay_guard.tracker import INVALID_INTERVAL, CodeUsageTracker

# ---------------------------------------------------------------------------
# FastMCP app
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "totp-replay-guard",
    instructions=(
        "TOTP Replay Guard: one-time code usage tracking.\n\n"
        "Call `use_code` AFTER a TOTP code has been validated against the "
        "user's secret. It answers whether this user already consumed the "
        "same code within the blocking window (two TOTP periods).\n\n"
        "- `use_code`: accepted=True on first use, False on replay. If "
        "success is False the replay status is unknown; do not authenticate.\n"
        "- `tracker_status`: read-only, tracked record count and timings.\n"
        "- `refresh_config`: admin tool. Re-reads TOTP_* env vars; forgets "
        "all tracked codes.\n"
    ),
)

# ---------------------------------------------------------------------------
# Singletons (lazy)
# ---------------------------------------------------------------------------

_config: SettingsConfigurationProvider | None = None
_tracker: CodeUsageTracker | None = None
_shutdown_registered = False


def _get_config() -> SettingsConfigurationProvider:
    global _config
    if _config is None:
        _config = SettingsConfigurationProvider()
    return _config


def _get_settings() -> GuardSettings:
    return _get_config().settings


def _get_tracker() -> CodeUsageTracker:
    global _tracker
    if _tracker is not None:
        return _tracker
    s = _get_settings()
    _tracker = CodeUsageTracker(
        _get_config(),
        sweep_interval_seconds=s.sweep_interval_seconds,
        stripes=s.stripes,
        max_attempts=s.max_attempts,
    )
    _register_shutdown_handlers()
    return _tracker


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


def _shutdown_tracker() -> None:
    global _tracker
    if _tracker is not None:
        _tracker.shutdown()
        _tracker = None


def _register_shutdown_handlers() -> None:
    global _shutdown_registered
    if not _shutdown_registered:
        atexit.register(_shutdown_tracker)
        _shutdown_registered = True


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


async def use_code(
    username: Annotated[str, Field(description="User submitting the code.")],
    code: Annotated[str, Field(description="TOTP code already validated against the user's secret.")],
) -> dict[str, Any]:
    """Record a validated TOTP code as used by *username*.

    Returns:
        success: False only when the replay status could not be determined.
        accepted: True on first use within the blocking window, False on replay.
        error: Present when success is False.

    Errors: A missing or invalid TOTP period fails closed (accepted=False).
    """
    try:
        accepted = _get_tracker().use_code(username, code)
    except ConfigurationUnavailable as e:
        logger.error("Cannot determine TOTP replay status for %s: %s", username, e)
        return {"success": False, "accepted": False, "error": str(e)}

    return {"success": True, "accepted": accepted}


async def tracker_status() -> dict[str, Any]:
    """Read-only view of the usage tracker.

    Returns:
        tracked_codes: Number of (username, code) records currently held.
        period_seconds: Configured TOTP period.
        blocking_window_seconds: How long a used code stays rejected.
        sweep_interval_seconds: Interval between background purges.
    """
    try:
        s = _get_settings()
    except ConfigurationUnavailable as e:
        return {"success": False, "error": str(e)}

    # Never builds the tracker; nothing is tracked until the first use_code
    tracker = _tracker
    return {
        "success": True,
        "tracked_codes": tracker.size if tracker is not None else 0,
        "period_seconds": s.period,
        "blocking_window_seconds": s.period * INVALID_INTERVAL,
        "sweep_interval_seconds": (
            tracker.sweeper.interval_seconds if tracker is not None else s.sweep_interval_seconds
        ),
    }


async def refresh_config() -> dict[str, Any]:
    """Hot-reload TOTP_* environment variables.

    Admin-only tool. Shuts down the current tracker and resets singletons so
    they are re-created from fresh settings on next use.

    Warning: All tracked codes are forgotten. A code consumed within the last
    two periods could be accepted once more.
    """
    _shutdown_tracker()
    _get_config().reload()

    try:
        _get_settings()
    except ConfigurationUnavailable as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "message": "Configuration reloaded. Tracker will be re-created on next use.",
    }


for _tool in (use_code, tracker_status, refresh_config):
    mcp.tool()(_tool)


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
