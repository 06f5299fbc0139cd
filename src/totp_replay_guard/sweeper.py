"""Background eviction of stale usage records on a fixed interval."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


class EvictionSweeper:
    """Runs *task* every *interval_seconds* on a dedicated daemon thread.

    The first run happens one interval after ``start()``. Runs are serialized
    with each other. An exception from one run is logged and the schedule
    carries on. ``cancel()`` stops future runs but does not wait for one
    already in progress.
    """

    def __init__(
        self,
        task: Callable[[], object],
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        name: str = "totp-usage-sweeper",
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._task = task
        self._interval = interval_seconds
        self._cancelled = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        self._thread.start()
        logger.info("Eviction sweeper started (every %.1fs).", self._interval)

    def cancel(self) -> None:
        self._cancelled.set()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the worker thread to exit. Only useful after ``cancel()``."""
        if self._thread.is_alive():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def run_once(self) -> None:
        """Execute one run, swallowing and logging any failure."""
        try:
            self._task()
        except Exception:
            logger.exception("TOTP usage sweep failed; will retry next interval.")

    def _run(self) -> None:
        # Event.wait returns True as soon as cancel() is called
        while not self._cancelled.wait(self._interval):
            self.run_once()
