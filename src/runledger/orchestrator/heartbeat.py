"""Fixed-interval heartbeat thread, independent of task progress."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class HeartbeatTicker:
    """Call ``beat`` every ``interval_seconds`` on a daemon thread.

    A failing beat is logged and the ticker keeps going: a missed heartbeat is
    a signal for observers, not a reason to stop the run.
    """

    def __init__(
        self,
        *,
        interval_seconds: float,
        beat: Callable[[], None],
        name: str = "runledger-heartbeat",
    ) -> None:
        self.interval_seconds = interval_seconds
        self._beat = beat
        self._name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.beats = 0
        self.failures = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self._name)
        self._thread.start()
        logger.debug("Heartbeat ticker started (every %.1fs)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def beat_now(self) -> None:
        try:
            self._beat()
            self.beats += 1
        except Exception:  # noqa: BLE001
            self.failures += 1
            logger.warning("Heartbeat write failed; continuing.", exc_info=True)

    def _run(self) -> None:
        while not self._stop.wait(timeout=self.interval_seconds):
            self.beat_now()
