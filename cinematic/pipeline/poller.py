"""
Background status poller.

The core only offers single-shot status checks. This consumer re-checks
every `generating` scene that holds a task id on a fixed interval, the way
the project page does while it is open, so renders still finish when no
one is watching.

SCENE_STALE_AFTER_SECONDS > 0 fails scenes stuck in `generating` longer
than that; 0 (default) waits forever.
"""

import os
import asyncio
import logging
import threading
from typing import Callable, Optional

from .project_service import ProjectService

logger = logging.getLogger(__name__)

POLLER_ENABLED = os.getenv("POLLER_ENABLED", "false").lower() in ("1", "true", "yes")
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
SCENE_STALE_AFTER_SECONDS = float(os.getenv("SCENE_STALE_AFTER_SECONDS", "0"))


class StatusPoller:

    def __init__(
        self,
        service_factory: Callable[[], ProjectService],
        interval: float = POLL_INTERVAL_SECONDS,
        stale_after: float = SCENE_STALE_AFTER_SECONDS,
    ):
        self.service_factory = service_factory
        self.interval = interval
        self.stale_after = stale_after
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> int:
        """Poll every generating scene once. Returns how many outcomes came back."""
        outcomes = asyncio.run(self.service_factory().poll_generating(self.stale_after))
        if outcomes:
            logger.info(f"Poller sweep: {len(outcomes)} scene(s) checked")
        return len(outcomes)

    def _loop(self):
        logger.info(f"Status poller started (every {self.interval}s)")
        while not self._stop.is_set():
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Status poller loop error: {e}", exc_info=True)
            self._stop.wait(self.interval)
        logger.info("Status poller stopped")

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="status-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
