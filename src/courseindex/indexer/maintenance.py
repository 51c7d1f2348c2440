from __future__ import annotations

import logging
import threading
from typing import Optional

from ..errors import QueueUnavailableError
from .queue import JobQueue

logger = logging.getLogger(__name__)


class MaintenanceTask:
    """Background thread that periodically removes old terminal jobs.

    Usage:
        task = MaintenanceTask(queue, interval_s=3600, horizon_hours=24)
        task.start()
        ...
        task.stop()
    """

    def __init__(self, queue: JobQueue, interval_s: float = 3600.0, horizon_hours: float = 24.0) -> None:
        self.queue = queue
        self.interval_s = interval_s
        self.horizon_hours = horizon_hours
        self.last_removed: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        removed = self.queue.clean_completed(self.horizon_hours)
        self.last_removed = removed
        logger.info(f"[maintenance] Removed {removed} jobs older than {self.horizon_hours}h")
        return removed

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except QueueUnavailableError as e:
                logger.error(f"[maintenance] Cleanup failed: {e}")

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="courseindex-maintenance", daemon=True)
        self._thread.start()
        logger.debug(f"[maintenance] Started (every {self.interval_s}s)")

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None
