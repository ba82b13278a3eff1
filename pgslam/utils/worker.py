"""
Worker task: one thread plus the stop flag it observes.

The owner spawns the thread with ``start()`` and tears it down with ``stop()``,
which raises the flag, runs an optional wake-up hook (so a thread blocked on a
condition variable notices the flag) and joins. Stopping is idempotent and
valid when the task was never started.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class WorkerTask:
    """Dedicated worker thread with a synchronized stop flag.

    Attributes:
        name: Thread name, also used in log messages
        stop_event: Flag shared with the target; set once shutdown is requested
    """

    def __init__(self, target: Callable[[threading.Event], None], name: str = "worker",
                 on_stop: Optional[Callable[[], None]] = None):
        """Create the task without starting it.

        Args:
            target: Callable run in the thread; receives the stop event
            name: Thread name
            on_stop: Hook called after the stop flag is raised, before joining
        """
        self.name = name
        self.stop_event = threading.Event()
        self._target = target
        self._on_stop = on_stop
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            raise RuntimeError(f"Worker '{self.name}' is already running")
        self.stop_event.clear()
        self._thread = threading.Thread(target=self._target, args=(self.stop_event,), name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Worker '%s' started", self.name)

    def request_stop(self) -> None:
        self.stop_event.set()
        if self._on_stop is not None:
            self._on_stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        if self._thread is threading.current_thread():
            raise RuntimeError(f"Worker '{self.name}' cannot join itself")
        self._thread.join(timeout)
        if not self._thread.is_alive():
            self._thread = None
            logger.debug("Worker '%s' joined", self.name)

    def stop(self) -> None:
        """Request shutdown and wait for the thread to finish its current cycle."""
        self.request_stop()
        self.join()

    def __enter__(self) -> "WorkerTask":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
