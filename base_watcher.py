import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path


class BaseWatcher(ABC):
    """Base class for queue folder watchers.

    Subclasses implement check_for_updates() to diff the watched folder and
    handle_update() to act on a single change.

    The loop runs a check every ``check_interval`` seconds.  Anything that
    learns about a change sooner (a filesystem notification, say) calls
    request_check(); the loop then checks ``debounce`` seconds after the
    last such request, so a burst of notifications costs one check.
    """

    def __init__(self, watch_dir: str | Path, check_interval: float = 2.0, debounce: float = 0.3) -> None:
        self.watch_dir = Path(watch_dir)
        self.watch_dir.mkdir(parents=True, exist_ok=True)
        self.check_interval = check_interval
        self.debounce = debounce
        self.logger = logging.getLogger(self.__class__.__name__)

        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._check_lock = threading.Lock()
        self._due_lock = threading.Lock()
        self._check_due: float | None = None
        self._thread: threading.Thread | None = None

    @abstractmethod
    def check_for_updates(self) -> list:
        """Inspect the watched folder and return the changes since the last check."""

    @abstractmethod
    def handle_update(self, item) -> None:
        """Act on one change returned by check_for_updates()."""

    def check_now(self) -> int:
        """Run one check cycle on the calling thread.  Returns the change count."""
        with self._check_lock:
            try:
                updates = self.check_for_updates()
            except Exception:
                self.logger.exception("Error during update check")
                return 0

            if updates:
                self.logger.debug("Found %d change(s)", len(updates))
            for item in updates:
                try:
                    self.handle_update(item)
                except Exception:
                    self.logger.exception("Error handling update: %s", item)
            return len(updates)

    def request_check(self) -> None:
        """Ask for a check soon; repeated calls push the check back."""
        with self._due_lock:
            self._check_due = time.monotonic() + self.debounce
        self._wake.set()

    def run(self) -> None:
        """Blocking loop: periodic checks plus debounced requested checks."""
        self.logger.info(
            "Starting %s — polling %s every %.1fs",
            self.__class__.__name__,
            self.watch_dir,
            self.check_interval,
        )
        next_poll = time.monotonic() + self.check_interval

        while not self._stopping.is_set():
            with self._due_lock:
                due = self._check_due
            deadline = next_poll if due is None else min(next_poll, due)
            self._wake.wait(max(0.0, deadline - time.monotonic()))
            self._wake.clear()
            if self._stopping.is_set():
                break

            now = time.monotonic()
            with self._due_lock:
                fire = now >= next_poll or (self._check_due is not None and now >= self._check_due)
                if fire:
                    self._check_due = None
            if fire:
                self.check_now()
                next_poll = time.monotonic() + self.check_interval

        self.logger.info("Stopped %s", self.__class__.__name__)

    def start(self) -> None:
        """Run the loop on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self.run, name=self.__class__.__name__, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
