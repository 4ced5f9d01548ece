"""QueueWatcher — detects plan files appearing, changing and disappearing
in the queue's pending/ folder.

Two sources feed the same check: a watchdog observer (instant, where the
platform delivers notifications) and the fixed-interval poll inherited
from BaseWatcher (always on, and the only source when notifications are
unavailable).  Every check diffs the folder listing against the previous
one, so missed or duplicated notifications can't produce wrong events.

REQUIREMENTS
------------
    pip install watchdog
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from atomic_files import is_queue_document
from base_watcher import BaseWatcher

ADDED = "added"
UPDATED = "updated"
REMOVED = "removed"

# watchdog event types that can change a listing; opened/closed are noise
RESCAN_EVENT_TYPES = {"created", "modified", "deleted", "moved"}


@dataclass(frozen=True)
class WatcherEvent:
    kind: str
    file_path: Path
    # True for events from the scan that runs before the watcher is ready
    initial: bool = False

    @property
    def file_name(self) -> str:
        return self.file_path.name


class _RescanHandler(FileSystemEventHandler):
    """Turns raw filesystem notifications into a debounced rescan request."""

    def __init__(self, watcher: "QueueWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in RESCAN_EVENT_TYPES:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(is_queue_document(Path(os.fsdecode(p)).name) for p in paths if p):
            self.watcher.request_check()


class QueueWatcher(BaseWatcher):
    """Watch one flat folder of plan files and emit added/updated/removed events."""

    def __init__(
        self,
        watch_dir: str | Path,
        check_interval: float = 2.0,
        debounce: float = 0.3,
        use_events: bool = True,
    ) -> None:
        super().__init__(watch_dir, check_interval, debounce)
        self.use_events = use_events
        self._known: dict[str, int] = {}  # file name -> mtime_ns
        self._listeners: list[Callable[[WatcherEvent], None]] = []
        self._ready_listeners: list[Callable[[], None]] = []
        self._ready = False
        self._observer = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[WatcherEvent], None]) -> None:
        self._listeners.append(callback)

    def on_ready(self, callback: Callable[[], None]) -> None:
        """Call *callback* once the first scan has finished (now, if it has)."""
        if self._ready:
            callback()
        else:
            self._ready_listeners.append(callback)

    @property
    def is_ready(self) -> bool:
        return self._ready

    # ------------------------------------------------------------------
    # BaseWatcher interface
    # ------------------------------------------------------------------

    def check_for_updates(self) -> list:
        """Diff the current listing against the previous one."""
        try:
            entries = list(os.scandir(self.watch_dir))
        except OSError as exc:
            self.logger.debug("Cannot list %s: %s", self.watch_dir, exc)
            return []

        current: dict[str, int] = {}
        for entry in entries:
            if not is_queue_document(entry.name):
                continue
            try:
                if entry.is_file():
                    current[entry.name] = entry.stat().st_mtime_ns
            except FileNotFoundError:
                # Deleted between listing and stat
                continue

        initial = not self._ready
        events: list[WatcherEvent] = []
        for name in sorted(current):
            known = self._known.get(name)
            if known is None:
                events.append(WatcherEvent(ADDED, self.watch_dir / name, initial))
            elif known != current[name]:
                events.append(WatcherEvent(UPDATED, self.watch_dir / name, initial))
        for name in sorted(self._known):
            if name not in current:
                events.append(WatcherEvent(REMOVED, self.watch_dir / name, initial))

        self._known = current
        return events

    def handle_update(self, item: WatcherEvent) -> None:
        if item.kind == ADDED:
            self.logger.info("Plan added: %s", item.file_name)
        else:
            self.logger.debug("Plan %s: %s", item.kind, item.file_name)

        for callback in list(self._listeners):
            try:
                callback(item)
            except Exception:
                self.logger.exception("Listener failed for %s %s", item.kind, item.file_name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Scan once, become ready, then watch with notifications + polling."""
        if self._thread is not None and self._thread.is_alive():
            return

        self.check_now()
        self._mark_ready()

        if self.use_events:
            observer = Observer()
            try:
                observer.schedule(_RescanHandler(self), str(self.watch_dir), recursive=False)
                observer.start()
                self._observer = observer
            except Exception as exc:
                self.logger.warning("File notifications unavailable (%s) — polling only", exc)
                self._observer = None

        super().start()
        self.logger.info("Ready, watching: %s", self.watch_dir)

    def stop(self, timeout: float = 5.0) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout)
            self._observer = None
        super().stop(timeout)
        self._ready = False

    def _mark_ready(self) -> None:
        if self._ready:
            return
        self._ready = True
        listeners, self._ready_listeners = self._ready_listeners, []
        for callback in listeners:
            try:
                callback()
            except Exception:
                self.logger.exception("Ready listener failed")
