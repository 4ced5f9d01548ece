"""QueueManager — in-memory view of the decision queue plus the write path.

Owns a cache of every presentable plan in pending/, kept fresh by a
QueueWatcher.  The chat adapter calls the query methods to render the
queue and the answer/skip/submit methods when the consumer acts.

Return conventions:
  * ``None``   — the plan is gone (completed, deleted, unreadable right now).
                 Not an error; the adapter just re-renders the queue.
  * raises QueueError subclasses for requests that can't be honoured
    (unknown decision, submit before ready, archive name collision).

One engine per queue folder: there is no cross-process lock.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path

from atomic_files import list_documents, read_document, relocate_file, write_atomically
from plan_codec import (
    decode_plan,
    is_presentable,
    notification_filename,
    render_notification,
    update_decision_in_body,
    update_frontmatter,
)
from plan_models import (
    PLAN_STATUS_RANK,
    PRIORITIES,
    SKIP_SENTINEL,
    DecisionNotFoundError,
    Notification,
    Plan,
    PlanStateError,
    QueueError,
    QueueStats,
    RelocationError,
    utc_now,
)
from queue_config import QueueConfig, ensure_queue_folders
from queue_watcher import REMOVED, QueueWatcher, WatcherEvent

logger = logging.getLogger("QueueManager")


def advance_status(current: str, remaining: int) -> str:
    """Plan status after an answer is recorded.

    Only ever moves forward, and stops at ``ready``: completion needs an
    explicit submit.
    """
    target = "ready" if remaining == 0 else "in_progress"
    if PLAN_STATUS_RANK.get(current, 0) >= PLAN_STATUS_RANK[target]:
        return current
    return target


class QueueManager:
    """Clean API over the pending/completed/notify folders."""

    def __init__(
        self,
        queue_dir: str | Path,
        watch_interval: float = 2.0,
        debounce: float = 0.3,
        use_events: bool = True,
        notifications_enabled: bool = True,
    ) -> None:
        self.queue_dir = Path(queue_dir).expanduser()
        self.pending_dir = self.queue_dir / "pending"
        self.completed_dir = self.queue_dir / "completed"
        self.notify_dir = self.queue_dir / "notify"
        self.watch_interval = watch_interval
        self.debounce = debounce
        self.use_events = use_events
        self.notifications_enabled = notifications_enabled

        self._cache: dict[Path, Plan] = {}
        self._lock = threading.RLock()
        # path -> [lock, holders + waiters]; dropped when nobody uses it
        self._path_locks: dict[Path, list] = {}
        self._watcher: QueueWatcher | None = None
        self._initialized = False

    @classmethod
    def from_config(cls, config: QueueConfig) -> "QueueManager":
        return cls(
            config.queue_dir,
            watch_interval=config.watch_interval,
            debounce=config.debounce,
            use_events=config.use_events,
            notifications_enabled=config.notifications_enabled,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self, watch: bool = True) -> None:
        """Load pending/ and, unless *watch* is False, start watching it."""
        if self._initialized:
            return

        ensure_queue_folders(self.queue_dir)
        self.refresh()

        if watch:
            watcher = QueueWatcher(
                self.pending_dir,
                check_interval=self.watch_interval,
                debounce=self.debounce,
                use_events=self.use_events,
            )
            watcher.subscribe(self._on_watcher_event)
            watcher.on_ready(lambda: logger.info("Queue ready — %d pending plan(s)", len(self._cache)))
            watcher.start()
            self._watcher = watcher

        self._initialized = True

    def shutdown(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        with self._lock:
            self._cache.clear()
        self._initialized = False
        logger.info("Queue manager stopped")

    @property
    def is_ready(self) -> bool:
        """True once the watcher has finished its first scan."""
        return self._watcher is not None and self._watcher.is_ready

    def refresh(self) -> None:
        """Rebuild the cache from a full listing of pending/."""
        loaded: dict[Path, Plan] = {}
        for path in list_documents(self.pending_dir):
            plan = self._read_plan(path)
            if plan is None:
                continue
            if plan.status == "completed":
                if plan.remaining or not is_presentable(plan):
                    logger.warning(
                        "Ignoring %s — marked completed with %d of %d decision(s) unanswered",
                        path.name, plan.remaining, plan.total,
                    )
                else:
                    self._recover_completed(plan)
                continue
            if not is_presentable(plan):
                logger.warning("Ignoring %s — plan has no decisions", path.name)
                continue
            loaded[path] = plan

        with self._lock:
            self._cache = loaded
        logger.info("Loaded %d pending plan(s)", len(loaded))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_pending(self) -> list[Plan]:
        """All cached plans: most urgent first, then oldest first."""
        with self._lock:
            plans = list(self._cache.values())
        return sorted(plans, key=lambda p: p.sort_key)

    list_pending = get_pending

    def get_plan(self, plan_id: str) -> Plan | None:
        with self._lock:
            for plan in self._cache.values():
                if plan.id == plan_id:
                    return plan
        return None

    def get_by_tag(self, tag: str) -> list[Plan]:
        return [p for p in self.get_pending() if p.tag == tag]

    def get_stats(self) -> QueueStats:
        plans = self.get_pending()
        counts = {name: sum(1 for p in plans if p.priority == name) for name in PRIORITIES}
        return QueueStats(total=len(plans), **counts)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def answer_decision(self, plan_id: str, decision_id: str, answer: str) -> Plan | None:
        """Record *answer* for one decision and return the refreshed plan.

        Re-answering with the value already stored is a no-op, so repeated
        skips leave the file byte-identical.
        """
        if answer is None or not str(answer).strip():
            raise QueueError("Answer must not be empty")

        plan = self.get_plan(plan_id)
        if plan is None:
            logger.warning("Plan not found: %s", plan_id)
            return None

        path = plan.file_path
        with self._path_lock(path):
            current = self._read_plan(path)
            if current is None or current.id != plan_id:
                self._evict(path)
                return None
            if current.status == "completed":
                raise PlanStateError(plan_id, current.status, "answer")

            decision = current.find_decision(decision_id)
            if decision is None:
                raise DecisionNotFoundError(plan_id, decision_id)
            if decision.answer == answer:
                self._store(path, current)
                return current

            now = utc_now()
            content = update_decision_in_body(current.raw_content, decision_id, answer, now)
            if content is None:
                raise DecisionNotFoundError(plan_id, decision_id)

            answered = current.answered + (1 if decision.answer is None else 0)
            remaining = current.total - answered
            content = update_frontmatter(content, {
                "status": advance_status(current.status, remaining),
                "answered": answered,
                "remaining": remaining,
                "updated_at": now,
            })

            try:
                write_atomically(path, content)
            except OSError as exc:
                logger.warning("Could not write %s: %s", path.name, exc)
                return None

            updated = decode_plan(content, path, now=now)
            self._store(path, updated)

        logger.info(
            "Answered %s/%s → %s (%s, %d remaining)",
            plan_id, decision_id, answer, updated.status, updated.remaining,
        )
        return updated

    def skip_decision(self, plan_id: str, decision_id: str) -> Plan | None:
        return self.answer_decision(plan_id, decision_id, SKIP_SENTINEL)

    def submit_plan(self, plan_id: str) -> Plan | None:
        """Complete a ``ready`` plan: archive it and notify the producer.

        Raises PlanStateError if the plan isn't ready.  If the archive move
        fails the original file content is restored, the plan stays ready
        in the queue, and the RelocationError propagates.
        """
        plan = self.get_plan(plan_id)
        if plan is None:
            logger.warning("Plan not found: %s", plan_id)
            return None

        path = plan.file_path
        with self._path_lock(path):
            current = self._read_plan(path)
            if current is None or current.id != plan_id:
                self._evict(path)
                return None
            if current.status != "ready" or current.remaining != 0:
                raise PlanStateError(plan_id, current.status, "submit")

            now = utc_now()
            content = update_frontmatter(current.raw_content, {
                "status": "completed",
                "completed_at": now,
                "updated_at": now,
            })

            try:
                write_atomically(path, content)
            except OSError as exc:
                logger.warning("Could not write %s: %s", path.name, exc)
                return None

            try:
                dest = relocate_file(path, self.completed_dir)
            except RelocationError as exc:
                logger.error("Archiving %s failed: %s — plan stays in the queue", plan_id, exc.reason)
                try:
                    write_atomically(path, current.raw_content)
                except OSError:
                    logger.exception("Could not restore %s after failed archive", path.name)
                raise

            self._evict(path)

        completed = self._read_back(dest, content, now)
        logger.info("Plan completed: %s → %s", plan_id, dest)
        self._notify(completed)
        return completed

    # ------------------------------------------------------------------
    # Completion side effects
    # ------------------------------------------------------------------

    def _read_back(self, dest: Path, content: str, now: str) -> Plan:
        try:
            plan = decode_plan(read_document(dest), dest, now=now)
        except OSError as exc:
            logger.warning("Could not re-read archived %s: %s", dest.name, exc)
            plan = None
        return plan or decode_plan(content, dest, now=now)

    def _notify(self, plan: Plan) -> Path | None:
        """Write the notification file for *plan*, if it asked for one."""
        if not plan.notify_session or not self.notifications_enabled:
            return None

        notification = Notification.for_plan(plan)
        path = self.notify_dir / notification_filename(notification.notify_session, plan.id)
        try:
            write_atomically(path, render_notification(notification))
        except OSError:
            logger.exception("Failed to write notification for %s", plan.id)
            return None

        logger.info("Notification written for %s: %s", notification.notify_session, path.name)
        return path

    def _recover_completed(self, plan: Plan) -> None:
        """Finish archiving a plan marked completed but still in pending/."""
        logger.warning("Found completed plan still pending: %s — archiving", plan.id)
        with self._path_lock(plan.file_path):
            try:
                dest = relocate_file(plan.file_path, self.completed_dir)
            except RelocationError as exc:
                logger.error("Archiving %s failed: %s", plan.id, exc.reason)
                return
        self._notify(plan.moved_to(dest))

    # ------------------------------------------------------------------
    # Watcher events / cache helpers
    # ------------------------------------------------------------------

    def _on_watcher_event(self, event: WatcherEvent) -> None:
        if event.kind == REMOVED:
            plan = self._evict(event.file_path)
            if plan is not None:
                logger.info("Plan removed: %s", plan.id)
            return

        path = event.file_path
        with self._path_lock(path):
            plan = self._read_plan(path)
            if plan is None or plan.status == "completed":
                self._evict(path)
                return
            if not is_presentable(plan):
                logger.warning("Ignoring %s — plan has no decisions", path.name)
                self._evict(path)
                return
            self._store(path, plan)

        logger.log(
            logging.DEBUG if event.initial else logging.INFO,
            "Plan %s: %s (%s, %s)", event.kind, plan.id, plan.priority, plan.status,
        )

    def _read_plan(self, path: Path) -> Plan | None:
        try:
            text = read_document(path)
        except FileNotFoundError:
            # Moved or deleted since it was listed
            logger.debug("Plan file gone: %s", path.name)
            return None
        except OSError as exc:
            logger.warning("Plan file unavailable: %s (%s)", path.name, exc)
            return None
        return decode_plan(text, path)

    def _store(self, path: Path, plan: Plan) -> None:
        with self._lock:
            self._cache[path] = plan

    def _evict(self, path: Path) -> Plan | None:
        with self._lock:
            return self._cache.pop(path, None)

    @contextmanager
    def _path_lock(self, path: Path):
        with self._lock:
            entry = self._path_locks.setdefault(path, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._path_locks[path]
