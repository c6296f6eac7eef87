"""Live change-feed normalization and notification fan-out.

Raw store events are queued, deduplicated and folded into per-viewer
notification state by a single dispatcher. Each logical condition (a new
assignment, a task becoming overdue) is announced to the sinks once per
session no matter how often the transport repeats the underlying event.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from datetime import datetime

from order_workflow.db.models import Actor, ChangeEvent, Notification, Task

logger = logging.getLogger(__name__)

CLOSED_STATUSES = ("completed", "delivered", "not-delivered")

Sink = Callable[[Notification], None]


def is_overdue(task: Task, now: datetime) -> bool:
    """An open task whose due moment has passed.

    Without a due time the task is overdue from the day after its due date.
    """
    if task.status in CLOSED_STATUSES:
        return False
    today = now.date()
    if task.due_date < today:
        return True
    if task.due_date == today and task.due_time is not None:
        return task.due_time < now.time()
    return False


def event_fingerprint(event: ChangeEvent) -> str:
    if event.kind != "update" or event.after is None:
        return event.kind
    a = event.after
    stamp = a.last_updated.isoformat() if a.last_updated else ""
    return f"update:{a.status}:{a.assignee_id}:{a.due_date}:{a.due_time}:{stamp}"


class NotificationCenter:
    """Notification state for one viewer session."""

    def __init__(
        self,
        viewer: Actor,
        dedupe_window: float = 30.0,
        max_queue: int = 1000,
        workload=None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.viewer = viewer
        self.dedupe_window = dedupe_window
        self.workload = workload
        self._clock = clock
        self._now = now
        self._queue: queue.Queue[ChangeEvent] = queue.Queue(maxsize=max_queue)
        self._lock = threading.Lock()
        self._sinks: list[Sink] = []
        self._recent: dict[tuple[str, str], float] = {}
        self._announced: set[str] = set()
        self._active: dict[tuple[str, str], Notification] = {}
        self.needs_reload = False

    # ── Intake ──────────────────────────────────────────────────────────────

    def add_sink(self, sink: Sink):
        self._sinks.append(sink)

    def enqueue(self, event: ChangeEvent):
        """Store subscription handler. Never blocks the write path."""
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Event queue full; dropping %s for task %s until next reload",
                           event.kind, event.task_id)
            self.needs_reload = True

    def dispatch(self) -> list[Notification]:
        """Drain the queue, returning the notifications emitted."""
        emitted: list[Notification] = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                break
            emitted.extend(self.handle(event))
        return emitted

    def handle(self, event: ChangeEvent) -> list[Notification]:
        """Apply one event and fan out any new notifications."""
        with self._lock:
            if self._is_duplicate(event):
                return []
            if self.workload is not None:
                self.workload.apply_event(event)
            if event.kind == "insert" and event.after is not None:
                emitted = self._on_insert(event.after)
            elif event.kind == "update" and event.after is not None:
                emitted = self._on_update(event.before, event.after)
            elif event.kind == "delete":
                self._drop(event.task_id)
                self._announced.discard(event.task_id)
                emitted = []
            else:
                emitted = []
        self._fan_out(emitted)
        return emitted

    def reconcile(self, tasks: list[Task], baseline: bool = False) -> list[Notification]:
        """Bring state in line with a full reload of the viewer's tasks.

        Conditions already known are not announced again. With baseline,
        tasks that predate the session are recorded without new-task alerts.
        """
        with self._lock:
            emitted: list[Notification] = []
            present = set()
            for task in tasks:
                if not self.is_relevant(task):
                    continue
                present.add(task.id)
                if baseline:
                    self._announced.add(task.id)
                elif task.id not in self._announced:
                    emitted.append(self._announce_new(task))
                emitted.extend(self._refresh_overdue(task))
            for key in [k for k in self._active if k[0] not in present]:
                del self._active[key]
            self._announced &= present
            self.needs_reload = False
        self._fan_out(emitted)
        return emitted

    # ── State ───────────────────────────────────────────────────────────────

    @property
    def notifications(self) -> list[Notification]:
        with self._lock:
            return sorted(self._active.values(), key=lambda n: n.created_at)

    def dismiss(self, task_id: str, kind: str | None = None):
        with self._lock:
            for key in [k for k in self._active if k[0] == task_id and kind in (None, k[1])]:
                del self._active[key]

    def is_relevant(self, task: Task) -> bool:
        return self.viewer.is_supervisor or task.assignee_id == self.viewer.id

    # ── Event handling ──────────────────────────────────────────────────────

    def _is_duplicate(self, event: ChangeEvent) -> bool:
        now = self._clock()
        horizon = now - self.dedupe_window
        for key in [k for k, seen in self._recent.items() if seen < horizon]:
            del self._recent[key]
        key = (event.task_id, event_fingerprint(event))
        if key in self._recent:
            return True
        self._recent[key] = now
        return False

    def _on_insert(self, task: Task) -> list[Notification]:
        if not self.is_relevant(task):
            return []
        emitted = []
        if task.id not in self._announced:
            emitted.append(self._announce_new(task))
        emitted.extend(self._refresh_overdue(task))
        return emitted

    def _on_update(self, before: Task | None, after: Task) -> list[Notification]:
        if not self.is_relevant(after):
            self._drop(after.id)
            return []
        emitted = []
        reassigned_here = (
            before is not None
            and before.assignee_id != after.assignee_id
            and after.assignee_id == self.viewer.id
        )
        if reassigned_here and after.id not in self._announced:
            emitted.append(self._announce_new(after))
        emitted.extend(self._refresh_overdue(after))
        return emitted

    def _announce_new(self, task: Task) -> Notification:
        self._announced.add(task.id)
        note = _notification(task, "new_task")
        self._active[(task.id, "new_task")] = note
        return note

    def _refresh_overdue(self, task: Task) -> list[Notification]:
        key = (task.id, "overdue")
        if not is_overdue(task, self._now()):
            self._active.pop(key, None)
            return []
        existing = self._active.get(key)
        note = _notification(task, "overdue")
        if existing is not None:
            note.created_at = existing.created_at
            self._active[key] = note
            return []
        self._active[key] = note
        return [note]

    def _drop(self, task_id: str):
        for key in [k for k in self._active if k[0] == task_id]:
            del self._active[key]

    def _fan_out(self, notes: list[Notification]):
        for note in notes:
            for sink in list(self._sinks):
                try:
                    sink(note)
                except Exception:
                    logger.exception("Notification sink failed for %s on task %s", note.kind, note.task_id)


def _notification(task: Task, kind: str) -> Notification:
    return Notification(
        task_id=task.id,
        kind=kind,
        title=task.title,
        assignee_name=task.assignee_name,
        task_type=task.task_type,
        due_date=task.due_date,
        priority=task.priority,
    )


class ReconcileMonitor:
    """Background thread that dispatches queued events and periodically reloads."""

    def __init__(
        self,
        center: NotificationCenter,
        load_tasks: Callable[[], list[Task]],
        reload_interval: float = 120.0,
        poll_interval: float = 1.0,
    ):
        self.center = center
        self.load_tasks = load_tasks
        self.reload_interval = reload_interval
        self.poll_interval = poll_interval
        self._last_reload: float | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the monitor thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="notification-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Notification monitor started for %s", self.center.viewer.id)

    def stop(self):
        """Signal the monitor thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Notification monitor stopped")

    def run_once(self) -> list[Notification]:
        """One dispatcher pass, reloading when the interval has elapsed."""
        emitted = self.center.dispatch()
        now = time.monotonic()
        first = self._last_reload is None
        due = first or now - self._last_reload >= self.reload_interval
        if due or self.center.needs_reload:
            emitted.extend(self.center.reconcile(self.load_tasks(), baseline=first))
            self._last_reload = now
        return emitted

    def _run(self):
        """Main monitor loop."""
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Error in notification monitor loop")
            self._stop_event.wait(self.poll_interval)
