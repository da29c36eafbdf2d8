"""
Dual-trigger scheduler.

An event listener reacts to task inserts; an independent poller sweeps
for tasks whose notification was missed or whose lease ran out. Both call
the same claim-and-process routine, so the claim alone deduplicates work.
"""

import logging
import queue
import threading
from typing import Optional

from chunkscribe.core.assemble import detect_upload_completion
from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.error_codes import TaskError
from chunkscribe.core.pipeline import TaskProcessor
from chunkscribe.core.constants import (
    TERMINAL_STATUSES, Trigger, POLL_INTERVAL_SEC, POLL_BATCH_SIZE,
)

logger = logging.getLogger(__name__)


def _log_task_failure(task_id: str, trigger: str, error: Exception):
    if isinstance(error, TaskError):
        logger.error("Task %s failed (%s trigger): %s", task_id, trigger, error)
    else:
        logger.error("Task %s failed (%s trigger): %s", task_id, trigger, error, exc_info=True)


def _ready_for_processing(db: Database, task_id: str) -> bool:
    """At least one chunk, and every expected chunk has arrived."""
    chunks = db.get_chunk_files(task_id)
    if not chunks:
        logger.warning("No chunk files found for task %s", task_id)
        return False
    completion = detect_upload_completion(chunks)
    if not completion.complete:
        logger.info("Upload incomplete for task %s (%d/%s chunks)",
                    task_id, completion.received, completion.expected)
        return False
    return True


class EventListener:
    """Consumes task-insert notifications from the task store."""

    def __init__(self, db: Database, processor: TaskProcessor):
        self.db = db
        self.processor = processor
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    def _on_insert(self, task_id: str):
        self._queue.put(task_id)

    def start(self):
        if self._running:
            return
        self._running = True
        self.db.subscribe_inserts(self._on_insert)
        self._thread = threading.Thread(target=self._run, name="event-listener", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None):
        if not self._running:
            return
        self.db.unsubscribe_inserts(self._on_insert)
        self._running = False
        self._queue.put(None)
        if self._thread:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._running

    def _run(self):
        while True:
            task_id = self._queue.get()
            if task_id is None:
                break
            self.handle(task_id)

    def handle(self, task_id: str) -> bool:
        """Process one insert notification. Returns True if this worker ran the task."""
        try:
            logger.info("Insert received for task %s", task_id)
            task = self.db.get_task(task_id)
            if task is None:
                return False
            if task.status in TERMINAL_STATUSES or task.result_ref:
                logger.info("Task %s already processed", task_id)
                return False
            if not _ready_for_processing(self.db, task_id):
                return False
            return self.processor.claim_and_process(task_id, Trigger.EVENT)
        except Exception as e:
            _log_task_failure(task_id, Trigger.EVENT, e)
            return False


class Poller:
    """Periodic sweep for claimable tasks. Stoppable; cycles never overlap."""

    def __init__(self, db: Database, processor: TaskProcessor,
                 interval_sec: float = POLL_INTERVAL_SEC,
                 batch_size: int = POLL_BATCH_SIZE,
                 max_attempts: int = 0):
        self.db = db
        self.processor = processor
        self.interval_sec = interval_sec
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._stop_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _run(self):
        while not self._stop_event.is_set():
            self.poll_once()
            if self._stop_event.wait(self.interval_sec):
                break

    def poll_once(self) -> int:
        """One sweep. Returns how many tasks this worker processed."""
        if not self._cycle_lock.acquire(blocking=False):
            return 0
        processed = 0
        try:
            logger.debug("Checking for pending transcription tasks")
            try:
                tasks = self.db.list_claimable_tasks(limit=self.batch_size,
                                                     max_attempts=self.max_attempts)
            except Exception as e:
                logger.error("Polling fetch error: %s", e)
                return 0

            if tasks:
                logger.info("Found %d pending task(s) with media", len(tasks))
            for task in tasks:
                if self._stop_event.is_set():
                    break
                try:
                    if not _ready_for_processing(self.db, task.id):
                        continue
                    if self.processor.claim_and_process(task.id, Trigger.POLL):
                        processed += 1
                except Exception as e:
                    _log_task_failure(task.id, Trigger.POLL, e)
        finally:
            self._cycle_lock.release()
        return processed


class Scheduler:
    """Owns both triggers for the lifetime of the worker process."""

    def __init__(self, db: Database, processor: TaskProcessor, config: dict | None = None):
        config = config or {}
        self.listener = EventListener(db, processor)
        self.poller = Poller(
            db, processor,
            interval_sec=config.get('poll_interval_sec', POLL_INTERVAL_SEC),
            batch_size=config.get('poll_batch_size', POLL_BATCH_SIZE),
            max_attempts=config.get('max_attempts', 0),
        )

    def start(self):
        self.listener.start()
        self.poller.start()
        logger.info("Scheduler started (poll every %ss)", self.poller.interval_sec)

    def stop(self, timeout: float | None = None):
        self.listener.stop(timeout)
        self.poller.stop(timeout)
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.listener.is_running() or self.poller.is_running()
