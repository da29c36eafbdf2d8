"""
Progress reporting.

The pipeline talks to a ProgressSink; persisting to the task store is one
implementation of it.
"""

import logging
import re

from chunkscribe.core.claims import ClaimManager
from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.error_codes import ProgressPersistError
from chunkscribe.core.models_sqlite import ProcessingAttempt
from chunkscribe.core.constants import PROGRESS_FORMAT, PROGRESS_PATTERN

logger = logging.getLogger(__name__)

_PROGRESS_RE = re.compile(PROGRESS_PATTERN)


def format_progress(completed: int, total: int) -> str:
    return PROGRESS_FORMAT.format(completed=completed, total=total)


def parse_progress(progress: str | None) -> tuple[int, int] | None:
    """Parse "<completed>/<total> segments"; None if absent or inconsistent."""
    if not progress:
        return None
    m = _PROGRESS_RE.match(progress)
    if not m:
        return None
    completed, total = int(m.group(1)), int(m.group(2))
    if total <= 0 or completed > total:
        return None
    return completed, total


class ProgressSink:
    """Observer notified at phase transitions and per finished segment."""

    def phase(self, status: str):
        pass

    def segments(self, completed: int, total: int):
        pass

    def segment_done(self, idx: int, total: int, text: str):
        pass


class NullProgressSink(ProgressSink):
    pass


class StoreProgressSink(ProgressSink):
    """
    Writes status/progress to the task store. With a claim attempt, writes
    are scoped to that holder and extend its lease. Every write is
    best-effort: failures are logged and never raised.
    """

    def __init__(self, db: Database, task_id: str,
                 claims: ClaimManager | None = None,
                 attempt: ProcessingAttempt | None = None):
        self.db = db
        self.task_id = task_id
        self.claims = claims
        self.attempt = attempt

    def _persist(self, what: str, fn, *args, **kwargs):
        try:
            written = fn(*args, **kwargs)
        except Exception as e:
            raise ProgressPersistError(f"{what} for task {self.task_id}: {e}") from e
        if written is False:
            raise ProgressPersistError(f"{what} for task {self.task_id}: claim no longer held")

    def _best_effort(self, what: str, fn, *args, **kwargs):
        try:
            self._persist(what, fn, *args, **kwargs)
        except ProgressPersistError as e:
            logger.warning("%s", e)

    def _update(self, what: str, **fields):
        if self.claims and self.attempt:
            self._best_effort(what, self.claims.update_held, self.attempt, **fields)
        else:
            self._best_effort(what, self.db.update_task, self.task_id, **fields)

    def phase(self, status: str):
        self._update("status update", status=status)

    def segments(self, completed: int, total: int):
        self._update("progress update", progress=format_progress(completed, total))

    def segment_done(self, idx: int, total: int, text: str):
        if self.claims and self.attempt and not self.claims.holds(self.attempt):
            logger.warning("Not saving segment %d for task %s: claim no longer held",
                           idx, self.task_id)
            return
        self._best_effort("segment transcript save", self.db.save_segment_transcript,
                          self.task_id, idx, total, text)
