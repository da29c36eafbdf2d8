"""
Bounded-concurrency segment transcription.

Workers pull indices from a shared cursor and write each transcript into
its own slot of a pre-sized list, so the merged text follows segment order
no matter which call finishes first.
"""

import logging
import threading
from typing import Callable

from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.error_codes import TaskError, TranscriptionError
from chunkscribe.core.models_sqlite import Segment, TranscriptionTask
from chunkscribe.core.progress import ProgressSink, NullProgressSink, parse_progress
from chunkscribe.core.constants import CONCURRENCY

logger = logging.getLogger(__name__)

TranscribeFn = Callable[[Segment], str]


class _PoolState:
    """Cursor, completed counter and first error, all guarded by one lock."""

    def __init__(self, pending: list[Segment], completed: int):
        self.lock = threading.Lock()
        self.pending = pending
        self.cursor = 0
        self.completed = completed
        self.error: Exception | None = None

    def next_segment(self) -> Segment | None:
        with self.lock:
            if self.error is not None or self.cursor >= len(self.pending):
                return None
            seg = self.pending[self.cursor]
            self.cursor += 1
            return seg

    def fail(self, error: Exception):
        with self.lock:
            if self.error is None:
                self.error = error


def _transcribe_one(segment: Segment, transcribe: TranscribeFn, attempts: int) -> str:
    last: TaskError | None = None
    for attempt in range(1, attempts + 1):
        try:
            return transcribe(segment)
        except TaskError as e:
            last = e
        except Exception as e:
            last = TranscriptionError(f"{type(e).__name__}: {e}", index=segment.idx)
        if attempt < attempts:
            logger.warning("Segment %d failed (attempt %d/%d): %s",
                           segment.idx, attempt, attempts, last)

    if isinstance(last, TranscriptionError) and last.index is None:
        raise TranscriptionError(last.message, index=segment.idx, code=last.code)
    raise last


def transcribe_segments(segments: list[Segment], transcribe: TranscribeFn,
                        concurrency: int = CONCURRENCY,
                        sink: ProgressSink | None = None,
                        completed: dict[int, str] | None = None,
                        attempts: int = 1) -> list[str]:
    """
    Transcribe ``segments`` with at most ``concurrency`` calls in flight.

    ``completed`` maps already-finished indices to their text (resume);
    those indices are not sent again. The first failure stops workers from
    taking new segments and is re-raised once every worker has returned.
    Returns texts indexed like ``segments``.
    """
    sink = sink or NullProgressSink()
    total = len(segments)
    results: list[str | None] = [None] * total

    for idx, text in (completed or {}).items():
        if 0 <= idx < total:
            results[idx] = text

    pending = [s for s in segments if results[s.idx] is None]
    state = _PoolState(pending, completed=total - len(pending))
    sink.segments(state.completed, total)

    if pending and state.completed:
        logger.info("Resuming: %d/%d segment(s) already transcribed", state.completed, total)

    def worker():
        while True:
            seg = state.next_segment()
            if seg is None:
                return
            try:
                text = _transcribe_one(seg, transcribe, attempts)
            except Exception as e:
                state.fail(e)
                return
            results[seg.idx] = text
            sink.segment_done(seg.idx, total, text)
            with state.lock:
                state.completed += 1
                sink.segments(state.completed, total)

    n_workers = min(max(1, concurrency), len(pending))
    threads = [
        threading.Thread(target=worker, name=f"transcribe-{i}", daemon=True)
        for i in range(n_workers)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    if state.error is not None:
        raise state.error

    return [r or "" for r in results]


def load_resume_state(db: Database, task: TranscriptionTask, total: int) -> dict[int, str]:
    """
    Stored segment transcripts from an earlier run, trusted only when the
    persisted progress names the same segment count as this run.
    """
    parsed = parse_progress(task.progress)
    if parsed is None or parsed[1] != total:
        if parsed is not None:
            logger.info("Discarding stale progress %r for task %s (now %d segments)",
                        task.progress, task.id, total)
        db.clear_segment_transcripts(task.id)
        return {}

    stored = db.get_segment_transcripts(task.id, total)
    return {idx: text for idx, text in stored.items() if 0 <= idx < total}
