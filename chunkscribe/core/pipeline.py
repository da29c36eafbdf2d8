"""
Task processor: the claim-and-process routine shared by both triggers.
Runs one claimed task through download → assemble → segment → transcribe
→ publish → cleanup.
"""

import logging
import time
from pathlib import Path

from chunkscribe.core.assemble import download_chunks_ordered, assemble_media
from chunkscribe.core.blob_store import BlobStore
from chunkscribe.core.claims import ClaimManager
from chunkscribe.core.cleanup import cleanup_task_inputs, cleanup_workspace, workspace_path
from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.diagnostics import report_failure
from chunkscribe.core.error_codes import DownloadError, TaskError
from chunkscribe.core.models_sqlite import ProcessingAttempt, Segment, TranscriptionTask
from chunkscribe.core.progress import StoreProgressSink
from chunkscribe.core.publisher import publish_result
from chunkscribe.core.segmenter import segment_media
from chunkscribe.core.speech_client import TranscriptionRequest
from chunkscribe.core.worker_pool import transcribe_segments, load_resume_state
from chunkscribe.core.constants import (
    TaskStatus, Phase, WORK_ROOT, DEFAULT_WORKER_ID, SEGMENT_SEC, CONCURRENCY,
    DOWNLOAD_TIMEOUT_SEC, FFMPEG_TIMEOUT_SEC, TRANSCRIBE_TIMEOUT_SEC,
    SPEECH_MODEL, AssemblyMode,
)

logger = logging.getLogger(__name__)


class TaskProcessor:
    """
    Processes tasks it manages to claim. Safe to call from several threads:
    the claim decides which caller proceeds.
    """

    def __init__(self, db: Database, blob: BlobStore, claims: ClaimManager,
                 speech, config: dict | None = None):
        self.db = db
        self.blob = blob
        self.claims = claims
        self.speech = speech
        self.config = config or {}

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def worker_id(self) -> str:
        return self.config.get('worker_id', DEFAULT_WORKER_ID)

    @property
    def work_root(self) -> Path:
        return Path(self.config.get('work_root', str(WORK_ROOT)))

    @property
    def segment_sec(self) -> int:
        return self.config.get('segment_sec', SEGMENT_SEC)

    @property
    def concurrency(self) -> int:
        return self.config.get('concurrency', CONCURRENCY)

    @property
    def segment_attempts(self) -> int:
        return self.config.get('segment_attempts', 1)

    @property
    def assembly_mode(self) -> str:
        return self.config.get('assembly_mode', AssemblyMode.AUTO)

    @property
    def keep_workspace_on_failure(self) -> bool:
        return self.config.get('keep_workspace_on_failure', False)

    def _timeout(self, key: str, default: int) -> int:
        return self.config.get(key, default)

    # ── Entry point ───────────────────────────────────────────────────

    def claim_and_process(self, task_id: str, trigger: str) -> bool:
        """
        Claim ``task_id`` and, if this caller won, process it.
        Returns False when another worker holds the task. Fatal pipeline
        errors propagate after the claim has been released.
        """
        attempt = self.claims.claim(task_id, f"{self.worker_id}/{trigger}")
        if attempt is None:
            return False

        logger.info("Processing task %s (trigger=%s, run=%s)",
                    task_id, trigger, attempt.correlation_id)
        self.process_claimed(attempt)
        return True

    # ── Pipeline ──────────────────────────────────────────────────────

    def process_claimed(self, attempt: ProcessingAttempt) -> str:
        """Run the full pipeline for a task this worker already holds."""
        workspace = workspace_path(self.work_root, attempt.task_id, attempt.correlation_id)
        timings: dict[str, float] = {}
        phase = Phase.CLAIM
        failed = False
        started = time.monotonic()

        def mark(name: str):
            nonlocal started
            now = time.monotonic()
            timings[name] = round(now - started, 3)
            started = now

        try:
            task = self.db.get_task(attempt.task_id)
            if task is None:
                raise TaskError(f"task {attempt.task_id} disappeared after it was claimed")
            sink = StoreProgressSink(self.db, task.id, self.claims, attempt)
            logger.debug("Task %s language=%s", task.id, task.language or "auto")

            phase = Phase.DOWNLOAD
            chunks = self.db.get_chunk_files(task.id)
            if not chunks:
                raise DownloadError("task has no chunk files")

            # ── Download + assemble ──
            sink.phase(TaskStatus.DOWNLOADING)
            local = download_chunks_ordered(
                chunks, workspace / "dl", self.blob,
                timeout=self._timeout('download_timeout_sec', DOWNLOAD_TIMEOUT_SEC),
            )
            mark(Phase.DOWNLOAD)

            phase = Phase.ASSEMBLE
            ffmpeg_timeout = self._timeout('ffmpeg_timeout_sec', FFMPEG_TIMEOUT_SEC)
            merged = assemble_media(local, workspace / "assembled",
                                    mode=self.assembly_mode, timeout=ffmpeg_timeout)
            mark(Phase.ASSEMBLE)

            # ── Segment ──
            phase = Phase.SEGMENT
            segments = segment_media(merged, workspace / "segments",
                                     segment_sec=self.segment_sec, timeout=ffmpeg_timeout)
            mark(Phase.SEGMENT)

            # ── Transcribe ──
            phase = Phase.TRANSCRIBE
            sink.phase(TaskStatus.TRANSCRIBING)
            done = load_resume_state(self.db, task, len(segments))
            texts = transcribe_segments(
                segments,
                lambda seg: self._transcribe_segment(task, seg),
                concurrency=self.concurrency,
                sink=sink,
                completed=done,
                attempts=self.segment_attempts,
            )
            mark(Phase.TRANSCRIBE)

            # ── Publish ──
            phase = Phase.UPLOAD
            sink.phase(TaskStatus.UPLOADING)
            url = publish_result(self.blob, self.claims, attempt, texts)
            mark(Phase.UPLOAD)

        except Exception as e:
            failed = True
            report_failure(self.claims, self.blob, attempt, phase, e, timings=timings)
            raise
        finally:
            if not (failed and self.keep_workspace_on_failure):
                cleanup_workspace(workspace)

        # Only reached after the task went COMPLETED in this run.
        cleanup_task_inputs(self.blob, self.db, task.id, chunks)
        return url

    def _transcribe_segment(self, task: TranscriptionTask, segment: Segment) -> str:
        request = TranscriptionRequest(
            file_path=segment.path,
            model=self.config.get('speech_model', SPEECH_MODEL),
            language=task.language,
        )
        return self.speech.transcribe(
            request,
            timeout=self._timeout('transcribe_timeout_sec', TRANSCRIBE_TIMEOUT_SEC),
        )
