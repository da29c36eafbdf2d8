#!/usr/bin/env python3
"""
End-to-end tests for the task processor and the scheduler triggers.
ffmpeg stages are replaced by fakes; storage is a LocalBlobStore.
"""

import sys
import time
import tempfile
import threading
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from chunkscribe.core.constants import TaskStatus, ErrorCode, Trigger
from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.blob_store import BlobStoreError, LocalBlobStore
from chunkscribe.core.claims import ClaimManager
from chunkscribe.core.error_codes import ClaimConflict, PublishError, TranscriptionError
from chunkscribe.core.models_sqlite import Segment
from chunkscribe.core.pipeline import TaskProcessor
from chunkscribe.core.publisher import publish_result as real_publish_result
from chunkscribe.core.scheduler import EventListener, Poller, Scheduler


def fake_assemble(paths, work_dir, mode=None, timeout=None):
    return paths[0]


def make_fake_segment(count):
    def fake_segment(merged, out_dir, segment_sec=None, timeout=None):
        out_dir.mkdir(parents=True, exist_ok=True)
        segments = []
        for i in range(count):
            path = out_dir / f"seg_{i:05d}.mp3"
            path.write_bytes(b"segment")
            segments.append(Segment(idx=i, path=path))
        return segments
    return fake_segment


class FakeSpeech:
    """Records requests; optionally fails on one segment."""

    def __init__(self, fail_on=None, error=None, delay=0.0, reply=None):
        self.fail_on = fail_on
        self.reply = reply
        self.error = error
        self.delay = delay
        self.requests = []
        self._lock = threading.Lock()

    def transcribe(self, request, timeout=None):
        with self._lock:
            self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        name = request.file_path.name
        if self.fail_on is not None and name == f"seg_{self.fail_on:05d}.mp3":
            raise self.error
        if self.reply is not None:
            return self.reply
        return f"text of {name}"

    @property
    def names(self):
        with self._lock:
            return sorted(r.file_path.name for r in self.requests)


class _PipelineTestCase(unittest.TestCase):

    segment_count = 1

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        root = Path(self.tmpdir.name)
        self.work_root = root / "work"
        self.db = Database(root / "tasks.db")
        self.blob = LocalBlobStore(root / "storage")
        self.claims = ClaimManager(self.db)
        self.speech = FakeSpeech()

        patches = [
            mock.patch("chunkscribe.core.pipeline.assemble_media", side_effect=fake_assemble),
            mock.patch("chunkscribe.core.pipeline.segment_media",
                       side_effect=make_fake_segment(self.segment_count)),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    def processor(self, **config):
        settings = {'worker_id': 'test-worker', 'work_root': str(self.work_root), 'concurrency': 2}
        settings.update(config)
        return TaskProcessor(self.db, self.blob, self.claims, self.speech, settings)

    def create_task(self, chunks=1, language="en", total_hint=None):
        task_id = f"task-{time.monotonic_ns()}"
        refs = []
        for i in range(chunks):
            refs.append({
                "media_ref": self.blob.upload_bytes(f"uploads/{task_id}/chunk-{i}.m4a",
                                                    b"audio-%d" % i, "audio/mp4"),
                "chunk_index": i,
                "total_chunks": total_hint,
            })
        return self.db.create_task(language=language, chunks=refs, task_id=task_id)

    def workspaces(self):
        if not self.work_root.exists():
            return []
        return list(self.work_root.iterdir())


class TestSingleChunk(_PipelineTestCase):
    """One chunk, explicit language."""

    def test_completes_and_cleans_inputs(self):
        task = self.create_task(chunks=1, language="en")
        processor = self.processor()

        self.assertTrue(processor.claim_and_process(task.id, Trigger.EVENT))

        done = self.db.get_task(task.id)
        self.assertEqual(done.status, TaskStatus.COMPLETED)
        self.assertTrue(done.result_ref)
        self.assertIsNone(done.claimed_by)
        self.assertTrue(self.blob.exists(f"result/{task.id}.txt"))
        text = (Path(self.tmpdir.name) / "storage" / "result" / f"{task.id}.txt").read_text()
        self.assertEqual(text, "text of seg_00000.mp3")

        self.assertEqual(self.db.count_chunk_files(task.id), 0)
        self.assertEqual(self.blob.list(f"uploads/{task.id}"), [])
        self.assertEqual(self.workspaces(), [])
        self.assertEqual(self.speech.requests[0].language, "en")

    def test_second_claim_is_noop(self):
        task = self.create_task()
        processor = self.processor()
        self.assertTrue(processor.claim_and_process(task.id, Trigger.EVENT))
        self.assertFalse(processor.claim_and_process(task.id, Trigger.POLL))
        self.assertEqual(len(self.speech.requests), 1)


class TestMultiChunk(_PipelineTestCase):
    """Three chunks, five segments, two calls in flight."""

    segment_count = 5

    def test_progress_and_order(self):
        task = self.create_task(chunks=3, language="auto")
        seen_progress = []

        def recording_publish(blob, claims, attempt, texts):
            seen_progress.append(self.db.get_task(attempt.task_id).progress)
            return real_publish_result(blob, claims, attempt, texts)

        with mock.patch("chunkscribe.core.pipeline.publish_result", side_effect=recording_publish):
            self.processor(concurrency=2).claim_and_process(task.id, Trigger.POLL)

        self.assertEqual(seen_progress, ["5/5 segments"])
        done = self.db.get_task(task.id)
        self.assertEqual(done.status, TaskStatus.COMPLETED)
        text = (Path(self.tmpdir.name) / "storage" / "result" / f"{task.id}.txt").read_text()
        expected = "\n\n".join(f"text of seg_{i:05d}.mp3" for i in range(5))
        self.assertEqual(text, expected)
        self.assertTrue(all(r.language == "auto" for r in self.speech.requests))

    def test_chunks_downloaded_in_index_order(self):
        task = self.create_task(chunks=3)
        captured = []

        def capture(paths, work_dir, mode=None, timeout=None):
            captured.extend(p.read_bytes() for p in paths)
            return paths[0]

        with mock.patch("chunkscribe.core.pipeline.assemble_media", side_effect=capture):
            self.processor().claim_and_process(task.id, Trigger.EVENT)
        self.assertEqual(captured, [b"audio-0", b"audio-1", b"audio-2"])

    def test_resume_skips_finished_segments(self):
        task = self.create_task(chunks=1)
        for i in range(3):
            self.db.save_segment_transcript(task.id, i, 5, f"earlier {i}")
        self.db.update_task(task.id, progress="3/5 segments", status=TaskStatus.FAILED)

        self.processor().claim_and_process(task.id, Trigger.POLL)

        self.assertEqual(self.speech.names, ["seg_00003.mp3", "seg_00004.mp3"])
        text = (Path(self.tmpdir.name) / "storage" / "result" / f"{task.id}.txt").read_text()
        self.assertTrue(text.startswith("earlier 0\n\nearlier 1\n\nearlier 2"))
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.COMPLETED)


class TestFailure(_PipelineTestCase):
    """A segment call times out mid-run."""

    segment_count = 3

    def test_timeout_releases_and_reports(self):
        task = self.create_task(chunks=3)
        self.speech = FakeSpeech(
            fail_on=1,
            error=TranscriptionError("speech request timed out after 600s",
                                     code=ErrorCode.TRANSCRIBE_TIMEOUT),
        )

        with self.assertRaises(TranscriptionError):
            self.processor(concurrency=1).claim_and_process(task.id, Trigger.EVENT)

        failed = self.db.get_task(task.id)
        self.assertEqual(failed.status, TaskStatus.FAILED)
        self.assertIsNone(failed.claimed_by)
        self.assertIsNone(failed.result_ref)
        self.assertEqual(failed.error_code, ErrorCode.TRANSCRIBE_TIMEOUT)
        self.assertIn("segment 1", failed.error_message)

        reports = self.blob.list("errors/")
        self.assertEqual(len(reports), 1)
        self.assertTrue(reports[0].startswith(f"errors/{task.id}-"))
        self.assertTrue(reports[0].endswith(".json"))

        self.assertEqual(self.workspaces(), [])
        self.assertEqual(self.db.count_chunk_files(task.id), 3)
        self.assertEqual(len(self.blob.list(f"uploads/{task.id}")), 3)
        self.assertFalse(self.blob.exists(f"result/{task.id}.txt"))

        # released task is picked up again on the next sweep
        self.assertEqual([t.id for t in self.db.list_claimable_tasks()], [task.id])

    def test_keep_workspace_on_failure(self):
        task = self.create_task()
        self.speech = FakeSpeech(fail_on=0, error=TranscriptionError("boom"))
        with self.assertRaises(TranscriptionError):
            self.processor(keep_workspace_on_failure=True).claim_and_process(task.id, Trigger.EVENT)
        self.assertEqual(len(self.workspaces()), 1)

    def test_missing_chunk_object(self):
        task = self.db.create_task(chunks=[{
            "media_ref": (Path(self.tmpdir.name) / "nowhere.m4a").as_uri(),
            "chunk_index": 0,
        }])
        with self.assertRaises(Exception):
            self.processor().claim_and_process(task.id, Trigger.EVENT)
        failed = self.db.get_task(task.id)
        self.assertEqual(failed.status, TaskStatus.FAILED)
        self.assertEqual(failed.error_code, ErrorCode.DOWNLOAD_FAILED)
        self.assertIn("index=0", failed.error_message)


class TestPublishAndCleanupPaths(_PipelineTestCase):
    """Error and non-fatal paths around publication."""

    def test_cleanup_failure_keeps_task_completed(self):
        task = self.create_task()
        with mock.patch.object(self.blob, "delete", side_effect=BlobStoreError("permission denied")):
            with self.assertLogs("chunkscribe.core.cleanup", level="WARNING") as logs:
                self.assertTrue(self.processor().claim_and_process(task.id, Trigger.EVENT))
        self.assertTrue(any("chunk objects" in line for line in logs.output))
        done = self.db.get_task(task.id)
        self.assertEqual(done.status, TaskStatus.COMPLETED)
        self.assertTrue(done.result_ref)
        self.assertEqual(len(self.blob.list(f"uploads/{task.id}")), 1)

    def test_empty_transcript_fails_task(self):
        task = self.create_task()
        self.speech = FakeSpeech(reply="   ")
        with self.assertRaises(PublishError) as ctx:
            self.processor().claim_and_process(task.id, Trigger.EVENT)
        self.assertEqual(ctx.exception.code, ErrorCode.EMPTY_TRANSCRIPT)

        failed = self.db.get_task(task.id)
        self.assertEqual(failed.status, TaskStatus.FAILED)
        self.assertIsNone(failed.claimed_by)
        self.assertIsNone(failed.result_ref)
        self.assertEqual(failed.error_code, ErrorCode.EMPTY_TRANSCRIPT)
        self.assertFalse(self.blob.exists(f"result/{task.id}.txt"))
        self.assertEqual(self.db.count_chunk_files(task.id), 1)

    def test_result_upload_failure(self):
        task = self.create_task()
        with mock.patch.object(self.blob, "upload_bytes", side_effect=BlobStoreError("returned 503")):
            with self.assertRaises(PublishError) as ctx:
                self.processor().claim_and_process(task.id, Trigger.POLL)
        self.assertEqual(ctx.exception.code, ErrorCode.PUBLISH_FAILED)
        failed = self.db.get_task(task.id)
        self.assertEqual(failed.status, TaskStatus.FAILED)
        self.assertIsNone(failed.claimed_by)
        self.assertEqual(failed.error_code, ErrorCode.PUBLISH_FAILED)
        self.assertEqual(self.db.count_chunk_files(task.id), 1)

    def test_report_upload_failure_keeps_original_error(self):
        task = self.create_task()
        self.speech = FakeSpeech(
            fail_on=0,
            error=TranscriptionError("timed out", code=ErrorCode.TRANSCRIBE_TIMEOUT),
        )
        with mock.patch("chunkscribe.core.diagnostics.upload_error_report",
                        side_effect=BlobStoreError("bucket offline")):
            with self.assertLogs("chunkscribe.core.diagnostics", level="ERROR"):
                with self.assertRaises(TranscriptionError) as ctx:
                    self.processor().claim_and_process(task.id, Trigger.EVENT)
        self.assertEqual(ctx.exception.code, ErrorCode.TRANSCRIBE_TIMEOUT)
        failed = self.db.get_task(task.id)
        self.assertEqual(failed.status, TaskStatus.FAILED)
        self.assertEqual(failed.error_code, ErrorCode.TRANSCRIBE_TIMEOUT)
        self.assertEqual(self.blob.list("errors/"), [])

    def test_store_error_right_after_claim_releases(self):
        task = self.create_task()
        with mock.patch.object(self.db, "get_task", side_effect=RuntimeError("store unavailable")):
            with self.assertRaises(RuntimeError):
                self.processor().claim_and_process(task.id, Trigger.EVENT)
        failed = self.db.get_task(task.id)
        self.assertEqual(failed.status, TaskStatus.FAILED)
        self.assertIsNone(failed.claimed_by)
        self.assertEqual(failed.error_code, ErrorCode.UNEXPECTED)
        self.assertEqual([t.id for t in self.db.list_claimable_tasks()], [task.id])


class ReclaimingSpeech(FakeSpeech):
    """Lets another worker take the task over while the first segment is in flight."""

    def __init__(self, db, claims, task_id):
        super().__init__()
        self.db = db
        self.claims = claims
        self.task_id = task_id
        self.other = None

    def transcribe(self, request, timeout=None):
        if self.other is None:
            self.db.update_task(self.task_id, lease_expires_at="2000-01-01T00:00:00+00:00")
            self.other = self.claims.claim(self.task_id, "other-worker/poll")
        return super().transcribe(request, timeout)


class TestLeaseTakeover(_PipelineTestCase):
    """A run whose lease was taken over must not touch the new holder's claim."""

    def test_reclaimed_task_is_not_published(self):
        self.claims = ClaimManager(self.db, lease_sec=60)
        task = self.create_task()
        self.speech = ReclaimingSpeech(self.db, self.claims, task.id)

        with self.assertRaises(ClaimConflict):
            self.processor().claim_and_process(task.id, Trigger.EVENT)

        other = self.speech.other
        self.assertIsNotNone(other)
        held = self.db.get_task(task.id)
        self.assertEqual(held.claimed_by, "other-worker/poll")
        self.assertEqual(held.processing_correlation_id, other.correlation_id)
        self.assertEqual(held.status, TaskStatus.PROCESSING)
        self.assertIsNone(held.result_ref)
        self.assertIsNone(held.error_code)
        self.assertFalse(self.blob.exists(f"result/{task.id}.txt"))
        self.assertEqual(self.db.count_chunk_files(task.id), 1)
        self.assertEqual(self.db.get_segment_transcripts(task.id, 1), {})
        self.assertIsNone(self.claims.claim(task.id, "third-worker"))


class TestScheduler(_PipelineTestCase):
    """Event and poll triggers share one claim."""

    segment_count = 2

    def test_concurrent_triggers_process_once(self):
        self.speech = FakeSpeech(delay=0.05)
        processor = self.processor()
        task = self.create_task(chunks=1)
        listener = EventListener(self.db, processor)
        poller = Poller(self.db, processor, interval_sec=3600)

        barrier = threading.Barrier(2)
        outcome = {}

        def via_event():
            barrier.wait()
            outcome['event'] = 1 if listener.handle(task.id) else 0

        def via_poll():
            barrier.wait()
            outcome['poll'] = poller.poll_once()

        threads = [threading.Thread(target=via_event), threading.Thread(target=via_poll)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(outcome['event'] + outcome['poll'], 1)
        self.assertEqual(self.speech.names, ["seg_00000.mp3", "seg_00001.mp3"])
        done = self.db.get_task(task.id)
        self.assertEqual(done.status, TaskStatus.COMPLETED)
        self.assertEqual(done.attempt_count, 1)

    def test_poller_picks_up_missed_insert(self):
        task = self.create_task()
        poller = Poller(self.db, self.processor(), interval_sec=3600)
        self.assertEqual(poller.poll_once(), 1)
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.COMPLETED)
        self.assertEqual(poller.poll_once(), 0)

    def test_incomplete_upload_waits(self):
        task = self.create_task(chunks=1, total_hint="of 3")
        listener = EventListener(self.db, self.processor())
        self.assertFalse(listener.handle(task.id))
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.PENDING)
        self.assertEqual(self.speech.requests, [])

    def test_event_listener_failure_is_contained(self):
        task = self.create_task()
        self.speech = FakeSpeech(fail_on=0, error=TranscriptionError("boom"))
        listener = EventListener(self.db, self.processor())
        with self.assertLogs("chunkscribe.core.scheduler", level="ERROR"):
            self.assertFalse(listener.handle(task.id))
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.FAILED)

    def test_listener_processes_inserts(self):
        listener = EventListener(self.db, self.processor())
        listener.start()
        try:
            task = self.create_task()
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if self.db.get_task(task.id).status == TaskStatus.COMPLETED:
                    break
                time.sleep(0.02)
        finally:
            listener.stop(timeout=5)
        self.assertEqual(self.db.get_task(task.id).status, TaskStatus.COMPLETED)
        self.assertFalse(listener.is_running())

    def test_scheduler_start_stop(self):
        scheduler = Scheduler(self.db, self.processor(), {'poll_interval_sec': 3600})
        scheduler.start()
        self.assertTrue(scheduler.is_running())
        scheduler.stop(timeout=5)
        self.assertFalse(scheduler.is_running())


if __name__ == "__main__":
    unittest.main()
