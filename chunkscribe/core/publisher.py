"""
Result publisher: uploads the merged transcript and marks the task done.
"""

import logging

from chunkscribe.core.blob_store import BlobStore, BlobStoreError
from chunkscribe.core.claims import ClaimManager
from chunkscribe.core.error_codes import ClaimConflict, PublishError
from chunkscribe.core.merge import merge_segment_texts
from chunkscribe.core.models_sqlite import ProcessingAttempt
from chunkscribe.core.constants import ErrorCode, RESULT_PREFIX, TaskStatus

logger = logging.getLogger(__name__)


def result_path(task_id: str) -> str:
    return f"{RESULT_PREFIX}/{task_id}.txt"


def publish_result(blob: BlobStore, claims: ClaimManager, attempt: ProcessingAttempt,
                   texts: list[str]) -> str:
    """
    Upload the merged transcript to result/<taskId>.txt, then set the
    task's result reference and COMPLETED status and drop its claim.
    Only the current holder may publish. Returns the published URL.
    """
    task_id = attempt.task_id
    text = merge_segment_texts(texts)
    if not text.strip():
        raise PublishError("Transcription result is empty", code=ErrorCode.EMPTY_TRANSCRIPT)

    if not claims.holds(attempt):
        raise ClaimConflict(f"task {task_id} was reclaimed before publishing "
                            f"(run {attempt.correlation_id})")

    path = result_path(task_id)
    try:
        url = blob.upload_bytes(path, text.encode('utf-8'), "text/plain; charset=utf-8")
    except BlobStoreError as e:
        raise PublishError(f"Failed to upload transcription result: {e}")

    claims.release(attempt, TaskStatus.COMPLETED, result_ref=url)
    logger.info("Published transcript for task %s: %s (%d chars)", task_id, url, len(text))
    return url
