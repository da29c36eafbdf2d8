"""
Diagnostics: structured failure reports and tool checks.
"""

import json
import logging
import shutil
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone

from chunkscribe.core.blob_store import BlobStore
from chunkscribe.core.claims import ClaimManager
from chunkscribe.core.error_codes import ClaimConflict, TaskError
from chunkscribe.core.models_sqlite import ProcessingAttempt
from chunkscribe.core.transcoder import get_ffmpeg_version, FFMPEG, FFPROBE
from chunkscribe.core.constants import (
    APP_VERSION, ERRORS_PREFIX, ErrorCode, TaskStatus, MAX_ERROR_MESSAGE_LEN,
)

logger = logging.getLogger(__name__)


@dataclass
class ErrorReport:
    task_id: str
    phase: str
    name: str
    message: str
    code: str | None = None
    worker_id: str | None = None
    correlation_id: str | None = None
    timings: dict = field(default_factory=dict)
    server_version: str = APP_VERSION
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_exception(cls, task_id: str, phase: str, error: BaseException, **kwargs) -> "ErrorReport":
        if isinstance(error, TaskError):
            message, code = error.message, error.code
            phase = error.phase or phase
        else:
            message, code = str(error), ErrorCode.UNEXPECTED
        return cls(task_id=task_id, phase=phase, name=type(error).__name__,
                   message=message[:MAX_ERROR_MESSAGE_LEN], code=code, **kwargs)


def error_report_path(report: ErrorReport) -> str:
    stamp = report.created_at.replace(':', '-').replace('.', '-').replace('+', '_')
    return f"{ERRORS_PREFIX}/{report.task_id}-{stamp}.json"


def upload_error_report(blob: BlobStore, report: ErrorReport) -> str:
    """Store the report as JSON under errors/ and return its URL."""
    payload = json.dumps(asdict(report), indent=2).encode('utf-8')
    return blob.upload_bytes(error_report_path(report), payload, "application/json")


def report_failure(claims: ClaimManager, blob: BlobStore, attempt: ProcessingAttempt,
                   phase: str, error: BaseException, **report_fields) -> str | None:
    """
    Release the claim as FAILED so a later poll can retry, then try to
    upload a diagnostic report. The caller still propagates ``error``.
    A task that another run has reclaimed is left to that run.
    Returns the report URL, or None if the upload did not happen.
    """
    task_id = attempt.task_id
    report_fields.setdefault('worker_id', attempt.worker_id)
    report_fields.setdefault('correlation_id', attempt.correlation_id)
    report = ErrorReport.from_exception(task_id, phase, error, **report_fields)

    try:
        claims.release(attempt, TaskStatus.FAILED,
                       error_code=report.code, error_message=report.message)
    except ClaimConflict as e:
        logger.warning("Not releasing task %s: %s", task_id, e.message)
    except Exception as e:
        logger.error("Failed to release claim on task %s: %s", task_id, e, exc_info=True)

    try:
        url = upload_error_report(blob, report)
        logger.info("Uploaded error report for task %s: %s", task_id, url)
        return url
    except Exception as e:
        logger.error("Failed to upload error report for task %s: %s", task_id, e)
        return None


def check_tools() -> dict:
    """Locate ffmpeg/ffprobe and gather version info."""
    return {
        "ffmpeg_path": shutil.which(FFMPEG),
        "ffprobe_path": shutil.which(FFPROBE),
        "ffmpeg_version": get_ffmpeg_version(),
    }
