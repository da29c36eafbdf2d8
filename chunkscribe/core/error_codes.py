"""
Standardised error handling for chunkscribe.
"""

from chunkscribe.core.constants import ErrorCode, Phase, RETRYABLE_ERRORS


class TaskError(Exception):
    """Raised when a task encounters a known error condition."""

    default_code = ErrorCode.UNEXPECTED
    default_phase: str | None = None

    def __init__(self, message: str, code: str | None = None,
                 phase: str | None = None, retryable: bool | None = None):
        self.code = code or self.default_code
        self.message = message
        self.phase = phase or self.default_phase
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (self.code in RETRYABLE_ERRORS)
        super().__init__(f"[{self.code}] {message}")


class ClaimConflict(TaskError):
    """Another worker or trigger already holds the task."""
    default_code = ErrorCode.CLAIM_CONFLICT
    default_phase = Phase.CLAIM


class TranscoderError(TaskError):
    default_code = ErrorCode.TRANSCODER_FAILED


class DownloadError(TaskError):
    default_code = ErrorCode.DOWNLOAD_FAILED
    default_phase = Phase.DOWNLOAD

    def __init__(self, message: str, index: int | None = None, **kwargs):
        self.index = index
        if index is not None:
            message = f"chunk index={index}: {message}"
        super().__init__(message, **kwargs)


class AssemblyError(TaskError):
    default_code = ErrorCode.ASSEMBLY_FAILED
    default_phase = Phase.ASSEMBLE


class SegmentationError(TaskError):
    default_code = ErrorCode.SEGMENTATION_FAILED
    default_phase = Phase.SEGMENT


class TranscriptionError(TaskError):
    default_code = ErrorCode.TRANSCRIBE_FAILED
    default_phase = Phase.TRANSCRIBE

    def __init__(self, message: str, index: int | None = None, **kwargs):
        self.index = index
        if index is not None:
            message = f"segment {index}: {message}"
        super().__init__(message, **kwargs)


class PublishError(TaskError):
    default_code = ErrorCode.PUBLISH_FAILED
    default_phase = Phase.UPLOAD


class CleanupError(TaskError):
    default_code = ErrorCode.CLEANUP_FAILED
    default_phase = Phase.CLEANUP


class ProgressPersistError(TaskError):
    default_code = ErrorCode.PROGRESS_PERSIST_FAILED


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
