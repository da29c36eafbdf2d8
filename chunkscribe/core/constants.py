"""
Shared constants for chunkscribe.
Shared constants imported by every other module.
"""

import os
import pathlib
import socket

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "chunkscribe"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_DATA_DIR = pathlib.Path(os.environ.get("CHUNKSCRIBE_HOME", HOME / ".chunkscribe"))
DB_PATH = APP_DATA_DIR / "tasks.db"
CONFIG_PATH = APP_DATA_DIR / "config.json"
LOG_DIR = APP_DATA_DIR / "logs"
WORK_ROOT = APP_DATA_DIR / "work"
LOCAL_STORAGE_ROOT = APP_DATA_DIR / "storage"

DEFAULT_WORKER_ID = f"{socket.gethostname()}-{os.getpid()}"

# ── Task status values ────────────────────────────────────────────────
class TaskStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DOWNLOADING = "PROCESSING:DOWNLOADING"
    TRANSCRIBING = "PROCESSING:TRANSCRIBING"
    UPLOADING = "PROCESSING:UPLOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

TERMINAL_STATUSES = {TaskStatus.COMPLETED}

# ── Pipeline phases (used in diagnostics) ─────────────────────────────
class Phase:
    CLAIM = "claim"
    DOWNLOAD = "download"
    ASSEMBLE = "assemble"
    SEGMENT = "segment"
    TRANSCRIBE = "transcribe"
    UPLOAD = "upload"
    CLEANUP = "cleanup"

# ── Trigger names ─────────────────────────────────────────────────────
class Trigger:
    EVENT = "event"
    POLL = "poll"

# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Benign
    CLAIM_CONFLICT = "ERR_CLAIM_CONFLICT"

    # Fatal
    DOWNLOAD_FAILED = "ERR_DOWNLOAD_FAILED"
    ASSEMBLY_FAILED = "ERR_ASSEMBLY_FAILED"
    NO_AUDIO_STREAM = "ERR_NO_AUDIO_STREAM"
    SEGMENTATION_FAILED = "ERR_SEGMENTATION_FAILED"
    NO_SEGMENTS = "ERR_NO_SEGMENTS"
    TRANSCRIBE_FAILED = "ERR_TRANSCRIBE_FAILED"
    TRANSCRIBE_TIMEOUT = "ERR_TRANSCRIBE_TIMEOUT"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    EMPTY_TRANSCRIPT = "ERR_EMPTY_TRANSCRIPT"
    PUBLISH_FAILED = "ERR_PUBLISH_FAILED"
    TRANSCODER_FAILED = "ERR_TRANSCODER_FAILED"

    # Non-fatal
    CLEANUP_FAILED = "ERR_CLEANUP_FAILED"
    PROGRESS_PERSIST_FAILED = "ERR_PROGRESS_PERSIST_FAILED"

    UNEXPECTED = "ERR_UNEXPECTED"

RETRYABLE_ERRORS = {
    ErrorCode.DOWNLOAD_FAILED,
    ErrorCode.TRANSCRIBE_FAILED,
    ErrorCode.TRANSCRIBE_TIMEOUT,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.PUBLISH_FAILED,
}

# ── Audio pipeline defaults ───────────────────────────────────────────
SEGMENT_SEC = 60
CONCURRENCY = 3

# Normalization target
NORM_CHANNELS = 1
NORM_SAMPLE_RATE = 16000
NORM_BITRATE = "64k"
NORM_FORMAT = "mp3"
INTERMEDIATE_NAME = "intermediate.wav"

class AssemblyMode:
    AUTO = "auto"
    BINARY = "binary"
    TRANSCODE = "transcode"

# ── Timeouts (seconds) ────────────────────────────────────────────────
DOWNLOAD_TIMEOUT_SEC = 120
FFMPEG_TIMEOUT_SEC = 600
FFPROBE_TIMEOUT_SEC = 30
TRANSCRIBE_TIMEOUT_SEC = 180
UPLOAD_TIMEOUT_SEC = 60

# ── Scheduling ────────────────────────────────────────────────────────
POLL_INTERVAL_SEC = 30
POLL_BATCH_SIZE = 5

# ── Blob store layout ─────────────────────────────────────────────────
RESULT_PREFIX = "result"
ERRORS_PREFIX = "errors"
DEFAULT_BUCKET = "transcriptions"

class StorageBackend:
    LOCAL = "local"
    SUPABASE = "supabase"

# ── Progress ──────────────────────────────────────────────────────────
PROGRESS_FORMAT = "{completed}/{total} segments"
PROGRESS_PATTERN = r'^\s*(\d+)\s*/\s*(\d+)\s+segments\s*$'

# ── Speech recognition ────────────────────────────────────────────────
SPEECH_API_BASE = "https://api.openai.com/v1"
SPEECH_MODEL = "whisper-1"
AUTO_LANGUAGE = "auto"

# ── Misc ──────────────────────────────────────────────────────────────
TRANSCRIPT_SEPARATOR = "\n\n"
MAX_ERROR_MESSAGE_LEN = 2000
