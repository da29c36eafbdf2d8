"""
Worker configuration manager.
Stores settings in a JSON file; environment variables override the file.
"""

import json
import logging
import os
from pathlib import Path

from chunkscribe.core.constants import (
    CONFIG_PATH, DB_PATH, WORK_ROOT, LOG_DIR, LOCAL_STORAGE_ROOT,
    DEFAULT_WORKER_ID, DEFAULT_BUCKET, SEGMENT_SEC, CONCURRENCY,
    POLL_INTERVAL_SEC, POLL_BATCH_SIZE, DOWNLOAD_TIMEOUT_SEC,
    FFMPEG_TIMEOUT_SEC, TRANSCRIBE_TIMEOUT_SEC, SPEECH_API_BASE, SPEECH_MODEL,
    AssemblyMode, StorageBackend,
)

# Validation bounds
_POLL_INTERVAL_MIN = 1
_POLL_INTERVAL_MAX = 3600
_CONCURRENCY_MIN = 1
_CONCURRENCY_MAX = 16
_SEGMENT_SEC_MIN = 5
_SEGMENT_SEC_MAX = 1800
_TIMEOUT_MIN = 1
_TIMEOUT_MAX = 3600

ENV_PREFIX = "CHUNKSCRIBE_"
ENV_SPEECH_API_KEY = "CHUNKSCRIBE_SPEECH_API_KEY"
ENV_STORAGE_KEY = "CHUNKSCRIBE_STORAGE_KEY"

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'db_path': str(DB_PATH),
    'work_root': str(WORK_ROOT),
    'log_dir': str(LOG_DIR),
    'log_level': 'INFO',
    'worker_id': DEFAULT_WORKER_ID,
    'poll_interval_sec': POLL_INTERVAL_SEC,
    'poll_batch_size': POLL_BATCH_SIZE,
    'concurrency': CONCURRENCY,
    'segment_sec': SEGMENT_SEC,
    'download_timeout_sec': DOWNLOAD_TIMEOUT_SEC,
    'ffmpeg_timeout_sec': FFMPEG_TIMEOUT_SEC,
    'transcribe_timeout_sec': TRANSCRIBE_TIMEOUT_SEC,
    'lease_sec': None,
    'max_attempts': 0,
    'segment_attempts': 1,
    'assembly_mode': AssemblyMode.AUTO,
    'storage_backend': StorageBackend.LOCAL,
    'storage_url': '',
    'bucket': DEFAULT_BUCKET,
    'local_storage_root': str(LOCAL_STORAGE_ROOT),
    'speech_api_base': SPEECH_API_BASE,
    'speech_model': SPEECH_MODEL,
    'keep_workspace_on_failure': False,
}

_BOUNDED_INTS = {
    'poll_interval_sec': (_POLL_INTERVAL_MIN, _POLL_INTERVAL_MAX),
    'concurrency': (_CONCURRENCY_MIN, _CONCURRENCY_MAX),
    'segment_sec': (_SEGMENT_SEC_MIN, _SEGMENT_SEC_MAX),
    'download_timeout_sec': (_TIMEOUT_MIN, _TIMEOUT_MAX),
    'ffmpeg_timeout_sec': (_TIMEOUT_MIN, _TIMEOUT_MAX),
    'transcribe_timeout_sec': (_TIMEOUT_MIN, _TIMEOUT_MAX),
    'poll_batch_size': (1, 100),
    'segment_attempts': (1, 10),
    'max_attempts': (0, 100),
}


class WorkerConfig:
    """Manages worker configuration stored as JSON, with env overrides."""

    def __init__(self, config_path: Path | None = None, environ: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._environ = os.environ if environ is None else environ
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults, then apply env."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)
        self._apply_env()

    def _apply_env(self):
        for key in _DEFAULTS:
            env_key = ENV_PREFIX + key.upper()
            if env_key in self._environ:
                self._data[key] = self._validate(key, self._environ[env_key])

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _BOUNDED_INTS:
            lo, hi = _BOUNDED_INTS[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r — using default", key, value)
                return _DEFAULTS[key]
            return max(lo, min(hi, value))

        if key == 'lease_sec':
            if value in (None, '', 'none', 'None', 0, '0'):
                return None
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid lease_sec %r — leases disabled", value)
                return None
            return value if value > 0 else None

        if key == 'assembly_mode':
            if value not in (AssemblyMode.AUTO, AssemblyMode.BINARY, AssemblyMode.TRANSCODE):
                logger.warning("Invalid assembly_mode %r — using auto", value)
                return AssemblyMode.AUTO

        if key == 'storage_backend':
            if value not in (StorageBackend.LOCAL, StorageBackend.SUPABASE):
                logger.warning("Invalid storage_backend %r — using local", value)
                return StorageBackend.LOCAL

        if key == 'keep_workspace_on_failure':
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    # Secrets come from the environment only and are never saved.

    @property
    def speech_api_key(self) -> str | None:
        return self._environ.get(ENV_SPEECH_API_KEY) or None

    @property
    def storage_key(self) -> str | None:
        return self._environ.get(ENV_STORAGE_KEY) or None

    @property
    def db_path(self) -> Path:
        return Path(self._data['db_path'])

    @property
    def work_root(self) -> Path:
        return Path(self._data['work_root'])

    @property
    def log_dir(self) -> Path:
        return Path(self._data['log_dir'])

    @property
    def worker_id(self) -> str:
        return self._data['worker_id']

    @property
    def lease_sec(self) -> float | None:
        return self._data.get('lease_sec')
