#!/usr/bin/env python3
"""
chunkscribe worker — main entry point.
Runs the event listener and poller until SIGINT/SIGTERM.
"""

import sys
import os
import logging
import signal
import threading
import traceback
import argparse
from pathlib import Path
from datetime import datetime

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from chunkscribe.core.constants import APP_NAME, APP_VERSION, StorageBackend
from chunkscribe.core.config import WorkerConfig, ENV_SPEECH_API_KEY, ENV_STORAGE_KEY

logger = logging.getLogger(APP_NAME)


def setup_logging(config: WorkerConfig):
    """Log to stderr and to <log_dir>/worker.log."""
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, str(config.get('log_level', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
            logging.FileHandler(log_dir / "worker.log", encoding="utf-8"),
        ],
    )


def check_prerequisites():
    """Check that ffmpeg and ffprobe are available, exit if not."""
    from chunkscribe.core.diagnostics import check_tools
    tools = check_tools()
    missing = []
    if not tools["ffmpeg_path"]:
        missing.append("ffmpeg")
    if not tools["ffprobe_path"]:
        missing.append("ffprobe")

    if missing:
        logger.error("Missing tools: %s. PATH = %s", ", ".join(missing), os.environ.get("PATH", ""))
        sys.exit(1)

    logger.info("ffmpeg found at: %s (%s)", tools["ffmpeg_path"], tools["ffmpeg_version"])
    logger.info("ffprobe found at: %s", tools["ffprobe_path"])


def build_blob_store(config: WorkerConfig):
    from chunkscribe.core.blob_store import LocalBlobStore, SupabaseBlobStore
    if config.get('storage_backend') == StorageBackend.SUPABASE:
        if not config.get('storage_url') or not config.storage_key:
            raise RuntimeError(f"storage_url and {ENV_STORAGE_KEY} are required for the supabase backend")
        return SupabaseBlobStore(config.get('storage_url'), config.get('bucket'), config.storage_key)
    return LocalBlobStore(Path(config.get('local_storage_root')))


def run(config: WorkerConfig):
    from chunkscribe.core.db_sqlite import Database
    from chunkscribe.core.claims import ClaimManager
    from chunkscribe.core.cleanup import sweep_stale_workspaces
    from chunkscribe.core.pipeline import TaskProcessor
    from chunkscribe.core.scheduler import Scheduler
    from chunkscribe.core.speech_client import SpeechClient

    if not config.speech_api_key:
        raise RuntimeError(f"{ENV_SPEECH_API_KEY} is not set")

    settings = config.as_dict()
    db = Database(config.db_path)
    sweep_stale_workspaces(config.work_root, db)

    blob = build_blob_store(config)
    claims = ClaimManager(db, lease_sec=config.lease_sec)
    speech = SpeechClient(config.speech_api_key,
                          api_base=settings['speech_api_base'],
                          timeout=settings['transcribe_timeout_sec'])
    processor = TaskProcessor(db, blob, claims, speech, settings)
    scheduler = Scheduler(db, processor, settings)

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        scheduler.stop(timeout=30)
        db.close()


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Chunked media transcription worker")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    args = parser.parse_args(argv)

    config = WorkerConfig(args.config)
    setup_logging(config)

    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Worker id: %s", config.worker_id)
    logger.info("Python: %s", sys.executable)
    logger.info("Project root: %s", PROJECT_ROOT)
    logger.info("=" * 60)

    try:
        check_prerequisites()
        run(config)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        logger.critical("Fatal error: %s\n%s", error_msg, traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    main()
