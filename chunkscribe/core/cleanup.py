"""
Cleanup: delete processed inputs after publication, and local workspaces
on every exit path.

Workspaces live at <work_root>/<taskId>/<runId>; the run id is the claim's
correlation id, so the store tells which ones are still in use.
"""

import shutil
import logging
from pathlib import Path

from chunkscribe.core.blob_store import BlobStore
from chunkscribe.core.db_sqlite import Database
from chunkscribe.core.error_codes import CleanupError
from chunkscribe.core.models_sqlite import ChunkFile

logger = logging.getLogger(__name__)


def _cleanup_step(what: str, task_id: str, step):
    try:
        step()
    except Exception as e:
        raise CleanupError(f"Failed to delete {what} for task {task_id}: {e}") from e


def cleanup_task_inputs(blob: BlobStore, db: Database, task_id: str,
                        chunks: list[ChunkFile]) -> bool:
    """
    Delete a completed task's chunk objects, chunk rows and stored segment
    transcripts. Never raises; returns False if anything was left behind.
    """
    ok = True

    paths = []
    for c in chunks:
        path = blob.path_from_url(c.media_ref) if c.media_ref else None
        if path:
            paths.append(path)
        elif c.media_ref:
            logger.debug("Chunk %s is not in this bucket, leaving object: %s", c.id, c.media_ref)

    steps = [
        ("chunk objects", lambda: blob.delete(paths)),
        ("chunk rows", lambda: db.delete_chunk_files(task_id, [c.id for c in chunks])),
        ("segment transcripts", lambda: db.clear_segment_transcripts(task_id)),
    ]
    for what, step in steps:
        try:
            _cleanup_step(what, task_id, step)
        except CleanupError as e:
            ok = False
            logger.warning("%s", e)

    if ok:
        logger.info("Cleaned up %d chunk(s) for task %s", len(chunks), task_id)
    return ok


def workspace_path(work_root: Path, task_id: str, run_id: str) -> Path:
    return work_root / task_id / run_id


def cleanup_workspace(workspace: Path):
    """Remove a per-run working directory, and its task directory once empty."""
    if workspace.exists():
        try:
            shutil.rmtree(workspace)
            logger.debug("Deleted workspace: %s", workspace)
        except Exception as e:
            logger.warning("Failed to delete %s: %s", workspace, e)
            return
    _remove_if_empty(workspace.parent)


def _remove_if_empty(path: Path):
    if path.is_dir() and not any(path.iterdir()):
        path.rmdir()


def sweep_stale_workspaces(work_root: Path, db: Database) -> int:
    """
    Startup crash recovery: remove run directories whose run no longer
    holds a live claim. Workspaces of runs in progress on other worker
    processes sharing ``work_root`` are left alone.
    """
    if not work_root.exists():
        return 0
    removed = 0
    for task_dir in list(work_root.iterdir()):
        if not task_dir.is_dir():
            continue
        for run_dir in list(task_dir.iterdir()):
            if not run_dir.is_dir():
                continue
            if db.is_run_active(task_dir.name, run_dir.name):
                logger.debug("Keeping active workspace: %s", run_dir)
                continue
            cleanup_workspace(run_dir)
            removed += 1
        _remove_if_empty(task_dir)
    if removed:
        logger.info("Removed %d stale workspace(s) from %s", removed, work_root)
    return removed
