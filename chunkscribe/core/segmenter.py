"""
Fixed-duration segmentation using ffmpeg.
Direct segmentation first; if that fails, re-encode to a clean intermediate
and split it by stream copy.
"""

import logging
import shutil
from pathlib import Path

from chunkscribe.core.error_codes import SegmentationError, TranscoderError
from chunkscribe.core.models_sqlite import Segment
from chunkscribe.core.transcoder import segment_direct, reencode_intermediate, segment_copy
from chunkscribe.core.constants import (
    ErrorCode, SEGMENT_SEC, FFMPEG_TIMEOUT_SEC, INTERMEDIATE_NAME, NORM_FORMAT,
)

logger = logging.getLogger(__name__)


def collect_segments(out_dir: Path, pattern: str = "seg_*") -> list[Segment]:
    """Segments on disk, ordered by the zero-padded index in their name."""
    files = sorted(p for p in out_dir.glob(pattern) if p.is_file() and p.stat().st_size > 0)
    return [Segment(idx=i, path=p) for i, p in enumerate(files)]


def _reset_dir(path: Path):
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


def segment_media(input_path: Path, out_dir: Path,
                  segment_sec: int = SEGMENT_SEC,
                  timeout: int = FFMPEG_TIMEOUT_SEC) -> list[Segment]:
    """
    Split ``input_path`` into ordered segments of ``segment_sec`` seconds.
    Raises SegmentationError carrying both causes if both strategies fail,
    or if nothing was produced.
    """
    _reset_dir(out_dir)

    try:
        segment_direct(input_path, out_dir / f"seg_%05d.{NORM_FORMAT}", segment_sec,
                       timeout=timeout)
        segments = collect_segments(out_dir)
    except TranscoderError as primary:
        logger.warning("Direct segmentation failed, using re-encode fallback: %s", primary.message)
        segments = _segment_fallback(input_path, out_dir, segment_sec, timeout, primary)

    if not segments:
        raise SegmentationError("no segments produced", code=ErrorCode.NO_SEGMENTS)

    logger.info("Created %d segment(s) of %ds in %s", len(segments), segment_sec, out_dir)
    return segments


def _segment_fallback(input_path: Path, out_dir: Path, segment_sec: int,
                      timeout: int, primary: TranscoderError) -> list[Segment]:
    _reset_dir(out_dir)
    intermediate = out_dir.parent / INTERMEDIATE_NAME
    try:
        reencode_intermediate(input_path, intermediate, timeout=timeout)
        segment_copy(intermediate, out_dir / "seg_%05d.wav", segment_sec, timeout=timeout)
    except TranscoderError as fallback:
        raise SegmentationError(
            f"primary: {primary.message} | fallback: {fallback.message}"
        )
    finally:
        if intermediate.exists():
            intermediate.unlink()

    logger.info("Fallback segmentation succeeded for %s", input_path.name)
    return collect_segments(out_dir)
