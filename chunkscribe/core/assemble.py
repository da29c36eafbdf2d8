"""
Media assembly: download a task's chunks in order and join them into one
validated audio file.
"""

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

from chunkscribe.core.blob_store import BlobStore, BlobStoreError
from chunkscribe.core.error_codes import AssemblyError, DownloadError, TranscoderError
from chunkscribe.core.models_sqlite import ChunkFile
from chunkscribe.core.transcoder import probe_audio_stream, transcode_concat
from chunkscribe.core.constants import (
    AssemblyMode, ErrorCode, DOWNLOAD_TIMEOUT_SEC, FFMPEG_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

_DEFAULT_CHUNK_EXT = ".m4a"
_COPY_BUF_BYTES = 1024 * 1024


@dataclass
class UploadCompletion:
    expected: int | None
    received: int
    complete: bool


def detect_upload_completion(chunks: list[ChunkFile]) -> UploadCompletion:
    """
    Compare received chunks with the largest total-count hint.
    Hints are free-form ("8", "8/8", "of 8"); the last number wins.
    With no usable hint the upload is taken as complete.
    """
    expected = None
    for c in chunks:
        raw = c.total_chunks
        if not raw or not str(raw).strip():
            continue
        numbers = re.findall(r'\d+', str(raw))
        if numbers:
            last = int(numbers[-1])
            if last > 0:
                expected = max(expected or 0, last)

    received = len(chunks)
    complete = expected is None or received >= expected
    return UploadCompletion(expected=expected, received=received, complete=complete)


def order_chunks(chunks: list[ChunkFile]) -> list[ChunkFile]:
    """Explicit chunk_index first; chunks without one follow by upload time."""
    return sorted(
        chunks,
        key=lambda c: (
            c.chunk_index is None,
            c.chunk_index if c.chunk_index is not None else 0,
            c.created_at or "",
        ),
    )


def _chunk_suffix(media_ref: str) -> str:
    suffix = PurePosixPath(urlparse(media_ref).path).suffix
    return suffix if suffix and len(suffix) <= 6 else _DEFAULT_CHUNK_EXT


def download_chunks_ordered(chunks: list[ChunkFile], dest_dir: Path, blob: BlobStore,
                            timeout: int = DOWNLOAD_TIMEOUT_SEC) -> list[Path]:
    """
    Download chunks sequentially in ordinal order. Every file must be
    non-empty; failures name the chunk position.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    local = []

    for i, chunk in enumerate(order_chunks(chunks)):
        if not chunk.media_ref:
            raise DownloadError("chunk has no media reference", index=i)

        dest = dest_dir / f"part-{i:05d}{_chunk_suffix(chunk.media_ref)}"
        try:
            blob.download_to(chunk.media_ref, dest, timeout=timeout)
        except BlobStoreError as e:
            raise DownloadError(str(e), index=i)

        if not dest.is_file() or dest.stat().st_size <= 0:
            raise DownloadError("downloaded chunk is empty", index=i)
        local.append(dest)

    logger.info("Downloaded %d chunk(s) to %s", len(local), dest_dir)
    return local


def concat_binary(paths: list[Path], output: Path) -> int:
    """Append chunk files byte-for-byte in order. Returns total bytes written."""
    if not paths:
        raise AssemblyError("No input chunks to concatenate")

    output.parent.mkdir(parents=True, exist_ok=True)
    total = 0
    with open(output, 'wb') as out:
        for i, p in enumerate(paths):
            if not p.is_file() or p.stat().st_size <= 0:
                raise AssemblyError(f"Chunk file is empty or not a file: index={i}")
            with open(p, 'rb') as f:
                shutil.copyfileobj(f, out, _COPY_BUF_BYTES)
            total += p.stat().st_size
    return total


def _validate(path: Path, timeout: int):
    info = probe_audio_stream(path, timeout=min(timeout, 60))
    logger.info("Audio stream validated: codec=%s rate=%s channels=%s duration=%s",
                info.codec_name, info.sample_rate_hz, info.channels, info.duration_sec)
    return info


def assemble_media(paths: list[Path], work_dir: Path,
                   mode: str = AssemblyMode.AUTO,
                   timeout: int = FFMPEG_TIMEOUT_SEC) -> Path:
    """
    Join downloaded chunks into one file that has an audio stream.

    binary:    raw concatenation, for chunks of one continuous encoding
    transcode: decode/resample each chunk and concat through a filter graph
    auto:      binary first, transcode if the result does not validate
    """
    if not paths:
        raise AssemblyError("No chunks to assemble")

    work_dir.mkdir(parents=True, exist_ok=True)
    errors = []

    if mode in (AssemblyMode.BINARY, AssemblyMode.AUTO):
        binary_out = work_dir / f"merged{paths[0].suffix or _DEFAULT_CHUNK_EXT}"
        total = concat_binary(paths, binary_out)
        if total <= 0:
            raise AssemblyError("Merged file is empty after concatenation")
        try:
            _validate(binary_out, timeout)
            return binary_out
        except TranscoderError as e:
            errors.append(f"binary: {e.message}")
            if mode == AssemblyMode.BINARY:
                raise AssemblyError(e.message, code=ErrorCode.NO_AUDIO_STREAM)
            logger.warning("Binary concatenation did not validate (%s); transcoding instead", e.message)

    transcoded_out = work_dir / "merged.wav"
    try:
        transcode_concat(paths, transcoded_out, timeout=timeout)
        _validate(transcoded_out, timeout)
    except TranscoderError as e:
        errors.append(f"transcode: {e.message}")
        raise AssemblyError("; ".join(errors))
    return transcoded_out
