"""
External transcoder invocation (ffmpeg / ffprobe).
- Safe subprocess execution (argument arrays only, always with a timeout)
- Audio stream probing
- Concatenation and segmentation command builders
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from chunkscribe.core.error_codes import TranscoderError
from chunkscribe.core.constants import (
    NORM_CHANNELS, NORM_SAMPLE_RATE, NORM_BITRATE,
    FFMPEG_TIMEOUT_SEC, FFPROBE_TIMEOUT_SEC,
)

logger = logging.getLogger(__name__)

FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"


@dataclass
class AudioStreamInfo:
    codec_name: str
    sample_rate_hz: int | None
    channels: int | None
    duration_sec: float | None


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    # Force shell=False: drop any caller-supplied value, then set it once
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def run_ffmpeg(args: list[str], timeout: int = FFMPEG_TIMEOUT_SEC,
               what: str = "ffmpeg") -> subprocess.CompletedProcess:
    """Run ffmpeg with the given arguments; raise TranscoderError on failure."""
    full = [FFMPEG, "-hide_banner", "-loglevel", "error", "-y", *args]
    try:
        result = run_subprocess_capture(full, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise TranscoderError(f"{what} timed out after {timeout}s")
    except OSError as e:
        raise TranscoderError(f"{what} could not be started: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise TranscoderError(f"{what} failed (rc={result.returncode}): {stderr[-300:] or 'unknown error'}")
    return result


# ── Probing ───────────────────────────────────────────────────────────

def probe_audio_stream(path: Path, timeout: int = FFPROBE_TIMEOUT_SEC) -> AudioStreamInfo:
    """Return info on the first audio stream; raise if there is none."""
    args = [
        FFPROBE,
        "-hide_banner",
        "-loglevel", "error",
        "-print_format", "json",
        "-show_streams",
        "-select_streams", "a",
        str(path),
    ]
    try:
        result = run_subprocess_capture(args, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise TranscoderError(f"ffprobe timed out after {timeout}s")
    except OSError as e:
        raise TranscoderError(f"ffprobe could not be started: {e}")

    if result.returncode != 0:
        raise TranscoderError(f"ffprobe failed (rc={result.returncode}): {(result.stderr or '')[:300]}")

    try:
        parsed = json.loads(result.stdout or "{}")
    except json.JSONDecodeError:
        raise TranscoderError("ffprobe returned non-JSON output")

    streams = parsed.get('streams') or []
    if not streams:
        raise TranscoderError("No audio streams detected by ffprobe")

    s = streams[0]
    sample_rate = s.get('sample_rate')
    duration = s.get('duration')
    return AudioStreamInfo(
        codec_name=s.get('codec_name') or "",
        sample_rate_hz=int(sample_rate) if sample_rate else None,
        channels=s.get('channels'),
        duration_sec=float(duration) if duration else None,
    )


# ── Assembly ──────────────────────────────────────────────────────────

def transcode_concat(inputs: list[Path], output: Path,
                     sample_rate: int = NORM_SAMPLE_RATE,
                     channels: int = NORM_CHANNELS,
                     timeout: int = FFMPEG_TIMEOUT_SEC) -> Path:
    """
    Decode every input, resample to a common mono/fixed-rate format and
    join them with the concat filter. Handles heterogeneous encodings.
    """
    if not inputs:
        raise TranscoderError("No inputs to concatenate")

    args: list[str] = []
    for p in inputs:
        args.extend(["-i", str(p)])

    layout = "mono" if channels == 1 else "stereo"
    parts = []
    for i in range(len(inputs)):
        parts.append(
            f"[{i}:a:0]aresample={sample_rate},"
            f"aformat=sample_fmts=s16:channel_layouts={layout}[a{i}]"
        )
    joined = ''.join(f"[a{i}]" for i in range(len(inputs)))
    graph = ';'.join(parts) + f";{joined}concat=n={len(inputs)}:v=0:a=1[out]"

    args.extend([
        "-filter_complex", graph,
        "-map", "[out]",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        str(output),
    ])
    run_ffmpeg(args, timeout=timeout, what="ffmpeg transcode-concat")
    return output


# ── Segmentation ──────────────────────────────────────────────────────

def segment_direct(input_path: Path, output_pattern: Path, segment_sec: int,
                   sample_rate: int = NORM_SAMPLE_RATE,
                   channels: int = NORM_CHANNELS,
                   timeout: int = FFMPEG_TIMEOUT_SEC):
    """
    Extract the first audio stream, downmix and split into fixed-duration
    segments with re-encoding. ``-map 0:a:0`` keeps audio-only inputs working.
    """
    args = [
        "-i", str(input_path),
        "-map", "0:a:0",
        "-vn",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "-codec:a", "libmp3lame",
        "-b:a", NORM_BITRATE,
        "-f", "segment",
        "-segment_time", str(segment_sec),
        "-reset_timestamps", "1",
        str(output_pattern),
    ]
    run_ffmpeg(args, timeout=timeout, what="ffmpeg segment")


def reencode_intermediate(input_path: Path, output_path: Path,
                          sample_rate: int = NORM_SAMPLE_RATE,
                          channels: int = NORM_CHANNELS,
                          timeout: int = FFMPEG_TIMEOUT_SEC) -> Path:
    """Re-encode the whole input into one stable PCM file with clean timestamps."""
    args = [
        "-fflags", "+genpts",
        "-i", str(input_path),
        "-map", "0:a:0",
        "-vn",
        "-ac", str(channels),
        "-ar", str(sample_rate),
        "-codec:a", "pcm_s16le",
        str(output_path),
    ]
    run_ffmpeg(args, timeout=timeout, what="ffmpeg re-encode")
    return output_path


def segment_copy(input_path: Path, output_pattern: Path, segment_sec: int,
                 timeout: int = FFMPEG_TIMEOUT_SEC):
    """Split an already-normalized file into segments without re-encoding."""
    args = [
        "-i", str(input_path),
        "-map", "0:a:0",
        "-codec:a", "copy",
        "-f", "segment",
        "-segment_time", str(segment_sec),
        "-reset_timestamps", "1",
        str(output_pattern),
    ]
    run_ffmpeg(args, timeout=timeout, what="ffmpeg segment-copy")


# ── Diagnostics ───────────────────────────────────────────────────────

def get_ffmpeg_version() -> str:
    """Return ffmpeg version string, or error message."""
    try:
        result = run_subprocess_capture([FFMPEG, "-version"], timeout=10)
        if result.returncode == 0:
            return result.stdout.strip().splitlines()[0]
        return f"Error (rc={result.returncode})"
    except FileNotFoundError:
        return "Not installed"
    except Exception as e:
        return f"Error: {e}"
