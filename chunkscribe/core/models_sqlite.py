"""
SQLite data models (plain dataclasses) for chunkscribe.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class TranscriptionTask:
    id: str                          # UUID
    language: Optional[str] = None   # ISO code, "auto" or None
    status: str = "PENDING"
    progress: Optional[str] = None   # "<completed>/<total> segments"
    result_ref: Optional[str] = None # published transcript URL
    processing_correlation_id: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None
    lease_expires_at: Optional[str] = None
    attempt_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None


@dataclass
class ChunkFile:
    id: str
    task_id: str
    media_ref: Optional[str]
    chunk_index: Optional[int] = None
    total_chunks: Optional[str] = None  # free-form hint: "8", "8/8", "of 8"
    created_at: Optional[str] = None


@dataclass
class Segment:
    """One fixed-duration slice of the assembled media (never persisted)."""
    idx: int
    path: Path


@dataclass
class ProcessingAttempt:
    """Who holds a task's claim and until when."""
    task_id: str
    worker_id: str
    correlation_id: Optional[str]
    claimed_at: str
    lease_expires_at: Optional[str] = None
