"""
Merge per-segment transcripts into a single text.
"""

import logging

from chunkscribe.core.constants import TRANSCRIPT_SEPARATOR

logger = logging.getLogger(__name__)


def merge_segment_texts(texts: list[str]) -> str:
    """
    Join segment texts in index order. Blank segments (silence) are
    dropped rather than leaving runs of empty paragraphs.
    """
    parts = [t.strip() for t in texts if t and t.strip()]
    skipped = len(texts) - len(parts)
    if skipped:
        logger.debug("Skipped %d empty segment transcript(s)", skipped)
    return TRANSCRIPT_SEPARATOR.join(parts)
