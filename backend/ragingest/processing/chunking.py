"""
Text Splitter  —  Paragraph-First Fixed-Window Chunking
═══════════════════════════════════════════════════════

Algorithm
─────────
  1. Split the document into paragraphs at blank-line boundaries.
  2. Paragraph longer than chunk_size:
       flush the pending chunk, then slide a window of width chunk_size
       with step (chunk_size − chunk_overlap) across the paragraph.
       The last window may be shorter.
  3. Paragraph that would overflow the pending chunk:
       flush the pending chunk, start a new one with this paragraph.
  4. Otherwise append the paragraph, joined by a blank line.
  5. Flush the remainder.

Every emitted chunk is trimmed; whitespace-only chunks are dropped.

Properties
──────────
  • Pure: same input → same output, no shared state.
  • split("") == []
  • Consecutive windows of one long paragraph share exactly chunk_overlap
    characters (before trimming), so stripping the overlap prefix from
    every window after the first re-creates the paragraph.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

DEFAULT_CHUNK_SIZE    = 1000   # characters
DEFAULT_CHUNK_OVERLAP = 200    # characters shared by consecutive windows

PARAGRAPH_SEPARATOR = "\n\n"
_PARAGRAPH_RE = re.compile(r"\n\s*\n")


# ---------------------------------------------------------------------------
# Core splitter
# ---------------------------------------------------------------------------

class TextSplitter:
    """
    Stateless text splitter.

    Usage:
        splitter = TextSplitter(chunk_size=1000, chunk_overlap=200)
        chunks   = splitter.split(document_text)
    """

    def __init__(
        self,
        chunk_size:    int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        _validate(chunk_size, chunk_overlap)
        self.chunk_size    = chunk_size
        self.chunk_overlap = chunk_overlap

    def split(
        self,
        text:          str,
        chunk_size:    int | None = None,
        chunk_overlap: int | None = None,
    ) -> list[str]:
        """
        Split `text` into ordered chunks. Per-call sizes override the
        instance defaults.
        """
        size    = self.chunk_size if chunk_size is None else chunk_size
        overlap = self.chunk_overlap if chunk_overlap is None else chunk_overlap
        chunks  = split_text(text, size, overlap)

        logger.debug(
            "TextSplitter | chars=%d chunks=%d size=%d overlap=%d",
            len(text or ""), len(chunks), size, overlap,
        )
        return chunks


def split_text(text: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """Functional form of TextSplitter.split."""
    _validate(chunk_size, chunk_overlap)
    if not text:
        return []

    chunks:  list[str] = []
    current: str = ""

    def flush(piece: str) -> None:
        piece = piece.strip()
        if piece:
            chunks.append(piece)

    for paragraph in _PARAGRAPH_RE.split(text):
        if len(paragraph) > chunk_size:
            if current:
                flush(current)
                current = ""
            for window in _windows(paragraph, chunk_size, chunk_overlap):
                flush(window)

        elif current and len(current) + len(PARAGRAPH_SEPARATOR) + len(paragraph) > chunk_size:
            flush(current)
            current = paragraph

        elif current:
            current += PARAGRAPH_SEPARATOR + paragraph

        else:
            current = paragraph

    if current:
        flush(current)

    return chunks


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _windows(paragraph: str, chunk_size: int, chunk_overlap: int) -> list[str]:
    """
    Fixed-width windows with overlap. Stops once a window reaches the end
    of the paragraph, so no window is a pure suffix of the previous one.
    """
    step = chunk_size - chunk_overlap
    windows: list[str] = []
    start = 0
    while True:
        end = min(start + chunk_size, len(paragraph))
        windows.append(paragraph[start:end])
        if end >= len(paragraph):
            break
        start += step
    return windows


def _validate(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if chunk_overlap < 0 or chunk_overlap >= chunk_size:
        raise ValueError(
            f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap} (chunk_size={chunk_size})"
        )
