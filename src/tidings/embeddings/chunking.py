"""Deterministic word-boundary chunking.

A chunk is a window of at most ``chunk_size`` characters that ends on a word
boundary. The next window starts ``overlap`` characters before the previous
end, snapped forward to the start of a word, so no chunk ever begins or ends
mid-word. The only exception is a single word longer than the whole window,
which is hard-cut at ``chunk_size``.

For ``chunk_size=800, overlap=100`` a 2000 character text yields three chunks
starting at offsets 0, 700 and 1400 (modulo word snapping).
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

DEFAULT_CHUNK_SIZE = 800
DEFAULT_OVERLAP = 100


def content_hash(text: str) -> str:
    """sha256 hex digest of the chunk text, the per-owner dedup key."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Chunk:
    index: int
    start: int
    text: str
    content_hash: str


def _window_end(text: str, start: int, chunk_size: int) -> int:
    """Largest end <= start + chunk_size that falls on a word boundary."""
    n = len(text)
    end = min(start + chunk_size, n)
    if end >= n or text[end].isspace() or text[end - 1].isspace():
        return end
    cut = end
    while cut > start and not text[cut - 1].isspace():
        cut -= 1
    # A single word longer than the window: hard cut
    return cut if cut > start else end


def _next_start(text: str, prev_start: int, prev_end: int, overlap: int) -> int:
    n = len(text)
    start = max(prev_end - overlap, prev_start + 1)
    # Snap forward to the start of a word
    while start < prev_end and not text[start - 1].isspace():
        start += 1
    while start < n and text[start].isspace():
        start += 1
    return start


def chunk_text(
    text: str | None,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[Chunk]:
    """Split *text* into overlapping word-boundary chunks.

    Leading and trailing whitespace of the input is ignored; empty input gives
    no chunks. The same input and parameters always produce the same chunks
    and hashes.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be within [0, chunk_size)")
    if not text or not text.strip():
        return []

    text = text.strip()
    n = len(text)
    chunks: list[Chunk] = []
    start = 0
    while start < n:
        end = _window_end(text, start, chunk_size)
        piece = text[start:end].rstrip()
        if piece:
            chunks.append(
                Chunk(index=len(chunks), start=start, text=piece, content_hash=content_hash(piece))
            )
        if end >= n:
            break
        start = _next_start(text, start, end, overlap)
    return chunks
