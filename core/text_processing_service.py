# core/text_processing_service.py
"""Split long text into overlapping chunks before embedding.

Two strategies are provided:
- Character budget with sentence/paragraph boundary preference (`chunk_text`).
- Token budget using `tiktoken` (`TokenChunker.chunk`).
"""

from collections.abc import Iterator

import structlog
import tiktoken

logger = structlog.get_logger(__name__)

DEFAULT_ENCODING = "cl100k_base"
SENTENCE_BREAKS = (".", "!", "?", "\n")


def iter_chunk_spans(text: str, chunk_size: int = 500, overlap: int = 50) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` offsets covering ``text`` with ``overlap`` characters shared.

    A cut point is moved back to the nearest sentence terminator or newline when one
    exists in the second half of the window; otherwise the window is cut hard.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = max(0, min(overlap, chunk_size - 1))

    length = len(text)
    start = 0
    while start < length:
        end = min(start + chunk_size, length)
        if end < length:
            window = text[start:end]
            last_break = max(window.rfind(mark) for mark in SENTENCE_BREAKS)
            if last_break > chunk_size * 0.5:
                end = start + last_break + 1
        yield start, end
        if end >= length:
            break
        # Always advance, even when the boundary search shrank the window below overlap.
        start = max(end - overlap, start + 1)


def chunk_text(text: str, chunk_size: int = 500, overlap: int = 50) -> list[str]:
    """Return trimmed, non-empty chunks of ``text``.

    Text that already fits the budget comes back as a single trimmed chunk.
    """
    stripped = text.strip()
    if not stripped:
        return []
    if len(stripped) <= chunk_size:
        return [stripped]

    chunks = []
    for start, end in iter_chunk_spans(stripped, chunk_size, overlap):
        chunk = stripped[start:end].strip()
        if chunk:
            chunks.append(chunk)
    return chunks


class TokenChunker:
    """Chunk text by token count with a shared `tiktoken` encoder."""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING):
        self.encoding = tiktoken.get_encoding(encoding_name)

    def count_tokens(self, text: str) -> int:
        return len(self.encoding.encode(text))

    def chunk(self, text: str, chunk_size: int = 800, overlap: int = 200) -> list[str]:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        overlap = max(0, min(overlap, chunk_size - 1))
        tokens = self.encoding.encode(text)
        if not tokens:
            return []

        chunks = []
        step = chunk_size - overlap
        for start in range(0, len(tokens), step):
            piece = self.encoding.decode(tokens[start : start + chunk_size]).strip()
            if piece:
                chunks.append(piece)
            if start + chunk_size >= len(tokens):
                break
        logger.debug(f"Token chunker produced {len(chunks)} chunks", tokens=len(tokens))
        return chunks


def count_words(text: str) -> int:
    return len(text.split())
