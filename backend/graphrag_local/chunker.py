"""Whitespace-aware text chunker.

Splits a document into bounded character windows with overlap. Boundaries
are moved back to the nearest whitespace so no token is split, and every
chunk is an exact slice of the input. Because of that, the chunks plus their
start offsets reconstruct the original text (see ``merge_chunks``).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence


@dataclass(frozen=True)
class TextSpan:
    start: int
    end: int
    text: str


def estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))


class TextChunker:
    """Chunk large text documents into overlapping windows."""

    def __init__(self, window: int = 800, overlap: int = 100) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        if not 0 <= overlap < window:
            raise ValueError("overlap must satisfy 0 <= overlap < window")
        self.window = window
        self.overlap = overlap

    def chunk(self, text: str) -> Iterator[TextSpan]:
        """Yield overlapping spans of the input text.

        Args:
            text: The raw text to chunk. It is not stripped.

        Yields:
            ``TextSpan`` objects in left-to-right order.
        """
        n = len(text)
        start = 0
        while start < n:
            end = self._boundary(text, start)
            yield TextSpan(start=start, end=end, text=text[start:end])
            if end >= n:
                break
            start = self._next_start(text, start, end)

    def _boundary(self, text: str, start: int) -> int:
        target = start + self.window
        if target >= len(text):
            return len(text)
        # Walk back to the last whitespace inside the window; it stays on the left.
        for i in range(target - 1, start, -1):
            if text[i].isspace():
                return i + 1
        # One token longer than the window.
        return target

    def _next_start(self, text: str, start: int, end: int) -> int:
        if self.overlap == 0:
            return end
        candidate = max(start + 1, end - self.overlap)
        # Skip forward to just past a whitespace so the overlap starts on a token.
        for i in range(candidate, end):
            if text[i].isspace():
                if i + 1 < end:
                    return i + 1
                break
        return end


def merge_chunks(spans: Iterable[TextSpan] | Sequence[tuple[int, str]]) -> str:
    """Rebuild the source text from ordered spans, dropping the overlaps."""

    parts: list[str] = []
    covered = 0
    for span in spans:
        if isinstance(span, TextSpan):
            start, text = span.start, span.text
        else:
            start, text = span
        end = start + len(text)
        if end <= covered:
            continue
        parts.append(text[max(0, covered - start):])
        covered = end
    return "".join(parts)
