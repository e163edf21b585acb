"""
Plain-text chunk splitter.

Cuts text into overlapping windows of roughly ``chunk_size`` characters.
A window ends at the last paragraph break that fits, else the last
sentence end, else the last whitespace, and only falls back to a hard
character cut when a single word is longer than the window.  When no
break fits past the previous window, the window is stretched to the end
of the word crossing the limit.

Every span is an exact slice of the input (``text[start:end]``) and spans
are ordered, so the regions between consecutive ends rebuild the input.
"""

from __future__ import annotations

import bisect
import re
from dataclasses import dataclass

from ..errors import ConfigurationError
from ..models import Chunk, ChunkMetadata

_PARAGRAPH_RE = re.compile(r"\n[ \t]*\n\s*")
_SENTENCE_RE = re.compile(r"[.!?][\"')\]]*\s+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextSpan:
    """A chunk of text with its half-open character offsets."""
    content: str
    start: int
    end: int


def _last_break(pattern: re.Pattern, text: str, lo: int, hi: int) -> int:
    """Return the end offset of the last *pattern* match ending in ``(lo, hi]``, or -1."""
    best = -1
    for m in pattern.finditer(text, lo, hi):
        if m.end() > lo:
            best = m.end()
    return best


class TextSplitter:
    """
    Paragraph/sentence aware splitter.

    Parameters
    ----------
    chunk_size:
        Target window size in characters.
    chunk_overlap:
        Characters shared between consecutive windows.  Must be smaller
        than *chunk_size*.
    """

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 100) -> None:
        if chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0:
            raise ConfigurationError(f"chunk_overlap must be >= 0, got {chunk_overlap}")
        if chunk_overlap >= chunk_size:
            raise ConfigurationError(
                f"chunk_overlap ({chunk_overlap}) must be smaller than "
                f"chunk_size ({chunk_size})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def split(self, text: str) -> list[TextSpan]:
        """Split *text* into ordered, overlapping spans."""
        if not text:
            return []

        n = len(text)
        spans: list[TextSpan] = []
        pos = 0
        end = 0
        while pos < n:
            end = self._find_end(text, pos, end)
            spans.append(TextSpan(text[pos:end], pos, end))
            if end >= n:
                break
            pos = self._next_start(text, pos, end)
        return spans

    def _find_end(self, text: str, pos: int, prev_end: int = 0) -> int:
        limit = pos + self.chunk_size
        if limit >= len(text):
            return len(text)
        # Do not accept a break so early that the window degenerates, and
        # always end past the previous window.
        floor = max(pos + self.chunk_size // 4, prev_end)
        for pattern in (_PARAGRAPH_RE, _SENTENCE_RE, _WHITESPACE_RE):
            cut = _last_break(pattern, text, pos, limit)
            if cut > floor:
                return cut
        cut = _last_break(_WHITESPACE_RE, text, pos, limit)
        if cut > max(pos, prev_end):
            return cut
        # The word straddling the limit fits in a window: end after it.
        word_start = limit
        while word_start > pos and not text[word_start - 1].isspace():
            word_start -= 1
        word_end = limit
        while word_end < len(text) and not text[word_end].isspace():
            word_end += 1
        if word_end - word_start <= self.chunk_size:
            return word_end
        # A single word longer than the window: hard cut.
        return limit

    def _next_start(self, text: str, pos: int, end: int) -> int:
        if self.chunk_overlap == 0:
            return end
        start = end - self.chunk_overlap
        if start <= pos:
            return end
        # Snap forward to the beginning of a word.
        while start < end and not text[start - 1].isspace():
            start += 1
        while start < end and text[start].isspace():
            start += 1
        return start

    def chunk_text(self, text: str, source_file: str) -> list[Chunk]:
        """Split *text* and wrap each span in a :class:`Chunk` with line numbers."""
        line_starts = [0] + [m.end() for m in re.finditer("\n", text)]
        chunks: list[Chunk] = []
        for span in self.split(text):
            last_char = max(span.start, span.end - 1)
            chunks.append(Chunk(
                content=span.content,
                metadata=ChunkMetadata(
                    source_file=source_file,
                    start_line=bisect.bisect_right(line_starts, span.start),
                    end_line=bisect.bisect_right(line_starts, last_char),
                ),
            ))
        return chunks
