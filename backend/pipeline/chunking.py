"""Date-range chunking for fact computation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta


@dataclass(frozen=True)
class DateChunk:
    index: int
    start_date: date
    end_date: date

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def to_dict(self) -> dict:
        return {
            "chunk": self.index,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
        }


def chunk_date_range(start: date, end: date, chunk_days: int = 14) -> list[DateChunk]:
    """
    Split ``[start, end]`` (inclusive) into contiguous windows of ``chunk_days``.

    The last window is truncated at ``end``. An empty list when start > end.
    """
    if chunk_days < 1:
        raise ValueError("chunk_days must be >= 1")

    chunks: list[DateChunk] = []
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + timedelta(days=chunk_days - 1), end)
        chunks.append(DateChunk(index=len(chunks) + 1, start_date=cursor, end_date=chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks
