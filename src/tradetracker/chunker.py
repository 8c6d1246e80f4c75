"""Split a time span into API-legal chunks."""

from __future__ import annotations

from typing import List

from tradetracker.models import TimeRange


def chunk_range(start: int, end: int, max_span: int) -> List[TimeRange]:
    """Cover the inclusive range ``[start, end]`` with chunks of at most ``max_span`` ms.

    Chunks are returned oldest first. Each chunk starts one millisecond after the
    previous one ends, so the chunks neither overlap nor leave gaps. A zero-width
    span (``start == end``) yields a single chunk.
    """
    start = int(start)
    end = int(end)
    max_span = int(max_span)
    if max_span <= 0:
        raise ValueError(f"max_span must be positive, got {max_span}")
    if end < start:
        raise ValueError(f"end {end} precedes start {start}")
    chunks: List[TimeRange] = []
    cursor = start
    while cursor <= end:
        chunk_end = min(cursor + max_span - 1, end)
        chunks.append(TimeRange(cursor, chunk_end))
        cursor = chunk_end + 1
    return chunks
