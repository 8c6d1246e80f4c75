"""Chunked walk over an account's history.

The fetcher splits the requested span into chunks, pages through every
supported record kind inside each chunk (oldest chunk first), merges the result
with any prior cache and makes the final write to the cache store. A run is
driven through an explicit state machine::

    IDLE -> FETCHING_CHUNK(i) -> MERGING -> COMPLETE | PARTIAL | FAILED

``data_range.latest`` only advances once every page of a chunk has been
fetched, so it always marks the end of a gap-free prefix and a later run can
resume right after it.

A requested start older than the cached prefix is fetched first, as a walk over
the gap, and only moves ``data_range.earliest`` back once that walk finished.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional

from tradetracker.cache_store import CacheStore
from tradetracker.chunker import chunk_range
from tradetracker.exceptions import (
    FetchCancelledError,
    HistoryFetchError,
    InvalidStateTransition,
    PaginationError,
    RemoteApiError,
)
from tradetracker.exchanges.base import BaseHistoryClient
from tradetracker.metrics import compute_performance_metrics
from tradetracker.models import (
    RECORD_FIELDS,
    Account,
    DataRange,
    FetchProgressEvent,
    HistoricalCache,
    HistoryRecord,
    RecordKind,
    TimeRange,
    sort_records,
)
from tradetracker.progress import ProgressReporter
from tradetracker.utils import format_ms, utc_ms

logger = logging.getLogger(__name__)


class FetchState(enum.Enum):
    IDLE = "idle"
    FETCHING_CHUNK = "fetching_chunk"
    MERGING = "merging"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"


_TRANSITIONS = {
    FetchState.IDLE: {FetchState.FETCHING_CHUNK, FetchState.MERGING},
    FetchState.FETCHING_CHUNK: {FetchState.FETCHING_CHUNK, FetchState.MERGING},
    FetchState.MERGING: {FetchState.COMPLETE, FetchState.PARTIAL, FetchState.FAILED},
    FetchState.COMPLETE: set(),
    FetchState.PARTIAL: set(),
    FetchState.FAILED: set(),
}


def resume_cursor(cache: Optional[HistoricalCache]) -> Optional[int]:
    """First timestamp not yet covered by ``cache``'s gap-free prefix."""
    if cache is None:
        return None
    return cache.data_range.latest + 1


class ChunkedRangeFetcher:
    """Single-use driver for one account's historical fetch."""

    def __init__(
        self,
        client: BaseHistoryClient,
        cache_store: CacheStore,
        reporter: Optional[ProgressReporter] = None,
        *,
        chunk_span_ms: Optional[int] = None,
        record_kinds: Optional[Iterable[RecordKind]] = None,
        max_pages_per_chunk: int = 500,
        now_func: Optional[Callable[[], int]] = None,
    ) -> None:
        self.client = client
        self.cache_store = cache_store
        self.reporter = reporter
        span = client.max_span_ms
        if chunk_span_ms is not None:
            span = min(chunk_span_ms, span)
        self.chunk_span_ms = int(span)
        kinds = list(RecordKind) if record_kinds is None else list(record_kinds)
        self.record_kinds = [kind for kind in kinds if client.supports(kind)]
        self.max_pages_per_chunk = max(1, int(max_pages_per_chunk))
        self._now_func = now_func or utc_ms
        self.state = FetchState.IDLE
        self.chunk_index = 0
        self.total_chunks = 0
        self.records_retrieved = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(
        self,
        account: Account,
        start: int,
        end: int,
        *,
        since_cursor: Optional[int] = None,
        base: Optional[HistoricalCache] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> HistoricalCache:
        if self.state is not FetchState.IDLE:
            raise InvalidStateTransition(
                f"fetcher already used (state={self.state.value}); create a new one per run"
            )
        if end < start:
            raise ValueError(f"end {end} precedes start {start}")

        fetch_start = int(start) if since_cursor is None else max(int(start), int(since_cursor))
        leading: List[TimeRange] = []
        if base is not None:
            data_range = base.data_range
            # never leave a hole between the cached prefix and the new pages
            fetch_start = min(fetch_start, data_range.latest + 1)
            if start < data_range.earliest:
                # requested history reaches further back than the cached prefix
                leading = chunk_range(int(start), data_range.earliest - 1, self.chunk_span_ms)
        else:
            data_range = DataRange.empty(fetch_start)
        chunks = chunk_range(fetch_start, end, self.chunk_span_ms) if fetch_start <= end else []
        self.total_chunks = len(leading) + len(chunks)

        logger.info(
            "ChunkedRangeFetcher.fetch: %s %s -> %s chunks=%d gap_chunks=%d kinds=%s resume=%s",
            account.id,
            format_ms(fetch_start),
            format_ms(end),
            len(chunks),
            len(leading),
            ",".join(kind.value for kind in self.record_kinds),
            base is not None,
        )

        accumulated: Dict[RecordKind, List[HistoryRecord]] = defaultdict(list)
        try:
            for idx, chunk in enumerate(leading + chunks, start=1):
                self._transition(FetchState.FETCHING_CHUNK)
                self.chunk_index = idx
                await self._fetch_chunk(account, chunk, accumulated, cancel_event)
                if idx < len(leading):
                    continue
                if idx == len(leading):
                    # the gap is only part of the prefix once all of it is fetched
                    data_range = data_range.extended_back(int(start), chunks=len(leading))
                else:
                    data_range = data_range.extended_to(max(data_range.latest, chunk.end))
                logger.debug(
                    "ChunkedRangeFetcher.fetch: %s chunk %d/%d done (latest=%s)",
                    account.id,
                    idx,
                    self.total_chunks,
                    format_ms(data_range.latest),
                )
        except asyncio.CancelledError:
            partial = self._merge(account.id, base, accumulated, data_range, complete=False)
            self._transition(FetchState.PARTIAL)
            logger.warning(
                "ChunkedRangeFetcher.fetch: %s cancelled at chunk %d/%d; saving partial data",
                account.id,
                self.chunk_index,
                self.total_chunks,
            )
            await asyncio.shield(self.cache_store.save(account.id, partial))
            raise
        except FetchCancelledError as exc:
            partial = self._merge(account.id, base, accumulated, data_range, complete=False)
            self._transition(FetchState.PARTIAL)
            await self._save_quietly(account.id, partial)
            exc.partial = partial
            raise
        except Exception as exc:
            partial = self._merge(account.id, base, accumulated, data_range, complete=False)
            self._transition(FetchState.FAILED)
            logger.error(
                "ChunkedRangeFetcher.fetch: %s failed at chunk %d/%d: %s",
                account.id,
                self.chunk_index,
                self.total_chunks,
                exc,
            )
            await self._save_quietly(account.id, partial)
            if isinstance(exc, RemoteApiError):
                exc.partial = partial
                raise
            message = f"history fetch for {account.id} failed: {exc}"
            raise HistoryFetchError(message, partial) from exc

        cache = self._merge(account.id, base, accumulated, data_range, complete=True)
        try:
            await self.cache_store.save(account.id, cache)
        except Exception:
            self._transition(FetchState.FAILED)
            raise
        self._transition(FetchState.COMPLETE)
        logger.info(
            "ChunkedRangeFetcher.fetch: %s complete (new=%d closed_pnl=%d trades=%d)",
            account.id,
            self.records_retrieved,
            len(cache.closed_pnl),
            len(cache.trades),
        )
        return cache

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch_chunk(
        self,
        account: Account,
        chunk: TimeRange,
        accumulated: Dict[RecordKind, List[HistoryRecord]],
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        for kind in self.record_kinds:
            cursor: Optional[str] = None
            seen_cursors = set()
            pages = 0
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    raise FetchCancelledError(f"history fetch for {account.id} was cancelled")
                page = await self.client.fetch_page(account, kind, chunk.start, chunk.end, cursor)
                pages += 1
                accumulated[kind].extend(page.records)
                self.records_retrieved += len(page.records)
                self._publish(account.id, chunk)
                if not page.next_cursor:
                    break
                if page.next_cursor in seen_cursors:
                    raise PaginationError(
                        f"{kind.value} listing for {account.id} repeated cursor "
                        f"{page.next_cursor!r} in {format_ms(chunk.start)} -> "
                        f"{format_ms(chunk.end)}"
                    )
                if pages >= self.max_pages_per_chunk:
                    raise PaginationError(
                        f"{kind.value} listing for {account.id} exceeded {pages} pages in "
                        f"{format_ms(chunk.start)} -> {format_ms(chunk.end)}"
                    )
                seen_cursors.add(page.next_cursor)
                cursor = page.next_cursor

    def _publish(self, account_id: str, chunk: TimeRange) -> None:
        if self.reporter is None:
            return
        self.reporter.publish(
            FetchProgressEvent(
                account_id=account_id,
                chunk_index=self.chunk_index,
                total_chunks=self.total_chunks,
                records_retrieved=self.records_retrieved,
                current_range=chunk,
            )
        )

    def _merge(
        self,
        account_id: str,
        base: Optional[HistoricalCache],
        accumulated: Dict[RecordKind, List[HistoryRecord]],
        data_range: DataRange,
        *,
        complete: bool,
    ) -> HistoricalCache:
        self._transition(FetchState.MERGING)
        fields = {}
        for kind, field_name in RECORD_FIELDS.items():
            merged: Dict[str, HistoryRecord] = {}
            if base is not None:
                for record in base.records(kind):
                    merged[record.key] = record
            # later pages win so corrected records replace stale ones
            for record in accumulated.get(kind, ()):
                merged[record.key] = record
            fields[field_name] = sort_records(merged.values())
        # an interrupted top-up of an already complete history keeps it complete
        is_complete = complete or (base is not None and base.is_complete)
        return HistoricalCache(
            account_id=account_id,
            data_range=data_range,
            performance_metrics=compute_performance_metrics(fields["trades"], fields["closed_pnl"]),
            is_complete=is_complete,
            last_updated=self._now_func(),
            **fields,
        )

    async def _save_quietly(self, account_id: str, cache: HistoricalCache) -> None:
        # the original failure is what the caller needs to see
        try:
            await self.cache_store.save(account_id, cache)
        except Exception:
            logger.exception(
                "ChunkedRangeFetcher: could not persist partial data for %s", account_id
            )

    def _transition(self, new_state: FetchState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug("ChunkedRangeFetcher: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
