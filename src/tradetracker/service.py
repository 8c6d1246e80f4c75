"""Entry point tying fetcher, cache, reconciler, batch runs and equity together."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Union

from tradetracker.batch import BatchOrchestrator, StatusListener
from tradetracker.cache_store import CacheStore
from tradetracker.config import AppConfig
from tradetracker.credentials import ApiKeysCredentialProvider
from tradetracker.equity import (
    EquityStore,
    backfill_account_equity,
    combine_account_series,
    prepend_history,
)
from tradetracker.exchanges import ClientPool
from tradetracker.fetcher import ChunkedRangeFetcher, FetchState, resume_cursor
from tradetracker.models import (
    Account,
    AccountView,
    EquitySnapshot,
    FetchProgressEvent,
    HistoricalCache,
    LiveSnapshot,
)
from tradetracker.progress import ProgressReporter
from tradetracker.reconciler import MergeReconciler
from tradetracker.storage import FilePartitionStorage, PartitionStorage
from tradetracker.utils import format_ms, utc_ms

logger = logging.getLogger(__name__)

AccountRef = Union[Account, str]


class LinkedCancelEvents:
    """Cancellation signal raised by any of several linked events.

    Every caller that starts or joins an account's fetch links its own
    cancel event, so cancelling any of them stops the shared fetch.
    """

    def __init__(self, *events: Optional[asyncio.Event]) -> None:
        self.events: List[asyncio.Event] = []
        for event in events:
            self.link(event)

    def link(self, event: Optional[asyncio.Event]) -> None:
        if event is not None and event not in self.events:
            self.events.append(event)

    def is_set(self) -> bool:
        return any(event.is_set() for event in self.events)


class HistoryService:
    """Public surface of the historical data engine.

    At most one fetch runs per account: a second request for an account that
    is already being fetched waits for the running one instead of starting a
    parallel pass against the same cache partition. A joining caller's
    ``cancel_event`` is linked to the running fetch, so setting it stops that
    fetch for every caller waiting on it.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        storage: Optional[PartitionStorage] = None,
        clients: Optional[ClientPool] = None,
        reporter: Optional[ProgressReporter] = None,
        now_func: Optional[Callable[[], int]] = None,
    ) -> None:
        self.config = config
        self.storage = storage or FilePartitionStorage(
            config.storage.root, lock_timeout=config.storage.lock_timeout_seconds
        )
        self.cache_store = CacheStore(self.storage)
        self.equity_store = EquityStore(
            self.storage, max_combined_points=config.equity.max_combined_points
        )
        self.reporter = reporter or ProgressReporter()
        self.clients = clients or ClientPool(
            ApiKeysCredentialProvider(config.api_keys_path), retry=config.retry
        )
        self.reconciler = MergeReconciler(
            self.cache_store,
            self.schedule_background_fetch,
            incremental_exchanges=config.history.incremental_exchanges,
        )
        self.accounts: Dict[str, Account] = {account.id: account for account in config.accounts}
        self._now = now_func or utc_ms
        self._inflight: Dict[str, asyncio.Task] = {}
        self._cancel_links: Dict[str, LinkedCancelEvents] = {}
        self._background: Set[asyncio.Task] = set()
        self._fetchers: Dict[str, ChunkedRangeFetcher] = {}
        self._live: Dict[str, LiveSnapshot] = {}
        self._refresh_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Historical fetches
    # ------------------------------------------------------------------

    async def fetch_complete_historical_data(
        self,
        account: AccountRef,
        with_progress: bool = True,
        *,
        force_refresh: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> HistoricalCache:
        account = self._resolve(account)
        task = self._inflight.get(account.id)
        if task is not None:
            self._cancel_links[account.id].link(cancel_event)
            logger.info(
                "HistoryService.fetch_complete_historical_data: %s already fetching; joining it",
                account.id,
            )
            return await asyncio.shield(task)
        links = LinkedCancelEvents(cancel_event)
        task = asyncio.ensure_future(self._fetch(account, with_progress, force_refresh, links))
        self._inflight[account.id] = task
        self._cancel_links[account.id] = links
        task.add_done_callback(
            lambda done, account_id=account.id: self._on_fetch_done(account_id, done)
        )
        return await task

    def get_cached_historical_data(self, account_id: str) -> Optional[HistoricalCache]:
        return self.cache_store.peek(account_id)

    async def get_cached_historical_data_async(self, account_id: str) -> Optional[HistoricalCache]:
        return await self.cache_store.load(account_id)

    def on_historical_progress(
        self, callback: Callable[[FetchProgressEvent], None]
    ) -> Callable[[], None]:
        return self.reporter.subscribe_all(callback)

    def fetch_state(self, account_id: str) -> Optional[FetchState]:
        fetcher = self._fetchers.get(account_id)
        return None if fetcher is None else fetcher.state

    def is_fetching(self, account_id: str) -> bool:
        return account_id in self._inflight

    def start_historical_fetch(self, account: AccountRef) -> asyncio.Task:
        account = self._resolve(account)
        task = asyncio.ensure_future(self.fetch_complete_historical_data(account))
        self._track_background(task)
        return task

    def start_batch_historical_fetch(
        self, account_ids: Iterable[AccountRef], listener: Optional[StatusListener] = None
    ) -> BatchOrchestrator:
        accounts = [self._resolve(ref) for ref in account_ids]
        batch = self.create_batch()
        if listener is not None:
            batch.add_listener(listener)
        self._track_background(batch.start(accounts))
        return batch

    def create_batch(self) -> BatchOrchestrator:
        async def fetch(account: Account, cancel_event: asyncio.Event) -> HistoricalCache:
            return await self.fetch_complete_historical_data(
                account, True, cancel_event=cancel_event
            )

        return BatchOrchestrator(fetch, self.reporter)

    def schedule_background_fetch(self, account: Account) -> None:
        if account.id in self._inflight:
            logger.debug(
                "HistoryService.schedule_background_fetch: %s already in flight", account.id
            )
            return
        self.start_historical_fetch(account)

    # ------------------------------------------------------------------
    # Live state and equity
    # ------------------------------------------------------------------

    def update_live_snapshot(self, live: LiveSnapshot) -> None:
        self._live[live.account_id] = live

    def get_live_snapshot(self, account_id: str) -> Optional[LiveSnapshot]:
        return self._live.get(account_id)

    async def refresh(self, accounts: Optional[Sequence[AccountRef]] = None) -> List[AccountView]:
        """Poll every account's live state and merge it with cached history."""
        if accounts:
            targets = [self._resolve(ref) for ref in accounts]
        else:
            targets = list(self.accounts.values())
        async with self._refresh_lock:
            lives: Dict[str, LiveSnapshot] = {}
            for account in targets:
                try:
                    live = await self.clients.get(account).fetch_live_snapshot(account)
                except Exception as exc:
                    logger.error(
                        "HistoryService.refresh: live poll for %s failed: %s", account.id, exc
                    )
                    continue
                lives[account.id] = live
                self.update_live_snapshot(live)
                await self.equity_store.append_account_point(
                    account.id, (live.timestamp, live.total_equity)
                )
            views = await self.reconciler.reconcile_all(targets, lives)
            if lives:
                await self.equity_store.append(
                    EquitySnapshot(
                        timestamp=max(live.timestamp for live in lives.values()),
                        total_equity=sum(live.total_equity for live in lives.values()),
                        accounts={acc_id: live.total_equity for acc_id, live in lives.items()},
                    )
                )
        return views

    async def backfill_equity_history(self) -> List[EquitySnapshot]:
        """Synthesize past equity from realized P&L and merge it into the history.

        Only accounts with a complete cache and a known live equity take part.
        The result is an approximation, see ``tradetracker.equity``.
        """
        series = {}
        for account in self.accounts.values():
            live = self._live.get(account.id)
            if live is None:
                logger.warning(
                    "HistoryService.backfill_equity_history: no live equity for %s; skipping",
                    account.id,
                )
                continue
            cache = await self.cache_store.load(account.id)
            if cache is None or not cache.is_complete:
                logger.info(
                    "HistoryService.backfill_equity_history: %s has no complete history; skipping",
                    account.id,
                )
                continue
            points = backfill_account_equity(cache.closed_pnl, live.total_equity, live.timestamp)
            if not points:
                logger.info(
                    "HistoryService.backfill_equity_history: %s has no closed pnl; no series",
                    account.id,
                )
                continue
            existing = await self.equity_store.load_account_series(account.id)
            merged = prepend_history(points, existing, lambda point: point[0])
            await self.equity_store.save_account_series(account.id, merged)
            series[account.id] = merged
            logger.info(
                "HistoryService.backfill_equity_history: %s %d points from %s",
                account.id,
                len(merged),
                format_ms(merged[0][0]),
            )
        if not series:
            return await self.equity_store.load_combined()
        return await self.equity_store.merge_backfill(combine_account_series(series))

    async def delete_account_data(self, account_id: str) -> None:
        task = self._inflight.get(account_id)
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.cache_store.delete(account_id)
        await self.equity_store.delete_account_series(account_id)
        self._live.pop(account_id, None)
        self._fetchers.pop(account_id, None)
        logger.info("HistoryService.delete_account_data: removed data for %s", account_id)

    async def close(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.clients.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        account: Account,
        with_progress: bool,
        force_refresh: bool,
        cancel_event: LinkedCancelEvents,
    ) -> HistoricalCache:
        history = self.config.history
        client = self.clients.get(account)
        existing = await self.cache_store.load(account.id)
        now = self._now()
        start = now - history.initial_span_ms
        since = None
        base = None
        if existing is not None and not force_refresh:
            age = now - existing.last_updated
            if existing.is_complete and age < history.incremental_update_ms:
                logger.info(
                    "HistoryService: using cached history for %s (%d records)",
                    account.id,
                    existing.total_records,
                )
                return existing
            base = existing
            start = min(start, existing.data_range.earliest)
            if not existing.is_complete:
                since = resume_cursor(existing)
                logger.info(
                    "HistoryService: resuming %s from %s", account.id, format_ms(since)
                )
            elif age < history.cache_expiry_ms:
                since = existing.last_updated - history.incremental_overlap_ms
                logger.info(
                    "HistoryService: incremental update for %s from %s",
                    account.id,
                    format_ms(since),
                )
            else:
                since = now - history.initial_span_ms
                logger.info("HistoryService: cache for %s expired; refetching", account.id)

        fetcher = ChunkedRangeFetcher(
            client,
            self.cache_store,
            self.reporter if with_progress else None,
            chunk_span_ms=history.chunk_span_ms,
            record_kinds=history.record_kinds,
            now_func=self._now,
        )
        self._fetchers[account.id] = fetcher
        return await fetcher.fetch(
            account, start, now, since_cursor=since, base=base, cancel_event=cancel_event
        )

    def _resolve(self, account: AccountRef) -> Account:
        if isinstance(account, Account):
            self.accounts.setdefault(account.id, account)
            return account
        try:
            return self.accounts[account]
        except KeyError:
            raise KeyError(f"unknown account {account!r}") from None

    def _on_fetch_done(self, account_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
            self._cancel_links.pop(account_id, None)

    def _track_background(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("HistoryService: background task failed: %s", exc)
