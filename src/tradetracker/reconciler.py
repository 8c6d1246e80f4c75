"""Combine live account polls with cached history."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Mapping, Optional

from tradetracker.cache_store import CacheStore
from tradetracker.models import Account, AccountView, HistoryStatus, LiveSnapshot

logger = logging.getLogger(__name__)


class MergeReconciler:
    """Build the account view consumed downstream from a live snapshot.

    A complete cache has its trades and closed P&L spliced onto the live
    snapshot. Anything else (no cache, an incomplete one, or an exchange
    without incremental caching) yields the live snapshot alone and asks
    ``schedule_fetch`` for a background history fetch. ``schedule_fetch``
    must return immediately.
    """

    def __init__(
        self,
        cache_store: CacheStore,
        schedule_fetch: Optional[Callable[[Account], None]] = None,
        *,
        incremental_exchanges: Iterable[str] = ("bybit",),
    ) -> None:
        self.cache_store = cache_store
        self.schedule_fetch = schedule_fetch
        self.incremental_exchanges = {exchange.lower() for exchange in incremental_exchanges}

    def supports_incremental(self, account: Account) -> bool:
        return account.exchange in self.incremental_exchanges

    async def reconcile(self, account: Account, live: LiveSnapshot) -> AccountView:
        if live.account_id != account.id:
            raise ValueError(f"live snapshot for {live.account_id} passed for account {account.id}")
        view = AccountView(
            account_id=account.id,
            total_equity=live.total_equity,
            wallet_balance=live.wallet_balance,
            available_balance=live.available_balance,
            unrealized_pnl=live.unrealized_pnl,
            positions=list(live.positions),
            last_updated=live.timestamp,
        )
        if not self.supports_incremental(account):
            view.history_status = HistoryStatus.UNSUPPORTED
            self._schedule(account, "exchange without incremental caching")
            return view

        cache = await self.cache_store.load(account.id)
        if cache is None:
            view.history_status = HistoryStatus.ABSENT
            self._schedule(account, "no cached history")
            return view
        if not cache.is_complete:
            view.history_status = HistoryStatus.INCOMPLETE
            self._schedule(account, "cached history is incomplete")
            return view

        view.trades = list(cache.trades)
        view.closed_pnl = list(cache.closed_pnl)
        view.history_status = HistoryStatus.COMPLETE
        view.last_updated = max(live.timestamp, cache.last_updated)
        logger.debug(
            "MergeReconciler.reconcile: %s spliced %d trades and %d closed pnl records",
            account.id,
            len(view.trades),
            len(view.closed_pnl),
        )
        return view

    async def reconcile_all(
        self, accounts: Iterable[Account], lives: Mapping[str, LiveSnapshot]
    ) -> List[AccountView]:
        views: List[AccountView] = []
        for account in accounts:
            live = lives.get(account.id)
            if live is None:
                logger.warning("MergeReconciler.reconcile_all: no live snapshot for %s", account.id)
                continue
            views.append(await self.reconcile(account, live))
        return views

    def _schedule(self, account: Account, reason: str) -> None:
        if self.schedule_fetch is None:
            return
        logger.info(
            "MergeReconciler: scheduling background history fetch for %s (%s)", account.id, reason
        )
        self.schedule_fetch(account)
