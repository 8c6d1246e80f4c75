from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from tradetracker.exchanges.base import BaseHistoryClient, Page
from tradetracker.models import (
    Account,
    ClosedPnLRecord,
    HistoryRecord,
    LiveSnapshot,
    RecordKind,
    TradeRecord,
    TransferRecord,
)
from tradetracker.utils import safe_float, safe_int

logger = logging.getLogger(__name__)

_CAPABILITIES = {
    RecordKind.CLOSED_PNL: "fetchPositionsHistory",
    RecordKind.TRADES: "fetchMyTrades",
    RecordKind.DEPOSITS: "fetchDeposits",
    RecordKind.WITHDRAWALS: "fetchWithdrawals",
}


class GenericHistoryClient(BaseHistoryClient):
    """History pages through ccxt's unified API for exchanges without a dedicated client.

    Pages are walked with a time cursor: the next page starts at the newest
    timestamp of the previous one. Records sharing that timestamp come back
    twice and are deduplicated downstream.
    """

    def __init__(self, api, *, quote: str = "USDT", **kwargs) -> None:
        super().__init__(api, **kwargs)
        self.exchange = str(getattr(api, "id", "") or "")
        self.quote = quote
        has = getattr(api, "has", {}) or {}
        self.supported_kinds = tuple(kind for kind, name in _CAPABILITIES.items() if has.get(name))

    async def _fetch_page_once(
        self, kind: RecordKind, range_start: int, range_end: int, cursor: Optional[str]
    ) -> Page:
        since = int(cursor) if cursor else range_start
        params = {"until": range_end}
        if kind == RecordKind.TRADES:
            raw = await self.api.fetch_my_trades(None, since, self.page_limit, params)
            records: List[HistoryRecord] = [self._normalize_trade(item) for item in raw]
        elif kind == RecordKind.CLOSED_PNL:
            raw = await self.api.fetch_positions_history(None, since, self.page_limit, params)
            records = [self._normalize_position_history(item) for item in raw]
        elif kind == RecordKind.DEPOSITS:
            raw = await self.api.fetch_deposits(None, since, self.page_limit, params)
            records = [self._normalize_transaction(item, "deposit") for item in raw]
        else:
            raw = await self.api.fetch_withdrawals(None, since, self.page_limit, params)
            records = [self._normalize_transaction(item, "withdrawal") for item in raw]

        records = [rec for rec in records if range_start <= rec.timestamp <= range_end]
        next_cursor = None
        if len(raw) >= self.page_limit and records:
            newest = max(rec.timestamp for rec in records)
            next_since = newest if newest > since else newest + 1
            if next_since <= range_end:
                next_cursor = str(next_since)
        logger.debug(
            "GenericHistoryClient._fetch_page_once: %s %s since=%d got=%d next=%s",
            self.exchange,
            kind.value,
            since,
            len(records),
            next_cursor,
        )
        return Page(records=records, next_cursor=next_cursor)

    async def _fetch_live_once(self, account: Account) -> LiveSnapshot:
        has = getattr(self.api, "has", {}) or {}
        if has.get("fetchPositions"):
            balance, positions = await asyncio.gather(
                self.api.fetch_balance(), self.api.fetch_positions()
            )
        else:
            balance, positions = await self.api.fetch_balance(), []
        return self._snapshot_from_ccxt(account, balance, positions, quote=self.quote)

    @staticmethod
    def _normalize_trade(trade: Dict[str, object]) -> TradeRecord:
        fee = trade.get("fee") or {}
        return TradeRecord(
            exec_id=str(trade.get("id") or ""),
            order_id=str(trade.get("order") or trade.get("id") or ""),
            symbol=str(trade.get("symbol") or ""),
            side=str(trade.get("side") or ""),
            qty=safe_float(trade.get("amount")),
            price=safe_float(trade.get("price")),
            exec_time=safe_int(trade.get("timestamp")),
            fee=safe_float(fee.get("cost") if isinstance(fee, dict) else None),
            fee_rate=safe_float(fee.get("rate") if isinstance(fee, dict) else None),
            is_maker=trade.get("takerOrMaker") == "maker",
            order_type=str(trade.get("type") or ""),
        )

    @staticmethod
    def _normalize_position_history(entry: Dict[str, object]) -> ClosedPnLRecord:
        info = entry.get("info") or {}
        created = safe_int(entry.get("timestamp"))
        updated = safe_int(entry.get("lastUpdateTimestamp"), created) or created
        contracts = safe_float(entry.get("contracts"))
        entry_price = safe_float(entry.get("entryPrice"))
        order_id = (
            entry.get("id")
            or info.get("orderId")
            or info.get("positionId")
            or f"{entry.get('symbol')}:{updated}"
        )
        return ClosedPnLRecord(
            order_id=str(order_id),
            symbol=str(entry.get("symbol") or ""),
            side=str(entry.get("side") or ""),
            qty=contracts,
            closed_pnl=safe_float(entry.get("realizedPnl")),
            cum_entry_value=contracts * entry_price,
            avg_entry_price=entry_price,
            avg_exit_price=safe_float(info.get("closeAvgPrice") or info.get("avgExitPrice")),
            closed_size=contracts,
            leverage=safe_float(entry.get("leverage")),
            created_time=created,
            updated_time=updated,
        )

    @staticmethod
    def _normalize_transaction(entry: Dict[str, object], direction: str) -> TransferRecord:
        fee = entry.get("fee") or {}
        return TransferRecord(
            id=str(entry.get("id") or entry.get("txid") or ""),
            amount=safe_float(entry.get("amount")),
            asset=str(entry.get("currency") or ""),
            time=safe_int(entry.get("timestamp")),
            direction=direction,
            status=str(entry.get("status") or ""),
            tx_id=str(entry.get("txid") or ""),
            fee=safe_float(fee.get("cost") if isinstance(fee, dict) else None),
        )
