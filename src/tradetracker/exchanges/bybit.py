from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from tradetracker.exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    RemoteApiError,
    TransientApiError,
)
from tradetracker.exchanges.base import BaseHistoryClient, Page
from tradetracker.models import (
    Account,
    ClosedPnLRecord,
    LiveSnapshot,
    RecordKind,
    TradeRecord,
    TransferRecord,
)
from tradetracker.utils import safe_float, safe_int

logger = logging.getLogger(__name__)

RATE_LIMIT_CODES = {10006}
PERMISSION_CODES = {10005}
AUTH_CODES = {10003, 10004, 10018}
TRANSIENT_CODES = {10000, 10002, 10016}
# classic (non unified) accounts get these instead of data; treated as "nothing to fetch"
UNIFIED_ACCOUNT_CODES = {10028, 182200, 110067}


def raise_for_ret_code(response: Dict[str, object], context: str) -> bool:
    """Raise for Bybit v5 error envelopes.

    Returns ``False`` when the response carries no data because the account is
    not a unified trading account, ``True`` when it is a normal success.
    """
    code = safe_int(response.get("retCode"), 0)
    if code == 0:
        return True
    message = f"{context}: retCode={code} {response.get('retMsg', '')}".strip()
    if code in UNIFIED_ACCOUNT_CODES:
        logger.warning("%s; account needs a unified trading account, skipping", message)
        return False
    if code in RATE_LIMIT_CODES:
        raise RateLimitError(message, code=code)
    if code in PERMISSION_CODES:
        raise PermissionDeniedError(message, code=code)
    if code in AUTH_CODES:
        raise AuthenticationError(message, code=code)
    if code in TRANSIENT_CODES:
        raise TransientApiError(message, code=code)
    raise RemoteApiError(message, code=code)


class BybitHistoryClient(BaseHistoryClient):
    """History pages from Bybit's v5 REST endpoints via ccxt's raw API methods."""

    exchange = "bybit"
    max_span_ms = 7 * 24 * 60 * 60 * 1000
    page_limit = 100
    transfer_page_limit = 50
    supported_kinds = (
        RecordKind.CLOSED_PNL,
        RecordKind.TRADES,
        RecordKind.DEPOSITS,
        RecordKind.WITHDRAWALS,
    )

    def __init__(self, api, *, category: str = "linear", **kwargs) -> None:
        super().__init__(api, **kwargs)
        self.category = category

    async def _fetch_page_once(
        self, kind: RecordKind, range_start: int, range_end: int, cursor: Optional[str]
    ) -> Page:
        params: Dict[str, object] = {"startTime": range_start, "endTime": range_end}
        if kind in (RecordKind.CLOSED_PNL, RecordKind.TRADES):
            params["category"] = self.category
            params["limit"] = self.page_limit
        else:
            params["limit"] = self.transfer_page_limit
        if cursor:
            params["cursor"] = cursor

        if kind == RecordKind.CLOSED_PNL:
            response = await self.api.private_get_v5_position_closed_pnl(params)
        elif kind == RecordKind.TRADES:
            response = await self.api.private_get_v5_execution_list(params)
        elif kind == RecordKind.DEPOSITS:
            response = await self.api.private_get_v5_asset_deposit_query_record(params)
        else:
            response = await self.api.private_get_v5_asset_withdraw_query_record(params)

        if not raise_for_ret_code(response, f"BybitHistoryClient[{kind.value}]"):
            return Page()
        result = response.get("result") or {}
        rows = result.get("list")
        if rows is None:
            rows = result.get("rows") or []
        next_cursor = result.get("nextPageCursor") or None

        if kind == RecordKind.CLOSED_PNL:
            records = [self._normalize_closed_pnl(row) for row in rows]
        elif kind == RecordKind.TRADES:
            records = [self._normalize_execution(row) for row in rows]
        else:
            direction = "deposit" if kind == RecordKind.DEPOSITS else "withdrawal"
            records = [self._normalize_transfer(row, direction) for row in rows]

        if not rows:
            next_cursor = None
        logger.debug(
            "BybitHistoryClient._fetch_page_once: %s rows=%d cursor=%s",
            kind.value,
            len(rows),
            next_cursor,
        )
        return Page(records=records, next_cursor=next_cursor)

    async def _fetch_live_once(self, account: Account) -> LiveSnapshot:
        balance, positions = await asyncio.gather(
            self.api.fetch_balance(), self.api.fetch_positions()
        )
        snapshot = self._snapshot_from_ccxt(account, balance, positions)
        # unified accounts report equity across all collateral coins
        try:
            unified = balance["info"]["result"]["list"][0]
        except (KeyError, IndexError, TypeError):
            return snapshot
        total_equity = safe_float(unified.get("totalEquity"), snapshot.total_equity)
        return snapshot.model_copy(
            update={
                "total_equity": total_equity,
                "wallet_balance": safe_float(
                    unified.get("totalWalletBalance"), snapshot.wallet_balance
                ),
                "available_balance": safe_float(
                    unified.get("totalAvailableBalance"), snapshot.available_balance
                ),
                "unrealized_pnl": safe_float(unified.get("totalPerpUPL"), snapshot.unrealized_pnl),
            }
        )

    @staticmethod
    def _normalize_closed_pnl(row: Dict[str, object]) -> ClosedPnLRecord:
        return ClosedPnLRecord(
            order_id=str(row.get("orderId") or ""),
            symbol=str(row.get("symbol") or ""),
            side=str(row.get("side") or ""),
            qty=safe_float(row.get("qty")),
            closed_pnl=safe_float(row.get("closedPnl")),
            cum_entry_value=safe_float(row.get("cumEntryValue")),
            cum_exit_value=safe_float(row.get("cumExitValue")),
            avg_entry_price=safe_float(row.get("avgEntryPrice")),
            avg_exit_price=safe_float(row.get("avgExitPrice")),
            closed_size=safe_float(row.get("closedSize")),
            fill_count=safe_int(row.get("fillCount")),
            leverage=safe_float(row.get("leverage")),
            order_type=str(row.get("orderType") or ""),
            exec_type=str(row.get("execType") or ""),
            created_time=safe_int(row.get("createdTime")),
            updated_time=safe_int(row.get("updatedTime") or row.get("createdTime")),
        )

    @staticmethod
    def _normalize_execution(row: Dict[str, object]) -> TradeRecord:
        is_maker = row.get("isMaker")
        if isinstance(is_maker, str):
            is_maker = is_maker.lower() == "true"
        return TradeRecord(
            exec_id=str(row.get("execId") or ""),
            order_id=str(row.get("orderId") or ""),
            symbol=str(row.get("symbol") or ""),
            side=str(row.get("side") or ""),
            qty=safe_float(row.get("execQty")),
            price=safe_float(row.get("execPrice")),
            exec_time=safe_int(row.get("execTime")),
            fee=safe_float(row.get("execFee")),
            fee_rate=safe_float(row.get("feeRate")),
            is_maker=bool(is_maker),
            order_type=str(row.get("orderType") or ""),
            closed_size=safe_float(row.get("closedSize")),
        )

    @staticmethod
    def _normalize_transfer(row: Dict[str, object], direction: str) -> TransferRecord:
        if direction == "deposit":
            record_id = row.get("id") or row.get("txID") or ""
            time_ms = safe_int(row.get("successAt") or row.get("createTime"))
            fee = safe_float(row.get("depositFee"))
        else:
            record_id = row.get("withdrawId") or row.get("txID") or ""
            time_ms = safe_int(row.get("createTime") or row.get("updateTime"))
            fee = safe_float(row.get("withdrawFee"))
        return TransferRecord(
            id=str(record_id),
            amount=safe_float(row.get("amount")),
            asset=str(row.get("coin") or ""),
            time=time_ms,
            direction=direction,
            status=str(row.get("status") or ""),
            tx_id=str(row.get("txID") or ""),
            fee=fee,
        )
