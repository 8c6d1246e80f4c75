"""Performance metrics derived from an account's trade and closed P&L history."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Sequence

import numpy as np

from tradetracker.models import (
    AccountStats,
    ClosedPnLRecord,
    HistoricalCache,
    MonthlySummary,
    PerformanceMetrics,
    TradeRecord,
    sort_records,
)
from tradetracker.utils import month_key

TRADING_DAYS_PER_YEAR = 252


def max_drawdown(pnls: np.ndarray) -> float:
    """Largest drop of cumulative P&L below its running peak (peak starts at 0)."""
    if pnls.size == 0:
        return 0.0
    cumulative = np.cumsum(pnls)
    peaks = np.maximum.accumulate(np.maximum(cumulative, 0.0))
    return float(np.max(peaks - cumulative))


def compute_performance_metrics(
    trades: Sequence[TradeRecord], closed_pnl: Sequence[ClosedPnLRecord]
) -> PerformanceMetrics:
    if not trades and not closed_pnl:
        return PerformanceMetrics()

    total_volume = float(sum(trade.qty * trade.price for trade in trades))
    pnls = np.array([rec.closed_pnl for rec in sort_records(closed_pnl)], dtype=float)
    pnls = pnls[np.isfinite(pnls)]

    wins = pnls[pnls > 0]
    losses = pnls[pnls < 0]
    total_trades = int(pnls.size)
    gross_profit = float(wins.sum())
    gross_loss = float(abs(losses.sum()))

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    elif gross_profit > 0:
        profit_factor = None
    else:
        profit_factor = 0.0

    avg_return = float(pnls.mean()) if total_trades else 0.0
    volatility = float(pnls.std(ddof=1)) if total_trades >= 2 else 0.0
    drawdown = max_drawdown(pnls)

    return PerformanceMetrics(
        total_trades=total_trades,
        winning_trades=int(wins.size),
        losing_trades=int(losses.size),
        total_pnl=float(pnls.sum()),
        total_volume=total_volume,
        win_rate=(wins.size / total_trades * 100.0) if total_trades else 0.0,
        avg_win=float(wins.mean()) if wins.size else 0.0,
        avg_loss=float(abs(losses.mean())) if losses.size else 0.0,
        max_win=float(wins.max()) if wins.size else 0.0,
        max_loss=float(abs(losses.min())) if losses.size else 0.0,
        max_drawdown=drawdown,
        profit_factor=profit_factor,
        sharpe_ratio=avg_return / volatility if volatility > 0 else 0.0,
        calmar_ratio=(
            (avg_return * TRADING_DAYS_PER_YEAR * 100.0) / drawdown if drawdown > 0 else 0.0
        ),
        avg_daily_return=avg_return,
        volatility=volatility,
    )


def monthly_summaries(cache: HistoricalCache) -> List[MonthlySummary]:
    """Performance metrics per UTC calendar month, oldest month first.

    A month shows up as soon as it holds a trade or a closed P&L record.
    """
    trades: Dict[str, List[TradeRecord]] = defaultdict(list)
    closed_pnl: Dict[str, List[ClosedPnLRecord]] = defaultdict(list)
    for trade in cache.trades:
        trades[month_key(trade.timestamp)].append(trade)
    for record in cache.closed_pnl:
        closed_pnl[month_key(record.timestamp)].append(record)
    return [
        MonthlySummary(
            account_id=cache.account_id,
            month=month,
            metrics=compute_performance_metrics(trades.get(month, []), closed_pnl.get(month, [])),
        )
        for month in sorted(set(trades) | set(closed_pnl))
    ]


def account_stats(cache: HistoricalCache) -> AccountStats:
    transfers = list(cache.deposits) + list(cache.withdrawals)
    timestamps = [rec.timestamp for rec in (*cache.trades, *cache.closed_pnl, *transfers)]
    return AccountStats(
        account_id=cache.account_id,
        total_months=len({month_key(ts) for ts in timestamps}),
        total_trades=len(cache.trades),
        total_pnl_records=len(cache.closed_pnl),
        total_transfers=len(transfers),
        data_size=len(cache.model_dump_json().encode("utf-8")),
        oldest_data=min(timestamps) if timestamps else None,
        newest_data=max(timestamps) if timestamps else None,
    )
