import numpy as np
import pytest

from fakes import BASE_MS, HOUR, pnl, trade
from tradetracker.metrics import (
    account_stats,
    compute_performance_metrics,
    max_drawdown,
    monthly_summaries,
)
from tradetracker.models import DataRange, HistoricalCache, PerformanceMetrics, TransferRecord
from tradetracker.utils import DAY_MS


def test_empty_history_yields_zero_metrics():
    assert compute_performance_metrics([], []) == PerformanceMetrics()


def test_metrics_over_closed_pnl():
    # out of order on purpose: metrics use chronological order
    records = [
        pnl("c", BASE_MS + 3, 30.0),
        pnl("a", BASE_MS + 1, 10.0),
        pnl("b", BASE_MS + 2, -20.0),
        pnl("d", BASE_MS + 4, -5.0),
    ]
    trades = [trade("t1", BASE_MS, qty=2.0, price=50.0), trade("t2", BASE_MS, qty=1.0, price=10.0)]

    metrics = compute_performance_metrics(trades, records)

    assert metrics.total_trades == 4
    assert metrics.winning_trades == 2
    assert metrics.losing_trades == 2
    assert metrics.total_pnl == pytest.approx(15.0)
    assert metrics.total_volume == pytest.approx(110.0)
    assert metrics.win_rate == pytest.approx(50.0)
    assert metrics.avg_win == pytest.approx(20.0)
    assert metrics.avg_loss == pytest.approx(12.5)
    assert metrics.max_win == pytest.approx(30.0)
    assert metrics.max_loss == pytest.approx(20.0)
    assert metrics.profit_factor == pytest.approx(40.0 / 25.0)
    # cumulative: 10, -10, 20, 15 -> worst drop from peak 10 to -10
    assert metrics.max_drawdown == pytest.approx(20.0)
    pnls = np.array([10.0, -20.0, 30.0, -5.0])
    assert metrics.avg_daily_return == pytest.approx(pnls.mean())
    assert metrics.volatility == pytest.approx(pnls.std(ddof=1))
    assert metrics.sharpe_ratio == pytest.approx(pnls.mean() / pnls.std(ddof=1))
    assert metrics.calmar_ratio == pytest.approx(pnls.mean() * 252 * 100 / 20.0)


def test_profit_factor_without_losses_is_unbounded():
    metrics = compute_performance_metrics([], [pnl("a", BASE_MS, 5.0), pnl("b", BASE_MS + 1, 1.0)])

    assert metrics.profit_factor is None
    assert metrics.max_drawdown == 0.0


def test_max_drawdown_counts_initial_losses_from_zero():
    assert max_drawdown(np.array([-5.0, -5.0, 20.0])) == pytest.approx(10.0)
    assert max_drawdown(np.array([])) == 0.0


def test_monthly_summaries_split_history_by_utc_month():
    # BASE_MS is 2023-11-14; 17 days later is 2023-12-01
    december = BASE_MS + 17 * DAY_MS
    cache = HistoricalCache(
        account_id="acc-1",
        closed_pnl=[
            pnl("a", BASE_MS, 10.0),
            pnl("b", BASE_MS + DAY_MS, -4.0),
            pnl("c", december, 7.0),
        ],
        trades=[trade("t1", december - 1, qty=2.0, price=50.0)],
        data_range=DataRange(earliest=BASE_MS, latest=december),
    )

    summaries = monthly_summaries(cache)

    assert [summary.month for summary in summaries] == ["2023-11", "2023-12"]
    november, december_summary = summaries
    assert november.account_id == "acc-1"
    assert november.metrics == compute_performance_metrics(
        [trade("t1", december - 1, qty=2.0, price=50.0)], cache.closed_pnl[:2]
    )
    assert november.metrics.total_pnl == pytest.approx(6.0)
    assert november.metrics.total_volume == pytest.approx(100.0)
    assert december_summary.metrics.total_trades == 1
    assert december_summary.metrics.profit_factor is None


def test_monthly_summaries_of_empty_history():
    cache = HistoricalCache(account_id="acc-1", data_range=DataRange.empty(BASE_MS))

    assert monthly_summaries(cache) == []
    stats = account_stats(cache)
    assert stats.total_months == 0
    assert stats.oldest_data is None
    assert stats.newest_data is None


def test_account_stats():
    deposit = TransferRecord(
        id="d1", amount=100.0, asset="USDT", time=BASE_MS - DAY_MS, direction="deposit"
    )
    cache = HistoricalCache(
        account_id="acc-1",
        closed_pnl=[pnl("a", BASE_MS, 10.0), pnl("b", BASE_MS + 20 * DAY_MS, -4.0)],
        trades=[trade("t1", BASE_MS + HOUR)],
        deposits=[deposit],
        data_range=DataRange(earliest=BASE_MS - DAY_MS, latest=BASE_MS + 20 * DAY_MS),
    )

    stats = account_stats(cache)

    assert stats.total_months == 2
    assert stats.total_trades == 1
    assert stats.total_pnl_records == 2
    assert stats.total_transfers == 1
    assert stats.oldest_data == BASE_MS - DAY_MS
    assert stats.newest_data == BASE_MS + 20 * DAY_MS
    assert stats.data_size == len(cache.model_dump_json().encode("utf-8"))
