import pytest

from fakes import BASE_MS, HOUR, pnl
from tradetracker.equity import (
    EquityStore,
    backfill_account_equity,
    combine_account_series,
    daily_pnl,
    prepend_history,
)
from tradetracker.models import EquitySnapshot
from tradetracker.storage import MemoryPartitionStorage
from tradetracker.utils import DAY_MS

NOW = BASE_MS + 10 * HOUR


def test_worked_example_from_current_equity():
    records = [
        pnl("a", BASE_MS - 2 * DAY_MS + 5 * HOUR, -300.0),
        pnl("b", BASE_MS - DAY_MS + 3 * HOUR, -600.0),
        pnl("c", BASE_MS - DAY_MS + 9 * HOUR, -400.0),
    ]

    series = backfill_account_equity(records, 5181.0, NOW)

    assert series == [
        (BASE_MS - 2 * DAY_MS, 6481.0),
        (BASE_MS - DAY_MS, 6181.0),
        (NOW, 5181.0),
    ]


def test_last_point_is_current_equity():
    records = [pnl(f"p{i}", BASE_MS - i * DAY_MS + HOUR, (-1) ** i * 12.34) for i in range(1, 30)]

    series = backfill_account_equity(records, 987.65, NOW)

    assert series[-1] == (NOW, 987.65)
    timestamps = [ts for ts, _ in series]
    assert timestamps == sorted(timestamps)
    # walking forward from the first point by daily pnl lands on current equity
    deltas = daily_pnl(records)
    assert series[0][1] + sum(deltas.values()) == pytest.approx(987.65)


def test_todays_pnl_is_folded_into_todays_midnight_point():
    records = [pnl("today", BASE_MS + HOUR, 50.0)]

    series = backfill_account_equity(records, 1050.0, NOW)

    assert series == [(BASE_MS, 1000.0), (NOW, 1050.0)]


def test_no_closed_pnl_means_no_series():
    assert backfill_account_equity([], 1000.0, NOW) == []
    future_only = [pnl("later", NOW + HOUR, 5.0)]
    assert backfill_account_equity(future_only, 1000.0, NOW) == []


def test_combine_uses_latest_value_at_or_before_each_timestamp():
    series = {
        "a": [(100, 10.0), (300, 30.0)],
        "b": [(200, 5.0), (300, 6.0), (400, 7.0)],
    }

    combined = combine_account_series(series)

    assert [snap.timestamp for snap in combined] == [100, 200, 300, 400]
    assert [snap.total_equity for snap in combined] == [10.0, 15.0, 36.0, 37.0]
    # b has not started at 100
    assert combined[0].accounts == {"a": 10.0}
    assert combined[3].accounts == {"a": 30.0, "b": 7.0}


def test_prepend_history_never_overlaps_recorded_points():
    backfilled = [(1, 1.0), (2, 2.0), (5, 5.0)]
    existing = [(3, 3.0), (4, 4.0)]

    merged = prepend_history(backfilled, existing, lambda point: point[0])

    assert merged == [(1, 1.0), (2, 2.0), (3, 3.0), (4, 4.0)]
    assert prepend_history(backfilled, [], lambda point: point[0]) == backfilled


@pytest.mark.asyncio
async def test_combined_history_is_capped_and_append_only():
    store = EquityStore(MemoryPartitionStorage(), max_combined_points=3)
    first = await store.append(EquitySnapshot(timestamp=1, total_equity=1.0))
    for ts in range(2, 6):
        await store.append(EquitySnapshot(timestamp=ts, total_equity=float(ts)))

    history = await store.load_combined()

    assert [snap.timestamp for snap in history] == [3, 4, 5]
    assert [snap.timestamp for snap in first] == [1]
    # out-of-order snapshots are ignored
    await store.append(EquitySnapshot(timestamp=4, total_equity=99.0))
    assert [snap.timestamp for snap in await store.load_combined()] == [3, 4, 5]


@pytest.mark.asyncio
async def test_combined_history_persists_across_instances():
    storage = MemoryPartitionStorage()
    await EquityStore(storage).append(
        EquitySnapshot(timestamp=10, total_equity=5.0, accounts={"a": 5.0})
    )

    history = await EquityStore(storage).load_combined()

    assert history == [EquitySnapshot(timestamp=10, total_equity=5.0, accounts={"a": 5.0})]


@pytest.mark.asyncio
async def test_account_series_round_trip():
    store = EquityStore(MemoryPartitionStorage())
    await store.append_account_point("acc-1", (200, 2.0))
    await store.append_account_point("acc-1", (100, 1.0))
    await store.append_account_point("acc-1", (300, 3.0))

    assert await store.load_account_series("acc-1") == [(200, 2.0), (300, 3.0)]

    await store.delete_account_series("acc-1")
    assert await store.load_account_series("acc-1") == []


@pytest.mark.asyncio
async def test_merge_backfill_prepends_before_recorded_history():
    store = EquityStore(MemoryPartitionStorage())
    await store.append(EquitySnapshot(timestamp=500, total_equity=50.0))

    merged = await store.merge_backfill(
        [
            EquitySnapshot(timestamp=100, total_equity=10.0),
            EquitySnapshot(timestamp=600, total_equity=60.0),
        ]
    )

    assert [snap.timestamp for snap in merged] == [100, 500]
