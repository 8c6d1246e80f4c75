import asyncio

import pytest

from fakes import BASE_MS, HOUR, Clock, FakeClientPool, FakeHistoryClient, make_account, pnl, trade
from tradetracker.config import AppConfig
from tradetracker.exceptions import AuthenticationError, FetchCancelledError
from tradetracker.models import (
    DataRange,
    FetchStatus,
    HistoricalCache,
    HistoryStatus,
    LiveSnapshot,
    RecordKind,
)
from tradetracker.service import HistoryService
from tradetracker.storage import MemoryPartitionStorage
from tradetracker.utils import DAY_MS

T0 = BASE_MS + 10 * DAY_MS


def _records():
    return {
        RecordKind.CLOSED_PNL: [
            pnl("p1", T0 - 2 * DAY_MS + 5 * HOUR, -300.0),
            pnl("p2", T0 - DAY_MS + 3 * HOUR, -1000.0),
        ],
        RecordKind.TRADES: [trade("t1", T0 - DAY_MS + 2 * HOUR)],
    }


def _service(clients, clock, **history):
    settings = dict(initial_days_history=3, chunk_size_days=1, incremental_overlap_days=1)
    settings.update(history)
    config = AppConfig(
        accounts=[make_account(account_id) for account_id in clients], history=settings
    )
    return HistoryService(
        config,
        storage=MemoryPartitionStorage(),
        clients=FakeClientPool(clients),
        now_func=clock.now_ms,
    )


class _GatedClient(FakeHistoryClient):
    """Holds every page request until ``gate`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = asyncio.Event()

    async def _fetch_page_once(self, kind, range_start, range_end, cursor):
        await self.gate.wait()
        return await super()._fetch_page_once(kind, range_start, range_end, cursor)


def _first_start(client, since_call=0):
    return client.ranges_for(RecordKind.CLOSED_PNL)[since_call][0]


@pytest.mark.asyncio
async def test_full_fetch_spans_initial_history():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    events = []
    service.on_historical_progress(events.append)

    cache = await service.fetch_complete_historical_data("acc-1")

    assert cache.is_complete
    assert cache.data_range.earliest == T0 - 3 * DAY_MS
    assert cache.data_range.latest == T0
    assert len(cache.closed_pnl) == 2
    assert events and events[-1].percentage == 100
    assert service.get_cached_historical_data("acc-1") == cache
    assert await service.get_cached_historical_data_async("acc-1") == cache
    assert not service.is_fetching("acc-1")


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_fetch():
    clock = Clock(T0)
    client = _GatedClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)

    async def release():
        await asyncio.sleep(0)
        assert service.is_fetching("acc-1")
        client.gate.set()

    first, second, _ = await asyncio.gather(
        service.fetch_complete_historical_data("acc-1"),
        service.fetch_complete_historical_data("acc-1"),
        release(),
    )

    assert first is second
    assert len(client.ranges_for(RecordKind.CLOSED_PNL)) == 4


@pytest.mark.asyncio
async def test_fresh_complete_cache_is_returned_without_fetching():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    first = await service.fetch_complete_historical_data("acc-1")
    calls = len(client.calls)

    clock.advance(5 * 60 * 1000)
    again = await service.fetch_complete_historical_data("acc-1")

    assert again == first
    assert len(client.calls) == calls


@pytest.mark.asyncio
async def test_stale_complete_cache_gets_incremental_update():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    await service.fetch_complete_historical_data("acc-1")
    first_run_chunks = len(client.ranges_for(RecordKind.CLOSED_PNL))

    clock.advance(HOUR)
    cache = await service.fetch_complete_historical_data("acc-1")

    # one day of overlap before the previous update
    assert _first_start(client, first_run_chunks) == T0 - DAY_MS
    assert cache.data_range.earliest == T0 - 3 * DAY_MS
    assert cache.data_range.latest == T0 + HOUR
    assert cache.last_updated == T0 + HOUR
    assert len(cache.closed_pnl) == 2


@pytest.mark.asyncio
async def test_incomplete_cache_is_resumed():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    partial = HistoricalCache(
        account_id="acc-1",
        closed_pnl=[pnl("p1", T0 - 2 * DAY_MS + 5 * HOUR, -300.0)],
        data_range=DataRange(earliest=T0 - 3 * DAY_MS, latest=T0 - DAY_MS - 1),
        is_complete=False,
        last_updated=T0 - HOUR,
    )
    await service.cache_store.save("acc-1", partial)

    cache = await service.fetch_complete_historical_data("acc-1")

    assert _first_start(client) == T0 - DAY_MS
    assert cache.is_complete
    assert cache.data_range.earliest == T0 - 3 * DAY_MS
    assert [rec.order_id for rec in cache.closed_pnl] == ["p1", "p2"]


@pytest.mark.asyncio
async def test_expired_cache_refetches_recent_window_and_keeps_older_history():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    await service.fetch_complete_historical_data("acc-1")
    first_run_chunks = len(client.ranges_for(RecordKind.CLOSED_PNL))

    clock.advance(25 * HOUR)
    cache = await service.fetch_complete_historical_data("acc-1")

    assert _first_start(client, first_run_chunks) == T0 + 25 * HOUR - 3 * DAY_MS
    assert cache.data_range.earliest == T0 - 3 * DAY_MS
    assert [rec.order_id for rec in cache.closed_pnl] == ["p1", "p2"]


@pytest.mark.asyncio
async def test_force_refresh_ignores_cache():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    await service.fetch_complete_historical_data("acc-1")
    first_run_chunks = len(client.ranges_for(RecordKind.CLOSED_PNL))

    await service.fetch_complete_historical_data("acc-1", force_refresh=True)

    assert _first_start(client, first_run_chunks) == T0 - 3 * DAY_MS


@pytest.mark.asyncio
async def test_unknown_account_is_rejected():
    clock = Clock(T0)
    service = _service({"acc-1": FakeHistoryClient(clock=clock)}, clock)

    with pytest.raises(KeyError):
        await service.fetch_complete_historical_data("nope")


@pytest.mark.asyncio
async def test_refresh_merges_live_state_and_schedules_missing_history():
    clock = Clock(T0)
    clients = {
        "acc-1": FakeHistoryClient(_records(), clock=clock, live_equity=5181.0),
        "acc-2": FakeHistoryClient(_records(), clock=clock, live_equity=100.0),
        "acc-3": FakeHistoryClient(clock=clock),
    }
    clients["acc-3"].live_error = AuthenticationError("expired key")
    service = _service(clients, clock)
    await service.fetch_complete_historical_data("acc-1")

    views = await service.refresh()

    statuses = {view.account_id: view.history_status for view in views}
    assert statuses == {"acc-1": HistoryStatus.COMPLETE, "acc-2": HistoryStatus.ABSENT}
    assert len(views[0].closed_pnl) == 2
    assert service.get_live_snapshot("acc-1").total_equity == 5181.0
    combined = await service.equity_store.load_combined()
    assert combined[-1].total_equity == pytest.approx(5281.0)
    assert combined[-1].accounts == {"acc-1": 5181.0, "acc-2": 100.0}
    assert await service.equity_store.load_account_series("acc-2") == [(T0, 100.0)]

    # the scheduled background fetch for acc-2 is joined, not duplicated
    assert service.is_fetching("acc-2")
    cache = await service.fetch_complete_historical_data("acc-2")
    assert cache.is_complete
    assert len(clients["acc-2"].ranges_for(RecordKind.CLOSED_PNL)) == 4
    await service.close()


@pytest.mark.asyncio
async def test_backfill_from_complete_history_and_live_equity():
    clock = Clock(T0)
    clients = {
        "acc-1": FakeHistoryClient(_records(), clock=clock),
        "acc-2": FakeHistoryClient(clock=clock),
        "acc-3": FakeHistoryClient(clock=clock),
    }
    service = _service(clients, clock)
    await service.fetch_complete_historical_data("acc-1")
    await service.fetch_complete_historical_data("acc-2")
    for account_id, equity in (("acc-1", 5181.0), ("acc-2", 50.0), ("acc-3", 10.0)):
        service.update_live_snapshot(
            LiveSnapshot(account_id=account_id, timestamp=T0, total_equity=equity)
        )

    snapshots = await service.backfill_equity_history()

    # acc-2 has no closed pnl and acc-3 has no history: neither gets a series
    assert [(snap.timestamp, snap.total_equity) for snap in snapshots] == [
        (T0 - 2 * DAY_MS, 6481.0),
        (T0 - DAY_MS, 6181.0),
        (T0, 5181.0),
    ]
    assert await service.equity_store.load_account_series("acc-1") == [
        (T0 - 2 * DAY_MS, 6481.0),
        (T0 - DAY_MS, 6181.0),
        (T0, 5181.0),
    ]
    assert await service.equity_store.load_account_series("acc-2") == []


@pytest.mark.asyncio
async def test_batch_through_service_isolates_failures():
    clock = Clock(T0)
    clients = {
        "acc-1": FakeHistoryClient(_records(), clock=clock),
        "acc-2": FakeHistoryClient(_records(), clock=clock),
        "acc-3": FakeHistoryClient(_records(), clock=clock),
    }
    clients["acc-2"].error = AuthenticationError("invalid api key")
    clients["acc-2"].fail_when = lambda kind, start, end, cursor: True
    service = _service(clients, clock)
    updates = []

    batch = service.start_batch_historical_fetch(
        ["acc-1", "acc-2", "acc-3"], lambda status: updates.append(status.to_dict())
    )
    statuses = await batch.task

    assert [statuses[key].status for key in ("acc-1", "acc-2", "acc-3")] == [
        FetchStatus.COMPLETE,
        FetchStatus.ERROR,
        FetchStatus.COMPLETE,
    ]
    assert statuses["acc-2"].message == "invalid api key"
    assert (await service.get_cached_historical_data_async("acc-1")).is_complete
    assert (await service.get_cached_historical_data_async("acc-3")).is_complete
    partial = await service.get_cached_historical_data_async("acc-2")
    assert partial is not None and not partial.is_complete
    assert updates[-1]["status"] == "complete"


@pytest.mark.asyncio
async def test_delete_account_data():
    clock = Clock(T0)
    service = _service({"acc-1": FakeHistoryClient(_records(), clock=clock)}, clock)
    await service.fetch_complete_historical_data("acc-1")
    await service.refresh()

    await service.delete_account_data("acc-1")

    assert service.get_cached_historical_data("acc-1") is None
    assert await service.get_cached_historical_data_async("acc-1") is None
    assert await service.equity_store.load_account_series("acc-1") == []
    assert service.get_live_snapshot("acc-1") is None


@pytest.mark.asyncio
async def test_close_releases_clients():
    clock = Clock(T0)
    pool_clients = {"acc-1": FakeHistoryClient(clock=clock)}
    service = _service(pool_clients, clock)

    await service.close()

    assert service.clients.closed


@pytest.mark.asyncio
async def test_refresh_skips_accounts_that_fail_and_keeps_the_rest():
    class _PartlyBrokenPool(FakeClientPool):
        def get(self, account):
            if account.id == "bad":
                raise ValueError("ccxt does not know the exchange 'bybitt'")
            return super().get(account)

    clock = Clock(T0)
    clients = {
        "good": FakeHistoryClient(clock=clock, live_equity=250.0),
        "garbled": FakeHistoryClient(clock=clock),
    }
    clients["garbled"].live_error = KeyError("list")
    config = AppConfig(accounts=[make_account(acc_id) for acc_id in ("bad", "garbled", "good")])
    service = HistoryService(
        config,
        storage=MemoryPartitionStorage(),
        clients=_PartlyBrokenPool(clients),
        now_func=clock.now_ms,
    )

    views = await service.refresh()

    assert [view.account_id for view in views] == ["good"]
    assert views[0].total_equity == 250.0
    combined = await service.equity_store.load_combined()
    assert combined[-1].accounts == {"good": 250.0}
    await service.close()


@pytest.mark.asyncio
async def test_batch_cancel_stops_a_joined_background_fetch():
    clock = Clock(T0)
    client = _GatedClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)

    background = service.start_historical_fetch("acc-1")
    await asyncio.sleep(0)
    assert service.is_fetching("acc-1")
    batch = service.start_batch_historical_fetch(["acc-1"])
    for _ in range(3):
        await asyncio.sleep(0)

    batch.cancel()
    client.gate.set()
    statuses = await batch.task

    assert statuses["acc-1"].status is FetchStatus.ERROR
    with pytest.raises(FetchCancelledError):
        await background
    cached = await service.get_cached_historical_data_async("acc-1")
    assert cached is not None and not cached.is_complete
    # at most the page already in flight went out
    assert len(client.calls) <= 1


@pytest.mark.asyncio
async def test_longer_initial_history_fills_the_gap_before_cached_data():
    clock = Clock(T0)
    client = FakeHistoryClient(_records(), clock=clock)
    service = _service({"acc-1": client}, clock)
    await service.fetch_complete_historical_data("acc-1")
    first_run_chunks = len(client.ranges_for(RecordKind.CLOSED_PNL))

    clock.advance(HOUR)
    longer = HistoryService(
        AppConfig(
            accounts=[make_account("acc-1")],
            history=dict(initial_days_history=5, chunk_size_days=1, incremental_overlap_days=1),
        ),
        storage=service.storage,
        clients=FakeClientPool({"acc-1": client}),
        now_func=clock.now_ms,
    )
    cache = await longer.fetch_complete_historical_data("acc-1")

    new_start = T0 + HOUR - 5 * DAY_MS
    # the gap is walked first, oldest chunk first, then the incremental top-up
    assert _first_start(client, first_run_chunks) == new_start
    assert cache.is_complete
    assert cache.data_range.earliest == new_start
    assert cache.data_range.latest == T0 + HOUR
