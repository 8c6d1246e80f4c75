"""Equity time series: live snapshots and reconstruction from realized P&L.

Backfilled equity is an estimate. It only accounts for realized P&L records,
so unrealized swings, fees booked outside those records and deposits or
withdrawals are not reflected in the synthesized past.
"""

from __future__ import annotations

import asyncio
import bisect
import json
import logging
from collections import defaultdict
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from tradetracker.models import ClosedPnLRecord, EquitySnapshot
from tradetracker.storage import PartitionStorage
from tradetracker.utils import day_start_ms

logger = logging.getLogger(__name__)

EquityPoint = Tuple[int, float]

ACCOUNT_SERIES_PREFIX = "equity/accounts"
COMBINED_KEY = "equity/combined"
DEFAULT_MAX_COMBINED_POINTS = 720


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


def daily_pnl(closed_pnl: Sequence[ClosedPnLRecord]) -> Dict[int, float]:
    """Sum realized P&L per UTC day, keyed by the day's midnight timestamp."""
    totals: Dict[int, float] = defaultdict(float)
    for record in closed_pnl:
        totals[day_start_ms(record.updated_time)] += record.closed_pnl
    return dict(totals)


def backfill_account_equity(
    closed_pnl: Sequence[ClosedPnLRecord], current_equity: float, now_ms: int
) -> List[EquityPoint]:
    """Walk realized P&L backwards from the current equity.

    Each day with P&L gets a point at its midnight holding the equity before
    that day's P&L; the series ends with ``(now_ms, current_equity)``. An
    account without P&L records gets no series at all.
    """
    relevant = [rec for rec in closed_pnl if rec.updated_time <= now_ms]
    if not relevant:
        return []
    deltas = daily_pnl(relevant)
    running = float(current_equity)
    points: List[EquityPoint] = []
    for day in sorted(deltas, reverse=True):
        running -= deltas[day]
        if day < now_ms:
            points.append((day, running))
    points.reverse()
    points.append((int(now_ms), float(current_equity)))
    return points


def combine_account_series(
    series_by_account: Mapping[str, Sequence[EquityPoint]],
) -> List[EquitySnapshot]:
    """Union per-account series into combined snapshots.

    For every timestamp seen in any series, each account contributes its most
    recent value at or before that timestamp; accounts whose series starts
    later contribute nothing.
    """
    prepared: Dict[str, Tuple[List[int], List[float]]] = {}
    for account_id, points in series_by_account.items():
        if not points:
            continue
        ordered = sorted(points)
        prepared[account_id] = ([ts for ts, _ in ordered], [value for _, value in ordered])
    timestamps = sorted({ts for stamps, _ in prepared.values() for ts in stamps})
    snapshots: List[EquitySnapshot] = []
    for ts in timestamps:
        accounts: Dict[str, float] = {}
        for account_id, (stamps, values) in prepared.items():
            idx = bisect.bisect_right(stamps, ts) - 1
            if idx >= 0:
                accounts[account_id] = values[idx]
        snapshots.append(
            EquitySnapshot(timestamp=ts, total_equity=sum(accounts.values()), accounts=accounts)
        )
    return snapshots


def prepend_history(backfilled: Sequence, existing: Sequence, timestamp_of) -> list:
    """Put synthesized points in front of recorded ones without overlapping them."""
    if not existing:
        return list(backfilled)
    first_recorded = timestamp_of(existing[0])
    return [item for item in backfilled if timestamp_of(item) < first_recorded] + list(existing)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def account_series_key(account_id: str) -> str:
    return f"{ACCOUNT_SERIES_PREFIX}/{account_id}"


class EquityStore:
    """Per-account equity series (uncapped) and the combined snapshot list (capped).

    The combined list is append-only: every change builds a new list and
    swaps it in, the previous one is never edited.
    """

    def __init__(
        self, storage: PartitionStorage, *, max_combined_points: int = DEFAULT_MAX_COMBINED_POINTS
    ) -> None:
        self.storage = storage
        self.max_combined_points = max(1, int(max_combined_points))
        self._combined: Optional[List[EquitySnapshot]] = None

    async def load_account_series(self, account_id: str) -> List[EquityPoint]:
        raw = await asyncio.to_thread(self.storage.get_partition, account_series_key(account_id))
        if raw is None:
            return []
        try:
            payload = json.loads(raw)
            return [(int(ts), float(value)) for ts, value in payload]
        except (ValueError, TypeError) as exc:
            logger.warning(
                "EquityStore.load_account_series: discarding unreadable series for %s (%s)",
                account_id,
                exc,
            )
            return []

    async def save_account_series(self, account_id: str, points: Sequence[EquityPoint]) -> None:
        payload = json.dumps([[int(ts), float(value)] for ts, value in sorted(points)])
        await asyncio.to_thread(
            self.storage.set_partition, account_series_key(account_id), payload.encode("utf-8")
        )

    async def append_account_point(self, account_id: str, point: EquityPoint) -> None:
        points = await self.load_account_series(account_id)
        if points and point[0] <= points[-1][0]:
            return
        await self.save_account_series(account_id, points + [point])

    async def delete_account_series(self, account_id: str) -> None:
        await asyncio.to_thread(self.storage.delete_partition, account_series_key(account_id))

    async def load_combined(self) -> List[EquitySnapshot]:
        if self._combined is not None:
            return list(self._combined)
        raw = await asyncio.to_thread(self.storage.get_partition, COMBINED_KEY)
        snapshots: List[EquitySnapshot] = []
        if raw is not None:
            try:
                snapshots = [EquitySnapshot.model_validate(item) for item in json.loads(raw)]
            except ValueError as exc:
                logger.warning("EquityStore.load_combined: discarding unreadable history (%s)", exc)
        self._combined = snapshots
        return list(snapshots)

    async def append(self, snapshot: EquitySnapshot) -> List[EquitySnapshot]:
        current = await self.load_combined()
        if current and snapshot.timestamp <= current[-1].timestamp:
            logger.debug(
                "EquityStore.append: ignoring out-of-order snapshot at %d", snapshot.timestamp
            )
            return current
        return await self._replace_combined(current + [snapshot])

    async def merge_backfill(self, snapshots: Sequence[EquitySnapshot]) -> List[EquitySnapshot]:
        current = await self.load_combined()
        merged = prepend_history(snapshots, current, lambda snap: snap.timestamp)
        return await self._replace_combined(merged)

    async def _replace_combined(self, snapshots: List[EquitySnapshot]) -> List[EquitySnapshot]:
        capped = snapshots[-self.max_combined_points :]
        payload = json.dumps([snap.model_dump() for snap in capped])
        await asyncio.to_thread(self.storage.set_partition, COMBINED_KEY, payload.encode("utf-8"))
        self._combined = capped
        return list(capped)
