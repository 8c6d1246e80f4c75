"""Durable per-account store for ``HistoricalCache`` records."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from pydantic import ValidationError

from tradetracker.models import HistoricalCache
from tradetracker.storage import PartitionStorage

logger = logging.getLogger(__name__)

HISTORICAL_PREFIX = "historical"


def historical_key(account_id: str) -> str:
    return f"{HISTORICAL_PREFIX}/{account_id}"


class CacheStore:
    """Load, save and delete one ``HistoricalCache`` per account.

    ``load`` returning ``None`` means the account was never fetched; a cache
    with ``is_complete=False`` means it was fetched but interrupted. Saves are
    whole-record replacements. The last record loaded or saved for each
    account is also kept in memory for synchronous readers (see ``peek``).
    """

    def __init__(self, storage: PartitionStorage) -> None:
        self.storage = storage
        self._memory: Dict[str, HistoricalCache] = {}

    async def load(self, account_id: str) -> Optional[HistoricalCache]:
        raw = await asyncio.to_thread(self.storage.get_partition, historical_key(account_id))
        if raw is None:
            self._memory.pop(account_id, None)
            return None
        try:
            cache = HistoricalCache.model_validate_json(raw)
        except ValidationError as exc:
            # a damaged partition only costs this account a refetch
            logger.warning(
                "CacheStore.load: discarding unreadable cache for %s (%d errors)",
                account_id,
                exc.error_count(),
            )
            self._memory.pop(account_id, None)
            return None
        if cache.account_id != account_id:
            logger.warning(
                "CacheStore.load: partition %s holds data for %s; ignoring",
                account_id,
                cache.account_id,
            )
            return None
        self._memory[account_id] = cache
        logger.debug(
            "CacheStore.load: %s complete=%s records=%d",
            account_id,
            cache.is_complete,
            cache.total_records,
        )
        return cache

    async def save(self, account_id: str, cache: HistoricalCache) -> None:
        if cache.account_id != account_id:
            raise ValueError(
                f"refusing to save cache of {cache.account_id!r} into partition {account_id!r}"
            )
        payload = cache.model_dump_json().encode("utf-8")
        await asyncio.to_thread(self.storage.set_partition, historical_key(account_id), payload)
        self._memory[account_id] = cache
        logger.info(
            "CacheStore.save: %s complete=%s closed_pnl=%d trades=%d deposits=%d withdrawals=%d",
            account_id,
            cache.is_complete,
            len(cache.closed_pnl),
            len(cache.trades),
            len(cache.deposits),
            len(cache.withdrawals),
        )

    async def delete(self, account_id: str) -> None:
        await asyncio.to_thread(self.storage.delete_partition, historical_key(account_id))
        self._memory.pop(account_id, None)
        logger.info("CacheStore.delete: removed cache for %s", account_id)

    def peek(self, account_id: str) -> Optional[HistoricalCache]:
        return self._memory.get(account_id)
