"""Sequential multi-account history fetches with per-account status."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from tradetracker.models import (
    Account,
    AccountFetchStatus,
    FetchProgressEvent,
    FetchStatus,
    HistoricalCache,
)
from tradetracker.progress import ProgressReporter

logger = logging.getLogger(__name__)

FetchFunc = Callable[[Account, asyncio.Event], Awaitable[HistoricalCache]]
StatusListener = Callable[[AccountFetchStatus], None]


class BatchOrchestrator:
    """Run ``fetch`` for each account in turn.

    Accounts are processed one at a time because they may share a rate-limited
    credential set. A failure is recorded on that account's status and the
    batch moves on to the next account.
    """

    def __init__(self, fetch: FetchFunc, reporter: ProgressReporter) -> None:
        self.fetch = fetch
        self.reporter = reporter
        self.statuses: Dict[str, AccountFetchStatus] = {}
        self._listeners: List[StatusListener] = []
        self._cancel_event = asyncio.Event()
        self.task: Optional[asyncio.Task] = None

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    @property
    def overall_progress(self) -> float:
        if not self.statuses:
            return 0.0
        return sum(status.progress for status in self.statuses.values()) / len(self.statuses)

    @property
    def finished(self) -> bool:
        return bool(self.statuses) and all(
            status.status.is_terminal for status in self.statuses.values()
        )

    def cancel(self) -> None:
        logger.info("BatchOrchestrator.cancel: cancellation requested")
        self._cancel_event.set()

    def start(self, accounts: Sequence[Account]) -> asyncio.Task:
        """Run the batch in the background; the task resolves to the final statuses."""
        if self.task is not None and not self.task.done():
            raise RuntimeError("batch is already running")
        self.task = asyncio.ensure_future(self.run(accounts))
        return self.task

    async def run(self, accounts: Sequence[Account]) -> Dict[str, AccountFetchStatus]:
        self.statuses = {
            account.id: AccountFetchStatus(
                account_id=account.id, name=account.display_name, exchange=account.exchange
            )
            for account in accounts
        }
        for status in self.statuses.values():
            self._notify(status)
        logger.info("BatchOrchestrator.run: starting batch of %d accounts", len(accounts))

        for account in accounts:
            status = self.statuses[account.id]
            if self._cancel_event.is_set():
                self._finish(status, FetchStatus.ERROR, message="Cancelled")
                continue
            await self._run_one(account, status)

        completed = sum(1 for s in self.statuses.values() if s.status is FetchStatus.COMPLETE)
        logger.info(
            "BatchOrchestrator.run: finished (%d/%d complete)", completed, len(self.statuses)
        )
        return self.statuses

    async def _run_one(self, account: Account, status: AccountFetchStatus) -> None:
        status.status = FetchStatus.FETCHING
        status.progress = 0
        self._notify(status)

        def on_progress(event: FetchProgressEvent) -> None:
            progress = max(status.progress, min(event.percentage, 99))
            if progress != status.progress:
                status.progress = progress
                self._notify(status)

        unsubscribe = self.reporter.subscribe(account.id, on_progress)
        try:
            cache = await self.fetch(account, self._cancel_event)
        except asyncio.CancelledError:
            self._finish(status, FetchStatus.ERROR, message="Cancelled")
            raise
        except Exception as exc:
            logger.error("BatchOrchestrator: %s failed: %s", account.id, exc)
            self._finish(status, FetchStatus.ERROR, message=str(exc) or exc.__class__.__name__)
        else:
            self._finish(
                status, FetchStatus.COMPLETE, progress=100, total_records=cache.total_records
            )
        finally:
            unsubscribe()

    def _finish(
        self,
        status: AccountFetchStatus,
        result: FetchStatus,
        *,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        total_records: Optional[int] = None,
    ) -> None:
        status.status = result
        if progress is not None:
            status.progress = progress
        status.message = message
        status.total_records = total_records
        self._notify(status)

    def _notify(self, status: AccountFetchStatus) -> None:
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                logger.warning("BatchOrchestrator: status listener failed: %s", exc)
