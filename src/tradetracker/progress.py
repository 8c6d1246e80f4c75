"""Per-account publish/subscribe channel for fetch progress."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from tradetracker.models import FetchProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[FetchProgressEvent], None]


class ProgressReporter:
    """Fan progress events out to subscribers.

    Subscribers register either for a single account or for every account.
    Events are delivered synchronously and never stored; an account's entry is
    dropped as soon as its last subscriber leaves.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[ProgressCallback]] = {}
        self._global: List[ProgressCallback] = []

    def subscribe(self, account_id: str, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.setdefault(account_id, []).append(callback)
        logger.debug("ProgressReporter.subscribe: account=%s", account_id)
        return self._make_unsubscribe(account_id, callback)

    def subscribe_all(self, callback: ProgressCallback) -> Callable[[], None]:
        self._global.append(callback)
        return self._make_unsubscribe(None, callback)

    def publish(self, event: FetchProgressEvent) -> None:
        # copy so callbacks may unsubscribe while being notified
        targets = list(self._subscribers.get(event.account_id, ())) + list(self._global)
        for callback in targets:
            try:
                callback(event)
            except Exception as exc:
                logger.warning(
                    "ProgressReporter.publish: subscriber for %s failed: %s",
                    event.account_id,
                    exc,
                )

    def subscriber_count(self, account_id: Optional[str] = None) -> int:
        if account_id is None:
            return len(self._global)
        return len(self._subscribers.get(account_id, ()))

    def has_subscribers(self, account_id: str) -> bool:
        return account_id in self._subscribers

    def _make_unsubscribe(
        self, account_id: Optional[str], callback: ProgressCallback
    ) -> Callable[[], None]:
        done = False

        def unsubscribe() -> None:
            nonlocal done
            if done:
                return
            done = True
            if account_id is None:
                self._remove(self._global, callback)
                return
            callbacks = self._subscribers.get(account_id)
            if callbacks is None:
                return
            self._remove(callbacks, callback)
            if not callbacks:
                del self._subscribers[account_id]
                logger.debug("ProgressReporter: last subscriber for %s left", account_id)

        return unsubscribe

    @staticmethod
    def _remove(callbacks: List[ProgressCallback], callback: ProgressCallback) -> None:
        # identity match so the same function subscribed twice is removed once
        for idx, existing in enumerate(callbacks):
            if existing is callback:
                del callbacks[idx]
                return
