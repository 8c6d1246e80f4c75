"""Shared plumbing for remote history clients.

A history client returns one page of normalised records for one record kind
and one time range. Clients enforce a per-credential request budget with a
sliding-window rate limiter and translate ccxt exceptions into the
``tradetracker.exceptions`` hierarchy so callers can tell retryable failures
from terminal ones.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from ccxt.base.errors import AccountSuspended
from ccxt.base.errors import AuthenticationError as CcxtAuthenticationError
from ccxt.base.errors import BaseError as CcxtBaseError
from ccxt.base.errors import DDoSProtection, NetworkError, PermissionDenied, RateLimitExceeded

from tradetracker.config import RetryConfig
from tradetracker.exceptions import (
    AuthenticationError,
    PermissionDeniedError,
    RateLimitError,
    RemoteApiError,
    TransientApiError,
)
from tradetracker.models import Account, HistoryRecord, LiveSnapshot, Position, RecordKind
from tradetracker.utils import safe_float

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Page:
    records: List[HistoryRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None


def classify_error(exc: BaseException) -> Optional[RemoteApiError]:
    """Map a raised exception onto the remote error taxonomy.

    Returns ``None`` for exceptions that are not remote failures (programming
    errors, cancellation); those must propagate untouched.
    """
    if isinstance(exc, RemoteApiError):
        return exc
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, PermissionDenied):
        return PermissionDeniedError(message)
    if isinstance(exc, (CcxtAuthenticationError, AccountSuspended)):
        return AuthenticationError(message)
    # RateLimitExceeded and DDoSProtection are NetworkError subclasses; test them first
    if isinstance(exc, (RateLimitExceeded, DDoSProtection)):
        return RateLimitError(message)
    if isinstance(exc, NetworkError):
        return TransientApiError(message)
    if isinstance(exc, CcxtBaseError):
        return RemoteApiError(message)
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError)):
        return TransientApiError(message)
    return None


class SlidingWindowRateLimiter:
    """Allow at most ``calls_per_minute`` acquisitions in any 60 second window."""

    def __init__(
        self, calls_per_minute: int, *, now_func: Optional[Callable[[], int]] = None
    ) -> None:
        self.calls_per_minute = max(1, int(calls_per_minute))
        self._timestamps: deque[int] = deque()
        self._lock = asyncio.Lock()
        self._now_func = now_func or (lambda: int(datetime.now(tz=timezone.utc).timestamp() * 1000))

    async def acquire(self) -> None:
        window_ms = 60_000
        q = self._timestamps
        while True:
            async with self._lock:
                now = self._now_func()
                window_start = now - window_ms
                while q and q[0] <= window_start:
                    q.popleft()
                if len(q) < self.calls_per_minute:
                    q.append(now)
                    return
                wait_ms = q[0] + window_ms - now
            if wait_ms > 0:
                logger.debug(
                    "SlidingWindowRateLimiter.acquire: sleeping %.3fs to respect %d calls/min",
                    wait_ms / 1000,
                    self.calls_per_minute,
                )
                await asyncio.sleep(wait_ms / 1000)
            else:
                await asyncio.sleep(0)


class BaseHistoryClient:
    """Abstract per-exchange history adapter.

    Subclasses set ``exchange``, ``max_span_ms``, ``page_limit`` and
    ``supported_kinds`` and implement ``_fetch_page_once`` and
    ``_fetch_live_once``.
    """

    exchange = ""
    max_span_ms = 7 * 24 * 60 * 60 * 1000
    page_limit = 100
    supported_kinds: Tuple[RecordKind, ...] = ()

    def __init__(
        self,
        api,
        *,
        retry: Optional[RetryConfig] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        now_func: Optional[Callable[[], int]] = None,
    ) -> None:
        self.api = api
        self.retry = retry or RetryConfig()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(self.retry.calls_per_minute)
        self._now_func = now_func or (lambda: int(datetime.now(tz=timezone.utc).timestamp() * 1000))

    def supports(self, kind: RecordKind) -> bool:
        return kind in self.supported_kinds

    async def fetch_page(
        self,
        account: Account,
        kind: RecordKind,
        range_start: int,
        range_end: int,
        cursor: Optional[str] = None,
    ) -> Page:
        if not self.supports(kind):
            raise ValueError(f"{self.__class__.__name__} does not support {kind.value}")
        context = f"{self.__class__.__name__}.fetch_page[{account.id}:{kind.value}]"
        return await self._call_with_retry(
            context,
            lambda: self._fetch_page_once(kind, int(range_start), int(range_end), cursor),
        )

    async def fetch_live_snapshot(self, account: Account) -> LiveSnapshot:
        context = f"{self.__class__.__name__}.fetch_live_snapshot[{account.id}]"
        return await self._call_with_retry(context, lambda: self._fetch_live_once(account))

    async def close(self) -> None:
        closer = getattr(self.api, "close", None)
        if closer is not None:
            await closer()

    async def _fetch_page_once(
        self, kind: RecordKind, range_start: int, range_end: int, cursor: Optional[str]
    ) -> Page:
        raise NotImplementedError

    async def _fetch_live_once(self, account: Account) -> LiveSnapshot:
        raise NotImplementedError

    async def _call_with_retry(self, context: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        rate_limit_hits = 0
        backoff = self.retry.backoff_seconds
        while True:
            await self.rate_limiter.acquire()
            try:
                return await call()
            except Exception as exc:
                error = classify_error(exc)
                if error is None:
                    raise
                if isinstance(error, RateLimitError):
                    rate_limit_hits += 1
                    if rate_limit_hits > self.retry.max_rate_limit_retries:
                        logger.error(
                            "%s: rate limited %d times; giving up", context, rate_limit_hits
                        )
                        raise error from exc
                    logger.warning(
                        "%s: rate limited (%s); pausing %.2fs",
                        context,
                        error,
                        self.retry.rate_limit_pause_seconds,
                    )
                    await asyncio.sleep(self.retry.rate_limit_pause_seconds)
                    continue
                if not error.retryable:
                    logger.error("%s: non-retryable error: %s", context, error)
                    if error is exc:
                        raise
                    raise error from exc
                attempt += 1
                if attempt >= self.retry.max_attempts:
                    logger.error("%s: failed after %d attempts: %s", context, attempt, error)
                    if error is exc:
                        raise
                    raise error from exc
                logger.warning(
                    "%s: attempt %d/%d failed (%s); retrying in %.2fs",
                    context,
                    attempt,
                    self.retry.max_attempts,
                    error,
                    backoff,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.retry.max_backoff_seconds)

    def _now_ms(self) -> int:
        return self._now_func()

    def _snapshot_from_ccxt(
        self,
        account: Account,
        balance: Dict[str, object],
        positions: List[Dict[str, object]],
        *,
        quote: str = "USDT",
    ) -> LiveSnapshot:
        totals = balance.get("total") or {}
        free = balance.get("free") or {}
        parsed_positions = [self._normalize_position(pos) for pos in positions or []]
        unrealized = sum(pos.unrealized_pnl for pos in parsed_positions)
        wallet = safe_float(totals.get(quote))
        return LiveSnapshot(
            account_id=account.id,
            timestamp=self._now_ms(),
            total_equity=wallet + unrealized,
            wallet_balance=wallet,
            available_balance=safe_float(free.get(quote)),
            unrealized_pnl=unrealized,
            positions=parsed_positions,
        )

    @staticmethod
    def _normalize_position(raw: Dict[str, object]) -> Position:
        return Position(
            symbol=str(raw.get("symbol") or ""),
            side=str(raw.get("side") or "").lower(),
            size=abs(safe_float(raw.get("contracts"))),
            entry_price=safe_float(raw.get("entryPrice")),
            mark_price=safe_float(raw.get("markPrice")),
            unrealized_pnl=safe_float(raw.get("unrealizedPnl")),
            leverage=safe_float(raw.get("leverage")),
        )
