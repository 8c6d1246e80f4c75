"""Remote history clients, one per exchange family."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Tuple

import ccxt.async_support as ccxt_async

from tradetracker.config import RetryConfig
from tradetracker.credentials import CredentialProvider, Credentials
from tradetracker.exceptions import CredentialsError
from tradetracker.exchanges.base import (
    BaseHistoryClient,
    Page,
    SlidingWindowRateLimiter,
    classify_error,
)
from tradetracker.exchanges.bybit import BybitHistoryClient
from tradetracker.exchanges.generic import GenericHistoryClient
from tradetracker.models import Account

logger = logging.getLogger(__name__)

CLIENT_CLASSES = {
    "bybit": BybitHistoryClient,
}

__all__ = [
    "BaseHistoryClient",
    "BybitHistoryClient",
    "ClientPool",
    "GenericHistoryClient",
    "Page",
    "SlidingWindowRateLimiter",
    "classify_error",
    "create_ccxt_client",
]


def create_ccxt_client(account: Account, credentials: Credentials):
    exchange_cls = getattr(ccxt_async, account.exchange, None)
    if exchange_cls is None:
        raise ValueError(f"ccxt does not know the exchange {account.exchange!r}")
    api = exchange_cls(
        {
            "apiKey": credentials.key,
            "secret": credentials.secret,
            "password": credentials.passphrase,
            "enableRateLimit": True,
        }
    )
    if account.is_testnet:
        api.set_sandbox_mode(True)
    return api


class ClientPool:
    """Build history clients lazily and share them per credential set.

    Accounts that point at the same credentials reuse one client, and with it
    one rate limiter, so their combined request rate stays under the
    exchange's per-key ceiling.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        retry: Optional[RetryConfig] = None,
        api_factory: Callable[[Account, Credentials], object] = create_ccxt_client,
    ) -> None:
        self.credentials = credentials
        self.retry = retry or RetryConfig()
        self.api_factory = api_factory
        self._clients: Dict[Tuple[str, str, bool], BaseHistoryClient] = {}

    def get(self, account: Account) -> BaseHistoryClient:
        key = (account.exchange, account.credentials_key, account.is_testnet)
        client = self._clients.get(key)
        if client is not None:
            return client
        creds = self.credentials.get(account.credentials_key)
        if creds.exchange and creds.exchange != account.exchange:
            raise CredentialsError(
                f"credentials {account.credentials_key!r} belong to {creds.exchange}, "
                f"not {account.exchange}"
            )
        api = self.api_factory(account, creds)
        client_cls = CLIENT_CLASSES.get(account.exchange, GenericHistoryClient)
        client = client_cls(api, retry=self.retry)
        self._clients[key] = client
        logger.info(
            "ClientPool.get: created %s for %s (credentials=%s)",
            client_cls.__name__,
            account.id,
            account.credentials_key,
        )
        return client

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            try:
                await client.close()
            except Exception as exc:
                logger.warning("ClientPool.close: failed to close %s: %s", client.exchange, exc)
