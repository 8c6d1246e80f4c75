"""Credential lookup for exchange accounts.

Secrets stay inside the provider and the ccxt client built from them; the
rest of the engine only ever handles ``Account.credentials_ref``.
"""

from __future__ import annotations

import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Dict, Mapping

from tradetracker.exceptions import CredentialsError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    exchange: str
    key: str
    secret: str
    passphrase: str = ""

    def __repr__(self) -> str:
        return f"Credentials(exchange={self.exchange!r}, key={self.key[:4]}...)"


class CredentialProvider:
    def get(self, ref: str) -> Credentials:
        raise NotImplementedError


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, credentials: Mapping[str, Credentials]) -> None:
        self._credentials: Dict[str, Credentials] = dict(credentials)

    def get(self, ref: str) -> Credentials:
        try:
            return self._credentials[ref]
        except KeyError:
            raise CredentialsError(f"no credentials registered for {ref!r}") from None


class ApiKeysCredentialProvider(CredentialProvider):
    """Read credentials from an ``api-keys.json`` style file.

    The file maps a reference name to ``{"exchange", "key", "secret", "passphrase"}``.
    It is read lazily and cached.
    """

    def __init__(self, path: pathlib.Path) -> None:
        self.path = pathlib.Path(path)
        self._entries: Dict[str, dict] = {}
        self._loaded = False

    def get(self, ref: str) -> Credentials:
        if not self._loaded:
            self._load()
        if ref not in self._entries:
            raise CredentialsError(f"user {ref} not found in {self.path}")
        entry = self._entries[ref]
        missing = [field for field in ("exchange", "key", "secret") if not entry.get(field)]
        if missing:
            raise CredentialsError(f"api keys entry {ref!r} is missing {', '.join(missing)}")
        return Credentials(
            exchange=str(entry["exchange"]).lower(),
            key=str(entry["key"]),
            secret=str(entry["secret"]),
            passphrase=str(entry.get("passphrase") or ""),
        )

    def _load(self) -> None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise CredentialsError(f"error loading api keys file {self.path} {exc}") from exc
        if not isinstance(payload, dict):
            raise CredentialsError(f"api keys file {self.path} must contain a JSON object")
        self._entries = {
            str(ref): entry for ref, entry in payload.items() if isinstance(entry, dict)
        }
        self._loaded = True
        logger.debug(
            "ApiKeysCredentialProvider: loaded %d entries from %s", len(self._entries), self.path
        )
