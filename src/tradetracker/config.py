from __future__ import annotations

import pathlib
from typing import Any, Dict, List, Optional

import hjson
from pydantic import BaseModel, Field, field_validator, model_validator

from tradetracker.logging_setup import SORTED_LEVEL_NAMES
from tradetracker.models import Account, RecordKind
from tradetracker.utils import DAY_MS, HOUR_MS, MINUTE_MS


class HistoryConfig(BaseModel):
    initial_days_history: int = 180
    chunk_size_days: float = 7
    cache_expiry_hours: float = 24
    incremental_update_minutes: float = 15
    incremental_overlap_days: float = 2
    incremental_exchanges: List[str] = Field(default_factory=lambda: ["bybit"])
    record_kinds: List[RecordKind] = Field(default_factory=lambda: list(RecordKind))

    @field_validator("initial_days_history", "chunk_size_days")
    @classmethod
    def _validate_positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("incremental_exchanges")
    @classmethod
    def _lower_exchanges(cls, value: List[str]) -> List[str]:
        return [exchange.strip().lower() for exchange in value]

    @model_validator(mode="after")
    def _check_intervals(self) -> "HistoryConfig":
        if self.incremental_update_minutes * MINUTE_MS >= self.cache_expiry_hours * HOUR_MS:
            raise ValueError("incremental_update_minutes must be shorter than cache_expiry_hours")
        return self

    @property
    def chunk_span_ms(self) -> int:
        return int(self.chunk_size_days * DAY_MS)

    @property
    def initial_span_ms(self) -> int:
        return int(self.initial_days_history * DAY_MS)

    @property
    def cache_expiry_ms(self) -> int:
        return int(self.cache_expiry_hours * HOUR_MS)

    @property
    def incremental_update_ms(self) -> int:
        return int(self.incremental_update_minutes * MINUTE_MS)

    @property
    def incremental_overlap_ms(self) -> int:
        return int(self.incremental_overlap_days * DAY_MS)


class RetryConfig(BaseModel):
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 8.0
    rate_limit_pause_seconds: float = 1.0
    max_rate_limit_retries: int = 10
    calls_per_minute: int = 120

    @field_validator("max_attempts", "calls_per_minute")
    @classmethod
    def _validate_at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


class StorageConfig(BaseModel):
    root: pathlib.Path = pathlib.Path("caches/tradetracker")
    lock_timeout_seconds: float = 10.0


class EquityConfig(BaseModel):
    max_combined_points: int = 720


class LoggingConfig(BaseModel):
    level: str = "info"
    log_file: Optional[pathlib.Path] = None
    rotation: bool = False

    @field_validator("level")
    @classmethod
    def _validate_level(cls, value: str) -> str:
        value = value.lower()
        if value not in SORTED_LEVEL_NAMES:
            raise ValueError(
                f"The log level {value!r} is not valid. "
                f"Available levels: {', '.join(SORTED_LEVEL_NAMES)}"
            )
        return value


class AppConfig(BaseModel):
    accounts: List[Account] = Field(default_factory=list)
    api_keys_path: pathlib.Path = pathlib.Path("api-keys.json")
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    equity: EquityConfig = Field(default_factory=EquityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("accounts")
    @classmethod
    def _validate_unique_ids(cls, value: List[Account]) -> List[Account]:
        seen = set()
        for account in value:
            if account.id in seen:
                raise ValueError(f"The account id {account.id!r} is defined more than once")
            seen.add(account.id)
        return value

    def get_account(self, account_id: str) -> Account:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise KeyError(account_id)

    @classmethod
    def parse_files(cls, *files: pathlib.Path) -> "AppConfig":
        """
        Load the configuration from one or more hjson/json files, later files
        overriding earlier ones
        """
        config_dicts: List[Dict[str, Any]] = []
        for file in files:
            config_dicts.append(hjson.loads(pathlib.Path(file).read_text(encoding="utf-8")))
        if not config_dicts:
            return cls()
        config = _plain(config_dicts.pop(0))
        if config_dicts:
            merge_dictionaries(config, *[_plain(entry) for entry in config_dicts])
        return cls.model_validate(config)


def _plain(value):
    # hjson hands back OrderedDicts
    if isinstance(value, dict):
        return {key: _plain(val) for key, val in value.items()}
    if isinstance(value, list):
        return [_plain(val) for val in value]
    return value


def merge_dictionaries(target_dict: Dict[Any, Any], *source_dicts: Dict[Any, Any]) -> None:
    """
    Recursively merge each of the ``source_dicts`` into ``target_dict`` in-place
    """
    for source_dict in source_dicts:
        for key, value in source_dict.items():
            if isinstance(value, dict):
                target_dict_value = target_dict.setdefault(key, {})
                merge_dictionaries(target_dict_value, value)
            else:
                target_dict[key] = value
