"""Data model for historical account data.

Persisted records are pydantic models so cache partitions are validated on
load. Transient values (time ranges, progress events, batch statuses) are
plain dataclasses.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradetracker.utils import DAY_MS, utc_ms


class RecordKind(str, enum.Enum):
    CLOSED_PNL = "closed_pnl"
    TRADES = "trades"
    DEPOSITS = "deposits"
    WITHDRAWALS = "withdrawals"


class HistoryStatus(str, enum.Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    ABSENT = "absent"
    UNSUPPORTED = "unsupported"


class FetchStatus(str, enum.Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (FetchStatus.COMPLETE, FetchStatus.ERROR)


class FrozenModel(BaseModel):
    """
    Base class for immutable models
    """

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Account(FrozenModel):
    id: str
    name: str = ""
    exchange: str
    is_testnet: bool = False
    credentials_ref: Optional[str] = None
    created_at: int = Field(default_factory=utc_ms)

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("account id must not be empty")
        return value

    @field_validator("exchange")
    @classmethod
    def _normalize_exchange(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def credentials_key(self) -> str:
        return self.credentials_ref or self.id


# ---------------------------------------------------------------------------
# Historical records
# ---------------------------------------------------------------------------


class TradeRecord(FrozenModel):
    exec_id: str = ""
    order_id: str
    symbol: str
    side: str
    qty: float
    price: float
    exec_time: int
    fee: float = 0.0
    fee_rate: float = 0.0
    is_maker: bool = False
    order_type: str = ""
    closed_size: float = 0.0

    @field_validator("side")
    @classmethod
    def _lower_side(cls, value: str) -> str:
        return value.lower()

    @property
    def key(self) -> str:
        return self.exec_id or self.order_id

    @property
    def timestamp(self) -> int:
        return self.exec_time


class ClosedPnLRecord(FrozenModel):
    order_id: str
    symbol: str
    side: str
    qty: float = 0.0
    closed_pnl: float
    cum_entry_value: float = 0.0
    cum_exit_value: float = 0.0
    avg_entry_price: float = 0.0
    avg_exit_price: float = 0.0
    closed_size: float = 0.0
    fill_count: int = 0
    leverage: float = 0.0
    order_type: str = ""
    exec_type: str = ""
    created_time: int
    updated_time: int

    @field_validator("side")
    @classmethod
    def _lower_side(cls, value: str) -> str:
        return value.lower()

    @property
    def key(self) -> str:
        # rows without an order id must not collapse into one record
        return self.order_id or f"{self.symbol}:{self.updated_time}"

    @property
    def timestamp(self) -> int:
        return self.updated_time


class TransferRecord(FrozenModel):
    id: str
    amount: float
    asset: str
    time: int
    direction: str
    status: str = ""
    tx_id: str = ""
    fee: float = 0.0

    @field_validator("direction")
    @classmethod
    def _validate_direction(cls, value: str) -> str:
        value = value.lower()
        if value not in ("deposit", "withdrawal"):
            raise ValueError(f"transfer direction must be 'deposit' or 'withdrawal', not {value!r}")
        return value

    @property
    def key(self) -> str:
        return f"{self.direction}:{self.id}"

    @property
    def timestamp(self) -> int:
        return self.time


HistoryRecord = Union[TradeRecord, ClosedPnLRecord, TransferRecord]

RECORD_FIELDS: Dict[RecordKind, str] = {
    RecordKind.CLOSED_PNL: "closed_pnl",
    RecordKind.TRADES: "trades",
    RecordKind.DEPOSITS: "deposits",
    RecordKind.WITHDRAWALS: "withdrawals",
}


def sort_records(records):
    return sorted(records, key=lambda rec: (rec.timestamp, rec.key))


# ---------------------------------------------------------------------------
# Cache payload
# ---------------------------------------------------------------------------


class DataRange(FrozenModel):
    earliest: int
    latest: int
    total_days: int = 0
    chunks_retrieved: int = 0

    @model_validator(mode="after")
    def _check_order(self) -> "DataRange":
        # latest == earliest - 1 is the empty prefix before any chunk completes
        if self.latest < self.earliest - 1:
            raise ValueError(f"data range latest {self.latest} precedes earliest {self.earliest}")
        return self

    @classmethod
    def empty(cls, earliest: int) -> "DataRange":
        return cls(earliest=earliest, latest=earliest - 1)

    def extended_to(self, latest: int) -> "DataRange":
        return DataRange(
            earliest=self.earliest,
            latest=latest,
            total_days=max(0, (latest - self.earliest + 1) // DAY_MS),
            chunks_retrieved=self.chunks_retrieved + 1,
        )

    def extended_back(self, earliest: int, chunks: int = 1) -> "DataRange":
        return DataRange(
            earliest=earliest,
            latest=self.latest,
            total_days=max(0, (self.latest - earliest + 1) // DAY_MS),
            chunks_retrieved=self.chunks_retrieved + chunks,
        )


class PerformanceMetrics(FrozenModel):
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_pnl: float = 0.0
    total_volume: float = 0.0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    max_win: float = 0.0
    max_loss: float = 0.0
    max_drawdown: float = 0.0
    # None means there were profits but no losses (unbounded)
    profit_factor: Optional[float] = 0.0
    sharpe_ratio: float = 0.0
    calmar_ratio: float = 0.0
    avg_daily_return: float = 0.0
    volatility: float = 0.0


class HistoricalCache(BaseModel):
    account_id: str
    trades: List[TradeRecord] = Field(default_factory=list)
    closed_pnl: List[ClosedPnLRecord] = Field(default_factory=list)
    deposits: List[TransferRecord] = Field(default_factory=list)
    withdrawals: List[TransferRecord] = Field(default_factory=list)
    data_range: DataRange
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    is_complete: bool = False
    last_updated: int = 0

    def records(self, kind: RecordKind) -> list:
        return getattr(self, RECORD_FIELDS[kind])

    @property
    def total_records(self) -> int:
        return len(self.closed_pnl) + len(self.trades)

    @property
    def history_status(self) -> HistoryStatus:
        return HistoryStatus.COMPLETE if self.is_complete else HistoryStatus.INCOMPLETE


class MonthlySummary(FrozenModel):
    account_id: str
    # UTC calendar month, "YYYY-MM"
    month: str
    metrics: PerformanceMetrics


class AccountStats(FrozenModel):
    account_id: str
    total_months: int = 0
    total_trades: int = 0
    total_pnl_records: int = 0
    total_transfers: int = 0
    data_size: int = 0
    oldest_data: Optional[int] = None
    newest_data: Optional[int] = None


# ---------------------------------------------------------------------------
# Live state
# ---------------------------------------------------------------------------


class Position(FrozenModel):
    symbol: str
    side: str
    size: float
    entry_price: float = 0.0
    mark_price: float = 0.0
    unrealized_pnl: float = 0.0
    leverage: float = 0.0


class LiveSnapshot(FrozenModel):
    account_id: str
    timestamp: int
    total_equity: float
    wallet_balance: float = 0.0
    available_balance: float = 0.0
    unrealized_pnl: float = 0.0
    positions: List[Position] = Field(default_factory=list)

    @field_validator("positions")
    @classmethod
    def _drop_flat_positions(cls, value: List[Position]) -> List[Position]:
        return [pos for pos in value if pos.size > 0]


class AccountView(BaseModel):
    """Live snapshot with whatever complete history is available spliced on."""

    account_id: str
    total_equity: float
    wallet_balance: float = 0.0
    available_balance: float = 0.0
    unrealized_pnl: float = 0.0
    positions: List[Position] = Field(default_factory=list)
    trades: List[TradeRecord] = Field(default_factory=list)
    closed_pnl: List[ClosedPnLRecord] = Field(default_factory=list)
    history_status: HistoryStatus = HistoryStatus.ABSENT
    last_updated: int


class EquitySnapshot(FrozenModel):
    timestamp: int
    total_equity: float
    accounts: Dict[str, float] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transient values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeRange:
    """Inclusive millisecond range."""

    start: int
    end: int

    @property
    def span(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class FetchProgressEvent:
    account_id: str
    chunk_index: int
    total_chunks: int
    records_retrieved: int
    current_range: TimeRange

    @property
    def percentage(self) -> int:
        if self.total_chunks <= 0:
            return 100
        return round(self.chunk_index / self.total_chunks * 100)


@dataclass
class AccountFetchStatus:
    account_id: str
    name: str
    exchange: str
    status: FetchStatus = FetchStatus.PENDING
    progress: int = 0
    message: Optional[str] = None
    total_records: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "exchange": self.exchange,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "total_records": self.total_records,
        }
