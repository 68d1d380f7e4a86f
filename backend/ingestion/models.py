# ingestion/models.py
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Side = Literal["BUY", "SELL"]

OutcomeStatus = Literal["success", "empty", "failed"]
EmptyReason = Literal["all_invalid", "all_mock", "all_duplicates"]
FailureReason = Literal["malformed_file", "not_trading_data", "incomplete_mapping", "persistence_error"]


def field_of(trade: Any, name: str, default: Any = None) -> Any:
    """Read a trade field from either a stored document (dict) or a model."""
    if isinstance(trade, Mapping):
        return trade.get(name, default)
    return getattr(trade, name, default)


class TradeCandidate(BaseModel):
    """A mapped + normalised row that has not been validated yet."""

    row_number: int
    datetime: Optional[str] = None
    symbol: Optional[str] = None
    side: Optional[str] = None
    qty: Optional[float] = None
    price: Optional[float] = None
    pnl: Optional[float] = None
    notes: Optional[str] = None
    strategy: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    buy_fill_id: Optional[str] = None
    sell_fill_id: Optional[str] = None

    def to_canonical(self) -> "CanonicalTrade":
        return CanonicalTrade(
            datetime=self.datetime,
            symbol=self.symbol,
            side=self.side,
            qty=self.qty,
            price=self.price,
            pnl=self.pnl,
            notes=self.notes,
            strategy=self.strategy,
            tags=list(self.tags),
            image_url=self.image_url,
            buy_fill_id=self.buy_fill_id,
            sell_fill_id=self.sell_fill_id,
        )


class CanonicalTrade(BaseModel):
    datetime: str
    symbol: str
    side: Side
    qty: float = Field(ge=0)
    price: float = Field(ge=0)
    pnl: float
    notes: Optional[str] = None
    strategy: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    buy_fill_id: Optional[str] = None
    sell_fill_id: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    reasons: List[str] = Field(default_factory=list)


class RowError(BaseModel):
    row: int
    reasons: List[str]


class DuplicateMatch(BaseModel):
    trade_index: int
    is_duplicate: bool
    match_type: str


class IngestionOutcome(BaseModel):
    status: OutcomeStatus = "success"
    state: str = "idle"
    message: str = ""
    empty_reason: Optional[EmptyReason] = None
    failure_reason: Optional[FailureReason] = None
    detail: Optional[str] = None

    file_name: str = ""
    total_rows: int = 0
    empty_rows_skipped: int = 0
    parse_errors: int = 0
    mock_data_filtered: int = 0
    duplicates_skipped: int = 0
    database_duplicates: int = 0
    inserted_trades: int = 0
    # unique rows dropped because a write failed; only set on persistence_error
    unsaved_rows: int = 0

    row_errors: List[RowError] = Field(default_factory=list)
    row_error_count: int = 0
    duplicate_matches: Dict[str, int] = Field(default_factory=dict)

    mapping: Dict[str, str] = Field(default_factory=dict)
    missing_fields: List[str] = Field(default_factory=list)
    fallbacks: List[str] = Field(default_factory=list)

    session_id: Optional[str] = None
    raw_data_id: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    insights_generated: bool = False

    @property
    def accounted_rows(self) -> int:
        return (
            self.empty_rows_skipped
            + self.parse_errors
            + self.mock_data_filtered
            + self.duplicates_skipped
            + self.database_duplicates
            + self.inserted_trades
            + self.unsaved_rows
        )
