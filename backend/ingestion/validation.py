# ingestion/validation.py
from __future__ import annotations

import math
from typing import Any

from ingestion.models import TradeCandidate, ValidationResult, field_of

# tickers that only ever show up in seeded / tutorial data
MOCK_SYMBOLS = frozenset({
    "DEMO",
    "TEST",
    "SAMPLE",
    "MOCK",
    "FAKE",
    "DUMMY",
    "EXAMPLE",
    "TICKER",
    "SYMBOL",
    "XYZ",
    "ABC",
    "FOO",
    "BAR",
})
MOCK_SYMBOL_SUBSTRINGS = ("TEST", "DEMO", "SAMPLE")
MOCK_NOTES_PHRASE = "mock trade"


def _is_finite_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def validate_trade(candidate: TradeCandidate) -> ValidationResult:
    """Report every violated requirement, not just the first."""
    reasons: list[str] = []

    if not candidate.datetime:
        reasons.append("datetime is missing or unparseable")
    if not candidate.symbol:
        reasons.append("symbol is empty")
    if candidate.side not in ("BUY", "SELL"):
        reasons.append("side could not be determined")

    if not _is_finite_number(candidate.qty):
        reasons.append("qty is missing or non-numeric")
    elif candidate.qty <= 0:
        reasons.append("qty must be positive")

    if not _is_finite_number(candidate.price):
        reasons.append("price is missing or non-numeric")
    elif candidate.price <= 0:
        reasons.append("price must be positive")

    if not _is_finite_number(candidate.pnl):
        reasons.append("pnl is missing or non-numeric")

    return ValidationResult(valid=not reasons, reasons=reasons)


def is_mock_data(trade: Any) -> bool:
    symbol = str(field_of(trade, "symbol") or "").strip().upper()
    if symbol in MOCK_SYMBOLS:
        return True
    if any(s in symbol for s in MOCK_SYMBOL_SUBSTRINGS):
        return True

    notes = str(field_of(trade, "notes") or "").lower()
    return MOCK_NOTES_PHRASE in notes
