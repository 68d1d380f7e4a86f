# ingestion/normalise.py
"""
Broker-agnostic cell normalisation.

Every function here is total: untrusted spreadsheet values degrade to a
neutral value (0.0, None, []) instead of raising, so one bad cell can only
ever reject its own row.
"""
from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import pandas as pd

from core.config import settings
from ingestion.models import TradeCandidate

logger = logging.getLogger(__name__)

_CURRENCY_AND_SPACE_RE = re.compile(r"[\s$%€£¥₹¢₩₪₫₡₦₱₽₴₸₼₿]+")
_NON_DIGIT_RE = re.compile(r"\D")
_EXCHANGE_PREFIX_RE = re.compile(r"^(NASDAQ|NYSE|AMEX|ARCA|BATS):", re.IGNORECASE)
_COUNTRY_SUFFIX_RE = re.compile(r"\.(US|USA)$", re.IGNORECASE)
_TAG_SPLIT_RE = re.compile(r"[,;]")

BUY_TOKENS = frozenset({"BUY", "B", "LONG", "L", "1", "+1", "BOT", "BOUGHT"})
SELL_TOKENS = frozenset({"SELL", "S", "SHORT", "SH", "SL", "-1", "SLD", "SOLD"})


def _digits(s: str) -> str:
    return _NON_DIGIT_RE.sub("", s)


def _normalise_separators(s: str) -> str:
    commas = s.count(",")
    periods = s.count(".")

    if commas and periods:
        # whichever separator comes last is the decimal point
        sep = "," if s.rfind(",") > s.rfind(".") else "."
        whole, frac = s.rsplit(sep, 1)
        return f"{_digits(whole)}.{_digits(frac)}"

    if commas:
        whole, frac = s.rsplit(",", 1)
        if commas == 1 and 1 <= len(frac) <= 2 and frac.isdigit():
            return f"{_digits(whole)}.{frac}"
        return _digits(s)

    if periods > 1:
        # repeated periods only ever group thousands
        return _digits(s)

    return re.sub(r"[^0-9.]", "", s)


def has_numeric_content(raw: Any) -> bool:
    if raw is None:
        return False
    if isinstance(raw, (int, float)):
        return math.isfinite(float(raw))
    return any(ch.isdigit() for ch in str(raw))


def parse_signed_number(raw: Any) -> float:
    """
    "(150.25)" -> -150.25, "150-" -> -150.0, "$1,204.50" -> 1204.5, "" -> 0.0.
    Never raises and never returns NaN/inf.
    """
    if raw is None:
        return 0.0
    if isinstance(raw, (int, float)):
        v = float(raw)
        return v if math.isfinite(v) else 0.0

    s = str(raw).strip()
    if not s:
        return 0.0

    s = s.replace("−", "-").replace("–", "-")
    s = _CURRENCY_AND_SPACE_RE.sub("", s)

    neg = False
    if s.startswith("(") and s.endswith(")"):
        neg = True
        s = s[1:-1]
    if s.endswith("-"):
        neg = True
        s = s.rstrip("-")
    if s.startswith("-"):
        neg = True
        s = s.lstrip("-")
    if s.startswith("+"):
        s = s[1:]

    s = _normalise_separators(s)
    if not any(ch.isdigit() for ch in s):
        return 0.0

    try:
        x = float(s)
    except ValueError:
        return 0.0
    if not math.isfinite(x):
        return 0.0
    return -abs(x) if neg else x


def normalize_symbol(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    s = str(raw).replace("\u00A0", " ").strip().upper()
    s = _EXCHANGE_PREFIX_RE.sub("", s)
    s = _COUNTRY_SUFFIX_RE.sub("", s).strip()
    return s or None


def infer_side(
    raw_side: Any,
    qty: Optional[float] = None,
    buy_price: Optional[float] = None,
    sell_price: Optional[float] = None,
) -> Optional[str]:
    """
    Explicit side token first, then a one-sided buy/sell price column, then a
    negative signed quantity. Returns None when nothing disambiguates.
    """
    if raw_side is not None:
        t = str(raw_side).strip().upper()
        if t in BUY_TOKENS:
            return "BUY"
        if t in SELL_TOKENS:
            return "SELL"
        if "LONG" in t or "BUY" in t:
            return "BUY"
        if "SHORT" in t or "SELL" in t:
            return "SELL"

    has_buy = buy_price is not None
    has_sell = sell_price is not None
    if has_buy and not has_sell:
        return "BUY"
    if has_sell and not has_buy:
        return "SELL"

    if qty is not None and qty < 0:
        return "SELL"

    return None


def _earliest_trade_date() -> datetime:
    try:
        d = datetime.fromisoformat(settings.EARLIEST_TRADE_DATE)
    except ValueError:
        d = datetime(2000, 1, 1)
    if d.tzinfo is None:
        d = d.replace(tzinfo=timezone.utc)
    return d


def validate_datetime(raw: Any) -> Optional[datetime]:
    """Parse to an aware UTC datetime, or None (naive input is taken as UTC)."""
    if raw is None:
        return None
    if isinstance(raw, str) and not raw.strip():
        return None

    try:
        ts = pd.to_datetime(raw.strip() if isinstance(raw, str) else raw, utc=True, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is None or pd.isna(ts):
        return None

    dt = ts.to_pydatetime()
    if dt > datetime.now(timezone.utc):
        logger.debug("Rejecting future datetime %r", raw)
        return None
    if dt < _earliest_trade_date():
        logger.debug("Rejecting implausibly old datetime %r", raw)
        return None
    return dt


def parse_tags(raw: Any) -> list[str]:
    if raw is None:
        return []
    return [t.strip() for t in _TAG_SPLIT_RE.split(str(raw)) if t.strip()]


def _text(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    s = str(raw).strip()
    return s or None


def _optional_number(raw: Any) -> Optional[float]:
    return parse_signed_number(raw) if has_numeric_content(raw) else None


def normalize_row(row: Mapping[str, Any], mapping: Mapping[str, str], row_number: int) -> TradeCandidate:
    """
    Read canonical fields off a raw CSV row strictly through the column
    mapping. Missing numeric cells come back as None so validation can name them.
    """

    def cell(key: str) -> Any:
        header = mapping.get(key)
        if not header:
            return None
        return row.get(header)

    dt = validate_datetime(cell("datetime"))

    raw_qty = cell("qty")
    signed_qty = _optional_number(raw_qty)

    buy_price = _optional_number(cell("buyPrice"))
    sell_price = _optional_number(cell("sellPrice"))
    price = _optional_number(cell("price"))
    if price is None:
        price = buy_price if buy_price is not None else sell_price

    return TradeCandidate(
        row_number=row_number,
        datetime=dt.isoformat() if dt else None,
        symbol=normalize_symbol(cell("symbol")),
        side=infer_side(cell("side"), signed_qty, buy_price, sell_price),
        qty=abs(signed_qty) if signed_qty is not None else None,
        price=price,
        pnl=_optional_number(cell("pnl")),
        notes=_text(cell("notes")),
        strategy=_text(cell("strategy")),
        tags=parse_tags(cell("tags")),
        image_url=_text(cell("imageUrl")),
        buy_fill_id=_text(cell("buyFillId")),
        sell_fill_id=_text(cell("sellFillId")),
    )
