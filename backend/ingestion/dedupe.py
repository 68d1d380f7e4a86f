# ingestion/dedupe.py
"""
Layered duplicate detection.

Each trade yields a list of identity keys, strongest first:

    both_fills  (buy_fill_id, sell_fill_id)
    buy_fill    (buy_fill_id, datetime, symbol)      only buy fill present
    sell_fill   (sell_fill_id, datetime, symbol)     only sell fill present
    composite   (journal, datetime, symbol, side, qty, price@4dp, pnl@4dp)   always

All keys go into one pooled seen-set; a trade is a duplicate when *any* of its
keys was already produced by an earlier trade (or by a stored one).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from ingestion.errors import ServiceUnavailable
from ingestion.models import DuplicateMatch, field_of

logger = logging.getLogger(__name__)

IdentityKey = Tuple[Hashable, ...]


def _fill_id(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _dt_key(v: Any) -> str:
    if isinstance(v, datetime):
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc).isoformat()
    return str(v or "").strip()


def _num_key(v: Any) -> float:
    try:
        return round(float(v), 4)
    except (TypeError, ValueError):
        return 0.0


def identity_keys(trade: Any, journal_id: str) -> List[Tuple[str, IdentityKey]]:
    """(match_type, key) pairs for a trade, strongest first."""
    buy = _fill_id(field_of(trade, "buy_fill_id"))
    sell = _fill_id(field_of(trade, "sell_fill_id"))
    dt = _dt_key(field_of(trade, "datetime"))
    symbol = str(field_of(trade, "symbol") or "").strip().upper()

    keys: List[Tuple[str, IdentityKey]] = []
    if buy and sell:
        keys.append(("both_fills", ("both_fills", buy, sell)))
    elif buy:
        keys.append(("buy_fill", ("buy_fill", buy, dt, symbol)))
    elif sell:
        keys.append(("sell_fill", ("sell_fill", sell, dt, symbol)))

    keys.append((
        "composite",
        (
            "composite",
            str(journal_id),
            dt,
            symbol,
            str(field_of(trade, "side") or "").strip().upper(),
            _num_key(field_of(trade, "qty")),
            _num_key(field_of(trade, "price")),
            _num_key(field_of(trade, "pnl")),
        ),
    ))
    return keys


@dataclass
class BatchDedupeResult:
    unique: List[Any] = field(default_factory=list)
    duplicates: List[Any] = field(default_factory=list)


@dataclass
class StorageDedupeResult:
    unique: List[Any] = field(default_factory=list)
    duplicates: List[Any] = field(default_factory=list)
    duplicate_count: int = 0
    match_counts: Dict[str, int] = field(default_factory=dict)
    degraded: bool = False


def dedupe_within_batch(trades: Sequence[Any], journal_id: str) -> BatchDedupeResult:
    """First occurrence in input order wins."""
    seen: set = set()
    result = BatchDedupeResult()

    for trade in trades:
        keys = [k for _, k in identity_keys(trade, journal_id)]
        if any(k in seen for k in keys):
            result.duplicates.append(trade)
        else:
            result.unique.append(trade)
        seen.update(keys)

    return result


def match_against_existing(
    candidates: Sequence[Any],
    existing: Sequence[Any],
    journal_id: str,
) -> List[DuplicateMatch]:
    """Per-candidate verdict against already stored trades of the same journal."""
    stored: Dict[IdentityKey, str] = {}
    for doc in existing:
        for match_type, key in identity_keys(doc, journal_id):
            stored.setdefault(key, match_type)

    out: List[DuplicateMatch] = []
    for i, trade in enumerate(candidates):
        match_type = "none"
        for kind, key in identity_keys(trade, journal_id):
            if key in stored:
                match_type = kind
                break
        out.append(DuplicateMatch(trade_index=i, is_duplicate=match_type != "none", match_type=match_type))
    return out


async def dedupe_against_storage(trades: Sequence[Any], journal_id: str, store) -> StorageDedupeResult:
    """
    One batched lookup for the whole set. If the lookup fails the import
    proceeds as if nothing were stored (availability over perfect dedup).
    """
    if not trades:
        return StorageDedupeResult()

    try:
        matches = await store.find_duplicates(journal_id, trades)
    except ServiceUnavailable as e:
        logger.warning("Duplicate lookup unavailable (%s); assuming all %d trades are new", e, len(trades))
        return StorageDedupeResult(unique=list(trades), degraded=True)

    flagged = {m.trade_index: m.match_type for m in matches if m.is_duplicate}
    result = StorageDedupeResult()
    for i, trade in enumerate(trades):
        kind = flagged.get(i)
        if kind is None:
            result.unique.append(trade)
        else:
            result.duplicates.append(trade)
            result.duplicate_count += 1
            result.match_counts[kind] = result.match_counts.get(kind, 0) + 1
    return result
