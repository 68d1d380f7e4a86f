# ingestion/column_mapper.py
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ingestion.errors import ServiceUnavailable

logger = logging.getLogger(__name__)

# Iteration order matters: a header is claimed by the first field that matches it.
CANONICAL_FIELDS: Tuple[str, ...] = (
    "datetime",
    "symbol",
    "side",
    "qty",
    "buyFillId",
    "sellFillId",
    "buyPrice",
    "sellPrice",
    "price",
    "pnl",
    "notes",
    "strategy",
    "tags",
    "imageUrl",
)

REQUIRED_FIELDS: Tuple[str, ...] = ("datetime", "symbol", "qty", "pnl")
PRICE_FIELDS: Tuple[str, ...] = ("price", "buyPrice", "sellPrice")

# keys other mappers commonly emit
FIELD_ALIASES: Dict[str, str] = {
    "image_url": "imageUrl",
    "buy_fill_id": "buyFillId",
    "sell_fill_id": "sellFillId",
    "buy_price": "buyPrice",
    "sell_price": "sellPrice",
    "quantity": "qty",
    "time": "datetime",
    "date": "datetime",
}

FALLBACK_PATTERNS: Dict[str, List[str]] = {
    "datetime": [r"date", r"time", r"timestamp", r"execution", r"bought timestamp", r"sold timestamp"],
    "symbol": [r"symbol", r"ticker", r"instrument", r"\bcontract\b", r"\bsecurity\b"],
    "side": [r"\bside\b", r"\baction\b", r"direction", r"buy\s*/\s*sell", r"\bb/s\b", r"long\s*/\s*short"],
    "qty": [r"\bqty\b", r"quantity", r"shares", r"\bsize\b", r"contracts", r"\bvolume\b"],
    "buyFillId": [r"buy\s*_?\s*fill\s*_?\s*id", r"entry\s*fill", r"buy\s*exec(ution)?\s*id"],
    "sellFillId": [r"sell\s*_?\s*fill\s*_?\s*id", r"exit\s*fill", r"sell\s*exec(ution)?\s*id"],
    "buyPrice": [r"buy\s*_?\s*price", r"entry\s*price", r"open\s*price", r"avg\s*buy"],
    "sellPrice": [r"sell\s*_?\s*price", r"exit\s*price", r"close\s*price", r"avg\s*sell"],
    "price": [r"price"],
    "pnl": [r"p&l", r"p/l", r"pnl", r"profit", r"loss", r"realized", r"net p&l"],
    "notes": [r"note", r"comment", r"memo", r"description"],
    "strategy": [r"strategy", r"setup", r"playbook"],
    "tags": [r"\btags?\b", r"label", r"categor"],
    "imageUrl": [r"image", r"screenshot", r"chart", r"\burl\b"],
}

_COMPILED = {
    field: [re.compile(p, re.IGNORECASE) for p in patterns]
    for field, patterns in FALLBACK_PATTERNS.items()
}


def _norm(s: Any) -> str:
    s = str(s or "")
    s = s.replace("\ufeff", "").replace("\u00A0", " ")
    s = re.sub(r"[\u200B-\u200D\uFEFF]", "", s)
    return re.sub(r"\s+", " ", s.strip().lower())


def fallback_mapping(headers: Sequence[str]) -> Dict[str, str]:
    """Deterministic regex mapping; each header is claimed at most once."""
    mapping: Dict[str, str] = {}
    claimed: set[str] = set()

    for field in CANONICAL_FIELDS:
        for header in headers:
            if header in claimed:
                continue
            nh = _norm(header)
            if any(rx.search(nh) for rx in _COMPILED[field]):
                mapping[field] = header
                claimed.add(header)
                break

    return mapping


def sanitize_mapping(raw: Any, headers: Sequence[str]) -> Dict[str, str]:
    """Keep only canonical keys that point at a header actually present in the file."""
    if not isinstance(raw, Mapping):
        return {}

    by_norm = {_norm(h): h for h in headers}
    out: Dict[str, str] = {}
    for key, value in raw.items():
        field = FIELD_ALIASES.get(str(key), str(key))
        if field not in CANONICAL_FIELDS or not isinstance(value, str):
            continue
        header = value if value in headers else by_norm.get(_norm(value))
        if header:
            out[field] = header
    return out


def missing_required_fields(mapping: Mapping[str, str]) -> List[str]:
    missing = [f for f in REQUIRED_FIELDS if not mapping.get(f)]
    if not any(mapping.get(f) for f in PRICE_FIELDS):
        missing.append("price")
    return missing


async def map_columns(
    headers: Sequence[str],
    sample_rows: Sequence[Mapping[str, Any]],
    services,
    *,
    sample_size: int = 5,
) -> Tuple[Dict[str, str], str]:
    """
    Returns (mapping, source) where source is "service" or "fallback".
    Completeness is the caller's concern.
    """
    sample = [dict(r) for r in list(sample_rows)[:sample_size]]
    try:
        raw: Optional[Mapping[str, Any]] = await services.map_columns(list(headers), sample)
        mapping = sanitize_mapping(raw, headers)
        if mapping:
            return mapping, "service"
        logger.warning("Column mapping service returned no usable fields; using fallback")
    except ServiceUnavailable as e:
        logger.warning("Column mapping service failed (%s); using fallback", e)

    return fallback_mapping(headers), "fallback"
