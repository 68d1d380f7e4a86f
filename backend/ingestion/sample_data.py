# ingestion/sample_data.py
"""Demo trades for new journals, and the cleanup that removes them again."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List

from ingestion.metrics import calculate_metrics, sort_chronologically
from ingestion.models import CanonicalTrade
from ingestion.store import utcnow
from ingestion.validation import is_mock_data

logger = logging.getLogger(__name__)

MOCK_NOTE = "Mock trade - sample data"

_SAMPLE_ROWS = [
    # days ago, hour, symbol, side, qty, price, pnl, strategy
    (3, 14, "AAPL", "BUY", 100, 150.25, 245.00, "Breakout"),
    (2, 15, "TSLA", "SELL", 50, 242.10, -120.50, "Reversal"),
    (1, 14, "SPY", "BUY", 25, 478.40, 87.75, "Trend"),
]


def sample_trades() -> List[CanonicalTrade]:
    today = utcnow().replace(minute=30, second=0, microsecond=0)
    trades = []
    for days_ago, hour, symbol, side, qty, price, pnl, strategy in _SAMPLE_ROWS:
        dt = (today - timedelta(days=days_ago)).replace(hour=hour)
        trades.append(CanonicalTrade(
            datetime=dt.isoformat(),
            symbol=symbol,
            side=side,
            qty=qty,
            price=price,
            pnl=pnl,
            notes=MOCK_NOTE,
            strategy=strategy,
            tags=["sample"],
        ))
    return trades


async def create_sample_session(store, *, user_id: str, journal_id: str) -> Dict[str, Any]:
    trades = sample_trades()
    metrics = calculate_metrics(sort_chronologically(trades))

    session_id = await store.insert_session({
        "user_id": user_id,
        "journal_id": journal_id,
        "raw_data_id": None,
        "file_name": "sample-data",
        "is_sample": True,
        "status": "complete",
        "metrics": metrics,
    })
    await store.insert_trades([
        {**t.model_dump(), "user_id": user_id, "journal_id": journal_id, "session_id": session_id}
        for t in trades
    ])

    logger.info("Seeded %d sample trades into journal %s (session %s)", len(trades), journal_id, session_id)
    return await store.get_session(user_id, session_id)


async def cleanup_mock_data(store, *, user_id: str, journal_id: str) -> Dict[str, int]:
    """
    Delete every mock-flagged trade in the journal. Sessions that still hold
    trades get their metrics recomputed; sessions left empty are removed.
    """
    trades = await store.trades_for_journal(user_id, journal_id)
    mock = [t for t in trades if is_mock_data(t)]
    if not mock:
        return {"deleted_trades": 0, "sessions_updated": 0, "sessions_deleted": 0}

    deleted = await store.delete_trades(t["id"] for t in mock)

    affected = {t.get("session_id") for t in mock if t.get("session_id")}
    updated = removed = 0
    for session_id in sorted(affected):
        remaining = await store.trades_for_session(session_id)
        if remaining:
            await store.update_session(session_id, {"metrics": calculate_metrics(sort_chronologically(remaining))})
            updated += 1
        else:
            await store.delete_session(session_id)
            removed += 1

    logger.info(
        "Removed %d mock trades from journal %s (%d sessions recomputed, %d deleted)",
        deleted, journal_id, updated, removed,
    )
    return {"deleted_trades": deleted, "sessions_updated": updated, "sessions_deleted": removed}
