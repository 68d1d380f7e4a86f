# routers/deps.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import Depends, HTTPException

from core.db import get_db
from ingestion.services import IngestionServices
from ingestion.store import TradeStore


def get_store() -> TradeStore:
    return TradeStore(get_db())


def get_services() -> IngestionServices:
    return IngestionServices.from_settings()


async def load_journal(store: TradeStore, user_id: str, journal_id: str) -> Dict[str, Any]:
    journal = await store.get_journal(user_id, journal_id)
    if not journal:
        raise HTTPException(status_code=404, detail="Journal not found")
    return journal


StoreDep = Depends(get_store)
ServicesDep = Depends(get_services)
