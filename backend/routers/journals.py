# routers/journals.py
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from core.security import require_user_id
from ingestion.errors import PersistenceError
from ingestion.metrics import calculate_metrics, sort_chronologically
from ingestion.sample_data import cleanup_mock_data, create_sample_session
from ingestion.store import TradeStore
from ingestion.validation import is_mock_data
from routers.deps import StoreDep, load_journal

router = APIRouter(prefix="/api/journals", tags=["Journals"])


class JournalCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    broker: Optional[str] = None
    prop_firm: Optional[str] = None
    account_size: Optional[float] = Field(default=None, ge=0)


class JournalOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    broker: Optional[str] = None
    prop_firm: Optional[str] = None
    account_size: Optional[float] = None


class JournalMetricsResp(BaseModel):
    journal_id: str
    trade_count: int
    excluded_mock_trades: int
    metrics: dict[str, Any]


class MockCleanupResp(BaseModel):
    deleted_trades: int
    sessions_updated: int
    sessions_deleted: int


@router.post("", response_model=JournalOut, status_code=201)
async def create_journal(body: JournalCreate, req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    return await store.create_journal(user_id, body.model_dump())


@router.get("", response_model=list[JournalOut])
async def list_journals(req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    return await store.list_journals(user_id)


@router.get("/{journal_id}", response_model=JournalOut)
async def get_journal(journal_id: str, req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    return await load_journal(store, user_id, journal_id)


@router.get("/{journal_id}/metrics", response_model=JournalMetricsResp)
async def journal_metrics(journal_id: str, req: Request, store: TradeStore = StoreDep):
    """Recomputed from every stored real trade, oldest first."""
    user_id = require_user_id(req)
    await load_journal(store, user_id, journal_id)

    trades = await store.trades_for_journal(user_id, journal_id)
    real = [t for t in trades if not is_mock_data(t)]
    return {
        "journal_id": journal_id,
        "trade_count": len(real),
        "excluded_mock_trades": len(trades) - len(real),
        "metrics": calculate_metrics(sort_chronologically(real)),
    }


@router.get("/{journal_id}/sessions")
async def list_sessions(journal_id: str, req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    await load_journal(store, user_id, journal_id)
    return await store.list_sessions(user_id, journal_id)


@router.post("/{journal_id}/sample-data", status_code=201)
async def add_sample_data(journal_id: str, req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    await load_journal(store, user_id, journal_id)
    try:
        return await create_sample_session(store, user_id=user_id, journal_id=journal_id)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=f"Sample data could not be saved: {e}")


@router.delete("/{journal_id}/mock-data", response_model=MockCleanupResp)
async def delete_mock_data(journal_id: str, req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    await load_journal(store, user_id, journal_id)
    try:
        return await cleanup_mock_data(store, user_id=user_id, journal_id=journal_id)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=f"Mock data cleanup failed: {e}")
