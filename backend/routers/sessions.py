# routers/sessions.py
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from core.security import require_user_id
from ingestion.store import TradeStore
from routers.deps import StoreDep

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.get("/{session_id}")
async def get_session(session_id: str, req: Request, store: TradeStore = StoreDep):
    user_id = require_user_id(req)
    session = await store.get_session(user_id, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    session["trades"] = await store.trades_for_session(session_id)
    return session
