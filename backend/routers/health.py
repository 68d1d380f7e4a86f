# routers/health.py
from fastapi import APIRouter, HTTPException
from pymongo.errors import PyMongoError

from core.db import get_db

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("/db")
async def health_db():
    db = get_db()
    try:
        await db.command("ping")
    except PyMongoError as e:
        raise HTTPException(status_code=503, detail=f"MongoDB unavailable: {e}")
    return {"ok": True, "db": db.name}
