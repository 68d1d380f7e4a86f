# ingestion/store.py
"""
Mongo-backed persistence for journals, sessions, raw uploads and trades.

Every document carries a string `id`; Mongo's `_id` never leaves this module.
Write failures surface as PersistenceError. The duplicate lookup surfaces
failures as ServiceUnavailable because callers are allowed to fail open on it.
"""
from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pymongo.errors import PyMongoError

from ingestion.dedupe import match_against_existing
from ingestion.errors import PersistenceError, ServiceUnavailable
from ingestion.models import DuplicateMatch, field_of

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def _persisting(what: str):
    try:
        yield
    except PyMongoError as e:
        logger.error("Mongo write failed (%s): %s", what, e)
        raise PersistenceError(f"Failed to write {what}: {e}") from e


class TradeStore:
    def __init__(self, db) -> None:
        self.db = db
        self.journals = db["journals"]
        self.sessions = db["trade_sessions"]
        self.trades = db["trades"]
        self.raw = db["raw_trade_data"]

    # --------------------
    # journals
    # --------------------

    async def create_journal(self, user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        doc = {
            "id": new_id(),
            "user_id": user_id,
            "name": data.get("name"),
            "description": data.get("description"),
            "broker": data.get("broker"),
            "prop_firm": data.get("prop_firm"),
            "account_size": data.get("account_size"),
            "created_at": utcnow(),
        }
        with _persisting("journal"):
            await self.journals.insert_one(dict(doc))
        return doc

    async def list_journals(self, user_id: str) -> List[Dict[str, Any]]:
        cur = self.journals.find({"user_id": user_id}, projection=NO_ID, sort=[("created_at", -1)])
        return await cur.to_list(length=None)

    async def get_journal(self, user_id: str, journal_id: str) -> Optional[Dict[str, Any]]:
        return await self.journals.find_one({"id": journal_id, "user_id": user_id}, projection=NO_ID)

    # --------------------
    # raw uploads
    # --------------------

    async def insert_raw_upload(self, doc: Dict[str, Any]) -> str:
        doc = {"id": new_id(), "created_at": utcnow(), **doc}
        with _persisting("raw upload"):
            await self.raw.insert_one(dict(doc))
        return doc["id"]

    async def update_raw_upload(self, raw_id: str, fields: Dict[str, Any]) -> None:
        with _persisting("raw upload"):
            await self.raw.update_one({"id": raw_id}, {"$set": fields})

    async def get_raw_upload(self, raw_id: str) -> Optional[Dict[str, Any]]:
        return await self.raw.find_one({"id": raw_id}, projection=NO_ID)

    # --------------------
    # sessions
    # --------------------

    async def insert_session(self, doc: Dict[str, Any]) -> str:
        doc = {"id": new_id(), "created_at": utcnow(), **doc}
        with _persisting("trade session"):
            await self.sessions.insert_one(dict(doc))
        return doc["id"]

    async def update_session(self, session_id: str, fields: Dict[str, Any]) -> None:
        with _persisting("trade session"):
            await self.sessions.update_one(
                {"id": session_id},
                {"$set": {**fields, "updated_at": utcnow()}},
            )

    async def delete_session(self, session_id: str) -> None:
        with _persisting("trade session"):
            await self.sessions.delete_one({"id": session_id})

    async def get_session(self, user_id: str, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.sessions.find_one({"id": session_id, "user_id": user_id}, projection=NO_ID)

    async def list_sessions(self, user_id: str, journal_id: str) -> List[Dict[str, Any]]:
        cur = self.sessions.find(
            {"journal_id": journal_id, "user_id": user_id},
            projection=NO_ID,
            sort=[("created_at", -1)],
        )
        return await cur.to_list(length=None)

    # --------------------
    # trades
    # --------------------

    async def insert_trades(self, docs: Sequence[Dict[str, Any]]) -> List[str]:
        if not docs:
            return []
        stamped = [{"id": new_id(), "created_at": utcnow(), **d} for d in docs]
        with _persisting("trades"):
            # insert_many mutates its input with _id
            await self.trades.insert_many([dict(d) for d in stamped], ordered=True)
        return [d["id"] for d in stamped]

    async def trades_for_session(self, session_id: str) -> List[Dict[str, Any]]:
        try:
            cur = self.trades.find({"session_id": session_id}, projection=NO_ID, sort=[("datetime", 1)])
            return await cur.to_list(length=None)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read session trades: {e}") from e

    async def trades_for_journal(self, user_id: str, journal_id: str) -> List[Dict[str, Any]]:
        cur = self.trades.find(
            {"journal_id": journal_id, "user_id": user_id},
            projection=NO_ID,
            sort=[("datetime", 1)],
        )
        return await cur.to_list(length=None)

    async def delete_session_trades(self, session_id: str) -> int:
        with _persisting("trades"):
            res = await self.trades.delete_many({"session_id": session_id})
        return int(res.deleted_count or 0)

    async def delete_trades(self, trade_ids: Iterable[str]) -> int:
        ids = list(trade_ids)
        if not ids:
            return 0
        with _persisting("trades"):
            res = await self.trades.delete_many({"id": {"$in": ids}})
        return int(res.deleted_count or 0)

    # --------------------
    # duplicate lookup
    # --------------------

    async def find_duplicates(self, journal_id: str, trades: Sequence[Any]) -> List[DuplicateMatch]:
        """
        One query pulls every stored trade of the journal that could share a
        key with the candidates; the layered comparison then runs in memory.
        """
        datetimes = sorted({str(field_of(t, "datetime")) for t in trades if field_of(t, "datetime")})
        buys = sorted({str(field_of(t, "buy_fill_id")) for t in trades if field_of(t, "buy_fill_id")})
        sells = sorted({str(field_of(t, "sell_fill_id")) for t in trades if field_of(t, "sell_fill_id")})

        clauses: List[Dict[str, Any]] = [{"datetime": {"$in": datetimes}}]
        if buys:
            clauses.append({"buy_fill_id": {"$in": buys}})
        if sells:
            clauses.append({"sell_fill_id": {"$in": sells}})

        try:
            cur = self.trades.find({"journal_id": journal_id, "$or": clauses}, projection=NO_ID)
            existing = await cur.to_list(length=None)
        except PyMongoError as e:
            raise ServiceUnavailable("duplicate lookup", str(e)) from e

        return match_against_existing(trades, existing, journal_id)
