# core/options_store.py
"""
Per-user remembered values for free-text trade fields (strategy, tags, ...).

Kept apart from ingestion: importing trades never reads or writes it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List

MAX_OPTIONS_PER_FIELD = 20


class OptionStore:
    def __init__(self, collection, user_id: str) -> None:
        self.col = collection
        self.user_id = user_id

    async def get(self, field_name: str) -> List[str]:
        cur = self.col.find(
            {"user_id": self.user_id, "field_name": field_name},
            projection={"_id": 0, "option_value": 1},
            sort=[("usage_count", -1), ("last_used", -1)],
            limit=MAX_OPTIONS_PER_FIELD,
        )
        docs = await cur.to_list(length=MAX_OPTIONS_PER_FIELD)
        return [d["option_value"] for d in docs]

    async def set(self, field_name: str, value: str) -> None:
        value = (value or "").strip()
        if not value:
            return
        now = datetime.now(timezone.utc)
        await self.col.update_one(
            {"user_id": self.user_id, "field_name": field_name, "option_value": value},
            {
                "$inc": {"usage_count": 1},
                "$set": {"last_used": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    async def list_all(self) -> Dict[str, List[str]]:
        fields = await self.col.distinct("field_name", {"user_id": self.user_id})
        return {f: await self.get(f) for f in sorted(fields)}
