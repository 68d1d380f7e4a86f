# routers/options.py
from __future__ import annotations

import re

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from core.db import get_db
from core.options_store import OptionStore
from core.security import require_user_id

router = APIRouter(prefix="/api/options", tags=["Options"])

FIELD_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,39}$")


class OptionIn(BaseModel):
    value: str = Field(..., min_length=1, max_length=200)


class OptionsResp(BaseModel):
    field: str
    options: list[str]


def _store(req: Request) -> OptionStore:
    return OptionStore(get_db()["custom_field_options"], require_user_id(req))


def _field(name: str) -> str:
    if not FIELD_RE.match(name or ""):
        raise HTTPException(status_code=400, detail="Invalid field name")
    return name


@router.get("")
async def list_options(req: Request) -> dict[str, list[str]]:
    return await _store(req).list_all()


@router.get("/{field_name}", response_model=OptionsResp)
async def get_options(field_name: str, req: Request):
    store = _store(req)
    field_name = _field(field_name)
    return {"field": field_name, "options": await store.get(field_name)}


@router.post("/{field_name}", response_model=OptionsResp)
async def remember_option(field_name: str, body: OptionIn, req: Request):
    store = _store(req)
    field_name = _field(field_name)
    await store.set(field_name, body.value)
    return {"field": field_name, "options": await store.get(field_name)}
