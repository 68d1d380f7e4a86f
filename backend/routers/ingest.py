# routers/ingest.py
from __future__ import annotations

import logging

from fastapi import APIRouter, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from core.security import require_user_id
from ingestion.models import IngestionOutcome
from ingestion.pipeline import IngestionPipeline
from ingestion.services import IngestionServices
from ingestion.store import TradeStore
from routers.deps import ServicesDep, StoreDep, load_journal

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/journals", tags=["Ingest"])

ALLOWED_SUFFIXES = (".csv", ".tsv", ".txt")

# failed outcomes caused by the upload itself vs. by the server
CLIENT_FAILURES = {"malformed_file", "not_trading_data", "incomplete_mapping"}


def _status_for(outcome: IngestionOutcome) -> int:
    if outcome.status != "failed":
        return 200
    return 422 if outcome.failure_reason in CLIENT_FAILURES else 500


@router.post("/{journal_id}/ingest", response_model=IngestionOutcome)
async def ingest_trades(
    journal_id: str,
    req: Request,
    file: UploadFile = File(...),
    store: TradeStore = StoreDep,
    services: IngestionServices = ServicesDep,
):
    user_id = require_user_id(req)
    await load_journal(store, user_id, journal_id)

    filename = file.filename or "upload.csv"
    if not filename.lower().endswith(ALLOWED_SUFFIXES):
        raise HTTPException(status_code=400, detail="Upload must be a .csv or .tsv file")

    raw = await file.read()
    await file.close()

    pipeline = IngestionPipeline(store, services)
    outcome = await pipeline.ingest(journal_id=journal_id, user_id=user_id, file_name=filename, raw=raw)

    if outcome.status == "failed":
        logger.warning("Ingest of %s into %s failed: %s (%s)", filename, journal_id, outcome.failure_reason, outcome.detail)

    return JSONResponse(status_code=_status_for(outcome), content=outcome.model_dump(mode="json"))
