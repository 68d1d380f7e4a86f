# ingestion/pipeline.py
"""
End-to-end ingestion of one uploaded CSV into a journal.

    idle -> parsing -> validating -> mapping -> normalizing
         -> deduplicating_local -> deduplicating_storage
         -> persisting_raw -> persisting_session -> persisting_trades
         -> reconciling -> requesting_insights -> done

Any stage may end the run early with `failed` (except insights, which is best
effort) or with `empty` when nothing actionable is left. The caller always gets
an IngestionOutcome back; nothing raised inside a stage escapes `ingest`.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from core.config import settings
from ingestion import column_mapper
from ingestion.csv_reader import ParsedCsv, parse_csv
from ingestion.dedupe import dedupe_against_storage, dedupe_within_batch
from ingestion.errors import MalformedFileError, PersistenceError, ServiceUnavailable
from ingestion.metrics import calculate_metrics, empty_metrics, sort_chronologically
from ingestion.models import CanonicalTrade, IngestionOutcome, RowError
from ingestion.normalise import normalize_row
from ingestion.services import looks_like_trading_headers
from ingestion.store import utcnow
from ingestion.validation import is_mock_data, validate_trade

logger = logging.getLogger(__name__)


class IngestionState(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    VALIDATING = "validating"
    MAPPING = "mapping"
    NORMALIZING = "normalizing"
    DEDUPLICATING_LOCAL = "deduplicating_local"
    DEDUPLICATING_STORAGE = "deduplicating_storage"
    PERSISTING_RAW = "persisting_raw"
    PERSISTING_SESSION = "persisting_session"
    PERSISTING_TRADES = "persisting_trades"
    RECONCILING = "reconciling"
    REQUESTING_INSIGHTS = "requesting_insights"
    DONE = "done"


# fallback names reported on the outcome
FALLBACK_CONTENT_HEURISTIC = "content_validation_heuristic"
FALLBACK_COLUMN_PATTERNS = "column_mapping_patterns"
FALLBACK_DEDUPE_SKIPPED = "storage_dedupe_skipped"
FALLBACK_INSIGHTS_SKIPPED = "insights_skipped"

DUPLICATE_PREVIEW = 10

# one in-flight ingestion per journal, per process
_journal_locks: Dict[str, Tuple[asyncio.Lock, int]] = {}


@asynccontextmanager
async def journal_lock(journal_id: str) -> AsyncIterator[None]:
    """Holds the journal's lock; the entry is dropped once nobody holds or waits on it."""
    lock, users = _journal_locks.get(journal_id, (None, 0))
    if lock is None:
        lock = asyncio.Lock()
    _journal_locks[journal_id] = (lock, users + 1)
    try:
        async with lock:
            yield
    finally:
        _, users = _journal_locks[journal_id]
        if users <= 1:
            del _journal_locks[journal_id]
        else:
            _journal_locks[journal_id] = (lock, users - 1)


class _Finished(Exception):
    """Internal: unwinds the stage sequence once the outcome is terminal."""


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def trade_document(trade: CanonicalTrade, *, user_id: str, journal_id: str, session_id: str) -> Dict[str, Any]:
    doc = trade.model_dump()
    doc.update({"user_id": user_id, "journal_id": journal_id, "session_id": session_id})
    return doc


class IngestionPipeline:
    def __init__(self, store, services, *, row_error_preview: Optional[int] = None) -> None:
        self.store = store
        self.services = services
        self.row_error_preview = settings.ROW_ERROR_PREVIEW if row_error_preview is None else row_error_preview

    async def ingest(self, *, journal_id: str, user_id: str, file_name: str, raw: bytes) -> IngestionOutcome:
        async with journal_lock(journal_id):
            run = _Run(self, journal_id=journal_id, user_id=user_id, file_name=file_name, raw=raw)
            return await run.execute()


class _Run:
    """State for a single ingestion; one instance per upload."""

    def __init__(self, pipeline: IngestionPipeline, *, journal_id: str, user_id: str, file_name: str, raw: bytes):
        self.store = pipeline.store
        self.services = pipeline.services
        self.row_error_preview = pipeline.row_error_preview
        self.journal_id = journal_id
        self.user_id = user_id
        self.raw = raw
        self.outcome = IngestionOutcome(file_name=file_name)

        self.parsed: Optional[ParsedCsv] = None
        self.mapping_source = ""
        self.valid: List[CanonicalTrade] = []
        self.unique: List[CanonicalTrade] = []
        self.duplicate_preview: List[Dict[str, Any]] = []

    # --------------------
    # outcome helpers
    # --------------------

    def _enter(self, state: IngestionState) -> None:
        self.outcome.state = state.value
        logger.info("ingest %s [%s]: %s", self.outcome.file_name, self.journal_id, state.value)

    def _fail(self, reason: str, message: str, detail: Optional[str] = None) -> None:
        self.outcome.status = "failed"
        self.outcome.failure_reason = reason
        self.outcome.message = message
        self.outcome.detail = detail
        raise _Finished()

    def _fail_unsaved(self, message: str, error: PersistenceError) -> None:
        # rows that survived dedupe but never made it to storage
        self.outcome.unsaved_rows = len(self.unique)
        self._fail("persistence_error", message, str(error))

    def _empty(self, reason: str, message: str) -> None:
        self.outcome.status = "empty"
        self.outcome.empty_reason = reason
        self.outcome.message = message
        self.outcome.state = IngestionState.DONE.value
        raise _Finished()

    def _fallback(self, name: str) -> None:
        if name not in self.outcome.fallbacks:
            self.outcome.fallbacks.append(name)

    # --------------------
    # run
    # --------------------

    async def execute(self) -> IngestionOutcome:
        try:
            self._parse()
            await self._validate_content()
            await self._map_columns()
            self._normalize()
            self._dedupe_local()
            await self._dedupe_storage()
            await self._persist_raw()
            await self._persist_session()
            await self._persist_trades()
            await self._reconcile()
            await self._request_insights()
            await self._finish()
        except _Finished:
            pass

        o = self.outcome
        logger.info(
            "ingest %s finished: status=%s state=%s rows=%d inserted=%d invalid=%d mock=%d dup=%d db_dup=%d empty=%d",
            o.file_name, o.status, o.state, o.total_rows, o.inserted_trades, o.parse_errors,
            o.mock_data_filtered, o.duplicates_skipped, o.database_duplicates, o.empty_rows_skipped,
        )
        return o

    def _parse(self) -> None:
        self._enter(IngestionState.PARSING)
        try:
            self.parsed = parse_csv(self.raw)
        except MalformedFileError as e:
            self._fail("malformed_file", "The file could not be read as a CSV.", str(e))

        self.outcome.total_rows = len(self.parsed.rows)
        if not any(not self.parsed.is_blank_row(i) for i in range(len(self.parsed.rows))):
            self._fail("malformed_file", "The file has a header row but no data rows.")

    async def _validate_content(self) -> None:
        self._enter(IngestionState.VALIDATING)
        headers = self.parsed.headers
        sample = self.parsed.sample(settings.SERVICE_SAMPLE_ROWS)
        try:
            is_trading = await self.services.validate_content(headers, sample)
        except ServiceUnavailable as e:
            logger.warning("CSV validation service unavailable (%s); using header heuristic", e)
            self._fallback(FALLBACK_CONTENT_HEURISTIC)
            is_trading = looks_like_trading_headers(headers)

        if not is_trading:
            self._fail(
                "not_trading_data",
                "This file does not look like trading data.",
                f"headers: {', '.join(headers)}",
            )

    async def _map_columns(self) -> None:
        self._enter(IngestionState.MAPPING)
        mapping, source = await column_mapper.map_columns(
            self.parsed.headers,
            self.parsed.sample(settings.SERVICE_SAMPLE_ROWS),
            self.services,
            sample_size=settings.SERVICE_SAMPLE_ROWS,
        )
        if source == "fallback":
            self._fallback(FALLBACK_COLUMN_PATTERNS)
        self.mapping_source = source
        self.outcome.mapping = mapping

        missing = column_mapper.missing_required_fields(mapping)
        if missing:
            self.outcome.missing_fields = missing
            self._fail(
                "incomplete_mapping",
                f"Could not find columns for: {', '.join(missing)}.",
                f"headers: {', '.join(self.parsed.headers)}",
            )

    def _normalize(self) -> None:
        self._enter(IngestionState.NORMALIZING)
        o = self.outcome

        for index, row in enumerate(self.parsed.rows):
            if self.parsed.is_blank_row(index):
                o.empty_rows_skipped += 1
                continue

            candidate = normalize_row(row, o.mapping, row_number=index + 1)
            verdict = validate_trade(candidate)
            if not verdict.valid:
                o.parse_errors += 1
                if len(o.row_errors) < self.row_error_preview:
                    o.row_errors.append(RowError(row=candidate.row_number, reasons=verdict.reasons))
                continue

            if is_mock_data(candidate):
                o.mock_data_filtered += 1
                continue

            self.valid.append(candidate.to_canonical())

        o.row_error_count = o.parse_errors

        if not self.valid:
            if o.mock_data_filtered and not o.parse_errors:
                self._empty("all_mock", "No trades imported: every row was sample or demo data.")
            self._empty("all_invalid", f"No trades imported: {_plural(o.parse_errors, 'row')} failed validation.")

    def _dedupe_local(self) -> None:
        self._enter(IngestionState.DEDUPLICATING_LOCAL)
        result = dedupe_within_batch(self.valid, self.journal_id)
        self.outcome.duplicates_skipped = len(result.duplicates)
        self.unique = result.unique
        self.duplicate_preview.extend(t.model_dump() for t in result.duplicates[:DUPLICATE_PREVIEW])

    async def _dedupe_storage(self) -> None:
        self._enter(IngestionState.DEDUPLICATING_STORAGE)
        result = await dedupe_against_storage(self.unique, self.journal_id, self.store)
        if result.degraded:
            self._fallback(FALLBACK_DEDUPE_SKIPPED)

        self.outcome.database_duplicates = result.duplicate_count
        self.outcome.duplicate_matches = dict(result.match_counts)
        self.unique = result.unique

        room = DUPLICATE_PREVIEW - len(self.duplicate_preview)
        if room > 0:
            self.duplicate_preview.extend(t.model_dump() for t in result.duplicates[:room])

    async def _persist_raw(self) -> None:
        self._enter(IngestionState.PERSISTING_RAW)
        try:
            self.outcome.raw_data_id = await self.store.insert_raw_upload({
                "user_id": self.user_id,
                "journal_id": self.journal_id,
                "file_name": self.outcome.file_name,
                "headers": self.parsed.headers,
                # positional rows: broker headers may contain "." or "$"
                "original_rows": [[row.get(h, "") for h in self.parsed.headers] for row in self.parsed.rows],
                "mapping": self.outcome.mapping,
                "mapping_source": self.mapping_source,
            })
        except PersistenceError as e:
            self._fail_unsaved("The upload could not be saved.", e)

        if not self.unique:
            await self._write_summary()
            self._empty("all_duplicates", "No new trades: every row was already imported.")

    async def _persist_session(self) -> None:
        self._enter(IngestionState.PERSISTING_SESSION)
        try:
            self.outcome.session_id = await self.store.insert_session({
                "user_id": self.user_id,
                "journal_id": self.journal_id,
                "raw_data_id": self.outcome.raw_data_id,
                "file_name": self.outcome.file_name,
                "status": "pending",
                "metrics": calculate_metrics(sort_chronologically(self.unique)),
            })
        except PersistenceError as e:
            self._fail_unsaved("The trade session could not be saved.", e)

    async def _persist_trades(self) -> None:
        self._enter(IngestionState.PERSISTING_TRADES)
        docs = [
            trade_document(t, user_id=self.user_id, journal_id=self.journal_id, session_id=self.outcome.session_id)
            for t in self.unique
        ]
        try:
            await self.store.insert_trades(docs)
        except PersistenceError as e:
            logger.error("Trade insert failed for session %s: %s", self.outcome.session_id, e)
            await self._roll_back_session()
            self._fail_unsaved("Trades could not be saved; nothing was imported.", e)

    async def _roll_back_session(self) -> None:
        """A session whose trades failed to land must not report them."""
        session_id = self.outcome.session_id
        try:
            await self.store.delete_session_trades(session_id)
        except PersistenceError as e:
            logger.error("Could not remove partial trades for session %s: %s", session_id, e)
        try:
            await self.store.update_session(session_id, {"metrics": empty_metrics(), "status": "failed"})
        except PersistenceError as e:
            logger.error("Could not reset metrics for session %s: %s", session_id, e)
        self.outcome.metrics = empty_metrics()

    async def _reconcile(self) -> None:
        self._enter(IngestionState.RECONCILING)
        session_id = self.outcome.session_id
        try:
            stored = await self.store.trades_for_session(session_id)
            metrics = calculate_metrics(sort_chronologically(stored))
            await self.store.update_session(session_id, {"metrics": metrics, "status": "complete"})
        except PersistenceError as e:
            self._fail_unsaved("Imported trades could not be reconciled.", e)

        self.outcome.inserted_trades = len(stored)
        self.outcome.metrics = metrics
        # trades that vanished between insert and re-read are reported as invalid
        lost = len(self.unique) - len(stored)
        if lost > 0:
            logger.warning("Session %s: %d trades missing after insert", session_id, lost)
            self.outcome.parse_errors += lost
            self.outcome.row_error_count = self.outcome.parse_errors

    async def _request_insights(self) -> None:
        self._enter(IngestionState.REQUESTING_INSIGHTS)
        payload = [t.model_dump() for t in self.unique[: settings.INSIGHTS_MAX_TRADES]]
        try:
            insights = await self.services.generate_insights(payload)
        except ServiceUnavailable as e:
            logger.warning("Insights unavailable for session %s (%s); continuing without", self.outcome.session_id, e)
            self._fallback(FALLBACK_INSIGHTS_SKIPPED)
            return

        try:
            await self.store.update_session(self.outcome.session_id, insights)
        except PersistenceError as e:
            logger.warning("Could not store insights for session %s: %s", self.outcome.session_id, e)
            self._fallback(FALLBACK_INSIGHTS_SKIPPED)
            return
        self.outcome.insights_generated = True

    async def _finish(self) -> None:
        o = self.outcome
        skipped = []
        if o.parse_errors:
            skipped.append(f"{_plural(o.parse_errors, 'invalid row')}")
        if o.mock_data_filtered:
            skipped.append(f"{_plural(o.mock_data_filtered, 'demo row')}")
        if o.duplicates_skipped or o.database_duplicates:
            skipped.append(f"{_plural(o.duplicates_skipped + o.database_duplicates, 'duplicate')}")

        o.message = f"Imported {_plural(o.inserted_trades, 'trade')} from {o.file_name}."
        if skipped:
            o.message += f" Skipped {', '.join(skipped)}."
        o.status = "success"
        await self._write_summary()
        self._enter(IngestionState.DONE)

    async def _write_summary(self) -> None:
        o = self.outcome
        summary = {
            "file_name": o.file_name,
            "uploaded_at": utcnow(),
            "total_rows": o.total_rows,
            "empty_rows_skipped": o.empty_rows_skipped,
            "parse_errors": o.parse_errors,
            "mock_data_filtered": o.mock_data_filtered,
            "duplicates_skipped": o.duplicates_skipped,
            "database_duplicates": o.database_duplicates,
            "inserted_trades": o.inserted_trades,
            "duplicates_preview": self.duplicate_preview[:DUPLICATE_PREVIEW],
        }
        try:
            await self.store.update_raw_upload(o.raw_data_id, {"summary": summary})
        except PersistenceError as e:
            logger.warning("Could not write upload summary for %s: %s", o.raw_data_id, e)
