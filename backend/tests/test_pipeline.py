import asyncio

import pytest

from ingestion.errors import PersistenceError, ServiceUnavailable
from ingestion import pipeline as pipeline_module
from ingestion.pipeline import IngestionPipeline
from ingestion.store import TradeStore

from conftest import HAPPY_HEADERS, HAPPY_ROWS, FakeServices, make_csv

USER = "user-1"
JOURNAL = "journal-1"


async def _ingest(store, services, raw, file_name="trades.csv", journal_id=JOURNAL):
    pipeline = IngestionPipeline(store, services)
    return await pipeline.ingest(journal_id=journal_id, user_id=USER, file_name=file_name, raw=raw)


def _assert_accounted(outcome):
    assert outcome.accounted_rows == outcome.total_rows


@pytest.mark.asyncio
async def test_happy_path(store, offline_services, happy_csv):
    outcome = await _ingest(store, offline_services, happy_csv)

    assert outcome.status == "success"
    assert outcome.state == "done"
    assert outcome.total_rows == 3
    assert outcome.inserted_trades == 3
    assert outcome.parse_errors == 0
    assert outcome.mock_data_filtered == 0
    assert outcome.duplicates_skipped == 0
    assert outcome.database_duplicates == 0
    assert outcome.empty_rows_skipped == 0
    assert outcome.row_errors == []
    assert outcome.metrics["total_trades"] == 3
    assert outcome.metrics["total_pnl"] == pytest.approx(45.00 - 20.50 + 120.25)
    _assert_accounted(outcome)

    session = await store.get_session(USER, outcome.session_id)
    assert session["metrics"]["total_trades"] == 3
    assert session["raw_data_id"] == outcome.raw_data_id
    trades = await store.trades_for_session(outcome.session_id)
    assert [t["symbol"] for t in trades] == ["AAPL", "MSFT", "NVDA"]
    assert all(t["journal_id"] == JOURNAL and t["user_id"] == USER for t in trades)

    raw = await store.get_raw_upload(outcome.raw_data_id)
    assert raw["headers"] == HAPPY_HEADERS
    assert raw["summary"]["inserted_trades"] == 3


@pytest.mark.asyncio
async def test_offline_services_record_fallbacks(store, offline_services, happy_csv):
    outcome = await _ingest(store, offline_services, happy_csv)
    assert outcome.fallbacks == [
        "content_validation_heuristic",
        "column_mapping_patterns",
        "insights_skipped",
    ]
    assert outcome.insights_generated is False


@pytest.mark.asyncio
async def test_services_used_when_available(store, happy_csv):
    services = FakeServices(
        verdict=True,
        mapping={h: h for h in HAPPY_HEADERS},
        insights={"ai_strengths": ["discipline"], "ai_mistakes": [], "ai_fixes": [], "ai_key_insight": "ok"},
    )
    outcome = await _ingest(store, services, happy_csv)

    assert outcome.status == "success"
    assert outcome.fallbacks == []
    assert outcome.insights_generated is True
    assert ("insights", 3) in services.calls
    session = await store.get_session(USER, outcome.session_id)
    assert session["ai_strengths"] == ["discipline"]


@pytest.mark.asyncio
async def test_reingest_is_idempotent(store, offline_services, happy_csv):
    first = await _ingest(store, offline_services, happy_csv)
    second = await _ingest(store, offline_services, happy_csv)

    assert first.inserted_trades == 3
    assert second.status == "empty"
    assert second.empty_reason == "all_duplicates"
    assert second.inserted_trades == 0
    assert second.database_duplicates == 3
    assert second.duplicate_matches == {"composite": 3}
    assert second.session_id is None
    _assert_accounted(second)
    assert len(await store.trades_for_journal(USER, JOURNAL)) == 3


@pytest.mark.asyncio
async def test_other_journal_does_not_see_duplicates(store, offline_services, happy_csv):
    await _ingest(store, offline_services, happy_csv)
    other = await _ingest(store, offline_services, happy_csv, journal_id="journal-2")
    assert other.inserted_trades == 3


@pytest.mark.asyncio
async def test_mock_rows_are_filtered(store, offline_services):
    rows = HAPPY_ROWS + [["2024-01-17 09:30:00", "DEMO", "BUY", "1", "10", "5", ""]]
    outcome = await _ingest(store, offline_services, make_csv(HAPPY_HEADERS, rows))

    assert outcome.mock_data_filtered == 1
    assert outcome.inserted_trades == 3
    _assert_accounted(outcome)


@pytest.mark.asyncio
async def test_all_mock_is_empty_not_failed(store, offline_services):
    rows = [["2024-01-17 09:30:00", "DEMO", "BUY", "1", "10", "5", ""]]
    outcome = await _ingest(store, offline_services, make_csv(HAPPY_HEADERS, rows))
    assert outcome.status == "empty"
    assert outcome.empty_reason == "all_mock"
    assert outcome.raw_data_id is None


@pytest.mark.asyncio
async def test_accounting_identity_with_every_bucket(store, offline_services, happy_csv):
    await _ingest(store, offline_services, make_csv(HAPPY_HEADERS, HAPPY_ROWS[:1]))

    rows = [
        HAPPY_ROWS[0],                                                     # stored already
        HAPPY_ROWS[1],                                                     # new
        HAPPY_ROWS[1],                                                     # in-file duplicate
        ["", "", "", "", "", "", ""],                                      # empty
        ["not a date", "AAPL", "BUY", "1", "1", "1", ""],                  # invalid
        ["2024-01-15 09:30:00", "", "BUY", "abc", "-3", "", ""],           # invalid
        ["2024-01-18 09:30:00", "TEST1", "SELL", "1", "1", "1", ""],       # mock
        HAPPY_ROWS[2],                                                     # new
    ]
    outcome = await _ingest(store, offline_services, make_csv(HAPPY_HEADERS, rows))

    assert outcome.total_rows == 8
    assert outcome.empty_rows_skipped == 1
    assert outcome.parse_errors == 2
    assert outcome.mock_data_filtered == 1
    assert outcome.duplicates_skipped == 1
    assert outcome.database_duplicates == 1
    assert outcome.inserted_trades == 2
    _assert_accounted(outcome)

    assert outcome.row_error_count == 2
    assert [e.row for e in outcome.row_errors] == [5, 6]
    assert len(outcome.row_errors[1].reasons) == 4


@pytest.mark.asyncio
async def test_row_error_preview_is_capped(store, offline_services):
    rows = [["bad", "AAPL", "BUY", "1", "1", "1", ""]] * 15
    outcome = await _ingest(store, offline_services, make_csv(HAPPY_HEADERS, rows))

    assert outcome.status == "empty"
    assert outcome.empty_reason == "all_invalid"
    assert outcome.parse_errors == 15
    assert outcome.row_error_count == 15
    assert len(outcome.row_errors) == 10


@pytest.mark.asyncio
async def test_malformed_file_fails_before_services(store):
    services = FakeServices(verdict=True)
    outcome = await _ingest(store, services, b"")
    assert outcome.status == "failed"
    assert outcome.failure_reason == "malformed_file"
    assert services.calls == []


@pytest.mark.asyncio
async def test_header_only_file_is_malformed(store, offline_services):
    outcome = await _ingest(store, offline_services, b"datetime,symbol,qty,price,pnl\n")
    assert outcome.failure_reason == "malformed_file"


@pytest.mark.asyncio
async def test_non_trading_file_rejected(store, offline_services):
    raw = make_csv(["name", "email"], [["Ann", "ann@example.com"]])
    outcome = await _ingest(store, offline_services, raw)
    assert outcome.failure_reason == "not_trading_data"
    assert "content_validation_heuristic" in outcome.fallbacks


@pytest.mark.asyncio
async def test_validation_service_verdict_wins(store, happy_csv):
    outcome = await _ingest(store, FakeServices(verdict=False), happy_csv)
    assert outcome.failure_reason == "not_trading_data"


@pytest.mark.asyncio
async def test_incomplete_mapping(store, offline_services):
    raw = make_csv(["symbol", "price", "notes"], [["AAPL", "1", "x"]])
    outcome = await _ingest(store, offline_services, raw)
    assert outcome.status == "failed"
    assert outcome.failure_reason == "incomplete_mapping"
    assert outcome.missing_fields == ["datetime", "qty", "pnl"]


@pytest.mark.asyncio
async def test_storage_lookup_outage_fails_open(store, offline_services, happy_csv):
    class LookupDown(TradeStore):
        async def find_duplicates(self, journal_id, trades):
            raise ServiceUnavailable("duplicate lookup", "down")

    outcome = await _ingest(LookupDown(store.db), offline_services, happy_csv)
    assert outcome.status == "success"
    assert outcome.inserted_trades == 3
    assert "storage_dedupe_skipped" in outcome.fallbacks


@pytest.mark.asyncio
async def test_trade_insert_failure_reconciles_session(store, offline_services, happy_csv):
    class PartialInsert(TradeStore):
        async def insert_trades(self, docs):
            await super().insert_trades(docs[:1])
            raise PersistenceError("connection reset mid-batch")

    failing = PartialInsert(store.db)
    outcome = await _ingest(failing, offline_services, happy_csv)

    assert outcome.status == "failed"
    assert outcome.failure_reason == "persistence_error"
    assert outcome.state == "persisting_trades"
    assert outcome.inserted_trades == 0
    assert outcome.unsaved_rows == 3
    _assert_accounted(outcome)

    session = await store.get_session(USER, outcome.session_id)
    assert session["metrics"]["total_trades"] == 0
    assert await store.trades_for_session(outcome.session_id) == []


@pytest.mark.asyncio
async def test_insight_failure_is_not_fatal(store, happy_csv):
    services = FakeServices(verdict=True, insights=ServiceUnavailable("insights", "500"))
    outcome = await _ingest(store, services, happy_csv)
    assert outcome.status == "success"
    assert outcome.insights_generated is False
    assert outcome.fallbacks == ["column_mapping_patterns", "insights_skipped"]


@pytest.mark.asyncio
async def test_insights_payload_is_capped(store, monkeypatch):
    from core.config import settings

    monkeypatch.setattr(settings, "INSIGHTS_MAX_TRADES", 2)
    services = FakeServices(verdict=True, insights={"ai_strengths": [], "ai_mistakes": [], "ai_fixes": [], "ai_key_insight": None})
    outcome = await _ingest(store, services, make_csv(HAPPY_HEADERS, HAPPY_ROWS))
    assert outcome.inserted_trades == 3
    assert ("insights", 2) in services.calls


@pytest.mark.asyncio
async def test_trailing_delimiter_rows_import(store, offline_services):
    lines = [",".join(HAPPY_HEADERS)] + [",".join(r) + "," for r in HAPPY_ROWS]
    raw = ("\n".join(lines) + "\n").encode("utf-8")

    outcome = await _ingest(store, offline_services, raw)

    assert outcome.status == "success"
    assert outcome.inserted_trades == 3
    assert outcome.parse_errors == 0
    trades = await store.trades_for_journal(USER, JOURNAL)
    assert sorted(t["symbol"] for t in trades) == ["AAPL", "MSFT", "NVDA"]


@pytest.mark.asyncio
async def test_concurrent_uploads_to_one_journal_are_serialised(store, offline_services, happy_csv):
    first, second = await asyncio.gather(
        _ingest(store, offline_services, happy_csv),
        _ingest(store, offline_services, happy_csv),
    )

    assert sorted([first.inserted_trades, second.inserted_trades]) == [0, 3]
    assert len(await store.trades_for_journal(USER, JOURNAL)) == 3
    assert JOURNAL not in pipeline_module._journal_locks


@pytest.mark.asyncio
async def test_journal_lock_released_after_failed_run(store):
    await _ingest(store, FakeServices(), b"")
    assert JOURNAL not in pipeline_module._journal_locks
