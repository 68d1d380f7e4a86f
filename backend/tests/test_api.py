from core.security import create_access_token
from ingestion.errors import PersistenceError
from ingestion.store import TradeStore
from main import app
from routers.deps import get_store

from conftest import HAPPY_HEADERS, HAPPY_ROWS, make_csv


def _journal(client, auth_headers, name="Main"):
    r = client.post("/api/journals", json={"name": name, "broker": "IBKR", "account_size": 50000}, headers=auth_headers)
    assert r.status_code == 201, r.text
    return r.json()["id"]


def _upload(client, auth_headers, journal_id, raw, name="trades.csv"):
    return client.post(
        f"/api/journals/{journal_id}/ingest",
        files={"file": (name, raw, "text/csv")},
        headers=auth_headers,
    )


def test_root(client):
    assert client.get("/").json() == {"ok": True}


def test_requires_auth(client):
    assert client.get("/api/journals").status_code == 401


def test_journal_crud(client, auth_headers):
    jid = _journal(client, auth_headers)

    listed = client.get("/api/journals", headers=auth_headers).json()
    assert [j["id"] for j in listed] == [jid]

    got = client.get(f"/api/journals/{jid}", headers=auth_headers).json()
    assert got["broker"] == "IBKR"
    assert got["account_size"] == 50000


def test_journals_are_scoped_to_user(client, auth_headers):
    jid = _journal(client, auth_headers)
    other = {"Authorization": f"Bearer {create_access_token(sub='user-2')}"}

    assert client.get(f"/api/journals/{jid}", headers=other).status_code == 404
    assert client.get("/api/journals", headers=other).json() == []


def test_ingest_then_browse(client, auth_headers, happy_csv):
    jid = _journal(client, auth_headers)

    r = _upload(client, auth_headers, jid, happy_csv)
    assert r.status_code == 200, r.text
    outcome = r.json()
    assert outcome["status"] == "success"
    assert outcome["inserted_trades"] == 3

    sessions = client.get(f"/api/journals/{jid}/sessions", headers=auth_headers).json()
    assert [s["id"] for s in sessions] == [outcome["session_id"]]

    session = client.get(f"/api/sessions/{outcome['session_id']}", headers=auth_headers).json()
    assert len(session["trades"]) == 3
    assert session["metrics"]["total_trades"] == 3

    metrics = client.get(f"/api/journals/{jid}/metrics", headers=auth_headers).json()
    assert metrics["trade_count"] == 3
    assert metrics["metrics"]["total_pnl"] == outcome["metrics"]["total_pnl"]


def test_reupload_is_empty_200(client, auth_headers, happy_csv):
    jid = _journal(client, auth_headers)
    _upload(client, auth_headers, jid, happy_csv)

    r = _upload(client, auth_headers, jid, happy_csv)
    assert r.status_code == 200
    assert r.json()["status"] == "empty"
    assert r.json()["empty_reason"] == "all_duplicates"


def test_ingest_failures_map_to_422(client, auth_headers):
    jid = _journal(client, auth_headers)

    r = _upload(client, auth_headers, jid, make_csv(["name", "email"], [["a", "b"]]))
    assert r.status_code == 422
    assert r.json()["failure_reason"] == "not_trading_data"

    r = _upload(client, auth_headers, jid, b"")
    assert r.status_code == 422
    assert r.json()["failure_reason"] == "malformed_file"


def test_ingest_rejects_non_csv_and_unknown_journal(client, auth_headers, happy_csv):
    jid = _journal(client, auth_headers)
    assert _upload(client, auth_headers, jid, happy_csv, name="trades.pdf").status_code == 400
    assert _upload(client, auth_headers, "nope", happy_csv).status_code == 404


def test_sample_data_and_cleanup(client, auth_headers):
    jid = _journal(client, auth_headers)
    _upload(client, auth_headers, jid, make_csv(HAPPY_HEADERS, HAPPY_ROWS))

    r = client.post(f"/api/journals/{jid}/sample-data", headers=auth_headers)
    assert r.status_code == 201
    sample = r.json()
    assert sample["is_sample"] is True
    assert sample["metrics"]["total_trades"] == 3

    # demo trades never count toward the journal aggregate
    metrics = client.get(f"/api/journals/{jid}/metrics", headers=auth_headers).json()
    assert metrics["trade_count"] == 3
    assert metrics["excluded_mock_trades"] == 3

    r = client.delete(f"/api/journals/{jid}/mock-data", headers=auth_headers)
    assert r.json() == {"deleted_trades": 3, "sessions_updated": 0, "sessions_deleted": 1}

    sessions = client.get(f"/api/journals/{jid}/sessions", headers=auth_headers).json()
    assert len(sessions) == 1
    assert client.get(f"/api/sessions/{sample['id']}", headers=auth_headers).status_code == 404


def test_sample_data_write_failures_are_500(client, auth_headers, mock_db):
    class WritesDown(TradeStore):
        async def insert_session(self, doc):
            raise PersistenceError("insert session: not primary")

        async def trades_for_journal(self, user_id, journal_id):
            raise PersistenceError("find trades: not primary")

    jid = _journal(client, auth_headers)
    app.dependency_overrides[get_store] = lambda: WritesDown(mock_db)

    r = client.post(f"/api/journals/{jid}/sample-data", headers=auth_headers)
    assert r.status_code == 500
    assert "not primary" in r.json()["detail"]

    r = client.delete(f"/api/journals/{jid}/mock-data", headers=auth_headers)
    assert r.status_code == 500
    assert r.json()["detail"].startswith("Mock data cleanup failed")


def test_options_roundtrip(client, auth_headers):
    client.post("/api/options/strategy", json={"value": "Breakout"}, headers=auth_headers)
    client.post("/api/options/strategy", json={"value": "Reversal"}, headers=auth_headers)
    r = client.post("/api/options/strategy", json={"value": "Reversal"}, headers=auth_headers)
    assert r.json() == {"field": "strategy", "options": ["Reversal", "Breakout"]}

    assert client.get("/api/options", headers=auth_headers).json() == {"strategy": ["Reversal", "Breakout"]}
    assert client.get("/api/options/bad-field!", headers=auth_headers).status_code == 400
