"""Tests for the health and control HTTP server."""
import json
import urllib.error
import urllib.request
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

import health_server
from backfill import BackfillResult
from database import AccountNotFoundError
from health_server import HealthServer, HealthStatus
from sync_service import SyncReport


@pytest.fixture(autouse=True)
def fresh_health_status(monkeypatch):
    status = HealthStatus()
    monkeypatch.setattr(health_server, "_health_status", status)
    return status


@pytest.fixture
def start_server():
    servers = []

    def start(**services):
        server = HealthServer(port=0, host="127.0.0.1", **services)
        server.start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        server.stop()


def request(server, path, method="GET"):
    """Return (status, decoded JSON body) for a request against the server."""
    req = urllib.request.Request(
        f"http://127.0.0.1:{server.port}{path}",
        method=method,
        data=b"" if method == "POST" else None,
    )
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as e:
        return e.code, json.loads(e.read())


class TestHealthEndpoints:
    """Test GET /health and /ready."""

    def test_health(self, start_server):
        server = start_server()

        status, body = request(server, "/health")

        assert status == 200
        assert body["status"] == "healthy"
        assert body["last_sync"] is None

    def test_unhealthy_when_stopped(self, start_server, fresh_health_status):
        server = start_server()
        fresh_health_status.is_running = False

        status, body = request(server, "/health")

        assert status == 503
        assert body["status"] == "unhealthy"

    def test_not_ready_before_first_sync(self, start_server):
        server = start_server()

        status, body = request(server, "/ready")

        assert status == 503
        assert body["ready"] is False

    def test_ready_after_sync(self, start_server, fresh_health_status):
        server = start_server()
        now = datetime.now(UTC)
        fresh_health_status.record_sync(
            SyncReport(started_at=now, finished_at=now, accounts_synced=2, failures={"bob": "down"})
        )

        ready_status, _ = request(server, "/ready")
        _, health = request(server, "/health")

        assert ready_status == 200
        assert health["accounts_synced"] == 2
        assert health["last_error"] == "bob: down"

    def test_unknown_path(self, start_server):
        server = start_server()

        assert request(server, "/nope")[0] == 404
        assert request(server, "/nope", method="POST")[0] == 404


class TestSyncEndpoint:
    """Test POST /sync."""

    def test_sync_started(self, start_server):
        sync_service = MagicMock()
        server = start_server(sync_service=sync_service)

        status, body = request(server, "/sync", method="POST")

        assert status == 202
        assert body["status"] == "sync started"
        sync_service.trigger_sync_async.assert_called_once()

    def test_sync_already_running(self, start_server):
        sync_service = MagicMock()
        sync_service.trigger_sync_async.return_value = None
        server = start_server(sync_service=sync_service)

        assert request(server, "/sync", method="POST")[0] == 409

    def test_sync_not_wired(self, start_server):
        server = start_server()

        assert request(server, "/sync", method="POST")[0] == 503


class TestBackfillEndpoint:
    """Test POST /backfill/<username>."""

    def test_backfill(self, start_server):
        backfill_service = MagicMock()
        backfill_service.backfill_account.return_value = BackfillResult(
            username="alice",
            trades_processed=4,
            snapshots_created=2,
            total_realized_pnl=2.7,
            oldest_trade_time=datetime(2024, 1, 2, tzinfo=UTC),
        )
        server = start_server(backfill_service=backfill_service)

        status, body = request(server, "/backfill/alice", method="POST")

        assert status == 200
        assert body["snapshots_created"] == 2
        assert body["oldest_trade_time"] == "2024-01-02T00:00:00+00:00"
        assert body["newest_trade_time"] is None
        backfill_service.backfill_account.assert_called_once_with("alice")

    def test_backfill_unknown_account(self, start_server):
        backfill_service = MagicMock()
        backfill_service.backfill_account.side_effect = AccountNotFoundError("Account not found: ghost")
        server = start_server(backfill_service=backfill_service)

        status, body = request(server, "/backfill/ghost", method="POST")

        assert status == 404
        assert "ghost" in body["error"]

    def test_backfill_failure(self, start_server):
        backfill_service = MagicMock()
        backfill_service.backfill_account.side_effect = RuntimeError("disk full")
        server = start_server(backfill_service=backfill_service)

        status, body = request(server, "/backfill/alice", method="POST")

        assert status == 500
        assert body["error"] == "disk full"


class TestStatsEndpoint:
    """Test GET /accounts/<username>/stats."""

    def test_stats(self, start_server, temp_db, account, make_trade):
        temp_db.insert_trade(make_trade("BUY", 0.40, 10, 1704153600))
        temp_db.insert_trade(make_trade("SELL", 0.50, 10, 1704240000))
        server = start_server(db=temp_db)

        status, body = request(server, "/accounts/alice/stats")

        assert status == 200
        assert body["username"] == "alice"
        assert body["total_trades"] == 2
        assert body["realized_pnl"] == pytest.approx(1.0)

    def test_stats_unknown_account(self, start_server, temp_db):
        server = start_server(db=temp_db)

        assert request(server, "/accounts/ghost/stats")[0] == 404
