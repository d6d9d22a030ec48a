"""Background HTTP server for health checks and manual operations."""
import json
import logging
import re
import threading
from datetime import UTC, datetime
from http.server import ThreadingHTTPServer, BaseHTTPRequestHandler
from typing import Optional

from database import AccountNotFoundError
from reconciler import compute_account_stats
from utils import to_iso

logger = logging.getLogger("polymarket_pnl_tracker")

BACKFILL_PATH = re.compile(r"^/backfill/(?P<username>[^/]+)$")
STATS_PATH = re.compile(r"^/accounts/(?P<username>[^/]+)/stats$")


class HealthStatus:
    """Tracks application health status."""

    def __init__(self):
        self.started_at: datetime = datetime.now(UTC)
        self.last_sync: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.is_running: bool = True
        self.accounts_synced: int = 0
        self.accounts_failed: int = 0
        self.trades_inserted: int = 0

    def record_sync(self, report) -> None:
        """Update health status from a finished sync cycle."""
        self.last_sync = report.finished_at or datetime.now(UTC)
        self.accounts_synced = report.accounts_synced
        self.accounts_failed = report.accounts_failed
        self.trades_inserted = report.trades_inserted
        if report.failures:
            self.last_error = "; ".join(f"{name}: {err}" for name, err in report.failures.items())

    def to_dict(self) -> dict:
        """Convert status to dictionary."""
        return {
            "status": "healthy" if self.is_running else "unhealthy",
            "started_at": to_iso(self.started_at),
            "last_sync": to_iso(self.last_sync),
            "uptime_seconds": (datetime.now(UTC) - self.started_at).total_seconds(),
            "accounts_synced": self.accounts_synced,
            "accounts_failed": self.accounts_failed,
            "trades_inserted": self.trades_inserted,
            "last_error": self.last_error,
        }


# Global health status instance
_health_status = HealthStatus()


def get_health_status() -> HealthStatus:
    """Get the global health status instance."""
    return _health_status


class HealthHandler(BaseHTTPRequestHandler):
    """HTTP request handler for health checks and manual triggers.

    Services are looked up on the owning server so one handler class can
    serve any wiring (or none, for a bare health endpoint).
    """

    def log_message(self, format: str, *args) -> None:
        """Override to use our logger."""
        logger.debug("HTTP: %s", format % args)

    def do_GET(self) -> None:
        """Handle GET requests."""
        if self.path == "/health" or self.path == "/":
            self._handle_health()
        elif self.path == "/ready":
            self._handle_ready()
        elif STATS_PATH.match(self.path):
            self._handle_stats(STATS_PATH.match(self.path).group("username"))
        else:
            self._send_not_found()

    def do_POST(self) -> None:
        """Handle POST requests."""
        if self.path == "/sync":
            self._handle_sync()
        elif BACKFILL_PATH.match(self.path):
            self._handle_backfill(BACKFILL_PATH.match(self.path).group("username"))
        else:
            self._send_not_found()

    def _handle_health(self) -> None:
        """Handle health check endpoint."""
        status = get_health_status()
        response = status.to_dict()

        if status.is_running:
            self._send_json(200, response)
        else:
            self._send_json(503, response)

    def _handle_ready(self) -> None:
        """Handle readiness check endpoint."""
        sync_service = getattr(self.server, "sync_service", None)
        ready = get_health_status().last_sync is not None
        if sync_service is not None:
            ready = ready or sync_service.is_ready

        if ready:
            self._send_json(200, {"ready": True})
        else:
            self._send_json(503, {"ready": False, "reason": "No sync completed yet"})

    def _handle_sync(self) -> None:
        sync_service = getattr(self.server, "sync_service", None)
        if sync_service is None:
            self._send_json(503, {"error": "Sync service not available"})
            return
        if sync_service.trigger_sync_async() is None:
            self._send_json(409, {"error": "Sync already in progress"})
            return
        self._send_json(202, {"status": "sync started"})

    def _handle_backfill(self, username: str) -> None:
        backfill_service = getattr(self.server, "backfill_service", None)
        if backfill_service is None:
            self._send_json(503, {"error": "Backfill service not available"})
            return
        try:
            result = backfill_service.backfill_account(username)
        except AccountNotFoundError as e:
            self._send_json(404, {"error": str(e)})
            return
        except Exception as e:
            logger.exception("Backfill for %s failed", username)
            self._send_json(500, {"error": str(e)})
            return
        self._send_json(200, {
            "username": result.username,
            "trades_processed": result.trades_processed,
            "snapshots_created": result.snapshots_created,
            "total_realized_pnl": result.total_realized_pnl,
            "oldest_trade_time": to_iso(result.oldest_trade_time),
            "newest_trade_time": to_iso(result.newest_trade_time),
        })

    def _handle_stats(self, username: str) -> None:
        db = getattr(self.server, "db", None)
        if db is None:
            self._send_json(503, {"error": "Database not available"})
            return
        try:
            stats = compute_account_stats(db, username)
        except AccountNotFoundError as e:
            self._send_json(404, {"error": str(e)})
            return
        self._send_json(200, stats.to_dict())

    def _send_json(self, status_code: int, data: dict) -> None:
        """Send JSON response."""
        body = json.dumps(data, default=str).encode()
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_not_found(self) -> None:
        """Send 404 response."""
        self._send_json(404, {"error": "Not found"})


class HealthServer:
    """Background HTTP server for health checks and manual operations."""

    def __init__(
        self,
        port: int = 8080,
        host: str = "0.0.0.0",
        sync_service=None,
        backfill_service=None,
        db=None,
    ):
        self.port = port
        self.host = host
        self.sync_service = sync_service
        self.backfill_service = backfill_service
        self.db = db
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the server in a background thread."""
        self._server = ThreadingHTTPServer((self.host, self.port), HealthHandler)
        self._server.daemon_threads = True
        self._server.sync_service = self.sync_service
        self._server.backfill_service = self.backfill_service
        self._server.db = self.db
        # Port 0 asks the OS for a free port
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        logger.info(f"Health server started on port {self.port}")

    def _run(self) -> None:
        """Run the server."""
        if self._server:
            self._server.serve_forever()

    def stop(self) -> None:
        """Stop the server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            logger.info("Health server stopped")

        get_health_status().is_running = False
