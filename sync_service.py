"""Periodic and manual synchronization of tracked accounts."""
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional

from database import Account, Database, PnlSnapshot, Trade
from health_server import get_health_status
from pnl import is_complete_trade
from reconciler import PositionReconciler, compute_account_stats
from utils import log_with_context, to_iso
from wallet_tracker import UpstreamFetchError, WalletTracker

logger = logging.getLogger("polymarket_pnl_tracker")

DEFAULT_TRADE_LIMIT = 100


@dataclass
class SyncReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    accounts_synced: int = 0
    accounts_failed: int = 0
    trades_inserted: int = 0
    skipped: bool = False
    failures: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "accounts_synced": self.accounts_synced,
            "accounts_failed": self.accounts_failed,
            "trades_inserted": self.trades_inserted,
            "skipped": self.skipped,
            "failures": dict(self.failures),
        }


class SyncService:
    """Runs sync cycles over every configured account.

    Only one cycle runs at a time. A trigger that arrives while a cycle is
    in flight returns a report with ``skipped=True`` instead of starting a
    second, overlapping cycle.
    """

    def __init__(
        self,
        db: Database,
        tracker: WalletTracker,
        accounts: Dict[str, List[str]],
        interval_minutes: float = 5,
        trade_limit: int = DEFAULT_TRADE_LIMIT,
        notifier=None,
        personas: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.db = db
        self.tracker = tracker
        self.accounts = {name: [a.lower() for a in addrs] for name, addrs in accounts.items()}
        self.interval_seconds = float(interval_minutes) * 60
        self.trade_limit = trade_limit
        self.notifier = notifier
        self.personas = personas or {}
        self.reconciler = PositionReconciler(db, tracker)

        self._stop_event = threading.Event()
        self._sync_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SyncReport] = None

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    @property
    def is_ready(self) -> bool:
        """True once a full cycle has completed."""
        return self.last_report is not None

    def start(self, run_on_start: bool = True) -> None:
        """Create missing accounts, run an initial cycle and start the periodic loop."""
        logger.info("Starting sync service (%d accounts)", len(self.accounts))
        self._stop_event.clear()
        self.ensure_accounts()
        self.ensure_personas()
        if run_on_start:
            self.trigger_sync()
        self._thread = threading.Thread(target=self._run_loop, name="sync-loop", daemon=True)
        self._thread.start()
        logger.info("Sync loop running every %.0f seconds", self.interval_seconds)

    def stop(self, timeout: Optional[float] = 30) -> None:
        """Signal the loop to stop and wait for it to finish."""
        logger.info("Stopping sync service")
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.trigger_sync()
            except Exception:
                logger.exception("Scheduled sync failed")

    def trigger_sync(self) -> SyncReport:
        """Run one sync cycle now, unless one is already running."""
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping trigger")
            now = datetime.now(UTC)
            return SyncReport(started_at=now, finished_at=now, skipped=True)
        return self._run_locked_cycle()

    def trigger_sync_async(self) -> Optional[threading.Thread]:
        """Start one cycle on a background thread.

        The lock is taken here and released by the thread when its cycle ends.

        Returns:
            The started thread, or None when a cycle is already running
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping trigger")
            return None
        thread = threading.Thread(target=self._run_locked_cycle, name="manual-sync", daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._sync_lock.release()
            raise
        return thread

    def _run_locked_cycle(self) -> SyncReport:
        # Caller holds _sync_lock
        try:
            report = self.sync_all()
            self.last_report = report
            get_health_status().record_sync(report)
            return report
        finally:
            self._sync_lock.release()

    def ensure_accounts(self) -> None:
        """Create configured accounts on first sight and attach new addresses."""
        for username, addresses in self.accounts.items():
            self._ensure_account(username, addresses)

    def _ensure_account(self, username: str, addresses: List[str]) -> Account:
        account = self.db.get_account(username)
        if account is None:
            return self.db.create_account(username, addresses)
        for address in addresses:
            if self.db.add_address(account.id, address):
                logger.info("Added address %s to %s", address, username)
        return account

    def ensure_personas(self) -> None:
        """Create or update personas and link their accounts."""
        for slug, persona_config in self.personas.items():
            persona = self.db.upsert_persona(
                slug,
                persona_config.get("display_name") or slug,
                persona_config.get("image"),
            )
            for username, addresses in (persona_config.get("accounts") or {}).items():
                if isinstance(addresses, str):
                    addresses = [addresses]
                account = self._ensure_account(username, [a.lower() for a in addresses])
                if account.persona_id != persona.id:
                    self.db.set_account_persona(account.id, persona.id)

    def sync_all(self) -> SyncReport:
        """Sync every account in turn; one failing account never stops the rest."""
        report = SyncReport(started_at=datetime.now(UTC))
        logger.info("Syncing %d accounts", len(self.accounts))

        for username, addresses in self.accounts.items():
            if self._stop_event.is_set():
                logger.info("Stop requested, ending sync cycle early")
                break
            try:
                report.trades_inserted += self.sync_account(username, addresses)
                report.accounts_synced += 1
            except Exception as e:
                report.accounts_failed += 1
                report.failures[username] = str(e)
                logger.exception("Failed to sync account %s", username)
                if self.notifier is not None:
                    self.notifier.send_sync_failure_alert(username, str(e))

        report.finished_at = datetime.now(UTC)
        log_with_context(
            logger, logging.INFO, "Sync cycle completed",
            synced=report.accounts_synced,
            failed=report.accounts_failed,
            trades_inserted=report.trades_inserted,
        )
        return report

    def sync_account(self, username: str, addresses: List[str]) -> int:
        """
        Sync one account: profile, lifetime stats, positions, trades, snapshot.

        Args:
            username: Account username
            addresses: Wallet addresses belonging to the account

        Returns:
            Number of newly inserted trades

        Raises:
            UpstreamFetchError: If no address yielded positions
            PersistenceError: If a write to the store fails
        """
        log_with_context(logger, logging.INFO, "Syncing account", username=username, addresses=len(addresses))
        account = self._ensure_account(username, addresses)

        if addresses:
            self._sync_profile(account, addresses[0])

        positions = self.reconciler.replace_positions(account, addresses)

        inserted = 0
        fetched = 0
        for address in addresses:
            try:
                trades = self.tracker.fetch_trades(address, limit=self.trade_limit)
            except UpstreamFetchError as e:
                logger.error("Skipping trades for %s (%s): %s", username, address, e)
                continue
            fetched += len(trades)
            for market_trade in trades:
                if not is_complete_trade(market_trade):
                    logger.debug("Dropping incomplete trade %s", market_trade.trade_id)
                    continue
                trade = Trade(
                    account_id=account.id,
                    address=address,
                    trade_id=market_trade.trade_id,
                    condition_id=market_trade.condition_id,
                    outcome=market_trade.outcome,
                    side=market_trade.side,
                    price=market_trade.price,
                    size=market_trade.size,
                    timestamp=market_trade.timestamp,
                    market_title=market_trade.market_title,
                    market_slug=market_trade.market_slug,
                )
                if self.db.insert_trade(trade):
                    inserted += 1

        stats = compute_account_stats(self.db, username)
        now = datetime.now(UTC)
        self.db.insert_snapshot(PnlSnapshot(
            account_id=account.id,
            timestamp=now,
            total_pnl=stats.total_pnl,
            realized_pnl=stats.realized_pnl,
            unrealized_pnl=stats.unrealized_pnl,
        ))
        self.db.update_last_synced(account.id, now)

        log_with_context(
            logger, logging.INFO, "Account sync completed",
            username=username,
            positions=positions,
            trades_fetched=fetched,
            trades_inserted=inserted,
            total_pnl=round(stats.total_pnl, 2),
        )
        return inserted

    def _sync_profile(self, account: Account, address: str) -> None:
        # Profile and lifetime stats are best effort
        try:
            profile = self.tracker.fetch_profile(address)
        except UpstreamFetchError as e:
            logger.warning("Failed to fetch profile for %s: %s", account.username, e)
            return
        if profile is None:
            return

        if profile.image:
            self.db.update_profile_image(account.id, profile.image)
        if not profile.name:
            return

        try:
            lifetime = self.tracker.fetch_lifetime_stats(profile.name, address)
        except UpstreamFetchError as e:
            logger.warning("Failed to fetch lifetime stats for %s: %s", account.username, e)
            return
        if lifetime is not None:
            self.db.update_official_pnl(account.id, lifetime.total_pnl, lifetime.total_volume)
            log_with_context(
                logger, logging.INFO, "Updated official P&L",
                username=account.username,
                profile_name=profile.name,
                pnl=lifetime.total_pnl,
                volume=lifetime.total_volume,
            )
