"""Rebuild an account's daily P&L history from its stored trades."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from database import Account, Database, PnlSnapshot
from pnl import SIDE_SELL, CostBasisLedger, day_bucket
from utils import log_with_context

logger = logging.getLogger("polymarket_pnl_tracker")


@dataclass
class BackfillResult:
    username: str
    trades_processed: int = 0
    snapshots_created: int = 0
    total_realized_pnl: float = 0.0
    oldest_trade_time: Optional[datetime] = None
    newest_trade_time: Optional[datetime] = None


class BackfillService:
    """Replays trade history through the cost-basis ledger.

    One snapshot is produced per UTC day that contains a sell, holding the
    cumulative realized P&L after the last sell of that day. With
    ``carry_forward`` every day between the first and last trade gets a
    snapshot. The output depends only on the stored trades.
    """

    def __init__(self, db: Database, carry_forward: bool = False, notifier=None):
        self.db = db
        self.carry_forward = carry_forward
        self.notifier = notifier

    def backfill_account(self, username: str) -> BackfillResult:
        """
        Rebuild the snapshot series of one account.

        Args:
            username: Account to rebuild

        Returns:
            BackfillResult describing what was written

        Raises:
            AccountNotFoundError: If the username is unknown
            PersistenceError: If the snapshots could not be replaced
        """
        account = self.db.require_account(username)
        log_with_context(logger, logging.INFO, "Starting backfill", username=username)

        trades = self.db.get_trades_chronological(account.id)
        if not trades:
            logger.info("No trades stored for %s, leaving snapshots untouched", username)
            return BackfillResult(username=username)

        ledger = CostBasisLedger()
        daily_realized: Dict[datetime, float] = {}
        oldest: Optional[datetime] = None
        newest: Optional[datetime] = None

        for trade in trades:
            realized = ledger.apply(trade)
            if realized is None:
                continue
            ts = trade.timestamp
            if oldest is None or ts < oldest:
                oldest = ts
            if newest is None or ts > newest:
                newest = ts
            if trade.side.upper() == SIDE_SELL:
                # Later sells on the same day overwrite earlier ones
                daily_realized[day_bucket(ts)] = ledger.realized_pnl

        snapshots = self._build_snapshots(account, daily_realized, oldest, newest)
        created = self.db.replace_snapshots(account.id, snapshots)

        result = BackfillResult(
            username=username,
            trades_processed=len(trades),
            snapshots_created=created,
            total_realized_pnl=ledger.realized_pnl,
            oldest_trade_time=oldest,
            newest_trade_time=newest,
        )
        log_with_context(
            logger, logging.INFO, "Backfill completed",
            username=username,
            trades_processed=result.trades_processed,
            snapshots_created=result.snapshots_created,
            total_realized=round(result.total_realized_pnl, 2),
            skipped=ledger.skipped,
        )
        return result

    def _build_snapshots(
        self,
        account: Account,
        daily_realized: Dict[datetime, float],
        oldest: Optional[datetime],
        newest: Optional[datetime],
    ) -> List[PnlSnapshot]:
        if not self.carry_forward or oldest is None or newest is None:
            days = sorted(daily_realized.items())
        else:
            days = []
            cumulative = 0.0
            day = day_bucket(oldest)
            last_day = day_bucket(newest)
            while day <= last_day:
                cumulative = daily_realized.get(day, cumulative)
                days.append((day, cumulative))
                day += timedelta(days=1)

        return [
            PnlSnapshot(
                account_id=account.id,
                timestamp=day,
                total_pnl=value,
                realized_pnl=value,
                unrealized_pnl=0.0,
            )
            for day, value in days
        ]

    def backfill_all(self) -> List[BackfillResult]:
        """Backfill every account; a failing account is logged and skipped."""
        results = []
        for account in self.db.get_accounts():
            try:
                results.append(self.backfill_account(account.username))
            except Exception:
                logger.exception("Backfill failed for %s", account.username)
        if self.notifier is not None and results:
            self.notifier.send_backfill_summary(results)
        return results
