"""Position cache reconciliation and account-level P&L statistics."""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from database import Account, AccountNotFoundError, Database, Position
from pnl import compute_ledger, compute_win_rate, resolve_total_pnl
from utils import log_with_context, to_iso
from wallet_tracker import MarketPosition, UpstreamFetchError, WalletTracker

logger = logging.getLogger("polymarket_pnl_tracker")

LEADERBOARD_SORT_KEYS = (
    "total_pnl",
    "realized_pnl",
    "unrealized_pnl",
    "win_rate",
    "total_trades",
    "username",
)


@dataclass
class AccountStats:
    username: str
    addresses: List[str]
    profile_image: Optional[str]
    total_pnl: float
    realized_pnl: float
    unrealized_pnl: float
    open_positions: int
    total_trades: int
    win_rate: float
    wins: int
    losses: int
    last_synced: Optional[datetime] = None
    official_volume: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_synced"] = to_iso(self.last_synced)
        return data


@dataclass
class PersonaStats:
    slug: str
    display_name: str
    image: Optional[str]
    total_pnl: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    open_positions: int = 0
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    accounts: List[AccountStats] = field(default_factory=list)

    @property
    def win_rate(self) -> float:
        return compute_win_rate(self.wins, self.losses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "display_name": self.display_name,
            "image": self.image,
            "total_pnl": self.total_pnl,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "open_positions": self.open_positions,
            "total_trades": self.total_trades,
            "win_rate": self.win_rate,
            "wins": self.wins,
            "losses": self.losses,
            "accounts": [stats.to_dict() for stats in self.accounts],
        }


def _to_stored_position(account_id: int, position: MarketPosition) -> Position:
    return Position(
        account_id=account_id,
        address=position.address,
        condition_id=position.condition_id,
        asset=position.asset,
        outcome=position.outcome,
        market_title=position.market_title,
        market_slug=position.market_slug,
        size=position.size,
        avg_price=position.avg_price,
        current_price=position.current_price,
        initial_value=position.initial_value,
        current_value=position.current_value,
        unrealized_pnl=position.unrealized_pnl,
        unrealized_pnl_percent=position.unrealized_pnl_percent,
        realized_pnl=position.realized_pnl,
        end_date=position.end_date,
    )


class PositionReconciler:
    """Keeps the open-position cache of an account in step with upstream."""

    def __init__(self, db: Database, tracker: WalletTracker):
        self.db = db
        self.tracker = tracker

    def replace_positions(self, account: Account, addresses: List[str]) -> int:
        """Refresh an account's open positions from every one of its addresses.

        An address that fails to fetch is skipped. The collected positions
        replace the cached set in a single transaction.

        Args:
            account: Account whose cache is refreshed
            addresses: Wallet addresses of the account

        Returns:
            Number of positions now cached

        Raises:
            UpstreamFetchError: If every address failed; the old cache is kept
        """
        collected: List[Position] = []
        failures = 0
        for address in addresses:
            try:
                fetched = self.tracker.fetch_positions(address)
            except UpstreamFetchError as e:
                failures += 1
                logger.warning("Skipping positions for %s (%s): %s", account.username, address, e)
                continue
            collected.extend(_to_stored_position(account.id, position) for position in fetched)

        if addresses and failures == len(addresses):
            raise UpstreamFetchError(
                f"Could not fetch positions for any address of {account.username}"
            )

        written = self.db.replace_positions(account.id, collected)
        log_with_context(
            logger, logging.DEBUG, "Replaced position cache",
            username=account.username, positions=written, failed_addresses=failures,
        )
        return written


def _account_stats(db: Database, account: Account) -> AccountStats:
    aggregates = db.get_aggregate_stats(account.id)
    unrealized = aggregates["unrealized_pnl"]
    ledger = compute_ledger(db.get_trades_chronological(account.id))
    total, realized = resolve_total_pnl(account.official_pnl, unrealized, ledger.realized_pnl)
    return AccountStats(
        username=account.username,
        addresses=db.get_account_addresses(account.id),
        profile_image=account.profile_image,
        total_pnl=total,
        realized_pnl=realized,
        unrealized_pnl=unrealized,
        open_positions=aggregates["open_positions"],
        total_trades=aggregates["total_trades"],
        win_rate=ledger.win_rate,
        wins=ledger.wins,
        losses=ledger.losses,
        last_synced=account.last_synced,
        official_volume=account.official_volume,
    )


def compute_account_stats(db: Database, username: str) -> AccountStats:
    """
    Compute the current P&L picture of one account.

    The official lifetime P&L, when known, is authoritative for the total and
    realized P&L is derived from it; otherwise the FIFO ledger supplies the
    realized figure.

    Raises:
        AccountNotFoundError: If the username is unknown
    """
    return _account_stats(db, db.require_account(username))


def compute_persona_stats(db: Database, slug: str) -> PersonaStats:
    """Sum the stats of every account grouped under a persona.

    Raises:
        AccountNotFoundError: If the persona is unknown
    """
    persona = db.get_persona(slug)
    if persona is None:
        raise AccountNotFoundError(f"Persona not found: {slug}")

    stats = PersonaStats(slug=persona.slug, display_name=persona.display_name, image=persona.image)
    for account in db.get_persona_accounts(persona.id):
        account_stats = _account_stats(db, account)
        stats.accounts.append(account_stats)
        stats.total_pnl += account_stats.total_pnl
        stats.realized_pnl += account_stats.realized_pnl
        stats.unrealized_pnl += account_stats.unrealized_pnl
        stats.open_positions += account_stats.open_positions
        stats.total_trades += account_stats.total_trades
        stats.wins += account_stats.wins
        stats.losses += account_stats.losses
    return stats


def compute_leaderboard(
    db: Database,
    sort_by: str = "total_pnl",
    descending: bool = True,
) -> List[AccountStats]:
    """Stats for every account, sorted by one field."""
    if sort_by not in LEADERBOARD_SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {sort_by}")

    board: List[AccountStats] = []
    for account in db.get_accounts():
        try:
            board.append(_account_stats(db, account))
        except Exception:
            logger.exception("Failed to compute stats for %s", account.username)
    board.sort(key=lambda stats: getattr(stats, sort_by), reverse=descending)
    return board
