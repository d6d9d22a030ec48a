"""
Authoritative P&L calculation module.
Single source of truth for all realized P&L math in the tracker.

This module provides:
- FIFO cost-basis matching of sells against buy lots (CostBasisLedger)
- Realized P&L and win/loss counts over a trade history (compute_ledger)
- Official-vs-local P&L reconciliation (resolve_total_pnl)
- Small helpers shared by the sync and backfill paths

Both the live account stats and the historical backfill drive the same
CostBasisLedger, so the matching rule lives in exactly one place.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Deque, Dict, Iterable, List, NamedTuple, Optional, Tuple

logger = logging.getLogger("polymarket_pnl_tracker")

SIDE_BUY = "BUY"
SIDE_SELL = "SELL"

REQUIRED_TRADE_FIELDS = ("timestamp", "condition_id", "outcome", "side", "price", "size")

# Share sizes closer than this are equal; float sums of fractional sizes drift
SIZE_EPS = 1e-9


class PositionKey(NamedTuple):
    """A distinct tradable position: one outcome of one market."""

    condition_id: str
    outcome: str


@dataclass
class Lot:
    """Remaining unsold shares of one buy, at the price they were bought."""

    price: float
    size: float


@dataclass
class LedgerResult:
    """Aggregates produced by one full ledger pass."""

    realized_pnl: float = 0.0
    wins: int = 0
    losses: int = 0
    trades_processed: int = 0
    skipped: int = 0
    open_lots: Dict[PositionKey, List[Lot]] = field(default_factory=dict)

    @property
    def closes(self) -> int:
        return self.wins + self.losses

    @property
    def win_rate(self) -> float:
        return compute_win_rate(self.wins, self.losses)


def _field(trade: Any, name: str) -> Any:
    """Read a field from a trade given as a mapping or an object."""
    if isinstance(trade, dict):
        return trade.get(name)
    return getattr(trade, name, None)


def is_complete_trade(trade: Any) -> bool:
    """Check that a trade carries every field the ledger needs.

    Empty strings count as missing, zero price or size does not.
    """
    for name in REQUIRED_TRADE_FIELDS:
        value = _field(trade, name)
        if value is None or value == "":
            return False
    return True


def compute_trade_value(price: Optional[float], size: Optional[float]) -> Optional[float]:
    """USD value of a trade (price x size), or None when either side is unknown."""
    if price is None or size is None:
        return None
    return float(price) * float(size)


def compute_win_rate(wins: int, losses: int) -> float:
    """Fraction of profitable closes, 0.0 when nothing has been closed."""
    total = wins + losses
    if total <= 0:
        return 0.0
    return wins / total


def resolve_total_pnl(
    official_pnl: Optional[float],
    unrealized_pnl: float,
    fifo_realized_pnl: float,
) -> Tuple[float, float]:
    """
    Combine realized and unrealized P&L into the headline figures.

    When an official lifetime P&L is known it is authoritative for the total,
    and realized P&L is back-derived from it. Otherwise the FIFO realized
    figure is added to the upstream unrealized total.

    Args:
        official_pnl: Externally reported lifetime P&L, or None
        unrealized_pnl: Sum of unrealized P&L over open positions
        fifo_realized_pnl: Realized P&L from the local ledger

    Returns:
        (total_pnl, realized_pnl)
    """
    if official_pnl is not None:
        total = float(official_pnl)
        return total, total - unrealized_pnl
    return fifo_realized_pnl + unrealized_pnl, fifo_realized_pnl


def day_bucket(ts: datetime) -> datetime:
    """Truncate a timestamp to midnight UTC of its day."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    ts = ts.astimezone(UTC)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


class CostBasisLedger:
    """FIFO cost-basis ledger over a chronological trade stream.

    One queue of lots is kept per (condition_id, outcome). Buys append to the
    tail, sells consume from the head. Shares sold beyond the tracked
    inventory (bought before tracking started) are realized at zero cost.

    The ledger is transient: build one per pass and drop it afterwards.
    """

    def __init__(self) -> None:
        self._lots: Dict[PositionKey, Deque[Lot]] = {}
        self.realized_pnl = 0.0
        self.wins = 0
        self.losses = 0
        self.trades_processed = 0
        self.skipped = 0

    def apply(self, trade: Any) -> Optional[float]:
        """Feed one trade into the ledger.

        Returns:
            Realized P&L contributed by a SELL, 0.0 for a BUY, or None when
            the trade was skipped as incomplete.
        """
        if not is_complete_trade(trade):
            self.skipped += 1
            logger.debug("Skipping incomplete trade %s", _field(trade, "id"))
            return None

        side = str(_field(trade, "side")).upper()
        key = PositionKey(str(_field(trade, "condition_id")), str(_field(trade, "outcome")))
        price = float(_field(trade, "price"))
        size = float(_field(trade, "size"))

        if side == SIDE_BUY:
            self._lots.setdefault(key, deque()).append(Lot(price=price, size=size))
            self.trades_processed += 1
            return 0.0
        if side == SIDE_SELL:
            realized = self._match_sell(key, price, size)
            self.realized_pnl += realized
            self.trades_processed += 1
            return realized

        self.skipped += 1
        logger.debug("Skipping trade %s with unknown side %r", _field(trade, "id"), side)
        return None

    def _match_sell(self, key: PositionKey, sell_price: float, sell_size: float) -> float:
        lots = self._lots.get(key)
        realized = 0.0
        remaining = sell_size

        while remaining > SIZE_EPS and lots:
            head = lots[0]
            if head.size <= remaining + SIZE_EPS:
                matched = head.size
                lots.popleft()
            else:
                matched = remaining
                head.size -= remaining
            remaining -= matched
            if matched <= SIZE_EPS:
                continue
            leg = (sell_price - head.price) * matched
            realized += leg
            self._record_close(leg)

        if remaining > SIZE_EPS:
            # No recorded cost basis for these shares
            realized += sell_price * remaining

        return realized

    def _record_close(self, leg: float) -> None:
        if leg > 0:
            self.wins += 1
        elif leg < 0:
            self.losses += 1

    def open_lots(self) -> Dict[PositionKey, List[Lot]]:
        """Copy of the remaining inventory, omitting exhausted keys."""
        return {
            key: [Lot(price=lot.price, size=lot.size) for lot in lots]
            for key, lots in self._lots.items()
            if lots
        }

    def result(self) -> LedgerResult:
        return LedgerResult(
            realized_pnl=self.realized_pnl,
            wins=self.wins,
            losses=self.losses,
            trades_processed=self.trades_processed,
            skipped=self.skipped,
            open_lots=self.open_lots(),
        )


def compute_ledger(trades: Iterable[Any]) -> LedgerResult:
    """
    Run a full FIFO pass over a chronologically ordered trade history.

    Args:
        trades: Trades (objects or dicts) sorted by timestamp ascending

    Returns:
        LedgerResult with realized P&L, win/loss counts and open inventory
    """
    ledger = CostBasisLedger()
    for trade in trades:
        ledger.apply(trade)
    return ledger.result()


def open_inventory(result: LedgerResult) -> Dict[PositionKey, Dict[str, float]]:
    """Summarize remaining lots per position as shares, cost basis and average price."""
    summary: Dict[PositionKey, Dict[str, float]] = {}
    for key, lots in result.open_lots.items():
        shares = sum(lot.size for lot in lots)
        cost_basis = sum(lot.size * lot.price for lot in lots)
        summary[key] = {
            "shares": shares,
            "cost_basis": cost_basis,
            "avg_price": cost_basis / shares if shares > 0 else 0.0,
        }
    return summary
