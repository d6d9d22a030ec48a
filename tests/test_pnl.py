"""Tests for authoritative P&L module."""
from datetime import UTC, datetime, timedelta, timezone

import pytest
from pnl import (
    CostBasisLedger,
    Lot,
    PositionKey,
    compute_ledger,
    compute_trade_value,
    compute_win_rate,
    day_bucket,
    is_complete_trade,
    open_inventory,
    resolve_total_pnl,
)

T0 = datetime(2024, 1, 2, 12, 0, tzinfo=UTC)


def trade(side, price, size, minutes=0, condition_id="0xc1", outcome="Yes"):
    return {
        "id": f"{side}-{minutes}",
        "timestamp": T0 + timedelta(minutes=minutes),
        "condition_id": condition_id,
        "outcome": outcome,
        "side": side,
        "price": price,
        "size": size,
    }


class TestFifoMatching:
    """Test FIFO matching of sells against buy lots."""

    def test_sell_spans_two_lots(self):
        """10 @ 0.40 and 5 @ 0.60 bought, 12 sold @ 0.70.
        10 x 0.30 + 2 x 0.10 = 3.20, leaving 3 @ 0.60.
        """
        result = compute_ledger([
            trade("BUY", 0.40, 10, 0),
            trade("BUY", 0.60, 5, 1),
            trade("SELL", 0.70, 12, 2),
        ])

        assert result.realized_pnl == pytest.approx(3.20)
        assert result.wins == 2
        assert result.losses == 0
        assert result.trades_processed == 3
        lots = result.open_lots[PositionKey("0xc1", "Yes")]
        assert len(lots) == 1
        assert lots[0].price == pytest.approx(0.60)
        assert lots[0].size == pytest.approx(3)

    def test_partial_lot_consumption(self):
        """A sell smaller than the head lot shrinks it in place."""
        ledger = CostBasisLedger()
        ledger.apply(trade("BUY", 0.50, 10, 0))

        realized = ledger.apply(trade("SELL", 0.45, 4, 1))

        assert realized == pytest.approx(-0.20)
        assert ledger.losses == 1
        assert ledger.open_lots()[PositionKey("0xc1", "Yes")] == [Lot(price=0.50, size=6)]

    def test_exact_lot_consumption_drops_key(self):
        """Selling exactly the held inventory leaves nothing open."""
        result = compute_ledger([
            trade("BUY", 0.20, 5, 0),
            trade("SELL", 0.30, 5, 1),
        ])

        assert result.realized_pnl == pytest.approx(0.50)
        assert result.open_lots == {}

    def test_unmatched_sell_realized_at_zero_cost(self):
        """Shares sold without a recorded buy count as pure proceeds."""
        result = compute_ledger([trade("SELL", 0.80, 10, 0)])

        assert result.realized_pnl == pytest.approx(8.0)
        # No matched leg, so no win or loss
        assert result.wins == 0
        assert result.losses == 0

    def test_oversell_matches_then_uses_zero_cost(self):
        """Inventory is consumed first, the remainder realizes at zero cost."""
        result = compute_ledger([
            trade("BUY", 0.50, 4, 0),
            trade("SELL", 0.40, 6, 1),
        ])

        # 4 x -0.10 + 2 x 0.40
        assert result.realized_pnl == pytest.approx(0.40)
        assert result.wins == 0
        assert result.losses == 1

    def test_break_even_leg_is_neither_win_nor_loss(self):
        result = compute_ledger([
            trade("BUY", 0.50, 4, 0),
            trade("SELL", 0.50, 4, 1),
        ])

        assert result.realized_pnl == pytest.approx(0.0)
        assert result.closes == 0

    def test_positions_are_matched_independently(self):
        """Outcomes and markets keep separate lot queues."""
        result = compute_ledger([
            trade("BUY", 0.30, 10, 0, outcome="Yes"),
            trade("BUY", 0.60, 10, 1, outcome="No"),
            trade("BUY", 0.10, 10, 2, condition_id="0xc2"),
            trade("SELL", 0.50, 10, 3, outcome="No"),
        ])

        assert result.realized_pnl == pytest.approx(-1.0)
        assert set(result.open_lots) == {
            PositionKey("0xc1", "Yes"),
            PositionKey("0xc2", "Yes"),
        }

    def test_sell_on_other_outcome_does_not_consume_lots(self):
        result = compute_ledger([
            trade("BUY", 0.30, 10, 0, outcome="Yes"),
            trade("SELL", 0.50, 10, 1, outcome="No"),
        ])

        assert result.realized_pnl == pytest.approx(5.0)
        assert result.open_lots[PositionKey("0xc1", "Yes")][0].size == 10

    def test_fractional_sizes_leave_no_dust_lot(self):
        """0.1 + 0.2 shares sold as 0.3 closes both lots completely.
        A later round trip then counts as exactly one win.
        """
        ledger = CostBasisLedger()
        for t in (
            trade("BUY", 0.5, 0.1, 0),
            trade("BUY", 0.5, 0.2, 1),
            trade("SELL", 0.5, 0.3, 2),
        ):
            ledger.apply(t)

        assert ledger.open_lots() == {}

        ledger.apply(trade("BUY", 0.90, 5, 3))
        realized = ledger.apply(trade("SELL", 0.95, 5, 4))

        assert (ledger.wins, ledger.losses) == (1, 0)
        assert realized == pytest.approx(0.25)
        assert ledger.realized_pnl == pytest.approx(0.25)

    def test_sell_slightly_above_inventory_has_no_remainder(self):
        """Rounding overshoot is not realized as zero-cost proceeds."""
        result = compute_ledger([
            trade("BUY", 0.40, 0.1, 0),
            trade("BUY", 0.40, 0.2, 1),
            trade("SELL", 0.50, 0.1 + 0.2, 2),
        ])

        assert result.realized_pnl == pytest.approx(0.03)
        assert result.wins == 2
        assert result.open_lots == {}

    def test_lowercase_side_accepted(self):
        result = compute_ledger([
            trade("buy", 0.40, 10, 0),
            trade("sell", 0.50, 10, 1),
        ])

        assert result.realized_pnl == pytest.approx(1.0)
        assert result.skipped == 0

    def test_accepts_objects(self, make_trade):
        """Stored Trade records feed the ledger the same way dicts do."""
        result = compute_ledger([
            make_trade("BUY", 0.40, 10, 1704153600),
            make_trade("SELL", 0.70, 10, 1704240000),
        ])

        assert result.realized_pnl == pytest.approx(3.0)


class TestSkippedTrades:
    """Test trades the ledger refuses to process."""

    def test_incomplete_trade_skipped(self):
        incomplete = trade("BUY", None, 10, 0)

        result = compute_ledger([incomplete, trade("SELL", 0.50, 10, 1)])

        assert result.skipped == 1
        assert result.trades_processed == 1
        assert result.realized_pnl == pytest.approx(5.0)

    def test_unknown_side_skipped(self):
        ledger = CostBasisLedger()

        assert ledger.apply(trade("MERGE", 0.50, 10, 0)) is None
        assert ledger.skipped == 1
        assert ledger.open_lots() == {}

    def test_zero_price_is_complete(self):
        """Zero is a real value, unlike a missing field."""
        assert is_complete_trade(trade("SELL", 0, 10, 0))

    def test_empty_string_is_missing(self):
        t = trade("BUY", 0.5, 10, 0)
        t["condition_id"] = ""
        assert not is_complete_trade(t)


class TestResolveTotalPnl:
    """Test official-vs-local P&L precedence."""

    def test_official_pnl_is_authoritative(self):
        total, realized = resolve_total_pnl(100.0, 30.0, 999.0)

        assert total == 100.0
        assert realized == 70.0

    def test_official_zero_still_wins(self):
        total, realized = resolve_total_pnl(0.0, 5.0, 12.0)

        assert total == 0.0
        assert realized == -5.0

    def test_falls_back_to_fifo(self):
        total, realized = resolve_total_pnl(None, 30.0, 12.5)

        assert total == 42.5
        assert realized == 12.5


class TestHelpers:
    """Test small shared helpers."""

    def test_trade_value(self):
        assert compute_trade_value(0.25, 40) == pytest.approx(10.0)

    def test_trade_value_unknown(self):
        assert compute_trade_value(None, 40) is None
        assert compute_trade_value(0.25, None) is None

    def test_win_rate(self):
        assert compute_win_rate(3, 1) == 0.75

    def test_win_rate_no_closes(self):
        assert compute_win_rate(0, 0) == 0.0

    def test_day_bucket_truncates(self):
        ts = datetime(2024, 3, 5, 23, 59, 59, 999, tzinfo=UTC)
        assert day_bucket(ts) == datetime(2024, 3, 5, tzinfo=UTC)

    def test_day_bucket_converts_to_utc(self):
        """A late-evening local time can fall on the next UTC day."""
        ts = datetime(2024, 3, 5, 22, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert day_bucket(ts) == datetime(2024, 3, 6, tzinfo=UTC)

    def test_day_bucket_naive_treated_as_utc(self):
        assert day_bucket(datetime(2024, 3, 5, 8, 30)) == datetime(2024, 3, 5, tzinfo=UTC)

    def test_open_inventory(self):
        result = compute_ledger([
            trade("BUY", 0.40, 10, 0),
            trade("BUY", 0.60, 10, 1),
            trade("SELL", 0.50, 5, 2),
        ])

        summary = open_inventory(result)[PositionKey("0xc1", "Yes")]

        assert summary["shares"] == pytest.approx(15)
        assert summary["cost_basis"] == pytest.approx(5 * 0.40 + 10 * 0.60)
        assert summary["avg_price"] == pytest.approx(8.0 / 15)
