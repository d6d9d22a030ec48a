"""Tests for historical P&L backfill."""
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

from backfill import BackfillService
from database import AccountNotFoundError, PnlSnapshot

DAY_1 = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)
DAY_1_LATE = datetime(2024, 1, 2, 18, 0, tzinfo=UTC)
DAY_2 = datetime(2024, 1, 3, 12, 0, tzinfo=UTC)
DAY_4 = datetime(2024, 1, 5, 15, 0, tzinfo=UTC)


def insert(temp_db, trades):
    for trade in trades:
        temp_db.insert_trade(trade)


class TestBackfillAccount:
    """Test BackfillService.backfill_account()."""

    def test_one_snapshot_per_sell_day(self, temp_db, account, make_trade):
        insert(temp_db, [
            make_trade("BUY", 0.40, 10, DAY_1),
            make_trade("SELL", 0.50, 4, DAY_1_LATE),
            make_trade("BUY", 0.60, 5, DAY_2),
            make_trade("SELL", 0.70, 11, DAY_4),
        ])

        result = BackfillService(temp_db).backfill_account("alice")

        history = temp_db.get_pnl_history(account.id)
        # Day 2 only had a buy, so it has no snapshot
        assert [s.timestamp for s in history] == [
            datetime(2024, 1, 2, tzinfo=UTC),
            datetime(2024, 1, 5, tzinfo=UTC),
        ]
        # 4 x 0.10, then 6 x 0.30 + 5 x 0.10
        assert history[0].realized_pnl == pytest.approx(0.40)
        assert history[1].realized_pnl == pytest.approx(0.40 + 1.80 + 0.50)
        assert history[1].total_pnl == history[1].realized_pnl
        assert history[1].unrealized_pnl == 0.0
        assert result.trades_processed == 4
        assert result.snapshots_created == 2
        assert result.total_realized_pnl == pytest.approx(2.70)
        assert result.oldest_trade_time == DAY_1
        assert result.newest_trade_time == DAY_4

    def test_last_sell_of_day_wins(self, temp_db, account, make_trade):
        insert(temp_db, [
            make_trade("BUY", 0.40, 10, DAY_1),
            make_trade("SELL", 0.50, 5, datetime(2024, 1, 2, 10, 0, tzinfo=UTC)),
            make_trade("SELL", 0.30, 5, datetime(2024, 1, 2, 11, 0, tzinfo=UTC)),
        ])

        BackfillService(temp_db).backfill_account("alice")

        history = temp_db.get_pnl_history(account.id)
        assert len(history) == 1
        assert history[0].realized_pnl == pytest.approx(0.0)

    def test_carry_forward_fills_gaps(self, temp_db, account, make_trade):
        insert(temp_db, [
            make_trade("BUY", 0.40, 10, DAY_1),
            make_trade("SELL", 0.50, 4, DAY_1_LATE),
            make_trade("SELL", 0.70, 6, DAY_4),
        ])

        result = BackfillService(temp_db, carry_forward=True).backfill_account("alice")

        history = temp_db.get_pnl_history(account.id)
        assert [s.timestamp.day for s in history] == [2, 3, 4, 5]
        assert [round(s.realized_pnl, 2) for s in history] == [0.40, 0.40, 0.40, 2.20]
        assert result.snapshots_created == 4

    def test_rerun_is_idempotent(self, temp_db, account, make_trade):
        insert(temp_db, [
            make_trade("BUY", 0.40, 10, DAY_1),
            make_trade("SELL", 0.50, 10, DAY_2),
        ])
        service = BackfillService(temp_db)

        service.backfill_account("alice")
        first = temp_db.get_pnl_history(account.id)
        service.backfill_account("alice")
        second = temp_db.get_pnl_history(account.id)

        assert first == second

    def test_no_trades_leaves_snapshots(self, temp_db, account):
        existing = PnlSnapshot(account.id, DAY_1, 5.0, 5.0, 0.0)
        temp_db.insert_snapshot(existing)

        result = BackfillService(temp_db).backfill_account("alice")

        assert result.trades_processed == 0
        assert result.snapshots_created == 0
        assert temp_db.get_pnl_history(account.id) == [existing]

    def test_buys_only_clears_snapshots(self, temp_db, account, make_trade):
        temp_db.insert_snapshot(PnlSnapshot(account.id, DAY_1, 5.0, 5.0, 0.0))
        insert(temp_db, [make_trade("BUY", 0.40, 10, DAY_1)])

        result = BackfillService(temp_db).backfill_account("alice")

        assert result.snapshots_created == 0
        assert temp_db.get_pnl_history(account.id) == []

    def test_unknown_account(self, temp_db):
        with pytest.raises(AccountNotFoundError):
            BackfillService(temp_db).backfill_account("nobody")


class TestBackfillAll:
    """Test BackfillService.backfill_all()."""

    def test_backfills_every_account_and_notifies(self, temp_db, account, make_trade):
        temp_db.create_account("bob", [])
        insert(temp_db, [
            make_trade("BUY", 0.40, 10, DAY_1),
            make_trade("SELL", 0.50, 10, DAY_2),
        ])
        notifier = MagicMock()

        results = BackfillService(temp_db, notifier=notifier).backfill_all()

        assert [r.username for r in results] == ["alice", "bob"]
        assert results[0].snapshots_created == 1
        assert results[1].snapshots_created == 0
        notifier.send_backfill_summary.assert_called_once_with(results)

    def test_failing_account_is_skipped(self, temp_db, account):
        temp_db.create_account("bob", [])
        service = BackfillService(temp_db)
        original = service.backfill_account

        def flaky(username):
            if username == "alice":
                raise RuntimeError("disk on fire")
            return original(username)

        service.backfill_account = flaky

        results = service.backfill_all()

        assert [r.username for r in results] == ["bob"]
