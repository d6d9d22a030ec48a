"""Shared test fixtures for Polymarket PnL Tracker."""
import os
import tempfile
from datetime import UTC, datetime
import pytest

from database import Database, Trade


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    db = Database(db_path)
    yield db

    # Cleanup
    db.close()
    if os.path.exists(db_path):
        os.unlink(db_path)


@pytest.fixture
def valid_wallet_address():
    """A valid Ethereum wallet address."""
    return "0x1234567890abcdef1234567890abcdef12345678"


@pytest.fixture
def second_wallet_address():
    """Another valid wallet address, for multi-address accounts."""
    return "0xabcdefabcdefabcdefabcdefabcdefabcdefabcd"


@pytest.fixture
def sample_config(valid_wallet_address, second_wallet_address):
    """Sample configuration for testing."""
    return {
        "accounts": {
            "alice": [valid_wallet_address],
        },
        "personas": {
            "whale": {
                "display_name": "The Whale",
                "image": "https://example.com/whale.png",
                "accounts": {"bob": [second_wallet_address]},
            },
        },
        "sync": {
            "interval_minutes": 5,
            "trade_limit": 100,
            "run_on_start": True,
        },
        "backfill": {"carry_forward": False},
        "api": {
            "max_retries": 1,
            "min_wait": 0,
            "max_wait": 0,
            "timeout": 5,
        },
        "database": {"path": "pnl_tracker.db"},
        "server": {"host": "127.0.0.1", "port": 8080},
        "reporting": {
            "log_level": "INFO",
            "webhook_url": "",
        },
    }


@pytest.fixture
def account(temp_db, valid_wallet_address):
    """An account with one address stored in the temp database."""
    return temp_db.create_account("alice", [valid_wallet_address])


@pytest.fixture
def make_trade(account, valid_wallet_address):
    """Factory for trades of the ``account`` fixture."""

    def _make(side, price, size, ts, condition_id="0xcond1", outcome="Yes", trade_id=None):
        if not isinstance(ts, datetime):
            ts = datetime.fromtimestamp(ts, tz=UTC)
        return Trade(
            account_id=account.id,
            address=valid_wallet_address,
            trade_id=trade_id or f"{side}-{ts.timestamp():.0f}-{price}-{size}",
            condition_id=condition_id,
            outcome=outcome,
            side=side,
            price=price,
            size=size,
            timestamp=ts,
        )

    return _make
