"""SQLite store for accounts, positions, trade history and P&L snapshots."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Optional, List, Dict, Any, Iterable, Iterator
from dataclasses import dataclass

from pnl import compute_trade_value
from utils import parse_timestamp, to_iso

logger = logging.getLogger("polymarket_pnl_tracker")


class AccountNotFoundError(LookupError):
    """Raised when an account (or persona) is not known to the store."""
    pass


class PersistenceError(RuntimeError):
    """Raised when a write to the store fails."""
    pass


@dataclass
class Persona:
    id: int
    slug: str
    display_name: str
    image: Optional[str] = None


@dataclass
class Account:
    id: int
    username: str
    created_at: Optional[datetime] = None
    last_synced: Optional[datetime] = None
    profile_image: Optional[str] = None
    official_pnl: Optional[float] = None
    official_volume: Optional[float] = None
    persona_id: Optional[int] = None


@dataclass
class Position:
    account_id: int
    address: str
    condition_id: str
    asset: str
    outcome: str = ""
    market_title: str = ""
    market_slug: str = ""
    size: Optional[float] = None
    avg_price: Optional[float] = None
    current_price: Optional[float] = None
    initial_value: Optional[float] = None
    current_value: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    unrealized_pnl_percent: Optional[float] = None
    realized_pnl: Optional[float] = None
    end_date: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass
class Trade:
    account_id: int
    address: str
    trade_id: str
    condition_id: str
    outcome: str
    side: str
    price: Optional[float]
    size: Optional[float]
    timestamp: Optional[datetime]
    market_title: str = ""
    market_slug: str = ""
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def value(self) -> Optional[float]:
        return compute_trade_value(self.price, self.size)


@dataclass
class PnlSnapshot:
    account_id: int
    timestamp: datetime
    total_pnl: Optional[float]
    realized_pnl: Optional[float]
    unrealized_pnl: Optional[float]


@dataclass
class Result:
    """A closed-out market: realized P&L summed over its cached positions."""
    condition_id: str
    market_title: str
    market_slug: str
    outcome: str
    realized_pnl: float
    initial_value: Optional[float]
    end_date: Optional[str]
    resolved_at: Optional[datetime]


POSITION_COLUMNS = (
    "account_id", "address", "condition_id", "asset", "outcome", "market_title",
    "market_slug", "size", "avg_price", "current_price", "initial_value",
    "current_value", "unrealized_pnl", "unrealized_pnl_percent", "realized_pnl",
    "end_date", "updated_at",
)

UPSERT_POSITION_SQL = f"""
    INSERT INTO positions ({", ".join(POSITION_COLUMNS)})
    VALUES ({", ".join("?" for _ in POSITION_COLUMNS)})
    ON CONFLICT(account_id, address, condition_id, asset) DO UPDATE SET
        outcome = excluded.outcome,
        market_title = excluded.market_title,
        market_slug = excluded.market_slug,
        size = excluded.size,
        avg_price = excluded.avg_price,
        current_price = excluded.current_price,
        initial_value = excluded.initial_value,
        current_value = excluded.current_value,
        unrealized_pnl = excluded.unrealized_pnl,
        unrealized_pnl_percent = excluded.unrealized_pnl_percent,
        realized_pnl = excluded.realized_pnl,
        end_date = excluded.end_date,
        updated_at = excluded.updated_at
"""

INSERT_SNAPSHOT_SQL = """
    INSERT INTO pnl_snapshots (account_id, timestamp, total_pnl, realized_pnl, unrealized_pnl)
    VALUES (?, ?, ?, ?, ?)
"""


def _now_iso() -> str:
    return to_iso(datetime.now(UTC))


def _position_params(account_id: int, position: Any) -> tuple:
    updated_at = getattr(position, "updated_at", None) or datetime.now(UTC)
    return (
        account_id,
        position.address.lower(),
        position.condition_id,
        position.asset,
        position.outcome,
        position.market_title,
        position.market_slug,
        position.size,
        position.avg_price,
        position.current_price,
        position.initial_value,
        position.current_value,
        position.unrealized_pnl,
        position.unrealized_pnl_percent,
        position.realized_pnl,
        position.end_date,
        to_iso(updated_at),
    )


def _snapshot_params(snapshot: PnlSnapshot) -> tuple:
    return (
        snapshot.account_id,
        to_iso(snapshot.timestamp),
        snapshot.total_pnl,
        snapshot.realized_pnl,
        snapshot.unrealized_pnl,
    )


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        username=row["username"],
        created_at=parse_timestamp(row["created_at"]),
        last_synced=parse_timestamp(row["last_synced"]),
        profile_image=row["profile_image"],
        official_pnl=row["official_pnl"],
        official_volume=row["official_volume"],
        persona_id=row["persona_id"],
    )


def _row_to_position(row: sqlite3.Row) -> Position:
    values = {name: row[name] for name in POSITION_COLUMNS}
    values["updated_at"] = parse_timestamp(values["updated_at"])
    return Position(**values)


def _row_to_trade(row: sqlite3.Row) -> Trade:
    return Trade(
        id=row["id"],
        account_id=row["account_id"],
        address=row["address"],
        trade_id=row["trade_id"] or "",
        condition_id=row["condition_id"],
        outcome=row["outcome"],
        side=row["side"],
        price=row["price"],
        size=row["size"],
        timestamp=parse_timestamp(row["timestamp"]),
        market_title=row["market_title"] or "",
        market_slug=row["market_slug"] or "",
        created_at=parse_timestamp(row["created_at"]),
    )


def _row_to_snapshot(row: sqlite3.Row) -> PnlSnapshot:
    return PnlSnapshot(
        account_id=row["account_id"],
        timestamp=parse_timestamp(row["timestamp"]),
        total_pnl=row["total_pnl"],
        realized_pnl=row["realized_pnl"],
        unrealized_pnl=row["unrealized_pnl"],
    )


class Database:
    """Thread-safe SQLite store for the P&L tracker.

    Each thread gets its own connection; writes are serialized through a
    process-wide lock. Multi-row replacements run in a single transaction.
    """

    def __init__(self, db_path: str = "pnl_tracker.db"):
        self.db_path = db_path
        self._local = threading.local()
        self._lock = threading.Lock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        return self._local.conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS personas (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slug TEXT NOT NULL UNIQUE,
                display_name TEXT NOT NULL,
                image TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                last_synced TEXT,
                profile_image TEXT
            )
        """)
        # Columns added after the first release
        for column, ddl in (
            ("official_pnl", "ALTER TABLE accounts ADD COLUMN official_pnl REAL"),
            ("official_volume", "ALTER TABLE accounts ADD COLUMN official_volume REAL"),
            ("persona_id", "ALTER TABLE accounts ADD COLUMN persona_id INTEGER REFERENCES personas(id)"),
        ):
            try:
                conn.execute(ddl)
            except sqlite3.OperationalError:
                pass  # Column already exists

        conn.execute("""
            CREATE TABLE IF NOT EXISTS addresses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id),
                address TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(account_id, address)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id),
                address TEXT NOT NULL,
                condition_id TEXT NOT NULL,
                asset TEXT NOT NULL,
                outcome TEXT,
                market_title TEXT,
                market_slug TEXT,
                size REAL,
                avg_price REAL,
                current_price REAL,
                initial_value REAL,
                current_value REAL,
                unrealized_pnl REAL,
                unrealized_pnl_percent REAL,
                realized_pnl REAL,
                end_date TEXT,
                updated_at TEXT NOT NULL,
                UNIQUE(account_id, address, condition_id, asset)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id),
                address TEXT NOT NULL,
                trade_id TEXT,
                condition_id TEXT NOT NULL,
                market_title TEXT,
                market_slug TEXT,
                outcome TEXT NOT NULL,
                side TEXT NOT NULL,
                price REAL NOT NULL,
                size REAL NOT NULL,
                value REAL,
                timestamp TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE(account_id, condition_id, timestamp, side, size, price)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS pnl_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL REFERENCES accounts(id),
                timestamp TEXT NOT NULL,
                total_pnl REAL,
                realized_pnl REAL,
                unrealized_pnl REAL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_addresses_account ON addresses(account_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_account ON positions(account_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_account_timestamp ON trades(account_id, timestamp)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_account_timestamp ON pnl_snapshots(account_id, timestamp)")
        conn.commit()

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if hasattr(self._local, 'conn') and self._local.conn is not None:
                self._local.conn.close()
                self._local.conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction: commit on success, roll back on error."""
        with self._lock:
            conn = self._get_conn()
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise PersistenceError(f"Database write failed: {e}") from e

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        conn = self._get_conn()
        conn.row_factory = sqlite3.Row
        try:
            return conn.execute(sql, tuple(params)).fetchall()
        finally:
            conn.row_factory = None

    # Accounts

    def create_account(
        self,
        username: str,
        addresses: Iterable[str],
        persona_id: Optional[int] = None,
    ) -> Account:
        """Create an account together with its wallet addresses."""
        now = _now_iso()
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO accounts (username, created_at, persona_id) VALUES (?, ?, ?)",
                (username, now, persona_id),
            )
            account_id = cursor.lastrowid
            for address in addresses:
                conn.execute(
                    "INSERT OR IGNORE INTO addresses (account_id, address, created_at) VALUES (?, ?, ?)",
                    (account_id, address.lower(), now),
                )
        logger.info("Created account %s", username)
        return self.require_account(username)

    def get_account(self, username: str) -> Optional[Account]:
        rows = self._query("SELECT * FROM accounts WHERE username = ?", (username,))
        return _row_to_account(rows[0]) if rows else None

    def get_account_by_id(self, account_id: int) -> Optional[Account]:
        rows = self._query("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return _row_to_account(rows[0]) if rows else None

    def require_account(self, username: str) -> Account:
        """Look up an account by username.

        Raises:
            AccountNotFoundError: If no such account exists
        """
        account = self.get_account(username)
        if account is None:
            raise AccountNotFoundError(f"Account not found: {username}")
        return account

    def get_accounts(self) -> List[Account]:
        rows = self._query("SELECT * FROM accounts ORDER BY username ASC")
        return [_row_to_account(row) for row in rows]

    def get_account_addresses(self, account_id: int) -> List[str]:
        rows = self._query(
            "SELECT address FROM addresses WHERE account_id = ? ORDER BY id ASC",
            (account_id,),
        )
        return [row["address"] for row in rows]

    def add_address(self, account_id: int, address: str) -> bool:
        """Attach a wallet address to an account. Returns False if already present."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO addresses (account_id, address, created_at) VALUES (?, ?, ?)",
                (account_id, address.lower(), _now_iso()),
            )
            return cursor.rowcount > 0

    def update_last_synced(self, account_id: int, synced_at: Optional[datetime] = None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_synced = ? WHERE id = ?",
                (to_iso(synced_at or datetime.now(UTC)), account_id),
            )

    def update_profile_image(self, account_id: int, image: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET profile_image = ? WHERE id = ?",
                (image, account_id),
            )

    def update_official_pnl(
        self,
        account_id: int,
        official_pnl: Optional[float],
        official_volume: Optional[float] = None,
    ) -> None:
        """Store the externally reported lifetime P&L and volume."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET official_pnl = ?, official_volume = ? WHERE id = ?",
                (official_pnl, official_volume, account_id),
            )

    def set_account_persona(self, account_id: int, persona_id: Optional[int]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE accounts SET persona_id = ? WHERE id = ?",
                (persona_id, account_id),
            )

    # Personas

    def upsert_persona(self, slug: str, display_name: str, image: Optional[str] = None) -> Persona:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO personas (slug, display_name, image, created_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(slug) DO UPDATE SET
                       display_name = excluded.display_name,
                       image = excluded.image""",
                (slug, display_name, image, _now_iso()),
            )
        persona = self.get_persona(slug)
        if persona is None:
            raise PersistenceError(f"Persona {slug} missing after upsert")
        return persona

    def get_persona(self, slug: str) -> Optional[Persona]:
        rows = self._query("SELECT id, slug, display_name, image FROM personas WHERE slug = ?", (slug,))
        return Persona(**dict(rows[0])) if rows else None

    def get_personas(self) -> List[Persona]:
        rows = self._query("SELECT id, slug, display_name, image FROM personas ORDER BY slug ASC")
        return [Persona(**dict(row)) for row in rows]

    def get_persona_accounts(self, persona_id: int) -> List[Account]:
        rows = self._query(
            "SELECT * FROM accounts WHERE persona_id = ? ORDER BY username ASC",
            (persona_id,),
        )
        return [_row_to_account(row) for row in rows]

    # Positions

    def upsert_position(self, account_id: int, position: Any) -> None:
        """Insert or update one position keyed on (address, condition_id, asset)."""
        with self._transaction() as conn:
            conn.execute(UPSERT_POSITION_SQL, _position_params(account_id, position))

    def delete_positions(self, account_id: int) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM positions WHERE account_id = ?", (account_id,))
            return cursor.rowcount

    def replace_positions(self, account_id: int, positions: Iterable[Any]) -> int:
        """Replace an account's whole position cache in one transaction.

        Returns:
            Number of positions written
        """
        rows = [_position_params(account_id, position) for position in positions]
        with self._transaction() as conn:
            conn.execute("DELETE FROM positions WHERE account_id = ?", (account_id,))
            conn.executemany(UPSERT_POSITION_SQL, rows)
        return len(rows)

    def get_positions(self, account_id: int) -> List[Position]:
        rows = self._query(
            f"SELECT {', '.join(POSITION_COLUMNS)} FROM positions "
            "WHERE account_id = ? ORDER BY current_value DESC, id ASC",
            (account_id,),
        )
        return [_row_to_position(row) for row in rows]

    # Trades

    def insert_trade(self, trade: Trade) -> bool:
        """Insert a trade, ignoring duplicates of its natural key.

        Returns:
            True if a new row was written, False for a duplicate
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """INSERT INTO trades
                   (account_id, address, trade_id, condition_id, market_title, market_slug,
                    outcome, side, price, size, value, timestamp, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(account_id, condition_id, timestamp, side, size, price) DO NOTHING""",
                (
                    trade.account_id,
                    trade.address.lower(),
                    trade.trade_id,
                    trade.condition_id,
                    trade.market_title,
                    trade.market_slug,
                    trade.outcome,
                    trade.side.upper(),
                    trade.price,
                    trade.size,
                    trade.value,
                    to_iso(trade.timestamp),
                    _now_iso(),
                ),
            )
            return cursor.rowcount > 0

    def get_trades_chronological(self, account_id: int) -> List[Trade]:
        """All trades of an account, oldest first."""
        rows = self._query(
            "SELECT * FROM trades WHERE account_id = ? ORDER BY timestamp ASC, id ASC",
            (account_id,),
        )
        return [_row_to_trade(row) for row in rows]

    def get_recent_trades(self, account_id: int, limit: int = 50) -> List[Trade]:
        rows = self._query(
            "SELECT * FROM trades WHERE account_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
            (account_id, limit),
        )
        return [_row_to_trade(row) for row in rows]

    def get_results(self, account_id: int, limit: int = 50, offset: int = 0) -> List[Result]:
        """Markets with realized P&L, one row per condition, most recent first.

        A position counts once upstream reports a realized P&L for it, which
        happens after an exit or once the market has resolved.
        """
        rows = self._query(
            """SELECT condition_id,
                      MAX(market_title) AS market_title,
                      MAX(market_slug) AS market_slug,
                      MAX(outcome) AS outcome,
                      COALESCE(SUM(realized_pnl), 0) AS realized_pnl,
                      SUM(initial_value) AS initial_value,
                      MAX(end_date) AS end_date,
                      MAX(updated_at) AS resolved_at
               FROM positions
               WHERE account_id = ? AND realized_pnl IS NOT NULL
               GROUP BY condition_id
               ORDER BY resolved_at DESC, condition_id ASC
               LIMIT ? OFFSET ?""",
            (account_id, limit, offset),
        )
        return [
            Result(
                condition_id=row["condition_id"],
                market_title=row["market_title"] or "",
                market_slug=row["market_slug"] or "",
                outcome=row["outcome"] or "",
                realized_pnl=float(row["realized_pnl"]),
                initial_value=row["initial_value"],
                end_date=row["end_date"],
                resolved_at=parse_timestamp(row["resolved_at"]),
            )
            for row in rows
        ]

    # Snapshots

    def insert_snapshot(self, snapshot: PnlSnapshot) -> None:
        with self._transaction() as conn:
            conn.execute(INSERT_SNAPSHOT_SQL, _snapshot_params(snapshot))

    def replace_snapshots(self, account_id: int, snapshots: Iterable[PnlSnapshot]) -> int:
        """Swap an account's snapshot series for a new one, atomically."""
        rows = [_snapshot_params(snapshot) for snapshot in snapshots]
        for row in rows:
            if row[0] != account_id:
                raise ValueError(f"Snapshot for account {row[0]} passed to replace_snapshots({account_id})")
        with self._transaction() as conn:
            conn.execute("DELETE FROM pnl_snapshots WHERE account_id = ?", (account_id,))
            conn.executemany(INSERT_SNAPSHOT_SQL, rows)
        return len(rows)

    def get_pnl_history(self, account_id: int, since: Optional[datetime] = None) -> List[PnlSnapshot]:
        """Snapshots of an account ordered by time, optionally from ``since`` on."""
        if since is None:
            rows = self._query(
                "SELECT * FROM pnl_snapshots WHERE account_id = ? ORDER BY timestamp ASC, id ASC",
                (account_id,),
            )
        else:
            rows = self._query(
                """SELECT * FROM pnl_snapshots
                   WHERE account_id = ? AND timestamp >= ?
                   ORDER BY timestamp ASC, id ASC""",
                (account_id, to_iso(since)),
            )
        return [_row_to_snapshot(row) for row in rows]

    # Aggregates

    def get_aggregate_stats(self, account_id: int) -> Dict[str, Any]:
        """Position and trade aggregates for one account.

        Returns:
            Dictionary with unrealized_pnl, open_positions and total_trades
        """
        conn = self._get_conn()
        row = conn.execute(
            "SELECT COALESCE(SUM(unrealized_pnl), 0), COUNT(*) FROM positions WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        total_trades = conn.execute(
            "SELECT COUNT(*) FROM trades WHERE account_id = ?",
            (account_id,),
        ).fetchone()[0]
        return {
            "unrealized_pnl": float(row[0] or 0.0),
            "open_positions": row[1] or 0,
            "total_trades": total_trades or 0,
        }

    def reset_account(self, account_id: int) -> Dict[str, int]:
        """Delete an account's trades, positions and snapshots.

        The account, its addresses and its persona link are kept.
        """
        with self._transaction() as conn:
            trades = conn.execute("DELETE FROM trades WHERE account_id = ?", (account_id,)).rowcount
            positions = conn.execute("DELETE FROM positions WHERE account_id = ?", (account_id,)).rowcount
            snapshots = conn.execute("DELETE FROM pnl_snapshots WHERE account_id = ?", (account_id,)).rowcount
            conn.execute(
                "UPDATE accounts SET last_synced = NULL, official_pnl = NULL, official_volume = NULL WHERE id = ?",
                (account_id,),
            )
        logger.warning(
            "Reset account %s: %d trades, %d positions, %d snapshots deleted",
            account_id, trades, positions, snapshots,
        )
        return {"trades": trades, "positions": positions, "snapshots": snapshots}
