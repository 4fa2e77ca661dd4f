"""
Ledger Store — sqlite3 persistence for positions, trades, account history,
tick audit rows and the system_config key/value table.

All multi-row writes go through `_tx()` so an open/close is recorded as one
unit (trade row + position row) or not at all. Any sqlite3.Error surfaces as
PersistenceError, which halts the scheduler.
"""
import json
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Optional
from loguru import logger

from data.models import Position, Trade, AccountSnapshot, TickRecord
from execution.errors import PersistenceError


SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
    symbol            TEXT PRIMARY KEY,
    side              TEXT NOT NULL,
    quantity          REAL NOT NULL,
    entry_price       REAL NOT NULL,
    current_price     REAL NOT NULL,
    leverage          INTEGER NOT NULL,
    liquidation_price REAL NOT NULL DEFAULT 0,
    unrealized_pnl    REAL NOT NULL DEFAULT 0,
    peak_pnl_percent  REAL NOT NULL DEFAULT 0,
    opened_at         REAL NOT NULL,
    stop_loss         REAL,
    profit_target     REAL,
    entry_order_id    TEXT,
    sl_order_id       TEXT,
    tp_order_id       TEXT,
    add_count         INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS trades (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id  TEXT,
    symbol    TEXT NOT NULL,
    side      TEXT NOT NULL,
    type      TEXT NOT NULL,
    price     REAL NOT NULL,
    quantity  REAL NOT NULL,
    leverage  INTEGER NOT NULL,
    fee       REAL NOT NULL,
    pnl       REAL,
    timestamp REAL NOT NULL,
    status    TEXT NOT NULL,
    entry_price REAL
);
CREATE TABLE IF NOT EXISTS account_history (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp         REAL NOT NULL,
    total_balance     REAL NOT NULL,
    available_balance REAL NOT NULL,
    unrealized_pnl    REAL NOT NULL,
    realized_pnl      REAL NOT NULL,
    return_percent    REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS agent_decisions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp       REAL NOT NULL,
    iteration       INTEGER NOT NULL,
    market_analysis TEXT,
    decision        TEXT,
    actions_taken   TEXT,
    account_value   REAL,
    positions_count INTEGER
);
CREATE TABLE IF NOT EXISTS system_config (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""

_POSITION_COLUMNS = (
    'symbol', 'side', 'quantity', 'entry_price', 'current_price', 'leverage',
    'liquidation_price', 'unrealized_pnl', 'peak_pnl_percent', 'opened_at',
    'stop_loss', 'profit_target', 'entry_order_id', 'sl_order_id',
    'tp_order_id', 'add_count',
)


class LedgerStore:
    """Single-connection store. Only the tick task touches it."""

    def __init__(self, path: str = ':memory:'):
        self.path = path
        try:
            if path != ':memory:':
                os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            self.conn = sqlite3.connect(path)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
            self._migrate()
        except sqlite3.Error as e:
            raise PersistenceError('store_open_failed', path=path, error=str(e)) from e
        logger.debug(f'[STORE] Ledger ready at {path}')

    def _migrate(self):
        # ledgers created before close trades carried the entry price
        columns = {r['name'] for r in self.conn.execute('PRAGMA table_info(trades)')}
        if 'entry_price' not in columns:
            self.conn.execute('ALTER TABLE trades ADD COLUMN entry_price REAL')
            self.conn.commit()

    def close(self):
        self.conn.close()

    @contextmanager
    def _tx(self):
        try:
            with self.conn:
                yield self.conn
        except sqlite3.Error as e:
            logger.error(f'[STORE] Write failed: {e}')
            raise PersistenceError('write_failed', error=str(e)) from e

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError('read_failed', error=str(e)) from e

    # ── Positions ─────────────────────────────────────────────────────
    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        return Position(**{k: row[k] for k in _POSITION_COLUMNS})

    def get_positions(self) -> list[Position]:
        rows = self._query('SELECT * FROM positions ORDER BY symbol')
        return [self._row_to_position(r) for r in rows]

    def get_position(self, symbol: str) -> Optional[Position]:
        rows = self._query('SELECT * FROM positions WHERE symbol = ?', (symbol,))
        return self._row_to_position(rows[0]) if rows else None

    def _write_position(self, conn: sqlite3.Connection, pos: Position):
        placeholders = ', '.join('?' for _ in _POSITION_COLUMNS)
        conn.execute(
            f'INSERT OR REPLACE INTO positions ({", ".join(_POSITION_COLUMNS)}) '
            f'VALUES ({placeholders})',
            tuple(getattr(pos, k) for k in _POSITION_COLUMNS),
        )

    def upsert_position(self, pos: Position):
        with self._tx() as conn:
            self._write_position(conn, pos)

    def replace_positions(self, positions: list[Position]):
        """Rewrite the whole positions table in one transaction."""
        with self._tx() as conn:
            conn.execute('DELETE FROM positions')
            for pos in positions:
                self._write_position(conn, pos)

    def ratchet_peak(self, symbol: str, pnl_percent: float) -> float:
        """Raise peak_pnl_percent to pnl_percent if higher. Returns the stored peak."""
        with self._tx() as conn:
            conn.execute(
                'UPDATE positions SET peak_pnl_percent = MAX(peak_pnl_percent, ?) '
                'WHERE symbol = ?',
                (pnl_percent, symbol),
            )
        rows = self._query('SELECT peak_pnl_percent FROM positions WHERE symbol = ?', (symbol,))
        return rows[0]['peak_pnl_percent'] if rows else pnl_percent

    # ── Trades ────────────────────────────────────────────────────────
    def _write_trade(self, conn: sqlite3.Connection, trade: Trade) -> int:
        cur = conn.execute(
            'INSERT INTO trades (order_id, symbol, side, type, price, quantity, '
            'leverage, fee, pnl, timestamp, status, entry_price) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)',
            (trade.order_id, trade.symbol, trade.side, trade.type, trade.price,
             trade.quantity, trade.leverage, trade.fee, trade.pnl,
             trade.timestamp, trade.status, trade.entry_price),
        )
        trade.id = cur.lastrowid
        return trade.id

    def insert_trade(self, trade: Trade) -> int:
        with self._tx() as conn:
            return self._write_trade(conn, trade)

    def record_open(self, trade: Trade, position: Position) -> int:
        """Open trade + position upsert as one unit."""
        with self._tx() as conn:
            trade_id = self._write_trade(conn, trade)
            self._write_position(conn, position)
        return trade_id

    def record_close(self, trade: Trade, remaining_quantity: float) -> int:
        """Close trade + position delete (or shrink) as one unit."""
        with self._tx() as conn:
            trade_id = self._write_trade(conn, trade)
            if remaining_quantity <= 0:
                conn.execute('DELETE FROM positions WHERE symbol = ?', (trade.symbol,))
            else:
                conn.execute(
                    'UPDATE positions SET quantity = ? WHERE symbol = ?',
                    (remaining_quantity, trade.symbol),
                )
        return trade_id

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> Trade:
        return Trade(
            id=row['id'], order_id=row['order_id'], symbol=row['symbol'],
            side=row['side'], type=row['type'], price=row['price'],
            quantity=row['quantity'], leverage=row['leverage'], fee=row['fee'],
            pnl=row['pnl'], timestamp=row['timestamp'], status=row['status'],
            entry_price=row['entry_price'],
        )

    def recent_trades(self, limit: int = 10) -> list[Trade]:
        rows = self._query('SELECT * FROM trades ORDER BY timestamp DESC, id DESC LIMIT ?', (limit,))
        return [self._row_to_trade(r) for r in rows]

    def recent_close_trades(self, limit: int = 50) -> list[Trade]:
        rows = self._query(
            "SELECT * FROM trades WHERE type = 'close' ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [self._row_to_trade(r) for r in rows]

    def opens_before_close(self, close: Trade) -> list[Trade]:
        """Open/add fills for close.symbol since the previous close, oldest first."""
        rows = self._query(
            "SELECT * FROM trades WHERE symbol = ? AND type = 'open' AND id < ? AND id > "
            "COALESCE((SELECT MAX(id) FROM trades WHERE symbol = ? AND type = 'close' AND id < ?), 0) "
            'ORDER BY id',
            (close.symbol, close.id, close.symbol, close.id),
        )
        return [self._row_to_trade(r) for r in rows]

    def update_trade_pnl(self, trade_id: int, pnl: float, fee: float):
        with self._tx() as conn:
            conn.execute('UPDATE trades SET pnl = ?, fee = ? WHERE id = ?', (pnl, fee, trade_id))

    # ── Account history ───────────────────────────────────────────────
    def insert_snapshot(self, snap: AccountSnapshot):
        with self._tx() as conn:
            conn.execute(
                'INSERT INTO account_history (timestamp, total_balance, available_balance, '
                'unrealized_pnl, realized_pnl, return_percent) VALUES (?,?,?,?,?,?)',
                (snap.timestamp, snap.total_balance, snap.available_balance,
                 snap.unrealized_pnl, snap.realized_pnl, snap.return_percent),
            )

    def initial_balance(self) -> Optional[float]:
        rows = self._query('SELECT total_balance FROM account_history ORDER BY id ASC LIMIT 1')
        return rows[0]['total_balance'] if rows else None

    def peak_balance(self) -> Optional[float]:
        rows = self._query('SELECT MAX(total_balance) AS peak FROM account_history')
        return rows[0]['peak'] if rows else None

    def snapshots(self, limit: Optional[int] = None) -> list[AccountSnapshot]:
        sql = 'SELECT * FROM account_history ORDER BY id ASC'
        rows = self._query(sql)
        if limit is not None:
            rows = rows[-limit:]
        return [
            AccountSnapshot(
                total_balance=r['total_balance'], available_balance=r['available_balance'],
                unrealized_pnl=r['unrealized_pnl'], realized_pnl=r['realized_pnl'],
                return_percent=r['return_percent'], timestamp=r['timestamp'],
            )
            for r in rows
        ]

    # ── Tick audit ────────────────────────────────────────────────────
    def insert_tick(self, record: TickRecord):
        with self._tx() as conn:
            conn.execute(
                'INSERT INTO agent_decisions (timestamp, iteration, market_analysis, decision, '
                'actions_taken, account_value, positions_count) VALUES (?,?,?,?,?,?,?)',
                (record.timestamp, record.iteration, record.market_digest, record.decision,
                 json.dumps(record.actions), record.account_value, record.positions_count),
            )

    def last_tick(self) -> Optional[dict]:
        rows = self._query('SELECT * FROM agent_decisions ORDER BY id DESC LIMIT 1')
        if not rows:
            return None
        row = dict(rows[0])
        row['actions_taken'] = json.loads(row['actions_taken'] or '[]')
        return row

    def last_iteration(self) -> int:
        rows = self._query('SELECT MAX(iteration) AS it FROM agent_decisions')
        return rows[0]['it'] or 0

    # ── System config ─────────────────────────────────────────────────
    def set_config(self, key: str, value):
        with self._tx() as conn:
            conn.execute(
                'INSERT OR REPLACE INTO system_config (key, value, updated_at) VALUES (?,?,?)',
                (key, str(value), time.time()),
            )

    def get_config(self, key: str) -> Optional[str]:
        rows = self._query('SELECT value FROM system_config WHERE key = ?', (key,))
        return rows[0]['value'] if rows else None
