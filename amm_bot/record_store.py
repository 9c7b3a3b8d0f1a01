"""SQLite trade record store.

Append-only history of what the engines did: arbitrage executions (success
or failure), LP entries and LP exits. Rows are written after a trade or exit
completes; nothing here is read back to drive trading.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from amm_bot.models import ArbitrageExecution, DepositResult, LPPosition, WithdrawalResult

LOGGER = logging.getLogger(__name__)

DB_FILENAME = "amm_trades.db"

SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS arbitrage_executions (
    record_id        TEXT PRIMARY KEY,
    instance_id      TEXT NOT NULL,
    token            TEXT NOT NULL,
    buy_pool         TEXT NOT NULL,
    sell_pool        TEXT NOT NULL,
    trade_amount     REAL NOT NULL,
    price_difference REAL NOT NULL,
    executed         INTEGER NOT NULL,
    actual_profit    REAL NOT NULL,
    settlement_refs  TEXT NOT NULL,
    execution_time   REAL NOT NULL,
    error            TEXT,
    created_at       REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS lp_entries (
    record_id      TEXT PRIMARY KEY,
    instance_id    TEXT NOT NULL,
    pool_id        TEXT NOT NULL,
    pair           TEXT NOT NULL,
    strategy       TEXT NOT NULL,
    asset1_amount  REAL NOT NULL,
    asset2_amount  REAL NOT NULL,
    lp_tokens      REAL NOT NULL,
    entry_price    REAL NOT NULL,
    settlement_ref TEXT,
    created_at     REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS lp_exits (
    record_id          TEXT PRIMARY KEY,
    instance_id        TEXT NOT NULL,
    pool_id            TEXT NOT NULL,
    pair               TEXT NOT NULL,
    full_exit          INTEGER NOT NULL,
    lp_tokens_redeemed REAL NOT NULL,
    asset1_received    REAL NOT NULL,
    asset2_received    REAL NOT NULL,
    impermanent_loss   REAL NOT NULL,
    apr                REAL NOT NULL,
    reason             TEXT NOT NULL,
    settlement_ref     TEXT,
    created_at         REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_arbitrage_instance ON arbitrage_executions(instance_id, created_at);
CREATE INDEX IF NOT EXISTS idx_lp_entries_instance ON lp_entries(instance_id, created_at);
CREATE INDEX IF NOT EXISTS idx_lp_exits_instance ON lp_exits(instance_id, created_at);
"""


@dataclass
class StoredExecution:
    record_id: str
    instance_id: str
    token: str
    buy_pool: str
    sell_pool: str
    trade_amount: float
    price_difference: float
    executed: bool
    actual_profit: float
    settlement_refs: list[str]
    execution_time: float
    error: str | None
    created_at: float


@dataclass
class StoredLPEvent:
    record_id: str
    instance_id: str
    pool_id: str
    pair: str
    kind: str  # "entry" or "exit"
    details: dict[str, Any]
    settlement_ref: str | None
    created_at: float


class TradeRecordStore:
    """SQLite-backed history of executions and LP entries/exits."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = Path("data") / DB_FILENAME
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._open()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _open(self) -> None:
        self._conn = sqlite3.connect(
            str(self._db_path),
            isolation_level="DEFERRED",
            check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._apply_schema()

    def _apply_schema(self) -> None:
        assert self._conn is not None
        cur = self._conn.cursor()
        cur.executescript(_SCHEMA_SQL)
        row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        if row is None:
            cur.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        elif row["version"] != SCHEMA_VERSION:
            LOGGER.warning("record store %s has schema v%s, expected v%s", self._db_path, row["version"], SCHEMA_VERSION)
        self._conn.commit()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        assert self._conn is not None
        cur = self._conn.cursor()
        try:
            yield cur
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def schema_version(self) -> int:
        assert self._conn is not None
        row = self._conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
        return int(row["version"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_execution(self, instance_id: str, execution: ArbitrageExecution) -> str:
        record_id = uuid.uuid4().hex
        opp = execution.opportunity
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO arbitrage_executions
                   (record_id, instance_id, token, buy_pool, sell_pool, trade_amount,
                    price_difference, executed, actual_profit, settlement_refs,
                    execution_time, error, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record_id,
                    instance_id,
                    opp.token.key(),
                    opp.buy_pool.pool_id,
                    opp.sell_pool.pool_id,
                    opp.trade_amount,
                    opp.price_difference,
                    int(execution.executed),
                    execution.actual_profit,
                    json.dumps(list(execution.settlement_refs)),
                    execution.execution_time,
                    execution.error,
                    time.time(),
                ),
            )
        LOGGER.debug("recorded arbitrage execution %s (%s)", record_id, "ok" if execution.executed else "failed")
        return record_id

    def record_lp_entry(self, instance_id: str, position: LPPosition, deposit: DepositResult) -> str:
        record_id = uuid.uuid4().hex
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO lp_entries
                   (record_id, instance_id, pool_id, pair, strategy, asset1_amount,
                    asset2_amount, lp_tokens, entry_price, settlement_ref, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record_id,
                    instance_id,
                    position.pool_id,
                    position.label,
                    position.strategy.value,
                    deposit.asset1_amount,
                    deposit.asset2_amount,
                    deposit.lp_tokens,
                    position.entry_price,
                    deposit.settlement_ref,
                    time.time(),
                ),
            )
        return record_id

    def record_lp_exit(
        self,
        instance_id: str,
        position: LPPosition,
        withdrawal: WithdrawalResult,
        reason: str,
    ) -> str:
        record_id = uuid.uuid4().hex
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO lp_exits
                   (record_id, instance_id, pool_id, pair, full_exit, lp_tokens_redeemed,
                    asset1_received, asset2_received, impermanent_loss, apr, reason,
                    settlement_ref, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record_id,
                    instance_id,
                    position.pool_id,
                    position.label,
                    int(withdrawal.full),
                    withdrawal.lp_tokens_redeemed,
                    withdrawal.asset1_received,
                    withdrawal.asset2_received,
                    position.impermanent_loss,
                    position.apr,
                    reason,
                    withdrawal.settlement_ref,
                    time.time(),
                ),
            )
        return record_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_executions(self, instance_id: str | None = None, limit: int = 100) -> list[StoredExecution]:
        assert self._conn is not None
        if instance_id is None:
            rows = self._conn.execute(
                "SELECT * FROM arbitrage_executions ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM arbitrage_executions WHERE instance_id = ? ORDER BY created_at DESC LIMIT ?",
                (instance_id, limit),
            ).fetchall()
        return [_row_to_execution(r) for r in rows]

    def get_lp_events(self, instance_id: str | None = None) -> list[StoredLPEvent]:
        """Entries and exits interleaved, oldest first."""
        assert self._conn is not None
        events: list[StoredLPEvent] = []
        for table, kind in (("lp_entries", "entry"), ("lp_exits", "exit")):
            if instance_id is None:
                rows = self._conn.execute(f"SELECT * FROM {table}").fetchall()
            else:
                rows = self._conn.execute(f"SELECT * FROM {table} WHERE instance_id = ?", (instance_id,)).fetchall()
            events.extend(_row_to_lp_event(r, kind) for r in rows)
        events.sort(key=lambda e: e.created_at)
        return events

    def realized_profit(self, instance_id: str | None = None) -> float:
        assert self._conn is not None
        sql = "SELECT COALESCE(SUM(actual_profit), 0) AS total FROM arbitrage_executions WHERE executed = 1"
        params: tuple[Any, ...] = ()
        if instance_id is not None:
            sql += " AND instance_id = ?"
            params = (instance_id,)
        row = self._conn.execute(sql, params).fetchone()
        return float(row["total"])


_LP_BASE_COLUMNS = {"record_id", "instance_id", "pool_id", "pair", "settlement_ref", "created_at"}


def _row_to_execution(row: sqlite3.Row) -> StoredExecution:
    return StoredExecution(
        record_id=row["record_id"],
        instance_id=row["instance_id"],
        token=row["token"],
        buy_pool=row["buy_pool"],
        sell_pool=row["sell_pool"],
        trade_amount=row["trade_amount"],
        price_difference=row["price_difference"],
        executed=bool(row["executed"]),
        actual_profit=row["actual_profit"],
        settlement_refs=json.loads(row["settlement_refs"]),
        execution_time=row["execution_time"],
        error=row["error"],
        created_at=row["created_at"],
    )


def _row_to_lp_event(row: sqlite3.Row, kind: str) -> StoredLPEvent:
    return StoredLPEvent(
        record_id=row["record_id"],
        instance_id=row["instance_id"],
        pool_id=row["pool_id"],
        pair=row["pair"],
        kind=kind,
        details={k: row[k] for k in row.keys() if k not in _LP_BASE_COLUMNS},
        settlement_ref=row["settlement_ref"],
        created_at=row["created_at"],
    )
