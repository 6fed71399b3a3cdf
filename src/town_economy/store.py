"""SQLite-backed transactional store for economy records.

Every mutation that touches more than one record (a swap moves pool and agent
balances, appends a swap row and zero or more ledger rows) runs inside one
``transaction()``. Writers are serialized by a process-level lock plus
``BEGIN IMMEDIATE``; an exception anywhere inside the block rolls back the
whole unit, so readers only ever observe committed state.

Usage:
    store = EconomyStore(":memory:")
    with store.transaction() as tx:
        pool = tx.latest_pool()
        tx.increment_pool(pool.id, reserve_balance=10)
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .records import (
    Agent,
    LedgerEntry,
    LedgerType,
    Plot,
    PlotStatus,
    PlotZone,
    Pool,
    SkillPurchase,
    Swap,
    SwapSide,
    Town,
    TownStatus,
    utc_now,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS pools (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    reserve_balance INTEGER NOT NULL CHECK (reserve_balance >= 0),
    arena_balance INTEGER NOT NULL CHECK (arena_balance >= 0),
    fee_bps INTEGER NOT NULL CHECK (fee_bps BETWEEN 0 AND 1000),
    cumulative_fees_reserve INTEGER NOT NULL DEFAULT 0,
    cumulative_fees_arena INTEGER NOT NULL DEFAULT 0,
    ops_budget INTEGER NOT NULL DEFAULT 0,
    pvp_budget INTEGER NOT NULL DEFAULT 0,
    rescue_budget INTEGER NOT NULL DEFAULT 0,
    insurance_budget INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    archetype TEXT NOT NULL,
    bankroll INTEGER NOT NULL CHECK (bankroll >= 0),
    reserve_balance INTEGER NOT NULL CHECK (reserve_balance >= 0),
    is_active INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS towns (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    theme TEXT NOT NULL DEFAULT '',
    level INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL,
    total_invested INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS plots (
    id TEXT PRIMARY KEY,
    town_id TEXT NOT NULL REFERENCES towns(id),
    plot_index INTEGER NOT NULL,
    zone TEXT NOT NULL,
    status TEXT NOT NULL,
    building_type TEXT,
    build_cost_arena INTEGER NOT NULL DEFAULT 0,
    owner_id TEXT,
    yield_multiplier REAL NOT NULL DEFAULT 1.0
);
CREATE TABLE IF NOT EXISTS swaps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL REFERENCES agents(id),
    side TEXT NOT NULL,
    amount_in INTEGER NOT NULL,
    amount_out INTEGER NOT NULL,
    fee_amount INTEGER NOT NULL,
    price_before REAL,
    price_after REAL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS ledger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    pool_id INTEGER,
    source TEXT NOT NULL,
    destination TEXT NOT NULL,
    amount INTEGER NOT NULL CHECK (amount > 0),
    type TEXT NOT NULL,
    agent_id TEXT,
    town_id TEXT,
    tick INTEGER,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS skill_purchases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id TEXT NOT NULL,
    town_id TEXT,
    skill TEXT NOT NULL,
    price_arena INTEGER NOT NULL,
    description TEXT NOT NULL,
    input TEXT NOT NULL,
    output TEXT NOT NULL,
    model_used TEXT NOT NULL,
    api_calls INTEGER NOT NULL DEFAULT 0,
    api_cost_cents REAL NOT NULL DEFAULT 0,
    response_time_ms INTEGER NOT NULL DEFAULT 0,
    tick INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""

_POOL_FIELDS = frozenset(
    {
        "reserve_balance",
        "arena_balance",
        "fee_bps",
        "cumulative_fees_reserve",
        "cumulative_fees_arena",
        "ops_budget",
        "pvp_budget",
        "rescue_budget",
        "insurance_budget",
    }
)
_TOWN_FIELDS = frozenset({"name", "theme", "level", "status", "total_invested"})
_PLOT_FIELDS = frozenset({"status", "building_type", "build_cost_arena", "owner_id", "yield_multiplier"})


def _assignments(fields: dict[str, Any], allowed: frozenset[str]) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise KeyError(f"unknown fields: {sorted(unknown)}")
    columns = sorted(fields)
    values = [getattr(fields[c], "value", fields[c]) for c in columns]
    return ", ".join(f"{c} = ?" for c in columns), values


def _pool_from_row(row: sqlite3.Row) -> Pool:
    return Pool(**{key: row[key] for key in row.keys()})


def _agent_from_row(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        name=row["name"],
        archetype=row["archetype"],
        bankroll=row["bankroll"],
        reserve_balance=row["reserve_balance"],
        is_active=bool(row["is_active"]),
    )


def _town_from_row(row: sqlite3.Row) -> Town:
    return Town(
        id=row["id"],
        name=row["name"],
        theme=row["theme"],
        level=row["level"],
        status=TownStatus(row["status"]),
        total_invested=row["total_invested"],
    )


def _plot_from_row(row: sqlite3.Row) -> Plot:
    return Plot(
        id=row["id"],
        town_id=row["town_id"],
        plot_index=row["plot_index"],
        zone=PlotZone(row["zone"]),
        status=PlotStatus(row["status"]),
        building_type=row["building_type"],
        build_cost_arena=row["build_cost_arena"],
        owner_id=row["owner_id"],
        yield_multiplier=row["yield_multiplier"],
    )


def _swap_from_row(row: sqlite3.Row) -> Swap:
    return Swap(
        id=row["id"],
        agent_id=row["agent_id"],
        side=SwapSide(row["side"]),
        amount_in=row["amount_in"],
        amount_out=row["amount_out"],
        fee_amount=row["fee_amount"],
        price_before=row["price_before"],
        price_after=row["price_after"],
        created_at=row["created_at"],
    )


def _ledger_from_row(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        id=row["id"],
        pool_id=row["pool_id"],
        source=row["source"],
        destination=row["destination"],
        amount=row["amount"],
        type=LedgerType(row["type"]),
        agent_id=row["agent_id"],
        town_id=row["town_id"],
        tick=row["tick"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
    )


def _purchase_from_row(row: sqlite3.Row) -> SkillPurchase:
    return SkillPurchase(
        id=row["id"],
        agent_id=row["agent_id"],
        town_id=row["town_id"],
        skill=row["skill"],
        price_arena=row["price_arena"],
        description=row["description"],
        input=json.loads(row["input"]),
        output=json.loads(row["output"]),
        model_used=row["model_used"],
        api_calls=row["api_calls"],
        api_cost_cents=row["api_cost_cents"],
        response_time_ms=row["response_time_ms"],
        tick=row["tick"],
        created_at=row["created_at"],
    )


class StoreSession:
    """Typed queries over one connection; mutations only inside a transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ---- pools ----

    def latest_pool(self) -> Pool | None:
        row = self._conn.execute("SELECT * FROM pools ORDER BY id DESC LIMIT 1").fetchone()
        return _pool_from_row(row) if row else None

    def get_pool(self, pool_id: int) -> Pool | None:
        row = self._conn.execute("SELECT * FROM pools WHERE id = ?", (pool_id,)).fetchone()
        return _pool_from_row(row) if row else None

    def create_pool(self, *, reserve_balance: int, arena_balance: int, fee_bps: int) -> Pool:
        now = utc_now()
        cur = self._conn.execute(
            "INSERT INTO pools (reserve_balance, arena_balance, fee_bps, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            (reserve_balance, arena_balance, fee_bps, now, now),
        )
        pool = self.get_pool(int(cur.lastrowid))
        if pool is None:
            raise KeyError(f"pool {cur.lastrowid} not found")
        return pool

    def update_pool(self, pool_id: int, **fields: Any) -> Pool:
        if fields:
            clause, values = _assignments(fields, _POOL_FIELDS)
            self._conn.execute(
                f"UPDATE pools SET {clause}, updated_at = ? WHERE id = ?",
                (*values, utc_now(), pool_id),
            )
        pool = self.get_pool(pool_id)
        if pool is None:
            raise KeyError(f"pool {pool_id} not found")
        return pool

    def increment_pool(self, pool_id: int, **deltas: int) -> Pool:
        unknown = set(deltas) - _POOL_FIELDS
        if unknown:
            raise KeyError(f"unknown fields: {sorted(unknown)}")
        columns = sorted(k for k, v in deltas.items() if v)
        if columns:
            clause = ", ".join(f"{c} = {c} + ?" for c in columns)
            self._conn.execute(
                f"UPDATE pools SET {clause}, updated_at = ? WHERE id = ?",
                (*[deltas[c] for c in columns], utc_now(), pool_id),
            )
        return self.update_pool(pool_id)

    # ---- agents ----

    def insert_agent(self, agent: Agent) -> Agent:
        self._conn.execute(
            "INSERT INTO agents (id, name, archetype, bankroll, reserve_balance, is_active) VALUES (?, ?, ?, ?, ?, ?)",
            (agent.id, agent.name, agent.archetype, agent.bankroll, agent.reserve_balance, int(agent.is_active)),
        )
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        row = self._conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return _agent_from_row(row) if row else None

    def list_agents(self, *, active_only: bool = False) -> list[Agent]:
        sql = "SELECT * FROM agents"
        if active_only:
            sql += " WHERE is_active = 1"
        return [_agent_from_row(r) for r in self._conn.execute(sql + " ORDER BY id").fetchall()]

    def adjust_agent_balances(self, agent_id: str, *, bankroll: int = 0, reserve_balance: int = 0) -> Agent:
        self._conn.execute(
            "UPDATE agents SET bankroll = bankroll + ?, reserve_balance = reserve_balance + ? WHERE id = ?",
            (bankroll, reserve_balance, agent_id),
        )
        agent = self.get_agent(agent_id)
        if agent is None:
            raise KeyError(f"agent {agent_id} not found")
        return agent

    def set_agent_active(self, agent_id: str, active: bool) -> None:
        self._conn.execute("UPDATE agents SET is_active = ? WHERE id = ?", (int(active), agent_id))

    # ---- towns & plots ----

    def insert_town(self, town: Town) -> Town:
        self._conn.execute(
            "INSERT INTO towns (id, name, theme, level, status, total_invested) VALUES (?, ?, ?, ?, ?, ?)",
            (town.id, town.name, town.theme, town.level, town.status.value, town.total_invested),
        )
        return town

    def get_town(self, town_id: str) -> Town | None:
        row = self._conn.execute("SELECT * FROM towns WHERE id = ?", (town_id,)).fetchone()
        return _town_from_row(row) if row else None

    def list_towns(self) -> list[Town]:
        return [_town_from_row(r) for r in self._conn.execute("SELECT * FROM towns ORDER BY id").fetchall()]

    def update_town(self, town_id: str, **fields: Any) -> Town:
        if fields:
            clause, values = _assignments(fields, _TOWN_FIELDS)
            self._conn.execute(f"UPDATE towns SET {clause} WHERE id = ?", (*values, town_id))
        town = self.get_town(town_id)
        if town is None:
            raise KeyError(f"town {town_id} not found")
        return town

    def insert_plot(self, plot: Plot) -> Plot:
        self._conn.execute(
            """
            INSERT INTO plots (id, town_id, plot_index, zone, status, building_type, build_cost_arena, owner_id, yield_multiplier)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                plot.id,
                plot.town_id,
                plot.plot_index,
                plot.zone.value,
                plot.status.value,
                plot.building_type,
                plot.build_cost_arena,
                plot.owner_id,
                plot.yield_multiplier,
            ),
        )
        return plot

    def get_plot(self, plot_id: str) -> Plot | None:
        row = self._conn.execute("SELECT * FROM plots WHERE id = ?", (plot_id,)).fetchone()
        return _plot_from_row(row) if row else None

    def list_plots(
        self,
        *,
        town_id: str | None = None,
        zone: str | None = None,
        status: PlotStatus | None = None,
        min_cost: int | None = None,
    ) -> list[Plot]:
        clauses: list[str] = []
        params: list[Any] = []
        if town_id is not None:
            clauses.append("town_id = ?")
            params.append(town_id)
        if zone is not None:
            clauses.append("zone = ?")
            params.append(zone)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if min_cost is not None:
            clauses.append("build_cost_arena >= ?")
            params.append(min_cost)
        sql = "SELECT * FROM plots"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY town_id, plot_index"
        return [_plot_from_row(r) for r in self._conn.execute(sql, params).fetchall()]

    def update_plot(self, plot_id: str, **fields: Any) -> Plot:
        if fields:
            clause, values = _assignments(fields, _PLOT_FIELDS)
            self._conn.execute(f"UPDATE plots SET {clause} WHERE id = ?", (*values, plot_id))
        plot = self.get_plot(plot_id)
        if plot is None:
            raise KeyError(f"plot {plot_id} not found")
        return plot

    # ---- swaps ----

    def insert_swap(
        self,
        *,
        agent_id: str,
        side: SwapSide,
        amount_in: int,
        amount_out: int,
        fee_amount: int,
        price_before: float | None,
        price_after: float | None,
    ) -> Swap:
        cur = self._conn.execute(
            """
            INSERT INTO swaps (agent_id, side, amount_in, amount_out, fee_amount, price_before, price_after, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (agent_id, side.value, amount_in, amount_out, fee_amount, price_before, price_after, utc_now()),
        )
        row = self._conn.execute("SELECT * FROM swaps WHERE id = ?", (cur.lastrowid,)).fetchone()
        return _swap_from_row(row)

    def list_swaps(self, limit: int) -> list[Swap]:
        rows = self._conn.execute("SELECT * FROM swaps ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_swap_from_row(r) for r in rows]

    def count_swaps(self) -> int:
        return int(self._conn.execute("SELECT COUNT(*) FROM swaps").fetchone()[0])

    # ---- ledger ----

    def insert_ledger_rows(self, rows: list[dict[str, Any]]) -> None:
        now = utc_now()
        self._conn.executemany(
            """
            INSERT INTO ledger (pool_id, source, destination, amount, type, agent_id, town_id, tick, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    row.get("pool_id"),
                    row["source"],
                    row["destination"],
                    row["amount"],
                    getattr(row["type"], "value", row["type"]),
                    row.get("agent_id"),
                    row.get("town_id"),
                    row.get("tick"),
                    row.get("metadata", "{}"),
                    now,
                )
                for row in rows
            ],
        )

    def list_ledger(self, *, limit: int = 50, agent_id: str | None = None) -> list[LedgerEntry]:
        if agent_id is None:
            rows = self._conn.execute("SELECT * FROM ledger ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM ledger WHERE agent_id = ? ORDER BY id DESC LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [_ledger_from_row(r) for r in rows]

    # ---- skill purchases ----

    def insert_skill_purchase(
        self,
        *,
        agent_id: str,
        town_id: str | None,
        skill: str,
        price_arena: int,
        description: str,
        input: dict[str, Any],
        output: dict[str, Any],
        model_used: str,
        api_calls: int,
        api_cost_cents: float,
        response_time_ms: int,
        tick: int,
    ) -> SkillPurchase:
        cur = self._conn.execute(
            """
            INSERT INTO skill_purchases (
                agent_id, town_id, skill, price_arena, description, input, output,
                model_used, api_calls, api_cost_cents, response_time_ms, tick, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                agent_id,
                town_id,
                skill,
                price_arena,
                description,
                json.dumps(input, ensure_ascii=True, default=str),
                json.dumps(output, ensure_ascii=True, default=str),
                model_used,
                api_calls,
                api_cost_cents,
                response_time_ms,
                tick,
                utc_now(),
            ),
        )
        row = self._conn.execute("SELECT * FROM skill_purchases WHERE id = ?", (cur.lastrowid,)).fetchone()
        return _purchase_from_row(row)

    def list_skill_purchases(self, *, agent_id: str | None = None, limit: int = 50) -> list[SkillPurchase]:
        if agent_id is None:
            rows = self._conn.execute("SELECT * FROM skill_purchases ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM skill_purchases WHERE agent_id = ? ORDER BY id DESC LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [_purchase_from_row(r) for r in rows]


class EconomyStore:
    """Single-connection SQLite store with serialized, all-or-nothing writes."""

    def __init__(self, database_path: str | Path = ":memory:") -> None:
        self.database_path = str(database_path)
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly below.
        self._conn = sqlite3.connect(self.database_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        self._conn.execute("PRAGMA foreign_keys=ON")
        if self.database_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[StoreSession]:
        """Open a write unit; nested calls join the outermost transaction."""
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield StoreSession(self._conn)
                finally:
                    self._depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield StoreSession(self._conn)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """Read committed state."""
        with self._lock:
            yield StoreSession(self._conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
