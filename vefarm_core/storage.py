"""
SQLite-based persistence layer for VeFarm state.

Stores pools, user stakes, locks, scalar parameters and token balances so
that a farm can recover exactly after a restart.  Every amount, weight
and accumulator is written as a decimal TEXT column: the values are
unbounded Python ints (18-decimal fixed point) and must round-trip
bit-for-bit, which neither SQLite's 64-bit INTEGER nor REAL can do.

Usage:
    store = FarmStore("data/vefarm.db")
    store.snapshot_farm(farm)
    ...
    farm = Farm(reward, params)
    store.restore_farm(farm)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any

from vefarm_core.locks import Lock
from vefarm_core.pools import Pool
from vefarm_core.stakes import UserStake
from vefarm_core.tokens import RewardToken, TokenLedger

logger = logging.getLogger("vefarm_storage")


class FarmStore:
    """Thin SQLite wrapper for persisting farm state."""

    def __init__(self, db_path: str = "data/vefarm.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS params (
                id                     INTEGER PRIMARY KEY CHECK (id = 1),
                emission_rate          TEXT NOT NULL,
                staking_weight_percent INTEGER NOT NULL,
                steepness              TEXT NOT NULL,
                reward_start_time      INTEGER NOT NULL,
                min_lock_time          INTEGER NOT NULL,
                max_lock_time          INTEGER NOT NULL,
                total_weight           TEXT NOT NULL,
                total_locked_amount    TEXT NOT NULL,
                locked_user_count      INTEGER NOT NULL,
                total_paid             TEXT NOT NULL,
                total_forfeited        TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS pools (
                pid                  INTEGER PRIMARY KEY,
                stake_unit           TEXT NOT NULL UNIQUE,
                weight               TEXT NOT NULL,
                last_reward_time     INTEGER NOT NULL,
                acc_reward_per_share TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS user_stakes (
                pid         INTEGER NOT NULL,
                user        TEXT NOT NULL,
                amount      TEXT NOT NULL,
                reward_debt TEXT NOT NULL,
                PRIMARY KEY (pid, user)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS locks (
                user          TEXT PRIMARY KEY,
                locked_amount TEXT NOT NULL,
                unlock_time   INTEGER NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS tokens (
                symbol       TEXT PRIMARY KEY,
                kind         TEXT NOT NULL,
                total_supply TEXT NOT NULL,
                max_supply   TEXT,
                total_minted TEXT,
                total_burned TEXT
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS token_balances (
                symbol  TEXT NOT NULL,
                holder  TEXT NOT NULL,
                balance TEXT NOT NULL,
                PRIMARY KEY (symbol, holder)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    CURRENT_SCHEMA_VERSION = 1

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade VeFarm."
            )

    # ── loaders ──────────────────────────────────────────────────

    def has_state(self) -> bool:
        return self._conn.execute("SELECT 1 FROM params WHERE id = 1").fetchone() is not None

    def load_params(self) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM params WHERE id = 1").fetchone()
        return dict(row) if row else None

    def load_pools(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM pools ORDER BY pid").fetchall()
        return [dict(r) for r in rows]

    def load_stakes(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM user_stakes ORDER BY pid, user").fetchall()
        return [dict(r) for r in rows]

    def load_locks(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM locks ORDER BY user").fetchall()
        return [dict(r) for r in rows]

    def load_tokens(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM tokens ORDER BY symbol").fetchall()
        return [dict(r) for r in rows]

    def load_balances(self, symbol: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT holder, balance FROM token_balances WHERE symbol = ?", (symbol,)
        ).fetchall()
        return {r["holder"]: int(r["balance"]) for r in rows}

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_farm(self, farm: Any) -> None:
        """Persist the full current state of a Farm atomically."""
        c = self._conn
        params = farm.params
        try:
            c.execute("BEGIN IMMEDIATE")
            for table in ("params", "pools", "user_stakes", "locks",
                          "tokens", "token_balances"):
                c.execute(f"DELETE FROM {table}")

            c.execute(
                """INSERT INTO params
                   (id, emission_rate, staking_weight_percent, steepness,
                    reward_start_time, min_lock_time, max_lock_time,
                    total_weight, total_locked_amount, locked_user_count,
                    total_paid, total_forfeited)
                   VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (str(params.emission_rate), params.staking_weight_percent,
                 str(params.steepness), params.reward_start_time,
                 params.min_lock_time, params.max_lock_time,
                 str(farm.registry.total_weight),
                 str(farm.lock_engine.total_locked_amount),
                 farm.lock_engine.locked_user_count,
                 str(farm.vault.total_paid), str(farm.vault.total_forfeited)),
            )
            c.executemany(
                """INSERT INTO pools
                   (pid, stake_unit, weight, last_reward_time, acc_reward_per_share)
                   VALUES (?, ?, ?, ?, ?)""",
                [(p.pid, p.stake_unit, str(p.weight), p.last_reward_time,
                  str(p.acc_reward_per_share)) for p in farm.registry.pools],
            )
            c.executemany(
                """INSERT INTO user_stakes (pid, user, amount, reward_debt)
                   VALUES (?, ?, ?, ?)""",
                [(pid, user, str(s.amount), str(s.reward_debt))
                 for (pid, user), s in farm.stake_ledger.stakes.items()],
            )
            c.executemany(
                "INSERT INTO locks (user, locked_amount, unlock_time) VALUES (?, ?, ?)",
                [(user, str(lock.locked_amount), lock.unlock_time)
                 for user, lock in farm.lock_engine.locks.items()],
            )
            for symbol, token in farm.stake_tokens.items():
                if isinstance(token, RewardToken):
                    row = (symbol, "reward", str(token.total_supply()),
                           str(token.max_supply()), str(token.total_minted),
                           str(token.total_burned))
                else:
                    row = (symbol, "stake", str(token.total_supply()), None, None, None)
                c.execute(
                    """INSERT INTO tokens
                       (symbol, kind, total_supply, max_supply, total_minted, total_burned)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    row,
                )
                c.executemany(
                    "INSERT INTO token_balances (symbol, holder, balance) VALUES (?, ?, ?)",
                    [(symbol, holder, str(bal)) for holder, bal in token.balances.items()],
                )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.debug(f"Farm snapshot written to {self.db_path}")

    def restore_farm(self, farm: Any) -> bool:
        """
        Restore farm state from the database into a freshly built ``farm``.

        The farm's reward token must carry the stored reward symbol.
        Returns False when the database holds no state yet.
        """
        params = self.load_params()
        if params is None:
            return False

        farm.params.emission_rate = int(params["emission_rate"])
        farm.params.staking_weight_percent = params["staking_weight_percent"]
        farm.params.steepness = int(params["steepness"])
        farm.params.reward_start_time = params["reward_start_time"]
        farm.params.min_lock_time = params["min_lock_time"]
        farm.params.max_lock_time = params["max_lock_time"]

        # Tokens
        for row in self.load_tokens():
            symbol = row["symbol"]
            balances = self.load_balances(symbol)
            if row["kind"] == "reward":
                if symbol != farm.reward.symbol:
                    raise RuntimeError(
                        f"Stored reward token {symbol} does not match {farm.reward.symbol}"
                    )
                token: TokenLedger = farm.reward
                token.restore({
                    "balances": balances,
                    "supply": int(row["total_supply"]),
                    "max_supply": int(row["max_supply"]),
                    "total_minted": int(row["total_minted"]),
                    "total_burned": int(row["total_burned"]),
                })
            else:
                token = farm.stake_tokens.get(symbol) or TokenLedger(symbol)
                token.restore({"balances": balances, "supply": int(row["total_supply"])})
            farm.stake_tokens[symbol] = token

        # Pools
        farm.registry.pools = [
            Pool(
                pid=row["pid"],
                stake_unit=row["stake_unit"],
                weight=int(row["weight"]),
                last_reward_time=row["last_reward_time"],
                acc_reward_per_share=int(row["acc_reward_per_share"]),
            )
            for row in self.load_pools()
        ]
        farm.registry.total_weight = int(params["total_weight"])

        # Stakes and locks
        farm.stake_ledger.stakes = {
            (row["pid"], row["user"]): UserStake(
                amount=int(row["amount"]), reward_debt=int(row["reward_debt"]),
            )
            for row in self.load_stakes()
        }
        farm.lock_engine.locks = {
            row["user"]: Lock(
                locked_amount=int(row["locked_amount"]),
                unlock_time=row["unlock_time"],
            )
            for row in self.load_locks()
        }
        farm.lock_engine.total_locked_amount = int(params["total_locked_amount"])
        farm.lock_engine.locked_user_count = params["locked_user_count"]
        farm.vault.total_paid = int(params["total_paid"])
        farm.vault.total_forfeited = int(params["total_forfeited"])

        logger.info(
            f"Restored farm: {len(farm.registry.pools)} pools, "
            f"{len(farm.stake_ledger.stakes)} stakes, {len(farm.lock_engine.locks)} locks"
        )
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
