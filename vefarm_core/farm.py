"""
The VeFarm engine facade.

``Farm`` wires the pool registry, accrual engine, stake ledger and lock
engine together and is the only object callers mutate.  Every mutating
entry point runs as one transaction:

  1. an engine-wide reentrancy flag is taken (a nested entry, e.g. from a
     token receive hook, raises ``ReentrantCall``)
  2. the engine state and every snapshot-capable token ledger are saved
  3. the operation runs against ``now`` read once from the clock
  4. invariants are verified (when enabled)
  5. on any exception the saved state is restored and the error re-raised

Configuration changes all go through ``_configure``, which validates,
settles every pool under the old parameters and only then applies the
change.

Usage:
    reward = RewardToken("VEF", max_supply=10**27)
    farm = Farm(reward)
    farm.add_pool(1000, lp_token)
    farm.deposit(1, "alice", 10**18)
"""

from __future__ import annotations

import contextlib
import copy
import logging
import time
from dataclasses import asdict
from typing import Any, Callable, Iterator, Optional

from vefarm_core.accrual import AccrualEngine, RewardVault
from vefarm_core.errors import InvariantViolation, ParameterOutOfRange, ReentrantCall
from vefarm_core.invariants import InvariantChecker
from vefarm_core.locks import STAKING_PID, LockEngine, LockResult
from vefarm_core.params import (
    FarmParameters,
    check_emission_rate,
    check_staking_percent,
    check_steepness,
)
from vefarm_core.pools import Pool, PoolRegistry
from vefarm_core.stakes import StakeLedger
from vefarm_core.tokens import RewardToken, TokenLedger

logger = logging.getLogger("vefarm_engine")

DEFAULT_FARM_ACCOUNT = "vefarm"
DEFAULT_STAKING_POOL_WEIGHT = 1000


def _wall_clock() -> int:
    return int(time.time())


class Farm:
    """Reward-distribution engine with a vote-escrowed lock pool."""

    def __init__(
        self,
        reward: RewardToken,
        params: Optional[FarmParameters] = None,
        *,
        farm_account: str = DEFAULT_FARM_ACCOUNT,
        staking_pool_weight: int = DEFAULT_STAKING_POOL_WEIGHT,
        clock: Optional[Callable[[], int]] = None,
        check_invariants: bool = True,
    ):
        self.params = params or FarmParameters()
        self.params.validate()
        self.reward = reward
        self.farm_account = farm_account
        self.clock = clock or _wall_clock
        self.stake_tokens: dict[str, TokenLedger] = {reward.symbol: reward}

        now = self.clock()
        self.registry = PoolRegistry(self.params, reward.symbol, staking_pool_weight, now)
        self.vault = RewardVault(
            reward, farm_account, lambda: self.lock_engine.total_locked_amount,
        )
        self.accrual = AccrualEngine(
            self.registry, self.params, reward, farm_account, self._backing_supply,
        )
        self.stake_ledger = StakeLedger(
            self.registry, self.accrual, self.vault, self._stake_token, farm_account,
        )
        self.lock_engine = LockEngine(
            self.registry, self.accrual, self.vault, self.stake_ledger,
            reward, self.params, farm_account,
        )

        self._in_transaction = False
        self._invariants = InvariantChecker() if check_invariants else None

    # ── wiring ──────────────────────────────────────────────────────

    def _backing_supply(self, pool: Pool) -> int:
        if pool.pid == STAKING_PID:
            return self.lock_engine.total_locked_amount
        return self.stake_tokens[pool.stake_unit].balance_of(self.farm_account)

    def _stake_token(self, symbol: str) -> TokenLedger:
        return self.stake_tokens[symbol]

    def _now(self, at: Optional[int]) -> int:
        return self.clock() if at is None else at

    # ── transactions ────────────────────────────────────────────────

    def _snapshot(self) -> dict[str, Any]:
        return {
            "params": asdict(self.params),
            "pools": copy.deepcopy(self.registry.pools),
            "total_weight": self.registry.total_weight,
            "stakes": copy.deepcopy(self.stake_ledger.stakes),
            "locks": copy.deepcopy(self.lock_engine.locks),
            "total_locked": self.lock_engine.total_locked_amount,
            "locked_users": self.lock_engine.locked_user_count,
            "vault": (self.vault.total_paid, self.vault.total_forfeited),
            "stake_tokens": dict(self.stake_tokens),
            "tokens": {
                sym: tok.snapshot()
                for sym, tok in self.stake_tokens.items()
                if hasattr(tok, "snapshot")
            },
        }

    def _restore(self, snap: dict[str, Any]) -> None:
        for key, value in snap["params"].items():
            setattr(self.params, key, value)
        self.registry.pools = snap["pools"]
        self.registry.total_weight = snap["total_weight"]
        self.stake_ledger.stakes = snap["stakes"]
        self.lock_engine.locks = snap["locks"]
        self.lock_engine.total_locked_amount = snap["total_locked"]
        self.lock_engine.locked_user_count = snap["locked_users"]
        self.vault.total_paid, self.vault.total_forfeited = snap["vault"]
        self.stake_tokens = snap["stake_tokens"]
        for sym, token_snap in snap["tokens"].items():
            self.stake_tokens[sym].restore(token_snap)

    @contextlib.contextmanager
    def _transaction(self, name: str) -> Iterator[int]:
        if self._in_transaction:
            raise ReentrantCall(f"{name} called while another farm call is in flight")
        self._in_transaction = True
        try:
            snap = self._snapshot()
            if self._invariants is not None:
                self._invariants.capture(self)
            try:
                yield self.clock()
                if self._invariants is not None:
                    ok, msg = self._invariants.verify(self)
                    if not ok:
                        raise InvariantViolation(msg)
            except BaseException as exc:
                self._restore(snap)
                logger.warning(f"Rolled back: {exc!r}", extra={"tx": name})
                raise
        finally:
            self._in_transaction = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    # ── pool administration ─────────────────────────────────────────

    def add_pool(self, weight: int, stake_unit: TokenLedger, settle_first: bool = False) -> Pool:
        """Register a new farm pool for ``stake_unit``."""
        with self._transaction("add_pool") as now:
            if settle_first:
                self.accrual.mass_settle(now)
            pool = self.registry.add_pool(weight, stake_unit.symbol, now)
            self.stake_tokens[stake_unit.symbol] = stake_unit
        logger.info(
            f"Pool {pool.pid} added for {stake_unit.symbol} weight={weight} "
            f"total_weight={self.registry.total_weight}"
        )
        return pool

    def set_pool_weight(self, pid: int, weight: int, settle_first: bool = False) -> Pool:
        """Change a farm pool's weight; pool 0 is derived and rejected."""
        with self._transaction("set_pool_weight") as now:
            self.registry.get_farm_pool(pid)
            if settle_first:
                self.accrual.mass_settle(now)
            pool = self.registry.set_pool_weight(pid, weight)
        logger.info(
            f"Pool {pid} weight={weight} total_weight={self.registry.total_weight}"
        )
        return pool

    def settle(self, pid: int) -> int:
        with self._transaction("settle") as now:
            return self.accrual.settle(pid, now)

    def mass_settle(self) -> int:
        with self._transaction("mass_settle") as now:
            return self.accrual.mass_settle(now)

    # ── farm pools ──────────────────────────────────────────────────

    def deposit(self, pid: int, user: str, amount: int) -> int:
        """Deposit stake units into a farm pool.  Returns the reward paid."""
        with self._transaction("deposit") as now:
            return self.stake_ledger.deposit(pid, user, amount, now)

    def withdraw(self, pid: int, user: str, amount: int) -> int:
        """Withdraw stake units from a farm pool.  Returns the reward paid."""
        with self._transaction("withdraw") as now:
            return self.stake_ledger.withdraw(pid, user, amount, now)

    def emergency_withdraw(self, pid: int, user: str) -> int:
        """Return principal without rewards.  Returns the amount returned."""
        with self._transaction("emergency_withdraw"):
            return self.stake_ledger.emergency_withdraw(pid, user)

    # ── lock pool ───────────────────────────────────────────────────

    def enter_staking(self, user: str, amount: int, lock_duration: int) -> LockResult:
        with self._transaction("enter_staking") as now:
            return self.lock_engine.enter_staking(user, amount, lock_duration, now)

    def leave_staking(self, user: str) -> LockResult:
        with self._transaction("leave_staking") as now:
            return self.lock_engine.leave_staking(user, now)

    def extend_lock_time(self, user: str, extra_duration: int) -> LockResult:
        with self._transaction("extend_lock_time") as now:
            return self.lock_engine.extend_lock_time(user, extra_duration, now)

    # ── configuration ───────────────────────────────────────────────

    def _configure(self, name: str, apply: Callable[[], None]) -> None:
        with self._transaction(name) as now:
            self.accrual.mass_settle(now)
            apply()

    def set_emission_rate(self, rate: int) -> None:
        check_emission_rate(rate)

        def apply() -> None:
            self.params.emission_rate = rate

        self._configure("set_emission_rate", apply)
        logger.info(f"Emission rate set to {rate}")

    def set_staking_weight_percent(self, pct: int) -> None:
        check_staking_percent(pct)

        def apply() -> None:
            self.params.staking_weight_percent = pct
            self.registry.rebalance_staking_pool()

        self._configure("set_staking_weight_percent", apply)
        logger.info(
            f"Staking weight percent set to {pct}; pool 0 weight "
            f"{self.registry.pools[0].weight}"
        )

    def set_steepness(self, k: int) -> None:
        check_steepness(k)

        def apply() -> None:
            self.params.steepness = k

        self._configure("set_steepness", apply)
        logger.info(f"Steepness set to {k}")

    def decrease_reward_asset_cap(self, new_cap: int) -> None:
        if new_cap > self.reward.max_supply():
            raise ParameterOutOfRange(
                f"new cap {new_cap} is above the current cap {self.reward.max_supply()}"
            )
        if new_cap < self.reward.total_supply():
            raise ParameterOutOfRange(
                f"new cap {new_cap} is below the current supply {self.reward.total_supply()}"
            )
        self._configure(
            "decrease_reward_asset_cap",
            lambda: self.reward.decrease_max_supply(new_cap),
        )
        logger.info(f"Reward cap lowered to {new_cap}")

    # ── queries ─────────────────────────────────────────────────────

    def pool_count(self) -> int:
        return len(self.registry)

    def pending_reward(self, pid: int, user: str, at: Optional[int] = None) -> int:
        return self.stake_ledger.pending_reward(pid, user, self._now(at))

    def decayed_pending_reward(self, user: str, at: Optional[int] = None) -> int:
        return self.lock_engine.decayed_pending_reward(user, self._now(at))

    def ve_balance(self, user: str, at: Optional[int] = None) -> int:
        return self.lock_engine.ve_balance(user, self._now(at))

    def ve_power(self, user: str, at: Optional[int] = None) -> int:
        return self.lock_engine.ve_power(user, self._now(at))

    def pool_info(self, pid: int) -> dict:
        pool = self.registry.get(pid)
        info = pool.to_dict()
        info["backing_supply"] = self._backing_supply(pool)
        return info

    def user_info(self, pid: int, user: str, at: Optional[int] = None) -> dict:
        self.registry.get(pid)
        info = self.stake_ledger.get(pid, user).to_dict()
        info["pending_reward"] = self.pending_reward(pid, user, at)
        return info

    def lock_info(self, user: str, at: Optional[int] = None) -> dict:
        now = self._now(at)
        lock = self.lock_engine.get(user)
        info = lock.to_dict()
        info.update(
            state=lock.state(now).value,
            remaining=lock.remaining(now) if lock.locked_amount else 0,
            ve_balance=self.lock_engine.ve_balance(user, now),
            ve_power=self.lock_engine.ve_power(user, now),
            pending_reward=self.stake_ledger.pending_reward(STAKING_PID, user, now),
            decayed_pending_reward=self.lock_engine.decayed_pending_reward(user, now),
        )
        return info

    def get_summary(self) -> dict:
        return {
            "params": self.params.to_dict(),
            "pool_count": len(self.registry),
            "total_weight": self.registry.total_weight,
            "total_locked_amount": self.lock_engine.total_locked_amount,
            "locked_user_count": self.lock_engine.locked_user_count,
            "total_reward_paid": self.vault.total_paid,
            "total_reward_forfeited": self.vault.total_forfeited,
            "reward": self.reward.to_dict(),
        }
