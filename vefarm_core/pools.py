"""
Pool registry for VeFarm.

Pools are append-only and indexed ``0 … N−1``.  Pool 0 is the lock pool
whose stake unit is the reward token itself; its weight is never set
directly but derived from the other pools so that it represents exactly
``staking_weight_percent`` of the combined weight:

    pool0.weight = others × pct / (100 − pct)

The rebalance is skipped while the other pools carry no weight, so pool 0
is not driven to zero before any farm pool exists.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from vefarm_core.errors import DuplicatePool, InvalidAmount, InvalidPool
from vefarm_core.params import FarmParameters


@dataclass
class Pool:
    """One reward pool."""
    pid: int
    stake_unit: str              # symbol of the deposit token
    weight: int                  # allocation points
    last_reward_time: int        # epoch seconds
    acc_reward_per_share: int = 0  # scaled by ACC_SCALE, never decreases

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "stake_unit": self.stake_unit,
            "weight": self.weight,
            "last_reward_time": self.last_reward_time,
            "acc_reward_per_share": self.acc_reward_per_share,
        }


def _check_weight(weight: int) -> None:
    if not isinstance(weight, int) or isinstance(weight, bool) or weight < 0:
        raise InvalidAmount(f"weight must be a non-negative integer, got {weight!r}")


class PoolRegistry:
    """Owns every ``Pool`` and the running ``total_weight``."""

    def __init__(
        self,
        params: FarmParameters,
        staking_unit: str,
        staking_weight: int,
        now: int,
    ):
        _check_weight(staking_weight)
        self.params = params
        self.pools: list[Pool] = [
            Pool(
                pid=0,
                stake_unit=staking_unit,
                weight=staking_weight,
                last_reward_time=max(now, params.reward_start_time),
            )
        ]
        self.total_weight: int = staking_weight

    # ── lookup ──────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.pools)

    def __iter__(self) -> Iterator[Pool]:
        return iter(self.pools)

    def get(self, pid: int) -> Pool:
        if not isinstance(pid, int) or isinstance(pid, bool) or not 0 <= pid < len(self.pools):
            raise InvalidPool(f"unknown pool {pid!r}")
        return self.pools[pid]

    def get_farm_pool(self, pid: int) -> Pool:
        """Like ``get`` but rejects the lock pool."""
        pool = self.get(pid)
        if pid == 0:
            raise InvalidPool("pool 0 is only reachable through lock staking")
        return pool

    def find_by_unit(self, stake_unit: str) -> Pool | None:
        for pool in self.pools:
            if pool.stake_unit == stake_unit:
                return pool
        return None

    def other_weight(self) -> int:
        return sum(p.weight for p in self.pools[1:])

    # ── mutations ───────────────────────────────────────────────────

    def add_pool(self, weight: int, stake_unit: str, now: int) -> Pool:
        _check_weight(weight)
        if self.find_by_unit(stake_unit) is not None:
            raise DuplicatePool(f"stake unit {stake_unit} is already registered")
        pool = Pool(
            pid=len(self.pools),
            stake_unit=stake_unit,
            weight=weight,
            last_reward_time=max(now, self.params.reward_start_time),
        )
        self.pools.append(pool)
        self.total_weight += weight
        self.rebalance_staking_pool()
        return pool

    def set_pool_weight(self, pid: int, weight: int) -> Pool:
        _check_weight(weight)
        pool = self.get_farm_pool(pid)
        previous = pool.weight
        if previous != weight:
            pool.weight = weight
            self.total_weight = self.total_weight - previous + weight
            self.rebalance_staking_pool()
        return pool

    def rebalance_staking_pool(self) -> None:
        """Recompute pool 0's weight from the other pools."""
        others = self.other_weight()
        if others == 0:
            return
        pct = self.params.staking_weight_percent
        staking = self.pools[0]
        new_weight = others * pct // (100 - pct)
        self.total_weight = self.total_weight - staking.weight + new_weight
        staking.weight = new_weight
