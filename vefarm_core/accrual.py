"""
Lazy reward accrual for VeFarm pools.

Each pool keeps a reward-per-share accumulator that is only advanced when
something touches the pool.  Settling a pool over ``elapsed`` seconds:

    owed    = elapsed × emission_rate × pool.weight // total_weight
    minted  = min(owed, max_supply − total_supply)
    acc    += minted × ACC_SCALE // backing_supply

``backing_supply`` is the stake-unit balance the farm holds for the pool,
or the total locked amount for pool 0.  With no backing the clock still
advances but nothing is minted, so stake arriving later earns nothing
retroactively.

The ``RewardVault`` pays rewards out of the farm's reward-token balance.
Locked principal of pool 0 sits in the same balance and is never used to
cover a reward shortfall.
"""

from __future__ import annotations

import logging
from typing import Callable

from vefarm_core.params import FarmParameters
from vefarm_core.pools import Pool, PoolRegistry
from vefarm_core.precision import ACC_SCALE, mul_div
from vefarm_core.tokens import RewardAsset

logger = logging.getLogger("vefarm_engine")


class AccrualEngine:
    """Advances pool accumulators and mints the rewards they represent."""

    def __init__(
        self,
        registry: PoolRegistry,
        params: FarmParameters,
        reward: RewardAsset,
        farm_account: str,
        backing_supply: Callable[[Pool], int],
    ):
        self.registry = registry
        self.params = params
        self.reward = reward
        self.farm_account = farm_account
        self.backing_supply = backing_supply

    def mintable(self) -> int:
        return max(0, self.reward.max_supply() - self.reward.total_supply())

    def reward_for(self, pool: Pool, now: int) -> int:
        """Reward owed to ``pool`` since its last settlement, capped by supply."""
        elapsed = now - pool.last_reward_time
        total_weight = self.registry.total_weight
        if elapsed <= 0 or pool.weight == 0 or total_weight == 0:
            return 0
        owed = elapsed * self.params.emission_rate * pool.weight // total_weight
        return min(owed, self.mintable())

    def preview_acc_reward_per_share(self, pid: int, now: int) -> int:
        """Accumulator value a settlement at ``now`` would produce."""
        pool = self.registry.get(pid)
        if now <= pool.last_reward_time:
            return pool.acc_reward_per_share
        supply = self.backing_supply(pool)
        if supply == 0:
            return pool.acc_reward_per_share
        reward = self.reward_for(pool, now)
        return pool.acc_reward_per_share + mul_div(reward, ACC_SCALE, supply)

    def settle(self, pid: int, now: int) -> int:
        """Bring ``pid`` up to ``now``.  Returns the amount minted."""
        pool = self.registry.get(pid)
        if now <= pool.last_reward_time:
            return 0
        supply = self.backing_supply(pool)
        if supply == 0:
            pool.last_reward_time = now
            return 0

        minted = self.reward_for(pool, now)
        if minted > 0:
            # SupplyCapExceeded propagates; the farm rolls the tx back.
            self.reward.mint(self.farm_account, minted)
            pool.acc_reward_per_share += mul_div(minted, ACC_SCALE, supply)
        pool.last_reward_time = now
        logger.debug(
            f"Settled minted={minted} supply={supply} acc={pool.acc_reward_per_share}",
            extra={"pid": pid},
        )
        return minted

    def mass_settle(self, now: int) -> int:
        """Settle every pool in index order.  Returns the total minted."""
        return sum(self.settle(pool.pid, now) for pool in list(self.registry))


class RewardVault:
    """Pays out and burns rewards held by the farm account."""

    def __init__(
        self,
        reward: RewardAsset,
        farm_account: str,
        locked_supply: Callable[[], int],
    ):
        self.reward = reward
        self.farm_account = farm_account
        self.locked_supply = locked_supply
        self.total_paid: int = 0
        self.total_forfeited: int = 0

    def available(self) -> int:
        """Reward balance not backing locked principal."""
        return max(0, self.reward.balance_of(self.farm_account) - self.locked_supply())

    def safe_transfer(self, to: str, amount: int) -> int:
        """Pay up to ``amount``; never more than is available.  Returns paid."""
        paid = min(amount, self.available())
        if paid > 0:
            self.reward.transfer(self.farm_account, to, paid)
            self.total_paid += paid
        return paid

    def burn(self, amount: int) -> int:
        """Destroy forfeited reward.  Returns the amount burned."""
        burned = min(amount, self.available())
        if burned > 0:
            self.reward.burn(self.farm_account, burned)
            self.total_forfeited += burned
        return burned
