"""
Per-user stake bookkeeping for VeFarm.

Each ``(pid, user)`` pair owns a ``UserStake`` holding the stake amount
and a reward debt.  The debt is the part of ``amount × acc`` already
accounted for, so the claimable reward at any moment is

    pending = amount × acc_reward_per_share // ACC_SCALE − reward_debt

Every path that touches a record settles the pool first, pays the
pending delta, changes the amount, then resets the debt from the new
amount and the fresh accumulator.

Pool 0 records are written here too, but only the lock engine drives
them; the deposit / withdraw paths reject pool 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from vefarm_core.accrual import AccrualEngine, RewardVault
from vefarm_core.errors import InsufficientBalance, InvalidAmount
from vefarm_core.pools import PoolRegistry
from vefarm_core.precision import ACC_SCALE, mul_div
from vefarm_core.tokens import TokenLedger

logger = logging.getLogger("vefarm_engine")


@dataclass
class UserStake:
    """Stake of one user in one pool."""
    amount: int = 0
    reward_debt: int = 0

    def accrued(self, acc_reward_per_share: int) -> int:
        return mul_div(self.amount, acc_reward_per_share, ACC_SCALE)

    def pending(self, acc_reward_per_share: int) -> int:
        return max(0, self.accrued(acc_reward_per_share) - self.reward_debt)

    def reset_debt(self, acc_reward_per_share: int) -> None:
        self.reward_debt = self.accrued(acc_reward_per_share)

    def to_dict(self) -> dict:
        return {"amount": self.amount, "reward_debt": self.reward_debt}


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise InvalidAmount(f"amount must be a non-negative integer, got {amount!r}")


class StakeLedger:
    """Owns every ``UserStake`` and runs the farm-pool deposit paths."""

    def __init__(
        self,
        registry: PoolRegistry,
        accrual: AccrualEngine,
        vault: RewardVault,
        stake_token: Callable[[str], TokenLedger],
        farm_account: str,
    ):
        self.registry = registry
        self.accrual = accrual
        self.vault = vault
        self.stake_token = stake_token
        self.farm_account = farm_account
        self.stakes: dict[tuple[int, str], UserStake] = {}

    # ── records ─────────────────────────────────────────────────────

    def get(self, pid: int, user: str) -> UserStake:
        """Existing record, or an unsaved empty one."""
        return self.stakes.get((pid, user)) or UserStake()

    def record(self, pid: int, user: str) -> UserStake:
        """Existing record, created on first touch."""
        key = (pid, user)
        stake = self.stakes.get(key)
        if stake is None:
            stake = self.stakes[key] = UserStake()
        return stake

    def users_of(self, pid: int) -> list[str]:
        return [user for (p, user) in self.stakes if p == pid]

    # ── queries ─────────────────────────────────────────────────────

    def pending_reward(self, pid: int, user: str, now: int) -> int:
        """Reward a settle-then-claim at ``now`` would produce."""
        self.registry.get(pid)
        acc = self.accrual.preview_acc_reward_per_share(pid, now)
        return self.get(pid, user).pending(acc)

    # ── farm pool paths (pid != 0) ──────────────────────────────────

    def deposit(self, pid: int, user: str, amount: int, now: int) -> int:
        """Deposit stake units; ``amount == 0`` only harvests.  Returns paid."""
        _check_amount(amount)
        pool = self.registry.get_farm_pool(pid)
        token = self.stake_token(pool.stake_unit)
        if amount > token.balance_of(user):
            raise InsufficientBalance(
                f"{user} holds {token.balance_of(user)} {pool.stake_unit}, "
                f"cannot deposit {amount}"
            )

        self.accrual.settle(pid, now)
        stake = self.record(pid, user)
        paid = 0
        if stake.amount > 0:
            paid = self.vault.safe_transfer(user, stake.pending(pool.acc_reward_per_share))
        if amount > 0:
            token.transfer_from(user, self.farm_account, amount)
            stake.amount += amount
        stake.reset_debt(pool.acc_reward_per_share)
        logger.debug(
            f"Deposit amount={amount} paid={paid}", extra={"pid": pid, "user": user}
        )
        return paid

    def withdraw(self, pid: int, user: str, amount: int, now: int) -> int:
        """Withdraw stake units and harvest.  Returns the reward paid."""
        _check_amount(amount)
        pool = self.registry.get_farm_pool(pid)
        stake = self.get(pid, user)
        if amount > stake.amount:
            raise InsufficientBalance(
                f"{user} has {stake.amount} staked in pool {pid}, "
                f"cannot withdraw {amount}"
            )

        self.accrual.settle(pid, now)
        stake = self.record(pid, user)
        paid = self.vault.safe_transfer(user, stake.pending(pool.acc_reward_per_share))
        if amount > 0:
            stake.amount -= amount
            self.stake_token(pool.stake_unit).transfer(self.farm_account, user, amount)
        stake.reset_debt(pool.acc_reward_per_share)
        logger.debug(
            f"Withdraw amount={amount} paid={paid}", extra={"pid": pid, "user": user}
        )
        return paid

    def emergency_withdraw(self, pid: int, user: str) -> int:
        """Return principal only, forfeiting pending reward.  Returns amount."""
        pool = self.registry.get_farm_pool(pid)
        stake = self.get(pid, user)
        amount = stake.amount
        if (pid, user) in self.stakes:
            stake.amount = 0
            stake.reward_debt = 0
        if amount > 0:
            self.stake_token(pool.stake_unit).transfer(self.farm_account, user, amount)
        logger.info(
            f"Emergency withdraw amount={amount}", extra={"pid": pid, "user": user}
        )
        return amount
