"""
Pool 0 lock staking for VeFarm.

Holders lock the reward token for ``min_lock_time … max_lock_time``
seconds.  While a lock is running its pool 0 rewards are scaled by the
vote power of the remaining time (see ``decay``); the unscaled remainder
is burned.  Once the unlock time passes the lock is *expired*: it keeps
its principal but any reward accrued since is burned in full, so sitting
on an expired lock earns nothing.

Lock lifecycle
──────────────
    UNLOCKED ──enter_staking──▶ ACTIVE ──(time passes)──▶ EXPIRED
        ▲                        │  ▲                        │
        │                        │  └──extend / enter────────┤
        └────────────leave_staking (expired only)────────────┘

``leave_staking`` on an ACTIVE lock only claims (scaled) rewards; the
principal stays locked until expiry.  Unlock times only ever move
forward while a lock holds principal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from vefarm_core.accrual import AccrualEngine, RewardVault
from vefarm_core.decay import scale_reward, ve_balance, ve_power
from vefarm_core.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidLockDuration,
)
from vefarm_core.params import FarmParameters
from vefarm_core.pools import PoolRegistry
from vefarm_core.stakes import StakeLedger, UserStake
from vefarm_core.tokens import RewardAsset

logger = logging.getLogger("vefarm_engine")

STAKING_PID = 0


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class Lock:
    """Lock record of one user."""
    locked_amount: int = 0
    unlock_time: int = 0  # 0 while nothing is locked

    def state(self, now: int) -> LockState:
        if self.locked_amount == 0:
            return LockState.UNLOCKED
        if now >= self.unlock_time:
            return LockState.EXPIRED
        return LockState.ACTIVE

    def remaining(self, now: int) -> int:
        return max(0, self.unlock_time - now)

    def to_dict(self) -> dict:
        return {"locked_amount": self.locked_amount, "unlock_time": self.unlock_time}


@dataclass
class LockResult:
    """Outcome of one lock operation."""
    paid: int = 0        # reward sent to the user
    forfeited: int = 0   # reward burned
    released: int = 0    # principal returned
    unlock_time: int = 0

    def to_dict(self) -> dict:
        return {
            "paid": self.paid,
            "forfeited": self.forfeited,
            "released": self.released,
            "unlock_time": self.unlock_time,
        }


class LockEngine:
    """Owns every ``Lock`` plus the aggregate locked amount and user count."""

    def __init__(
        self,
        registry: PoolRegistry,
        accrual: AccrualEngine,
        vault: RewardVault,
        stakes: StakeLedger,
        reward: RewardAsset,
        params: FarmParameters,
        farm_account: str,
    ):
        self.registry = registry
        self.accrual = accrual
        self.vault = vault
        self.stakes = stakes
        self.reward = reward
        self.params = params
        self.farm_account = farm_account
        self.locks: dict[str, Lock] = {}
        self.total_locked_amount: int = 0
        self.locked_user_count: int = 0

    # ── queries ─────────────────────────────────────────────────────

    def get(self, user: str) -> Lock:
        return self.locks.get(user) or Lock()

    def state_of(self, user: str, now: int) -> LockState:
        return self.get(user).state(now)

    def ve_power(self, user: str, now: int) -> int:
        lock = self.get(user)
        if lock.state(now) is not LockState.ACTIVE:
            return 0
        return ve_power(lock.remaining(now), self.params.max_lock_time, self.params.steepness)

    def ve_balance(self, user: str, now: int) -> int:
        lock = self.get(user)
        if lock.state(now) is not LockState.ACTIVE:
            return 0
        return ve_balance(
            lock.locked_amount,
            lock.remaining(now),
            self.params.max_lock_time,
            self.params.steepness,
        )

    def decayed_pending_reward(self, user: str, now: int) -> int:
        """Part of the pending pool 0 reward a claim at ``now`` would pay."""
        pending = self.stakes.pending_reward(STAKING_PID, user, now)
        paid, _ = scale_reward(pending, self.ve_power(user, now))
        return paid

    # ── helpers ─────────────────────────────────────────────────────

    def _check_duration(self, duration: int) -> None:
        lo, hi = self.params.min_lock_time, self.params.max_lock_time
        if not isinstance(duration, int) or isinstance(duration, bool) or not lo <= duration <= hi:
            raise InvalidLockDuration(f"lock duration {duration!r} outside [{lo}, {hi}]")

    def _require_lock(self, user: str) -> Lock:
        lock = self.locks.get(user)
        if lock is None or lock.locked_amount == 0:
            raise InsufficientBalance(f"{user} has no locked stake")
        return lock

    def _claim(self, user: str, stake: UserStake, lock: Lock, now: int) -> tuple[int, int]:
        """Pay the vote-power share of pending reward and burn the rest."""
        pending = stake.pending(self.registry.get(STAKING_PID).acc_reward_per_share)
        if pending == 0:
            return 0, 0
        if lock.state(now) is LockState.ACTIVE:
            power = ve_power(lock.remaining(now), self.params.max_lock_time, self.params.steepness)
            owed, forfeit = scale_reward(pending, power)
        else:
            owed, forfeit = 0, pending
        paid = self.vault.safe_transfer(user, owed) if owed else 0
        burned = self.vault.burn(forfeit) if forfeit else 0
        return paid, burned

    # ── operations ──────────────────────────────────────────────────

    def enter_staking(self, user: str, amount: int, duration: int, now: int) -> LockResult:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise InvalidAmount(f"amount must be a non-negative integer, got {amount!r}")
        self._check_duration(duration)
        existing = self.get(user).locked_amount
        if existing == 0 and amount == 0:
            raise InvalidAmount("a new lock needs a positive amount")
        if amount > self.reward.balance_of(user):
            raise InsufficientBalance(
                f"{user} holds {self.reward.balance_of(user)}, cannot lock {amount}"
            )

        self.accrual.settle(STAKING_PID, now)
        pool = self.registry.get(STAKING_PID)
        stake = self.stakes.record(STAKING_PID, user)
        lock = self.locks.setdefault(user, Lock())

        paid = burned = 0
        if existing > 0:
            paid, burned = self._claim(user, stake, lock, now)
        if amount > 0:
            self.reward.transfer_from(user, self.farm_account, amount)
            stake.amount += amount
            lock.locked_amount += amount
            self.total_locked_amount += amount
        if existing == 0:
            self.locked_user_count += 1
        lock.unlock_time = max(lock.unlock_time, now + duration)
        stake.reset_debt(pool.acc_reward_per_share)

        logger.info(
            f"Lock entered amount={amount} unlock={lock.unlock_time} "
            f"paid={paid} burned={burned}",
            extra={"pid": STAKING_PID, "user": user},
        )
        return LockResult(paid=paid, forfeited=burned, unlock_time=lock.unlock_time)

    def leave_staking(self, user: str, now: int) -> LockResult:
        lock = self._require_lock(user)

        self.accrual.settle(STAKING_PID, now)
        pool = self.registry.get(STAKING_PID)
        stake = self.stakes.record(STAKING_PID, user)

        if lock.state(now) is LockState.ACTIVE:
            paid, burned = self._claim(user, stake, lock, now)
            stake.reset_debt(pool.acc_reward_per_share)
            logger.debug(
                f"Lock claim paid={paid} burned={burned}",
                extra={"pid": STAKING_PID, "user": user},
            )
            return LockResult(paid=paid, forfeited=burned, unlock_time=lock.unlock_time)

        # Expired: nothing earned since expiry is paid, principal released.
        _, burned = self._claim(user, stake, lock, now)
        principal = lock.locked_amount
        stake.amount = 0
        stake.reward_debt = 0
        lock.locked_amount = 0
        lock.unlock_time = 0
        self.total_locked_amount -= principal
        self.locked_user_count -= 1
        self.reward.transfer(self.farm_account, user, principal)

        logger.info(
            f"Lock released principal={principal} burned={burned}",
            extra={"pid": STAKING_PID, "user": user},
        )
        return LockResult(forfeited=burned, released=principal)

    def extend_lock_time(self, user: str, extra_duration: int, now: int) -> LockResult:
        lock = self._require_lock(user)
        self._check_duration(extra_duration)
        new_unlock = now + extra_duration
        if new_unlock <= lock.unlock_time:
            raise InvalidLockDuration(
                f"new unlock time {new_unlock} does not extend {lock.unlock_time}"
            )

        self.accrual.settle(STAKING_PID, now)
        pool = self.registry.get(STAKING_PID)
        stake = self.stakes.record(STAKING_PID, user)
        paid, burned = self._claim(user, stake, lock, now)
        lock.unlock_time = new_unlock
        stake.reset_debt(pool.acc_reward_per_share)

        logger.info(
            f"Lock extended unlock={new_unlock}",
            extra={"pid": STAKING_PID, "user": user},
        )
        return LockResult(paid=paid, forfeited=burned, unlock_time=new_unlock)
