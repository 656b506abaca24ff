"""
Post-transaction invariant checks for VeFarm.

  - Pool weights sum to ``total_weight``
  - Pools are never removed; accumulators and accrual clocks never go back
  - ``locked_amount == 0`` implies ``unlock_time == 0``
  - ``total_locked_amount`` equals the sum of all locks
  - The locked-user counter equals the number of non-empty locks
  - Each pool 0 stake equals its lock
  - No stake owes a negative reward (``reward_debt <= amount × acc``)
  - Reward supply stays within its cap; the farm can cover every
    recorded stake and all locked principal

The farm captures a snapshot before each transaction and verifies after
it.  If any invariant fails, the transaction is rolled back and rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FarmSnapshot:
    """Snapshot of the monotone fields before a transaction."""
    pool_count: int = 0
    acc_reward_per_share: list[int] = field(default_factory=list)
    last_reward_time: list[int] = field(default_factory=list)
    unlock_times: dict[str, int] = field(default_factory=dict)


class InvariantChecker:
    """
    Captures a pre-transaction snapshot of the farm and validates
    invariants after the transaction is applied.
    """

    def __init__(self):
        self._snapshot: FarmSnapshot | None = None

    def capture(self, farm) -> None:
        pools = farm.registry.pools
        self._snapshot = FarmSnapshot(
            pool_count=len(pools),
            acc_reward_per_share=[p.acc_reward_per_share for p in pools],
            last_reward_time=[p.last_reward_time for p in pools],
            unlock_times={
                user: lock.unlock_time
                for user, lock in farm.lock_engine.locks.items()
                if lock.locked_amount > 0
            },
        )

    def verify(self, farm) -> tuple[bool, str]:
        """
        Verify all invariants against the current farm state.
        Returns (passed, error_message).
        """
        checks = [
            self._check_weight_sum,
            self._check_pools_monotone,
            self._check_lock_records,
            self._check_lock_totals,
            self._check_lock_stakes,
            self._check_reward_debt,
            self._check_supply,
            self._check_solvency,
        ]
        errors: list[str] = []
        for check in checks:
            ok, msg = check(farm)
            if not ok:
                errors.append(msg)

        self._snapshot = None
        if errors:
            return False, "; ".join(errors)
        return True, ""

    def _check_weight_sum(self, farm) -> tuple[bool, str]:
        total = sum(p.weight for p in farm.registry.pools)
        if total != farm.registry.total_weight:
            return (False,
                    f"Weight mismatch: pools sum to {total}, "
                    f"total_weight={farm.registry.total_weight}")
        return True, ""

    def _check_pools_monotone(self, farm) -> tuple[bool, str]:
        snap = self._snapshot
        if snap is None:
            return True, ""
        pools = farm.registry.pools
        if len(pools) < snap.pool_count:
            return False, f"Pool count dropped: {snap.pool_count} -> {len(pools)}"
        for pid in range(snap.pool_count):
            if pools[pid].acc_reward_per_share < snap.acc_reward_per_share[pid]:
                return (False,
                        f"Accumulator decreased on pool {pid}: "
                        f"{snap.acc_reward_per_share[pid]} -> "
                        f"{pools[pid].acc_reward_per_share}")
            if pools[pid].last_reward_time < snap.last_reward_time[pid]:
                return False, f"Accrual clock moved back on pool {pid}"
        for user, before in snap.unlock_times.items():
            lock = farm.lock_engine.locks.get(user)
            if lock is not None and lock.locked_amount > 0 and lock.unlock_time < before:
                return (False,
                        f"Unlock time shortened for {user}: {before} -> {lock.unlock_time}")
        return True, ""

    def _check_lock_records(self, farm) -> tuple[bool, str]:
        for user, lock in farm.lock_engine.locks.items():
            if lock.locked_amount < 0:
                return False, f"Negative lock for {user}: {lock.locked_amount}"
            if lock.locked_amount == 0 and lock.unlock_time != 0:
                return False, f"Empty lock for {user} keeps unlock_time {lock.unlock_time}"
        return True, ""

    def _check_lock_totals(self, farm) -> tuple[bool, str]:
        engine = farm.lock_engine
        total = sum(lock.locked_amount for lock in engine.locks.values())
        if total != engine.total_locked_amount:
            return (False,
                    f"Locked total mismatch: sum={total} "
                    f"total_locked_amount={engine.total_locked_amount}")
        users = sum(1 for lock in engine.locks.values() if lock.locked_amount > 0)
        if users != engine.locked_user_count:
            return (False,
                    f"Locked user count mismatch: {users} locks, "
                    f"counter={engine.locked_user_count}")
        return True, ""

    def _check_lock_stakes(self, farm) -> tuple[bool, str]:
        for user, lock in farm.lock_engine.locks.items():
            staked = farm.stake_ledger.get(0, user).amount
            if staked != lock.locked_amount:
                return (False,
                        f"Pool 0 stake for {user} is {staked} but lock holds "
                        f"{lock.locked_amount}")
        return True, ""

    def _check_reward_debt(self, farm) -> tuple[bool, str]:
        pools = farm.registry.pools
        for (pid, user), stake in farm.stake_ledger.stakes.items():
            if stake.amount < 0:
                return False, f"Negative stake for {user} in pool {pid}"
            if stake.reward_debt > stake.accrued(pools[pid].acc_reward_per_share):
                return (False,
                        f"Reward debt of {user} in pool {pid} exceeds entitlement")
        return True, ""

    def _check_supply(self, farm) -> tuple[bool, str]:
        reward = farm.reward
        if reward.total_supply() > reward.max_supply():
            return (False,
                    f"Reward supply {reward.total_supply()} above cap "
                    f"{reward.max_supply()}")
        return True, ""

    def _check_solvency(self, farm) -> tuple[bool, str]:
        account = farm.farm_account
        if farm.reward.balance_of(account) < farm.lock_engine.total_locked_amount:
            return False, "Farm reward balance below locked principal"
        for pool in farm.registry.pools[1:]:
            staked = sum(
                stake.amount for (pid, _), stake in farm.stake_ledger.stakes.items()
                if pid == pool.pid
            )
            held = farm.stake_tokens[pool.stake_unit].balance_of(account)
            if held < staked:
                return (False,
                        f"Pool {pool.pid} holds {held} {pool.stake_unit} "
                        f"but records {staked}")
        return True, ""
