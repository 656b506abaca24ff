"""
Vote-escrow decay curve for pool 0 locks.

Remaining lock time is normalised to ``x ∈ [0, 1]`` as a fraction of the
maximum lock time, then mapped through a normalised exponential:

    ve_power(x)   = (1 − e^(−k·x)) / (1 − e^(−k))
    ve_balance    = locked_amount × ve_power(x)

The normalisation pins both ends of the curve regardless of ``k``:

    x = 1  (full duration left)   →  ve_balance == locked_amount
    x = 0  (at or past unlock)    →  ve_balance == 0

Larger ``k`` keeps power close to 1.0 for longer and drops it sharply
near expiry.  Everything is computed in 18-decimal fixed point.
"""

from __future__ import annotations

from vefarm_core.params import check_steepness
from vefarm_core.precision import SCALE, exp_neg, fixed_mul, mul_div


def normalized_remaining(remaining_time: int, max_lock_time: int) -> int:
    """``remaining / max_lock`` clamped to ``[0, SCALE]``."""
    if max_lock_time <= 0 or remaining_time <= 0:
        return 0
    if remaining_time >= max_lock_time:
        return SCALE
    return mul_div(remaining_time, SCALE, max_lock_time)


def ve_power(remaining_time: int, max_lock_time: int, k: int) -> int:
    """Vote power ratio in fixed point: 0 at expiry, ``SCALE`` at full lock."""
    check_steepness(k)
    x = normalized_remaining(remaining_time, max_lock_time)
    if x == 0:
        return 0
    if x == SCALE:
        return SCALE
    numerator = SCALE - exp_neg(fixed_mul(k, x))
    denominator = SCALE - exp_neg(k)
    return min(SCALE, mul_div(numerator, SCALE, denominator))


def ve_balance(
    locked_amount: int,
    remaining_time: int,
    max_lock_time: int,
    k: int,
) -> int:
    """Decayed balance of a lock; never exceeds ``locked_amount``."""
    if locked_amount <= 0:
        return 0
    power = ve_power(remaining_time, max_lock_time, k)
    if power == SCALE:
        return locked_amount
    return mul_div(locked_amount, power, SCALE)


def scale_reward(pending: int, power: int) -> tuple[int, int]:
    """
    Split a pending reward by vote power.

    Returns ``(paid, forfeited)`` with ``paid + forfeited == pending``.
    """
    if pending <= 0:
        return 0, 0
    paid = mul_div(pending, power, SCALE)
    return paid, pending - paid
