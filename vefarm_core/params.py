"""
Global farm parameters and their bounds.

``FarmParameters`` is the single configuration struct read by the accrual
engine and the lock engine.  The farm mutates it only through one update
path that settles every pool first, so no pool accrues a stale interval
under a new rate.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from vefarm_core.errors import ParameterOutOfRange
from vefarm_core.precision import SCALE, UNITS_PER_TOKEN

DAY: int = 86_400
WEEK: int = 7 * DAY

# ── Bounds ─────────────────────────────────────────────────────────────

# Reward units emitted per second across all pools.
MAX_EMISSION_RATE: int = 100 * UNITS_PER_TOKEN

# Pool 0 share of the combined weight, in whole percent.
MAX_STAKING_PERCENT: int = 30

# Steepness of the decay curve, fixed point.
K_MIN: int = 1 * SCALE
K_MAX: int = 6 * SCALE

# ── Defaults ───────────────────────────────────────────────────────────

DEFAULT_EMISSION_RATE: int = UNITS_PER_TOKEN
DEFAULT_STAKING_PERCENT: int = 25
DEFAULT_STEEPNESS: int = 3 * SCALE
DEFAULT_MIN_LOCK_TIME: int = WEEK
DEFAULT_MAX_LOCK_TIME: int = 365 * DAY


def check_emission_rate(rate: int) -> int:
    if not isinstance(rate, int) or rate < 0 or rate > MAX_EMISSION_RATE:
        raise ParameterOutOfRange(
            f"emission rate {rate} outside [0, {MAX_EMISSION_RATE}]"
        )
    return rate


def check_staking_percent(pct: int) -> int:
    if not isinstance(pct, int) or pct < 0 or pct > MAX_STAKING_PERCENT:
        raise ParameterOutOfRange(
            f"staking weight percent {pct} outside [0, {MAX_STAKING_PERCENT}]"
        )
    return pct


def check_steepness(k: int) -> int:
    if not isinstance(k, int) or k < K_MIN or k > K_MAX:
        raise ParameterOutOfRange(f"steepness {k} outside [{K_MIN}, {K_MAX}]")
    return k


def check_lock_bounds(min_lock: int, max_lock: int) -> None:
    if min_lock <= 0 or max_lock < min_lock:
        raise ParameterOutOfRange(
            f"lock bounds must satisfy 0 < min ({min_lock}) <= max ({max_lock})"
        )


@dataclass
class FarmParameters:
    """Scalar parameters shared by every pool."""
    emission_rate: int = DEFAULT_EMISSION_RATE           # units / second
    staking_weight_percent: int = DEFAULT_STAKING_PERCENT
    steepness: int = DEFAULT_STEEPNESS                   # fixed point
    reward_start_time: int = 0                           # epoch seconds
    min_lock_time: int = DEFAULT_MIN_LOCK_TIME           # seconds
    max_lock_time: int = DEFAULT_MAX_LOCK_TIME           # seconds

    def validate(self) -> None:
        check_emission_rate(self.emission_rate)
        check_staking_percent(self.staking_weight_percent)
        check_steepness(self.steepness)
        check_lock_bounds(self.min_lock_time, self.max_lock_time)
        if self.reward_start_time < 0:
            raise ParameterOutOfRange("reward start time is negative")

    def to_dict(self) -> dict:
        return asdict(self)
