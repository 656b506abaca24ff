"""
Shared pytest fixtures for the VeFarm test suite.
"""

import pytest

from vefarm_core.farm import Farm
from vefarm_core.params import DAY, WEEK, FarmParameters
from vefarm_core.precision import UNITS_PER_TOKEN
from vefarm_core.tokens import RewardToken, TokenLedger

T0 = 1_700_000_000
MAX_LOCK = 365 * DAY


class FakeClock:
    """Deterministic clock; call it to read, ``advance`` to move forward."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reward():
    """Reward token with a 1bn-token cap and 10k tokens each for alice and bob."""
    token = RewardToken("VEF", max_supply=1_000_000_000 * UNITS_PER_TOKEN)
    token.credit("alice", 10_000 * UNITS_PER_TOKEN)
    token.credit("bob", 10_000 * UNITS_PER_TOKEN)
    return token


@pytest.fixture
def lp():
    """LP stake unit with balances for alice and bob."""
    token = TokenLedger("LP")
    token.credit("alice", 1_000 * UNITS_PER_TOKEN)
    token.credit("bob", 1_000 * UNITS_PER_TOKEN)
    return token


@pytest.fixture
def params():
    return FarmParameters(
        emission_rate=UNITS_PER_TOKEN,
        staking_weight_percent=25,
        min_lock_time=WEEK,
        max_lock_time=MAX_LOCK,
    )


@pytest.fixture
def farm(reward, params, clock):
    """Farm with only the lock pool (weight 1000)."""
    return Farm(reward, params, clock=clock)


@pytest.fixture
def lp_farm(farm, lp):
    """Farm with pool 1 (weight 300) staking LP; pool 0 rebalanced to 100."""
    farm.add_pool(300, lp)
    return farm


@pytest.fixture
def simple_farm(clock):
    """
    Farm whose lock pool carries no weight and whose only farm pool
    earns 5 base units per second.
    """
    reward = RewardToken("VEF", max_supply=10 ** 30)
    lp = TokenLedger("LP")
    lp.credit("alice", 1_000)
    lp.credit("bob", 1_000)
    params = FarmParameters(emission_rate=5, staking_weight_percent=0)
    farm = Farm(reward, params, staking_pool_weight=0, clock=clock)
    farm.add_pool(1000, lp)
    return farm
