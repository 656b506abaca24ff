"""
VeFarm - time-weighted reward distribution with vote-escrowed locking.

Key features:
- Lazy reward-per-share accrual across weighted pools
- Supply-capped minting against a capped reward token
- Pool 0 lock staking with an exponential vote-escrow decay curve
- Exact fixed-point arithmetic (no floating point in accounting)
- Atomic, reentrancy-guarded transactions with post-transaction invariants
- SQLite persistence and an aiohttp REST API
"""

__version__ = "0.3.0"
__all__ = [
    "precision",
    "errors",
    "params",
    "tokens",
    "decay",
    "pools",
    "accrual",
    "stakes",
    "locks",
    "farm",
    "invariants",
    "storage",
    "config",
    "api",
]
