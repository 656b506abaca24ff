"""
Fixed-point arithmetic for VeFarm.

Every amount in the farm is a Python ``int`` counted in base units of
its token.  The reward token uses 18 decimals:

    1 token = 1_000_000_000_000_000_000 units (smallest indivisible unit)

Ratios (vote power, steepness) and the reward-per-share accumulator use
the same 18-decimal fixed-point scale, so ``SCALE`` represents 1.0.

All helpers floor toward zero and reject values that would not fit in an
unsigned 256-bit word, which keeps results bit-identical to any other
implementation that stores state in 256-bit slots.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation

# Number of decimal places of the reward token.
REWARD_DECIMALS: int = 18

# Base units per whole token.
UNITS_PER_TOKEN: int = 10 ** REWARD_DECIMALS

# Fixed-point one (1.0).
SCALE: int = 10 ** 18

# Precision of ``acc_reward_per_share``.
ACC_SCALE: int = 10 ** 18

MAX_UINT256: int = 2 ** 256 - 1

# e in fixed point, floor(e * 1e18).
E_FIXED: int = 2_718_281_828_459_045_235

# exp() refuses inputs above e^40 to keep intermediates bounded.
MAX_EXP_INPUT: int = 40 * SCALE


class FixedPointOverflow(ArithmeticError):
    """Raised when an intermediate value leaves the unsigned 256-bit range."""


def _check_word(value: int, what: str) -> int:
    if value < 0:
        raise FixedPointOverflow(f"{what} is negative: {value}")
    if value > MAX_UINT256:
        raise FixedPointOverflow(f"{what} exceeds 256 bits")
    return value


def mul_div(a: int, b: int, denominator: int) -> int:
    """Return ``floor(a * b / denominator)`` with overflow checks.

    >>> mul_div(500, 10 ** 18, 1000)
    500000000000000000
    """
    if denominator == 0:
        raise ZeroDivisionError("mul_div denominator is zero")
    _check_word(a, "mul_div operand")
    _check_word(b, "mul_div operand")
    _check_word(denominator, "mul_div denominator")
    product = _check_word(a * b, "mul_div product")
    return product // denominator


def fixed_mul(a: int, b: int) -> int:
    """Multiply two fixed-point values."""
    return mul_div(a, b, SCALE)


def fixed_div(a: int, b: int) -> int:
    """Divide two fixed-point values."""
    return mul_div(a, SCALE, b)


def exp(x: int) -> int:
    """
    ``e^x`` for a non-negative fixed-point ``x``.

    The integer part is applied as repeated multiplication by ``E_FIXED``;
    the fractional part uses the Taylor series, which converges in a few
    dozen terms because the fraction is below 1.0.
    """
    if x < 0:
        raise FixedPointOverflow(f"exp input is negative: {x}")
    if x > MAX_EXP_INPUT:
        raise FixedPointOverflow(f"exp input {x} above {MAX_EXP_INPUT}")

    whole, frac = divmod(x, SCALE)

    result = SCALE
    term = SCALE
    i = 1
    while True:
        term = term * frac // (SCALE * i)
        if term == 0:
            break
        result += term
        i += 1

    for _ in range(whole):
        result = result * E_FIXED // SCALE
    return _check_word(result, "exp result")


def exp_neg(x: int) -> int:
    """``e^-x`` for a non-negative fixed-point ``x``; ``exp_neg(0) == SCALE``."""
    return SCALE * SCALE // exp(x)


def to_fixed(value: str | int | float | Decimal) -> int:
    """Convert a human decimal (``"3.5"``) to an 18-decimal fixed-point int."""
    try:
        dec = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal number: {value!r}") from exc
    if not dec.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return int(dec * SCALE)


def to_units(value: str | int | Decimal) -> int:
    """Convert a whole-token decimal string to base units, flooring dust."""
    return to_fixed(value)


def format_amount(units: int, symbol: str = "VEF") -> str:
    """Return a human-readable amount with all 18 decimals."""
    whole, frac = divmod(units, UNITS_PER_TOKEN)
    return f"{whole}.{frac:0{REWARD_DECIMALS}d} {symbol}"
