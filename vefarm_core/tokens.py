"""
In-memory fungible token ledgers used by VeFarm.

Two flavours:
  - ``TokenLedger``  — plain transferable balances (stake units / LP tokens)
  - ``RewardToken``  — adds a hard supply cap plus mint and burn

The farm only relies on the ``RewardAsset`` interface below, so a
different backend (an on-chain token client, a database ledger) can be
dropped in.  The in-memory ledgers additionally support ``snapshot()`` /
``restore()``, which the farm uses to roll token movements back together
with its own state when a transaction fails.

Receive hooks model tokens that call back into the recipient on
transfer.  A hook runs after the recipient is credited and may raise,
which aborts the transfer and whatever transaction issued it.
"""

from __future__ import annotations

from typing import Callable, Protocol

from vefarm_core.errors import (
    InsufficientBalance,
    InvalidAmount,
    ParameterOutOfRange,
    SupplyCapExceeded,
)

ReceiveHook = Callable[[str, str, int], None]  # (symbol, sender, amount)


class RewardAsset(Protocol):
    """Interface the farm needs from its reward token."""

    symbol: str

    def mint(self, to: str, amount: int) -> None: ...
    def burn(self, holder: str, amount: int) -> None: ...
    def transfer(self, sender: str, recipient: str, amount: int) -> None: ...
    def transfer_from(self, owner: str, recipient: str, amount: int) -> None: ...
    def balance_of(self, holder: str) -> int: ...
    def total_supply(self) -> int: ...
    def max_supply(self) -> int: ...
    def decrease_max_supply(self, new_cap: int) -> None: ...


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
        raise InvalidAmount(f"amount must be a non-negative integer, got {amount!r}")


class TokenLedger:
    """Balances of a single fungible token keyed by holder id."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        self.balances: dict[str, int] = {}
        self._supply: int = 0
        self.hooks: dict[str, ReceiveHook] = {}

    # ── queries ─────────────────────────────────────────────────────

    def balance_of(self, holder: str) -> int:
        return self.balances.get(holder, 0)

    def total_supply(self) -> int:
        return self._supply

    # ── movements ───────────────────────────────────────────────────

    def credit(self, holder: str, amount: int) -> None:
        """Create ``amount`` out of nothing for ``holder`` (genesis / faucet)."""
        _check_amount(amount)
        self.balances[holder] = self.balance_of(holder) + amount
        self._supply += amount

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        _check_amount(amount)
        have = self.balance_of(sender)
        if amount > have:
            raise InsufficientBalance(
                f"{sender} holds {have} {self.symbol}, cannot send {amount}"
            )
        if amount == 0:
            return
        self.balances[sender] = have - amount
        self.balances[recipient] = self.balance_of(recipient) + amount
        hook = self.hooks.get(recipient)
        if hook is not None:
            hook(self.symbol, sender, amount)

    def transfer_from(self, owner: str, recipient: str, amount: int) -> None:
        # Allowances belong to access control, which lives outside the farm.
        self.transfer(owner, recipient, amount)

    def on_receive(self, holder: str, hook: ReceiveHook | None) -> None:
        """Install (or with ``None`` remove) a receive hook for ``holder``."""
        if hook is None:
            self.hooks.pop(holder, None)
        else:
            self.hooks[holder] = hook

    # ── rollback support ────────────────────────────────────────────

    def snapshot(self) -> dict:
        return {"balances": dict(self.balances), "supply": self._supply}

    def restore(self, snap: dict) -> None:
        self.balances = dict(snap["balances"])
        self._supply = snap["supply"]

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "total_supply": self._supply,
            "holders": len([b for b in self.balances.values() if b > 0]),
        }


class RewardToken(TokenLedger):
    """Capped, mintable and burnable reward token."""

    def __init__(self, symbol: str, max_supply: int):
        super().__init__(symbol)
        _check_amount(max_supply)
        self._max_supply = max_supply
        self.total_minted: int = 0
        self.total_burned: int = 0

    def max_supply(self) -> int:
        return self._max_supply

    def mintable(self) -> int:
        return max(0, self._max_supply - self._supply)

    def credit(self, holder: str, amount: int) -> None:
        if self._supply + amount > self._max_supply:
            raise SupplyCapExceeded(
                f"credit of {amount} would exceed cap {self._max_supply}"
            )
        super().credit(holder, amount)

    def mint(self, to: str, amount: int) -> None:
        _check_amount(amount)
        if self._supply + amount > self._max_supply:
            raise SupplyCapExceeded(
                f"mint of {amount} would exceed cap {self._max_supply} "
                f"(supply {self._supply})"
            )
        self.balances[to] = self.balance_of(to) + amount
        self._supply += amount
        self.total_minted += amount

    def burn(self, holder: str, amount: int) -> None:
        _check_amount(amount)
        have = self.balance_of(holder)
        if amount > have:
            raise InsufficientBalance(
                f"{holder} holds {have} {self.symbol}, cannot burn {amount}"
            )
        self.balances[holder] = have - amount
        self._supply -= amount
        self.total_burned += amount

    def decrease_max_supply(self, new_cap: int) -> None:
        _check_amount(new_cap)
        if new_cap > self._max_supply:
            raise ParameterOutOfRange(
                f"new cap {new_cap} is above the current cap {self._max_supply}"
            )
        if new_cap < self._supply:
            raise ParameterOutOfRange(
                f"new cap {new_cap} is below the current supply {self._supply}"
            )
        self._max_supply = new_cap

    def snapshot(self) -> dict:
        snap = super().snapshot()
        snap.update(
            max_supply=self._max_supply,
            total_minted=self.total_minted,
            total_burned=self.total_burned,
        )
        return snap

    def restore(self, snap: dict) -> None:
        super().restore(snap)
        self._max_supply = snap["max_supply"]
        self.total_minted = snap["total_minted"]
        self.total_burned = snap["total_burned"]

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(
            max_supply=self._max_supply,
            total_minted=self.total_minted,
            total_burned=self.total_burned,
        )
        return d
