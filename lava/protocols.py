"""Simulated external protocols the vault talks to.

These stand in for the on-chain collaborators of a live deployment
(lending pool, Ichi-style LP vault, bridge, institutional yield source and a
swap venue). They hold real balances so that every vault operation can be
checked end to end, and they fail the way the real ones do: partially, or
with a typed `AdapterError`.
"""
from __future__ import annotations
from typing import Dict, Optional
import logging

from .core import (
    Inventory, FeeRegistry,
    collateral_to_usd, usd_to_collateral, usd_to_stable, stable_to_usd,
)
from .errors import AdapterError, InvalidAmount
from .registry import AuthorizationTable, BRIDGE_OPERATE, YIELD_SOURCE_MANAGE

logger = logging.getLogger(__name__)


class LendingPool:
    """Collateral supply + stable borrowing (Zentra-style money market)."""

    def __init__(self, pool_id: str, collateral_id: str, stable_id: str, debug: bool = False) -> None:
        self.pool_id = pool_id
        self.collateral_id = collateral_id
        self.stable_id = stable_id
        self.cash = Inventory(owner_id=pool_id, debug=debug)
        self.supplies: Dict[str, int] = {}
        self.debts: Dict[str, int] = {}
        # share of pooled collateral lent out to third parties and not withdrawable
        self.locked_fraction: float = 0.0

    def supplied(self, account: str) -> int:
        return int(self.supplies.get(account, 0))

    def debt_of(self, account: str) -> int:
        return int(self.debts.get(account, 0))

    def withdrawable(self) -> int:
        free = 1.0 - min(1.0, max(0.0, self.locked_fraction))
        return int(self.cash.get(self.collateral_id) * free)

    def seed_stable(self, amount: int) -> None:
        self.cash.add(self.stable_id, amount, "seed")

    def supply(self, account: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount("supply must be positive", amount=amount)
        self.cash.add(self.collateral_id, amount, f"supply:{account}")
        self.supplies[account] = self.supplied(account) + amount

    def withdraw(self, account: str, amount: int) -> int:
        """Withdraw up to `amount`; returns what the pool could release."""
        out = min(amount, self.supplied(account), self.withdrawable())
        if out <= 0:
            return 0
        self.cash.sub(self.collateral_id, out, f"withdraw:{account}")
        self.supplies[account] = self.supplied(account) - out
        return out

    def borrow(self, account: str, amount: int) -> None:
        if amount <= 0:
            raise InvalidAmount("borrow must be positive", amount=amount)
        if not self.cash.sub(self.stable_id, amount, f"borrow:{account}"):
            raise AdapterError("pool stable liquidity exhausted", reason="insufficient_pool_liquidity",
                               requested=amount, available=self.cash.get(self.stable_id))
        self.debts[account] = self.debt_of(account) + amount

    def repay(self, account: str, amount: int) -> int:
        paid = min(amount, self.debt_of(account))
        if paid <= 0:
            return 0
        self.cash.add(self.stable_id, paid, f"repay:{account}")
        self.debts[account] = self.debt_of(account) - paid
        return paid

    def accrue(self, account: str, rate: float) -> int:
        """Credit supply interest to one account."""
        interest = int(self.supplied(account) * rate)
        if interest > 0:
            self.cash.add(self.collateral_id, interest, "interest")
            self.supplies[account] += interest
        return interest


class LPVault:
    """Managed-range LP vault (Satsuma/Ichi-style). Exits are capped by in-range liquidity."""

    def __init__(self, vault_id: str, asset_id: str, debug: bool = False) -> None:
        self.vault_id = vault_id
        self.asset_id = asset_id
        self.holdings = Inventory(owner_id=vault_id, debug=debug)
        self.positions: Dict[str, int] = {}
        self.exit_liquidity_fraction: float = 1.0

    def balance_of(self, account: str) -> int:
        return int(self.positions.get(account, 0))

    def deposit(self, account: str, amount: int, cap: Optional[int] = None) -> int:
        accepted = amount if cap is None else max(0, min(amount, cap - self.holdings.get(self.asset_id)))
        if accepted <= 0:
            return 0
        self.holdings.add(self.asset_id, accepted, f"deposit:{account}")
        self.positions[account] = self.balance_of(account) + accepted
        return accepted

    def withdrawable(self, account: str) -> int:
        exit_cap = int(self.holdings.get(self.asset_id) * max(0.0, min(1.0, self.exit_liquidity_fraction)))
        return min(self.balance_of(account), exit_cap)

    def withdraw(self, account: str, amount: int) -> int:
        out = min(amount, self.withdrawable(account))
        if out <= 0:
            return 0
        self.holdings.sub(self.asset_id, out, f"withdraw:{account}")
        self.positions[account] -= out
        return out

    def accrue(self, rate: float) -> int:
        earned = 0
        for account, bal in self.positions.items():
            fees = int(bal * rate)
            if fees > 0:
                self.positions[account] = bal + fees
                earned += fees
        if earned:
            self.holdings.add(self.asset_id, earned, "fees")
        return earned


class YieldSource:
    """Institutional stable yield source on the far side of the bridge."""

    def __init__(self, source_id: str, stable_id: str, auth: AuthorizationTable, debug: bool = False) -> None:
        self.source_id = source_id
        self.stable_id = stable_id
        self.auth = auth
        self.holdings = Inventory(owner_id=source_id, debug=debug)
        self.deposits: Dict[str, int] = {}
        self.paused: bool = False

    def balance_of(self, account: str) -> int:
        return int(self.deposits.get(account, 0))

    def deposit(self, caller: str, account: str, amount: int) -> None:
        self.auth.require(YIELD_SOURCE_MANAGE, caller)
        self.holdings.add(self.stable_id, amount, f"deposit:{account}")
        self.deposits[account] = self.balance_of(account) + amount

    def withdraw(self, caller: str, account: str, amount: int) -> int:
        self.auth.require(YIELD_SOURCE_MANAGE, caller)
        if self.paused:
            raise AdapterError("yield source not responding", reason="yield_source_paused")
        out = min(amount, self.balance_of(account))
        if out <= 0:
            return 0
        self.holdings.sub(self.stable_id, out, f"withdraw:{account}")
        self.deposits[account] -= out
        return out

    def add_profit(self, account: str, amount: int) -> None:
        """Credit realized yield straight to an account (profit minted into the source)."""
        if amount <= 0:
            return
        self.holdings.add(self.stable_id, amount, "profit")
        self.deposits[account] = self.balance_of(account) + amount

    def accrue(self, rate: float) -> int:
        earned = 0
        for account in list(self.deposits):
            gain = int(self.deposits[account] * rate)
            if gain > 0:
                self.add_profit(account, gain)
                earned += gain
        return earned


class Bridge:
    """Moves stable value between the vault chain and the yield source."""

    def __init__(self, bridge_id: str, yield_source: YieldSource, auth: AuthorizationTable) -> None:
        self.bridge_id = bridge_id
        self.yield_source = yield_source
        self.auth = auth
        self.paused: bool = False
        self.bridged_out_total: int = 0
        self.bridged_in_total: int = 0

    def bridge_out(self, account: str, amount: int) -> int:
        self.auth.require(BRIDGE_OPERATE, account)
        if self.paused:
            raise AdapterError("bridge paused", reason="bridge_paused")
        if amount <= 0:
            return 0
        self.yield_source.deposit(self.bridge_id, account, amount)
        self.bridged_out_total += amount
        return amount

    def bridge_in(self, account: str, amount: Optional[int] = None) -> int:
        self.auth.require(BRIDGE_OPERATE, account)
        if self.paused:
            raise AdapterError("bridge paused", reason="bridge_paused")
        if amount is None:
            amount = self.yield_source.balance_of(account)
        got = self.yield_source.withdraw(self.bridge_id, account, amount)
        self.bridged_in_total += got
        return got

    def balance_of(self, account: str) -> int:
        return self.yield_source.balance_of(account)


class SwapDesk:
    """Oracle-priced collateral <-> stable conversion with finite inventory."""

    def __init__(self, desk_id: str, collateral_id: str, stable_id: str,
                 fees: Optional[FeeRegistry] = None, debug: bool = False) -> None:
        self.desk_id = desk_id
        self.collateral_id = collateral_id
        self.stable_id = stable_id
        self.fees = fees or FeeRegistry(0)
        self.inventory = Inventory(owner_id=desk_id, debug=debug)

    def quote_buy_collateral(self, stable_in: int, price: int) -> int:
        gross = usd_to_collateral(stable_to_usd(stable_in), price)
        return self.fees.compute(gross).net

    def quote_sell_collateral(self, collateral_in: int, price: int) -> int:
        gross = usd_to_stable(collateral_to_usd(collateral_in, price))
        return self.fees.compute(gross).net

    def collateral_needed_for(self, stable_out: int, price: int) -> int:
        """Collateral to sell so that the desk pays out at least `stable_out`."""
        gross = self.fees.gross_for_net(stable_out)
        needed = usd_to_collateral(stable_to_usd(gross), price, round_up=True)
        while self.quote_sell_collateral(needed, price) < stable_out:
            needed += 1
        return needed

    def can_pay(self, asset_id: str, amount: int) -> bool:
        return self.inventory.get(asset_id) >= amount

    def buy_collateral(self, stable_in: int, price: int) -> int:
        out = self.quote_buy_collateral(stable_in, price)
        if not self.can_pay(self.collateral_id, out):
            raise AdapterError("swap desk collateral exhausted", reason="insufficient_desk_liquidity",
                               requested=out, available=self.inventory.get(self.collateral_id))
        self.inventory.add(self.stable_id, stable_in, "buy_in")
        self.inventory.sub(self.collateral_id, out, "buy_out")
        return out

    def sell_collateral(self, collateral_in: int, price: int) -> int:
        out = self.quote_sell_collateral(collateral_in, price)
        if not self.can_pay(self.stable_id, out):
            raise AdapterError("swap desk stable exhausted", reason="insufficient_desk_liquidity",
                               requested=out, available=self.inventory.get(self.stable_id))
        self.inventory.add(self.collateral_id, collateral_in, "sell_in")
        self.inventory.sub(self.stable_id, out, "sell_out")
        return out
