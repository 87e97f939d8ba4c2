from __future__ import annotations
from typing import Dict
import logging

from .errors import DivisionDegenerate, InvalidAmount

logger = logging.getLogger(__name__)


def shares_for_deposit(assets: int, total_assets: int, total_shares: int) -> int:
    """Shares minted for `assets`; the first depositor mints 1:1."""
    if total_shares == 0:
        return assets
    if total_assets == 0:
        raise DivisionDegenerate("shares outstanding against zero assets",
                                 total_assets=total_assets, total_shares=total_shares)
    return assets * total_shares // total_assets


def assets_for_shares(shares: int, total_assets: int, total_shares: int) -> int:
    if total_shares == 0:
        return 0
    return shares * total_assets // total_shares


class ShareLedger:
    """Share balances per principal. Total supply is the sum of balances."""

    def __init__(self) -> None:
        self.balances: Dict[str, int] = {}
        self.total_shares: int = 0

    def balance_of(self, account: str) -> int:
        return int(self.balances.get(account, 0))

    def mint(self, account: str, shares: int) -> None:
        if shares <= 0:
            raise InvalidAmount("mint of non-positive shares", shares=shares)
        self.balances[account] = self.balance_of(account) + shares
        self.total_shares += shares

    def burn(self, account: str, shares: int) -> None:
        have = self.balance_of(account)
        if shares <= 0 or shares > have:
            raise InvalidAmount("burn exceeds balance", shares=shares, balance=have)
        remaining = have - shares
        if remaining:
            self.balances[account] = remaining
        else:
            self.balances.pop(account, None)
        self.total_shares -= shares

    def holders(self) -> list[str]:
        return sorted(self.balances)

    def is_consistent(self) -> bool:
        return self.total_shares == sum(self.balances.values()) and self.total_shares >= 0
