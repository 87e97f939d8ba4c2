from __future__ import annotations
from typing import List, Optional, Tuple
import logging

from .config import VaultConfig
from .core import EventLog
from .errors import InvalidAmount, VaultError
from .harvest import HarvestCycle, HarvestReceipt
from .ledger import shares_for_deposit
from .leverage import LeverageEngine, LoopStep
from .vault import ShareVault

logger = logging.getLogger(__name__)


class CrossChainVault(ShareVault):
    """Single-strategy leveraged vault over one `LeverageEngine`.

    Shares are minted against the NAV the deposit actually added, so loop
    slippage is borne by the depositor and not by existing holders.
    """

    def __init__(self, cfg: VaultConfig, engine: LeverageEngine, harvester: HarvestCycle,
                 log: Optional[EventLog] = None) -> None:
        super().__init__(cfg, log if log is not None else engine.log)
        self.engine = engine
        self.harvester = harvester

    def total_assets(self) -> int:
        return self.engine.net_asset_value()

    def get_health_factor(self) -> float:
        return self.engine.health_factor()

    def get_leverage_ratio(self) -> float:
        return self.engine.leverage_ratio()

    def get_btc_price_or_fallback(self) -> Tuple[int, str]:
        return self.engine.prices.price_or_fallback(self.engine.cfg.price_asset_id)

    def deposit(self, amount: int, receiver: str) -> int:
        with self._non_reentrant("deposit"):
            if amount <= 0:
                raise InvalidAmount("deposit must be positive", amount=amount)
            if self.preview_deposit(amount) <= 0:
                raise InvalidAmount("deposit too small to mint shares", amount=amount)
            price = self.engine.price_quote().value
            nav_before = self.engine.net_asset_value(price)
            supply = self.engine.supply(amount)
            added = self.engine.net_asset_value(price) - nav_before
            shares = shares_for_deposit(added, nav_before, self.total_shares()) if added > 0 else 0
            if shares > 0:
                self.ledger.mint(receiver, shares)
            else:
                logger.warning("deposit %s of %d added no net value (nav delta %d)", receiver, amount, added)
            self.log.emit("DEPOSIT", actor_id=receiver, asset_id=self.asset_id, amount=amount,
                          meta={"shares": shares, "nav_added": added, "borrowed": supply.borrowed,
                                "loops": supply.loops_executed})
            self._record("deposit", receiver, "executed", amount, shares)
            return shares

    def withdraw(self, shares: int, receiver: str, owner: Optional[str] = None,
                 caller: Optional[str] = None) -> int:
        owner = owner or receiver
        caller = caller or receiver
        with self._non_reentrant("withdraw"):
            assets = self._check_redeem(shares, owner, caller)
            try:
                release = self.engine.release(assets)
            except VaultError as exc:
                self.log.emit("WITHDRAW_FAILED", actor_id=owner, asset_id=self.asset_id, amount=assets,
                              meta={"shares": shares, "reason": str(exc)})
                self._record("withdraw", owner, "failed", assets, shares, exc.code)
                raise
            self.ledger.burn(owner, shares)
            self.log.emit("WITHDRAW", actor_id=owner, asset_id=self.asset_id, amount=assets,
                          meta={"shares": shares, "receiver": receiver, "repaid": release.repaid})
            self._record("withdraw", owner, "executed", assets, shares)
            return assets

    def harvest_cross_chain_yield(self, caller: str) -> HarvestReceipt:
        with self._non_reentrant("harvest"):
            return self.harvester.harvest(caller)

    def loop_once(self, caller: str) -> LoopStep:
        with self._non_reentrant("loop"):
            try:
                step = self.engine.loop_once(caller)
            except VaultError as exc:
                self._record("loop", caller, "failed", fail_reason=exc.code)
                raise
            self._record("loop", caller, "executed", assets=step.collateral_in)
            return step

    def check_invariants(self) -> List[str]:
        problems: List[str] = []
        pos = self.engine.position
        if not self.ledger.is_consistent():
            problems.append("share ledger total does not match balances")
        if pos.debt_usd < 0 or pos.collateral < 0 or pos.bridged < 0 or pos.stable_idle < 0:
            problems.append("negative position component")
        problems.extend(self.engine.reconcile())
        if pos.debt_usd > 0 and self.engine.health_factor() <= 1.0:
            problems.append("health factor at or below 1.0")
        if self.total_shares() > 0 and self.total_assets() == 0:
            problems.append("shares outstanding against zero assets")
        return problems
