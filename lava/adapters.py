from __future__ import annotations
from typing import Optional
import logging

from .core import AdapterOutcome
from .errors import AdapterError, ReentrantCall, VaultError
from .harvest import HarvestCycle, HarvestReceipt
from .leverage import LeverageEngine, ReleaseReceipt
from .protocols import LendingPool, LPVault
from .registry import AuthorizationTable, ADAPTER_OPERATE

logger = logging.getLogger(__name__)


class StrategyAdapter:
    """Capability the vault invests through. Only the owning vault may move funds.

    `invest`/`divest` never raise for protocol-level trouble; they report what
    actually moved in an `AdapterOutcome` and leave the decision to the router.
    """
    name = "strategy"

    def __init__(self, strategy_id: int, auth: AuthorizationTable) -> None:
        self.strategy_id = strategy_id
        self.auth = auth

    def total_assets(self) -> int:
        raise NotImplementedError

    def invest(self, amount: int, caller: str) -> AdapterOutcome:
        self.auth.require(ADAPTER_OPERATE, caller)
        if amount <= 0:
            return AdapterOutcome.settle(self.strategy_id, "invest", amount, 0, "non_positive_amount")
        try:
            moved = self._invest(amount)
        except ReentrantCall:
            raise
        except VaultError as exc:
            logger.warning("%s invest(%d) failed: %s", self.name, amount, exc)
            return AdapterOutcome.settle(self.strategy_id, "invest", amount, 0, getattr(exc, "reason", exc.code))
        return AdapterOutcome.settle(self.strategy_id, "invest", amount, moved)

    def divest(self, requested: int, caller: str) -> AdapterOutcome:
        self.auth.require(ADAPTER_OPERATE, caller)
        if requested <= 0:
            return AdapterOutcome.settle(self.strategy_id, "divest", requested, 0, "non_positive_amount")
        try:
            moved = self._divest(requested)
        except ReentrantCall:
            raise
        except VaultError as exc:
            logger.warning("%s divest(%d) failed: %s", self.name, requested, exc)
            return AdapterOutcome.settle(self.strategy_id, "divest", requested, 0, getattr(exc, "reason", exc.code))
        reason = None if moved >= requested else "partial_liquidity"
        return AdapterOutcome.settle(self.strategy_id, "divest", requested, moved, reason)

    def max_divest(self) -> int:
        """Upper bound on what `divest` could return right now."""
        return self.total_assets()

    def revert_divest(self, outcome: AdapterOutcome, caller: str) -> AdapterOutcome:
        """Put back what `outcome` took out. A plain re-invest unless overridden."""
        return self.invest(outcome.moved, caller)

    def _invest(self, amount: int) -> int:
        raise NotImplementedError

    def _divest(self, requested: int) -> int:
        raise NotImplementedError


class LendingAdapter(StrategyAdapter):
    """Supplies the base asset to a money market (Zentra)."""
    name = "zentra"

    def __init__(self, strategy_id: int, auth: AuthorizationTable, account: str, pool: LendingPool) -> None:
        super().__init__(strategy_id, auth)
        self.account = account
        self.pool = pool

    def total_assets(self) -> int:
        return self.pool.supplied(self.account)

    def max_divest(self) -> int:
        return min(self.total_assets(), self.pool.withdrawable())

    def _invest(self, amount: int) -> int:
        self.pool.supply(self.account, amount)
        return amount

    def _divest(self, requested: int) -> int:
        return self.pool.withdraw(self.account, requested)


class LPVaultAdapter(StrategyAdapter):
    """Deposits into a managed-range LP vault (Satsuma)."""
    name = "satsuma"

    def __init__(self, strategy_id: int, auth: AuthorizationTable, account: str, lp: LPVault,
                 deposit_cap: Optional[int] = None) -> None:
        super().__init__(strategy_id, auth)
        self.account = account
        self.lp = lp
        self.deposit_cap = deposit_cap

    def total_assets(self) -> int:
        return self.lp.balance_of(self.account)

    def max_divest(self) -> int:
        return self.lp.withdrawable(self.account)

    def _invest(self, amount: int) -> int:
        return self.lp.deposit(self.account, amount, cap=self.deposit_cap)

    def _divest(self, requested: int) -> int:
        return self.lp.withdraw(self.account, requested)


class CrossChainAdapter(StrategyAdapter):
    """Runs a leveraged cross-chain position for the portfolio vault."""
    name = "crosschain"

    def __init__(self, strategy_id: int, auth: AuthorizationTable, engine: LeverageEngine,
                 harvester: HarvestCycle) -> None:
        super().__init__(strategy_id, auth)
        self.engine = engine
        self.harvester = harvester
        self._last_release: Optional[ReleaseReceipt] = None

    def total_assets(self) -> int:
        return self.engine.net_asset_value()

    def max_divest(self) -> int:
        return self.engine.max_release()

    def _invest(self, amount: int) -> int:
        self.engine.supply(amount)
        return amount

    def _divest(self, requested: int) -> int:
        self._last_release = None
        target = min(requested, self.engine.net_asset_value())
        if target <= 0:
            return 0
        self._last_release = self.engine.release(target)
        return self._last_release.released

    def revert_divest(self, outcome: AdapterOutcome, caller: str) -> AdapterOutcome:
        """Undo the last release exactly; fall back to re-supplying it."""
        self.auth.require(ADAPTER_OPERATE, caller)
        receipt, self._last_release = self._last_release, None
        if receipt is None or receipt.released != outcome.moved:
            return super().revert_divest(outcome, caller)
        try:
            self.engine.revert_release(receipt)
        except AdapterError as exc:
            logger.warning("crosschain release revert refused (%s); re-supplying instead", exc.reason)
            out = super().revert_divest(outcome, caller)
            self.engine.restore_bookkeeping(receipt.position_before)
            return out
        return AdapterOutcome.settle(self.strategy_id, "invest", outcome.moved, outcome.moved)

    def harvest(self, caller: str) -> HarvestReceipt:
        return self.harvester.harvest(caller)
