from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Literal, Optional, Tuple
import logging
import math

from .adapters import CrossChainAdapter, StrategyAdapter
from .config import VaultConfig
from .core import EventLog, Inventory, ReceiptStore
from .errors import (
    InsufficientLiquidity, InvalidAllocation, InvalidAmount, ReentrantCall, Unauthorized, VaultError,
)
from .harvest import HarvestReceipt
from .ledger import ShareLedger, assets_for_shares, shares_for_deposit
from .leverage import LoopStep
from .oracle import FallbackPriceFeed
from .registry import AuthorizationTable, StrategyEntry, StrategyRegistry, REBALANCE
from .router import AllocationRouter, DivestmentRouter, RebalancePlan

logger = logging.getLogger(__name__)


@dataclass
class VaultReceipt:
    seq: int
    op: str
    actor_id: str
    status: Literal["executed", "failed"]
    assets: int = 0
    shares: int = 0
    fail_reason: Optional[str] = None
    outcomes: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "op": self.op,
            "actor_id": self.actor_id,
            "status": self.status,
            "assets": int(self.assets),
            "shares": int(self.shares),
            "fail_reason": self.fail_reason,
            "outcomes": list(self.outcomes),
        }


@dataclass
class RebalanceReceipt:
    plan: RebalancePlan
    divested: int
    invested: int
    outcomes: List[dict] = field(default_factory=list)


class ShareVault:
    """Share accounting, the operation guard and bookkeeping shared by both vaults."""

    def __init__(self, cfg: VaultConfig, log: Optional[EventLog] = None) -> None:
        self.cfg = cfg
        self.vault_id = cfg.vault_id
        self.asset_id = cfg.asset_symbol
        self.log = log if log is not None else EventLog(maxlen=cfg.event_log_maxlen)
        self.receipts = ReceiptStore(maxlen=cfg.receipt_log_maxlen)
        self.ledger = ShareLedger()
        self._busy: Optional[str] = None
        self._receipt_seq = 0

    @contextmanager
    def _non_reentrant(self, op: str) -> Iterator[None]:
        if self._busy is not None:
            raise ReentrantCall(f"{op} entered while {self._busy} is running", op=op, running=self._busy)
        self._busy = op
        try:
            yield
        finally:
            self._busy = None

    def _record(self, op: str, actor_id: str, status: str, assets: int = 0, shares: int = 0,
                fail_reason: Optional[str] = None, outcomes: Optional[List[dict]] = None) -> VaultReceipt:
        self._receipt_seq += 1
        r = VaultReceipt(self._receipt_seq, op, actor_id, status, assets, shares, fail_reason, outcomes or [])
        self.receipts.add(r)
        return r

    def total_assets(self) -> int:
        raise NotImplementedError

    def total_shares(self) -> int:
        return self.ledger.total_shares

    def balance_of(self, account: str) -> int:
        return self.ledger.balance_of(account)

    def preview_deposit(self, assets: int) -> int:
        return shares_for_deposit(assets, self.total_assets(), self.total_shares())

    def preview_redeem(self, shares: int) -> int:
        return assets_for_shares(shares, self.total_assets(), self.total_shares())

    def share_price(self) -> float:
        if self.total_shares() == 0:
            return 1.0
        return self.total_assets() / self.total_shares()

    def _check_redeem(self, shares: int, owner: str, caller: str) -> int:
        # no allowances: only the owner redeems, whoever receives the assets
        if caller != owner:
            raise Unauthorized(f"{caller!r} cannot redeem shares of {owner!r}", principal=caller, owner=owner)
        have = self.ledger.balance_of(owner)
        if shares <= 0 or shares > have:
            raise InvalidAmount("shares must be positive and within balance", shares=shares, balance=have)
        assets = self.preview_redeem(shares)
        if assets <= 0:
            raise InvalidAmount("redemption rounds to zero assets", shares=shares)
        return assets


class PortfolioVault(ShareVault):
    """Multi-strategy vault: a liquid reserve plus a registry of strategy adapters.

    Deposits are split by `AllocationRouter`; withdrawals are served from the
    reserve first and otherwise rebuilt by `DivestmentRouter`, all-or-nothing.
    The reserve and the share ledger only change after every adapter call of
    the operation has returned.
    """

    def __init__(self, cfg: VaultConfig, auth: AuthorizationTable, prices: FallbackPriceFeed,
                 log: Optional[EventLog] = None) -> None:
        super().__init__(cfg, log)
        self.auth = auth
        self.prices = prices
        self.reserve = Inventory(owner_id=self.vault_id, debug=cfg.debug_inventory)
        self.registry = StrategyRegistry(auth, cfg.reserve_bps, cfg.max_strategies)
        self.allocator = AllocationRouter(self.registry)
        self.divester = DivestmentRouter(self.registry)

    # -----------------------------
    # Views
    # -----------------------------
    def reserve_balance(self) -> int:
        return self.reserve.get(self.asset_id)

    def strategy_assets(self) -> Dict[int, int]:
        return {e.strategy_id: e.adapter.total_assets() for e in self.registry.entries()}

    def total_assets(self) -> int:
        # disabled strategies still count while they hold assets
        return self.reserve_balance() + sum(self.strategy_assets().values())

    def get_strategies(self) -> Tuple[List[int], List[StrategyEntry]]:
        return self.registry.get_strategies()

    def cross_chain_adapter(self) -> Optional[CrossChainAdapter]:
        for entry in self.registry.entries():
            if isinstance(entry.adapter, CrossChainAdapter):
                return entry.adapter
        return None

    def get_health_factor(self) -> float:
        adapter = self.cross_chain_adapter()
        return adapter.engine.health_factor() if adapter is not None else math.inf

    def get_leverage_ratio(self) -> float:
        adapter = self.cross_chain_adapter()
        return adapter.engine.leverage_ratio() if adapter is not None else 1.0

    def get_btc_price_or_fallback(self) -> Tuple[int, str]:
        return self.prices.price_or_fallback()

    # -----------------------------
    # Registry
    # -----------------------------
    def add_strategy(self, caller: str, adapter: StrategyAdapter, allocation_bps: int,
                     name: str = "") -> StrategyEntry:
        entry = self.registry.add_strategy(caller, adapter.strategy_id, adapter, allocation_bps,
                                           name or adapter.name)
        self.log.emit("STRATEGY_ADDED", actor_id=caller, strategy_id=entry.strategy_id,
                      meta={"allocation_bps": allocation_bps, "version": self.registry.version})
        return entry

    def set_strategy(self, caller: str, strategy_id: int, allocation_bps: int, enabled: bool) -> StrategyEntry:
        entry = self.registry.set_strategy(caller, strategy_id, allocation_bps, enabled)
        self.log.emit("STRATEGY_UPDATED", actor_id=caller, strategy_id=strategy_id,
                      meta={"allocation_bps": allocation_bps, "enabled": enabled,
                            "version": self.registry.version})
        return entry

    def set_reserve_bps(self, caller: str, reserve_bps: int) -> None:
        self.registry.set_reserve_bps(caller, reserve_bps)
        self.log.emit("RESERVE_BPS_SET", actor_id=caller, meta={"reserve_bps": reserve_bps})

    # -----------------------------
    # Deposit / withdraw
    # -----------------------------
    def deposit(self, amount: int, receiver: str) -> int:
        """Split `amount` between reserve and strategies; mint against the NAV it added.

        Swap fees and rounding inside a strategy leg are borne by the
        depositor, so `preview_deposit` is an upper bound on the shares minted.
        """
        with self._non_reentrant("deposit"):
            if amount <= 0:
                raise InvalidAmount("deposit must be positive", amount=amount)
            if self.preview_deposit(amount) <= 0:
                raise InvalidAmount("deposit too small to mint shares", amount=amount)
            nav_before = self.total_assets()
            supply_before = self.total_shares()
            plan = self.allocator.plan(amount)
            result = self.allocator.execute(plan, self.vault_id)

            self.reserve.add(self.asset_id, result.retained, f"deposit:{receiver}")
            added = self.total_assets() - nav_before
            shares = shares_for_deposit(added, nav_before, supply_before) if added > 0 else 0
            if shares > 0:
                self.ledger.mint(receiver, shares)
            else:
                logger.warning("deposit %s of %d added no net value (nav delta %d)", receiver, amount, added)
            outcomes = [o.to_dict() for o in result.outcomes]
            self.log.emit("DEPOSIT", actor_id=receiver, asset_id=self.asset_id, amount=amount,
                          meta={"shares": shares, "nav_added": added, "reserve": result.retained,
                                "invested": result.invested})
            self._record("deposit", receiver, "executed", amount, shares, outcomes=outcomes)
            logger.info("deposit %s: %d assets -> %d shares (reserve %d, invested %d)",
                        receiver, amount, shares, result.retained, result.invested)
            return shares

    def withdraw(self, shares: int, receiver: str, owner: Optional[str] = None,
                 caller: Optional[str] = None) -> int:
        owner = owner or receiver
        caller = caller or receiver
        with self._non_reentrant("withdraw"):
            assets = self._check_redeem(shares, owner, caller)
            try:
                plan = self.divester.plan(assets, self.reserve_balance())
                result = self.divester.execute(plan, self.vault_id)
            except InsufficientLiquidity as exc:
                stranded = int(exc.detail.get("stranded", 0) or 0)
                if stranded:
                    self.reserve.add(self.asset_id, stranded, "rollback")
                self.log.emit("WITHDRAW_FAILED", actor_id=owner, asset_id=self.asset_id, amount=assets,
                              meta={"shares": shares, "reason": str(exc)})
                self._record("withdraw", owner, "failed", assets, shares, exc.code,
                             outcomes=list(exc.detail.get("outcomes", [])))
                logger.warning("withdraw %s of %d assets failed: %s", owner, assets, exc)
                raise

            self.reserve.add(self.asset_id, result.returned, "divest")
            if not self.reserve.sub(self.asset_id, assets, f"withdraw:{receiver}"):
                raise InsufficientLiquidity("reserve short after divestment", requested=assets,
                                            available=self.reserve_balance())
            self.ledger.burn(owner, shares)
            outcomes = [o.to_dict() for o in result.outcomes]
            self.log.emit("WITHDRAW", actor_id=owner, asset_id=self.asset_id, amount=assets,
                          meta={"shares": shares, "receiver": receiver, "divested": result.returned})
            self._record("withdraw", owner, "executed", assets, shares, outcomes=outcomes)
            logger.info("withdraw %s: %d shares -> %d assets (divested %d)", owner, shares, assets, result.returned)
            return assets

    # -----------------------------
    # Operator actions
    # -----------------------------
    def rebalance(self, caller: str) -> RebalanceReceipt:
        self.auth.require(REBALANCE, caller)
        with self._non_reentrant("rebalance"):
            plan = self.allocator.plan_rebalance(self.total_assets(), self.reserve_balance(),
                                                 self.strategy_assets())
            outcomes = []
            divested = 0
            for leg in plan.divest_legs:
                out = self.registry.get(leg.strategy_id).adapter.divest(leg.amount, self.vault_id)
                outcomes.append(out)
                divested += out.moved

            budget = max(0, self.reserve_balance() + divested - plan.target_reserve)
            invested = 0
            for leg in plan.invest_legs:
                amount = min(leg.amount, budget - invested)
                if amount <= 0:
                    break
                out = self.registry.get(leg.strategy_id).adapter.invest(amount, self.vault_id)
                outcomes.append(out)
                invested += out.moved

            self.reserve.add(self.asset_id, divested, "rebalance_in")
            self.reserve.sub(self.asset_id, invested, "rebalance_out")
            self.log.emit("REBALANCE", actor_id=caller,
                          meta={"divested": divested, "invested": invested, "target_reserve": plan.target_reserve})
            logger.info("rebalance: divested=%d invested=%d reserve=%d", divested, invested, self.reserve_balance())
            return RebalanceReceipt(plan, divested, invested, [o.to_dict() for o in outcomes])

    def harvest_cross_chain_yield(self, caller: str) -> HarvestReceipt:
        adapter = self.cross_chain_adapter()
        if adapter is None:
            return HarvestReceipt(status="noop", yield_balance=0)
        with self._non_reentrant("harvest"):
            try:
                receipt = adapter.harvest(caller)
            except VaultError as exc:
                self._record("harvest", caller, "failed", fail_reason=exc.code)
                raise
            self._record("harvest", caller, "executed", assets=receipt.collateral_added)
            return receipt

    def loop_cross_chain(self, caller: str) -> LoopStep:
        """Operator-forced leverage step on the cross-chain strategy."""
        adapter = self.cross_chain_adapter()
        if adapter is None:
            raise InvalidAllocation("no cross-chain strategy registered")
        with self._non_reentrant("loop"):
            try:
                step = adapter.engine.loop_once(caller)
            except VaultError as exc:
                self._record("loop", caller, "failed", fail_reason=exc.code)
                raise
            self._record("loop", caller, "executed", assets=step.collateral_in)
            return step

    # -----------------------------
    # Invariants
    # -----------------------------
    def check_invariants(self) -> List[str]:
        problems: List[str] = []
        if not self.ledger.is_consistent():
            problems.append("share ledger total does not match balances")
        if not self.registry.is_consistent():
            problems.append("reserve_bps + enabled allocation exceeds 10000")
        breakdown = self.strategy_assets()
        if any(v < 0 for v in breakdown.values()) or self.reserve_balance() < 0:
            problems.append("negative asset balance")
        if self.total_shares() > 0 and self.total_assets() == 0:
            problems.append("shares outstanding against zero assets")
        adapter = self.cross_chain_adapter()
        if adapter is not None:
            problems.extend(adapter.engine.reconcile())
            if adapter.engine.position.debt_usd > 0 and adapter.engine.health_factor() <= 1.0:
                problems.append("cross-chain health factor at or below 1.0")
        return problems
