from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Tuple
import logging

from .core import BPS, AdapterOutcome
from .errors import InsufficientLiquidity, InvalidAmount
from .registry import StrategyEntry, StrategyRegistry

logger = logging.getLogger(__name__)


@dataclass
class Leg:
    strategy_id: int
    amount: int


@dataclass
class AllocationPlan:
    ok: bool
    reason: str
    amount: int
    reserve: int
    legs: List[Leg] = field(default_factory=list)

    @property
    def invested(self) -> int:
        return sum(leg.amount for leg in self.legs)


@dataclass
class AllocationResult:
    plan: AllocationPlan
    outcomes: List[AdapterOutcome]
    invested: int
    retained: int      # part of the deposit that stays in the reserve


@dataclass
class DivestPlan:
    requested: int
    from_reserve: int
    need: int
    eligible: List[Tuple[int, int]] = field(default_factory=list)   # (strategy_id, assets)


@dataclass
class DivestResult:
    plan: DivestPlan
    outcomes: List[AdapterOutcome]
    returned: int


@dataclass
class RebalancePlan:
    nav: int
    target_reserve: int
    targets: Dict[int, int]
    divest_legs: List[Leg] = field(default_factory=list)
    invest_legs: List[Leg] = field(default_factory=list)


def split_by_bps(amount: int, entries: List[StrategyEntry], reserve_bps: int) -> Tuple[int, List[Leg]]:
    """Reserve cut, then the remainder across entries by weight.

    Every entry but the last is floored; the last receives what is left, so
    the legs and the reserve always add up to `amount`.
    """
    weighted = [e for e in entries if e.allocation_bps > 0]
    total_bps = sum(e.allocation_bps for e in weighted)
    if not weighted or total_bps == 0:
        return amount, []
    reserve = amount * reserve_bps // BPS
    remaining = amount - reserve
    legs: List[Leg] = []
    given = 0
    for entry in weighted[:-1]:
        portion = remaining * entry.allocation_bps // total_bps
        legs.append(Leg(entry.strategy_id, portion))
        given += portion
    legs.append(Leg(weighted[-1].strategy_id, remaining - given))
    return reserve, legs


class AllocationRouter:
    """Splits a deposit between the reserve and the enabled strategies."""

    def __init__(self, registry: StrategyRegistry) -> None:
        self.registry = registry

    def plan(self, amount: int) -> AllocationPlan:
        if amount <= 0:
            raise InvalidAmount("deposit must be positive", amount=amount)
        reserve, legs = split_by_bps(amount, self.registry.enabled_entries(), self.registry.reserve_bps)
        if not legs:
            return AllocationPlan(ok=True, reason="reserve_only", amount=amount, reserve=amount)
        return AllocationPlan(ok=True, reason="ok", amount=amount, reserve=reserve, legs=legs)

    def execute(self, plan: AllocationPlan, caller: str) -> AllocationResult:
        outcomes: List[AdapterOutcome] = []
        invested = 0
        for leg in plan.legs:
            if leg.amount <= 0:
                continue
            adapter = self.registry.get(leg.strategy_id).adapter
            out = adapter.invest(leg.amount, caller)
            outcomes.append(out)
            invested += out.moved
            if out.status != "executed":
                logger.warning("invest into strategy %s %s: %d of %d (%s)",
                               leg.strategy_id, out.status, out.moved, leg.amount, out.fail_reason)
        return AllocationResult(plan=plan, outcomes=outcomes, invested=invested, retained=plan.amount - invested)

    def plan_rebalance(self, nav: int, reserve_balance: int, balances: Dict[int, int]) -> RebalancePlan:
        """Move every strategy back to its target share of NAV.

        Disabled strategies target zero. Divest legs run first; invest legs
        are funded from the reserve above its own target.
        """
        if nav <= 0:
            return RebalancePlan(nav=nav, target_reserve=reserve_balance, targets={})
        target_reserve, legs = split_by_bps(nav, self.registry.enabled_entries(), self.registry.reserve_bps)
        targets = {e.strategy_id: 0 for e in self.registry.entries()}
        for leg in legs:
            targets[leg.strategy_id] = leg.amount
        plan = RebalancePlan(nav=nav, target_reserve=target_reserve, targets=targets)
        for sid, target in targets.items():
            current = int(balances.get(sid, 0))
            if current > target:
                plan.divest_legs.append(Leg(sid, current - target))
            elif current < target:
                plan.invest_legs.append(Leg(sid, target - current))
        return plan


class DivestmentRouter:
    """Rebuilds withdrawal liquidity from strategies in proportion to their assets."""

    def __init__(self, registry: StrategyRegistry) -> None:
        self.registry = registry

    def plan(self, requested: int, reserve_balance: int) -> DivestPlan:
        if requested <= reserve_balance:
            return DivestPlan(requested=requested, from_reserve=requested, need=0)
        need = requested - reserve_balance
        eligible: List[Tuple[int, int]] = []
        for entry in self.registry.enabled_entries():
            assets = entry.adapter.total_assets()
            if assets > 0:
                eligible.append((entry.strategy_id, assets))
        total = sum(a for _, a in eligible)
        if total == 0:
            raise InsufficientLiquidity("no strategy holds assets", requested=requested,
                                        reserve=reserve_balance)
        if need > total:
            raise InsufficientLiquidity("withdrawal exceeds vault liquidity", requested=requested,
                                        reserve=reserve_balance, strategies=total)
        available = sum(self.registry.get(sid).adapter.max_divest() for sid, _ in eligible)
        if need > available:
            raise InsufficientLiquidity("strategies cannot release enough right now", requested=requested,
                                        reserve=reserve_balance, strategies=total, available=available)
        return DivestPlan(requested=requested, from_reserve=reserve_balance, need=need, eligible=eligible)

    def execute(self, plan: DivestPlan, caller: str) -> DivestResult:
        """Divest `plan.need`; on shortfall put everything back and raise.

        Raises InsufficientLiquidity with `stranded` in its detail: assets that
        came back but could not be re-invested and must stay in the reserve.
        """
        if plan.need <= 0:
            return DivestResult(plan=plan, outcomes=[], returned=0)
        total = sum(a for _, a in plan.eligible)
        outcomes: List[AdapterOutcome] = []
        returned = 0
        last = len(plan.eligible) - 1
        for i, (sid, assets) in enumerate(plan.eligible):
            ask = plan.need * assets // total if i < last else plan.need - returned
            if ask <= 0:
                continue
            out = self.registry.get(sid).adapter.divest(ask, caller)
            outcomes.append(out)
            returned += out.moved
            if out.status != "executed":
                logger.warning("divest from strategy %s %s: %d of %d (%s)",
                               sid, out.status, out.moved, ask, out.fail_reason)

        if plan.from_reserve + returned >= plan.requested:
            return DivestResult(plan=plan, outcomes=outcomes, returned=returned)

        stranded = self._roll_back(outcomes, caller)
        raise InsufficientLiquidity(
            "strategies returned less than needed",
            requested=plan.requested, reserve=plan.from_reserve, returned=returned,
            stranded=stranded, outcomes=[o.to_dict() for o in outcomes],
        )

    def _roll_back(self, outcomes: List[AdapterOutcome], caller: str) -> int:
        stranded = 0
        for out in outcomes:
            if out.moved <= 0:
                continue
            back = self.registry.get(out.strategy_id).adapter.revert_divest(out, caller)
            if back.moved < out.moved:
                logger.error("rollback into strategy %s re-invested %d of %d",
                             out.strategy_id, back.moved, out.moved)
                stranded += out.moved - back.moved
        return stranded
