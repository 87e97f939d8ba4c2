from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
from typing import List, Optional
import logging
import math

from .config import LeverageConfig
from .core import (
    BPS, EventLog, ceil_div,
    collateral_to_usd, usd_to_collateral, usd_to_stable, stable_to_usd,
)
from .errors import (
    AdapterError, HealthFactorViolation, InsufficientLiquidity, InvalidAmount, OraclePriceUnavailable,
)
from .oracle import FallbackPriceFeed, PriceQuote
from .protocols import Bridge, LendingPool, SwapDesk
from .registry import AuthorizationTable, LEVERAGE_LOOP

logger = logging.getLogger(__name__)


@dataclass
class CrossChainPosition:
    collateral: int = 0        # asset units supplied to the lending pool
    debt_usd: int = 0          # USD, 12 decimals
    bridged: int = 0           # stable principal sent to the yield source
    stable_idle: int = 0       # stable left over from unwinds, compounded at next harvest
    last_added_collateral: int = 0
    loops_executed: int = 0
    harvested_total: int = 0
    repaid_total: int = 0

    def to_dict(self) -> dict:
        return {
            "collateral": self.collateral,
            "debt_usd": self.debt_usd,
            "bridged": self.bridged,
            "stable_idle": self.stable_idle,
            "loops_executed": self.loops_executed,
            "harvested_total": self.harvested_total,
            "repaid_total": self.repaid_total,
        }


@dataclass
class LoopStep:
    borrow: int
    collateral_in: int
    health_factor_after: float
    safe: bool


@dataclass
class LeverageReceipt:
    collateral_in: int
    borrowed: int
    bridged: int
    loops_executed: int
    loop_halt_reason: Optional[str]
    health_factor: float
    price_source: str
    degraded: bool


@dataclass
class ReleaseReceipt:
    released: int
    repaid: int
    pulled_from_bridge: int
    collateral_sold: int
    price_source: str
    price: int = 0
    sold_for: int = 0
    position_before: Optional[CrossChainPosition] = field(default=None, repr=False)


def health_factor_of(collateral_usd: int, debt_usd: int, liquidation_threshold_bps: int) -> float:
    if debt_usd <= 0:
        return math.inf
    return (collateral_usd * liquidation_threshold_bps / BPS) / debt_usd


class LeverageEngine:
    """Collateral -> borrow -> bridge, with a bounded, health-factor-guarded loop.

    Every state change follows the same order: quote and validate, call the
    external protocols (undoing earlier calls if a later one fails), then
    commit to `position`.
    """

    def __init__(self, cfg: LeverageConfig, account: str, pool: LendingPool, bridge: Bridge,
                 desk: SwapDesk, prices: FallbackPriceFeed, auth: AuthorizationTable,
                 log: Optional[EventLog] = None) -> None:
        self.cfg = cfg
        self.account = account
        self.pool = pool
        self.bridge = bridge
        self.desk = desk
        self.prices = prices
        self.auth = auth
        self.log = log if log is not None else EventLog(maxlen=1000)
        self.position = CrossChainPosition()

    # -----------------------------
    # Views
    # -----------------------------
    def price_quote(self) -> PriceQuote:
        return self.prices.quote(self.cfg.price_asset_id)

    def _borrow_quote(self) -> PriceQuote:
        quote = self.price_quote()
        if quote.degraded and not self.cfg.allow_degraded_borrow:
            raise OraclePriceUnavailable("refusing to borrow against a fallback price", source=quote.source)
        return quote

    def _hf_ok(self, collateral_usd: int, debt_usd: int) -> bool:
        # strict: a health factor of exactly 1.0 is already liquidatable
        return debt_usd <= 0 or collateral_usd * self.cfg.liquidation_threshold_bps > debt_usd * BPS

    def health_factor(self, price: Optional[int] = None) -> float:
        price = price if price is not None else self.price_quote().value
        pos = self.position
        return health_factor_of(collateral_to_usd(pos.collateral, price), pos.debt_usd,
                                self.cfg.liquidation_threshold_bps)

    def leverage_ratio(self, price: Optional[int] = None) -> float:
        price = price if price is not None else self.price_quote().value
        coll_usd = collateral_to_usd(self.position.collateral, price)
        if self.position.debt_usd <= 0 or coll_usd <= 0:
            return 1.0
        equity = coll_usd - self.position.debt_usd
        if equity <= 0:
            return math.inf
        return coll_usd / equity

    def net_asset_value(self, price: Optional[int] = None) -> int:
        """Collateral plus bridged principal minus debt, in asset units."""
        price = price if price is not None else self.price_quote().value
        pos = self.position
        off_pool_usd = stable_to_usd(pos.bridged + pos.stable_idle) - pos.debt_usd
        return max(0, pos.collateral + (usd_to_collateral(off_pool_usd, price) if off_pool_usd >= 0
                                        else -usd_to_collateral(-off_pool_usd, price, round_up=True)))

    def max_release(self) -> int:
        """Upper bound on what `release` could free right now."""
        return max(0, min(self.net_asset_value(), self.position.collateral, self.pool.withdrawable()))

    def reconcile(self) -> List[str]:
        """Compare the position with the pool and bridge books for this account."""
        pos = self.position
        problems: List[str] = []
        if pos.collateral != self.pool.supplied(self.account):
            problems.append("position collateral differs from pool supply")
        if pos.debt_usd != stable_to_usd(self.pool.debt_of(self.account)):
            problems.append("position debt differs from pool debt")
        if pos.bridged > self.bridge.balance_of(self.account):
            problems.append("bridged principal exceeds yield source balance")
        return problems

    def borrow_for(self, collateral: int, price: int) -> int:
        return usd_to_stable(collateral_to_usd(collateral, price) * self.cfg.fixed_ltv_bps // BPS)

    # -----------------------------
    # Supply / borrow / bridge
    # -----------------------------
    def supply(self, collateral: int) -> LeverageReceipt:
        if collateral <= 0:
            raise InvalidAmount("collateral must be positive", amount=collateral)
        quote = self._borrow_quote()
        price = quote.value
        pos = self.position

        borrow = self.borrow_for(collateral, price)
        new_coll_usd = collateral_to_usd(pos.collateral + collateral, price)
        new_debt = pos.debt_usd + stable_to_usd(borrow)
        if not self._hf_ok(new_coll_usd, new_debt):
            raise HealthFactorViolation(
                "initial borrow would breach the health factor floor",
                health_factor=health_factor_of(new_coll_usd, new_debt, self.cfg.liquidation_threshold_bps),
            )
        if borrow > 0 and self.pool.cash.get(self.pool.stable_id) < borrow:
            raise InsufficientLiquidity("lending pool cannot fund the borrow",
                                        requested=borrow, available=self.pool.cash.get(self.pool.stable_id))
        if borrow > 0 and self.bridge.paused:
            raise InsufficientLiquidity("bridge unavailable", reason="bridge_paused")

        self.pool.supply(self.account, collateral)
        try:
            if borrow > 0:
                self.pool.borrow(self.account, borrow)
                try:
                    self.bridge.bridge_out(self.account, borrow)
                except AdapterError:
                    self.pool.repay(self.account, borrow)
                    raise
        except AdapterError as exc:
            undone = self.pool.withdraw(self.account, collateral)
            if undone < collateral:
                logger.error("supply rollback left %d collateral in pool for %s",
                             collateral - undone, self.account)
            raise InsufficientLiquidity(f"borrow/bridge failed: {exc.reason}", reason=exc.reason) from exc

        pos.collateral += collateral
        pos.debt_usd = new_debt
        pos.bridged += borrow
        pos.last_added_collateral = collateral
        self.log.emit("LEVERAGE_SUPPLY", actor_id=self.account, amount=collateral,
                      meta={"borrow": borrow, "price": price, "source": quote.source})

        executed, halt = self._run_loops(price)
        return LeverageReceipt(
            collateral_in=collateral,
            borrowed=borrow,
            bridged=borrow,
            loops_executed=executed,
            loop_halt_reason=halt,
            health_factor=self.health_factor(price),
            price_source=quote.source,
            degraded=quote.degraded,
        )

    # -----------------------------
    # Looping
    # -----------------------------
    def plan_loop_step(self, price: int) -> Optional[LoopStep]:
        pos = self.position
        borrow = self.borrow_for(pos.last_added_collateral, price)
        if borrow <= 0:
            return None
        bought = self.desk.quote_buy_collateral(borrow, price)
        if bought <= 0:
            return None
        coll_usd = collateral_to_usd(pos.collateral + bought, price)
        debt = pos.debt_usd + stable_to_usd(borrow)
        return LoopStep(
            borrow=borrow,
            collateral_in=bought,
            health_factor_after=health_factor_of(coll_usd, debt, self.cfg.liquidation_threshold_bps),
            safe=self._hf_ok(coll_usd, debt),
        )

    def _execute_loop_step(self, step: LoopStep, price: int) -> None:
        if self.pool.cash.get(self.pool.stable_id) < step.borrow:
            raise AdapterError("pool stable liquidity exhausted", reason="insufficient_pool_liquidity")
        if not self.desk.can_pay(self.desk.collateral_id, step.collateral_in):
            raise AdapterError("swap desk collateral exhausted", reason="insufficient_desk_liquidity")
        self.pool.borrow(self.account, step.borrow)
        try:
            bought = self.desk.buy_collateral(step.borrow, price)
        except AdapterError:
            self.pool.repay(self.account, step.borrow)
            raise
        self.pool.supply(self.account, bought)

        pos = self.position
        pos.collateral += bought
        pos.debt_usd += stable_to_usd(step.borrow)
        pos.last_added_collateral = bought
        pos.loops_executed += 1

    def _run_loops(self, price: int) -> tuple[int, Optional[str]]:
        executed = 0
        for _ in range(min(self.cfg.leverage_loops, self.cfg.max_leverage_loops)):
            step = self.plan_loop_step(price)
            if step is None:
                return executed, "step_too_small"
            if not step.safe:
                self.log.emit("LOOP_HALTED", actor_id=self.account,
                              meta={"reason": "health_factor", "hf_after": step.health_factor_after,
                                    "executed": executed})
                logger.info("leverage loop halted for %s after %d steps (hf_after=%.4f)",
                            self.account, executed, step.health_factor_after)
                return executed, "health_factor"
            try:
                self._execute_loop_step(step, price)
            except AdapterError as exc:
                self.log.emit("LOOP_HALTED", actor_id=self.account,
                              meta={"reason": exc.reason, "executed": executed})
                return executed, exc.reason
            executed += 1
        return executed, None

    def loop_once(self, caller: str) -> LoopStep:
        """Operator-forced loop step; rejected up front if it would breach the floor."""
        self.auth.require(LEVERAGE_LOOP, caller)
        quote = self._borrow_quote()
        step = self.plan_loop_step(quote.value)
        if step is None:
            raise InvalidAmount("nothing left to loop")
        if not step.safe:
            raise HealthFactorViolation("loop step would breach the health factor floor",
                                        health_factor=step.health_factor_after)
        try:
            self._execute_loop_step(step, quote.value)
        except AdapterError as exc:
            raise InsufficientLiquidity(f"loop step failed: {exc.reason}", reason=exc.reason) from exc
        self.log.emit("LOOP_STEP", actor_id=caller, amount=step.collateral_in, meta={"borrow": step.borrow})
        return step

    # -----------------------------
    # Unwind
    # -----------------------------
    def release(self, target: int) -> ReleaseReceipt:
        """Free exactly `target` asset units of net value, repaying the matching debt share.

        Debt is repaid from bridged principal first; whatever the bridge cannot
        return is covered by selling collateral. All-or-nothing.
        """
        if target <= 0:
            raise InvalidAmount("release must be positive", amount=target)
        quote = self.price_quote()
        price = quote.value
        pos = self.position
        nav = self.net_asset_value(price)
        if target > nav:
            raise InsufficientLiquidity("release exceeds position value", requested=target, available=nav)

        repay = 0
        if pos.debt_usd > 0:
            repay = usd_to_stable(ceil_div(pos.debt_usd * target, nav), round_up=True)
            repay = min(repay, usd_to_stable(pos.debt_usd, round_up=True))
        from_idle = min(repay, pos.stable_idle)
        want_bridge = min(repay - from_idle, pos.bridged, self.bridge.balance_of(self.account))

        pulled = 0
        if want_bridge > 0:
            try:
                pulled = self.bridge.bridge_in(self.account, want_bridge)
            except AdapterError as exc:
                logger.warning("bridge_in failed for %s (%s); covering debt from collateral",
                               self.account, exc.reason)
                pulled = 0
        short = repay - from_idle - pulled
        sell = self.desk.collateral_needed_for(short, price) if short > 0 else 0
        withdraw_amt = target + sell

        def _undo_pull() -> None:
            if pulled:
                self.bridge.bridge_out(self.account, pulled)

        if withdraw_amt > pos.collateral or self.pool.withdrawable() < withdraw_amt:
            _undo_pull()
            raise InsufficientLiquidity("pool cannot release collateral", requested=withdraw_amt,
                                        available=min(pos.collateral, self.pool.withdrawable()))
        new_coll_usd = collateral_to_usd(pos.collateral - withdraw_amt, price)
        new_debt = max(0, pos.debt_usd - stable_to_usd(repay))
        if not self._hf_ok(new_coll_usd, new_debt):
            _undo_pull()
            raise HealthFactorViolation("release would breach the health factor floor")

        got = self.pool.withdraw(self.account, withdraw_amt)
        if got < withdraw_amt:
            if got:
                self.pool.supply(self.account, got)
            _undo_pull()
            raise InsufficientLiquidity("pool released less collateral than requested",
                                        requested=withdraw_amt, available=got)
        sold_for = 0
        if sell:
            try:
                sold_for = self.desk.sell_collateral(sell, price)
            except AdapterError as exc:
                self.pool.supply(self.account, got)
                _undo_pull()
                raise InsufficientLiquidity(f"collateral sale failed: {exc.reason}", reason=exc.reason) from exc

        stable_available = from_idle + pulled + sold_for
        repaid = self.pool.repay(self.account, min(repay, stable_available))

        before = replace(pos)
        pos.collateral -= withdraw_amt
        pos.debt_usd = max(0, pos.debt_usd - stable_to_usd(repaid))
        pos.bridged -= pulled
        pos.stable_idle += pulled + sold_for - repaid
        pos.repaid_total += repaid
        self.log.emit("LEVERAGE_RELEASE", actor_id=self.account, amount=target,
                      meta={"repaid": repaid, "pulled": pulled, "sold": sell})
        return ReleaseReceipt(released=target, repaid=repaid, pulled_from_bridge=pulled,
                              collateral_sold=sell, price_source=quote.source, price=price,
                              sold_for=sold_for, position_before=before)

    def revert_release(self, receipt: ReleaseReceipt) -> None:
        """Undo a completed `release` and put the position back where it was.

        Repaid debt is re-borrowed, pulled principal is bridged out again and
        sold collateral is bought back at the release price. A desk fee on that
        round trip is lost collateral. Raises `AdapterError` before touching
        anything when a protocol cannot take the funds back.
        """
        before = receipt.position_before
        if before is None:
            raise AdapterError("release carries no prior position", reason="no_checkpoint")
        if receipt.repaid and self.pool.cash.get(self.pool.stable_id) < receipt.repaid:
            raise AdapterError("pool cannot re-lend the repaid debt", reason="insufficient_pool_liquidity")
        if receipt.pulled_from_bridge and self.bridge.paused:
            raise AdapterError("bridge paused", reason="bridge_paused")
        bought = self.desk.quote_buy_collateral(receipt.sold_for, receipt.price) if receipt.sold_for else 0
        if bought and not self.desk.can_pay(self.desk.collateral_id, bought):
            raise AdapterError("swap desk collateral exhausted", reason="insufficient_desk_liquidity")

        if receipt.repaid:
            self.pool.borrow(self.account, receipt.repaid)
        if receipt.pulled_from_bridge:
            self.bridge.bridge_out(self.account, receipt.pulled_from_bridge)
        if bought:
            self.desk.buy_collateral(receipt.sold_for, receipt.price)
        if receipt.released + bought:
            self.pool.supply(self.account, receipt.released + bought)

        lost = receipt.collateral_sold - bought
        self.restore_bookkeeping(before, economic=True)
        self.position.collateral -= lost
        if lost:
            logger.warning("release revert for %s lost %d collateral to swap fees", self.account, lost)
        self.log.emit("LEVERAGE_RELEASE_REVERTED", actor_id=self.account, amount=receipt.released,
                      meta={"repaid": receipt.repaid, "pulled": receipt.pulled_from_bridge, "lost": lost})

    def restore_bookkeeping(self, snapshot: CrossChainPosition, economic: bool = False) -> None:
        """Copy counters (and with `economic`, balances too) from an earlier position."""
        balances = {"collateral", "debt_usd", "bridged", "stable_idle"}
        for f in fields(CrossChainPosition):
            if economic or f.name not in balances:
                setattr(self.position, f.name, getattr(snapshot, f.name))
