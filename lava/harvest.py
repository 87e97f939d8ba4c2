from __future__ import annotations
from dataclasses import dataclass
from typing import Literal, Optional
import logging

from .core import stable_to_usd, usd_to_stable
from .errors import AdapterError, InsufficientLiquidity
from .leverage import LeverageEngine
from .registry import AuthorizationTable, HARVEST

logger = logging.getLogger(__name__)


@dataclass
class HarvestReceipt:
    status: Literal["executed", "noop"]
    yield_balance: int
    profit: int = 0
    repaid: int = 0
    compounded_stable: int = 0
    collateral_added: int = 0
    price_source: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


class HarvestCycle:
    """Realize bridged profit: repay debt first, compound the rest into collateral."""

    def __init__(self, engine: LeverageEngine, auth: AuthorizationTable, permissionless: bool = False) -> None:
        self.engine = engine
        self.auth = auth
        self.permissionless = permissionless

    def pending_profit(self) -> int:
        e = self.engine
        return max(0, e.bridge.balance_of(e.account) - e.position.bridged)

    def harvest(self, caller: str) -> HarvestReceipt:
        if not self.permissionless:
            self.auth.require(HARVEST, caller)
        e = self.engine
        pos = e.position
        balance = e.bridge.balance_of(e.account)
        profit = max(0, balance - pos.bridged)
        if profit == 0:
            e.log.emit("HARVEST_NOOP", actor_id=caller, meta={"yield_balance": balance, "bridged": pos.bridged})
            return HarvestReceipt(status="noop", yield_balance=balance)

        quote = e.price_quote()
        price = quote.value
        repay = min(profit, usd_to_stable(pos.debt_usd, round_up=True))
        compound = profit - repay + pos.stable_idle
        bought = e.desk.quote_buy_collateral(compound, price) if compound > 0 else 0
        if bought and not e.desk.can_pay(e.desk.collateral_id, bought):
            raise InsufficientLiquidity("swap desk cannot absorb harvest", requested=bought,
                                        available=e.desk.inventory.get(e.desk.collateral_id))

        try:
            got = e.bridge.bridge_in(e.account, profit)
        except AdapterError as exc:
            raise InsufficientLiquidity(f"bridge_in failed: {exc.reason}", reason=exc.reason) from exc
        if got < profit:
            if got:
                e.bridge.bridge_out(e.account, got)
            raise InsufficientLiquidity("yield source returned less than the reported profit",
                                        requested=profit, available=got)

        repaid = e.pool.repay(e.account, repay) if repay else 0
        added = 0
        idle_after = 0
        if bought:
            try:
                added = e.desk.buy_collateral(compound, price)
            except AdapterError as exc:
                logger.warning("harvest compounding failed (%s); keeping %d stable idle", exc.reason, compound)
                idle_after = compound
            else:
                e.pool.supply(e.account, added)
        else:
            idle_after = compound

        pos.debt_usd = max(0, pos.debt_usd - stable_to_usd(repaid))
        pos.collateral += added
        pos.stable_idle = idle_after
        pos.harvested_total += profit
        pos.repaid_total += repaid

        e.log.emit("HARVEST_EXECUTED", actor_id=caller, amount=profit,
                   meta={"repaid": repaid, "collateral_added": added, "source": quote.source})
        logger.info("harvest %s: profit=%d repaid=%d collateral_added=%d", e.account, profit, repaid, added)
        return HarvestReceipt(
            status="executed",
            yield_balance=balance,
            profit=profit,
            repaid=repaid,
            compounded_stable=compound - idle_after,
            collateral_added=added,
            price_source=quote.source,
        )
