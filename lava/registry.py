from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Set, Tuple, TYPE_CHECKING
import logging

from .core import BPS
from .errors import InvalidAllocation, Unauthorized

if TYPE_CHECKING:
    from .adapters import StrategyAdapter

logger = logging.getLogger(__name__)

# Capabilities granted to principals. The owner chain of the deployment
# (vault -> bridge -> yield source) is expressed as grants, not ownership.
REGISTRY_WRITE = "registry.write"
RESERVE_WRITE = "reserve.write"
HARVEST = "harvest"
REBALANCE = "rebalance"
LEVERAGE_LOOP = "leverage.loop"
BRIDGE_OPERATE = "bridge.operate"
YIELD_SOURCE_MANAGE = "yield_source.manage"
ADAPTER_OPERATE = "adapter.operate"


class AuthorizationTable:
    def __init__(self) -> None:
        self.grants: Dict[str, Set[str]] = {}

    def grant(self, capability: str, principal: str) -> None:
        self.grants.setdefault(capability, set()).add(principal)

    def revoke(self, capability: str, principal: str) -> None:
        self.grants.get(capability, set()).discard(principal)

    def allows(self, capability: str, principal: Optional[str]) -> bool:
        return principal is not None and principal in self.grants.get(capability, set())

    def require(self, capability: str, principal: Optional[str]) -> None:
        if not self.allows(capability, principal):
            raise Unauthorized(f"{principal!r} lacks {capability}", capability=capability, principal=principal)


@dataclass(frozen=True)
class StrategyEntry:
    strategy_id: int
    adapter: "StrategyAdapter"
    allocation_bps: int
    enabled: bool = True
    name: str = ""

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "name": self.name or getattr(self.adapter, "name", ""),
            "allocation_bps": self.allocation_bps,
            "enabled": self.enabled,
        }


class StrategyRegistry:
    """Ordered strategy table owned by one vault.

    Rows are never removed; disabling keeps the row (and its history). Every
    mutation bumps `version` and passes through the operator gate.
    """

    def __init__(self, auth: AuthorizationTable, reserve_bps: int, max_strategies: int = 8) -> None:
        self.auth = auth
        self.reserve_bps = int(reserve_bps)
        self.max_strategies = int(max_strategies)
        self._order: List[int] = []
        self._entries: Dict[int, StrategyEntry] = {}
        self.version: int = 1

    def __len__(self) -> int:
        return len(self._order)

    def get(self, strategy_id: int) -> StrategyEntry:
        try:
            return self._entries[strategy_id]
        except KeyError:
            raise InvalidAllocation(f"unknown strategy {strategy_id}", strategy_id=strategy_id) from None

    def entries(self) -> List[StrategyEntry]:
        return [self._entries[sid] for sid in self._order]

    def enabled_entries(self) -> List[StrategyEntry]:
        return [e for e in self.entries() if e.enabled]

    def enabled_bps(self) -> int:
        return sum(e.allocation_bps for e in self.enabled_entries())

    def get_strategies(self) -> Tuple[List[int], List[StrategyEntry]]:
        return list(self._order), self.entries()

    def _check_budget(self, entries: List[StrategyEntry], reserve_bps: int) -> None:
        total = sum(e.allocation_bps for e in entries if e.enabled)
        if reserve_bps + total > BPS:
            raise InvalidAllocation(
                "allocation exceeds available bps",
                reserve_bps=reserve_bps, strategy_bps=total, limit=BPS - reserve_bps,
            )

    def add_strategy(self, caller: str, strategy_id: int, adapter: "StrategyAdapter",
                     allocation_bps: int, name: str = "") -> StrategyEntry:
        self.auth.require(REGISTRY_WRITE, caller)
        if strategy_id in self._entries:
            raise InvalidAllocation(f"strategy {strategy_id} already registered", strategy_id=strategy_id)
        if len(self._order) >= self.max_strategies:
            raise InvalidAllocation("strategy table full", max_strategies=self.max_strategies)
        if allocation_bps < 0:
            raise InvalidAllocation("negative allocation", allocation_bps=allocation_bps)
        entry = StrategyEntry(strategy_id, adapter, int(allocation_bps), True, name)
        self._check_budget(self.entries() + [entry], self.reserve_bps)
        self._entries[strategy_id] = entry
        self._order.append(strategy_id)
        self.version += 1
        logger.info("strategy %s added bps=%d version=%d", strategy_id, allocation_bps, self.version)
        return entry

    def set_strategy(self, caller: str, strategy_id: int, allocation_bps: int, enabled: bool) -> StrategyEntry:
        self.auth.require(REGISTRY_WRITE, caller)
        current = self.get(strategy_id)
        if allocation_bps < 0:
            raise InvalidAllocation("negative allocation", allocation_bps=allocation_bps)
        updated = replace(current, allocation_bps=int(allocation_bps), enabled=bool(enabled))
        candidate = [updated if e.strategy_id == strategy_id else e for e in self.entries()]
        self._check_budget(candidate, self.reserve_bps)
        self._entries[strategy_id] = updated
        self.version += 1
        logger.info("strategy %s set bps=%d enabled=%s version=%d",
                    strategy_id, allocation_bps, enabled, self.version)
        return updated

    def set_reserve_bps(self, caller: str, reserve_bps: int) -> None:
        self.auth.require(RESERVE_WRITE, caller)
        if not 0 <= reserve_bps <= BPS:
            raise InvalidAllocation("reserve bps out of range", reserve_bps=reserve_bps)
        self._check_budget(self.entries(), int(reserve_bps))
        self.reserve_bps = int(reserve_bps)
        self.version += 1

    def is_consistent(self) -> bool:
        return self.reserve_bps + self.enabled_bps() <= BPS
