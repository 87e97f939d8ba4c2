from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional, Literal, List
from collections import deque
import logging

logger = logging.getLogger(__name__)

BPS = 10_000
ASSET_DECIMALS = 8     # cBTC / WcBTC
STABLE_DECIMALS = 6    # USDC
USD_DECIMALS = 12      # debt accounting
PRICE_DECIMALS = 8     # oracle price

OutcomeStatus = Literal["executed", "partial", "failed"]


def parse_units(value: str | int | float | Decimal, decimals: int) -> int:
    """Decimal string -> integer base units, truncating extra precision."""
    return int(Decimal(str(value)).scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def ceil_div(a: int, b: int) -> int:
    return -(-a // b)


# collateral (8d) x price (8d) -> usd (12d)
_PRICE_SCALE = 10 ** (ASSET_DECIMALS + PRICE_DECIMALS - USD_DECIMALS)
_STABLE_SCALE = 10 ** (USD_DECIMALS - STABLE_DECIMALS)


def collateral_to_usd(amount: int, price: int) -> int:
    return amount * price // _PRICE_SCALE


def usd_to_collateral(usd: int, price: int, round_up: bool = False) -> int:
    if round_up:
        return ceil_div(usd * _PRICE_SCALE, price)
    return usd * _PRICE_SCALE // price


def usd_to_stable(usd: int, round_up: bool = False) -> int:
    return ceil_div(usd, _STABLE_SCALE) if round_up else usd // _STABLE_SCALE


def stable_to_usd(amount: int) -> int:
    return amount * _STABLE_SCALE


def format_inventory(inv: Dict[str, int]) -> str:
    if not inv:
        return "(empty)"
    items = sorted(inv.items(), key=lambda kv: kv[0])
    return ", ".join(f"{asset}:{amount}" for asset, amount in items)


# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    seq: int
    event_type: str
    actor_id: Optional[str] = None
    strategy_id: Optional[int] = None
    asset_id: Optional[str] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "strategy_id": self.strategy_id,
            "asset_id": self.asset_id,
            "amount": self.amount,
            "meta": dict(self.meta),
        }


class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)
        self._seq = 0

    def emit(self, event_type: str, **kwargs) -> Event:
        self._seq += 1
        e = Event(self._seq, event_type, **kwargs)
        self.events.append(e)
        return e

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def of_type(self, event_type: str) -> List[Event]:
        return [e for e in self.events if e.event_type == event_type]


# -----------------------------
# Balances
# -----------------------------
class Inventory:
    """Per-asset integer balances held by one party (vault reserve, pool cash, ...)."""

    def __init__(self, owner_id: str = "", debug: bool = False) -> None:
        self.owner_id = owner_id
        self.debug = debug
        self.balances: Dict[str, int] = {}

    def get(self, asset_id: str) -> int:
        return int(self.balances.get(asset_id, 0))

    def add(self, asset_id: str, amount: int, action: str = "add") -> None:
        if amount < 0:
            raise ValueError(f"negative add {amount} for {asset_id}")
        before = dict(self.balances) if self._debugging() else None
        self.balances[asset_id] = self.get(asset_id) + int(amount)
        if before is not None:
            self._log_change(action, asset_id, amount, before)

    def sub(self, asset_id: str, amount: int, action: str = "sub") -> bool:
        amt = int(amount)
        if amt < 0 or self.get(asset_id) < amt:
            return False
        before = dict(self.balances) if self._debugging() else None
        self.balances[asset_id] = self.get(asset_id) - amt
        if self.balances[asset_id] == 0:
            self.balances.pop(asset_id, None)
        if before is not None:
            self._log_change(action, asset_id, amt, before)
        return True

    def _debugging(self) -> bool:
        return self.debug and logger.isEnabledFor(logging.DEBUG)

    def _log_change(self, action: str, asset_id: str, amount: int, before: Dict[str, int]) -> None:
        logger.debug(
            "[INV] owner=%s action=%s asset=%s amount=%d before={ %s } after={ %s }",
            self.owner_id,
            action,
            asset_id,
            amount,
            format_inventory(before),
            format_inventory(self.balances),
        )


# -----------------------------
# Fees
# -----------------------------
@dataclass
class FeeBreakdown:
    fee: int
    gross: int
    net: int

    def to_dict(self) -> dict:
        return {"fee": int(self.fee), "gross": int(self.gross), "net": int(self.net)}


class FeeRegistry:
    def __init__(self, fee_bps: int = 0) -> None:
        if not 0 <= fee_bps < BPS:
            raise ValueError(f"fee_bps out of range: {fee_bps}")
        self.fee_bps = int(fee_bps)

    def compute(self, gross: int) -> FeeBreakdown:
        fee = ceil_div(gross * self.fee_bps, BPS) if self.fee_bps else 0
        return FeeBreakdown(fee=fee, gross=gross, net=gross - fee)

    def gross_for_net(self, net: int) -> int:
        """Smallest gross whose net after fees covers `net`."""
        if not self.fee_bps:
            return net
        gross = ceil_div(net * BPS, BPS - self.fee_bps)
        while self.compute(gross).net < net:
            gross += 1
        return gross


# -----------------------------
# Receipts
# -----------------------------
@dataclass
class AdapterOutcome:
    """Result of one invest/divest call on a strategy adapter."""
    strategy_id: int
    action: Literal["invest", "divest"]
    requested: int
    moved: int
    status: OutcomeStatus
    fail_reason: Optional[str] = None

    @classmethod
    def settle(cls, strategy_id: int, action: str, requested: int, moved: int,
               fail_reason: Optional[str] = None) -> "AdapterOutcome":
        if moved <= 0:
            status = "failed"
            fail_reason = fail_reason or "nothing_moved"
        elif moved < requested:
            status = "partial"
        else:
            status = "executed"
        return cls(strategy_id, action, requested, max(0, moved), status, fail_reason)

    def to_dict(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "action": self.action,
            "requested": int(self.requested),
            "moved": int(self.moved),
            "status": self.status,
            "fail_reason": self.fail_reason,
        }


class ReceiptStore:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.receipts = deque(maxlen=maxlen)

    def add(self, r) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> list:
        return list(self.receipts)[-n:]
