from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple
import logging
import time

import requests

from .config import OracleConfig
from .core import PRICE_DECIMALS, parse_units
from .errors import OraclePriceUnavailable

logger = logging.getLogger(__name__)

STORK_PRICE_DECIMALS = 18


@dataclass(frozen=True)
class PriceQuote:
    value: int            # PRICE_DECIMALS fixed-point USD
    timestamp: float      # unix seconds
    source: str
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "value": int(self.value),
            "timestamp": float(self.timestamp),
            "source": self.source,
            "degraded": bool(self.degraded),
        }


class PriceOracle(Protocol):
    name: str

    def latest_value(self, asset_id: str) -> Tuple[int, float]:
        ...


class FixedPriceOracle:
    """Constant mock price; always fresh."""

    def __init__(self, price: int, name: str = "fixed") -> None:
        self.price = int(price)
        self.name = name

    def set_price(self, price: int) -> None:
        self.price = int(price)

    def latest_value(self, asset_id: str) -> Tuple[int, float]:
        return self.price, time.time()


class StorkPriceClient:
    """Stork REST `prices/latest` reader.

    Prices come back as 18-decimal integers (as strings) with nanosecond
    timestamps; both BITCOINUSD and BTCUSD symbols are tried, in that order.
    """

    def __init__(self, cfg: OracleConfig, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self.name = "stork"

    def _fetch(self) -> dict:
        url = f"{self.cfg.stork_base_url.rstrip('/')}/v1/prices/latest"
        headers = {"Authorization": f"Basic {self.cfg.stork_token}"} if self.cfg.stork_token else None
        try:
            resp = self.session.get(
                url,
                params={"assets": ",".join(self.cfg.stork_assets)},
                headers=headers,
                timeout=self.cfg.request_timeout_s,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise OraclePriceUnavailable(f"stork request failed: {exc}", source=self.name) from exc

    def latest_value(self, asset_id: str) -> Tuple[int, float]:
        payload = self._fetch()
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        for symbol in self.cfg.stork_assets:
            entry = data.get(symbol) if isinstance(data, dict) else None
            if not entry:
                continue
            raw_price = entry.get("price")
            raw_ts = entry.get("timestamp")
            if raw_price is None or raw_ts is None:
                continue
            try:
                price = int(raw_price) // 10 ** (STORK_PRICE_DECIMALS - PRICE_DECIMALS)
                ts = int(raw_ts) / 1e9
            except (TypeError, ValueError):
                continue
            if price > 0:
                return price, ts
        raise OraclePriceUnavailable("no usable stork price", source=self.name, requested=asset_id)


class FallbackPriceFeed:
    """Tries each oracle in order and degrades to a fixed price instead of failing."""

    def __init__(self, sources: List[PriceOracle], fallback_price: int, max_age_s: float = 300.0) -> None:
        self.sources = list(sources)
        self.fallback = FixedPriceOracle(fallback_price, name="fallback")
        self.max_age_s = float(max_age_s)
        self.last_quote: Optional[PriceQuote] = None

    @classmethod
    def from_config(cls, cfg: OracleConfig, session: Optional[requests.Session] = None) -> "FallbackPriceFeed":
        fixed = parse_units(cfg.fallback_price_usd, PRICE_DECIMALS)
        sources: List[PriceOracle] = []
        if cfg.use_stork:
            sources.append(StorkPriceClient(cfg, session=session))
        else:
            sources.append(FixedPriceOracle(fixed, name="fixed"))
        return cls(sources, fixed, cfg.max_age_s)

    def quote(self, asset_id: str = "BTCUSD") -> PriceQuote:
        now = time.time()
        for source in self.sources:
            try:
                value, ts = source.latest_value(asset_id)
            except OraclePriceUnavailable as exc:
                logger.warning("oracle %s unavailable: %s", source.name, exc)
                continue
            if value <= 0:
                logger.warning("oracle %s returned non-positive price %s", source.name, value)
                continue
            if now - ts > self.max_age_s:
                logger.warning("oracle %s stale by %.0fs", source.name, now - ts)
                continue
            self.last_quote = PriceQuote(value, ts, source.name, degraded=False)
            return self.last_quote
        value, ts = self.fallback.latest_value(asset_id)
        logger.warning("using fallback price %d for %s", value, asset_id)
        self.last_quote = PriceQuote(value, ts, self.fallback.name, degraded=True)
        return self.last_quote

    def price_or_fallback(self, asset_id: str = "BTCUSD") -> Tuple[int, str]:
        q = self.quote(asset_id)
        return q.value, q.source
