"""
Pytest configuration and shared fixtures for the vault test suite.
"""
from __future__ import annotations

from typing import List, Optional

import pytest

from lava.adapters import StrategyAdapter
from lava.config import LeverageConfig, OracleConfig, ScenarioConfig, VaultConfig
from lava.core import PRICE_DECIMALS, parse_units
from lava.errors import AdapterError
from lava.factory import DeploymentFactory
from lava.oracle import FallbackPriceFeed, FixedPriceOracle
from lava.registry import AuthorizationTable, ADAPTER_OPERATE, REGISTRY_WRITE, RESERVE_WRITE

OPERATOR = "operator"
VAULT = "portfolio_vault"
BTC = 10 ** 8
USDC = 10 ** 6
PRICE = parse_units(119_670, PRICE_DECIMALS)


class FakeAdapter(StrategyAdapter):
    """In-memory strategy with optional caps on what it accepts and returns."""
    name = "fake"

    def __init__(self, strategy_id: int, auth: AuthorizationTable, held: int = 0,
                 liquidity: Optional[int] = None, accept: Optional[int] = None,
                 fail_divest: bool = False) -> None:
        super().__init__(strategy_id, auth)
        self.held = held
        self.liquidity = liquidity
        self.accept = accept
        self.fail_divest = fail_divest
        self.divest_asks: List[int] = []
        self.invest_calls: List[int] = []

    def total_assets(self) -> int:
        return self.held

    def _invest(self, amount: int) -> int:
        self.invest_calls.append(amount)
        taken = amount if self.accept is None else min(amount, self.accept)
        self.held += taken
        return taken

    def _divest(self, requested: int) -> int:
        self.divest_asks.append(requested)
        if self.fail_divest:
            raise AdapterError("strategy paused", reason="paused")
        out = min(requested, self.held)
        if self.liquidity is not None:
            out = min(out, self.liquidity)
        self.held -= out
        return out


@pytest.fixture
def auth() -> AuthorizationTable:
    table = AuthorizationTable()
    for capability in (REGISTRY_WRITE, RESERVE_WRITE):
        table.grant(capability, OPERATOR)
    table.grant(ADAPTER_OPERATE, VAULT)
    return table


@pytest.fixture
def make_adapter(auth):
    def _make(strategy_id: int, **kwargs) -> FakeAdapter:
        return FakeAdapter(strategy_id, auth, **kwargs)
    return _make


@pytest.fixture
def prices() -> FallbackPriceFeed:
    return FallbackPriceFeed([FixedPriceOracle(PRICE, name="fixed")], fallback_price=PRICE)


@pytest.fixture
def scenario() -> ScenarioConfig:
    return ScenarioConfig(oracle=OracleConfig(use_stork=False))


@pytest.fixture
def deployment(scenario, prices):
    return DeploymentFactory(scenario, prices=prices).build()


@pytest.fixture
def vault(deployment):
    return deployment.vault


@pytest.fixture
def cross_chain_vault_factory(prices):
    def _build(leverage: Optional[LeverageConfig] = None, vault: Optional[VaultConfig] = None,
               feed: Optional[FallbackPriceFeed] = None):
        cfg = ScenarioConfig(
            vault=vault or VaultConfig(),
            leverage=leverage or LeverageConfig(),
            oracle=OracleConfig(use_stork=False),
        )
        return DeploymentFactory(cfg, prices=feed or prices).build_cross_chain_vault()
    return _build
