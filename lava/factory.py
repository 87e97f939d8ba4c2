from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional
import logging

import requests

from .adapters import CrossChainAdapter, LendingAdapter, LPVaultAdapter
from .config import ScenarioConfig
from .core import ASSET_DECIMALS, STABLE_DECIMALS, EventLog, FeeRegistry, parse_units
from .crosschain import CrossChainVault
from .harvest import HarvestCycle
from .leverage import LeverageEngine
from .oracle import FallbackPriceFeed
from .protocols import Bridge, LendingPool, LPVault, SwapDesk, YieldSource
from .registry import (
    AuthorizationTable,
    ADAPTER_OPERATE, BRIDGE_OPERATE, HARVEST, LEVERAGE_LOOP, REBALANCE, REGISTRY_WRITE, RESERVE_WRITE,
    YIELD_SOURCE_MANAGE,
)
from .vault import PortfolioVault

logger = logging.getLogger(__name__)

ZENTRA_ID = 1
SATSUMA_ID = 2
CROSSCHAIN_ID = 3

OPERATOR_CAPABILITIES = (REGISTRY_WRITE, RESERVE_WRITE, HARVEST, REBALANCE, LEVERAGE_LOOP)


@dataclass
class Deployment:
    cfg: ScenarioConfig
    auth: AuthorizationTable
    log: EventLog
    prices: FallbackPriceFeed
    pool: LendingPool
    lp: LPVault
    yield_source: YieldSource
    bridge: Bridge
    desk: SwapDesk
    leverage: LeverageEngine
    harvester: HarvestCycle
    vault: PortfolioVault

    @property
    def operator(self) -> str:
        return self.cfg.vault.operator_id


class DeploymentFactory:
    """Wires the protocols, adapters and vault of one deployment.

    Strategies are registered Zentra, Satsuma, CrossChain, so the cross-chain
    leg is last and absorbs the allocation remainder.
    """

    def __init__(self, cfg: ScenarioConfig, prices: Optional[FallbackPriceFeed] = None,
                 session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.prices = prices or FallbackPriceFeed.from_config(cfg.oracle, session=session)

    def _protocols(self, auth: AuthorizationTable, prefix: str = ""):
        cfg = self.cfg
        debug = cfg.vault.debug_inventory
        asset = cfg.vault.asset_symbol
        stable = cfg.leverage.stable_symbol

        pool = LendingPool(f"{prefix}zentra_pool", asset, stable, debug=debug)
        pool.seed_stable(parse_units(cfg.pool_stable_seed_usdc, STABLE_DECIMALS))
        yield_source = YieldSource(f"{prefix}yield_source", stable, auth, debug=debug)
        bridge = Bridge(f"{prefix}bridge", yield_source, auth)
        auth.grant(YIELD_SOURCE_MANAGE, bridge.bridge_id)
        desk = SwapDesk(f"{prefix}swap_desk", asset, stable, fees=FeeRegistry(cfg.leverage.swap_fee_bps),
                        debug=debug)
        desk.inventory.add(stable, parse_units(cfg.swap_desk_stable_usdc, STABLE_DECIMALS), "seed")
        desk.inventory.add(asset, parse_units(cfg.swap_desk_collateral_btc, ASSET_DECIMALS), "seed")
        return pool, yield_source, bridge, desk

    def _grant_operator(self, auth: AuthorizationTable) -> None:
        for capability in OPERATOR_CAPABILITIES:
            auth.grant(capability, self.cfg.vault.operator_id)

    def build(self) -> Deployment:
        cfg = self.cfg
        auth = AuthorizationTable()
        self._grant_operator(auth)
        log = EventLog(maxlen=cfg.vault.event_log_maxlen)
        pool, yield_source, bridge, desk = self._protocols(auth)
        lp = LPVault("satsuma_lp", cfg.vault.asset_symbol, debug=cfg.vault.debug_inventory)

        vault = PortfolioVault(cfg.vault, auth, self.prices, log=log)
        auth.grant(ADAPTER_OPERATE, vault.vault_id)

        account = f"{vault.vault_id}:crosschain"
        auth.grant(BRIDGE_OPERATE, account)
        leverage = LeverageEngine(cfg.leverage, account, pool, bridge, desk, self.prices, auth, log=log)
        harvester = HarvestCycle(leverage, auth, permissionless=cfg.vault.harvest_permissionless)

        op = cfg.vault.operator_id
        vault.add_strategy(op, LendingAdapter(ZENTRA_ID, auth, f"{vault.vault_id}:zentra", pool),
                           cfg.zentra_bps, "Zentra")
        vault.add_strategy(op, LPVaultAdapter(SATSUMA_ID, auth, f"{vault.vault_id}:satsuma", lp),
                           cfg.satsuma_bps, "Satsuma")
        vault.add_strategy(op, CrossChainAdapter(CROSSCHAIN_ID, auth, leverage, harvester),
                           cfg.crosschain_bps, "CrossChain")
        logger.info("deployment built: reserve=%d zentra=%d satsuma=%d crosschain=%d",
                    cfg.vault.reserve_bps, cfg.zentra_bps, cfg.satsuma_bps, cfg.crosschain_bps)
        return Deployment(cfg, auth, log, self.prices, pool, lp, yield_source, bridge, desk,
                          leverage, harvester, vault)

    def build_cross_chain_vault(self, vault_id: str = "crosschain_vault") -> CrossChainVault:
        """Standalone leveraged vault with its own pool, bridge and swap desk."""
        cfg = self.cfg
        auth = AuthorizationTable()
        self._grant_operator(auth)
        log = EventLog(maxlen=cfg.vault.event_log_maxlen)
        pool, _, bridge, desk = self._protocols(auth, prefix=f"{vault_id}:")
        auth.grant(BRIDGE_OPERATE, vault_id)
        engine = LeverageEngine(cfg.leverage, vault_id, pool, bridge, desk, self.prices, auth, log=log)
        harvester = HarvestCycle(engine, auth, permissionless=cfg.vault.harvest_permissionless)
        vault_cfg = replace(cfg.vault, vault_id=vault_id)
        return CrossChainVault(vault_cfg, engine, harvester, log=log)
