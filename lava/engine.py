from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import math
import numpy as np
import random

from .config import ScenarioConfig
from .core import ASSET_DECIMALS, PRICE_DECIMALS, STABLE_DECIMALS, USD_DECIMALS
from .errors import VaultError
from .factory import Deployment, DeploymentFactory
from .metrics import MetricsStore
from .oracle import FallbackPriceFeed, FixedPriceOracle

logger = logging.getLogger(__name__)


@dataclass
class User:
    user_id: str
    deposited: int = 0
    withdrawn: int = 0


class SimulationEngine:
    """Tick-driven scenario around one deployment.

    Users arrive, deposit and redeem at random; strategies accrue yield; the
    operator harvests and rebalances on fixed strides. Invariants are checked
    after every tick.
    """

    def __init__(self, cfg: ScenarioConfig, seed: int = 1,
                 prices: Optional[FallbackPriceFeed] = None) -> None:
        self.cfg = cfg
        self.rng = random.Random(seed)
        np.random.seed(seed)

        self.tick: int = 0
        self.metrics = MetricsStore()
        self.deployment: Deployment = DeploymentFactory(cfg, prices=prices).build()
        self.vault = self.deployment.vault
        self.log = self.deployment.log

        self.users: Dict[str, User] = {}
        self._user_counter = 0
        self._growth_remainder = 0.0
        self._shock_until: Optional[int] = None
        self.invariant_violations: List[str] = []

        self._deposits_tick = 0
        self._withdrawals_tick = 0
        self._failed_withdrawals_tick = 0
        self._harvest_profit_tick = 0

        self._bootstrap()

    def _bootstrap(self) -> None:
        for _ in range(self.cfg.initial_users):
            self._add_user()
        self.snapshot_metrics()

    def _add_user(self) -> User:
        self._user_counter += 1
        user = User(f"user_{self._user_counter:04d}")
        self.users[user.user_id] = user
        return user

    @property
    def operator(self) -> str:
        return self.deployment.operator

    # -----------------------------
    # Exogenous processes
    # -----------------------------
    def _grow_users(self) -> None:
        if len(self.users) >= self.cfg.max_users:
            return
        self._growth_remainder += len(self.users) * self.cfg.user_growth_per_tick
        new = int(self._growth_remainder)
        self._growth_remainder -= new
        for _ in range(min(new, self.cfg.max_users - len(self.users))):
            self._add_user()

    def _drift_price(self) -> None:
        sigma = float(self.cfg.price_drift_sigma or 0.0)
        if sigma <= 0.0:
            return
        for source in self.deployment.prices.sources:
            if isinstance(source, FixedPriceOracle):
                source.set_price(max(1, int(source.price * math.exp(np.random.normal(0.0, sigma)))))

    def _apply_shock(self) -> None:
        cfg = self.cfg
        pool = self.deployment.pool
        if cfg.shock_tick is not None and self.tick == cfg.shock_tick:
            pool.locked_fraction = cfg.shock_locked_fraction
            self._shock_until = self.tick + max(1, cfg.shock_duration_ticks)
            self.log.emit("LIQUIDITY_SHOCK", meta={"tick": self.tick, "locked_fraction": cfg.shock_locked_fraction})
            logger.info("tick %d: zentra liquidity shock, %.0f%% locked", self.tick, 100 * cfg.shock_locked_fraction)
        elif self._shock_until is not None and self.tick >= self._shock_until:
            pool.locked_fraction = 0.0
            self._shock_until = None
            self.log.emit("LIQUIDITY_RESTORED", meta={"tick": self.tick})

    def _accrue_yield(self) -> None:
        d = self.deployment
        d.pool.accrue(f"{self.vault.vault_id}:zentra", self.cfg.zentra_supply_rate)
        d.lp.accrue(self.cfg.satsuma_lp_rate)
        d.yield_source.accrue(self.cfg.yield_source_rate)

    # -----------------------------
    # Users
    # -----------------------------
    def _sample_deposit(self) -> int:
        btc = np.random.exponential(self.cfg.deposit_mean_btc)
        return int(btc * 10 ** ASSET_DECIMALS)

    def _user_deposit(self, user: User) -> None:
        amount = self._sample_deposit()
        if amount <= 0:
            return
        try:
            self.vault.deposit(amount, user.user_id)
        except VaultError as exc:
            logger.debug("tick %d: deposit by %s rejected: %s", self.tick, user.user_id, exc)
            return
        user.deposited += amount
        self._deposits_tick += 1

    def _sample_withdraw_fraction(self) -> float:
        mean = self.cfg.withdraw_share_mean
        if mean >= 1.0:
            return 1.0
        # beta(2, b) has mean 2 / (2 + b)
        return self.rng.betavariate(2.0, 2.0 / max(1e-6, mean) - 2.0)

    def _user_withdraw(self, user: User) -> None:
        held = self.vault.balance_of(user.user_id)
        if held <= 0:
            return
        shares = max(1, int(held * self._sample_withdraw_fraction()))
        try:
            assets = self.vault.withdraw(shares, user.user_id)
        except VaultError as exc:
            self._failed_withdrawals_tick += 1
            logger.debug("tick %d: withdraw by %s failed: %s", self.tick, user.user_id, exc)
            return
        user.withdrawn += assets
        self._withdrawals_tick += 1

    def _user_activity(self) -> None:
        users = list(self.users.values())
        self.rng.shuffle(users)
        for user in users:
            r = self.rng.random()
            if r < self.cfg.deposit_prob:
                self._user_deposit(user)
            elif r < self.cfg.deposit_prob + self.cfg.withdraw_prob:
                self._user_withdraw(user)

    # -----------------------------
    # Operator
    # -----------------------------
    def _operator_actions(self) -> None:
        harvest_stride = int(self.cfg.harvest_stride_ticks or 0)
        if harvest_stride > 0 and self.tick % harvest_stride == 0:
            try:
                receipt = self.vault.harvest_cross_chain_yield(self.operator)
            except VaultError as exc:
                logger.warning("tick %d: harvest failed: %s", self.tick, exc)
            else:
                self._harvest_profit_tick += receipt.profit
        rebalance_stride = int(self.cfg.rebalance_stride_ticks or 0)
        if rebalance_stride > 0 and self.tick % rebalance_stride == 0:
            try:
                self.vault.rebalance(self.operator)
            except VaultError as exc:
                logger.warning("tick %d: rebalance failed: %s", self.tick, exc)

    def _check_invariants(self) -> None:
        problems = self.vault.check_invariants()
        for problem in problems:
            self.invariant_violations.append(f"tick {self.tick}: {problem}")
            self.log.emit("INVARIANT_VIOLATION", meta={"tick": self.tick, "problem": problem})
            logger.error("tick %d: invariant violated: %s", self.tick, problem)

    def step(self, n_ticks: int = 1) -> None:
        for _ in range(n_ticks):
            self.tick += 1
            self._deposits_tick = 0
            self._withdrawals_tick = 0
            self._failed_withdrawals_tick = 0
            self._harvest_profit_tick = 0

            self._grow_users()
            self._drift_price()
            self._apply_shock()
            self._accrue_yield()
            self._user_activity()
            self._operator_actions()
            self._check_invariants()
            self.snapshot_metrics()

    # -----------------------------
    # Metrics
    # -----------------------------
    def snapshot_metrics(self) -> None:
        stride = int(self.cfg.metrics_stride or 0)
        if stride <= 0 or self.tick % stride != 0:
            return
        vault = self.vault
        pos = self.deployment.leverage.position
        price, source = vault.get_btc_price_or_fallback()
        hf = vault.get_health_factor()
        nav = vault.total_assets()
        self.metrics.add_vault({
            "tick": self.tick,
            "users": len(self.users),
            "holders": len(vault.ledger.holders()),
            "total_assets_btc": nav / 10 ** ASSET_DECIMALS,
            "total_shares": vault.total_shares(),
            "share_price": vault.share_price(),
            "reserve_btc": vault.reserve_balance() / 10 ** ASSET_DECIMALS,
            "reserve_ratio": vault.reserve_balance() / nav if nav else 0.0,
            "health_factor": hf if math.isfinite(hf) else float("nan"),
            "leverage_ratio": vault.get_leverage_ratio(),
            "debt_usd": pos.debt_usd / 10 ** USD_DECIMALS,
            "bridged_usdc": pos.bridged / 10 ** STABLE_DECIMALS,
            "yield_balance_usdc": self.deployment.bridge.balance_of(self.deployment.leverage.account)
            / 10 ** STABLE_DECIMALS,
            "harvested_total_usdc": pos.harvested_total / 10 ** STABLE_DECIMALS,
            "btc_price_usd": price / 10 ** PRICE_DECIMALS,
            "price_source": source,
            "deposits_tick": self._deposits_tick,
            "withdrawals_tick": self._withdrawals_tick,
            "failed_withdrawals_tick": self._failed_withdrawals_tick,
            "harvest_profit_usdc_tick": self._harvest_profit_tick / 10 ** STABLE_DECIMALS,
            "zentra_locked_fraction": self.deployment.pool.locked_fraction,
            "invariant_violations": len(self.invariant_violations),
        })
        rows = []
        for entry in vault.registry.entries():
            rows.append({
                "tick": self.tick,
                "strategy_id": entry.strategy_id,
                "name": entry.name,
                "enabled": entry.enabled,
                "allocation_bps": entry.allocation_bps,
                "assets_btc": entry.adapter.total_assets() / 10 ** ASSET_DECIMALS,
                "assets": entry.adapter.total_assets(),
            })
        self.metrics.add_strategy_rows(rows)
