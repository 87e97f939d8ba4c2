from dataclasses import dataclass, field
import os

@dataclass
class VaultConfig:
    # Portfolio routing
    vault_id: str = "portfolio_vault"
    reserve_bps: int = 2000          # 20% liquid buffer
    max_strategies: int = 8
    asset_symbol: str = "WcBTC"
    share_symbol: str = "pcBTC"

    # Governance
    operator_id: str = "operator"
    harvest_permissionless: bool = False

    # Bookkeeping
    event_log_maxlen: int | None = 5000
    receipt_log_maxlen: int | None = 5000

    # Debug
    debug_inventory: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.reserve_bps <= 10_000:
            raise ValueError(f"reserve_bps must be within 0..10000, got {self.reserve_bps}")
        if self.max_strategies < 1:
            raise ValueError("max_strategies must be >= 1")


@dataclass
class LeverageConfig:
    fixed_ltv_bps: int = 2000                 # borrow ~20% of collateral value
    liquidation_threshold_bps: int = 8000
    leverage_loops: int = 0                   # 0 = borrow once and bridge
    max_leverage_loops: int = 5
    allow_degraded_borrow: bool = True        # borrow against the fallback price
    swap_fee_bps: int = 0
    stable_symbol: str = "USDC"
    price_asset_id: str = "BTCUSD"

    def __post_init__(self) -> None:
        if not 0 < self.fixed_ltv_bps < 10_000:
            raise ValueError(f"fixed_ltv_bps must be within 1..9999, got {self.fixed_ltv_bps}")
        if not 0 < self.liquidation_threshold_bps <= 10_000:
            raise ValueError("liquidation_threshold_bps must be within 1..10000")
        if self.leverage_loops < 0 or self.max_leverage_loops < 0:
            raise ValueError("loop counts must be non-negative")
        self.leverage_loops = min(self.leverage_loops, self.max_leverage_loops)


@dataclass
class OracleConfig:
    stork_base_url: str = "https://rest.jp.stork-oracle.network"
    stork_assets: list[str] = field(default_factory=lambda: ["BITCOINUSD", "BTCUSD"])
    stork_token: str | None = None
    request_timeout_s: float = 5.0
    max_age_s: float = 300.0
    fallback_price_usd: float = 119_670.0
    use_stork: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "OracleConfig":
        token = os.environ.get("NEXT_PUBLIC_STORK_API_TOKEN") or os.environ.get("STORK_API_TOKEN")
        cfg = cls(stork_token=token, use_stork=bool(token))
        for key, value in overrides.items():
            setattr(cfg, key, value)
        return cfg


@dataclass
class ScenarioConfig:
    vault: VaultConfig = field(default_factory=VaultConfig)
    leverage: LeverageConfig = field(default_factory=LeverageConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)

    # Deployment (30/25/25 split of the post-reserve remainder)
    zentra_bps: int = 3000
    satsuma_bps: int = 2500
    crosschain_bps: int = 2500
    pool_stable_seed_usdc: float = 1_000_000.0
    swap_desk_stable_usdc: float = 1_000_000.0
    swap_desk_collateral_btc: float = 50.0

    # Users
    initial_users: int = 20
    max_users: int = 200
    user_growth_per_tick: float = 0.05
    deposit_prob: float = 0.35
    withdraw_prob: float = 0.15
    deposit_mean_btc: float = 0.05
    withdraw_share_mean: float = 0.5   # fraction of holdings redeemed per withdrawal

    # Yield accrual (per tick, 1 tick = 1 week)
    zentra_supply_rate: float = 0.0008
    satsuma_lp_rate: float = 0.0012
    yield_source_rate: float = 0.0015
    price_drift_sigma: float = 0.0  # 0 keeps the fixed demo price
    harvest_stride_ticks: int = 4
    rebalance_stride_ticks: int = 12

    # Liquidity shocks on the Zentra pool
    shock_tick: int | None = None
    shock_locked_fraction: float = 0.0
    shock_duration_ticks: int = 4

    # Bookkeeping
    metrics_stride: int = 1

    def __post_init__(self) -> None:
        if self.vault.reserve_bps + self.zentra_bps + self.satsuma_bps + self.crosschain_bps > 10_000:
            raise ValueError("reserve + strategy bps exceed 10000")
        if not 0.0 <= self.shock_locked_fraction <= 1.0:
            raise ValueError("shock_locked_fraction must be within [0, 1]")
