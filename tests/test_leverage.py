import math

import pytest

from lava.config import LeverageConfig
from lava.errors import (
    HealthFactorViolation, InsufficientLiquidity, OraclePriceUnavailable, Unauthorized,
)
from lava.oracle import FallbackPriceFeed

from conftest import BTC, OPERATOR, PRICE, USDC


def test_supply_borrows_at_fixed_ltv_and_bridges(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    receipt = engine.supply(BTC)

    # 1 BTC at 119,670 USD, 20% LTV -> 23,934 USDC
    assert receipt.borrowed == 23_934 * USDC
    assert receipt.loops_executed == 0
    pos = engine.position
    assert pos.collateral == BTC
    assert pos.bridged == 23_934 * USDC
    assert pos.debt_usd == 23_934 * USDC * 10 ** 6
    assert engine.bridge.balance_of(engine.account) == 23_934 * USDC
    assert engine.health_factor() == pytest.approx(4.0)
    assert engine.net_asset_value() == BTC


def test_no_debt_means_infinite_health_factor(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    assert math.isinf(engine.health_factor())
    assert engine.leverage_ratio() == 1.0


def test_loops_buy_collateral_with_each_borrow(cross_chain_vault_factory):
    engine = cross_chain_vault_factory(LeverageConfig(leverage_loops=3)).engine
    receipt = engine.supply(BTC)

    assert receipt.loops_executed == 3
    assert receipt.loop_halt_reason is None
    # 1 + 0.2 + 0.04 + 0.008 BTC
    assert engine.position.collateral == 124_800_000
    assert engine.position.bridged == 23_934 * USDC
    assert engine.net_asset_value() == BTC
    assert engine.health_factor() > 1.0
    assert engine.leverage_ratio() > 1.0


def test_loop_count_is_capped(cross_chain_vault_factory):
    cfg = LeverageConfig(leverage_loops=9, max_leverage_loops=2)
    assert cfg.leverage_loops == 2
    engine = cross_chain_vault_factory(cfg).engine
    assert engine.supply(BTC).loops_executed == 2


def test_unsafe_loop_step_halts_the_loop(cross_chain_vault_factory):
    cfg = LeverageConfig(fixed_ltv_bps=7000, liquidation_threshold_bps=8000, leverage_loops=3)
    engine = cross_chain_vault_factory(cfg).engine
    receipt = engine.supply(BTC)

    assert receipt.loops_executed == 0
    assert receipt.loop_halt_reason == "health_factor"
    assert engine.log.of_type("LOOP_HALTED")
    assert engine.health_factor() > 1.0


def test_initial_borrow_at_the_floor_is_rejected(cross_chain_vault_factory):
    cfg = LeverageConfig(fixed_ltv_bps=8000, liquidation_threshold_bps=8000)
    engine = cross_chain_vault_factory(cfg).engine
    with pytest.raises(HealthFactorViolation):
        engine.supply(BTC)
    assert engine.pool.supplied(engine.account) == 0
    assert engine.bridge.balance_of(engine.account) == 0
    assert engine.position.collateral == 0


def test_forced_loop_step_is_checked(cross_chain_vault_factory):
    cfg = LeverageConfig(fixed_ltv_bps=7000, liquidation_threshold_bps=8000)
    engine = cross_chain_vault_factory(cfg).engine
    engine.supply(BTC)
    with pytest.raises(Unauthorized):
        engine.loop_once("mallory")
    with pytest.raises(HealthFactorViolation):
        engine.loop_once(OPERATOR)
    assert engine.position.loops_executed == 0


def test_forced_loop_step_executes_when_safe(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    engine.supply(BTC)
    step = engine.loop_once(OPERATOR)
    assert step.collateral_in == 20_000_000
    assert engine.position.collateral == 120_000_000
    assert engine.position.loops_executed == 1


class DeadOracle:
    name = "dead"

    def latest_value(self, asset_id):
        raise OraclePriceUnavailable("no data")


def test_degraded_price_borrow_policy(cross_chain_vault_factory):
    feed = FallbackPriceFeed([DeadOracle()], fallback_price=PRICE)
    strict = cross_chain_vault_factory(LeverageConfig(allow_degraded_borrow=False), feed=feed).engine
    with pytest.raises(OraclePriceUnavailable):
        strict.supply(BTC)

    lenient = cross_chain_vault_factory(feed=feed).engine
    receipt = lenient.supply(BTC)
    assert receipt.degraded is True
    assert receipt.price_source == "fallback"
    assert receipt.borrowed == 23_934 * USDC


def test_release_repays_from_bridge(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    engine.supply(BTC)
    receipt = engine.release(BTC // 2)

    assert receipt.released == BTC // 2
    assert receipt.pulled_from_bridge == 11_967 * USDC
    assert receipt.collateral_sold == 0
    pos = engine.position
    assert pos.collateral == BTC // 2
    assert pos.bridged == 11_967 * USDC
    assert engine.net_asset_value() == BTC // 2
    assert engine.health_factor() == pytest.approx(4.0)


def test_release_sells_collateral_when_bridge_is_down(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    engine.supply(BTC)
    engine.bridge.paused = True
    receipt = engine.release(BTC // 2)

    assert receipt.pulled_from_bridge == 0
    assert receipt.collateral_sold == 10_000_000
    assert receipt.repaid == 11_967 * USDC
    assert engine.position.collateral == 40_000_000
    assert engine.position.stable_idle == 0
    assert engine.net_asset_value() == BTC // 2


def test_release_is_all_or_nothing(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    engine.supply(BTC)
    before = engine.position.to_dict()
    yield_balance = engine.bridge.balance_of(engine.account)

    with pytest.raises(InsufficientLiquidity):
        engine.release(BTC + 1)
    engine.pool.locked_fraction = 1.0
    with pytest.raises(InsufficientLiquidity):
        engine.release(BTC // 2)

    assert engine.position.to_dict() == before
    assert engine.bridge.balance_of(engine.account) == yield_balance


def test_release_bound_follows_pool_liquidity(cross_chain_vault_factory):
    engine = cross_chain_vault_factory().engine
    engine.supply(BTC)
    assert engine.max_release() == BTC
    assert engine.reconcile() == []
    engine.pool.locked_fraction = 1.0
    assert engine.max_release() == 0


def test_reverted_release_restores_the_position(cross_chain_vault_factory):
    engine = cross_chain_vault_factory(LeverageConfig(leverage_loops=3)).engine
    engine.supply(BTC)
    before = engine.position.to_dict()
    yield_balance = engine.bridge.balance_of(engine.account)

    receipt = engine.release(BTC // 2)
    assert engine.position.repaid_total > 0
    engine.revert_release(receipt)

    assert engine.position.to_dict() == before
    assert engine.bridge.balance_of(engine.account) == yield_balance
    assert engine.reconcile() == []
