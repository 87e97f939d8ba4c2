import pytest

from lava.config import LeverageConfig
from lava.errors import InsufficientLiquidity, InvalidAmount, Unauthorized

from conftest import BTC, OPERATOR, USDC


@pytest.fixture
def looped(cross_chain_vault_factory):
    return cross_chain_vault_factory(LeverageConfig(leverage_loops=3))


def test_deposits_do_not_move_share_price(looped):
    assert looped.deposit(BTC, "alice") == BTC
    assert looped.deposit(BTC // 2, "bob") == BTC // 2
    assert looped.share_price() == pytest.approx(1.0)
    assert looped.check_invariants() == []


def test_withdraw_half_unwinds_proportionally(looped):
    looped.deposit(BTC, "alice")
    debt_before = looped.engine.position.debt_usd

    assets = looped.withdraw(BTC // 2, "alice")

    assert assets == BTC // 2
    assert abs(looped.total_assets() - BTC // 2) <= 1
    assert looped.engine.position.debt_usd == pytest.approx(debt_before / 2, rel=1e-6)
    assert looped.balance_of("alice") == BTC // 2
    assert looped.engine.health_factor() > 1.0
    assert looped.check_invariants() == []


def test_failed_withdraw_keeps_shares_and_position(looped):
    looped.deposit(BTC, "alice")
    before = looped.engine.position.to_dict()
    looped.engine.pool.locked_fraction = 1.0

    with pytest.raises(InsufficientLiquidity):
        looped.withdraw(BTC // 2, "alice")

    assert looped.balance_of("alice") == BTC
    assert looped.engine.position.to_dict() == before
    assert looped.receipts.tail(1)[0].status == "failed"


def test_failed_supply_mints_nothing(looped):
    looped.engine.bridge.paused = True
    with pytest.raises(InsufficientLiquidity):
        looped.deposit(BTC, "alice")
    assert looped.total_shares() == 0
    assert looped.engine.pool.supplied(looped.engine.account) == 0


def test_harvest_lifts_share_price(looped):
    looped.deposit(BTC, "alice")
    looped.engine.bridge.yield_source.add_profit(looped.engine.account, 1_000 * USDC)
    looped.harvest_cross_chain_yield(OPERATOR)
    assert looped.total_shares() == BTC
    assert looped.share_price() > 1.0
    assert looped.preview_redeem(BTC) > BTC


def test_forced_loop_through_the_vault(cross_chain_vault_factory):
    vault = cross_chain_vault_factory()
    vault.deposit(BTC, "alice")
    vault.loop_once(OPERATOR)
    assert vault.get_leverage_ratio() > 1.0
    assert vault.total_assets() == BTC


def test_zero_deposit_rejected(looped):
    with pytest.raises(InvalidAmount):
        looped.deposit(0, "alice")


def test_withdraw_for_another_owner_needs_that_owner(looped):
    looped.deposit(BTC, "alice")
    with pytest.raises(Unauthorized):
        looped.withdraw(BTC // 2, "mallory", owner="alice")
    assert looped.balance_of("alice") == BTC
