import pytest

from lava.config import VaultConfig
from lava.core import stable_to_usd, usd_to_collateral
from lava.errors import Unauthorized

from conftest import BTC, OPERATOR, PRICE, USDC


@pytest.fixture
def levered(cross_chain_vault_factory):
    vault = cross_chain_vault_factory()
    vault.deposit(BTC, "alice")
    return vault


def _credit_yield(vault, amount):
    vault.engine.bridge.yield_source.add_profit(vault.engine.account, amount)


def test_no_profit_is_a_noop(levered):
    before = levered.engine.position.to_dict()
    receipt = levered.harvest_cross_chain_yield(OPERATOR)
    assert receipt.status == "noop"
    assert levered.engine.position.to_dict() == before
    assert levered.log.of_type("HARVEST_NOOP")


def test_profit_above_debt_clears_debt_and_compounds(levered):
    engine = levered.engine
    shares = levered.total_shares()
    nav_before = levered.total_assets()
    _credit_yield(levered, 30_000 * USDC)

    receipt = levered.harvest_cross_chain_yield(OPERATOR)

    assert receipt.status == "executed"
    assert receipt.profit == 30_000 * USDC
    assert receipt.repaid == 23_934 * USDC
    expected = usd_to_collateral(stable_to_usd(30_000 * USDC - 23_934 * USDC), PRICE)
    assert receipt.collateral_added == expected
    assert engine.position.debt_usd == 0
    assert engine.position.collateral == BTC + expected
    assert levered.total_shares() == shares
    # NAV grows by the profit priced in collateral
    gain = levered.total_assets() - nav_before
    assert abs(gain - usd_to_collateral(stable_to_usd(30_000 * USDC), PRICE)) <= 1
    assert levered.check_invariants() == []


def test_profit_below_debt_only_repays(levered):
    engine = levered.engine
    _credit_yield(levered, 1_000 * USDC)
    receipt = levered.harvest_cross_chain_yield(OPERATOR)
    assert receipt.repaid == 1_000 * USDC
    assert receipt.collateral_added == 0
    assert engine.position.debt_usd == (23_934 - 1_000) * USDC * 10 ** 6
    assert engine.position.collateral == BTC
    assert engine.position.bridged == 23_934 * USDC


def test_profit_is_measured_against_bridged_principal(levered):
    _credit_yield(levered, 500 * USDC)
    assert levered.harvester.pending_profit() == 500 * USDC
    levered.harvest_cross_chain_yield(OPERATOR)
    assert levered.harvester.pending_profit() == 0


def test_harvest_is_operator_only_by_default(levered):
    _credit_yield(levered, 500 * USDC)
    with pytest.raises(Unauthorized):
        levered.harvest_cross_chain_yield("keeper")


def test_permissionless_harvest(cross_chain_vault_factory):
    vault = cross_chain_vault_factory(vault=VaultConfig(harvest_permissionless=True))
    vault.deposit(BTC, "alice")
    _credit_yield(vault, 500 * USDC)
    assert vault.harvest_cross_chain_yield("keeper").status == "executed"


def test_portfolio_vault_harvest_keeps_invariants(vault, deployment):
    vault.deposit(20_000, "alice")
    deployment.yield_source.add_profit(deployment.leverage.account, 2 * USDC)
    total_before = vault.total_assets()

    receipt = vault.harvest_cross_chain_yield(OPERATOR)

    assert receipt.status == "executed"
    assert vault.total_assets() > total_before
    assert vault.total_shares() == 20_000
    assert vault.check_invariants() == []
    assert vault.preview_redeem(20_000) > 20_000
