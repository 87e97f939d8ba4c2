import pytest

from lava.adapters import StrategyAdapter
from lava.config import LeverageConfig, OracleConfig, ScenarioConfig, VaultConfig
from lava.errors import InvalidAllocation, InvalidAmount, ReentrantCall, Unauthorized
from lava.factory import CROSSCHAIN_ID, SATSUMA_ID, ZENTRA_ID, DeploymentFactory
from lava.vault import PortfolioVault

from conftest import BTC, OPERATOR, PRICE


def test_share_price_is_stable_across_deposits(vault):
    vault.deposit(20_000, "alice")
    assert vault.deposit(10_000, "bob") == 10_000
    assert vault.share_price() == 1.0
    assert vault.total_assets() == 30_000
    assert vault.check_invariants() == []


def test_views_report_cross_chain_state(vault):
    vault.deposit(20_000, "alice")
    assert vault.get_health_factor() == pytest.approx(4.0)
    assert vault.get_leverage_ratio() == pytest.approx(1.25)
    assert vault.get_btc_price_or_fallback() == (PRICE, "fixed")


def test_views_without_cross_chain_strategy(auth, prices):
    bare = PortfolioVault(VaultConfig(), auth, prices)
    assert bare.get_health_factor() == float("inf")
    assert bare.get_leverage_ratio() == 1.0
    assert bare.harvest_cross_chain_yield(OPERATOR).status == "noop"


def test_redeem_checks(vault):
    vault.deposit(20_000, "alice")
    with pytest.raises(InvalidAmount):
        vault.withdraw(20_001, "alice")
    with pytest.raises(InvalidAmount):
        vault.withdraw(0, "alice")
    with pytest.raises(Unauthorized):
        vault.withdraw(100, "mallory", owner="alice", caller="mallory")
    assert vault.balance_of("alice") == 20_000


def test_withdraw_to_another_receiver(vault):
    vault.deposit(20_000, "alice")
    assert vault.withdraw(1_000, "bob", owner="alice", caller="alice") == 1_000
    assert vault.balance_of("alice") == 19_000
    event = vault.log.of_type("WITHDRAW")[-1]
    assert event.meta["receiver"] == "bob"


def test_preview_matches_execution(vault):
    vault.deposit(20_000, "alice")
    expected = vault.preview_redeem(7_000)
    assert vault.withdraw(7_000, "alice") == expected
    assert vault.preview_deposit(5_000) == vault.deposit(5_000, "carol")


def test_rebalance_moves_disabled_strategy_out(vault):
    vault.deposit(20_000, "alice")
    vault.set_strategy(OPERATOR, SATSUMA_ID, 2500, False)

    receipt = vault.rebalance(OPERATOR)

    assert receipt.divested == 5_000
    assert receipt.invested == 5_000
    # remaining 16000 normalized over 3000 / 2500 bps
    assert vault.strategy_assets() == {ZENTRA_ID: 8_727, SATSUMA_ID: 0, CROSSCHAIN_ID: 7_273}
    assert vault.reserve_balance() == 4_000
    assert vault.total_assets() == 20_000
    assert vault.check_invariants() == []


def test_rebalance_requires_capability(vault):
    with pytest.raises(Unauthorized):
        vault.rebalance("mallory")


def test_reserve_bps_update(vault):
    vault.set_reserve_bps(OPERATOR, 1000)
    assert vault.registry.reserve_bps == 1000
    with pytest.raises(InvalidAllocation):
        vault.set_reserve_bps(OPERATOR, 2500)
    vault.deposit(10_000, "alice")
    assert vault.reserve_balance() == 1_000


def test_strategy_changes_are_logged(vault):
    vault.set_strategy(OPERATOR, ZENTRA_ID, 1000, True)
    events = vault.log.of_type("STRATEGY_UPDATED")
    assert events[-1].strategy_id == ZENTRA_ID
    assert len(vault.log.of_type("STRATEGY_ADDED")) == 3


class ReentrantAdapter(StrategyAdapter):
    name = "reentrant"

    def __init__(self, strategy_id, auth, vault):
        super().__init__(strategy_id, auth)
        self.vault = vault
        self.held = 0

    def total_assets(self):
        return self.held

    def _invest(self, amount):
        self.vault.deposit(amount, "attacker")
        self.held += amount
        return amount


def test_nested_entry_is_rejected(auth, prices):
    vault = PortfolioVault(VaultConfig(), auth, prices)
    vault.add_strategy(OPERATOR, ReentrantAdapter(1, auth, vault), 8000)
    with pytest.raises(ReentrantCall):
        vault.deposit(1_000, "alice")
    assert vault.total_shares() == 0
    assert vault.balance_of("attacker") == 0
    # the guard is released after the failed call
    vault.set_strategy(OPERATOR, 1, 8000, False)
    assert vault.deposit(1_000, "alice") == 1_000


def test_withdraw_without_caller_is_made_by_the_receiver(vault):
    vault.deposit(20_000, "alice")
    with pytest.raises(Unauthorized):
        vault.withdraw(20_000, "mallory", owner="alice")
    assert vault.balance_of("alice") == 20_000
    assert vault.reserve_balance() == 4_000


def test_invariants_compare_position_with_pool_books(vault, deployment):
    vault.deposit(20_000, "alice")
    deployment.leverage.position.collateral += 1
    assert "position collateral differs from pool supply" in vault.check_invariants()
    deployment.leverage.position.collateral -= 1
    deployment.leverage.position.debt_usd += 1
    assert "position debt differs from pool debt" in vault.check_invariants()


def test_swap_fees_are_borne_by_the_depositor(prices):
    cfg = ScenarioConfig(oracle=OracleConfig(use_stork=False),
                         leverage=LeverageConfig(swap_fee_bps=30, leverage_loops=3))
    vault = DeploymentFactory(cfg, prices=prices).build().vault
    vault.deposit(BTC, "alice")
    alice_value = vault.preview_redeem(vault.balance_of("alice"))

    bob_shares = vault.deposit(BTC, "bob")

    assert bob_shares < BTC
    assert vault.preview_redeem(vault.balance_of("alice")) >= alice_value
    assert vault.check_invariants() == []


def test_forced_loop_runs_inside_the_vault(vault):
    vault.deposit(20_000, "alice")
    step = vault.loop_cross_chain(OPERATOR)
    assert step.collateral_in == 1_000
    assert vault.receipts.tail(1)[0].op == "loop"
    assert vault.total_assets() == 20_000

    with pytest.raises(Unauthorized):
        vault.loop_cross_chain("mallory")
    assert vault.receipts.tail(1)[0].status == "failed"


def test_forced_loop_needs_a_cross_chain_strategy(auth, prices):
    with pytest.raises(InvalidAllocation):
        PortfolioVault(VaultConfig(), auth, prices).loop_cross_chain(OPERATOR)
