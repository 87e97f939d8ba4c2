import pytest

from lava.errors import InvalidAllocation, Unauthorized
from lava.registry import REGISTRY_WRITE, StrategyRegistry

from conftest import OPERATOR


@pytest.fixture
def registry(auth, make_adapter):
    reg = StrategyRegistry(auth, reserve_bps=2000, max_strategies=4)
    reg.add_strategy(OPERATOR, 1, make_adapter(1), 3000, "Zentra")
    reg.add_strategy(OPERATOR, 2, make_adapter(2), 2500, "Satsuma")
    reg.add_strategy(OPERATOR, 3, make_adapter(3), 2500, "CrossChain")
    return reg


def test_registry_keeps_insertion_order(registry):
    ids, entries = registry.get_strategies()
    assert ids == [1, 2, 3]
    assert len(registry) == 3
    assert [e.name for e in entries] == ["Zentra", "Satsuma", "CrossChain"]
    assert registry.enabled_bps() == 8000
    assert registry.is_consistent()


def test_set_strategy_over_budget_leaves_registry_unchanged(registry):
    version = registry.version
    before = [e.to_dict() for e in registry.entries()]
    with pytest.raises(InvalidAllocation):
        registry.set_strategy(OPERATOR, 2, 2501, True)
    assert registry.version == version
    assert [e.to_dict() for e in registry.entries()] == before


def test_disable_frees_budget_for_others(registry):
    registry.set_strategy(OPERATOR, 3, 2500, False)
    registry.set_strategy(OPERATOR, 2, 5000, True)
    assert [e.strategy_id for e in registry.enabled_entries()] == [1, 2]
    # re-enabling 3 would now exceed 10000 - reserve
    with pytest.raises(InvalidAllocation):
        registry.set_strategy(OPERATOR, 3, 2500, True)
    assert registry.get(3).enabled is False


def test_every_mutation_bumps_version(registry):
    v = registry.version
    registry.set_strategy(OPERATOR, 1, 1000, True)
    registry.set_reserve_bps(OPERATOR, 3000)
    assert registry.version == v + 2


def test_add_strategy_checks(registry, make_adapter):
    with pytest.raises(InvalidAllocation):
        registry.add_strategy(OPERATOR, 1, make_adapter(1), 0)
    with pytest.raises(InvalidAllocation):
        registry.add_strategy(OPERATOR, 4, make_adapter(4), 1)
    registry.add_strategy(OPERATOR, 4, make_adapter(4), 0)
    with pytest.raises(InvalidAllocation, match="full"):
        registry.add_strategy(OPERATOR, 5, make_adapter(5), 0)


def test_reserve_bps_respects_allocations(registry):
    with pytest.raises(InvalidAllocation):
        registry.set_reserve_bps(OPERATOR, 2001)
    assert registry.reserve_bps == 2000


def test_writes_need_capability(registry, make_adapter):
    with pytest.raises(Unauthorized):
        registry.set_strategy("mallory", 1, 0, False)
    with pytest.raises(Unauthorized):
        registry.add_strategy("mallory", 9, make_adapter(9), 0)
    with pytest.raises(Unauthorized):
        registry.set_reserve_bps("mallory", 0)


def test_revoked_operator_loses_write_access(registry, auth):
    auth.revoke(REGISTRY_WRITE, OPERATOR)
    with pytest.raises(Unauthorized):
        registry.set_strategy(OPERATOR, 1, 1000, True)
    assert registry.get(1).allocation_bps == 3000


def test_unknown_strategy(registry):
    with pytest.raises(InvalidAllocation):
        registry.get(42)
