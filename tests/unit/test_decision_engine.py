"""Unit tests for the decision engine."""

from unittest.mock import Mock

import pytest

from src.decision.engine import Decision, DecisionEngine, VaultInfo
from src.gateways.yield_oracle import StaticYieldOracle, YieldOpportunity, YieldOracle
from src.ledger.base import Position
from src.utils.exceptions import YieldOracleError

USDC = "0x" + "11" * 20
USDT = "0x" + "22" * 20
VAULT_A = "0x" + "a1" * 20
VAULT_B = "0x" + "b2" * 20
VAULT_C = "0x" + "c3" * 20

VAULTS = [
    VaultInfo(VAULT_A, USDC, "a"),
    VaultInfo(VAULT_B, USDC, "b"),
    VaultInfo(VAULT_C, USDT, "c"),
]


def position_in(vault: str, asset: str = USDC) -> Position:
    return Position(vault=vault, asset=asset, shares=1_000, assets=1_000)


@pytest.fixture
def oracle():
    return StaticYieldOracle({VAULT_A: 3.0, VAULT_B: 4.2})


@pytest.fixture
def engine(oracle):
    return DecisionEngine(oracle, VAULTS[:2], {"threshold_bps": 50})


class TestVaultInfo:
    """Test vault descriptors."""

    def test_from_dict_normalizes(self):
        info = VaultInfo.from_dict({"address": VAULT_A.upper().replace("0X", "0x"), "asset": USDC})

        assert info.address == VAULT_A
        assert info.name == ""


class TestDecisionEngineConfig:
    """Test engine configuration."""

    def test_default_threshold(self, oracle):
        assert DecisionEngine(oracle, VAULTS).threshold_bps == 50

    @pytest.mark.parametrize("threshold", [-1, "50", True])
    def test_invalid_threshold(self, oracle, threshold):
        with pytest.raises(ValueError, match="threshold_bps"):
            DecisionEngine(oracle, VAULTS, {"threshold_bps": threshold})

    def test_duplicate_vaults(self, oracle):
        with pytest.raises(ValueError, match="Duplicate"):
            DecisionEngine(oracle, [VAULTS[0], VAULTS[0]])

    def test_set_threshold(self, engine):
        engine.set_threshold(200)
        assert engine.threshold_bps == 200

        with pytest.raises(ValueError):
            engine.set_threshold(-5)

    def test_sync_whitelist(self, oracle):
        engine = DecisionEngine(oracle, VAULTS[:2])
        asset_of = Mock(return_value=USDT)

        engine.sync_whitelist([VAULT_C, VAULT_B], asset_of)

        assert [v.address for v in engine.vaults] == [VAULT_B, VAULT_C]
        assert engine.vaults[0].name == "b"
        assert engine.vaults[1].asset == USDT
        asset_of.assert_called_once_with(VAULT_C)

    def test_asset_of(self, engine):
        assert engine.asset_of(VAULT_B) == USDC
        assert engine.asset_of(VAULT_C) is None


class TestEvaluate:
    """Test go/no-go decisions."""

    def test_improvement_above_threshold_proceeds(self, engine):
        decision = engine.evaluate(position_in(VAULT_A))

        assert decision.proceed is True
        assert decision.target_vault == VAULT_B
        assert decision.target_asset == USDC
        assert decision.target_yield == 4.2
        assert decision.current_yield == 3.0
        assert decision.improvement_bps == pytest.approx(120.0)

    def test_improvement_below_threshold(self, engine):
        engine.set_threshold(200)

        decision = engine.evaluate(position_in(VAULT_A))

        assert decision.proceed is False
        assert decision.target_vault == VAULT_B
        assert "below threshold" in decision.reason

    def test_exact_threshold_proceeds(self, oracle, engine):
        oracle.set_yield(VAULT_B, 3.5)

        assert engine.evaluate(position_in(VAULT_A)).proceed is True

    def test_already_in_best_vault(self, engine):
        decision = engine.evaluate(position_in(VAULT_B))

        assert decision.proceed is False
        assert decision.target_vault is None
        assert decision.reason == "Already in best vault"

    def test_never_targets_current_vault_on_tie(self, oracle, engine):
        oracle.set_yield(VAULT_B, 3.0)

        decision = engine.evaluate(position_in(VAULT_A))

        assert decision.proceed is False
        assert decision.target_vault is None

    def test_tie_goes_to_first_listed(self, oracle):
        oracle.set_yield(VAULT_C, 4.2)
        vaults = [VaultInfo(VAULT_A, USDC), VaultInfo(VAULT_B, USDC), VaultInfo(VAULT_C, USDC)]
        oracle.set_yield(VAULT_A, 1.0)

        decision = DecisionEngine(oracle, vaults).evaluate(position_in(VAULT_A))

        assert decision.target_vault == VAULT_B

    def test_prefers_same_asset_vaults(self, oracle):
        oracle.set_yield(VAULT_C, 9.0)

        decision = DecisionEngine(oracle, VAULTS).evaluate(position_in(VAULT_A))

        assert decision.target_vault == VAULT_B

    def test_cross_asset_when_no_same_asset_reading(self, oracle):
        oracle.set_yield(VAULT_C, 5.5)

        decision = DecisionEngine(oracle, VAULTS).evaluate(position_in(VAULT_C, USDT))

        assert decision.reason == "Already in best vault"

        usdt_only = StaticYieldOracle({VAULT_C: 5.5})
        decision = DecisionEngine(usdt_only, VAULTS).evaluate(position_in(VAULT_A))
        assert decision.proceed is True
        assert decision.target_vault == VAULT_C
        assert decision.target_asset == USDT

    def test_missing_current_yield_counts_as_zero(self, engine):
        unlisted = "0x" + "dd" * 20

        decision = engine.evaluate(position_in(unlisted))

        assert decision.current_yield == 0.0
        assert decision.proceed is True
        assert decision.target_vault == VAULT_B

    def test_no_opportunities(self):
        engine = DecisionEngine(StaticYieldOracle(), VAULTS)

        decision = engine.evaluate(position_in(VAULT_A))

        assert decision.proceed is False
        assert decision.target_vault is None
        assert decision.reason == "No yield opportunities available"

    def test_oracle_failure_treated_as_no_reading(self):
        oracle = Mock(spec=YieldOracle)
        oracle.get_yield.side_effect = YieldOracleError("timeout")

        decision = DecisionEngine(oracle, VAULTS).evaluate(position_in(VAULT_A))

        assert decision.proceed is False
        assert decision.reason == "No yield opportunities available"

    def test_unexpected_oracle_error_only_drops_that_vault(self):
        oracle = Mock(spec=YieldOracle)
        readings = {VAULT_A: 3.0, VAULT_C: 6.0}

        def get_yield(vault, asset=None):
            if vault == VAULT_B:
                raise RuntimeError("malformed chunk")
            return YieldOpportunity(vault, asset, readings[vault], readings[vault])

        oracle.get_yield.side_effect = get_yield
        engine = DecisionEngine(oracle, VAULTS)

        yields = engine.scan_yields()

        assert yields[VAULT_B] is None
        assert yields[VAULT_C].apy == 6.0
        assert engine.evaluate(position_in(VAULT_A), yields).target_vault == VAULT_C

    def test_reuses_prefetched_yields(self, engine):
        yields = {
            VAULT_A: YieldOpportunity(VAULT_A, USDC, 3.0, 3.0),
            VAULT_B: YieldOpportunity(VAULT_B, USDC, 8.0, 8.0),
        }
        engine.oracle = Mock(spec=YieldOracle)

        decision = engine.evaluate(position_in(VAULT_A), yields)

        assert decision.target_yield == 8.0
        engine.oracle.get_yield.assert_not_called()

    def test_to_dict(self, engine):
        data = engine.evaluate(position_in(VAULT_A)).to_dict()

        assert data["proceed"] is True
        assert data["target_vault"] == VAULT_B
        assert data["improvement_bps"] == pytest.approx(120.0)


class TestYieldStatistics:
    """Test aggregate yield statistics."""

    def test_statistics(self, oracle):
        stats = DecisionEngine(oracle, VAULTS).get_yield_statistics()

        assert stats["vaults_tracked"] == 3
        assert stats["vaults_with_yield"] == 2
        assert stats["average_apy"] == pytest.approx(3.6)
        assert stats["highest_apy"] == 4.2
        assert stats["best_vault"] == VAULT_B

    def test_statistics_without_readings(self):
        stats = DecisionEngine(StaticYieldOracle(), VAULTS).get_yield_statistics()

        assert stats["vaults_with_yield"] == 0
        assert stats["best_vault"] is None


def test_decision_improvement_bps_is_rounded():
    decision = Decision(True, VAULT_B, USDC, 3.5, 3.0, "")

    assert decision.improvement_bps == 50.0
