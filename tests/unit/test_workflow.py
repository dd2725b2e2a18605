"""Unit tests for ReallocationWorkflow.

Tests wiring from configuration and both workflows against the sandbox.
"""

from unittest.mock import Mock, patch

import pytest

from src.execution.base import LedgerClient
from src.gateways.swap_gateway import HttpSwapGateway
from src.gateways.yield_oracle import HttpYieldOracle
from src.orchestration.workflows import ReallocationWorkflow
from src.storage.database import OptimizationStore
from src.utils.config import Config
from src.utils.exceptions import ConfigurationError, ReallocatorError

VAULT_A = "0x" + "a1" * 20
USDC = "0x" + "11" * 20


@pytest.fixture
def config(tmp_path):
    return Config(
        {
            "ledger": {"mode": "sandbox"},
            "reallocation": {"threshold_bps": 50, "inter_call_delay_seconds": 0},
            "database": {"path": str(tmp_path / "records.db")},
        }
    )


@pytest.fixture
def workflow(config):
    workflow = ReallocationWorkflow.from_config(config)
    yield workflow
    workflow.shutdown()


class TestFromConfig:
    """Test component wiring."""

    def test_sandbox_mode(self, workflow):
        assert workflow.sandbox is not None
        assert workflow.ledger is workflow.sandbox.client
        assert workflow.executor.swap_gateway is workflow.sandbox.swap_gateway
        assert workflow.executor.inter_call_delay == 0
        assert len(workflow.engine.vaults) == 3
        assert isinstance(workflow.store, OptimizationStore)

    def test_no_database(self):
        workflow = ReallocationWorkflow.from_config(Config({"ledger": {"mode": "sandbox"}}))

        assert workflow.store is None

    def test_threshold_from_config(self):
        config = Config({"reallocation": {"threshold_bps": 500}})

        workflow = ReallocationWorkflow.from_config(config)

        assert workflow.engine.threshold_bps == 500

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError, match="Unknown ledger.mode"):
            ReallocationWorkflow.from_config(Config({"ledger": {"mode": "paper"}}))

    def test_web3_mode_requires_rpc(self):
        config = Config({"ledger": {"mode": "web3", "address": VAULT_A}})

        with pytest.raises(ConfigurationError, match="rpc_url"):
            ReallocationWorkflow.from_config(config)

    @patch("src.execution.web3_client.Web3LedgerClient")
    def test_web3_mode(self, mock_client_cls):
        mock_client_cls.return_value = Mock(spec=LedgerClient)
        config = Config(
            {
                "chain": {"name": "hyperevm", "id": 999, "rpc_url": "http://node"},
                "ledger": {"mode": "web3", "address": VAULT_A},
                "vaults": [{"address": VAULT_A, "asset": USDC, "name": "core"}],
                "yield_oracle": {"base_url": "https://yield.test"},
                "swap_gateway": {"base_url": "https://router.test"},
            }
        )
        secrets = {"keeper_private_key": "0x" + "01" * 32, "swap_api_key": "k"}

        workflow = ReallocationWorkflow.from_config(config, secrets)

        kwargs = mock_client_cls.call_args.kwargs
        assert kwargs["rpc_url"] == "http://node"
        assert kwargs["chain_id"] == 999
        assert isinstance(workflow.engine.oracle, HttpYieldOracle)
        assert isinstance(workflow.executor.swap_gateway, HttpSwapGateway)
        assert workflow.engine.vaults[0].address == VAULT_A
        assert workflow.sandbox is None

    @patch("src.execution.web3_client.Web3LedgerClient")
    def test_web3_mode_without_swap_key(self, mock_client_cls):
        mock_client_cls.return_value = Mock(spec=LedgerClient)
        config = Config(
            {
                "ledger": {"mode": "web3", "address": VAULT_A},
                "vaults": [{"address": VAULT_A, "asset": USDC}],
                "yield_oracle": {"base_url": "https://yield.test"},
            }
        )

        workflow = ReallocationWorkflow.from_config(config, {"rpc_url": "http://node"})

        assert workflow.executor.swap_gateway is None

    @patch("src.execution.web3_client.Web3LedgerClient")
    def test_invalid_vault_entry(self, mock_client_cls):
        mock_client_cls.return_value = Mock(spec=LedgerClient)
        config = Config(
            {
                "ledger": {"mode": "web3", "address": VAULT_A},
                "vaults": [{"address": "core"}],
                "yield_oracle": {"base_url": "https://yield.test"},
            }
        )

        with pytest.raises(ConfigurationError, match="Invalid vaults entry"):
            ReallocationWorkflow.from_config(config, {"rpc_url": "http://node"})

    @patch("src.execution.web3_client.Web3LedgerClient")
    def test_vaults_from_ledger_whitelist(self, mock_client_cls):
        ledger = Mock(spec=LedgerClient)
        ledger.whitelisted_vaults.return_value = [VAULT_A]
        ledger.vault_asset.return_value = USDC
        mock_client_cls.return_value = ledger
        config = Config(
            {
                "ledger": {"mode": "web3", "address": VAULT_A},
                "yield_oracle": {"base_url": "https://yield.test"},
            }
        )

        workflow = ReallocationWorkflow.from_config(config, {"rpc_url": "http://node"})

        assert workflow.engine.vaults[0].asset == USDC


class TestHealthCheck:
    """Test the health check workflow."""

    def test_health_check(self, workflow):
        result = workflow.health_check()

        assert result["status"] == "success"
        assert len(result["whitelisted_vaults"]) == 3
        assert result["active_users"] == 2
        assert result["yields"]["vaults_with_yield"] == 3
        assert result["records"]["total_optimizations"] == 0

    def test_health_check_failure(self, workflow):
        workflow.ledger = Mock(spec=LedgerClient)
        workflow.ledger.whitelisted_vaults.side_effect = ConnectionError("rpc down")

        with pytest.raises(ReallocatorError, match="Health check failed"):
            workflow.health_check()


class TestOptimizationCycle:
    """Test the batch workflow."""

    def test_cycle_reallocates_and_records(self, workflow):
        result = workflow.optimization_cycle()

        assert result["status"] == "success"
        assert result["summary"]["succeeded"] == 2
        assert len(result["outcomes"]) == 2
        assert workflow.store.get_stats()["total_optimizations"] == 2
        assert sorted(workflow.store.get_tracked_users()) == sorted(workflow.sandbox.users.values())

    def test_second_cycle_skips(self, workflow):
        workflow.optimization_cycle()

        result = workflow.optimization_cycle()

        assert result["summary"]["succeeded"] == 0
        assert result["summary"]["skipped"] == 2

    def test_interrupted_cycle(self, workflow):
        workflow.executor.shutdown()

        result = workflow.optimization_cycle()

        assert result["status"] == "interrupted"
