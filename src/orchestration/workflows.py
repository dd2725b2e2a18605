"""Reallocation Workflows - wires the pipeline and runs its cycles.

This module implements the two recurring workflows:
1. Health check: ledger reachable, yields readable, record store usable
2. Optimization cycle: the batch driver over every active position

Workflow Chain:
Yield Oracle → Decision Engine → (Swap Gateway) → Ledger reallocate → Record Store
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.decision.engine import DecisionEngine, VaultInfo
from src.execution.base import LedgerClient
from src.execution.executor import ReallocationExecutor
from src.gateways.swap_gateway import HttpSwapGateway, SwapGateway
from src.gateways.yield_oracle import HttpYieldOracle, YieldOracle
from src.ledger.sandbox import Sandbox, build_sandbox
from src.storage.database import OptimizationStore
from src.utils.config import Config
from src.utils.exceptions import ConfigurationError, ReallocatorError
from src.utils.logging import get_logger

logger = get_logger(__name__)


class ReallocationWorkflow:
    """Owns the pipeline components and runs its workflows.

    Components are constructed once and passed in explicitly; nothing is a
    process-wide singleton.

    Example:
        >>> config, secrets = load_reallocator_config()
        >>> workflow = ReallocationWorkflow.from_config(config, secrets)
        >>> workflow.health_check()
        >>> workflow.optimization_cycle()
    """

    def __init__(
        self,
        ledger: LedgerClient,
        engine: DecisionEngine,
        executor: ReallocationExecutor,
        store: Optional[OptimizationStore] = None,
        sandbox: Optional[Sandbox] = None,
    ):
        """Initialize the workflow.

        Args:
            ledger: Ledger client
            engine: Decision engine
            executor: Reallocation executor
            store: Record store (optional)
            sandbox: The sandbox deployment when running locally
        """
        self.ledger = ledger
        self.engine = engine
        self.executor = executor
        self.store = store
        self.sandbox = sandbox

        logger.info("ReallocationWorkflow initialized (%d vaults)", len(engine.vaults))

    @classmethod
    def from_config(
        cls,
        config: Config,
        secrets: Optional[Dict[str, Optional[str]]] = None,
        store: Optional[OptimizationStore] = None,
    ) -> "ReallocationWorkflow":
        """Build every component from configuration.

        ``ledger.mode`` selects the deployment:
            - sandbox: in-process chain built from ``simulation``
            - web3: deployed ledger at ``ledger.address`` via ``chain.rpc_url``

        Raises:
            ConfigurationError: On a missing or inconsistent setting
        """
        secrets = secrets or {}
        mode = config.get("ledger.mode", "sandbox")
        reallocation = config.section("reallocation")

        if store is None and config.get("database.path"):
            store = OptimizationStore(config.get("database.path"))

        sandbox: Optional[Sandbox] = None
        swap_gateway: Optional[SwapGateway]
        oracle: YieldOracle

        if mode == "sandbox":
            sandbox = build_sandbox(config.get("simulation") or {})
            ledger: LedgerClient = sandbox.client
            oracle = sandbox.oracle
            swap_gateway = sandbox.swap_gateway
            vaults = sandbox.vault_infos()

        elif mode == "web3":
            # web3 is only needed for on-chain mode
            from src.execution.web3_client import Web3LedgerClient

            rpc_url = secrets.get("rpc_url") or config.get("chain.rpc_url")
            ledger_address = secrets.get("ledger_address") or config.get("ledger.address")
            if not rpc_url or not ledger_address:
                raise ConfigurationError("web3 mode needs chain.rpc_url and ledger.address")

            ledger = Web3LedgerClient(
                rpc_url=rpc_url,
                ledger_address=ledger_address,
                private_key=secrets.get("keeper_private_key"),
                chain_id=config.get("chain.id"),
                users=store.get_tracked_users if store else None,
                poll_seconds=reallocation.get("receipt_poll_seconds", 2.0),
            )
            chain_name = config.get("chain.name", "hyperevm")
            oracle = HttpYieldOracle(
                config.section("yield_oracle"),
                api_key=secrets.get("yield_api_key"),
                chain=chain_name,
            )
            swap_gateway = None
            if secrets.get("swap_api_key"):
                swap_gateway = HttpSwapGateway(
                    config.section("swap_gateway"),
                    api_key=secrets.get("swap_api_key"),
                    partner_id=secrets.get("swap_partner_id"),
                    chain=str(config.get("chain.id", chain_name)),
                )
            else:
                logger.warning("SWAP_API_KEY not set; cross-asset reallocations will be skipped")
            vaults = _configured_vaults(config, ledger)

        else:
            raise ConfigurationError(f"Unknown ledger.mode: {mode!r}")

        engine = DecisionEngine(oracle, vaults, {"threshold_bps": reallocation.get("threshold_bps", 50)})
        executor = ReallocationExecutor(ledger, engine, swap_gateway, store, reallocation)
        return cls(ledger, engine, executor, store, sandbox)

    def health_check(self) -> Dict[str, Any]:
        """Check that every collaborator answers.

        Returns:
            Dict with workflow results

        Raises:
            ReallocatorError: If a health check fails
        """
        logger.info("=" * 60)
        logger.info("HEALTH CHECK - %s", _now())
        logger.info("=" * 60)

        try:
            logger.info("Step 1/3: Checking ledger...")
            vaults = self.ledger.whitelisted_vaults()
            users = self.ledger.list_users()
            logger.info("  Whitelisted vaults: %d", len(vaults))
            logger.info("  Users with active positions: %d", len(users))

            logger.info("Step 2/3: Reading yields...")
            yield_stats = self.engine.get_yield_statistics()
            logger.info(
                "  %d/%d vaults reporting, average APY %.2f%%, best %.2f%%",
                yield_stats["vaults_with_yield"],
                yield_stats["vaults_tracked"],
                yield_stats["average_apy"],
                yield_stats["highest_apy"],
            )

            logger.info("Step 3/3: Checking record store...")
            record_stats = self.store.get_stats() if self.store else None
            if record_stats is not None:
                logger.info("  Records: %d", record_stats["total_optimizations"])
            else:
                logger.info("  No record store configured")

            logger.info("✓ Health check completed successfully")
            return {
                "status": "success",
                "whitelisted_vaults": vaults,
                "active_users": len(users),
                "yields": yield_stats,
                "records": record_stats,
                "timestamp": _now(),
            }

        except Exception as e:
            logger.error("✗ Health check failed: %s", e, exc_info=True)
            raise ReallocatorError(f"Health check failed: {e}") from e

    def optimization_cycle(self) -> Dict[str, Any]:
        """Run the batch driver once.

        Returns:
            Dict with the batch summary and per-position outcomes
        """
        logger.info("=" * 60)
        logger.info("OPTIMIZATION CYCLE - %s", _now())
        logger.info("=" * 60)

        logger.info("Step 1/3: Discovering users...")
        users = self.ledger.list_users()
        if self.store:
            for user in users:
                self.store.track_user(user)
        logger.info("  Users with active positions: %d", len(users))

        logger.info("Step 2/3: Evaluating and executing positions...")
        summary = self.executor.execute_all()

        logger.info("Step 3/3: Summary")
        logger.info("  Positions: %d", summary.total)
        logger.info("  Succeeded: %d", summary.succeeded)
        logger.info("  Skipped: %d", summary.skipped)
        logger.info("  Failed: %d", summary.failed)
        for outcome in summary.outcomes:
            if not outcome.success and outcome.error_kind is not None:
                logger.info(
                    "    %s#%d: %s (%s)",
                    outcome.user,
                    outcome.position_index,
                    outcome.error_kind.value,
                    outcome.reason,
                )

        logger.info("✓ Optimization cycle completed")
        return {
            "status": "interrupted" if summary.interrupted else "success",
            "summary": summary.to_dict(),
            "outcomes": [o.to_dict() for o in summary.outcomes],
            "timestamp": _now(),
        }

    def shutdown(self) -> None:
        self.executor.shutdown()
        if self.store:
            self.store.close()


def _configured_vaults(config: Config, ledger: LedgerClient) -> List[VaultInfo]:
    """Vaults from ``vaults[]`` in config, else the ledger's whitelist."""
    entries = config.get("vaults") or []
    if entries:
        try:
            return [VaultInfo.from_dict(entry) for entry in entries]
        except (KeyError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid vaults entry: {e}") from e

    logger.info("No vaults configured, reading the ledger whitelist")
    return [VaultInfo(address=v, asset=ledger.vault_asset(v)) for v in ledger.whitelisted_vaults()]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
