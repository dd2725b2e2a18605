"""Reallocation executor.

Turns a go-decision into a confirmed ledger transaction:

1. Re-read the position and run the decision engine
2. Quote a swap if the target vault takes a different asset
3. Make sure the quoted router is whitelisted (governance path)
4. Submit ``reallocate`` with the swap legs and a slippage floor
5. Wait for the receipt; on success append an OptimizationRecord

Every path returns a ReallocationOutcome. Nothing is recorded for an
attempt that did not land on-chain.
"""

import threading
from typing import Any, Dict, List, Optional, Union

from src.decision.engine import Decision, DecisionEngine
from src.execution.base import (
    BatchSummary,
    ErrorKind,
    LedgerClient,
    OutcomeStatus,
    ReallocationOutcome,
    ReallocationPlan,
)
from src.gateways.swap_gateway import SwapGateway
from src.gateways.yield_oracle import YieldOpportunity
from src.ledger.base import Position, ReallocateParams
from src.storage.database import OptimizationStore
from src.storage.models import OptimizationRecord
from src.utils.exceptions import (
    AuthorizationError,
    GatewayError,
    LedgerValidationError,
    ReallocatorError,
    StorageError,
    TransactionTimeoutError,
)
from src.utils.logging import get_logger, log_with_context
from src.utils.units import BPS_DENOMINATOR, apply_bps, normalize_address

logger = get_logger(__name__)


def classify_error(error: Exception) -> ErrorKind:
    """Map an exception onto the outcome error taxonomy."""
    if isinstance(error, AuthorizationError):
        return ErrorKind.AUTHORIZATION
    if isinstance(error, TransactionTimeoutError):
        return ErrorKind.CONFIRMATION
    if isinstance(error, GatewayError):
        return ErrorKind.QUOTE
    if isinstance(error, (LedgerValidationError, ValueError)):
        return ErrorKind.VALIDATION
    return ErrorKind.EXECUTION


class ReallocationExecutor:
    """Executes reallocations for single positions or every user.

    Example:
        >>> executor = ReallocationExecutor(client, engine, swap_gateway, store)
        >>> outcome = executor.execute(user, 0)
        >>> outcome.status
        <OutcomeStatus.SUCCESS: 'success'>
    """

    def __init__(
        self,
        ledger: LedgerClient,
        engine: DecisionEngine,
        swap_gateway: Optional[SwapGateway] = None,
        store: Optional[OptimizationStore] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the executor.

        Args:
            ledger: Client for the position ledger
            engine: Decision engine
            swap_gateway: Swap quotes for cross-asset moves (optional; without
                it cross-asset moves are skipped)
            store: Record store (optional; without it nothing is persisted)
            config: Dict with keys:
                - slippage_bps: Allowed shortfall vs expected shares (default: 100)
                - inter_call_delay_seconds: Pause between positions in a batch
                  (default: 1.0)
                - receipt_timeout_seconds: Confirmation wait (default: 120)
                - auto_whitelist_routers: Whitelist quoted routers (default: True)
        """
        self.ledger = ledger
        self.engine = engine
        self.swap_gateway = swap_gateway
        self.store = store
        self.config = config or {}

        self.slippage_bps = self.config.get("slippage_bps", 100)
        self.inter_call_delay = self.config.get("inter_call_delay_seconds", 1.0)
        self.receipt_timeout = self.config.get("receipt_timeout_seconds", 120)
        self.auto_whitelist_routers = self.config.get("auto_whitelist_routers", True)

        self._shutdown = threading.Event()
        self._validate_config()

        logger.info(
            "ReallocationExecutor initialized (slippage: %d bps, delay: %.1fs, swaps: %s)",
            self.slippage_bps,
            self.inter_call_delay,
            "on" if swap_gateway else "off",
        )

    def _validate_config(self) -> None:
        if not 0 <= self.slippage_bps < BPS_DENOMINATOR:
            raise ValueError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {self.slippage_bps}")
        if self.inter_call_delay < 0:
            raise ValueError(f"inter_call_delay_seconds must be >= 0, got {self.inter_call_delay}")
        if self.receipt_timeout <= 0:
            raise ValueError(f"receipt_timeout_seconds must be > 0, got {self.receipt_timeout}")

    @property
    def shutdown_event(self) -> threading.Event:
        return self._shutdown

    def shutdown(self) -> None:
        """Stop batches and abandon pending confirmation waits."""
        logger.info("Executor shutdown requested")
        self._shutdown.set()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self,
        user: str,
        position_index: int,
        yields: Optional[Dict[str, Optional[YieldOpportunity]]] = None,
    ) -> Union[ReallocationPlan, ReallocationOutcome]:
        """Compute what ``execute`` would submit, without submitting.

        Returns:
            ReallocationPlan when a transaction would be sent, otherwise the
            SKIPPED/FAILED outcome explaining why not
        """
        try:
            user = normalize_address(user)
        except ValueError as e:
            return self._failed(user, position_index, e)

        # Step 1: current position
        try:
            position = self._load_position(user, position_index)
        except ReallocatorError as e:
            return self._failed(user, position_index, e)
        except Exception as e:
            logger.error("Failed to read position %s#%d: %s", user, position_index, e)
            return self._failed(user, position_index, e, kind=ErrorKind.EXECUTION)

        # Step 2: decision
        try:
            decision = self.engine.evaluate(position, yields)
        except Exception as e:
            logger.error("Evaluation failed for %s#%d: %s", user, position_index, e)
            return self._failed(user, position_index, e, kind=ErrorKind.QUOTE, position=position)

        if not decision.proceed:
            return self._skipped(user, position_index, position, decision, decision.reason)

        # Step 3: swap legs and slippage floor
        try:
            # Stored assets lag accrued yield; reallocate redeems the live value
            position.assets = self.ledger.convert_to_assets(position.vault, position.shares)
            fee = apply_bps(position.assets, self.ledger.fee_bps())
            amount = position.assets - fee
            legs = []
            deposit_amount = amount

            if normalize_address(decision.target_asset) != position.asset:
                if self.swap_gateway is None:
                    reason = (
                        f"Target vault takes {decision.target_asset}, position holds "
                        f"{position.asset}, and no swap gateway is configured"
                    )
                    logger.warning("%s#%d: %s", user, position_index, reason)
                    return self._skipped(user, position_index, position, decision, reason)

                quote = self.swap_gateway.get_quote(
                    input_token=position.asset,
                    output_token=decision.target_asset,
                    input_amount=amount,
                    user_address=self.ledger.ledger_address,
                    output_receiver=self.ledger.ledger_address,
                )
                legs.append(quote.to_leg())
                deposit_amount = quote.output_amount
                if deposit_amount == 0:
                    logger.warning("Quote did not state an output amount; slippage floor disabled")

            expected_shares = (
                self.ledger.preview_deposit(decision.target_vault, deposit_amount)
                if deposit_amount
                else 0
            )
            min_shares_out = (
                expected_shares * (BPS_DENOMINATOR - self.slippage_bps) // BPS_DENOMINATOR
            )
            router_needs_whitelist = any(
                not self.ledger.is_router_whitelisted(leg.router) for leg in legs
            )
        except Exception as e:
            logger.warning("Could not build reallocation for %s#%d: %s", user, position_index, e)
            return self._failed(user, position_index, e, position=position, decision=decision)

        params = ReallocateParams.from_legs(
            target_vault=decision.target_vault,
            legs=legs,
            min_shares_out=min_shares_out,
        )
        return ReallocationPlan(
            user=user,
            position_index=position_index,
            position=position,
            decision=decision,
            params=params,
            expected_shares=expected_shares,
            router_needs_whitelist=router_needs_whitelist,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(
        self,
        user: str,
        position_index: int,
        yields: Optional[Dict[str, Optional[YieldOpportunity]]] = None,
    ) -> ReallocationOutcome:
        """Evaluate and, if worthwhile, reallocate one position.

        Never raises; failures come back as FAILED outcomes.
        """
        prepared = self.plan(user, position_index, yields)
        if isinstance(prepared, ReallocationOutcome):
            return prepared

        plan = prepared
        position, decision = plan.position, plan.decision
        user = plan.user

        # Step 4: router whitelist
        if plan.router_needs_whitelist:
            if not self.auto_whitelist_routers:
                error = AuthorizationError(
                    f"Router {plan.params.routers[0]} is not whitelisted and auto-whitelisting is off"
                )
                return self._failed(user, position_index, error, position=position, decision=decision)
            try:
                for router in plan.params.routers:
                    self.ledger.ensure_router_whitelisted(router)
            except Exception as e:
                logger.error("Router whitelisting failed: %s", e)
                return self._failed(user, position_index, e, position=position, decision=decision)

        # Step 5: submit and confirm
        logger.info(
            "Reallocating %s#%d: %s -> %s (%d legs, min shares %d)",
            user,
            position_index,
            position.vault,
            decision.target_vault,
            plan.params.leg_count,
            plan.params.min_shares_out,
        )
        try:
            tx_hash = self.ledger.submit_reallocate(user, position_index, plan.params)
        except Exception as e:
            logger.error("Submitting reallocate for %s#%d failed: %s", user, position_index, e)
            return self._failed(user, position_index, e, position=position, decision=decision)

        try:
            receipt = self.ledger.wait_for_receipt(
                tx_hash, timeout=self.receipt_timeout, shutdown_event=self._shutdown
            )
        except Exception as e:
            logger.error("Confirmation of %s failed: %s", tx_hash, e)
            outcome = self._failed(user, position_index, e, position=position, decision=decision)
            outcome.tx_hash = tx_hash
            return outcome

        if not receipt.succeeded:
            outcome = ReallocationOutcome(
                user=user,
                position_index=position_index,
                status=OutcomeStatus.FAILED,
                reason=f"Transaction reverted: {receipt.error}",
                error_kind=ErrorKind.EXECUTION,
                from_vault=position.vault,
                to_vault=decision.target_vault,
                previous_apy=decision.current_yield,
                new_apy=decision.target_yield,
                tx_hash=tx_hash,
            )
            logger.warning("Reallocation of %s#%d reverted (%s)", user, position_index, tx_hash)
            return outcome

        # Step 6: record
        assets = receipt.assets_reallocated if receipt.assets_reallocated is not None else position.assets
        outcome = ReallocationOutcome(
            user=user,
            position_index=position_index,
            status=OutcomeStatus.SUCCESS,
            reason=decision.reason,
            from_vault=position.vault,
            to_vault=decision.target_vault,
            previous_apy=decision.current_yield,
            new_apy=decision.target_yield,
            assets_reallocated=assets,
            new_shares=receipt.new_shares or 0,
            tx_hash=tx_hash,
        )
        self._record(outcome)

        log_with_context(
            logger,
            "info",
            f"Reallocated into {decision.target_vault}",
            user=user,
            index=position_index,
            apy=f"{decision.current_yield:.2f}->{decision.target_yield:.2f}",
            shares=outcome.new_shares,
            tx=tx_hash,
        )
        return outcome

    def execute_all(self) -> BatchSummary:
        """Evaluate and execute every active position of every user.

        Positions are handled one at a time with ``inter_call_delay_seconds``
        between them. A failure on one position never stops the batch.
        """
        summary = BatchSummary()
        users = self.ledger.list_users()
        self._refresh_vaults()
        yields = self.engine.scan_yields()
        logger.info("Batch started: %d users", len(users))

        first = True
        for user in users:
            if self._shutdown.is_set():
                summary.interrupted = True
                break

            try:
                positions = self.ledger.get_user_positions(user)
            except Exception as e:
                logger.error("Could not read positions of %s: %s", user, e)
                summary.outcomes.append(self._failed(user, -1, e, kind=ErrorKind.EXECUTION))
                continue

            summary.users_processed += 1
            for index, position in enumerate(positions):
                if not position.active:
                    continue
                if not first and self._shutdown.wait(self.inter_call_delay):
                    summary.interrupted = True
                    break
                first = False

                outcome = self.execute(user, index, yields=yields)
                summary.outcomes.append(outcome)

            if summary.interrupted:
                break

        logger.info(
            "Batch finished: %d positions, %d succeeded, %d skipped, %d failed%s",
            summary.total,
            summary.succeeded,
            summary.skipped,
            summary.failed,
            " (interrupted)" if summary.interrupted else "",
        )
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _refresh_vaults(self) -> None:
        """Point the engine at the ledger's current vault whitelist."""
        try:
            self.engine.sync_whitelist(self.ledger.whitelisted_vaults(), self.ledger.vault_asset)
        except Exception as e:
            logger.warning(
                "Could not refresh the vault whitelist, keeping %d known vaults: %s",
                len(self.engine.vaults),
                e,
            )

    def _load_position(self, user: str, position_index: int) -> Position:
        positions: List[Position] = self.ledger.get_user_positions(user)
        if isinstance(position_index, bool) or not isinstance(position_index, int):
            raise LedgerValidationError(f"Position index must be an integer, got {position_index!r}")
        if not 0 <= position_index < len(positions):
            raise LedgerValidationError(
                f"Position index {position_index} out of range ({len(positions)} positions)"
            )
        position = positions[position_index]
        if not position.active:
            raise LedgerValidationError(f"Position {user}#{position_index} is not active")
        return position

    def _record(self, outcome: ReallocationOutcome) -> None:
        if self.store is None:
            return
        record = OptimizationRecord(
            user=outcome.user,
            position_index=outcome.position_index,
            from_vault=outcome.from_vault,
            to_vault=outcome.to_vault,
            assets_reallocated=outcome.assets_reallocated,
            previous_apy=outcome.previous_apy,
            new_apy=outcome.new_apy,
            tx_hash=outcome.tx_hash,
            timestamp=outcome.timestamp,
        )
        try:
            outcome.record_id = self.store.save_optimization(record).record_id
        except StorageError as e:
            logger.error("Reallocation %s confirmed but not recorded: %s", outcome.tx_hash, e)
            outcome.reason = f"{outcome.reason} (record not saved: {e})"

    def _skipped(
        self,
        user: str,
        position_index: int,
        position: Position,
        decision: Decision,
        reason: str,
    ) -> ReallocationOutcome:
        logger.info("Skipping %s#%d: %s", user, position_index, reason)
        return ReallocationOutcome(
            user=user,
            position_index=position_index,
            status=OutcomeStatus.SKIPPED,
            reason=reason,
            from_vault=position.vault,
            to_vault=decision.target_vault,
            previous_apy=decision.current_yield,
            new_apy=decision.target_yield,
        )

    def _failed(
        self,
        user: str,
        position_index: int,
        error: Exception,
        kind: Optional[ErrorKind] = None,
        position: Optional[Position] = None,
        decision: Optional[Decision] = None,
    ) -> ReallocationOutcome:
        kind = kind or classify_error(error)
        return ReallocationOutcome(
            user=user,
            position_index=position_index,
            status=OutcomeStatus.FAILED,
            reason=f"{type(error).__name__}: {error}",
            error_kind=kind,
            retryable=bool(getattr(error, "retryable", False)),
            from_vault=position.vault if position else None,
            to_vault=decision.target_vault if decision else None,
            previous_apy=decision.current_yield if decision else 0.0,
            new_apy=decision.target_yield if decision else 0.0,
        )
