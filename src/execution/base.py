"""Abstract ledger client and execution result types.

This module defines the contract between the reallocation executor and the
ledger it drives, for every deployment mode:
- In-process: the local chain model (sandbox, tests)
- On-chain: a deployed ledger contract reached through web3

Key Principle: the executor never mutates ledger state itself. It submits a
transaction, waits for a receipt, and reports a structured outcome.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from src.decision.engine import Decision
from src.ledger.base import Position, ReallocateParams


class TxStatus(Enum):
    """Final state of a submitted transaction."""

    SUCCESS = "success"
    REVERTED = "reverted"


class OutcomeStatus(Enum):
    """Result of one execution attempt."""

    SUCCESS = "success"  # Reallocated and recorded
    SKIPPED = "skipped"  # No transaction needed
    FAILED = "failed"  # Attempted, nothing changed on-chain


class ErrorKind(Enum):
    """Why an attempt failed."""

    VALIDATION = "validation"  # Bad input, inactive position, unwhitelisted vault
    QUOTE = "quote"  # Oracle or swap gateway failure
    EXECUTION = "execution"  # Transaction reverted
    AUTHORIZATION = "authorization"  # Missing privilege, needs an operator
    CONFIRMATION = "confirmation"  # Receipt not obtained in time


@dataclass
class TransactionReceipt:
    """Confirmation of a ledger transaction.

    Attributes:
        tx_hash: Transaction hash (0x-prefixed hex)
        status: SUCCESS or REVERTED
        block_number: Block the transaction landed in
        new_shares: Shares minted by a successful reallocation
        assets_reallocated: Assets redeemed by a successful reallocation
        error: Revert reason, if any
    """

    tx_hash: str
    status: TxStatus
    block_number: int = 0
    new_shares: Optional[int] = None
    assets_reallocated: Optional[int] = None
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == TxStatus.SUCCESS


@dataclass
class ReallocationPlan:
    """A computed but unsubmitted reallocation.

    Attributes:
        user: Position owner
        position_index: Index of the position
        position: Position as read before planning
        decision: Decision that triggered the plan
        params: Exact arguments that would be submitted
        expected_shares: Shares the target vault would mint now
        router_needs_whitelist: True if a swap router would be whitelisted first
    """

    user: str
    position_index: int
    position: Position
    decision: Decision
    params: ReallocateParams
    expected_shares: int
    router_needs_whitelist: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "position_index": self.position_index,
            "from_vault": self.position.vault,
            "to_vault": self.params.target_vault,
            "assets": str(self.position.assets),
            "swap_legs": [
                {
                    "router": leg.router,
                    "input_token": leg.input_token,
                    "output_token": leg.output_token,
                    "input_amount": str(leg.input_amount),
                    "calldata": "0x" + leg.calldata.hex(),
                }
                for leg in self.params.legs()
            ],
            "expected_shares": str(self.expected_shares),
            "min_shares_out": str(self.params.min_shares_out),
            "router_needs_whitelist": self.router_needs_whitelist,
            "decision": self.decision.to_dict(),
        }


@dataclass
class ReallocationOutcome:
    """Structured result of ``ReallocationExecutor.execute``.

    Every execution path ends in one of these; exceptions never escape the
    executor.
    """

    user: str
    position_index: int
    status: OutcomeStatus
    reason: str = ""
    error_kind: Optional[ErrorKind] = None
    retryable: bool = False
    from_vault: Optional[str] = None
    to_vault: Optional[str] = None
    previous_apy: float = 0.0
    new_apy: float = 0.0
    assets_reallocated: int = 0
    new_shares: int = 0
    tx_hash: Optional[str] = None
    record_id: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "position_index": self.position_index,
            "status": self.status.value,
            "success": self.success,
            "reason": self.reason,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "retryable": self.retryable,
            "from_vault": self.from_vault,
            "to_vault": self.to_vault,
            "previous_apy": self.previous_apy,
            "new_apy": self.new_apy,
            "assets_reallocated": str(self.assets_reallocated),
            "new_shares": str(self.new_shares),
            "tx_hash": self.tx_hash,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BatchSummary:
    """Counts for one ``execute_all`` run."""

    outcomes: List[ReallocationOutcome] = field(default_factory=list)
    users_processed: int = 0
    interrupted: bool = False

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SUCCESS)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users_processed": self.users_processed,
            "positions": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "interrupted": self.interrupted,
        }


class LedgerClient(ABC):
    """Abstract access to the position ledger for one signer.

    Implementations must serialize submissions per signer: two threads
    sharing a client never race on the signer's nonce.
    """

    @property
    @abstractmethod
    def signer_address(self) -> str:
        """Account that signs submitted transactions."""
        pass

    @property
    @abstractmethod
    def ledger_address(self) -> str:
        """Ledger contract address (custodian during swaps)."""
        pass

    @abstractmethod
    def get_user_positions(self, user: str) -> List[Position]:
        pass

    @abstractmethod
    def list_users(self) -> List[str]:
        """Users with at least one active position."""
        pass

    @abstractmethod
    def whitelisted_vaults(self) -> List[str]:
        pass

    @abstractmethod
    def vault_asset(self, vault: str) -> str:
        pass

    @abstractmethod
    def preview_deposit(self, vault: str, assets: int) -> int:
        """Shares ``vault`` would mint for ``assets`` right now."""
        pass

    @abstractmethod
    def convert_to_assets(self, vault: str, shares: int) -> int:
        """Live value of ``shares`` in ``vault``, including accrued yield."""
        pass

    @abstractmethod
    def fee_bps(self) -> int:
        """Reallocation fee the ledger takes from redeemed assets."""
        pass

    @abstractmethod
    def is_router_whitelisted(self, router: str) -> bool:
        pass

    @abstractmethod
    def whitelist_router(self, router: str) -> TransactionReceipt:
        """Whitelist ``router`` through the governance path and wait for it.

        Raises:
            AuthorizationError: If the signer is not the governance owner
        """
        pass

    @abstractmethod
    def submit_reallocate(self, user: str, position_index: int, params: ReallocateParams) -> str:
        """Submit a reallocate transaction.

        Returns:
            Transaction hash
        """
        pass

    @abstractmethod
    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float = 120.0,
        shutdown_event: Optional[threading.Event] = None,
    ) -> TransactionReceipt:
        """Block until ``tx_hash`` is mined.

        Raises:
            TransactionTimeoutError: On timeout, or when ``shutdown_event``
                is set before the receipt arrives
        """
        pass

    def ensure_router_whitelisted(self, router: str) -> bool:
        """Whitelist ``router`` unless it already is.

        Returns:
            True if a whitelist transaction was sent

        Raises:
            AuthorizationError: If whitelisting is needed but not permitted
        """
        if self.is_router_whitelisted(router):
            return False
        self.whitelist_router(router)
        return True
