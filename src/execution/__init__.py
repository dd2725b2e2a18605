"""Execution Layer - drives reallocations through the ledger.

This module provides the reallocation executor and the ledger clients it
submits through (in-process chain model or a deployed contract).
"""

from src.execution.base import (
    BatchSummary,
    ErrorKind,
    LedgerClient,
    OutcomeStatus,
    ReallocationOutcome,
    ReallocationPlan,
    TransactionReceipt,
    TxStatus,
)
from src.execution.executor import ReallocationExecutor
from src.execution.local_client import InProcessLedgerClient

__all__ = [
    # Abstract interface
    "LedgerClient",
    # Concrete implementations
    "InProcessLedgerClient",
    "ReallocationExecutor",
    # Data classes
    "TransactionReceipt",
    "ReallocationOutcome",
    "ReallocationPlan",
    "BatchSummary",
    # Enums
    "TxStatus",
    "OutcomeStatus",
    "ErrorKind",
]
