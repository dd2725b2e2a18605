"""Position Ledger - custody of user vault positions.

This module provides the ledger state machine and the in-process chain it
runs on (tokens, vaults, swap routers).
"""

from src.ledger.base import (
    EventType,
    LedgerEvent,
    Position,
    ReallocateParams,
    SwapLeg,
)
from src.ledger.chain import Contract, LocalChain
from src.ledger.position_ledger import MAX_FEE_BPS, PositionLedger
from src.ledger.router import SimulatedSwapRouter, SwapRouter
from src.ledger.vault import SimulatedVault, VaultGateway

__all__ = [
    # Ledger
    "PositionLedger",
    "MAX_FEE_BPS",
    # Chain model
    "LocalChain",
    "Contract",
    "VaultGateway",
    "SimulatedVault",
    "SwapRouter",
    "SimulatedSwapRouter",
    # Data classes
    "Position",
    "SwapLeg",
    "ReallocateParams",
    "LedgerEvent",
    # Enums
    "EventType",
]
