"""Data model for the position ledger.

This module defines the value types shared by the on-chain ledger model,
its clients and the off-chain pipeline:

- Position: one user's stake in one vault
- SwapLeg / ReallocateParams: the instruction set for a reallocation
- LedgerEvent: the events the ledger emits on every state change
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from src.utils.units import ZERO_ADDRESS


class EventType(Enum):
    """Events emitted by the position ledger."""

    POSITION_OPENED = "PositionOpened"
    POSITION_WITHDRAWN = "PositionWithdrawn"
    POSITION_CLOSED = "PositionClosed"
    POSITION_OPTIMIZED = "PositionOptimized"
    VAULT_WHITELISTED = "VaultWhitelisted"
    ROUTER_WHITELISTED = "RouterWhitelisted"
    KEEPER_UPDATED = "KeeperUpdated"
    PAUSED = "Paused"
    FEE_UPDATED = "FeeUpdated"
    OWNERSHIP_TRANSFERRED = "OwnershipTransferred"


@dataclass
class Position:
    """A user's recorded stake in a vault.

    Positions live in an append-only per-user list; the list index is the
    position's identity and never changes. Closing a position keeps the slot
    with ``active=False`` and zero shares.

    Attributes:
        vault: Vault address holding the shares
        asset: Vault's underlying asset address
        shares: Vault shares held for the user
        assets: Ledger's valuation of ``shares`` in ``asset`` (recomputed
            from the vault on every mutation)
        active: False once shares reach zero
    """

    vault: str
    asset: str
    shares: int
    assets: int
    active: bool = True

    def copy(self) -> "Position":
        """Return an independent copy."""
        return Position(
            vault=self.vault,
            asset=self.asset,
            shares=self.shares,
            assets=self.assets,
            active=self.active,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with amounts as strings (safe for JSON consumers)."""
        return {
            "vault": self.vault,
            "asset": self.asset,
            "shares": str(self.shares),
            "assets": str(self.assets),
            "active": self.active,
        }


@dataclass(frozen=True)
class SwapLeg:
    """One opaque swap instruction executed by a whitelisted router.

    Attributes:
        router: Router address authorized to pull ``input_amount``
        calldata: Opaque instruction bytes passed to the router
        input_token: Token spent
        output_token: Token received
        input_amount: Raw amount of ``input_token`` to spend
    """

    router: str
    calldata: bytes
    input_token: str
    output_token: str
    input_amount: int


@dataclass
class ReallocateParams:
    """Arguments of ``reallocate`` in their on-chain (parallel array) shape.

    Attributes:
        target_vault: Vault to move the position into
        min_shares_out: Slippage floor on minted target shares
        routers, calldatas, input_tokens, output_tokens, input_amounts:
            Parallel arrays, one entry per swap leg
    """

    target_vault: str
    min_shares_out: int = 0
    routers: List[str] = field(default_factory=list)
    calldatas: List[bytes] = field(default_factory=list)
    input_tokens: List[str] = field(default_factory=list)
    output_tokens: List[str] = field(default_factory=list)
    input_amounts: List[int] = field(default_factory=list)

    @classmethod
    def from_legs(
        cls,
        target_vault: str,
        legs: List[SwapLeg],
        min_shares_out: int = 0,
    ) -> "ReallocateParams":
        """Build the parallel-array form from a list of legs."""
        return cls(
            target_vault=target_vault,
            min_shares_out=min_shares_out,
            routers=[leg.router for leg in legs],
            calldatas=[leg.calldata for leg in legs],
            input_tokens=[leg.input_token for leg in legs],
            output_tokens=[leg.output_token for leg in legs],
            input_amounts=[leg.input_amount for leg in legs],
        )

    @property
    def leg_count(self) -> int:
        """Number of swap legs (length of ``routers``)."""
        return len(self.routers)

    def legs(self) -> List[SwapLeg]:
        """Zip the parallel arrays back into legs.

        Raises:
            ValueError: If the arrays differ in length
        """
        lengths = {
            len(self.routers),
            len(self.calldatas),
            len(self.input_tokens),
            len(self.output_tokens),
            len(self.input_amounts),
        }
        if len(lengths) != 1:
            raise ValueError("Swap leg arrays must have equal length")

        return [
            SwapLeg(
                router=router,
                calldata=calldata,
                input_token=input_token,
                output_token=output_token,
                input_amount=input_amount,
            )
            for router, calldata, input_token, output_token, input_amount in zip(
                self.routers,
                self.calldatas,
                self.input_tokens,
                self.output_tokens,
                self.input_amounts,
            )
        ]


@dataclass(frozen=True)
class LedgerEvent:
    """An event emitted by the ledger.

    Attributes:
        event_type: Which event
        args: Event arguments (addresses lower-cased, amounts as ints)
        sequence: Monotonic emission counter across the ledger's lifetime
    """

    event_type: EventType
    args: Dict[str, Any]
    sequence: int = 0

    @property
    def name(self) -> str:
        return self.event_type.value


@dataclass
class GovernanceState:
    """Privileged settings of the ledger."""

    owner: str
    treasury: str = ZERO_ADDRESS
    paused: bool = False
    fee_bps: int = 0

    def copy(self) -> "GovernanceState":
        return GovernanceState(
            owner=self.owner,
            treasury=self.treasury,
            paused=self.paused,
            fee_bps=self.fee_bps,
        )


def find_event(events: List[LedgerEvent], event_type: EventType) -> Optional[LedgerEvent]:
    """Return the last event of ``event_type`` in ``events``, if any."""
    for event in reversed(events):
        if event.event_type == event_type:
            return event
    return None
