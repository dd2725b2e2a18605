"""Record types persisted by the optimization store."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.utils.units import normalize_address


@dataclass(frozen=True)
class OptimizationRecord:
    """Audit record of one confirmed reallocation.

    Written once after the ledger confirms a reallocation and never
    modified afterwards. The on-chain Position stays the source of truth.

    Attributes:
        user: Position owner
        position_index: Index of the reallocated position
        from_vault: Vault the position left
        to_vault: Vault the position entered
        assets_reallocated: Raw assets redeemed from ``from_vault``
        previous_apy: APY of ``from_vault`` at decision time (percent)
        new_apy: APY of ``to_vault`` at decision time (percent)
        tx_hash: Confirming transaction, if any
        timestamp: Confirmation time (UTC)
        record_id: Store-assigned id (None until saved)
    """

    user: str
    position_index: int
    from_vault: str
    to_vault: str
    assets_reallocated: int
    previous_apy: float
    new_apy: float
    tx_hash: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    record_id: Optional[int] = None

    def __post_init__(self):
        # Addresses are stored lower-case
        object.__setattr__(self, "user", normalize_address(self.user))
        object.__setattr__(self, "from_vault", normalize_address(self.from_vault))
        object.__setattr__(self, "to_vault", normalize_address(self.to_vault))
        if self.tx_hash:
            object.__setattr__(self, "tx_hash", self.tx_hash.lower())
        if self.assets_reallocated < 0:
            raise ValueError("assets_reallocated must be non-negative")

    @property
    def apy_improvement(self) -> float:
        return self.new_apy - self.previous_apy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "user": self.user,
            "position_index": self.position_index,
            "from_vault": self.from_vault,
            "to_vault": self.to_vault,
            "assets_reallocated": str(self.assets_reallocated),
            "previous_apy": self.previous_apy,
            "new_apy": self.new_apy,
            "tx_hash": self.tx_hash,
            "timestamp": self.timestamp.isoformat(),
        }
