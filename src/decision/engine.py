"""Reallocation decision engine.

Compares a position's current yield with the best yield available across
the whitelisted vaults and decides whether moving is worth it.

Selection rules:
- Only vaults serving the position's asset are considered, unless none of
  them has a reading, in which case every vault is considered.
- Highest APY wins; ties go to the vault listed first.
- If the winner is the vault the position already sits in, do nothing.
- Proceed when (best - current) in basis points >= threshold_bps.

Oracle failures for one vault only remove that vault from consideration.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd

from src.gateways.yield_oracle import YieldOpportunity, YieldOracle
from src.ledger.base import Position
from src.utils.exceptions import GatewayError
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)


@dataclass(frozen=True)
class VaultInfo:
    """A whitelisted vault the engine may move positions into."""

    address: str
    asset: str
    name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultInfo":
        return cls(
            address=normalize_address(data["address"]),
            asset=normalize_address(data["asset"]),
            name=data.get("name", ""),
        )


@dataclass
class Decision:
    """Result of evaluating one position.

    Attributes:
        proceed: True if the position should be reallocated
        target_vault: Vault to move into (None when there is nowhere better)
        target_asset: Underlying asset of ``target_vault``
        target_yield: Best APY found, in percent
        current_yield: APY of the position's vault, in percent (0.0 if unknown)
        reason: Human-readable explanation
    """

    proceed: bool
    target_vault: Optional[str]
    target_asset: Optional[str]
    target_yield: float
    current_yield: float
    reason: str

    @property
    def improvement_bps(self) -> float:
        return round((self.target_yield - self.current_yield) * 100, 9)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proceed": self.proceed,
            "target_vault": self.target_vault,
            "target_asset": self.target_asset,
            "target_yield": self.target_yield,
            "current_yield": self.current_yield,
            "improvement_bps": self.improvement_bps,
            "reason": self.reason,
        }


class DecisionEngine:
    """Decides go/no-go for reallocating a position.

    Example:
        >>> engine = DecisionEngine(oracle, vaults, {"threshold_bps": 50})
        >>> decision = engine.evaluate(position)
        >>> if decision.proceed:
        ...     print(f"Move to {decision.target_vault}")
    """

    def __init__(
        self,
        oracle: YieldOracle,
        vaults: Sequence[VaultInfo],
        config: Optional[Dict[str, Any]] = None,
    ):
        """Initialize the engine.

        Args:
            oracle: Yield source
            vaults: Whitelisted vaults, in tie-break order
            config: Dict with keys:
                - threshold_bps: Minimum improvement in basis points of APY
                  (default: 50, i.e. 0.5 percentage points)
        """
        self.oracle = oracle
        self.vaults: List[VaultInfo] = list(vaults)
        self.config = config or {}
        self.threshold_bps = self.config.get("threshold_bps", 50)
        self._validate_config()

        logger.info(
            "DecisionEngine initialized (%d vaults, threshold: %s bps)",
            len(self.vaults),
            self.threshold_bps,
        )

    def _validate_config(self) -> None:
        if isinstance(self.threshold_bps, bool) or not isinstance(self.threshold_bps, (int, float)):
            raise ValueError(f"threshold_bps must be a number, got {self.threshold_bps!r}")
        if self.threshold_bps < 0:
            raise ValueError(f"threshold_bps must be >= 0, got {self.threshold_bps}")

        seen = set()
        for vault in self.vaults:
            if vault.address in seen:
                raise ValueError(f"Duplicate vault in engine config: {vault.address}")
            seen.add(vault.address)

    def set_threshold(self, threshold_bps: float) -> None:
        """Change the decision threshold at runtime."""
        if isinstance(threshold_bps, bool) or not isinstance(threshold_bps, (int, float)) or threshold_bps < 0:
            raise ValueError(f"threshold_bps must be a non-negative number, got {threshold_bps!r}")
        logger.info("Decision threshold changed %s -> %s bps", self.threshold_bps, threshold_bps)
        self.threshold_bps = threshold_bps

    def sync_whitelist(self, whitelisted: Sequence[str], asset_of: Callable[[str], str]) -> None:
        """Track exactly the vaults the ledger currently whitelists.

        Known vaults keep their order and names. Vaults whitelisted since the
        last sync are appended, with their asset read through ``asset_of``.
        """
        current = [normalize_address(v) for v in whitelisted]
        allowed = set(current)
        known = {info.address for info in self.vaults}

        vaults = [info for info in self.vaults if info.address in allowed]
        added = []
        for address in current:
            if address not in known:
                vaults.append(VaultInfo(address=address, asset=normalize_address(asset_of(address))))
                known.add(address)
                added.append(address)

        dropped = [info.address for info in self.vaults if info.address not in allowed]
        if dropped:
            logger.warning("No longer whitelisted, dropping: %s", ", ".join(dropped))
        if added:
            logger.info("Newly whitelisted, tracking: %s", ", ".join(added))
        self.vaults = vaults

    def asset_of(self, vault: str) -> Optional[str]:
        vault = normalize_address(vault)
        for info in self.vaults:
            if info.address == vault:
                return info.asset
        return None

    def scan_yields(self) -> Dict[str, Optional[YieldOpportunity]]:
        """Query the oracle for every vault, in vault order.

        A vault whose query fails maps to None.
        """
        return {info.address: self._query(info.address, info.asset) for info in self.vaults}

    def evaluate(
        self,
        position: Position,
        yields: Optional[Dict[str, Optional[YieldOpportunity]]] = None,
    ) -> Decision:
        """Decide whether ``position`` should move.

        Args:
            position: Position to evaluate
            yields: Pre-fetched result of :meth:`scan_yields` (re-used across
                positions in a batch); queried fresh when omitted

        Returns:
            Decision (never raises for oracle failures)
        """
        if yields is None:
            yields = self.scan_yields()

        current_vault = normalize_address(position.vault)
        if current_vault in yields:
            current = yields[current_vault]
        else:
            current = self._query(current_vault, position.asset)

        if current is None:
            logger.warning("No yield reading for current vault %s, assuming 0%%", current_vault)
        current_yield = current.apy if current else 0.0

        with_readings = [info for info in self.vaults if yields.get(info.address) is not None]
        if not with_readings:
            return Decision(
                proceed=False,
                target_vault=None,
                target_asset=None,
                target_yield=0.0,
                current_yield=current_yield,
                reason="No yield opportunities available",
            )

        position_asset = normalize_address(position.asset)
        pool = [info for info in with_readings if info.asset == position_asset] or with_readings

        best = pool[0]
        for info in pool[1:]:
            if yields[info.address].apy > yields[best.address].apy:
                best = info
        best_yield = yields[best.address].apy

        if best.address == current_vault:
            return Decision(
                proceed=False,
                target_vault=None,
                target_asset=None,
                target_yield=best_yield,
                current_yield=current_yield,
                reason="Already in best vault",
            )

        improvement_bps = round((best_yield - current_yield) * 100, 9)
        proceed = improvement_bps >= self.threshold_bps
        if proceed:
            reason = (
                f"Yield improvement {improvement_bps:.1f} bps "
                f"({current_yield:.2f}% -> {best_yield:.2f}%) meets threshold {self.threshold_bps} bps"
            )
        else:
            reason = (
                f"Yield improvement {improvement_bps:.1f} bps below threshold "
                f"{self.threshold_bps} bps"
            )

        logger.debug("Position in %s: %s", current_vault, reason)
        return Decision(
            proceed=proceed,
            target_vault=best.address,
            target_asset=best.asset,
            target_yield=best_yield,
            current_yield=current_yield,
            reason=reason,
        )

    def get_yield_statistics(self) -> Dict[str, Any]:
        """Average and highest APY across the tracked vaults."""
        yields = self.scan_yields()
        readings = pd.Series(
            {vault: opp.apy for vault, opp in yields.items() if opp is not None},
            dtype="float64",
        )

        if readings.empty:
            return {
                "vaults_tracked": len(self.vaults),
                "vaults_with_yield": 0,
                "average_apy": 0.0,
                "highest_apy": 0.0,
                "best_vault": None,
            }

        return {
            "vaults_tracked": len(self.vaults),
            "vaults_with_yield": int(readings.size),
            "average_apy": float(readings.mean()),
            "highest_apy": float(readings.max()),
            "best_vault": readings.idxmax(),
        }

    def _query(self, vault: str, asset: Optional[str]) -> Optional[YieldOpportunity]:
        try:
            return self.oracle.get_yield(vault, asset)
        except GatewayError as e:
            logger.warning("Yield query failed for %s: %s", vault, e)
            return None
        except Exception as e:
            logger.error("Unexpected error querying yield for %s: %s", vault, e, exc_info=True)
            return None
