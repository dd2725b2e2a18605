"""Yield oracle: annualized yield estimates per vault.

The HTTP oracle POSTs ``{chain, pool_address, lp_token_address, input_token}``
to the yield API's ``/historical-apy`` endpoint and reduces whatever comes back
(scalar current/average APY, or a time series) to a single YieldOpportunity.
Empty or non-positive readings mean "no opportunity", not an error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from src.gateways.http_client import JsonHttpClient
from src.utils.exceptions import YieldOracleError
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)

# Internal chain names -> names the yield API expects
CHAIN_ALIASES = {
    "hyperevm": "hyperliquid-evm",
    "hyperliquid": "hyperliquid-evm",
}

_CURRENT_KEYS = ("current_apy", "apy", "currentAPY")
_AVERAGE_KEYS = ("average_apy", "averageAPY")
_SERIES_KEYS = ("historical_apy", "historicalAPY")


@dataclass
class YieldOpportunity:
    """Yield estimate for one vault at one point in time.

    Attributes:
        vault: Vault address
        asset: Vault's underlying asset (may be empty if unknown)
        apy: Annual percentage yield, in percent (4.2 == 4.2%)
        apr: Annual percentage rate, in percent
        timestamp: When the estimate was produced (UTC)
    """

    vault: str
    asset: str
    apy: float
    apr: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class YieldOracle(ABC):
    """Abstract source of vault yield estimates."""

    @abstractmethod
    def get_yield(self, vault: str, asset: Optional[str] = None) -> Optional[YieldOpportunity]:
        """Return the current yield of ``vault``.

        Returns:
            YieldOpportunity, or None if the source has no usable reading

        Raises:
            YieldOracleError: If the source could not be reached
        """
        pass


class HttpYieldOracle(YieldOracle):
    """Yield oracle backed by the historical-APY HTTP API.

    Example:
        >>> oracle = HttpYieldOracle({"base_url": "https://yield-api.example"}, api_key="key")
        >>> opportunity = oracle.get_yield(vault_address, asset_address)
    """

    DEFAULT_BASE_URL = "https://yield-api.gluex.xyz"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
        chain: str = "hyperevm",
        client: Optional[JsonHttpClient] = None,
    ):
        """Initialize the oracle.

        Args:
            config: Dict with keys:
                - base_url: API root (default: DEFAULT_BASE_URL)
                - timeout: Request timeout in seconds (default: 30)
                - retry_attempts: Attempts per request (default: 2)
            api_key: API key sent as ``x-api-key``
            chain: Internal chain name, aliased for the API
            client: Pre-built HTTP client (tests)
        """
        config = config or {}
        self.chain = CHAIN_ALIASES.get(chain, chain)
        self.client = client or JsonHttpClient(
            base_url=config.get("base_url", self.DEFAULT_BASE_URL),
            api_key=api_key,
            timeout=config.get("timeout", 30),
            retry_attempts=config.get("retry_attempts", 2),
            error_class=YieldOracleError,
        )

    def fetch_historical_apy(
        self,
        vault: str,
        asset: Optional[str] = None,
        lp_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Raw historical-APY response body (``data`` wrapper removed).

        Raises:
            YieldOracleError: On transport failure or bad response
        """
        body = {
            "chain": self.chain,
            "pool_address": vault,
            # share-based vaults are their own LP token
            "lp_token_address": lp_token or vault,
        }
        if asset:
            body["input_token"] = asset

        data = self.client.post_json("/historical-apy", body)
        inner = data.get("data")
        return inner if isinstance(inner, dict) else data

    def get_yield(self, vault: str, asset: Optional[str] = None) -> Optional[YieldOpportunity]:
        vault = normalize_address(vault)
        data = self.fetch_historical_apy(vault, asset)

        apy, apr = parse_yield_response(data)
        if apy is None or apy <= 0:
            logger.debug("No usable yield reading for %s", vault)
            return None

        return YieldOpportunity(
            vault=vault,
            asset=normalize_address(asset) if asset else "",
            apy=apy,
            apr=apr if apr is not None else apy,
        )


def parse_yield_response(data: Dict[str, Any]) -> tuple:
    """Reduce a historical-APY payload to ``(apy, apr)``.

    Priority: current APY, then average APY, then the series (its last
    point as current, its mean as average). Returns ``(None, None)`` when
    nothing numeric is present.
    """
    current = _first_number(data, _CURRENT_KEYS)
    average = _first_number(data, _AVERAGE_KEYS)
    apr = _first_number(data, ("apr",))

    series = _series_frame(data)
    if series is not None and not series.empty:
        if current is None and average is None:
            average = float(series["apy"].mean())
            current = float(series["apy"].iloc[-1]) or average
        if apr is None and "apr" in series:
            apr = float(series["apr"].iloc[-1])

    apy = current if current else average
    return apy, apr


def _first_number(data: Dict[str, Any], keys) -> Optional[float]:
    for key in keys:
        value = data.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def _series_frame(data: Dict[str, Any]) -> Optional[pd.DataFrame]:
    for key in _SERIES_KEYS:
        points = data.get(key)
        if isinstance(points, list) and points:
            rows: List[Dict[str, Any]] = [p for p in points if isinstance(p, dict)]
            if not rows:
                return None
            frame = pd.DataFrame(rows)
            if "apy" not in frame:
                return None
            frame["apy"] = pd.to_numeric(frame["apy"], errors="coerce").fillna(0.0)
            if "apr" in frame:
                frame["apr"] = pd.to_numeric(frame["apr"], errors="coerce").fillna(frame["apy"])
            return frame
    return None


class StaticYieldOracle(YieldOracle):
    """Oracle serving fixed yields (sandbox and tests).

    Example:
        >>> oracle = StaticYieldOracle({vault_a: 3.0, vault_b: 4.2})
        >>> oracle.get_yield(vault_b).apy
        4.2
    """

    def __init__(self, yields: Optional[Dict[str, float]] = None):
        self._yields: Dict[str, float] = {}
        for vault, apy in (yields or {}).items():
            self.set_yield(vault, apy)

    def set_yield(self, vault: str, apy: float) -> None:
        self._yields[normalize_address(vault)] = float(apy)

    def get_yield(self, vault: str, asset: Optional[str] = None) -> Optional[YieldOpportunity]:
        vault = normalize_address(vault)
        apy = self._yields.get(vault)
        if apy is None or apy <= 0:
            return None
        return YieldOpportunity(
            vault=vault,
            asset=normalize_address(asset) if asset else "",
            apy=apy,
            apr=apy,
        )
