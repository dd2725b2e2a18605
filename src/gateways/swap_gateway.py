"""Swap gateway: executable swap instructions from an external router API.

Given a source asset, an amount and a destination asset, a swap gateway
returns the router address that may execute the swap plus the opaque
calldata to hand it. Any non-2xx answer is a hard failure for that swap.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from src.gateways.http_client import JsonHttpClient
from src.ledger.base import SwapLeg
from src.ledger.router import SimulatedSwapRouter, encode_swap_calldata
from src.utils.exceptions import SwapExecutionError, SwapQuoteError
from src.utils.logging import get_logger
from src.utils.units import normalize_address, require_uint256

logger = get_logger(__name__)


@dataclass(frozen=True)
class SwapQuote:
    """An executable swap instruction.

    Attributes:
        router: Address authorized to execute ``calldata``
        calldata: Opaque instruction bytes
        input_token: Token sold
        output_token: Token bought
        input_amount: Raw amount sold
        output_amount: Raw amount expected out (0 if the API did not say)
    """

    router: str
    calldata: bytes
    input_token: str
    output_token: str
    input_amount: int
    output_amount: int = 0

    def to_leg(self) -> SwapLeg:
        return SwapLeg(
            router=self.router,
            calldata=self.calldata,
            input_token=self.input_token,
            output_token=self.output_token,
            input_amount=self.input_amount,
        )


class SwapGateway(ABC):
    """Abstract source of swap instructions."""

    @abstractmethod
    def get_quote(
        self,
        input_token: str,
        output_token: str,
        input_amount: int,
        user_address: str,
        output_receiver: str,
    ) -> SwapQuote:
        """Quote a SELL of ``input_amount`` of ``input_token``.

        Raises:
            SwapQuoteError: If no executable quote is available
        """
        pass


class HttpSwapGateway(SwapGateway):
    """Swap gateway backed by the router API's ``/v1/quote`` endpoint.

    Example:
        >>> gateway = HttpSwapGateway({}, api_key="key", partner_id="pid")
        >>> quote = gateway.get_quote(usdc, usdt, 10**9, ledger, ledger)
    """

    DEFAULT_BASE_URL = "https://router.gluex.xyz"

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        api_key: Optional[str] = None,
        partner_id: Optional[str] = None,
        chain: str = "hyperevm",
        client: Optional[JsonHttpClient] = None,
    ):
        """Initialize the gateway.

        Args:
            config: Dict with keys:
                - base_url: API root (default: DEFAULT_BASE_URL)
                - timeout: Request timeout in seconds (default: 30)
                - retry_attempts: Attempts per request (default: 2)
            api_key: API key sent as ``x-api-key``
            partner_id: Integrator id sent as ``uniquePID``
            chain: Chain id string sent as ``chainID``
            client: Pre-built HTTP client (tests)
        """
        config = config or {}
        self.partner_id = partner_id
        self.chain = chain
        self.client = client or JsonHttpClient(
            base_url=config.get("base_url", self.DEFAULT_BASE_URL),
            api_key=api_key,
            timeout=config.get("timeout", 30),
            retry_attempts=config.get("retry_attempts", 2),
            error_class=SwapQuoteError,
        )

    def get_quote(
        self,
        input_token: str,
        output_token: str,
        input_amount: int,
        user_address: str,
        output_receiver: str,
    ) -> SwapQuote:
        input_token = normalize_address(input_token)
        output_token = normalize_address(output_token)
        require_uint256(input_amount, "input_amount")
        if input_amount == 0:
            raise SwapQuoteError("Cannot quote a zero input amount")

        body = {
            "chainID": self.chain,
            "inputToken": input_token,
            "outputToken": output_token,
            "inputAmount": str(input_amount),
            "orderType": "SELL",
            "userAddress": normalize_address(user_address),
            "outputReceiver": normalize_address(output_receiver),
        }
        if self.partner_id:
            body["uniquePID"] = self.partner_id

        logger.info("Requesting swap quote %s -> %s for %d", input_token, output_token, input_amount)
        data = self.client.post_json("/v1/quote", body)
        result = data.get("result", data)
        if not isinstance(result, dict):
            raise SwapQuoteError("Quote response has no result object")

        router = result.get("router")
        calldata = result.get("calldata")
        if not router or not calldata:
            raise SwapQuoteError("Quote response missing router or calldata")

        try:
            router = normalize_address(router)
            calldata_bytes = bytes.fromhex(calldata[2:] if calldata.startswith("0x") else calldata)
        except (ValueError, AttributeError, TypeError) as e:
            raise SwapQuoteError(f"Malformed quote response: {e}") from e

        output_amount = _as_int(result.get("outputAmount"))

        return SwapQuote(
            router=router,
            calldata=calldata_bytes,
            input_token=input_token,
            output_token=output_token,
            input_amount=input_amount,
            output_amount=output_amount,
        )


def _as_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


class LocalSwapGateway(SwapGateway):
    """Quotes against a SimulatedSwapRouter on the local chain."""

    def __init__(self, router: SimulatedSwapRouter, slippage_bps: int = 0):
        self.router = router
        self.slippage_bps = slippage_bps

    def get_quote(
        self,
        input_token: str,
        output_token: str,
        input_amount: int,
        user_address: str,
        output_receiver: str,
    ) -> SwapQuote:
        try:
            expected = self.router.quote(input_token, output_token, input_amount)
        except SwapExecutionError as e:
            raise SwapQuoteError(str(e)) from e
        if expected == 0:
            raise SwapQuoteError(f"Quote for {input_amount} returns nothing")

        min_output = expected * (10_000 - self.slippage_bps) // 10_000
        calldata = encode_swap_calldata(
            input_token, output_token, input_amount, output_receiver, min_output=min_output
        )
        return SwapQuote(
            router=self.router.address,
            calldata=calldata,
            input_token=normalize_address(input_token),
            output_token=normalize_address(output_token),
            input_amount=input_amount,
            output_amount=expected,
        )
