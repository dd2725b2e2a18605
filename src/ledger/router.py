"""Swap router interface and a fixed-rate simulated router.

The ledger treats swap calldata as opaque: it approves the router for the
leg's input amount, calls ``execute`` and measures what arrived. The
simulated router understands a small JSON calldata format produced by
``encode_swap_calldata`` so the local swap gateway can quote against it.
"""

import json
from abc import ABC, abstractmethod
from fractions import Fraction
from typing import Dict, Tuple

from src.ledger.chain import Contract, LocalChain
from src.utils.exceptions import SwapExecutionError
from src.utils.logging import get_logger
from src.utils.units import normalize_address, require_uint256

logger = get_logger(__name__)


class SwapRouter(ABC):
    """A contract that executes opaque swap instructions."""

    address: str

    @abstractmethod
    def execute(self, calldata: bytes, caller: str) -> int:
        """Run ``calldata`` on behalf of ``caller``.

        Returns:
            Amount of output token delivered
        """
        pass


def encode_swap_calldata(
    input_token: str,
    output_token: str,
    input_amount: int,
    receiver: str,
    min_output: int = 0,
) -> bytes:
    """Encode a simulated-router swap instruction."""
    payload = {
        "inputToken": normalize_address(input_token),
        "outputToken": normalize_address(output_token),
        "inputAmount": str(require_uint256(input_amount)),
        "minOutput": str(require_uint256(min_output)),
        "receiver": normalize_address(receiver),
    }
    return json.dumps(payload, sort_keys=True).encode("utf-8")


def decode_swap_calldata(calldata: bytes) -> Dict:
    """Decode calldata produced by :func:`encode_swap_calldata`.

    Raises:
        SwapExecutionError: If the calldata is malformed
    """
    try:
        payload = json.loads(calldata.decode("utf-8"))
        return {
            "input_token": normalize_address(payload["inputToken"]),
            "output_token": normalize_address(payload["outputToken"]),
            "input_amount": int(payload["inputAmount"]),
            "min_output": int(payload.get("minOutput", 0)),
            "receiver": normalize_address(payload["receiver"]),
        }
    except (ValueError, KeyError, UnicodeDecodeError, AttributeError) as e:
        raise SwapExecutionError(f"Malformed swap calldata: {e}") from e


class SimulatedSwapRouter(Contract, SwapRouter):
    """Router that swaps at fixed rates out of its own reserves.

    Example:
        >>> router = SimulatedSwapRouter(chain, address)
        >>> router.set_rate(usdc, usdt, Fraction(999, 1000))
        >>> chain.tokens.mint(usdt, router.address, 10**12)  # reserves
    """

    def __init__(self, chain: LocalChain, address: str):
        super().__init__(chain, address)
        self._rates: Dict[Tuple[str, str], Fraction] = {}
        self.halted = False

    def set_rate(self, input_token: str, output_token: str, rate: Fraction) -> None:
        """Set output units received per input unit (raw amounts)."""
        key = (normalize_address(input_token), normalize_address(output_token))
        self._rates[key] = Fraction(rate)

    def quote(self, input_token: str, output_token: str, input_amount: int) -> int:
        """Expected output for a swap, without executing it.

        Raises:
            SwapExecutionError: If the pair has no rate
        """
        key = (normalize_address(input_token), normalize_address(output_token))
        rate = self._rates.get(key)
        if rate is None:
            raise SwapExecutionError(f"No route for {key[0]} -> {key[1]}")
        return int(input_amount * rate)

    def execute(self, calldata: bytes, caller: str) -> int:
        if self.halted:
            raise SwapExecutionError(f"Router {self.address} is halted")

        order = decode_swap_calldata(calldata)
        amount_out = self.quote(order["input_token"], order["output_token"], order["input_amount"])
        if amount_out < order["min_output"]:
            raise SwapExecutionError(
                f"Swap output {amount_out} below minimum {order['min_output']}"
            )

        self.tokens.transfer_from(
            order["input_token"], self.address, caller, self.address, order["input_amount"]
        )
        self.tokens.transfer(order["output_token"], self.address, order["receiver"], amount_out)

        logger.debug(
            "Router %s swapped %d -> %d for %s",
            self.address[:10],
            order["input_amount"],
            amount_out,
            order["receiver"],
        )
        return amount_out

    def snapshot(self):
        return (dict(self._rates), self.halted)

    def restore(self, state) -> None:
        rates, self.halted = state
        self._rates = dict(rates)
