"""Amount and address helpers shared by the ledger and the gateways.

Amounts are plain Python ints constrained to the uint256 range, exactly as
the chain stores them. Conversion to human-readable decimals only happens at
the edges (logging, CLI output, API payloads).
"""

from decimal import Decimal, ROUND_DOWN
from typing import Union

from web3 import Web3

# ── EVM word bounds ─────────────────────────────────────────────────────
UINT256_MAX = 2**256 - 1
BPS_DENOMINATOR = 10_000  # 1 bp = 0.01%

ZERO_ADDRESS = "0x" + "0" * 40


def is_address(value: object) -> bool:
    """Check whether value is a 0x-prefixed 20-byte hex address.

    Mixed-case values must carry a valid EIP-55 checksum.
    """
    return isinstance(value, str) and value.startswith("0x") and Web3.is_address(value)


def normalize_address(value: str) -> str:
    """Lower-case an address after validating it.

    Raises:
        ValueError: If value is not a 0x-prefixed 40-hex-char string, or is
            mixed-case with a bad checksum
    """
    if not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


def require_uint256(value: int, name: str = "amount") -> int:
    """Validate that value fits in a uint256.

    Raises:
        ValueError: If value is not an int in [0, 2**256 - 1]
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > UINT256_MAX:
        raise ValueError(f"{name} out of uint256 range: {value}")
    return value


def apply_bps(amount: int, bps: int) -> int:
    """Return amount * bps / 10_000, rounded down."""
    return amount * bps // BPS_DENOMINATOR


def format_units(amount: int, decimals: int = 18) -> str:
    """Render a raw integer amount as a decimal string.

    Example:
        >>> format_units(1_500_000, 6)
        '1.5'
    """
    value = Decimal(amount).scaleb(-decimals)
    text = format(value.normalize(), "f")
    return text


def parse_units(value: Union[str, int, float, Decimal], decimals: int = 18) -> int:
    """Convert a decimal amount into its raw integer representation.

    Digits beyond ``decimals`` are truncated.

    Example:
        >>> parse_units("1.5", 6)
        1500000
    """
    raw = (Decimal(str(value)).scaleb(decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return require_uint256(int(raw))
