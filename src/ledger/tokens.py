"""In-process ERC-20 style token balances.

TokenLedger keeps balances and allowances for every token known to the local
chain. It implements the three transfer primitives the ledger and the vaults
rely on (``transfer``, ``transfer_from``, ``approve``) with the usual
revert-on-failure semantics.
"""

from collections import defaultdict
from typing import Dict, Tuple

from src.utils.exceptions import TransferError
from src.utils.logging import get_logger
from src.utils.units import normalize_address, require_uint256

logger = get_logger(__name__)

# token -> holder -> balance
Balances = Dict[str, Dict[str, int]]
# token -> (owner, spender) -> allowance
Allowances = Dict[str, Dict[Tuple[str, str], int]]


class TokenLedger:
    """Balances and allowances for all tokens on the local chain.

    Example:
        >>> tokens = TokenLedger()
        >>> tokens.register("0x" + "aa" * 20, symbol="USDC", decimals=6)
        >>> tokens.mint("0x" + "aa" * 20, user, 1_000_000)
        >>> tokens.approve("0x" + "aa" * 20, user, ledger_address, 1_000_000)
    """

    def __init__(self):
        """Initialize an empty token ledger."""
        self._balances: Balances = defaultdict(dict)
        self._allowances: Allowances = defaultdict(dict)
        self._metadata: Dict[str, Dict] = {}

    def register(self, token: str, symbol: str = "", decimals: int = 18) -> str:
        """Register token metadata. Returns the normalized address."""
        token = normalize_address(token)
        self._metadata[token] = {"symbol": symbol, "decimals": decimals}
        return token

    def decimals(self, token: str) -> int:
        return self._metadata.get(normalize_address(token), {}).get("decimals", 18)

    def symbol(self, token: str) -> str:
        token = normalize_address(token)
        return self._metadata.get(token, {}).get("symbol") or token[:10]

    def balance_of(self, token: str, holder: str) -> int:
        return self._balances[normalize_address(token)].get(normalize_address(holder), 0)

    def allowance(self, token: str, owner: str, spender: str) -> int:
        key = (normalize_address(owner), normalize_address(spender))
        return self._allowances[normalize_address(token)].get(key, 0)

    def mint(self, token: str, to: str, amount: int) -> None:
        """Credit ``amount`` of ``token`` out of thin air (sandbox funding)."""
        require_uint256(amount)
        token, to = normalize_address(token), normalize_address(to)
        self._balances[token][to] = self._balances[token].get(to, 0) + amount

    def burn(self, token: str, holder: str, amount: int) -> None:
        """Destroy ``amount`` of ``token`` held by ``holder``."""
        self._debit(normalize_address(token), normalize_address(holder), amount)

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        """Set the allowance of ``spender`` over ``owner``'s tokens."""
        require_uint256(amount)
        key = (normalize_address(owner), normalize_address(spender))
        self._allowances[normalize_address(token)][key] = amount

    def transfer(self, token: str, sender: str, to: str, amount: int) -> None:
        """Move ``amount`` from ``sender`` to ``to``.

        Raises:
            TransferError: If ``sender`` lacks the balance
        """
        token, sender, to = (
            normalize_address(token),
            normalize_address(sender),
            normalize_address(to),
        )
        self._debit(token, sender, amount)
        self._balances[token][to] = self._balances[token].get(to, 0) + amount

    def transfer_from(
        self, token: str, spender: str, owner: str, to: str, amount: int
    ) -> None:
        """Move ``amount`` from ``owner`` to ``to`` using ``spender``'s allowance.

        Raises:
            TransferError: If allowance or balance is insufficient
        """
        token, spender, owner = (
            normalize_address(token),
            normalize_address(spender),
            normalize_address(owner),
        )
        key = (owner, spender)
        allowed = self._allowances[token].get(key, 0)
        if allowed < amount:
            raise TransferError(
                f"Insufficient allowance: {spender} may spend {allowed} of "
                f"{owner}'s {self.symbol(token)}, needs {amount}"
            )
        self.transfer(token, owner, to, amount)
        self._allowances[token][key] = allowed - amount

    def _debit(self, token: str, holder: str, amount: int) -> None:
        require_uint256(amount)
        balance = self._balances[token].get(holder, 0)
        if balance < amount:
            raise TransferError(
                f"Insufficient balance: {holder} holds {balance} "
                f"{self.symbol(token)}, needs {amount}"
            )
        self._balances[token][holder] = balance - amount

    def snapshot(self) -> Tuple[Balances, Allowances]:
        """Copy of balances and allowances, for revert."""
        return (
            {token: dict(holders) for token, holders in self._balances.items()},
            {token: dict(entries) for token, entries in self._allowances.items()},
        )

    def restore(self, state: Tuple[Balances, Allowances]) -> None:
        """Restore a snapshot taken by :meth:`snapshot`."""
        balances, allowances = state
        self._balances = defaultdict(dict, {t: dict(h) for t, h in balances.items()})
        self._allowances = defaultdict(dict, {t: dict(e) for t, e in allowances.items()})
