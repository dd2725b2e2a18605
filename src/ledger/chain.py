"""In-process chain: contract registry, token balances and atomic execution.

The local chain stands in for an EVM node. It gives every state-changing
call the property the real ledger gets from the EVM: either the whole call
applies, or none of it does. ``LocalChain.atomic()`` snapshots tokens and
every registered contract, runs the call under a single chain-wide lock, and
restores the snapshot if anything raises.
"""

import hashlib
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from src.ledger.tokens import TokenLedger
from src.utils.exceptions import LedgerValidationError
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)


class Contract(ABC):
    """Base class for contracts living on the local chain.

    Subclasses hold their own storage and must be able to snapshot and
    restore it so reverted calls leave no trace.
    """

    def __init__(self, chain: "LocalChain", address: str):
        self.chain = chain
        self.address = normalize_address(address)
        chain.register_contract(self)

    @property
    def tokens(self) -> TokenLedger:
        return self.chain.tokens

    @abstractmethod
    def snapshot(self) -> Any:
        """Return an independent copy of this contract's storage."""
        pass

    @abstractmethod
    def restore(self, state: Any) -> None:
        """Restore storage from a value returned by :meth:`snapshot`."""
        pass


class LocalChain:
    """Registry of contracts plus shared token balances.

    Example:
        >>> chain = LocalChain()
        >>> usdc = chain.create_token("USDC", decimals=6)
        >>> with chain.atomic():
        ...     chain.tokens.mint(usdc, user, 1_000_000)
    """

    def __init__(self, chain_id: int = 999):
        """Initialize an empty chain.

        Args:
            chain_id: Chain id reported to clients
        """
        self.chain_id = chain_id
        self.tokens = TokenLedger()
        self.block_number = 0
        self._contracts: Dict[str, Contract] = {}
        self._lock = threading.RLock()
        self._depth = 0

    @staticmethod
    def derive_address(label: str) -> str:
        """Deterministic address for a label (sandbox/test fixtures)."""
        digest = hashlib.sha256(label.encode("utf-8")).hexdigest()
        return "0x" + digest[:40]

    def create_token(self, symbol: str, decimals: int = 18, address: Optional[str] = None) -> str:
        """Register a token and return its address."""
        address = address or self.derive_address(f"token:{symbol}")
        return self.tokens.register(address, symbol=symbol, decimals=decimals)

    def register_contract(self, contract: Contract) -> None:
        if contract.address in self._contracts:
            raise ValueError(f"Address already in use: {contract.address}")
        self._contracts[contract.address] = contract

    def get_contract(self, address: str, expected: type = Contract) -> Any:
        """Look up a contract by address.

        Raises:
            LedgerValidationError: If nothing of the expected type lives there
        """
        contract = self._contracts.get(normalize_address(address))
        if not isinstance(contract, expected):
            raise LedgerValidationError(
                f"No {expected.__name__} deployed at {address}"
            )
        return contract

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tokens": self.tokens.snapshot(),
            "contracts": {
                address: contract.snapshot()
                for address, contract in self._contracts.items()
            },
        }

    def restore(self, state: Dict[str, Any]) -> None:
        self.tokens.restore(state["tokens"])
        for address, contract_state in state["contracts"].items():
            self._contracts[address].restore(contract_state)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Run a block as one all-or-nothing transaction.

        Calls are serialized chain-wide. On any exception the chain is
        restored to its state at entry and the exception propagates.
        """
        with self._lock:
            state = self.snapshot()
            self._depth += 1
            try:
                yield
            except BaseException:
                self.restore(state)
                logger.debug("Transaction reverted at depth %d", self._depth)
                raise
            finally:
                self._depth -= 1
            if self._depth == 0:
                self.block_number += 1
