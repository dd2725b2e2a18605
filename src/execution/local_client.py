"""Ledger client for the in-process chain model.

Transactions execute synchronously against a PositionLedger; each receipt is
held in memory under a synthetic transaction hash until it is read once.
Reverts are reported as REVERTED receipts, exactly as a node would.
"""

import hashlib
import threading
from typing import Dict, List, Optional

from src.execution.base import LedgerClient, TransactionReceipt, TxStatus
from src.ledger.base import EventType, Position, ReallocateParams, find_event
from src.ledger.position_ledger import PositionLedger
from src.utils.exceptions import AuthorizationError, ReallocatorError, TransactionTimeoutError
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)


class InProcessLedgerClient(LedgerClient):
    """Drives a local PositionLedger as ``signer``.

    Example:
        >>> client = InProcessLedgerClient(ledger, signer=keeper)
        >>> tx_hash = client.submit_reallocate(user, 0, params)
        >>> client.wait_for_receipt(tx_hash).succeeded
        True
    """

    def __init__(self, ledger: PositionLedger, signer: str):
        self.ledger = ledger
        self._signer = normalize_address(signer)
        self._lock = threading.Lock()
        self._nonce = 0
        self._receipts: Dict[str, TransactionReceipt] = {}

    @property
    def signer_address(self) -> str:
        return self._signer

    @property
    def ledger_address(self) -> str:
        return self.ledger.address

    def get_user_positions(self, user: str) -> List[Position]:
        return self.ledger.get_user_positions(user)

    def list_users(self) -> List[str]:
        return self.ledger.users_with_active_positions()

    def whitelisted_vaults(self) -> List[str]:
        return self.ledger.whitelisted_vaults()

    def vault_asset(self, vault: str) -> str:
        return self.ledger.vault_asset(vault)

    def preview_deposit(self, vault: str, assets: int) -> int:
        return self.ledger.preview_deposit(vault, assets)

    def convert_to_assets(self, vault: str, shares: int) -> int:
        return self.ledger.convert_to_assets(vault, shares)

    def fee_bps(self) -> int:
        return self.ledger.fee_bps

    def is_router_whitelisted(self, router: str) -> bool:
        return self.ledger.is_router_whitelisted(router)

    def whitelist_router(self, router: str) -> TransactionReceipt:
        with self._lock:
            tx_hash = self._next_hash("setRouterWhitelist", router)
            try:
                self.ledger.set_router_whitelist(self._signer, router, True)
            except AuthorizationError as e:
                raise AuthorizationError(
                    f"Signer {self._signer} cannot whitelist router {router}: {e}. "
                    "Whitelist it manually with the governance key."
                ) from e
            receipt = TransactionReceipt(
                tx_hash=tx_hash,
                status=TxStatus.SUCCESS,
                block_number=self.ledger.chain.block_number,
            )
            logger.info("Router %s whitelisted (tx %s)", router, tx_hash)
            return receipt

    def submit_reallocate(self, user: str, position_index: int, params: ReallocateParams) -> str:
        with self._lock:
            tx_hash = self._next_hash("reallocate", user, position_index)
            try:
                new_shares = self.ledger.reallocate(
                    self._signer, position_index, params, user=user
                )
            except ReallocatorError as e:
                logger.warning("reallocate reverted (tx %s): %s", tx_hash, e)
                self._receipts[tx_hash] = TransactionReceipt(
                    tx_hash=tx_hash,
                    status=TxStatus.REVERTED,
                    block_number=self.ledger.chain.block_number,
                    error=f"{type(e).__name__}: {e}",
                )
                return tx_hash

            event = find_event(self.ledger.events(), EventType.POSITION_OPTIMIZED)
            self._receipts[tx_hash] = TransactionReceipt(
                tx_hash=tx_hash,
                status=TxStatus.SUCCESS,
                block_number=self.ledger.chain.block_number,
                new_shares=new_shares,
                assets_reallocated=event.args["assets_reallocated"] if event else None,
            )
            return tx_hash

    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float = 120.0,
        shutdown_event: Optional[threading.Event] = None,
    ) -> TransactionReceipt:
        with self._lock:
            receipt = self._receipts.pop(tx_hash, None)
        if receipt is None:
            raise TransactionTimeoutError(f"Unknown transaction {tx_hash}")
        return receipt

    def _next_hash(self, *parts) -> str:
        self._nonce += 1
        seed = ":".join(str(p) for p in (self._signer, self._nonce) + parts)
        return "0x" + hashlib.sha256(seed.encode("utf-8")).hexdigest()
