"""Ledger client for a deployed ledger contract, via web3.

Transactions are signed locally with the keeper key and sent raw. Nonces
are tracked locally and every submission holds the client lock, so one
client never sends two transactions with the same nonce.

A signer moving its own position calls ``reallocate(positionIndex, params)``.
A keeper moving someone else's position calls
``reallocateFor(user, positionIndex, params)``, which the ledger gates on its
keeper set.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from src.execution.base import LedgerClient, TransactionReceipt, TxStatus
from src.ledger.base import Position, ReallocateParams
from src.utils.exceptions import (
    AuthorizationError,
    ConfigurationError,
    TransactionError,
    TransactionRevertedError,
    TransactionTimeoutError,
)
from src.utils.logging import get_logger
from src.utils.units import normalize_address

logger = get_logger(__name__)

_POSITION_TUPLE = {
    "type": "tuple[]",
    "name": "",
    "components": [
        {"name": "vault", "type": "address"},
        {"name": "asset", "type": "address"},
        {"name": "shares", "type": "uint256"},
        {"name": "assets", "type": "uint256"},
        {"name": "active", "type": "bool"},
    ],
}

_REALLOCATE_PARAMS = {
    "type": "tuple",
    "name": "params",
    "components": [
        {"name": "routers", "type": "address[]"},
        {"name": "calldatas", "type": "bytes[]"},
        {"name": "inputTokens", "type": "address[]"},
        {"name": "outputTokens", "type": "address[]"},
        {"name": "inputAmounts", "type": "uint256[]"},
        {"name": "targetVault", "type": "address"},
        {"name": "minSharesOut", "type": "uint256"},
    ],
}


def _view(name: str, inputs: List[Dict], outputs: List[Dict]) -> Dict[str, Any]:
    return {"type": "function", "name": name, "stateMutability": "view", "inputs": inputs, "outputs": outputs}


def _write(name: str, inputs: List[Dict]) -> Dict[str, Any]:
    return {"type": "function", "name": name, "stateMutability": "nonpayable", "inputs": inputs, "outputs": []}


LEDGER_ABI = [
    _view("owner", [], [{"name": "", "type": "address"}]),
    _view("feeBps", [], [{"name": "", "type": "uint256"}]),
    _view("getUserPositions", [{"name": "user", "type": "address"}], [_POSITION_TUPLE]),
    _view("getWhitelistedVaults", [], [{"name": "", "type": "address[]"}]),
    _view("whitelistedRouters", [{"name": "router", "type": "address"}], [{"name": "", "type": "bool"}]),
    _write("setRouterWhitelist", [{"name": "router", "type": "address"}, {"name": "enabled", "type": "bool"}]),
    # Position owner moves its own position
    _write("reallocate", [{"name": "positionIndex", "type": "uint256"}, _REALLOCATE_PARAMS]),
    # Keeper moves a user's position
    _write(
        "reallocateFor",
        [
            {"name": "user", "type": "address"},
            {"name": "positionIndex", "type": "uint256"},
            _REALLOCATE_PARAMS,
        ],
    ),
    {
        "type": "event",
        "name": "PositionOptimized",
        "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "fromVault", "type": "address", "indexed": True},
            {"name": "toVault", "type": "address", "indexed": True},
            {"name": "assetsReallocated", "type": "uint256", "indexed": False},
            {"name": "newShares", "type": "uint256", "indexed": False},
        ],
    },
]

VAULT_ABI = [
    _view("asset", [], [{"name": "", "type": "address"}]),
    _view("previewDeposit", [{"name": "assets", "type": "uint256"}], [{"name": "", "type": "uint256"}]),
    _view("convertToAssets", [{"name": "shares", "type": "uint256"}], [{"name": "", "type": "uint256"}]),
]


class Web3LedgerClient(LedgerClient):
    """Drives a deployed ledger contract with a keeper key.

    Example:
        >>> client = Web3LedgerClient(rpc_url, ledger_address, private_key, chain_id=999)
        >>> positions = client.get_user_positions(user)
    """

    def __init__(
        self,
        rpc_url: str,
        ledger_address: str,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        users: Optional[Callable[[], List[str]]] = None,
        poll_seconds: float = 2.0,
        request_timeout: float = 30.0,
        w3: Optional[Web3] = None,
        account: Any = None,
    ):
        """Initialize the client.

        Args:
            rpc_url: JSON-RPC endpoint
            ledger_address: Deployed ledger contract
            private_key: Keeper key (required unless ``account`` is given)
            chain_id: Chain id for signing (read from the node if omitted)
            users: Callable returning candidate users for ``list_users``
            poll_seconds: Receipt poll interval
            request_timeout: RPC request timeout in seconds
            w3: Pre-built Web3 instance (tests)
            account: Pre-built signer (tests)

        Raises:
            ConfigurationError: If no signer can be built
        """
        if account is None and not private_key:
            raise ConfigurationError("KEEPER_PRIVATE_KEY is required for the web3 ledger client")

        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.account = account or Account.from_key(private_key)
        self._ledger_address = Web3.to_checksum_address(ledger_address)
        self.contract = self.w3.eth.contract(address=self._ledger_address, abi=LEDGER_ABI)
        self._chain_id = chain_id
        self._users = users or (lambda: [])
        self.poll_seconds = poll_seconds

        self._lock = threading.Lock()
        self._nonce: Optional[int] = None

        logger.info(
            "Web3LedgerClient initialized (ledger: %s, signer: %s)",
            self._ledger_address,
            self.account.address,
        )

    @property
    def signer_address(self) -> str:
        return normalize_address(self.account.address)

    @property
    def ledger_address(self) -> str:
        return normalize_address(self._ledger_address)

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_user_positions(self, user: str) -> List[Position]:
        raw = self.contract.functions.getUserPositions(Web3.to_checksum_address(user)).call()
        return [
            Position(
                vault=normalize_address(vault),
                asset=normalize_address(asset),
                shares=int(shares),
                assets=int(assets),
                active=bool(active),
            )
            for vault, asset, shares, assets, active in raw
        ]

    def list_users(self) -> List[str]:
        users = []
        for user in self._users():
            if any(p.active for p in self.get_user_positions(user)):
                users.append(normalize_address(user))
        return users

    def whitelisted_vaults(self) -> List[str]:
        return [normalize_address(v) for v in self.contract.functions.getWhitelistedVaults().call()]

    def vault_asset(self, vault: str) -> str:
        return normalize_address(self._vault(vault).functions.asset().call())

    def preview_deposit(self, vault: str, assets: int) -> int:
        return int(self._vault(vault).functions.previewDeposit(assets).call())

    def convert_to_assets(self, vault: str, shares: int) -> int:
        return int(self._vault(vault).functions.convertToAssets(shares).call())

    def fee_bps(self) -> int:
        return int(self.contract.functions.feeBps().call())

    def is_router_whitelisted(self, router: str) -> bool:
        return bool(
            self.contract.functions.whitelistedRouters(Web3.to_checksum_address(router)).call()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def whitelist_router(self, router: str) -> TransactionReceipt:
        owner = normalize_address(self.contract.functions.owner().call())
        if owner != self.signer_address:
            raise AuthorizationError(
                f"Signer {self.signer_address} is not the ledger owner ({owner}); "
                f"whitelist router {router} manually with the governance key"
            )

        fn = self.contract.functions.setRouterWhitelist(Web3.to_checksum_address(router), True)
        tx_hash = self._send(fn, "setRouterWhitelist")
        receipt = self.wait_for_receipt(tx_hash)
        if not receipt.succeeded:
            raise TransactionRevertedError(f"setRouterWhitelist({router}) reverted (tx {tx_hash})")
        logger.info("Router %s whitelisted (tx %s)", router, tx_hash)
        return receipt

    def submit_reallocate(self, user: str, position_index: int, params: ReallocateParams) -> str:
        user = normalize_address(user)
        encoded = (
            [Web3.to_checksum_address(r) for r in params.routers],
            list(params.calldatas),
            [Web3.to_checksum_address(t) for t in params.input_tokens],
            [Web3.to_checksum_address(t) for t in params.output_tokens],
            list(params.input_amounts),
            Web3.to_checksum_address(params.target_vault),
            params.min_shares_out,
        )
        if user == self.signer_address:
            fn = self.contract.functions.reallocate(position_index, encoded)
            return self._send(fn, "reallocate")

        fn = self.contract.functions.reallocateFor(Web3.to_checksum_address(user), position_index, encoded)
        return self._send(fn, "reallocateFor")

    def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float = 120.0,
        shutdown_event: Optional[threading.Event] = None,
    ) -> TransactionReceipt:
        deadline = time.monotonic() + timeout

        while True:
            try:
                raw = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                raw = None

            if raw is not None:
                return self._to_receipt(tx_hash, raw)

            if shutdown_event is not None and shutdown_event.is_set():
                raise TransactionTimeoutError(f"Abandoned wait for {tx_hash} on shutdown")
            if time.monotonic() >= deadline:
                raise TransactionTimeoutError(f"No receipt for {tx_hash} after {timeout:.0f}s")

            if shutdown_event is not None:
                shutdown_event.wait(self.poll_seconds)
            else:
                time.sleep(self.poll_seconds)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _vault(self, vault: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(vault), abi=VAULT_ABI)

    def _send(self, fn, label: str) -> str:
        """Build, sign and send ``fn`` with the next nonce.

        Raises:
            AuthorizationError: If the node rejects the call for lack of privilege
            TransactionRevertedError: If gas estimation reverts
            TransactionError: If sending fails
        """
        with self._lock:
            if self._nonce is None:
                self._nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")

            try:
                tx = fn.build_transaction(
                    {
                        "from": self.account.address,
                        "nonce": self._nonce,
                        "chainId": self.chain_id,
                        "gasPrice": self.w3.eth.gas_price,
                    }
                )
            except ContractLogicError as e:
                message = getattr(e, "message", None) or str(e)
                if "owner" in message.lower() or "unauthorized" in message.lower():
                    raise AuthorizationError(f"{label} rejected: {message}") from e
                raise TransactionRevertedError(f"{label} would revert: {message}") from e

            signed = self.account.sign_transaction(tx)
            try:
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                # Nonce state unknown after a failed send; re-read next time
                self._nonce = None
                raise TransactionError(f"Failed to send {label}: {e}") from e

            self._nonce += 1

        tx_hex = Web3.to_hex(tx_hash)
        logger.info("%s submitted: %s", label, tx_hex)
        return tx_hex

    def _to_receipt(self, tx_hash: str, raw) -> TransactionReceipt:
        status = TxStatus.SUCCESS if raw["status"] == 1 else TxStatus.REVERTED
        receipt = TransactionReceipt(
            tx_hash=tx_hash,
            status=status,
            block_number=int(raw["blockNumber"]),
            error="" if status == TxStatus.SUCCESS else "execution reverted",
        )
        if status == TxStatus.SUCCESS:
            for event in self.contract.events.PositionOptimized().process_receipt(raw):
                receipt.new_shares = int(event["args"]["newShares"])
                receipt.assets_reallocated = int(event["args"]["assetsReallocated"])
        return receipt
