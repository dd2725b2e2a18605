"""Vault gateway interface and a simulated share vault.

The ledger talks to vaults only through VaultGateway, the four-call surface
every share-based custody contract exposes: ``asset``, ``deposit``,
``redeem`` and ``convert_to_assets`` (plus ``convert_to_shares`` for
previews). SimulatedVault implements it on the local chain so the whole
pipeline can run without a node.
"""

from abc import ABC, abstractmethod
from typing import Dict

from src.ledger.chain import Contract, LocalChain
from src.utils.exceptions import LedgerValidationError, TransferError
from src.utils.logging import get_logger
from src.utils.units import normalize_address, require_uint256

logger = get_logger(__name__)


class VaultGateway(ABC):
    """Uniform deposit/redeem interface to a share-based vault.

    ``caller`` plays the role of ``msg.sender``.
    """

    address: str

    @abstractmethod
    def asset(self) -> str:
        """Underlying asset address."""
        pass

    @abstractmethod
    def deposit(self, assets: int, receiver: str, caller: str) -> int:
        """Pull ``assets`` from ``caller`` and mint shares to ``receiver``.

        Returns:
            Shares minted
        """
        pass

    @abstractmethod
    def redeem(self, shares: int, receiver: str, owner: str, caller: str) -> int:
        """Burn ``owner``'s ``shares`` and send the assets to ``receiver``.

        Returns:
            Assets sent
        """
        pass

    @abstractmethod
    def convert_to_assets(self, shares: int) -> int:
        pass

    @abstractmethod
    def convert_to_shares(self, assets: int) -> int:
        pass


class SimulatedVault(Contract, VaultGateway):
    """Share vault on the local chain.

    Shares are priced as total_assets / total_supply (1:1 while empty).
    ``accrue_yield`` credits the vault with new assets, which raises the
    share price for all holders.

    Example:
        >>> vault = SimulatedVault(chain, address, asset=usdc)
        >>> chain.tokens.approve(usdc, user, vault.address, 1_000)
        >>> shares = vault.deposit(1_000, receiver=user, caller=user)
    """

    def __init__(self, chain: LocalChain, address: str, asset: str, name: str = ""):
        """Deploy the vault.

        Args:
            chain: Local chain to deploy on
            address: Vault address
            asset: Underlying token address (must be registered)
            name: Display name
        """
        super().__init__(chain, address)
        self._asset = normalize_address(asset)
        self.name = name or self.address[:10]
        self.total_supply = 0
        self._shares: Dict[str, int] = {}

    def asset(self) -> str:
        return self._asset

    def total_assets(self) -> int:
        return self.tokens.balance_of(self._asset, self.address)

    def balance_of(self, holder: str) -> int:
        return self._shares.get(normalize_address(holder), 0)

    def convert_to_shares(self, assets: int) -> int:
        total_assets = self.total_assets()
        if self.total_supply == 0 or total_assets == 0:
            return assets
        return assets * self.total_supply // total_assets

    def convert_to_assets(self, shares: int) -> int:
        if self.total_supply == 0:
            return shares
        return shares * self.total_assets() // self.total_supply

    def deposit(self, assets: int, receiver: str, caller: str) -> int:
        require_uint256(assets, "assets")
        if assets == 0:
            raise LedgerValidationError("Vault deposit of zero assets")

        shares = self.convert_to_shares(assets)
        if shares == 0:
            raise LedgerValidationError("Vault deposit would mint zero shares")

        self.tokens.transfer_from(self._asset, self.address, caller, self.address, assets)

        receiver = normalize_address(receiver)
        self._shares[receiver] = self._shares.get(receiver, 0) + shares
        self.total_supply += shares

        logger.debug("%s: deposit %d assets -> %d shares for %s", self.name, assets, shares, receiver)
        return shares

    def redeem(self, shares: int, receiver: str, owner: str, caller: str) -> int:
        require_uint256(shares, "shares")
        owner = normalize_address(owner)
        if owner != normalize_address(caller):
            raise TransferError(f"{caller} may not redeem shares owned by {owner}")

        held = self._shares.get(owner, 0)
        if held < shares:
            raise TransferError(f"Insufficient shares: {owner} holds {held}, needs {shares}")

        assets = self.convert_to_assets(shares)

        self._shares[owner] = held - shares
        self.total_supply -= shares
        self.tokens.transfer(self._asset, self.address, receiver, assets)

        logger.debug("%s: redeem %d shares -> %d assets to %s", self.name, shares, assets, receiver)
        return assets

    def accrue_yield(self, amount: int) -> None:
        """Credit the vault with ``amount`` of new underlying (sandbox only)."""
        self.tokens.mint(self._asset, self.address, amount)

    def snapshot(self):
        return (self.total_supply, dict(self._shares))

    def restore(self, state) -> None:
        self.total_supply, shares = state
        self._shares = dict(shares)
