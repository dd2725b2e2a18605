"""Position ledger: custody of user vault positions.

This module implements the ledger state machine. It custodies vault shares
for many users, records each user's stake as an index-addressed Position, and
exposes three user operations:

- deposit:    asset -> vault shares, opens a new position
- withdraw:   vault shares -> asset, partial or full
- reallocate: redeem -> optional swap legs -> deposit into another vault

Every operation runs inside ``LocalChain.atomic()``: it either completes or
reverts with no observable effect. Whitelists, pause flag, fee and keepers
are governed by a single owner.

Key invariants:
- shares == 0 implies active is False
- assets is recomputed from the vault after every mutation
- position slots are never removed, so indices stay stable
"""

from typing import Dict, List, Optional

from src.ledger.base import (
    EventType,
    GovernanceState,
    LedgerEvent,
    Position,
    ReallocateParams,
)
from src.ledger.chain import Contract, LocalChain
from src.ledger.router import SwapRouter
from src.ledger.vault import VaultGateway
from src.utils.exceptions import (
    AssetMismatchError,
    AuthorizationError,
    LedgerError,
    LedgerPausedError,
    LedgerValidationError,
    SlippageError,
    SwapExecutionError,
)
from src.utils.logging import get_logger
from src.utils.units import ZERO_ADDRESS, apply_bps, normalize_address, require_uint256

logger = get_logger(__name__)

MAX_FEE_BPS = 1_000  # 10%


def _require_amount(value: int, name: str) -> int:
    try:
        return require_uint256(value, name)
    except ValueError as e:
        raise LedgerValidationError(str(e)) from e


class PositionLedger(Contract):
    """On-chain position ledger (local chain model).

    ``caller`` on every method plays the role of ``msg.sender``.

    Example:
        >>> ledger = PositionLedger(chain, address, owner=governance)
        >>> ledger.set_vault_whitelist(governance, vault_a.address, True)
        >>> shares = ledger.deposit(user, vault_a.address, 1_000_000, min_shares_out=990_000)
        >>> ledger.get_user_positions(user)[0].shares == shares
        True
    """

    def __init__(
        self,
        chain: LocalChain,
        address: str,
        owner: str,
        treasury: Optional[str] = None,
        fee_bps: int = 0,
    ):
        """Deploy the ledger.

        Args:
            chain: Local chain to deploy on
            address: Ledger address
            owner: Governance owner
            treasury: Fee recipient (defaults to owner)
            fee_bps: Reallocation fee in basis points (<= MAX_FEE_BPS)
        """
        super().__init__(chain, address)
        if not 0 <= fee_bps <= MAX_FEE_BPS:
            raise ValueError(f"fee_bps must be in [0, {MAX_FEE_BPS}], got {fee_bps}")

        owner = normalize_address(owner)
        self._gov = GovernanceState(
            owner=owner,
            treasury=normalize_address(treasury) if treasury else owner,
            fee_bps=fee_bps,
        )
        # dicts keyed by address; insertion order doubles as whitelist order
        self._vault_whitelist: Dict[str, bool] = {}
        self._router_whitelist: Dict[str, bool] = {}
        self._keepers: Dict[str, bool] = {}
        self._positions: Dict[str, List[Position]] = {}
        self._events: List[LedgerEvent] = []
        self._event_seq = 0

        logger.info("PositionLedger deployed at %s (owner: %s)", self.address, owner)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._gov.owner

    @property
    def treasury(self) -> str:
        return self._gov.treasury

    @property
    def paused(self) -> bool:
        return self._gov.paused

    @property
    def fee_bps(self) -> int:
        return self._gov.fee_bps

    def is_vault_whitelisted(self, vault: str) -> bool:
        return self._vault_whitelist.get(normalize_address(vault), False)

    def is_router_whitelisted(self, router: str) -> bool:
        return self._router_whitelist.get(normalize_address(router), False)

    def is_keeper(self, account: str) -> bool:
        return self._keepers.get(normalize_address(account), False)

    def whitelisted_vaults(self) -> List[str]:
        """Whitelisted vaults in the order they were first whitelisted."""
        return [vault for vault, enabled in self._vault_whitelist.items() if enabled]

    def vault_asset(self, vault: str) -> str:
        return self._vault(vault).asset()

    def preview_deposit(self, vault: str, assets: int) -> int:
        """Shares ``vault`` would mint for ``assets`` right now."""
        return self._vault(vault).convert_to_shares(assets)

    def convert_to_assets(self, vault: str, shares: int) -> int:
        """Current value of ``shares`` in ``vault``, accrued yield included."""
        return self._vault(vault).convert_to_assets(shares)

    def get_user_positions(self, user: str) -> List[Position]:
        """Copies of every position slot of ``user`` (active or not)."""
        return [p.copy() for p in self._positions.get(normalize_address(user), [])]

    def get_position(self, user: str, position_index: int) -> Position:
        """Copy of one position slot.

        Raises:
            LedgerValidationError: If the index is out of range
        """
        return self._slot(normalize_address(user), position_index).copy()

    def users(self) -> List[str]:
        """Every user that ever opened a position, in first-deposit order."""
        return list(self._positions.keys())

    def users_with_active_positions(self) -> List[str]:
        return [
            user
            for user, positions in self._positions.items()
            if any(p.active for p in positions)
        ]

    def events(self, since: int = 0) -> List[LedgerEvent]:
        """Events with sequence number greater than ``since``."""
        return [e for e in self._events if e.sequence > since]

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    def set_vault_whitelist(self, caller: str, vault: str, enabled: bool) -> None:
        """Add or remove a vault from the whitelist (owner only, idempotent)."""
        with self.chain.atomic():
            self._only_owner(caller)
            vault = normalize_address(vault)
            if enabled:
                # Refuse addresses that are not vaults
                self._vault(vault).asset()
            if self._vault_whitelist.get(vault, False) == enabled:
                return
            self._vault_whitelist[vault] = enabled
            self._emit(EventType.VAULT_WHITELISTED, vault=vault, enabled=enabled)
            logger.info("Vault %s whitelist -> %s", vault, enabled)

    def set_router_whitelist(self, caller: str, router: str, enabled: bool) -> None:
        """Add or remove a swap router from the whitelist (owner only, idempotent)."""
        with self.chain.atomic():
            self._only_owner(caller)
            router = normalize_address(router)
            if self._router_whitelist.get(router, False) == enabled:
                return
            self._router_whitelist[router] = enabled
            self._emit(EventType.ROUTER_WHITELISTED, router=router, enabled=enabled)
            logger.info("Router %s whitelist -> %s", router, enabled)

    def set_keeper(self, caller: str, keeper: str, enabled: bool) -> None:
        """Allow or revoke an account to reallocate on users' behalf."""
        with self.chain.atomic():
            self._only_owner(caller)
            keeper = normalize_address(keeper)
            if self._keepers.get(keeper, False) == enabled:
                return
            self._keepers[keeper] = enabled
            self._emit(EventType.KEEPER_UPDATED, keeper=keeper, enabled=enabled)

    def set_paused(self, caller: str, paused: bool) -> None:
        """Toggle the global pause flag."""
        with self.chain.atomic():
            self._only_owner(caller)
            if self._gov.paused == paused:
                return
            self._gov.paused = paused
            self._emit(EventType.PAUSED, paused=paused)
            logger.warning("Ledger paused -> %s", paused)

    def set_fee(self, caller: str, fee_bps: int) -> None:
        """Set the reallocation fee.

        Raises:
            LedgerValidationError: If fee_bps exceeds MAX_FEE_BPS
        """
        with self.chain.atomic():
            self._only_owner(caller)
            if isinstance(fee_bps, bool) or not isinstance(fee_bps, int) or not 0 <= fee_bps <= MAX_FEE_BPS:
                raise LedgerValidationError(
                    f"Fee must be an integer in [0, {MAX_FEE_BPS}] bps, got {fee_bps}"
                )
            if self._gov.fee_bps == fee_bps:
                return
            self._gov.fee_bps = fee_bps
            self._emit(EventType.FEE_UPDATED, fee_bps=fee_bps)

    def set_treasury(self, caller: str, treasury: str) -> None:
        with self.chain.atomic():
            self._only_owner(caller)
            treasury = normalize_address(treasury)
            if treasury == ZERO_ADDRESS:
                raise LedgerValidationError("Treasury cannot be the zero address")
            self._gov.treasury = treasury

    def transfer_ownership(self, caller: str, new_owner: str) -> None:
        with self.chain.atomic():
            self._only_owner(caller)
            new_owner = normalize_address(new_owner)
            if new_owner == ZERO_ADDRESS:
                raise LedgerValidationError("New owner cannot be the zero address")
            previous = self._gov.owner
            self._gov.owner = new_owner
            self._emit(EventType.OWNERSHIP_TRANSFERRED, previous=previous, owner=new_owner)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def deposit(self, caller: str, vault: str, amount: int, min_shares_out: int = 0) -> int:
        """Deposit ``amount`` of the vault's asset and open a position.

        The caller must have approved the ledger for ``amount``.

        Returns:
            Shares minted for the new position

        Raises:
            LedgerPausedError: If the ledger is paused
            LedgerValidationError: If the vault is not whitelisted or amount is zero
            TransferError: If the asset cannot be pulled from the caller
            SlippageError: If fewer than ``min_shares_out`` shares were minted
        """
        with self.chain.atomic():
            self._require_not_paused()
            user = normalize_address(caller)
            vault = normalize_address(vault)
            _require_amount(amount, "amount")
            _require_amount(min_shares_out, "min_shares_out")

            if amount == 0:
                raise LedgerValidationError("Deposit amount must be greater than zero")
            self._require_vault_whitelisted(vault)

            gateway = self._vault(vault)
            asset = gateway.asset()

            self.tokens.transfer_from(asset, self.address, user, self.address, amount)
            shares = self._deposit_into(gateway, asset, amount)

            if shares < min_shares_out:
                raise SlippageError(
                    f"Deposit minted {shares} shares, below minimum {min_shares_out}"
                )

            positions = self._positions.setdefault(user, [])
            positions.append(
                Position(
                    vault=vault,
                    asset=asset,
                    shares=shares,
                    assets=gateway.convert_to_assets(shares),
                    active=True,
                )
            )
            index = len(positions) - 1

            self._emit(
                EventType.POSITION_OPENED,
                user=user,
                vault=vault,
                asset=asset,
                position_index=index,
                assets_deposited=amount,
                shares_received=shares,
            )
            logger.info("Position %s#%d opened in %s: %d shares", user, index, vault, shares)
            return shares

    def withdraw(
        self, caller: str, position_index: int, shares: int, min_assets_out: int = 0
    ) -> int:
        """Redeem ``shares`` of a position back to the caller.

        Returns:
            Assets sent to the caller

        Raises:
            LedgerPausedError: If the ledger is paused
            LedgerValidationError: Bad index, inactive position, shares outside
                (0, position.shares], or vault no longer whitelisted
            SlippageError: If fewer than ``min_assets_out`` assets came back
        """
        with self.chain.atomic():
            self._require_not_paused()
            user = normalize_address(caller)
            _require_amount(shares, "shares")
            _require_amount(min_assets_out, "min_assets_out")

            position = self._active_slot(user, position_index)
            if shares == 0 or shares > position.shares:
                raise LedgerValidationError(
                    f"Withdraw shares must be in (0, {position.shares}], got {shares}"
                )
            self._require_vault_whitelisted(position.vault)

            gateway = self._vault(position.vault)
            assets = gateway.redeem(shares, receiver=user, owner=self.address, caller=self.address)
            if assets < min_assets_out:
                raise SlippageError(
                    f"Withdraw returned {assets} assets, below minimum {min_assets_out}"
                )

            position.shares -= shares
            if position.shares == 0:
                position.assets = 0
                position.active = False
                self._emit(
                    EventType.POSITION_CLOSED,
                    user=user,
                    vault=position.vault,
                    position_index=position_index,
                    assets_withdrawn=assets,
                )
                logger.info("Position %s#%d closed", user, position_index)
            else:
                position.assets = gateway.convert_to_assets(position.shares)
                self._emit(
                    EventType.POSITION_WITHDRAWN,
                    user=user,
                    vault=position.vault,
                    position_index=position_index,
                    shares_burned=shares,
                    assets_withdrawn=assets,
                )
            return assets

    def reallocate(
        self,
        caller: str,
        position_index: int,
        params: ReallocateParams,
        user: Optional[str] = None,
    ) -> int:
        """Move a whole position into ``params.target_vault``.

        Steps: redeem every share from the source vault, take the fee,
        execute each swap leg through its whitelisted router, deposit the
        resulting target-asset balance, then overwrite the position. Any
        failure reverts the whole call.

        Args:
            caller: Transaction sender (the user, a keeper, or the owner)
            position_index: Index of the user's position
            params: Target vault, slippage floor and swap legs
            user: Position owner when a keeper calls on their behalf

        Returns:
            Shares minted in the target vault

        Raises:
            AuthorizationError: If caller may not act for ``user``
            LedgerPausedError: If the ledger is paused
            LedgerValidationError: Bad index, inactive position, unwhitelisted
                vault/router, target equal to current vault, bad leg arrays
            AssetMismatchError: Assets on hand do not match the target vault
            SwapExecutionError: A swap leg failed
            SlippageError: Fewer than ``min_shares_out`` shares minted
        """
        with self.chain.atomic():
            self._require_not_paused()
            caller = normalize_address(caller)
            user = normalize_address(user) if user else caller
            if caller != user and not self.is_keeper(caller) and caller != self._gov.owner:
                raise AuthorizationError(f"{caller} may not reallocate positions of {user}")

            target = normalize_address(params.target_vault)
            _require_amount(params.min_shares_out, "min_shares_out")
            self._require_vault_whitelisted(target)

            position = self._active_slot(user, position_index)
            if position.vault == target:
                raise LedgerValidationError(f"Position already in target vault {target}")
            self._require_vault_whitelisted(position.vault)

            try:
                legs = params.legs()
            except ValueError as e:
                raise LedgerValidationError(str(e)) from e

            for i, leg in enumerate(legs):
                if not self.is_router_whitelisted(leg.router):
                    raise LedgerValidationError(f"Swap leg {i}: router {leg.router} not whitelisted")
                _require_amount(leg.input_amount, f"leg {i} input_amount")
                if leg.input_amount == 0:
                    raise LedgerValidationError(f"Swap leg {i}: zero input amount")
                if normalize_address(leg.input_token) == normalize_address(leg.output_token):
                    raise LedgerValidationError(f"Swap leg {i}: input and output token are the same")

            source = self._vault(position.vault)
            target_gateway = self._vault(target)
            target_asset = target_gateway.asset()

            if not legs and position.asset != target_asset:
                raise AssetMismatchError(
                    f"No swap legs but source asset {position.asset} "
                    f"differs from target asset {target_asset}"
                )
            if legs and normalize_address(legs[-1].output_token) != target_asset:
                raise AssetMismatchError(
                    f"Final swap leg outputs {legs[-1].output_token}, "
                    f"target vault takes {target_asset}"
                )

            from_vault = position.vault
            redeemed = source.redeem(
                position.shares, receiver=self.address, owner=self.address, caller=self.address
            )

            fee = apply_bps(redeemed, self._gov.fee_bps)
            if fee:
                self.tokens.transfer(position.asset, self.address, self._gov.treasury, fee)

            holdings = {position.asset: redeemed - fee}
            for i, leg in enumerate(legs):
                self._execute_leg(i, leg, holdings)

            deposit_amount = holdings.pop(target_asset, 0)
            if deposit_amount == 0:
                raise AssetMismatchError(f"Nothing of {target_asset} left to deposit")

            new_shares = self._deposit_into(target_gateway, target_asset, deposit_amount)
            if new_shares < params.min_shares_out:
                raise SlippageError(
                    f"Reallocation minted {new_shares} shares, below minimum {params.min_shares_out}"
                )

            # Leftovers of intermediate tokens go back to the user
            for token, amount in holdings.items():
                if amount > 0:
                    self.tokens.transfer(token, self.address, user, amount)

            position.vault = target
            position.asset = target_asset
            position.shares = new_shares
            position.assets = target_gateway.convert_to_assets(new_shares)
            position.active = True

            self._emit(
                EventType.POSITION_OPTIMIZED,
                user=user,
                position_index=position_index,
                from_vault=from_vault,
                to_vault=target,
                assets_reallocated=redeemed,
                new_shares=new_shares,
                fee=fee,
            )
            logger.info(
                "Position %s#%d reallocated %s -> %s (%d assets, %d new shares)",
                user,
                position_index,
                from_vault,
                target,
                redeemed,
                new_shares,
            )
            return new_shares

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _execute_leg(self, index: int, leg, holdings: Dict[str, int]) -> None:
        """Run one swap leg and update ``holdings`` by measured deltas."""
        input_token = normalize_address(leg.input_token)
        output_token = normalize_address(leg.output_token)

        available = holdings.get(input_token, 0)
        if available < leg.input_amount:
            raise SwapExecutionError(
                f"Swap leg {index}: needs {leg.input_amount} of {input_token}, holding {available}"
            )

        router = self.chain.get_contract(leg.router, SwapRouter)
        in_before = self.tokens.balance_of(input_token, self.address)
        out_before = self.tokens.balance_of(output_token, self.address)

        self.tokens.approve(input_token, self.address, router.address, leg.input_amount)
        try:
            router.execute(leg.calldata, caller=self.address)
        except LedgerError as e:
            raise SwapExecutionError(f"Swap leg {index} via {router.address} failed: {e}") from e
        self.tokens.approve(input_token, self.address, router.address, 0)

        spent = in_before - self.tokens.balance_of(input_token, self.address)
        received = self.tokens.balance_of(output_token, self.address) - out_before
        if spent > leg.input_amount:
            raise SwapExecutionError(f"Swap leg {index}: router spent {spent} > {leg.input_amount}")
        if received <= 0:
            raise SwapExecutionError(f"Swap leg {index}: router returned no {output_token}")

        holdings[input_token] = available - spent
        holdings[output_token] = holdings.get(output_token, 0) + received

    def _deposit_into(self, gateway: VaultGateway, asset: str, amount: int) -> int:
        self.tokens.approve(asset, self.address, gateway.address, amount)
        shares = gateway.deposit(amount, receiver=self.address, caller=self.address)
        self.tokens.approve(asset, self.address, gateway.address, 0)
        return shares

    def _vault(self, vault: str) -> VaultGateway:
        return self.chain.get_contract(vault, VaultGateway)

    def _slot(self, user: str, position_index: int) -> Position:
        positions = self._positions.get(user, [])
        if isinstance(position_index, bool) or not isinstance(position_index, int):
            raise LedgerValidationError(f"Position index must be an integer, got {position_index!r}")
        if not 0 <= position_index < len(positions):
            raise LedgerValidationError(
                f"Position index {position_index} out of range for {user} ({len(positions)} positions)"
            )
        return positions[position_index]

    def _active_slot(self, user: str, position_index: int) -> Position:
        position = self._slot(user, position_index)
        if not position.active:
            raise LedgerValidationError(f"Position {user}#{position_index} is not active")
        return position

    def _only_owner(self, caller: str) -> None:
        if normalize_address(caller) != self._gov.owner:
            raise AuthorizationError(f"Ownable: caller {caller} is not the owner")

    def _require_not_paused(self) -> None:
        if self._gov.paused:
            raise LedgerPausedError("Ledger is paused")

    def _require_vault_whitelisted(self, vault: str) -> None:
        if not self.is_vault_whitelisted(vault):
            raise LedgerValidationError(f"Vault {vault} is not whitelisted")

    def _emit(self, event_type: EventType, **args) -> None:
        self._event_seq += 1
        self._events.append(LedgerEvent(event_type=event_type, args=args, sequence=self._event_seq))

    def snapshot(self):
        return {
            "gov": self._gov.copy(),
            "vaults": dict(self._vault_whitelist),
            "routers": dict(self._router_whitelist),
            "keepers": dict(self._keepers),
            "positions": {u: [p.copy() for p in ps] for u, ps in self._positions.items()},
            "events": list(self._events),
            "event_seq": self._event_seq,
        }

    def restore(self, state) -> None:
        self._gov = state["gov"].copy()
        self._vault_whitelist = dict(state["vaults"])
        self._router_whitelist = dict(state["routers"])
        self._keepers = dict(state["keepers"])
        self._positions = {u: [p.copy() for p in ps] for u, ps in state["positions"].items()}
        self._events = list(state["events"])
        self._event_seq = state["event_seq"]
