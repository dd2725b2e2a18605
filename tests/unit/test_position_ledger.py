"""Unit tests for the position ledger state machine."""

import threading
from fractions import Fraction

import pytest

from src.ledger.base import EventType, ReallocateParams, SwapLeg
from src.ledger.chain import LocalChain
from src.ledger.position_ledger import MAX_FEE_BPS, PositionLedger
from src.ledger.router import SimulatedSwapRouter, encode_swap_calldata
from src.ledger.vault import SimulatedVault
from src.utils.exceptions import (
    AssetMismatchError,
    AuthorizationError,
    LedgerPausedError,
    LedgerValidationError,
    SlippageError,
    SwapExecutionError,
    TransferError,
)
from src.utils.units import ZERO_ADDRESS

OWNER = LocalChain.derive_address("governance")
KEEPER = LocalChain.derive_address("keeper")
TREASURY = LocalChain.derive_address("treasury")
ALICE = LocalChain.derive_address("user:alice")
BOB = LocalChain.derive_address("user:bob")

ONE_USDC = 1_000_000


class Deployment:
    """Ledger with two USDC vaults, one USDT vault and a USDC->USDT router."""

    def __init__(self):
        self.chain = LocalChain()
        self.usdc = self.chain.create_token("USDC", decimals=6)
        self.usdt = self.chain.create_token("USDT", decimals=6)

        self.vault_a = SimulatedVault(self.chain, self.chain.derive_address("vault:a"), self.usdc, "a")
        self.vault_b = SimulatedVault(self.chain, self.chain.derive_address("vault:b"), self.usdc, "b")
        self.vault_c = SimulatedVault(self.chain, self.chain.derive_address("vault:c"), self.usdt, "c")

        self.router = SimulatedSwapRouter(self.chain, self.chain.derive_address("router"))
        self.router.set_rate(self.usdc, self.usdt, Fraction(999, 1000))
        self.chain.tokens.mint(self.usdt, self.router.address, 10**12)

        self.ledger = PositionLedger(self.chain, self.chain.derive_address("ledger"), owner=OWNER)
        self.ledger.set_keeper(OWNER, KEEPER, True)
        for vault in (self.vault_a, self.vault_b, self.vault_c):
            self.ledger.set_vault_whitelist(OWNER, vault.address, True)
        self.ledger.set_router_whitelist(OWNER, self.router.address, True)

    def fund(self, user: str, amount: int, token: str = None) -> None:
        token = token or self.usdc
        self.chain.tokens.mint(token, user, amount)
        self.chain.tokens.approve(token, user, self.ledger.address, amount)

    def open(self, user: str, vault, amount: int = ONE_USDC) -> int:
        self.fund(user, amount)
        self.ledger.deposit(user, vault.address, amount)
        return len(self.ledger.get_user_positions(user)) - 1

    def usdc_to_usdt_leg(self, amount: int) -> SwapLeg:
        return SwapLeg(
            router=self.router.address,
            calldata=encode_swap_calldata(self.usdc, self.usdt, amount, self.ledger.address),
            input_token=self.usdc,
            output_token=self.usdt,
            input_amount=amount,
        )


@pytest.fixture
def d():
    return Deployment()


def balance(d, token, holder):
    return d.chain.tokens.balance_of(token, holder)


class TestDeposit:
    """Test opening positions."""

    def test_deposit_opens_position(self, d) -> None:
        d.fund(ALICE, ONE_USDC)

        shares = d.ledger.deposit(ALICE, d.vault_a.address, ONE_USDC, min_shares_out=ONE_USDC)

        assert shares == ONE_USDC
        positions = d.ledger.get_user_positions(ALICE)
        assert len(positions) == 1
        assert positions[0].vault == d.vault_a.address
        assert positions[0].asset == d.usdc
        assert positions[0].shares == ONE_USDC
        assert positions[0].assets == ONE_USDC
        assert positions[0].active is True
        assert d.vault_a.balance_of(d.ledger.address) == ONE_USDC
        assert balance(d, d.usdc, ALICE) == 0

    def test_deposit_emits_event(self, d) -> None:
        d.open(ALICE, d.vault_a)

        event = d.ledger.events()[-1]
        assert event.event_type == EventType.POSITION_OPENED
        assert event.args["user"] == ALICE
        assert event.args["position_index"] == 0
        assert event.args["shares_received"] == ONE_USDC

    def test_each_deposit_appends_a_slot(self, d) -> None:
        d.open(ALICE, d.vault_a)
        d.open(ALICE, d.vault_a, 500)

        assert [p.shares for p in d.ledger.get_user_positions(ALICE)] == [ONE_USDC, 500]

    def test_deposit_slippage_reverts(self, d) -> None:
        d.fund(ALICE, ONE_USDC)

        with pytest.raises(SlippageError):
            d.ledger.deposit(ALICE, d.vault_a.address, ONE_USDC, min_shares_out=ONE_USDC + 1)

        assert d.ledger.get_user_positions(ALICE) == []
        assert balance(d, d.usdc, ALICE) == ONE_USDC
        assert d.chain.tokens.allowance(d.usdc, ALICE, d.ledger.address) == ONE_USDC
        assert d.vault_a.total_supply == 0

    def test_deposit_zero_amount(self, d) -> None:
        with pytest.raises(LedgerValidationError, match="greater than zero"):
            d.ledger.deposit(ALICE, d.vault_a.address, 0)

    def test_deposit_out_of_range_amount(self, d) -> None:
        with pytest.raises(LedgerValidationError, match="uint256"):
            d.ledger.deposit(ALICE, d.vault_a.address, 2**256)

    def test_deposit_unwhitelisted_vault(self, d) -> None:
        d.ledger.set_vault_whitelist(OWNER, d.vault_b.address, False)
        d.fund(ALICE, ONE_USDC)

        with pytest.raises(LedgerValidationError, match="not whitelisted"):
            d.ledger.deposit(ALICE, d.vault_b.address, ONE_USDC)

    def test_deposit_without_allowance(self, d) -> None:
        d.chain.tokens.mint(d.usdc, ALICE, ONE_USDC)

        with pytest.raises(TransferError, match="allowance"):
            d.ledger.deposit(ALICE, d.vault_a.address, ONE_USDC)

        assert d.ledger.get_user_positions(ALICE) == []

    def test_deposit_when_paused(self, d) -> None:
        d.ledger.set_paused(OWNER, True)
        d.fund(ALICE, ONE_USDC)

        with pytest.raises(LedgerPausedError):
            d.ledger.deposit(ALICE, d.vault_a.address, ONE_USDC)


class TestWithdraw:
    """Test partial and full withdrawals."""

    def test_partial_withdraw(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        assets = d.ledger.withdraw(ALICE, index, 400_000)

        assert assets == 400_000
        position = d.ledger.get_position(ALICE, index)
        assert position.shares == 600_000
        assert position.assets == 600_000
        assert position.active is True
        assert balance(d, d.usdc, ALICE) == 400_000
        assert d.ledger.events()[-1].event_type == EventType.POSITION_WITHDRAWN

    def test_full_withdraw_closes_position(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        d.ledger.withdraw(ALICE, index, ONE_USDC)

        position = d.ledger.get_position(ALICE, index)
        assert position.shares == 0
        assert position.assets == 0
        assert position.active is False
        assert d.ledger.events()[-1].event_type == EventType.POSITION_CLOSED
        # slot is kept
        assert len(d.ledger.get_user_positions(ALICE)) == 1
        assert d.ledger.users_with_active_positions() == []

    def test_withdraw_includes_yield(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.vault_a.accrue_yield(100_000)

        assets = d.ledger.withdraw(ALICE, index, ONE_USDC)

        assert assets == 1_100_000

    def test_over_withdraw_rejected(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        with pytest.raises(LedgerValidationError, match="Withdraw shares"):
            d.ledger.withdraw(ALICE, index, ONE_USDC + 1)

        assert d.ledger.get_position(ALICE, index).shares == ONE_USDC

    def test_zero_withdraw_rejected(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        with pytest.raises(LedgerValidationError):
            d.ledger.withdraw(ALICE, index, 0)

    def test_withdraw_closed_position(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.withdraw(ALICE, index, ONE_USDC)

        with pytest.raises(LedgerValidationError, match="not active"):
            d.ledger.withdraw(ALICE, index, 1)

    def test_withdraw_bad_index(self, d) -> None:
        d.open(ALICE, d.vault_a)

        with pytest.raises(LedgerValidationError, match="out of range"):
            d.ledger.withdraw(ALICE, 1, 1)

    def test_withdraw_someone_elses_position(self, d) -> None:
        d.open(ALICE, d.vault_a)

        with pytest.raises(LedgerValidationError, match="out of range"):
            d.ledger.withdraw(BOB, 0, 1)

    def test_withdraw_slippage(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        with pytest.raises(SlippageError):
            d.ledger.withdraw(ALICE, index, 500_000, min_assets_out=500_001)

        assert d.ledger.get_position(ALICE, index).shares == ONE_USDC
        assert balance(d, d.usdc, ALICE) == 0

    def test_withdraw_from_dewhitelisted_vault(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.set_vault_whitelist(OWNER, d.vault_a.address, False)

        with pytest.raises(LedgerValidationError, match="not whitelisted"):
            d.ledger.withdraw(ALICE, index, 1)


class TestReallocate:
    """Test moving a position between vaults."""

    def test_same_asset_reallocation(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        new_shares = d.ledger.reallocate(
            ALICE, index, ReallocateParams(d.vault_b.address, min_shares_out=ONE_USDC)
        )

        assert new_shares == ONE_USDC
        position = d.ledger.get_position(ALICE, index)
        assert position.vault == d.vault_b.address
        assert position.asset == d.usdc
        assert position.shares == ONE_USDC
        assert position.active is True
        assert d.vault_a.total_supply == 0
        assert d.vault_b.balance_of(d.ledger.address) == ONE_USDC

    def test_reallocation_event(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.reallocate(ALICE, index, ReallocateParams(d.vault_b.address))

        event = d.ledger.events()[-1]
        assert event.event_type == EventType.POSITION_OPTIMIZED
        assert event.args == {
            "user": ALICE,
            "position_index": index,
            "from_vault": d.vault_a.address,
            "to_vault": d.vault_b.address,
            "assets_reallocated": ONE_USDC,
            "new_shares": ONE_USDC,
            "fee": 0,
        }

    def test_cross_asset_reallocation(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(ONE_USDC)])

        new_shares = d.ledger.reallocate(ALICE, index, params)

        assert new_shares == 999_000
        position = d.ledger.get_position(ALICE, index)
        assert position.vault == d.vault_c.address
        assert position.asset == d.usdt
        assert position.assets == 999_000
        assert balance(d, d.usdc, d.ledger.address) == 0
        assert balance(d, d.usdt, d.ledger.address) == 0

    def test_unspent_input_refunded_to_user(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(600_000)])

        new_shares = d.ledger.reallocate(ALICE, index, params)

        assert new_shares == 599_400
        assert balance(d, d.usdc, ALICE) == 400_000
        assert balance(d, d.usdc, d.ledger.address) == 0

    def test_other_positions_untouched(self, d) -> None:
        d.open(ALICE, d.vault_a)
        bob_index = d.open(BOB, d.vault_a, 250_000)
        before = d.ledger.get_user_positions(BOB)

        d.ledger.reallocate(ALICE, 0, ReallocateParams(d.vault_b.address))

        assert d.ledger.get_user_positions(BOB) == before
        assert d.vault_a.balance_of(d.ledger.address) == 250_000
        assert d.ledger.get_position(BOB, bob_index).vault == d.vault_a.address

    def test_swap_failure_reverts_everything(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.router.halted = True
        before = d.ledger.get_position(ALICE, index)
        events_before = len(d.ledger.events())
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(ONE_USDC)])

        with pytest.raises(SwapExecutionError, match="halted"):
            d.ledger.reallocate(ALICE, index, params)

        assert d.ledger.get_position(ALICE, index) == before
        assert d.vault_a.balance_of(d.ledger.address) == ONE_USDC
        assert d.vault_a.total_assets() == ONE_USDC
        assert balance(d, d.usdc, d.ledger.address) == 0
        assert len(d.ledger.events()) == events_before

    def test_leg_spending_more_than_held(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(ONE_USDC + 1)])

        with pytest.raises(SwapExecutionError, match="holding"):
            d.ledger.reallocate(ALICE, index, params)

    def test_slippage_reverts(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        with pytest.raises(SlippageError):
            d.ledger.reallocate(
                ALICE, index, ReallocateParams(d.vault_b.address, min_shares_out=ONE_USDC + 1)
            )

        assert d.ledger.get_position(ALICE, index).vault == d.vault_a.address
        assert d.vault_b.total_supply == 0

    def test_second_identical_reallocation_rejected(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams(d.vault_b.address)
        d.ledger.reallocate(ALICE, index, params)

        with pytest.raises(LedgerValidationError, match="already in target"):
            d.ledger.reallocate(ALICE, index, params)

        assert d.ledger.get_position(ALICE, index).shares == ONE_USDC

    def test_concurrent_reallocations_only_one_lands(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams(d.vault_b.address)
        start = threading.Barrier(2)
        results = []

        def attempt() -> None:
            start.wait()
            try:
                results.append(d.ledger.reallocate(ALICE, index, params))
            except LedgerValidationError as e:
                results.append(e)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        minted = [r for r in results if isinstance(r, int)]
        assert len(results) == 2
        assert minted == [ONE_USDC]
        assert d.ledger.get_position(ALICE, index).shares == ONE_USDC
        assert d.vault_a.total_supply == 0
        assert d.vault_b.total_supply == ONE_USDC

    def test_cross_asset_without_legs(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        with pytest.raises(AssetMismatchError, match="No swap legs"):
            d.ledger.reallocate(ALICE, index, ReallocateParams(d.vault_c.address))

    def test_last_leg_wrong_output(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams.from_legs(d.vault_b.address, [d.usdc_to_usdt_leg(ONE_USDC)])

        with pytest.raises(AssetMismatchError, match="Final swap leg"):
            d.ledger.reallocate(ALICE, index, params)

    def test_router_not_whitelisted(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.set_router_whitelist(OWNER, d.router.address, False)
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(ONE_USDC)])

        with pytest.raises(LedgerValidationError, match="not whitelisted"):
            d.ledger.reallocate(ALICE, index, params)

    def test_unequal_leg_arrays(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(ONE_USDC)])
        params.input_amounts.append(5)

        with pytest.raises(LedgerValidationError, match="equal length"):
            d.ledger.reallocate(ALICE, index, params)

    def test_zero_amount_leg(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        params = ReallocateParams.from_legs(d.vault_c.address, [d.usdc_to_usdt_leg(0)])

        with pytest.raises(LedgerValidationError, match="zero input"):
            d.ledger.reallocate(ALICE, index, params)

    def test_target_not_whitelisted(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.set_vault_whitelist(OWNER, d.vault_b.address, False)

        with pytest.raises(LedgerValidationError, match="not whitelisted"):
            d.ledger.reallocate(ALICE, index, ReallocateParams(d.vault_b.address))

    def test_closed_position(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.withdraw(ALICE, index, ONE_USDC)

        with pytest.raises(LedgerValidationError, match="not active"):
            d.ledger.reallocate(ALICE, index, ReallocateParams(d.vault_b.address))

    def test_when_paused(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.set_paused(OWNER, True)

        with pytest.raises(LedgerPausedError):
            d.ledger.reallocate(ALICE, index, ReallocateParams(d.vault_b.address))


class TestReallocateAuthorization:
    """Test who may reallocate a user's position."""

    def test_stranger_rejected(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        with pytest.raises(AuthorizationError):
            d.ledger.reallocate(BOB, index, ReallocateParams(d.vault_b.address), user=ALICE)

    def test_keeper_allowed(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        d.ledger.reallocate(KEEPER, index, ReallocateParams(d.vault_b.address), user=ALICE)

        assert d.ledger.get_position(ALICE, index).vault == d.vault_b.address

    def test_revoked_keeper_rejected(self, d) -> None:
        index = d.open(ALICE, d.vault_a)
        d.ledger.set_keeper(OWNER, KEEPER, False)

        with pytest.raises(AuthorizationError):
            d.ledger.reallocate(KEEPER, index, ReallocateParams(d.vault_b.address), user=ALICE)

    def test_owner_allowed(self, d) -> None:
        index = d.open(ALICE, d.vault_a)

        d.ledger.reallocate(OWNER, index, ReallocateParams(d.vault_b.address), user=ALICE)

        assert d.ledger.get_position(ALICE, index).vault == d.vault_b.address


class TestFee:
    """Test the reallocation fee."""

    def test_fee_sent_to_treasury(self, d) -> None:
        d.ledger.set_treasury(OWNER, TREASURY)
        d.ledger.set_fee(OWNER, 100)
        index = d.open(ALICE, d.vault_a)

        new_shares = d.ledger.reallocate(ALICE, index, ReallocateParams(d.vault_b.address))

        assert new_shares == 990_000
        assert balance(d, d.usdc, TREASURY) == 10_000
        assert d.ledger.events()[-1].args["fee"] == 10_000

    def test_fee_cap(self, d) -> None:
        with pytest.raises(LedgerValidationError, match="Fee must be"):
            d.ledger.set_fee(OWNER, MAX_FEE_BPS + 1)

        d.ledger.set_fee(OWNER, MAX_FEE_BPS)
        assert d.ledger.fee_bps == MAX_FEE_BPS

    def test_constructor_fee_cap(self, d) -> None:
        with pytest.raises(ValueError):
            PositionLedger(d.chain, d.chain.derive_address("ledger2"), owner=OWNER, fee_bps=5_000)


class TestGovernance:
    """Test owner-only configuration."""

    @pytest.mark.parametrize(
        "call",
        [
            lambda d: d.ledger.set_vault_whitelist(BOB, d.vault_a.address, False),
            lambda d: d.ledger.set_router_whitelist(BOB, d.router.address, False),
            lambda d: d.ledger.set_keeper(BOB, BOB, True),
            lambda d: d.ledger.set_paused(BOB, True),
            lambda d: d.ledger.set_fee(BOB, 10),
            lambda d: d.ledger.set_treasury(BOB, BOB),
            lambda d: d.ledger.transfer_ownership(BOB, BOB),
        ],
    )
    def test_non_owner_rejected(self, d, call) -> None:
        with pytest.raises(AuthorizationError, match="not the owner"):
            call(d)

    def test_whitelist_is_idempotent(self, d) -> None:
        events_before = len(d.ledger.events())

        d.ledger.set_vault_whitelist(OWNER, d.vault_a.address, True)

        assert len(d.ledger.events()) == events_before
        assert d.ledger.whitelisted_vaults() == [
            d.vault_a.address,
            d.vault_b.address,
            d.vault_c.address,
        ]

    def test_whitelist_rejects_non_vault(self, d) -> None:
        with pytest.raises(LedgerValidationError, match="No VaultGateway"):
            d.ledger.set_vault_whitelist(OWNER, d.router.address, True)

    def test_dewhitelist_removes_from_list(self, d) -> None:
        d.ledger.set_vault_whitelist(OWNER, d.vault_b.address, False)

        assert d.vault_b.address not in d.ledger.whitelisted_vaults()
        assert d.ledger.is_vault_whitelisted(d.vault_b.address) is False

    def test_transfer_ownership(self, d) -> None:
        d.ledger.transfer_ownership(OWNER, BOB)

        assert d.ledger.owner == BOB
        d.ledger.set_paused(BOB, True)
        with pytest.raises(AuthorizationError):
            d.ledger.set_paused(OWNER, False)

    def test_zero_address_rejected(self, d) -> None:
        with pytest.raises(LedgerValidationError):
            d.ledger.transfer_ownership(OWNER, ZERO_ADDRESS)
        with pytest.raises(LedgerValidationError):
            d.ledger.set_treasury(OWNER, ZERO_ADDRESS)

    def test_unpause_restores_operations(self, d) -> None:
        d.ledger.set_paused(OWNER, True)
        d.ledger.set_paused(OWNER, False)

        d.open(ALICE, d.vault_a)
        assert d.ledger.paused is False


class TestViews:
    """Test read-only accessors."""

    def test_positions_are_copies(self, d) -> None:
        d.open(ALICE, d.vault_a)

        d.ledger.get_user_positions(ALICE)[0].shares = 1

        assert d.ledger.get_position(ALICE, 0).shares == ONE_USDC

    def test_unknown_user_has_no_positions(self, d) -> None:
        assert d.ledger.get_user_positions(BOB) == []

    def test_users_with_active_positions(self, d) -> None:
        d.open(ALICE, d.vault_a)
        d.open(BOB, d.vault_a)
        d.ledger.withdraw(BOB, 0, ONE_USDC)

        assert d.ledger.users() == [ALICE, BOB]
        assert d.ledger.users_with_active_positions() == [ALICE]

    def test_preview_deposit(self, d) -> None:
        d.open(ALICE, d.vault_a)
        d.vault_a.accrue_yield(ONE_USDC)

        assert d.ledger.preview_deposit(d.vault_a.address, ONE_USDC) == 500_000

    def test_events_since(self, d) -> None:
        last = d.ledger.events()[-1].sequence
        d.open(ALICE, d.vault_a)

        new_events = d.ledger.events(since=last)
        assert [e.event_type for e in new_events] == [EventType.POSITION_OPENED]
