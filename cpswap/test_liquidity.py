"""
Liquidity engine: pool creation, proportional deposits and withdrawals, and
re-seeding after a full withdrawal leaves dust behind.
"""
import pytest

from cpswap.amm_state import STATUS_DEPOSIT_DISABLED
from cpswap.commands import SetCreatePoolDisabled, SetPoolStatus, SignedCommand
from cpswap.conftest import NATIVE, TOKEN_X, TOKEN_Y
from cpswap.curve import MINIMUM_LIQUIDITY_LOCK
from cpswap.engine import LP_DECIMALS
from cpswap.errors import (
    AccountExists,
    AccountNotFound,
    ExcessiveSlippage,
    InsufficientBalance,
    InsufficientInitialLiquidity,
    OperationDisabled,
    SlippageExceeded,
    ZeroLiquidity,
)
from cpswap.addresses import fee_schedule_address
from cpswap.store import account_key

SEED_X = 10**12
SEED_Y = 4 * 10**12
SEED_LP = 2 * 10**12 - MINIMUM_LIQUIDITY_LOCK


@pytest.fixture
def pool(harness):
    """X/Y pool seeded 1:4 by a known creator."""
    harness.creator = harness.user(x=SEED_X, y=SEED_Y)
    address, result = harness.engine.create_pool(harness.creator, 0, TOKEN_X, TOKEN_Y, SEED_X, SEED_Y)
    harness.pool = address
    harness.seed_result = result
    return harness


def snapshot(engine, address, *owners):
    pool = engine.get_pool(address)
    balances = tuple(
        engine.balance(mint, owner)
        for owner in owners
        for mint in (pool.asset_a_mint, pool.asset_b_mint, pool.lp_mint)
    )
    return engine.db.get(account_key(address)), engine.reserves(address), balances


class TestPoolCreation:

    def test_seed_mints_geometric_mean_less_lock(self, pool):
        engine = pool.engine
        state = engine.get_pool(pool.pool)

        assert pool.seed_result.lp_minted == SEED_LP
        assert state.lp_supply == SEED_LP
        assert state.lp_locked == MINIMUM_LIQUIDITY_LOCK
        assert engine.balance(state.lp_mint, pool.creator) == SEED_LP
        assert engine.reserves(pool.pool) == (SEED_X, SEED_Y)
        assert engine.balance(TOKEN_X, pool.creator) == 0

    def test_lp_mint_registered(self, pool):
        state = pool.engine.get_pool(pool.pool)
        info = pool.engine.store.view().get_mint(state.lp_mint)
        assert info == {'decimals': LP_DECIMALS, 'supply': SEED_LP}

    def test_canonical_order_gives_one_identity(self, pool):
        assert pool.engine.pool_address(0, TOKEN_Y, TOKEN_X) == pool.pool
        creator = pool.user(x=SEED_X, y=SEED_Y)
        with pytest.raises(AccountExists):
            pool.engine.create_pool(creator, 0, TOKEN_Y, TOKEN_X, SEED_Y, SEED_X)

    def test_creator_recorded(self, pool):
        state = pool.engine.get_pool(pool.pool)
        assert state.creator == pool.creator
        assert state.fee_schedule == fee_schedule_address(0)

    def test_pool_creation_fee_paid_in_native(self, harness):
        harness.create_schedule(index=1, pool_creation_fee=10**9)
        creator = harness.user(x=SEED_X, y=SEED_Y, native=10**9)
        harness.engine.create_pool(creator, 1, TOKEN_X, TOKEN_Y, SEED_X, SEED_Y)

        assert harness.engine.balance(NATIVE, creator) == 0
        assert harness.engine.balance(NATIVE, harness.creation_fee_receiver) == 10**9

    def test_unpaid_creation_fee_creates_nothing(self, harness):
        harness.create_schedule(index=1, pool_creation_fee=10**9)
        creator = harness.user(x=SEED_X, y=SEED_Y)
        with pytest.raises(InsufficientBalance):
            harness.engine.create_pool(creator, 1, TOKEN_X, TOKEN_Y, SEED_X, SEED_Y)
        with pytest.raises(AccountNotFound):
            harness.engine.get_pool(harness.engine.pool_address(1, TOKEN_X, TOKEN_Y))
        assert harness.engine.balance(TOKEN_X, creator) == SEED_X

    def test_creation_disabled(self, harness):
        signed = SignedCommand.create(harness.owner_key, fee_schedule_address(0), SetCreatePoolDisabled(True))
        harness.engine.update_fee_schedule(signed)

        creator = harness.user(x=SEED_X, y=SEED_Y)
        with pytest.raises(OperationDisabled):
            harness.engine.create_pool(creator, 0, TOKEN_X, TOKEN_Y, SEED_X, SEED_Y)

    def test_seed_must_clear_locked_minimum(self, harness):
        creator = harness.user(x=100, y=100)
        with pytest.raises(InsufficientInitialLiquidity):
            harness.engine.create_pool(creator, 0, TOKEN_X, TOKEN_Y, 100, 100)
        with pytest.raises(AccountNotFound):
            harness.engine.get_pool(harness.engine.pool_address(0, TOKEN_X, TOKEN_Y))

    def test_missing_schedule(self, harness):
        creator = harness.user(x=SEED_X, y=SEED_Y)
        with pytest.raises(AccountNotFound):
            harness.engine.create_pool(creator, 9, TOKEN_X, TOKEN_Y, SEED_X, SEED_Y)


class TestDeposit:

    def test_proportional_amounts(self, pool):
        user = pool.user(x=10**9, y=4 * 10**9)
        result = pool.engine.deposit(pool.pool, user, 10**9, 10**9, 4 * 10**9)

        assert (result.amount_a, result.amount_b) == (5 * 10**8, 2 * 10**9)
        assert result.lp_minted == 10**9
        assert not result.reseeded
        assert pool.engine.get_pool(pool.pool).lp_supply == SEED_LP + 10**9
        assert pool.engine.reserves(pool.pool) == (SEED_X + 5 * 10**8, SEED_Y + 2 * 10**9)

    def test_amounts_round_up(self, pool):
        user = pool.user(x=10, y=10)
        result = pool.engine.deposit(pool.pool, user, 1, 10, 10)
        assert (result.amount_a, result.amount_b) == (1, 2)

    def test_excessive_slippage_changes_nothing(self, pool):
        user = pool.user(x=10**9, y=4 * 10**9)
        before = snapshot(pool.engine, pool.pool, user)
        with pytest.raises(ExcessiveSlippage):
            pool.engine.deposit(pool.pool, user, 10**9, 10**9, 2 * 10**9 - 1)
        assert snapshot(pool.engine, pool.pool, user) == before

    def test_unfunded_deposit_changes_nothing(self, pool):
        user = pool.user(x=10**9)
        before = snapshot(pool.engine, pool.pool, user)
        with pytest.raises(InsufficientBalance):
            pool.engine.deposit(pool.pool, user, 10**9, 10**9, 4 * 10**9)
        assert snapshot(pool.engine, pool.pool, user) == before

    def test_deposit_disabled(self, pool):
        signed = pool.sign(pool.owner_key, pool.pool, SetPoolStatus(STATUS_DEPOSIT_DISABLED))
        pool.engine.set_pool_status(signed)

        user = pool.user(x=10**9, y=4 * 10**9)
        with pytest.raises(OperationDisabled):
            pool.engine.deposit(pool.pool, user, 10**9, 10**9, 4 * 10**9)
        # Withdrawals stay open.
        pool.engine.withdraw(pool.pool, pool.creator, 10**9, 0, 0)


class TestWithdraw:

    def test_proportional_amounts(self, pool):
        result = pool.engine.withdraw(pool.pool, pool.creator, 10**9, 0, 0)
        assert (result.amount_a, result.amount_b) == (5 * 10**8, 2 * 10**9)
        assert pool.engine.balance(TOKEN_X, pool.creator) == 5 * 10**8
        assert pool.engine.get_pool(pool.pool).lp_supply == SEED_LP - 10**9

    def test_slippage(self, pool):
        before = snapshot(pool.engine, pool.pool, pool.creator)
        with pytest.raises(SlippageExceeded):
            pool.engine.withdraw(pool.pool, pool.creator, 10**9, 5 * 10**8 + 1, 0)
        assert snapshot(pool.engine, pool.pool, pool.creator) == before

    def test_cannot_burn_unheld_lp(self, pool):
        stranger = pool.user()
        with pytest.raises(InsufficientBalance):
            pool.engine.withdraw(pool.pool, stranger, 10**9, 0, 0)

    def test_round_trip_returns_at_most_deposit(self, harness):
        """Seed then withdraw everything: back within rounding and the locked share."""
        seed_x, seed_y = 10**12 + 7, 3 * 10**12 + 11
        creator = harness.user(x=seed_x, y=seed_y)
        address, seeded = harness.engine.create_pool(creator, 0, TOKEN_X, TOKEN_Y, seed_x, seed_y)

        result = harness.engine.withdraw(address, creator, seeded.lp_minted, 0, 0)
        denominator = seeded.lp_minted + MINIMUM_LIQUIDITY_LOCK

        assert result.amount_a <= seed_x
        assert result.amount_b <= seed_y
        assert seed_x - result.amount_a <= seed_x * MINIMUM_LIQUIDITY_LOCK // denominator + 1
        assert seed_y - result.amount_b <= seed_y * MINIMUM_LIQUIDITY_LOCK // denominator + 1


class TestDustRecovery:

    @pytest.fixture
    def drained(self, harness):
        """Pool seeded 10,000/10,000 then fully withdrawn, leaving 100/100 dust."""
        creator = harness.user(x=10_000, y=10_000)
        address, seeded = harness.engine.create_pool(creator, 0, TOKEN_X, TOKEN_Y, 10_000, 10_000)
        assert seeded.lp_minted == 9_900
        harness.engine.withdraw(address, creator, 9_900, 0, 0)
        harness.pool = address
        return harness

    def test_full_withdrawal_leaves_dust(self, drained):
        state = drained.engine.get_pool(drained.pool)
        assert state.lp_supply == 0
        assert drained.engine.reserves(drained.pool) == (100, 100)

    def test_withdraw_against_zero_supply(self, drained):
        with pytest.raises(ZeroLiquidity):
            drained.engine.withdraw(drained.pool, drained.user(), 1, 0, 0)

    def test_deposit_reseeds(self, drained):
        """LP follows the new deposit only; the dust joins the reserves."""
        user = drained.user(x=40_000, y=40_000)
        result = drained.engine.deposit(drained.pool, user, 0, 40_000, 40_000)

        assert result.reseeded
        assert result.lp_minted == 40_000 - MINIMUM_LIQUIDITY_LOCK
        assert (result.amount_a, result.amount_b) == (40_000, 40_000)
        state = drained.engine.get_pool(drained.pool)
        assert state.lp_supply == 39_900
        assert state.lp_locked == MINIMUM_LIQUIDITY_LOCK
        assert drained.engine.reserves(drained.pool) == (40_100, 40_100)

    def test_reseed_minimum(self, drained):
        user = drained.user(x=40_000, y=40_000)
        with pytest.raises(ExcessiveSlippage):
            drained.engine.deposit(drained.pool, user, 40_000, 40_000, 40_000)
        assert drained.engine.balance(TOKEN_X, user) == 40_000

    def test_pool_behaves_normally_after_reseed(self, drained):
        engine = drained.engine
        user = drained.user(x=40_500, y=40_500)
        engine.deposit(drained.pool, user, 0, 40_000, 40_000)

        follow_up = engine.deposit(drained.pool, user, 399, 500, 500)
        assert (follow_up.amount_a, follow_up.amount_b) == (400, 400)

        trader = drained.user(x=1_000)
        swap = engine.swap(drained.pool, trader, TOKEN_X, 1_000, 1)
        assert swap.amount_out > 0

        lp_mint = engine.get_pool(drained.pool).lp_mint
        out = engine.withdraw(drained.pool, user, engine.balance(lp_mint, user), 0, 0)
        assert out.amount_a > 0 and out.amount_b > 0
        assert engine.get_pool(drained.pool).lp_supply == 0
