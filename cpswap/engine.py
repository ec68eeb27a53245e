"""
Constant-product swap engine.

AmmEngine owns the reserve store and applies every state transition (pool
creation, deposits, withdrawals, swaps, fee collection and configuration
commands) as one atomic transaction under the locks of every record it reads
or writes.
"""
import time
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Sequence

from cpswap.addresses import (
    canonical_pair,
    discount_config_address,
    fee_schedule_address,
    lp_mint_address,
    pool_address,
    vault_address,
)
from cpswap.amm_state import (
    STATUS_DEPOSIT_DISABLED,
    STATUS_SWAP_DISABLED,
    STATUS_WITHDRAW_DISABLED,
    Pool,
)
from cpswap.commands import (
    CollectCreatorFee,
    CollectFees,
    CollectFundFee,
    CollectProtocolFee,
    CreateDiscountConfig,
    CreateFeeSchedule,
    DiscountConfigUpdate,
    FeeScheduleUpdate,
    SetPoolStatus,
    SignedCommand,
)
from cpswap.config import Config
from cpswap.crypto import NULL_ADDRESS, short
from cpswap.curve import (
    MINIMUM_LIQUIDITY_LOCK,
    SwapCalculation,
    assert_product_non_decreasing,
    checked_u64,
    initial_liquidity,
    lp_to_amounts,
    split_fees,
    swap_base_input,
)
from cpswap.db import DB
from cpswap.discount import DiscountQuote, quote_discounted_fee, settle_discounted_fee
from cpswap.discount_state import DiscountConfig
from cpswap.errors import (
    AccountExists,
    AccountNotFound,
    ConcurrentUpdate,
    ExcessiveSlippage,
    InsufficientBalance,
    InvalidAddress,
    OperationDisabled,
    SlippageExceeded,
    Unauthorized,
    ValidationError,
    ZeroAmount,
    ZeroLiquidity,
)
from cpswap.monitoring import Monitor
from cpswap.pricing import PriceSource, PricingEngine, spot_price
from cpswap.store import StateStore, StateTransaction, account_key, balance_key, mint_key

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LP_DECIMALS = 9


@dataclass
class SwapResult:
    pool: bytes
    input_mint: bytes
    output_mint: bytes
    amount_in: int
    amount_out: int
    trade_fee: int
    protocol_fee: int
    fund_fee: int
    creator_fee: int
    lp_fee: int
    protocol_fee_waived: bool = False
    discount_token_paid: int = 0
    discount_quote: Optional[DiscountQuote] = None


@dataclass
class DepositResult:
    pool: bytes
    lp_minted: int
    amount_a: int
    amount_b: int
    reseeded: bool = False


@dataclass
class WithdrawResult:
    pool: bytes
    lp_burned: int
    amount_a: int
    amount_b: int


class _StaleLockSet(Exception):
    """The records an operation must lock changed before the locks were taken."""


# Lock sets come from an unlocked read and are checked again under the locks.
MAX_LOCK_ATTEMPTS = 3


class AmmEngine:
    def __init__(self, config: Config, db: DB, price_sources: Sequence[PriceSource] = (),
                 owns_db: bool = False):
        self.config = config
        self.db = db
        self.owns_db = owns_db
        self.store = StateStore(db)
        self.pricing = PricingEngine(config.pricing, price_sources)
        self.monitor = Monitor(config.monitoring.host, config.monitoring.port)
        if config.monitoring.enabled:
            self.monitor.start_server()

    @classmethod
    def from_config(cls, config: Config, price_sources: Sequence[PriceSource] = ()) -> 'AmmEngine':
        """Open the configured database; the engine closes it on `close`."""
        return cls(config, DB.from_config(config.database), price_sources, owns_db=True)

    def close(self):
        self.monitor.stop_server()
        if self.owns_db:
            self.db.close()

    @contextmanager
    def _operation(self, name: str):
        start = time.time()
        try:
            yield
        except ValidationError as e:
            self.monitor.record_operation(name, 'rejected', time.time() - start)
            logger.warning(f"{name} rejected: {type(e).__name__}: {e}")
            raise
        self.monitor.record_operation(name, 'success', time.time() - start)

    # ==========================================================================
    # ASSETS
    # ==========================================================================

    def register_mint(self, mint: bytes, decimals: int):
        self.store.register_mint(mint, decimals)

    def mint_to(self, mint: bytes, owner: bytes, amount: int):
        self.store.mint_to(mint, owner, amount)

    def balance(self, mint: bytes, owner: bytes) -> int:
        return self.store.balance(mint, owner)

    # ==========================================================================
    # QUERIES
    # ==========================================================================

    def pool_address(self, schedule_index: int, mint_x: bytes, mint_y: bytes) -> bytes:
        return pool_address(fee_schedule_address(schedule_index), mint_x, mint_y)

    def get_pool(self, address: bytes) -> Pool:
        return self.store.view().load_pool(address)

    def get_fee_schedule(self, index: int):
        return self.store.view().load_fee_schedule(fee_schedule_address(index))

    def get_discount_config(self, discount_token_mint: bytes) -> DiscountConfig:
        return self.store.view().load_discount_config(discount_config_address(discount_token_mint))

    def reserves(self, address: bytes) -> tuple[int, int]:
        view = self.store.view()
        return view.reserves(view.load_pool(address))

    def usd_price(self, mint: bytes, discount_token: Optional[bytes] = None) -> int:
        view = self.store.view()
        discount_config = None
        if discount_token:
            discount_config = view.load_discount_config(discount_config_address(discount_token))
        return self.pricing.usd_price(view, mint, discount_config)

    def quote_swap(self, address: bytes, input_mint: bytes, amount_in: int) -> SwapCalculation:
        """Standard-fee swap quote against current reserves. Writes nothing."""
        view = self.store.view()
        pool = view.load_pool(address)
        schedule = view.load_fee_schedule(pool.fee_schedule)
        side = pool.side(input_mint)
        reserves = view.reserves(pool)
        return swap_base_input(
            amount_in, reserves[side], reserves[1 - side],
            schedule.trade_fee_rate, schedule.protocol_fee_rate,
            schedule.fund_fee_rate, schedule.creator_fee_rate,
        )

    def get_pool_stats(self, address: bytes) -> dict:
        """Read-only snapshot of a pool for tooling."""
        view = self.store.view()
        pool = view.load_pool(address)
        schedule = view.load_fee_schedule(pool.fee_schedule)
        reserve_a, reserve_b = view.reserves(pool)

        stats = {
            'address': address.hex(),
            'fee_schedule_index': schedule.index,
            'asset_a_mint': pool.asset_a_mint.hex(),
            'asset_b_mint': pool.asset_b_mint.hex(),
            'reserve_a': reserve_a,
            'reserve_b': reserve_b,
            'vault_a_balance': view.balance(pool.asset_a_mint, pool.vault_a),
            'vault_b_balance': view.balance(pool.asset_b_mint, pool.vault_b),
            'k': reserve_a * reserve_b,
            'lp_mint': pool.lp_mint.hex(),
            'lp_supply': pool.lp_supply,
            'lp_locked': pool.lp_locked,
            'accrued_protocol_fee': (pool.accrued_protocol_fee_a, pool.accrued_protocol_fee_b),
            'accrued_fund_fee': (pool.accrued_fund_fee_a, pool.accrued_fund_fee_b),
            'accrued_creator_fee': (pool.accrued_creator_fee_a, pool.accrued_creator_fee_b),
            'status': pool.status,
            'price_a_in_b': None,
        }
        if reserve_a and reserve_b:
            stats['price_a_in_b'] = spot_price(view, pool, pool.asset_a_mint)
        return stats

    # ==========================================================================
    # CONFIGURATION COMMANDS
    # ==========================================================================

    def _require_admin(self, signed: SignedCommand):
        admin = self.config.network.admin_address
        if admin == NULL_ADDRESS:
            raise Unauthorized("No admin identity configured")
        signed.require_signer(admin)

    def create_fee_schedule(self, signed: SignedCommand) -> bytes:
        with self._operation('create_fee_schedule'):
            command = signed.command
            if not isinstance(command, CreateFeeSchedule):
                raise ValidationError(f"Expected create_fee_schedule, got {command.KIND}")
            self._require_admin(signed)
            address = fee_schedule_address(command.index)
            if signed.target != address:
                raise InvalidAddress("Command target is not the fee schedule's derived address")

            schedule = command.build()
            schedule.validate()
            with self.store.transaction([account_key(address)]) as txn:
                if txn.exists(address):
                    raise AccountExists(f"Fee schedule {command.index} already exists")
                txn.save_fee_schedule(address, schedule)

        logger.info(
            f"Created fee schedule {schedule.index}: trade={schedule.trade_fee_rate} "
            f"protocol={schedule.protocol_fee_rate} fund={schedule.fund_fee_rate} "
            f"creator={schedule.creator_fee_rate}"
        )
        return address

    def update_fee_schedule(self, signed: SignedCommand):
        with self._operation('update_fee_schedule'):
            command = signed.command
            if not isinstance(command, FeeScheduleUpdate):
                raise ValidationError(f"{command.KIND} does not update a fee schedule")
            with self.store.transaction([account_key(signed.target)]) as txn:
                schedule = txn.load_fee_schedule(signed.target)
                signed.require_signer(schedule.owner)
                command.apply(schedule)
                schedule.validate()
                txn.save_fee_schedule(signed.target, schedule)

        logger.info(f"Fee schedule {schedule.index} updated: {command}")
        return schedule

    def create_discount_config(self, signed: SignedCommand) -> bytes:
        with self._operation('create_discount_config'):
            command = signed.command
            if not isinstance(command, CreateDiscountConfig):
                raise ValidationError(f"Expected create_discount_config, got {command.KIND}")
            self._require_admin(signed)
            address = discount_config_address(command.discount_token_mint)
            if signed.target != address:
                raise InvalidAddress("Command target is not the discount config's derived address")

            config = command.build()
            config.validate()
            with self.store.transaction([account_key(address)]) as txn:
                txn.mint_decimals(config.discount_token_mint)
                if txn.exists(address):
                    raise AccountExists(
                        f"Discount config for {short(config.discount_token_mint)} already exists"
                    )
                self._check_price_references(txn, config)
                txn.save_discount_config(address, config)

        logger.info(
            f"Created discount config for {short(config.discount_token_mint)} "
            f"at {config.discount_rate} bps"
        )
        return address

    def _check_price_references(self, txn: StateTransaction, config: DiscountConfig):
        """Configured reference pools must exist and trade the mints their path needs."""
        token = config.discount_token_mint
        usd = self.config.pricing.usd_mint_address
        if config.price_reference != NULL_ADDRESS:
            self._reference_pool(txn, config.price_reference, "price_reference", token, usd)

        hop = (config.token_bridge_pool, config.bridge_usd_pool)
        if hop.count(NULL_ADDRESS) == 1:
            raise InvalidAddress("token_bridge_pool and bridge_usd_pool must be set together")
        if NULL_ADDRESS in hop:
            return
        first = self._reference_pool(txn, config.token_bridge_pool, "token_bridge_pool", token)
        bridge = first.mint(1 - first.side(token))
        if bridge == usd:
            raise InvalidAddress("token_bridge_pool pairs the token with USD; use price_reference")
        self._reference_pool(txn, config.bridge_usd_pool, "bridge_usd_pool", bridge, usd)

    @staticmethod
    def _reference_pool(txn: StateTransaction, address: bytes, field: str, *mints: bytes) -> Pool:
        try:
            pool = txn.load_pool(address)
        except AccountNotFound as e:
            raise InvalidAddress(f"{field} {short(address)} is not an existing pool") from e
        for mint in mints:
            if mint not in (pool.asset_a_mint, pool.asset_b_mint):
                raise InvalidAddress(f"{field} {short(address)} does not trade {short(mint)}")
        return pool

    def update_discount_config(self, signed: SignedCommand) -> DiscountConfig:
        with self._operation('update_discount_config'):
            command = signed.command
            if not isinstance(command, DiscountConfigUpdate):
                raise ValidationError(f"{command.KIND} does not update a discount config")
            with self.store.transaction([account_key(signed.target)]) as txn:
                config = txn.load_discount_config(signed.target)
                signed.require_signer(config.authority)
                command.apply(config)
                config.validate()
                self._check_price_references(txn, config)
                txn.save_discount_config(signed.target, config)

        logger.info(f"Discount config {short(signed.target)} updated: {command}")
        return config

    def set_pool_status(self, signed: SignedCommand):
        with self._operation('set_pool_status'):
            command = signed.command
            if not isinstance(command, SetPoolStatus):
                raise ValidationError(f"Expected set_pool_status, got {command.KIND}")
            with self.store.transaction([account_key(signed.target)]) as txn:
                pool = txn.load_pool(signed.target)
                schedule = txn.load_fee_schedule(pool.fee_schedule)
                signed.require_signer(schedule.owner)
                command.apply(pool)
                txn.save_pool(signed.target, pool)

        logger.info(f"Pool {short(signed.target)} status set to {pool.status:#x}")

    def collect_fees(self, signed: SignedCommand) -> tuple[int, int]:
        """
        Pay accrued fees to their beneficiary: protocol fees to the schedule's
        fee receiver, fund fees to the fund owner, creator fees to the creator.
        """
        command = signed.command
        with self._operation(command.KIND or 'collect_fees'):
            if not isinstance(command, CollectFees):
                raise ValidationError(f"{command.KIND} does not collect fees")
            for _ in range(MAX_LOCK_ATTEMPTS):
                view = self.store.view()
                pool = view.load_pool(signed.target)
                beneficiary, _ = self._fee_collector(command, pool, view.load_fee_schedule(pool.fee_schedule))
                keys = [
                    account_key(signed.target),
                    account_key(pool.fee_schedule),
                    balance_key(pool.asset_a_mint, beneficiary),
                    balance_key(pool.asset_b_mint, beneficiary),
                ]
                try:
                    amount_a, amount_b = self._apply_collect(keys, signed, beneficiary)
                    break
                except _StaleLockSet:
                    logger.debug(f"Fee beneficiary of {short(signed.target)} changed; relocking")
            else:
                raise ConcurrentUpdate(
                    f"Fee schedule of {short(signed.target)} changed during {MAX_LOCK_ATTEMPTS} lock attempts"
                )

        logger.info(
            f"{command.KIND}: {amount_a}/{amount_b} from pool {short(signed.target)} "
            f"to {short(beneficiary)}"
        )
        return amount_a, amount_b

    @staticmethod
    def _fee_collector(command: CollectFees, pool: Pool, schedule) -> tuple[bytes, tuple[bytes, ...]]:
        """(beneficiary, identities allowed to sign) for one kind of accrued fee."""
        if isinstance(command, CollectProtocolFee):
            return schedule.fee_receiver, (schedule.owner, schedule.fee_receiver)
        if isinstance(command, CollectFundFee):
            return schedule.fund_owner, (schedule.fund_owner,)
        if isinstance(command, CollectCreatorFee):
            return pool.creator, (pool.creator,)
        raise ValidationError(f"Unknown fee kind: {command.KIND}")

    def _apply_collect(self, keys, signed: SignedCommand, expected_beneficiary: bytes) -> tuple[int, int]:
        command = signed.command
        with self.store.transaction(keys) as txn:
            pool = txn.load_pool(signed.target)
            beneficiary, allowed = self._fee_collector(command, pool, txn.load_fee_schedule(pool.fee_schedule))
            signed.require_signer(*allowed)
            if beneficiary != expected_beneficiary:
                raise _StaleLockSet()

            if isinstance(command, CollectProtocolFee):
                accrued = (pool.accrued_protocol_fee_a, pool.accrued_protocol_fee_b)
            elif isinstance(command, CollectFundFee):
                accrued = (pool.accrued_fund_fee_a, pool.accrued_fund_fee_b)
            else:
                accrued = (pool.accrued_creator_fee_a, pool.accrued_creator_fee_b)

            amount_a = min(max(command.max_amount_a, 0), accrued[0])
            amount_b = min(max(command.max_amount_b, 0), accrued[1])
            if amount_a == 0 and amount_b == 0:
                raise ZeroAmount("No accrued fees to collect")

            if isinstance(command, CollectProtocolFee):
                pool.accrued_protocol_fee_a -= amount_a
                pool.accrued_protocol_fee_b -= amount_b
            elif isinstance(command, CollectFundFee):
                pool.accrued_fund_fee_a -= amount_a
                pool.accrued_fund_fee_b -= amount_b
            else:
                pool.accrued_creator_fee_a -= amount_a
                pool.accrued_creator_fee_b -= amount_b

            txn.transfer(pool.asset_a_mint, pool.vault_a, beneficiary, amount_a)
            txn.transfer(pool.asset_b_mint, pool.vault_b, beneficiary, amount_b)
            txn.save_pool(signed.target, pool)
        return amount_a, amount_b

    # ==========================================================================
    # POOL LIFECYCLE
    # ==========================================================================

    def create_pool(self, creator: bytes, schedule_index: int, mint_x: bytes, mint_y: bytes,
                    amount_x: int, amount_y: int) -> tuple[bytes, DepositResult]:
        """
        Create the pool for (mint_x, mint_y) under a fee schedule and seed it
        from the creator's balances. The pool creation fee is charged in the
        native mint.
        """
        with self._operation('create_pool'):
            mint_a, mint_b = canonical_pair(mint_x, mint_y)
            amount_a, amount_b = (amount_x, amount_y) if mint_a == mint_x else (amount_y, amount_x)
            if amount_a <= 0 or amount_b <= 0:
                raise ZeroAmount("Pool creation needs a deposit of both assets")

            schedule_address = fee_schedule_address(schedule_index)
            schedule = self.store.view().load_fee_schedule(schedule_address)
            if schedule.disable_create_pool:
                raise OperationDisabled(f"Pool creation is disabled on fee schedule {schedule_index}")

            address = pool_address(schedule_address, mint_a, mint_b)
            lp_mint = lp_mint_address(address)
            native_mint = self.config.network.native_mint_address
            if schedule.pool_creation_fee and native_mint == NULL_ADDRESS:
                raise InvalidAddress("Pool creation fee is set but no native mint is configured")

            keys = [
                account_key(address),
                mint_key(lp_mint),
                balance_key(mint_a, creator),
                balance_key(mint_b, creator),
                balance_key(lp_mint, creator),
            ]
            if schedule.pool_creation_fee:
                keys.append(balance_key(native_mint, creator))
                keys.append(balance_key(native_mint, schedule.pool_creation_fee_receiver))

            with self.store.transaction(keys) as txn:
                if txn.exists(address):
                    raise AccountExists(f"Pool {short(address)} already exists")
                txn.mint_decimals(mint_a)
                txn.mint_decimals(mint_b)

                if schedule.pool_creation_fee:
                    txn.transfer(
                        native_mint, creator, schedule.pool_creation_fee_receiver,
                        schedule.pool_creation_fee,
                    )

                txn.set_mint(lp_mint, {'decimals': LP_DECIMALS, 'supply': 0})
                pool = Pool(
                    asset_a_mint=mint_a,
                    asset_b_mint=mint_b,
                    vault_a=vault_address(address, mint_a),
                    vault_b=vault_address(address, mint_b),
                    lp_mint=lp_mint,
                    creator=creator,
                    fee_schedule=schedule_address,
                )
                lp_minted = self._seed(txn, pool, creator, amount_a, amount_b)
                txn.save_pool(address, pool)
                self.monitor.record_pool(address, amount_a, amount_b)

        logger.info(
            f"Created pool {short(address)} ({short(mint_a)}/{short(mint_b)}) under schedule "
            f"{schedule_index}: seeded {amount_a}/{amount_b}, minted {lp_minted} LP"
        )
        return address, DepositResult(address, lp_minted, amount_a, amount_b)

    @staticmethod
    def _seed(txn: StateTransaction, pool: Pool, owner: bytes, amount_a: int, amount_b: int) -> int:
        """Geometric-mean seeding; whatever already sits in the vaults joins the new reserves."""
        lp_minted = initial_liquidity(amount_a, amount_b)
        txn.transfer(pool.asset_a_mint, owner, pool.vault_a, amount_a)
        txn.transfer(pool.asset_b_mint, owner, pool.vault_b, amount_b)
        txn.mint_to(pool.lp_mint, owner, lp_minted)
        pool.lp_supply = lp_minted
        pool.lp_locked = MINIMUM_LIQUIDITY_LOCK
        return lp_minted

    def _liquidity_keys(self, address: bytes, owner: bytes) -> list[bytes]:
        pool = self.store.view().load_pool(address)
        return [
            account_key(address),
            mint_key(pool.lp_mint),
            balance_key(pool.asset_a_mint, owner),
            balance_key(pool.asset_b_mint, owner),
            balance_key(pool.lp_mint, owner),
        ]

    def deposit(self, address: bytes, owner: bytes, lp_amount: int,
                max_amount_a: int, max_amount_b: int) -> DepositResult:
        """
        Mint `lp_amount` LP shares for a proportional deposit, paying at most
        the given maximums.

        When the pool has no outstanding LP (after a full withdrawal) the
        deposit re-seeds it: both maximums are deposited in full, LP is minted
        by the seeding formula, and `lp_amount` acts as a minimum.
        """
        with self._operation('deposit'):
            if lp_amount < 0 or max_amount_a < 0 or max_amount_b < 0:
                raise ZeroAmount("Deposit amounts cannot be negative")

            with self.store.transaction(self._liquidity_keys(address, owner)) as txn:
                pool = txn.load_pool(address)
                if not pool.is_enabled(STATUS_DEPOSIT_DISABLED):
                    raise OperationDisabled(f"Deposits are disabled on pool {short(address)}")

                if pool.lp_supply == 0:
                    dust = txn.reserves(pool)
                    lp_minted = self._seed(txn, pool, owner, max_amount_a, max_amount_b)
                    if lp_minted < lp_amount:
                        raise ExcessiveSlippage(f"Re-seed mints {lp_minted} LP, below the requested {lp_amount}")
                    amount_a, amount_b = max_amount_a, max_amount_b
                    reseeded = True
                    logger.info(
                        f"Re-seeding pool {short(address)} over dust {dust[0]}/{dust[1]}"
                    )
                else:
                    if lp_amount == 0:
                        raise ZeroAmount("LP amount must be positive")
                    reserve_a, reserve_b = txn.reserves(pool)
                    amount_a, amount_b = lp_to_amounts(
                        lp_amount, reserve_a, reserve_b, pool.share_denominator, round_up=True
                    )
                    if amount_a > max_amount_a or amount_b > max_amount_b:
                        raise ExcessiveSlippage(
                            f"Deposit needs {amount_a}/{amount_b}, maximum is {max_amount_a}/{max_amount_b}"
                        )
                    txn.transfer(pool.asset_a_mint, owner, pool.vault_a, amount_a)
                    txn.transfer(pool.asset_b_mint, owner, pool.vault_b, amount_b)
                    txn.mint_to(pool.lp_mint, owner, lp_amount)
                    pool.lp_supply = checked_u64(pool.lp_supply + lp_amount, "lp_supply")
                    lp_minted = lp_amount
                    reseeded = False

                txn.save_pool(address, pool)
                self.monitor.record_pool(address, *txn.reserves(pool))

        logger.info(
            f"Deposit into {short(address)} by {short(owner)}: {amount_a}/{amount_b} "
            f"for {lp_minted} LP"
        )
        return DepositResult(address, lp_minted, amount_a, amount_b, reseeded)

    def withdraw(self, address: bytes, owner: bytes, lp_amount: int,
                 min_amount_a: int, min_amount_b: int) -> WithdrawResult:
        """Burn LP shares for the floored proportional share of both reserves."""
        with self._operation('withdraw'):
            if lp_amount <= 0:
                raise ZeroAmount("LP amount must be positive")

            with self.store.transaction(self._liquidity_keys(address, owner)) as txn:
                pool = txn.load_pool(address)
                if not pool.is_enabled(STATUS_WITHDRAW_DISABLED):
                    raise OperationDisabled(f"Withdrawals are disabled on pool {short(address)}")
                if pool.lp_supply == 0:
                    raise ZeroLiquidity(f"Pool {short(address)} has no outstanding LP")
                if lp_amount > pool.lp_supply:
                    raise InsufficientBalance(f"Cannot burn {lp_amount} LP of {pool.lp_supply} outstanding")

                reserve_a, reserve_b = txn.reserves(pool)
                amount_a, amount_b = lp_to_amounts(
                    lp_amount, reserve_a, reserve_b, pool.share_denominator, round_up=False
                )
                if amount_a == 0 and amount_b == 0:
                    raise ZeroAmount("Withdrawal rounds to nothing")
                if amount_a < min_amount_a or amount_b < min_amount_b:
                    raise SlippageExceeded(
                        f"Withdrawal yields {amount_a}/{amount_b}, minimum is {min_amount_a}/{min_amount_b}"
                    )

                txn.burn(pool.lp_mint, owner, lp_amount)
                txn.transfer(pool.asset_a_mint, pool.vault_a, owner, amount_a)
                txn.transfer(pool.asset_b_mint, pool.vault_b, owner, amount_b)
                pool.lp_supply -= lp_amount
                txn.save_pool(address, pool)
                self.monitor.record_pool(address, *txn.reserves(pool))

        logger.info(
            f"Withdraw from {short(address)} by {short(owner)}: {lp_amount} LP "
            f"for {amount_a}/{amount_b}"
        )
        return WithdrawResult(address, lp_amount, amount_a, amount_b)

    # ==========================================================================
    # SWAP
    # ==========================================================================

    def _swap_keys(self, address: bytes, pool: Pool, payer: bytes,
                   discount_config: Optional[DiscountConfig], input_mint: bytes) -> list[bytes]:
        keys = [
            account_key(address),
            balance_key(pool.asset_a_mint, payer),
            balance_key(pool.asset_b_mint, payer),
        ]
        if discount_config:
            mint = discount_config.discount_token_mint
            keys.append(account_key(discount_config_address(mint)))
            keys.append(balance_key(mint, payer))
            keys.append(balance_key(mint, discount_config.treasury))
            for reference in self.pricing.reference_pools([input_mint, mint], discount_config):
                keys.append(account_key(reference))
        return keys

    def swap(self, address: bytes, payer: bytes, input_mint: bytes, amount_in: int,
             min_amount_out: int, discount_token: Optional[bytes] = None) -> SwapResult:
        """
        Exact-input swap. With `discount_token` the payer settles the protocol
        fee in that token at a discount, and the fee is neither deducted from
        the swap input nor accrued against the pool.
        """
        with self._operation('swap'):
            if amount_in <= 0:
                raise ZeroAmount("Swap amount must be positive")

            for _ in range(MAX_LOCK_ATTEMPTS):
                view = self.store.view()
                pool = view.load_pool(address)
                pool.side(input_mint)
                discount_config = None
                if discount_token:
                    discount_config = view.load_discount_config(discount_config_address(discount_token))
                keys = self._swap_keys(address, pool, payer, discount_config, input_mint)
                try:
                    result = self._apply_swap(
                        keys, address, payer, input_mint, amount_in, min_amount_out,
                        discount_token, discount_config,
                    )
                    break
                except _StaleLockSet:
                    logger.debug(f"Discount config for {short(discount_token)} changed; relocking")
            else:
                raise ConcurrentUpdate(
                    f"Discount config for {short(discount_token)} changed during {MAX_LOCK_ATTEMPTS} lock attempts"
                )

            self.monitor.record_swap(input_mint, amount_in, discount_token, result.discount_token_paid)

        logger.info(
            f"Swap on {short(address)} by {short(payer)}: {amount_in} {short(input_mint)} -> "
            f"{result.amount_out} {short(result.output_mint)} "
            f"(fee {result.trade_fee}, protocol {result.protocol_fee}"
            f"{', waived' if result.protocol_fee_waived else ''}, "
            f"discount token paid {result.discount_token_paid})"
        )
        return result

    def _apply_swap(self, keys, address, payer, input_mint, amount_in, min_amount_out,
                    discount_token, expected_config) -> SwapResult:
        with self.store.transaction(keys) as txn:
            pool = txn.load_pool(address)
            if not pool.is_enabled(STATUS_SWAP_DISABLED):
                raise OperationDisabled(f"Swaps are disabled on pool {short(address)}")

            discount_config = None
            if discount_token:
                discount_config = txn.load_discount_config(discount_config_address(discount_token))
                if discount_config != expected_config:
                    raise _StaleLockSet()

            schedule = txn.load_fee_schedule(pool.fee_schedule)
            side_in = pool.side(input_mint)
            side_out = 1 - side_in
            output_mint = pool.mint(side_out)
            reserves_before = txn.reserves(pool)

            # The discount quote reads the pre-trade snapshot, before any write below.
            quote = None
            if discount_config:
                fees = split_fees(
                    amount_in, schedule.trade_fee_rate, schedule.protocol_fee_rate,
                    schedule.fund_fee_rate, schedule.creator_fee_rate,
                )
                if fees.protocol_fee > 0:
                    quote = quote_discounted_fee(
                        txn, self.pricing, fees.protocol_fee, input_mint, discount_config
                    )

            calc = swap_base_input(
                amount_in, reserves_before[side_in], reserves_before[side_out],
                schedule.trade_fee_rate, schedule.protocol_fee_rate,
                schedule.fund_fee_rate, schedule.creator_fee_rate,
                waive_protocol_fee=quote is not None,
            )
            if calc.amount_out < min_amount_out:
                raise SlippageExceeded(f"Swap yields {calc.amount_out}, minimum is {min_amount_out}")

            txn.transfer(input_mint, payer, pool.vault(side_in), amount_in)
            txn.transfer(output_mint, pool.vault(side_out), payer, calc.amount_out)
            pool.accrue(side_in, calc.accrued_protocol_fee, calc.fees.fund_fee, calc.fees.creator_fee)

            paid = 0
            if quote is not None:
                paid = settle_discounted_fee(txn, payer, quote, discount_config)

            reserves_after = txn.reserves(pool)
            assert_product_non_decreasing(
                reserves_before[side_in], reserves_before[side_out],
                reserves_after[side_in], reserves_after[side_out],
            )
            txn.save_pool(address, pool)
            self.monitor.record_pool(address, *reserves_after)

        return SwapResult(
            pool=address,
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount_in,
            amount_out=calc.amount_out,
            trade_fee=calc.fees.trade_fee,
            protocol_fee=calc.fees.protocol_fee,
            fund_fee=calc.fees.fund_fee,
            creator_fee=calc.fees.creator_fee,
            lp_fee=calc.fees.lp_fee,
            protocol_fee_waived=calc.protocol_fee_waived,
            discount_token_paid=paid,
            discount_quote=quote,
        )
