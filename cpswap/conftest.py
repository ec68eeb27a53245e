"""Shared fixtures: a fresh engine over a temporary LevelDB per test."""
import shutil
import tempfile

import pytest

from cpswap.addresses import discount_config_address, fee_schedule_address
from cpswap.commands import CreateDiscountConfig, CreateFeeSchedule, SignedCommand
from cpswap.config import Config
from cpswap.crypto import generate_keypair
from cpswap.db import DB
from cpswap.engine import AmmEngine

NATIVE = b'\x01' * 32  # bridge asset, 9 decimals
USDC = b'\x02' * 32  # USD reference, 6 decimals
TOKEN_X = b'\x03' * 32
TOKEN_Y = b'\x04' * 32
DISCOUNT = b'\x05' * 32
DISCOUNT_WHOLE = b'\x06' * 32  # discount token with no decimals

DECIMALS = {
    NATIVE: 9,
    USDC: 6,
    TOKEN_X: 9,
    TOKEN_Y: 6,
    DISCOUNT: 9,
    DISCOUNT_WHOLE: 0,
}


class Harness:
    """Engine plus the identities and helpers most tests need."""

    def __init__(self, engine: AmmEngine, admin_key):
        self.engine = engine
        self.admin_key = admin_key
        self.owner_key, self.owner = generate_keypair()
        self.fund_key, self.fund_owner = generate_keypair()
        self.fee_receiver_key, self.fee_receiver = generate_keypair()
        self.creation_fee_receiver = generate_keypair()[1]
        self.authority_key, self.authority = generate_keypair()
        self.treasury = generate_keypair()[1]
        for mint, decimals in DECIMALS.items():
            engine.register_mint(mint, decimals)

    def user(self, **funding) -> bytes:
        """New identity; keyword arguments map mint names above to raw balances."""
        address = generate_keypair()[1]
        self.fund(address, funding)
        return address

    def fund(self, address: bytes, funding: dict):
        mints = {'native': NATIVE, 'usdc': USDC, 'x': TOKEN_X, 'y': TOKEN_Y,
                 'discount': DISCOUNT, 'discount_whole': DISCOUNT_WHOLE}
        for name, amount in funding.items():
            mint = mints.get(name, name)
            self.engine.mint_to(mint, address, amount)

    def create_schedule(self, index=0, trade_fee_rate=2500, protocol_fee_rate=200_000,
                        fund_fee_rate=0, creator_fee_rate=0, pool_creation_fee=0) -> bytes:
        command = CreateFeeSchedule(
            index=index,
            trade_fee_rate=trade_fee_rate,
            protocol_fee_rate=protocol_fee_rate,
            fund_fee_rate=fund_fee_rate,
            creator_fee_rate=creator_fee_rate,
            pool_creation_fee=pool_creation_fee,
            owner=self.owner,
            fund_owner=self.fund_owner,
            fee_receiver=self.fee_receiver,
            pool_creation_fee_receiver=self.creation_fee_receiver,
        )
        signed = SignedCommand.create(self.admin_key, fee_schedule_address(index), command)
        return self.engine.create_fee_schedule(signed)

    def create_pool(self, mint_x, mint_y, amount_x, amount_y, index=0, creator=None) -> bytes:
        if creator is None:
            creator = generate_keypair()[1]
        self.engine.mint_to(mint_x, creator, amount_x)
        self.engine.mint_to(mint_y, creator, amount_y)
        schedule = self.engine.get_fee_schedule(index)
        if schedule.pool_creation_fee:
            self.engine.mint_to(NATIVE, creator, schedule.pool_creation_fee)
        address, _ = self.engine.create_pool(creator, index, mint_x, mint_y, amount_x, amount_y)
        return address

    def create_discount_config(self, mint=DISCOUNT, discount_rate=2500, **references) -> bytes:
        command = CreateDiscountConfig(
            discount_token_mint=mint,
            discount_rate=discount_rate,
            authority=self.authority,
            treasury=self.treasury,
            **references,
        )
        signed = SignedCommand.create(self.admin_key, discount_config_address(mint), command)
        return self.engine.create_discount_config(signed)

    def sign(self, key, target: bytes, command) -> SignedCommand:
        return SignedCommand.create(key, target, command)


@pytest.fixture
def admin():
    return generate_keypair()


@pytest.fixture
def config(admin):
    config = Config.default()
    config.network.admin = admin[1].hex()
    config.network.native_mint = NATIVE.hex()
    config.pricing.usd_mint = USDC.hex()
    config.pricing.bridge_mint = NATIVE.hex()
    config.pricing.reference_fee_schedule = 0
    return config


@pytest.fixture
def db():
    """Create a temporary database for testing."""
    temp_dir = tempfile.mkdtemp()
    database = DB(temp_dir)
    yield database
    database.close()
    shutil.rmtree(temp_dir)


@pytest.fixture
def engine(config, db):
    amm = AmmEngine(config, db)
    yield amm
    amm.close()


@pytest.fixture
def harness(engine, admin):
    h = Harness(engine, admin[0])
    h.create_schedule(index=0)
    return h
