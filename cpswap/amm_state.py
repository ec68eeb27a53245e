"""
Fee schedule and pool records.

Both are stored with fixed little-endian layouts so external tooling can decode
them at known offsets. Fields after the documented prefix are extensions and
are always appended, never interleaved.
"""
import struct
from dataclasses import dataclass, asdict

from cpswap.crypto import NULL_ADDRESS
from cpswap.errors import InvalidAddress, InvalidFeeRate, Overflow, UnknownAsset, ValidationError

# Rates are parts-per-million.
FEE_RATE_DENOMINATOR = 1_000_000

# Pool status bits. A set bit disables the operation.
STATUS_DEPOSIT_DISABLED = 1 << 0
STATUS_WITHDRAW_DISABLED = 1 << 1
STATUS_SWAP_DISABLED = 1 << 2
STATUS_MASK = STATUS_DEPOSIT_DISABLED | STATUS_WITHDRAW_DISABLED | STATUS_SWAP_DISABLED


def pack_record(layout: struct.Struct, *values) -> bytes:
    try:
        return layout.pack(*values)
    except struct.error as e:
        raise Overflow(f"Field does not fit record layout: {e}") from e


@dataclass
class FeeSchedule:
    """
    One fee tier. Protocol, fund and creator rates are fractions of the trade
    fee, not of the swap amount; whatever they leave of the trade fee stays in
    the pool for liquidity providers.
    """
    index: int
    trade_fee_rate: int
    protocol_fee_rate: int
    fund_fee_rate: int
    creator_fee_rate: int
    pool_creation_fee: int
    owner: bytes
    fund_owner: bytes
    fee_receiver: bytes  # protocol fee receiver
    pool_creation_fee_receiver: bytes = NULL_ADDRESS
    disable_create_pool: bool = False

    # index · trade · protocol · fund · creator · creation fee · owner · fund_owner · fee_receiver
    # + creation fee receiver · disable_create_pool
    LAYOUT = struct.Struct('<HQQQQQ32s32s32s32sB')

    def validate(self):
        """Check rate bounds and beneficiary identities."""
        if self.trade_fee_rate >= FEE_RATE_DENOMINATOR:
            raise InvalidFeeRate(f"Trade fee rate {self.trade_fee_rate} must be below {FEE_RATE_DENOMINATOR}")
        for name in ('protocol_fee_rate', 'fund_fee_rate', 'creator_fee_rate'):
            if not 0 <= getattr(self, name) <= FEE_RATE_DENOMINATOR:
                raise InvalidFeeRate(f"{name} out of range: {getattr(self, name)}")
        split = self.protocol_fee_rate + self.fund_fee_rate + self.creator_fee_rate
        if split > FEE_RATE_DENOMINATOR:
            raise InvalidFeeRate(
                f"Protocol, fund and creator shares sum to {split}, "
                f"more than the whole trade fee ({FEE_RATE_DENOMINATOR})"
            )
        if self.trade_fee_rate < 0 or self.pool_creation_fee < 0:
            raise InvalidFeeRate("Rates and fees cannot be negative")
        for name in ('owner', 'fund_owner', 'fee_receiver', 'pool_creation_fee_receiver'):
            if getattr(self, name) == NULL_ADDRESS:
                raise InvalidAddress(f"{name} cannot be the null address")

    def to_bytes(self) -> bytes:
        return pack_record(
            self.LAYOUT,
            self.index,
            self.trade_fee_rate,
            self.protocol_fee_rate,
            self.fund_fee_rate,
            self.creator_fee_rate,
            self.pool_creation_fee,
            self.owner,
            self.fund_owner,
            self.fee_receiver,
            self.pool_creation_fee_receiver,
            int(self.disable_create_pool),
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'FeeSchedule':
        (index, trade, protocol, fund, creator, creation_fee,
         owner, fund_owner, fee_receiver, creation_receiver, disabled) = cls.LAYOUT.unpack(raw)
        return cls(
            index=index,
            trade_fee_rate=trade,
            protocol_fee_rate=protocol,
            fund_fee_rate=fund,
            creator_fee_rate=creator,
            pool_creation_fee=creation_fee,
            owner=owner,
            fund_owner=fund_owner,
            fee_receiver=fee_receiver,
            pool_creation_fee_receiver=creation_receiver,
            disable_create_pool=bool(disabled),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, bytes):
                data[key] = value.hex()
        return data


@dataclass
class Pool:
    """
    Pool state for one canonically ordered asset pair under one fee schedule.

    Vault balances live in the ledger under `vault_a` / `vault_b`. Accrued fee
    fields are claims against those balances; the tradable reserve of a side is
    its vault balance minus its claims.
    """
    asset_a_mint: bytes
    asset_b_mint: bytes
    vault_a: bytes
    vault_b: bytes
    lp_mint: bytes
    lp_supply: int = 0
    accrued_protocol_fee_a: int = 0
    accrued_protocol_fee_b: int = 0
    accrued_fund_fee_a: int = 0
    accrued_fund_fee_b: int = 0
    creator: bytes = NULL_ADDRESS
    fee_schedule: bytes = NULL_ADDRESS
    accrued_creator_fee_a: int = 0
    accrued_creator_fee_b: int = 0
    lp_locked: int = 0
    status: int = 0

    # mints · vaults · lp_mint · lp_supply · protocol a/b · fund a/b · creator
    # + fee_schedule · creator fee a/b · lp_locked · status
    LAYOUT = struct.Struct('<32s32s32s32s32sQQQQQ32s32sQQQB')

    def side(self, mint: bytes) -> int:
        """0 for asset A, 1 for asset B."""
        if mint == self.asset_a_mint:
            return 0
        if mint == self.asset_b_mint:
            return 1
        raise UnknownAsset(f"Mint {mint.hex()[:8]} is not traded by this pool")

    def mint(self, side: int) -> bytes:
        return self.asset_a_mint if side == 0 else self.asset_b_mint

    def vault(self, side: int) -> bytes:
        return self.vault_a if side == 0 else self.vault_b

    def claims(self, side: int) -> int:
        """Accrued fees owed out of one side's vault."""
        if side == 0:
            return self.accrued_protocol_fee_a + self.accrued_fund_fee_a + self.accrued_creator_fee_a
        return self.accrued_protocol_fee_b + self.accrued_fund_fee_b + self.accrued_creator_fee_b

    def accrue(self, side: int, protocol_fee: int, fund_fee: int, creator_fee: int):
        if side == 0:
            self.accrued_protocol_fee_a += protocol_fee
            self.accrued_fund_fee_a += fund_fee
            self.accrued_creator_fee_a += creator_fee
        else:
            self.accrued_protocol_fee_b += protocol_fee
            self.accrued_fund_fee_b += fund_fee
            self.accrued_creator_fee_b += creator_fee

    @property
    def share_denominator(self) -> int:
        """Outstanding LP plus the locked minimum that nobody holds."""
        return self.lp_supply + self.lp_locked

    def is_enabled(self, status_bit: int) -> bool:
        return not self.status & status_bit

    def set_status(self, status: int):
        if status & ~STATUS_MASK:
            raise ValidationError(f"Unknown pool status bits: {status:#x}")
        self.status = status

    def to_bytes(self) -> bytes:
        return pack_record(
            self.LAYOUT,
            self.asset_a_mint,
            self.asset_b_mint,
            self.vault_a,
            self.vault_b,
            self.lp_mint,
            self.lp_supply,
            self.accrued_protocol_fee_a,
            self.accrued_protocol_fee_b,
            self.accrued_fund_fee_a,
            self.accrued_fund_fee_b,
            self.creator,
            self.fee_schedule,
            self.accrued_creator_fee_a,
            self.accrued_creator_fee_b,
            self.lp_locked,
            self.status,
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'Pool':
        return cls(*cls.LAYOUT.unpack(raw))

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"Pool("
            f"a={self.asset_a_mint.hex()[:8]}, "
            f"b={self.asset_b_mint.hex()[:8]}, "
            f"lp_supply={self.lp_supply}, "
            f"lp_locked={self.lp_locked}, "
            f"claims=({self.claims(0)}, {self.claims(1)}), "
            f"status={self.status:#x})"
        )
