"""
Typed configuration commands.

Each updatable field has its own command class carrying a payload of the right
type. Commands travel inside a SignedCommand: the signer's ed25519 signature
covers the msgpack encoding of (kind, target, payload), and the engine compares
the signer with the owner or authority of the target record.
"""
from dataclasses import dataclass, asdict, fields
from typing import ClassVar

import msgpack
import nacl.signing

from cpswap.amm_state import FeeSchedule, Pool
from cpswap.crypto import NULL_ADDRESS, address_of, sign, verify_signature
from cpswap.discount_state import DiscountConfig
from cpswap.errors import Unauthorized, ValidationError


@dataclass
class Command:
    KIND: ClassVar[str] = ""

    def payload(self) -> dict:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict) -> 'Command':
        names = {f.name for f in fields(cls)}
        unknown = set(payload) - names
        if unknown:
            raise ValidationError(f"Unknown fields for {cls.KIND}: {sorted(unknown)}")
        return cls(**payload)


# ==============================================================================
# FEE SCHEDULE
# ==============================================================================

@dataclass
class CreateFeeSchedule(Command):
    KIND: ClassVar[str] = "create_fee_schedule"
    index: int
    trade_fee_rate: int
    protocol_fee_rate: int
    fund_fee_rate: int
    creator_fee_rate: int
    pool_creation_fee: int
    owner: bytes
    fund_owner: bytes
    fee_receiver: bytes
    pool_creation_fee_receiver: bytes

    def build(self) -> FeeSchedule:
        return FeeSchedule(**self.payload())


class FeeScheduleUpdate(Command):
    def apply(self, schedule: FeeSchedule):
        raise NotImplementedError


@dataclass
class SetTradeFeeRate(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_trade_fee_rate"
    trade_fee_rate: int

    def apply(self, schedule):
        schedule.trade_fee_rate = self.trade_fee_rate


@dataclass
class SetProtocolFeeRate(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_protocol_fee_rate"
    protocol_fee_rate: int

    def apply(self, schedule):
        schedule.protocol_fee_rate = self.protocol_fee_rate


@dataclass
class SetFundFeeRate(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_fund_fee_rate"
    fund_fee_rate: int

    def apply(self, schedule):
        schedule.fund_fee_rate = self.fund_fee_rate


@dataclass
class SetCreatorFeeRate(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_creator_fee_rate"
    creator_fee_rate: int

    def apply(self, schedule):
        schedule.creator_fee_rate = self.creator_fee_rate


@dataclass
class SetPoolCreationFee(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_pool_creation_fee"
    pool_creation_fee: int

    def apply(self, schedule):
        schedule.pool_creation_fee = self.pool_creation_fee


@dataclass
class SetOwner(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_owner"
    owner: bytes

    def apply(self, schedule):
        schedule.owner = self.owner


@dataclass
class SetFundOwner(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_fund_owner"
    fund_owner: bytes

    def apply(self, schedule):
        schedule.fund_owner = self.fund_owner


@dataclass
class SetFeeReceiver(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_fee_receiver"
    fee_receiver: bytes

    def apply(self, schedule):
        schedule.fee_receiver = self.fee_receiver


@dataclass
class SetPoolCreationFeeReceiver(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_pool_creation_fee_receiver"
    pool_creation_fee_receiver: bytes

    def apply(self, schedule):
        schedule.pool_creation_fee_receiver = self.pool_creation_fee_receiver


@dataclass
class SetCreatePoolDisabled(FeeScheduleUpdate):
    KIND: ClassVar[str] = "set_create_pool_disabled"
    disabled: bool

    def apply(self, schedule):
        schedule.disable_create_pool = bool(self.disabled)


# ==============================================================================
# DISCOUNT CONFIG
# ==============================================================================

@dataclass
class CreateDiscountConfig(Command):
    KIND: ClassVar[str] = "create_discount_config"
    discount_token_mint: bytes
    discount_rate: int
    authority: bytes
    treasury: bytes
    price_reference: bytes = NULL_ADDRESS
    discount_token_per_usd: int = 0
    bridge_usd_pool: bytes = NULL_ADDRESS
    token_bridge_pool: bytes = NULL_ADDRESS

    def build(self) -> DiscountConfig:
        return DiscountConfig(**self.payload())


class DiscountConfigUpdate(Command):
    def apply(self, config: DiscountConfig):
        raise NotImplementedError


@dataclass
class SetDiscountRate(DiscountConfigUpdate):
    KIND: ClassVar[str] = "set_discount_rate"
    discount_rate: int

    def apply(self, config):
        config.discount_rate = self.discount_rate


@dataclass
class SetTreasury(DiscountConfigUpdate):
    KIND: ClassVar[str] = "set_treasury"
    treasury: bytes

    def apply(self, config):
        config.treasury = self.treasury


@dataclass
class SetPriceReferences(DiscountConfigUpdate):
    """Replace all three reference pools; null entries clear a path."""
    KIND: ClassVar[str] = "set_price_references"
    price_reference: bytes = NULL_ADDRESS
    bridge_usd_pool: bytes = NULL_ADDRESS
    token_bridge_pool: bytes = NULL_ADDRESS

    def apply(self, config):
        config.price_reference = self.price_reference
        config.bridge_usd_pool = self.bridge_usd_pool
        config.token_bridge_pool = self.token_bridge_pool


@dataclass
class SetManualPrice(DiscountConfigUpdate):
    KIND: ClassVar[str] = "set_manual_price"
    discount_token_per_usd: int

    def apply(self, config):
        config.discount_token_per_usd = self.discount_token_per_usd


@dataclass
class SetAuthority(DiscountConfigUpdate):
    KIND: ClassVar[str] = "set_authority"
    authority: bytes

    def apply(self, config):
        config.authority = self.authority


# ==============================================================================
# POOL
# ==============================================================================

@dataclass
class SetPoolStatus(Command):
    KIND: ClassVar[str] = "set_pool_status"
    status: int

    def apply(self, pool: Pool):
        pool.set_status(self.status)


@dataclass
class CollectFees(Command):
    """Withdraw accrued fees, capped at what has accrued on each side."""
    max_amount_a: int
    max_amount_b: int


@dataclass
class CollectProtocolFee(CollectFees):
    KIND: ClassVar[str] = "collect_protocol_fee"


@dataclass
class CollectFundFee(CollectFees):
    KIND: ClassVar[str] = "collect_fund_fee"


@dataclass
class CollectCreatorFee(CollectFees):
    KIND: ClassVar[str] = "collect_creator_fee"


COMMANDS: dict[str, type[Command]] = {
    cls.KIND: cls for cls in (
        CreateFeeSchedule, SetTradeFeeRate, SetProtocolFeeRate, SetFundFeeRate,
        SetCreatorFeeRate, SetPoolCreationFee, SetOwner, SetFundOwner, SetFeeReceiver,
        SetPoolCreationFeeReceiver, SetCreatePoolDisabled,
        CreateDiscountConfig, SetDiscountRate, SetTreasury, SetPriceReferences,
        SetManualPrice, SetAuthority,
        SetPoolStatus, CollectProtocolFee, CollectFundFee, CollectCreatorFee,
    )
}


@dataclass
class SignedCommand:
    command: Command
    target: bytes  # address of the record the command acts on
    signer: bytes
    signature: bytes

    @staticmethod
    def signing_data(command: Command, target: bytes) -> bytes:
        return msgpack.packb([command.KIND, target, command.payload()], use_bin_type=True)

    @classmethod
    def create(cls, signing_key: nacl.signing.SigningKey, target: bytes, command: Command) -> 'SignedCommand':
        data = cls.signing_data(command, target)
        return cls(command, target, address_of(signing_key), sign(signing_key, data))

    def verify(self):
        """Raises Unauthorized unless the signature matches the signer."""
        if not verify_signature(self.signer, self.signature, self.signing_data(self.command, self.target)):
            raise Unauthorized(f"Invalid signature on {self.command.KIND}")

    def require_signer(self, *allowed: bytes):
        self.verify()
        if self.signer not in allowed:
            raise Unauthorized(f"{self.signer.hex()[:8]} may not perform {self.command.KIND}")

    def to_bytes(self) -> bytes:
        return msgpack.packb({
            'kind': self.command.KIND,
            'target': self.target,
            'payload': self.command.payload(),
            'signer': self.signer,
            'signature': self.signature,
        }, use_bin_type=True)

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'SignedCommand':
        data = msgpack.unpackb(raw, raw=False)
        command_cls = COMMANDS.get(data['kind'])
        if command_cls is None:
            raise ValidationError(f"Unknown command kind: {data['kind']}")
        return cls(
            command=command_cls.from_payload(data['payload']),
            target=data['target'],
            signer=data['signer'],
            signature=data['signature'],
        )
