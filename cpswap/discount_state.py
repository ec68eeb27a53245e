"""
Discount-token configuration record.

At most one config exists per discount token; its identity is derived from the
token mint. The price of the discount token comes either from reference pools
(default) or from a manual `discount_token_per_usd` rate.
"""
import struct
from dataclasses import dataclass

from cpswap.crypto import NULL_ADDRESS, DERIVATION_BUMP, generate_hash
from cpswap.errors import InvalidAddress, ValidationError
from cpswap.amm_state import pack_record

DISCOUNT_RATE_DENOMINATOR = 10_000

# Manual rates are discount tokens per 1 USD, scaled by 10^6.
MANUAL_RATE_SCALE = 1_000_000

DISCRIMINATOR = generate_hash(b"account:DiscountConfig")[:8]


@dataclass
class DiscountConfig:
    discount_token_mint: bytes
    discount_rate: int  # parts-per-10,000 off the protocol fee
    authority: bytes
    treasury: bytes
    price_reference: bytes = NULL_ADDRESS  # discount token / USD pool
    discount_token_per_usd: int = 0
    bridge_usd_pool: bytes = NULL_ADDRESS
    token_bridge_pool: bytes = NULL_ADDRESS
    bump: int = DERIVATION_BUMP

    # discriminator · bump · mint · rate · authority · treasury · price_reference · per_usd
    # + bridge/usd pool · token/bridge pool
    LAYOUT = struct.Struct('<8sB32sQ32s32s32sQ32s32s')

    def validate(self):
        if not 0 <= self.discount_rate <= DISCOUNT_RATE_DENOMINATOR:
            raise ValidationError(
                f"Discount rate {self.discount_rate} must be within 0..{DISCOUNT_RATE_DENOMINATOR}"
            )
        if self.discount_token_per_usd < 0:
            raise ValidationError("Manual rate cannot be negative")
        for name in ('discount_token_mint', 'authority', 'treasury'):
            if getattr(self, name) == NULL_ADDRESS:
                raise InvalidAddress(f"{name} cannot be the null address")

    @property
    def has_reference_pools(self) -> bool:
        return (
            self.price_reference != NULL_ADDRESS
            or (self.bridge_usd_pool != NULL_ADDRESS and self.token_bridge_pool != NULL_ADDRESS)
        )

    @property
    def reference_pools(self) -> list[bytes]:
        """Configured reference pool identities, for lock acquisition."""
        return [
            pool for pool in (self.price_reference, self.bridge_usd_pool, self.token_bridge_pool)
            if pool != NULL_ADDRESS
        ]

    def to_bytes(self) -> bytes:
        return pack_record(
            self.LAYOUT,
            DISCRIMINATOR,
            self.bump,
            self.discount_token_mint,
            self.discount_rate,
            self.authority,
            self.treasury,
            self.price_reference,
            self.discount_token_per_usd,
            self.bridge_usd_pool,
            self.token_bridge_pool,
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'DiscountConfig':
        (discriminator, bump, mint, rate, authority, treasury,
         price_reference, per_usd, bridge_usd, token_bridge) = cls.LAYOUT.unpack(raw)
        if discriminator != DISCRIMINATOR:
            raise ValidationError("Record is not a DiscountConfig")
        return cls(
            discount_token_mint=mint,
            discount_rate=rate,
            authority=authority,
            treasury=treasury,
            price_reference=price_reference,
            discount_token_per_usd=per_usd,
            bridge_usd_pool=bridge_usd,
            token_bridge_pool=token_bridge,
            bump=bump,
        )
