"""
Discount-token fee settlement.

A payer may cover the protocol share of a swap's trade fee in the discount
token instead of leaving it in the pool. The fee is valued in USD through the
pricing engine, reduced by the configured discount rate, and converted into
discount-token units:

    fee_usd        = protocol_fee / 10^asset_decimals * usd_price(asset)
    discounted_usd = fee_usd * (10_000 - discount_rate) / 10_000
    token_amount   = round(discounted_usd / usd_price(token) * 10^token_decimals)

The whole chain is evaluated as one fraction and rounded half-up once, so the
result does not depend on which asset was traded beyond its USD value.
"""
import logging
from dataclasses import dataclass

from cpswap.crypto import short
from cpswap.discount_state import DISCOUNT_RATE_DENOMINATOR, DiscountConfig
from cpswap.errors import InsufficientDiscountTokenBalance, NoPricePath
from cpswap.pricing import PRICE_SCALE, PricingEngine
from cpswap.store import StateTransaction

logger = logging.getLogger(__name__)


@dataclass
class DiscountQuote:
    protocol_fee: int  # raw units of the traded asset
    asset_usd_price: int  # PRICE_SCALE-scaled
    token_usd_price: int
    fee_usd: int  # PRICE_SCALE-scaled, floored; informational
    discounted_fee_usd: int
    token_amount: int  # raw discount-token units owed

    @property
    def skipped(self) -> bool:
        """The discounted fee is worth less than half a raw token unit."""
        return self.token_amount == 0


def round_half_up(numerator: int, denominator: int) -> int:
    return (2 * numerator + denominator) // (2 * denominator)


def quote_discounted_fee(view: StateTransaction, pricing: PricingEngine,
                         protocol_fee: int, traded_mint: bytes,
                         discount_config: DiscountConfig) -> DiscountQuote:
    """Price a protocol fee in discount-token units. Reads only; writes nothing."""
    asset_price = pricing.usd_price(view, traded_mint, discount_config)
    token_price = pricing.usd_price(view, discount_config.discount_token_mint, discount_config)
    if token_price <= 0:
        raise NoPricePath(f"Discount token {short(discount_config.discount_token_mint)} has no price")

    asset_scale = 10**view.mint_decimals(traded_mint)
    token_scale = 10**view.mint_decimals(discount_config.discount_token_mint)
    keep = DISCOUNT_RATE_DENOMINATOR - discount_config.discount_rate

    fee_usd = protocol_fee * asset_price // asset_scale
    discounted_fee_usd = fee_usd * keep // DISCOUNT_RATE_DENOMINATOR

    numerator = protocol_fee * asset_price * keep * token_scale
    denominator = asset_scale * DISCOUNT_RATE_DENOMINATOR * token_price
    token_amount = round_half_up(numerator, denominator)

    logger.debug(
        f"Discount quote: fee {protocol_fee} of {short(traded_mint)} = {fee_usd}/{PRICE_SCALE} USD, "
        f"after {discount_config.discount_rate} bps off = {discounted_fee_usd}/{PRICE_SCALE} USD, "
        f"{token_amount} units of {short(discount_config.discount_token_mint)}"
    )
    return DiscountQuote(
        protocol_fee=protocol_fee,
        asset_usd_price=asset_price,
        token_usd_price=token_price,
        fee_usd=fee_usd,
        discounted_fee_usd=discounted_fee_usd,
        token_amount=token_amount,
    )


def settle_discounted_fee(txn: StateTransaction, payer: bytes, quote: DiscountQuote,
                          discount_config: DiscountConfig) -> int:
    """
    Move the quoted discount-token amount from the payer to the treasury.

    A quote that rounds to zero is skipped rather than failed. Returns the
    amount transferred.
    """
    if quote.skipped:
        logger.info(f"Discounted fee for {short(payer)} rounds to zero; settlement skipped")
        return 0
    txn.transfer(
        discount_config.discount_token_mint,
        payer,
        discount_config.treasury,
        quote.token_amount,
        error=InsufficientDiscountTokenBalance,
    )
    return quote.token_amount
