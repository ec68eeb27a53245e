"""
Reserve-derived USD pricing.

Prices are integers scaled by PRICE_SCALE: a price of 2 * PRICE_SCALE means one
whole base unit is worth two whole quote units. Every lookup reads the
reserves visible to the caller's transaction, so a price computed during a
swap is consistent with everything else that swap reads.

Resolution order for `usd_price`:
    1. the USD reference mint itself
    2. the discount token's manual rate, when it has no reference pools
    3. a direct asset/USD reference pool
    4. one hop: asset/bridge then bridge/USD
"""
import logging
from typing import Optional, Sequence

from cpswap.addresses import fee_schedule_address, pool_address
from cpswap.amm_state import Pool
from cpswap.config import PricingConfig
from cpswap.crypto import NULL_ADDRESS, short
from cpswap.discount_state import MANUAL_RATE_SCALE, DiscountConfig
from cpswap.errors import AccountNotFound, NoPricePath, ZeroLiquidity
from cpswap.store import StateTransaction

logger = logging.getLogger(__name__)

PRICE_SCALE = 10**9


def spot_price(view: StateTransaction, pool: Pool, base_mint: bytes) -> int:
    """
    Price of one whole `base_mint` unit in whole units of the pool's other
    asset. Decimals are folded into the numerator before the single division.
    """
    base_side = pool.side(base_mint)
    reserves = view.reserves(pool)
    base_reserve = reserves[base_side]
    quote_reserve = reserves[1 - base_side]
    if base_reserve == 0 or quote_reserve == 0:
        raise ZeroLiquidity(f"Pool {pool!r} has an empty side")

    base_decimals = view.mint_decimals(base_mint)
    quote_decimals = view.mint_decimals(pool.mint(1 - base_side))
    return (quote_reserve * PRICE_SCALE * 10**base_decimals) // (base_reserve * 10**quote_decimals)


class PriceSource:
    """
    A source of USD prices. `usd_price` returns None when the source has no
    path for the mint, letting the caller fall through to the next source.
    """

    def usd_price(self, view: StateTransaction, mint: bytes) -> Optional[int]:
        raise NotImplementedError

    def reference_pools(self, mint: bytes) -> list[bytes]:
        """Pools this source may read for `mint`; they must be locked first."""
        return []


class ManualPriceSource(PriceSource):
    """Fixed rate expressed as tokens per USD, scaled by MANUAL_RATE_SCALE."""

    def __init__(self, mint: bytes, tokens_per_usd: int):
        self.mint = mint
        self.tokens_per_usd = tokens_per_usd

    def usd_price(self, view, mint):
        if mint != self.mint or self.tokens_per_usd <= 0:
            return None
        return PRICE_SCALE * MANUAL_RATE_SCALE // self.tokens_per_usd


class ReservePriceSource(PriceSource):
    """
    Prices read off reference pools. Pools named in a discount config win over
    the pools derived under the reference fee schedule.
    """

    def __init__(self, config: PricingConfig, discount_config: Optional[DiscountConfig] = None):
        self.usd_mint = config.usd_mint_address
        self.bridge_mint = config.bridge_mint_address
        self.reference_schedule = fee_schedule_address(config.reference_fee_schedule)
        self.discount_config = discount_config

    def _configured(self, mint: bytes) -> Optional[DiscountConfig]:
        if self.discount_config and self.discount_config.discount_token_mint == mint:
            return self.discount_config
        return None

    def _derived(self, mint_x: bytes, mint_y: bytes) -> Optional[bytes]:
        if NULL_ADDRESS in (mint_x, mint_y) or mint_x == mint_y:
            return None
        return pool_address(self.reference_schedule, mint_x, mint_y)

    def direct_pool(self, mint: bytes) -> Optional[bytes]:
        configured = self._configured(mint)
        if configured and configured.price_reference != NULL_ADDRESS:
            return configured.price_reference
        return self._derived(mint, self.usd_mint)

    def hop_pools(self, mint: bytes) -> Optional[tuple[bytes, bytes]]:
        """(asset/bridge pool, bridge/USD pool), if a hop is possible."""
        configured = self._configured(mint)
        if (configured and configured.token_bridge_pool != NULL_ADDRESS
                and configured.bridge_usd_pool != NULL_ADDRESS):
            return configured.token_bridge_pool, configured.bridge_usd_pool
        first = self._derived(mint, self.bridge_mint)
        second = self._derived(self.bridge_mint, self.usd_mint)
        if first is None or second is None:
            return None
        return first, second

    def reference_pools(self, mint):
        pools = []
        direct = self.direct_pool(mint)
        if direct:
            pools.append(direct)
        hop = self.hop_pools(mint)
        if hop:
            pools.extend(hop)
        return pools

    @staticmethod
    def _available(view: StateTransaction, address: bytes) -> Optional[Pool]:
        """A reference pool counts only if it exists and both sides hold reserves."""
        try:
            pool = view.load_pool(address)
        except AccountNotFound:
            return None
        if 0 in view.reserves(pool):
            return None
        return pool

    def usd_price(self, view, mint):
        direct_address = self.direct_pool(mint)
        if direct_address:
            pool = self._available(view, direct_address)
            if pool and {mint, self.usd_mint} == {pool.asset_a_mint, pool.asset_b_mint}:
                price = spot_price(view, pool, mint)
                logger.debug(f"Direct price for {short(mint)} via {short(direct_address)}: {price}")
                return price

        hop = self.hop_pools(mint)
        if hop is None:
            return None
        first = self._available(view, hop[0])
        second = self._available(view, hop[1])
        if first is None or second is None:
            return None

        if mint not in (first.asset_a_mint, first.asset_b_mint):
            return None
        # The bridge is whichever asset of the first pool is not ours.
        bridge = first.mint(1 - first.side(mint))
        if bridge == self.usd_mint or {bridge, self.usd_mint} != {second.asset_a_mint, second.asset_b_mint}:
            return None
        to_bridge = spot_price(view, first, mint)
        bridge_to_usd = spot_price(view, second, bridge)
        price = to_bridge * bridge_to_usd // PRICE_SCALE
        logger.debug(
            f"Hop price for {short(mint)}: {to_bridge} x {bridge_to_usd} via bridge {short(bridge)} = {price}"
        )
        return price


class PricingEngine:
    """Resolves USD prices over the configured reference assets."""

    def __init__(self, config: PricingConfig, extra_sources: Sequence[PriceSource] = ()):
        self.config = config
        self.extra_sources = list(extra_sources)

    def sources(self, discount_config: Optional[DiscountConfig] = None) -> list[PriceSource]:
        sources: list[PriceSource] = []
        if discount_config and not discount_config.has_reference_pools:
            sources.append(ManualPriceSource(
                discount_config.discount_token_mint, discount_config.discount_token_per_usd
            ))
        sources.append(ReservePriceSource(self.config, discount_config))
        sources.extend(self.extra_sources)
        return sources

    def reference_pools(self, mints: Sequence[bytes],
                        discount_config: Optional[DiscountConfig] = None) -> list[bytes]:
        """Every pool a price lookup for `mints` might read."""
        pools = set()
        for source in self.sources(discount_config):
            for mint in mints:
                pools.update(source.reference_pools(mint))
        return sorted(pools)

    def usd_price(self, view: StateTransaction, mint: bytes,
                  discount_config: Optional[DiscountConfig] = None) -> int:
        if mint == self.config.usd_mint_address:
            return PRICE_SCALE
        floored = False
        for source in self.sources(discount_config):
            price = source.usd_price(view, mint)
            if price:
                return price
            if price == 0:
                logger.debug(f"{type(source).__name__} prices {short(mint)} below 1/{PRICE_SCALE} USD")
                floored = True
        if floored:
            raise NoPricePath(f"USD price of {short(mint)} floors to zero at {PRICE_SCALE} precision")
        raise NoPricePath(f"No USD price path for {short(mint)}")
