"""
Reserve-derived USD pricing: spot prices, direct and one-hop paths, manual
rates and pluggable sources.
"""
from dataclasses import replace

import pytest

from cpswap.addresses import fee_schedule_address
from cpswap.conftest import DISCOUNT, NATIVE, TOKEN_X, TOKEN_Y, USDC
from cpswap.errors import NoPricePath
from cpswap.pricing import PRICE_SCALE, PriceSource, PricingEngine, spot_price


@pytest.fixture
def priced(harness):
    """
    Reference pools under schedule 0:
        NATIVE/USDC  1,000 NATIVE : 200,000 USDC      -> NATIVE = $200
        X/NATIVE     1,000,000 X  : 1,000 NATIVE      -> X = 0.001 NATIVE = $0.20
    """
    harness.native_usd = harness.create_pool(NATIVE, USDC, 10**12, 2 * 10**11)
    harness.x_native = harness.create_pool(TOKEN_X, NATIVE, 10**15, 10**12)
    return harness


class TestSpotPrice:

    def test_decimals_applied_before_division(self, priced):
        view = priced.engine.store.view()
        pool = view.load_pool(priced.native_usd)
        assert spot_price(view, pool, NATIVE) == 200 * PRICE_SCALE
        # 1 USDC = 0.005 NATIVE
        assert spot_price(view, pool, USDC) == 5 * PRICE_SCALE // 1000

    def test_independent_of_canonical_order(self, priced):
        """The base asset is found by mint, not by its slot in the pool."""
        view = priced.engine.store.view()
        pool = view.load_pool(priced.x_native)
        assert spot_price(view, pool, TOKEN_X) == PRICE_SCALE // 1000
        assert spot_price(view, pool, NATIVE) == 1000 * PRICE_SCALE


class TestUsdPrice:

    def test_usd_reference_is_one(self, priced):
        assert priced.engine.usd_price(USDC) == PRICE_SCALE

    def test_direct_path(self, priced):
        assert priced.engine.usd_price(NATIVE) == 200 * PRICE_SCALE

    def test_one_hop_through_bridge(self, priced):
        """price(X -> NATIVE) * price(NATIVE -> USD)."""
        assert priced.engine.usd_price(TOKEN_X) == PRICE_SCALE // 5

    def test_direct_path_preferred_over_hop(self, priced):
        priced.create_pool(TOKEN_X, USDC, 10**15, 3 * 10**11)
        assert priced.engine.usd_price(TOKEN_X) == 3 * PRICE_SCALE // 10

    def test_pools_outside_reference_schedule_ignored(self, priced):
        priced.create_schedule(index=1)
        priced.create_pool(TOKEN_X, USDC, 10**15, 3 * 10**11, index=1)
        assert priced.engine.usd_price(TOKEN_X) == PRICE_SCALE // 5

    def test_no_price_path(self, priced):
        with pytest.raises(NoPricePath, match="No USD price path"):
            priced.engine.usd_price(TOKEN_Y)

    def test_price_below_precision(self, priced):
        """1e12 whole Y against 0.001 USDC is worth less than 1/PRICE_SCALE USD."""
        priced.create_pool(TOKEN_Y, USDC, 10**18, 10**3)
        with pytest.raises(NoPricePath, match="floors to zero"):
            priced.engine.usd_price(TOKEN_Y)

    def test_price_follows_current_reserves(self, priced):
        """No caching: a trade on the reference pool moves the next lookup."""
        engine = priced.engine
        trader = priced.user(usdc=10**10)
        engine.swap(priced.native_usd, trader, USDC, 10**10, 1)

        pool = engine.get_pool(priced.native_usd)
        reserves = engine.reserves(priced.native_usd)
        native_reserve = reserves[pool.side(NATIVE)]
        usdc_reserve = reserves[pool.side(USDC)]
        expected = usdc_reserve * PRICE_SCALE * 10**9 // (native_reserve * 10**6)
        assert engine.usd_price(NATIVE) == expected
        assert expected > 200 * PRICE_SCALE


class TestDiscountTokenPrice:

    def test_manual_rate(self, priced):
        """100 tokens per USD (scaled by 1e6) prices one token at $0.01."""
        priced.create_discount_config(discount_token_per_usd=100 * 10**6)
        assert priced.engine.usd_price(DISCOUNT, discount_token=DISCOUNT) == PRICE_SCALE // 100

    def test_manual_rate_unset(self, priced):
        priced.create_discount_config()
        with pytest.raises(NoPricePath):
            priced.engine.usd_price(DISCOUNT, discount_token=DISCOUNT)

    def test_configured_pool_wins_over_manual_rate(self, priced):
        priced.create_schedule(index=1)
        reference = priced.create_pool(DISCOUNT, USDC, 10**15, 10**10, index=1)
        priced.create_discount_config(price_reference=reference, discount_token_per_usd=10**6)
        assert priced.engine.usd_price(DISCOUNT, discount_token=DISCOUNT) == PRICE_SCALE // 100

    def test_configured_hop(self, priced):
        priced.create_schedule(index=1)
        token_bridge = priced.create_pool(DISCOUNT, NATIVE, 10**15, 5 * 10**10, index=1)
        priced.create_discount_config(
            token_bridge_pool=token_bridge,
            bridge_usd_pool=priced.native_usd,
        )
        assert priced.engine.usd_price(DISCOUNT, discount_token=DISCOUNT) == PRICE_SCALE // 100


class FixedPrice(PriceSource):
    def __init__(self, mint, price):
        self.mint = mint
        self.price = price

    def usd_price(self, view, mint):
        return self.price if mint == self.mint else None


class TestPluggableSources:

    def test_extra_source_used_after_reserves(self, priced, config):
        pricing = PricingEngine(config.pricing, [FixedPrice(TOKEN_Y, 7 * PRICE_SCALE)])
        view = priced.engine.store.view()
        assert pricing.usd_price(view, TOKEN_Y) == 7 * PRICE_SCALE

    def test_reserves_take_precedence(self, priced, config):
        pricing = PricingEngine(config.pricing, [FixedPrice(NATIVE, 1)])
        view = priced.engine.store.view()
        assert pricing.usd_price(view, NATIVE) == 200 * PRICE_SCALE

    def test_reference_pools_cover_both_paths(self, priced, config):
        pools = PricingEngine(config.pricing).reference_pools([TOKEN_X])
        assert priced.x_native in pools
        assert priced.native_usd in pools


class TestUnusableConfiguredPools:
    """A configured pool that cannot price the token is skipped, never read as one that can."""

    @pytest.fixture
    def hop_priced(self, priced):
        priced.create_pool(DISCOUNT, NATIVE, 10**15, 5 * 10**10)
        priced.create_discount_config()
        return priced

    def price_with(self, priced, **references):
        engine = priced.engine
        config = replace(engine.get_discount_config(DISCOUNT), **references)
        return engine.pricing.usd_price(engine.store.view(), DISCOUNT, config)

    def test_reference_pool_without_the_token(self, hop_priced):
        assert self.price_with(hop_priced, price_reference=hop_priced.x_native) == PRICE_SCALE // 100

    def test_reference_that_is_not_a_pool(self, hop_priced):
        price = self.price_with(hop_priced, price_reference=fee_schedule_address(0))
        assert price == PRICE_SCALE // 100

    def test_hop_with_wrong_bridge(self, hop_priced):
        """x_native does not trade the token, so the configured hop is skipped."""
        with pytest.raises(NoPricePath):
            self.price_with(
                hop_priced,
                token_bridge_pool=hop_priced.x_native,
                bridge_usd_pool=hop_priced.native_usd,
            )
