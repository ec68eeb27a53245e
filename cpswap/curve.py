"""
Constant-product curve math.

All amounts are raw smallest-unit integers. Stored amounts are u64; every
product is checked against u128 before its division, which is the widest
intermediate the on-ledger format allows.
"""
import math
from dataclasses import dataclass

from cpswap.amm_state import FEE_RATE_DENOMINATOR
from cpswap.errors import (
    InsufficientInitialLiquidity,
    Overflow,
    Underflow,
    ValidationError,
    ZeroAmount,
    ZeroLiquidity,
)

U64_MAX = 2**64 - 1
U128_MAX = 2**128 - 1

# Burned on every seed; never minted to anyone.
MINIMUM_LIQUIDITY_LOCK = 100


def checked_mul(a: int, b: int) -> int:
    result = a * b
    if result > U128_MAX:
        raise Overflow(f"{a} * {b} exceeds 128 bits")
    return result


def checked_u64(value: int, what: str = "amount") -> int:
    if value < 0:
        raise Underflow(f"{what} is negative: {value}")
    if value > U64_MAX:
        raise Overflow(f"{what} exceeds 64 bits: {value}")
    return value


def ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


@dataclass
class FeeSplit:
    trade_fee: int
    protocol_fee: int
    fund_fee: int
    creator_fee: int

    @property
    def lp_fee(self) -> int:
        return self.trade_fee - self.protocol_fee - self.fund_fee - self.creator_fee


def split_fees(amount_in: int, trade_fee_rate: int, protocol_fee_rate: int,
               fund_fee_rate: int, creator_fee_rate: int) -> FeeSplit:
    """
    Charge the trade fee on the input and carve the protocol, fund and creator
    shares out of it. Each share is floored independently; rounding leftovers
    fall to the LP share.
    """
    trade_fee = checked_mul(amount_in, trade_fee_rate) // FEE_RATE_DENOMINATOR
    protocol_fee = checked_mul(trade_fee, protocol_fee_rate) // FEE_RATE_DENOMINATOR
    fund_fee = checked_mul(trade_fee, fund_fee_rate) // FEE_RATE_DENOMINATOR
    creator_fee = checked_mul(trade_fee, creator_fee_rate) // FEE_RATE_DENOMINATOR

    split = FeeSplit(trade_fee, protocol_fee, fund_fee, creator_fee)
    if split.lp_fee < 0:
        raise Underflow(f"Fee shares exceed trade fee: {split}")
    return split


@dataclass
class SwapCalculation:
    amount_in: int
    amount_in_net: int  # what the curve sees after the fee deduction
    amount_out: int
    fees: FeeSplit
    protocol_fee_waived: bool
    new_reserve_in: int  # tradable reserves after the swap
    new_reserve_out: int

    @property
    def accrued_protocol_fee(self) -> int:
        return 0 if self.protocol_fee_waived else self.fees.protocol_fee


def swap_base_input(amount_in: int, reserve_in: int, reserve_out: int,
                    trade_fee_rate: int, protocol_fee_rate: int,
                    fund_fee_rate: int, creator_fee_rate: int,
                    waive_protocol_fee: bool = False) -> SwapCalculation:
    """
    Quote an exact-input swap against tradable reserves.

    Formula (fee on input):
        net = amount_in - trade_fee
        out = net * reserve_out / (reserve_in + net)   (floored)

    Flooring `out` leaves the pool with ceil(k / (reserve_in + net)) of the
    output asset, so the product never drops even when the LP share of the fee
    is zero. This is one raw unit below `reserve_out - floor(k / (reserve_in + net))`
    whenever that division is inexact.

    With `waive_protocol_fee` the protocol share is paid elsewhere (discount
    token), so it is neither deducted from the input nor accrued as a claim.
    """
    if amount_in <= 0:
        raise ZeroAmount("Swap amount must be positive")
    checked_u64(amount_in, "amount_in")
    if reserve_in <= 0 or reserve_out <= 0:
        raise ZeroLiquidity("Pool has no tradable reserves")

    fees = split_fees(amount_in, trade_fee_rate, protocol_fee_rate, fund_fee_rate, creator_fee_rate)
    deducted = fees.trade_fee - (fees.protocol_fee if waive_protocol_fee else 0)
    amount_in_net = amount_in - deducted

    denominator = reserve_in + amount_in_net
    amount_out = checked_mul(amount_in_net, reserve_out) // denominator
    if amount_out <= 0:
        raise ZeroAmount("Swap output rounds to zero")
    if amount_out >= reserve_out:
        raise Underflow("Swap would drain the output reserve")

    claims = fees.fund_fee + fees.creator_fee
    if not waive_protocol_fee:
        claims += fees.protocol_fee
    new_reserve_in = checked_u64(reserve_in + amount_in - claims, "input reserve")
    new_reserve_out = reserve_out - amount_out

    assert_product_non_decreasing(reserve_in, reserve_out, new_reserve_in, new_reserve_out)

    return SwapCalculation(
        amount_in=amount_in,
        amount_in_net=amount_in_net,
        amount_out=amount_out,
        fees=fees,
        protocol_fee_waived=waive_protocol_fee,
        new_reserve_in=new_reserve_in,
        new_reserve_out=new_reserve_out,
    )


def assert_product_non_decreasing(before_in: int, before_out: int, after_in: int, after_out: int):
    before = checked_mul(before_in, before_out)
    after = checked_mul(after_in, after_out)
    if after < before:
        raise ValidationError(f"Constant product decreased: {before} -> {after}")


def initial_liquidity(amount_a: int, amount_b: int) -> int:
    """
    LP minted when a pool is seeded (or re-seeded from dust): the geometric
    mean of the deposit minus the locked minimum.
    """
    if amount_a <= 0 or amount_b <= 0:
        raise ZeroAmount("Seed deposit needs both assets")
    liquidity = math.isqrt(checked_mul(amount_a, amount_b))
    if liquidity <= MINIMUM_LIQUIDITY_LOCK:
        raise InsufficientInitialLiquidity(
            f"Initial liquidity {liquidity} does not exceed the locked minimum {MINIMUM_LIQUIDITY_LOCK}"
        )
    return liquidity - MINIMUM_LIQUIDITY_LOCK


def lp_to_amounts(lp_amount: int, reserve_a: int, reserve_b: int,
                  share_denominator: int, round_up: bool) -> tuple[int, int]:
    """
    Convert LP shares to asset amounts. Deposits round up and withdrawals round
    down, so neither direction can extract value from existing holders.
    """
    if share_denominator <= 0:
        raise ZeroLiquidity("Pool has no outstanding liquidity")
    if round_up:
        return (
            ceil_div(checked_mul(lp_amount, reserve_a), share_denominator),
            ceil_div(checked_mul(lp_amount, reserve_b), share_denominator),
        )
    return (
        checked_mul(lp_amount, reserve_a) // share_denominator,
        checked_mul(lp_amount, reserve_b) // share_denominator,
    )
