"""
Deterministic record identities.

A pool is found by deriving its address from the fee schedule and the
canonically ordered asset pair; nothing ever scans the store for it.
"""
from cpswap.crypto import NULL_ADDRESS, derive_address
from cpswap.errors import InvalidAddress, ValidationError

FEE_SCHEDULE_SEED = b"amm_config"
POOL_SEED = b"pool"
POOL_VAULT_SEED = b"pool_vault"
POOL_LP_MINT_SEED = b"pool_lp_mint"
DISCOUNT_CONFIG_SEED = b"discount_config"


def canonical_pair(mint_x: bytes, mint_y: bytes) -> tuple[bytes, bytes]:
    """Order two mints by byte comparison."""
    if mint_x == mint_y:
        raise ValidationError("A pool needs two different assets")
    if NULL_ADDRESS in (mint_x, mint_y):
        raise InvalidAddress("Mint cannot be the null address")
    return (mint_x, mint_y) if mint_x < mint_y else (mint_y, mint_x)


def fee_schedule_address(index: int) -> bytes:
    return derive_address(FEE_SCHEDULE_SEED, index.to_bytes(2, 'big'))[0]


def pool_address(fee_schedule: bytes, mint_x: bytes, mint_y: bytes) -> bytes:
    mint_a, mint_b = canonical_pair(mint_x, mint_y)
    return derive_address(POOL_SEED, fee_schedule, mint_a, mint_b)[0]


def vault_address(pool: bytes, mint: bytes) -> bytes:
    return derive_address(POOL_VAULT_SEED, pool, mint)[0]


def lp_mint_address(pool: bytes) -> bytes:
    return derive_address(POOL_LP_MINT_SEED, pool)[0]


def discount_config_address(discount_token_mint: bytes) -> bytes:
    return derive_address(DISCOUNT_CONFIG_SEED, discount_token_mint)[0]
