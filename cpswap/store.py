"""
Reserve store: records, balances and atomic state transitions.

Every mutating operation runs inside `StateStore.transaction(lock_keys)`:

    with store.transaction(keys) as txn:
        pool = txn.load_pool(address)
        ...
        txn.save_pool(address, pool)

Reads see the transaction's own pending writes. Writes are buffered and land in
one LevelDB write batch when the block exits cleanly; an exception discards
them, so a failed operation leaves every record byte-for-byte unchanged.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

import msgpack

from cpswap.amm_state import FeeSchedule, Pool
from cpswap.curve import U64_MAX
from cpswap.db import DB
from cpswap.discount_state import DiscountConfig
from cpswap.errors import (
    AccountNotFound,
    InsufficientBalance,
    Overflow,
    Underflow,
    UnknownAsset,
    ValidationError,
    ZeroAmount,
)

logger = logging.getLogger(__name__)

ACCOUNT_PREFIX = b"ACCOUNT:"
BALANCE_PREFIX = b"BALANCE:"
MINT_PREFIX = b"MINT:"


def account_key(address: bytes) -> bytes:
    return ACCOUNT_PREFIX + address


def balance_key(mint: bytes, owner: bytes) -> bytes:
    return BALANCE_PREFIX + mint + owner


def mint_key(mint: bytes) -> bytes:
    return MINT_PREFIX + mint


class LockTable:
    """One mutex per record key, acquired in sorted order to rule out deadlock."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[bytes, threading.Lock] = {}

    def _lock_for(self, key: bytes) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, keys: Iterable[bytes]) -> Iterator[None]:
        ordered = sorted(set(keys))
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class StateTransaction:
    """Buffered view over the database for one state transition."""

    def __init__(self, db: DB):
        self.db = db
        self._writes: dict[bytes, Optional[bytes]] = {}

    # ==========================================================================
    # RAW ACCESS
    # ==========================================================================

    def get(self, key: bytes) -> Optional[bytes]:
        if key in self._writes:
            return self._writes[key]
        return self.db.get(key)

    def put(self, key: bytes, value: bytes):
        self._writes[key] = value

    def delete(self, key: bytes):
        self._writes[key] = None

    @property
    def pending_writes(self) -> dict[bytes, Optional[bytes]]:
        return dict(self._writes)

    def commit(self):
        self.db.commit(self._writes)
        self._writes = {}

    # ==========================================================================
    # RECORDS
    # ==========================================================================

    def exists(self, address: bytes) -> bool:
        return self.get(account_key(address)) is not None

    def _load(self, address: bytes, what: str) -> bytes:
        raw = self.get(account_key(address))
        if raw is None:
            raise AccountNotFound(f"{what} {address.hex()[:8]} does not exist")
        return raw

    def load_pool(self, address: bytes) -> Pool:
        raw = self._load(address, "Pool")
        if len(raw) != Pool.LAYOUT.size:
            raise AccountNotFound(f"Account {address.hex()[:8]} is not a pool")
        return Pool.from_bytes(raw)

    def save_pool(self, address: bytes, pool: Pool):
        self.put(account_key(address), pool.to_bytes())

    def load_fee_schedule(self, address: bytes) -> FeeSchedule:
        return FeeSchedule.from_bytes(self._load(address, "Fee schedule"))

    def save_fee_schedule(self, address: bytes, schedule: FeeSchedule):
        self.put(account_key(address), schedule.to_bytes())

    def load_discount_config(self, address: bytes) -> DiscountConfig:
        return DiscountConfig.from_bytes(self._load(address, "Discount config"))

    def save_discount_config(self, address: bytes, config: DiscountConfig):
        self.put(account_key(address), config.to_bytes())

    # ==========================================================================
    # MINTS
    # ==========================================================================

    def get_mint(self, mint: bytes) -> Optional[dict]:
        raw = self.get(mint_key(mint))
        if raw is None:
            return None
        return msgpack.unpackb(raw, raw=False)

    def set_mint(self, mint: bytes, info: dict):
        self.put(mint_key(mint), msgpack.packb(info, use_bin_type=True))

    def mint_decimals(self, mint: bytes) -> int:
        info = self.get_mint(mint)
        if info is None:
            raise UnknownAsset(f"Mint {mint.hex()[:8]} is not registered")
        return info['decimals']

    # ==========================================================================
    # BALANCES
    # ==========================================================================

    def balance(self, mint: bytes, owner: bytes) -> int:
        raw = self.get(balance_key(mint, owner))
        if raw is None:
            return 0
        return int.from_bytes(raw, 'little')

    def _set_balance(self, mint: bytes, owner: bytes, amount: int):
        if amount > U64_MAX:
            raise Overflow(f"Balance exceeds 64 bits: {amount}")
        self.put(balance_key(mint, owner), amount.to_bytes(8, 'little'))

    def debit(self, mint: bytes, owner: bytes, amount: int,
              error: type[ValidationError] = InsufficientBalance):
        current = self.balance(mint, owner)
        if current < amount:
            raise error(
                f"Balance of {owner.hex()[:8]} in {mint.hex()[:8]} is {current}, needs {amount}"
            )
        self._set_balance(mint, owner, current - amount)

    def credit(self, mint: bytes, owner: bytes, amount: int):
        self._set_balance(mint, owner, self.balance(mint, owner) + amount)

    def transfer(self, mint: bytes, source: bytes, destination: bytes, amount: int,
                 error: type[ValidationError] = InsufficientBalance):
        """Move raw units between two balances of the same mint."""
        if amount < 0:
            raise ZeroAmount("Transfer amount cannot be negative")
        if amount == 0:
            return
        self.debit(mint, source, amount, error)
        self.credit(mint, destination, amount)

    def mint_to(self, mint: bytes, owner: bytes, amount: int):
        info = self.get_mint(mint)
        if info is None:
            raise UnknownAsset(f"Mint {mint.hex()[:8]} is not registered")
        info['supply'] = info.get('supply', 0) + amount
        if info['supply'] > U64_MAX:
            raise Overflow("Mint supply exceeds 64 bits")
        self.set_mint(mint, info)
        self.credit(mint, owner, amount)

    def burn(self, mint: bytes, owner: bytes, amount: int):
        self.debit(mint, owner, amount)
        info = self.get_mint(mint)
        info['supply'] = info.get('supply', 0) - amount
        self.set_mint(mint, info)

    def reserves(self, pool: Pool) -> tuple[int, int]:
        """Tradable reserves: vault balances less the fees owed out of them."""
        reserve_a = self.balance(pool.asset_a_mint, pool.vault_a) - pool.claims(0)
        reserve_b = self.balance(pool.asset_b_mint, pool.vault_b) - pool.claims(1)
        if reserve_a < 0 or reserve_b < 0:
            raise Underflow(f"Accrued fees exceed vault balance in {pool!r}")
        return reserve_a, reserve_b


class StateStore:
    def __init__(self, db: DB):
        self.db = db
        self.locks = LockTable()

    @contextmanager
    def transaction(self, lock_keys: Iterable[bytes] = ()) -> Iterator[StateTransaction]:
        """
        Hold the locks for `lock_keys`, yield a write buffer, and commit it
        atomically if the block finishes without raising.
        """
        with self.locks.hold(lock_keys):
            txn = StateTransaction(self.db)
            yield txn
            txn.commit()

    def view(self) -> StateTransaction:
        """Read-only view; never committed."""
        return StateTransaction(self.db)

    def register_mint(self, mint: bytes, decimals: int):
        """Record a mint's decimal precision (asset metadata collaborator)."""
        if not 0 <= decimals <= 18:
            raise ValidationError(f"Unsupported decimals: {decimals}")
        with self.transaction([mint_key(mint)]) as txn:
            info = txn.get_mint(mint) or {'supply': 0}
            info['decimals'] = decimals
            txn.set_mint(mint, info)

    def mint_to(self, mint: bytes, owner: bytes, amount: int):
        """Issue new units of a registered mint to an owner."""
        with self.transaction([mint_key(mint), balance_key(mint, owner)]) as txn:
            txn.mint_to(mint, owner, amount)

    def balance(self, mint: bytes, owner: bytes) -> int:
        return self.view().balance(mint, owner)
