"""
Hashing, identities and signatures.

Identities are raw 32-byte ed25519 verify keys. Record identities (pools,
vaults, LP mints, fee schedules, discount configs) are derived from a
namespace tag plus seeds, so lookups never need to scan the store.
"""
import nacl.signing
import nacl.exceptions
from Crypto.Hash import keccak

ADDRESS_LENGTH = 32
NULL_ADDRESS = b'\x00' * ADDRESS_LENGTH

# Derivation always uses the top bump; it is stored in records for layout
# compatibility with tooling that expects it.
DERIVATION_BUMP = 255


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


def generate_keypair() -> tuple[nacl.signing.SigningKey, bytes]:
    """Generates a signing key and returns it with its 32-byte address."""
    signing_key = nacl.signing.SigningKey.generate()
    return signing_key, bytes(signing_key.verify_key)


def address_of(signing_key: nacl.signing.SigningKey) -> bytes:
    return bytes(signing_key.verify_key)


def sign(signing_key: nacl.signing.SigningKey, data: bytes) -> bytes:
    """Signs byte data, returning the detached 64-byte signature."""
    return signing_key.sign(data).signature


def verify_signature(address: bytes, signature: bytes, data: bytes) -> bool:
    """Verifies an ed25519 signature made by the key behind `address`."""
    try:
        nacl.signing.VerifyKey(address).verify(data, signature)
        return True
    except (nacl.exceptions.BadSignatureError, ValueError, TypeError):
        # Catch both cryptographic failures and malformed key/signature lengths
        return False


def derive_address(namespace: bytes, *seeds: bytes) -> tuple[bytes, int]:
    """
    Derive a record identity from a namespace tag and seeds.

    Seeds are length-prefixed so (b'ab', b'c') and (b'a', b'bc') differ.

    Returns:
        (address, bump)
    """
    preimage = bytearray(namespace)
    for seed in seeds:
        if len(seed) > 255:
            raise ValueError("Seed longer than 255 bytes")
        preimage.append(len(seed))
        preimage.extend(seed)
    preimage.append(DERIVATION_BUMP)
    return generate_hash(bytes(preimage)), DERIVATION_BUMP


def short(address: bytes) -> str:
    """Abbreviated hex form for log lines."""
    return address.hex()[:8]
