"""
Homepost - Cryptographic primitives.

This module holds the building blocks shared by identities, sessions,
key agreement and the record codec:
- Ed25519 -> X25519 key conversion (one public identity for signing and
  agreement)
- HKDF-SHA256 key derivation with explicit domain separation
- Argon2id passphrase stretching for recovery files
- Public key fingerprints

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import hashlib

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    KEY_SIZE,
    PUBLIC_KEY_SIZE,
)
from .errors import ErrorCode, InvalidPeerKey

# Curve25519 field prime and the Edwards curve constant d = -121665/121666
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P

# Edwards y-coordinates of the identity and the points of order 2 and 4.
# They map to Montgomery u in {1, 0, ...} and give an all-zero shared secret.
_SMALL_ORDER_Y = frozenset({1, _P - 1, 0})


def _decode_edwards_y(ed_pub: bytes) -> int:
    """Decode and validate a compressed Edwards point, returning y.

    Follows the decoding rules of RFC 8032 section 5.1.3: y must be
    canonical, x^2 = (y^2 - 1) / (d y^2 + 1) must be a square, and x = 0 is
    only valid with a cleared sign bit.
    """
    if len(ed_pub) != PUBLIC_KEY_SIZE:
        raise InvalidPeerKey(
            ErrorCode.E103_INVALID_PEER_KEY,
            f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(ed_pub)}",
        )

    encoded = int.from_bytes(ed_pub, "little")
    sign = encoded >> 255
    y = encoded & ((1 << 255) - 1)
    if y >= _P:
        raise InvalidPeerKey(ErrorCode.E103_INVALID_PEER_KEY, "Public key is not canonical")

    y2 = y * y % _P
    x2 = (y2 - 1) * pow(_D * y2 + 1, _P - 2, _P) % _P
    if x2 == 0:
        if sign:
            raise InvalidPeerKey(ErrorCode.E103_INVALID_PEER_KEY, "Public key is not on the curve")
    elif pow(x2, (_P - 1) // 2, _P) != 1:
        raise InvalidPeerKey(ErrorCode.E103_INVALID_PEER_KEY, "Public key is not on the curve")

    if y in _SMALL_ORDER_Y:
        raise InvalidPeerKey(ErrorCode.E103_INVALID_PEER_KEY, "Public key is a small-order point")

    return y


def ed25519_public_to_x25519(ed_pub: bytes) -> x25519.X25519PublicKey:
    """
    Convert an Ed25519 public key to the matching X25519 public key.

    Uses the birational map u = (1 + y) / (1 - y) between the twisted
    Edwards and Montgomery forms of Curve25519.

    Raises:
        InvalidPeerKey: If the key is malformed, off-curve or small-order
    """
    y = _decode_edwards_y(ed_pub)
    u = (1 + y) * pow((1 - y) % _P, _P - 2, _P) % _P
    return x25519.X25519PublicKey.from_public_bytes(u.to_bytes(32, "little"))


def ed25519_seed_to_x25519(seed: bytes) -> x25519.X25519PrivateKey:
    """
    Convert an Ed25519 secret seed to the matching X25519 private key.

    The scalar is the first half of SHA-512(seed); clamping per RFC 7748 is
    applied by the X25519 implementation.
    """
    scalar = hashlib.sha512(seed).digest()[:32]
    return x25519.X25519PrivateKey.from_private_bytes(scalar)


def hkdf_derive(secret: bytes, salt: bytes, info: bytes, length: int = KEY_SIZE) -> bytes:
    """Derive a key with HKDF-SHA256 under a fixed context string."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return hkdf.derive(secret)


def derive_passphrase_key(
    passphrase: str,
    salt: bytes,
    time_cost: int = ARGON2_TIME_COST,
    memory_cost: int = ARGON2_MEMORY_COST,
) -> bytes:
    """
    Stretch a recovery passphrase into a 32-byte key using Argon2id.

    Argon2id is memory-hard, which makes offline guessing against a stolen
    recovery file expensive. Cost parameters travel inside the recovery
    file so older files stay readable when the defaults change.
    """
    return hash_secret_raw(
        secret=passphrase.encode("utf-8"),
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


def generate_fingerprint(public_key_bytes: bytes) -> str:
    """
    Generate a human-readable fingerprint from a public key using SHA-256.

    Users compare fingerprints through a trusted channel before trusting a
    contact's key. Returns a 64-character hexadecimal fingerprint.
    """
    digest = hashes.Hash(hashes.SHA256())
    digest.update(public_key_bytes)
    return digest.finalize().hex()
