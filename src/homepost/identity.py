"""
Homepost - Identity management.

An identity is one Ed25519 signing keypair plus the X25519 agreement
keypair converted from it, so a single 32-byte public key names a user for
both signatures and key agreement.

Identities are re-derived from a recovery file and passphrase; the secret
seed is held only in memory and wiped on sign-out.
"""

import base64
import binascii
import logging
import os
import struct
from typing import Optional, Tuple, Union

from argon2.exceptions import HashingError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from . import crypto
from .constants import (
    ARGON2_MAX_MEMORY_COST,
    ARGON2_MAX_TIME_COST,
    ARGON2_MEMORY_COST,
    ARGON2_TIME_COST,
    KEY_DISPLAY_LENGTH,
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    RECOVERY_MAGIC,
    RECOVERY_VERSION,
    SALT_SIZE,
    SEED_SIZE,
)
from .errors import ErrorCode, IdentityError, InvalidPeerKey, RecoveryError

logger = logging.getLogger(__name__)

# version, argon2 time cost, argon2 memory cost
_RECOVERY_PARAMS = struct.Struct("!BII")
_RECOVERY_HEADER_SIZE = len(RECOVERY_MAGIC) + _RECOVERY_PARAMS.size + SALT_SIZE


class Identity:
    """A local user's signing and agreement keys.

    Attributes:
        fingerprint: SHA-256 fingerprint of the public key (hex)
    """

    def __init__(self, seed: bytes):
        if len(seed) != SEED_SIZE:
            raise IdentityError(
                ErrorCode.E300_IDENTITY_ERROR,
                f"Identity seed must be {SEED_SIZE} bytes, got {len(seed)}",
            )

        self._seed: Optional[bytearray] = bytearray(seed)
        self._signing_key: Optional[ed25519.Ed25519PrivateKey] = (
            ed25519.Ed25519PrivateKey.from_private_bytes(bytes(seed))
        )
        self._agreement_key: Optional[x25519.X25519PrivateKey] = crypto.ed25519_seed_to_x25519(
            bytes(seed)
        )
        self._public_key = self._signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.fingerprint = crypto.generate_fingerprint(self._public_key)

    @classmethod
    def generate(cls) -> "Identity":
        """Create a fresh identity from random seed material."""
        return cls(os.urandom(SEED_SIZE))

    @classmethod
    def from_seed(cls, seed: bytes) -> "Identity":
        return cls(seed)

    @classmethod
    def derive(cls, recovery_material: str, passphrase: str) -> "Identity":
        """
        Re-derive an identity from recovery material and its passphrase.

        Deterministic: the same material and passphrase always produce the
        same identity.

        Raises:
            RecoveryError: If the material is malformed or the passphrase
                does not authenticate it
        """
        seed = decrypt_recovery_file(recovery_material, passphrase)
        return cls(seed)

    def public_key(self) -> bytes:
        """Raw 32-byte Ed25519 public key; safe to share."""
        return self._public_key

    def public_key_hex(self) -> str:
        return self._public_key.hex()

    def short_id(self) -> str:
        return self.public_key_hex()[:KEY_DISPLAY_LENGTH]

    def _require_secrets(self) -> None:
        if self._seed is None:
            raise IdentityError(ErrorCode.E303_IDENTITY_WIPED, "Identity has been wiped")

    def seed(self) -> bytes:
        """Copy of the secret seed, used when sealing a session token."""
        self._require_secrets()
        return bytes(self._seed)

    def agreement_private_key(self) -> x25519.X25519PrivateKey:
        self._require_secrets()
        return self._agreement_key

    def agreement_public_key(self) -> x25519.X25519PublicKey:
        self._require_secrets()
        return self._agreement_key.public_key()

    def sign(self, data: bytes) -> bytes:
        """Sign data with the Ed25519 signing key."""
        self._require_secrets()
        return self._signing_key.sign(data)

    @property
    def is_wiped(self) -> bool:
        return self._seed is None

    def wipe(self) -> None:
        """
        Overwrite the seed buffer and drop the private key objects.

        Key objects held by the cryptography backend are released with
        their last reference; the seed copy owned here is zeroed in place.
        """
        if self._seed is not None:
            for i in range(len(self._seed)):
                self._seed[i] = 0
        self._seed = None
        self._signing_key = None
        self._agreement_key = None
        logger.debug(f"Identity {self.short_id()} wiped")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Identity):
            return NotImplemented
        return self._public_key == other._public_key

    def __hash__(self) -> int:
        return hash(self._public_key)

    def __repr__(self) -> str:
        return f"Identity({self.short_id()}...)"


def parse_public_key(value: Union[str, bytes]) -> bytes:
    """
    Parse and validate a counterpart's public key.

    Accepts the raw 32 bytes or the 64-character hex form used in storage
    URLs.

    Raises:
        InvalidPeerKey: If the key is malformed or not a usable curve point
    """
    if isinstance(value, str):
        try:
            raw = bytes.fromhex(value.strip())
        except ValueError as e:
            raise InvalidPeerKey(
                ErrorCode.E103_INVALID_PEER_KEY, f"Invalid public key encoding: {e}"
            ) from e
    else:
        raw = bytes(value)

    if len(raw) != PUBLIC_KEY_SIZE:
        raise InvalidPeerKey(
            ErrorCode.E103_INVALID_PEER_KEY,
            f"Public key must be {PUBLIC_KEY_SIZE} bytes, got {len(raw)}",
        )

    # Rejects off-curve and small-order keys
    crypto.ed25519_public_to_x25519(raw)
    return raw


def _check_costs(time_cost: int, memory_cost: int) -> None:
    if time_cost > ARGON2_MAX_TIME_COST or memory_cost > ARGON2_MAX_MEMORY_COST:
        raise RecoveryError(
            ErrorCode.E302_RECOVERY_MALFORMED,
            "Recovery parameters out of range",
            {"time_cost": time_cost, "memory_cost": memory_cost},
        )


def create_recovery_file(
    passphrase: str,
    time_cost: int = ARGON2_TIME_COST,
    memory_cost: int = ARGON2_MEMORY_COST,
    identity: Optional[Identity] = None,
) -> Tuple[str, Identity]:
    """
    Create recovery material for a new (or given) identity.

    Layout before base64 encoding:
        magic | version (1) | time_cost (4) | memory_cost (4) | salt (16)
        | nonce (12) | AES-256-GCM(seed)

    The header is bound as associated data, so tampering with the Argon2
    parameters fails authentication like a wrong passphrase does.

    Returns:
        Tuple of (base64 recovery material, identity)
    """
    if not passphrase:
        raise RecoveryError(ErrorCode.E301_RECOVERY_FAILED, "Passphrase must not be empty")

    _check_costs(time_cost, memory_cost)
    if identity is None:
        identity = Identity.generate()

    salt = os.urandom(SALT_SIZE)
    header = (
        RECOVERY_MAGIC + _RECOVERY_PARAMS.pack(RECOVERY_VERSION, time_cost, memory_cost) + salt
    )
    key = crypto.derive_passphrase_key(passphrase, salt, time_cost, memory_cost)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, identity.seed(), header)

    material = base64.b64encode(header + nonce + ciphertext).decode("utf-8")
    logger.info(f"Recovery file created for identity {identity.short_id()}")
    return material, identity


def decrypt_recovery_file(recovery_material: str, passphrase: str) -> bytes:
    """
    Decrypt recovery material and return the identity seed.

    Raises:
        RecoveryError: If the material is malformed or authentication fails
    """
    if not recovery_material or not passphrase:
        raise RecoveryError(
            ErrorCode.E302_RECOVERY_MALFORMED,
            "Recovery file and passphrase must not be empty",
        )

    try:
        blob = base64.b64decode(recovery_material, validate=True)
    except (binascii.Error, ValueError) as e:
        raise RecoveryError(
            ErrorCode.E302_RECOVERY_MALFORMED, f"Failed to decode recovery file: {e}"
        ) from e

    if len(blob) < _RECOVERY_HEADER_SIZE + NONCE_SIZE + 16:
        raise RecoveryError(ErrorCode.E302_RECOVERY_MALFORMED, "Recovery file is truncated")

    if not blob.startswith(RECOVERY_MAGIC):
        raise RecoveryError(ErrorCode.E302_RECOVERY_MALFORMED, "Not a recovery file")

    offset = len(RECOVERY_MAGIC)
    version, time_cost, memory_cost = _RECOVERY_PARAMS.unpack_from(blob, offset)
    if version != RECOVERY_VERSION:
        raise RecoveryError(
            ErrorCode.E302_RECOVERY_MALFORMED,
            f"Unsupported recovery file version: {version}",
            {"version": version},
        )

    # Checked before stretching; the header is only authenticated afterwards
    _check_costs(time_cost, memory_cost)

    header = blob[:_RECOVERY_HEADER_SIZE]
    salt = header[-SALT_SIZE:]
    nonce = blob[_RECOVERY_HEADER_SIZE : _RECOVERY_HEADER_SIZE + NONCE_SIZE]
    ciphertext = blob[_RECOVERY_HEADER_SIZE + NONCE_SIZE :]

    try:
        key = crypto.derive_passphrase_key(passphrase, salt, time_cost, memory_cost)
    except HashingError as e:
        # argon2 rejects out-of-range cost parameters
        raise RecoveryError(
            ErrorCode.E302_RECOVERY_MALFORMED, f"Invalid recovery parameters: {e}"
        ) from e

    try:
        seed = AESGCM(key).decrypt(nonce, ciphertext, header)
    except InvalidTag as e:
        raise RecoveryError() from e

    if len(seed) != SEED_SIZE:
        raise RecoveryError(ErrorCode.E302_RECOVERY_MALFORMED, "Recovery file holds no valid seed")

    return seed
