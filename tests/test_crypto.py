"""
Homepost - Cryptography tests.

Tests for key conversion, key agreement, recovery files, session tokens and
identity lifecycle.
"""

import base64
import os
import struct
import sys

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519

from homepost import crypto
from homepost.constants import ARGON2_MAX_TIME_COST, RECOVERY_MAGIC, RECOVERY_VERSION
from homepost.errors import (
    ErrorCode,
    IdentityError,
    InvalidPeerKey,
    RecoveryError,
    SessionInvalid,
)
from homepost.identity import Identity, create_recovery_file, parse_public_key
from homepost.key_agreement import (
    ConversationKeyCache,
    derive_conversation_key,
    derive_for_identities,
)
from homepost.session import DeviceKeyStore, SessionManager, SessionToken

P = 2**255 - 19

# Smallest Argon2id costs the library accepts
FAST_TIME_COST = 1
FAST_MEMORY_COST = 8


def _raw(public_key: x25519.X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )


def _off_curve_key() -> bytes:
    """Smallest y whose Edwards x^2 is not a square."""
    d = (-121665 * pow(121666, P - 2, P)) % P
    y = 2
    while True:
        y2 = y * y % P
        x2 = (y2 - 1) * pow(d * y2 + 1, P - 2, P) % P
        if x2 != 0 and pow(x2, (P - 1) // 2, P) != 1:
            return y.to_bytes(32, "little")
        y += 1


class TestKeyConversion:
    """Ed25519 identities double as X25519 agreement keys."""

    def test_public_conversion_matches_agreement_key(self, alice):
        converted = crypto.ed25519_public_to_x25519(alice.public_key())
        assert _raw(converted) == _raw(alice.agreement_public_key())

    def test_conversion_for_random_identities(self):
        for _ in range(5):
            identity = Identity.generate()
            converted = crypto.ed25519_public_to_x25519(identity.public_key())
            assert _raw(converted) == _raw(identity.agreement_public_key())

    @pytest.mark.parametrize(
        "key",
        [
            (1).to_bytes(32, "little"),
            bytes(32),
            (P - 1).to_bytes(32, "little"),
        ],
        ids=["identity-point", "order-4-point", "order-2-point"],
    )
    def test_small_order_points_rejected(self, key):
        with pytest.raises(InvalidPeerKey):
            crypto.ed25519_public_to_x25519(key)

    def test_non_canonical_encoding_rejected(self):
        with pytest.raises(InvalidPeerKey):
            crypto.ed25519_public_to_x25519(P.to_bytes(32, "little"))

    def test_off_curve_point_rejected(self):
        with pytest.raises(InvalidPeerKey):
            crypto.ed25519_public_to_x25519(_off_curve_key())

    def test_wrong_length_rejected(self):
        with pytest.raises(InvalidPeerKey) as exc_info:
            crypto.ed25519_public_to_x25519(b"\x01" * 31)
        assert exc_info.value.code == ErrorCode.E103_INVALID_PEER_KEY


class TestParsePublicKey:
    def test_accepts_hex_and_bytes(self, alice):
        assert parse_public_key(alice.public_key_hex()) == alice.public_key()
        assert parse_public_key(alice.public_key_hex().upper()) == alice.public_key()
        assert parse_public_key(alice.public_key()) == alice.public_key()

    def test_rejects_non_hex(self):
        with pytest.raises(InvalidPeerKey):
            parse_public_key("zz" * 32)

    def test_rejects_short_key(self):
        with pytest.raises(InvalidPeerKey):
            parse_public_key("abcd")

    def test_rejects_degenerate_key(self):
        with pytest.raises(InvalidPeerKey):
            parse_public_key(bytes(32).hex())


class TestKeyAgreement:
    """Pairwise conversation keys."""

    def test_symmetric(self, alice, bob):
        assert derive_for_identities(alice, bob.public_key()) == derive_for_identities(
            bob, alice.public_key()
        )

    def test_sub_keys_are_independent(self, alice_bob_key):
        keys = {
            alice_bob_key.content_key,
            alice_bob_key.sender_key,
            alice_bob_key.locator_key,
        }
        assert len(keys) == 3
        assert all(len(k) == 32 for k in keys)

    def test_different_pairs_get_different_keys(self, alice, bob, carol):
        assert derive_for_identities(alice, bob.public_key()) != derive_for_identities(
            alice, carol.public_key()
        )

    def test_all_zero_peer_rejected(self, alice):
        zero_peer = x25519.X25519PublicKey.from_public_bytes(bytes(32))
        with pytest.raises(InvalidPeerKey):
            derive_conversation_key(alice.agreement_private_key(), zero_peer)

    def test_repr_hides_key_material(self, alice_bob_key):
        assert alice_bob_key.content_key.hex() not in repr(alice_bob_key)

    def test_cache(self, alice, bob):
        cache = ConversationKeyCache()
        assert len(cache) == 0

        first = cache.get(alice, bob.public_key())
        assert cache.get(alice, bob.public_key()) is first
        assert len(cache) == 1

        cache.clear()
        assert len(cache) == 0


class TestRecoveryFile:
    """Passphrase-protected recovery material."""

    def test_round_trip(self):
        material, identity = create_recovery_file(
            "correct horse", FAST_TIME_COST, FAST_MEMORY_COST
        )
        restored = Identity.derive(material, "correct horse")
        assert restored == identity
        assert restored.public_key() == identity.public_key()

    def test_derive_is_deterministic(self):
        material, _ = create_recovery_file("pass", FAST_TIME_COST, FAST_MEMORY_COST)
        assert Identity.derive(material, "pass") == Identity.derive(material, "pass")

    def test_existing_identity(self, alice):
        material, identity = create_recovery_file(
            "pass", FAST_TIME_COST, FAST_MEMORY_COST, identity=alice
        )
        assert identity is alice
        assert Identity.derive(material, "pass") == alice

    def test_wrong_passphrase(self):
        material, _ = create_recovery_file("right", FAST_TIME_COST, FAST_MEMORY_COST)
        with pytest.raises(RecoveryError) as exc_info:
            Identity.derive(material, "wrong")
        assert exc_info.value.code == ErrorCode.E301_RECOVERY_FAILED

    def test_tampered_ciphertext(self):
        material, _ = create_recovery_file("pass", FAST_TIME_COST, FAST_MEMORY_COST)
        blob = bytearray(base64.b64decode(material))
        blob[-1] ^= 0x01
        with pytest.raises(RecoveryError):
            Identity.derive(base64.b64encode(bytes(blob)).decode(), "pass")

    @pytest.mark.parametrize(
        "material",
        [
            "",
            "not base64 at all!",
            base64.b64encode(b"short").decode(),
            base64.b64encode(b"x" * 120).decode(),
        ],
        ids=["empty", "not-base64", "truncated", "bad-magic"],
    )
    def test_malformed_material(self, material):
        with pytest.raises(RecoveryError) as exc_info:
            Identity.derive(material, "pass")
        assert exc_info.value.code == ErrorCode.E302_RECOVERY_MALFORMED

    @pytest.mark.parametrize(
        "time_cost, memory_cost",
        [(2**32 - 1, FAST_MEMORY_COST), (FAST_TIME_COST, 2**32 - 1)],
        ids=["time-cost", "memory-cost"],
    )
    def test_oversized_costs_rejected_before_stretching(self, time_cost, memory_cost):
        material, _ = create_recovery_file("pass", FAST_TIME_COST, FAST_MEMORY_COST)
        blob = bytearray(base64.b64decode(material))
        offset = len(RECOVERY_MAGIC)
        struct.pack_into("!BII", blob, offset, RECOVERY_VERSION, time_cost, memory_cost)

        with pytest.raises(RecoveryError) as exc_info:
            Identity.derive(base64.b64encode(bytes(blob)).decode(), "pass")
        assert exc_info.value.code == ErrorCode.E302_RECOVERY_MALFORMED

    def test_oversized_costs_refused_on_create(self):
        with pytest.raises(RecoveryError):
            create_recovery_file("pass", ARGON2_MAX_TIME_COST + 1, FAST_MEMORY_COST)

    def test_empty_passphrase_refused(self):
        with pytest.raises(RecoveryError):
            create_recovery_file("", FAST_TIME_COST, FAST_MEMORY_COST)


class TestIdentity:
    def test_seed_length_checked(self):
        with pytest.raises(IdentityError):
            Identity(b"\x00" * 16)

    def test_fingerprint(self, alice):
        assert alice.fingerprint == crypto.generate_fingerprint(alice.public_key())
        assert len(alice.fingerprint) == 64

    def test_wipe(self):
        identity = Identity.generate()
        public_key = identity.public_key()

        identity.wipe()

        assert identity.is_wiped
        assert identity.public_key() == public_key
        with pytest.raises(IdentityError) as exc_info:
            identity.sign(b"data")
        assert exc_info.value.code == ErrorCode.E303_IDENTITY_WIPED
        with pytest.raises(IdentityError):
            identity.seed()

    def test_equality_by_public_key(self, alice):
        assert Identity.from_seed(bytes(range(32))) == alice
        assert len({alice, Identity.from_seed(bytes(range(32)))}) == 1


class TestSessionToken:
    """Device-bound session tokens."""

    def test_round_trip(self, alice, device_key):
        token = SessionManager.seal(alice, device_key)
        restored = SessionManager.unseal(token, device_key)
        assert restored == alice
        assert token.public_key == alice.public_key_hex()

    def test_json_round_trip(self, alice, device_key):
        token = SessionManager.seal(alice, device_key)
        parsed = SessionToken.from_json(token.to_json())
        assert parsed == token
        assert SessionManager.unseal(parsed, device_key) == alice

    def test_fresh_nonce_per_seal(self, alice, device_key):
        first = SessionManager.seal(alice, device_key)
        second = SessionManager.seal(alice, device_key)
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_foreign_device_key(self, alice, device_key):
        token = SessionManager.seal(alice, device_key)
        with pytest.raises(SessionInvalid):
            SessionManager.unseal(token, os.urandom(32))

    def test_swapped_public_key(self, alice, bob, device_key):
        token = SessionManager.seal(alice, device_key)
        forged = SessionToken(token.version, bob.public_key_hex(), token.nonce, token.ciphertext)
        with pytest.raises(SessionInvalid):
            SessionManager.unseal(forged, device_key)

    def test_unknown_version(self, alice, device_key):
        token = SessionManager.seal(alice, device_key)
        future = SessionToken(99, token.public_key, token.nonce, token.ciphertext)
        with pytest.raises(SessionInvalid):
            SessionManager.unseal(future, device_key)

    def test_short_device_key(self, alice):
        with pytest.raises(SessionInvalid):
            SessionManager.seal(alice, b"too short")

    @pytest.mark.parametrize(
        "text",
        ["not json", "[]", '{"version": 1}', '{"version": 1, "public_key": "aa", "nonce": "!!", "ciphertext": ""}'],
        ids=["not-json", "not-object", "missing-fields", "bad-base64"],
    )
    def test_corrupt_token(self, text):
        with pytest.raises(SessionInvalid):
            SessionToken.from_json(text)

    def test_seal_wiped_identity(self, device_key):
        identity = Identity.generate()
        identity.wipe()
        with pytest.raises(IdentityError):
            SessionManager.seal(identity, device_key)


class TestDeviceKeyStore:
    def test_create_and_reload(self, temp_dir):
        store = DeviceKeyStore(temp_dir / "device.key")
        assert not store.exists()

        key = store.load_or_create()

        assert len(key) == 32
        assert store.exists()
        assert store.load_or_create() == key

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_owner_only_permissions(self, temp_dir):
        store = DeviceKeyStore(temp_dir / "device.key")
        store.load_or_create()
        assert (store.key_file.stat().st_mode & 0o777) == 0o600

    def test_corrupt_key_replaced(self, temp_dir):
        key_file = temp_dir / "device.key"
        key_file.write_bytes(b"short")
        key = DeviceKeyStore(key_file).load_or_create()
        assert len(key) == 32
        assert key_file.read_bytes() == key
