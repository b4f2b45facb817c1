"""
Homepost - Pairwise key agreement.

Both participants derive the same conversation key independently:
X25519 ECDH followed by HKDF-SHA256 with fixed context strings. No
negotiation ever crosses the network.

Three independent sub-keys are expanded from the shared secret so that
learning one of them does not help with the others:
- content key: message bodies
- sender key: the encrypted sender identity field
- locator key: the storage locator for the conversation
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict

from cryptography.hazmat.primitives.asymmetric import x25519

from . import crypto
from .constants import (
    CONTENT_KEY_INFO,
    CONVERSATION_SALT,
    KEY_DISPLAY_LENGTH,
    LOCATOR_KEY_INFO,
    SENDER_KEY_INFO,
)
from .errors import ErrorCode, InvalidPeerKey
from .identity import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationKey:
    """Symmetric keys shared by the two participants of a conversation."""

    content_key: bytes = field(repr=False)
    sender_key: bytes = field(repr=False)
    locator_key: bytes = field(repr=False)


def derive_conversation_key(
    my_private: x25519.X25519PrivateKey, their_public: x25519.X25519PublicKey
) -> ConversationKey:
    """
    Derive the conversation key from one side's private key and the other's
    public key.

    Symmetric: derive(a.private, b.public) == derive(b.private, a.public).

    Raises:
        InvalidPeerKey: If the exchange yields an all-zero shared secret
            (small-order or identity point)
    """
    try:
        shared_secret = my_private.exchange(their_public)
    except ValueError as e:
        # Raised by the backend for an all-zero result
        raise InvalidPeerKey(
            ErrorCode.E103_INVALID_PEER_KEY, "Peer key produced a degenerate shared secret"
        ) from e

    if not any(shared_secret):
        raise InvalidPeerKey(
            ErrorCode.E103_INVALID_PEER_KEY, "Peer key produced a degenerate shared secret"
        )

    return ConversationKey(
        content_key=crypto.hkdf_derive(shared_secret, CONVERSATION_SALT, CONTENT_KEY_INFO),
        sender_key=crypto.hkdf_derive(shared_secret, CONVERSATION_SALT, SENDER_KEY_INFO),
        locator_key=crypto.hkdf_derive(shared_secret, CONVERSATION_SALT, LOCATOR_KEY_INFO),
    )


def derive_for_identities(identity: Identity, counterpart_public: bytes) -> ConversationKey:
    """Derive the conversation key between a local identity and a public identity.

    Raises:
        InvalidPeerKey: If the counterpart key is malformed or unusable
    """
    their_public = crypto.ed25519_public_to_x25519(counterpart_public)
    return derive_conversation_key(identity.agreement_private_key(), their_public)


class ConversationKeyCache:
    """In-memory cache of conversation keys for the signed-in identity.

    Never persisted. Cleared on sign-out.
    """

    def __init__(self):
        self._keys: Dict[bytes, ConversationKey] = {}
        self._lock = threading.Lock()

    def get(self, identity: Identity, counterpart_public: bytes) -> ConversationKey:
        """Return the cached key, deriving it on first use."""
        with self._lock:
            key = self._keys.get(counterpart_public)
        if key is not None:
            return key

        key = derive_for_identities(identity, counterpart_public)
        with self._lock:
            self._keys.setdefault(counterpart_public, key)
        logger.debug(
            f"Derived conversation key for {counterpart_public.hex()[:KEY_DISPLAY_LENGTH]}"
        )
        return key

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)
