"""
Homepost - Message record codec.

A record is the only unit that ever reaches storage:

    {
        "timestamp": 1700000000,
        "encrypted_sender": [...],
        "encrypted_content": [...],
        "nonce": [...],
        "signature": [...]
    }

Byte fields are JSON arrays of integers (0-255). This layout must stay
bit-compatible across implementations.

Encryption:
- ChaCha20-Poly1305 over the body with the conversation content key
- ChaCha20-Poly1305 over the sender's public key with the sender key
- one random 96-bit nonce per record, shared by both fields (the keys differ)
- the timestamp is bound as associated data to both ciphertexts

Signing:
- Ed25519 over BLAKE2b-256(context | timestamp | len-prefixed
  encrypted_content | len-prefixed encrypted_sender | len-prefixed nonce)
"""

import hashlib
import json
import logging
import os
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from .constants import (
    KEY_DISPLAY_LENGTH,
    NONCE_SIZE,
    PUBLIC_KEY_SIZE,
    RECORD_DIGEST_CONTEXT,
    RECORD_DIGEST_SIZE,
)
from .errors import DecryptionFailed, ErrorCode, SignatureInvalid
from .identity import Identity, parse_public_key
from .key_agreement import ConversationKey

logger = logging.getLogger(__name__)

_MAX_TIMESTAMP = 2**64 - 1
_BYTE_FIELDS = ("encrypted_sender", "encrypted_content", "nonce", "signature")


@dataclass(frozen=True)
class MessageRecord:
    """One encrypted, signed message as stored on a homeserver."""

    timestamp: int
    encrypted_sender: bytes
    encrypted_content: bytes
    nonce: bytes
    signature: bytes

    @property
    def dedup_key(self) -> Tuple[int, bytes]:
        """Identity of a record across fetches and retransmissions."""
        return (self.timestamp, self.nonce)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "encrypted_sender": list(self.encrypted_sender),
            "encrypted_content": list(self.encrypted_content),
            "nonce": list(self.nonce),
            "signature": list(self.signature),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MessageRecord":
        """Create a record from its storage dictionary.

        Raises:
            DecryptionFailed: If a field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise DecryptionFailed(ErrorCode.E106_MALFORMED_RECORD, "Record must be a JSON object")

        # Early writers named the signature field "signature_bytes"
        if "signature" not in data and "signature_bytes" in data:
            data = dict(data, signature=data["signature_bytes"])

        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise DecryptionFailed(ErrorCode.E106_MALFORMED_RECORD, "Record timestamp must be an integer")
        if not 0 <= timestamp <= _MAX_TIMESTAMP:
            raise DecryptionFailed(ErrorCode.E106_MALFORMED_RECORD, "Record timestamp out of range")

        fields = {name: _decode_byte_array(data, name) for name in _BYTE_FIELDS}
        return MessageRecord(timestamp=timestamp, **fields)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @staticmethod
    def from_json(text: Union[str, bytes]) -> "MessageRecord":
        """Parse a record from storage.

        Raises:
            DecryptionFailed: If the text is not a well-formed record
        """
        try:
            data = json.loads(text)
        except (ValueError, RecursionError) as e:
            # ValueError covers bad JSON, bad UTF-8 and oversized integers
            raise DecryptionFailed(
                ErrorCode.E106_MALFORMED_RECORD, f"Record is not valid JSON: {type(e).__name__}"
            ) from e
        return MessageRecord.from_dict(data)


@dataclass(frozen=True)
class DecryptedRecord:
    """Result of opening a record.

    Attributes:
        plaintext: Message body
        sender: Raw public key of the author
        verified: Whether the signature verified against the author's key
        timestamp: Sender-chosen timestamp (ordering hint only)
        nonce: Record nonce
    """

    plaintext: str
    sender: bytes
    verified: bool
    timestamp: int
    nonce: bytes


def _decode_byte_array(data: Dict[str, Any], name: str) -> bytes:
    value = data.get(name)
    if not isinstance(value, list):
        raise DecryptionFailed(
            ErrorCode.E106_MALFORMED_RECORD, f"Record field '{name}' must be a byte array"
        )
    try:
        return bytes(value)
    except (TypeError, ValueError) as e:
        raise DecryptionFailed(
            ErrorCode.E106_MALFORMED_RECORD, f"Record field '{name}' is not a byte array: {e}"
        ) from e


def _timestamp_aad(timestamp: int) -> bytes:
    return struct.pack("!Q", timestamp)


def canonical_digest(
    timestamp: int, encrypted_content: bytes, encrypted_sender: bytes, nonce: bytes
) -> bytes:
    """Digest signed by the author of a record."""
    digest = hashlib.blake2b(digest_size=RECORD_DIGEST_SIZE)
    digest.update(RECORD_DIGEST_CONTEXT)
    digest.update(struct.pack("!Q", timestamp))
    for part in (encrypted_content, encrypted_sender, nonce):
        digest.update(struct.pack("!I", len(part)))
        digest.update(part)
    return digest.digest()


def encrypt_and_sign(
    identity: Identity,
    conversation_key: ConversationKey,
    plaintext: str,
    recipient_public: bytes,
    timestamp: Optional[int] = None,
) -> MessageRecord:
    """
    Encrypt a message body and sender identity, then sign the record.

    Args:
        identity: Sending identity
        conversation_key: Key shared with the recipient
        plaintext: Message body
        recipient_public: Recipient's public key
        timestamp: Seconds since the epoch (defaults to now)

    Returns:
        The assembled, immutable record

    Raises:
        InvalidPeerKey: If the recipient key is malformed
    """
    recipient = parse_public_key(recipient_public)
    if timestamp is None:
        timestamp = int(time.time())

    nonce = os.urandom(NONCE_SIZE)
    aad = _timestamp_aad(timestamp)

    encrypted_content = ChaCha20Poly1305(conversation_key.content_key).encrypt(
        nonce, plaintext.encode("utf-8"), aad
    )
    encrypted_sender = ChaCha20Poly1305(conversation_key.sender_key).encrypt(
        nonce, identity.public_key(), aad
    )
    signature = identity.sign(
        canonical_digest(timestamp, encrypted_content, encrypted_sender, nonce)
    )

    logger.debug(
        f"Record created by {identity.short_id()} for "
        f"{recipient.hex()[:KEY_DISPLAY_LENGTH]} at {timestamp}"
    )
    return MessageRecord(
        timestamp=timestamp,
        encrypted_sender=encrypted_sender,
        encrypted_content=encrypted_content,
        nonce=nonce,
        signature=signature,
    )


def verify_signature(record: MessageRecord, sender_public: bytes) -> bool:
    """Check a record's signature against the author's public key."""
    digest = canonical_digest(
        record.timestamp, record.encrypted_content, record.encrypted_sender, record.nonce
    )
    try:
        ed25519.Ed25519PublicKey.from_public_bytes(sender_public).verify(record.signature, digest)
    except (InvalidSignature, ValueError):
        return False
    return True


def decrypt_and_verify(
    record: MessageRecord,
    conversation_key: ConversationKey,
    counterpart_signing_public: bytes,
    local_public: Optional[bytes] = None,
    strict: bool = False,
) -> DecryptedRecord:
    """
    Open a record and check who wrote it.

    A record whose signature does not verify is still returned, with
    verified=False; callers must show the flag to the user. A sender that
    is neither the counterpart nor the local party never verifies.

    Args:
        record: Record read from storage
        conversation_key: Key shared with the counterpart
        counterpart_signing_public: Counterpart's public key
        local_public: Local party's public key, so own records verify too
        strict: Raise SignatureInvalid instead of returning unverified content

    Raises:
        DecryptionFailed: If either ciphertext fails authentication
        SignatureInvalid: Only in strict mode, for unverified records
    """
    aad = _timestamp_aad(record.timestamp)

    try:
        sender = ChaCha20Poly1305(conversation_key.sender_key).decrypt(
            record.nonce, record.encrypted_sender, aad
        )
        body = ChaCha20Poly1305(conversation_key.content_key).decrypt(
            record.nonce, record.encrypted_content, aad
        )
    except (InvalidTag, ValueError) as e:
        raise DecryptionFailed() from e

    try:
        plaintext = body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailed(
            ErrorCode.E102_DECRYPTION_FAILED, "Record body is not valid UTF-8"
        ) from e

    if len(sender) != PUBLIC_KEY_SIZE:
        raise DecryptionFailed(ErrorCode.E102_DECRYPTION_FAILED, "Record sender is malformed")

    participants = {bytes(counterpart_signing_public)}
    if local_public is not None:
        participants.add(bytes(local_public))

    verified = sender in participants and verify_signature(record, sender)
    if not verified:
        logger.debug(f"Record at {record.timestamp} failed signature verification")
        if strict:
            raise SignatureInvalid(
                ErrorCode.E104_SIGNATURE_INVALID,
                "Record signature does not verify",
                {"timestamp": record.timestamp},
            )

    return DecryptedRecord(
        plaintext=plaintext,
        sender=sender,
        verified=verified,
        timestamp=record.timestamp,
        nonce=record.nonce,
    )


def sort_key(record: Union[MessageRecord, DecryptedRecord]) -> Tuple[int, bytes]:
    """Ascending timestamp, ties broken by nonce bytes."""
    return (record.timestamp, record.nonce)


def dedupe(records: List[DecryptedRecord]) -> List[DecryptedRecord]:
    """Drop repeated (timestamp, nonce) pairs.

    The first copy wins unless a later copy verifies and the first does not.
    """
    unique: Dict[Tuple[int, bytes], DecryptedRecord] = {}
    for record in records:
        key = sort_key(record)
        existing = unique.get(key)
        if existing is None or (record.verified and not existing.verified):
            unique[key] = record
    return list(unique.values())
