"""
Homepost - Session Token Management

A session token lets a device resume without asking for the recovery
passphrase again. It holds the identity seed encrypted with AES-256-GCM
under a key derived from device-local entropy, never from the passphrase,
so a copied token is useless without the device key.

Security features:
- AES-256-GCM with a fresh 96-bit nonce per seal
- Token version and public key bound as associated data
- Device key stored with owner-only permissions, written atomically
- Unseal verifies the recovered identity against the recorded public key

Author: homepost contributors
Version: 0.3.0
"""

import base64
import binascii
import json
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from . import crypto
from .constants import (
    KEY_SIZE,
    NONCE_SIZE,
    SESSION_TOKEN_INFO,
    SESSION_TOKEN_VERSION,
)
from .errors import ErrorCode, IdentityError, SessionInvalid
from .identity import Identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionToken:
    """An identity sealed for one device.

    Attributes:
        version: Token format version
        public_key: Hex public key of the sealed identity
        nonce: AES-GCM nonce
        ciphertext: Encrypted seed with authentication tag
    """

    version: int
    public_key: str
    nonce: bytes
    ciphertext: bytes

    def associated_data(self) -> bytes:
        return f"homepost-session:{self.version}:{self.public_key}".encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        """Export token to dictionary for storage."""
        return {
            "version": self.version,
            "public_key": self.public_key,
            "nonce": base64.b64encode(self.nonce).decode("utf-8"),
            "ciphertext": base64.b64encode(self.ciphertext).decode("utf-8"),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "SessionToken":
        """Import token from dictionary.

        Raises:
            SessionInvalid: If token data is malformed
        """
        try:
            return SessionToken(
                version=int(data["version"]),
                public_key=str(data["public_key"]),
                nonce=base64.b64decode(data["nonce"], validate=True),
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
            )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise SessionInvalid(
                ErrorCode.E304_SESSION_INVALID, f"Invalid session token data: {e}"
            ) from e

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @staticmethod
    def from_json(text: Union[str, bytes]) -> "SessionToken":
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SessionInvalid(
                ErrorCode.E304_SESSION_INVALID, f"Session token is not valid JSON: {e}"
            ) from e
        if not isinstance(data, dict):
            raise SessionInvalid(ErrorCode.E304_SESSION_INVALID, "Session token must be an object")
        return SessionToken.from_dict(data)


class SessionManager:
    """Seals and unseals identities with a device key.

    Stateless: neither operation mutates the identity or the manager.
    """

    @staticmethod
    def _token_key(device_key: bytes) -> bytes:
        if len(device_key) < KEY_SIZE:
            raise SessionInvalid(
                ErrorCode.E304_SESSION_INVALID,
                f"Device key must be at least {KEY_SIZE} bytes",
            )
        return crypto.hkdf_derive(device_key, salt=None, info=SESSION_TOKEN_INFO)

    @classmethod
    def seal(cls, identity: Identity, device_key: bytes) -> SessionToken:
        """Encrypt an identity's private material for this device.

        Args:
            identity: Identity to seal
            device_key: Device-local secret (see DeviceKeyStore)

        Returns:
            SessionToken for the caller to persist
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        token = SessionToken(
            version=SESSION_TOKEN_VERSION,
            public_key=identity.public_key_hex(),
            nonce=nonce,
            ciphertext=b"",
        )
        ciphertext = AESGCM(cls._token_key(device_key)).encrypt(
            nonce, identity.seed(), token.associated_data()
        )
        logger.debug(f"Session sealed for identity {identity.short_id()}")
        return SessionToken(token.version, token.public_key, nonce, ciphertext)

    @classmethod
    def unseal(cls, token: SessionToken, device_key: bytes) -> Identity:
        """Decrypt a session token back into the exact identity.

        Raises:
            SessionInvalid: On tampering, a foreign device key, an unknown
                version or corrupted storage
        """
        if token.version != SESSION_TOKEN_VERSION:
            raise SessionInvalid(
                ErrorCode.E304_SESSION_INVALID,
                f"Unsupported session token version: {token.version}",
            )

        try:
            seed = AESGCM(cls._token_key(device_key)).decrypt(
                token.nonce, token.ciphertext, token.associated_data()
            )
        except (InvalidTag, ValueError) as e:
            logger.warning("Session token failed authentication")
            raise SessionInvalid() from e

        try:
            identity = Identity(seed)
        except IdentityError as e:
            raise SessionInvalid(ErrorCode.E304_SESSION_INVALID, str(e)) from e

        if identity.public_key_hex() != token.public_key:
            identity.wipe()
            raise SessionInvalid(
                ErrorCode.E304_SESSION_INVALID, "Session token does not match its identity"
            )

        return identity


class DeviceKeyStore:
    """Device-local secret used to seal session tokens.

    The key is generated once per device and never leaves it. Losing the
    file only invalidates sessions; the recovery file still works.
    """

    def __init__(self, key_file: Union[str, Path]):
        self.key_file = Path(key_file)

    def exists(self) -> bool:
        return self.key_file.exists()

    def load_or_create(self) -> bytes:
        """Load the device key, generating it on first use.

        Raises:
            IdentityError: If the key file cannot be read or written
        """
        if self.key_file.exists():
            try:
                key = self.key_file.read_bytes()
            except OSError as e:
                raise IdentityError(
                    ErrorCode.E305_DEVICE_KEY_FAILED, f"Cannot read device key: {e}"
                ) from e
            if len(key) == KEY_SIZE:
                return key
            logger.warning("Device key file is corrupt, generating a new key")

        key = secrets.token_bytes(KEY_SIZE)
        try:
            self.key_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.key_file.with_suffix(".tmp")
            fd = os.open(temp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            os.replace(temp_file, self.key_file)
        except OSError as e:
            raise IdentityError(
                ErrorCode.E305_DEVICE_KEY_FAILED, f"Cannot save device key: {e}"
            ) from e

        logger.info(f"Generated new device key: {self.key_file}")
        return key
