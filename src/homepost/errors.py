"""
Homepost - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
Homepost. Each error has a unique code for logging and debugging.

Per-record errors (DecryptionFailed, SignatureInvalid) and per-side storage
errors (StorageUnavailable) are expected during normal reads and are handled
by the reconciler; they only reach callers of the low-level APIs.

Author: homepost contributors
Version: 0.3.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Homepost error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E003_NOT_SIGNED_IN = "E003"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_PEER_KEY = "E103"
    E104_SIGNATURE_INVALID = "E104"
    E106_MALFORMED_RECORD = "E106"

    # Identity Errors (E300-E399)
    E300_IDENTITY_ERROR = "E300"
    E301_RECOVERY_FAILED = "E301"
    E302_RECOVERY_MALFORMED = "E302"
    E303_IDENTITY_WIPED = "E303"
    E304_SESSION_INVALID = "E304"
    E305_DEVICE_KEY_FAILED = "E305"

    # Storage Errors (E600-E699)
    E600_STORAGE_ERROR = "E600"
    E601_STORAGE_UNAVAILABLE = "E601"
    E603_STORAGE_PERMISSION_DENIED = "E603"
    E604_INVALID_URL = "E604"
    E605_CONVERSATION_UNAVAILABLE = "E605"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"


class HomepostError(Exception):
    """Base exception class for all Homepost errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    default_code = ErrorCode.E001_UNKNOWN_ERROR
    default_message = "Operation failed"

    def __init__(
        self,
        code: Optional[ErrorCode] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize a Homepost error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(f"[{self.code.value}] {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class NotSignedIn(HomepostError):
    """Raised when an operation needs an identity and none is loaded."""

    default_code = ErrorCode.E003_NOT_SIGNED_IN
    default_message = "Not signed in"


class CryptoError(HomepostError):
    """Exception raised for cryptographic operation failures."""

    default_code = ErrorCode.E100_CRYPTO_ERROR
    default_message = "Cryptographic operation failed"


class InvalidPeerKey(CryptoError):
    """Counterpart public key is malformed or not a usable curve point.

    The contact should be rejected; nothing can be exchanged with it.
    """

    default_code = ErrorCode.E103_INVALID_PEER_KEY
    default_message = "Invalid peer public key"


class DecryptionFailed(CryptoError):
    """A record could not be authenticated or decoded.

    Per-record and non-fatal: the record is addressed to a different
    conversation, corrupt, or tampered with. Readers drop it.
    """

    default_code = ErrorCode.E102_DECRYPTION_FAILED
    default_message = "Record decryption failed"


class SignatureInvalid(CryptoError):
    """A record decrypted but its signature does not verify.

    Readers keep the content and mark it unverified instead of raising.
    """

    default_code = ErrorCode.E104_SIGNATURE_INVALID
    default_message = "Record signature invalid"


class IdentityError(HomepostError):
    """Exception raised for identity management failures."""

    default_code = ErrorCode.E300_IDENTITY_ERROR
    default_message = "Identity operation failed"


class RecoveryError(IdentityError):
    """Recovery material and passphrase do not produce an identity.

    Fatal to the sign-in attempt; the user must retry.
    """

    default_code = ErrorCode.E301_RECOVERY_FAILED
    default_message = "Failed to decrypt recovery file - check your passphrase"


class SessionInvalid(IdentityError):
    """Session token is stale, foreign, tampered or corrupt.

    Non-fatal: the caller falls back to a full recovery-file sign-in.
    """

    default_code = ErrorCode.E304_SESSION_INVALID
    default_message = "Session token is invalid"


class StorageError(HomepostError):
    """Exception raised for homeserver storage failures."""

    default_code = ErrorCode.E600_STORAGE_ERROR
    default_message = "Storage operation failed"


class StorageUnavailable(StorageError):
    """A homeserver could not be reached or timed out.

    Readers degrade to a partial conversation when one side is unavailable.
    """

    default_code = ErrorCode.E601_STORAGE_UNAVAILABLE
    default_message = "Storage unavailable"


class ConversationUnavailable(StorageError):
    """Neither participant's storage could be read.

    The caller should keep any previously displayed conversation.
    """

    default_code = ErrorCode.E605_CONVERSATION_UNAVAILABLE
    default_message = "Conversation unavailable: both homeservers failed"


class ConfigError(HomepostError):
    """Exception raised for configuration failures."""

    default_code = ErrorCode.E700_CONFIG_ERROR
    default_message = "Configuration operation failed"
