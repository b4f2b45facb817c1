"""
Homepost - Private messaging over personal homeservers

Two parties exchange end-to-end encrypted, signed records by writing to
their own publicly readable storage and reading each other's. There is no
broker and no trusted intermediary.

Version: 0.3.0
License: MIT
"""

__version__ = "0.3.0"
__license__ = "MIT"

from .client import Messenger, NewMessages
from .config import Config
from .constants import APP_NAME, VERSION
from .errors import (
    ConfigError,
    ConversationUnavailable,
    CryptoError,
    DecryptionFailed,
    ErrorCode,
    HomepostError,
    IdentityError,
    InvalidPeerKey,
    NotSignedIn,
    RecoveryError,
    SessionInvalid,
    SignatureInvalid,
    StorageError,
    StorageUnavailable,
)
from .identity import Identity, create_recovery_file, parse_public_key
from .key_agreement import ConversationKey, derive_conversation_key
from .reconciler import ChatMessage, ConversationView, Reconciler
from .record import MessageRecord, decrypt_and_verify, encrypt_and_sign
from .session import DeviceKeyStore, SessionManager, SessionToken

__all__ = [
    "APP_NAME",
    "VERSION",
    "ChatMessage",
    "Config",
    "ConfigError",
    "ConversationKey",
    "ConversationUnavailable",
    "ConversationView",
    "CryptoError",
    "DecryptionFailed",
    "DeviceKeyStore",
    "ErrorCode",
    "HomepostError",
    "Identity",
    "IdentityError",
    "InvalidPeerKey",
    "MessageRecord",
    "Messenger",
    "NewMessages",
    "NotSignedIn",
    "Reconciler",
    "RecoveryError",
    "SessionInvalid",
    "SessionManager",
    "SessionToken",
    "SignatureInvalid",
    "StorageError",
    "StorageUnavailable",
    "create_recovery_file",
    "decrypt_and_verify",
    "derive_conversation_key",
    "encrypt_and_sign",
    "parse_public_key",
    "__license__",
    "__version__",
]
