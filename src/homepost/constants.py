"""
Homepost - Global Constants and Protocol Values

This module defines all constants used throughout Homepost.
Protocol context strings are part of the on-storage format: changing any of
them breaks interoperability with existing records.

Author: homepost contributors
Version: 0.3.0
"""

# Version Information
VERSION = "0.3.0"
APP_NAME = "Homepost"

# Storage Constants
URL_SCHEME = "pubky://"
PRIVATE_MESSAGES_PREFIX = "/pub/private_messages/"
RECORD_SUFFIX = ".json"
DEFAULT_FETCH_TIMEOUT = 10.0  # seconds per homeserver fetch

# Key and Nonce Sizes (bytes)
KEY_SIZE = 32
SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32
NONCE_SIZE = 12  # 96 bits for ChaCha20-Poly1305 and AES-GCM
SALT_SIZE = 16

# Argon2id parameters for recovery files
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1

# Upper bounds accepted from a recovery file header
ARGON2_MAX_TIME_COST = 16
ARGON2_MAX_MEMORY_COST = 1048576  # 1 GB

# Recovery File Format
RECOVERY_MAGIC = b"homepost.recovery\n"
RECOVERY_VERSION = 1

# Session Token Format
SESSION_TOKEN_VERSION = 1
SESSION_TOKEN_INFO = b"homepost-session-token-v1"

# Key Derivation Context (domain separation)
CONVERSATION_SALT = b"homepost-conversation-v1"
CONTENT_KEY_INFO = b"homepost/content"
SENDER_KEY_INFO = b"homepost/sender"
LOCATOR_KEY_INFO = b"homepost/locator"

# Record Signing
RECORD_DIGEST_CONTEXT = b"homepost-record-v1"
RECORD_DIGEST_SIZE = 32

# File Paths
DEFAULT_DATA_DIR = "~/.homepost"
CONFIG_FILENAME = "config.toml"
DEVICE_KEY_FILENAME = "device.key"
SESSION_FILENAME = "session.json"
HOMESERVERS_DIR = "homeservers"
LOGS_DIR = "logs"
LOG_FILENAME = "homepost.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Display
KEY_DISPLAY_LENGTH = 8  # hex characters shown when logging public keys
