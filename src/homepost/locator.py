"""
Homepost - Conversation storage locators.

Each participant writes a conversation's records under their own
homeserver namespace:

    pubky://<owner public key>/pub/private_messages/<conversation id>/<uuid>.json

The conversation id is an HMAC-SHA256 of the sorted public key pair keyed
with the conversation's locator key. Both participants compute the same id
without talking to each other; anyone without one of the private keys can
neither compute it for a guessed pair nor tell which pair a given id
belongs to.
"""

import hashlib
import hmac
import uuid
from dataclasses import dataclass

from .constants import PRIVATE_MESSAGES_PREFIX, RECORD_SUFFIX, URL_SCHEME
from .key_agreement import ConversationKey


def conversation_id(local_public: bytes, counterpart_public: bytes, locator_key: bytes) -> str:
    """Order-independent, keyed identifier of a conversation."""
    first, second = sorted((bytes(local_public), bytes(counterpart_public)))
    return hmac.new(locator_key, first + second, hashlib.sha256).hexdigest()


def homeserver_url(owner_public: bytes, path: str) -> str:
    return f"{URL_SCHEME}{owner_public.hex()}{path}"


@dataclass(frozen=True)
class StorageLocator:
    """Where a conversation's records live on both homeservers.

    Attributes:
        conversation_id: Shared opaque directory name
        own_url: Directory on the local party's homeserver (read and write)
        counterpart_url: Directory on the counterpart's homeserver (read only)
    """

    conversation_id: str
    own_url: str
    counterpart_url: str

    def record_url(self, record_id: str) -> str:
        """URL for a new record; writes only ever target the own namespace."""
        return f"{self.own_url}{record_id}{RECORD_SUFFIX}"


def path_for(
    local_public: bytes, counterpart_public: bytes, conversation_key: ConversationKey
) -> StorageLocator:
    """Resolve the storage locator for a conversation."""
    conv_id = conversation_id(local_public, counterpart_public, conversation_key.locator_key)
    path = f"{PRIVATE_MESSAGES_PREFIX}{conv_id}/"
    return StorageLocator(
        conversation_id=conv_id,
        own_url=homeserver_url(local_public, path),
        counterpart_url=homeserver_url(counterpart_public, path),
    )


def new_record_id() -> str:
    return str(uuid.uuid4())
