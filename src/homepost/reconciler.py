"""
Homepost - Conversation reconciler (read path).

A conversation is never stored as such. Every read rebuilds it from two
record sets that live on two unsynchronized homeservers:

1. fetch the local party's and the counterpart's records concurrently,
   each bounded by a timeout; one failed side degrades the result to a
   partial conversation, both failing raises ConversationUnavailable
2. open every record; records that fail authentication are dropped
3. deduplicate by (timestamp, nonce)
4. sort by timestamp, ties broken by nonce bytes
5. tag each message as own or other by its recovered sender

The output is a pure function of the fetched input; nothing is cached here.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from .constants import DEFAULT_FETCH_TIMEOUT, KEY_DISPLAY_LENGTH
from .errors import (
    ConversationUnavailable,
    DecryptionFailed,
    ErrorCode,
    StorageError,
    StorageUnavailable,
)
from .identity import Identity
from .key_agreement import ConversationKey
from .locator import StorageLocator, path_for
from .record import DecryptedRecord, MessageRecord, decrypt_and_verify, dedupe, sort_key
from .storage import StorageClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    """One message of a reconstructed conversation."""

    sender: str
    content: str
    timestamp: int
    verified: bool
    is_own_message: bool
    nonce: bytes = field(repr=False)

    @property
    def cursor(self) -> Tuple[int, bytes]:
        return (self.timestamp, self.nonce)

    def to_dict(self) -> dict:
        """Export in the shape consumed by user interfaces."""
        return {
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp,
            "verified": self.verified,
            "is_own_message": self.is_own_message,
        }


@dataclass(frozen=True)
class ConversationView:
    """Result of one conversation read.

    Attributes:
        messages: Ordered messages, oldest first
        own_available: Whether the local homeserver was read
        counterpart_available: Whether the counterpart's homeserver was read
        dropped: Records discarded because they could not be opened
    """

    messages: List[ChatMessage]
    own_available: bool = True
    counterpart_available: bool = True
    dropped: int = 0

    @property
    def partial(self) -> bool:
        return not (self.own_available and self.counterpart_available)


def merge_records(
    raw_records: Iterable[bytes],
    conversation_key: ConversationKey,
    local_public: bytes,
    counterpart_public: bytes,
) -> Tuple[List[ChatMessage], int]:
    """
    Decrypt, verify, deduplicate and order raw record bodies.

    Returns:
        Tuple of (ordered messages, number of dropped records)
    """
    opened: List[DecryptedRecord] = []
    dropped = 0

    for raw in raw_records:
        try:
            record = MessageRecord.from_json(raw)
            opened.append(
                decrypt_and_verify(record, conversation_key, counterpart_public, local_public)
            )
        except DecryptionFailed as e:
            dropped += 1
            logger.debug(f"Dropping record: {e}")

    messages = [
        ChatMessage(
            sender=item.sender.hex(),
            content=item.plaintext,
            timestamp=item.timestamp,
            verified=item.verified,
            # An unsigned claim to be the local user is not trusted
            is_own_message=item.verified and item.sender == local_public,
            nonce=item.nonce,
        )
        for item in sorted(dedupe(opened), key=sort_key)
    ]
    return messages, dropped


class Reconciler:
    """Fetches and merges both halves of a conversation."""

    def __init__(self, storage: StorageClient, fetch_timeout: float = DEFAULT_FETCH_TIMEOUT):
        self.storage = storage
        self.fetch_timeout = fetch_timeout

    async def _fetch_records(self, directory_url: str) -> List[bytes]:
        """Fetch every record body below a directory.

        Individual records that cannot be read are skipped; only a failure
        to list the directory fails the side.
        """
        urls = await self.storage.list(directory_url)
        results = await asyncio.gather(
            *(self.storage.get(url) for url in urls), return_exceptions=True
        )

        bodies = []
        for url, result in zip(urls, results):
            if isinstance(result, StorageError):
                logger.debug(f"Skipping unreadable record {url}: {result}")
                continue
            if isinstance(result, BaseException):
                raise result
            bodies.append(result)
        return bodies

    async def _fetch_side(self, directory_url: str, label: str) -> Optional[List[bytes]]:
        """Fetch one homeserver's records, or None if it is unavailable."""
        try:
            return await asyncio.wait_for(
                self._fetch_records(directory_url), timeout=self.fetch_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Timed out reading {label} homeserver after {self.fetch_timeout}s")
        except StorageUnavailable as e:
            logger.warning(f"Cannot read {label} homeserver: {e}")
        except StorageError as e:
            logger.warning(f"Storage error reading {label} homeserver: {e}")
        return None

    async def get_conversation(
        self,
        identity: Identity,
        counterpart_public: bytes,
        conversation_key: ConversationKey,
        locator: Optional[StorageLocator] = None,
    ) -> ConversationView:
        """
        Reconstruct the conversation between identity and counterpart.

        Raises:
            ConversationUnavailable: If neither homeserver could be read
        """
        local_public = identity.public_key()
        if locator is None:
            locator = path_for(local_public, counterpart_public, conversation_key)

        own, theirs = await asyncio.gather(
            self._fetch_side(locator.own_url, "own"),
            self._fetch_side(locator.counterpart_url, "counterpart"),
        )

        if own is None and theirs is None:
            raise ConversationUnavailable(
                ErrorCode.E605_CONVERSATION_UNAVAILABLE,
                details={"counterpart": counterpart_public.hex()},
            )

        raw = (own or []) + (theirs or [])
        messages, dropped = merge_records(raw, conversation_key, local_public, counterpart_public)

        view = ConversationView(
            messages=messages,
            own_available=own is not None,
            counterpart_available=theirs is not None,
            dropped=dropped,
        )
        logger.debug(
            f"Conversation with {counterpart_public.hex()[:KEY_DISPLAY_LENGTH]}: "
            f"{len(messages)} messages, {dropped} dropped, partial={view.partial}"
        )
        return view
