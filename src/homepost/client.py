"""
Homepost - Messenger API.

This module is the operation surface consumed by user interfaces:
init, sign_in, restore_session, sign_out, send_message, get_conversation
and get_new_messages.

The messenger holds the signed-in identity and an in-memory cache of
conversation keys; everything else is recomputed per call. Polling
schedules, read cursors and display caches belong to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .config import Config
from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_TIME_COST,
    DEFAULT_FETCH_TIMEOUT,
    KEY_DISPLAY_LENGTH,
)
from .errors import ConversationUnavailable, NotSignedIn
from .identity import Identity, create_recovery_file, parse_public_key
from .key_agreement import ConversationKeyCache
from .locator import new_record_id, path_for
from .reconciler import ChatMessage, ConversationView, Reconciler
from .record import MessageRecord, encrypt_and_sign
from .session import SessionManager, SessionToken
from .storage import StorageClient

logger = logging.getLogger(__name__)

PublicKeyLike = Union[str, bytes]
Cursor = Tuple[int, bytes]


@dataclass
class NewMessages:
    """Result of a polling pass over known counterparts.

    Attributes:
        messages: Newly seen messages from counterparts, most recent first
        cursors: Advanced cursor per counterpart (hex public key)
        unavailable: Counterparts whose conversation could not be read
    """

    messages: List[ChatMessage] = field(default_factory=list)
    cursors: Dict[str, Optional[Cursor]] = field(default_factory=dict)
    unavailable: List[str] = field(default_factory=list)


class Messenger:
    """Client-side messaging over homeserver storage."""

    def __init__(
        self,
        storage: StorageClient,
        device_key: bytes,
        config: Optional[Config] = None,
    ):
        """
        Initialize messenger.

        Args:
            storage: Homeserver storage client
            device_key: Device-local secret used to seal session tokens
            config: Configuration (defaults are used when omitted)
        """
        self.storage = storage
        self.device_key = device_key
        self.config = config
        self.identity: Optional[Identity] = None
        self.keys = ConversationKeyCache()
        self.reconciler = Reconciler(
            storage, config.fetch_timeout if config else DEFAULT_FETCH_TIMEOUT
        )
        self._initialized = False

    async def init(self) -> None:
        """Prepare the storage client. Idempotent."""
        if self._initialized:
            return
        await self.storage.open()
        self._initialized = True
        logger.info("Storage client initialized")

    def _require_identity(self) -> Identity:
        if self.identity is None:
            raise NotSignedIn()
        return self.identity

    async def _activate(self, identity: Identity) -> None:
        await self.init()
        if self.identity is not None and self.identity is not identity:
            self.sign_out()
        self.identity = identity
        await self.storage.authenticate(identity.public_key_hex())

    async def create_account(self, passphrase: str) -> Tuple[str, Identity, SessionToken]:
        """
        Create a new identity and its recovery material, then sign in.

        Returns:
            Tuple of (recovery material, identity, session token)
        """
        time_cost = ARGON2_TIME_COST
        memory_cost = ARGON2_MEMORY_COST
        if self.config is not None:
            time_cost = self.config.get("crypto", "argon2_time_cost", time_cost)
            memory_cost = self.config.get("crypto", "argon2_memory_cost", memory_cost)

        loop = asyncio.get_running_loop()
        material, identity = await loop.run_in_executor(
            None, lambda: create_recovery_file(passphrase, time_cost, memory_cost)
        )
        await self._activate(identity)
        token = SessionManager.seal(identity, self.device_key)
        logger.info(f"Created account {identity.short_id()}")
        return material, identity, token

    async def sign_in(self, recovery_material: str, passphrase: str) -> Tuple[Identity, SessionToken]:
        """
        Sign in with recovery material and passphrase.

        Argon2 stretching runs in a worker thread so the event loop stays
        responsive.

        Raises:
            RecoveryError: If the material or passphrase is wrong
        """
        loop = asyncio.get_running_loop()
        identity = await loop.run_in_executor(
            None, Identity.derive, recovery_material, passphrase
        )
        await self._activate(identity)
        token = SessionManager.seal(identity, self.device_key)
        logger.info(f"Signed in as {identity.short_id()}")
        return identity, token

    async def restore_session(self, token: SessionToken) -> Identity:
        """
        Resume a session from a sealed token.

        Raises:
            SessionInvalid: If the token is stale, foreign or corrupt
        """
        identity = SessionManager.unseal(token, self.device_key)
        await self._activate(identity)
        logger.info(f"Session restored for {identity.short_id()}")
        return identity

    def sign_out(self) -> None:
        """Discard the identity and every cached conversation key."""
        if self.identity is not None:
            logger.info(f"Signing out {self.identity.short_id()}")
            self.identity.wipe()
        self.identity = None
        self.keys.clear()
        self.storage.sign_out()

    def get_user_profile(self) -> Optional[Dict[str, object]]:
        """Public profile of the signed-in user, or None."""
        if self.identity is None:
            return None
        return {
            "public_key": self.identity.public_key_hex(),
            "fingerprint": self.identity.fingerprint,
            "signed_in": True,
        }

    async def send_message(self, recipient: PublicKeyLike, plaintext: str) -> MessageRecord:
        """
        Encrypt, sign and store a message in the local namespace.

        Raises:
            NotSignedIn: If no identity is loaded
            InvalidPeerKey: If the recipient key is malformed
            StorageUnavailable: If the local homeserver rejects the write
        """
        identity = self._require_identity()
        recipient_public = parse_public_key(recipient)
        conversation_key = self.keys.get(identity, recipient_public)

        record = encrypt_and_sign(identity, conversation_key, plaintext, recipient_public)
        locator = path_for(identity.public_key(), recipient_public, conversation_key)
        url = locator.record_url(new_record_id())

        await self.storage.put(url, record.to_json().encode("utf-8"))
        logger.info(
            f"Message stored for {recipient_public.hex()[:KEY_DISPLAY_LENGTH]} "
            f"({len(record.encrypted_content)} bytes)"
        )
        return record

    async def get_conversation_view(self, counterpart: PublicKeyLike) -> ConversationView:
        """
        Read the full conversation with availability details.

        Raises:
            NotSignedIn: If no identity is loaded
            InvalidPeerKey: If the counterpart key is malformed
            ConversationUnavailable: If neither homeserver could be read
        """
        identity = self._require_identity()
        counterpart_public = parse_public_key(counterpart)
        conversation_key = self.keys.get(identity, counterpart_public)
        return await self.reconciler.get_conversation(
            identity, counterpart_public, conversation_key
        )

    async def get_conversation(self, counterpart: PublicKeyLike) -> List[ChatMessage]:
        """Read the conversation with a counterpart, oldest message first."""
        view = await self.get_conversation_view(counterpart)
        return view.messages

    async def get_new_messages(
        self,
        known_counterparts: Iterable[PublicKeyLike],
        cursors: Optional[Dict[str, Optional[Cursor]]] = None,
    ) -> NewMessages:
        """
        Collect messages from counterparts that are newer than the caller's
        cursors.

        A cursor is the (timestamp, nonce) of the last message the caller
        has seen from that counterpart; None or a missing entry means
        everything is new. Unreadable conversations are reported in
        `unavailable` and keep their old cursor.

        Raises:
            NotSignedIn: If no identity is loaded
            InvalidPeerKey: If a counterpart key is malformed
        """
        self._require_identity()
        cursors = cursors or {}
        counterparts = [parse_public_key(c).hex() for c in known_counterparts]

        results = await asyncio.gather(
            *(self.get_conversation_view(c) for c in counterparts), return_exceptions=True
        )

        result = NewMessages()
        for counterpart, view in zip(counterparts, results):
            cursor = cursors.get(counterpart)
            if isinstance(view, ConversationUnavailable):
                logger.warning(f"Skipping {counterpart[:KEY_DISPLAY_LENGTH]}: {view}")
                result.unavailable.append(counterpart)
                result.cursors[counterpart] = cursor
                continue
            if isinstance(view, BaseException):
                raise view

            fresh = [
                m
                for m in view.messages
                if not m.is_own_message and (cursor is None or m.cursor > tuple(cursor))
            ]
            result.messages.extend(fresh)
            result.cursors[counterpart] = fresh[-1].cursor if fresh else cursor

        result.messages.sort(key=lambda m: m.cursor, reverse=True)
        return result

    async def close(self) -> None:
        self.sign_out()
        await self.storage.close()
        self._initialized = False
