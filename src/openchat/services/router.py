"""Direct-message routing across personal stores.

Each message is written twice with different keys:

- the sender's own store gets a copy sealed with the sender's symmetric key
  (self-archival, readable without the recipient's private key);
- if the sender's store holds an ExternalLink to the receiver, the
  receiver's store gets a copy sealed with the receiver's public key.

The sender's write is the durability anchor and decides success. The
cross-store write runs in the background; its failure is logged and never
reported to the sender. Live delivery goes over the session registry and
does not depend on either write.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, Dict, List, Optional, Set

from openchat.database.registry import ConnectionRegistry
from openchat.errors import MissingField, OpenChatError
from openchat.models import (
    FILE_PLACEHOLDER_TEXT,
    FileMeta,
    Message,
    MessageKind,
    new_message_id,
    utcnow,
)
from openchat.services.directory import DirectoryService
from openchat.services.identity import IdentityKeyManager
from openchat.services.presence import SessionRegistry
from openchat.utils.logging_config import get_logger, redact_location

logger = get_logger(__name__)


@dataclass
class SendAck:
    message_id: str
    delivered_live: bool
    cross_store: bool


def live_payload(message: Message, plaintext: Optional[str], file: Optional[FileMeta]) -> Dict[str, Any]:
    """Transport shape of a direct message as seen by connected clients."""
    event = {
        "from": message.sender,
        "to": message.receiver,
        "msg": plaintext,
        "timestamp": message.timestamp.isoformat(),
        "messageId": message.message_id,
        "isFileMessage": message.kind == MessageKind.FILE,
    }
    if file is not None:
        event.update({
            "msg": FILE_PLACEHOLDER_TEXT,
            "fileUrl": file.url,
            "fileName": file.name,
            "fileType": file.type,
            "fileSize": file.size,
        })
    return event


class MessageRouter:
    def __init__(
        self,
        directory: DirectoryService,
        registry: ConnectionRegistry,
        keys: IdentityKeyManager,
        sessions: SessionRegistry,
    ):
        self.directory = directory
        self.registry = registry
        self.keys = keys
        self.sessions = sessions
        self._background: Set[asyncio.Task] = set()

    async def send_direct(
        self,
        sender: str,
        receiver: str,
        payload: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
        file: Optional[FileMeta] = None,
        message_id: Optional[str] = None,
    ) -> SendAck:
        if not receiver:
            raise MissingField("Receiver is required")
        if kind == MessageKind.FILE and file is None:
            raise MissingField("File metadata is required for file messages")
        if kind == MessageKind.TEXT and not payload:
            raise MissingField("Message text is required")

        record = await self.directory.find_by_username(sender)
        message_id = message_id or new_message_id()
        now = utcnow()

        async with self.registry.operation(record.store_location) as store:
            recipient_key = None
            recipient_profile = await store.get_profile(receiver)
            if recipient_profile is not None and recipient_profile.public_key:
                recipient_key = recipient_profile.public_key
            link = await store.get_link(receiver)
            if recipient_key is None and link is not None and link.public_key:
                recipient_key = link.public_key

            sender_profile = await store.get_profile(sender)
            symmetric_key = sender_profile.symmetric_key if sender_profile else None

            def seal_self(value):
                return self.keys.encrypt_self(value, symmetric_key)

            def seal_peer(value):
                return self.keys.encrypt_for_recipient(value, recipient_key)

            if recipient_key is None:
                logger.warning("No public key for recipient, delivering plaintext copy", sender=sender, receiver=receiver)

            self_copy = self._sealed(sender, receiver, payload, kind, file, seal_self, message_id, now)
            peer_copy = self._sealed(sender, receiver, payload, kind, file, seal_peer, message_id, now)

            await store.insert_message(self_copy)
            logger.info("Message saved locally", sender=sender, receiver=receiver, message_id=message_id, kind=kind.value)

        delivered = await self._notify_live(self_copy, payload, file)

        if link is not None:
            self._spawn(self._deliver_cross_store(link.store_location, peer_copy))
        return SendAck(message_id=message_id, delivered_live=delivered, cross_store=link is not None)

    @staticmethod
    def _sealed(sender, receiver, payload, kind, file, seal, message_id, timestamp) -> Message:
        clear = [file.url, file.name, file.type] if kind == MessageKind.FILE else [payload]
        sealed = [seal(value) for value in clear]
        # A field the cipher handed back unchanged means no key or an oversized payload
        encrypted = all(s != c for s, c in zip(sealed, clear) if c)
        if not encrypted:
            sealed = clear
        if kind == MessageKind.FILE:
            sealed_file = FileMeta(url=sealed[0], name=sealed[1], type=sealed[2], size=file.size)
            text = FILE_PLACEHOLDER_TEXT
        else:
            sealed_file = None
            text = sealed[0]
        return Message(
            sender=sender,
            receiver=receiver,
            payload=text,
            kind=kind,
            file=sealed_file,
            is_encrypted=encrypted,
            timestamp=timestamp,
            message_id=message_id,
        )

    async def _notify_live(self, message: Message, plaintext: Optional[str], file: Optional[FileMeta]) -> bool:
        event_name = "file message" if message.kind == MessageKind.FILE else "chat message"
        event = live_payload(message, plaintext, file)
        delivered = await self.sessions.emit(message.receiver, event_name, event)
        if delivered:
            noun = "file" if message.kind == MessageKind.FILE else "message"
            await self.sessions.emit(message.receiver, "notification", f"New {noun} from {message.sender}")
            await self.sessions.push(message.receiver, "New Message", f"You have a new message from {message.sender}")
            logger.info("Message delivered to online user", receiver=message.receiver)
        # Echo back to the sender for UI update
        await self.sessions.emit(message.sender, event_name, event)
        return delivered

    async def _deliver_cross_store(self, location: str, message: Message) -> None:
        try:
            async with self.registry.operation(location) as peer_store:
                await peer_store.insert_message(message)
            logger.info("Message written to recipient store", receiver=message.receiver, message_id=message.message_id)
        except OpenChatError as e:
            logger.error(
                "Error inserting message into external store",
                receiver=message.receiver,
                location=redact_location(location),
                error=str(e),
            )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for pending cross-store deliveries."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def load_history(self, user: str, peer: Optional[str]) -> List[Message]:
        """Conversation between ``user`` and ``peer`` from ``user``'s own store, decrypted."""
        if not peer:
            return []
        record = await self.directory.find_by_username(user)
        async with self.registry.operation(record.store_location) as store:
            profile = await store.get_profile(user)
            rows = await store.find_conversation(user, peer)
        private_key = profile.private_key if profile else None
        symmetric_key = profile.symmetric_key if profile else None

        history = []
        for row in rows:
            if not row.is_encrypted:
                history.append(row)
                continue
            if row.sender == user:
                unseal = partial(self.keys.decrypt_self, symmetric_key=symmetric_key)
            else:
                unseal = partial(self.keys.decrypt_own, private_key=private_key)
            if row.kind == MessageKind.FILE and row.file is not None:
                file = FileMeta(
                    url=unseal(row.file.url),
                    name=unseal(row.file.name),
                    type=unseal(row.file.type),
                    size=row.file.size,
                )
                history.append(replace(row, file=file, payload=FILE_PLACEHOLDER_TEXT))
            else:
                history.append(replace(row, payload=unseal(row.payload)))
        logger.info("Loaded message history", user=user, peer=peer, count=len(history))
        return history
