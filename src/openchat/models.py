"""Typed records stored in the directory and personal databases.

Mongo documents keep the field names of the existing stores
(``authentificator``, ``database_url``, ``public_key``...). Each record
converts to and from that document shape; optional fields default to
``None`` when absent from a stored document.
"""

from __future__ import annotations

import random
import string
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

FILE_PLACEHOLDER_TEXT = "File attachment"

_BASE36 = string.digits + string.ascii_lowercase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def random_base36(length: int) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def new_message_id() -> str:
    return f"msg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def new_group_id() -> str:
    return f"group-{int(time.time() * 1000)}-{random_base36(6)}"


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageKind(str, Enum):
    TEXT = "text"
    FILE = "file"


@dataclass
class DirectoryRecord:
    authenticator: str
    username: str
    password_hash: Optional[str]
    store_location: str

    def to_doc(self) -> Dict[str, Any]:
        return {
            "authentificator": self.authenticator,
            "username": self.username,
            "password": self.password_hash,
            "database_url": self.store_location,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "DirectoryRecord":
        return cls(
            authenticator=doc["authentificator"],
            username=doc["username"],
            password_hash=doc.get("password"),
            store_location=doc["database_url"],
        )


@dataclass
class PersonalProfile:
    username: str
    password_hash: Optional[str] = None
    online: bool = False
    push_subscription: Optional[str] = None
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    symmetric_key: Optional[str] = None

    @property
    def has_keys(self) -> bool:
        return bool(self.public_key and self.private_key and self.symmetric_key)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "password": self.password_hash,
            "online": self.online,
            "push_subscription": self.push_subscription,
            "public_key": self.public_key,
            "private_key": self.private_key,
            "symmetric_key": self.symmetric_key,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "PersonalProfile":
        return cls(
            username=doc["username"],
            password_hash=doc.get("password"),
            online=bool(doc.get("online", False)),
            push_subscription=doc.get("push_subscription"),
            public_key=doc.get("public_key"),
            private_key=doc.get("private_key"),
            symmetric_key=doc.get("symmetric_key"),
        )


@dataclass
class ExternalLink:
    username: str
    authenticator: str
    store_location: str
    public_key: Optional[str] = None

    def to_doc(self) -> Dict[str, Any]:
        return {
            "username": self.username,
            "authentificator": self.authenticator,
            "database_url": self.store_location,
            "public_key": self.public_key,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "ExternalLink":
        return cls(
            username=doc["username"],
            authenticator=doc["authentificator"],
            store_location=doc["database_url"],
            public_key=doc.get("public_key"),
        )


@dataclass
class FileMeta:
    url: str
    name: str
    type: str
    size: Optional[int] = None


@dataclass
class Message:
    sender: str
    receiver: str
    payload: Optional[str]
    kind: MessageKind = MessageKind.TEXT
    file: Optional[FileMeta] = None
    is_encrypted: bool = True
    timestamp: datetime = field(default_factory=utcnow)
    message_id: str = field(default_factory=new_message_id)

    def to_doc(self) -> Dict[str, Any]:
        doc = {
            "messageId": self.message_id,
            "sender": self.sender,
            "receiver": self.receiver,
            "message": self.payload,
            "kind": self.kind.value,
            "is_encrypted": self.is_encrypted,
            "timestamp": self.timestamp,
        }
        if self.file is not None:
            doc.update({
                "file_url": self.file.url,
                "file_name": self.file.name,
                "file_type": self.file.type,
                "file_size": self.file.size,
            })
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Message":
        file = None
        if doc.get("file_url") and doc.get("file_name"):
            file = FileMeta(
                url=doc["file_url"],
                name=doc["file_name"],
                type=doc.get("file_type") or "",
                size=doc.get("file_size"),
            )
        kind = MessageKind(doc.get("kind") or (MessageKind.FILE.value if file else MessageKind.TEXT.value))
        return cls(
            sender=doc["sender"],
            receiver=doc["receiver"],
            payload=doc.get("message"),
            kind=kind,
            file=file,
            is_encrypted=bool(doc.get("is_encrypted", True)),
            timestamp=_as_aware(doc.get("timestamp")) or utcnow(),
            message_id=doc.get("messageId") or str(doc.get("_id", "")) or new_message_id(),
        )


def unique_members(members) -> List[str]:
    """De-duplicate usernames, keeping first-seen order."""
    seen = set()
    ordered = []
    for member in members:
        if member and member not in seen:
            seen.add(member)
            ordered.append(member)
    return ordered


@dataclass
class GroupRecord:
    id: str
    name: str
    creator: str
    members: List[str]
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.members = unique_members(self.members)

    def has_member(self, username: str) -> bool:
        return username in self.members

    def copy(self, **changes) -> "GroupRecord":
        changes.setdefault("members", list(self.members))
        return replace(self, **changes)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "name": self.name,
            "creator": self.creator,
            "members": list(self.members),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "GroupRecord":
        created = _as_aware(doc.get("created_at")) or utcnow()
        return cls(
            id=str(doc["_id"]),
            name=doc["name"],
            creator=doc["creator"],
            members=list(doc.get("members") or []),
            created_at=created,
            updated_at=_as_aware(doc.get("updated_at")) or created,
        )


@dataclass
class GroupMessage:
    id: str
    group_id: str
    sender: str
    payload: Optional[str]
    kind: MessageKind = MessageKind.TEXT
    file: Optional[FileMeta] = None
    timestamp: datetime = field(default_factory=utcnow)
    is_encrypted: bool = False

    def to_doc(self) -> Dict[str, Any]:
        doc = {
            "_id": self.id,
            "group_id": self.group_id,
            "sender": self.sender,
            "message": self.payload,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "is_encrypted": self.is_encrypted,
        }
        if self.file is not None:
            doc.update({
                "file_url": self.file.url,
                "file_name": self.file.name,
                "file_type": self.file.type,
                "file_size": self.file.size,
            })
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "GroupMessage":
        file = None
        if doc.get("file_url"):
            file = FileMeta(
                url=doc["file_url"],
                name=doc.get("file_name") or "",
                type=doc.get("file_type") or "",
                size=doc.get("file_size"),
            )
        return cls(
            id=str(doc["_id"]),
            group_id=doc["group_id"],
            sender=doc["sender"],
            payload=doc.get("message"),
            kind=MessageKind(doc.get("kind") or (MessageKind.FILE.value if file else MessageKind.TEXT.value)),
            file=file,
            timestamp=_as_aware(doc.get("timestamp")) or utcnow(),
            is_encrypted=bool(doc.get("is_encrypted", False)),
        )
