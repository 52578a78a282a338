"""
MongoDB handle for one user's personal database.

A personal database holds five collections: ``users`` (profiles),
``externaldatabases`` (links to peer stores), ``messages``, ``groupchats``
and ``groupmessages``. Every write used by the replication protocols is an
upsert or a duplicate-tolerant insert keyed by a natural identifier, so a
retried operation converges instead of duplicating rows.
"""

from __future__ import annotations

import functools
import time
from typing import Callable, Dict, List, Optional, Protocol

from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.monitoring import ServerHeartbeatListener

from openchat.config.settings import settings
from openchat.errors import DuplicateUsername, StoreUnreachable
from openchat.models import (
    ExternalLink,
    GroupMessage,
    GroupRecord,
    Message,
    PersonalProfile,
)
from openchat.utils.logging_config import get_logger, redact_location

logger = get_logger(__name__)

USERS = "users"
LINKS = "externaldatabases"
MESSAGES = "messages"
GROUPS = "groupchats"
GROUP_MESSAGES = "groupmessages"


class PersonalStore(Protocol):
    """Operations the protocols need from a personal store handle."""

    location: str
    healthy: bool
    last_used: float

    def touch(self) -> None: ...
    def add_unhealthy_callback(self, callback: Callable[[str], None]) -> None: ...
    def mark_unhealthy(self, reason: str) -> None: ...
    async def ping(self) -> bool: ...
    async def close(self) -> None: ...

    async def get_profile(self, username: str) -> Optional[PersonalProfile]: ...
    async def insert_profile(self, profile: PersonalProfile) -> None: ...
    async def update_profile(self, username: str, **fields) -> bool: ...
    async def upsert_placeholder_profile(self, username: str) -> None: ...
    async def list_profiles(self, exclude: Optional[str] = None) -> List[PersonalProfile]: ...

    async def get_link(self, username: str, authenticator: Optional[str] = None) -> Optional[ExternalLink]: ...
    async def list_links(self, usernames: Optional[List[str]] = None) -> List[ExternalLink]: ...
    async def upsert_link(self, link: ExternalLink) -> None: ...

    async def insert_message(self, message: Message) -> bool: ...
    async def find_conversation(self, user_a: str, user_b: str) -> List[Message]: ...

    async def get_group(self, group_id: str) -> Optional[GroupRecord]: ...
    async def insert_group_if_absent(self, group: GroupRecord) -> bool: ...
    async def save_group(self, group: GroupRecord) -> None: ...
    async def delete_group(self, group_id: str) -> bool: ...
    async def list_groups_for(self, username: str) -> List[GroupRecord]: ...

    async def insert_group_message_if_absent(self, message: GroupMessage) -> bool: ...
    async def list_group_messages(self, group_id: str) -> List[GroupMessage]: ...
    async def delete_group_messages(self, group_id: str) -> int: ...


def _store_errors(method):
    """Re-raise driver failures as ``StoreUnreachable`` tagged with the location."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except PyMongoError as e:
            logger.error(
                "Personal store operation failed",
                operation=method.__name__,
                location=redact_location(self.location),
                error=str(e),
            )
            raise StoreUnreachable(str(e), location=self.location) from e

    return wrapper


class _HeartbeatWatcher(ServerHeartbeatListener):
    """Flags the owning handle unhealthy when the server stops answering heartbeats."""

    def __init__(self):
        self.store: Optional["MongoPersonalStore"] = None

    def started(self, event):
        pass

    def succeeded(self, event):
        pass

    def failed(self, event):
        if self.store is not None:
            self.store.mark_unhealthy(f"heartbeat failed: {event.reply}")


def client_options() -> Dict:
    options = {
        "serverSelectionTimeoutMS": settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        "connectTimeoutMS": settings.MONGO_CONNECT_TIMEOUT_MS,
        "socketTimeoutMS": settings.MONGO_SOCKET_TIMEOUT_MS,
        "maxPoolSize": settings.MONGO_MAX_POOL_SIZE,
        "minPoolSize": 1,
        "maxIdleTimeMS": settings.MONGO_MAX_IDLE_TIME_MS,
        "retryWrites": True,
        "retryReads": True,
        "tz_aware": True,
    }
    if settings.MONGO_TLS:
        options["tls"] = True
        options["tlsAllowInvalidCertificates"] = settings.MONGO_TLS_ALLOW_INVALID
        options["tlsAllowInvalidHostnames"] = settings.MONGO_TLS_ALLOW_INVALID
    return options


class MongoPersonalStore:
    """Personal database handle backed by an ``AsyncMongoClient``."""

    def __init__(self, location: str, client: AsyncMongoClient):
        self.location = location
        self.client = client
        self.db = client.get_default_database(default=settings.GENERAL_DB_NAME)
        self.users = self.db[USERS]
        self.links = self.db[LINKS]
        self.messages = self.db[MESSAGES]
        self.groups = self.db[GROUPS]
        self.group_messages = self.db[GROUP_MESSAGES]
        self.healthy = True
        self.last_used = time.monotonic()
        self._unhealthy_callbacks: List[Callable[[str], None]] = []

    @classmethod
    async def open(cls, location: str) -> "MongoPersonalStore":
        """Connect to ``location``, verify it answers, and create indexes."""
        watcher = _HeartbeatWatcher()
        client = AsyncMongoClient(location, event_listeners=[watcher], **client_options())
        store = cls(location, client)
        watcher.store = store
        try:
            await client.admin.command("ping")
            await store._create_indexes()
        except PyMongoError as e:
            await client.close()
            raise StoreUnreachable(f"cannot open personal store: {e}", location=location) from e
        logger.info("Personal store opened", location=redact_location(location), db=store.db.name)
        return store

    async def _create_indexes(self) -> None:
        try:
            await self.users.create_index([("username", ASCENDING)], unique=True, name="idx_username_unique")
            await self.links.create_index(
                [("username", ASCENDING), ("authentificator", ASCENDING)],
                unique=True,
                name="idx_link_unique",
            )
            # Sparse so rows written before message ids existed do not collide
            await self.messages.create_index(
                [("messageId", ASCENDING)], unique=True, sparse=True, name="idx_messageId_unique"
            )
            await self.messages.create_index(
                [("sender", ASCENDING), ("receiver", ASCENDING), ("timestamp", ASCENDING)],
                name="idx_conversation_timeline",
            )
            await self.groups.create_index([("members", ASCENDING)], name="idx_group_members")
            await self.group_messages.create_index(
                [("group_id", ASCENDING), ("timestamp", ASCENDING)], name="idx_group_timeline"
            )
        except PyMongoError as e:
            logger.warning("Index creation warning (may already exist)", error=str(e))

    # Lifecycle

    def touch(self) -> None:
        self.last_used = time.monotonic()

    def add_unhealthy_callback(self, callback: Callable[[str], None]) -> None:
        self._unhealthy_callbacks.append(callback)

    def mark_unhealthy(self, reason: str) -> None:
        if not self.healthy:
            return
        self.healthy = False
        logger.warning("Personal store marked unhealthy", location=redact_location(self.location), reason=reason)
        for callback in self._unhealthy_callbacks:
            callback(self.location)

    async def ping(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    async def close(self) -> None:
        await self.client.close()
        logger.info("Personal store closed", location=redact_location(self.location))

    # Profiles

    @_store_errors
    async def get_profile(self, username: str) -> Optional[PersonalProfile]:
        doc = await self.users.find_one({"username": username})
        return PersonalProfile.from_doc(doc) if doc else None

    @_store_errors
    async def insert_profile(self, profile: PersonalProfile) -> None:
        try:
            await self.users.insert_one(profile.to_doc())
        except DuplicateKeyError as e:
            raise DuplicateUsername(f"Profile '{profile.username}' already exists") from e

    @_store_errors
    async def update_profile(self, username: str, **fields) -> bool:
        result = await self.users.update_one({"username": username}, {"$set": _profile_fields(fields)})
        return result.matched_count > 0

    @_store_errors
    async def upsert_placeholder_profile(self, username: str) -> None:
        # Only presence is touched, an existing owner profile keeps its keys
        await self.users.update_one(
            {"username": username},
            {"$set": {"online": False}, "$setOnInsert": {"username": username}},
            upsert=True,
        )

    @_store_errors
    async def list_profiles(self, exclude: Optional[str] = None) -> List[PersonalProfile]:
        query = {"username": {"$ne": exclude}} if exclude else {}
        docs = await self.users.find(query, {"username": 1, "online": 1}).to_list(length=None)
        return [PersonalProfile.from_doc(d) for d in docs]

    # External links

    @_store_errors
    async def get_link(self, username: str, authenticator: Optional[str] = None) -> Optional[ExternalLink]:
        query = {"username": username}
        if authenticator is not None:
            query["authentificator"] = authenticator
        doc = await self.links.find_one(query)
        return ExternalLink.from_doc(doc) if doc else None

    @_store_errors
    async def list_links(self, usernames: Optional[List[str]] = None) -> List[ExternalLink]:
        query = {"username": {"$in": list(usernames)}} if usernames is not None else {}
        docs = await self.links.find(query).to_list(length=None)
        return [ExternalLink.from_doc(d) for d in docs]

    @_store_errors
    async def upsert_link(self, link: ExternalLink) -> None:
        await self.links.update_one(
            {"username": link.username, "authentificator": link.authenticator},
            {"$set": link.to_doc()},
            upsert=True,
        )

    # Direct messages

    @_store_errors
    async def insert_message(self, message: Message) -> bool:
        try:
            await self.messages.insert_one(message.to_doc())
            return True
        except DuplicateKeyError:
            # Already delivered - expected with at-least-once delivery
            logger.info("Duplicate message ignored (idempotency)", message_id=message.message_id)
            return False

    @_store_errors
    async def find_conversation(self, user_a: str, user_b: str) -> List[Message]:
        query = {
            "$or": [
                {"sender": user_a, "receiver": user_b},
                {"sender": user_b, "receiver": user_a},
            ]
        }
        docs = await self.messages.find(query).sort("timestamp", ASCENDING).to_list(length=None)
        return [Message.from_doc(d) for d in docs]

    # Groups

    @_store_errors
    async def get_group(self, group_id: str) -> Optional[GroupRecord]:
        doc = await self.groups.find_one({"_id": group_id})
        return GroupRecord.from_doc(doc) if doc else None

    @_store_errors
    async def insert_group_if_absent(self, group: GroupRecord) -> bool:
        doc = group.to_doc()
        doc.pop("_id")
        result = await self.groups.update_one({"_id": group.id}, {"$setOnInsert": doc}, upsert=True)
        return result.upserted_id is not None

    @_store_errors
    async def save_group(self, group: GroupRecord) -> None:
        await self.groups.replace_one({"_id": group.id}, group.to_doc(), upsert=True)

    @_store_errors
    async def delete_group(self, group_id: str) -> bool:
        result = await self.groups.delete_one({"_id": group_id})
        return result.deleted_count > 0

    @_store_errors
    async def list_groups_for(self, username: str) -> List[GroupRecord]:
        docs = await self.groups.find({"members": username}).to_list(length=None)
        return [GroupRecord.from_doc(d) for d in docs]

    # Group messages

    @_store_errors
    async def insert_group_message_if_absent(self, message: GroupMessage) -> bool:
        try:
            await self.group_messages.insert_one(message.to_doc())
            return True
        except DuplicateKeyError:
            return False

    @_store_errors
    async def list_group_messages(self, group_id: str) -> List[GroupMessage]:
        docs = await self.group_messages.find({"group_id": group_id}).sort("timestamp", ASCENDING).to_list(length=None)
        return [GroupMessage.from_doc(d) for d in docs]

    @_store_errors
    async def delete_group_messages(self, group_id: str) -> int:
        result = await self.group_messages.delete_many({"group_id": group_id})
        return result.deleted_count


_PROFILE_FIELD_NAMES = {
    "password_hash": "password",
    "online": "online",
    "push_subscription": "push_subscription",
    "public_key": "public_key",
    "private_key": "private_key",
    "symmetric_key": "symmetric_key",
}


def _profile_fields(fields: Dict) -> Dict:
    unknown = set(fields) - set(_PROFILE_FIELD_NAMES)
    if unknown:
        raise ValueError(f"Unknown profile fields: {sorted(unknown)}")
    return {_PROFILE_FIELD_NAMES[k]: v for k, v in fields.items()}
