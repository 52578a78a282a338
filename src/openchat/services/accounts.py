"""Account operations and the ChatCore facade.

``ChatCore`` owns one instance of every service and is what the gateway
talks to. It also owns the degraded mode: when the directory store cannot be
reached at startup, logins are served by ``FallbackAuthenticator`` and every
other operation raises ``StoreUnreachable``.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from openchat.config.settings import settings
from openchat.database.directory_store import MongoDirectoryStore
from openchat.database.registry import ConnectionRegistry
from openchat.errors import (
    ConflictError,
    IncompleteAccount,
    InvalidPassword,
    MissingField,
    OpenChatError,
    PasswordNotSet,
    StoreUnreachable,
    WeakPassword,
)
from openchat.models import FileMeta, GroupRecord, MessageKind, PersonalProfile, random_base36
from openchat.services.directory import DirectoryService
from openchat.services.groups import GroupReplicationEngine
from openchat.services.identity import IdentityKeyManager, hash_password, verify_password
from openchat.services.link import LinkProtocol
from openchat.services.presence import SessionRegistry
from openchat.services.router import MessageRouter
from openchat.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class AuthResult:
    username: str
    authenticator: str
    degraded: bool = False


@dataclass
class Contact:
    username: str
    online: bool = False
    external: bool = False


@dataclass
class Contacts:
    users: List[Contact] = field(default_factory=list)
    groups: List[GroupRecord] = field(default_factory=list)


@dataclass
class HealthReport:
    degraded: bool
    directory: bool
    stores_open: int = 0
    stores_unreachable: int = 0
    sessions: int = 0

    @property
    def healthy(self) -> bool:
        return not self.degraded and self.directory and self.stores_unreachable == 0


class FallbackAuthenticator:
    """In-memory logins used while the directory store is unreachable.

    The first login for a username registers it; later logins must repeat
    the same password. Nothing here survives a restart.
    """

    def __init__(self):
        self._users: Dict[str, Dict[str, str]] = {}

    async def login(self, username: str, password: str) -> AuthResult:
        if not username or not password:
            raise MissingField("Username and password are required")
        entry = self._users.get(username)
        if entry is None:
            entry = {
                "password_hash": await asyncio.to_thread(hash_password, password),
                "authenticator": f"temporary-{random_base36(8)}",
            }
            self._users[username] = entry
            logger.warning("Fallback authentication registered user", username=username)
        elif not await asyncio.to_thread(verify_password, password, entry["password_hash"]):
            raise InvalidPassword("Invalid password")
        return AuthResult(username=username, authenticator=entry["authenticator"], degraded=True)

    def __contains__(self, username: str) -> bool:
        return username in self._users


class ChatCore:
    def __init__(
        self,
        directory: DirectoryService,
        registry: ConnectionRegistry,
        keys: Optional[IdentityKeyManager] = None,
        sessions: Optional[SessionRegistry] = None,
        public_location: Optional[str] = None,
        min_password_length: Optional[int] = None,
    ):
        self.directory = directory
        self.registry = registry
        self.keys = keys or IdentityKeyManager()
        self.sessions = sessions or SessionRegistry()
        self.links = LinkProtocol(directory, registry, public_location=public_location)
        self.router = MessageRouter(directory, registry, self.keys, self.sessions)
        self.groups = GroupReplicationEngine(directory, registry, self.sessions)
        self.min_password_length = min_password_length or settings.MIN_PASSWORD_LENGTH
        self.fallback: Optional[FallbackAuthenticator] = None
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls) -> "ChatCore":
        directory = DirectoryService(MongoDirectoryStore())
        return cls(directory, ConnectionRegistry())

    # Lifecycle

    async def start(self, connect_directory: bool = True) -> None:
        if connect_directory and not await self.directory.connect_with_retry():
            self.fallback = FallbackAuthenticator()
        self.registry.start()
        logger.info("Chat core started", degraded=self.degraded)

    async def close(self) -> None:
        await self.router.drain()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.registry.close_all()
        await self.directory.close()
        logger.info("Chat core stopped")

    @property
    def degraded(self) -> bool:
        return self.fallback is not None

    def _require_directory(self) -> None:
        if self.fallback is not None:
            raise StoreUnreachable("Directory store is unavailable; running with fallback authentication")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def health(self) -> HealthReport:
        """Ping the directory and every open personal store."""
        stores = await self.registry.ping_all()
        directory = False if self.degraded else await self.directory.health_check()
        return HealthReport(
            degraded=self.degraded,
            directory=directory,
            stores_open=len(stores),
            stores_unreachable=sum(1 for reachable in stores.values() if not reachable),
            sessions=len(self.sessions),
        )

    async def drain(self) -> None:
        """Wait for background reconciliation and cross-store deliveries."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.router.drain()

    # Accounts

    def _check_password(self, password: Optional[str]) -> None:
        if not password or len(password) < self.min_password_length:
            raise WeakPassword(f"Password must be at least {self.min_password_length} characters")

    async def signup(self, username: str, password: str) -> AuthResult:
        self._require_directory()
        username = (username or "").strip()
        if not username:
            raise MissingField("Username is required")
        self._check_password(password)

        password_hash = await asyncio.to_thread(hash_password, password)
        record = await self.directory.register(username, password_hash)
        identity = await asyncio.to_thread(self.keys.generate_identity)
        profile = PersonalProfile(
            username=username,
            password_hash=password_hash,
            online=True,
            public_key=identity.public_key,
            private_key=identity.private_key,
            symmetric_key=identity.symmetric_key,
        )
        try:
            async with self.registry.operation(record.store_location) as store:
                await store.insert_profile(profile)
        except OpenChatError:
            logger.error("Personal store write failed, rolling back directory record", username=username)
            await self.directory.unregister(username)
            raise
        logger.info("User signed up", username=username, authenticator=record.authenticator)
        return AuthResult(username=username, authenticator=record.authenticator)

    async def login(self, username: str, password: str) -> AuthResult:
        if self.fallback is not None:
            return await self.fallback.login(username, password)
        if not username or not password:
            raise MissingField("Username and password are required")

        record = await self.directory.find_by_username(username)
        async with self.registry.operation(record.store_location) as store:
            profile = await store.get_profile(username)
            if profile is None:
                raise IncompleteAccount("Account setup incomplete. Please sign up again.")
            if not profile.password_hash:
                raise PasswordNotSet("Password not set. Please set up your password.")
            if not await asyncio.to_thread(verify_password, password, profile.password_hash):
                raise InvalidPassword("Invalid password")

            updates: Dict[str, Any] = {"online": True}
            if not profile.public_key or not profile.private_key:
                public_key, private_key = await asyncio.to_thread(self.keys.generate_keypair)
                updates.update(public_key=public_key, private_key=private_key)
                logger.info("Generated missing keypair", username=username)
            if not profile.symmetric_key:
                updates["symmetric_key"] = self.keys.generate_symmetric_key()
                logger.info("Generated missing symmetric key", username=username)
            await store.update_profile(username, **updates)

        self._spawn(self._reconcile(username))
        logger.info("User logged in", username=username)
        return AuthResult(username=username, authenticator=record.authenticator)

    async def check_auth(self, username: str, password: str) -> AuthResult:
        return await self.login(username, password)

    async def setup_password(self, username: str, password: str) -> AuthResult:
        self._require_directory()
        self._check_password(password)
        record = await self.directory.find_by_username(username)
        async with self.registry.operation(record.store_location) as store:
            profile = await store.get_profile(username)
            if profile is None:
                raise IncompleteAccount("Account setup incomplete. Please sign up again.")
            if profile.password_hash:
                raise ConflictError("Password is already set")
            password_hash = await asyncio.to_thread(hash_password, password)
            await store.update_profile(username, password_hash=password_hash)
        logger.info("Password set up", username=username)
        return await self.login(username, password)

    async def _reconcile(self, username: str) -> None:
        try:
            await self.links.reconcile(username)
        except OpenChatError as e:
            logger.error("Link reconciliation aborted", username=username, error=str(e))

    async def disconnect(self, username: str) -> bool:
        """Mark ``username`` offline in its own store."""
        if self.fallback is not None:
            return False
        try:
            record = await self.directory.find_by_username(username)
            async with self.registry.operation(record.store_location) as store:
                return await store.update_profile(username, online=False)
        except OpenChatError as e:
            logger.error("Could not mark user offline", username=username, error=str(e))
            return False

    logout = disconnect

    async def subscribe_push(self, username: str, subscription: Dict[str, Any]) -> None:
        self._require_directory()
        if not subscription:
            raise MissingField("Subscription is required")
        encoded = json.dumps(subscription)
        record = await self.directory.find_by_username(username)
        async with self.registry.operation(record.store_location) as store:
            await store.update_profile(username, push_subscription=encoded)
        self.sessions.set_push_subscription(username, encoded)
        logger.info("Push subscription saved", username=username)

    # Contacts

    async def list_contacts(self, username: str) -> Contacts:
        self._require_directory()
        record = await self.directory.find_by_username(username)
        async with self.registry.operation(record.store_location) as store:
            local = await store.list_profiles(exclude=username)
            groups = await store.list_groups_for(username)
            links = await store.list_links()

        users: Dict[str, Contact] = {}
        for profile in local:
            users[profile.username] = Contact(username=profile.username)
        for link in links:
            users.setdefault(link.username, Contact(username=link.username, external=True)).external = True
            try:
                async with self.registry.operation(link.store_location) as peer_store:
                    remote = await peer_store.list_profiles(exclude=username)
            except OpenChatError as e:
                logger.error("Error fetching users from linked store", username=username, peer=link.username, error=str(e))
                continue
            for profile in remote:
                users.setdefault(profile.username, Contact(username=profile.username, external=True))

        online = set(self.sessions.online(users))
        for contact in users.values():
            contact.online = contact.username in online

        unique_groups = list({g.id: g for g in groups}.values())
        return Contacts(users=sorted(users.values(), key=lambda c: c.username), groups=unique_groups)

    # Linking and messaging

    async def link_database(self, username: str, authenticator: str):
        self._require_directory()
        return await self.links.link(username, authenticator)

    async def reconcile_links(self, username: str):
        self._require_directory()
        return await self.links.reconcile(username)

    async def send_message(
        self,
        sender: str,
        receiver: str,
        payload: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
        file: Optional[FileMeta] = None,
        message_id: Optional[str] = None,
    ):
        self._require_directory()
        return await self.router.send_direct(sender, receiver, payload, kind=kind, file=file, message_id=message_id)

    async def load_history(self, username: str, peer: Optional[str]):
        self._require_directory()
        return await self.router.load_history(username, peer)

    # Groups

    async def create_group(self, name: str, creator: str, members: List[str]):
        self._require_directory()
        return await self.groups.create(name, creator, members)

    async def group_message(
        self,
        group_id: str,
        sender: str,
        payload: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
        file: Optional[FileMeta] = None,
        message_id: Optional[str] = None,
    ):
        self._require_directory()
        return await self.groups.message(group_id, sender, payload, kind=kind, file=file, message_id=message_id)

    async def add_group_members(self, group_id: str, actor: str, members: List[str]):
        self._require_directory()
        return await self.groups.add_members(group_id, actor, members)

    async def delete_group(self, group_id: str, actor: str):
        self._require_directory()
        return await self.groups.delete(group_id, actor)

    async def get_group_details(self, group_id: str, username: str):
        self._require_directory()
        return await self.groups.details(group_id, username)

    async def load_group_messages(self, group_id: str, username: str):
        self._require_directory()
        return await self.groups.load_messages(group_id, username)
