"""Shared fixtures: in-memory stores standing in for MongoDB."""

import copy
import time
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from openchat.database.directory_store import AuthenticatorCollision
from openchat.database.registry import ConnectionRegistry
from openchat.errors import DuplicateUsername, StoreUnreachable
from openchat.models import (
    DirectoryRecord,
    ExternalLink,
    GroupMessage,
    GroupRecord,
    Message,
    PersonalProfile,
)
from openchat.services.accounts import ChatCore
from openchat.services.directory import DirectoryService
from openchat.services.identity import IdentityKeyManager
from openchat.services.presence import Session, SessionRegistry

STORE_TEMPLATE = "mongodb://localhost:27017/openchat"


class InMemoryPersonalStore:
    """PersonalStore double keeping each collection in a dict."""

    def __init__(self, location: str):
        self.location = location
        self.healthy = True
        self.last_used = time.monotonic()
        self.closed = False
        self.unreachable = False
        self._callbacks = []

        self.profiles: Dict[str, PersonalProfile] = {}
        self.links: Dict[tuple, ExternalLink] = {}
        self.messages: Dict[str, Message] = {}
        self.groups: Dict[str, GroupRecord] = {}
        self.group_messages: Dict[str, GroupMessage] = {}

    def _check(self):
        if self.unreachable:
            raise StoreUnreachable("store offline", location=self.location)

    def touch(self):
        self.last_used = time.monotonic()

    def add_unhealthy_callback(self, callback):
        self._callbacks.append(callback)

    def mark_unhealthy(self, reason="heartbeat failed"):
        self.healthy = False
        for callback in self._callbacks:
            callback(self.location)

    async def ping(self):
        return not self.unreachable

    async def close(self):
        self.closed = True

    # Profiles

    async def get_profile(self, username):
        self._check()
        return copy.deepcopy(self.profiles.get(username))

    async def insert_profile(self, profile):
        self._check()
        self.profiles[profile.username] = copy.deepcopy(profile)

    async def update_profile(self, username, **fields):
        self._check()
        profile = self.profiles.get(username)
        if profile is None:
            return False
        for name, value in fields.items():
            if not hasattr(profile, name):
                raise ValueError(f"Unknown profile fields: {[name]}")
            setattr(profile, name, value)
        return True

    async def upsert_placeholder_profile(self, username):
        self._check()
        profile = self.profiles.setdefault(username, PersonalProfile(username=username))
        profile.online = False

    async def list_profiles(self, exclude=None):
        self._check()
        return [
            PersonalProfile(username=p.username, online=p.online)
            for name, p in self.profiles.items()
            if name != exclude
        ]

    # Links

    async def get_link(self, username, authenticator=None):
        self._check()
        for (name, auth), link in self.links.items():
            if name == username and (authenticator is None or auth == authenticator):
                return copy.deepcopy(link)
        return None

    async def list_links(self, usernames=None):
        self._check()
        return [
            copy.deepcopy(link)
            for link in self.links.values()
            if usernames is None or link.username in usernames
        ]

    async def upsert_link(self, link):
        self._check()
        self.links[(link.username, link.authenticator)] = copy.deepcopy(link)

    # Messages

    async def insert_message(self, message):
        self._check()
        if message.message_id in self.messages:
            return False
        self.messages[message.message_id] = copy.deepcopy(message)
        return True

    async def find_conversation(self, user_a, user_b):
        self._check()
        rows = [
            copy.deepcopy(m)
            for m in self.messages.values()
            if {m.sender, m.receiver} == {user_a, user_b}
        ]
        return sorted(rows, key=lambda m: m.timestamp)

    # Groups

    async def get_group(self, group_id):
        self._check()
        return copy.deepcopy(self.groups.get(group_id))

    async def insert_group_if_absent(self, group):
        self._check()
        if group.id in self.groups:
            return False
        self.groups[group.id] = copy.deepcopy(group)
        return True

    async def save_group(self, group):
        self._check()
        self.groups[group.id] = copy.deepcopy(group)

    async def delete_group(self, group_id):
        self._check()
        return self.groups.pop(group_id, None) is not None

    async def list_groups_for(self, username):
        self._check()
        return [copy.deepcopy(g) for g in self.groups.values() if username in g.members]

    async def insert_group_message_if_absent(self, message):
        self._check()
        if message.id in self.group_messages:
            return False
        self.group_messages[message.id] = copy.deepcopy(message)
        return True

    async def list_group_messages(self, group_id):
        self._check()
        rows = [copy.deepcopy(m) for m in self.group_messages.values() if m.group_id == group_id]
        return sorted(rows, key=lambda m: m.timestamp)

    async def delete_group_messages(self, group_id):
        self._check()
        doomed = [k for k, m in self.group_messages.items() if m.group_id == group_id]
        for key in doomed:
            del self.group_messages[key]
        return len(doomed)


class StoreWorld:
    """Every personal store in a test, keyed by location."""

    def __init__(self):
        self.stores: Dict[str, InMemoryPersonalStore] = {}
        self.down: set = set()
        self.opens: List[str] = []

    async def open(self, location: str) -> InMemoryPersonalStore:
        self.opens.append(location)
        if location in self.down:
            raise StoreUnreachable("server selection timeout", location=location)
        store = self.stores.setdefault(location, InMemoryPersonalStore(location))
        # A reopened handle reconnects to the same data
        store.closed = False
        store.healthy = True
        return store

    def store_for(self, location: str) -> InMemoryPersonalStore:
        return self.stores.setdefault(location, InMemoryPersonalStore(location))


class InMemoryDirectoryBackend:
    def __init__(self, connect_failures: int = 0):
        self.records: Dict[str, DirectoryRecord] = {}
        self.connect_failures = connect_failures
        self.connect_calls = 0
        self.closed = False
        self.collide_next = 0
        self.healthy = True

    async def connect(self):
        self.connect_calls += 1
        if self.connect_calls <= self.connect_failures:
            raise StoreUnreachable("directory unreachable")

    async def find_by_username(self, username):
        return copy.deepcopy(self.records.get(username))

    async def find_by_authenticator(self, authenticator):
        for record in self.records.values():
            if record.authenticator == authenticator:
                return copy.deepcopy(record)
        return None

    async def authenticator_exists(self, authenticator):
        return any(r.authenticator == authenticator for r in self.records.values())

    async def insert(self, record):
        if self.collide_next:
            self.collide_next -= 1
            raise AuthenticatorCollision(record.authenticator)
        if record.username in self.records:
            raise DuplicateUsername(f"Username '{record.username}' already exists")
        if await self.authenticator_exists(record.authenticator):
            raise AuthenticatorCollision(record.authenticator)
        self.records[record.username] = copy.deepcopy(record)

    async def update_store_location(self, username, location):
        record = self.records.get(username)
        if record is None:
            return False
        record.store_location = location
        return True

    async def delete(self, username):
        return self.records.pop(username, None) is not None

    async def health_check(self):
        return self.healthy

    async def close(self):
        self.closed = True


class Recorder:
    """Live-channel sender that keeps every event it was given."""

    def __init__(self):
        self.events: List[tuple] = []

    async def __call__(self, event, data):
        self.events.append((event, data))

    def named(self, event) -> List:
        return [data for name, data in self.events if name == event]


@pytest.fixture(scope="session")
def keys():
    return IdentityKeyManager()


@pytest.fixture
def world():
    return StoreWorld()


@pytest.fixture
def backend():
    return InMemoryDirectoryBackend()


@pytest.fixture
def directory(backend):
    return DirectoryService(backend, location_template=STORE_TEMPLATE)


@pytest.fixture
def registry(world):
    return ConnectionRegistry(opener=world.open, poll_interval=0.01)


@pytest.fixture
def sessions():
    return SessionRegistry()


@pytest.fixture
def core(directory, registry, keys, sessions):
    chat = ChatCore(directory, registry, keys=keys, sessions=sessions, public_location="")
    chat.groups.batch_delay = 0
    return chat


def connect(sessions: SessionRegistry, username: str, session_id: Optional[str] = None) -> Recorder:
    recorder = Recorder()
    sessions.connect(Session(username=username, send=recorder, session_id=session_id or username))
    return recorder


@pytest.fixture
def live(sessions):
    def _connect(username):
        return connect(sessions, username)
    return _connect


async def store_of(core: ChatCore, world: StoreWorld, username: str) -> InMemoryPersonalStore:
    record = await core.directory.find_by_username(username)
    return world.store_for(record.store_location)


@pytest_asyncio.fixture
async def alice_bob(core):
    alice = await core.signup("alice", "secret123")
    bob = await core.signup("bob", "secret456")
    return alice, bob


@pytest_asyncio.fixture
async def linked(core, alice_bob):
    alice, bob = alice_bob
    await core.link_database("alice", bob.authenticator)
    return alice, bob
