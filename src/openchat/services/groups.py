"""Group replication across member stores.

Every group operation applies to the initiator's own store first, then fans
out to each other member's store, resolved through the ExternalLinks in the
initiator's store. Members the initiator has not linked with are skipped:
their stores are unknown to the initiator.

Fan-out runs in small batches with a pause between them, so members sharing
one database server are not hit all at once. Failures are caught per member
and recorded in a ``FanoutReport``. They never fail the operation, and an
unreachable member simply keeps a stale copy until a later write reaches it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from openchat.config.settings import settings
from openchat.database.personal_store import PersonalStore
from openchat.database.registry import ConnectionRegistry
from openchat.errors import (
    GroupNotFound,
    MissingField,
    NotAMember,
    NotCreator,
    OpenChatError,
)
from openchat.models import (
    FILE_PLACEHOLDER_TEXT,
    FileMeta,
    GroupMessage,
    GroupRecord,
    MessageKind,
    new_group_id,
    new_message_id,
    unique_members,
    utcnow,
)
from openchat.services.directory import DirectoryService
from openchat.services.presence import SessionRegistry
from openchat.utils.logging_config import get_logger, redact_location

logger = get_logger(__name__)

MemberAction = Callable[[str, PersonalStore], Awaitable[None]]


@dataclass
class FanoutReport:
    delivered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed and not self.skipped


@dataclass
class GroupOutcome:
    group: GroupRecord
    report: FanoutReport
    added: List[str] = field(default_factory=list)
    message: Optional[GroupMessage] = None


@dataclass
class GroupDetails:
    group: GroupRecord
    available_contacts: List[str]


def group_summary(group: GroupRecord) -> Dict:
    return {
        "id": group.id,
        "name": group.name,
        "creator": group.creator,
        "members": list(group.members),
        "type": "group",
    }


def group_message_payload(group: GroupRecord, message: GroupMessage) -> Dict:
    event = {
        "groupId": group.id,
        "groupName": group.name,
        "from": message.sender,
        "msg": message.payload,
        "timestamp": message.timestamp.isoformat(),
        "messageId": message.id,
        "isFileMessage": message.kind == MessageKind.FILE,
    }
    if message.file is not None:
        event.update({
            "fileUrl": message.file.url,
            "fileName": message.file.name,
            "fileType": message.file.type,
            "fileSize": message.file.size,
        })
    return event


class GroupReplicationEngine:
    def __init__(
        self,
        directory: DirectoryService,
        registry: ConnectionRegistry,
        sessions: SessionRegistry,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
    ):
        self.directory = directory
        self.registry = registry
        self.sessions = sessions
        self.batch_size = batch_size or settings.GROUP_FANOUT_BATCH_SIZE
        self.batch_delay = batch_delay if batch_delay is not None else settings.GROUP_FANOUT_BATCH_DELAY

    # Helpers

    async def _own_location(self, username: str) -> str:
        record = await self.directory.find_by_username(username)
        return record.store_location

    async def _load_member_group(self, store: PersonalStore, group_id: str, username: str) -> GroupRecord:
        group = await store.get_group(group_id)
        if group is None:
            raise GroupNotFound(f"Group {group_id} not found")
        if not group.has_member(username):
            raise NotAMember("You are not a member of this group")
        return group

    async def _resolve_members(self, store: PersonalStore, initiator: str, members: List[str], report: FanoutReport) -> Dict[str, str]:
        others = [m for m in unique_members(members) if m != initiator]
        if not others:
            return {}
        links = await store.list_links(others)
        resolved = {link.username: link.store_location for link in links}
        for member in others:
            if member not in resolved:
                logger.debug("Member not linked to initiator, skipping", initiator=initiator, member=member)
                report.skipped.append(member)
        return resolved

    async def _fan_out(self, targets: Dict[str, str], action: MemberAction, report: FanoutReport, op: str, group_id: str) -> None:
        members = list(targets)
        for start in range(0, len(members), self.batch_size):
            batch = members[start:start + self.batch_size]
            await asyncio.gather(*(self._apply(m, targets[m], action, report, op, group_id) for m in batch))
            if start + self.batch_size < len(members):
                await asyncio.sleep(self.batch_delay)

    async def _apply(self, member: str, location: str, action: MemberAction, report: FanoutReport, op: str, group_id: str) -> None:
        try:
            async with self.registry.operation(location) as store:
                await action(member, store)
            report.delivered.append(member)
        except OpenChatError as e:
            logger.error(
                "Group fan-out failed for member",
                op=op,
                group_id=group_id,
                member=member,
                location=redact_location(location),
                error=str(e),
            )
            report.failed[member] = e.code

    # Operations

    async def create(self, name: str, creator: str, members: List[str]) -> GroupOutcome:
        if not name or not name.strip():
            raise MissingField("Group name is required")
        group = GroupRecord(
            id=new_group_id(),
            name=name.strip(),
            creator=creator,
            members=list(members) + [creator],
        )
        report = FanoutReport()
        location = await self._own_location(creator)
        async with self.registry.operation(location) as store:
            await store.insert_group_if_absent(group)
            targets = await self._resolve_members(store, creator, group.members, report)
        logger.info("Group created in creator's store", group_id=group.id, creator=creator, members=group.members)

        async def replicate(member: str, member_store: PersonalStore) -> None:
            if await member_store.insert_group_if_absent(group.copy()):
                logger.info("Group added to member store", group_id=group.id, member=member)
            else:
                logger.info("Group already exists in member store", group_id=group.id, member=member)

        await self._fan_out(targets, replicate, report, "create", group.id)

        summary = group_summary(group)
        await self.sessions.emit(creator, "group created", summary)
        await self.sessions.broadcast(group.members, "group created", summary, exclude=creator)
        return GroupOutcome(group=group, report=report)

    async def message(
        self,
        group_id: str,
        sender: str,
        payload: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
        file: Optional[FileMeta] = None,
        message_id: Optional[str] = None,
    ) -> GroupOutcome:
        if kind == MessageKind.FILE and file is None:
            raise MissingField("File metadata is required for file messages")
        if kind == MessageKind.TEXT and not payload:
            raise MissingField("Message text is required")

        report = FanoutReport()
        now = utcnow()
        message = GroupMessage(
            id=message_id or new_message_id(),
            group_id=group_id,
            sender=sender,
            payload=FILE_PLACEHOLDER_TEXT if kind == MessageKind.FILE else payload,
            kind=kind,
            file=file,
            timestamp=now,
        )

        location = await self._own_location(sender)
        async with self.registry.operation(location) as store:
            group = await self._load_member_group(store, group_id, sender)
            await store.insert_group_message_if_absent(message)
            group.updated_at = now
            await store.save_group(group)
            targets = await self._resolve_members(store, sender, group.members, report)
        logger.info("Group message saved to sender store", group_id=group_id, sender=sender, message_id=message.id)

        async def replicate(member: str, member_store: PersonalStore) -> None:
            existing = await member_store.get_group(group_id)
            if existing is None:
                await member_store.insert_group_if_absent(group.copy())
                logger.info("Group synced into member store", group_id=group_id, member=member)
            else:
                changed = False
                if sorted(existing.members) != sorted(group.members):
                    existing.members = list(group.members)
                    changed = True
                if existing.updated_at is None or group.updated_at > existing.updated_at:
                    existing.updated_at = group.updated_at
                    changed = True
                if changed:
                    await member_store.save_group(existing)
            if not await member_store.insert_group_message_if_absent(message):
                logger.info("Group message already present, skipping", group_id=group_id, member=member, message_id=message.id)

        logger.info("Propagating group message", group_id=group_id, targets=len(targets))
        await self._fan_out(targets, replicate, report, "message", group_id)

        await self.sessions.broadcast(group.members, "group message", group_message_payload(group, message))
        return GroupOutcome(group=group, report=report, message=message)

    async def add_members(self, group_id: str, actor: str, new_members: List[str]) -> GroupOutcome:
        report = FanoutReport()
        location = await self._own_location(actor)
        async with self.registry.operation(location) as store:
            group = await self._load_member_group(store, group_id, actor)
            added = [m for m in unique_members(new_members) if not group.has_member(m)]
            if not added:
                logger.info("All users are already members of this group", group_id=group_id)
                return GroupOutcome(group=group, report=report, added=[])
            group.members = group.members + added
            group.updated_at = utcnow()
            await store.save_group(group)
            targets = await self._resolve_members(store, actor, group.members, report)
        logger.info("Group members added locally", group_id=group_id, actor=actor, added=added)

        async def replicate(member: str, member_store: PersonalStore) -> None:
            existing = await member_store.get_group(group_id)
            if existing is None:
                await member_store.insert_group_if_absent(group.copy())
            else:
                existing.members = list(group.members)
                existing.updated_at = group.updated_at
                await member_store.save_group(existing)

        await self._fan_out(targets, replicate, report, "add_members", group_id)

        update = {
            "groupId": group_id,
            "groupName": group.name,
            "addedBy": actor,
            "addedMembers": added,
            "allMembers": list(group.members),
        }
        await self.sessions.emit(actor, "group members added", update)
        for member in group.members:
            if member == actor:
                continue
            if member in added:
                await self.sessions.emit(member, "added to group", {"groupId": group_id, "groupName": group.name, "addedBy": actor})
            else:
                await self.sessions.emit(member, "group members added", update)
        return GroupOutcome(group=group, report=report, added=added)

    async def delete(self, group_id: str, actor: str) -> GroupOutcome:
        report = FanoutReport()
        location = await self._own_location(actor)
        async with self.registry.operation(location) as store:
            group = await store.get_group(group_id)
            if group is None:
                raise GroupNotFound(f"Group {group_id} not found")
            if group.creator != actor:
                raise NotCreator("Only the group creator can delete the group.")
            await store.delete_group(group_id)
            removed = await store.delete_group_messages(group_id)
            targets = await self._resolve_members(store, actor, group.members, report)
        logger.info("Group deleted from creator store", group_id=group_id, messages_removed=removed)

        async def replicate(member: str, member_store: PersonalStore) -> None:
            await member_store.delete_group(group_id)
            await member_store.delete_group_messages(group_id)

        await self._fan_out(targets, replicate, report, "delete", group_id)

        notice = {"groupId": group_id, "groupName": group.name, "deletedBy": actor}
        await self.sessions.emit(actor, "group deleted", notice)
        await self.sessions.broadcast(group.members, "group deleted", notice, exclude=actor)
        return GroupOutcome(group=group, report=report)

    async def details(self, group_id: str, username: str) -> GroupDetails:
        location = await self._own_location(username)
        async with self.registry.operation(location) as store:
            group = await self._load_member_group(store, group_id, username)
            local = await store.list_profiles(exclude=username)
            links = await store.list_links()
        contacts = sorted({p.username for p in local} | {link.username for link in links})
        return GroupDetails(group=group, available_contacts=contacts)

    async def load_messages(self, group_id: str, username: str) -> List[GroupMessage]:
        location = await self._own_location(username)
        async with self.registry.operation(location) as store:
            await self._load_member_group(store, group_id, username)
            return await store.list_group_messages(group_id)
