"""Bidirectional linking of two personal stores.

Linking A to B writes four records across two independent databases:

    A's store:  placeholder profile for B, ExternalLink A -> B
    B's store:  placeholder profile for A, ExternalLink B -> A

There is no transaction spanning both stores. Every write is an upsert keyed
by ``(username, authenticator)``, so re-running a link after a partial
failure converges. A failure after A's side is written is reported as
``PartialLink`` and left in place; ``reconcile`` repairs one-sided links and
back-fills public keys that were unknown at link time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from openchat.config.settings import settings
from openchat.database.registry import ConnectionRegistry
from openchat.errors import (
    AlreadyLinked,
    MissingField,
    MissingKeys,
    OpenChatError,
    PartialLink,
    SelfLinkRejected,
    StoreUnreachable,
    UnknownCaller,
    UserNotFound,
)
from openchat.models import ExternalLink
from openchat.services.directory import DirectoryService
from openchat.utils.logging_config import get_logger

logger = get_logger(__name__)


class LinkState(str, Enum):
    REQUESTED = "requested"
    VALIDATED_SELF = "validated_self"
    PEER_RESOLVED = "peer_resolved"
    LOCAL_RECORDS_INSERTED = "local_records_inserted"
    PEER_RECORDS_INSERTED = "peer_records_inserted"
    LINKED = "linked"
    FAILED = "failed"


@dataclass
class LinkResult:
    linked_username: str
    state: LinkState
    history: List[LinkState] = field(default_factory=list)
    peer_key_known: bool = True


@dataclass
class ReconcileReport:
    checked: int = 0
    reciprocal_repaired: List[str] = field(default_factory=list)
    keys_healed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class _Attempt:
    """Tracks the state transitions of one link attempt for logging and results."""

    def __init__(self, caller: str):
        self.caller = caller
        self.history: List[LinkState] = [LinkState.REQUESTED]

    @property
    def state(self) -> LinkState:
        return self.history[-1]

    def advance(self, state: LinkState, **context) -> None:
        self.history.append(state)
        logger.debug("Link state", caller=self.caller, state=state.value, **context)

    def fail(self, error: OpenChatError) -> OpenChatError:
        reached = self.state
        self.history.append(LinkState.FAILED)
        error.details.setdefault("reached_state", reached.value)
        logger.warning("Link failed", caller=self.caller, reached_state=reached.value, reason=error.code)
        return error


class LinkProtocol:
    def __init__(
        self,
        directory: DirectoryService,
        registry: ConnectionRegistry,
        public_location: Optional[str] = None,
    ):
        self.directory = directory
        self.registry = registry
        self.public_location = public_location if public_location is not None else settings.DATABASE_PUBLIC_URL

    async def link(self, caller: str, peer_authenticator: str) -> LinkResult:
        """Link ``caller``'s store with the store owning ``peer_authenticator``."""
        attempt = _Attempt(caller)
        if not caller or not peer_authenticator:
            raise attempt.fail(MissingField("Authenticator and username are required."))

        try:
            caller_record = await self.directory.find_by_username(caller)
        except UserNotFound:
            raise attempt.fail(UnknownCaller("Current user not found in general database.")) from None
        except OpenChatError as e:
            raise attempt.fail(e)
        if caller_record.authenticator == peer_authenticator:
            raise attempt.fail(SelfLinkRejected("Cannot link to your own database."))
        attempt.advance(LinkState.VALIDATED_SELF)

        try:
            peer_record = await self.directory.find_by_authenticator(peer_authenticator)
        except OpenChatError as e:
            raise attempt.fail(e)
        attempt.advance(LinkState.PEER_RESOLVED, peer=peer_record.username)
        logger.info("Linking databases", caller=caller, peer=peer_record.username)

        try:
            async with self.registry.operation(caller_record.store_location) as caller_store:
                if await caller_store.get_link(peer_record.username, peer_authenticator) is not None:
                    raise AlreadyLinked("Databases are already linked.")
                caller_profile = await caller_store.get_profile(caller)
            if caller_profile is None or not caller_profile.public_key:
                raise MissingKeys("Current user public key not found.")

            peer_public_key = None
            async with self.registry.operation(peer_record.store_location) as peer_store:
                try:
                    peer_profile = await peer_store.get_profile(peer_record.username)
                    if peer_profile is not None:
                        peer_public_key = peer_profile.public_key
                except StoreUnreachable as e:
                    logger.error("Error retrieving target user public key", peer=peer_record.username, error=str(e))
        except OpenChatError as e:
            raise attempt.fail(e)

        try:
            async with self.registry.operation(caller_record.store_location) as caller_store:
                await caller_store.upsert_placeholder_profile(peer_record.username)
                await caller_store.upsert_link(ExternalLink(
                    username=peer_record.username,
                    authenticator=peer_authenticator,
                    store_location=peer_record.store_location,
                    public_key=peer_public_key,
                ))
        except StoreUnreachable as e:
            raise attempt.fail(e)
        attempt.advance(LinkState.LOCAL_RECORDS_INSERTED)

        try:
            async with self.registry.operation(peer_record.store_location) as peer_store:
                await peer_store.upsert_placeholder_profile(caller)
                await peer_store.upsert_link(ExternalLink(
                    username=caller,
                    authenticator=caller_record.authenticator,
                    store_location=caller_record.store_location,
                    public_key=caller_profile.public_key,
                ))
        except StoreUnreachable as e:
            logger.error("Error inserting into target database", caller=caller, peer=peer_record.username, error=str(e))
            raise attempt.fail(PartialLink(
                "Linked on your side only; the peer database could not be updated.",
                failed=[peer_record.username],
                linked_username=peer_record.username,
            ))
        attempt.advance(LinkState.PEER_RECORDS_INSERTED)

        await self._publish_location(caller, caller_record.store_location)
        attempt.advance(LinkState.LINKED)
        logger.info("Successfully linked databases", caller=caller, peer=peer_record.username)
        return LinkResult(
            linked_username=peer_record.username,
            state=attempt.state,
            history=list(attempt.history),
            peer_key_known=peer_public_key is not None,
        )

    async def _publish_location(self, username: str, current: str) -> None:
        if not self.public_location or current == self.public_location:
            return
        try:
            await self.directory.update_store_location(username, self.public_location)
            logger.info("Updated directory store location to public location", username=username)
        except StoreUnreachable as e:
            logger.error("Could not publish store location", username=username, error=str(e))

    async def reconcile(self, username: str) -> ReconcileReport:
        """Repair one-sided links and fill in missing public keys for ``username``."""
        report = ReconcileReport()
        record = await self.directory.find_by_username(username)
        async with self.registry.operation(record.store_location) as own_store:
            own_profile = await own_store.get_profile(username)
            links = await own_store.list_links()
        own_key = own_profile.public_key if own_profile else None

        for link in links:
            report.checked += 1
            try:
                healed_key = None
                async with self.registry.operation(link.store_location) as peer_store:
                    if not link.public_key:
                        peer_profile = await peer_store.get_profile(link.username)
                        if peer_profile is not None and peer_profile.public_key:
                            healed_key = peer_profile.public_key

                    reverse = await peer_store.get_link(username, record.authenticator)
                    if reverse is None:
                        await peer_store.upsert_placeholder_profile(username)
                        await peer_store.upsert_link(ExternalLink(
                            username=username,
                            authenticator=record.authenticator,
                            store_location=record.store_location,
                            public_key=own_key,
                        ))
                        report.reciprocal_repaired.append(link.username)
                    elif own_key and reverse.public_key != own_key:
                        reverse.public_key = own_key
                        await peer_store.upsert_link(reverse)
                        report.keys_healed.append(f"{link.username}->{username}")

                if healed_key is not None:
                    link.public_key = healed_key
                    async with self.registry.operation(record.store_location) as own_store:
                        await own_store.upsert_link(link)
                    report.keys_healed.append(link.username)
            except OpenChatError as e:
                logger.error("Link reconciliation failed for peer", username=username, peer=link.username, error=str(e))
                report.failed.append(link.username)

        if report.reciprocal_repaired or report.keys_healed or report.failed:
            logger.info(
                "Link reconciliation finished",
                username=username,
                checked=report.checked,
                repaired=report.reciprocal_repaired,
                healed=report.keys_healed,
                failed=report.failed,
            )
        return report
