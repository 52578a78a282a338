"""Directory service: usernames, authenticators and personal-store locations."""

from __future__ import annotations

import asyncio
import random
import string
import time
from typing import Optional, Protocol
from urllib.parse import urlsplit, urlunsplit

from openchat.config.settings import settings
from openchat.database.directory_store import AuthenticatorCollision
from openchat.errors import (
    AuthenticatorExhausted,
    AuthenticatorNotFound,
    DuplicateUsername,
    StoreUnreachable,
    UserNotFound,
)
from openchat.models import DirectoryRecord, random_base36, to_base36
from openchat.utils.logging_config import get_logger, redact_location

logger = get_logger(__name__)

AUTHENTICATOR_ALPHABET = string.ascii_uppercase
AUTHENTICATOR_LENGTH = 8
MAX_AUTHENTICATOR_ATTEMPTS = 5


class DirectoryBackend(Protocol):
    async def connect(self) -> None: ...
    async def find_by_username(self, username: str) -> Optional[DirectoryRecord]: ...
    async def find_by_authenticator(self, authenticator: str) -> Optional[DirectoryRecord]: ...
    async def authenticator_exists(self, authenticator: str) -> bool: ...
    async def insert(self, record: DirectoryRecord) -> None: ...
    async def update_store_location(self, username: str, location: str) -> bool: ...
    async def delete(self, username: str) -> bool: ...
    async def health_check(self) -> bool: ...
    async def close(self) -> None: ...


def generate_authenticator(rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return "".join(rng.choice(AUTHENTICATOR_ALPHABET) for _ in range(AUTHENTICATOR_LENGTH))


def generate_database_name() -> str:
    return f"oc-{to_base36(int(time.time() * 1000))}-{random_base36(6)}"


def build_store_location(base_uri: str, db_name: str) -> str:
    """Substitute ``db_name`` for the database path of ``base_uri``.

    Query parameters (``retryWrites`` etc.) are kept; a URI without a
    database path gets one appended.
    """
    if not base_uri.startswith(("mongodb://", "mongodb+srv://")):
        base_uri = "mongodb+srv://" + base_uri
    parts = urlsplit(base_uri)
    return urlunsplit((parts.scheme, parts.netloc, f"/{db_name}", parts.query, parts.fragment))


class DirectoryService:
    """The shared username ↔ authenticator ↔ store-location directory."""

    def __init__(
        self,
        backend: DirectoryBackend,
        location_template: Optional[str] = None,
        max_attempts: int = MAX_AUTHENTICATOR_ATTEMPTS,
    ):
        self.backend = backend
        self.location_template = location_template or settings.personal_uri_template
        self.max_attempts = max_attempts

    async def connect_with_retry(
        self,
        max_retries: Optional[int] = None,
        base_delay: float = 1.0,
        cap: Optional[float] = None,
    ) -> bool:
        """Connect with capped exponential backoff.

        Returns ``False`` once the retry budget is spent so the caller can
        switch to degraded (in-memory) authentication.
        """
        max_retries = max_retries or settings.DIRECTORY_MAX_RETRIES
        cap = cap if cap is not None else settings.DIRECTORY_RETRY_CAP_SECONDS
        for attempt in range(1, max_retries + 1):
            logger.info("Directory connection attempt", attempt=attempt, max_retries=max_retries)
            try:
                await self.backend.connect()
                return True
            except StoreUnreachable as e:
                logger.error("Directory connection error", attempt=attempt, error=str(e))
                if attempt == max_retries:
                    break
                delay = min(base_delay * (2 ** attempt), cap)
                logger.info("Retrying directory connection", delay_seconds=delay)
                await asyncio.sleep(delay)
        logger.error("Directory unreachable after retries, using fallback authentication", max_retries=max_retries)
        return False

    async def register(self, username: str, password_hash: Optional[str]) -> DirectoryRecord:
        if await self.backend.find_by_username(username) is not None:
            raise DuplicateUsername(f"Username '{username}' already exists")

        location = build_store_location(self.location_template, generate_database_name())
        logger.info("Created personal store location", username=username, location=redact_location(location))

        # One extra pass if the authenticator index rejects a code that raced in
        for _ in range(2):
            record = DirectoryRecord(
                authenticator=await self._unique_authenticator(),
                username=username,
                password_hash=password_hash,
                store_location=location,
            )
            try:
                await self.backend.insert(record)
            except AuthenticatorCollision:
                logger.warning("Authenticator collision on insert, retrying", username=username)
                continue
            logger.info("Registered directory user", username=username, authenticator=record.authenticator)
            return record
        raise AuthenticatorExhausted("Authentication key collision. Please try again.")

    async def _unique_authenticator(self) -> str:
        for _ in range(self.max_attempts):
            code = generate_authenticator()
            if not await self.backend.authenticator_exists(code):
                return code
        raise AuthenticatorExhausted("Could not generate unique authenticator after multiple attempts")

    async def find_by_username(self, username: str) -> DirectoryRecord:
        record = await self.backend.find_by_username(username)
        if record is None:
            raise UserNotFound(f"User '{username}' not found")
        return record

    async def find_by_authenticator(self, authenticator: str) -> DirectoryRecord:
        record = await self.backend.find_by_authenticator(authenticator)
        if record is None:
            raise AuthenticatorNotFound("Authenticator not found")
        return record

    async def update_store_location(self, username: str, location: str) -> bool:
        return await self.backend.update_store_location(username, location)

    async def unregister(self, username: str) -> bool:
        """Remove a record; only used to roll back a failed signup."""
        return await self.backend.delete(username)

    async def health_check(self) -> bool:
        return await self.backend.health_check()

    async def close(self) -> None:
        await self.backend.close()
