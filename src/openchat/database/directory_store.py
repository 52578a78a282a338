"""
MongoDB handle for the shared directory (general) database.

One collection, ``generalusers``, maps usernames to authenticators and
personal-store locations. Unique indexes on both ``username`` and
``authentificator`` back the uniqueness checks done by the directory service.
"""

from __future__ import annotations

from typing import Optional

from pymongo import ASCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from openchat.config.settings import settings
from openchat.database.personal_store import client_options
from openchat.errors import DuplicateUsername, StoreUnreachable
from openchat.models import DirectoryRecord
from openchat.utils.logging_config import get_logger, redact_location

logger = get_logger(__name__)

COLLECTION = "generalusers"


class AuthenticatorCollision(Exception):
    """Raised when an insert lost a race on the authenticator index."""


class MongoDirectoryStore:
    """Directory database handle backed by an ``AsyncMongoClient``."""

    def __init__(self, uri: Optional[str] = None, db_name: Optional[str] = None):
        self.uri = uri or settings.GENERAL_MONGO_URI
        self.client = AsyncMongoClient(self.uri, **client_options())
        self.db = self.client[db_name or settings.GENERAL_DB_NAME]
        self.collection = self.db[COLLECTION]

    async def connect(self) -> None:
        """Ping the server and create indexes. Raises ``StoreUnreachable``."""
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            raise StoreUnreachable(f"directory unreachable: {e}", location=self.uri) from e
        logger.info("Directory connected", location=redact_location(self.uri), db=self.db.name)
        try:
            await self.collection.create_index(
                [("username", ASCENDING)], unique=True, name="idx_username_unique"
            )
            await self.collection.create_index(
                [("authentificator", ASCENDING)], unique=True, name="idx_authenticator_unique"
            )
        except PyMongoError as e:
            logger.warning("Index creation warning (may already exist)", error=str(e))

    async def find_by_username(self, username: str) -> Optional[DirectoryRecord]:
        doc = await self._find_one({"username": username})
        return DirectoryRecord.from_doc(doc) if doc else None

    async def find_by_authenticator(self, authenticator: str) -> Optional[DirectoryRecord]:
        doc = await self._find_one({"authentificator": authenticator})
        return DirectoryRecord.from_doc(doc) if doc else None

    async def authenticator_exists(self, authenticator: str) -> bool:
        return await self._find_one({"authentificator": authenticator}, {"_id": 1}) is not None

    async def insert(self, record: DirectoryRecord) -> None:
        try:
            await self.collection.insert_one(record.to_doc())
        except DuplicateKeyError as e:
            key_pattern = (e.details or {}).get("keyPattern") or {}
            if "authentificator" in key_pattern:
                raise AuthenticatorCollision(record.authenticator) from e
            raise DuplicateUsername(f"Username '{record.username}' already exists") from e
        except PyMongoError as e:
            raise StoreUnreachable(str(e), location=self.uri) from e

    async def update_store_location(self, username: str, location: str) -> bool:
        try:
            result = await self.collection.update_one(
                {"username": username}, {"$set": {"database_url": location}}
            )
        except PyMongoError as e:
            raise StoreUnreachable(str(e), location=self.uri) from e
        return result.matched_count > 0

    async def delete(self, username: str) -> bool:
        try:
            result = await self.collection.delete_one({"username": username})
        except PyMongoError as e:
            raise StoreUnreachable(str(e), location=self.uri) from e
        return result.deleted_count > 0

    async def health_check(self) -> bool:
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False

    async def close(self) -> None:
        await self.client.close()
        logger.info("Directory connection closed")

    async def _find_one(self, query, projection=None):
        try:
            return await self.collection.find_one(query, projection)
        except PyMongoError as e:
            logger.error("Directory query failed", error=str(e))
            raise StoreUnreachable(str(e), location=self.uri) from e
