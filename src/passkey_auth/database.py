"""Database module for the passkey authentication service.

`DatabaseManager` owns the motor client and its lifecycle. `DocumentStore` is
the document capability the ceremonies are written against: create, get,
delete and equality+limit queries over named collections, plus an atomic
take (delete-and-return) used to consume challenges exactly once.
"""

import asyncio
from datetime import datetime, timezone
import time
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError, ServerSelectionTimeoutError

from passkey_auth.config import Settings, settings
from passkey_auth.errors import StoreError
from passkey_auth.managers.logging_manager import get_logger

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")


class DocumentNotFound(LookupError):
    """No document with the requested id exists in the collection."""


class DuplicateDocument(StoreError):
    """A unique index rejected the write."""

    code = "duplicate_document"
    status_code = 400
    default_message = "Document already exists"


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self, config: Settings = settings):
        self.config = config
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3

    def _connection_string(self) -> str:
        if self.config.MONGODB_USERNAME and self.config.MONGODB_PASSWORD:
            password = self.config.MONGODB_PASSWORD.get_secret_value()
            db_logger.debug("Using authenticated connection to MongoDB")
            return (
                f"mongodb://{self.config.MONGODB_USERNAME}:{password}@"
                f"{self.config.MONGODB_URL.replace('mongodb://', '')}"
            )
        db_logger.debug("Using unauthenticated connection to MongoDB")
        return self.config.MONGODB_URL

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                self.client = AsyncIOMotorClient(
                    self._connection_string(),
                    serverSelectionTimeoutMS=self.config.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=self.config.MONGODB_CONNECTION_TIMEOUT,
                    tz_aware=True,
                )
                self.database = self.client[self.config.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                perf_logger.info(
                    "MongoDB connection established successfully in %.3fs (ping: %.3fs)",
                    time.time() - start_time,
                    ping_duration,
                )
                db_logger.info("Successfully connected to MongoDB database: %s", self.config.MONGODB_DATABASE)
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                perf_logger.warning(
                    "Connection attempt %d failed after %.3fs", attempt + 1, time.time() - attempt_start
                )
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client is None:
            db_logger.warning("Disconnect called but no active MongoDB connection found")
            return
        self.client.close()
        self.client = None
        self.database = None
        db_logger.info("Successfully disconnected from MongoDB")

    async def health_check(self) -> bool:
        """Check database connection health"""
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            health_logger.error("Database health check failed: %s", e)
            return False
        return True

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise StoreError("Database not connected")
        return self.database[collection_name]

    async def create_indexes(self):
        """Create the indexes the ceremonies rely on (uniqueness and TTL expiry)."""
        start_time = time.time()
        config = self.config
        try:
            users = self.get_collection(config.USERS_COLLECTION)
            await users.create_index("email", unique=True)

            challenges = self.get_collection(config.CHALLENGES_COLLECTION)
            await challenges.create_index("user_id")
            # MongoDB's TTL monitor removes expired challenges; the lifecycle also
            # rejects them on read since the monitor runs only once a minute.
            await challenges.create_index("expires_at", expireAfterSeconds=0)

            credentials = self.get_collection(config.CREDENTIALS_COLLECTION)
            await credentials.create_index("credential_id", unique=True)
            await credentials.create_index("user_id")

            session_tokens = self.get_collection(config.SESSION_TOKENS_COLLECTION)
            await session_tokens.create_index("expires_at", expireAfterSeconds=0)
            await session_tokens.create_index("user_id")
        except PyMongoError as e:
            db_logger.error("Failed to create indexes: %s", e, exc_info=True)
            raise

        perf_logger.info("Database indexes ready in %.3fs", time.time() - start_time)


def _to_object_id(document_id: str) -> Optional[ObjectId]:
    try:
        return ObjectId(document_id)
    except (InvalidId, TypeError):
        return None


def _normalize(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Replace Mongo's `_id` with a string `id`."""
    if document is None:
        return None
    document = dict(document)
    document["id"] = str(document.pop("_id"))
    return document


class DocumentStore:
    """
    Document capability over MongoDB collections.

    Every method raises `StoreError` when the driver fails, `DocumentNotFound`
    when an id-addressed document is missing. Malformed ids are treated as
    missing ids.
    """

    def __init__(self, manager: DatabaseManager):
        self.manager = manager

    async def create(self, collection: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        document = {"created_at": datetime.now(timezone.utc), **fields}
        try:
            result = await self.manager.get_collection(collection).insert_one(document)
        except DuplicateKeyError as e:
            db_logger.warning("Duplicate key on insert into %s", collection)
            raise DuplicateDocument() from e
        except PyMongoError as e:
            db_logger.error("Insert into %s failed: %s", collection, e)
            raise StoreError() from e
        document["_id"] = result.inserted_id
        return _normalize(document)

    async def get(self, collection: str, document_id: str) -> Dict[str, Any]:
        object_id = _to_object_id(document_id)
        if object_id is None:
            raise DocumentNotFound(document_id)
        try:
            document = await self.manager.get_collection(collection).find_one({"_id": object_id})
        except PyMongoError as e:
            db_logger.error("Lookup in %s failed: %s", collection, e)
            raise StoreError() from e
        if document is None:
            raise DocumentNotFound(document_id)
        return _normalize(document)

    async def take(self, collection: str, document_id: str) -> Dict[str, Any]:
        """Atomically delete a document and return its prior value."""
        object_id = _to_object_id(document_id)
        if object_id is None:
            raise DocumentNotFound(document_id)
        try:
            document = await self.manager.get_collection(collection).find_one_and_delete({"_id": object_id})
        except PyMongoError as e:
            db_logger.error("Atomic take from %s failed: %s", collection, e)
            raise StoreError() from e
        if document is None:
            raise DocumentNotFound(document_id)
        return _normalize(document)

    async def delete(self, collection: str, document_id: str) -> None:
        object_id = _to_object_id(document_id)
        if object_id is None:
            raise DocumentNotFound(document_id)
        try:
            result = await self.manager.get_collection(collection).delete_one({"_id": object_id})
        except PyMongoError as e:
            db_logger.error("Delete from %s failed: %s", collection, e)
            raise StoreError() from e
        if result.deleted_count == 0:
            raise DocumentNotFound(document_id)

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        object_id = _to_object_id(document_id)
        if object_id is None:
            raise DocumentNotFound(document_id)
        try:
            document = await self.manager.get_collection(collection).find_one_and_update(
                {"_id": object_id}, {"$set": fields}, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            db_logger.error("Update in %s failed: %s", collection, e)
            raise StoreError() from e
        if document is None:
            raise DocumentNotFound(document_id)
        return _normalize(document)

    async def query(self, collection: str, filters: Dict[str, Any], limit: int = 1) -> List[Dict[str, Any]]:
        """Return up to `limit` documents whose fields equal `filters`, oldest first."""
        try:
            cursor = self.manager.get_collection(collection).find(filters).sort("created_at", 1).limit(limit)
            documents = await cursor.to_list(length=limit)
        except PyMongoError as e:
            db_logger.error("Query on %s failed: %s", collection, e)
            raise StoreError() from e
        return [_normalize(document) for document in documents]


db_manager = DatabaseManager()
document_store = DocumentStore(db_manager)
