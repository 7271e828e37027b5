"""Tests for the MongoDB document store and database manager, with motor mocked out."""

from unittest.mock import AsyncMock, MagicMock, call

from bson import ObjectId
import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from passkey_auth.config import Settings
from passkey_auth.database import DatabaseManager, DocumentNotFound, DocumentStore, DuplicateDocument
from passkey_auth.errors import StoreError


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def document_store(collection):
    manager = MagicMock()
    manager.get_collection.return_value = collection
    return DocumentStore(manager)


class TestDocumentStore:
    @pytest.mark.asyncio
    async def test_create_returns_document_with_string_id(self, document_store, collection):
        object_id = ObjectId()
        collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id=object_id))

        document = await document_store.create("users", {"email": "a@x.com"})

        assert document["id"] == str(object_id)
        assert document["email"] == "a@x.com"
        assert "_id" not in document
        assert "created_at" in document

    @pytest.mark.asyncio
    async def test_duplicate_key_maps_to_duplicate_document(self, document_store, collection):
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000"))
        with pytest.raises(DuplicateDocument):
            await document_store.create("users", {"email": "a@x.com"})

    @pytest.mark.asyncio
    async def test_driver_failure_maps_to_store_error(self, document_store, collection):
        collection.find_one = AsyncMock(side_effect=ServerSelectionTimeoutError("down"))
        with pytest.raises(StoreError) as exc_info:
            await document_store.get("users", str(ObjectId()))
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_malformed_id_is_not_found(self, document_store, collection):
        collection.find_one = AsyncMock()
        with pytest.raises(DocumentNotFound):
            await document_store.get("users", "not-an-object-id")
        collection.find_one.assert_not_called()

    @pytest.mark.asyncio
    async def test_take_is_atomic_find_and_delete(self, document_store, collection):
        object_id = ObjectId()
        collection.find_one_and_delete = AsyncMock(return_value={"_id": object_id, "token": "t"})

        document = await document_store.take("passkey_challenges", str(object_id))

        collection.find_one_and_delete.assert_awaited_once_with({"_id": object_id})
        assert document == {"id": str(object_id), "token": "t"}

    @pytest.mark.asyncio
    async def test_take_of_missing_document_is_not_found(self, document_store, collection):
        collection.find_one_and_delete = AsyncMock(return_value=None)
        with pytest.raises(DocumentNotFound):
            await document_store.take("passkey_challenges", str(ObjectId()))

    @pytest.mark.asyncio
    async def test_delete_of_missing_document_is_not_found(self, document_store, collection):
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
        with pytest.raises(DocumentNotFound):
            await document_store.delete("passkey_challenges", str(ObjectId()))

    @pytest.mark.asyncio
    async def test_query_applies_filters_order_and_limit(self, document_store, collection):
        object_id = ObjectId()
        cursor = collection.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[{"_id": object_id, "user_id": "u1"}])

        documents = await document_store.query("passkey_credentials", {"user_id": "u1"}, limit=5)

        collection.find.assert_called_once_with({"user_id": "u1"})
        collection.find.return_value.sort.assert_called_once_with("created_at", 1)
        collection.find.return_value.sort.return_value.limit.assert_called_once_with(5)
        assert documents == [{"id": str(object_id), "user_id": "u1"}]

    @pytest.mark.asyncio
    async def test_update_sets_fields(self, document_store, collection):
        object_id = ObjectId()
        collection.find_one_and_update = AsyncMock(return_value={"_id": object_id, "sign_count": 7})

        document = await document_store.update("passkey_credentials", str(object_id), {"sign_count": 7})

        args = collection.find_one_and_update.await_args.args
        assert args[0] == {"_id": object_id}
        assert args[1] == {"$set": {"sign_count": 7}}
        assert document["sign_count"] == 7


class TestDatabaseManager:
    def test_get_collection_requires_connection(self):
        manager = DatabaseManager(Settings(MONGODB_URL="mongodb://localhost:27017"))
        with pytest.raises(StoreError):
            manager.get_collection("users")

    @pytest.mark.asyncio
    async def test_health_check_without_client(self):
        manager = DatabaseManager(Settings(MONGODB_URL="mongodb://localhost:27017"))
        assert await manager.health_check() is False

    @pytest.mark.asyncio
    async def test_create_indexes(self):
        manager = DatabaseManager(Settings(MONGODB_URL="mongodb://localhost:27017"))
        collections = {}

        def get_collection(name):
            collections.setdefault(name, MagicMock(create_index=AsyncMock()))
            return collections[name]

        manager.database = MagicMock()
        manager.database.__getitem__.side_effect = get_collection

        await manager.create_indexes()

        assert collections["users"].create_index.await_args_list == [call("email", unique=True)]
        assert call("credential_id", unique=True) in collections["passkey_credentials"].create_index.await_args_list
        assert (
            call("expires_at", expireAfterSeconds=0) in collections["passkey_challenges"].create_index.await_args_list
        )
        assert call("expires_at", expireAfterSeconds=0) in collections["session_tokens"].create_index.await_args_list

    def test_authenticated_connection_string(self):
        manager = DatabaseManager(
            Settings(MONGODB_URL="mongodb://db.internal:27017", MONGODB_USERNAME="svc", MONGODB_PASSWORD="pw")
        )
        assert manager._connection_string() == "mongodb://svc:pw@db.internal:27017"
