from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import bson
import pytest
from bson import ObjectId
from bson.codec_options import CodecOptions
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import AutoReconnect, ServerSelectionTimeoutError

from database import COLLECTION_NAME, MongoTaskStore, connect, object_ids, to_mongo_query, to_mongo_sort
from query import SortSpec, TaskFilter
from storage import StorageError

OID = ObjectId()


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def mongo_store(collection):
    return MongoTaskStore(collection)


def test_empty_filter_is_empty_query():
    assert to_mongo_query(TaskFilter()) == {}


def test_query_translation():
    due = datetime(2030, 1, 1, tzinfo=timezone.utc)
    query = to_mongo_query(TaskFilter(completed=False, priority="high", category="work", search="a.b", due_before=due))
    pattern = {"$regex": r"a\.b", "$options": "i"}
    assert query == {
        "completed": False,
        "priority": "high",
        "category": "work",
        "$or": [{"task": pattern}, {"description": pattern}, {"tags": pattern}],
        "dueDate": {"$lt": due},
    }


def test_sort_translation_breaks_ties_by_id():
    assert to_mongo_sort(SortSpec("priority", descending=True)) == [("priority", DESCENDING), ("_id", ASCENDING)]
    assert to_mongo_sort(SortSpec("task", descending=False))[0] == ("task", ASCENDING)


def test_object_ids_drops_malformed():
    assert object_ids([str(OID), "not-an-id", "123"]) == [OID]


@pytest.mark.asyncio
async def test_create_returns_string_id(mongo_store, collection):
    collection.insert_one = AsyncMock(return_value=SimpleNamespace(inserted_id=OID))
    created = await mongo_store.create({"task": "a", "priority": "high"})
    assert created["_id"] == str(OID)
    assert created["priority"] == "high"
    assert created["category"] == "other"
    assert created["createdAt"] == created["updatedAt"]


@pytest.mark.asyncio
async def test_find_applies_sort_skip_and_limit(mongo_store, collection):
    cursor = collection.find.return_value.sort.return_value
    paged = cursor.skip.return_value.limit.return_value
    paged.to_list = AsyncMock(return_value=[{"_id": OID, "task": "a"}])

    result = await mongo_store.find(TaskFilter(priority="low"), SortSpec("task", False), page=3, limit=10)

    collection.find.assert_called_once_with({"priority": "low"})
    collection.find.return_value.sort.assert_called_once_with([("task", ASCENDING), ("_id", ASCENDING)])
    cursor.skip.assert_called_once_with(20)
    cursor.skip.return_value.limit.assert_called_once_with(10)
    assert result == [{"_id": str(OID), "task": "a"}]


@pytest.mark.asyncio
async def test_find_without_limit_reads_everything(mongo_store, collection):
    cursor = collection.find.return_value.sort.return_value
    cursor.to_list = AsyncMock(return_value=[])
    assert await mongo_store.find() == []
    cursor.skip.assert_not_called()


@pytest.mark.asyncio
async def test_count(mongo_store, collection):
    collection.count_documents = AsyncMock(return_value=4)
    assert await mongo_store.count(TaskFilter(completed=True)) == 4
    collection.count_documents.assert_awaited_once_with({"completed": True})


@pytest.mark.asyncio
async def test_aggregate_count(mongo_store, collection):
    collection.aggregate.return_value.to_list = AsyncMock(
        return_value=[{"_id": "high", "count": 1}, {"_id": "medium", "count": 2}]
    )
    groups = await mongo_store.aggregate_count("priority")
    assert {g.value: g.count for g in groups} == {"high": 1, "medium": 2}
    pipeline = collection.aggregate.call_args.args[0]
    assert pipeline[0] == {"$group": {"_id": "$priority", "count": {"$sum": 1}}}


@pytest.mark.asyncio
async def test_update_sets_fields_and_timestamp(mongo_store, collection):
    collection.find_one_and_update = AsyncMock(return_value={"_id": OID, "completed": True})
    updated = await mongo_store.update(str(OID), {"completed": True, "createdAt": "ignored"})
    assert updated["_id"] == str(OID)
    query, update = collection.find_one_and_update.call_args.args
    assert query == {"_id": OID}
    assert update["$set"]["completed"] is True
    assert "createdAt" not in update["$set"]
    assert isinstance(update["$set"]["updatedAt"], datetime)


@pytest.mark.asyncio
async def test_update_missing_returns_none(mongo_store, collection):
    collection.find_one_and_update = AsyncMock(return_value=None)
    assert await mongo_store.update(str(OID), {"completed": True}) is None


@pytest.mark.asyncio
async def test_malformed_id_is_not_found(mongo_store, collection):
    collection.find_one_and_update = AsyncMock()
    collection.find_one_and_delete = AsyncMock()
    assert await mongo_store.update("never-existed", {"completed": True}) is None
    assert await mongo_store.delete("never-existed") is None
    collection.find_one_and_update.assert_not_awaited()
    collection.find_one_and_delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_delete_returns_removed(mongo_store, collection):
    collection.find_one_and_delete = AsyncMock(return_value={"_id": OID, "task": "gone"})
    assert await mongo_store.delete(str(OID)) == {"_id": str(OID), "task": "gone"}


@pytest.mark.asyncio
async def test_bulk_update_ignores_malformed_ids(mongo_store, collection):
    collection.update_many = AsyncMock(return_value=SimpleNamespace(modified_count=1))
    assert await mongo_store.bulk_update([str(OID), "nonexistent"], {"completed": True}) == 1
    query = collection.update_many.call_args.args[0]
    assert query == {"_id": {"$in": [OID]}}


@pytest.mark.asyncio
async def test_bulk_operations_with_no_valid_ids_skip_the_database(mongo_store, collection):
    collection.update_many = AsyncMock()
    collection.delete_many = AsyncMock()
    assert await mongo_store.bulk_update(["x"], {"completed": True}) == 0
    assert await mongo_store.bulk_delete(["x"]) == 0
    collection.update_many.assert_not_awaited()
    collection.delete_many.assert_not_awaited()


@pytest.mark.asyncio
async def test_bulk_delete(mongo_store, collection):
    collection.delete_many = AsyncMock(return_value=SimpleNamespace(deleted_count=2))
    assert await mongo_store.bulk_delete([str(OID), str(ObjectId())]) == 2


@pytest.mark.asyncio
async def test_driver_errors_become_storage_errors(mongo_store, collection):
    collection.count_documents = AsyncMock(side_effect=AutoReconnect("connection lost"))
    with pytest.raises(StorageError):
        await mongo_store.count()


@pytest.mark.asyncio
async def test_close_closes_client(collection):
    client = MagicMock()
    await MongoTaskStore(collection, client=client).close()
    client.close.assert_called_once()


@pytest.mark.asyncio
async def test_created_record_matches_what_mongodb_stores(mongo_store, collection):
    collection.insert_one = AsyncMock(return_value=SimpleNamespace(inserted_id=OID))
    due = datetime(2030, 5, 6, 7, 8, 9, 123456, tzinfo=timezone.utc)
    created = await mongo_store.create({"task": "a", "dueDate": due})

    inserted = collection.insert_one.call_args.args[0]
    stored = bson.decode(bson.encode(inserted), codec_options=CodecOptions(tz_aware=True))
    for field in ("createdAt", "updatedAt", "dueDate"):
        assert stored[field] == created[field]
    assert created["dueDate"].microsecond == 123000


# ========== CONNECT ==========

def mongo_settings(**overrides):
    values = {
        "mongo_conn_str": "mongodb://db.example:27017",
        "use_db_auth": False,
        "mongo_username": None,
        "mongo_password": None,
        "mongo_timeout_ms": 1500,
        "database_name": "todo_test",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.mark.asyncio
async def test_connect_pings_and_binds_collection():
    with patch("database.AsyncIOMotorClient") as client_cls:
        client = client_cls.return_value
        client.admin.command = AsyncMock(return_value={"ok": 1})
        store = await connect(mongo_settings())

    client_cls.assert_called_once_with("mongodb://db.example:27017", tz_aware=True, serverSelectionTimeoutMS=1500)
    client.admin.command.assert_awaited_once_with("ping")
    client.__getitem__.assert_called_once_with("todo_test")
    client.__getitem__.return_value.__getitem__.assert_called_once_with(COLLECTION_NAME)
    assert store.collection is client.__getitem__.return_value.__getitem__.return_value
    assert store.client is client


@pytest.mark.asyncio
async def test_connect_passes_credentials_when_auth_enabled():
    settings = mongo_settings(use_db_auth=True, mongo_username="todo", mongo_password="secret")
    with patch("database.AsyncIOMotorClient") as client_cls:
        client_cls.return_value.admin.command = AsyncMock(return_value={"ok": 1})
        await connect(settings)

    kwargs = client_cls.call_args.kwargs
    assert kwargs["username"] == "todo"
    assert kwargs["password"] == "secret"


@pytest.mark.asyncio
async def test_connect_closes_client_when_ping_fails():
    with patch("database.AsyncIOMotorClient") as client_cls:
        client = client_cls.return_value
        client.admin.command = AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))
        with pytest.raises(ServerSelectionTimeoutError):
            await connect(mongo_settings())

    client.close.assert_called_once()


@pytest.mark.asyncio
async def test_connect_requires_connection_string():
    with patch("database.AsyncIOMotorClient") as client_cls:
        with pytest.raises(ValueError):
            await connect(mongo_settings(mongo_conn_str=""))
    client_cls.assert_not_called()
