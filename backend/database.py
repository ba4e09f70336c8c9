import re
import logging
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from query import SortSpec, TaskFilter
from schemas import GroupCount
from storage import Record, StorageError, TaskStore, new_record, to_millis, utcnow

logger = logging.getLogger(__name__)

COLLECTION_NAME = "tasks"


def to_mongo_query(flt: TaskFilter) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if flt.completed is not None:
        query["completed"] = flt.completed
    if flt.priority:
        query["priority"] = flt.priority
    if flt.category:
        query["category"] = flt.category
    if flt.search:
        # plain substring, not a user-supplied regex
        pattern = {"$regex": re.escape(flt.search), "$options": "i"}
        query["$or"] = [
            {"task": pattern},
            {"description": pattern},
            {"tags": pattern},
        ]
    if flt.due_before is not None:
        query["dueDate"] = {"$lt": flt.due_before}
    return query


def to_mongo_sort(sort: SortSpec) -> List[tuple]:
    # _id breaks ties so equal keys come back in insertion order
    return [(sort.field, DESCENDING if sort.descending else ASCENDING), ("_id", ASCENDING)]


def object_ids(task_ids: Iterable[str]) -> List[ObjectId]:
    """Valid ObjectIds among ``task_ids``; malformed ids cannot match anything."""
    return [ObjectId(i) for i in task_ids if ObjectId.is_valid(i)]


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Record]:
    if doc and "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


class MongoTaskStore(TaskStore):
    name = "mongodb"

    def __init__(self, collection: AsyncIOMotorCollection, client: Optional[AsyncIOMotorClient] = None):
        self.collection = collection
        self.client = client

    async def create(self, fields: Record) -> Record:
        doc = new_record(fields)
        try:
            result = await self.collection.insert_one(doc)
        except PyMongoError as exc:
            raise StorageError("insert failed") from exc
        doc["_id"] = result.inserted_id
        return serialize(doc)

    async def find(
        self,
        flt: TaskFilter = TaskFilter(),
        sort: SortSpec = SortSpec(),
        page: int = 1,
        limit: Optional[int] = None,
    ) -> List[Record]:
        cursor = self.collection.find(to_mongo_query(flt)).sort(to_mongo_sort(sort))
        if limit is not None:
            if page < 1 or limit < 1:
                raise ValueError("page and limit must be positive")
            cursor = cursor.skip((page - 1) * limit).limit(limit)
        try:
            docs = await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise StorageError("find failed") from exc
        return [serialize(doc) for doc in docs]

    async def count(self, flt: TaskFilter = TaskFilter()) -> int:
        try:
            return await self.collection.count_documents(to_mongo_query(flt))
        except PyMongoError as exc:
            raise StorageError("count failed") from exc

    async def aggregate_count(self, field: str) -> List[GroupCount]:
        pipeline = [
            {"$group": {"_id": f"${field}", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]
        try:
            groups = await self.collection.aggregate(pipeline).to_list(length=None)
        except PyMongoError as exc:
            raise StorageError("aggregate failed") from exc
        return [GroupCount(value=g["_id"], count=g["count"]) for g in groups]

    async def update(self, task_id: str, changes: Record) -> Optional[Record]:
        if not ObjectId.is_valid(task_id):
            return None
        updates = {k: v for k, v in changes.items() if k not in ("_id", "createdAt")}
        if "dueDate" in updates:
            updates["dueDate"] = to_millis(updates["dueDate"])
        updates["updatedAt"] = utcnow()
        try:
            result = await self.collection.find_one_and_update(
                {"_id": ObjectId(task_id)}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as exc:
            raise StorageError("update failed") from exc
        return serialize(result)

    async def delete(self, task_id: str) -> Optional[Record]:
        if not ObjectId.is_valid(task_id):
            return None
        try:
            result = await self.collection.find_one_and_delete({"_id": ObjectId(task_id)})
        except PyMongoError as exc:
            raise StorageError("delete failed") from exc
        return serialize(result)

    async def bulk_update(self, task_ids: Iterable[str], changes: Record) -> int:
        ids = object_ids(task_ids)
        if not ids:
            return 0
        updates = {k: v for k, v in changes.items() if k not in ("_id", "createdAt")}
        updates["updatedAt"] = utcnow()
        try:
            result = await self.collection.update_many({"_id": {"$in": ids}}, {"$set": updates})
        except PyMongoError as exc:
            raise StorageError("bulk update failed") from exc
        return result.modified_count

    async def bulk_delete(self, task_ids: Iterable[str]) -> int:
        ids = object_ids(task_ids)
        if not ids:
            return 0
        try:
            result = await self.collection.delete_many({"_id": {"$in": ids}})
        except PyMongoError as exc:
            raise StorageError("bulk delete failed") from exc
        return result.deleted_count

    async def close(self) -> None:
        if self.client is not None:
            self.client.close()


async def connect(settings) -> MongoTaskStore:
    """Open a client and ping the server; raises if MongoDB is unreachable."""
    if not settings.mongo_conn_str:
        raise ValueError("MONGO_CONN_STR environment variable is not set")
    kwargs: Dict[str, Any] = {
        "tz_aware": True,
        "serverSelectionTimeoutMS": settings.mongo_timeout_ms,
    }
    if settings.use_db_auth:
        kwargs["username"] = settings.mongo_username
        kwargs["password"] = settings.mongo_password
    client = AsyncIOMotorClient(settings.mongo_conn_str, **kwargs)
    try:
        await client.admin.command("ping")
    except PyMongoError:
        client.close()
        raise
    logger.info("Connected to MongoDB database %s", settings.database_name)
    return MongoTaskStore(client[settings.database_name][COLLECTION_NAME], client=client)
