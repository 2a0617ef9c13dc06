from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
from datetime import datetime, timezone
import logging

from bson import ObjectId
from pymongo import AsyncMongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import StoreError, StoreErrorKind

logger = logging.getLogger(__name__)

INVOICES = "invoices"
PATIENTS = "patients"
SAMPLE_TYPES = "sample_types"

Record = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]

INDEXES: Dict[str, List[Tuple[List[Tuple[str, int]], Dict[str, Any]]]] = {
    INVOICES: [
        ([("created_at", -1)], {}),
        ([("patient_id", 1), ("created_at", -1)], {}),
        ([("status", 1), ("due_date", 1)], {}),
        ([("invoice_number", 1)], {}),
    ],
    SAMPLE_TYPES: [
        ([("name", 1)], {"unique": True}),
        ([("code", 1)], {"unique": True}),
        ([("category", 1)], {}),
        ([("is_active", 1)], {}),
    ],
}


def utcnow() -> datetime:
    # BSON dates come back naive UTC; keep every timestamp in that form.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def stringify_id(doc: Optional[Record]) -> Optional[Record]:
    if doc is None:
        return None
    doc["_id"] = str(doc["_id"])  # stringify ObjectId
    return doc


def store_error(exc: Exception) -> StoreError:
    if isinstance(exc, DuplicateKeyError):
        return StoreError(StoreErrorKind.DUPLICATE_KEY, str(exc))
    return StoreError(StoreErrorKind.UNAVAILABLE, str(exc))


def build_update(changes: Mapping[str, Any], unset: Iterable[str] = ()) -> Dict[str, Any]:
    update: Dict[str, Any] = {"$set": {**changes, "updated_at": utcnow()}}
    fields = [f for f in unset if f not in changes]
    if fields:
        update["$unset"] = {f: "" for f in fields}
    return update


class DocumentStore(Protocol):
    async def insert(self, collection: str, document: Mapping[str, Any]) -> Record: ...

    async def find(
        self,
        collection: str,
        filter_dict: Optional[Mapping[str, Any]] = None,
        *,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Record]: ...

    async def find_by_id(self, collection: str, doc_id: Any) -> Optional[Record]: ...

    async def count_documents(self, collection: str, filter_dict: Optional[Mapping[str, Any]] = None) -> int: ...

    async def aggregate(self, collection: str, pipeline: Sequence[Mapping[str, Any]]) -> List[Record]: ...

    async def update_by_id(
        self, collection: str, doc_id: Any, changes: Mapping[str, Any], *, unset: Iterable[str] = ()
    ) -> Optional[Record]: ...

    async def flip_by_id(self, collection: str, doc_id: Any, field: str) -> Optional[Record]: ...

    async def delete_by_id(self, collection: str, doc_id: Any) -> Optional[Record]: ...

    async def distinct(self, collection: str, field: str, filter_dict: Optional[Mapping[str, Any]] = None) -> List[Any]: ...

    async def ensure_indexes(self) -> None: ...

    async def ping(self) -> bool: ...


class MongoStore:
    """DocumentStore backed by pymongo's asyncio client."""

    def __init__(self, database, client: Optional[AsyncMongoClient] = None):
        self._db = database
        self._client = client

    @classmethod
    def from_url(cls, url: str, name: str) -> "MongoStore":
        client: AsyncMongoClient = AsyncMongoClient(url)
        return cls(client[name], client)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def insert(self, collection: str, document: Mapping[str, Any]) -> Record:
        now = utcnow()
        data = dict(document)
        if "created_at" not in data:
            data["created_at"] = now
        data["updated_at"] = now
        try:
            res = await self._db[collection].insert_one(data)
        except PyMongoError as exc:
            raise store_error(exc) from exc
        data["_id"] = str(res.inserted_id)
        return data

    async def find(self, collection, filter_dict=None, *, sort=None, skip=0, limit=0):
        cursor = self._db[collection].find(dict(filter_dict or {}))
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        try:
            docs = await cursor.to_list()
        except PyMongoError as exc:
            raise store_error(exc) from exc
        return [stringify_id(d) for d in docs]

    async def find_by_id(self, collection, doc_id):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        try:
            doc = await self._db[collection].find_one({"_id": oid})
        except PyMongoError as exc:
            raise store_error(exc) from exc
        return stringify_id(doc)

    async def count_documents(self, collection, filter_dict=None):
        try:
            return await self._db[collection].count_documents(dict(filter_dict or {}))
        except PyMongoError as exc:
            raise store_error(exc) from exc

    async def aggregate(self, collection, pipeline):
        try:
            cursor = await self._db[collection].aggregate(list(pipeline))
            return await cursor.to_list()
        except PyMongoError as exc:
            raise store_error(exc) from exc

    async def update_by_id(self, collection, doc_id, changes, *, unset=()):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        try:
            doc = await self._db[collection].find_one_and_update(
                {"_id": oid},
                build_update(changes, unset),
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise store_error(exc) from exc
        return stringify_id(doc)

    async def flip_by_id(self, collection, doc_id, field):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        # Pipeline update: the negation reads the stored value inside the same write.
        flip = [{"$set": {field: {"$not": [f"${field}"]}, "updated_at": utcnow()}}]
        try:
            doc = await self._db[collection].find_one_and_update(
                {"_id": oid}, flip, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as exc:
            raise store_error(exc) from exc
        return stringify_id(doc)

    async def delete_by_id(self, collection, doc_id):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        try:
            doc = await self._db[collection].find_one_and_delete({"_id": oid})
        except PyMongoError as exc:
            raise store_error(exc) from exc
        return stringify_id(doc)

    async def distinct(self, collection, field, filter_dict=None):
        try:
            return await self._db[collection].distinct(field, dict(filter_dict or {}))
        except PyMongoError as exc:
            raise store_error(exc) from exc

    async def ensure_indexes(self) -> None:
        try:
            for collection, specs in INDEXES.items():
                for keys, options in specs:
                    await self._db[collection].create_index(keys, **options)
        except PyMongoError as exc:
            raise store_error(exc) from exc
        logger.info("Indexes ensured on %s", ", ".join(INDEXES))

    async def ping(self) -> bool:
        try:
            await self._db.command("ping")
        except PyMongoError as exc:
            raise store_error(exc) from exc
        return True
