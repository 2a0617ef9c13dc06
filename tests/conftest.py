"""
Shared fixtures.

MemoryStore implements the DocumentStore contract on top of mongomock so the
services run against the same query and aggregation language as MongoStore,
with the same unique indexes and StoreError tagging.
"""

from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo import ReturnDocument

from meditrack.config import Settings
from meditrack.database import INDEXES, build_update, stringify_id, to_object_id, utcnow
from meditrack.errors import StoreError, StoreErrorKind
from meditrack.invoices import InvoiceService
from meditrack.main import create_app
from meditrack.patients import PatientService
from meditrack.reporting import InvoiceReporting
from meditrack.sample_types import SampleTypeService


class MemoryStore:
    def __init__(self):
        self.db = mongomock.MongoClient()["meditrack_test"]
        for collection, specs in INDEXES.items():
            for keys, options in specs:
                self.db[collection].create_index(keys, **options)

    async def insert(self, collection, document):
        now = utcnow()
        data = dict(document)
        if "created_at" not in data:
            data["created_at"] = now
        data["updated_at"] = now
        try:
            res = self.db[collection].insert_one(data)
        except mongomock.DuplicateKeyError as exc:
            raise StoreError(StoreErrorKind.DUPLICATE_KEY, str(exc)) from exc
        data["_id"] = str(res.inserted_id)
        return data

    async def find(self, collection, filter_dict=None, *, sort=None, skip=0, limit=0):
        cursor = self.db[collection].find(dict(filter_dict or {}))
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [stringify_id(d) for d in cursor]

    async def find_by_id(self, collection, doc_id):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return stringify_id(self.db[collection].find_one({"_id": oid}))

    async def count_documents(self, collection, filter_dict=None):
        return self.db[collection].count_documents(dict(filter_dict or {}))

    async def aggregate(self, collection, pipeline):
        return list(self.db[collection].aggregate(list(pipeline)))

    async def update_by_id(self, collection, doc_id, changes, *, unset=()):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        try:
            doc = self.db[collection].find_one_and_update(
                {"_id": oid}, build_update(changes, unset), return_document=ReturnDocument.AFTER
            )
        except mongomock.DuplicateKeyError as exc:
            raise StoreError(StoreErrorKind.DUPLICATE_KEY, str(exc)) from exc
        return stringify_id(doc)

    async def flip_by_id(self, collection, doc_id, field):
        # No await between the read and the write, so no other task can interleave.
        oid = to_object_id(doc_id)
        doc = self.db[collection].find_one({"_id": oid}) if oid is not None else None
        if doc is None:
            return None
        return stringify_id(
            self.db[collection].find_one_and_update(
                {"_id": oid}, build_update({field: not doc.get(field)}), return_document=ReturnDocument.AFTER
            )
        )

    async def delete_by_id(self, collection, doc_id):
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return stringify_id(self.db[collection].find_one_and_delete({"_id": oid}))

    async def distinct(self, collection, field, filter_dict=None):
        return self.db[collection].distinct(field, dict(filter_dict or {}))

    async def ensure_indexes(self):
        return None

    async def ping(self):
        return True


class UnavailableStore(MemoryStore):
    """Every read fails as if the database went away."""

    async def find(self, *args, **kwargs):
        raise StoreError(StoreErrorKind.UNAVAILABLE, "connection refused: db-01:27017")

    async def find_by_id(self, *args, **kwargs):
        raise StoreError(StoreErrorKind.UNAVAILABLE, "connection refused: db-01:27017")

    async def count_documents(self, *args, **kwargs):
        raise StoreError(StoreErrorKind.UNAVAILABLE, "connection refused: db-01:27017")

    async def ping(self):
        raise StoreError(StoreErrorKind.UNAVAILABLE, "connection refused: db-01:27017")


def ms(value: datetime) -> datetime:
    """Truncate to BSON (millisecond) precision."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def invoices(store):
    return InvoiceService(store)


@pytest.fixture
def reporting(store):
    return InvoiceReporting(store)


@pytest.fixture
def sample_types(store):
    return SampleTypeService(store)


@pytest.fixture
def patients(store):
    return PatientService(store)


@pytest.fixture
async def patient(patients):
    return await patients.create(
        {
            "first_name": "Ada",
            "last_name": "Okafor",
            "email": "ada@example.com",
            "phone": "+1-555-0100",
            "address": "12 Harbour Road",
        }
    )


@pytest.fixture
def invoice_draft(patient):
    def make(**overrides):
        draft = {
            "patient_id": patient.id,
            "total_amount": 100,
            "due_date": (utcnow() + timedelta(days=14)).isoformat(),
        }
        draft.update(overrides)
        return draft

    return make


@pytest.fixture
def sample_type_draft():
    def make(**overrides):
        draft = {
            "name": "Whole Blood",
            "code": "bld",
            "description": "Venous whole blood",
            "category": "blood",
            "collection_method": "Venipuncture",
            "container": "Lavender top EDTA tube",
            "storage_temp": "2-8 C",
            "storage_time": "48 hours",
            "volume": "3 mL",
            "common_tests": ["CBC", "HbA1c"],
        }
        draft.update(overrides)
        return draft

    return make


@pytest.fixture
def settings():
    return Settings(
        database_url="mongodb://localhost:27017",
        database_name="meditrack_test",
        log_level="WARNING",
        cors_origins=["*"],
        default_page_size=10,
    )


@pytest.fixture
def client(store, settings):
    return TestClient(create_app(store=store, settings=settings))
