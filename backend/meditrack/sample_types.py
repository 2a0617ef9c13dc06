import asyncio
import logging
import re
from typing import Any, Dict

from .database import SAMPLE_TYPES, DocumentStore
from .errors import NotFoundError, guarded
from .schemas import (
    DEFAULT_PAGE_SIZE,
    CategoryStat,
    Page,
    Pagination,
    SampleType,
    SampleTypeCreate,
    SampleTypeFilter,
    SampleTypeStats,
    SampleTypeUpdate,
    page_args,
    parse_input,
)

logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE = "Sample type name or code already exists"
SEARCH_FIELDS = ("name", "code", "description")

CATEGORY_PIPELINE = [
    {
        "$group": {
            "_id": "$category",
            "count": {"$sum": 1},
            "active_count": {"$sum": {"$cond": [{"$eq": ["$is_active", True]}, 1, 0]}},
        }
    },
    {"$sort": {"_id": 1}},
]


class SampleTypeService:
    def __init__(self, store: DocumentStore, default_page_size: int = DEFAULT_PAGE_SIZE):
        self.store = store
        self.default_page_size = default_page_size

    async def create(self, draft: Any) -> SampleType:
        data = parse_input(SampleTypeCreate, draft)
        saved = await guarded(self.store.insert(SAMPLE_TYPES, data.model_dump(exclude_none=True)), DUPLICATE_MESSAGE)
        logger.info("Sample type %s (%s) created", saved["code"], saved["_id"])
        return SampleType.model_validate(saved)

    async def list(self, filters: Any = None, page: Any = None, page_size: Any = None) -> Page[SampleType]:
        criteria = parse_input(SampleTypeFilter, filters)
        page, page_size = page_args(page, page_size, self.default_page_size)
        query = self._query(criteria)
        records = await guarded(
            self.store.find(
                SAMPLE_TYPES,
                query,
                sort=[("created_at", -1)],
                skip=(page - 1) * page_size,
                limit=page_size,
            )
        )
        total = await guarded(self.store.count_documents(SAMPLE_TYPES, query))
        return Page[SampleType](
            items=[SampleType.model_validate(r) for r in records],
            pagination=Pagination.build(page, page_size, total),
        )

    async def get(self, sample_type_id: str) -> SampleType:
        record = await guarded(self.store.find_by_id(SAMPLE_TYPES, sample_type_id))
        if record is None:
            raise self._not_found(sample_type_id)
        return SampleType.model_validate(record)

    async def update(self, sample_type_id: str, patch: Any) -> SampleType:
        data = parse_input(SampleTypeUpdate, patch)
        record = await guarded(
            self.store.update_by_id(SAMPLE_TYPES, sample_type_id, data.changes(), unset=data.cleared()),
            DUPLICATE_MESSAGE,
        )
        if record is None:
            raise self._not_found(sample_type_id)
        logger.info("Sample type %s updated", sample_type_id)
        return SampleType.model_validate(record)

    async def delete(self, sample_type_id: str) -> SampleType:
        record = await guarded(self.store.delete_by_id(SAMPLE_TYPES, sample_type_id))
        if record is None:
            raise self._not_found(sample_type_id)
        logger.info("Sample type %s deleted", sample_type_id)
        return SampleType.model_validate(record)

    async def toggle_status(self, sample_type_id: str) -> SampleType:
        record = await guarded(self.store.flip_by_id(SAMPLE_TYPES, sample_type_id, "is_active"))
        if record is None:
            raise self._not_found(sample_type_id)
        toggled = SampleType.model_validate(record)
        logger.info("Sample type %s %s", sample_type_id, "activated" if toggled.is_active else "deactivated")
        return toggled

    async def get_stats(self) -> SampleTypeStats:
        count = self.store.count_documents
        total, active, blood, categories, grouped = await asyncio.gather(
            guarded(count(SAMPLE_TYPES, {})),
            guarded(count(SAMPLE_TYPES, {"is_active": True})),
            guarded(count(SAMPLE_TYPES, {"category": "blood"})),
            guarded(self.store.distinct(SAMPLE_TYPES, "category")),
            guarded(self.store.aggregate(SAMPLE_TYPES, CATEGORY_PIPELINE)),
        )
        return SampleTypeStats(
            total_sample_types=total,
            active_sample_types=active,
            inactive_sample_types=total - active,
            blood_samples=blood,
            categories_count=len(categories),
            category_stats=[
                CategoryStat(category=row["_id"], count=row["count"], active_count=row["active_count"])
                for row in grouped
            ],
        )

    @staticmethod
    def _query(criteria: SampleTypeFilter) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if criteria.search:
            pattern = re.escape(criteria.search)
            query["$or"] = [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]
        if criteria.category and criteria.category != "all":
            query["category"] = criteria.category
        if criteria.status and criteria.status != "all":
            query["is_active"] = criteria.status == "active"
        return query

    @staticmethod
    def _not_found(sample_type_id: str) -> NotFoundError:
        logger.warning("Sample type %s not found", sample_type_id)
        return NotFoundError("Sample type not found")
