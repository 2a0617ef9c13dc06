import logging
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List

from .database import INVOICES, PATIENTS, DocumentStore, Record, to_object_id, utcnow
from .errors import NotFoundError, ValidationError, guarded
from .schemas import (
    DEFAULT_PAGE_SIZE,
    Invoice,
    InvoiceCreate,
    InvoiceFilter,
    InvoiceUpdate,
    Page,
    Pagination,
    PatientSummary,
    page_args,
    parse_input,
)

logger = logging.getLogger(__name__)

PATIENT_FIELDS = ("first_name", "last_name", "email", "phone")
PATIENT_DETAIL_FIELDS = PATIENT_FIELDS + ("address",)


def apply_line_totals(doc: Dict[str, Any], fill_total: bool) -> None:
    """Number unnamed service lines and derive subtotal (and optionally total)."""
    if "services" not in doc:
        return
    services = doc["services"]
    stamp = int(time.time() * 1000)
    for index, line in enumerate(services):
        if not line.get("id"):
            line["id"] = f"SRV-{stamp}-{index + 1}"
    doc["subtotal"] = sum(line["total"] for line in services)
    if fill_total:
        total = doc["subtotal"] + doc.get("tax_amount", 0) - doc.get("discount", 0)
        if total < 0:
            raise ValidationError(
                "Validation failed",
                details=[{"loc": ["total_amount"], "msg": "Total amount cannot be negative"}],
            )
        doc["total_amount"] = total


class InvoiceService:
    def __init__(self, store: DocumentStore, default_page_size: int = DEFAULT_PAGE_SIZE):
        self.store = store
        self.default_page_size = default_page_size

    async def create(self, draft: Any) -> Invoice:
        data = parse_input(InvoiceCreate, draft)
        doc = data.model_dump(exclude_none=True)
        doc["patient_id"] = to_object_id(data.patient_id)
        apply_line_totals(doc, fill_total=data.total_amount is None)
        if not doc.get("invoice_number"):
            doc["invoice_number"] = await self._next_invoice_number()
        doc["status"] = "pending"
        doc["created_at"] = utcnow()
        saved = await guarded(self.store.insert(INVOICES, doc))
        logger.info("Invoice %s created for patient %s", saved["invoice_number"], data.patient_id)
        return (await self._expand([saved]))[0]

    async def list(self, filters: Any = None, page: Any = None, page_size: Any = None) -> Page[Invoice]:
        criteria = parse_input(InvoiceFilter, filters)
        page, page_size = page_args(page, page_size, self.default_page_size)
        query = self._query(criteria)
        records = await guarded(
            self.store.find(
                INVOICES,
                query,
                sort=[("created_at", -1)],
                skip=(page - 1) * page_size,
                limit=page_size,
            )
        )
        total = await guarded(self.store.count_documents(INVOICES, query))
        items = await self._expand(records)
        return Page[Invoice](items=items, pagination=Pagination.build(page, page_size, total))

    async def get(self, invoice_id: str) -> Invoice:
        record = await guarded(self.store.find_by_id(INVOICES, invoice_id))
        if record is None:
            raise self._not_found(invoice_id)
        return (await self._expand([record], PATIENT_DETAIL_FIELDS))[0]

    async def update(self, invoice_id: str, patch: Any) -> Invoice:
        data = parse_input(InvoiceUpdate, patch)
        changes = data.changes()
        unset = data.cleared()
        if "patient_id" in changes:
            changes["patient_id"] = to_object_id(changes["patient_id"])
        apply_line_totals(changes, fill_total=False)
        status = changes.get("status")
        if status == "paid":
            changes["payment_date"] = utcnow()
        elif status is not None:
            unset.append("payment_date")
        record = await guarded(self.store.update_by_id(INVOICES, invoice_id, changes, unset=unset))
        if record is None:
            raise self._not_found(invoice_id)
        logger.info("Invoice %s updated (%s)", invoice_id, ", ".join(sorted([*changes, *unset])) or "no fields")
        return (await self._expand([record]))[0]

    async def mark_paid(self, invoice_id: str) -> Invoice:
        # No status guard: paying twice moves payment_date forward.
        record = await guarded(
            self.store.update_by_id(INVOICES, invoice_id, {"status": "paid", "payment_date": utcnow()})
        )
        if record is None:
            raise self._not_found(invoice_id)
        logger.info("Invoice %s marked as paid", invoice_id)
        return (await self._expand([record]))[0]

    async def list_overdue(self) -> List[Invoice]:
        records = await guarded(
            self.store.find(
                INVOICES,
                {"status": "pending", "due_date": {"$lt": utcnow()}},
                sort=[("due_date", -1)],
            )
        )
        return await self._expand(records)

    async def delete(self, invoice_id: str) -> Invoice:
        record = await guarded(self.store.delete_by_id(INVOICES, invoice_id))
        if record is None:
            raise self._not_found(invoice_id)
        logger.info("Invoice %s deleted (status %s)", invoice_id, record.get("status"))
        return Invoice.model_validate(record)

    @staticmethod
    def _query(criteria: InvoiceFilter) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if criteria.status:
            query["status"] = criteria.status
        if criteria.patient_id:
            query["patient_id"] = to_object_id(criteria.patient_id)
        if criteria.date_range:
            bounds = {}
            if criteria.date_range.start:
                bounds["$gte"] = criteria.date_range.start
            if criteria.date_range.end:
                bounds["$lte"] = criteria.date_range.end
            if bounds:
                query["created_at"] = bounds
        return query

    async def _next_invoice_number(self) -> str:
        year = utcnow().year
        count = await guarded(
            self.store.count_documents(
                INVOICES,
                {"created_at": {"$gte": datetime(year, 1, 1), "$lt": datetime(year + 1, 1, 1)}},
            )
        )
        return f"INV-{year}-{count + 1:04d}"

    async def _patients(self, records: List[Record], fields: Iterable[str]) -> Dict[str, PatientSummary]:
        ids = {to_object_id(r.get("patient_id")) for r in records}
        ids.discard(None)
        if not ids:
            return {}
        docs = await guarded(self.store.find(PATIENTS, {"_id": {"$in": list(ids)}}))
        return {
            str(d["_id"]): PatientSummary.model_validate({"_id": d["_id"], **{f: d.get(f) for f in fields}})
            for d in docs
        }

    async def _expand(self, records: List[Record], fields: Iterable[str] = PATIENT_FIELDS) -> List[Invoice]:
        patients = await self._patients(records, fields)
        return [
            Invoice.model_validate({**r, "patient": patients.get(str(r.get("patient_id")))})
            for r in records
        ]

    @staticmethod
    def _not_found(invoice_id: str) -> NotFoundError:
        logger.warning("Invoice %s not found", invoice_id)
        return NotFoundError("Invoice not found")
