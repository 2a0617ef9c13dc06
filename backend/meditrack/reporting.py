import asyncio
import logging

from .database import INVOICES, DocumentStore, utcnow
from .errors import guarded
from .schemas import InvoiceStats, MonthlyRevenue

logger = logging.getLogger(__name__)

MONTHS_REPORTED = 12

REVENUE_PIPELINE = [
    {"$match": {"status": "paid"}},
    {
        "$group": {
            "_id": None,
            "total_revenue": {"$sum": "$total_amount"},
            "count": {"$sum": 1},
        }
    },
]

MONTHLY_PIPELINE = [
    {"$match": {"status": "paid", "payment_date": {"$ne": None}}},
    {
        "$group": {
            "_id": {"year": {"$year": "$payment_date"}, "month": {"$month": "$payment_date"}},
            "revenue": {"$sum": "$total_amount"},
            "count": {"$sum": 1},
        }
    },
    {"$sort": {"_id.year": -1, "_id.month": -1}},
    {"$limit": MONTHS_REPORTED},
]


class InvoiceReporting:
    """Revenue and status statistics computed live from the invoice collection."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get_stats(self) -> InvoiceStats:
        count = self.store.count_documents
        total, paid, pending, cancelled, overdue, revenue, monthly = await asyncio.gather(
            guarded(count(INVOICES, {})),
            guarded(count(INVOICES, {"status": "paid"})),
            guarded(count(INVOICES, {"status": "pending"})),
            guarded(count(INVOICES, {"status": "cancelled"})),
            guarded(count(INVOICES, {"status": "pending", "due_date": {"$lt": utcnow()}})),
            guarded(self.store.aggregate(INVOICES, REVENUE_PIPELINE)),
            guarded(self.store.aggregate(INVOICES, MONTHLY_PIPELINE)),
        )

        total_revenue = 0.0
        average = 0.0
        if revenue and revenue[0].get("count"):
            total_revenue = float(revenue[0].get("total_revenue") or 0)
            average = total_revenue / revenue[0]["count"]

        stats = InvoiceStats(
            total_invoices=total,
            paid_invoices=paid,
            pending_invoices=pending,
            cancelled_invoices=cancelled,
            overdue_invoices=overdue,
            total_revenue=total_revenue,
            average_invoice=average,
            monthly_revenue=[
                MonthlyRevenue(
                    year=row["_id"]["year"],
                    month=row["_id"]["month"],
                    revenue=row.get("revenue") or 0,
                    count=row.get("count", 0),
                )
                for row in monthly
            ],
        )
        logger.debug("Invoice stats computed: %s invoices, %s paid", total, paid)
        return stats
