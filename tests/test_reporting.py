"""Tests for InvoiceReporting.get_stats."""

from datetime import datetime, timedelta

from bson import ObjectId

from meditrack.database import INVOICES, utcnow


async def seed(store, status, total_amount, payment_date=None, due_in_days=7):
    doc = {
        "patient_id": ObjectId(),
        "total_amount": total_amount,
        "status": status,
        "due_date": utcnow() + timedelta(days=due_in_days),
    }
    if payment_date is not None:
        doc["payment_date"] = payment_date
    return await store.insert(INVOICES, doc)


async def test_empty_collection_reports_zeros(reporting):
    stats = await reporting.get_stats()

    assert stats.total_invoices == 0
    assert stats.paid_invoices == 0
    assert stats.total_revenue == 0
    assert stats.average_invoice == 0
    assert stats.monthly_revenue == []


async def test_create_pay_then_report(invoices, reporting, invoice_draft):
    created = await invoices.create(invoice_draft(total_amount=100, due_date="2020-01-01T00:00:00"))
    assert created.status == "pending"
    assert (await reporting.get_stats()).overdue_invoices == 1

    paid = await invoices.mark_paid(created.id)
    stats = await reporting.get_stats()

    assert paid.status == "paid"
    assert stats.total_revenue == 100
    assert stats.average_invoice == 100
    assert stats.paid_invoices == 1
    assert stats.overdue_invoices == 0
    assert [(m.year, m.month, m.revenue, m.count) for m in stats.monthly_revenue] == [
        (paid.payment_date.year, paid.payment_date.month, 100, 1)
    ]


async def test_counts_and_revenue_across_statuses(store, reporting):
    now = utcnow()
    await seed(store, "paid", 100, payment_date=now)
    await seed(store, "paid", 300, payment_date=now)
    await seed(store, "pending", 50, due_in_days=-3)
    await seed(store, "pending", 70)
    await seed(store, "cancelled", 20, due_in_days=-3)

    stats = await reporting.get_stats()

    assert stats.total_invoices == 5
    assert stats.total_invoices == stats.paid_invoices + stats.pending_invoices + stats.cancelled_invoices
    assert stats.pending_invoices == 2
    assert stats.overdue_invoices == 1
    assert stats.total_revenue == 400
    assert stats.average_invoice == stats.total_revenue / stats.paid_invoices == 200


async def test_monthly_revenue_groups_and_keeps_latest_twelve_months(store, reporting):
    for offset in range(14):
        year, month = divmod(2023 * 12 + (offset), 12)
        await seed(store, "paid", 10 * (offset + 1), payment_date=datetime(year, month + 1, 15))
    await seed(store, "paid", 5, payment_date=datetime(2024, 2, 3))
    await seed(store, "pending", 999)

    stats = await reporting.get_stats()
    months = stats.monthly_revenue

    assert len(months) == 12
    keys = [(m.year, m.month) for m in months]
    assert keys == sorted(keys, reverse=True)
    assert len(set(keys)) == 12
    assert keys[0] == (2024, 2)
    assert keys[-1] == (2023, 3)
    feb = months[0]
    assert feb.revenue == 145
    assert feb.count == 2


async def test_paid_without_payment_date_counts_but_has_no_month(store, reporting):
    await seed(store, "paid", 40)

    stats = await reporting.get_stats()

    assert stats.paid_invoices == 1
    assert stats.total_revenue == 40
    assert stats.monthly_revenue == []
