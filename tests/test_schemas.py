from datetime import datetime, timedelta, timezone

import pytest

from meditrack.config import get_settings
from meditrack.database import utcnow
from meditrack.errors import ConflictError, StoreError, StoreErrorKind, from_store_error
from meditrack.schemas import Envelope, Invoice, Pagination, naive_utc, page_args


@pytest.mark.parametrize(
    "page, size, expected",
    [
        (None, None, (1, 10)),
        ("3", "25", (3, 25)),
        (0, 0, (1, 10)),
        (-2, "many", (1, 10)),
        (True, 5, (1, 5)),
    ],
)
def test_page_args(page, size, expected):
    assert page_args(page, size) == expected


def test_pagination_rounds_pages_up():
    assert Pagination.build(1, 10, 0).total_pages == 0
    assert Pagination.build(1, 10, 10).total_pages == 1
    assert Pagination.build(1, 10, 11).total_pages == 2


def test_naive_utc_converts_offsets():
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert naive_utc(aware) == datetime(2024, 1, 1, 10, 0)
    assert naive_utc(datetime(2024, 1, 1)) == datetime(2024, 1, 1)


def test_days_overdue_only_for_pending():
    base = {
        "_id": "65f000000000000000000001",
        "patient_id": "65f000000000000000000002",
        "total_amount": 10,
        "due_date": utcnow() - timedelta(days=2, hours=1),
        "created_at": utcnow() - timedelta(days=10),
    }
    pending = Invoice.model_validate({**base, "status": "pending"})
    paid = Invoice.model_validate({**base, "status": "paid", "payment_date": utcnow()})

    assert pending.is_overdue is True
    assert pending.days_overdue == 3
    assert paid.is_overdue is False
    assert paid.days_overdue == 0


def test_failure_envelope_omits_empty_fields():
    body = Envelope.failure(ConflictError("Sample type name or code already exists")).content()
    assert body == {"ok": False, "kind": "conflict", "message": "Sample type name or code already exists"}


def test_store_error_kinds_map_to_service_errors():
    conflict = from_store_error(StoreError(StoreErrorKind.DUPLICATE_KEY, "E11000"), "taken")
    outage = from_store_error(StoreError(StoreErrorKind.UNAVAILABLE, "timeout"))

    assert conflict.kind.value == "conflict"
    assert conflict.message == "taken"
    assert outage.kind.value == "infrastructure"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_NAME", "clinic_a")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("DEFAULT_PAGE_SIZE", "oops")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = get_settings()

    assert settings.database_name == "clinic_a"
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.default_page_size == 10
    assert settings.log_level == "DEBUG"


def test_gross_amount_is_subtotal_plus_tax():
    invoice = Invoice.model_validate(
        {
            "_id": "65f000000000000000000001",
            "patient_id": "65f000000000000000000002",
            "subtotal": 90,
            "tax_amount": 12.5,
            "discount": 20,
            "total_amount": 82.5,
            "status": "pending",
            "due_date": utcnow() + timedelta(days=3),
            "created_at": utcnow(),
        }
    )

    assert invoice.gross_amount == 102.5
    assert invoice.model_dump()["gross_amount"] == 102.5
