from typing import Any, ClassVar, Generic, List, Literal, Optional, Tuple, Type, TypeVar, Union
from datetime import datetime, timezone
from math import ceil

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import to_jsonable_python

from .database import utcnow
from .errors import ErrorKind, ServiceError, ValidationError

InvoiceStatus = Literal["pending", "paid", "cancelled"]
LineType = Literal["service", "test", "medication", "procedure"]
SampleCategory = Literal["blood", "urine", "body_fluid", "tissue", "swab", "other"]

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _check_object_id(value: Optional[str], message: str) -> Optional[str]:
    if value is not None and not ObjectId.is_valid(value):
        raise ValueError(message)
    return value


def parse_input(model: Type[M], payload: Any) -> M:
    """Validate raw service input, raising the service-level ValidationError."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload if payload is not None else {})
    except PydanticValidationError as exc:
        details = exc.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError("Validation failed", details=details) from exc


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number >= 1 else default


def page_args(page: Any = None, page_size: Any = None, default_size: int = DEFAULT_PAGE_SIZE) -> Tuple[int, int]:
    """Coerce raw paging input, falling back to defaults for anything unusable."""
    return _positive_int(page, DEFAULT_PAGE), _positive_int(page_size, default_size)


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid", allow_inf_nan=False, str_strip_whitespace=True)


class _Patch(_Input):
    """Partial update: unset fields are left alone, null clears a field named in ``clearable``."""

    clearable: ClassVar[Tuple[str, ...]] = ()

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude_none=True)

    def cleared(self) -> List[str]:
        return [f for f in self.clearable if f in self.model_fields_set and getattr(self, f) is None]


# --- patients ---------------------------------------------------------------


class PatientCreate(_Input):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=30)
    address: Optional[str] = Field(default=None, max_length=500)


class Patient(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: datetime

    @field_validator("id", mode="before")
    @classmethod
    def _str_id(cls, v):
        return str(v)


# --- invoices ---------------------------------------------------------------


class ServiceLine(_Input):
    id: Optional[str] = None
    description: str = Field(min_length=1, max_length=500)
    quantity: int = Field(ge=1)
    unit_price: float = Field(ge=0)
    total: float = Field(ge=0)
    type: LineType = "service"


class InvoiceCreate(_Input):
    patient_id: str
    total_amount: Optional[float] = Field(default=None, ge=0)
    due_date: datetime
    invoice_number: Optional[str] = Field(default=None, max_length=50)
    services: List[ServiceLine] = Field(default_factory=list)
    tax_amount: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    payment_method: Optional[str] = Field(default=None, max_length=100)

    @field_validator("patient_id")
    @classmethod
    def _patient_id(cls, v):
        return _check_object_id(v, "Valid patient ID is required")

    @field_validator("due_date")
    @classmethod
    def _due_date(cls, v):
        return naive_utc(v)

    @model_validator(mode="after")
    def _amount_or_services(self):
        if self.total_amount is None and not self.services:
            raise ValueError("total_amount is required when no services are given")
        return self


class InvoiceUpdate(_Patch):
    clearable: ClassVar[Tuple[str, ...]] = ("payment_method",)

    patient_id: Optional[str] = None
    total_amount: Optional[float] = Field(default=None, ge=0)
    due_date: Optional[datetime] = None
    invoice_number: Optional[str] = Field(default=None, max_length=50)
    services: Optional[List[ServiceLine]] = None
    tax_amount: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)
    payment_method: Optional[str] = Field(default=None, max_length=100)
    status: Optional[InvoiceStatus] = None

    @field_validator("patient_id")
    @classmethod
    def _patient_id(cls, v):
        return _check_object_id(v, "Valid patient ID is required")

    @field_validator("due_date")
    @classmethod
    def _due_date(cls, v):
        return naive_utc(v)


class PatientSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _str_id(cls, v):
        return str(v)


class Invoice(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    patient_id: str
    patient: Optional[PatientSummary] = None
    invoice_number: Optional[str] = None
    services: List[ServiceLine] = Field(default_factory=list)
    subtotal: float = 0
    tax_amount: float = 0
    discount: float = 0
    total_amount: float
    status: InvoiceStatus
    due_date: datetime
    payment_method: Optional[str] = None
    payment_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("id", "patient_id", mode="before")
    @classmethod
    def _str_id(cls, v):
        return str(v)

    @computed_field
    @property
    def is_overdue(self) -> bool:
        return self.status == "pending" and utcnow() > self.due_date

    @computed_field
    @property
    def days_overdue(self) -> int:
        if not self.is_overdue:
            return 0
        return ceil((utcnow() - self.due_date).total_seconds() / 86400)

    @computed_field
    @property
    def gross_amount(self) -> float:
        return self.subtotal + self.tax_amount


class DateRange(_Input):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def _naive(cls, v):
        return naive_utc(v)

    @model_validator(mode="after")
    def _ordered(self):
        if self.start and self.end and self.start > self.end:
            raise ValueError("date range start must not be after end")
        return self


class InvoiceFilter(_Input):
    status: Optional[InvoiceStatus] = None
    patient_id: Optional[str] = None
    date_range: Optional[DateRange] = None

    @field_validator("patient_id")
    @classmethod
    def _patient_id(cls, v):
        return _check_object_id(v, "Valid patient ID is required")


class MonthlyRevenue(BaseModel):
    year: int
    month: int
    revenue: float
    count: int


class InvoiceStats(BaseModel):
    total_invoices: int
    paid_invoices: int
    pending_invoices: int
    cancelled_invoices: int
    overdue_invoices: int
    total_revenue: float
    average_invoice: float
    monthly_revenue: List[MonthlyRevenue]


# --- sample types -------------------------------------------------------------


class SampleTypeCreate(_Input):
    name: str = Field(min_length=1, max_length=100)
    code: str = Field(min_length=1, max_length=20)
    description: str = Field(min_length=1, max_length=500)
    category: SampleCategory
    collection_method: str = Field(min_length=1, max_length=200)
    container: str = Field(min_length=1, max_length=200)
    preservative: Optional[str] = Field(default=None, max_length=100)
    storage_temp: str = Field(min_length=1, max_length=50)
    storage_time: str = Field(min_length=1, max_length=100)
    volume: str = Field(min_length=1, max_length=50)
    special_instructions: Optional[str] = Field(default=None, max_length=1000)
    common_tests: List[str] = Field(default_factory=list)
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _upper(cls, v):
        return v.upper()


class SampleTypeUpdate(_Patch):
    clearable: ClassVar[Tuple[str, ...]] = ("preservative", "special_instructions")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    code: Optional[str] = Field(default=None, min_length=1, max_length=20)
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    category: Optional[SampleCategory] = None
    collection_method: Optional[str] = Field(default=None, min_length=1, max_length=200)
    container: Optional[str] = Field(default=None, min_length=1, max_length=200)
    preservative: Optional[str] = Field(default=None, max_length=100)
    storage_temp: Optional[str] = Field(default=None, min_length=1, max_length=50)
    storage_time: Optional[str] = Field(default=None, min_length=1, max_length=100)
    volume: Optional[str] = Field(default=None, min_length=1, max_length=50)
    special_instructions: Optional[str] = Field(default=None, max_length=1000)
    common_tests: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("code")
    @classmethod
    def _upper(cls, v):
        return v.upper() if v is not None else v


class SampleType(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    name: str
    code: str
    description: str
    category: SampleCategory
    collection_method: Optional[str] = None
    container: Optional[str] = None
    preservative: Optional[str] = None
    storage_temp: Optional[str] = None
    storage_time: Optional[str] = None
    volume: Optional[str] = None
    special_instructions: Optional[str] = None
    common_tests: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime
    updated_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _str_id(cls, v):
        return str(v)


class SampleTypeFilter(_Input):
    search: Optional[str] = None
    category: Optional[Union[SampleCategory, Literal["all"]]] = None
    status: Optional[Literal["active", "inactive", "all"]] = None


class CategoryStat(BaseModel):
    category: str
    count: int
    active_count: int


class SampleTypeStats(BaseModel):
    total_sample_types: int
    active_sample_types: int
    inactive_sample_types: int
    blood_samples: int
    categories_count: int
    category_stats: List[CategoryStat]


# --- shared -------------------------------------------------------------------


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, page_size: int, total: int) -> "Pagination":
        return cls(page=page, page_size=page_size, total=total, total_pages=ceil(total / page_size))


class Page(BaseModel, Generic[T]):
    items: List[T]
    pagination: Pagination


class Envelope(BaseModel):
    ok: bool
    data: Any = None
    message: Optional[str] = None
    kind: Optional[ErrorKind] = None
    details: Any = None

    @classmethod
    def success(cls, data: Any = None, message: Optional[str] = None) -> "Envelope":
        return cls(ok=True, data=data, message=message)

    @classmethod
    def failure(cls, exc: ServiceError, message: Optional[str] = None) -> "Envelope":
        return cls(ok=False, kind=exc.kind, message=message or exc.message, details=exc.details)

    def content(self) -> dict:
        """JSON-ready body; only ``data`` is kept when empty, and only on success."""
        body: dict = {"ok": self.ok}
        if self.ok:
            body["data"] = to_jsonable_python(self.data, by_alias=False)
        for key in ("message", "kind", "details"):
            value = getattr(self, key)
            if value is not None:
                body[key] = to_jsonable_python(value, by_alias=False)
        return body
