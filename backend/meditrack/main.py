from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .database import DocumentStore, MongoStore
from .errors import ErrorKind, InfrastructureError, ServiceError, StoreError, ValidationError, guarded
from .invoices import InvoiceService
from .logging_config import configure_logging
from .patients import PatientService
from .reporting import InvoiceReporting
from .sample_types import SampleTypeService
from .schemas import Envelope, InvoiceCreate, InvoiceUpdate, PatientCreate, SampleTypeCreate, SampleTypeUpdate

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Internal server error"

STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INFRASTRUCTURE: 500,
}

router = APIRouter()


def respond(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=Envelope.success(data, message).content())


def fail(exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=STATUS_CODES[exc.kind], content=Envelope.failure(exc).content())


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_invoices(request: Request) -> InvoiceService:
    return InvoiceService(request.app.state.store, request.app.state.settings.default_page_size)


def get_reporting(request: Request) -> InvoiceReporting:
    return InvoiceReporting(request.app.state.store)


def get_sample_types(request: Request) -> SampleTypeService:
    return SampleTypeService(request.app.state.store, request.app.state.settings.default_page_size)


def get_patients(request: Request) -> PatientService:
    return PatientService(request.app.state.store)


@router.get("/test")
async def test(store: DocumentStore = Depends(get_store)):
    await guarded(store.ping())
    return respond({"database": "connected"}, "DB connected")


# Patients


@router.post("/patients")
async def create_patient(p: PatientCreate, service: PatientService = Depends(get_patients)):
    patient = await service.create(p)
    return respond(patient, "Patient created successfully", 201)


@router.get("/patients/{patient_id}")
async def get_patient(patient_id: str, service: PatientService = Depends(get_patients)):
    return respond(await service.get(patient_id))


# Invoices


@router.post("/invoices")
async def create_invoice(draft: InvoiceCreate, service: InvoiceService = Depends(get_invoices)):
    invoice = await service.create(draft)
    return respond(invoice, "Invoice created successfully", 201)


@router.get("/invoices")
async def list_invoices(
    status: Optional[str] = None,
    patient_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    service: InvoiceService = Depends(get_invoices),
):
    filters: Dict[str, Any] = {}
    if status:
        filters["status"] = status
    if patient_id:
        filters["patient_id"] = patient_id
    if start_date or end_date:
        filters["date_range"] = {"start": start_date, "end": end_date}
    return respond(await service.list(filters, page, limit))


@router.get("/invoices/overdue")
async def overdue_invoices(service: InvoiceService = Depends(get_invoices)):
    return respond(await service.list_overdue())


@router.get("/invoices/stats")
async def invoice_stats(reporting: InvoiceReporting = Depends(get_reporting)):
    return respond(await reporting.get_stats())


@router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, service: InvoiceService = Depends(get_invoices)):
    return respond(await service.get(invoice_id))


@router.put("/invoices/{invoice_id}")
async def update_invoice(invoice_id: str, patch: InvoiceUpdate, service: InvoiceService = Depends(get_invoices)):
    invoice = await service.update(invoice_id, patch)
    return respond(invoice, "Invoice updated successfully")


@router.patch("/invoices/{invoice_id}/mark-paid")
async def mark_invoice_paid(invoice_id: str, service: InvoiceService = Depends(get_invoices)):
    invoice = await service.mark_paid(invoice_id)
    return respond(invoice, "Invoice marked as paid successfully")


@router.delete("/invoices/{invoice_id}")
async def delete_invoice(invoice_id: str, service: InvoiceService = Depends(get_invoices)):
    invoice = await service.delete(invoice_id)
    return respond({"id": invoice.id}, "Invoice deleted successfully")


# Sample types


@router.post("/sample-types")
async def create_sample_type(draft: SampleTypeCreate, service: SampleTypeService = Depends(get_sample_types)):
    sample_type = await service.create(draft)
    return respond(sample_type, "Sample type created successfully", 201)


@router.get("/sample-types")
async def list_sample_types(
    search: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    service: SampleTypeService = Depends(get_sample_types),
):
    filters = {k: v for k, v in {"search": search, "category": category, "status": status}.items() if v}
    return respond(await service.list(filters, page, limit))


@router.get("/sample-types/stats")
async def sample_type_stats(service: SampleTypeService = Depends(get_sample_types)):
    return respond(await service.get_stats())


@router.get("/sample-types/{sample_type_id}")
async def get_sample_type(sample_type_id: str, service: SampleTypeService = Depends(get_sample_types)):
    return respond(await service.get(sample_type_id))


@router.put("/sample-types/{sample_type_id}")
async def update_sample_type(
    sample_type_id: str, patch: SampleTypeUpdate, service: SampleTypeService = Depends(get_sample_types)
):
    sample_type = await service.update(sample_type_id, patch)
    return respond(sample_type, "Sample type updated successfully")


@router.patch("/sample-types/{sample_type_id}/toggle")
async def toggle_sample_type(sample_type_id: str, service: SampleTypeService = Depends(get_sample_types)):
    sample_type = await service.toggle_status(sample_type_id)
    state = "activated" if sample_type.is_active else "deactivated"
    return respond(sample_type, f"Sample type {state} successfully")


@router.delete("/sample-types/{sample_type_id}")
async def delete_sample_type(sample_type_id: str, service: SampleTypeService = Depends(get_sample_types)):
    sample_type = await service.delete(sample_type_id)
    return respond({"id": sample_type.id}, "Sample type deleted successfully")


async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.kind is ErrorKind.INFRASTRUCTURE:
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc.message, exc_info=exc)
        return fail(InfrastructureError(GENERIC_ERROR))
    if exc.kind is ErrorKind.CONFLICT:
        logger.warning("Conflict on %s %s: %s", request.method, request.url.path, exc.message)
    return fail(exc)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return fail(ValidationError("Validation failed", details=details))


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return fail(InfrastructureError(GENERIC_ERROR))


def create_app(store: Optional[DocumentStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "store", None) is None:
            owned = MongoStore.from_url(settings.database_url, settings.database_name)
            app.state.store = owned
        try:
            await app.state.store.ensure_indexes()
        except StoreError:
            logger.exception("Could not ensure indexes on %s", settings.database_name)
        yield
        if owned is not None:
            await owned.close()

    app = FastAPI(title="MediTrack API", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ServiceError, handle_service_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(Exception, handle_unexpected)
    app.include_router(router)
    return app


app = create_app()
