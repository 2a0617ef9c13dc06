import logging
from typing import Any

from .database import PATIENTS, DocumentStore
from .errors import NotFoundError, guarded
from .schemas import Patient, PatientCreate, parse_input

logger = logging.getLogger(__name__)


class PatientService:
    """Minimal patient registry; invoices reference these records."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def create(self, draft: Any) -> Patient:
        data = parse_input(PatientCreate, draft)
        saved = await guarded(self.store.insert(PATIENTS, data.model_dump(exclude_none=True)))
        logger.info("Patient %s registered", saved["_id"])
        return Patient.model_validate(saved)

    async def get(self, patient_id: str) -> Patient:
        record = await guarded(self.store.find_by_id(PATIENTS, patient_id))
        if record is None:
            logger.warning("Patient %s not found", patient_id)
            raise NotFoundError("Patient not found")
        return Patient.model_validate(record)
