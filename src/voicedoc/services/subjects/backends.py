from __future__ import annotations

from typing import Dict, Optional, Protocol

from src.voicedoc.config import settings
from src.voicedoc.domain.models.subject_context import PatientInfo, SubjectContext
from src.voicedoc.infra.remote.client import RemoteApiClient


class SubjectLookupBackend(Protocol):
    """Looks up read-only context for the patient a session documents."""

    async def lookup(self, patient_id: str) -> SubjectContext:  # pragma: no cover - interface
        raise NotImplementedError


class StaticSubjectLookupBackend:
    """In-memory patient directory for tests and local development.

    Unknown ids resolve to a context carrying only the id and the configured
    provider and location.
    """

    def __init__(self, patients: Optional[Dict[str, PatientInfo]] = None) -> None:
        self._patients: Dict[str, PatientInfo] = dict(patients or {})

    def register(self, patient: PatientInfo) -> None:
        self._patients[patient.id] = patient

    async def lookup(self, patient_id: str) -> SubjectContext:
        patient = self._patients.get(patient_id) or PatientInfo(id=patient_id)
        return SubjectContext(
            patient=patient.model_copy(),
            provider=settings.default_provider,
            location=settings.default_location,
        )


class HttpSubjectLookupBackend:
    """Reads patient details from ``/patients/{id}``."""

    def __init__(self, client: RemoteApiClient | None = None) -> None:
        self._client = client or RemoteApiClient()

    async def lookup(self, patient_id: str) -> SubjectContext:
        data = await self._client.get_json(f"/patients/{patient_id}")
        if not isinstance(data, dict):
            data = {}
        patient = PatientInfo(
            id=str(data.get("id", patient_id)),
            name=data.get("name"),
            date_of_birth=data.get("dateOfBirth"),
            medical_record_number=data.get("medicalRecordNumber"),
            insurance=data.get("insurance"),
        )
        return SubjectContext(
            patient=patient,
            provider=data.get("provider") or settings.default_provider,
            location=data.get("location") or settings.default_location,
        )

    async def aclose(self) -> None:
        await self._client.close()


demo_subject_lookup_backend = StaticSubjectLookupBackend()


def get_subject_lookup_backend_from_env() -> SubjectLookupBackend:
    """Select a subject lookup backend based on SUBJECT_LOOKUP_BACKEND.

    - SUBJECT_LOOKUP_BACKEND=http → HttpSubjectLookupBackend
    - Anything else (or unset) → StaticSubjectLookupBackend
    """

    if settings.subject_lookup_backend.lower() == "http":
        return HttpSubjectLookupBackend()
    return demo_subject_lookup_backend
