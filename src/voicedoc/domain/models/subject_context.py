from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class PatientInfo(BaseModel):
    id: str
    name: Optional[str] = None
    date_of_birth: Optional[str] = None
    medical_record_number: Optional[str] = None
    insurance: Optional[str] = None


class SubjectContext(BaseModel):
    """Read-only context supplied to the structuring call.

    The engine never owns or mutates this; it is looked up from an external
    collaborator when a patient is bound to the session.
    """

    patient: Optional[PatientInfo] = None
    provider: Optional[str] = None
    location: Optional[str] = None
