from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from src.voicedoc.domain.models.subject_context import PatientInfo


class SessionCategory(str, Enum):
    EVALUATION = "evaluation"
    TREATMENT = "treatment"
    PROGRESS_NOTE = "progress_note"
    DISCHARGE = "discharge"
    CONSULTATION = "consultation"


class SessionStatus(str, Enum):
    DRAFT = "draft"
    REVIEW = "review"
    SIGNED = "signed"
    SUBMITTED = "submitted"


class DocumentationSession(BaseModel):
    """One voice documentation encounter.

    The lifecycle engine is the only writer; everything else receives deep
    copies produced by ``SessionLifecycle.export_snapshot``.
    """

    id: str
    patient_id: Optional[str] = None
    session_date: date
    start_time: datetime
    # Set only once a recording has been finalized.
    end_time: Optional[datetime] = None
    duration_seconds: int = Field(default=0, ge=0)
    category: SessionCategory = SessionCategory.PROGRESS_NOTE
    provider: Optional[str] = None
    location: Optional[str] = None
    transcript: str = ""
    structured_note: str = ""
    cpt_codes: List[str] = Field(default_factory=list)
    diagnoses: List[str] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.DRAFT
    billable: bool = True
    note_format: str = "SOAP"

    # Metadata of the current audio artifact; the payload is never exported.
    audio_content_type: Optional[str] = None
    audio_size_bytes: Optional[int] = None

    created_at: datetime
    updated_at: datetime


class TranscriptStats(BaseModel):
    word_count: int
    char_count: int

    @classmethod
    def from_text(cls, text: str) -> "TranscriptStats":
        stripped = text.strip()
        return cls(word_count=len(stripped.split()) if stripped else 0, char_count=len(text))


class SessionExport(BaseModel):
    """Portable export of a session: the record plus the patient it documents."""

    session: DocumentationSession
    patient_info: Optional[PatientInfo] = None
    exported_at: datetime
    file_name: str
