from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from src.voicedoc.domain.models.documentation_session import DocumentationSession


@dataclass
class PendingJob:
    """One in-flight transcription or structuring call.

    ``generation`` is the job's identity; a job whose ``cancelled`` flag is set
    has been superseded and its result must be dropped on arrival.
    """

    generation: int
    payload: Any
    cancelled: bool = False
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SaveTicket:
    sequence: int
    snapshot: DocumentationSession


class StructuredNoteResult(BaseModel):
    """Structured note returned by the note-structuring capability."""

    note: str
    codes: List[str] = Field(default_factory=list)
    diagnoses: List[str] = Field(default_factory=list)


class AutoSaveStatus(BaseModel):
    enabled: bool
    issued_sequence: int
    confirmed_sequence: int
    in_flight: bool
    pending: bool
    last_confirmed_at: Optional[datetime] = None
    last_failure: Optional[str] = None
