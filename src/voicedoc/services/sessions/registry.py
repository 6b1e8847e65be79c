from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from src.voicedoc.config import settings
from src.voicedoc.domain.models.documentation_session import DocumentationSession, SessionCategory
from src.voicedoc.services.audit.service import audit_service
from src.voicedoc.services.capture.devices import CaptureDeviceProvider, StreamedCaptureDeviceProvider
from src.voicedoc.services.persistence.backends import PersistenceBackend, get_persistence_backend_from_env
from src.voicedoc.services.sessions.lifecycle import SessionLifecycle
from src.voicedoc.services.structuring.backends import NoteStructuringBackend, get_structuring_backend_from_env
from src.voicedoc.services.structuring.runner import NoteStructuringJobRunner
from src.voicedoc.services.subjects.backends import SubjectLookupBackend, get_subject_lookup_backend_from_env
from src.voicedoc.services.transcription.backends import TranscriptionBackend, get_transcription_backend_from_env
from src.voicedoc.services.transcription.runner import TranscriptionJobRunner

logger = logging.getLogger(__name__)


class SessionRegistry:
    """In-memory registry of live session lifecycles, keyed by session id.

    Backends are shared by every session and resolved from the environment
    on first use unless supplied explicitly. Each session gets its own
    capture provider and job runners.
    """

    def __init__(
        self,
        *,
        transcription_backend: Optional[TranscriptionBackend] = None,
        structuring_backend: Optional[NoteStructuringBackend] = None,
        persistence: Optional[PersistenceBackend] = None,
        subject_lookup: Optional[SubjectLookupBackend] = None,
        capture_provider_factory: Callable[[], CaptureDeviceProvider] = StreamedCaptureDeviceProvider,
    ) -> None:
        self._transcription_backend = transcription_backend
        self._structuring_backend = structuring_backend
        self._persistence = persistence
        self._subject_lookup = subject_lookup
        self._capture_provider_factory = capture_provider_factory
        self._sessions: Dict[str, SessionLifecycle] = {}

    def configure(
        self,
        *,
        transcription_backend: Optional[TranscriptionBackend] = None,
        structuring_backend: Optional[NoteStructuringBackend] = None,
        persistence: Optional[PersistenceBackend] = None,
        subject_lookup: Optional[SubjectLookupBackend] = None,
    ) -> None:
        """Swap shared backends; affects sessions created afterwards."""

        if transcription_backend is not None:
            self._transcription_backend = transcription_backend
        if structuring_backend is not None:
            self._structuring_backend = structuring_backend
        if persistence is not None:
            self._persistence = persistence
        if subject_lookup is not None:
            self._subject_lookup = subject_lookup

    @property
    def persistence(self) -> PersistenceBackend:
        if self._persistence is None:
            self._persistence = get_persistence_backend_from_env()
        return self._persistence

    async def create(
        self,
        *,
        patient_id: Optional[str] = None,
        category: SessionCategory = SessionCategory.PROGRESS_NOTE,
        provider: Optional[str] = None,
        location: Optional[str] = None,
        note_format: Optional[str] = None,
        billable: bool = True,
    ) -> SessionLifecycle:
        if self._transcription_backend is None:
            self._transcription_backend = get_transcription_backend_from_env()
        if self._structuring_backend is None:
            self._structuring_backend = get_structuring_backend_from_env()
        if self._subject_lookup is None:
            self._subject_lookup = get_subject_lookup_backend_from_env()

        now = datetime.now(timezone.utc)
        record = DocumentationSession(
            id=str(uuid4()),
            session_date=now.date(),
            start_time=now,
            category=category,
            provider=provider or settings.default_provider,
            location=location or settings.default_location,
            billable=billable,
            note_format=note_format or settings.note_format,
            created_at=now,
            updated_at=now,
        )
        lifecycle = SessionLifecycle(
            record,
            capture_provider=self._capture_provider_factory(),
            transcription=TranscriptionJobRunner(self._transcription_backend),
            structuring=NoteStructuringJobRunner(self._structuring_backend, note_format=record.note_format),
            persistence=self.persistence,
            subject_lookup=self._subject_lookup,
        )
        self._sessions[record.id] = lifecycle

        if patient_id:
            await lifecycle.bind_subject(patient_id)

        audit_service.log_event(
            action="session_created",
            session_id=record.id,
            actor=lifecycle.export_snapshot().provider,
            extra={"category": category.value},
        )
        return lifecycle

    def get(self, session_id: str) -> Optional[SessionLifecycle]:
        return self._sessions.get(session_id)

    def list_ids(self) -> List[str]:
        return list(self._sessions)

    async def remove(self, session_id: str) -> bool:
        lifecycle = self._sessions.pop(session_id, None)
        if lifecycle is None:
            return False
        await lifecycle.close()
        logger.info("Session %s closed", session_id)
        return True

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            await self.remove(session_id)

    async def shutdown(self) -> None:
        """Close every session, then the shared backends' network clients.

        Backends are resolved again on next use.
        """

        await self.close_all()
        backends = [
            self._transcription_backend,
            self._structuring_backend,
            self._persistence,
            self._subject_lookup,
        ]
        self._transcription_backend = None
        self._structuring_backend = None
        self._persistence = None
        self._subject_lookup = None

        closed = set()
        for backend in backends:
            aclose = getattr(backend, "aclose", None)
            if aclose is None or id(backend) in closed:
                continue
            closed.add(id(backend))
            try:
                await aclose()
            except Exception:
                logger.exception("Closing %s failed", type(backend).__name__)


session_registry = SessionRegistry()
