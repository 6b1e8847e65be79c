from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set

from src.voicedoc.config import settings
from src.voicedoc.domain.errors import (
    ImmutableSession,
    InvalidTransition,
    SaveFailed,
    SessionEngineError,
    SubmitFailed,
)
from src.voicedoc.domain.models.audio_artifact import AudioArtifact, RecordingState
from src.voicedoc.domain.models.documentation_session import (
    DocumentationSession,
    SessionExport,
    SessionStatus,
    TranscriptStats,
)
from src.voicedoc.domain.models.jobs import StructuredNoteResult
from src.voicedoc.domain.models.subject_context import SubjectContext
from src.voicedoc.services.audit.service import audit_service
from src.voicedoc.services.autosave.scheduler import AutoSaveScheduler
from src.voicedoc.services.capture.controller import AudioCaptureController
from src.voicedoc.services.capture.devices import CaptureDeviceProvider, StreamedCaptureDeviceProvider
from src.voicedoc.services.persistence.backends import PersistenceBackend, get_persistence_backend_from_env
from src.voicedoc.services.structuring.runner import NoteStructuringJobRunner
from src.voicedoc.services.subjects.backends import SubjectLookupBackend
from src.voicedoc.services.transcription.runner import TranscriptionJobRunner

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionLifecycle:
    """Orchestrates one documentation session.

    Owns the session record and its status (``draft -> review -> signed ->
    submitted``) and wires the capture controller, both job runners and the
    auto-save scheduler together:

    - a finished recording is transcribed in the background, and a non-empty
      transcript is structured exactly once;
    - transcript and note edits (by the user or by a pipeline) restart the
      auto-save debounce window;
    - ``save_draft`` and ``submit`` persist explicitly and change status only
      after the persistence capability acknowledges.

    Callers only ever see deep copies of the record. Once submitted, every
    mutating operation raises ImmutableSession.
    """

    def __init__(
        self,
        session: DocumentationSession,
        *,
        capture_provider: Optional[CaptureDeviceProvider] = None,
        transcription: Optional[TranscriptionJobRunner] = None,
        structuring: Optional[NoteStructuringJobRunner] = None,
        persistence: Optional[PersistenceBackend] = None,
        subject_lookup: Optional[SubjectLookupBackend] = None,
        sleep: Optional[Sleep] = None,
        max_recording_seconds: Optional[int] = None,
        autosave_debounce_seconds: Optional[float] = None,
        autosave_enabled: Optional[bool] = None,
        transcript_max_length: Optional[int] = None,
        on_failure: Optional[Callable[[SessionEngineError], None]] = None,
    ) -> None:
        self._session = session.model_copy(deep=True)
        self._capture_provider = capture_provider or StreamedCaptureDeviceProvider()
        self._transcription = transcription or TranscriptionJobRunner()
        self._structuring = structuring or NoteStructuringJobRunner(note_format=session.note_format)
        self._persistence = persistence or get_persistence_backend_from_env()
        self._subject_lookup = subject_lookup
        self._transcript_max_length = transcript_max_length or settings.transcript_max_length
        self.on_failure = on_failure

        self._capture = AudioCaptureController(
            self._capture_provider,
            max_duration_seconds=max_recording_seconds,
            sleep=sleep,
            on_artifact=self._handle_artifact,
            on_failure=self._record_failure,
        )
        self._autosave = AutoSaveScheduler(
            self._persistence.autosave,
            self.export_snapshot,
            debounce_seconds=autosave_debounce_seconds,
            sleep=sleep,
            enabled=autosave_enabled,
        )

        self._context: Optional[SubjectContext] = None
        self._artifact: Optional[AudioArtifact] = None
        self._pipelines: Set[asyncio.Task] = set()
        self._submitting = False
        self.failures: List[SessionEngineError] = []

    # Read access

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def recording_state(self) -> RecordingState:
        return self._capture.state

    @property
    def capture(self) -> AudioCaptureController:
        return self._capture

    @property
    def capture_provider(self) -> CaptureDeviceProvider:
        return self._capture_provider

    @property
    def autosave(self) -> AutoSaveScheduler:
        return self._autosave

    @property
    def context(self) -> Optional[SubjectContext]:
        return self._context

    @property
    def artifact(self) -> Optional[AudioArtifact]:
        return self._artifact

    @property
    def last_failure(self) -> Optional[SessionEngineError]:
        return self.failures[-1] if self.failures else None

    def export_snapshot(self) -> DocumentationSession:
        return self._session.model_copy(deep=True)

    def export_document(self) -> SessionExport:
        snapshot = self.export_snapshot()
        patient = self._context.patient if self._context is not None else None
        return SessionExport(
            session=snapshot,
            patient_info=patient.model_copy() if patient is not None else None,
            exported_at=_now(),
            file_name=f"session_{snapshot.id}_{snapshot.session_date.isoformat()}.json",
        )

    def transcript_stats(self) -> TranscriptStats:
        return TranscriptStats.from_text(self._session.transcript)

    # Subject

    async def bind_subject(self, patient_id: str) -> Optional[SubjectContext]:
        """Attach a patient and look up the context used for structuring.

        A failed lookup is logged and leaves the session without context;
        structuring still works without it.
        """

        self._ensure_mutable()
        self._session.patient_id = patient_id
        self._touch()

        if self._subject_lookup is None:
            return None
        try:
            context = await self._subject_lookup.lookup(patient_id)
        except Exception as exc:
            logger.warning("Subject lookup failed for session %s: %s", self.session_id, exc)
            self._context = None
            return None

        self._context = context
        if self._session.provider is None and context.provider:
            self._session.provider = context.provider
        if self._session.location is None and context.location:
            self._session.location = context.location
        return context

    # Recording

    async def begin_recording(self) -> None:
        self._ensure_mutable()
        if self._session.status != SessionStatus.DRAFT:
            raise InvalidTransition("begin recording", self._session.status.value)
        await self._capture.begin()
        if self._capture.state == RecordingState.RECORDING:
            self._session.start_time = _now()
            self._session.end_time = None

    def pause_recording(self) -> None:
        self._ensure_mutable()
        self._capture.pause()

    def resume_recording(self) -> None:
        self._ensure_mutable()
        self._capture.resume()

    async def finish_recording(self) -> Optional[AudioArtifact]:
        """Finish the recording; transcription starts in the background."""

        self._ensure_mutable()
        return await self._capture.finish()

    def reset_recording(self) -> None:
        self._ensure_mutable()
        self._capture.reset()

    # Text edits

    def edit_transcript(self, text: str) -> None:
        self._ensure_mutable()
        if len(text) > self._transcript_max_length:
            raise ValueError(f"Transcript exceeds {self._transcript_max_length} characters")
        # The edit supersedes any transcription still in flight.
        self._transcription.cancel()
        self._session.transcript = text
        self._touch()
        self._autosave.notify_mutation()

    def edit_structured_note(self, text: str) -> None:
        self._ensure_mutable()
        self._structuring.cancel()
        self._session.structured_note = text
        self._touch()
        self._autosave.notify_mutation()

    # Pipelines

    async def transcribe_latest_recording(self) -> Optional[str]:
        """Re-run transcription (and structuring) for the current artifact.

        Unlike the background pipeline, failures are raised to the caller.
        """

        self._ensure_mutable()
        if self._artifact is None:
            raise InvalidTransition("transcribe", "no recording is available")
        text = await self._publish_transcription(self._artifact)
        if text and text.strip():
            await self._publish_structuring(text)
        return text

    async def generate_structured_note(self) -> Optional[StructuredNoteResult]:
        self._ensure_mutable()
        transcript = self._session.transcript
        if not transcript.strip():
            raise InvalidTransition("generate a structured note", "the transcript is empty")
        return await self._publish_structuring(transcript)

    async def drain(self) -> None:
        """Wait for background pipelines started by finished recordings."""

        while self._pipelines:
            await asyncio.gather(*list(self._pipelines), return_exceptions=True)

    # Status transitions

    async def save_draft(self) -> DocumentationSession:
        self._ensure_mutable()
        if self._session.status != SessionStatus.DRAFT:
            raise InvalidTransition("save draft", self._session.status.value)

        await self._autosave.quiesce()
        snapshot = self.export_snapshot()
        snapshot.status = SessionStatus.REVIEW
        ticket = self._autosave.issue_ticket(snapshot)
        try:
            await self._persistence.save(snapshot)
        except Exception as exc:
            logger.warning("Saving draft for session %s failed: %s", self.session_id, exc)
            raise SaveFailed(f"Failed to save session: {exc}", {"session_id": self.session_id}) from exc

        self._ensure_mutable()
        if self._session.status == SessionStatus.DRAFT:
            self._session.status = SessionStatus.REVIEW
            self._touch()
        self._autosave.confirm(ticket)
        audit_service.log_event(
            action="draft_saved",
            session_id=self.session_id,
            actor=self._session.provider,
            extra={"sequence": ticket.sequence},
        )
        return self.export_snapshot()

    def mark_signed(self) -> DocumentationSession:
        """Record a signature obtained from the external signing workflow."""

        self._ensure_mutable()
        if self._session.status != SessionStatus.REVIEW:
            raise InvalidTransition("sign", self._session.status.value)
        self._session.status = SessionStatus.SIGNED
        self._touch()
        audit_service.log_event(action="signed", session_id=self.session_id, actor=self._session.provider)
        return self.export_snapshot()

    async def submit(self) -> DocumentationSession:
        self._ensure_mutable()
        if self._submitting:
            raise InvalidTransition("submit", "a submission is in progress")
        if self._capture.state != RecordingState.IDLE:
            raise InvalidTransition("submit", self._capture.state.value)
        if not self._session.structured_note.strip():
            raise SubmitFailed(
                "A structured note is required before submitting",
                {"session_id": self.session_id, "reason": "empty_note"},
            )

        self._submitting = True
        autosave_enabled = self._autosave.enabled
        # A draft auto-save landing after the final record would overwrite it.
        self._autosave.set_enabled(False)
        try:
            await self._autosave.quiesce()
            snapshot = self.export_snapshot()
            snapshot.status = SessionStatus.SUBMITTED
            ticket = self._autosave.issue_ticket(snapshot)
            try:
                acknowledged = await self._persistence.submit(snapshot)
            except Exception as exc:
                logger.warning("Submitting session %s failed: %s", self.session_id, exc)
                self._autosave.set_enabled(autosave_enabled)
                raise SubmitFailed(f"Failed to submit session: {exc}", {"session_id": self.session_id}) from exc
        finally:
            self._submitting = False

        self._session = snapshot
        self._session.updated_at = acknowledged.updated_at
        self._transcription.cancel()
        self._structuring.cancel()
        await self._autosave.close()
        self._autosave.confirm(ticket)
        audit_service.log_event(
            action="submitted",
            session_id=self.session_id,
            actor=self._session.provider,
            extra={
                "codes": len(self._session.cpt_codes),
                "diagnoses": len(self._session.diagnoses),
                "duration_seconds": self._session.duration_seconds,
            },
        )
        return self.export_snapshot()

    async def close(self) -> None:
        """Release everything the session holds (device, timers, pipelines)."""

        self._capture.reset()
        self._transcription.cancel()
        self._structuring.cancel()
        await self._autosave.close()
        for task in list(self._pipelines):
            task.cancel()
        await asyncio.gather(*list(self._pipelines), return_exceptions=True)

    # Internals

    def _ensure_mutable(self) -> None:
        if self._session.status == SessionStatus.SUBMITTED:
            raise ImmutableSession(self._session.id)

    def _touch(self) -> None:
        self._session.updated_at = _now()

    def _record_failure(self, exc: SessionEngineError) -> None:
        logger.warning("Session %s: %s (%s)", self.session_id, exc.message, exc.code)
        self.failures.append(exc)
        if self.on_failure is not None:
            self.on_failure(exc)

    def _handle_artifact(self, artifact: AudioArtifact) -> None:
        self._artifact = artifact
        self._session.end_time = _now()
        self._session.duration_seconds = artifact.duration_seconds
        self._session.audio_content_type = artifact.content_type
        self._session.audio_size_bytes = artifact.size_bytes
        self._touch()
        audit_service.log_event(
            action="recording_finished",
            session_id=self.session_id,
            actor=self._session.provider,
            extra={"duration_seconds": artifact.duration_seconds, "size_bytes": artifact.size_bytes},
        )

        task = asyncio.create_task(self._run_pipeline(artifact))
        self._pipelines.add(task)
        task.add_done_callback(self._pipelines.discard)

    async def _run_pipeline(self, artifact: AudioArtifact) -> None:
        try:
            text = await self._publish_transcription(artifact)
            if text and text.strip():
                await self._publish_structuring(text)
        except SessionEngineError as exc:
            self._record_failure(exc)

    async def _publish_transcription(self, artifact: AudioArtifact) -> Optional[str]:
        text = await self._transcription.submit(artifact)
        if text is None or self._session.status == SessionStatus.SUBMITTED:
            return None
        if len(text) > self._transcript_max_length:
            logger.warning(
                "Transcript for session %s truncated to %s characters",
                self.session_id,
                self._transcript_max_length,
            )
            text = text[: self._transcript_max_length]
        self._session.transcript = text
        self._touch()
        self._autosave.notify_mutation()
        return text

    async def _publish_structuring(self, transcript: str) -> Optional[StructuredNoteResult]:
        result = await self._structuring.submit(transcript, self._session.category, self._context)
        if result is None or self._session.status == SessionStatus.SUBMITTED:
            return None
        self._session.structured_note = result.note
        self._session.cpt_codes = list(result.codes)
        self._session.diagnoses = list(result.diagnoses)
        self._touch()
        self._autosave.notify_mutation()
        return result
