from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from src.voicedoc.domain.models.audio_artifact import AudioArtifact
from src.voicedoc.domain.models.documentation_session import DocumentationSession, SessionCategory
from src.voicedoc.domain.models.jobs import StructuredNoteResult
from src.voicedoc.services.capture.devices import StreamedCaptureDeviceProvider
from src.voicedoc.services.sessions.lifecycle import SessionLifecycle
from src.voicedoc.services.structuring.runner import NoteStructuringJobRunner
from src.voicedoc.services.transcription.runner import TranscriptionJobRunner


async def _settle(rounds: int = 25) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualClock:
    """Deterministic replacement for asyncio.sleep.

    Sleepers park on futures until ``advance`` moves the clock past their
    deadline; they are woken one at a time in deadline order so that timers
    re-armed by a woken task are honoured within the same advance.
    """

    def __init__(self) -> None:
        self.now = 0.0
        self._counter = 0
        self._waiters: List[tuple] = []

    async def sleep(self, delay: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._counter += 1
        self._waiters.append((self.now + delay, self._counter, future))
        await future

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await _settle()
        while True:
            self._waiters = [w for w in self._waiters if not w[2].done()]
            due = [w for w in self._waiters if w[0] <= target]
            if not due:
                break
            waiter = min(due, key=lambda w: (w[0], w[1]))
            self._waiters.remove(waiter)
            self.now = max(self.now, waiter[0])
            waiter[2].set_result(None)
            await _settle()
        self.now = target
        await _settle()


class FakeTranscriptionBackend:
    def __init__(self, text: str = "patient reports improvement", *, deferred: bool = False) -> None:
        self.text = text
        self.deferred = deferred
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.pending: List[asyncio.Future] = []

    async def transcribe(self, artifact, *, language_code=None, model=None) -> str:
        self.calls.append({"artifact": artifact, "language_code": language_code, "model": model})
        if self.deferred:
            future = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            return await future
        if self.error is not None:
            raise self.error
        return self.text


class FakeStructuringBackend:
    def __init__(self, *, deferred: bool = False) -> None:
        self.deferred = deferred
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.pending: List[asyncio.Future] = []

    async def structure(self, transcript, *, category, note_format, context=None, include_timestamps=True):
        self.calls.append(
            {
                "transcript": transcript,
                "category": category,
                "note_format": note_format,
                "context": context,
                "include_timestamps": include_timestamps,
            }
        )
        if self.deferred:
            future = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            return await future
        if self.error is not None:
            raise self.error
        return StructuredNoteResult(
            note=f"Subjective: {transcript}",
            codes=["99213"],
            diagnoses=["Z00.00 General exam"],
        )


class FakePersistenceBackend:
    """Records every call; ``failures`` are raised by upcoming calls in order."""

    def __init__(self, *, deferred: bool = False) -> None:
        self.deferred = deferred
        self.failures: List[Exception] = []
        self.autosaved: List[DocumentationSession] = []
        self.saved: List[DocumentationSession] = []
        self.submitted: List[DocumentationSession] = []
        self.pending: List[asyncio.Future] = []

    async def _call(self, snapshot: DocumentationSession) -> DocumentationSession:
        if self.failures:
            raise self.failures.pop(0)
        if self.deferred:
            future = asyncio.get_running_loop().create_future()
            self.pending.append(future)
            await future
        return snapshot.model_copy(deep=True)

    async def autosave(self, snapshot: DocumentationSession) -> DocumentationSession:
        self.autosaved.append(snapshot)
        return await self._call(snapshot)

    async def save(self, snapshot: DocumentationSession) -> DocumentationSession:
        self.saved.append(snapshot)
        return await self._call(snapshot)

    async def submit(self, snapshot: DocumentationSession) -> DocumentationSession:
        self.submitted.append(snapshot)
        return await self._call(snapshot)

    def release_pending(self) -> None:
        for future in self.pending:
            if not future.done():
                future.set_result(None)


def make_session_record(**overrides: Any) -> DocumentationSession:
    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {
        "id": "session-1",
        "session_date": now.date(),
        "start_time": now,
        "category": SessionCategory.PROGRESS_NOTE,
        "provider": "Dr. Rivera",
        "location": "Clinic",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return DocumentationSession(**values)


def make_artifact(payload: bytes = b"audio", duration: int = 3) -> AudioArtifact:
    return AudioArtifact(
        payload=payload,
        content_type="audio/webm;codecs=opus",
        duration_seconds=duration,
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def session_record() -> DocumentationSession:
    return make_session_record()


@pytest.fixture
def artifact_factory():
    return make_artifact


@pytest.fixture
def transcription_backend() -> FakeTranscriptionBackend:
    return FakeTranscriptionBackend()


@pytest.fixture
def structuring_backend() -> FakeStructuringBackend:
    return FakeStructuringBackend()


@pytest.fixture
def persistence() -> FakePersistenceBackend:
    return FakePersistenceBackend()


@pytest.fixture
def capture_provider() -> StreamedCaptureDeviceProvider:
    return StreamedCaptureDeviceProvider()


@pytest.fixture
async def lifecycle_factory(
    clock,
    transcription_backend,
    structuring_backend,
    persistence,
    capture_provider,
):
    created: List[SessionLifecycle] = []

    def factory(record: Optional[DocumentationSession] = None, **kwargs: Any) -> SessionLifecycle:
        options: Dict[str, Any] = {
            "capture_provider": capture_provider,
            "transcription": TranscriptionJobRunner(transcription_backend),
            "structuring": NoteStructuringJobRunner(structuring_backend, note_format="SOAP"),
            "persistence": persistence,
            "sleep": clock.sleep,
            "max_recording_seconds": 300,
            "autosave_debounce_seconds": 2.0,
            "autosave_enabled": True,
        }
        options.update(kwargs)
        lifecycle = SessionLifecycle(record or make_session_record(), **options)
        created.append(lifecycle)
        return lifecycle

    yield factory

    # Unblock anything still parked on a fake before tearing down.
    persistence.release_pending()
    for future in transcription_backend.pending + structuring_backend.pending:
        if not future.done():
            future.cancel()
    for lifecycle in created:
        await lifecycle.close()
