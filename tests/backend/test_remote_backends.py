import json

import httpx
import pytest

from src.voicedoc.domain.errors import StructuringFailed, TranscriptionFailed
from src.voicedoc.domain.models.documentation_session import SessionCategory, SessionStatus
from src.voicedoc.domain.models.subject_context import PatientInfo, SubjectContext
from src.voicedoc.infra.remote.client import RemoteApiClient, RemoteApiError
from src.voicedoc.services.persistence.backends import HttpPersistenceBackend
from src.voicedoc.services.structuring.backends import HttpNoteStructuringBackend
from src.voicedoc.services.subjects.backends import HttpSubjectLookupBackend
from src.voicedoc.services.transcription.backends import HttpTranscriptionBackend
from src.voicedoc.services.structuring.runner import NoteStructuringJobRunner
from src.voicedoc.services.transcription.runner import TranscriptionJobRunner

from conftest import make_artifact, make_session_record

BASE_URL = "http://docs.test/api"


def client_for(handler, token="secret-token") -> RemoteApiClient:
    return RemoteApiClient(BASE_URL, token=token, timeout=5.0, transport=httpx.MockTransport(handler))


async def test_transcription_uploads_audio_with_hints():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.read()
        return httpx.Response(200, json={"transcript": "patient reports improvement"})

    backend = HttpTranscriptionBackend(client_for(handler))
    text = await backend.transcribe(make_artifact(b"OPUSDATA"), language_code="en-US", model="healthcare")

    assert text == "patient reports improvement"
    assert seen["path"] == "/api/transcribe"
    assert seen["auth"] == "Bearer secret-token"
    assert b"OPUSDATA" in seen["body"]
    assert b"healthcare" in seen["body"]
    assert b"en-US" in seen["body"]


async def test_transcription_http_error_surfaces_as_transcription_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "model crashed"})

    runner = TranscriptionJobRunner(HttpTranscriptionBackend(client_for(handler)))

    with pytest.raises(TranscriptionFailed) as exc_info:
        await runner.submit(make_artifact())

    assert isinstance(exc_info.value.__cause__, RemoteApiError)
    assert exc_info.value.__cause__.status_code == 500


async def test_structuring_sends_session_details_and_maps_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "structuredNote": "S: improving\nO: stable",
                "cptCodes": ["90837"],
                "diagnosis": ["F41.1"],
            },
        )

    backend = HttpNoteStructuringBackend(client_for(handler))
    context = SubjectContext(patient=PatientInfo(id="p-1", name="Jane Doe"))
    result = await backend.structure(
        "patient reports improvement",
        category=SessionCategory.TREATMENT,
        note_format="SOAP",
        context=context,
        include_timestamps=False,
    )

    assert seen["path"] == "/api/ai/structure-note"
    assert seen["body"]["sessionType"] == "treatment"
    assert seen["body"]["format"] == "SOAP"
    assert seen["body"]["includeTimestamps"] is False
    assert seen["body"]["patientInfo"]["name"] == "Jane Doe"
    assert result.note.startswith("S: improving")
    assert result.codes == ["90837"]
    assert result.diagnoses == ["F41.1"]


async def test_structuring_tolerates_missing_extractions():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"structuredNote": "Plan: continue"})

    result = await HttpNoteStructuringBackend(client_for(handler)).structure(
        "text",
        category=SessionCategory.PROGRESS_NOTE,
        note_format="SOAP",
    )

    assert result.codes == []
    assert result.diagnoses == []


async def test_persistence_posts_snapshots_and_reads_acknowledgement():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        body = json.loads(request.content)
        if request.url.path.endswith("/submit"):
            return httpx.Response(200, json={"session": {"id": body["id"], "status": "submitted"}})
        return httpx.Response(200, json={"success": True})

    backend = HttpPersistenceBackend(client_for(handler))
    snapshot = make_session_record(transcript="hello", status=SessionStatus.REVIEW)

    saved = await backend.save(snapshot)
    submitted = await backend.submit(snapshot.model_copy(update={"status": SessionStatus.SUBMITTED}))

    assert paths == ["/api/sessions", "/api/sessions/submit"]
    assert saved.status == SessionStatus.REVIEW
    assert saved.transcript == "hello"
    assert submitted.status == SessionStatus.SUBMITTED


async def test_persistence_error_propagates():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    with pytest.raises(RemoteApiError) as exc_info:
        await HttpPersistenceBackend(client_for(handler)).save(make_session_record())

    assert exc_info.value.status_code == 503


async def test_subject_lookup_maps_patient_fields():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/patients/p-9"
        return httpx.Response(
            200,
            json={
                "id": "p-9",
                "name": "Sam Lee",
                "dateOfBirth": "1980-02-01",
                "medicalRecordNumber": "MRN-9",
                "insurance": "Acme Health",
                "location": "North Clinic",
            },
        )

    context = await HttpSubjectLookupBackend(client_for(handler, token=None)).lookup("p-9")

    assert context.patient.name == "Sam Lee"
    assert context.patient.date_of_birth == "1980-02-01"
    assert context.patient.medical_record_number == "MRN-9"
    assert context.location == "North Clinic"
    assert context.provider


async def test_client_omits_authorization_without_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["agent"] = request.headers.get("user-agent")
        return httpx.Response(200, json={})

    client = RemoteApiClient(BASE_URL, token="", transport=httpx.MockTransport(handler))
    await client.get_json("/patients/x")
    await client.close()

    assert seen["auth"] is None
    assert seen["agent"].startswith("voicedoc-engine/")


async def test_transcription_response_without_transcript_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "model busy"})

    runner = TranscriptionJobRunner(HttpTranscriptionBackend(client_for(handler)))

    with pytest.raises(TranscriptionFailed):
        await runner.submit(make_artifact())


async def test_malformed_transcription_keeps_existing_transcript(lifecycle_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "model busy"})

    lifecycle = lifecycle_factory(transcription=TranscriptionJobRunner(HttpTranscriptionBackend(client_for(handler))))
    lifecycle.edit_transcript("patient reports improvement")

    await lifecycle.begin_recording()
    lifecycle.capture_provider.device.feed(b"audio")
    await lifecycle.finish_recording()
    await lifecycle.drain()

    assert isinstance(lifecycle.last_failure, TranscriptionFailed)
    assert lifecycle.export_snapshot().transcript == "patient reports improvement"

    with pytest.raises(TranscriptionFailed):
        await lifecycle.transcribe_latest_recording()
    assert lifecycle.export_snapshot().transcript == "patient reports improvement"


async def test_structuring_response_without_note_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"cptCodes": ["99213"]})

    runner = NoteStructuringJobRunner(HttpNoteStructuringBackend(client_for(handler)), note_format="SOAP")

    with pytest.raises(StructuringFailed):
        await runner.submit("patient reports improvement", SessionCategory.PROGRESS_NOTE)


async def test_persistence_accepts_bodiless_acknowledgements():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/submit"):
            return httpx.Response(204)
        return httpx.Response(200, content=b"")

    backend = HttpPersistenceBackend(client_for(handler))
    snapshot = make_session_record(structured_note="Plan: follow up")

    saved = await backend.save(snapshot)
    submitted = await backend.submit(snapshot.model_copy(update={"status": SessionStatus.SUBMITTED}))

    assert saved == snapshot
    assert submitted.status == SessionStatus.SUBMITTED
    assert submitted.structured_note == "Plan: follow up"


async def test_save_draft_and_submit_complete_on_no_content(lifecycle_factory):
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(204)

    lifecycle = lifecycle_factory(persistence=HttpPersistenceBackend(client_for(handler)), autosave_enabled=False)
    lifecycle.edit_structured_note("Plan: follow up")

    saved = await lifecycle.save_draft()
    assert saved.status == SessionStatus.REVIEW

    submitted = await lifecycle.submit()
    assert submitted.status == SessionStatus.SUBMITTED
    assert paths == ["/api/sessions", "/api/sessions/submit"]


async def test_autosave_posts_to_its_own_endpoint():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"success": True})

    backend = HttpPersistenceBackend(client_for(handler))
    snapshot = make_session_record(transcript="work in progress")

    acknowledged = await backend.autosave(snapshot)

    assert paths == ["/api/sessions/autosave"]
    assert acknowledged.transcript == "work in progress"
    assert acknowledged.status == SessionStatus.DRAFT


async def test_lifecycle_autosave_uses_autosave_endpoint(lifecycle_factory, clock):
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(204)

    lifecycle = lifecycle_factory(persistence=HttpPersistenceBackend(client_for(handler)))
    lifecycle.edit_transcript("work in progress")
    await clock.advance(2)
    await lifecycle.autosave.quiesce()

    assert paths == ["/api/sessions/autosave"]
    assert lifecycle.autosave.confirmed_sequence == 1


async def test_http_backends_close_their_clients():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(204)

    clients = [client_for(handler) for _ in range(4)]
    backends = [
        HttpTranscriptionBackend(clients[0]),
        HttpNoteStructuringBackend(clients[1]),
        HttpPersistenceBackend(clients[2]),
        HttpSubjectLookupBackend(clients[3]),
    ]

    for backend in backends:
        await backend.aclose()

    assert all(client.closed for client in clients)
