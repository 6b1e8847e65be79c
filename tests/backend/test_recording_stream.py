import base64

import pytest
from fastapi.testclient import TestClient

from src.voicedoc.infra.db.inmemory import InMemorySessionSnapshotRepository
from src.voicedoc.main import app
from src.voicedoc.services.persistence.backends import RepositoryPersistenceBackend
from src.voicedoc.services.sessions.registry import session_registry
from src.voicedoc.services.structuring.backends import DemoNoteStructuringBackend
from src.voicedoc.services.transcription.backends import DemoTranscriptionBackend


@pytest.fixture
def api_client():
    session_registry.configure(
        transcription_backend=DemoTranscriptionBackend(),
        structuring_backend=DemoNoteStructuringBackend(),
        persistence=RepositoryPersistenceBackend(InMemorySessionSnapshotRepository()),
    )
    # Entering the context runs startup/shutdown so live sessions are closed
    # on the same event loop that created them.
    with TestClient(app) as client:
        yield client


def test_websocket_streams_chunks_and_finishes_recording(api_client):
    session_id = api_client.post("/api/v1/sessions/", json={}).json()["id"]
    assert api_client.post(f"/api/v1/sessions/{session_id}/recording/begin").status_code == 200

    with api_client.websocket_connect(f"/api/v1/sessions/{session_id}/recording/ws") as ws:
        ws.send_bytes(b"abcd")
        first = ws.receive_json()
        assert first["accepted"] is True
        assert first["buffered_bytes"] == 4

        ws.send_text("AUDIO_BASE64:" + base64.b64encode(b"efgh").decode())
        assert ws.receive_json()["buffered_bytes"] == 8

        ws.send_text("AUDIO_BASE64:not base64!")
        assert ws.receive_json() == {"error": "Invalid base64 audio chunk"}

        ws.send_text("stop")
        finished = ws.receive_json()
        assert finished["state"] == "idle"
        assert finished["size_bytes"] == 8

    snapshot = api_client.get(f"/api/v1/sessions/{session_id}").json()
    assert snapshot["audio_size_bytes"] == 8


def test_websocket_error_frame_aborts_recording(api_client):
    session_id = api_client.post("/api/v1/sessions/", json={}).json()["id"]
    api_client.post(f"/api/v1/sessions/{session_id}/recording/begin")

    with api_client.websocket_connect(f"/api/v1/sessions/{session_id}/recording/ws") as ws:
        ws.send_bytes(b"abcd")
        ws.receive_json()
        ws.send_text("ERROR: microphone lost")
        assert ws.receive_json() == {"state": "idle"}

        ws.send_bytes(b"more")
        assert ws.receive_json()["accepted"] is False

    recording = api_client.get(f"/api/v1/sessions/{session_id}/recording").json()
    assert recording["state"] == "idle"
    assert recording["buffered_bytes"] == 0


def test_websocket_for_unknown_session_reports_error(api_client):
    with api_client.websocket_connect("/api/v1/sessions/missing/recording/ws") as ws:
        assert ws.receive_json() == {"error": "Session not found"}
