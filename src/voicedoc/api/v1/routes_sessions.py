from __future__ import annotations

import base64
import binascii
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from src.voicedoc.config import settings
from src.voicedoc.domain.errors import SessionEngineError
from src.voicedoc.domain.models.documentation_session import (
    DocumentationSession,
    SessionCategory,
    SessionExport,
    TranscriptStats,
)
from src.voicedoc.domain.models.jobs import AutoSaveStatus
from src.voicedoc.services.capture.devices import StreamedCaptureDevice, StreamedCaptureDeviceProvider
from src.voicedoc.services.sessions.lifecycle import SessionLifecycle
from src.voicedoc.services.sessions.registry import session_registry

router = APIRouter(prefix="/sessions", tags=["sessions"])


class CreateSessionRequest(BaseModel):
    patient_id: Optional[str] = None
    category: SessionCategory = SessionCategory.PROGRESS_NOTE
    provider: Optional[str] = None
    location: Optional[str] = None
    note_format: Optional[str] = None
    billable: bool = True


class BindSubjectRequest(BaseModel):
    patient_id: str = Field(min_length=1)


class BeginRecordingRequest(BaseModel):
    # Clients own the microphone prompt and report its outcome here.
    permission_granted: bool = True


class TextEditRequest(BaseModel):
    text: str = Field(max_length=settings.transcript_max_length)


class RecordingStatus(BaseModel):
    state: str
    elapsed_seconds: int
    max_duration_seconds: int
    buffered_bytes: int


class ChunkAccepted(BaseModel):
    accepted: bool
    buffered_bytes: int


class AutoSaveToggleRequest(BaseModel):
    enabled: bool


def _get_lifecycle(session_id: str) -> SessionLifecycle:
    lifecycle = session_registry.get(session_id)
    if lifecycle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return lifecycle


def _recording_status(lifecycle: SessionLifecycle) -> RecordingStatus:
    capture = lifecycle.capture
    return RecordingStatus(
        state=capture.state.value,
        elapsed_seconds=capture.elapsed_seconds,
        max_duration_seconds=capture.max_duration_seconds,
        buffered_bytes=capture.buffered_bytes,
    )


def _streamed_provider(lifecycle: SessionLifecycle) -> StreamedCaptureDeviceProvider:
    provider = lifecycle.capture_provider
    if not isinstance(provider, StreamedCaptureDeviceProvider):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Session does not accept streamed audio",
        )
    return provider


def _active_device(lifecycle: SessionLifecycle) -> Optional[StreamedCaptureDevice]:
    provider = lifecycle.capture_provider
    if isinstance(provider, StreamedCaptureDeviceProvider):
        return provider.device
    return None


@router.post("/", response_model=DocumentationSession, status_code=status.HTTP_201_CREATED)
async def create_session(payload: CreateSessionRequest) -> DocumentationSession:
    lifecycle = await session_registry.create(
        patient_id=payload.patient_id,
        category=payload.category,
        provider=payload.provider,
        location=payload.location,
        note_format=payload.note_format,
        billable=payload.billable,
    )
    return lifecycle.export_snapshot()


@router.get("/{session_id}", response_model=DocumentationSession)
async def get_session(session_id: str) -> DocumentationSession:
    return _get_lifecycle(session_id).export_snapshot()


@router.get("/{session_id}/export", response_model=SessionExport)
async def export_session(session_id: str) -> SessionExport:
    return _get_lifecycle(session_id).export_document()


@router.get("/{session_id}/transcript/stats", response_model=TranscriptStats)
async def transcript_stats(session_id: str) -> TranscriptStats:
    return _get_lifecycle(session_id).transcript_stats()


@router.put("/{session_id}/subject", response_model=DocumentationSession)
async def bind_subject(session_id: str, payload: BindSubjectRequest) -> DocumentationSession:
    lifecycle = _get_lifecycle(session_id)
    await lifecycle.bind_subject(payload.patient_id)
    return lifecycle.export_snapshot()


# Recording


@router.get("/{session_id}/recording", response_model=RecordingStatus)
async def recording_status(session_id: str) -> RecordingStatus:
    return _recording_status(_get_lifecycle(session_id))


@router.post("/{session_id}/recording/begin", response_model=RecordingStatus)
async def begin_recording(session_id: str, payload: Optional[BeginRecordingRequest] = None) -> RecordingStatus:
    lifecycle = _get_lifecycle(session_id)
    provider = lifecycle.capture_provider
    if isinstance(provider, StreamedCaptureDeviceProvider):
        provider.permission_granted = payload.permission_granted if payload is not None else True
    await lifecycle.begin_recording()
    return _recording_status(lifecycle)


@router.post("/{session_id}/recording/pause", response_model=RecordingStatus)
async def pause_recording(session_id: str) -> RecordingStatus:
    lifecycle = _get_lifecycle(session_id)
    lifecycle.pause_recording()
    return _recording_status(lifecycle)


@router.post("/{session_id}/recording/resume", response_model=RecordingStatus)
async def resume_recording(session_id: str) -> RecordingStatus:
    lifecycle = _get_lifecycle(session_id)
    lifecycle.resume_recording()
    return _recording_status(lifecycle)


@router.post("/{session_id}/recording/finish", response_model=DocumentationSession)
async def finish_recording(session_id: str, wait: bool = False) -> DocumentationSession:
    """Finish the recording.

    Transcription and structuring continue in the background; pass
    ``wait=true`` to return only after they have completed.
    """

    lifecycle = _get_lifecycle(session_id)
    await lifecycle.finish_recording()
    if wait:
        await lifecycle.drain()
    return lifecycle.export_snapshot()


@router.post("/{session_id}/recording/reset", response_model=RecordingStatus)
async def reset_recording(session_id: str) -> RecordingStatus:
    lifecycle = _get_lifecycle(session_id)
    lifecycle.reset_recording()
    return _recording_status(lifecycle)


@router.post("/{session_id}/recording/chunks", response_model=ChunkAccepted)
async def push_chunk(session_id: str, request: Request) -> ChunkAccepted:
    """Append one raw audio chunk (request body) to the active recording."""

    lifecycle = _get_lifecycle(session_id)
    _streamed_provider(lifecycle)
    chunk = await request.body()
    if len(chunk) > settings.max_chunk_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Audio chunk too large.",
        )
    device = _active_device(lifecycle)
    if device is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No active recording")
    accepted = device.feed(chunk)
    return ChunkAccepted(accepted=accepted, buffered_bytes=lifecycle.capture.buffered_bytes)


@router.websocket("/{session_id}/recording/ws")
async def stream_recording(websocket: WebSocket, session_id: str) -> None:
    """Stream audio chunks into the active recording over a WebSocket.

    Clients send binary frames (or text frames prefixed with
    ``AUDIO_BASE64:``). A text frame ``ERROR:<reason>`` reports a client-side
    device failure and aborts the recording; ``stop`` finishes it. Every
    frame is answered with a small JSON status message.
    """

    lifecycle = session_registry.get(session_id)
    await websocket.accept()
    if lifecycle is None:
        await websocket.send_json({"error": "Session not found"})
        await websocket.close(code=1008)
        return

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break

            chunk: Optional[bytes] = None
            if message.get("bytes") is not None:
                chunk = message["bytes"]
            elif message.get("text") is not None:
                text_msg = message["text"]
                if text_msg.startswith("AUDIO_BASE64:"):
                    try:
                        chunk = base64.b64decode(text_msg[len("AUDIO_BASE64:") :], validate=True)
                    except (binascii.Error, ValueError):
                        await websocket.send_json({"error": "Invalid base64 audio chunk"})
                        continue
                elif text_msg.startswith("ERROR:"):
                    device = _active_device(lifecycle)
                    if device is not None:
                        device.fail(text_msg[len("ERROR:") :].strip() or "Client capture error")
                    await websocket.send_json({"state": lifecycle.recording_state.value})
                    continue
                elif text_msg.lower() == "stop":
                    try:
                        artifact = await lifecycle.finish_recording()
                    except SessionEngineError as exc:
                        await websocket.send_json({"error": exc.message, "code": exc.code})
                        continue
                    await websocket.send_json(
                        {
                            "state": lifecycle.recording_state.value,
                            "duration_seconds": artifact.duration_seconds if artifact is not None else None,
                            "size_bytes": artifact.size_bytes if artifact is not None else None,
                        }
                    )
                    continue
                else:
                    await websocket.send_json({"error": "Unsupported message"})
                    continue

            if chunk is None:
                continue
            if len(chunk) > settings.max_chunk_bytes:
                await websocket.send_json({"error": "Audio chunk too large."})
                await websocket.close(code=1009)
                break

            device = _active_device(lifecycle)
            accepted = device.feed(chunk) if device is not None else False
            await websocket.send_json(
                {
                    "accepted": accepted,
                    "buffered_bytes": lifecycle.capture.buffered_bytes,
                    "elapsed_seconds": lifecycle.capture.elapsed_seconds,
                }
            )
    except WebSocketDisconnect:
        return


# Text edits and pipelines


@router.put("/{session_id}/transcript", response_model=DocumentationSession)
async def edit_transcript(session_id: str, payload: TextEditRequest) -> DocumentationSession:
    lifecycle = _get_lifecycle(session_id)
    lifecycle.edit_transcript(payload.text)
    return lifecycle.export_snapshot()


@router.put("/{session_id}/note", response_model=DocumentationSession)
async def edit_structured_note(session_id: str, payload: TextEditRequest) -> DocumentationSession:
    lifecycle = _get_lifecycle(session_id)
    lifecycle.edit_structured_note(payload.text)
    return lifecycle.export_snapshot()


@router.post("/{session_id}/transcribe", response_model=DocumentationSession)
async def transcribe(session_id: str) -> DocumentationSession:
    lifecycle = _get_lifecycle(session_id)
    await lifecycle.transcribe_latest_recording()
    return lifecycle.export_snapshot()


@router.post("/{session_id}/structure", response_model=DocumentationSession)
async def structure(session_id: str) -> DocumentationSession:
    lifecycle = _get_lifecycle(session_id)
    await lifecycle.generate_structured_note()
    return lifecycle.export_snapshot()


# Status transitions


@router.post("/{session_id}/save-draft", response_model=DocumentationSession)
async def save_draft(session_id: str) -> DocumentationSession:
    return await _get_lifecycle(session_id).save_draft()


@router.post("/{session_id}/sign", response_model=DocumentationSession)
async def sign(session_id: str) -> DocumentationSession:
    return _get_lifecycle(session_id).mark_signed()


@router.post("/{session_id}/submit", response_model=DocumentationSession)
async def submit(session_id: str) -> DocumentationSession:
    return await _get_lifecycle(session_id).submit()


@router.get("/{session_id}/autosave", response_model=AutoSaveStatus)
async def autosave_status(session_id: str) -> AutoSaveStatus:
    return _get_lifecycle(session_id).autosave.status()


@router.put("/{session_id}/autosave", response_model=AutoSaveStatus)
async def toggle_autosave(session_id: str, payload: AutoSaveToggleRequest) -> AutoSaveStatus:
    lifecycle = _get_lifecycle(session_id)
    lifecycle.autosave.set_enabled(payload.enabled)
    return lifecycle.autosave.status()
