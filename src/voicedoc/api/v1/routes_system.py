from fastapi import APIRouter

from src.voicedoc.config import settings
from src.voicedoc.services.sessions.registry import session_registry

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.get("/system/config")
async def engine_config_v1() -> dict:
    """Non-secret engine configuration, useful when wiring up clients.

    Reports the selected backends and the recording and auto-save limits so
    a client can size its countdown and debounce UI to match the server.
    """

    return {
        "backends": {
            "asr": settings.asr_backend,
            "structuring": settings.structuring_backend,
            "persistence": settings.persistence_backend,
            "subject_lookup": settings.subject_lookup_backend,
        },
        "max_recording_seconds": settings.max_recording_seconds,
        "audio_content_type": settings.audio_content_type,
        "autosave_enabled": settings.autosave_enabled,
        "autosave_debounce_seconds": settings.autosave_debounce_seconds,
        "note_format": settings.note_format,
        "transcript_max_length": settings.transcript_max_length,
        "active_sessions": len(session_registry.list_ids()),
    }
