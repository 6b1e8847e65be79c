from fastapi import status

from src.voicedoc.domain.errors import (
    CaptureFailure,
    ImmutableSession,
    InvalidTransition,
    PermissionDenied,
    SaveFailed,
    SessionEngineError,
    SubmitFailed,
    TranscriptionFailed,
)
from src.voicedoc.main import status_code_for


def test_errors_carry_stable_codes():
    assert PermissionDenied().code == "permission_denied"
    assert PermissionDenied().message == "Microphone access denied"
    assert ImmutableSession("s-1").details == {"session_id": "s-1"}

    transition = InvalidTransition("pause recording", "idle")
    assert transition.code == "invalid_transition"
    assert str(transition) == "Cannot pause recording while idle"


def test_status_codes_for_engine_errors():
    assert status_code_for(PermissionDenied()) == status.HTTP_403_FORBIDDEN
    assert status_code_for(ImmutableSession("s-1")) == status.HTTP_409_CONFLICT
    assert status_code_for(InvalidTransition("submit", "recording")) == status.HTTP_409_CONFLICT
    assert status_code_for(CaptureFailure("device lost")) == status.HTTP_502_BAD_GATEWAY
    assert status_code_for(TranscriptionFailed("boom")) == status.HTTP_502_BAD_GATEWAY
    assert status_code_for(SaveFailed("boom")) == status.HTTP_502_BAD_GATEWAY
    assert status_code_for(SubmitFailed("boom")) == status.HTTP_502_BAD_GATEWAY
    assert status_code_for(SubmitFailed("empty", {"reason": "empty_note"})) == status.HTTP_422_UNPROCESSABLE_ENTITY
    assert status_code_for(SessionEngineError("other", "unknown")) == status.HTTP_500_INTERNAL_SERVER_ERROR
