"""
Session engine error types.

Every failure the engine surfaces is a SessionEngineError carrying a stable
``code`` so outer layers can map it without string matching.
"""

from __future__ import annotations

from typing import Any, Optional


class SessionEngineError(Exception):
    def __init__(self, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class PermissionDenied(SessionEngineError):
    """Capture device access was refused. The user may retry."""

    def __init__(self, message: str = "Microphone access denied", details: Optional[dict[str, Any]] = None):
        super().__init__("permission_denied", message, details)


class CaptureFailure(SessionEngineError):
    """The capture device failed; the attempt was aborted and audio discarded."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("capture_failure", message, details)


class TranscriptionFailed(SessionEngineError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("transcription_failed", message, details)


class StructuringFailed(SessionEngineError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("structuring_failed", message, details)


class SaveFailed(SessionEngineError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("save_failed", message, details)


class SubmitFailed(SessionEngineError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__("submit_failed", message, details)


class ImmutableSession(SessionEngineError):
    """A mutation was attempted after the session was submitted."""

    def __init__(self, session_id: str):
        super().__init__(
            "immutable_session",
            f"Session {session_id} has been submitted and can no longer be changed",
            {"session_id": session_id},
        )


class InvalidTransition(SessionEngineError):
    """An operation was requested from a state where it is not valid."""

    def __init__(self, operation: str, state: str):
        super().__init__(
            "invalid_transition",
            f"Cannot {operation} while {state}",
            {"operation": operation, "state": state},
        )
