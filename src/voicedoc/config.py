from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass
class Settings:
    """Centralized engine settings.

    This keeps environment-variable handling in one place so other modules can
    depend on strongly-typed attributes instead of calling os.getenv
    directly.
    """

    # Recording. The elapsed-time counter advances once per tick and the
    # recording is force-finished when it reaches the maximum.
    max_recording_seconds: int = int(os.getenv("MAX_RECORDING_SECONDS", "1800"))
    recording_tick_seconds: float = float(os.getenv("RECORDING_TICK_SECONDS", "1.0"))
    audio_content_type: str = os.getenv("AUDIO_CONTENT_TYPE", "audio/webm;codecs=opus")
    # Largest single chunk accepted from streamed capture clients (in bytes).
    max_chunk_bytes: int = int(os.getenv("MAX_CHUNK_BYTES", str(1024 * 1024)))

    # Auto-save debounce window (seconds) measured from the latest edit.
    autosave_enabled: bool = os.getenv("AUTOSAVE_ENABLED", "true").lower() == "true"
    autosave_debounce_seconds: float = float(os.getenv("AUTOSAVE_DEBOUNCE_SECONDS", "2.0"))

    # Note structuring options forwarded to the structuring capability.
    note_format: str = os.getenv("NOTE_FORMAT", "SOAP")
    include_timestamps: bool = os.getenv("INCLUDE_TIMESTAMPS", "true").lower() == "true"

    # Transcription request hints.
    transcription_language: str = os.getenv("TRANSCRIPTION_LANGUAGE", "en-US")
    transcription_model: str = os.getenv("TRANSCRIPTION_MODEL", "healthcare")
    transcript_max_length: int = int(os.getenv("TRANSCRIPT_MAX_LENGTH", "50000"))

    # Backend selection: "demo" (default), "http", and backend specific
    # values such as "whisper", "llm" or "sql".
    asr_backend: str = os.getenv("ASR_BACKEND", "demo")
    structuring_backend: str = os.getenv("STRUCTURING_BACKEND", "demo")
    persistence_backend: str = os.getenv("PERSISTENCE_BACKEND", "demo")
    subject_lookup_backend: str = os.getenv("SUBJECT_LOOKUP_BACKEND", "demo")

    # Remote documentation API used by the "http" backends.
    remote_api_base_url: str = os.getenv("REMOTE_API_BASE_URL", "http://localhost:3001/api")
    remote_api_timeout_seconds: float = float(os.getenv("REMOTE_API_TIMEOUT_SECONDS", "30.0"))
    remote_api_token: Optional[str] = os.getenv("REMOTE_API_TOKEN")

    # Optional database configuration for the SQL persistence backend.
    database_url: Optional[str] = os.getenv("DATABASE_URL")

    # Optional settings for external providers.
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    whisper_model_name: str = os.getenv("WHISPER_MODEL_NAME", "base")
    llm_model: str = os.getenv("LLM_MODEL", "gpt-4.1-mini")

    # Scratch directory for backends that need audio on disk (e.g. Whisper).
    audio_scratch_dir: Path = Path(os.getenv("AUDIO_SCRATCH_DIR", "uploads"))

    # Defaults recorded on new sessions when the caller does not supply them.
    default_provider: str = os.getenv("DEFAULT_PROVIDER", "Current User")
    default_location: str = os.getenv("DEFAULT_LOCATION", "Clinic")

    # CORS configuration: comma-separated origins. Default is "*" which is
    # acceptable for local development but should be tightened in production.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
