from __future__ import annotations

import asyncio
import mimetypes
from typing import Optional, Protocol
from uuid import uuid4

from src.voicedoc.config import settings
from src.voicedoc.domain.models.audio_artifact import AudioArtifact
from src.voicedoc.infra.remote.client import RemoteApiClient


class TranscriptionBackend(Protocol):
    """Protocol for the remote transcription capability.

    One invocation is one remote call; implementations raise on failure and
    never retry on their own.
    """

    async def transcribe(
        self,
        artifact: AudioArtifact,
        *,
        language_code: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class DemoTranscriptionBackend:
    """Very simple demo transcription backend.

    Returns a deterministic placeholder so tests and local development stay
    fast and offline.
    """

    async def transcribe(
        self,
        artifact: AudioArtifact,
        *,
        language_code: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        lang = language_code or "unknown-lang"
        return f"Demo transcript of a {artifact.duration_seconds}s recording in {lang}"


class HttpTranscriptionBackend:
    """Uploads the artifact to the documentation API's ``/transcribe`` endpoint."""

    def __init__(self, client: RemoteApiClient | None = None) -> None:
        self._client = client or RemoteApiClient()

    async def transcribe(
        self,
        artifact: AudioArtifact,
        *,
        language_code: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        base_type = artifact.content_type.split(";")[0]
        extension = mimetypes.guess_extension(base_type) or ".webm"
        data = await self._client.post_multipart(
            "/transcribe",
            files={"audio": (f"recording{extension}", artifact.payload, artifact.content_type)},
            data={
                "language": language_code or settings.transcription_language,
                "model": model or settings.transcription_model,
            },
        )
        text = data.get("transcript") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise RuntimeError("Transcription response missing 'transcript'")
        return text

    async def aclose(self) -> None:
        await self._client.close()


class WhisperTranscriptionBackend:
    """Transcription backend that uses the open-source Whisper model via the `whisper` library.

    The artifact is written to the scratch directory so Whisper can read it
    by path; inference runs in a worker thread to keep the event loop free.
    Install with `pip install openai-whisper` and set `ASR_BACKEND=whisper`.
    """

    def __init__(self, model_name: str | None = None) -> None:
        self._model_name = model_name or settings.whisper_model_name
        self._model = None

    def _load_model(self):
        if self._model is None:
            try:
                import whisper  # type: ignore
            except ImportError as exc:  # pragma: no cover - depends on external lib
                raise RuntimeError(
                    "WhisperTranscriptionBackend requires the 'whisper' library. "
                    "Install it with 'pip install openai-whisper'"
                ) from exc
            self._model = whisper.load_model(self._model_name)
        return self._model

    def _transcribe_sync(self, artifact: AudioArtifact, language_code: Optional[str]) -> str:  # pragma: no cover - external lib
        model = self._load_model()
        scratch = settings.audio_scratch_dir
        scratch.mkdir(parents=True, exist_ok=True)
        path = scratch / f"{uuid4()}.audio"
        path.write_bytes(artifact.payload)
        try:
            # Whisper expects bare language codes ("en"), not locales ("en-US").
            language = language_code.split("-")[0] if language_code else None
            result = model.transcribe(str(path), language=language)
            return result.get("text", "")
        finally:
            path.unlink(missing_ok=True)

    async def transcribe(
        self,
        artifact: AudioArtifact,
        *,
        language_code: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:  # pragma: no cover - external lib
        return await asyncio.to_thread(self._transcribe_sync, artifact, language_code)


demo_transcription_backend = DemoTranscriptionBackend()


def get_transcription_backend_from_env() -> TranscriptionBackend:
    """Select a transcription backend based on the ASR_BACKEND environment variable.

    - ASR_BACKEND=http → HttpTranscriptionBackend
    - ASR_BACKEND=whisper → WhisperTranscriptionBackend
    - Anything else (or unset) → DemoTranscriptionBackend
    """

    backend_name = settings.asr_backend.lower()
    if backend_name == "http":
        return HttpTranscriptionBackend()
    if backend_name == "whisper":
        return WhisperTranscriptionBackend()
    return demo_transcription_backend
