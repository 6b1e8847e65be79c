from __future__ import annotations

import logging
from typing import Optional

from src.voicedoc.config import settings
from src.voicedoc.domain.errors import TranscriptionFailed
from src.voicedoc.domain.models.audio_artifact import AudioArtifact
from src.voicedoc.services.jobs import LatestSubmissionGuard
from src.voicedoc.services.transcription.backends import (
    TranscriptionBackend,
    get_transcription_backend_from_env,
)

logger = logging.getLogger(__name__)


class TranscriptionJobRunner:
    """Single-flight transcription of audio artifacts for one session.

    A newer ``submit`` supersedes the one in flight; the superseded call is
    allowed to finish but its outcome (text or error) is dropped.
    """

    def __init__(
        self,
        backend: Optional[TranscriptionBackend] = None,
        *,
        language_code: Optional[str] = None,
        model: Optional[str] = None,
    ) -> None:
        self._backend = backend or get_transcription_backend_from_env()
        self._language_code = language_code or settings.transcription_language
        self._model = model or settings.transcription_model
        self._guard = LatestSubmissionGuard()
        self.latest_text: Optional[str] = None

    @property
    def in_flight(self) -> bool:
        return self._guard.in_flight

    @property
    def generation(self) -> int:
        return self._guard.generation

    async def submit(self, artifact: AudioArtifact) -> Optional[str]:
        """Transcribe ``artifact``; returns None if the job was superseded."""

        job = self._guard.issue(artifact)
        logger.info("Transcription job %s submitted (%s bytes)", job.generation, artifact.size_bytes)
        try:
            text = await self._backend.transcribe(
                artifact,
                language_code=self._language_code,
                model=self._model,
            )
        except Exception as exc:
            if not self._guard.is_current(job):
                logger.info("Superseded transcription job %s failed; ignoring", job.generation)
                return None
            self._guard.complete(job)
            logger.warning("Transcription job %s failed: %s", job.generation, exc)
            raise TranscriptionFailed(
                f"Transcription failed: {exc}",
                {"generation": job.generation, "cause": type(exc).__name__},
            ) from exc

        if not self._guard.is_current(job):
            logger.info("Discarding result of superseded transcription job %s", job.generation)
            return None

        self._guard.complete(job)
        self.latest_text = text
        return text

    def cancel(self) -> None:
        self._guard.cancel()
