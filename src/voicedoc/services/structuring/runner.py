from __future__ import annotations

import logging
from typing import Optional

from src.voicedoc.config import settings
from src.voicedoc.domain.errors import StructuringFailed
from src.voicedoc.domain.models.documentation_session import SessionCategory
from src.voicedoc.domain.models.jobs import StructuredNoteResult
from src.voicedoc.domain.models.subject_context import SubjectContext
from src.voicedoc.services.jobs import LatestSubmissionGuard
from src.voicedoc.services.structuring.backends import (
    NoteStructuringBackend,
    get_structuring_backend_from_env,
)

logger = logging.getLogger(__name__)


class NoteStructuringJobRunner:
    """Single-flight note structuring, guarded the same way as transcription."""

    def __init__(
        self,
        backend: Optional[NoteStructuringBackend] = None,
        *,
        note_format: Optional[str] = None,
        include_timestamps: Optional[bool] = None,
    ) -> None:
        self._backend = backend or get_structuring_backend_from_env()
        self.note_format = note_format or settings.note_format
        self._include_timestamps = settings.include_timestamps if include_timestamps is None else include_timestamps
        self._guard = LatestSubmissionGuard()
        self.latest_result: Optional[StructuredNoteResult] = None

    @property
    def in_flight(self) -> bool:
        return self._guard.in_flight

    @property
    def generation(self) -> int:
        return self._guard.generation

    async def submit(
        self,
        transcript: str,
        category: SessionCategory,
        context: Optional[SubjectContext] = None,
    ) -> Optional[StructuredNoteResult]:
        """Structure ``transcript``; returns None if the job was superseded."""

        job = self._guard.issue(transcript)
        logger.info("Structuring job %s submitted (%s, %s)", job.generation, category.value, self.note_format)
        try:
            result = await self._backend.structure(
                transcript,
                category=category,
                note_format=self.note_format,
                context=context,
                include_timestamps=self._include_timestamps,
            )
        except Exception as exc:
            if not self._guard.is_current(job):
                logger.info("Superseded structuring job %s failed; ignoring", job.generation)
                return None
            self._guard.complete(job)
            logger.warning("Structuring job %s failed: %s", job.generation, exc)
            raise StructuringFailed(
                f"Note structuring failed: {exc}",
                {"generation": job.generation, "cause": type(exc).__name__},
            ) from exc

        if not self._guard.is_current(job):
            logger.info("Discarding result of superseded structuring job %s", job.generation)
            return None

        self._guard.complete(job)
        self.latest_result = result
        return result

    def cancel(self) -> None:
        self._guard.cancel()
