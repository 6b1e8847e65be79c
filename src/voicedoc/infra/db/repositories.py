from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from src.voicedoc.domain.models.documentation_session import DocumentationSession, SessionStatus


class SessionSnapshotRepository(ABC):
    @abstractmethod
    def get(self, session_id: str) -> Optional[DocumentationSession]:
        raise NotImplementedError

    @abstractmethod
    def list_by_filters(
        self,
        *,
        patient_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> Iterable[DocumentationSession]:
        raise NotImplementedError

    @abstractmethod
    def save(self, snapshot: DocumentationSession) -> DocumentationSession:
        """Insert or replace the stored snapshot and return what was stored."""
        raise NotImplementedError
