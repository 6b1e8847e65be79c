from __future__ import annotations

from threading import RLock
from typing import Dict, Iterable, Optional

from src.voicedoc.domain.models.documentation_session import DocumentationSession, SessionStatus
from src.voicedoc.infra.db.repositories import SessionSnapshotRepository


class InMemorySessionSnapshotRepository(SessionSnapshotRepository):
    """Snapshot store for tests and local development.

    Saves may arrive from worker threads (see RepositoryPersistenceBackend),
    so access is serialized with a lock.
    """

    def __init__(self) -> None:
        self._snapshots: Dict[str, DocumentationSession] = {}
        self._lock = RLock()

    def get(self, session_id: str) -> Optional[DocumentationSession]:
        with self._lock:
            snapshot = self._snapshots.get(session_id)
            return snapshot.model_copy(deep=True) if snapshot is not None else None

    def list_by_filters(
        self,
        *,
        patient_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> Iterable[DocumentationSession]:
        with self._lock:
            snapshots = list(self._snapshots.values())
        for snapshot in snapshots:
            if patient_id is not None and snapshot.patient_id != patient_id:
                continue
            if status is not None and snapshot.status != status:
                continue
            yield snapshot.model_copy(deep=True)

    def save(self, snapshot: DocumentationSession) -> DocumentationSession:
        stored = snapshot.model_copy(deep=True)
        with self._lock:
            self._snapshots[stored.id] = stored
        return stored.model_copy(deep=True)


session_snapshot_repository: SessionSnapshotRepository = InMemorySessionSnapshotRepository()
