from __future__ import annotations

from typing import Iterable, Optional

from src.voicedoc.domain.models.documentation_session import DocumentationSession, SessionStatus
from src.voicedoc.infra.db.models import DocumentationSessionORM
from src.voicedoc.infra.db.repositories import SessionSnapshotRepository
from src.voicedoc.infra.db.session import SessionFactory


class SqlSessionSnapshotRepository(SessionSnapshotRepository):
    """SQL-backed snapshot store built on a SQLAlchemy SessionFactory.

    Calls are blocking; the persistence backend runs them in a worker thread.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def get(self, session_id: str) -> Optional[DocumentationSession]:
        session = self._session_factory()
        try:
            orm = session.get(DocumentationSessionORM, session_id)
            return orm.to_domain() if orm is not None else None
        finally:
            session.close()

    def list_by_filters(
        self,
        *,
        patient_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> Iterable[DocumentationSession]:
        session = self._session_factory()
        try:
            query = session.query(DocumentationSessionORM)
            if patient_id is not None:
                query = query.filter(DocumentationSessionORM.patient_id == patient_id)
            if status is not None:
                query = query.filter(DocumentationSessionORM.status == status.value)
            rows = query.order_by(DocumentationSessionORM.updated_at.desc()).all()
            return [orm.to_domain() for orm in rows]
        finally:
            session.close()

    def save(self, snapshot: DocumentationSession) -> DocumentationSession:
        session = self._session_factory()
        try:
            existing = session.get(DocumentationSessionORM, snapshot.id)
            if existing is None:
                session.add(DocumentationSessionORM.from_domain(snapshot))
            else:
                existing.update_from_domain(snapshot)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        return snapshot.model_copy(deep=True)
