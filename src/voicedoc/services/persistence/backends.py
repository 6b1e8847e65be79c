from __future__ import annotations

import asyncio
from typing import Any, Optional, Protocol

from src.voicedoc.config import settings
from src.voicedoc.domain.models.documentation_session import DocumentationSession
from src.voicedoc.infra.db.inmemory import session_snapshot_repository
from src.voicedoc.infra.db.repositories import SessionSnapshotRepository
from src.voicedoc.infra.remote.client import RemoteApiClient


class PersistenceBackend(Protocol):
    """Protocol for the remote persistence capability.

    Every call receives a full snapshot and returns the acknowledged record.
    ``autosave`` carries debounced background snapshots; ``save`` is the
    explicit draft save that moves a session to review.
    Implementations raise on failure; the engine decides what to do next.
    """

    async def save(self, snapshot: DocumentationSession) -> DocumentationSession:  # pragma: no cover - interface
        raise NotImplementedError

    async def autosave(self, snapshot: DocumentationSession) -> DocumentationSession:  # pragma: no cover - interface
        raise NotImplementedError

    async def submit(self, snapshot: DocumentationSession) -> DocumentationSession:  # pragma: no cover - interface
        raise NotImplementedError


class RepositoryPersistenceBackend:
    """Persists snapshots through a SessionSnapshotRepository.

    Repositories are synchronous (SQLAlchemy sessions), so each call runs in a
    worker thread.
    """

    def __init__(self, repository: SessionSnapshotRepository | None = None) -> None:
        self._repository = repository or session_snapshot_repository

    @property
    def repository(self) -> SessionSnapshotRepository:
        return self._repository

    async def autosave(self, snapshot: DocumentationSession) -> DocumentationSession:
        return await asyncio.to_thread(self._repository.save, snapshot)

    async def save(self, snapshot: DocumentationSession) -> DocumentationSession:
        return await asyncio.to_thread(self._repository.save, snapshot)

    async def submit(self, snapshot: DocumentationSession) -> DocumentationSession:
        return await asyncio.to_thread(self._repository.save, snapshot)


class HttpPersistenceBackend:
    """Posts auto-saves to ``/sessions/autosave``, explicit draft saves to
    ``/sessions`` and final records to ``/sessions/submit``.
    """

    def __init__(self, client: RemoteApiClient | None = None) -> None:
        self._client = client or RemoteApiClient()

    @staticmethod
    def _acknowledged(body: dict[str, Any], data: Any) -> DocumentationSession:
        # The API may echo only part of the record (or nothing at all); fields
        # it does return take precedence over what was sent.
        if isinstance(data, dict):
            record = data.get("session", data)
            if isinstance(record, dict):
                body = {**body, **{key: value for key, value in record.items() if key in body}}
        return DocumentationSession.model_validate(body)

    async def autosave(self, snapshot: DocumentationSession) -> DocumentationSession:
        body = snapshot.model_dump(mode="json")
        data = await self._client.post_json("/sessions/autosave", body)
        return self._acknowledged(body, data)

    async def save(self, snapshot: DocumentationSession) -> DocumentationSession:
        body = snapshot.model_dump(mode="json")
        data = await self._client.post_json("/sessions", body)
        return self._acknowledged(body, data)

    async def submit(self, snapshot: DocumentationSession) -> DocumentationSession:
        body = snapshot.model_dump(mode="json")
        data = await self._client.post_json("/sessions/submit", body)
        return self._acknowledged(body, data)

    async def aclose(self) -> None:
        await self._client.close()


demo_persistence_backend = RepositoryPersistenceBackend()


def get_persistence_backend_from_env(database_url: Optional[str] = None) -> PersistenceBackend:
    """Select a persistence backend based on the PERSISTENCE_BACKEND environment variable.

    - PERSISTENCE_BACKEND=http → HttpPersistenceBackend
    - PERSISTENCE_BACKEND=sql → RepositoryPersistenceBackend over SQLAlchemy (needs DATABASE_URL)
    - Anything else (or unset) → in-memory RepositoryPersistenceBackend
    """

    backend_name = settings.persistence_backend.lower()
    if backend_name == "http":
        return HttpPersistenceBackend()
    if backend_name == "sql":
        url = database_url or settings.database_url
        if not url:
            raise RuntimeError("PERSISTENCE_BACKEND=sql requires DATABASE_URL to be set")
        from src.voicedoc.infra.db.session import create_sqlalchemy_session_factory
        from src.voicedoc.infra.db.sql_sessions import SqlSessionSnapshotRepository

        return RepositoryPersistenceBackend(SqlSessionSnapshotRepository(create_sqlalchemy_session_factory(url)))
    return demo_persistence_backend
