from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.voicedoc.domain.models.documentation_session import DocumentationSession


class Base(DeclarativeBase):
    pass


class DocumentationSessionORM(Base):
    __tablename__ = "documentation_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    patient_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Full snapshot as JSON; the columns above are for filtering only.
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    @classmethod
    def from_domain(cls, snapshot: DocumentationSession) -> "DocumentationSessionORM":
        orm = cls(id=snapshot.id)
        orm.update_from_domain(snapshot)
        return orm

    def update_from_domain(self, snapshot: DocumentationSession) -> None:
        self.patient_id = snapshot.patient_id
        self.status = snapshot.status.value
        self.category = snapshot.category.value
        self.updated_at = snapshot.updated_at
        self.payload = snapshot.model_dump_json()

    def to_domain(self) -> DocumentationSession:
        return DocumentationSession.model_validate_json(self.payload)
