"""
MindNote Backend — NoteEmbedding SQLAlchemy Model
===================================================

What:  One stored embedding vector per note.
Why:   Embeddings are expensive to compute; the stored row is what makes
       batch embedding idempotent (has_embedding) and what rebuild_index()
       loads to build the in-memory similarity index.

Table Design Rationale:
    - note_id is both primary key and FK: at most one current vector per note;
      re-embedding a note replaces its row and bumps `version`
    - vector stored as JSON: portable across PostgreSQL and SQLite; the
      similarity index lives in memory, so the database never queries it
    - checksum: SHA-256 of the embedded text, to tell a stale vector from a
      current one when the note changes
"""

from datetime import datetime, timezone
from typing import List

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NoteEmbedding(Base):
    __tablename__ = "note_embeddings"

    note_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("notes.id", ondelete="CASCADE"),
        primary_key=True,
    )

    vector: Mapped[List[float]] = mapped_column(JSON, nullable=False)

    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    dimensions: Mapped[int] = mapped_column(Integer, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False, default="")

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        server_default=text("1"),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return (
            f"<NoteEmbedding(note_id={self.note_id}, provider='{self.provider}', "
            f"dimensions={self.dimensions}, version={self.version})>"
        )
