"""
MindNote Backend — Note SQLAlchemy Model
==========================================

What:  ORM model for the `notes` table.
Why:   Notes are the entities the AI core embeds; the coordinator reads their
       title and content to build the embedding input.
Who:   Read by SQLEmbeddingRepository; schema managed by Alembic.

Table Design Rationale:
    - String primary key: note ids arrive from the client as opaque strings
      (UUIDs in practice); keeping them as text avoids dialect-specific types
    - content is TEXT: no artificial length limit on note bodies
    - created_at/updated_at are timezone-aware UTC

Note CRUD is owned by the notes frontend; this backend only reads notes.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Note(Base):
    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )

    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
        server_default=text("''"),
    )

    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        server_default=text("''"),
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

    __table_args__ = (
        Index("idx_notes_created_at", created_at.desc()),
    )

    @property
    def embedding_text(self) -> str:
        """Title and body joined the way they are sent to the embedding model."""
        if self.title:
            return f"{self.title}\n\n{self.content}"
        return self.content

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, title='{self.title[:30]}', created_at='{self.created_at}')>"
