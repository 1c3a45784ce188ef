"""
MindNote Backend — Embedding Persistence
=========================================

What:  The storage contract the VectorBatchCoordinator depends on, plus its
       SQLAlchemy implementation over the `notes` and `note_embeddings` tables.
Why:   The coordinator needs four facts from storage (is this entity embedded,
       what text does it have, save this vector, give me every vector) and
       nothing else. Keeping that behind an ABC lets tests run against an
       in-memory fake and keeps SQL out of the orchestration code.
How:   SQLEmbeddingRepository opens one short-lived AsyncSession per call.
       Every SQLAlchemy failure is wrapped in PersistenceError with the entity
       ids involved; the coordinator turns those into per-entity failures.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.exceptions import PersistenceError
from app.models.note import Note
from app.models.note_embedding import NoteEmbedding

logger = logging.getLogger(__name__)


class EmbeddingRepository(ABC):
    """Persistence collaborator for batch embedding and index rebuilds."""

    @abstractmethod
    async def has_embedding(self, entity_id: str) -> bool:
        ...

    @abstractmethod
    async def save_embedding(self, entity_id: str, vector: List[float], metadata: Dict[str, Any]) -> None:
        """
        Store (or replace) the vector for `entity_id`.

        metadata carries provider, model, dimensions and checksum.

        Raises:
            PersistenceError: the write failed.
        """
        ...

    @abstractmethod
    async def find_by_ids(self, entity_ids: Sequence[str]) -> Dict[str, str]:
        """Map each existing id to the text to embed; unknown ids are absent."""
        ...

    @abstractmethod
    async def load_embeddings(self) -> Dict[str, List[float]]:
        """Every stored vector, keyed by entity id."""
        ...

    async def get_embedding(self, entity_id: str) -> Optional[List[float]]:
        vectors = await self.load_embeddings()
        return vectors.get(entity_id)


class SQLEmbeddingRepository(EmbeddingRepository):
    """EmbeddingRepository backed by async SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def has_embedding(self, entity_id: str) -> bool:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(NoteEmbedding.note_id).where(NoteEmbedding.note_id == entity_id)
                )
                return result.scalar_one_or_none() is not None
        except SQLAlchemyError as e:
            logger.error("has_embedding failed for %s: %s", entity_id, e)
            raise PersistenceError(
                message="Failed to check embedding status",
                entity_ids=[entity_id],
                context={"error_type": type(e).__name__},
            ) from e

    async def save_embedding(self, entity_id: str, vector: List[float], metadata: Dict[str, Any]) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(NoteEmbedding, entity_id)
                    if row is None:
                        session.add(
                            NoteEmbedding(
                                note_id=entity_id,
                                vector=list(vector),
                                provider=metadata.get("provider", "unknown"),
                                model=metadata.get("model", "unknown"),
                                dimensions=metadata.get("dimensions", len(vector)),
                                checksum=metadata.get("checksum", ""),
                            )
                        )
                    else:
                        row.vector = list(vector)
                        row.provider = metadata.get("provider", row.provider)
                        row.model = metadata.get("model", row.model)
                        row.dimensions = metadata.get("dimensions", len(vector))
                        row.checksum = metadata.get("checksum", row.checksum)
                        row.version += 1
        except SQLAlchemyError as e:
            logger.error("save_embedding failed for %s: %s", entity_id, e)
            raise PersistenceError(
                message="Failed to save embedding",
                entity_ids=[entity_id],
                context={"error_type": type(e).__name__},
            ) from e

    async def find_by_ids(self, entity_ids: Sequence[str]) -> Dict[str, str]:
        if not entity_ids:
            return {}
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(Note).where(Note.id.in_(list(entity_ids))))
                return {note.id: note.embedding_text for note in result.scalars().all()}
        except SQLAlchemyError as e:
            logger.error("find_by_ids failed for %d ids: %s", len(entity_ids), e)
            raise PersistenceError(
                message="Failed to load notes",
                entity_ids=list(entity_ids),
                context={"error_type": type(e).__name__},
            ) from e

    async def load_embeddings(self) -> Dict[str, List[float]]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(NoteEmbedding.note_id, NoteEmbedding.vector))
                return {note_id: vector for note_id, vector in result.all()}
        except SQLAlchemyError as e:
            logger.error("load_embeddings failed: %s", e)
            raise PersistenceError(
                message="Failed to load embeddings",
                context={"error_type": type(e).__name__},
            ) from e

    async def get_embedding(self, entity_id: str) -> Optional[List[float]]:
        try:
            async with self._session_factory() as session:
                row = await session.get(NoteEmbedding, entity_id)
                return list(row.vector) if row is not None else None
        except SQLAlchemyError as e:
            raise PersistenceError(
                message="Failed to load embedding",
                entity_ids=[entity_id],
                context={"error_type": type(e).__name__},
            ) from e
