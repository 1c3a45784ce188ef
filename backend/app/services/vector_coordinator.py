"""
MindNote Backend — Vector Batch Coordinator
============================================

What:  Orchestrates batch embedding of notes and the in-memory similarity
       index built from their stored vectors.
Why:   Embedding a note costs a provider call; re-running a batch must never
       pay twice for the same note, and one bad note must never sink a batch.
How:   generate_batch_embeddings() filters out already-embedded ids through
       the EmbeddingRepository, embeds the rest through AIDispatcher.embed()
       in paced chunks, and saves each vector individually. rebuild_index()
       reloads every stored vector into a numpy-backed SimilarityIndex and
       clears the `search` cache so no stale similarity result survives.
Who:   Built once in the app lifespan; used by the /api/embeddings routes.

Per-entity state (kept in memory for the life of the process):
    UNEMBEDDED → IN_FLIGHT → EMBEDDED
                           ↘ FAILED  (retryable: the next batch tries again)
    An id that is IN_FLIGHT in one call is reported as skipped by any
    concurrent call, so two overlapping batches never embed the same note twice.

Rebuild exclusivity (asyncio.Condition gate):
    - A batch call is a writer for its whole duration
    - Writers arriving during a rebuild wait until it finishes
    - A rebuild waits for active writers to drain before reading vectors
    - A second rebuild while one is running raises IndexRebuildInProgressError
"""

import asyncio
import hashlib
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import numpy as np

from app.cache.store import CacheStore
from app.exceptions import (
    AdmissionRejectedError,
    IndexRebuildInProgressError,
    MindNoteError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.schemas.ai import (
    BatchEmbeddingResult,
    EmbeddingResult,
    FailedEmbedding,
    IndexRebuildResult,
    SimilarityMatch,
)
from app.services.dispatcher import AIDispatcher
from app.services.embedding_repository import EmbeddingRepository

if TYPE_CHECKING:
    from app.config import Settings

logger = logging.getLogger(__name__)


class EntityState(str, Enum):
    UNEMBEDDED = "unembedded"
    IN_FLIGHT = "in_flight"
    EMBEDDED = "embedded"
    FAILED = "failed"


def content_checksum(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def embedding_metadata(text: str, embedding: EmbeddingResult) -> Dict[str, Any]:
    """Metadata saved next to each vector."""
    return {
        "provider": embedding.provider,
        "model": embedding.model,
        "dimensions": embedding.dimensions,
        "checksum": content_checksum(text),
    }


# ══════════════════════════════════════════════════════════════════════════
# Similarity Index
# ══════════════════════════════════════════════════════════════════════════

class SimilarityIndex:
    """
    Immutable cosine-similarity index over unit-normalized vectors.

    Rows of `matrix` are L2-normalized at build time, so a query is a single
    matrix-vector product. Vectors whose length differs from the index
    dimension, or that are zero or non-finite, are skipped at build time.
    """

    def __init__(self, ids: List[str], matrix: np.ndarray):
        self._ids = ids
        self._matrix = matrix
        self._positions = {entity_id: i for i, entity_id in enumerate(ids)}

    @classmethod
    def empty(cls) -> "SimilarityIndex":
        return cls([], np.zeros((0, 0), dtype=np.float32))

    @classmethod
    def build(cls, vectors: Dict[str, List[float]]) -> Tuple["SimilarityIndex", int]:
        """Returns the index and the number of vectors skipped as invalid."""
        ids: List[str] = []
        rows: List[np.ndarray] = []
        dimensions: Optional[int] = None
        skipped = 0

        for entity_id, vector in vectors.items():
            arr = np.asarray(vector, dtype=np.float32)
            if arr.ndim != 1 or arr.size == 0 or not np.all(np.isfinite(arr)):
                skipped += 1
                continue
            if dimensions is None:
                dimensions = arr.size
            if arr.size != dimensions:
                skipped += 1
                continue
            norm = np.linalg.norm(arr)
            if norm == 0:
                skipped += 1
                continue
            ids.append(entity_id)
            rows.append(arr / norm)

        if not rows:
            return cls.empty(), skipped
        return cls(ids, np.vstack(rows)), skipped

    def __len__(self) -> int:
        return len(self._ids)

    @property
    def dimensions(self) -> Optional[int]:
        return self._matrix.shape[1] if self._ids else None

    def vector_for(self, entity_id: str) -> Optional[np.ndarray]:
        position = self._positions.get(entity_id)
        return None if position is None else self._matrix[position]

    def query(
        self,
        vector: Sequence[float],
        limit: int = 10,
        threshold: float = 0.7,
        exclude: Optional[str] = None,
    ) -> List[SimilarityMatch]:
        """Best matches first; only scores >= threshold, at most `limit` of them."""
        if not self._ids:
            return []
        query = np.asarray(vector, dtype=np.float32)
        if query.shape != (self._matrix.shape[1],):
            raise ValidationError(
                f"Query vector has {query.size} dimensions, index has {self._matrix.shape[1]}",
                field="vector",
            )
        norm = np.linalg.norm(query)
        if norm == 0:
            return []

        scores = self._matrix @ (query / norm)
        matches: List[SimilarityMatch] = []
        for position in np.argsort(-scores):
            score = float(scores[position])
            if score < threshold:
                break
            entity_id = self._ids[position]
            if entity_id == exclude:
                continue
            matches.append(SimilarityMatch(entity_id=entity_id, similarity=round(score, 6)))
            if len(matches) >= limit:
                break
        return matches


# ══════════════════════════════════════════════════════════════════════════
# Coordinator
# ══════════════════════════════════════════════════════════════════════════

class VectorBatchCoordinator:
    """
    Args:
        dispatcher:        Provides embed() with provider fallback
        repository:        Persistence collaborator
        search_cache:      Memoizes similarity queries; cleared on rebuild
        max_entities:      Largest batch accepted by generate_batch_embeddings()
        chunk_size:        Texts sent per dispatcher.embed() call
        inter_batch_delay: Seconds to pause between chunks
    """

    def __init__(
        self,
        dispatcher: AIDispatcher,
        repository: EmbeddingRepository,
        search_cache: Optional[CacheStore] = None,
        *,
        max_entities: int = 100,
        chunk_size: int = 20,
        inter_batch_delay: float = 1.0,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")
        self._dispatcher = dispatcher
        self._repository = repository
        self._search_cache = search_cache
        self.max_entities = max_entities
        self.chunk_size = chunk_size
        self.inter_batch_delay = inter_batch_delay

        self._states: Dict[str, EntityState] = {}
        self._index = SimilarityIndex.empty()

        self._gate = asyncio.Condition()
        self._rebuilding = False
        self._active_writers = 0

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        dispatcher: AIDispatcher,
        repository: EmbeddingRepository,
        search_cache: Optional[CacheStore] = None,
    ) -> "VectorBatchCoordinator":
        cfg = settings.embedding
        return cls(
            dispatcher,
            repository,
            search_cache,
            max_entities=cfg.max_entities,
            chunk_size=cfg.chunk_size,
            inter_batch_delay=cfg.inter_batch_delay_seconds,
        )

    @property
    def index(self) -> SimilarityIndex:
        return self._index

    @property
    def rebuilding(self) -> bool:
        return self._rebuilding

    def state_of(self, entity_id: str) -> EntityState:
        return self._states.get(entity_id, EntityState.UNEMBEDDED)

    # ── Batch embedding ───────────────────────────────────────────────────

    async def generate_batch_embeddings(self, entity_ids: Sequence[str]) -> BatchEmbeddingResult:
        """
        Embed every id that has no stored embedding yet.

        Duplicate ids are collapsed. Already-embedded (or concurrently
        in-flight) ids land in `skipped` without a provider call. Provider
        and persistence failures land in `failed`, one entry per id, and
        never abort the remaining ids.

        Raises:
            AdmissionRejectedError: more than max_entities distinct ids.
        """
        ids = list(dict.fromkeys(entity_ids))
        if len(ids) > self.max_entities:
            logger.warning("Rejected embedding batch of %d entities (limit %d)", len(ids), self.max_entities)
            raise AdmissionRejectedError(
                message=f"Cannot embed more than {self.max_entities} notes at once, got {len(ids)}",
                limit=self.max_entities,
                requested=len(ids),
            )

        result = BatchEmbeddingResult()
        if not ids:
            return result

        start_time = time.time()
        claimed: List[str] = []
        async with self._writing():
            try:
                pending = await self._claim(ids, result, claimed)
                await self._embed_pending(pending, result)
            finally:
                # Cancellation or an unexpected error can leave claims behind; release them
                for entity_id in claimed:
                    if self._states.get(entity_id) is EntityState.IN_FLIGHT:
                        self._states[entity_id] = EntityState.UNEMBEDDED

        logger.info(
            "Embedding batch of %d: %d successful, %d failed, %d skipped in %dms",
            len(ids),
            len(result.successful),
            len(result.failed),
            len(result.skipped),
            int((time.time() - start_time) * 1000),
        )
        return result

    async def _claim(self, ids: List[str], result: BatchEmbeddingResult, claimed: List[str]) -> List[str]:
        """
        Mark each id IN_FLIGHT before awaiting its lookup so overlapping calls see the claim.

        Every id marked here is appended to `claimed` at once, so the caller
        can release it even if this coroutine never returns.
        """
        pending: List[str] = []
        for entity_id in ids:
            if self._states.get(entity_id) is EntityState.IN_FLIGHT:
                result.skipped.append(entity_id)
                continue
            self._states[entity_id] = EntityState.IN_FLIGHT
            claimed.append(entity_id)
            try:
                embedded = await self._repository.has_embedding(entity_id)
            except PersistenceError as e:
                self._fail(result, entity_id, e.message)
                continue
            if embedded:
                self._states[entity_id] = EntityState.EMBEDDED
                result.skipped.append(entity_id)
            else:
                pending.append(entity_id)
        return pending

    async def _embed_pending(self, pending: List[str], result: BatchEmbeddingResult) -> None:
        if not pending:
            return
        try:
            texts = await self._repository.find_by_ids(pending)
        except PersistenceError as e:
            for entity_id in pending:
                self._fail(result, entity_id, e.message)
            return

        embeddable = []
        for entity_id in pending:
            text = texts.get(entity_id)
            if text is None:
                self._fail(result, entity_id, "Note not found")
            elif not text.strip():
                self._fail(result, entity_id, "Note has no content to embed")
            else:
                embeddable.append(entity_id)

        for chunk_number, chunk_start in enumerate(range(0, len(embeddable), self.chunk_size)):
            if chunk_number:
                await asyncio.sleep(self.inter_batch_delay)
            chunk = embeddable[chunk_start:chunk_start + self.chunk_size]
            await self._embed_chunk(chunk, texts, result)

    async def _embed_chunk(self, chunk: List[str], texts: Dict[str, str], result: BatchEmbeddingResult) -> None:
        try:
            embedding = await self._dispatcher.embed([texts[entity_id] for entity_id in chunk])
        except MindNoteError as e:
            logger.error("Embedding chunk of %d notes failed: %s", len(chunk), e.message)
            for entity_id in chunk:
                self._fail(result, entity_id, e.message)
            return

        for entity_id, vector in zip(chunk, embedding.vectors):
            try:
                await self._repository.save_embedding(
                    entity_id,
                    vector,
                    embedding_metadata(texts[entity_id], embedding),
                )
            except PersistenceError as e:
                self._fail(result, entity_id, e.message)
                continue
            self._states[entity_id] = EntityState.EMBEDDED
            result.successful.append(entity_id)

    def _fail(self, result: BatchEmbeddingResult, entity_id: str, error: str) -> None:
        logger.warning("Embedding failed for note %s: %s", entity_id, error)
        self._states[entity_id] = EntityState.FAILED
        result.failed.append(FailedEmbedding(id=entity_id, error=error))

    # ── Index rebuild ─────────────────────────────────────────────────────

    async def rebuild_index(self) -> IndexRebuildResult:
        """
        Recompute the similarity index from every persisted vector.

        Raises:
            IndexRebuildInProgressError: another rebuild is running.
            PersistenceError: stored vectors could not be loaded.
        """
        async with self._gate:
            if self._rebuilding:
                raise IndexRebuildInProgressError()
            self._rebuilding = True

        start_time = time.time()
        try:
            async with self._gate:
                await self._gate.wait_for(lambda: self._active_writers == 0)

            vectors = await self._repository.load_embeddings()
            index, skipped = SimilarityIndex.build(vectors)
            self._index = index
            if self._search_cache is not None:
                self._search_cache.clear()
        finally:
            async with self._gate:
                self._rebuilding = False
                self._gate.notify_all()

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Similarity index rebuilt: %d vectors indexed, %d skipped in %dms",
            len(index),
            skipped,
            duration_ms,
        )
        return IndexRebuildResult(
            indexed=len(index),
            skipped_invalid=skipped,
            dimensions=index.dimensions,
            duration_ms=duration_ms,
        )

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        async with self._gate:
            await self._gate.wait_for(lambda: not self._rebuilding)
            self._active_writers += 1
        try:
            yield
        finally:
            async with self._gate:
                self._active_writers -= 1
                self._gate.notify_all()

    # ── Similarity queries ────────────────────────────────────────────────

    async def find_similar(self, entity_id: str, limit: int = 10, threshold: float = 0.7) -> List[SimilarityMatch]:
        """
        Notes most similar to `entity_id`, excluding itself.

        Raises:
            NotFoundError: the note has no stored embedding.
        """
        cache_key = f"similar:{entity_id}:{limit}:{threshold}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        vector = self._index.vector_for(entity_id)
        if vector is None:
            stored = await self._repository.get_embedding(entity_id)
            if stored is None:
                raise NotFoundError(resource="embedding", resource_id=entity_id)
            vector = np.asarray(stored, dtype=np.float32)

        matches = self._index.query(vector, limit=limit, threshold=threshold, exclude=entity_id)
        self._cache_set(cache_key, matches)
        return matches

    async def search(self, text: str, limit: int = 10, threshold: float = 0.7) -> List[SimilarityMatch]:
        """Embed free text through the dispatcher and query the index with it."""
        if not text or not text.strip():
            raise ValidationError("Search text must not be empty", field="text")

        cache_key = f"search:{content_checksum(text)}:{limit}:{threshold}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached

        embedding = await self._dispatcher.embed([text])
        matches = self._index.query(embedding.vectors[0], limit=limit, threshold=threshold)
        self._cache_set(cache_key, matches)
        return matches

    def _cache_get(self, key: str) -> Optional[List[SimilarityMatch]]:
        if self._search_cache is None:
            return None
        return self._search_cache.get(key)

    def _cache_set(self, key: str, matches: List[SimilarityMatch]) -> None:
        if self._search_cache is not None:
            self._search_cache.set(key, matches)
