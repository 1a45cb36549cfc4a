"""
Document Repository — persistence contract used by the processing pipeline

The pipeline only ever speaks this interface:

  get_document(id)            read the row (None when absent)
  update_document(id, **f)    partial-field update, returns False when absent
  upsert_chunk(record)        insert-or-overwrite by (document_id, chunk_index)
  count_chunks(id)            persisted chunk count for verification

Chunk writes are upserts so an at-least-once redelivery of the same job
overwrites existing rows instead of duplicating them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from ragingest.models.documents import Document, DocumentChunk

logger = logging.getLogger(__name__)

# Columns the pipeline is allowed to write on a document row
UPDATABLE_FIELDS = frozenset({"status", "content", "chunk_count", "processing_error"})


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class ChunkRecord:
    """A single embedded chunk ready to persist."""
    document_id:  str
    chunk_index:  int            # 0-based position from the splitter
    total_chunks: int            # splitter output length at creation time
    content:      str
    embedding:    list[float]
    metadata:     dict[str, Any] = field(default_factory=dict)   # filename, created_at


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class DocumentRepository(ABC):

    @abstractmethod
    async def get_document(self, document_id: str) -> Document | None:
        """Return the document row, or None when it does not exist."""

    @abstractmethod
    async def update_document(self, document_id: str, **fields: Any) -> bool:
        """
        Update only the given columns. Returns False when no row matched.
        Only UPDATABLE_FIELDS may be written.
        """

    @abstractmethod
    async def upsert_chunk(self, record: ChunkRecord) -> None:
        """Insert a chunk, overwriting any row at the same (document_id, chunk_index)."""

    @abstractmethod
    async def count_chunks(self, document_id: str) -> int:
        """Number of chunk rows persisted for the document."""


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Fields not updatable by the pipeline: {sorted(unknown)}")


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SqlAlchemyDocumentRepository(DocumentRepository):
    """
    PostgreSQL-backed repository. Every call opens its own short transaction
    through the injected session factory (an async context manager factory,
    normally db.session.get_db_session).
    """

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def get_document(self, document_id: str) -> Document | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Document).where(Document.id == document_id))
            return result.scalars().first()

    async def update_document(self, document_id: str, **fields: Any) -> bool:
        _check_fields(fields)
        if not fields:
            return True
        async with self._session_factory() as db:
            result = await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**fields)
            )
        matched = (result.rowcount or 0) > 0
        logger.debug(
            "Document updated | doc=%s fields=%s matched=%s",
            document_id, sorted(fields), matched,
        )
        return matched

    async def upsert_chunk(self, record: ChunkRecord) -> None:
        stmt = pg_insert(DocumentChunk).values(
            document_id=record.document_id,
            chunk_index=record.chunk_index,
            total_chunks=record.total_chunks,
            content=record.content,
            embedding=record.embedding,
            chunk_metadata=record.metadata,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[DocumentChunk.document_id, DocumentChunk.chunk_index],
            set_={
                "total_chunks":   stmt.excluded.total_chunks,
                "content":        stmt.excluded.content,
                "embedding":      stmt.excluded.embedding,
                "chunk_metadata": stmt.excluded.chunk_metadata,
            },
        )
        async with self._session_factory() as db:
            await db.execute(stmt)

    async def count_chunks(self, document_id: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
            )
            return int(result.scalar_one())
