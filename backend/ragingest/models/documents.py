"""
SQLAlchemy ORM Models — Documents & Chunks

Using SQLAlchemy mapped classes (2.x style) for full async support.

Ownership note: rows in `documents` are created by the upload flow and
removed by the deletion flow. The processing pipeline only updates four
columns — status, content, chunk_count, processing_error — and writes
rows into `document_chunks`.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document lifecycle
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status (case-sensitive).
    Transitions: Pending → Processing → Processed | Processed with errors | Error

    Error may be followed by a fresh Pending/Processing cycle when
    reprocessing is triggered externally.
    """
    PENDING               = "Pending"
    PROCESSING            = "Processing"
    PROCESSED             = "Processed"
    PROCESSED_WITH_ERRORS = "Processed with errors"
    ERROR                 = "Error"


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in DocumentStatus)


# ---------------------------------------------------------------------------
# Document model: documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → chunking → embedding.

    chunk_count is the EXPECTED chunk total, written right after splitting,
    so verification has a target even when some chunks later fail.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="documents_status_check"),
        Index("idx_documents_bot_id", "bot_id"),
        Index("idx_documents_status", "bot_id", "status"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        server_default=func.gen_random_uuid(),
    )
    bot_id: Mapped[int] = mapped_column(Integer, nullable=False)

    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename provided by the client",
    )
    s3_key: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Object key in the documents bucket: documents/<bot_id>/<uuid>.<ext>",
    )
    content: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="",
        server_default="",
        comment="Extracted text; written by the worker after decoding",
    )
    mime_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DocumentStatus.PENDING.value,
        server_default=DocumentStatus.PENDING.value,
    )
    chunk_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processing_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Most recent human-readable failure cause",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} bot={self.bot_id} "
            f"status={self.status} file={self.filename!r}>"
        )


# ---------------------------------------------------------------------------
# Chunk model: document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One text chunk of a Document with its embedding vector.
    (document_id, chunk_index) is unique; re-processing overwrites in place.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        CheckConstraint("cardinality(embedding) >= 1", name="document_chunks_embedding_check"),
        Index("idx_document_chunks_document_id", "document_id"),
    )

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    chunk_index: Mapped[int]  = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str]      = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(ARRAY(Float), nullable=False)
    chunk_metadata: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
        comment="filename + created_at of the chunk",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk doc={self.document_id} "
            f"index={self.chunk_index}/{self.total_chunks}>"
        )
