"""
Chunk persistence and post-write verification.

ChunkSink        one embedded chunk → one upserted row, with retry
VerificationProbe  persisted row count vs. expected chunk total (log-only)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ragingest.core.exceptions import PersistenceError
from ragingest.db.repository import ChunkRecord, DocumentRepository
from ragingest.processing.retry import retry_async

logger = logging.getLogger(__name__)


class ChunkSink:
    """Writes chunks through the repository, retrying transient failures."""

    def __init__(
        self,
        repository:   DocumentRepository,
        max_attempts: int   = 3,
        base_delay:   float = 1.0,
    ) -> None:
        self._repository   = repository
        self._max_attempts = max_attempts
        self._base_delay   = base_delay

    async def persist(self, record: ChunkRecord) -> None:
        if not record.embedding:
            raise PersistenceError(
                f"Refusing to persist chunk {record.chunk_index} without an embedding",
                record.document_id,
            )

        try:
            await retry_async(
                lambda: self._repository.upsert_chunk(record),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                label=f"persist[{record.document_id}:{record.chunk_index}]",
            )
        except Exception as exc:
            raise PersistenceError(
                f"Failed to persist chunk {record.chunk_index}: {exc}",
                record.document_id,
            ) from exc

        logger.debug(
            "Chunk persisted | doc=%s index=%d/%d dims=%d",
            record.document_id, record.chunk_index, record.total_chunks, len(record.embedding),
        )


@dataclass(frozen=True)
class VerificationResult:
    expected: int
    actual:   int

    @property
    def ok(self) -> bool:
        return self.actual >= self.expected


class VerificationProbe:
    """Counts persisted chunks after a run. Never changes the outcome."""

    def __init__(self, repository: DocumentRepository) -> None:
        self._repository = repository

    async def verify(self, document_id: str, expected: int) -> VerificationResult:
        actual = await self._repository.count_chunks(document_id)
        result = VerificationResult(expected=expected, actual=actual)

        if not result.ok:
            logger.warning(
                "Verification shortfall | doc=%s expected=%d actual=%d missing=%d",
                document_id, expected, actual, expected - actual,
            )
        else:
            logger.info("Verification ok | doc=%s chunks=%d", document_id, actual)
        return result
