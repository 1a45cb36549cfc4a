"""
Document Processing Service

Orchestrates the post-upload pipeline for one document:
  0. Mark the document Processing (clears the previous error)
  1. Download the stored file
  2. Decode bytes → text, persist text on the document
  3. Split into chunks, persist the expected chunk count
  4. Embed in batches; recover invalid vectors one by one; persist each chunk
  5. Verify the persisted chunk count (log-only)
  6. Finalize: Processed | Processed with errors | Error

Failure semantics:
  - Chunk-scoped failures (embedding, persistence) are counted, never fatal.
  - A missing source file or undecodable bytes finalize Error and return
    normally; redelivery would fail the same way.
  - Anything else finalizes Error best-effort and re-raises so the queue
    consumer can requeue the delivery.

Documents are processed one at a time per id within a process: the sync
HTTP trigger and the queue worker share the same per-document lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Protocol

from ragingest.core.config import Settings, settings as default_settings
from ragingest.core.exceptions import (
    DecodeError,
    DocumentNotFoundError,
    EmbeddingError,
    PersistenceError,
    SourceMissingError,
)
from ragingest.db.repository import ChunkRecord, DocumentRepository
from ragingest.models.documents import DocumentStatus
from ragingest.processing.chunking import TextSplitter
from ragingest.processing.embeddings import EmbeddingClient, is_valid_vector
from ragingest.processing.extractor import decode_document
from ragingest.processing.sink import ChunkSink, VerificationProbe
from ragingest.schemas.documents import ProcessingJob

logger = logging.getLogger(__name__)


class FileStorage(Protocol):
    async def get_file(self, key: str) -> bytes | None: ...


class ProcessingStage(str, Enum):
    DOWNLOADING              = "downloading"
    EXTRACTING               = "extracting"
    SPLITTING                = "splitting"
    EMBEDDING_AND_PERSISTING = "embedding_and_persisting"
    VERIFYING                = "verifying"
    FINALIZED                = "finalized"


@dataclass
class ProcessingOutcome:
    """What happened to one document. status=None means the row was absent."""
    document_id:      str
    status:           DocumentStatus | None = None
    chunk_count:      int | None = None
    persisted_chunks: int = 0
    failed_chunks:    int = 0
    error:            str | None = None
    verified_chunks:  int | None = None
    stage:            ProcessingStage = ProcessingStage.DOWNLOADING
    elapsed_ms:       float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (DocumentStatus.PROCESSED, DocumentStatus.PROCESSED_WITH_ERRORS)


class DocumentProcessingService:

    def __init__(
        self,
        repository: DocumentRepository,
        storage:    FileStorage,
        splitter:   TextSplitter | None,
        embedder:   EmbeddingClient,
        sink:       ChunkSink | None = None,
        probe:      VerificationProbe | None = None,
        config:     Settings | None = None,
    ) -> None:
        self._cfg        = config or default_settings
        self._repository = repository
        self._storage    = storage
        self._splitter   = splitter or TextSplitter(self._cfg.chunk_size, self._cfg.chunk_overlap)
        self._embedder   = embedder
        self._sink       = sink or ChunkSink(
            repository,
            max_attempts=self._cfg.max_attempts,
            base_delay=self._cfg.retry_base_delay,
        )
        self._probe      = probe or VerificationProbe(repository)

        self._locks:     dict[str, asyncio.Lock] = {}
        self._lock_refs: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process(self, job: ProcessingJob) -> ProcessingOutcome:
        """Run the full pipeline for one job."""
        async with self._document_lock(job.document_id):
            return await self._run(job)

    async def process_document(self, document_id: str) -> ProcessingOutcome:
        """
        Build the job from the stored document row and process it.

        Raises:
            DocumentNotFoundError: no row exists for document_id.
        """
        doc = await self._repository.get_document(document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)

        job = ProcessingJob(
            document_id=str(doc.id),
            bot_id=doc.bot_id,
            filename=doc.filename,
            storage_key=doc.s3_key,
            mime_type=doc.mime_type,
        )
        return await self.process(job)

    async def aclose(self) -> None:
        await self._embedder.aclose()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(self, job: ProcessingJob) -> ProcessingOutcome:
        t0 = time.monotonic()
        doc_id = job.document_id
        outcome = ProcessingOutcome(document_id=doc_id)

        logger.info(
            "Processing | doc=%s bot=%s key=%s file=%s",
            doc_id, job.bot_id, job.storage_key, job.filename,
        )

        # --- Phase 0: status → Processing -------------------------------
        found = await self._repository.update_document(
            doc_id,
            status=DocumentStatus.PROCESSING.value,
            processing_error=None,
        )
        if not found:
            logger.error("Document not found, skipping | doc=%s", doc_id)
            outcome.stage = ProcessingStage.FINALIZED
            outcome.error = f"Document {doc_id} not found"
            return self._done(outcome, t0)

        try:
            # --- Phase 1: Download --------------------------------------
            outcome.stage = ProcessingStage.DOWNLOADING
            data = await self._storage.get_file(job.storage_key)
            if data is None:
                raise SourceMissingError(job.storage_key, doc_id)

            # --- Phase 2: Extract ---------------------------------------
            outcome.stage = ProcessingStage.EXTRACTING
            text = decode_document(data, document_id=doc_id)
            await self._repository.update_document(doc_id, content=text)

            # --- Phase 3: Split -----------------------------------------
            outcome.stage = ProcessingStage.SPLITTING
            chunks = self._splitter.split(text)
            outcome.chunk_count = len(chunks)
            await self._repository.update_document(doc_id, chunk_count=len(chunks))
            logger.info("Chunked | doc=%s chunks=%d chars=%d", doc_id, len(chunks), len(text))

            # --- Phase 4: Embed + persist -------------------------------
            outcome.stage = ProcessingStage.EMBEDDING_AND_PERSISTING
            await self._embed_and_persist(job, chunks, outcome)

            # --- Phase 5: Verify ----------------------------------------
            outcome.stage = ProcessingStage.VERIFYING
            await self._verify(doc_id, len(chunks), outcome)

            # --- Phase 6: Finalize --------------------------------------
            status, error = _final_status(outcome.failed_chunks, len(chunks))
            await self._finalize(outcome, status, error)

        except (SourceMissingError, DecodeError) as exc:
            logger.error(
                "Processing failed | doc=%s stage=%s error=%s",
                doc_id, outcome.stage.value, exc.message,
            )
            await self._finalize(outcome, DocumentStatus.ERROR, exc.message)

        except Exception as exc:
            logger.exception(
                "Processing crashed | doc=%s stage=%s", doc_id, outcome.stage.value,
            )
            await self._mark_failed(outcome, str(exc) or type(exc).__name__)
            raise

        return self._done(outcome, t0)

    async def _embed_and_persist(
        self,
        job:     ProcessingJob,
        chunks:  list[str],
        outcome: ProcessingOutcome,
    ) -> None:
        doc_id     = job.document_id
        total      = len(chunks)
        batch_size = self._cfg.processing_batch_size
        created_at = datetime.now(timezone.utc).isoformat()

        for start in range(0, total, batch_size):
            batch = chunks[start : start + batch_size]
            pairs = await self._embedder.embed_batch(batch)

            for offset, (text, vector) in enumerate(pairs):
                index = start + offset

                if not is_valid_vector(vector):
                    try:
                        vector = await self._embedder.embed(text)
                    except EmbeddingError as exc:
                        outcome.failed_chunks += 1
                        logger.error(
                            "Chunk embedding failed | doc=%s index=%d error=%s",
                            doc_id, index, exc,
                        )
                        continue

                record = ChunkRecord(
                    document_id=doc_id,
                    chunk_index=index,
                    total_chunks=total,
                    content=text,
                    embedding=vector,
                    metadata={"filename": job.filename, "created_at": created_at},
                )
                try:
                    await self._sink.persist(record)
                except PersistenceError as exc:
                    outcome.failed_chunks += 1
                    logger.error(
                        "Chunk persistence failed | doc=%s index=%d error=%s",
                        doc_id, index, exc.message,
                    )
                    continue

                outcome.persisted_chunks += 1

            if start + batch_size < total:
                await asyncio.sleep(self._cfg.inter_batch_delay)

        logger.info(
            "Embedded | doc=%s persisted=%d failed=%d total=%d",
            doc_id, outcome.persisted_chunks, outcome.failed_chunks, total,
        )

    async def _verify(self, doc_id: str, expected: int, outcome: ProcessingOutcome) -> None:
        try:
            result = await self._probe.verify(doc_id, expected)
        except Exception:
            logger.exception("Verification query failed | doc=%s", doc_id)
            return
        outcome.verified_chunks = result.actual

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(
        self,
        outcome: ProcessingOutcome,
        status:  DocumentStatus,
        error:   str | None,
    ) -> None:
        await self._repository.update_document(
            outcome.document_id,
            status=status.value,
            processing_error=error,
        )
        outcome.status = status
        outcome.error  = error
        outcome.stage  = ProcessingStage.FINALIZED
        logger.info(
            "Finalized | doc=%s status=%s chunks=%s failed=%d",
            outcome.document_id, status.value, outcome.chunk_count, outcome.failed_chunks,
        )

    async def _mark_failed(self, outcome: ProcessingOutcome, message: str) -> None:
        """Best-effort Error status; the original exception is re-raised by the caller."""
        try:
            await self._finalize(outcome, DocumentStatus.ERROR, message)
        except Exception:
            logger.exception("Could not record Error status | doc=%s", outcome.document_id)

    @staticmethod
    def _done(outcome: ProcessingOutcome, t0: float) -> ProcessingOutcome:
        outcome.elapsed_ms = (time.monotonic() - t0) * 1000
        return outcome

    # ------------------------------------------------------------------
    # Per-document exclusion
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        self._lock_refs[document_id] = self._lock_refs.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[document_id] -= 1
            if self._lock_refs[document_id] == 0:
                del self._lock_refs[document_id]
                del self._locks[document_id]


def _final_status(failed: int, chunk_count: int) -> tuple[DocumentStatus, str | None]:
    if failed == 0:
        return DocumentStatus.PROCESSED, None
    if failed < chunk_count:
        return (
            DocumentStatus.PROCESSED_WITH_ERRORS,
            f"{failed} chunks failed to process (of {chunk_count})",
        )
    return DocumentStatus.ERROR, f"All {chunk_count} chunks failed to process"
