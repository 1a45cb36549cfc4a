"""
Document Processing API Router

  POST /api/v1/document-processing/sync/{document_id}
      Run the pipeline inline for an existing document and return the
      outcome. Shares the per-document lock with any queue work in the
      same process.

  GET  /api/v1/documents/{document_id}/status
      Current status, chunk count and last processing error.

Errors:
  404  unknown document        {"message", "error_code": "DOCUMENT_NOT_FOUND"}
  500  pipeline failure        {"message": "Failed to process document: …"}
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ragingest.core.config import get_settings
from ragingest.core.exceptions import DocumentNotFoundError
from ragingest.db.repository import DocumentRepository, SqlAlchemyDocumentRepository
from ragingest.db.session import get_db_session
from ragingest.models.documents import DocumentStatus
from ragingest.schemas.documents import (
    DocumentStatusResponse,
    ErrorResponse,
    SyncProcessingResponse,
)
from ragingest.services.processing import DocumentProcessingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Document Processing"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def get_processing_service() -> DocumentProcessingService:
    """One service per API process so the per-document lock is shared."""
    from ragingest.workers.worker import build_processing_service

    return build_processing_service(get_settings())


def get_document_repository() -> DocumentRepository:
    return SqlAlchemyDocumentRepository(get_db_session)


ProcessingServiceDep = Annotated[DocumentProcessingService, Depends(get_processing_service)]
RepositoryDep        = Annotated[DocumentRepository, Depends(get_document_repository)]


def _not_found(document_id: str) -> JSONResponse:
    body = ErrorResponse(
        message=f"Document {document_id} not found",
        error_code="DOCUMENT_NOT_FOUND",
    )
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body.model_dump())


def _failed(reason: str) -> JSONResponse:
    body = ErrorResponse(
        message=f"Failed to process document: {reason}",
        error_code="PROCESSING_FAILED",
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post(
    "/document-processing/sync/{document_id}",
    response_model=SyncProcessingResponse,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Process a document synchronously",
)
async def process_document_sync(document_id: str, service: ProcessingServiceDep):
    logger.info("Sync processing requested | doc=%s", document_id)

    try:
        outcome = await service.process_document(document_id)
    except DocumentNotFoundError:
        return _not_found(document_id)
    except Exception as exc:
        logger.exception("Sync processing failed | doc=%s", document_id)
        return _failed(str(exc) or type(exc).__name__)

    if outcome.status is None:
        return _not_found(document_id)
    if not outcome.succeeded:
        return _failed(outcome.error or "unknown error")

    message = (
        f"Document {document_id} processed successfully"
        if outcome.status == DocumentStatus.PROCESSED
        else f"Document {document_id} processed with errors: {outcome.error}"
    )
    return SyncProcessingResponse(
        success=outcome.succeeded,
        message=message,
        status=outcome.status.value,
        chunk_count=outcome.chunk_count,
        failed_chunks=outcome.failed_chunks,
    )


@router.get(
    "/documents/{document_id}/status",
    response_model=DocumentStatusResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Get document processing status",
)
async def get_document_status(document_id: str, repository: RepositoryDep):
    doc = await repository.get_document(document_id)
    if doc is None:
        return _not_found(document_id)

    return DocumentStatusResponse(
        document_id=str(doc.id),
        filename=doc.filename,
        status=doc.status,
        chunk_count=doc.chunk_count,
        processing_error=doc.processing_error,
        updated_at=doc.updated_at,
    )
