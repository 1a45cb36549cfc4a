"""
Document Processing — Pydantic Schemas

Covers:
  - ProcessingJob: the queue message body (camelCase JSON on the wire)
  - Sync processing response: POST /api/v1/document-processing/sync/{id}
  - Document status response: GET /api/v1/documents/{id}/status
  - Error envelope shared by both routes

Wire format of a job:
    {"documentId": "…", "botId": 7, "filename": "notes.txt",
     "storageKey": "documents/7/….txt", "mimeType": "text/plain"}

`s3Key` is accepted in place of `storageKey` for producers that still
send the older field name.
"""

from __future__ import annotations

import json
from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ragingest.core.exceptions import MalformedJobError


# ---------------------------------------------------------------------------
# Queue payload
# ---------------------------------------------------------------------------

class ProcessingJob(BaseModel):
    """One unit of work: process the stored file of one document."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, str_strip_whitespace=True)

    document_id: str        = Field(..., min_length=1, alias="documentId")
    bot_id:      int        = Field(..., alias="botId")
    filename:    str        = Field(..., min_length=1)
    storage_key: str        = Field(
        ...,
        min_length=1,
        alias="storageKey",
        validation_alias=AliasChoices("storageKey", "s3Key", "storage_key"),
    )
    mime_type:   str | None = Field(None, alias="mimeType")

    @classmethod
    def from_message_body(cls, body: bytes | str) -> "ProcessingJob":
        """
        Parse a raw queue body.

        Raises:
            MalformedJobError: body is not JSON, not an object, or fails validation.
        """
        if isinstance(body, (bytes, bytearray)):
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MalformedJobError(f"Job body is not UTF-8: {exc}") from exc

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise MalformedJobError(f"Job body is not valid JSON: {exc}") from exc

        if not isinstance(payload, dict):
            raise MalformedJobError(
                f"Job body must be a JSON object, got {type(payload).__name__}"
            )

        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise MalformedJobError(
                f"Invalid job payload: {exc.error_count()} validation error(s): "
                + "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()),
                payload.get("documentId") if isinstance(payload.get("documentId"), str) else None,
            ) from exc

    def to_message_body(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Sync processing response: POST /document-processing/sync/{id}
# ---------------------------------------------------------------------------

class SyncProcessingResponse(BaseModel):
    success:       bool
    message:       str
    status:        str | None = Field(None, description="Final document status")
    chunk_count:   int | None = Field(None, description="Chunks produced by the splitter")
    failed_chunks: int        = Field(0, description="Chunks that could not be embedded or persisted")


# ---------------------------------------------------------------------------
# Document status response: GET /documents/{id}/status
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""

    model_config = ConfigDict(from_attributes=True)

    document_id:      str
    filename:         str
    status:           str
    chunk_count:      int | None = None
    processing_error: str | None = None
    updated_at:       datetime | None = None


# ---------------------------------------------------------------------------
# Error body
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    """Uniform error envelope for 4xx/5xx responses."""
    message:    str
    error_code: str | None = Field(None, description="Stable machine-readable code")
