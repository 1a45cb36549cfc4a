"""
Processing Pipeline — Exception Taxonomy

  ProcessingError
    ├── SourceMissingError     object absent in storage      → Error, no retry
    ├── DecodeError            bytes could not become text   → Error, no retry
    ├── EmbeddingError         provider call / validation    → retried, chunk-scoped
    ├── PersistenceError       chunk write failed            → retried, chunk-scoped
    ├── MalformedJobError      queue payload unparsable      → requeued (bounded)
    └── DocumentNotFoundError  no document row for the id

Chunk-scoped errors never abort a document; the orchestrator counts them.
Stage-scoped errors finalize the document with status Error.
"""

from __future__ import annotations

from typing import Any


class ProcessingError(Exception):
    """Base class for every pipeline error. Carries the document id when known."""

    def __init__(self, message: str, document_id: str | None = None) -> None:
        self.message = message
        self.document_id = document_id
        super().__init__(message)


class SourceMissingError(ProcessingError):
    """The storage collaborator reports that the object does not exist."""

    def __init__(self, key: str, document_id: str | None = None) -> None:
        self.key = key
        super().__init__(f"File not found in storage: {key}", document_id)


class DecodeError(ProcessingError):
    """Raw bytes could not be decoded into document text."""


class EmbeddingError(ProcessingError):
    """
    Embedding provider failure: transport error, HTTP error status,
    malformed response shape, or an empty / non-numeric vector.
    """

    def __init__(
        self,
        message:     str,
        status_code: int | None = None,
        body:        Any = None,
        document_id: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message, document_id)

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.message} (status={self.status_code})"
        return self.message


class PersistenceError(ProcessingError):
    """A chunk could not be written after exhausting retries."""


class MalformedJobError(ProcessingError):
    """A queue message body is not a valid processing job."""


class DocumentNotFoundError(ProcessingError):
    """No document row exists for the requested identifier."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document {document_id} not found", document_id)
