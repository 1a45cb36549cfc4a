"""
Document Processing Package
════════════════════════════

Building blocks of the post-upload ingestion pipeline:

  Decode → Split → Embed (batched, retried) → Persist (retried) → Verify

Modules
───────
  extractor.py   bytes → text (strict UTF-8, BOM tolerated, NUL stripped)
  chunking.py    paragraph-first fixed-window TextSplitter
  embeddings.py  provider adapters + validating EmbeddingClient
  retry.py       exponential back-off helper shared by embed and persist
  sink.py        ChunkSink (upsert with retry), VerificationProbe

The orchestrator that sequences these lives in services/processing.py.
"""

from ragingest.processing.chunking import TextSplitter, split_text
from ragingest.processing.embeddings import (
    EmbeddingClient,
    EmbeddingPair,
    EmbeddingProvider,
    get_embedding_provider,
    validate_embedding,
)
from ragingest.processing.extractor import decode_document
from ragingest.processing.retry import backoff_delay, retry_async
from ragingest.processing.sink import ChunkSink, VerificationProbe, VerificationResult

__all__ = [
    "TextSplitter",
    "split_text",
    "EmbeddingClient",
    "EmbeddingPair",
    "EmbeddingProvider",
    "get_embedding_provider",
    "validate_embedding",
    "decode_document",
    "backoff_delay",
    "retry_async",
    "ChunkSink",
    "VerificationProbe",
    "VerificationResult",
]
