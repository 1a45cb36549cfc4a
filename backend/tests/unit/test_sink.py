"""
Unit Tests — retry helper, ChunkSink, VerificationProbe
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from ragingest.core.exceptions import PersistenceError
from ragingest.db.repository import ChunkRecord
from ragingest.processing.retry import backoff_delay, retry_async
from ragingest.processing.sink import ChunkSink, VerificationProbe


def _record(index: int = 0, embedding=None) -> ChunkRecord:
    return ChunkRecord(
        document_id="doc-1",
        chunk_index=index,
        total_chunks=3,
        content=f"chunk {index}",
        embedding=[0.1, 0.2] if embedding is None else embedding,
        metadata={"filename": "notes.txt", "created_at": "2024-01-01T00:00:00+00:00"},
    )


@pytest.mark.unit
class TestRetryHelper:

    def test_backoff_doubles(self):
        assert [backoff_delay(n, 1.0) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
        assert backoff_delay(2, 0.5) == 1.0

    async def test_non_retryable_error_propagates_immediately(self, no_sleep):
        op = AsyncMock(side_effect=KeyError("nope"))
        with pytest.raises(KeyError):
            await retry_async(op, max_attempts=3, base_delay=1.0, retry_on=(ValueError,))
        assert op.await_count == 1
        no_sleep.assert_not_awaited()

    async def test_returns_first_success(self, no_sleep):
        op = AsyncMock(side_effect=[ValueError("x"), "done"])
        assert await retry_async(op, max_attempts=3, base_delay=1.0) == "done"
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0]

    async def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            await retry_async(AsyncMock(), max_attempts=0, base_delay=1.0)


@pytest.mark.unit
class TestChunkSink:

    async def test_persists_record(self, fake_repository, no_sleep):
        sink = ChunkSink(fake_repository)
        await sink.persist(_record(1))
        assert fake_repository.chunks[("doc-1", 1)].content == "chunk 1"

    async def test_empty_vector_rejected_without_repository_call(self, fake_repository, no_sleep):
        sink = ChunkSink(fake_repository)
        with pytest.raises(PersistenceError):
            await sink.persist(_record(0, embedding=[]))
        assert fake_repository.upsert_calls == 0

    async def test_retries_then_raises_persistence_error(self, fake_repository, no_sleep):
        fake_repository.fail_upsert_for = {2}
        sink = ChunkSink(fake_repository, max_attempts=3, base_delay=1.0)

        with pytest.raises(PersistenceError) as exc_info:
            await sink.persist(_record(2))

        assert fake_repository.upsert_calls == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0, 4.0]
        assert exc_info.value.document_id == "doc-1"

    async def test_transient_failure_recovers(self, no_sleep):
        repo = AsyncMock()
        repo.upsert_chunk.side_effect = [ConnectionError("blip"), None]
        await ChunkSink(repo).persist(_record(0))
        assert repo.upsert_chunk.await_count == 2

    async def test_redelivery_overwrites_same_position(self, fake_repository, no_sleep):
        sink = ChunkSink(fake_repository)
        await sink.persist(_record(0))
        await sink.persist(ChunkRecord("doc-1", 0, 3, "rewritten", [0.9]))
        assert len(fake_repository.chunks) == 1
        assert fake_repository.chunks[("doc-1", 0)].content == "rewritten"


@pytest.mark.unit
class TestVerificationProbe:

    async def test_full_count_is_ok(self, fake_repository):
        for i in range(3):
            fake_repository.chunks[("doc-1", i)] = _record(i)
        result = await VerificationProbe(fake_repository).verify("doc-1", 3)
        assert (result.expected, result.actual, result.ok) == (3, 3, True)

    async def test_shortfall_logs_warning(self, fake_repository, caplog):
        fake_repository.chunks[("doc-1", 0)] = _record(0)
        with caplog.at_level("WARNING", logger="ragingest.processing.sink"):
            result = await VerificationProbe(fake_repository).verify("doc-1", 3)
        assert not result.ok
        assert result.actual == 1
        assert "Verification shortfall" in caplog.text
