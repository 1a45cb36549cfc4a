"""
Unit Tests — SqlAlchemyDocumentRepository

Statements are captured from a mocked AsyncSession and compiled against
the PostgreSQL dialect; no database is needed.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from ragingest.db.repository import ChunkRecord, SqlAlchemyDocumentRepository
from ragingest.models.documents import Document


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


@pytest.fixture
def session_factory(mock_db):
    @asynccontextmanager
    async def _factory():
        yield mock_db

    return _factory


@pytest.fixture
def mock_db():
    """
    Mocked AsyncSession.
    execute() returns an empty result by default (override per test).
    """
    from sqlalchemy.ext.asyncio import AsyncSession
    db = MagicMock(spec=AsyncSession)
    db.execute = AsyncMock(return_value=MagicMock(scalars=MagicMock(
        return_value=MagicMock(first=MagicMock(return_value=None))
    )))
    return db


@pytest.mark.unit
class TestRepository:

    async def test_get_document_returns_none_when_absent(self, session_factory):
        repo = SqlAlchemyDocumentRepository(session_factory)
        assert await repo.get_document("missing") is None

    async def test_get_document_returns_row(self, session_factory, mock_db):
        doc = Document(id="d-1", bot_id=1, filename="a.txt", s3_key="k")
        mock_db.execute.return_value = MagicMock(
            scalars=MagicMock(return_value=MagicMock(first=MagicMock(return_value=doc)))
        )
        repo = SqlAlchemyDocumentRepository(session_factory)
        assert await repo.get_document("d-1") is doc

    async def test_update_document_reports_match(self, session_factory, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=1)
        repo = SqlAlchemyDocumentRepository(session_factory)

        assert await repo.update_document("d-1", status="Processing", processing_error=None) is True

        sql = _sql(mock_db.execute.await_args.args[0])
        assert sql.startswith("UPDATE documents SET")
        assert "status=" in sql and "processing_error=" in sql

    async def test_update_document_no_row(self, session_factory, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=0)
        repo = SqlAlchemyDocumentRepository(session_factory)
        assert await repo.update_document("d-1", chunk_count=3) is False

    async def test_update_document_rejects_unknown_fields(self, session_factory, mock_db):
        repo = SqlAlchemyDocumentRepository(session_factory)
        with pytest.raises(ValueError, match="filename"):
            await repo.update_document("d-1", filename="renamed.txt")
        mock_db.execute.assert_not_awaited()

    async def test_upsert_chunk_is_on_conflict_update(self, session_factory, mock_db):
        repo = SqlAlchemyDocumentRepository(session_factory)
        await repo.upsert_chunk(ChunkRecord("d-1", 2, 5, "text", [0.1, 0.2], {"filename": "a.txt"}))

        sql = _sql(mock_db.execute.await_args.args[0])
        assert sql.startswith("INSERT INTO document_chunks")
        assert "ON CONFLICT (document_id, chunk_index) DO UPDATE" in sql
        assert "chunk_metadata = excluded.chunk_metadata" in sql

    async def test_count_chunks(self, session_factory, mock_db):
        mock_db.execute.return_value = MagicMock(scalar_one=MagicMock(return_value=4))
        repo = SqlAlchemyDocumentRepository(session_factory)

        assert await repo.count_chunks("d-1") == 4
        assert "count(*)" in _sql(mock_db.execute.await_args.args[0])
