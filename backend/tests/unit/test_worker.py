"""Unit Tests — worker wiring and configuration"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError


@pytest.mark.unit
class TestWorkerWiring:

    def test_build_processing_service(self, test_settings):
        from ragingest.processing.embeddings import OpenAIEmbeddingProvider
        from ragingest.services.processing import DocumentProcessingService
        from ragingest.workers.worker import build_processing_service

        service = build_processing_service(test_settings)

        assert isinstance(service, DocumentProcessingService)
        assert isinstance(service._embedder.provider, OpenAIEmbeddingProvider)

    def test_main_consumes_and_cleans_up(self, test_settings):
        from ragingest.workers import worker

        service = MagicMock()
        consumer = MagicMock()

        with patch.object(worker, "get_settings", return_value=test_settings), \
             patch.object(worker, "build_processing_service", return_value=service), \
             patch("ragingest.workers.queue.QueueConnection") as connection_cls, \
             patch("ragingest.workers.queue.QueueConsumer", return_value=consumer), \
             patch("ragingest.db.session.engine"), \
             patch("signal.signal"):
            assert worker.main() == 0

        connection_cls.assert_called_once_with(
            test_settings.rabbitmq_url,
            test_settings.file_processing_queue,
            prefetch_count=test_settings.queue_prefetch_count,
        )
        consumer.consume.assert_called_once()
        assert consumer.run.call_count == 2
        consumer.close.assert_called_once()


@pytest.mark.unit
class TestSettings:

    def test_overlap_must_be_smaller_than_chunk_size(self):
        from ragingest.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(chunk_size=100, chunk_overlap=100)

    @pytest.mark.parametrize("size", [0, 2, 6])
    def test_batch_size_outside_three_to_five_rejected(self, size):
        from ragingest.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(processing_batch_size=size)

    def test_batch_size_lower_bound_accepted(self):
        from ragingest.core.config import Settings

        assert Settings(processing_batch_size=3).processing_batch_size == 3

    def test_defaults(self, test_settings):
        assert test_settings.chunk_size == 1000
        assert test_settings.chunk_overlap == 200
        assert test_settings.processing_batch_size == 5
        assert test_settings.max_attempts == 3
        assert test_settings.file_processing_queue == "document-processing"
