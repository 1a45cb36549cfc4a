"""
Queue Worker — process entry point

Wires the processing service and drains the document-processing queue:

  ragingest-worker                 (console script)
  python -m ragingest.workers.worker

Shutdown: SIGINT / SIGTERM stop the receive loop after the current job;
the embedding client and the DB engine are released on the consumer's
event loop before exit.
"""

from __future__ import annotations

import logging
import signal
import sys

from ragingest.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def build_processing_service(config: Settings):
    """Construct a DocumentProcessingService backed by Postgres, S3 and the configured provider."""
    from ragingest.db.repository import SqlAlchemyDocumentRepository
    from ragingest.db.session import get_db_session
    from ragingest.processing.chunking import TextSplitter
    from ragingest.processing.embeddings import EmbeddingClient
    from ragingest.processing.sink import ChunkSink, VerificationProbe
    from ragingest.services.processing import DocumentProcessingService
    from ragingest.storage.s3 import S3StorageService

    repository = SqlAlchemyDocumentRepository(get_db_session)
    return DocumentProcessingService(
        repository=repository,
        storage=S3StorageService(config),
        splitter=TextSplitter(config.chunk_size, config.chunk_overlap),
        embedder=EmbeddingClient.from_settings(config),
        sink=ChunkSink(repository, config.max_attempts, config.retry_base_delay),
        probe=VerificationProbe(repository),
        config=config,
    )


def configure_logging(config: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # kombu/amqp are chatty at DEBUG
    logging.getLogger("amqp").setLevel(logging.WARNING)
    logging.getLogger("kombu").setLevel(logging.INFO)


def main() -> int:
    from ragingest.db.session import engine
    from ragingest.workers.queue import QueueConnection, QueueConsumer

    config = get_settings()
    configure_logging(config)

    logger.info(
        "Starting worker | env=%s queue=%s provider=%s model=%s",
        config.app_env, config.file_processing_queue,
        config.embedding_provider, config.embedding_model or "provider default",
    )

    service = build_processing_service(config)
    connection = QueueConnection(
        config.rabbitmq_url,
        config.file_processing_queue,
        prefetch_count=config.queue_prefetch_count,
    )
    consumer = QueueConsumer(
        connection,
        handler=service.process,
        max_deliveries=config.queue_max_deliveries,
    )

    def _shutdown(signum, _frame) -> None:
        logger.info("Signal received, shutting down | signal=%s", signal.Signals(signum).name)
        consumer.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        with connection:
            consumer.consume()
    except Exception:
        logger.exception("Worker crashed")
        return 1
    finally:
        consumer.run(service.aclose())
        consumer.run(engine.dispose())
        consumer.close()
        logger.info("Worker stopped")

    return 0


if __name__ == "__main__":
    sys.exit(main())
