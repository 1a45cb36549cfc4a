"""
RabbitMQ transport for processing jobs (kombu)

Topology:
  exchange  documents            direct, durable
  queue     <FILE_PROCESSING_QUEUE>  durable, routing key = queue name

Producer:
  JobPublisher.publish(job) — JSON body, persistent (delivery_mode=2).

Consumer:
  QueueConsumer.consume() — blocking receive loop, one message at a time.
    handler succeeded          → ack
    handler raised             → requeue
    body is not a valid job    → requeue
  A message delivered QUEUE_MAX_DELIVERIES times without success is a
  poison message and is rejected without requeue.

Delivery counting uses the broker's x-delivery-count header (quorum
queues) when present, else an in-process counter keyed by message id or
body digest. The in-process counter resets when the worker restarts.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections import OrderedDict
from queue import Empty
from typing import Any, Awaitable, Callable

from kombu import Connection, Exchange, Queue

from ragingest.core.exceptions import MalformedJobError
from ragingest.schemas.documents import ProcessingJob

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

DELIVERY_COUNT_HEADER = "x-delivery-count"

# Upper bound on remembered message keys for in-process delivery counting
_MAX_TRACKED_MESSAGES = 10_000

JobHandler = Callable[[ProcessingJob], Awaitable[Any]]


def build_queue(queue_name: str) -> Queue:
    return Queue(
        queue_name,
        exchange=DOCUMENTS_EXCHANGE,
        routing_key=queue_name,
        durable=True,
    )


# ---------------------------------------------------------------------------
# Connection ownership
# ---------------------------------------------------------------------------

class QueueConnection:
    """
    Owns one broker connection and the processing queue declaration.

    Usage:
        with QueueConnection(settings.rabbitmq_url, settings.file_processing_queue) as qc:
            JobPublisher(qc).publish(job)
    """

    def __init__(
        self,
        url:             str,
        queue_name:      str,
        prefetch_count:  int = 1,
        connect_retries: int = 5,
    ) -> None:
        self.url             = url
        self.queue           = build_queue(queue_name)
        self.exchange        = DOCUMENTS_EXCHANGE
        self.prefetch_count  = prefetch_count
        self._connect_retries = connect_retries
        self._conn: Connection | None = None

    @property
    def queue_name(self) -> str:
        return self.queue.name

    @property
    def connection(self) -> Connection:
        if self._conn is None:
            raise RuntimeError("Queue connection is not open")
        return self._conn

    def open(self) -> "QueueConnection":
        if self._conn is not None:
            return self
        conn = Connection(self.url)
        conn.ensure_connection(
            errback=self._on_connect_error,
            max_retries=self._connect_retries,
        )
        self.queue.bind(conn.default_channel).declare()
        self._conn = conn
        logger.info(
            "Queue connected | broker=%s queue=%s prefetch=%d",
            conn.as_uri(), self.queue_name, self.prefetch_count,
        )
        return self

    def close(self) -> None:
        if self._conn is None:
            return
        self._conn.release()
        self._conn = None
        logger.info("Queue connection closed | queue=%s", self.queue_name)

    def simple_queue(self):
        """Manual-ack SimpleQueue over the processing queue with QoS applied."""
        sq = self.connection.SimpleQueue(self.queue)
        sq.consumer.qos(prefetch_count=self.prefetch_count)
        return sq

    def reconnect(self) -> None:
        self.close()
        self.open()

    @staticmethod
    def _on_connect_error(exc: Exception, interval: float) -> None:
        logger.warning("Broker connection failed, retrying in %.0fs | error=%s", interval, exc)

    def __enter__(self) -> "QueueConnection":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Producer
# ---------------------------------------------------------------------------

class JobPublisher:
    """Enqueues processing jobs. Called by the upload flow after the file is stored."""

    def __init__(self, connection: QueueConnection) -> None:
        self._qc = connection

    def publish(self, job: ProcessingJob) -> str:
        """Publish a persistent job message. Returns the AMQP message id."""
        message_id = str(uuid.uuid4())
        producer = self._qc.connection.Producer()
        producer.publish(
            job.to_message_body(),
            exchange=self._qc.exchange,
            routing_key=self._qc.queue.routing_key,
            declare=[self._qc.queue],
            delivery_mode=2,
            content_type="application/json",
            content_encoding="utf-8",
            message_id=message_id,
            retry=True,
            retry_policy={"max_retries": 3, "interval_start": 0.5, "interval_step": 1.0},
        )
        logger.info(
            "Job published | doc=%s queue=%s message_id=%s",
            job.document_id, self._qc.queue_name, message_id,
        )
        return message_id

    def publish_document(
        self,
        document_id: str,
        bot_id:      int,
        filename:    str,
        storage_key: str,
        mime_type:   str | None = None,
    ) -> str:
        return self.publish(
            ProcessingJob(
                document_id=document_id,
                bot_id=bot_id,
                filename=filename,
                storage_key=storage_key,
                mime_type=mime_type,
            )
        )


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------

class QueueConsumer:
    """
    Blocking consumer that runs an async handler per job.

    The consumer owns one event loop; each job runs to completion on it
    before the message is acknowledged. Every resource the handler touches
    (DB engine, HTTP clients) must be used only from this loop.
    """

    ACK     = "ack"
    REQUEUE = "requeue"
    REJECT  = "reject"

    def __init__(
        self,
        connection:     QueueConnection | None,
        handler:        JobHandler,
        max_deliveries: int = 5,
        loop:           asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        self._qc             = connection
        self._handler        = handler
        self._max_deliveries = max_deliveries
        self._loop           = loop
        self._owns_loop      = loop is None
        self._running        = False
        self._deliveries: OrderedDict[str, int] = OrderedDict()

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        return self._loop

    def run(self, coro: Awaitable[Any]) -> Any:
        """Run a coroutine on the consumer's loop (also used for shutdown cleanup)."""
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        if self._owns_loop and self._loop is not None and not self._loop.is_closed():
            self._loop.close()
        self._loop = None

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Ask the receive loop to exit after the current message."""
        if self._running:
            logger.info("Consumer stopping")
        self._running = False

    def consume(self, limit: int | None = None, timeout: float = 1.0) -> int:
        """
        Receive and handle messages until stop() or `limit` messages.
        Returns the number of messages handled.
        """
        if self._qc is None:
            raise RuntimeError("QueueConsumer has no connection to consume from")

        handled = 0
        self._running = True
        logger.info("Consumer started | queue=%s max_deliveries=%d", self._qc.queue_name, self._max_deliveries)

        while self._running and (limit is None or handled < limit):
            connection_errors = self._qc.connection.connection_errors
            sq = self._qc.simple_queue()
            try:
                while self._running and (limit is None or handled < limit):
                    try:
                        message = sq.get(block=True, timeout=timeout)
                    except Empty:
                        continue
                    self.handle_message(message)
                    handled += 1
            except connection_errors as exc:
                logger.warning("Broker connection lost, reconnecting | error=%s", exc)
                self._qc.reconnect()
                continue
            sq.close()

        self._running = False
        logger.info("Consumer stopped | handled=%d", handled)
        return handled

    # ------------------------------------------------------------------
    # Single message
    # ------------------------------------------------------------------

    def handle_message(self, message) -> str:
        """Parse, run, and settle one message. Returns ack | requeue | reject."""
        key = self._message_key(message)
        deliveries = self._count_delivery(message, key)

        try:
            job = ProcessingJob.from_message_body(message.body)
        except MalformedJobError as exc:
            logger.error(
                "Malformed job | delivery=%d/%d error=%s",
                deliveries, self._max_deliveries, exc.message,
            )
            return self._retry_or_reject(message, key, deliveries)

        try:
            self.run(self._handler(job))
        except Exception:
            logger.exception(
                "Job handler failed | doc=%s delivery=%d/%d",
                job.document_id, deliveries, self._max_deliveries,
            )
            return self._retry_or_reject(message, key, deliveries)

        message.ack()
        self._deliveries.pop(key, None)
        logger.info("Job acknowledged | doc=%s", job.document_id)
        return self.ACK

    def _retry_or_reject(self, message, key: str, deliveries: int) -> str:
        if deliveries >= self._max_deliveries:
            logger.error(
                "Poison message rejected | key=%s deliveries=%d",
                key, deliveries,
            )
            message.reject(requeue=False)
            self._deliveries.pop(key, None)
            return self.REJECT

        message.requeue()
        return self.REQUEUE

    # ------------------------------------------------------------------
    # Delivery counting
    # ------------------------------------------------------------------

    def _count_delivery(self, message, key: str) -> int:
        headers = getattr(message, "headers", None) or {}
        broker_count = headers.get(DELIVERY_COUNT_HEADER)
        if isinstance(broker_count, int) and not isinstance(broker_count, bool):
            # broker counts prior deliveries
            return broker_count + 1

        count = self._deliveries.pop(key, 0) + 1
        self._deliveries[key] = count
        while len(self._deliveries) > _MAX_TRACKED_MESSAGES:
            self._deliveries.popitem(last=False)
        return count

    @staticmethod
    def _message_key(message) -> str:
        properties = getattr(message, "properties", None) or {}
        message_id = properties.get("message_id")
        if message_id:
            return str(message_id)

        body = message.body
        if isinstance(body, str):
            body = body.encode("utf-8")
        return hashlib.sha256(body or b"").hexdigest()
