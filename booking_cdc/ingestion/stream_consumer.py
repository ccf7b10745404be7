"""
Kafka Change Stream Consumer

Feeds booking change envelopes from a Kafka topic into the ingestion buffer:
- Consumer group management with manual offset commits
- Envelope interpretation (generic, Debezium-style and flat payloads)
- Duplicate redeliveries absorbed by the buffer's dedup key
- Dead-letter topic for envelopes that cannot be interpreted
- Metrics and observability

A Kafka offset is committed only after the event is durably buffered (or
dead-lettered), so a crash replays from the last commit and the dedup key
turns the replay into no-ops.
"""

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import structlog
from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError
from prometheus_client import Counter, Histogram

from booking_cdc.config import get_settings
from booking_cdc.errors import DuplicateEventError, MalformedEnvelopeError
from booking_cdc.ingestion.buffer import IngestionBuffer
from booking_cdc.ingestion.events import change_event_from_envelope
from booking_cdc.schemas import utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

EVENTS_CONSUMED = Counter(
    "booking_cdc_events_consumed_total",
    "Change envelopes consumed",
    ["topic", "outcome"],
)

EVENT_PROCESSING_TIME = Histogram(
    "booking_cdc_event_processing_seconds",
    "Time spent buffering one change envelope",
    ["topic"],
)


class ConsumeOutcome(str, Enum):
    APPENDED = "appended"
    DUPLICATE = "duplicate"
    DEAD_LETTERED = "dead_lettered"


# =============================================================================
# STREAM CONSUMER
# =============================================================================

@dataclass
class ConsumerConfig:
    """Kafka consumer configuration"""
    topics: List[str]
    group_id: str = "booking-cdc"
    bootstrap_servers: str = "localhost:9092"
    auto_offset_reset: str = "earliest"
    enable_auto_commit: bool = False  # commit after buffering
    max_poll_records: int = 500
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000

    @classmethod
    def from_settings(cls) -> "ConsumerConfig":
        kafka = get_settings().kafka
        return cls(
            topics=[kafka.topic_booking_changes],
            group_id=kafka.consumer_group,
            bootstrap_servers=kafka.bootstrap_servers,
            auto_offset_reset=kafka.auto_offset_reset,
            max_poll_records=kafka.max_poll_records,
            session_timeout_ms=kafka.session_timeout_ms,
            heartbeat_interval_ms=kafka.heartbeat_interval_ms,
        )


class StreamConsumer:
    """
    Kafka consumer appending booking change events to the buffer.

    Storage failures stop the consumer without committing, so the message
    is redelivered after restart.

    Example:
        consumer = StreamConsumer(buffer)
        await consumer.start()
    """

    def __init__(self, buffer: Optional[IngestionBuffer] = None, config: Optional[ConsumerConfig] = None):
        self.buffer = buffer or IngestionBuffer()
        self.config = config or ConsumerConfig.from_settings()

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._producer: Optional[AIOKafkaProducer] = None  # dead-letter
        self._running = False

    async def _create_consumer(self) -> AIOKafkaConsumer:
        return AIOKafkaConsumer(
            *self.config.topics,
            bootstrap_servers=self.config.bootstrap_servers,
            group_id=self.config.group_id,
            auto_offset_reset=self.config.auto_offset_reset,
            enable_auto_commit=self.config.enable_auto_commit,
            max_poll_records=self.config.max_poll_records,
            session_timeout_ms=self.config.session_timeout_ms,
            heartbeat_interval_ms=self.config.heartbeat_interval_ms,
            key_deserializer=lambda k: k.decode("utf-8") if k else None,
        )

    async def _create_producer(self) -> AIOKafkaProducer:
        return AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        )

    async def _send_to_dlq(self, topic: str, payload: Any, error: str) -> None:
        """Send an uninterpretable envelope to ``<topic>.dlq``"""
        dlq_topic = f"{topic}.dlq"
        message = {
            "original_topic": topic,
            "original_payload": payload,
            "error": error,
            "failed_at": utcnow().isoformat(),
        }
        if self._producer is None:
            logger.warning("Dead-letter producer not running", topic=dlq_topic, error=error)
            return
        await self._producer.send_and_wait(dlq_topic, value=message)
        logger.info("Sent envelope to dead-letter topic", topic=dlq_topic, error=error)

    @staticmethod
    def _decode(value: Union[bytes, str, Dict[str, Any], None]) -> Dict[str, Any]:
        if isinstance(value, dict):
            return value
        if value is None:
            raise MalformedEnvelopeError("Empty message")
        try:
            text = value.decode("utf-8") if isinstance(value, bytes) else value
        except UnicodeDecodeError as e:
            raise MalformedEnvelopeError(f"Message is not UTF-8: {e}") from e
        try:
            envelope = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedEnvelopeError(f"Message is not JSON: {e}") from e
        if not isinstance(envelope, dict):
            raise MalformedEnvelopeError("Message is not a JSON object")
        return envelope

    async def process_payload(self, topic: str, value: Union[bytes, str, Dict[str, Any], None]) -> ConsumeOutcome:
        """Interpret and buffer one message value"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        try:
            event = change_event_from_envelope(self._decode(value))
        except MalformedEnvelopeError as e:
            payload = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value
            await self._send_to_dlq(topic, payload, e.message)
            EVENTS_CONSUMED.labels(topic=topic, outcome=ConsumeOutcome.DEAD_LETTERED.value).inc()
            return ConsumeOutcome.DEAD_LETTERED

        try:
            await self.buffer.append(event)
            outcome = ConsumeOutcome.APPENDED
        except DuplicateEventError:
            outcome = ConsumeOutcome.DUPLICATE

        EVENT_PROCESSING_TIME.labels(topic=topic).observe(loop.time() - start_time)
        EVENTS_CONSUMED.labels(topic=topic, outcome=outcome.value).inc()
        return outcome

    async def start(self) -> None:
        """Consume until stopped"""
        logger.info(
            "Starting stream consumer",
            topics=self.config.topics,
            group_id=self.config.group_id,
        )

        self._consumer = await self._create_consumer()
        self._producer = await self._create_producer()

        await self._consumer.start()
        await self._producer.start()
        self._running = True

        try:
            async for message in self._consumer:
                if not self._running:
                    break
                await self.process_payload(message.topic, message.value)
                await self._consumer.commit()
        except KafkaConnectionError as e:
            logger.error("Kafka connection error", error=str(e))
            raise
        except KafkaError as e:
            logger.error("Kafka error", error=str(e))
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the consumer gracefully"""
        if not self._running and self._consumer is None:
            return
        logger.info("Stopping stream consumer")
        self._running = False

        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

        logger.info("Stream consumer stopped")
