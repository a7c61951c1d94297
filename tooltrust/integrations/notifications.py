"""Fire-and-forget notification events published to Kafka."""

import json
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

import structlog
from aiokafka import AIOKafkaProducer
from pydantic import BaseModel, Field

logger = structlog.get_logger()


class NotificationType(StrEnum):
    ADMIN_NOTIFIED = "admin_notified"
    USER_FLAGGED = "user_flagged"
    DISPUTE_CREATED = "dispute_created"
    DISPUTE_MESSAGE = "dispute_message"
    DISPUTE_STATUS_CHANGED = "dispute_status_changed"
    MUTUAL_CLOSURE_PROPOSED = "mutual_closure_proposed"
    MUTUAL_CLOSURE_RESPONDED = "mutual_closure_responded"


class NotificationEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: NotificationType
    subject_id: str
    recipient_ids: list[str] = Field(default_factory=list)
    recipients: list[dict[str, Any]] = Field(default_factory=list)
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class NotificationPublisher(Protocol):
    async def publish(self, event: NotificationEvent) -> None: ...


class KafkaNotificationPublisher:
    """Publishes notification events to a Kafka topic.

    Args:
        producer: An aiokafka AIOKafkaProducer instance, or None to disable.
        topic: Destination topic.
    """

    def __init__(self, producer: Any = None, topic: str = "tooltrust.trust.notifications") -> None:
        self._producer = producer
        self._topic = topic

    async def publish(self, event: NotificationEvent) -> None:
        if self._producer is None:
            logger.debug(
                "kafka_producer_not_available",
                event_id=event.event_id,
                event_type=event.event_type.value,
            )
            return

        await self._producer.send_and_wait(
            self._topic,
            value=json.dumps(event.model_dump(mode="json")).encode("utf-8"),
            key=event.subject_id.encode("utf-8"),
        )
        logger.info(
            "notification_published",
            event_id=event.event_id,
            event_type=event.event_type.value,
            topic=self._topic,
        )


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    """Create and start a Kafka producer."""
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer


async def notify_safely(publisher: NotificationPublisher | None, event: NotificationEvent) -> bool:
    """Publish without letting a delivery failure reach the caller."""
    if publisher is None:
        return False
    try:
        await publisher.publish(event)
        return True
    except Exception:
        logger.exception(
            "notification_publish_failed",
            event_id=event.event_id,
            event_type=event.event_type.value,
            subject_id=event.subject_id,
        )
        return False
