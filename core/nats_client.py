"""
NATS JetStream Client for Python Microservices

Provides event-driven communication between the fulfillment service and the
validation workflow using nats-py JetStream (publish to streams, durable
push consumers).
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import nats
from nats.aio.client import Client as NATS
from nats.errors import Error as NATSError
from nats.js import JetStreamContext
from nats.js.errors import APIError

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that keeps money exact by emitting Decimals as strings"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


class EventType(Enum):
    """Event subjects known to the fulfillment platform"""

    # Validation workflow (consumed)
    SUBMISSION_VALIDATED = "validation.submission.validated"
    SUBMISSION_REJECTED = "validation.submission.rejected"
    SUBMISSION_CONFLICT = "validation.submission.conflict"

    # Fulfillment (published)
    SUBMISSION_TIER_ASSIGNED = "fulfillment.submission.tier_assigned"
    TIER_COMPLETED = "fulfillment.tier.completed"


class ServiceSource(Enum):
    """Event sources"""

    FULFILLMENT_SERVICE = "fulfillment_service"
    VALIDATION_SERVICE = "validation_service"


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: Union[EventType, str],
        source: Union[ServiceSource, str],
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type.value if isinstance(event_type, Enum) else event_type
        self.source = source.value if isinstance(source, Enum) else source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        event = cls.__new__(cls)
        event.id = data.get("id")
        event.type = data.get("type")
        event.source = data.get("source")
        event.subject = data.get("subject")
        event.timestamp = data.get("timestamp")
        event.data = data.get("data", {})
        event.metadata = data.get("metadata", {})
        event.version = data.get("version", "1.0.0")
        return event


def stream_name_for(subject: str) -> str:
    """Map a subject or pattern to its JetStream stream (``fulfillment.x`` -> ``fulfillment-stream``)"""
    return f"{subject.split('.')[0]}-stream"


class NATSEventBus:
    """
    NATS JetStream event bus.

    One stream per subject prefix; subscriptions are durable push consumers
    whose messages are acked after the handler returns.
    """

    def __init__(self, service_name: str, config: Optional[InfraConfig] = None):
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.servers = self.config.nats_servers

        self._nc: Optional[NATS] = None
        self._js: Optional[JetStreamContext] = None
        self._subscriptions: List[Any] = []
        self._streams: Dict[str, bool] = {}
        self._is_connected = False

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self):
        """Connect to NATS and open a JetStream context"""
        try:
            self._nc = await nats.connect(
                servers=self.servers,
                name=self.service_name,
                connect_timeout=self.config.nats_connect_timeout,
            )
            self._js = self._nc.jetstream()
            self._is_connected = True
            logger.info(f"Connected to NATS as {self.service_name}")
        except (OSError, NATSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def _ensure_stream(self, subject: str):
        """Create the stream backing a subject prefix (idempotent)"""
        stream_name = stream_name_for(subject)
        if self._streams.get(stream_name):
            return stream_name
        prefix = subject.split('.')[0]
        try:
            await self._js.add_stream(name=stream_name, subjects=[f"{prefix}.>"], max_msgs=self.config.nats_stream_max_msgs)
        except APIError as e:
            logger.debug(f"Stream creation note: {e}")
        self._streams[stream_name] = True
        return stream_name

    async def publish_event(self, event: Event) -> bool:
        """
        Publish an event to its JetStream stream.

        The event type is used as the subject; the stream is derived from the
        subject prefix.
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return False

        try:
            stream_name = await self._ensure_stream(event.type)
            data = json.dumps(event.to_dict(), cls=DecimalEncoder).encode()
            ack = await self._js.publish(event.type, data)
            logger.info(f"Published event {event.type} [{event.id}] to stream {stream_name}, seq={ack.seq}")
            return True
        except (NATSError, asyncio.TimeoutError) as e:
            logger.error(f"Error publishing event {event.id}: {e}")
            return False

    async def subscribe_to_events(
        self, pattern: str, handler: Callable, durable: Optional[str] = None
    ) -> Optional[str]:
        """
        Subscribe to events with a pattern using a durable JetStream consumer.

        Args:
            pattern: Subject pattern to subscribe to (e.g., "validation.submission.*")
            handler: Async callback receiving an Event
            durable: Optional durable name for the consumer
        """
        if not self._is_connected or not self._js:
            logger.error("Not connected to NATS")
            return None

        await self._ensure_stream(pattern)
        durable_name = durable or f"{self.service_name}-{pattern.replace('.', '-').replace('*', 'all')}"

        async def _on_message(msg):
            try:
                payload = json.loads(msg.data.decode())
                if 'type' in payload and 'source' in payload and 'data' in payload:
                    event = Event.from_dict(payload)
                else:
                    # Raw payload published without an envelope
                    event = Event(event_type=msg.subject, source="unknown", data=payload, subject=msg.subject)
                await handler(event)
                await msg.ack()
            except json.JSONDecodeError as e:
                logger.error(f"Dropping malformed message on {msg.subject}: {e}")
                await msg.term()
            except Exception as e:
                logger.error(f"Error processing message on {msg.subject}: {e}", exc_info=True)
                await msg.nak()

        sub = await self._js.subscribe(pattern, durable=durable_name, cb=_on_message, manual_ack=True)
        self._subscriptions.append(sub)
        logger.info(f"Subscribed to {pattern} (JetStream consumer {durable_name})")
        return durable_name

    async def close(self):
        """Drain subscriptions and close the connection"""
        for sub in self._subscriptions:
            try:
                await sub.unsubscribe()
            except NATSError as e:
                logger.debug(f"Unsubscribe note: {e}")
        self._subscriptions.clear()

        if self._nc:
            await self._nc.drain()
            self._nc = None
            self._js = None

        self._is_connected = False
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._is_connected


# Singleton instance
_event_bus: Optional[NATSEventBus] = None


async def get_event_bus(service_name: str, config: Optional[InfraConfig] = None) -> NATSEventBus:
    """
    Get or create event bus instance.

    Args:
        service_name: Name of the service using the event bus
        config: Optional infrastructure config

    Returns:
        Connected NATSEventBus instance
    """
    global _event_bus

    if _event_bus is None:
        bus = NATSEventBus(service_name=service_name, config=config)
        await bus.connect()
        _event_bus = bus

    return _event_bus
