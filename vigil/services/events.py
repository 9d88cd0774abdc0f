"""
Event publishing: in-process notification bus plus durable Redis Streams log.

Every persisted alert produces exactly one ``alert.created`` event. The event
is appended to the organization's stream first, then fanned out to local
subscribers. Consumers read the log through a consumer group, so delivery is
at-least-once and each organization's events are seen in publish order.
"""

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis

from vigil.schemas.event import ALERT_CREATED, AlertCreatedData, Event
from vigil.schemas.execution import DeadLetterEntry

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    In-process notification bus.

    Handlers run in registration order. A failing handler is logged and never
    prevents delivery to the others or fails the publisher.
    """

    WILDCARD = "*"

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: Event) -> int:
        """Notify subscribers. Returns how many handlers ran successfully."""
        delivered = 0
        for handler in [*self._handlers.get(event.type, []), *self._handlers.get(self.WILDCARD, [])]:
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Event handler failed for {event.type} {event.id}: {e}")
        return delivered


@dataclass(frozen=True)
class AckHandle:
    stream: str
    message_id: str


@dataclass(frozen=True)
class Delivery:
    event: Event
    handle: AckHandle


class EventLog:
    """Durable event log backed by one Redis stream per organization."""

    STREAM_PREFIX = "vigil:events:"
    DEAD_LETTER_STREAM = "vigil:events:dead-letter"
    DELIVERY_COUNTS = "vigil:event-deliveries"

    def __init__(
        self,
        redis: Redis,
        consumer_group: str,
        consumer_name: str,
        max_deliveries: int = 5,
        claim_idle_ms: int = 30000,
        max_stream_length: int = 100000,
        batch_size: int = 10,
        block_ms: int = 2000,
    ):
        """
        Initialize the event log.

        Args:
            redis: Redis client instance
            consumer_group: Consumer group name; each group keeps its own offset
            consumer_name: This process's name within the group
            max_deliveries: Deliveries after which an event is dead-lettered
            claim_idle_ms: Idle time after which another consumer's pending events are claimed
            max_stream_length: Approximate cap per stream (oldest evicted when exceeded)
            batch_size: Maximum events read per stream per call
            block_ms: How long a read blocks waiting for new events
        """
        self.redis = redis
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.max_deliveries = max_deliveries
        self.claim_idle_ms = claim_idle_ms
        self.max_stream_length = max_stream_length
        self.batch_size = batch_size
        self.block_ms = block_ms
        self._known_groups: set[str] = set()
        self._reads = 0

    def stream_name(self, organization_id: int) -> str:
        return f"{self.STREAM_PREFIX}{organization_id}"

    async def publish(self, event: Event) -> str:
        """Append an event to its organization's stream. Returns the stream entry id."""
        message_id = await self.redis.xadd(
            self.stream_name(event.organization_id),
            {"event": json.dumps(event.to_wire()), "type": event.type},
            maxlen=self.max_stream_length,
            approximate=True,
        )
        logger.debug(f"Published {event.type} {event.id} as {message_id}")
        return message_id

    async def get_streams(self) -> list[str]:
        """All organization streams (excluding dead-letter)."""
        streams = []
        cursor = 0
        while True:
            cursor, keys = await self.redis.scan(cursor, match=f"{self.STREAM_PREFIX}*", count=100)
            for key in keys:
                if key != self.DEAD_LETTER_STREAM:
                    streams.append(key)
            if cursor == 0:
                break
        return sorted(streams)

    async def ensure_consumer_group(self, streams: list[str]) -> None:
        for stream in streams:
            if stream in self._known_groups:
                continue
            try:
                await self.redis.xgroup_create(stream, self.consumer_group, id="0", mkstream=True)
                logger.info(f"Created consumer group {self.consumer_group} for {stream}")
            except Exception as e:
                if "BUSYGROUP" not in str(e):
                    logger.warning(f"Failed to create group for {stream}: {e}")
                    continue
            self._known_groups.add(stream)

    async def consume(self, claim_every: int = 10) -> list[Delivery]:
        """
        Read the next batch of events for this consumer.

        A stream with events already delivered to this consumer but not
        acknowledged returns those, in stream order, and nothing newer.
        Streams without such a backlog are read for new events in the same
        call. Every ``claim_every`` calls, events left pending by crashed
        consumers are claimed into this consumer's backlog.

        Reading does not count as a delivery attempt; see ``record_attempt``.
        Undecodable events are moved to the dead-letter stream and
        acknowledged instead of returned.
        """
        streams = await self.get_streams()
        if not streams:
            await asyncio.sleep(self.block_ms / 1000)
            return []

        await self.ensure_consumer_group(streams)

        self._reads += 1
        if self._reads >= claim_every:
            self._reads = 0
            await self.claim_stale(streams)

        pending = await self.redis.xreadgroup(
            self.consumer_group,
            self.consumer_name,
            {stream: "0" for stream in streams},
            count=self.batch_size,
        )
        messages = [(stream, entries) for stream, entries in pending or [] if entries]
        backlog = {stream for stream, _ in messages}

        idle = [stream for stream in streams if stream not in backlog]
        if idle:
            fresh = await self.redis.xreadgroup(
                self.consumer_group,
                self.consumer_name,
                {stream: ">" for stream in idle},
                count=self.batch_size,
                # Only wait for new events when there is nothing to retry
                block=None if messages else self.block_ms,
            )
            messages.extend(fresh or [])

        deliveries: list[Delivery] = []
        for stream, entries in messages:
            for message_id, fields in entries:
                delivery = await self._to_delivery(stream, message_id, fields)
                if delivery is not None:
                    deliveries.append(delivery)
        return deliveries

    async def _to_delivery(self, stream: str, message_id: str, fields: Mapping[str, Any] | None) -> Delivery | None:
        handle = AckHandle(stream, message_id)

        if not fields:
            # Entry was trimmed from the stream while still pending
            await self.ack(handle)
            return None

        try:
            event = Event.model_validate(json.loads(fields["event"]))
        except (KeyError, ValueError, ValidationError) as e:
            await self.move_to_dead_letter(handle, dict(fields), f"Undecodable event: {e}")
            return None

        return Delivery(event=event, handle=handle)

    async def record_attempt(self, delivery: Delivery) -> int | None:
        """
        Count an attempt at handling a delivery, immediately before it is made.

        Returns:
            The attempt number, or None when the event already failed
            ``max_deliveries`` attempts; it is then dead-lettered and acknowledged
        """
        count = await self.redis.hincrby(self.DELIVERY_COUNTS, self._delivery_key(delivery.handle), 1)
        if count > self.max_deliveries:
            await self.move_to_dead_letter(
                delivery.handle,
                {"event": json.dumps(delivery.event.to_wire()), "type": delivery.event.type},
                f"Exceeded {self.max_deliveries} delivery attempts",
            )
            return None
        return count

    async def ack(self, handle: AckHandle) -> None:
        await self.redis.xack(handle.stream, self.consumer_group, handle.message_id)
        await self.redis.hdel(self.DELIVERY_COUNTS, self._delivery_key(handle))

    async def claim_stale(self, streams: list[str]) -> int:
        """
        Claim pending events that have been idle too long.

        This handles events that were delivered to crashed/restarted consumers.
        Claimed events are picked up by the next pending read.
        """
        claimed = 0
        for stream in streams:
            try:
                result = await self.redis.xautoclaim(
                    stream,
                    self.consumer_group,
                    self.consumer_name,
                    self.claim_idle_ms,
                    start_id="0-0",
                    count=100,
                )
                if result and len(result) > 1 and result[1]:
                    claimed += len(result[1])
                    logger.info(f"Claimed {len(result[1])} pending events from {stream}")
            except Exception as e:
                logger.warning(f"Failed to claim pending events from {stream}: {e}")
        return claimed

    async def move_to_dead_letter(self, handle: AckHandle, message_data: dict, reason: str) -> None:
        """Move an event to the dead-letter stream and acknowledge it."""
        await self.redis.xadd(
            self.DEAD_LETTER_STREAM,
            {
                "original_stream": handle.stream,
                "original_id": handle.message_id,
                "data": json.dumps(message_data),
                "reason": reason,
                "failed_at": datetime.now(UTC).isoformat(),
            },
        )
        await self.ack(handle)
        logger.warning(f"Event {handle.message_id} from {handle.stream} moved to dead-letter: {reason}")

    async def list_dead_letters(self, count: int = 100) -> list[DeadLetterEntry]:
        entries = await self.redis.xrevrange(self.DEAD_LETTER_STREAM, count=count)
        return [
            DeadLetterEntry(
                id=message_id,
                kind="event",
                reason=fields.get("reason", "unknown"),
                failed_at=fields.get("failed_at"),
                payload=_decode_payload(fields),
            )
            for message_id, fields in entries
        ]

    def _delivery_key(self, handle: AckHandle) -> str:
        return f"{self.consumer_group}|{handle.stream}|{handle.message_id}"


def _decode_payload(fields: Mapping[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {k: v for k, v in fields.items() if k not in ("data", "reason", "failed_at")}
    try:
        payload["data"] = json.loads(fields.get("data", "{}"))
    except ValueError:
        payload["data"] = fields.get("data")
    return payload


def build_alert_created_event(alert) -> Event:
    """
    Normalize a persisted alert into its ``alert.created`` event.

    ``category``, ``hostId``, ``hostname`` and ``tags`` come from the alert's
    metadata when present; category falls back to the alert source.
    """
    metadata = alert.alert_metadata or {}
    data = AlertCreatedData(
        alert_id=str(alert.id),
        severity=alert.severity,
        category=metadata.get("category") or alert.source,
        source_ip=alert.source_ip,
        host_id=metadata.get("hostId"),
        hostname=metadata.get("hostname"),
    ).model_dump(by_alias=True, exclude_none=True)

    data["title"] = alert.title
    data["source"] = alert.source
    if isinstance(metadata.get("tags"), list):
        data["tags"] = list(metadata["tags"])

    return Event(
        type=ALERT_CREATED,
        entity_id=str(alert.id),
        entity_type="alert",
        organization_id=alert.organization_id,
        timestamp=alert.timestamp or datetime.now(UTC),
        data=data,
    )


class EventPublisher:
    """Emits normalized events to the durable log and the in-process bus."""

    def __init__(self, log: EventLog, bus: EventBus):
        self.log = log
        self.bus = bus

    async def publish(self, event: Event) -> Event:
        """
        Publish an event.

        The durable append happens first and its failure propagates, so a
        caller never believes an event was published when it wasn't.
        """
        await self.log.publish(event)
        await self.bus.publish(event)
        return event

    async def on_alert_created(self, alert) -> Event:
        """Hook called by the alert store after an alert is persisted."""
        event = build_alert_created_event(alert)
        logger.info(
            f"Publishing {event.type} for alert {event.entity_id} "
            f"(org {event.organization_id}, severity {alert.severity})"
        )
        return await self.publish(event)
