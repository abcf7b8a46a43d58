from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from inference_pipeline.broker import BrokerBackend, BrokerMessage
from inference_pipeline.errors import SchemaMismatchError
from inference_pipeline.events import Event, EventCodec, EventType


@dataclass
class Delivery:
    """A received event together with the broker handle needed to settle it."""

    event: Event
    message: BrokerMessage
    broker: BrokerBackend

    @property
    def attempt(self) -> int:
        return self.message.attempt

    def ack(self) -> None:
        self.broker.ack(message_id=self.message.message_id)

    def nack(self, *, requeue: bool = True, delay_ms: int = 0) -> BrokerMessage | None:
        return self.broker.nack(message_id=self.message.message_id, requeue=requeue, delay_ms=delay_ms)


class EventBus:
    def __init__(self, *, broker: BrokerBackend, codec: EventCodec) -> None:
        self.broker = broker
        self.codec = codec

    def publish(self, event: Event, *, delay_ms: int = 0) -> BrokerMessage:
        available_at = None
        if delay_ms > 0:
            available_at = datetime.now(UTC) + timedelta(milliseconds=delay_ms)
        return self.broker.publish(
            channel=event.channel,
            body=self.codec.encode(event),
            available_at=available_at,
        )

    def publish_all(self, events: list[Event]) -> list[BrokerMessage]:
        return [self.publish(event) for event in events]

    def subscribe(self, event_type: EventType) -> Iterator[Delivery]:
        """Yield deliveries currently due on the event type's channel.

        The caller settles each delivery with ``ack`` or ``nack``. A body that
        cannot be decoded is put back on the channel before the error is raised.
        """
        channel = EventType(event_type).channel
        while True:
            message = self.broker.receive(channel=channel)
            if message is None:
                return
            try:
                event = self.codec.decode(message.body)
            except SchemaMismatchError:
                self.broker.nack(message_id=message.message_id, requeue=True)
                raise
            yield Delivery(event=event, message=message, broker=self.broker)

    def pending_count(self, event_type: EventType) -> int:
        return self.broker.pending_count(channel=EventType(event_type).channel)
