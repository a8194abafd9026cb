import logging
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

from src.core.journeys.models import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass(frozen=True)
class _Subscription:
    handler: EventHandler
    event_types: Optional[frozenset[str]]
    entity_id: Optional[str]

    def matches(self, event: DomainEvent) -> bool:
        if self.event_types is not None and event.event_type not in self.event_types:
            return False
        if self.entity_id is not None and self.entity_id not in {
            event.entity_id,
            event.journey_id,
        }:
            return False
        return True


class InMemoryChangeNotifier:
    """In-process fan-out of committed domain events.

    Subscribers filter by event type and by entity id; an entity id filter also
    matches every event of the journey with that id. A failing handler is logged
    and does not stop delivery to the remaining subscribers. Nothing is retained
    after delivery; the persisted timeline is the history.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._subscriptions: list[_Subscription] = []

    def subscribe(
        self,
        handler: EventHandler,
        event_types: Optional[list[str]] = None,
        entity_id: Optional[str] = None,
    ) -> Callable[[], None]:
        subscription = _Subscription(
            handler=handler,
            event_types=frozenset(event_types) if event_types is not None else None,
            entity_id=entity_id,
        )
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "notifier.handler_failed",
                    extra={
                        "extra_fields": {
                            "event_id": event.event_id,
                            "event_type": event.event_type,
                        }
                    },
                )


@dataclass(frozen=True)
class Notification:
    recipient_ref: str
    subject: str
    body: str
    related_entity_ref: Optional[str] = None


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self._lock = Lock()
        self.sent: list[Notification] = []

    def notify(
        self,
        *,
        recipient_ref: str,
        subject: str,
        body: str,
        related_entity_ref: Optional[str] = None,
    ) -> None:
        with self._lock:
            self.sent.append(
                Notification(
                    recipient_ref=recipient_ref,
                    subject=subject,
                    body=body,
                    related_entity_ref=related_entity_ref,
                )
            )

    def for_recipient(self, recipient_ref: str) -> list[Notification]:
        with self._lock:
            return [item for item in self.sent if item.recipient_ref == recipient_ref]
