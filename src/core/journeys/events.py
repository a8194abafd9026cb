from datetime import datetime
from typing import Any, Optional, Protocol

from src.core.journeys.ids import new_id
from src.core.journeys.models import DomainEvent, DomainEventType, EntityType


class ChangeNotifier(Protocol):
    def publish(self, event: DomainEvent) -> None: ...


class NotificationSink(Protocol):
    def notify(
        self,
        *,
        recipient_ref: str,
        subject: str,
        body: str,
        related_entity_ref: Optional[str] = None,
    ) -> None: ...


def new_event(
    event_type: DomainEventType,
    *,
    entity_type: EntityType,
    entity_id: str,
    journey_id: Optional[str],
    actor_ref: str,
    occurred_at: datetime,
    payload: Optional[dict[str, Any]] = None,
) -> DomainEvent:
    return DomainEvent(
        event_id=new_id("jev"),
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        journey_id=journey_id,
        actor_ref=actor_ref,
        occurred_at=occurred_at,
        payload=payload or {},
    )
