"""Process-wide service wiring for the HTTP surface and the sweep script.

Services are built lazily from the environment on first use. Both services
share one change notifier and one notification sink so subscribers see ticket
and journey events on the same feed.
"""

from typing import Optional

from src.api.routers.journeys_config import (
    build_repository,
    journey_max_conflict_retries,
    journey_read_retry_attempts,
)
from src.api.routers.runtime_utils import env_non_negative_int
from src.api.routers.tickets_config import build_ticket_repository, ticket_sla_policy
from src.core.journeys.service import JourneyOrchestrationService
from src.core.tickets.service import TicketSlaService
from src.infrastructure.notifications import InMemoryChangeNotifier, LoggingNotificationSink

_NOTIFIER = InMemoryChangeNotifier()
_NOTIFICATION_SINK = LoggingNotificationSink()
_JOURNEY_SERVICE: Optional[JourneyOrchestrationService] = None
_TICKET_SERVICE: Optional[TicketSlaService] = None


def get_change_notifier() -> InMemoryChangeNotifier:
    return _NOTIFIER


def get_journey_service() -> JourneyOrchestrationService:
    global _JOURNEY_SERVICE
    if _JOURNEY_SERVICE is None:
        _JOURNEY_SERVICE = JourneyOrchestrationService(
            repository=build_repository(),
            notifier=_NOTIFIER,
            notification_sink=_NOTIFICATION_SINK,
            max_conflict_retries=journey_max_conflict_retries(),
            read_retry_attempts=journey_read_retry_attempts(),
        )
    return _JOURNEY_SERVICE


def get_ticket_service() -> TicketSlaService:
    global _TICKET_SERVICE
    if _TICKET_SERVICE is None:
        _TICKET_SERVICE = TicketSlaService(
            repository=build_ticket_repository(),
            policy=ticket_sla_policy(),
            notifier=_NOTIFIER,
            notification_sink=_NOTIFICATION_SINK,
            max_conflict_retries=env_non_negative_int("JOURNEY_MAX_CONFLICT_RETRIES", 3),
        )
    return _TICKET_SERVICE


def reset_services_for_tests() -> None:
    global _NOTIFIER
    global _JOURNEY_SERVICE
    global _TICKET_SERVICE
    _NOTIFIER = InMemoryChangeNotifier()
    _JOURNEY_SERVICE = None
    _TICKET_SERVICE = None
