"""
FILE: tests/conftest.py
Shared fixtures for journey and ticket tests.
"""

from pathlib import Path

import pytest

from src.core.journeys.service import JourneyOrchestrationService
from src.core.tickets.service import TicketSlaService
from src.core.tickets.sla import DEFAULT_TICKET_SLA_POLICY
from src.infrastructure.journeys import InMemoryJourneyRepository
from src.infrastructure.notifications import InMemoryChangeNotifier, InMemoryNotificationSink
from src.infrastructure.tickets import InMemoryTicketRepository
from tests.factories import T0, onboarding_template, start_request


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if (
            _has_marker(item, "unit")
            or _has_marker(item, "integration")
            or _has_marker(item, "e2e")
        ):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        if "/tests/e2e/" in path:
            item.add_marker(pytest.mark.e2e)
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture
def published():
    """Every event delivered by the ``notifier`` fixture, in publish order."""
    return []


@pytest.fixture
def notifier(published):
    notifier = InMemoryChangeNotifier()
    notifier.subscribe(published.append)
    return notifier


@pytest.fixture
def sink():
    return InMemoryNotificationSink()


@pytest.fixture
def journey_repository():
    return InMemoryJourneyRepository()


@pytest.fixture
def journey_service(journey_repository, notifier, sink):
    return JourneyOrchestrationService(
        repository=journey_repository,
        notifier=notifier,
        notification_sink=sink,
    )


@pytest.fixture
def onboarding(journey_service):
    """A published onboarding template and a journey started from it at ``T0``."""
    template = journey_service.publish_template(payload=onboarding_template(), now=T0)
    detail = journey_service.start_journey(
        payload=start_request(template.template.template_id), now=T0
    )
    return template, detail


@pytest.fixture
def ticket_service(notifier, sink):
    return TicketSlaService(
        repository=InMemoryTicketRepository(),
        policy=dict(DEFAULT_TICKET_SLA_POLICY),
        notifier=notifier,
        notification_sink=sink,
    )
