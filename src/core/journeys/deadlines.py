from datetime import datetime, timedelta, timezone
from typing import Optional

from src.core.journeys.models import StageInstanceRecord
from src.core.journeys.repository import JourneyRepository


def compute_due_at(created_at: datetime, sla_hours: Optional[int]) -> Optional[datetime]:
    if sla_hours is None:
        return None
    return created_at + timedelta(hours=sla_hours)


def is_overdue(stage: StageInstanceRecord, now: datetime) -> bool:
    """Completion freezes overdue status, whatever the due timestamp says."""
    return stage.status != "completed" and stage.due_at is not None and stage.due_at < now


def overdue_by_hours(stage: StageInstanceRecord, now: datetime) -> float:
    if not is_overdue(stage, now):
        return 0.0
    assert stage.due_at is not None
    return round((now - stage.due_at).total_seconds() / 3600, 2)


class DeadlineTracker:
    """Answers "what is overdue as of now" on demand. Schedules nothing."""

    def __init__(self, *, repository: JourneyRepository) -> None:
        self._repository = repository

    def find_overdue(
        self, *, journey_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> list[StageInstanceRecord]:
        as_of = now or datetime.now(timezone.utc)
        candidates = self._repository.list_overdue_stages(journey_id=journey_id, due_before=as_of)
        overdue = [stage for stage in candidates if is_overdue(stage, as_of)]
        return sorted(overdue, key=lambda stage: (stage.due_at, stage.stage_id))
