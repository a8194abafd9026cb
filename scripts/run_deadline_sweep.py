import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(
        description=(
            "Run one overdue-stage and ticket SLA sweep against the configured stores and "
            "print a JSON summary."
        )
    )
    parser.add_argument(
        "--as-of",
        default=None,
        help="Evaluation time in ISO8601; defaults to now (UTC).",
    )
    args = parser.parse_args()

    from src.api.observability import configure_logging
    from src.api.services.runtime import get_journey_service, get_ticket_service

    configure_logging()
    as_of = _parse_as_of(args.as_of)
    journeys = get_journey_service().sweep_overdue(now=as_of)
    tickets = get_ticket_service().sweep_violations(now=as_of)
    summary = {
        "as_of": as_of.isoformat(),
        "overdue_stages": journeys.overdue_stages,
        "stage_notifications_sent": journeys.notifications_sent,
        "stage_rules_fired": journeys.rules_fired,
        "stages_skipped_paused": journeys.skipped_paused,
        "ticket_violations": tickets.violations,
        "ticket_notifications_sent": tickets.notifications_sent,
    }
    print(json.dumps(summary, sort_keys=True))
    return 0


def _parse_as_of(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


if __name__ == "__main__":
    raise SystemExit(main())
