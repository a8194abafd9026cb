import json
import sys
from datetime import datetime, timezone

from scripts import run_deadline_sweep
from src.api.services import runtime
from tests.factories import T0, onboarding_template, start_request


def test_parse_as_of_defaults_to_utc() -> None:
    assert run_deadline_sweep._parse_as_of("2026-03-02T12:00:00Z") == T0
    assert run_deadline_sweep._parse_as_of("2026-03-02T12:00:00") == T0
    assert run_deadline_sweep._parse_as_of(None).tzinfo == timezone.utc


def test_main_prints_sweep_summary(monkeypatch, capsys) -> None:
    monkeypatch.delenv("JOURNEY_STORE_BACKEND", raising=False)
    monkeypatch.delenv("TICKET_STORE_BACKEND", raising=False)
    runtime.reset_services_for_tests()
    service = runtime.get_journey_service()
    template = service.publish_template(payload=onboarding_template(), now=T0)
    service.start_journey(payload=start_request(template.template.template_id), now=T0)
    monkeypatch.setattr(
        sys, "argv", ["run_deadline_sweep.py", "--as-of", "2026-03-10T12:00:00+00:00"]
    )

    try:
        assert run_deadline_sweep.main() == 0
    finally:
        runtime.reset_services_for_tests()

    summary = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert summary == {
        "as_of": datetime(2026, 3, 10, 12, tzinfo=timezone.utc).isoformat(),
        "overdue_stages": 3,
        "stage_notifications_sent": 3,
        "stage_rules_fired": 0,
        "stages_skipped_paused": 0,
        "ticket_violations": 0,
        "ticket_notifications_sent": 0,
    }
