from datetime import timedelta

from src.core.journeys.models import (
    CustomStageRequest,
    StageRule,
    TemplatePublishRequest,
    TemplateStageSpec,
)
from src.core.journeys.rules import (
    default_stage_rules,
    matching_rules,
    notification_subject,
    resolve_stage_rules,
)
from tests.factories import T0, stage_spec, start_request


def _stage(detail, title):
    return next(view.stage for view in detail.stages if view.stage.title == title)


def _actions(rules):
    return [(rule.trigger, rule.action_type) for rule in rules]


def _triggered(published):
    return [
        (event.payload["trigger"], event.payload["action_type"])
        for event in published
        if event.event_type == "StageRuleTriggered"
    ]


def test_every_kind_notifies_on_enter_and_some_add_an_integration_action():
    assert _actions(default_stage_rules("upload")) == [
        ("on_enter", "notify"),
        ("on_done", "create_activity"),
    ]
    assert _actions(default_stage_rules("meeting")) == [
        ("on_enter", "notify"),
        ("on_enter", "schedule"),
    ]
    assert _actions(default_stage_rules("form")) == [("on_enter", "notify")]
    assert default_stage_rules("task")[1].action_config == {
        "title": "Tarefa concluída",
        "type": "task",
    }


def test_default_rules_are_fresh_copies():
    first = default_stage_rules("upload")
    first[1].action_config["title"] = "Outro"

    assert default_stage_rules("upload")[1].action_config["title"] == "Documentos enviados"


def test_explicit_rules_replace_the_kind_defaults():
    custom = [StageRule(trigger="on_overdue", action_type="webhook")]

    assert _actions(resolve_stage_rules("meeting", None)) == _actions(
        default_stage_rules("meeting")
    )
    assert resolve_stage_rules("meeting", []) == []
    assert resolve_stage_rules("meeting", custom) == custom


def test_matching_rules_follow_the_event_trigger_and_skip_inactive_ones():
    rules = [
        StageRule(trigger="on_done", action_type="create_activity"),
        StageRule(trigger="on_done", action_type="webhook", active=False),
        StageRule(trigger="on_overdue", action_type="notify"),
    ]

    assert _actions(matching_rules(rules, "StageCompleted")) == [("on_done", "create_activity")]
    assert _actions(matching_rules(rules, "DeadlinePassed")) == [("on_overdue", "notify")]
    assert matching_rules(rules, "DocumentSubmitted") == []


def test_notification_subject_prefers_the_configured_message():
    configured = StageRule(
        trigger="on_overdue", action_type="notify", action_config={"message": "Cobrar cliente"}
    )
    plain = StageRule(trigger="on_done", action_type="notify")

    assert notification_subject(configured, "Enviar documentos") == (
        "Cobrar cliente: Enviar documentos"
    )
    assert notification_subject(plain, "Enviar documentos") == "Etapa concluída: Enviar documentos"


def test_published_template_carries_resolved_rules(journey_service):
    payload = TemplatePublishRequest(
        name="Inventário",
        expected_duration_days=60,
        actor_ref="oab_admin",
        stages=[
            stage_spec("Reunião inicial", "meeting", sla_hours=24),
            TemplateStageSpec(title="Assinar petição", kind="form", rules=[]),
        ],
    )

    template = journey_service.publish_template(payload=payload, now=T0)
    stored = journey_service.get_template(template_id=template.template.template_id)

    rules = {item.stage.title: _actions(item.stage.rules) for item in stored.stages}
    assert rules == {
        "Reunião inicial": [("on_enter", "notify"), ("on_enter", "schedule")],
        "Assinar petição": [],
    }


def test_starting_a_meeting_stage_notifies_owner_and_requests_scheduling(
    journey_service, onboarding, published, sink
):
    _, detail = onboarding
    meeting = _stage(detail, "Reunião inicial")
    published.clear()

    journey_service.start_stage(stage_id=meeting.stage_id, actor_ref="oab_123", now=T0)

    notes = sink.for_recipient("oab_123")
    assert [note.subject for note in notes] == ["Nova etapa iniciada: Reunião inicial"]
    assert notes[0].related_entity_ref == meeting.stage_id
    assert _triggered(published) == [("on_enter", "notify"), ("on_enter", "schedule")]
    schedule = [e for e in published if e.payload.get("action_type") == "schedule"][0]
    assert schedule.payload["action_config"] == {"event_type": "meeting"}
    assert schedule.payload["owner_ref"] == "oab_123"
    timeline = journey_service.list_events(journey_id=detail.journey.journey_id)
    assert "StageRuleTriggered" not in {event.event_type for event in timeline.events}


def test_completing_a_custom_task_fires_its_kind_defaults(
    journey_service, onboarding, published, sink
):
    _, detail = onboarding
    added = journey_service.add_custom_stage(
        journey_id=detail.journey.journey_id,
        payload=CustomStageRequest(actor_ref="oab_123", title="Ligar para o cliente"),
        now=T0,
    )
    published.clear()

    journey_service.start_stage(stage_id=added.stage.stage_id, actor_ref="oab_123", now=T0)
    journey_service.complete_stage(stage_id=added.stage.stage_id, actor_ref="oab_123", now=T0)

    assert _triggered(published) == [("on_enter", "notify"), ("on_done", "create_activity")]
    assert [note.subject for note in sink.for_recipient("oab_123")] == [
        "Nova etapa iniciada: Ligar para o cliente"
    ]


def test_sweep_fires_overdue_rules_for_the_configured_recipient(journey_service, published, sink):
    payload = TemplatePublishRequest(
        name="Cobrança",
        expected_duration_days=10,
        actor_ref="oab_admin",
        stages=[
            TemplateStageSpec(
                title="Pagar honorários",
                kind="task",
                sla_hours=24,
                rules=[
                    StageRule(
                        trigger="on_overdue",
                        action_type="notify",
                        action_config={"recipient_ref": "fin_7", "message": "Cobrar cliente"},
                    ),
                    StageRule(trigger="on_overdue", action_type="webhook", active=False),
                ],
            )
        ],
    )
    template = journey_service.publish_template(payload=payload, now=T0)
    journey_service.start_journey(
        payload=start_request(template.template.template_id), now=T0
    )
    published.clear()

    summary = journey_service.sweep_overdue(now=T0 + timedelta(hours=30))

    assert summary.overdue_stages == 1
    assert summary.notifications_sent == 1
    assert summary.rules_fired == 1
    assert [note.subject for note in sink.for_recipient("fin_7")] == [
        "Cobrar cliente: Pagar honorários"
    ]
    assert [note.subject for note in sink.for_recipient("oab_123")] == [
        "Stage overdue: Pagar honorários"
    ]
    assert _triggered(published) == [("on_overdue", "notify")]
