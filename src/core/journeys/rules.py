"""Stage automation rules.

Each stage carries rules keyed by a lifecycle trigger. ``notify`` rules are
delivered through the notification sink; every other action is handed to
integrations as a ``StageRuleTriggered`` event carrying the action config.
"""

from typing import Optional

from src.core.journeys.models import StageKind, StageRule, StageRuleTrigger

EVENT_TRIGGERS: dict[str, StageRuleTrigger] = {
    "StageStarted": "on_enter",
    "StageCompleted": "on_done",
    "DeadlinePassed": "on_overdue",
}

DEFAULT_NOTIFY_MESSAGES: dict[str, str] = {
    "on_enter": "Nova etapa iniciada",
    "on_done": "Etapa concluída",
    "on_overdue": "Etapa em atraso",
}

_ENTER_NOTIFY = StageRule(
    trigger="on_enter",
    action_type="notify",
    action_config={"message": DEFAULT_NOTIFY_MESSAGES["on_enter"]},
)

_KIND_RULES: dict[str, tuple[StageRule, ...]] = {
    "upload": (
        StageRule(
            trigger="on_done",
            action_type="create_activity",
            action_config={"title": "Documentos enviados", "type": "upload"},
        ),
    ),
    "meeting": (
        StageRule(
            trigger="on_enter",
            action_type="schedule",
            action_config={"event_type": "meeting"},
        ),
    ),
    "task": (
        StageRule(
            trigger="on_done",
            action_type="create_activity",
            action_config={"title": "Tarefa concluída", "type": "task"},
        ),
    ),
}


def default_stage_rules(kind: StageKind) -> list[StageRule]:
    """Every kind notifies the owner on enter; some kinds add one integration action."""
    return [
        rule.model_copy(deep=True) for rule in (_ENTER_NOTIFY, *_KIND_RULES.get(kind, ()))
    ]


def resolve_stage_rules(kind: StageKind, rules: Optional[list[StageRule]]) -> list[StageRule]:
    if rules is None:
        return default_stage_rules(kind)
    return [rule.model_copy(deep=True) for rule in rules]


def matching_rules(rules: list[StageRule], event_type: str) -> list[StageRule]:
    trigger = EVENT_TRIGGERS.get(event_type)
    if trigger is None:
        return []
    return [rule for rule in rules if rule.active and rule.trigger == trigger]


def notification_subject(rule: StageRule, stage_title: str) -> str:
    message = rule.action_config.get("message") or DEFAULT_NOTIFY_MESSAGES[rule.trigger]
    return f"{message}: {stage_title}"
