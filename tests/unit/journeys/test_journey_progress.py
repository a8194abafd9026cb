from datetime import timedelta
from typing import Optional

from src.core.journeys.models import (
    DocumentRequirementRecord,
    DocumentUploadRecord,
    GateStatusResponse,
    JourneyInstanceRecord,
    StageInstanceRecord,
    SubjectRef,
)
from src.core.journeys.documents import build_gate_status
from src.core.journeys.progress import (
    compute_next_action,
    compute_progress,
    detect_inconsistency,
    first_open_stage,
    is_journey_complete,
)
from tests.factories import T0


def _stage(
    sequence_no: int,
    *,
    status: str = "pending",
    mandatory: bool = True,
    kind: str = "task",
    position: Optional[int] = None,
    due_in_hours: Optional[int] = None,
) -> StageInstanceRecord:
    return StageInstanceRecord(
        stage_id=f"jsi_{sequence_no:03d}",
        journey_id="ji_001",
        template_stage_id=f"jts_{sequence_no:03d}",
        sequence_no=sequence_no,
        position=position or sequence_no,
        title=f"Etapa {sequence_no}",
        kind=kind,
        mandatory=mandatory,
        status=status,
        created_at=T0,
        due_at=T0 + timedelta(hours=due_in_hours) if due_in_hours is not None else None,
        completed_at=T0 if status == "completed" else None,
        completed_by="oab_123" if status == "completed" else None,
    )


def _no_gate(stage: StageInstanceRecord) -> GateStatusResponse:
    return build_gate_status(stage, [], [])


def _journey(**overrides) -> JourneyInstanceRecord:
    values = {
        "journey_id": "ji_001",
        "template_id": "jt_001",
        "subject": SubjectRef(client_tax_id="52998224725"),
        "owner_ref": "oab_123",
        "created_by": "oab_123",
        "started_at": T0,
        "status": "active",
        "progress_pct": 0,
    }
    values.update(overrides)
    return JourneyInstanceRecord(**values)


def test_compute_progress_rounds_half_up_on_integers():
    def stages(completed, total):
        return [
            _stage(index, status="completed" if index <= completed else "pending")
            for index in range(1, total + 1)
        ]

    assert compute_progress([]) == 0
    assert compute_progress(stages(1, 3)) == 33
    assert compute_progress(stages(2, 3)) == 67
    assert compute_progress(stages(1, 8)) == 13
    assert compute_progress(stages(1, 2)) == 50
    assert compute_progress(stages(1, 1)) == 100


def test_compute_progress_counts_optional_stages():
    stages = [_stage(1, status="completed"), _stage(2, mandatory=False)]
    assert compute_progress(stages) == 50


def test_journey_completion_only_requires_mandatory_stages():
    stages = [_stage(1, status="completed"), _stage(2, mandatory=False)]
    assert is_journey_complete(stages) is True
    assert is_journey_complete([_stage(1, status="completed"), _stage(2)]) is False
    assert is_journey_complete([]) is False


def test_journey_without_mandatory_stages_completes_when_all_stages_do():
    stages = [_stage(1, status="completed", mandatory=False), _stage(2, mandatory=False)]
    assert is_journey_complete(stages) is False
    stages[1] = _stage(2, status="completed", mandatory=False)
    assert is_journey_complete(stages) is True


def test_first_open_stage_follows_position_then_sequence():
    stages = [_stage(1, position=2), _stage(2, position=1), _stage(3, position=1)]
    assert first_open_stage(stages).stage_id == "jsi_002"
    assert first_open_stage([_stage(1, status="completed")]) is None


def test_next_action_skips_completed_stages_and_falls_to_low_priority_optional():
    stages = [_stage(1, status="completed"), _stage(2, mandatory=False)]

    action = compute_next_action(stages, _no_gate, T0)

    assert action.type == "complete_stage"
    assert action.stage_id == "jsi_002"
    assert action.priority == "low"
    assert action.missing_requirements == []


def test_next_action_is_none_when_everything_is_completed():
    assert compute_next_action([_stage(1, status="completed")], _no_gate, T0) is None


def test_next_action_on_gated_stage_lists_pending_requirements():
    stage = _stage(1, kind="upload")
    requirement = DocumentRequirementRecord(
        requirement_id="jdr_001",
        stage_ref="jts_001",
        name="Procuração",
        required=True,
        accepted_file_types=["pdf"],
        max_size_mb=5,
    )
    rejected = DocumentUploadRecord(
        upload_id="jdu_001",
        stage_id=stage.stage_id,
        requirement_id="jdr_001",
        filename="procuracao.pdf",
        size_bytes=100,
        mime_type="application/pdf",
        status="rejected",
        uploaded_by="client_42",
        uploaded_at=T0,
    )

    action = compute_next_action(
        [stage], lambda item: build_gate_status(item, [requirement], [rejected]), T0
    )

    assert action.type == "submit_documents"
    assert action.description == "Missing approved documents: Procuração."
    assert [item.requirement_id for item in action.missing_requirements] == ["jdr_001"]


def test_detect_inconsistency_reports_each_drift_kind():
    open_stage = _stage(1)
    done_stage = _stage(1, status="completed")
    action = compute_next_action([open_stage], _no_gate, T0)

    assert detect_inconsistency(_journey(next_action=action), [open_stage]) is None
    assert (
        detect_inconsistency(_journey(status="completed", progress_pct=0), [open_stage])
        == "COMPLETED_WITH_OPEN_MANDATORY_STAGES"
    )
    assert (
        detect_inconsistency(_journey(progress_pct=100), [done_stage])
        == "COMPLETION_NOT_RECORDED"
    )
    assert (
        detect_inconsistency(_journey(progress_pct=40, next_action=action), [open_stage])
        == "PROGRESS_DRIFT"
    )
    assert detect_inconsistency(_journey(), [open_stage]) == "NEXT_ACTION_STALE"
