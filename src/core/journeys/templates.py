"""Template registry: published journey definitions and their stage blueprints.

Templates are immutable once published. A revision publishes a new template id
carrying ``version + 1`` and a back-link to the template it supersedes, so
running instances never observe retroactive changes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from src.core.journeys.errors import (
    TemplateConflictError,
    TemplateInvalidError,
    TemplateNotFoundError,
)
from src.core.journeys.ids import new_id
from src.core.journeys.models import (
    GATED_STAGE_KINDS,
    DocumentRequirementRecord,
    JourneyTemplateRecord,
    TemplateDetailResponse,
    TemplatePublishRequest,
    TemplateStageDetail,
    TemplateStageRecord,
)
from src.core.journeys.repository import JourneyRepository
from src.core.journeys.rules import resolve_stage_rules

logger = logging.getLogger(__name__)


def template_stage_sort_key(stage: TemplateStageRecord) -> tuple[int, str]:
    return (stage.position, stage.template_stage_id)


class TemplateRegistry:
    def __init__(self, *, repository: JourneyRepository) -> None:
        self._repository = repository

    def get_template(self, template_id: str) -> JourneyTemplateRecord:
        template = self._repository.get_template(template_id=template_id)
        if template is None:
            raise TemplateNotFoundError(details={"template_id": template_id})
        return template

    def list_stages(self, template_id: str) -> list[TemplateStageRecord]:
        self.get_template(template_id)
        stages = self._repository.list_template_stages(template_id=template_id)
        return sorted(stages, key=template_stage_sort_key)

    def get_requirements(self, template_stage_id: str) -> list[DocumentRequirementRecord]:
        requirements = self._repository.list_requirements(stage_ref=template_stage_id)
        return sorted(requirements, key=lambda item: (item.name, item.requirement_id))

    def describe(self, template_id: str) -> TemplateDetailResponse:
        template = self.get_template(template_id)
        return TemplateDetailResponse(
            template=template,
            stages=[
                TemplateStageDetail(
                    stage=stage,
                    requirements=self.get_requirements(stage.template_stage_id),
                )
                for stage in self.list_stages(template_id)
            ],
        )

    def publish_template(
        self,
        payload: TemplatePublishRequest,
        *,
        previous: Optional[JourneyTemplateRecord] = None,
        now: Optional[datetime] = None,
    ) -> TemplateDetailResponse:
        template_id = payload.template_id or new_id("jt")
        if self._repository.get_template(template_id=template_id) is not None:
            raise TemplateConflictError(
                message="Published templates are immutable; publish a revision instead.",
                details={"template_id": template_id},
            )
        positions = _resolve_positions(payload)
        created_at = now or datetime.now(timezone.utc)

        template = JourneyTemplateRecord(
            template_id=template_id,
            name=payload.name,
            niche=payload.niche,
            stage_count=len(payload.stages),
            expected_duration_days=payload.expected_duration_days,
            version=previous.version + 1 if previous is not None else 1,
            previous_template_id=previous.template_id if previous is not None else None,
            created_by=payload.actor_ref,
            created_at=created_at,
        )
        stages: list[TemplateStageRecord] = []
        requirements: list[DocumentRequirementRecord] = []
        for spec, position in zip(payload.stages, positions):
            if spec.requirements and spec.kind not in GATED_STAGE_KINDS:
                raise TemplateInvalidError(
                    message="Document requirements are only allowed on upload and gate stages.",
                    details={"stage_title": spec.title, "kind": spec.kind},
                )
            stage = TemplateStageRecord(
                template_stage_id=new_id("jts"),
                template_id=template_id,
                position=position,
                title=spec.title,
                description=spec.description,
                kind=spec.kind,
                mandatory=spec.mandatory,
                sla_hours=spec.sla_hours,
                rules=resolve_stage_rules(spec.kind, spec.rules),
            )
            stages.append(stage)
            requirements.extend(
                DocumentRequirementRecord(
                    requirement_id=new_id("jdr"),
                    stage_ref=stage.template_stage_id,
                    name=requirement.name,
                    required=requirement.required,
                    accepted_file_types=requirement.accepted_file_types,
                    max_size_mb=requirement.max_size_mb,
                )
                for requirement in spec.requirements
            )

        self._repository.save_template(
            template=template, stages=stages, requirements=requirements
        )
        logger.info(
            "template.published",
            extra={
                "extra_fields": {
                    "template_id": template_id,
                    "version": template.version,
                    "stage_count": template.stage_count,
                }
            },
        )
        return self.describe(template_id)

    def revise_template(
        self,
        template_id: str,
        payload: TemplatePublishRequest,
        *,
        now: Optional[datetime] = None,
    ) -> TemplateDetailResponse:
        previous = self.get_template(template_id)
        return self.publish_template(payload, previous=previous, now=now)


def _resolve_positions(payload: TemplatePublishRequest) -> list[int]:
    explicit = [spec.position for spec in payload.stages]
    if all(position is None for position in explicit):
        return list(range(1, len(payload.stages) + 1))
    if any(position is None for position in explicit):
        raise TemplateInvalidError(
            message="Either every stage carries a position or none does.",
            details={"positions": explicit},
        )
    expected = list(range(1, len(payload.stages) + 1))
    if sorted(explicit) != expected:
        raise TemplateInvalidError(
            message="Stage positions must be unique and dense starting at 1.",
            details={"positions": explicit},
        )
    return [int(position) for position in explicit]
