"""Document gate evaluation.

A gated stage (kind ``upload`` or ``gate``) is satisfied when every *required*
requirement has at least one approved upload. Optional requirements never block
the gate but are still reported so the UI can show completeness. Pending and
rejected uploads never satisfy anything.
"""

from typing import Iterable

from src.core.journeys.errors import StageNotFoundError, UploadInvalidError
from src.core.journeys.models import (
    GATED_STAGE_KINDS,
    DocumentRequirementRecord,
    DocumentUploadRecord,
    GateStatusResponse,
    RequirementRef,
    RequirementStatus,
    StageInstanceRecord,
)
from src.core.journeys.repository import JourneyRepository

_BYTES_PER_MB = 1024 * 1024


def is_gated(stage: StageInstanceRecord) -> bool:
    return stage.kind in GATED_STAGE_KINDS


def _uploads_by_requirement(
    uploads: Iterable[DocumentUploadRecord],
) -> dict[str, list[DocumentUploadRecord]]:
    grouped: dict[str, list[DocumentUploadRecord]] = {}
    for upload in sorted(uploads, key=lambda item: (item.uploaded_at, item.upload_id)):
        if upload.requirement_id is None:
            continue
        grouped.setdefault(upload.requirement_id, []).append(upload)
    return grouped


def _approved(uploads: list[DocumentUploadRecord]) -> list[DocumentUploadRecord]:
    return [upload for upload in uploads if upload.status == "approved"]


def pending_requirements(
    requirements: Iterable[DocumentRequirementRecord],
    uploads: Iterable[DocumentUploadRecord],
) -> list[DocumentRequirementRecord]:
    grouped = _uploads_by_requirement(uploads)
    return [
        requirement
        for requirement in requirements
        if not _approved(grouped.get(requirement.requirement_id, []))
    ]


def is_gate_satisfied(
    requirements: Iterable[DocumentRequirementRecord],
    uploads: Iterable[DocumentUploadRecord],
) -> bool:
    return not any(
        requirement.required for requirement in pending_requirements(requirements, uploads)
    )


def requirement_statuses(
    requirements: Iterable[DocumentRequirementRecord],
    uploads: Iterable[DocumentUploadRecord],
) -> list[RequirementStatus]:
    grouped = _uploads_by_requirement(uploads)
    statuses: list[RequirementStatus] = []
    for requirement in requirements:
        attempts = grouped.get(requirement.requirement_id, [])
        approved = _approved(attempts)
        latest = attempts[-1] if attempts else None
        if approved:
            state = "approved"
        elif latest is None:
            state = "missing"
        elif latest.status == "pending":
            state = "awaiting_review"
        else:
            state = "rejected"
        statuses.append(
            RequirementStatus(
                requirement=requirement,
                state=state,
                upload_count=len(attempts),
                latest_upload_id=latest.upload_id if latest is not None else None,
                approved_upload_id=approved[-1].upload_id if approved else None,
            )
        )
    return statuses


def to_refs(requirements: Iterable[DocumentRequirementRecord]) -> list[RequirementRef]:
    return [
        RequirementRef(
            requirement_id=requirement.requirement_id,
            name=requirement.name,
            required=requirement.required,
        )
        for requirement in requirements
    ]


def build_gate_status(
    stage: StageInstanceRecord,
    requirements: list[DocumentRequirementRecord],
    uploads: list[DocumentUploadRecord],
) -> GateStatusResponse:
    gated = is_gated(stage)
    return GateStatusResponse(
        stage_id=stage.stage_id,
        kind=stage.kind,
        gated=gated,
        satisfied=is_gate_satisfied(requirements, uploads) if gated else True,
        pending_requirements=to_refs(pending_requirements(requirements, uploads)),
        requirements=requirement_statuses(requirements, uploads),
    )


def validate_upload(
    requirement: DocumentRequirementRecord,
    *,
    filename: str,
    size_bytes: int,
    mime_type: str,
) -> None:
    extension = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    normalized_mime = mime_type.strip().lower()
    accepted = set(requirement.accepted_file_types)
    type_ok = (
        extension in accepted
        or normalized_mime in accepted
        or any(
            pattern.endswith("/*") and normalized_mime.startswith(pattern[:-1])
            for pattern in accepted
        )
    )
    if not type_ok:
        raise UploadInvalidError(
            "UPLOAD_FILE_TYPE_NOT_ACCEPTED",
            message=f"{filename} is not an accepted file type for {requirement.name}.",
            details={
                "requirement_id": requirement.requirement_id,
                "accepted_file_types": sorted(accepted),
                "extension": extension,
                "mime_type": normalized_mime,
            },
        )
    if size_bytes > requirement.max_size_mb * _BYTES_PER_MB:
        raise UploadInvalidError(
            "UPLOAD_TOO_LARGE",
            message=f"{filename} exceeds {requirement.max_size_mb} MB.",
            details={
                "requirement_id": requirement.requirement_id,
                "max_size_mb": requirement.max_size_mb,
                "size_bytes": size_bytes,
            },
        )


class DocumentGateEvaluator:
    """Repository-backed gate queries. Every call re-reads the store."""

    def __init__(self, *, repository: JourneyRepository) -> None:
        self._repository = repository

    def requirements_for(self, stage: StageInstanceRecord) -> list[DocumentRequirementRecord]:
        stage_ref = stage.template_stage_id or stage.stage_id
        requirements = self._repository.list_requirements(stage_ref=stage_ref)
        return sorted(requirements, key=lambda item: (item.name, item.requirement_id))

    def is_satisfied(self, stage_id: str) -> bool:
        stage = self._load_stage(stage_id)
        if not is_gated(stage):
            return True
        return is_gate_satisfied(
            self.requirements_for(stage), self._repository.list_uploads(stage_id=stage_id)
        )

    def pending_requirements(self, stage_id: str) -> list[DocumentRequirementRecord]:
        stage = self._load_stage(stage_id)
        return pending_requirements(
            self.requirements_for(stage), self._repository.list_uploads(stage_id=stage_id)
        )

    def gate_status(self, stage: StageInstanceRecord) -> GateStatusResponse:
        return build_gate_status(
            stage,
            self.requirements_for(stage),
            self._repository.list_uploads(stage_id=stage.stage_id),
        )

    def _load_stage(self, stage_id: str) -> StageInstanceRecord:
        stage = self._repository.get_stage(stage_id=stage_id)
        if stage is None:
            raise StageNotFoundError(details={"stage_id": stage_id})
        return stage
