"""Shared SQL journey store used by the SQLite and Postgres backends.

Queries are written with ``?`` placeholders; backends translate them in
``_sql``. ``apply_changes`` runs in a single transaction and turns every
compare-and-set miss (zero affected rows, duplicate key) into
``ConcurrentModificationError`` after rolling back.
"""

import json
from contextlib import closing, contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from src.core.journeys.errors import (
    ConcurrentModificationError,
    StoreUnavailableError,
    TemplateConflictError,
)
from src.core.journeys.models import (
    DocumentRequirementRecord,
    DocumentUploadRecord,
    DomainEvent,
    JourneyChangeSet,
    JourneyIdempotencyRecord,
    JourneyInstanceRecord,
    JourneyTemplateRecord,
    NextAction,
    StageInstanceRecord,
    StageRule,
    SubjectRef,
    TemplateStageRecord,
)
from src.core.journeys.repository import JourneyRepository

_STAGE_COLUMNS = """
    stage_id,
    journey_id,
    template_stage_id,
    sequence_no,
    position,
    title,
    description,
    kind,
    mandatory,
    status,
    created_at,
    due_at,
    started_at,
    completed_at,
    completed_by
"""

_UPLOAD_COLUMNS = """
    upload_id,
    stage_id,
    requirement_id,
    filename,
    size_bytes,
    mime_type,
    status,
    uploaded_by,
    uploaded_at,
    reviewed_by,
    review_notes,
    reviewed_at
"""

_JOURNEY_COLUMNS = """
    journey_id,
    template_id,
    client_tax_id,
    case_number,
    owner_ref,
    created_by,
    started_at,
    status,
    progress_pct,
    next_action_json,
    completed_at,
    version
"""

_REQUIREMENT_COLUMNS = """
    requirement_id,
    stage_ref,
    name,
    required,
    accepted_file_types,
    max_size_mb
"""


class SqlJourneyRepository(JourneyRepository):
    _integrity_errors: tuple[type[BaseException], ...] = ()
    _transient_errors: tuple[type[BaseException], ...] = ()

    def __init__(self) -> None:
        self._write_lock: Any = nullcontext()

    def _connect(self) -> Any:
        raise NotImplementedError

    def _sql(self, query: str) -> str:
        return query

    def save_template(
        self,
        *,
        template: JourneyTemplateRecord,
        stages: list[TemplateStageRecord],
        requirements: list[DocumentRequirementRecord],
    ) -> None:
        try:
            with self._transaction() as connection:
                connection.execute(
                    self._sql(
                        """
                        INSERT INTO journey_templates (
                            template_id,
                            name,
                            niche,
                            stage_count,
                            expected_duration_days,
                            version,
                            previous_template_id,
                            created_by,
                            created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """
                    ),
                    (
                        template.template_id,
                        template.name,
                        template.niche,
                        template.stage_count,
                        template.expected_duration_days,
                        template.version,
                        template.previous_template_id,
                        template.created_by,
                        _iso(template.created_at),
                    ),
                )
                for stage in stages:
                    connection.execute(
                        self._sql(
                            """
                            INSERT INTO journey_template_stages (
                                template_stage_id,
                                template_id,
                                position,
                                title,
                                description,
                                kind,
                                mandatory,
                                sla_hours,
                                rules_json
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """
                        ),
                        (
                            stage.template_stage_id,
                            stage.template_id,
                            stage.position,
                            stage.title,
                            stage.description,
                            stage.kind,
                            int(stage.mandatory),
                            stage.sla_hours,
                            json.dumps([rule.model_dump() for rule in stage.rules]),
                        ),
                    )
                for requirement in requirements:
                    self._insert_requirement(connection, requirement)
        except self._integrity_errors as exc:
            raise TemplateConflictError(details={"template_id": template.template_id}) from exc

    def get_template(self, *, template_id: str) -> Optional[JourneyTemplateRecord]:
        query = """
            SELECT
                template_id,
                name,
                niche,
                stage_count,
                expected_duration_days,
                version,
                previous_template_id,
                created_by,
                created_at
            FROM journey_templates
            WHERE template_id = ?
        """
        row = self._fetchone(query, (template_id,))
        if row is None:
            return None
        return JourneyTemplateRecord(
            template_id=row["template_id"],
            name=row["name"],
            niche=row["niche"],
            stage_count=row["stage_count"],
            expected_duration_days=row["expected_duration_days"],
            version=row["version"],
            previous_template_id=row["previous_template_id"],
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def list_template_stages(self, *, template_id: str) -> list[TemplateStageRecord]:
        query = """
            SELECT
                template_stage_id,
                template_id,
                position,
                title,
                description,
                kind,
                mandatory,
                sla_hours,
                rules_json
            FROM journey_template_stages
            WHERE template_id = ?
            ORDER BY position ASC, template_stage_id ASC
        """
        return [
            TemplateStageRecord(
                template_stage_id=row["template_stage_id"],
                template_id=row["template_id"],
                position=row["position"],
                title=row["title"],
                description=row["description"],
                kind=row["kind"],
                mandatory=bool(row["mandatory"]),
                sla_hours=row["sla_hours"],
                rules=[StageRule.model_validate(item) for item in json.loads(row["rules_json"])],
            )
            for row in self._fetchall(query, (template_id,))
        ]

    def list_requirements(self, *, stage_ref: str) -> list[DocumentRequirementRecord]:
        query = f"""
            SELECT {_REQUIREMENT_COLUMNS}
            FROM journey_document_requirements
            WHERE stage_ref = ?
            ORDER BY name ASC, requirement_id ASC
        """
        return [_to_requirement(row) for row in self._fetchall(query, (stage_ref,))]

    def get_requirement(self, *, requirement_id: str) -> Optional[DocumentRequirementRecord]:
        query = f"""
            SELECT {_REQUIREMENT_COLUMNS}
            FROM journey_document_requirements
            WHERE requirement_id = ?
        """
        row = self._fetchone(query, (requirement_id,))
        return _to_requirement(row) if row is not None else None

    def get_journey(self, *, journey_id: str) -> Optional[JourneyInstanceRecord]:
        query = f"""
            SELECT {_JOURNEY_COLUMNS}
            FROM journey_instances
            WHERE journey_id = ?
        """
        row = self._fetchone(query, (journey_id,))
        return _to_journey(row) if row is not None else None

    def list_journeys(
        self,
        *,
        status: Optional[str],
        owner_ref: Optional[str],
        client_tax_id: Optional[str],
        template_id: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[JourneyInstanceRecord], Optional[str]]:
        where_clauses = []
        args: list[str] = []
        if status is not None:
            where_clauses.append("status = ?")
            args.append(status)
        if owner_ref is not None:
            where_clauses.append("owner_ref = ?")
            args.append(owner_ref)
        if client_tax_id is not None:
            where_clauses.append("client_tax_id = ?")
            args.append(client_tax_id)
        if template_id is not None:
            where_clauses.append("template_id = ?")
            args.append(template_id)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        query = f"""
            SELECT {_JOURNEY_COLUMNS}
            FROM journey_instances
            {where_sql}
            ORDER BY started_at DESC, journey_id DESC
        """
        journeys = [_to_journey(row) for row in self._fetchall(query, tuple(args))]
        if cursor:
            cursor_index = next(
                (index for index, row in enumerate(journeys) if row.journey_id == cursor),
                None,
            )
            if cursor_index is None:
                return [], None
            journeys = journeys[cursor_index + 1 :]
        page = journeys[:limit]
        next_cursor = page[-1].journey_id if len(journeys) > limit else None
        return page, next_cursor

    def list_stages(self, *, journey_id: str) -> list[StageInstanceRecord]:
        query = f"""
            SELECT {_STAGE_COLUMNS}
            FROM journey_stage_instances
            WHERE journey_id = ?
            ORDER BY position ASC, sequence_no ASC, stage_id ASC
        """
        return [_to_stage(row) for row in self._fetchall(query, (journey_id,))]

    def get_stage(self, *, stage_id: str) -> Optional[StageInstanceRecord]:
        query = f"""
            SELECT {_STAGE_COLUMNS}
            FROM journey_stage_instances
            WHERE stage_id = ?
        """
        row = self._fetchone(query, (stage_id,))
        return _to_stage(row) if row is not None else None

    def list_uploads(self, *, stage_id: str) -> list[DocumentUploadRecord]:
        query = f"""
            SELECT {_UPLOAD_COLUMNS}
            FROM journey_document_uploads
            WHERE stage_id = ?
            ORDER BY uploaded_at ASC, upload_id ASC
        """
        return [_to_upload(row) for row in self._fetchall(query, (stage_id,))]

    def get_upload(self, *, upload_id: str) -> Optional[DocumentUploadRecord]:
        query = f"""
            SELECT {_UPLOAD_COLUMNS}
            FROM journey_document_uploads
            WHERE upload_id = ?
        """
        row = self._fetchone(query, (upload_id,))
        return _to_upload(row) if row is not None else None

    def list_overdue_stages(
        self, *, journey_id: Optional[str], due_before: datetime
    ) -> list[StageInstanceRecord]:
        args: list[str] = [_iso(due_before)]
        journey_filter = ""
        if journey_id is not None:
            journey_filter = "AND s.journey_id = ?"
            args.append(journey_id)
        columns = ", ".join(f"s.{column.strip()}" for column in _STAGE_COLUMNS.split(","))
        query = f"""
            SELECT {columns}
            FROM journey_stage_instances s
            JOIN journey_instances j ON j.journey_id = s.journey_id
            WHERE s.status <> 'completed'
              AND s.due_at IS NOT NULL
              AND s.due_at < ?
              AND j.status <> 'completed'
              {journey_filter}
            ORDER BY s.due_at ASC, s.stage_id ASC
        """
        return [_to_stage(row) for row in self._fetchall(query, tuple(args))]

    def list_events(self, *, journey_id: str) -> list[DomainEvent]:
        query = """
            SELECT
                event_id,
                journey_id,
                event_type,
                entity_type,
                entity_id,
                actor_ref,
                occurred_at,
                payload_json
            FROM journey_events
            WHERE journey_id = ?
            ORDER BY event_seq ASC
        """
        return [
            DomainEvent(
                event_id=row["event_id"],
                event_type=row["event_type"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                journey_id=row["journey_id"],
                actor_ref=row["actor_ref"],
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
                payload=json.loads(row["payload_json"]),
            )
            for row in self._fetchall(query, (journey_id,))
        ]

    def get_idempotency(self, *, idempotency_key: str) -> Optional[JourneyIdempotencyRecord]:
        query = """
            SELECT
                idempotency_key,
                request_hash,
                journey_id,
                created_at
            FROM journey_idempotency
            WHERE idempotency_key = ?
        """
        row = self._fetchone(query, (idempotency_key,))
        if row is None:
            return None
        return JourneyIdempotencyRecord(
            idempotency_key=row["idempotency_key"],
            request_hash=row["request_hash"],
            journey_id=row["journey_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def apply_changes(self, changes: JourneyChangeSet) -> None:
        journey = changes.journey
        with self._transaction() as connection:
            if changes.idempotency is not None:
                self._guarded_insert(
                    connection,
                    guard=("idempotency", changes.idempotency.idempotency_key),
                    query="""
                        INSERT INTO journey_idempotency (
                            idempotency_key,
                            request_hash,
                            journey_id,
                            created_at
                        ) VALUES (?, ?, ?, ?)
                    """,
                    args=(
                        changes.idempotency.idempotency_key,
                        changes.idempotency.request_hash,
                        changes.idempotency.journey_id,
                        _iso(changes.idempotency.created_at),
                    ),
                )
            if changes.expected_version is None:
                self._guarded_insert(
                    connection,
                    guard=("journey", journey.journey_id),
                    query=f"""
                        INSERT INTO journey_instances ({_JOURNEY_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    args=_journey_args(journey),
                )
            else:
                cursor = connection.execute(
                    self._sql(
                        """
                        UPDATE journey_instances SET
                            status = ?,
                            progress_pct = ?,
                            next_action_json = ?,
                            completed_at = ?,
                            version = ?
                        WHERE journey_id = ? AND version = ?
                        """
                    ),
                    (
                        journey.status,
                        journey.progress_pct,
                        _next_action_json(journey.next_action),
                        _optional_iso(journey.completed_at),
                        journey.version,
                        journey.journey_id,
                        changes.expected_version,
                    ),
                )
                if cursor.rowcount != 1:
                    raise _conflict("journey", journey.journey_id)

            for stage in changes.created_stages:
                connection.execute(
                    self._sql(
                        f"""
                        INSERT INTO journey_stage_instances ({_STAGE_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """
                    ),
                    _stage_args(stage),
                )
            for stage_guard in changes.updated_stages:
                stage = stage_guard.stage
                cursor = connection.execute(
                    self._sql(
                        """
                        UPDATE journey_stage_instances SET
                            status = ?,
                            started_at = ?,
                            completed_at = ?,
                            completed_by = ?
                        WHERE stage_id = ? AND status = ?
                        """
                    ),
                    (
                        stage.status,
                        _optional_iso(stage.started_at),
                        _optional_iso(stage.completed_at),
                        stage.completed_by,
                        stage.stage_id,
                        stage_guard.expected_status,
                    ),
                )
                if cursor.rowcount != 1:
                    raise _conflict("stage", stage.stage_id)
            for requirement in changes.created_requirements:
                self._insert_requirement(connection, requirement)
            for upload in changes.created_uploads:
                connection.execute(
                    self._sql(
                        f"""
                        INSERT INTO journey_document_uploads ({_UPLOAD_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """
                    ),
                    _upload_args(upload),
                )
            for upload_guard in changes.updated_uploads:
                upload = upload_guard.upload
                cursor = connection.execute(
                    self._sql(
                        """
                        UPDATE journey_document_uploads SET
                            status = ?,
                            reviewed_by = ?,
                            review_notes = ?,
                            reviewed_at = ?
                        WHERE upload_id = ? AND status = ?
                        """
                    ),
                    (
                        upload.status,
                        upload.reviewed_by,
                        upload.review_notes,
                        _optional_iso(upload.reviewed_at),
                        upload.upload_id,
                        upload_guard.expected_status,
                    ),
                )
                if cursor.rowcount != 1:
                    raise _conflict("upload", upload.upload_id)
            self._append_events(connection, journey.journey_id, changes.events)

    def _append_events(self, connection: Any, journey_id: str, events: list[DomainEvent]) -> None:
        if not events:
            return
        row = connection.execute(
            self._sql(
                "SELECT COALESCE(MAX(event_seq), 0) AS last_seq FROM journey_events "
                "WHERE journey_id = ?"
            ),
            (journey_id,),
        ).fetchone()
        last_seq = int(row["last_seq"])
        for offset, event in enumerate(events, start=1):
            connection.execute(
                self._sql(
                    """
                    INSERT INTO journey_events (
                        event_id,
                        journey_id,
                        event_seq,
                        event_type,
                        entity_type,
                        entity_id,
                        actor_ref,
                        occurred_at,
                        payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """
                ),
                (
                    event.event_id,
                    journey_id,
                    last_seq + offset,
                    event.event_type,
                    event.entity_type,
                    event.entity_id,
                    event.actor_ref,
                    _iso(event.occurred_at),
                    _json_dump(event.payload),
                ),
            )

    def _insert_requirement(self, connection: Any, requirement: DocumentRequirementRecord) -> None:
        connection.execute(
            self._sql(
                f"""
                INSERT INTO journey_document_requirements ({_REQUIREMENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?)
                """
            ),
            (
                requirement.requirement_id,
                requirement.stage_ref,
                requirement.name,
                int(requirement.required),
                json.dumps(requirement.accepted_file_types),
                requirement.max_size_mb,
            ),
        )

    def _guarded_insert(
        self, connection: Any, *, guard: tuple[str, str], query: str, args: tuple
    ) -> None:
        try:
            connection.execute(self._sql(query), args)
        except self._integrity_errors as exc:
            raise _conflict(*guard) from exc

    def _fetchone(self, query: str, args: tuple) -> Any:
        with self._reading() as connection:
            return connection.execute(self._sql(query), args).fetchone()

    def _fetchall(self, query: str, args: tuple) -> list[Any]:
        with self._reading() as connection:
            return connection.execute(self._sql(query), args).fetchall()

    @contextmanager
    def _reading(self) -> Iterator[Any]:
        try:
            with closing(self._connect()) as connection:
                yield connection
        except self._transient_errors as exc:
            raise StoreUnavailableError(message=str(exc)) from exc

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        with self._write_lock:
            try:
                with closing(self._connect()) as connection:
                    try:
                        yield connection
                        connection.commit()
                    except BaseException:
                        connection.rollback()
                        raise
            except self._transient_errors as exc:
                raise StoreUnavailableError(message=str(exc)) from exc


def _conflict(guard: str, entity_id: str) -> ConcurrentModificationError:
    return ConcurrentModificationError(details={"guard": guard, "entity_id": entity_id})


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    return _iso(value) if value is not None else None


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _json_dump(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _next_action_json(value: Optional[NextAction]) -> Optional[str]:
    if value is None:
        return None
    return _json_dump(value.model_dump(mode="json"))


def _journey_args(journey: JourneyInstanceRecord) -> tuple:
    return (
        journey.journey_id,
        journey.template_id,
        journey.subject.client_tax_id,
        journey.subject.case_number,
        journey.owner_ref,
        journey.created_by,
        _iso(journey.started_at),
        journey.status,
        journey.progress_pct,
        _next_action_json(journey.next_action),
        _optional_iso(journey.completed_at),
        journey.version,
    )


def _stage_args(stage: StageInstanceRecord) -> tuple:
    return (
        stage.stage_id,
        stage.journey_id,
        stage.template_stage_id,
        stage.sequence_no,
        stage.position,
        stage.title,
        stage.description,
        stage.kind,
        int(stage.mandatory),
        stage.status,
        _iso(stage.created_at),
        _optional_iso(stage.due_at),
        _optional_iso(stage.started_at),
        _optional_iso(stage.completed_at),
        stage.completed_by,
    )


def _upload_args(upload: DocumentUploadRecord) -> tuple:
    return (
        upload.upload_id,
        upload.stage_id,
        upload.requirement_id,
        upload.filename,
        upload.size_bytes,
        upload.mime_type,
        upload.status,
        upload.uploaded_by,
        _iso(upload.uploaded_at),
        upload.reviewed_by,
        upload.review_notes,
        _optional_iso(upload.reviewed_at),
    )


def _to_journey(row: Any) -> JourneyInstanceRecord:
    next_action = row["next_action_json"]
    return JourneyInstanceRecord(
        journey_id=row["journey_id"],
        template_id=row["template_id"],
        subject=SubjectRef(client_tax_id=row["client_tax_id"], case_number=row["case_number"]),
        owner_ref=row["owner_ref"],
        created_by=row["created_by"],
        started_at=datetime.fromisoformat(row["started_at"]),
        status=row["status"],
        progress_pct=row["progress_pct"],
        next_action=NextAction.model_validate(json.loads(next_action)) if next_action else None,
        completed_at=_optional_datetime(row["completed_at"]),
        version=row["version"],
    )


def _to_stage(row: Any) -> StageInstanceRecord:
    return StageInstanceRecord(
        stage_id=row["stage_id"],
        journey_id=row["journey_id"],
        template_stage_id=row["template_stage_id"],
        sequence_no=row["sequence_no"],
        position=row["position"],
        title=row["title"],
        description=row["description"],
        kind=row["kind"],
        mandatory=bool(row["mandatory"]),
        status=row["status"],
        created_at=datetime.fromisoformat(row["created_at"]),
        due_at=_optional_datetime(row["due_at"]),
        started_at=_optional_datetime(row["started_at"]),
        completed_at=_optional_datetime(row["completed_at"]),
        completed_by=row["completed_by"],
    )


def _to_upload(row: Any) -> DocumentUploadRecord:
    return DocumentUploadRecord(
        upload_id=row["upload_id"],
        stage_id=row["stage_id"],
        requirement_id=row["requirement_id"],
        filename=row["filename"],
        size_bytes=row["size_bytes"],
        mime_type=row["mime_type"],
        status=row["status"],
        uploaded_by=row["uploaded_by"],
        uploaded_at=datetime.fromisoformat(row["uploaded_at"]),
        reviewed_by=row["reviewed_by"],
        review_notes=row["review_notes"],
        reviewed_at=_optional_datetime(row["reviewed_at"]),
    )


def _to_requirement(row: Any) -> DocumentRequirementRecord:
    return DocumentRequirementRecord(
        requirement_id=row["requirement_id"],
        stage_ref=row["stage_ref"],
        name=row["name"],
        required=bool(row["required"]),
        accepted_file_types=json.loads(row["accepted_file_types"]),
        max_size_mb=row["max_size_mb"],
    )
