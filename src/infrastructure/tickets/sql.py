import json
from contextlib import closing, contextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from src.core.journeys.errors import ConcurrentModificationError, StoreUnavailableError
from src.core.journeys.models import DomainEvent
from src.core.tickets.models import TicketRecord
from src.core.tickets.repository import TicketRepository

_TICKET_COLUMNS = """
    ticket_id,
    subject,
    description,
    requester_ref,
    journey_id,
    priority,
    status,
    created_by,
    created_at,
    frt_due_at,
    ttr_due_at,
    first_response_at,
    resolved_at,
    closed_at,
    version
"""


class SqlTicketRepository(TicketRepository):
    _integrity_errors: tuple[type[BaseException], ...] = ()
    _transient_errors: tuple[type[BaseException], ...] = ()

    def __init__(self) -> None:
        self._write_lock: Any = nullcontext()

    def _connect(self) -> Any:
        raise NotImplementedError

    def _sql(self, query: str) -> str:
        return query

    def create_ticket(self, *, ticket: TicketRecord, events: list[DomainEvent]) -> None:
        with self._transaction() as connection:
            try:
                connection.execute(
                    self._sql(
                        f"""
                        INSERT INTO tickets ({_TICKET_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """
                    ),
                    _ticket_args(ticket),
                )
            except self._integrity_errors as exc:
                raise _conflict(ticket.ticket_id) from exc
            self._append_events(connection, ticket.ticket_id, events)

    def get_ticket(self, *, ticket_id: str) -> Optional[TicketRecord]:
        query = f"""
            SELECT {_TICKET_COLUMNS}
            FROM tickets
            WHERE ticket_id = ?
        """
        with self._reading() as connection:
            row = connection.execute(self._sql(query), (ticket_id,)).fetchone()
        return _to_ticket(row) if row is not None else None

    def list_active_tickets(self) -> list[TicketRecord]:
        query = f"""
            SELECT {_TICKET_COLUMNS}
            FROM tickets
            WHERE status IN ('aberto', 'em_andamento')
            ORDER BY created_at ASC, ticket_id ASC
        """
        with self._reading() as connection:
            rows = connection.execute(self._sql(query), ()).fetchall()
        return [_to_ticket(row) for row in rows]

    def update_ticket(
        self, *, ticket: TicketRecord, expected_version: int, events: list[DomainEvent]
    ) -> None:
        query = """
            UPDATE tickets SET
                priority = ?,
                status = ?,
                frt_due_at = ?,
                ttr_due_at = ?,
                first_response_at = ?,
                resolved_at = ?,
                closed_at = ?,
                version = ?
            WHERE ticket_id = ? AND version = ?
        """
        with self._transaction() as connection:
            cursor = connection.execute(
                self._sql(query),
                (
                    ticket.priority,
                    ticket.status,
                    _iso(ticket.frt_due_at),
                    _iso(ticket.ttr_due_at),
                    _optional_iso(ticket.first_response_at),
                    _optional_iso(ticket.resolved_at),
                    _optional_iso(ticket.closed_at),
                    ticket.version,
                    ticket.ticket_id,
                    expected_version,
                ),
            )
            if cursor.rowcount != 1:
                raise _conflict(ticket.ticket_id)
            self._append_events(connection, ticket.ticket_id, events)

    def list_events(self, *, ticket_id: str) -> list[DomainEvent]:
        query = """
            SELECT
                event_id,
                ticket_id,
                event_type,
                journey_id,
                actor_ref,
                occurred_at,
                payload_json
            FROM ticket_events
            WHERE ticket_id = ?
            ORDER BY event_seq ASC
        """
        with self._reading() as connection:
            rows = connection.execute(self._sql(query), (ticket_id,)).fetchall()
        return [
            DomainEvent(
                event_id=row["event_id"],
                event_type=row["event_type"],
                entity_type="ticket",
                entity_id=row["ticket_id"],
                journey_id=row["journey_id"],
                actor_ref=row["actor_ref"],
                occurred_at=datetime.fromisoformat(row["occurred_at"]),
                payload=json.loads(row["payload_json"]),
            )
            for row in rows
        ]

    def _append_events(self, connection: Any, ticket_id: str, events: list[DomainEvent]) -> None:
        if not events:
            return
        row = connection.execute(
            self._sql(
                "SELECT COALESCE(MAX(event_seq), 0) AS last_seq FROM ticket_events "
                "WHERE ticket_id = ?"
            ),
            (ticket_id,),
        ).fetchone()
        last_seq = int(row["last_seq"])
        for offset, event in enumerate(events, start=1):
            connection.execute(
                self._sql(
                    """
                    INSERT INTO ticket_events (
                        event_id,
                        ticket_id,
                        event_seq,
                        event_type,
                        journey_id,
                        actor_ref,
                        occurred_at,
                        payload_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """
                ),
                (
                    event.event_id,
                    ticket_id,
                    last_seq + offset,
                    event.event_type,
                    event.journey_id,
                    event.actor_ref,
                    _iso(event.occurred_at),
                    json.dumps(event.payload, separators=(",", ":"), sort_keys=True),
                ),
            )

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


def _conflict(ticket_id: str) -> ConcurrentModificationError:
    return ConcurrentModificationError(details={"guard": "ticket", "entity_id": ticket_id})


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    return _iso(value) if value is not None else None


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _ticket_args(ticket: TicketRecord) -> tuple:
    return (
        ticket.ticket_id,
        ticket.subject,
        ticket.description,
        ticket.requester_ref,
        ticket.journey_id,
        ticket.priority,
        ticket.status,
        ticket.created_by,
        _iso(ticket.created_at),
        _iso(ticket.frt_due_at),
        _iso(ticket.ttr_due_at),
        _optional_iso(ticket.first_response_at),
        _optional_iso(ticket.resolved_at),
        _optional_iso(ticket.closed_at),
        ticket.version,
    )


def _to_ticket(row: Any) -> TicketRecord:
    return TicketRecord(
        ticket_id=row["ticket_id"],
        subject=row["subject"],
        description=row["description"],
        requester_ref=row["requester_ref"],
        journey_id=row["journey_id"],
        priority=row["priority"],
        status=row["status"],
        created_by=row["created_by"],
        created_at=datetime.fromisoformat(row["created_at"]),
        frt_due_at=datetime.fromisoformat(row["frt_due_at"]),
        ttr_due_at=datetime.fromisoformat(row["ttr_due_at"]),
        first_response_at=_optional_datetime(row["first_response_at"]),
        resolved_at=_optional_datetime(row["resolved_at"]),
        closed_at=_optional_datetime(row["closed_at"]),
        version=row["version"],
    )
