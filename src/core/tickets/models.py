from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

TicketPriority = Literal["baixa", "media", "alta", "urgente"]
TicketStatus = Literal["aberto", "em_andamento", "resolvido", "fechado"]
SlaBandName = Literal["overdue", "critical", "warning", "caution", "normal", "met"]
SlaClock = Literal["first_response", "resolution"]
EscalationLevel = Literal["none", "low", "medium", "high", "critical"]

PRIORITY_ALIASES = {"normal": "media"}


def normalize_priority(value: str) -> str:
    normalized = value.strip().lower()
    return PRIORITY_ALIASES.get(normalized, normalized)


class _PriorityInput(BaseModel):
    @field_validator("priority", mode="before", check_fields=False)
    @classmethod
    def _resolve_alias(cls, value):
        if isinstance(value, str):
            return normalize_priority(value)
        return value


class TicketSlaPolicyEntry(BaseModel):
    frt_hours: float = Field(gt=0, description="First-response window in hours.", examples=[8])
    ttr_hours: float = Field(gt=0, description="Resolution window in hours.", examples=[24])


class TicketRecord(BaseModel):
    ticket_id: str = Field(description="Ticket identifier.", examples=["tk_001"])
    subject: str = Field(description="Ticket subject line.", examples=["Dúvida sobre audiência"])
    description: Optional[str] = Field(default=None, description="Ticket body.")
    requester_ref: str = Field(description="Client or user who opened the ticket.")
    journey_id: Optional[str] = Field(default=None, description="Related journey, if any.")
    priority: TicketPriority = Field(description="Current priority.", examples=["media"])
    status: TicketStatus = Field(description="Ticket status.", examples=["aberto"])
    created_by: str = Field(description="Actor that opened the ticket.")
    created_at: datetime = Field(description="Creation timestamp; both SLA clocks start here.")
    frt_due_at: datetime = Field(description="First-response deadline.")
    ttr_due_at: datetime = Field(description="Resolution deadline.")
    first_response_at: Optional[datetime] = Field(default=None)
    resolved_at: Optional[datetime] = Field(default=None)
    closed_at: Optional[datetime] = Field(default=None)
    version: int = Field(default=1, ge=1, description="Optimistic concurrency counter.")


class TicketOpenRequest(_PriorityInput):
    subject: str = Field(min_length=1, description="Ticket subject line.")
    description: Optional[str] = Field(default=None, description="Ticket body.")
    requester_ref: str = Field(min_length=1, description="Client or user raising the ticket.")
    journey_id: Optional[str] = Field(default=None, description="Related journey, if any.")
    priority: TicketPriority = Field(
        default="media",
        description="Priority; `normal` is accepted as an alias of `media`.",
        examples=["urgente"],
    )
    actor_ref: str = Field(min_length=1, description="Actor opening the ticket.")


class TicketPriorityChangeRequest(_PriorityInput):
    priority: TicketPriority = Field(description="New priority.", examples=["baixa"])
    actor_ref: str = Field(min_length=1, description="Actor changing the priority.")


class TicketActorRequest(BaseModel):
    actor_ref: str = Field(min_length=1, description="Actor performing the operation.")


class SlaBand(BaseModel):
    clock: SlaClock
    due_at: datetime
    band: SlaBandName = Field(description="Urgency band of the clock as of the evaluation time.")
    hours_remaining: float = Field(description="Negative once the deadline has passed.")
    violated: bool


class TicketSlaView(BaseModel):
    ticket: TicketRecord
    as_of: datetime
    first_response: SlaBand
    resolution: SlaBand
    escalation_level: EscalationLevel = Field(
        default="none", description="Escalation derived from the worse of the two clocks."
    )


class TicketViolation(BaseModel):
    ticket_id: str
    clock: SlaClock
    priority: TicketPriority
    due_at: datetime
    overdue_by_hours: float
    escalation_level: EscalationLevel = Field(
        default="none", description="Escalation of the ticket as a whole."
    )


class TicketViolationsResponse(BaseModel):
    as_of: datetime
    items: List[TicketViolation] = Field(default_factory=list)


class TicketSweepResponse(BaseModel):
    as_of: datetime
    violations: int
    notifications_sent: int


class TicketSlaPolicyResponse(BaseModel):
    priorities: dict[str, TicketSlaPolicyEntry]
