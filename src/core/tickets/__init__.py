from src.core.tickets.models import (
    TicketOpenRequest,
    TicketPriorityChangeRequest,
    TicketRecord,
)
from src.core.tickets.repository import TicketRepository
from src.core.tickets.service import TicketSlaService
from src.core.tickets.sla import (
    DEFAULT_TICKET_SLA_POLICY,
    compute_ticket_deadlines,
    parse_ticket_sla_policy,
)

__all__ = [
    "DEFAULT_TICKET_SLA_POLICY",
    "TicketOpenRequest",
    "TicketPriorityChangeRequest",
    "TicketRecord",
    "TicketRepository",
    "TicketSlaService",
    "compute_ticket_deadlines",
    "parse_ticket_sla_policy",
]
