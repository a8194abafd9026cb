from __future__ import annotations

import os

from src.api.routers.journeys_config import journey_postgres_dsn, journey_store_backend_name
from src.api.routers.tickets_config import ticket_postgres_dsn, ticket_store_backend_name

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if journey_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_JOURNEY_POSTGRES")
    if not journey_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_JOURNEY_POSTGRES_DSN")
    if ticket_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_TICKET_POSTGRES")
    if not ticket_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_TICKET_POSTGRES_DSN")
