"""
FILE: src/api/main.py
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.api.observability import setup_observability
from src.api.persistence_profile import validate_persistence_profile_guardrails
from src.api.routers.deadlines import router as deadline_router
from src.api.routers.journey_templates import router as journey_template_router
from src.api.routers.journeys import router as journey_router
from src.api.routers.tickets import router as ticket_router


@asynccontextmanager
async def _app_lifespan(_app: FastAPI):
    validate_persistence_profile_guardrails()
    yield


app = FastAPI(
    title="Journey Orchestrator API",
    version="0.1.0",
    description=(
        "Workflow and deadline orchestration for legal client journeys.\n\n"
        "Journeys are instantiated from immutable templates; document-gated stages block "
        "until every required document is approved, and ticket SLA clocks are tracked per "
        "priority."
    ),
    openapi_tags=[
        {
            "name": "Journey Lifecycle",
            "description": "Journey, stage and document operations.",
        },
        {
            "name": "Journey Templates",
            "description": "Published journey definitions.",
        },
        {
            "name": "Deadlines",
            "description": "Scheduler hook for overdue stage and SLA sweeps.",
        },
        {
            "name": "Ticket SLA",
            "description": "Support tickets with first-response and resolution clocks.",
        },
    ],
    lifespan=_app_lifespan,
)

logger = logging.getLogger(__name__)

setup_observability(app)

app.include_router(journey_router)
app.include_router(journey_template_router)
app.include_router(deadline_router)
app.include_router(ticket_router)


@app.exception_handler(Exception)
async def unhandled_exception_to_problem_details(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception while serving request", exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": "Internal Server Error",
            "status": 500,
            "detail": "An unexpected error occurred.",
            "instance": str(request.url.path),
        },
    )


@app.get("/health", tags=["Health"])
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/live", tags=["Health"])
def health_live() -> dict[str, str]:
    return {"status": "live"}


@app.get("/health/ready", tags=["Health"])
def health_ready() -> dict[str, str]:
    return {"status": "ready"}
