from __future__ import annotations
import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.api.v1.calendar import router as calendar_router
from app.api.v1.health import router as health_router
from app.api.v1.records import router as records_router
from app.api.v1.reminders import cron_router, router as reminders_router
from app.config import settings
from app.core.calendar.errors import (
    CredentialError,
    NotFoundError,
    ProviderError,
    ReminderStateError,
    TransientProviderError,
)

# Configure basic logging
logging.basicConfig(level=logging.INFO)
log = logging.getLogger(__name__)
description = "Calendar sync (Google, Outlook) and reminder dispatch for transaction milestones."
tags_metadata = [
    {"name": "calendar", "description": "Provider connections, events and sync."},
    {"name": "reminders", "description": "Reminders and their linked calendar events."},
    {"name": "records", "description": "Projection of transaction dates into the calendar."},
    {"name": "cron", "description": "Manual triggers for scheduled jobs."},
    {"name": "infra", "description": "Health checks."},
]

app = FastAPI(
    title="Calendar Sync API",
    description=description,
    version="0.3.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=tags_metadata,
)

app.include_router(health_router)
app.include_router(calendar_router)
app.include_router(reminders_router)
app.include_router(cron_router)
app.include_router(records_router)


# --- Ошибки домена -> HTTP ---
@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(ReminderStateError)
async def reminder_state_handler(request: Request, exc: ReminderStateError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    if isinstance(exc, CredentialError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, TransientProviderError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_502_BAD_GATEWAY
    log.warning("Provider error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=code,
        content={"detail": exc.message, "provider": exc.provider, "operation": exc.operation, "kind": exc.kind},
    )


log.info("\U0001F331 FastAPI application configured. Environment: %s", settings.ENVIRONMENT)

@app.on_event("startup")
async def startup_event() -> None:
    log.info("\U0001F680 FastAPI application startup complete.")

@app.on_event("shutdown")
async def shutdown_event() -> None:
    log.info("\U0001F44B FastAPI application shutdown.")
