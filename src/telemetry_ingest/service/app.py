"""
Ingestion service HTTP API.

Routes:
    POST   /telemetry/events                   ingest a batch (idempotent by event id)
    DELETE /telemetry/users/{user_id}          delete a user's persisted events
    GET    /telemetry/users/{user_id}/events   read back a user's events, newest first
    GET    /healthz                            liveness + database check
    GET    /metrics                            Prometheus exposition

Run with ``telemetry-ingest serve`` or ``uvicorn telemetry_ingest.service.app:create_app --factory``.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import make_asgi_app
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from telemetry_agent import __version__
from telemetry_agent.errors import EventValidationError
from telemetry_agent.metrics.registry import metrics_registry as m
from telemetry_agent.models import SCHEMA_VERSION
from telemetry_agent.validation import ValidationPolicy, validate_event

from ..auth import StaticTokenVerifier, TokenVerifier, parse_bearer
from ..config import Settings, get_settings
from ..errors import StoreError, StoreUnavailable
from ..store import EventStore

SERVICE_NAME = "telemetry-ingest"


class IngestBatch(BaseModel):
    """Request body for ``POST /telemetry/events``.

    Events are kept untyped here and validated one by one so the error can
    name the offending index.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    schema_version: int = SCHEMA_VERSION
    batch_id: Optional[UUID] = None
    events: list[dict[str, Any]] = Field(min_length=1)


def require_token(request: Request, authorization: Optional[str] = Header(None)) -> str:
    token = parse_bearer(authorization)
    verifier: TokenVerifier = request.app.state.verifier
    if token is None or not verifier.verify(token):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


def get_store(request: Request) -> EventStore:
    return request.app.state.store


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EventStore] = None,
    verifier: Optional[TokenVerifier] = None,
) -> FastAPI:
    settings = settings or get_settings()
    owns_store = store is None
    if store is None:
        store = EventStore.from_url(settings.database_url)
    policy = ValidationPolicy()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{SERVICE_NAME} starting (max batch size {settings.MAX_BATCH_SIZE})")
        yield
        if owns_store:
            store.dispose()
        logger.info(f"{SERVICE_NAME} stopped")

    app = FastAPI(title="Telemetry Ingest", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.verifier = verifier or StaticTokenVerifier(settings.api_tokens)
    app.mount("/metrics", make_asgi_app())

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        response = await call_next(request)
        if request.url.path.startswith("/telemetry"):
            m.ingest_requests_total.labels(str(response.status_code)).inc()
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        status = 503 if isinstance(exc, StoreUnavailable) else 500
        logger.error(f"Event store error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=status, content={"detail": "event store unavailable"})

    @app.post("/telemetry/events", status_code=202)
    def ingest_events(
        body: IngestBatch,
        _token: str = Depends(require_token),
        store: EventStore = Depends(get_store),
    ) -> dict[str, int]:
        if body.schema_version > SCHEMA_VERSION:
            raise HTTPException(400, f"unsupported schemaVersion {body.schema_version}")
        if len(body.events) > settings.MAX_BATCH_SIZE:
            raise HTTPException(
                400, f"batch too large ({len(body.events)} > {settings.MAX_BATCH_SIZE} events)"
            )

        events = []
        for i, raw in enumerate(body.events):
            try:
                events.append(validate_event(raw, policy, assign_defaults=False))
            except EventValidationError as exc:
                raise HTTPException(400, f"events[{i}]: {exc}") from exc

        result = store.insert_events(events)
        m.ingest_events_total.labels("inserted").inc(result.inserted)
        m.ingest_events_total.labels("duplicate").inc(result.duplicates)
        logger.info(
            f"Ingested batch {body.batch_id or '-'}: received={result.received} "
            f"inserted={result.inserted}"
        )
        return {
            "received": result.received,
            "inserted": result.inserted,
            "schemaVersion": SCHEMA_VERSION,
        }

    @app.delete("/telemetry/users/{user_id}")
    def delete_user(
        user_id: str,
        _token: str = Depends(require_token),
        store: EventStore = Depends(get_store),
    ) -> dict[str, int]:
        deleted = store.delete_user(user_id)
        m.ingest_deletions_total.inc(deleted)
        logger.info(f"Deleted {deleted} events for user {user_id!r}")
        return {"deleted": deleted}

    @app.get("/telemetry/users/{user_id}/events")
    def user_events(
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        names: Optional[list[str]] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        _token: str = Depends(require_token),
        store: EventStore = Depends(get_store),
    ) -> dict[str, Any]:
        events = store.query_user_events(user_id, start=start, end=end, names=names, limit=limit)
        return {"events": [e.to_wire() for e in events], "count": len(events)}

    @app.get("/healthz")
    def healthz(store: EventStore = Depends(get_store)) -> dict[str, Any]:
        db_ok = store.ping()
        return {
            "service": SERVICE_NAME,
            "state": "healthy" if db_ok else "degraded",
            "version": __version__,
            "components": [{"name": "database", "state": "healthy" if db_ok else "unhealthy"}],
            "ts": time.time(),
        }

    return app
