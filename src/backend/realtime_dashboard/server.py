"""FastAPI surface for the admin dashboard analytics."""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from .aggregator import build_views
from .config import DashboardConfig
from .models import COLLECTIONS, AdminContext, ChangeEvent, ClientRecord, ServiceRequest
from .repository import FeedRecordSource, InMemoryRecordSource, build_record_source_from_env
from .sessions import SessionRegistry

load_dotenv()


class SessionPayload(BaseModel):
    user_id: str
    is_admin: bool = False


class SessionResponse(BaseModel):
    session_id: str
    state: str
    active: bool


class AnalyticsResponse(BaseModel):
    data: Dict[str, Any]
    version: int
    state: str


class ChangeWebhookPayload(BaseModel):
    type: Literal["INSERT", "UPDATE", "DELETE"] = "UPDATE"
    table: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None


class RequestPayload(BaseModel):
    id: str
    created_at: Optional[Union[datetime, str]] = None
    status: Optional[str] = None
    service_type: Optional[str] = None


class ClientPayload(BaseModel):
    id: str
    created_at: Optional[Union[datetime, str]] = None
    company_name: Optional[str] = None
    status: Optional[str] = None


class InlineAnalyticsRequest(BaseModel):
    requests: List[RequestPayload] = Field(default_factory=list)
    clients: List[ClientPayload] = Field(default_factory=list)
    timezone: Optional[str] = None


class InlineAnalyticsResponse(BaseModel):
    data: Dict[str, Any]
    source: str


def create_app(
    config: Optional[DashboardConfig] = None,
    source: Optional[FeedRecordSource] = None,
) -> FastAPI:
    cfg = config or DashboardConfig.from_env()
    record_source = source or build_record_source_from_env(cfg) or InMemoryRecordSource()
    registry = SessionRegistry(record_source, timezone=cfg.timezone, sort_snapshots=cfg.sort_snapshots)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            yield
        finally:
            registry.close()

    app = FastAPI(title="Service Analytics Dashboard API", version="0.1.0", lifespan=lifespan)
    app.state.config = cfg
    app.state.source = record_source
    app.state.sessions = registry

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/sessions/{session_id}", response_model=SessionResponse)
    async def enter_session(session_id: str, payload: SessionPayload) -> SessionResponse:
        context = AdminContext(session_id=session_id, user_id=payload.user_id, is_admin=payload.is_admin)
        controller = await registry.enter(context)
        if controller is None:
            raise HTTPException(status_code=403, detail="Admin access is required for dashboard analytics.")
        return SessionResponse(
            session_id=session_id,
            state=controller.state.value,
            active=controller.views.has_data,
        )

    @app.delete("/sessions/{session_id}")
    async def end_session(session_id: str) -> Dict[str, str]:
        if not registry.end(session_id):
            raise HTTPException(status_code=404, detail="Unknown dashboard session.")
        return {"status": "disposed"}

    @app.get("/sessions/{session_id}/analytics", response_model=AnalyticsResponse)
    async def session_analytics(session_id: str) -> AnalyticsResponse:
        controller = registry.get(session_id)
        if controller is None:
            raise HTTPException(status_code=404, detail="Unknown dashboard session.")
        store = controller.views
        return AnalyticsResponse(data=store.current.as_dict(), version=store.version, state=controller.state.value)

    @app.post("/changes/{collection}")
    async def change_webhook(
        collection: str,
        payload: ChangeWebhookPayload,
        x_webhook_secret: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        if cfg.webhook_secret and x_webhook_secret != cfg.webhook_secret:
            raise HTTPException(status_code=401, detail="Invalid webhook secret.")
        if collection not in COLLECTIONS:
            raise HTTPException(status_code=404, detail=f"Unknown collection: {collection}")
        row = payload.record or payload.old_record or {}
        record_id = row.get("id")
        event = ChangeEvent(
            collection=collection,
            event_type=payload.type,
            record_id=None if record_id is None else str(record_id),
        )
        notified = record_source.feed.publish(event)
        return {"status": "accepted", "subscribers": notified}

    @app.post("/analytics", response_model=InlineAnalyticsResponse)
    async def inline_analytics(request: InlineAnalyticsRequest) -> InlineAnalyticsResponse:
        requests = tuple(_convert_request_payload(item) for item in request.requests)
        clients = tuple(_convert_client_payload(item) for item in request.clients)
        views = build_views(
            requests,
            clients,
            timezone=request.timezone or cfg.timezone,
            sort=cfg.sort_snapshots,
        )
        return InlineAnalyticsResponse(data=views.as_dict(), source="inline")

    return app


def _convert_request_payload(payload: RequestPayload) -> ServiceRequest:
    return ServiceRequest(
        id=payload.id,
        created_at=payload.created_at,
        status=payload.status,
        service_type=payload.service_type,
    )


def _convert_client_payload(payload: ClientPayload) -> ClientRecord:
    return ClientRecord(
        id=payload.id,
        created_at=payload.created_at,
        company_name=payload.company_name,
        status=payload.status,
    )


app = create_app()
