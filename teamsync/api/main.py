from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import (Depends, FastAPI, HTTPException, Request, WebSocket,
                     WebSocketDisconnect)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from models.credentials import GITHUB, JIRA
from teamsync.config import Settings
from teamsync.exceptions import (ConfigurationError, NotConnectedError,
                                 NotFoundError, ReauthorizationRequiredError,
                                 TeamSyncError, ValidationError)
from teamsync.realtime import team_scope
from teamsync.runtime import Services, open_services

from .schemas import (ConnectRequest, ConnectResponse, DashboardResponse,
                      HealthResponse, LeaderSyncRequest, LeaderSyncResponse,
                      MappingRequest, MappingResponse, RankingResponse,
                      SyncHistoryResponse, SyncRequest, SyncResponse,
                      WebhookResponse)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is not None:
        yield
        return
    async with open_services(Settings.from_env()) as services:
        app.state.services = services
        try:
            yield
        finally:
            app.state.services = None


app = FastAPI(
    title="TeamSync API",
    version="0.1.0",
    docs_url="/docs",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services


def _http_error(exc: TeamSyncError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ReauthorizationRequiredError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, (NotConnectedError, ConfigurationError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@app.get("/api/v1/health", response_model=HealthResponse)
async def health(
    services: Services = Depends(get_services),
) -> HealthResponse | JSONResponse:
    status = "ok"
    try:
        await services.store.get_team("__health__")
        store_state = "ok"
    except Exception as exc:
        logger.warning(f"Health check could not reach the store: {exc}")
        store_state = "down"
        status = "down"
    response = HealthResponse(status=status, services={"store": store_state})
    if status != "ok":
        return JSONResponse(status_code=503, content=response.model_dump())
    return response


@app.post("/api/v1/webhooks/jira", response_model=WebhookResponse)
async def jira_webhook(
    request: Request, services: Services = Depends(get_services)
) -> WebhookResponse:
    # Jira retries anything but a 2xx, so every delivery is acknowledged.
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Received a Jira webhook with an invalid JSON body")
        return WebhookResponse(handled=False, reason="invalid payload")
    if not isinstance(payload, dict):
        return WebhookResponse(handled=False, reason="invalid payload")
    ack = await services.jira.handle_webhook(payload)
    return WebhookResponse(
        handled=ack.handled,
        event=ack.event,
        action=ack.action,
        team_id=ack.team_id,
        issue_key=ack.issue_key,
        reason=ack.reason,
    )


@app.post("/api/v1/teams/{team_id}/sync", response_model=SyncResponse)
async def sync_team(
    team_id: str,
    payload: SyncRequest | None = None,
    services: Services = Depends(get_services),
) -> SyncResponse:
    if await services.store.get_team(team_id) is None:
        raise HTTPException(status_code=404, detail=f"Team {team_id} not found")
    user_id = payload.user_id if payload else None
    summary = await services.orchestrator.run_team_sync(team_id, user_id=user_id)
    return SyncResponse(
        team_id=summary.team_id,
        started_at=summary.started_at,
        finished_at=summary.finished_at,
        git=summary.git,
        jira=summary.jira,
        errors=summary.errors,
        skipped=summary.skipped,
    )


@app.get("/api/v1/teams/{team_id}/sync-history", response_model=SyncHistoryResponse)
async def sync_history(
    team_id: str, services: Services = Depends(get_services)
) -> SyncHistoryResponse:
    history = await services.orchestrator.get_sync_history(team_id)
    if history is None:
        raise HTTPException(status_code=404, detail=f"Team {team_id} not found")
    return SyncHistoryResponse(**history)


@app.get("/api/v1/teams/{team_id}/dashboard", response_model=DashboardResponse)
async def dashboard(
    team_id: str, services: Services = Depends(get_services)
) -> DashboardResponse:
    try:
        summary = await services.dashboard(team_id)
    except TeamSyncError as exc:
        raise _http_error(exc) from exc
    return DashboardResponse(**summary.to_dict())


@app.get("/api/v1/teams/{team_id}/ranking", response_model=RankingResponse)
async def ranking(
    team_id: str, services: Services = Depends(get_services)
) -> RankingResponse:
    try:
        rows = await services.ranking(team_id)
    except TeamSyncError as exc:
        raise _http_error(exc) from exc
    return RankingResponse(team_id=team_id, ranking=[row.to_dict() for row in rows])


@app.put("/api/v1/members/{member_id}/mapping", response_model=MappingResponse)
async def update_mapping(
    member_id: str,
    payload: MappingRequest,
    services: Services = Depends(get_services),
) -> MappingResponse:
    try:
        update = await services.identity.set_mapping(
            member_id,
            jira_account_id=payload.jira_account_id,
            github_username=payload.github_username,
        )
    except TeamSyncError as exc:
        raise _http_error(exc) from exc
    return MappingResponse(
        member_id=update.member.id,
        team_id=update.member.team_id,
        jira_account_id=update.member.jira_account_id,
        github_username=update.member.github_username,
        relinked=update.relinked,
        unlinked=update.unlinked,
    )


@app.post("/api/v1/teams/{team_id}/leader-sync", response_model=LeaderSyncResponse)
async def leader_sync(
    team_id: str,
    payload: LeaderSyncRequest,
    services: Services = Depends(get_services),
) -> LeaderSyncResponse:
    try:
        result = await services.reconcile_leader(team_id, payload.user_id)
    except TeamSyncError as exc:
        raise _http_error(exc) from exc
    return LeaderSyncResponse(
        updated=result.updated,
        leader_member_id=result.leader_member_id,
        lead_account_id=result.lead_account_id,
        lead_name=result.lead_name,
        reason=result.reason,
    )


@app.post(
    "/api/v1/users/{user_id}/integrations/{provider}", response_model=ConnectResponse
)
async def connect_integration(
    user_id: str,
    provider: str,
    payload: ConnectRequest,
    services: Services = Depends(get_services),
) -> ConnectResponse:
    settings = services.settings
    try:
        if provider == GITHUB:
            credential = await services.accounts.connect_github(
                user_id, payload.code, payload.redirect_uri or settings.github_callback_url
            )
        elif provider == JIRA:
            redirect_uri = payload.redirect_uri or settings.atlassian_callback_url
            if not redirect_uri:
                raise ValidationError("redirect_uri is required for Jira")
            credential = await services.accounts.connect_jira(
                user_id, payload.code, redirect_uri
            )
        else:
            raise ValidationError(f"Unknown provider: {provider}")
    except TeamSyncError as exc:
        raise _http_error(exc) from exc
    return ConnectResponse(
        provider=provider, account_id=credential.account_id, connected=True
    )


@app.delete(
    "/api/v1/users/{user_id}/integrations/{provider}", response_model=ConnectResponse
)
async def disconnect_integration(
    user_id: str, provider: str, services: Services = Depends(get_services)
) -> ConnectResponse:
    try:
        await services.accounts.disconnect(user_id, provider)
    except TeamSyncError as exc:
        raise _http_error(exc) from exc
    return ConnectResponse(provider=provider, account_id=None, connected=False)


def _event_message(event: Any) -> dict:
    return {"scope": event.scope, "event": event.name, "payload": event.payload}


@app.websocket("/api/v1/teams/{team_id}/events")
async def team_events(websocket: WebSocket, team_id: str) -> None:
    services = getattr(websocket.app.state, "services", None)
    publisher = getattr(services, "publisher", None)
    if publisher is None or not hasattr(publisher, "subscribe"):
        await websocket.close(code=1011)
        return

    scope = team_scope(team_id)
    queue = publisher.subscribe(scope)
    try:
        await websocket.accept()
        while True:
            event = await queue.get()
            await websocket.send_json(_event_message(event))
    except WebSocketDisconnect:
        logger.debug(f"Subscriber left {scope}")
    finally:
        publisher.unsubscribe(scope, queue)
