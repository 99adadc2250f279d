"""HTTP command surface for the alert engine.

Routers mirror the AlertStore commands; engine errors map to their HTTP
status codes through one exception handler.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from src.alert_engine.exceptions import AlertEngineError, NotFoundError
from src.alert_engine.logging_config import configure_logging
from src.alert_engine.schemas import (
    AlertCreateRequest,
    AlertCreatedResponse,
    AlertResponse,
    BatchOperationResponse,
    CommandResponse,
    InteractionRequest,
    NotificationGroupResponse,
    PreferencesImportRequest,
    SnoozeRequest,
    UserActionRequest,
)
from src.alert_engine.settings import get_settings
from src.alert_engine.store import AlertStore

logger = logging.getLogger(__name__)

alerts_router = APIRouter(prefix="/alerts", tags=["Alerts"])
preferences_router = APIRouter(prefix="/preferences", tags=["Preferences"])
notifications_router = APIRouter(prefix="/notifications", tags=["Notifications"])


def get_store(request: Request) -> AlertStore:
    return request.app.state.alert_store


# ─── Alerts ──────────────────────────────────────────────────────────────


@alerts_router.post("", response_model=AlertCreatedResponse, status_code=201)
def create_alert(body: AlertCreateRequest, store: AlertStore = Depends(get_store)):
    alert_id = store.create_alert(
        title=body.title,
        message=body.message,
        severity=body.severity.value,
        category=body.category,
        source=body.source,
        tags=body.tags,
        metadata=body.metadata,
        assignee=body.assignee,
    )
    return AlertCreatedResponse(alert_id=alert_id)


@alerts_router.get("/active", response_model=list[AlertResponse])
def list_active(store: AlertStore = Depends(get_store)):
    """Open alerts, most severe first."""
    return [a.to_dict() for a in store.get_active_alerts()]


@alerts_router.get("/statistics")
def statistics(store: AlertStore = Depends(get_store)) -> dict[str, Any]:
    return store.get_alert_statistics()


@alerts_router.get("/{alert_id}", response_model=AlertResponse)
def get_alert(alert_id: str, store: AlertStore = Depends(get_store)):
    alert = store.get_alert(alert_id)
    if alert is None:
        raise NotFoundError(f"Alert '{alert_id}' not found", "alert", alert_id)
    return alert.to_dict()


@alerts_router.post("/{alert_id}/acknowledge", response_model=CommandResponse)
def acknowledge(alert_id: str, body: UserActionRequest, store: AlertStore = Depends(get_store)):
    return CommandResponse(success=store.acknowledge_alert(alert_id, body.user_id), alert_id=alert_id)


@alerts_router.post("/{alert_id}/resolve", response_model=CommandResponse)
def resolve(alert_id: str, body: UserActionRequest, store: AlertStore = Depends(get_store)):
    return CommandResponse(success=store.resolve_alert(alert_id, body.user_id), alert_id=alert_id)


@alerts_router.post("/{alert_id}/snooze", response_model=CommandResponse)
def snooze(alert_id: str, body: SnoozeRequest, store: AlertStore = Depends(get_store)):
    """Snooze an alert. Disallowed severities or durations return 422."""
    success = store.snooze_alert(alert_id, body.duration_minutes, body.user_id)
    return CommandResponse(success=success, alert_id=alert_id)


@alerts_router.post("/{alert_id}/escalate", response_model=CommandResponse)
def escalate(alert_id: str, store: AlertStore = Depends(get_store)):
    return CommandResponse(success=store.escalate_alert(alert_id), alert_id=alert_id)


@alerts_router.post("/{alert_id}/interactions", response_model=CommandResponse)
def record_interaction(alert_id: str, body: InteractionRequest, store: AlertStore = Depends(get_store)):
    success = store.record_interaction(alert_id, body.user_id, body.event_type, body.action_id)
    return CommandResponse(success=success, alert_id=alert_id)


# ─── Preferences ─────────────────────────────────────────────────────────


@preferences_router.get("/{user_id}")
def get_preferences(user_id: str, store: AlertStore = Depends(get_store)) -> dict[str, Any]:
    return store.get_preferences(user_id).to_dict()


@preferences_router.patch("/{user_id}")
def update_preferences(
    user_id: str, updates: dict[str, Any], store: AlertStore = Depends(get_store),
) -> dict[str, Any]:
    return store.update_preferences(user_id, updates).to_dict()


@preferences_router.get("/{user_id}/export")
def export_preferences(user_id: str, store: AlertStore = Depends(get_store)) -> dict[str, str]:
    return {"payload": store.preferences.export_preferences(user_id)}


@preferences_router.post("/{user_id}/import")
def import_preferences(
    user_id: str, body: PreferencesImportRequest, store: AlertStore = Depends(get_store),
) -> dict[str, Any]:
    return store.preferences.import_preferences(user_id, body.payload).to_dict()


# ─── Notifications ───────────────────────────────────────────────────────


@notifications_router.get("/{user_id}/groups", response_model=list[NotificationGroupResponse])
def list_groups(user_id: str, store: AlertStore = Depends(get_store)):
    return [g.to_dict() for g in store.grouping.get_groups(user_id)]


@notifications_router.post(
    "/{user_id}/groups/{group_id}/{operation}", response_model=BatchOperationResponse,
)
def group_operation(
    user_id: str, group_id: str, operation: str, store: AlertStore = Depends(get_store),
):
    return store.grouping.perform_batch_operation(operation, group_id, user_id).to_dict()


# ─── Application ─────────────────────────────────────────────────────────


async def handle_engine_error(request: Request, exc: AlertEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Engine error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the store's periodic work on startup and stop it on shutdown."""
    store: AlertStore = app.state.alert_store
    if app.state.owns_store:
        store.start()
    logger.info("Alert engine API starting up")
    yield
    logger.info("Alert engine API shutting down")
    if app.state.owns_store:
        store.shutdown()


def create_app(store: Optional[AlertStore] = None) -> FastAPI:
    """Build the API around ``store``.

    Without a store, settings are read from the environment, logging is
    configured and a store is built and run for the life of the app.
    """
    app = FastAPI(title="Alert Engine", version="1.0.0", lifespan=lifespan)
    app.state.owns_store = store is None
    if store is None:
        settings = get_settings()
        configure_logging(settings.log_level, settings.log_format)
        store = AlertStore.from_settings(settings)
    app.state.alert_store = store
    app.add_exception_handler(AlertEngineError, handle_engine_error)
    app.include_router(alerts_router)
    app.include_router(preferences_router)
    app.include_router(notifications_router)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
