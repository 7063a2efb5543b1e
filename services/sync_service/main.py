"""Sync Service - FastAPI application."""

import logging
import secrets
import sys
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any, Dict, List, Literal, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.cache import CalendarListCache, TTLCache
from shared.config import (
    get_api_keys, get_calendar_cache_ttl, get_rate_limit_config, get_service_port
)
from shared.db_models import CalendarSyncConfig
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import MAX_SELECTED_CALENDARS, CalendarInfo, RunStatus, SyncRequest, SyncStatus
from shared.rate_limit import RateLimiter
from services.calendar_client.client import CalendarClientError, TokenError, create_calendar_client
from services.calendar_client.token_manager import TokenManager
from services.sync_service.notifications import NotificationService
from services.sync_service.orchestrator import (
    SyncAuthRequiredError, SyncInProgressError, SyncNotConfiguredError, SyncOrchestrator
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

READABLE_ACCESS_ROLES = ("reader", "writer", "owner")
STATUS_RESET_FIELDS = ("sync_frequency", "sync_direction", "selected_calendars")
OAUTH_STATE_TTL_SECONDS = 10 * 60

# Global instances
db_ops: Optional[DatabaseOperations] = None
encryption_service: Optional[EncryptionService] = None
http_client: Optional[httpx.AsyncClient] = None
rate_limiter: Optional[RateLimiter] = None
calendar_cache: Optional[CalendarListCache] = None
oauth_states: Optional[TTLCache] = None
notification_service: Optional[NotificationService] = None
calendar_client_factory = create_calendar_client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, encryption_service, http_client, rate_limiter, calendar_cache, oauth_states
    global notification_service

    logger.info("Sync Service starting up...")

    db_ops = DatabaseOperations()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService()
    logger.info("Encryption service initialized")

    http_client = httpx.AsyncClient(timeout=30.0)

    limits = get_rate_limit_config()
    rate_limiter = RateLimiter(limits["max_requests"], limits["window_seconds"])
    calendar_cache = CalendarListCache(ttl_seconds=get_calendar_cache_ttl())
    oauth_states = TTLCache(OAUTH_STATE_TTL_SECONDS)
    notification_service = NotificationService(http_client)
    logger.info(
        f"Calendar rate limit {limits['max_requests']} requests / {limits['window_seconds']}s, "
        f"calendar list cache TTL {get_calendar_cache_ttl()}s"
    )

    yield

    # Cleanup
    await http_client.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Task Calendar Sync Service",
    description="Synchronizes tasks with Google Calendar",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware; unexpected errors never leak internals."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "detail": "An unexpected error occurred. Please try again later."
            }
        )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors as {"error": ..., "detail": ...}."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": HTTPStatus(exc.status_code).phrase, "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def get_current_user(
    x_api_key: Optional[str] = Header(None, description="API key for authentication"),
    x_user_id: Optional[str] = Header(None, description="User on whose behalf the call is made")
) -> str:
    """
    Authenticate the caller and return the user ID the request acts for.

    Raises:
        HTTPException: 401 if the API key or the user ID is missing or invalid
    """
    if not x_api_key:
        logger.warning("Request missing API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Please provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if x_api_key not in get_api_keys():
        logger.warning(f"Invalid API key attempted: {x_api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"}
        )

    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header"
        )

    return x_user_id.strip()


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def _config_response(config: CalendarSyncConfig) -> Dict[str, Any]:
    """Configuration as returned to clients: tokens are replaced by is_connected."""
    return {
        "user_id": config.user_id,
        "enabled": config.enabled,
        "selected_calendars": list(config.selected_calendars or []),
        "sync_frequency": config.sync_frequency,
        "sync_direction": config.sync_direction,
        "auto_sync_enabled": config.auto_sync_enabled,
        "sync_status": config.sync_status,
        "last_sync_at": _isoformat(config.last_sync_at),
        "is_connected": bool(config.access_token),
        "created_at": _isoformat(config.created_at),
        "updated_at": _isoformat(config.updated_at),
    }


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down"
        }
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Task Calendar Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Sync trigger

class SyncTriggerRequest(BaseModel):
    """Request model for a sync run."""
    direction: Literal["import", "export", "bidirectional"] = "bidirectional"
    calendar_ids: Optional[List[str]] = Field(default=None, max_length=MAX_SELECTED_CALENDARS)
    dry_run: bool = False


class SyncTriggerResponse(BaseModel):
    """Response model for a sync run."""
    success: bool
    sync_id: str
    result: dict
    dry_run: bool


@app.post("/api/google-calendar/sync", response_model=SyncTriggerResponse, status_code=status.HTTP_200_OK)
async def trigger_sync(
    request: Optional[SyncTriggerRequest] = None,
    user_id: str = Depends(get_current_user)
):
    """
    Run a sync for the calling user and return its result.

    Raises:
        HTTPException:
            - 400: Sync not configured or disabled
            - 401: Google Calendar not connected
            - 409: A sync is already in progress
    """
    request = request or SyncTriggerRequest()
    logger.info(f"Received sync request for user {user_id}: {request}")

    orchestrator = SyncOrchestrator(
        db_ops=db_ops,
        encryption_service=encryption_service,
        http_client=http_client,
        rate_limiter=rate_limiter,
        notification_service=notification_service,
        client_factory=calendar_client_factory,
    )

    try:
        run = await orchestrator.run(
            user_id,
            db_ops.get_sync_config(user_id),
            SyncRequest(
                direction=request.direction,
                calendar_ids=request.calendar_ids,
                dry_run=request.dry_run,
                sync_type="manual",
            ),
        )
    except SyncNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SyncAuthRequiredError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except SyncInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return SyncTriggerResponse(
        success=run.status != RunStatus.ERROR,
        sync_id=run.sync_id,
        result=run.result.to_response(),
        dry_run=run.dry_run,
    )


# Calendars

def _readable_calendars(calendars: List[CalendarInfo], selected: List[str]) -> List[Dict[str, Any]]:
    """Calendars the user can read, primary first then alphabetical, with a selected flag."""
    readable = [
        calendar for calendar in calendars
        if not calendar.deleted and not calendar.hidden and calendar.access_role in READABLE_ACCESS_ROLES
    ]
    readable.sort(key=lambda calendar: (not calendar.primary, calendar.summary.lower()))
    return [
        {
            "id": calendar.id,
            "summary": calendar.summary,
            "description": calendar.description,
            "primary": calendar.primary,
            "access_role": calendar.access_role,
            "background_color": calendar.background_color,
            "foreground_color": calendar.foreground_color,
            "time_zone": calendar.time_zone,
            "selected": calendar.id in selected,
        }
        for calendar in readable
    ]


@app.get("/api/google-calendar/calendars", status_code=status.HTTP_200_OK)
async def list_calendars(user_id: str = Depends(get_current_user)):
    """
    List the user's readable Google calendars.

    The upstream list is cached per user; the selected flag always reflects
    the current configuration.

    Raises:
        HTTPException:
            - 401: Google Calendar not connected or credentials rejected
            - 502: Google Calendar API error
    """
    tokens = db_ops.get_tokens(user_id, encryption_service)
    if tokens is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Google Calendar is not connected")

    async def load() -> List[CalendarInfo]:
        client = calendar_client_factory(http_client, rate_limiter=rate_limiter, user_id=user_id, tokens=tokens)
        await TokenManager(client, db_ops, encryption_service, user_id).ensure_valid()
        return await client.list_calendars()

    try:
        calendars = await calendar_cache.get_or_load(user_id, load)
    except TokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except CalendarClientError as e:
        logger.error(f"Failed to list calendars for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to fetch calendars")

    config = db_ops.get_sync_config(user_id)
    selected = list(config.selected_calendars or []) if config else []
    return {"calendars": _readable_calendars(calendars, selected)}


# Configuration

class ConfigUpdateRequest(BaseModel):
    """Request model for configuration updates; omitted fields are left unchanged."""
    enabled: Optional[bool] = None
    selected_calendars: Optional[List[str]] = Field(default=None, max_length=MAX_SELECTED_CALENDARS)
    sync_frequency: Optional[Literal["manual", "5min", "15min", "30min", "1hour"]] = None
    sync_direction: Optional[Literal["import", "export", "bidirectional"]] = None
    auto_sync_enabled: Optional[bool] = None


@app.get("/api/google-calendar/config", status_code=status.HTTP_200_OK)
async def get_config(user_id: str = Depends(get_current_user)):
    """Get the sync configuration, creating the default one on first access."""
    config = db_ops.get_or_create_sync_config(user_id)
    return _config_response(config)


@app.put("/api/google-calendar/config", status_code=status.HTTP_200_OK)
async def update_config(request: ConfigUpdateRequest, user_id: str = Depends(get_current_user)):
    """
    Update the sync configuration.

    Changing the frequency, direction or calendar selection resets the sync
    status to idle (unless a run is in progress).

    Raises:
        HTTPException: 400 when enabling sync without a connected account
    """
    config = db_ops.get_or_create_sync_config(user_id)
    updates = {name: value for name, value in request.model_dump(exclude_unset=True).items() if value is not None}

    if updates.get("enabled") and not config.access_token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connect Google Calendar before enabling sync"
        )

    changed = [name for name in STATUS_RESET_FIELDS if name in updates and updates[name] != getattr(config, name)]
    if changed and config.sync_status != SyncStatus.SYNCING.value:
        updates["sync_status"] = SyncStatus.IDLE.value

    updated = db_ops.update_sync_config(user_id, **updates) if updates else config

    if "selected_calendars" in changed:
        calendar_cache.invalidate(user_id)

    logger.info(f"Updated sync configuration for user {user_id}: {sorted(updates)}")
    return _config_response(updated)


@app.delete("/api/google-calendar/config", status_code=status.HTTP_200_OK)
async def disconnect(user_id: str = Depends(get_current_user)):
    """Disconnect Google Calendar: drop stored tokens and disable sync."""
    existed = db_ops.clear_tokens(user_id)
    calendar_cache.invalidate(user_id)
    logger.info(f"Disconnected Google Calendar for user {user_id}")
    return {"success": True, "disconnected": existed}


# OAuth connect

class AuthCodeRequest(BaseModel):
    """Request model for the OAuth code exchange."""
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)


@app.get("/api/google-calendar/auth", status_code=status.HTTP_200_OK)
async def get_authorization_url(user_id: str = Depends(get_current_user)):
    """Return the Google consent URL for connecting a calendar account."""
    client = calendar_client_factory(http_client, user_id=user_id)
    state = secrets.token_urlsafe(16)
    oauth_states.set(state, user_id)
    return {"auth_url": client.build_authorization_url(state=state), "state": state}


@app.post("/api/google-calendar/auth", status_code=status.HTTP_200_OK)
async def connect(request: AuthCodeRequest, user_id: str = Depends(get_current_user)):
    """
    Exchange an authorization code and store the encrypted tokens.

    The state must be one issued to the same user by GET /auth; it can be
    used once.

    Raises:
        HTTPException: 400 if the state is unknown or Google rejects the code
    """
    if oauth_states.get(request.state) != user_id:
        logger.warning(f"Rejected OAuth callback with unknown state for user {user_id}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired OAuth state")
    oauth_states.delete(request.state)

    client = calendar_client_factory(http_client, user_id=user_id)
    try:
        tokens = await client.exchange_code(request.code)
    except TokenError as e:
        logger.warning(f"Authorization code exchange failed for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Authorization code exchange failed")

    config = db_ops.store_tokens(user_id, tokens, encryption_service)
    updates = {"enabled": True}
    if config.sync_status != SyncStatus.SYNCING.value:
        updates["sync_status"] = SyncStatus.IDLE.value
    config = db_ops.update_sync_config(user_id, **updates)
    calendar_cache.invalidate(user_id)

    logger.info(f"Connected Google Calendar for user {user_id}")
    return _config_response(config)


# Run history

@app.get("/api/google-calendar/sync/logs", status_code=status.HTTP_200_OK)
async def get_sync_logs(limit: int = 20, offset: int = 0, user_id: str = Depends(get_current_user)):
    """
    Get the user's recent sync runs, most recent first.

    Raises:
        HTTPException: 400 for invalid pagination parameters
    """
    if limit < 1 or limit > 100:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid limit: {limit}. Must be between 1 and 100."
        )
    if offset < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid offset: {offset}. Must be non-negative (>= 0)."
        )

    logs = db_ops.get_sync_logs(user_id, limit=limit, offset=offset)
    return {
        "logs": [
            {
                "sync_id": str(entry.id),
                "sync_type": entry.sync_type,
                "direction": entry.direction,
                "status": entry.status,
                "started_at": _isoformat(entry.started_at),
                "completed_at": _isoformat(entry.completed_at),
                "events_processed": entry.events_processed,
                "events_created": entry.events_created,
                "events_updated": entry.events_updated,
                "events_deleted": entry.events_deleted,
                "errors": entry.errors or [],
                "metadata": entry.run_metadata or {},
            }
            for entry in logs
        ],
        "limit": limit,
        "offset": offset,
    }


@app.get("/api/google-calendar/sync/stats", status_code=status.HTTP_200_OK)
async def get_sync_stats(days: int = 30, user_id: str = Depends(get_current_user)):
    """Aggregate statistics over the user's runs in the last `days` days."""
    if days < 1 or days > 365:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid days: {days}. Must be between 1 and 365."
        )

    stats = db_ops.get_sync_stats(user_id, days_back=days)
    stats["last_sync_at"] = _isoformat(stats["last_sync_at"])
    stats["days"] = days
    return stats


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_service_port())
