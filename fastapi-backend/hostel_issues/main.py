from typing import Optional
import logging

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, Response

from . import auth
from .config import Settings, TrackerConfig, get_settings, get_tracker_config
from .database import init_db, make_engine
from .dependencies import Services, build_services
from .document_store import DocumentStore
from .errors import NotFound, StoreUnavailable, SubmissionFailed, ValidationError
from .memory_store import MemoryDocumentStore
from .models import ROLE_CARETAKER
from .observability import (
    get_health_check,
    init_sentry,
    metrics_endpoint,
    setup_logging,
    setup_metrics_middleware,
)
from .routes import issues as issues_routes
from .routes import profiles as profiles_routes
from .sql_store import SqlDocumentStore
from .websocket_manager import IssuesSnapshotEvent, PendingUsersSnapshotEvent, manager

# Application logger
logger = logging.getLogger("hostel_issues")


async def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        logger.info("Using in-memory document store")
        return MemoryDocumentStore(max_attempts=settings.transaction_max_attempts)
    engine = make_engine(settings.database_url)
    await init_db(engine)
    logger.info(f"Using SQL document store ({engine.dialect.name})")
    return SqlDocumentStore(engine, max_attempts=settings.transaction_max_attempts)


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def create_app(
    store: Optional[DocumentStore] = None,
    config: Optional[TrackerConfig] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    config = config or get_tracker_config(settings)

    app = FastAPI(title="Hostel Issue Tracker API")
    app.state.services = build_services(store, config) if store is not None else None

    setup_metrics_middleware(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev; restrict in prod
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=list(settings.allowed_hosts) or ["*"])

    app.include_router(issues_routes.router)
    app.include_router(profiles_routes.router)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error_response(422, exc)

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return _error_response(404, exc)

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Document store unavailable on {request.url.path}: {exc}")
        return _error_response(503, exc)

    @app.exception_handler(SubmissionFailed)
    async def submission_failed_handler(request: Request, exc: SubmissionFailed):
        return _error_response(503, exc)

    @app.on_event("startup")
    async def on_startup():
        logger.info("Starting up hostel issue tracker...")
        if app.state.services is None:
            app.state.services = build_services(await build_store(settings), config)

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Shutting down hostel issue tracker...")
        for websocket in list(manager.active_connections):
            manager.disconnect(websocket)
        if app.state.services is not None:
            await app.state.services.store.close()

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return get_health_check()

    @app.get("/metrics")
    def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return metrics_endpoint()

    @app.websocket("/ws/issues")
    async def issues_feed(
        websocket: WebSocket,
        token: Optional[str] = None,
        block: Optional[str] = None,
        urgent: bool = False,
    ):
        """Live active-issue board for caretakers (same filters as GET /api/v1/issues)."""
        services = await _authorize_caretaker_socket(websocket, token)
        if services is None:
            return
        await _run_feed(
            websocket,
            "issues",
            lambda: services.board.subscribe_active_issues(
                lambda docs: manager.send_event(websocket, IssuesSnapshotEvent(issues=docs)),
                block=block,
                urgent_only=urgent,
            ),
        )

    @app.websocket("/ws/pending-users")
    async def pending_users_feed(websocket: WebSocket, token: Optional[str] = None):
        """Live list of users waiting for room verification."""
        services = await _authorize_caretaker_socket(websocket, token)
        if services is None:
            return
        await _run_feed(
            websocket,
            "pending_users",
            lambda: services.profiles.subscribe_pending_profiles(
                lambda docs: manager.send_event(websocket, PendingUsersSnapshotEvent(profiles=docs)),
            ),
        )

    return app


async def _authorize_caretaker_socket(websocket: WebSocket, token: Optional[str]) -> Optional[Services]:
    """Return the app services when the token belongs to a caretaker, else close the socket."""
    if not token:
        await websocket.close(code=4001, reason="Missing authentication token")
        return None
    try:
        identity = auth.identity_from_token(token)
    except HTTPException as e:
        logger.error(f"WebSocket authentication failed: {e.detail}")
        await websocket.close(code=4001, reason="Invalid authentication token")
        return None

    services: Services = websocket.app.state.services
    profile = await services.profiles.ensure_profile(identity.user_id, identity.email)
    if profile.get("role") != ROLE_CARETAKER:
        await websocket.close(code=4003, reason="Insufficient privileges")
        return None
    websocket.state.user_id = identity.user_id
    return services


async def _run_feed(websocket: WebSocket, feed: str, subscribe) -> None:
    await manager.connect(websocket, websocket.state.user_id, feed)
    try:
        manager.attach(websocket, await subscribe())
        # Keep the connection alive; clients may ping
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.info(f"WebSocket feed {feed} closed by client")
    finally:
        manager.disconnect(websocket)


setup_logging()
_settings = get_settings()
init_sentry(_settings.sentry_dsn, _settings.environment)

app = create_app(settings=_settings)
