"""Main FastAPI application with the Socket.IO device gateway mounted alongside"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import socketio
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from doorrelay import __version__
from doorrelay.api import devices, rooms
from doorrelay.api.schemas import ConnectedDevice, HealthResponse
from doorrelay.core.config import Settings, settings as default_settings
from doorrelay.core.database import close_db, get_session_maker, init_db, init_engine
from doorrelay.core.exceptions import DoorRelayError
from doorrelay.services.audit import AuditJournal, AuditSink
from doorrelay.services.channel import SocketIOChannel
from doorrelay.services.device_gateway import DeviceGateway
from doorrelay.services.dispatcher import CommandDispatcher
from doorrelay.services.registry import SessionRegistry
from doorrelay.services.resolver import IdentityResolver
from doorrelay.services.sweeper import LivenessSweeper

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if default_settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info(f"Starting {app.state.settings.PROJECT_NAME}...")

    logger.info("Initializing database...")
    await init_db()

    app.state.sweeper.start()
    logger.info("Server startup complete")

    yield

    # Shutdown
    logger.info(f"Shutting down {app.state.settings.PROJECT_NAME}...")
    await app.state.sweeper.stop()
    await close_db()
    logger.info("Server shutdown complete")


def create_socketio_server(config: Settings) -> socketio.AsyncServer:
    origins = "*" if "*" in config.CORS_ORIGINS else config.CORS_ORIGINS
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=origins,
        ping_interval=config.PING_INTERVAL_SECONDS,
        ping_timeout=config.PING_TIMEOUT_SECONDS,
        max_http_buffer_size=config.MAX_HTTP_BUFFER_SIZE,
    )


def create_app(
    config: Optional[Settings] = None,
    sio: Optional[socketio.AsyncServer] = None,
    channel=None,
) -> FastAPI:
    """
    Build the application and the services it owns

    The registry, dispatcher, gateway and sweeper live on app.state and are
    shared by reference; tests pass their own settings and channel.
    """
    config = config or default_settings
    init_engine(config.DATABASE_URL)
    session_maker = get_session_maker()

    sio = sio or create_socketio_server(config)
    channel = channel or SocketIOChannel(sio)

    registry = SessionRegistry()
    resolver = IdentityResolver(registry, prefix=config.DEVICE_ID_PREFIX)
    audit = AuditSink(session_maker, AuditJournal(max_size=config.AUDIT_JOURNAL_SIZE))
    dispatcher = CommandDispatcher(
        registry,
        resolver,
        channel,
        audit,
        session_maker,
        default_duration_ms=config.DEFAULT_DURATION_MS,
        unassigned_room=config.UNASSIGNED_ROOM,
        allow_unassigned_trigger=config.ALLOW_UNASSIGNED_DEVICE_TRIGGER,
    )
    gateway = DeviceGateway(
        registry,
        channel,
        dispatcher,
        session_maker,
        unassigned_room=config.UNASSIGNED_ROOM,
        prefix=config.DEVICE_ID_PREFIX,
    )
    gateway.attach(sio)
    sweeper = LivenessSweeper(
        registry,
        interval_seconds=config.SWEEP_INTERVAL_SECONDS,
        threshold_seconds=config.STALE_THRESHOLD_SECONDS,
        on_removed=gateway.notify_roster,
    )

    app = FastAPI(
        title=config.PROJECT_NAME,
        version=__version__,
        description="Relays door-open commands to ESP32 door controllers",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.sio = sio
    app.state.channel = channel
    app.state.registry = registry
    app.state.resolver = resolver
    app.state.audit = audit
    app.state.dispatcher = dispatcher
    app.state.gateway = gateway
    app.state.sweeper = sweeper
    app.state.started_at = time.time()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)

    # Include routers
    app.include_router(rooms.router, prefix=config.API_PREFIX)
    app.include_router(devices.router, prefix=config.API_PREFIX)

    @app.get(f"{config.API_PREFIX}/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        database_connected = True
        try:
            async with get_session_maker()() as db:
                await db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            database_connected = False

        sessions = registry.snapshot()
        return HealthResponse(
            status="Server is running" if database_connected else "degraded",
            esp32_connected=len(sessions) > 0,
            esp32_count=len(sessions),
            connected_devices=[
                ConnectedDevice(
                    device_id=s.device_id,
                    room_name=s.room_name,
                    ip=s.remote_address,
                    registered_at=datetime.fromtimestamp(s.registered_at, tz=timezone.utc),
                    last_seen=datetime.fromtimestamp(s.last_seen_at, tz=timezone.utc),
                )
                for s in sessions
            ],
            database_connected=database_connected,
            uptime=time.time() - app.state.started_at,
            timestamp=datetime.now(timezone.utc),
            version=__version__,
        )

    static_dir = Path(config.STATIC_DIR)
    index_file = static_dir / "index.html"

    @app.get("/", include_in_schema=False)
    async def root():
        """Web interface, or service info when no interface is installed"""
        if index_file.is_file():
            return FileResponse(index_file)
        return {
            "name": config.PROJECT_NAME,
            "version": __version__,
            "status": "running",
        }

    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="public")

    return app


def _register_exception_handlers(app: FastAPI):
    @app.exception_handler(DoorRelayError)
    async def door_relay_error_handler(request: Request, exc: DoorRelayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Invalid request",
                "details": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            content = {"success": False, "error": "Route not found", "path": request.url.path}
        else:
            content = {"success": False, "error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})


# Create FastAPI app and wrap it with the Socket.IO server
app = create_app()
asgi_app = socketio.ASGIApp(app.state.sio, other_asgi_app=app)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "doorrelay.main:asgi_app",
        host=default_settings.SERVER_HOST,
        port=default_settings.SERVER_PORT,
        reload=default_settings.DEBUG,
    )
