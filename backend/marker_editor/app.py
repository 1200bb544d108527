"""
Marker Editor - FastAPI Backend
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import socketio

from marker_editor import __version__
from marker_editor.config import Settings, get_settings
from marker_editor.errors import MarkerEditorError, StorageError
from marker_editor.logging import setup_logging, get_logger
from marker_editor.routers import library, markers, purges
from marker_editor.services.backup import BackupService
from marker_editor.services.events import MarkerEventService, section_room
from marker_editor.services.marker_cache import MarkerCache
from marker_editor.services.markers import MarkerService
from marker_editor.services.plex_queries import PlexQueryService
from marker_editor.services.purges import PurgeService
from marker_editor.services.query import QueryService

logger = get_logger('main')

# Socket.IO server for real-time marker updates
sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*'
)


async def init_services(app: FastAPI, settings: Settings) -> None:
    """
    Build every service and store it on ``app.state``.

    :raises StorageError: If the Plex database is missing or unusable
    """
    if not settings.PLEX_DATABASE_PATH:
        raise StorageError("PLEX_DATABASE_PATH is not set")

    plex = PlexQueryService(
        db_path=settings.PLEX_DATABASE_PATH,
        pure_mode=settings.PURE_MODE,
    )
    await plex.initialize()
    app.state.plex_service = plex

    cache = None
    if settings.EXTENDED_MARKER_STATS:
        cache = MarkerCache(plex)
        await cache.build()
    app.state.marker_cache = cache

    backup = None
    purge_service = None
    if settings.BACKUP_ACTIONS:
        backup = BackupService(db_path=settings.BACKUP_DATABASE_PATH, plex=plex)
        await backup.initialize()
        purge_service = PurgeService(backup=backup, plex=plex, cache=cache)
        await purge_service.build_all_purges()
    app.state.backup_service = backup
    app.state.purge_service = purge_service

    app.state.marker_service = MarkerService(plex=plex, backup=backup, cache=cache)
    app.state.query_service = QueryService(plex=plex, cache=cache)
    app.state.event_service = MarkerEventService(sio)
    logger.info("Services initialized")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Starting Marker Editor API")

    await init_services(app, settings)

    yield

    logger.info("Shutting down application")
    if app.state.marker_cache is not None:
        app.state.marker_cache.clear()
    if app.state.purge_service is not None:
        app.state.purge_service.clear()


async def marker_error_handler(request: Request, exc: MarkerEditorError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(settings: Optional[Settings] = None, use_lifespan: bool = True) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Marker Editor API",
        description="Add, edit, and restore Plex intro and credits markers",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(MarkerEditorError, marker_error_handler)

    app.include_router(markers.router, prefix="/api/markers", tags=["Markers"])
    app.include_router(purges.router, prefix="/api/purges", tags=["Purges"])
    app.include_router(library.router, prefix="/api/library", tags=["Library"])

    @app.get("/health")
    async def health_check():
        cache = getattr(app.state, "marker_cache", None)
        purge_service = getattr(app.state, "purge_service", None)
        return {
            "status": "healthy",
            "service": "marker-editor",
            "cached_markers": cache.marker_count() if cache is not None and cache.built else None,
            "purges": purge_service.purge_count() if purge_service is not None else None,
        }

    @app.get("/")
    async def root():
        return {
            "name": "Marker Editor API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health"
        }

    return app


@sio.event
async def connect(sid, environ):
    query_string = environ.get('QUERY_STRING', '')
    if 'sectionId=' in query_string:
        section_id = query_string.split('sectionId=')[-1].split('&')[0]
        if section_id.isdigit():
            await sio.enter_room(sid, section_room(int(section_id)))
            logger.debug(f"Client {sid[:8]}... joined section room: {section_id}")


@sio.event
async def disconnect(sid):
    logger.debug(f"Client {sid[:8]}... disconnected")


def create_asgi_app(settings: Optional[Settings] = None) -> socketio.ASGIApp:
    """FastAPI app wrapped with the Socket.IO server."""
    return socketio.ASGIApp(sio, other_asgi_app=create_app(settings))
