"""
Dependency injection for FastAPI routes.

Provides typed service dependencies that enable IDE navigation (Ctrl+Click).
"""

from typing import Annotated
from fastapi import Request, Depends

from marker_editor.errors import MarkerValidationError
from marker_editor.services.backup import BackupService
from marker_editor.services.events import MarkerEventService
from marker_editor.services.markers import MarkerService
from marker_editor.services.purges import PurgeService
from marker_editor.services.query import QueryService


def get_marker_service(request: Request) -> MarkerService:
    return request.app.state.marker_service


def get_query_service(request: Request) -> QueryService:
    return request.app.state.query_service


def get_backup_service(request: Request) -> BackupService:
    backup = request.app.state.backup_service
    if backup is None:
        raise MarkerValidationError("Marker backups are disabled")
    return backup


def get_purge_service(request: Request) -> PurgeService:
    purge_service = request.app.state.purge_service
    if purge_service is None:
        raise MarkerValidationError("Marker backups are disabled, purge commands are unavailable")
    return purge_service


def get_event_service(request: Request) -> MarkerEventService:
    return request.app.state.event_service


MarkerServiceDep = Annotated[MarkerService, Depends(get_marker_service)]
QueryServiceDep = Annotated[QueryService, Depends(get_query_service)]
BackupServiceDep = Annotated[BackupService, Depends(get_backup_service)]
PurgeServiceDep = Annotated[PurgeService, Depends(get_purge_service)]
EventServiceDep = Annotated[MarkerEventService, Depends(get_event_service)]
