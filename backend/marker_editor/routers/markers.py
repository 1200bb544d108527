"""Marker routes."""

from fastapi import APIRouter, Query

from marker_editor.dependencies import (
    BackupServiceDep,
    EventServiceDep,
    MarkerServiceDep,
    QueryServiceDep,
)
from marker_editor.models import (
    BulkAddRequest,
    BulkAddResult,
    BulkDeleteRequest,
    BulkDeleteResult,
    Marker,
    MarkerAction,
    MarkerCreate,
    MarkerUpdate,
    ShiftRequest,
    ShiftResult,
)

router = APIRouter()


@router.get("/query", response_model=dict[int, list[Marker]])
async def query_markers(service: QueryServiceDep, keys: list[int] = Query(...)):
    return await service.query_markers(keys)


@router.post("", response_model=Marker, status_code=201)
async def add_marker(body: MarkerCreate, service: MarkerServiceDep, events: EventServiceDep):
    marker = await service.add_marker(body)
    await events.markers_changed("add", [marker])
    return marker


@router.get("/{marker_id}", response_model=Marker)
async def get_marker(marker_id: int, service: QueryServiceDep):
    return await service.get_marker(marker_id)


@router.put("/{marker_id}", response_model=Marker)
async def edit_marker(
    marker_id: int,
    body: MarkerUpdate,
    service: MarkerServiceDep,
    events: EventServiceDep,
):
    marker = await service.edit_marker(marker_id, body)
    await events.markers_changed("edit", [marker])
    return marker


@router.delete("/{marker_id}", response_model=Marker)
async def delete_marker(marker_id: int, service: MarkerServiceDep, events: EventServiceDep):
    marker = await service.delete_marker(marker_id)
    await events.markers_changed("delete", [marker])
    return marker


@router.get("/{marker_id}/history", response_model=list[MarkerAction])
async def marker_history(marker_id: int, section_id: int, backup: BackupServiceDep):
    return await backup.get_marker_history(marker_id, backup.section_uuid(section_id))


@router.post("/shift", response_model=ShiftResult)
async def shift_markers(body: ShiftRequest, service: MarkerServiceDep, events: EventServiceDep):
    result = await service.shift_markers(body)
    if result.applied:
        await events.markers_changed("shift", result.all_markers)
    return result


@router.post("/bulk-delete", response_model=BulkDeleteResult)
async def bulk_delete(body: BulkDeleteRequest, service: MarkerServiceDep, events: EventServiceDep):
    result = await service.bulk_delete(body)
    if result.applied:
        await events.markers_changed("bulk_delete", result.deleted_markers)
    return result


@router.post("/bulk-add", response_model=BulkAddResult)
async def bulk_add(body: BulkAddRequest, service: MarkerServiceDep, events: EventServiceDep):
    result = await service.bulk_add(body)
    if result.applied:
        changed = [e.changed_marker for e in result.episode_map.values() if e.changed_marker is not None]
        await events.markers_changed("bulk_add", changed)
    return result
