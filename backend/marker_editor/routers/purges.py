"""Purged marker routes."""

from fastapi import APIRouter

from marker_editor.dependencies import EventServiceDep, PurgeServiceDep
from marker_editor.models import (
    BulkRestoreResult,
    PurgedMarker,
    PurgeIgnoreRequest,
    PurgeRestoreRequest,
)

router = APIRouter()


@router.get("/count")
async def purge_count(service: PurgeServiceDep):
    return {"count": service.purge_count()}


@router.get("/check/{metadata_id}", response_model=list[PurgedMarker])
async def check_for_purges(metadata_id: int, service: PurgeServiceDep):
    return await service.check_for_purges(metadata_id)


@router.get("/section/{section_id}", response_model=list[PurgedMarker])
async def section_purges(section_id: int, service: PurgeServiceDep):
    return await service.purges_for_section(section_id)


@router.post("/restore", response_model=BulkRestoreResult)
async def restore_purges(body: PurgeRestoreRequest, service: PurgeServiceDep, events: EventServiceDep):
    result = await service.restore_purges(body.marker_ids, body.section_id, body.resolve_type)
    await events.markers_changed("restore", [r.marker for r in result.new_markers])
    await events.purges_changed(
        body.section_id,
        "restore",
        [r.old_marker_id for r in result.new_markers + result.identical_markers],
    )
    return result


@router.post("/ignore")
async def ignore_purges(body: PurgeIgnoreRequest, service: PurgeServiceDep, events: EventServiceDep):
    ignored = await service.ignore_purges(body.marker_ids, body.section_id)
    await events.purges_changed(body.section_id, "ignore", body.marker_ids)
    return {"status": "ignored", "count": ignored}
