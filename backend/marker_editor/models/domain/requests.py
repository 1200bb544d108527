"""Request payloads for bulk and purge operations."""

from pydantic import BaseModel, Field

from marker_editor.models.enums import BulkMarkerResolveType, MarkerType, ShiftApplyType


class ShiftRequest(BaseModel):
    metadata_id: int
    start_shift: int
    end_shift: int
    apply_type: ShiftApplyType = ShiftApplyType.TRY_APPLY
    ignored: list[int] = Field(default_factory=list)


class BulkDeleteRequest(BaseModel):
    metadata_id: int
    dry_run: bool = False
    ignored: list[int] = Field(default_factory=list)


class BulkAddRequest(BaseModel):
    metadata_id: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False
    resolve_type: BulkMarkerResolveType = BulkMarkerResolveType.FAIL
    ignored: list[int] = Field(
        default_factory=list,
        description="Episode ids to skip.",
    )


class PurgeRestoreRequest(BaseModel):
    section_id: int
    marker_ids: list[int]
    resolve_type: BulkMarkerResolveType = BulkMarkerResolveType.FAIL


class PurgeIgnoreRequest(BaseModel):
    section_id: int
    marker_ids: list[int]
