"""
Result models for marker mutations.
"""

from typing import Optional

from pydantic import BaseModel, Field

from marker_editor.models.domain.library import EpisodeData
from marker_editor.models.domain.marker import Marker
from marker_editor.models.results.housekeeping import HousekeepingResult


class AddMarkerResult(BaseModel):
    """A newly added marker plus its siblings as they were before the insert."""
    marker: Marker
    existing: list[Marker] = Field(default_factory=list)
    reindex: HousekeepingResult = Field(default_factory=HousekeepingResult)


class EditMarkerResult(BaseModel):
    marker: Marker
    old_start: int
    old_end: int
    reindex: HousekeepingResult = Field(default_factory=HousekeepingResult)


class DeleteMarkerResult(BaseModel):
    marker: Marker
    sibling_count: int
    reindex: HousekeepingResult = Field(default_factory=HousekeepingResult)


class RestoredMarker(BaseModel):
    """Correlates a ledger marker id with the marker that now stands for it."""
    old_marker_id: int
    marker: Marker


class BulkRestoreResult(BaseModel):
    new_markers: list[RestoredMarker] = Field(default_factory=list)
    identical_markers: list[RestoredMarker] = Field(default_factory=list)
    ignored_markers: list[int] = Field(
        default_factory=list,
        description="Ledger marker ids skipped because they overlap an existing marker.",
    )
    reindex: HousekeepingResult = Field(default_factory=HousekeepingResult)


class ShiftResult(BaseModel):
    applied: bool
    conflict: bool = False
    overflow: bool = False
    all_markers: list[Marker] = Field(default_factory=list)
    episode_data: dict[int, EpisodeData] = Field(default_factory=dict)


class BulkDeleteResult(BaseModel):
    applied: bool
    markers: list[Marker] = Field(default_factory=list)
    deleted_markers: list[Marker] = Field(default_factory=list)
    episode_data: dict[int, EpisodeData] = Field(default_factory=dict)
    reindex: HousekeepingResult = Field(default_factory=HousekeepingResult)


class BulkAddEntry(BaseModel):
    """Per-episode outcome of a bulk add."""
    episode_data: EpisodeData
    existing_markers: list[Marker] = Field(default_factory=list)
    changed_marker: Optional[Marker] = None
    deleted_markers: list[Marker] = Field(default_factory=list)
    is_add: bool = False
    conflict: bool = False


class BulkAddResult(BaseModel):
    applied: bool
    conflict: bool = False
    episode_map: dict[int, BulkAddEntry] = Field(default_factory=dict)
    ignored_episodes: list[int] = Field(default_factory=list)
    reindex: HousekeepingResult = Field(default_factory=HousekeepingResult)
