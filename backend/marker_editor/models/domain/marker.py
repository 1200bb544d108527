"""Marker domain models."""

from typing import Optional

from pydantic import BaseModel, Field

from marker_editor.models.enums import MarkerType


class Marker(BaseModel):
    """A single intro/credits marker attached to an episode or movie."""
    id: int
    parent_id: int
    season_id: int = -1
    show_id: int = -1
    section_id: int
    index: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    is_final: bool = False
    created_at: Optional[int] = None
    modified_at: Optional[int] = Field(
        default=None,
        description="Epoch seconds of the last user edit. None if never edited.",
    )
    created_by_user: bool = False
    parent_guid: Optional[str] = None


class MarkerCreate(BaseModel):
    """Payload for adding a marker to a single episode or movie."""
    metadata_id: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False


class MarkerUpdate(BaseModel):
    """Payload for editing an existing marker."""
    start: int
    end: int
    user_created: bool = False
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False


class MarkerQuery(BaseModel):
    """Payload for retrieving markers for a list of episodes/movies."""
    keys: list[int]


class MarkersWithTypeInfo(BaseModel):
    """Markers under a metadata item along with that item's type."""
    markers: list[Marker] = Field(default_factory=list)
    metadata_type: int
    section_id: int
