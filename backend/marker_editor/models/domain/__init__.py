"""Domain models."""
from marker_editor.models.domain.marker import (
    Marker,
    MarkerCreate,
    MarkerUpdate,
    MarkerQuery,
    MarkersWithTypeInfo,
)
from marker_editor.models.domain.library import (
    LibrarySection,
    SectionInfo,
    MetadataTypeInfo,
    ShowData,
    SeasonData,
    EpisodeData,
    MovieData,
)
from marker_editor.models.domain.action import MarkerAction, PurgedMarker, RestoreCandidate
from marker_editor.models.domain.requests import (
    ShiftRequest,
    BulkDeleteRequest,
    BulkAddRequest,
    PurgeRestoreRequest,
    PurgeIgnoreRequest,
)

__all__ = [
    "Marker", "MarkerCreate", "MarkerUpdate", "MarkerQuery", "MarkersWithTypeInfo",
    "LibrarySection", "SectionInfo", "MetadataTypeInfo",
    "ShowData", "SeasonData", "EpisodeData", "MovieData",
    "MarkerAction", "PurgedMarker", "RestoreCandidate",
    "ShiftRequest", "BulkDeleteRequest", "BulkAddRequest",
    "PurgeRestoreRequest", "PurgeIgnoreRequest",
]
