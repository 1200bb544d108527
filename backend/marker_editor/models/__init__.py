"""
Marker editor models.

Usage:
    from marker_editor.models import Marker, MarkerCreate, MarkerAction
    from marker_editor.models import MarkerType, MarkerOp, BulkMarkerResolveType
    from marker_editor.models import BulkAddResult, ShiftResult, HousekeepingResult
"""

# --- Enums & utilities ---
from marker_editor.models.enums import (
    MarkerType,
    MetadataType,
    BASE_METADATA_TYPES,
    SectionType,
    MarkerOp,
    BulkMarkerResolveType,
    ShiftApplyType,
    supported_marker_type,
)

# --- Domain models ---
from marker_editor.models.domain import (
    Marker, MarkerCreate, MarkerUpdate, MarkerQuery, MarkersWithTypeInfo,
    LibrarySection, SectionInfo, MetadataTypeInfo,
    ShowData, SeasonData, EpisodeData, MovieData,
    MarkerAction, PurgedMarker, RestoreCandidate,
    ShiftRequest, BulkDeleteRequest, BulkAddRequest,
    PurgeRestoreRequest, PurgeIgnoreRequest,
)

# --- Result models ---
from marker_editor.models.results import (
    HousekeepingResult,
    AddMarkerResult, EditMarkerResult, DeleteMarkerResult,
    RestoredMarker, BulkRestoreResult,
    ShiftResult, BulkDeleteResult, BulkAddEntry, BulkAddResult,
    BreakdownResult, ShowBreakdownTree,
)

__all__ = [
    # Enums
    "MarkerType", "MetadataType", "BASE_METADATA_TYPES", "SectionType",
    "MarkerOp", "BulkMarkerResolveType", "ShiftApplyType", "supported_marker_type",
    # Domain
    "Marker", "MarkerCreate", "MarkerUpdate", "MarkerQuery", "MarkersWithTypeInfo",
    "LibrarySection", "SectionInfo", "MetadataTypeInfo",
    "ShowData", "SeasonData", "EpisodeData", "MovieData",
    "MarkerAction", "PurgedMarker", "RestoreCandidate",
    "ShiftRequest", "BulkDeleteRequest", "BulkAddRequest",
    "PurgeRestoreRequest", "PurgeIgnoreRequest",
    # Results
    "HousekeepingResult",
    "AddMarkerResult", "EditMarkerResult", "DeleteMarkerResult",
    "RestoredMarker", "BulkRestoreResult",
    "ShiftResult", "BulkDeleteResult", "BulkAddEntry", "BulkAddResult",
    "BreakdownResult", "ShowBreakdownTree",
]
