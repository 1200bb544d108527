"""Result models."""
from marker_editor.models.results.housekeeping import HousekeepingResult
from marker_editor.models.results.markers import (
    AddMarkerResult,
    EditMarkerResult,
    DeleteMarkerResult,
    RestoredMarker,
    BulkRestoreResult,
    ShiftResult,
    BulkDeleteResult,
    BulkAddEntry,
    BulkAddResult,
)
from marker_editor.models.results.stats import BreakdownResult, ShowBreakdownTree

__all__ = [
    "HousekeepingResult",
    "AddMarkerResult", "EditMarkerResult", "DeleteMarkerResult",
    "RestoredMarker", "BulkRestoreResult",
    "ShiftResult", "BulkDeleteResult", "BulkAddEntry", "BulkAddResult",
    "BreakdownResult", "ShowBreakdownTree",
]
