"""
Enum definitions for the Marker Editor API.
"""
from enum import Enum, IntEnum


class MarkerType(str, Enum):
    """Supported marker categories. Plex also knows 'commercial', which we don't touch."""
    INTRO = "intro"
    CREDITS = "credits"


class MetadataType(IntEnum):
    """Plex metadata_items.metadata_type values."""
    INVALID = 0
    MOVIE = 1
    SHOW = 2
    SEASON = 3
    EPISODE = 4
    ARTIST = 8
    ALBUM = 9
    TRACK = 10


# Item types that can actually own markers.
BASE_METADATA_TYPES = (MetadataType.MOVIE, MetadataType.EPISODE)


class SectionType(IntEnum):
    """Supported library section types."""
    MOVIE = 1
    TV = 2


class MarkerOp(IntEnum):
    """Operation kinds recorded in the backup ledger."""
    ADD = 1
    EDIT = 2
    DELETE = 3
    RESTORE = 4


class BulkMarkerResolveType(IntEnum):
    """How a bulk add resolves overlap with existing markers."""
    DRY_RUN = 0
    FAIL = 1
    MERGE = 2
    IGNORE = 3


class ShiftApplyType(IntEnum):
    """Apply method when shifting markers."""
    DONT_APPLY = 1
    TRY_APPLY = 2
    FORCE_APPLY = 3


def supported_marker_type(marker_type: str) -> bool:
    """
    Return whether the given marker type string is one we manage.

    Examples:
        "intro" -> True
        "credits" -> True
        "commercial" -> False
    """
    return marker_type in (MarkerType.INTRO.value, MarkerType.CREDITS.value)
