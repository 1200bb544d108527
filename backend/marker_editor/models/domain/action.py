"""Backup ledger models."""

from typing import Optional

from pydantic import BaseModel

from marker_editor.models.domain.library import EpisodeData, MovieData
from marker_editor.models.enums import MarkerOp, MarkerType


class MarkerAction(BaseModel):
    """
    One row of the backup ledger.

    ``restores_id`` links a Restore entry to the marker id it brought back,
    ``restored_id`` is set on an entry once its marker was restored (or -1 if
    the purge was ignored).
    """
    id: int
    op: MarkerOp
    marker_id: int
    parent_id: int
    season_id: int
    show_id: int
    section_id: int = -1
    start: int
    end: int
    old_start: Optional[int] = None
    old_end: Optional[int] = None
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False
    modified_at: Optional[int] = None
    created_at: Optional[int] = None
    recorded_at: Optional[int] = None
    user_created: bool = False
    extra_data: Optional[str] = None
    section_uuid: str
    episode_guid: Optional[str] = None
    restores_id: Optional[int] = None
    restored_id: Optional[int] = None


class PurgedMarker(MarkerAction):
    """A ledger entry whose marker no longer exists in the media server database."""
    episode_data: Optional[EpisodeData] = None
    movie_data: Optional[MovieData] = None


class RestoreCandidate(BaseModel):
    """A marker to re-insert, tagged with the ledger marker id it came from."""
    old_marker_id: int
    parent_id: int
    start: int
    end: int
    marker_type: MarkerType = MarkerType.INTRO
    final: bool = False
