"""Library hierarchy models (sections, shows, seasons, episodes, movies)."""

from typing import Optional

from pydantic import BaseModel


class LibrarySection(BaseModel):
    """A movie or TV library in the Plex database."""
    id: int
    type: int
    name: str


class SectionInfo(BaseModel):
    """Library section identity used to scope the backup ledger."""
    id: int
    uuid: str
    section_type: int


class MetadataTypeInfo(BaseModel):
    metadata_type: int
    section_id: int


class ShowData(BaseModel):
    id: int
    title: str
    title_sort: Optional[str] = None
    original_title: Optional[str] = None
    season_count: int = 0
    episode_count: int = 0


class SeasonData(BaseModel):
    id: int
    title: Optional[str] = None
    index: int = 0
    episode_count: int = 0


class EpisodeData(BaseModel):
    """An episode along with its season/show names and longest media duration."""
    id: int
    title: Optional[str] = None
    index: int = 0
    season: Optional[str] = None
    season_index: int = 0
    show: Optional[str] = None
    duration: int = 0
    parts: int = 1


class MovieData(BaseModel):
    id: int
    title: str
    title_sort: Optional[str] = None
    original_title: Optional[str] = None
    year: Optional[int] = None
    duration: int = 0
