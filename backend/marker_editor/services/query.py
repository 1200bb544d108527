"""Read-only library browsing and marker statistics."""

from collections import defaultdict
from typing import Optional, Union

from marker_editor.errors import MarkerValidationError, NotFoundError
from marker_editor.logging import get_logger
from marker_editor.models import (
    BreakdownResult,
    EpisodeData,
    LibrarySection,
    Marker,
    MovieData,
    SeasonData,
    SectionType,
    ShowBreakdownTree,
    ShowData,
)
from marker_editor.services.marker_breakdown import MarkerBreakdown, delta_from_type
from marker_editor.services.marker_cache import MarkerCache
from marker_editor.services.plex_queries import PlexQueryService

logger = get_logger("services.query")


class QueryService:
    def __init__(self, plex: PlexQueryService, cache: Optional[MarkerCache] = None):
        self.plex = plex
        self.cache = cache

    def _require_cache(self) -> MarkerCache:
        if self.cache is None or not self.cache.built:
            raise MarkerValidationError("Extended marker statistics are disabled")
        return self.cache

    async def get_libraries(self) -> list[LibrarySection]:
        return await self.plex.get_libraries()

    async def get_section_items(self, section_id: int) -> Union[list[ShowData], list[MovieData]]:
        """Shows of a TV library or movies of a movie library."""
        section = await self.plex.get_section(section_id)
        if section.section_type == SectionType.TV:
            return await self.plex.get_shows(section_id)
        if section.section_type == SectionType.MOVIE:
            return await self.plex.get_movies(section_id)
        raise MarkerValidationError(f"Library section {section_id} is not a movie or TV library")

    async def get_seasons(self, show_id: int) -> list[SeasonData]:
        return await self.plex.get_seasons(show_id)

    async def get_episodes(self, season_id: int) -> list[EpisodeData]:
        return await self.plex.get_episodes(season_id)

    async def query_markers(self, keys: list[int]) -> dict[int, list[Marker]]:
        """
        Markers for each of the given episode/movie ids.

        Every requested id gets an entry, even if it has no markers.
        """
        grouped: dict[int, list[Marker]] = defaultdict(list)
        for marker in await self.plex.get_markers_for_items(keys):
            grouped[marker.parent_id].append(marker)
        return {key: grouped.get(key, []) for key in keys}

    async def get_marker(self, marker_id: int) -> Marker:
        marker = await self.plex.get_single_marker(marker_id)
        if marker is None:
            raise NotFoundError(f"Marker {marker_id} not found")
        return marker

    async def get_section_stats(self, section_id: int) -> BreakdownResult:
        """
        Marker breakdown of a whole library section.

        Without the cache, the breakdown is computed from a direct scan of the section.
        """
        await self.plex.get_section(section_id)
        if self.cache is not None and self.cache.built:
            overview = self.cache.get_section_overview(section_id)
            return BreakdownResult(breakdown=overview or {})

        logger.debug(f"Marker cache unavailable, scanning section {section_id} directly")
        counts: dict[int, int] = defaultdict(int)
        for item in await self.plex.get_base_items(section_id=section_id):
            counts[item["parent_id"]] = 0
        for marker in await self.plex.get_section_markers(section_id):
            counts[marker.parent_id] += delta_from_type(1, marker.marker_type.value)

        breakdown = MarkerBreakdown()
        for key in counts.values():
            breakdown.add_item(key)
        return BreakdownResult(breakdown=breakdown.data())

    async def get_show_breakdown(self, show_id: int, include_seasons: bool = False) -> Union[BreakdownResult, ShowBreakdownTree]:
        cache = self._require_cache()
        if include_seasons:
            tree = await cache.get_tree_stats(show_id)
            if tree is None:
                raise NotFoundError(f"Show {show_id} not found")
            return tree

        stats = await cache.get_show_stats(show_id)
        if stats is None:
            raise NotFoundError(f"Show {show_id} not found")
        return BreakdownResult(breakdown=stats)

    async def get_season_breakdown(self, season_id: int) -> BreakdownResult:
        stats = await self._require_cache().get_season_stats(season_id)
        if stats is None:
            raise NotFoundError(f"Season {season_id} not found")
        return BreakdownResult(breakdown=stats)
