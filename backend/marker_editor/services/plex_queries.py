"""Queries and marker mutations against the Plex media server database."""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional

import aiosqlite

from marker_editor.database.db import connect
from marker_editor.database.transaction import Transaction
from marker_editor.errors import (
    MarkerConflictError,
    MarkerValidationError,
    NotFoundError,
    StorageError,
)
from marker_editor.logging import get_logger
from marker_editor.models import (
    BASE_METADATA_TYPES,
    AddMarkerResult,
    BulkAddEntry,
    BulkAddResult,
    BulkMarkerResolveType,
    BulkRestoreResult,
    DeleteMarkerResult,
    EditMarkerResult,
    EpisodeData,
    HousekeepingResult,
    LibrarySection,
    Marker,
    MarkersWithTypeInfo,
    MarkerType,
    MetadataType,
    MetadataTypeInfo,
    MovieData,
    RestoreCandidate,
    RestoredMarker,
    SeasonData,
    SectionInfo,
    ShowData,
    supported_marker_type,
)
from marker_editor.services.reindex import (
    assign_indexes,
    find_overlaps,
    overlaps,
    reindex_for_add,
    reindex_for_delete,
    reindex_for_edit,
    sort_by_start,
)

logger = get_logger("services.plex_queries")

MARKER_TAG_TYPE = 12

# Stay well under SQLite's bound parameter limit.
_ID_CHUNK = 500

# Plex stores marker flavor in extra_data.
EXTRA_DATA = {
    (MarkerType.INTRO, False): "pv%3Aversion=5",
    (MarkerType.CREDITS, False): "pv%3Aversion=4",
    (MarkerType.CREDITS, True): "pv%3Afinal=1&pv%3Aversion=4",
}

_MARKER_FIELDS = """
    taggings.id,
    taggings.`index`,
    taggings.text AS marker_type,
    taggings.time_offset AS start,
    taggings.end_time_offset AS end,
    taggings.thumb_url AS modified_date,
    taggings.created_at,
    taggings.extra_data,
    base.id AS parent_id,
    COALESCE(seasons.id, -1) AS season_id,
    COALESCE(seasons.parent_id, -1) AS show_id,
    base.library_section_id AS section_id,
    base.guid AS parent_guid
FROM taggings
    INNER JOIN metadata_items base ON taggings.metadata_item_id = base.id
    LEFT JOIN metadata_items seasons ON base.parent_id = seasons.id AND base.metadata_type = 4
"""

_MARKER_FILTER = "taggings.tag_id = ? AND taggings.text IN ('intro', 'credits')"

_EPISODE_FIELDS = """
    e.title AS title,
    e.`index` AS `index`,
    e.id AS id,
    p.title AS season,
    p.`index` AS season_index,
    g.title AS show,
    MAX(m.duration) AS duration,
    COUNT(e.id) AS parts
FROM metadata_items e
    INNER JOIN metadata_items p ON e.parent_id = p.id
    INNER JOIN metadata_items g ON p.parent_id = g.id
    INNER JOIN media_items m ON e.id = m.metadata_item_id
"""

_MOVIE_FIELDS = """
    movies.id AS id,
    movies.title AS title,
    movies.title_sort AS title_sort,
    movies.original_title AS original_title,
    movies.year AS year,
    MAX(files.duration) AS duration
FROM metadata_items movies
    INNER JOIN media_items files ON movies.id = files.metadata_item_id
"""

_BASE_ITEM_FIELDS = """
    base.id AS parent_id,
    base.metadata_type AS metadata_type,
    base.library_section_id AS section_id,
    COALESCE(seasons.id, -1) AS season_id,
    COALESCE(seasons.parent_id, -1) AS show_id
FROM metadata_items base
    INNER JOIN library_sections sections ON base.library_section_id = sections.id
    LEFT JOIN metadata_items seasons ON base.parent_id = seasons.id AND base.metadata_type = 4
WHERE base.metadata_type IN (1, 4) AND sections.section_type IN (1, 2)
"""


def _now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def _placeholders(values: Iterable) -> str:
    return ", ".join("?" for _ in values)


def _parse_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extra_data_for(marker_type: str, final: bool) -> str:
    return EXTRA_DATA[(MarkerType(marker_type), bool(final) and marker_type == MarkerType.CREDITS)]


def _row_to_marker(row: dict) -> Marker:
    modified = _parse_int(row.get("modified_date"))
    created = _parse_int(row.get("created_at"))
    user_created = modified is not None and modified < 0
    if modified is not None:
        modified = abs(modified)
        if modified == created:
            # Markers that were never edited carry their creation time.
            user_created = True
            modified = None
    if modified == 0:
        modified = None

    return Marker(
        id=row["id"],
        parent_id=row["parent_id"],
        season_id=row["season_id"],
        show_id=row["show_id"],
        section_id=row["section_id"],
        index=row["index"],
        start=int(row["start"]),
        end=int(row["end"]),
        marker_type=row["marker_type"],
        is_final="final=1" in (row.get("extra_data") or ""),
        created_at=created,
        modified_at=modified,
        created_by_user=user_created,
        parent_guid=row.get("parent_guid"),
    )


def _row_to_episode(row: dict) -> EpisodeData:
    return EpisodeData(
        id=row["id"],
        title=row.get("title"),
        index=row.get("index") or 0,
        season=row.get("season"),
        season_index=row.get("season_index") or 0,
        show=row.get("show"),
        duration=row.get("duration") or 0,
        parts=row.get("parts") or 1,
    )


def _row_to_movie(row: dict) -> MovieData:
    return MovieData(
        id=row["id"],
        title=row.get("title") or "",
        title_sort=row.get("title_sort"),
        original_title=row.get("original_title"),
        year=row.get("year"),
        duration=row.get("duration") or 0,
    )


def _group_by_parent(markers: Iterable[Marker]) -> dict[int, list[Marker]]:
    grouped: dict[int, list[Marker]] = defaultdict(list)
    for marker in markers:
        grouped[marker.parent_id].append(marker)
    return grouped


def check_bounds(start: int, end: int) -> None:
    """
    :raises MarkerValidationError: If the range is negative or empty
    """
    if start < 0:
        raise MarkerValidationError(f"Marker start cannot be negative, found {start}")
    if end <= start:
        raise MarkerValidationError(f"Marker end ({end}) must be greater than its start ({start})")


class PlexQueryService:
    """
    Thin query/command layer over the Plex ``taggings`` table.

    Every mutating method holds ``_write_lock`` for its whole
    read/compute/write sequence, so two requests can't race on the indexes of
    the same item.
    """

    def __init__(self, db_path: str, pure_mode: bool = False):
        self.db_path = db_path
        self.pure_mode = pure_mode
        self.marker_tag_id: Optional[int] = None
        self._write_lock = asyncio.Lock()

    async def _get_db(self) -> aiosqlite.Connection:
        try:
            return await connect(self.db_path)
        except aiosqlite.Error as e:
            raise StorageError.from_db_error(e, f"Unable to open Plex database {self.db_path}") from e

    def _thumb_url(self, user_created: bool) -> str:
        if self.pure_mode:
            return ""
        now = _now()
        return str(-now if user_created else now)

    # ----- Setup -----

    async def initialize(self) -> int:
        """
        Verify the database looks like a Plex database and find the marker tag id.

        :return: The marker tag id
        :rtype: int
        :raises StorageError: If the database can't be read or has no marker tag
        """
        logger.info(f"Verifying database {self.db_path}...")
        db = await self._get_db()
        try:
            cursor = await db.execute("SELECT id FROM tags WHERE tag_type = ?", (MARKER_TAG_TYPE,))
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError.from_db_error(e, f"{self.db_path} does not look like a Plex database") from e
        finally:
            await db.close()

        if row is None:
            logger.error(
                "tags table exists, but no marker tag was found. Use Plex SQLite to run: "
                "INSERT INTO tags (tag_type, created_at, updated_at) "
                "VALUES (12, (strftime('%s','now')), (strftime('%s','now')));"
            )
            raise StorageError("Plex database must contain a marker tag (tags.tag_type = 12)")

        self.marker_tag_id = row["id"]
        logger.info("Database verified")
        return self.marker_tag_id

    def _tag_id(self) -> int:
        if self.marker_tag_id is None:
            raise StorageError("PlexQueryService used before initialize()")
        return self.marker_tag_id

    # ----- Library queries -----

    async def get_libraries(self) -> list[LibrarySection]:
        db = await self._get_db()
        try:
            cursor = await db.execute(
                "SELECT id, section_type AS type, name FROM library_sections WHERE section_type IN (1, 2)"
            )
            rows = await cursor.fetchall()
            return [LibrarySection(**dict(r)) for r in rows]
        finally:
            await db.close()

    async def section_uuids(self) -> list[SectionInfo]:
        db = await self._get_db()
        try:
            cursor = await db.execute("SELECT id, uuid, section_type FROM library_sections")
            rows = await cursor.fetchall()
            return [SectionInfo(**dict(r)) for r in rows]
        finally:
            await db.close()

    async def get_section(self, section_id: int) -> SectionInfo:
        """
        :raises NotFoundError: If the section doesn't exist
        """
        db = await self._get_db()
        try:
            cursor = await db.execute(
                "SELECT id, uuid, section_type FROM library_sections WHERE id = ?",
                (section_id,),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row is None:
            raise NotFoundError(f"Library section {section_id} not found")
        return SectionInfo(**dict(row))

    async def get_shows(self, section_id: int) -> list[ShowData]:
        # Roll up seasons with their episode counts, then roll those up per show.
        query = """
SELECT
    shows.id,
    shows.title,
    shows.title_sort,
    shows.original_title,
    COUNT(seasons.id) AS season_count,
    SUM(seasons.episode_count) AS episode_count
FROM metadata_items shows
    INNER JOIN (
        SELECT seasons.id, seasons.parent_id AS show_id, COUNT(episodes.id) AS episode_count
        FROM metadata_items seasons
            INNER JOIN metadata_items episodes ON episodes.parent_id = seasons.id
        WHERE seasons.library_section_id = ? AND seasons.metadata_type = 3
        GROUP BY seasons.id
    ) seasons ON shows.id = seasons.show_id
WHERE shows.metadata_type = 2
GROUP BY shows.id
ORDER BY shows.title_sort ASC"""
        db = await self._get_db()
        try:
            cursor = await db.execute(query, (section_id,))
            rows = await cursor.fetchall()
            return [ShowData(**dict(r)) for r in rows]
        finally:
            await db.close()

    async def get_movies(self, section_id: int) -> list[MovieData]:
        query = f"""SELECT {_MOVIE_FIELDS}
WHERE movies.metadata_type = 1 AND movies.library_section_id = ?
GROUP BY movies.id
ORDER BY movies.title_sort ASC"""
        db = await self._get_db()
        try:
            cursor = await db.execute(query, (section_id,))
            rows = await cursor.fetchall()
            return [_row_to_movie(dict(r)) for r in rows]
        finally:
            await db.close()

    async def get_movies_from_list(self, movie_ids: Iterable[int]) -> list[MovieData]:
        ids = list(movie_ids)
        if not ids:
            return []
        query = f"""SELECT {_MOVIE_FIELDS}
WHERE movies.id IN ({_placeholders(ids)})
GROUP BY movies.id
ORDER BY movies.title_sort ASC"""
        db = await self._get_db()
        try:
            cursor = await db.execute(query, ids)
            rows = await cursor.fetchall()
            return [_row_to_movie(dict(r)) for r in rows]
        finally:
            await db.close()

    async def get_seasons(self, show_id: int) -> list[SeasonData]:
        query = """
SELECT
    seasons.id,
    seasons.title,
    seasons.`index`,
    COUNT(episodes.id) AS episode_count
FROM metadata_items seasons
    INNER JOIN metadata_items episodes ON episodes.parent_id = seasons.id
WHERE seasons.parent_id = ? AND seasons.metadata_type = 3
GROUP BY seasons.id
ORDER BY seasons.`index` ASC"""
        db = await self._get_db()
        try:
            cursor = await db.execute(query, (show_id,))
            rows = await cursor.fetchall()
            return [SeasonData(**{k: v for k, v in dict(r).items() if v is not None}) for r in rows]
        finally:
            await db.close()

    async def get_episodes(self, season_id: int) -> list[EpisodeData]:
        """
        Episodes of a season with their season/show names.

        ``duration`` is the longest of the episode's media files.
        """
        query = f"""SELECT {_EPISODE_FIELDS}
WHERE e.parent_id = ? AND e.metadata_type = 4
GROUP BY e.id
ORDER BY e.`index` ASC"""
        db = await self._get_db()
        try:
            cursor = await db.execute(query, (season_id,))
            rows = await cursor.fetchall()
            return [_row_to_episode(dict(r)) for r in rows]
        finally:
            await db.close()

    async def get_episodes_from_list(self, episode_ids: Iterable[int]) -> list[EpisodeData]:
        ids = list(episode_ids)
        if not ids:
            logger.debug("get_episodes_from_list called with no episode ids")
            return []
        query = f"""SELECT {_EPISODE_FIELDS}
WHERE e.id IN ({_placeholders(ids)})
GROUP BY e.id
ORDER BY e.`index` ASC"""
        db = await self._get_db()
        try:
            cursor = await db.execute(query, ids)
            rows = await cursor.fetchall()
            return [_row_to_episode(dict(r)) for r in rows]
        finally:
            await db.close()

    async def get_item_from_guid(self, guid: str) -> Optional[dict]:
        """
        Find the current episode/movie with the given guid.

        Plex can recreate items during a rescan, giving them a new id but the
        same guid.

        :return: ``id``, ``season_id``, ``show_id`` and ``section_id`` of the item, or None
        :rtype: dict | None
        """
        query = f"SELECT {_BASE_ITEM_FIELDS} AND base.guid = ?"
        db = await self._get_db()
        try:
            cursor = await db.execute(query, (guid,))
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row is None:
            return None
        row = dict(row)
        return {
            "id": row["parent_id"],
            "season_id": row["season_id"],
            "show_id": row["show_id"],
            "section_id": row["section_id"],
        }

    async def get_base_items(
        self,
        section_id: Optional[int] = None,
        show_id: Optional[int] = None,
        season_id: Optional[int] = None,
    ) -> list[dict]:
        """
        Every episode and movie in supported libraries, optionally scoped.

        :return: Rows with ``parent_id``, ``metadata_type``, ``section_id``, ``season_id``, ``show_id``
        :rtype: list[dict]
        """
        query = f"SELECT {_BASE_ITEM_FIELDS}"
        params: list = []
        if section_id is not None:
            query += " AND base.library_section_id = ?"
            params.append(section_id)
        if show_id is not None:
            query += " AND seasons.parent_id = ?"
            params.append(show_id)
        if season_id is not None:
            query += " AND seasons.id = ?"
            params.append(season_id)
        query += " ORDER BY base.id ASC"

        db = await self._get_db()
        try:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]
        finally:
            await db.close()

    async def get_media_type(self, metadata_id: int) -> MetadataTypeInfo:
        """
        :raises NotFoundError: If no metadata item has the given id
        """
        db = await self._get_db()
        try:
            cursor = await db.execute(
                "SELECT metadata_type, library_section_id AS section_id FROM metadata_items WHERE id = ?",
                (metadata_id,),
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row is None:
            raise NotFoundError(f"Metadata item {metadata_id} not found in database")
        return MetadataTypeInfo(**dict(row))

    # ----- Marker queries -----

    async def _query_markers(self, db: aiosqlite.Connection, where: str, params: Iterable) -> list[Marker]:
        query = f"SELECT {_MARKER_FIELDS} WHERE {_MARKER_FILTER} AND {where} ORDER BY taggings.time_offset ASC, taggings.id ASC"
        cursor = await db.execute(query, [self._tag_id(), *params])
        rows = await cursor.fetchall()
        return [_row_to_marker(dict(r)) for r in rows]

    async def _markers_for_items(self, db: aiosqlite.Connection, item_ids: Iterable[int]) -> list[Marker]:
        ids = list(item_ids)
        if not ids:
            return []
        return await self._query_markers(db, f"taggings.metadata_item_id IN ({_placeholders(ids)})", ids)

    async def _markers_where(self, where: str, params: Iterable) -> list[Marker]:
        db = await self._get_db()
        try:
            return await self._query_markers(db, where, params)
        finally:
            await db.close()

    async def get_base_markers(self, metadata_id: int) -> list[Marker]:
        """Markers of a single episode or movie, ordered by start."""
        return await self._markers_where("taggings.metadata_item_id = ?", (metadata_id,))

    async def get_season_markers(self, season_id: int) -> list[Marker]:
        return await self._markers_where("seasons.id = ?", (season_id,))

    async def get_show_markers(self, show_id: int) -> list[Marker]:
        return await self._markers_where("seasons.parent_id = ?", (show_id,))

    async def get_section_markers(self, section_id: int) -> list[Marker]:
        return await self._markers_where("base.library_section_id = ?", (section_id,))

    async def get_all_markers(self) -> list[Marker]:
        return await self._markers_where("1 = 1", ())

    async def get_markers(self, scope_id: int, scope_level: MetadataType) -> list[Marker]:
        """
        Markers under an episode/movie, season or show, ordered by start.

        :raises MarkerValidationError: For scopes that can't hold markers
        """
        if scope_level in BASE_METADATA_TYPES:
            return await self.get_base_markers(scope_id)
        if scope_level == MetadataType.SEASON:
            return await self.get_season_markers(scope_id)
        if scope_level == MetadataType.SHOW:
            return await self.get_show_markers(scope_id)
        raise MarkerValidationError(f"Item {scope_id} is not a movie, episode, season, or show")

    async def get_markers_auto(self, metadata_id: int) -> MarkersWithTypeInfo:
        type_info = await self.get_media_type(metadata_id)
        markers = await self.get_markers(metadata_id, MetadataType(type_info.metadata_type))
        return MarkersWithTypeInfo(
            markers=markers,
            metadata_type=type_info.metadata_type,
            section_id=type_info.section_id,
        )

    async def get_markers_for_items(self, item_ids: Iterable[int]) -> list[Marker]:
        """
        Markers for a list of episodes or movies.

        :raises MarkerValidationError: If an id is unknown or not an episode/movie
        """
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return []

        db = await self._get_db()
        try:
            cursor = await db.execute(
                f"SELECT id, metadata_type FROM metadata_items WHERE id IN ({_placeholders(ids)})",
                ids,
            )
            types = {row["id"]: row["metadata_type"] for row in await cursor.fetchall()}
            missing = [i for i in ids if i not in types]
            if missing:
                raise MarkerValidationError(f"Metadata ids {missing} do not exist")
            if any(t not in BASE_METADATA_TYPES for t in types.values()):
                raise MarkerValidationError("Markers can only be queried for episodes and movies")
            return await self._markers_for_items(db, ids)
        finally:
            await db.close()

    async def existing_marker_ids(self, marker_ids: Iterable[int]) -> set[int]:
        """Which of the given marker ids are still in the database."""
        ids = list(marker_ids)
        found: set[int] = set()
        db = await self._get_db()
        try:
            for offset in range(0, len(ids), _ID_CHUNK):
                chunk = ids[offset:offset + _ID_CHUNK]
                cursor = await db.execute(
                    f"SELECT id FROM taggings WHERE tag_id = ? AND id IN ({_placeholders(chunk)})",
                    (self._tag_id(), *chunk),
                )
                found.update(row["id"] for row in await cursor.fetchall())
        finally:
            await db.close()
        return found

    async def existing_item_ids(self, item_ids: Iterable[int]) -> set[int]:
        """Which of the given episode/movie ids are still in the database."""
        ids = list(item_ids)
        found: set[int] = set()
        db = await self._get_db()
        try:
            for offset in range(0, len(ids), _ID_CHUNK):
                chunk = ids[offset:offset + _ID_CHUNK]
                cursor = await db.execute(
                    f"SELECT id FROM metadata_items WHERE metadata_type IN (1, 4) AND id IN ({_placeholders(chunk)})",
                    chunk,
                )
                found.update(row["id"] for row in await cursor.fetchall())
        finally:
            await db.close()
        return found

    async def get_single_marker(self, marker_id: int) -> Optional[Marker]:
        markers = await self._markers_where("taggings.id = ?", (marker_id,))
        return markers[0] if markers else None

    # ----- Housekeeping -----

    async def _write_indexes(self, db: aiosqlite.Connection, assignments, context: str) -> HousekeepingResult:
        changed = [a for a in assignments if a.changed]
        if not changed:
            return HousekeepingResult()

        transaction = Transaction("reindex")
        for assignment in changed:
            transaction.add("UPDATE taggings SET `index` = ? WHERE id = ?", (assignment.new_index, assignment.marker_id))
        try:
            await transaction.execute(db)
        except StorageError as e:
            logger.error(f"{context}: failed to update {len(changed)} sibling indexes: {e.message}")
            return HousekeepingResult.failed(len(changed), e.message)
        except aiosqlite.Error as e:
            logger.error(f"{context}: failed to update {len(changed)} sibling indexes: {e}")
            return HousekeepingResult.failed(len(changed), str(e))
        return HousekeepingResult(attempted=len(changed))

    async def _reindex_items(self, db: aiosqlite.Connection, item_ids: Iterable[int]) -> HousekeepingResult:
        try:
            markers = await self._markers_for_items(db, item_ids)
        except aiosqlite.Error as e:
            logger.error(f"Unable to load markers to reindex: {e}")
            return HousekeepingResult.failed(0, str(e))

        assignments = []
        for group in _group_by_parent(markers).values():
            assignments.extend(assign_indexes(group))
        return await self._write_indexes(db, assignments, "reindex")

    async def reindex(self, metadata_id: int) -> HousekeepingResult:
        """
        Make sure indexes of every marker under the given item are dense and in start order.

        Never raises for storage failures, the result reports them instead.
        """
        try:
            type_info = await self.get_media_type(metadata_id)
            async with self._write_lock:
                db = await self._get_db()
                try:
                    if type_info.metadata_type in BASE_METADATA_TYPES:
                        item_ids = [metadata_id]
                    else:
                        item_ids = await self._child_base_items(db, metadata_id, type_info.metadata_type)
                    result = await self._reindex_items(db, item_ids)
                finally:
                    await db.close()
        except (aiosqlite.Error, StorageError) as e:
            logger.error(f"Unable to reindex markers under item {metadata_id}: {e}")
            return HousekeepingResult.failed(0, str(e))
        if result.attempted:
            logger.debug(f"Reindexed {result.attempted} markers under item {metadata_id}")
        return result

    async def _child_base_items(self, db: aiosqlite.Connection, metadata_id: int, metadata_type: int) -> list[int]:
        if metadata_type == MetadataType.SEASON:
            cursor = await db.execute(
                "SELECT id FROM metadata_items WHERE parent_id = ? AND metadata_type = 4",
                (metadata_id,),
            )
        elif metadata_type == MetadataType.SHOW:
            cursor = await db.execute(
                """SELECT e.id FROM metadata_items e
                   INNER JOIN metadata_items p ON p.id = e.parent_id
                   WHERE p.parent_id = ? AND e.metadata_type = 4""",
                (metadata_id,),
            )
        elif metadata_type == MetadataType.EPISODE:
            return [metadata_id]
        else:
            raise MarkerValidationError(
                f"Bulk operations expect a show, season, or episode, found metadata type {metadata_type}"
            )
        return [row["id"] for row in await cursor.fetchall()]

    # ----- Single marker mutations -----

    async def add_marker(
        self,
        metadata_id: int,
        start: int,
        end: int,
        marker_type: MarkerType = MarkerType.INTRO,
        final: bool = False,
    ) -> AddMarkerResult:
        """
        Add a marker to an episode or movie.

        :param metadata_id: The episode/movie to add the marker to
        :type metadata_id: int
        :param start: Start time, in milliseconds
        :type start: int
        :param end: End time, in milliseconds
        :type end: int
        :param marker_type: Intro or credits
        :type marker_type: MarkerType
        :param final: Whether this credits marker runs to the end of the item
        :type final: bool
        :return: The new marker and the siblings it was inserted between
        :rtype: AddMarkerResult
        :raises MarkerValidationError: Bad range, or the item can't hold markers
        :raises MarkerConflictError: The range overlaps an existing marker
        """
        check_bounds(start, end)
        if not supported_marker_type(marker_type):
            raise MarkerValidationError(f"Unsupported marker type '{marker_type}'")

        type_info = await self.get_media_type(metadata_id)
        if type_info.metadata_type not in BASE_METADATA_TYPES:
            raise MarkerValidationError(f"Item {metadata_id} is not an episode or movie, it can't have markers")

        async with self._write_lock:
            db = await self._get_db()
            try:
                siblings = await self._markers_for_items(db, [metadata_id])
                plan = reindex_for_add(siblings, start, end)
                if plan.has_overlap:
                    o = plan.overlapping
                    raise MarkerConflictError(
                        f"Marker ({start}-{end}) overlaps existing marker ({o.start}-{o.end}). "
                        "The existing marker should be expanded to include this range instead."
                    )
                if final and plan.index != len(siblings):
                    raise MarkerValidationError(
                        "A final marker must be the last marker of its item"
                    )

                try:
                    cursor = await db.execute(
                        """INSERT INTO taggings
                           (metadata_item_id, tag_id, `index`, text, time_offset, end_time_offset, thumb_url, created_at, extra_data)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            metadata_id,
                            self._tag_id(),
                            plan.index,
                            MarkerType(marker_type).value,
                            start,
                            end,
                            self._thumb_url(user_created=True),
                            _now(),
                            extra_data_for(marker_type, final),
                        ),
                    )
                    await db.commit()
                    new_id = cursor.lastrowid
                except aiosqlite.Error as e:
                    raise StorageError.from_db_error(e, f"Unable to add marker to item {metadata_id}") from e

                reindex_result = await self._write_indexes(db, plan.assignments, f"add_marker({metadata_id})")
                try:
                    new_markers = await self._query_markers(db, "taggings.id = ?", (new_id,))
                except aiosqlite.Error as e:
                    logger.warning(f"Unable to read back new marker {new_id}: {e}")
                    new_markers = []
            finally:
                await db.close()

        if not new_markers:
            raise StorageError(f"Marker added to item {metadata_id} but could not be read back")
        return AddMarkerResult(marker=new_markers[0], existing=siblings, reindex=reindex_result)

    async def edit_marker(
        self,
        marker_id: int,
        start: int,
        end: int,
        user_created: bool,
        marker_type: MarkerType = MarkerType.INTRO,
        final: bool = False,
    ) -> EditMarkerResult:
        """
        Change the range (and type) of an existing marker.

        :raises NotFoundError: If the marker doesn't exist
        :raises MarkerConflictError: If the new range overlaps another marker of the item
        """
        check_bounds(start, end)
        if not supported_marker_type(marker_type):
            raise MarkerValidationError(f"Unsupported marker type '{marker_type}'")

        async with self._write_lock:
            db = await self._get_db()
            try:
                current = await self._query_markers(db, "taggings.id = ?", (marker_id,))
                if not current:
                    raise NotFoundError(f"Marker {marker_id} not found")
                current = current[0]

                siblings = await self._markers_for_items(db, [current.parent_id])
                plan = reindex_for_edit(siblings, marker_id, start, end)
                if plan.has_overlap:
                    o = plan.overlapping
                    raise MarkerConflictError(
                        f"Marker edit ({start}-{end}) overlaps existing marker ({o.start}-{o.end}). "
                        "The existing marker should be expanded to include this range instead."
                    )
                if final and plan.index != len(siblings) - 1:
                    raise MarkerValidationError("A final marker must be the last marker of its item")

                try:
                    await db.execute(
                        """UPDATE taggings
                           SET `index` = ?, text = ?, time_offset = ?, end_time_offset = ?, thumb_url = ?, extra_data = ?
                           WHERE id = ?""",
                        (
                            plan.index,
                            MarkerType(marker_type).value,
                            start,
                            end,
                            self._thumb_url(user_created),
                            extra_data_for(marker_type, final),
                            marker_id,
                        ),
                    )
                    await db.commit()
                except aiosqlite.Error as e:
                    raise StorageError.from_db_error(e, f"Unable to edit marker {marker_id}") from e

                reindex_result = await self._write_indexes(db, plan.assignments, f"edit_marker({marker_id})")
                try:
                    edited = await self._query_markers(db, "taggings.id = ?", (marker_id,))
                except aiosqlite.Error as e:
                    logger.warning(f"Unable to read back edited marker {marker_id}: {e}")
                    edited = []
            finally:
                await db.close()

        if edited:
            marker = edited[0]
        else:
            marker = current.model_copy(update={
                "index": plan.index,
                "start": start,
                "end": end,
                "marker_type": MarkerType(marker_type),
                "is_final": final,
                "created_by_user": user_created,
            })
        return EditMarkerResult(
            marker=marker,
            old_start=current.start,
            old_end=current.end,
            reindex=reindex_result,
        )

    async def delete_marker(self, marker_id: int) -> DeleteMarkerResult:
        """
        Delete a marker and close the index gap it leaves behind.

        :raises NotFoundError: If the marker doesn't exist
        """
        async with self._write_lock:
            db = await self._get_db()
            try:
                current = await self._query_markers(db, "taggings.id = ?", (marker_id,))
                if not current:
                    raise NotFoundError(f"Marker {marker_id} not found")
                marker = current[0]
                siblings = await self._markers_for_items(db, [marker.parent_id])

                try:
                    await db.execute("DELETE FROM taggings WHERE id = ?", (marker_id,))
                    await db.commit()
                except aiosqlite.Error as e:
                    raise StorageError.from_db_error(e, f"Unable to delete marker {marker_id}") from e

                reindex_result = await self._write_indexes(
                    db, reindex_for_delete(siblings, marker_id), f"delete_marker({marker_id})"
                )
            finally:
                await db.close()

        return DeleteMarkerResult(marker=marker, sibling_count=len(siblings), reindex=reindex_result)

    # ----- Bulk mutations -----

    def _add_statement(
        self,
        transaction: Transaction,
        item_id: int,
        index: int,
        start: int,
        end: int,
        marker_type: str,
        final: bool,
    ) -> None:
        transaction.add(
            """INSERT INTO taggings
               (metadata_item_id, tag_id, `index`, text, time_offset, end_time_offset, thumb_url, created_at, extra_data)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                item_id,
                self._tag_id(),
                index,
                MarkerType(marker_type).value,
                start,
                end,
                self._thumb_url(user_created=True),
                _now(),
                extra_data_for(marker_type, final),
            ),
        )

    async def bulk_restore(
        self,
        candidates: dict[int, list[RestoreCandidate]],
        resolve_type: BulkMarkerResolveType = BulkMarkerResolveType.FAIL,
    ) -> BulkRestoreResult:
        """
        Re-insert markers that were removed from the database.

        A candidate whose range matches an existing marker (or another
        candidate of the same restore) is not inserted again, it's reported
        as identical instead.

        :param candidates: Item id to the markers to restore for that item
        :type candidates: dict[int, list[RestoreCandidate]]
        :param resolve_type: FAIL raises on overlap with an existing marker, IGNORE skips the candidate
        :type resolve_type: BulkMarkerResolveType
        :return: New markers and identical markers, keyed by the ledger marker id they stand for
        :rtype: BulkRestoreResult
        """
        if resolve_type not in (BulkMarkerResolveType.FAIL, BulkMarkerResolveType.IGNORE):
            raise MarkerValidationError("Restoring markers only supports the Fail and Ignore resolve types")

        result = BulkRestoreResult()
        if not candidates:
            return result

        async with self._write_lock:
            db = await self._get_db()
            try:
                try:
                    existing = _group_by_parent(await self._markers_for_items(db, candidates.keys()))
                except aiosqlite.Error as e:
                    raise StorageError.from_db_error(e, "Unable to retrieve existing markers to restore against") from e

                transaction = Transaction("bulk_restore")
                pending: list[RestoreCandidate] = []
                duplicate_of: dict[int, RestoreCandidate] = {}
                for item_id, item_candidates in candidates.items():
                    current = existing.get(item_id, [])
                    inserted: list[RestoreCandidate] = []
                    for candidate in item_candidates:
                        check_bounds(candidate.start, candidate.end)
                        identical = next(
                            (m for m in current if m.start == candidate.start and m.end == candidate.end), None
                        )
                        if identical is not None:
                            logger.debug(f"Marker {candidate.old_marker_id} is identical to existing marker {identical.id}")
                            result.identical_markers.append(
                                RestoredMarker(old_marker_id=candidate.old_marker_id, marker=identical)
                            )
                            continue

                        twin = next(
                            (c for c in inserted if c.start == candidate.start and c.end == candidate.end), None
                        )
                        if twin is not None:
                            duplicate_of[candidate.old_marker_id] = twin
                            continue

                        colliding = next(
                            (
                                (r.start, r.end) for r in [*current, *inserted]
                                if overlaps(r.start, r.end, candidate.start, candidate.end)
                            ),
                            None,
                        )
                        if colliding is not None:
                            if resolve_type == BulkMarkerResolveType.FAIL:
                                raise MarkerConflictError(
                                    f"Restoring marker {candidate.old_marker_id} ({candidate.start}-{candidate.end}) "
                                    f"would overlap marker ({colliding[0]}-{colliding[1]}) of item {item_id}"
                                )
                            result.ignored_markers.append(candidate.old_marker_id)
                            continue

                        inserted.append(candidate)

                    new_index = {
                        id(c): i for i, c in enumerate(sorted([*current, *inserted], key=lambda r: r.start))
                    }
                    for candidate in inserted:
                        self._add_statement(
                            transaction,
                            item_id,
                            new_index[id(candidate)],
                            candidate.start,
                            candidate.end,
                            candidate.marker_type,
                            candidate.final,
                        )
                    pending.extend(inserted)

                if transaction.empty():
                    logger.warning("No markers to restore, did they all match an existing marker?")
                    return result

                await transaction.execute(db)
                logger.debug(f"Restored {len(pending)} markers to the Plex database")

                reindex_result = await self._reindex_items(db, candidates.keys())
                try:
                    after = await self._markers_for_items(db, candidates.keys())
                except aiosqlite.Error as e:
                    # Restoring again resolves these as identical markers.
                    raise StorageError.from_db_error(e, "Markers were restored but could not be read back") from e
            finally:
                await db.close()

        by_range = {(m.parent_id, m.start, m.end): m for m in after}
        for candidate in pending:
            marker = by_range.get((candidate.parent_id, candidate.start, candidate.end))
            if marker is None:
                logger.warning(f"Restored marker {candidate.old_marker_id} could not be found after insert")
                continue
            result.new_markers.append(RestoredMarker(old_marker_id=candidate.old_marker_id, marker=marker))

        for old_id, twin in duplicate_of.items():
            marker = by_range.get((twin.parent_id, twin.start, twin.end))
            if marker is not None:
                result.identical_markers.append(RestoredMarker(old_marker_id=old_id, marker=marker))

        result.reindex = reindex_result
        return result

    async def shift_markers(
        self,
        markers: dict[int, list[Marker]],
        durations: dict[int, int],
        start_shift: int,
        end_shift: int,
    ) -> list[Marker]:
        """
        Shift markers by the given offsets, clamped to each item's duration.

        Markers not in ``markers`` keep their ranges, but still take part in
        overlap checks and reindexing.

        :param markers: Item id to the markers to shift
        :type markers: dict[int, list[Marker]]
        :param durations: Item id to its duration, in milliseconds
        :type durations: dict[int, int]
        :return: The shifted markers, re-read after the write
        :rtype: list[Marker]
        :raises MarkerConflictError: If a marker would be empty after clamping, or would overlap a sibling
        """
        shift_ids = {m.id for group in markers.values() for m in group}
        if not shift_ids:
            return []

        async with self._write_lock:
            db = await self._get_db()
            try:
                current = _group_by_parent(await self._markers_for_items(db, markers.keys()))
                transaction = Transaction("shift_markers")
                planned: dict[int, Marker] = {}
                for item_id, item_markers in current.items():
                    max_duration = durations.get(item_id)
                    if not max_duration:
                        raise MarkerValidationError(
                            f"Unable to find the duration of item {item_id}, it doesn't appear to be valid"
                        )

                    shifted: list[Marker] = []
                    for marker in item_markers:
                        if marker.id not in shift_ids:
                            shifted.append(marker)
                            continue
                        new_start = max(0, min(marker.start + start_shift, max_duration))
                        new_end = max(0, min(marker.end + end_shift, max_duration))
                        if new_start >= new_end:
                            raise MarkerConflictError(
                                f"Shifting marker {marker.id} ({marker.start}-{marker.end}) by "
                                f"({start_shift}, {end_shift}) puts it outside the bounds of item {item_id} "
                                f"(0-{max_duration})"
                            )
                        shifted.append(marker.model_copy(update={"start": new_start, "end": new_end}))

                    collisions = find_overlaps(shifted)
                    if collisions:
                        a, b = collisions[0]
                        raise MarkerConflictError(
                            f"Shifting markers of item {item_id} would make ({a.start}-{a.end}) "
                            f"overlap ({b.start}-{b.end})"
                        )

                    for index, marker in enumerate(sort_by_start(shifted)):
                        if marker.id in shift_ids:
                            transaction.add(
                                """UPDATE taggings
                                   SET time_offset = ?, end_time_offset = ?, thumb_url = ?, `index` = ?
                                   WHERE id = ?""",
                                (marker.start, marker.end, self._thumb_url(marker.created_by_user), index, marker.id),
                            )
                            planned[marker.id] = marker.model_copy(update={"index": index})
                        elif marker.index != index:
                            transaction.add("UPDATE taggings SET `index` = ? WHERE id = ?", (index, marker.id))

                await transaction.execute(db)
                try:
                    after = await self._markers_for_items(db, markers.keys())
                except aiosqlite.Error as e:
                    logger.warning(f"Shifted {len(planned)} markers, but they could not be read back: {e}")
                    return sort_by_start(planned.values())
            finally:
                await db.close()

        return [m for m in after if m.id in shift_ids]

    async def bulk_delete(self, markers: list[Marker]) -> None:
        """
        Delete all the given markers in one transaction.

        Survivors are not reindexed, call ``reindex`` on the scope afterwards.
        """
        if not markers:
            return
        transaction = Transaction("bulk_delete")
        for marker in markers:
            transaction.add("DELETE FROM taggings WHERE id = ?", (marker.id,))

        async with self._write_lock:
            db = await self._get_db()
            try:
                await transaction.execute(db)
            finally:
                await db.close()

    async def bulk_add(
        self,
        metadata_id: int,
        start: int,
        end: int,
        marker_type: MarkerType = MarkerType.INTRO,
        final: bool = False,
        resolve_type: BulkMarkerResolveType = BulkMarkerResolveType.FAIL,
        ignored: Iterable[int] = (),
    ) -> BulkAddResult:
        """
        Add a marker to every episode under a show, season, or episode.

        Each new marker ends at ``min(end, episode duration)``. A credits
        marker that reaches the end of its episode is stored as final.

        :param resolve_type: What to do with episodes whose markers overlap the new range
        :type resolve_type: BulkMarkerResolveType
        :param ignored: Episode ids to leave alone
        :type ignored: Iterable[int]
        :return: Per-episode outcome. ``applied`` is False for dry runs and Fail conflicts.
        :rtype: BulkAddResult
        """
        if resolve_type != BulkMarkerResolveType.DRY_RUN:
            check_bounds(start, end)
        if not supported_marker_type(marker_type):
            raise MarkerValidationError(f"Unsupported marker type '{marker_type}'")

        type_info = await self.get_media_type(metadata_id)
        if type_info.metadata_type not in (MetadataType.SHOW, MetadataType.SEASON, MetadataType.EPISODE):
            raise MarkerValidationError(
                f"Attempting to bulk add to an unexpected media type '{type_info.metadata_type}'"
            )

        ignored_episodes = set(ignored)
        async with self._write_lock:
            db = await self._get_db()
            try:
                episode_ids = [
                    i for i in await self._child_base_items(db, metadata_id, type_info.metadata_type)
                    if i not in ignored_episodes
                ]
            finally:
                await db.close()

            episode_data = {e.id: e for e in await self.get_episodes_from_list(episode_ids)}
            db = await self._get_db()
            try:
                existing = _group_by_parent(await self._markers_for_items(db, episode_data.keys()))
                entries = {
                    episode_id: BulkAddEntry(
                        episode_data=data,
                        existing_markers=sort_by_start(existing.get(episode_id, [])),
                    )
                    for episode_id, data in episode_data.items()
                }

                ends: dict[int, int] = {}
                new_ignored: list[int] = []
                for episode_id, entry in entries.items():
                    duration = entry.episode_data.duration
                    episode_end = min(duration, end) if duration else end
                    if episode_end <= start:
                        logger.warning(f"Bulk add range starts after the end of episode {episode_id}, skipping it")
                        new_ignored.append(episode_id)
                        continue
                    ends[episode_id] = episode_end
                    entry.conflict = any(
                        overlaps(start, episode_end, m.start, m.end) for m in entry.existing_markers
                    )

                if resolve_type == BulkMarkerResolveType.DRY_RUN:
                    return BulkAddResult(
                        applied=False,
                        conflict=any(e.conflict for e in entries.values()),
                        episode_map=entries,
                        ignored_episodes=sorted(ignored_episodes | set(new_ignored)),
                    )

                if any(e.conflict for e in entries.values()):
                    if resolve_type == BulkMarkerResolveType.FAIL:
                        return BulkAddResult(applied=False, conflict=True, episode_map=entries)
                    if resolve_type == BulkMarkerResolveType.IGNORE:
                        for episode_id, entry in entries.items():
                            if entry.conflict and episode_id not in new_ignored:
                                new_ignored.append(episode_id)

                transaction = Transaction("bulk_add")
                merged_ids: set[int] = set()
                plain_adds: set[int] = set()
                for episode_id, entry in entries.items():
                    if episode_id in new_ignored:
                        continue
                    episode_end = ends[episode_id]
                    duration = entry.episode_data.duration
                    final_actual = marker_type == MarkerType.CREDITS and (
                        final or (duration > 0 and end >= duration)
                    )
                    colliding = [
                        m for m in entry.existing_markers if overlaps(start, episode_end, m.start, m.end)
                    ]
                    if not colliding:
                        index = sum(1 for m in entry.existing_markers if m.start <= start)
                        self._add_statement(transaction, episode_id, index, start, episode_end, marker_type, final_actual)
                        entry.is_add = True
                        plain_adds.add(episode_id)
                        continue

                    # Merge: the first colliding marker grows to cover the union
                    # and absorbs every other colliding marker.
                    keep, absorbed = colliding[0], colliding[1:]
                    new_start = min(start, keep.start)
                    new_end = max(episode_end, *(m.end for m in colliding))
                    for marker in absorbed:
                        transaction.add("DELETE FROM taggings WHERE id = ?", (marker.id,))
                        entry.deleted_markers.append(marker)
                    transaction.add(
                        "UPDATE taggings SET time_offset = ?, end_time_offset = ?, thumb_url = ? WHERE id = ?",
                        (new_start, new_end, self._thumb_url(keep.created_by_user), keep.id),
                    )
                    entry.is_add = False
                    entry.changed_marker = keep.model_copy(update={"start": new_start, "end": new_end})
                    merged_ids.add(keep.id)

                await transaction.execute(db)
                touched = [i for i in entries if i not in new_ignored]
                reindex_result = await self._reindex_items(db, touched)
                if not reindex_result.success:
                    logger.warning(f"Bulk add to {metadata_id} succeeded, but reindexing failed")
                try:
                    after = _group_by_parent(await self._markers_for_items(db, entries.keys()))
                except aiosqlite.Error as e:
                    # Merged and absorbed markers are already known, only new ids are lost.
                    logger.warning(f"Bulk add to {metadata_id} succeeded, but markers could not be read back: {e}")
                    reindex_result = reindex_result.merge(HousekeepingResult.failed(0, str(e)))
                    after = None
            finally:
                await db.close()

        for episode_id, entry in entries.items():
            if after is None:
                continue
            entry.existing_markers = after.get(episode_id, [])
            for marker in entry.existing_markers:
                if marker.id in merged_ids:
                    entry.changed_marker = marker
                elif episode_id in plain_adds and marker.start == start:
                    entry.changed_marker = marker

        return BulkAddResult(
            applied=True,
            episode_map=entries,
            ignored_episodes=sorted(ignored_episodes | set(new_ignored)),
            reindex=reindex_result,
        )
