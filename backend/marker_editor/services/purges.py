"""Detection, restoration and dismissal of markers Plex deleted behind our back."""

from typing import Iterable, Optional

import aiosqlite

from marker_editor.errors import ReconciliationError, StorageError
from marker_editor.logging import get_logger
from marker_editor.models import (
    BulkMarkerResolveType,
    BulkRestoreResult,
    MarkerAction,
    MetadataType,
    PurgedMarker,
)
from marker_editor.services.backup import BackupService
from marker_editor.services.marker_cache import MarkerCache
from marker_editor.services.plex_queries import PlexQueryService

logger = get_logger("services.purges")

# section uuid -> show id -> season id -> item id -> marker id -> purge
PurgeTree = dict[str, dict[int, dict[int, dict[int, dict[int, PurgedMarker]]]]]


class PurgeService:
    """
    Diffs the ledger's expected markers against what Plex actually has.

    Known purges are kept in a four level tree so they can be listed per
    section, show, season or episode. The marker cache is the existence
    oracle when it's enabled, otherwise Plex is queried directly.
    """

    def __init__(
        self,
        backup: BackupService,
        plex: PlexQueryService,
        cache: Optional[MarkerCache] = None,
    ):
        self.backup = backup
        self.plex = plex
        self.cache = cache
        self._tree: PurgeTree = {}
        self._built = False

    # ----- Existence checks -----

    def _use_cache(self, live: bool) -> bool:
        return not live and self.cache is not None and self.cache.built

    async def _existing_markers(self, marker_ids: Iterable[int], live: bool) -> set[int]:
        ids = list(marker_ids)
        if self._use_cache(live):
            return {i for i in ids if self.cache.marker_exists(i)}
        return await self.plex.existing_marker_ids(ids)

    async def _existing_items(self, item_ids: Iterable[int], live: bool) -> set[int]:
        ids = list(item_ids)
        if self._use_cache(live):
            return {i for i in ids if self.cache.base_item_exists(i)}
        return await self.plex.existing_item_ids(ids)

    async def _find_purged(self, expected: list[MarkerAction], live: bool = False) -> list[PurgedMarker]:
        """
        Ledger entries whose marker is gone.

        :param live: Ask Plex directly instead of trusting the cache. Plex can
            delete markers behind our back, which the cache never sees.
        :type live: bool
        """
        if not expected:
            return []

        existing = await self._existing_markers((a.marker_id for a in expected), live)
        missing = [a for a in expected if a.marker_id not in existing]
        if not missing:
            return []

        items = await self._existing_items({a.parent_id for a in missing}, live)
        purged = []
        for action in missing:
            if action.parent_id not in items and not action.episode_guid:
                logger.debug(f"Item {action.parent_id} of purged marker {action.marker_id} no longer exists")
                continue
            if self.cache is not None and self.cache.marker_exists(action.marker_id):
                self.cache.remove_marker(action.marker_id)
            purged.append(PurgedMarker(**action.model_dump()))
        return purged

    # ----- Purge tree -----

    def _add_to_tree(self, purge: PurgedMarker) -> None:
        section = self._tree.setdefault(purge.section_uuid, {})
        show = section.setdefault(purge.show_id, {})
        season = show.setdefault(purge.season_id, {})
        item = season.setdefault(purge.parent_id, {})
        existing = item.get(purge.marker_id)
        if existing is not None:
            # Keep back-filled metadata from an earlier pass.
            purge.episode_data = purge.episode_data or existing.episode_data
            purge.movie_data = purge.movie_data or existing.movie_data
        item[purge.marker_id] = purge

    def _remove_from_tree(self, section_uuid: str, marker_id: int) -> bool:
        """Remove one purge, pruning every ancestor left empty."""
        section = self._tree.get(section_uuid)
        if section is None:
            return False

        for show_id, show in list(section.items()):
            for season_id, season in list(show.items()):
                for item_id, item in list(season.items()):
                    if marker_id not in item:
                        continue
                    del item[marker_id]
                    if not item:
                        del season[item_id]
                    if not season:
                        del show[season_id]
                    if not show:
                        del section[show_id]
                    if not section:
                        del self._tree[section_uuid]
                    return True
        return False

    def _section_purges(self, section_uuid: str) -> list[PurgedMarker]:
        section = self._tree.get(section_uuid, {})
        return [
            purge
            for show in section.values()
            for season in show.values()
            for item in season.values()
            for purge in item.values()
        ]

    # ----- Public operations -----

    async def check_for_purges(self, metadata_id: int) -> list[PurgedMarker]:
        """
        Find purged markers under an episode, movie, season or show.

        Failures are logged and reported as "no purges" so they never block
        unrelated reads.
        """
        try:
            type_info = await self.plex.get_media_type(metadata_id)
            section_uuid = self.backup.section_uuid(type_info.section_id)
            expected = await self.backup.get_expected_markers(
                metadata_id, MetadataType(type_info.metadata_type), section_uuid
            )
            purged = await self._find_purged(expected, live=True)
        except (aiosqlite.Error, StorageError) as e:
            error = ReconciliationError(f"Purge check for item {metadata_id} failed: {e}")
            logger.error(error.message)
            return []

        for purge in purged:
            self._add_to_tree(purge)
        if purged:
            logger.info(f"Found {len(purged)} purged marker(s) under item {metadata_id}")
        return purged

    async def build_all_purges(self) -> int:
        """
        Full reconciliation across every library instance tracked by the ledger.

        :return: Number of purges found
        :rtype: int
        """
        self._tree = {}
        try:
            tracked = set(await self.backup.tracked_section_uuids())
            sections = await self.backup.refresh_sections()
            for section_id, section_uuid in sections.items():
                if section_uuid not in tracked:
                    continue
                expected = await self.backup.get_expected_markers(None, None, section_uuid)
                for purge in await self._find_purged(expected):
                    self._add_to_tree(purge)
        except (aiosqlite.Error, StorageError) as e:
            error = ReconciliationError(f"Unable to build purge list: {e}")
            logger.error(error.message)
            return 0

        self._built = True
        count = self.purge_count()
        logger.info(f"Found {count} purged marker(s) across all libraries")
        return count

    async def purges_for_section(self, section_id: int) -> list[PurgedMarker]:
        """
        Every known purge in a library section, with item metadata filled in.
        """
        if not self._built:
            await self.build_all_purges()

        section_uuid = self.backup.section_uuid(section_id)
        purges = self._section_purges(section_uuid)
        await self._backfill(purges)
        return sorted(purges, key=lambda p: (p.show_id, p.season_id, p.parent_id, p.start))

    async def _backfill(self, purges: list[PurgedMarker]) -> None:
        episodes = {p.parent_id for p in purges if p.show_id != -1 and p.episode_data is None}
        movies = {p.parent_id for p in purges if p.show_id == -1 and p.movie_data is None}
        if not episodes and not movies:
            return

        try:
            episode_data = {e.id: e for e in await self.plex.get_episodes_from_list(episodes)}
            movie_data = {m.id: m for m in await self.plex.get_movies_from_list(movies)}
        except (aiosqlite.Error, StorageError) as e:
            logger.warning(f"Unable to back-fill purged marker metadata: {e}")
            return

        for purge in purges:
            if purge.parent_id in episode_data:
                purge.episode_data = episode_data[purge.parent_id]
            elif purge.parent_id in movie_data:
                purge.movie_data = movie_data[purge.parent_id]

    async def restore_purges(
        self,
        marker_ids: list[int],
        section_id: int,
        resolve_type: BulkMarkerResolveType = BulkMarkerResolveType.FAIL,
    ) -> BulkRestoreResult:
        """Restore purged markers, then drop them from the purge tree and add them to the cache."""
        result = await self.backup.restore_markers(marker_ids, section_id, resolve_type)
        section_uuid = self.backup.section_uuid(section_id)
        for restored in result.new_markers:
            self._remove_from_tree(section_uuid, restored.old_marker_id)
            if self.cache is not None and self.cache.built:
                self.cache.add_marker(restored.marker)
        for identical in result.identical_markers:
            self._remove_from_tree(section_uuid, identical.old_marker_id)
        return result

    async def ignore_purges(self, marker_ids: list[int], section_id: int) -> int:
        ignored = await self.backup.ignore_purges(marker_ids, section_id)
        section_uuid = self.backup.section_uuid(section_id)
        for marker_id in marker_ids:
            self._remove_from_tree(section_uuid, marker_id)
        return ignored

    def purge_count(self) -> int:
        """Number of known purges across the whole server."""
        return sum(len(self._section_purges(section_uuid)) for section_uuid in self._tree)

    def clear(self) -> None:
        self._tree = {}
        self._built = False
