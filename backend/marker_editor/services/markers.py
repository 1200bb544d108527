"""Marker operations: single edits and bulk actions, kept in sync with the cache and the ledger."""

from collections import defaultdict
from typing import Optional

import aiosqlite

from marker_editor.errors import MarkerEditorError, MarkerValidationError
from marker_editor.logging import get_logger
from marker_editor.models import (
    BulkAddRequest,
    BulkAddResult,
    BulkDeleteRequest,
    BulkDeleteResult,
    BulkMarkerResolveType,
    EpisodeData,
    HousekeepingResult,
    Marker,
    MarkerCreate,
    MarkerType,
    MarkerUpdate,
    MetadataType,
    ShiftApplyType,
    ShiftRequest,
    ShiftResult,
)
from marker_editor.services.backup import BackupService
from marker_editor.services.marker_cache import MarkerCache
from marker_editor.services.plex_queries import PlexQueryService, check_bounds

logger = get_logger("services.markers")


def _downgrade_final(marker_type: MarkerType, final: bool) -> bool:
    if final and marker_type != MarkerType.CREDITS:
        logger.warning(f"Got a request for a 'final' {marker_type.value} marker, only credits can be final")
        return False
    return final


def check_overflow(
    markers: dict[int, list[Marker]],
    episode_data: dict[int, EpisodeData],
    start_shift: int,
    end_shift: int,
) -> bool:
    """
    Whether shifting would push any marker entirely outside its episode.

    A marker overflows if it would end at or before 0, start at or after the
    end of the episode, or end before it starts.
    """
    for episode_id, episode_markers in markers.items():
        duration = episode_data[episode_id].duration if episode_id in episode_data else 0
        for marker in episode_markers:
            new_start = marker.start + start_shift
            new_end = marker.end + end_shift
            if new_end <= 0 or new_start >= duration or new_end <= new_start:
                return True
    return False


class MarkerService:
    """
    Entry point for every marker mutation.

    Writes go to Plex first. On success the cache is updated and the action
    is recorded in the ledger. Neither of those can fail the operation.
    """

    def __init__(
        self,
        plex: PlexQueryService,
        backup: Optional[BackupService] = None,
        cache: Optional[MarkerCache] = None,
    ):
        self.plex = plex
        self.backup = backup
        self.cache = cache

    def _cache_ready(self) -> bool:
        return self.cache is not None and self.cache.built

    # ----- Single markers -----

    async def add_marker(self, data: MarkerCreate) -> Marker:
        check_bounds(data.start, data.end)
        final = _downgrade_final(data.marker_type, data.final)

        result = await self.plex.add_marker(data.metadata_id, data.start, data.end, data.marker_type, final)
        marker = result.marker
        if self._cache_ready():
            self.cache.add_marker(marker)
        if self.backup is not None:
            await self.backup.record_adds([marker])

        logger.info(f"Added {marker.marker_type.value} marker to item {data.metadata_id} [{data.start}-{data.end}]")
        return marker

    async def edit_marker(self, marker_id: int, data: MarkerUpdate) -> Marker:
        check_bounds(data.start, data.end)
        final = _downgrade_final(data.marker_type, data.final)

        result = await self.plex.edit_marker(
            marker_id, data.start, data.end, data.user_created, data.marker_type, final
        )
        marker = result.marker
        if self._cache_ready():
            self.cache.update_marker_type(marker)
        if self.backup is not None:
            await self.backup.record_edits([marker], {marker.id: (result.old_start, result.old_end)})

        logger.info(
            f"Edited marker {marker_id} for item {marker.parent_id}, "
            f"was [{result.old_start}-{result.old_end}], now [{data.start}-{data.end}]"
        )
        return marker

    async def delete_marker(self, marker_id: int) -> Marker:
        result = await self.plex.delete_marker(marker_id)
        marker = result.marker
        if self._cache_ready():
            self.cache.remove_marker(marker_id)
        if self.backup is not None:
            await self.backup.record_deletes([marker])

        logger.info(f"Deleted marker {marker_id} from item {marker.parent_id} [{marker.start}-{marker.end}]")
        return marker

    # ----- Bulk operations -----

    async def shift_markers(self, request: ShiftRequest) -> ShiftResult:
        """
        Shift every marker under a show, season or episode.

        Nothing is written when applying is disabled, when any marker would
        overflow, or for TryApply when some episode has more than one marker
        to shift. The result then carries the data needed to decide.
        """
        info = await self.plex.get_markers_auto(request.metadata_id)
        if info.metadata_type == MetadataType.MOVIE:
            raise MarkerValidationError("Shifting markers isn't supported for movies")
        if info.metadata_type not in (MetadataType.SHOW, MetadataType.SEASON, MetadataType.EPISODE):
            raise MarkerValidationError(f"Item {request.metadata_id} is not a show, season, or episode")

        ignored = set(request.ignored)
        to_shift: dict[int, list[Marker]] = defaultdict(list)
        conflict = False
        for marker in info.markers:
            if marker.id in ignored:
                continue
            if to_shift.get(marker.parent_id):
                conflict = True
            to_shift[marker.parent_id].append(marker)

        episode_data = {e.id: e for e in await self.plex.get_episodes_from_list(to_shift.keys())}
        overflow = check_overflow(to_shift, episode_data, request.start_shift, request.end_shift)

        if (
            request.apply_type == ShiftApplyType.DONT_APPLY
            or overflow
            or (request.apply_type == ShiftApplyType.TRY_APPLY and conflict)
        ):
            return ShiftResult(
                applied=False,
                conflict=conflict,
                overflow=overflow,
                all_markers=info.markers,
                episode_data=episode_data,
            )

        if conflict:
            logger.debug("Applying shift even though some episodes have multiple markers")

        durations = {episode_id: e.duration for episode_id, e in episode_data.items()}
        shifted = await self.plex.shift_markers(dict(to_shift), durations, request.start_shift, request.end_shift)

        if self.backup is not None:
            old_ranges = {m.id: (m.start, m.end) for m in info.markers}
            await self.backup.record_edits(shifted, old_ranges)

        logger.info(
            f"Shifted {len(shifted)} markers for item {request.metadata_id} "
            f"[start_shift={request.start_shift}, end_shift={request.end_shift}]"
        )
        return ShiftResult(applied=True, conflict=conflict, overflow=False, all_markers=shifted)

    async def bulk_delete(self, request: BulkDeleteRequest) -> BulkDeleteResult:
        """Delete every marker under a show, season or episode, except the ignored ones."""
        info = await self.plex.get_markers_auto(request.metadata_id)
        if info.metadata_type == MetadataType.MOVIE:
            raise MarkerValidationError("Bulk delete isn't supported for movies")
        if info.metadata_type not in (MetadataType.SHOW, MetadataType.SEASON, MetadataType.EPISODE):
            raise MarkerValidationError(f"Item {request.metadata_id} is not a show, season, or episode")

        ignored = set(request.ignored)
        to_delete = [m for m in info.markers if m.id not in ignored]

        if request.dry_run:
            episode_ids = {m.parent_id for m in info.markers}
            episode_data = {e.id: e for e in await self.plex.get_episodes_from_list(episode_ids)}
            return BulkDeleteResult(applied=False, markers=info.markers, episode_data=episode_data)

        await self.plex.bulk_delete(to_delete)
        if self._cache_ready():
            for marker in to_delete:
                self.cache.remove_marker(marker.id)
        if self.backup is not None:
            await self.backup.record_deletes(to_delete)

        reindex = await self.plex.reindex(request.metadata_id)
        deleted_ids = {m.id for m in to_delete}
        try:
            remaining = (await self.plex.get_markers_auto(request.metadata_id)).markers
        except (aiosqlite.Error, MarkerEditorError) as e:
            logger.warning(f"Deleted markers for item {request.metadata_id}, but survivors could not be read back: {e}")
            remaining = [m for m in info.markers if m.id not in deleted_ids]
            reindex = reindex.merge(HousekeepingResult.failed(0, str(e)))

        logger.info(
            f"Deleted {len(to_delete)} markers for item {request.metadata_id} "
            f"(explicitly ignored {len(ignored)})"
        )
        return BulkDeleteResult(
            applied=True,
            markers=remaining,
            deleted_markers=to_delete,
            reindex=reindex,
        )

    async def bulk_add(self, request: BulkAddRequest) -> BulkAddResult:
        """Add a marker to every episode under a show, season or episode."""
        if request.resolve_type != BulkMarkerResolveType.DRY_RUN:
            check_bounds(request.start, request.end)
        final = _downgrade_final(request.marker_type, request.final)

        before = await self.plex.get_markers_auto(request.metadata_id)
        result = await self.plex.bulk_add(
            request.metadata_id,
            request.start,
            request.end,
            request.marker_type,
            final,
            request.resolve_type,
            request.ignored,
        )
        if not result.applied:
            return result

        entries = result.episode_map.values()
        adds = [e.changed_marker for e in entries if e.changed_marker is not None and e.is_add]
        edits = [e.changed_marker for e in entries if e.changed_marker is not None and not e.is_add]
        deletes = [m for e in entries for m in e.deleted_markers]

        if self._cache_ready():
            for marker in deletes:
                self.cache.remove_marker(marker.id)
            for marker in adds:
                self.cache.add_marker(marker)
        if self.backup is not None:
            old_ranges = {m.id: (m.start, m.end) for m in before.markers}
            await self.backup.record_adds(adds)
            await self.backup.record_edits(edits, old_ranges)
            await self.backup.record_deletes(deletes)

        logger.info(
            f"Bulk added {request.marker_type.value} markers to item {request.metadata_id} "
            f"[{request.start}-{request.end}]: {len(adds)} added, {len(edits)} merged, {len(deletes)} absorbed"
        )
        return result
