"""Append-only ledger of every marker action, used to detect and restore purged markers."""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional

import aiosqlite

from marker_editor.database.db import connect, init_backup_db
from marker_editor.database.transaction import Transaction
from marker_editor.errors import MarkerValidationError, NotFoundError, StorageError
from marker_editor.logging import get_logger
from marker_editor.models import (
    BulkMarkerResolveType,
    BulkRestoreResult,
    HousekeepingResult,
    Marker,
    MarkerAction,
    MarkerOp,
    MetadataType,
    RestoreCandidate,
    RestoredMarker,
)
from marker_editor.services.plex_queries import PlexQueryService

logger = get_logger("services.backup")

_INSERT_ACTION = """INSERT INTO actions
    (op, marker_id, episode_id, season_id, show_id, section_id, start, end, old_start, old_end,
     marker_type, final, modified_at, created_at, recorded_at, user_created, extra_data,
     section_uuid, episode_guid, restores_id)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

# Latest entry for every marker of a library instance.
_LATEST_ACTIONS = """
SELECT a.* FROM actions a
    INNER JOIN (
        SELECT marker_id, MAX(id) AS max_id FROM actions
        WHERE section_uuid = ?
        GROUP BY marker_id
    ) latest ON a.id = latest.max_id
"""

_SCOPE_COLUMNS = {
    MetadataType.MOVIE: "episode_id",
    MetadataType.EPISODE: "episode_id",
    MetadataType.SEASON: "season_id",
    MetadataType.SHOW: "show_id",
}


def _now() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def _row_to_action(row: dict) -> MarkerAction:
    return MarkerAction(
        id=row["id"],
        op=row["op"],
        marker_id=row["marker_id"],
        parent_id=row["episode_id"],
        season_id=row["season_id"],
        show_id=row["show_id"],
        section_id=row.get("section_id", -1),
        start=row["start"],
        end=row["end"],
        old_start=row.get("old_start"),
        old_end=row.get("old_end"),
        marker_type=row.get("marker_type") or "intro",
        final=bool(row.get("final")),
        modified_at=row.get("modified_at"),
        created_at=row.get("created_at"),
        recorded_at=row.get("recorded_at"),
        user_created=bool(row.get("user_created")),
        extra_data=row.get("extra_data"),
        section_uuid=row["section_uuid"],
        episode_guid=row.get("episode_guid"),
        restores_id=row.get("restores_id"),
        restored_id=row.get("restored_id"),
    )


class BackupService:
    """
    Records marker actions into an independent ledger database.

    Every query is scoped by the library section's UUID, so one ledger can
    track several distinct Plex installations without id collisions.
    Recording never raises: failures are logged and reported through a
    ``HousekeepingResult``, since the Plex write already succeeded.
    """

    def __init__(self, db_path: str, plex: PlexQueryService):
        self.db_path = db_path
        self.plex = plex
        self._uuids: dict[int, str] = {}

    async def _get_db(self) -> aiosqlite.Connection:
        try:
            return await connect(self.db_path)
        except aiosqlite.Error as e:
            raise StorageError.from_db_error(e, f"Unable to open backup database {self.db_path}") from e

    async def initialize(self) -> None:
        await init_backup_db(self.db_path)
        await self.refresh_sections()

    async def refresh_sections(self) -> dict[int, str]:
        self._uuids = {s.id: s.uuid for s in await self.plex.section_uuids()}
        return self._uuids

    def section_uuid(self, section_id: int) -> str:
        """
        :raises NotFoundError: If the section isn't a known library
        """
        uuid = self._uuids.get(section_id)
        if uuid is None:
            raise NotFoundError(f"Library section {section_id} not found")
        return uuid

    def section_ids(self) -> dict[int, str]:
        return dict(self._uuids)

    # ----- Recording -----

    def _action_params(
        self,
        op: MarkerOp,
        marker: Marker,
        uuid: str,
        old_range: Optional[tuple[int, int]] = None,
        restores_id: Optional[int] = None,
    ) -> tuple:
        return (
            op.value,
            marker.id,
            marker.parent_id,
            marker.season_id,
            marker.show_id,
            marker.section_id,
            marker.start,
            marker.end,
            old_range[0] if old_range else None,
            old_range[1] if old_range else None,
            marker.marker_type.value,
            int(marker.is_final),
            marker.modified_at,
            marker.created_at,
            _now(),
            int(marker.created_by_user),
            None,
            uuid,
            marker.parent_guid,
            restores_id,
        )

    async def _uuid_for(self, section_id: int) -> Optional[str]:
        if section_id not in self._uuids:
            await self.refresh_sections()
        return self._uuids.get(section_id)

    async def _record(
        self,
        op: MarkerOp,
        markers: list[Marker],
        old_ranges: Optional[dict[int, tuple[int, int]]] = None,
    ) -> HousekeepingResult:
        if not markers:
            return HousekeepingResult()

        try:
            transaction = Transaction(f"record_{op.name.lower()}")
            for marker in markers:
                uuid = await self._uuid_for(marker.section_id)
                if uuid is None:
                    logger.error(f"Unknown section {marker.section_id} for marker {marker.id}, not recording {op.name}")
                    continue
                old_range = old_ranges.get(marker.id) if old_ranges else None
                transaction.add(_INSERT_ACTION, self._action_params(op, marker, uuid, old_range))

            db = await self._get_db()
            try:
                await transaction.execute(db)
            finally:
                await db.close()
        except StorageError as e:
            logger.error(f"Unable to record {len(markers)} {op.name} action(s): {e.message}")
            return HousekeepingResult.failed(len(markers), e.message)

        logger.debug(f"Recorded {len(transaction)} {op.name} action(s)")
        return HousekeepingResult(
            success=len(transaction) == len(markers),
            attempted=len(markers),
            failures=[] if len(transaction) == len(markers) else ["unknown library section"],
        )

    async def record_adds(self, markers: list[Marker]) -> HousekeepingResult:
        return await self._record(MarkerOp.ADD, markers)

    async def record_edits(
        self, markers: list[Marker], old_ranges: dict[int, tuple[int, int]]
    ) -> HousekeepingResult:
        """
        :param old_ranges: Marker id to its (start, end) before the edit
        :type old_ranges: dict[int, tuple[int, int]]
        """
        return await self._record(MarkerOp.EDIT, markers, old_ranges)

    async def record_deletes(self, markers: list[Marker]) -> HousekeepingResult:
        return await self._record(MarkerOp.DELETE, markers)

    async def record_restores(self, restored: list[RestoredMarker], section_uuid: str) -> HousekeepingResult:
        """
        Append a Restore entry per marker and link the restored entries to it.

        Both halves run in one transaction.
        """
        if not restored:
            return HousekeepingResult()

        try:
            db = await self._get_db()
        except StorageError as e:
            logger.error(f"Unable to record {len(restored)} restore(s): {e.message}")
            return HousekeepingResult.failed(len(restored), e.message)

        try:
            latest = await self._latest_actions(db, [r.old_marker_id for r in restored], section_uuid)
            transaction = Transaction("record_restores")
            for entry in restored:
                transaction.add(
                    _INSERT_ACTION,
                    self._action_params(MarkerOp.RESTORE, entry.marker, section_uuid, restores_id=entry.old_marker_id),
                )
                old_action = latest.get(entry.old_marker_id)
                if old_action is None:
                    logger.warning(f"No ledger entry for restored marker {entry.old_marker_id}")
                    continue
                transaction.add(
                    "UPDATE actions SET restored_id = ? WHERE id = ?",
                    (entry.marker.id, old_action.id),
                )
            await transaction.execute(db)
        except aiosqlite.Error as e:
            logger.error(f"Unable to record {len(restored)} restore(s): {e}")
            return HousekeepingResult.failed(len(restored), str(e))
        except StorageError as e:
            logger.error(f"Unable to record {len(restored)} restore(s): {e.message}")
            return HousekeepingResult.failed(len(restored), e.message)
        finally:
            await db.close()

        logger.debug(f"Recorded {len(restored)} restore(s)")
        return HousekeepingResult(attempted=len(restored))

    # ----- Queries -----

    async def _latest_actions(
        self, db: aiosqlite.Connection, marker_ids: Iterable[int], section_uuid: str
    ) -> dict[int, MarkerAction]:
        ids = list(marker_ids)
        if not ids:
            return {}
        cursor = await db.execute(
            f"{_LATEST_ACTIONS} WHERE a.marker_id IN ({', '.join('?' for _ in ids)})",
            (section_uuid, *ids),
        )
        rows = await cursor.fetchall()
        return {row["marker_id"]: _row_to_action(dict(row)) for row in rows}

    async def latest_actions(self, marker_ids: Iterable[int], section_uuid: str) -> dict[int, MarkerAction]:
        db = await self._get_db()
        try:
            return await self._latest_actions(db, marker_ids, section_uuid)
        finally:
            await db.close()

    async def get_expected_markers(
        self,
        scope_id: Optional[int],
        scope_level: Optional[MetadataType],
        section_uuid: str,
    ) -> list[MarkerAction]:
        """
        Markers the ledger believes should exist under a scope.

        Only the latest entry per marker id counts. Markers whose latest entry
        is a Delete, or that were already restored or ignored, are excluded.

        :param scope_id: Episode/movie, season or show id. None for the whole section.
        :type scope_id: int | None
        :param scope_level: Metadata type of ``scope_id``
        :type scope_level: MetadataType | None
        :param section_uuid: The library instance to look in
        :type section_uuid: str
        :return: Latest ledger entry of every expected marker
        :rtype: list[MarkerAction]
        """
        query = f"{_LATEST_ACTIONS} WHERE a.op != ? AND a.restored_id IS NULL"
        params: list = [section_uuid, MarkerOp.DELETE.value]
        if scope_id is not None:
            column = _SCOPE_COLUMNS.get(scope_level)
            if column is None:
                raise MarkerValidationError(f"Can't look up expected markers for metadata type {scope_level}")
            query += f" AND a.{column} = ?"
            params.append(scope_id)
        query += " ORDER BY a.episode_id ASC, a.start ASC"

        db = await self._get_db()
        try:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [_row_to_action(dict(r)) for r in rows]
        finally:
            await db.close()

    async def tracked_section_uuids(self) -> list[str]:
        db = await self._get_db()
        try:
            cursor = await db.execute("SELECT DISTINCT section_uuid FROM actions")
            return [row["section_uuid"] for row in await cursor.fetchall()]
        finally:
            await db.close()

    async def get_marker_history(self, marker_id: int, section_uuid: str) -> list[MarkerAction]:
        db = await self._get_db()
        try:
            cursor = await db.execute(
                "SELECT * FROM actions WHERE marker_id = ? AND section_uuid = ? ORDER BY id ASC",
                (marker_id, section_uuid),
            )
            return [_row_to_action(dict(r)) for r in await cursor.fetchall()]
        finally:
            await db.close()

    # ----- Restore / ignore -----

    async def _resolve_parent(self, action: MarkerAction) -> Optional[int]:
        """Current id of the item a ledger entry belongs to, following its guid if Plex recreated it."""
        try:
            await self.plex.get_media_type(action.parent_id)
            return action.parent_id
        except NotFoundError:
            pass

        if action.episode_guid:
            item = await self.plex.get_item_from_guid(action.episode_guid)
            if item is not None:
                logger.info(f"Item {action.parent_id} now has id {item['id']} (guid {action.episode_guid})")
                return item["id"]
        return None

    async def restore_markers(
        self,
        old_marker_ids: list[int],
        section_id: int,
        resolve_type: BulkMarkerResolveType = BulkMarkerResolveType.FAIL,
    ) -> BulkRestoreResult:
        """
        Re-insert purged markers and record the restores.

        :param old_marker_ids: Ledger marker ids to restore
        :type old_marker_ids: list[int]
        :param section_id: Library section the markers belong to
        :type section_id: int
        :return: Restored and identical markers, each linked to its old marker id
        :rtype: BulkRestoreResult
        :raises NotFoundError: If none of the ids have a restorable ledger entry
        """
        uuid = self.section_uuid(section_id)
        latest = await self.latest_actions(old_marker_ids, uuid)
        restorable = [
            a for a in latest.values()
            if a.op != MarkerOp.DELETE and a.restored_id is None
        ]
        if len(restorable) != len(set(old_marker_ids)):
            logger.warning(
                f"Asked to restore {len(set(old_marker_ids))} markers, only {len(restorable)} are restorable"
            )
        if not restorable:
            raise NotFoundError("No restorable ledger entries for the given marker ids")

        candidates: dict[int, list[RestoreCandidate]] = defaultdict(list)
        skipped: list[int] = []
        for action in restorable:
            parent_id = await self._resolve_parent(action)
            if parent_id is None:
                logger.warning(f"Item {action.parent_id} of marker {action.marker_id} no longer exists, can't restore")
                skipped.append(action.marker_id)
                continue
            candidates[parent_id].append(
                RestoreCandidate(
                    old_marker_id=action.marker_id,
                    parent_id=parent_id,
                    start=action.start,
                    end=action.end,
                    marker_type=action.marker_type,
                    final=action.final,
                )
            )

        result = await self.plex.bulk_restore(dict(candidates), resolve_type)
        result.ignored_markers.extend(skipped)
        recorded = await self.record_restores(result.new_markers + result.identical_markers, uuid)
        if not recorded.success:
            logger.error("Markers were restored, but the ledger could not be updated")
        logger.info(
            f"Restored {len(result.new_markers)} markers "
            f"({len(result.identical_markers)} identical, {len(result.ignored_markers)} ignored)"
        )
        return result

    async def ignore_purges(self, old_marker_ids: list[int], section_id: int) -> int:
        """
        Permanently exclude purged markers from purge detection.

        :return: Number of ledger entries marked as ignored
        :rtype: int
        """
        uuid = self.section_uuid(section_id)
        db = await self._get_db()
        try:
            latest = await self._latest_actions(db, old_marker_ids, uuid)
            transaction = Transaction("ignore_purges")
            for action in latest.values():
                if action.op == MarkerOp.DELETE or action.restored_id is not None:
                    continue
                transaction.add("UPDATE actions SET restored_id = -1 WHERE id = ?", (action.id,))
            await transaction.execute(db)
        finally:
            await db.close()

        logger.info(f"Ignored {len(transaction)} purged markers in section {section_id}")
        return len(transaction)
