"""Plex database queries and marker mutations"""

import aiosqlite
import pytest

from conftest import (
    EPISODE_DURATION,
    MARKER_TAG_ID,
    MOVIE_ID,
    SEASON_ONE,
    SEASON_TWO,
    SHOW_ID,
    add_tagging,
    block_taggings,
    stored_ranges,
)
from marker_editor.database.transaction import Transaction
from marker_editor.errors import MarkerConflictError, MarkerValidationError, NotFoundError, StorageError
from marker_editor.models import BulkMarkerResolveType, MarkerType, MetadataType, RestoreCandidate
from marker_editor.services.plex_queries import PlexQueryService


class TestSetup:
    """Database verification and library browsing"""

    async def test_initialize_finds_marker_tag(self, plex):
        assert plex.marker_tag_id == MARKER_TAG_ID

    async def test_initialize_without_marker_tag(self, plex_db):
        async with aiosqlite.connect(plex_db) as db:
            await db.execute("DELETE FROM tags WHERE tag_type = 12")
            await db.commit()

        with pytest.raises(StorageError):
            await PlexQueryService(db_path=str(plex_db)).initialize()

    async def test_libraries(self, plex):
        sections = await plex.get_libraries()
        assert {(s.id, s.type) for s in sections} == {(1, 2), (2, 1)}

    async def test_shows_and_seasons(self, plex):
        shows = await plex.get_shows(1)
        assert len(shows) == 1
        assert shows[0].season_count == 2
        assert shows[0].episode_count == 4

        seasons = await plex.get_seasons(SHOW_ID)
        assert [(s.id, s.episode_count) for s in seasons] == [(SEASON_ONE, 3), (SEASON_TWO, 1)]

    async def test_episodes(self, plex):
        episodes = await plex.get_episodes(SEASON_ONE)
        assert [e.id for e in episodes] == [12, 13, 14]
        assert episodes[0].duration == EPISODE_DURATION
        assert episodes[0].show == "The Show"
        assert episodes[0].season == "Season 1"

    async def test_movies(self, plex):
        movies = await plex.get_movies(2)
        assert [(m.id, m.year) for m in movies] == [(MOVIE_ID, 2000)]

    async def test_media_type(self, plex):
        info = await plex.get_media_type(SEASON_ONE)
        assert info.metadata_type == MetadataType.SEASON
        assert info.section_id == 1
        with pytest.raises(NotFoundError):
            await plex.get_media_type(999)

    async def test_item_from_guid(self, plex):
        item = await plex.get_item_from_guid("plex://episode/13")
        assert item == {"id": 13, "season_id": SEASON_ONE, "show_id": SHOW_ID, "section_id": 1}
        assert await plex.get_item_from_guid("plex://episode/missing") is None


class TestMarkerRows:
    """Decoding the modified/user-created flags from thumb_url"""

    async def test_untouched_plex_marker(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000)
        marker = (await plex.get_base_markers(12))[0]
        assert not marker.created_by_user
        assert marker.modified_at is None

    async def test_user_created_never_edited(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, thumb_url="-1600000000", created_at=1_600_000_000)
        marker = (await plex.get_base_markers(12))[0]
        assert marker.created_by_user
        assert marker.modified_at is None

    async def test_edited_plex_marker(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, thumb_url="1700000000")
        marker = (await plex.get_base_markers(12))[0]
        assert not marker.created_by_user
        assert marker.modified_at == 1_700_000_000

    async def test_final_credits(self, plex, plex_db):
        await add_tagging(plex_db, 12, 1_700_000, 1_800_000, "credits", extra_data="pv%3Afinal=1&pv%3Aversion=4")
        marker = (await plex.get_base_markers(12))[0]
        assert marker.marker_type == MarkerType.CREDITS
        assert marker.is_final


class TestAddMarker:
    """Adding a single marker"""

    async def test_add_to_empty_episode(self, plex, plex_db):
        result = await plex.add_marker(12, 0, 5000)
        marker = result.marker

        assert marker.index == 0
        assert (marker.start, marker.end) == (0, 5000)
        assert (marker.season_id, marker.show_id, marker.section_id) == (SEASON_ONE, SHOW_ID, 1)
        assert marker.created_by_user
        assert marker.parent_guid == "plex://episode/12"
        assert result.existing == []
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000)]

    async def test_add_to_movie(self, plex):
        marker = (await plex.add_marker(MOVIE_ID, 0, 5000)).marker
        assert (marker.season_id, marker.show_id, marker.section_id) == (-1, -1, 2)

    async def test_add_before_existing_reindexes(self, plex, plex_db):
        await add_tagging(plex_db, 12, 10000, 20000, index=0)
        result = await plex.add_marker(12, 0, 5000)

        assert result.marker.index == 0
        assert result.reindex.success
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (1, 10000, 20000)]

    async def test_overlap_is_rejected(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)

        with pytest.raises(MarkerConflictError):
            await plex.add_marker(12, 4000, 12000)
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (1, 10000, 20000)]

    async def test_abutting_marker_is_allowed(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        result = await plex.add_marker(12, 5000, 8000)
        assert result.marker.index == 1

    @pytest.mark.parametrize("start,end", [(-1, 5000), (5000, 5000), (6000, 5000)])
    async def test_bad_bounds(self, plex, plex_db, start, end):
        with pytest.raises(MarkerValidationError):
            await plex.add_marker(12, start, end)
        assert await stored_ranges(plex_db, 12) == []

    async def test_add_to_season(self, plex):
        with pytest.raises(MarkerValidationError):
            await plex.add_marker(SEASON_ONE, 0, 5000)

    async def test_add_to_unknown_item(self, plex):
        with pytest.raises(NotFoundError):
            await plex.add_marker(999, 0, 5000)

    async def test_final_marker_must_be_last(self, plex, plex_db):
        await add_tagging(plex_db, 12, 10000, 20000, index=0)
        with pytest.raises(MarkerValidationError):
            await plex.add_marker(12, 0, 5000, MarkerType.CREDITS, final=True)

        marker = (await plex.add_marker(12, 1_700_000, 1_800_000, MarkerType.CREDITS, final=True)).marker
        assert marker.is_final


class TestEditMarker:
    """Editing a single marker"""

    async def test_edit_reorders_siblings(self, plex, plex_db):
        first = await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)

        result = await plex.edit_marker(first, 30000, 40000, user_created=False)

        assert (result.old_start, result.old_end) == (0, 5000)
        assert result.marker.index == 1
        assert not result.marker.created_by_user
        assert result.marker.modified_at is not None
        assert await stored_ranges(plex_db, 12) == [(0, 10000, 20000), (1, 30000, 40000)]

    async def test_edit_overlap_is_rejected(self, plex, plex_db):
        first = await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)

        with pytest.raises(MarkerConflictError):
            await plex.edit_marker(first, 9000, 11000, user_created=False)
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (1, 10000, 20000)]

    async def test_edit_unknown_marker(self, plex):
        with pytest.raises(NotFoundError):
            await plex.edit_marker(999, 0, 5000, user_created=False)


class TestDeleteMarker:
    """Deleting a single marker"""

    async def test_delete_closes_index_gap(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        middle = await add_tagging(plex_db, 12, 10000, 20000, index=1)
        await add_tagging(plex_db, 12, 30000, 40000, index=2)

        result = await plex.delete_marker(middle)

        assert result.marker.id == middle
        assert result.sibling_count == 3
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (1, 30000, 40000)]

    async def test_delete_unknown_marker(self, plex):
        with pytest.raises(NotFoundError):
            await plex.delete_marker(999)


class TestShiftMarkers:
    """Shifting markers with duration clamping"""

    async def test_end_is_clamped_to_duration(self, plex, plex_db, durations):
        await add_tagging(plex_db, 12, 1000, 1_795_000)
        markers = await plex.get_base_markers(12)

        shifted = await plex.shift_markers({12: markers}, durations, 10000, 10000)

        assert [(m.start, m.end) for m in shifted] == [(11000, EPISODE_DURATION)]

    async def test_start_is_clamped_to_zero(self, plex, plex_db, durations):
        await add_tagging(plex_db, 12, 1000, 5000)
        markers = await plex.get_base_markers(12)

        shifted = await plex.shift_markers({12: markers}, durations, -2000, -2000)

        assert [(m.start, m.end) for m in shifted] == [(0, 3000)]

    async def test_marker_collapsed_by_clamping(self, plex, plex_db, durations):
        await add_tagging(plex_db, 12, 1_790_000, 1_799_000)
        markers = await plex.get_base_markers(12)

        with pytest.raises(MarkerConflictError):
            await plex.shift_markers({12: markers}, durations, 20000, 20000)
        assert await stored_ranges(plex_db, 12) == [(0, 1_790_000, 1_799_000)]

    async def test_shift_into_sibling(self, plex, plex_db, durations):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)
        first = (await plex.get_base_markers(12))[0]

        with pytest.raises(MarkerConflictError):
            await plex.shift_markers({12: [first]}, durations, 8000, 8000)

    async def test_shift_past_sibling_reindexes(self, plex, plex_db, durations):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)
        first = (await plex.get_base_markers(12))[0]

        await plex.shift_markers({12: [first]}, durations, 30000, 30000)

        assert await stored_ranges(plex_db, 12) == [(0, 10000, 20000), (1, 30000, 35000)]

    async def test_unknown_duration(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000)
        markers = await plex.get_base_markers(12)
        with pytest.raises(MarkerValidationError):
            await plex.shift_markers({12: markers}, {}, 1000, 1000)


class TestBulkDeleteAndReindex:
    """Bulk deletes followed by a reindex of the scope"""

    async def test_bulk_delete_then_reindex(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)
        await add_tagging(plex_db, 12, 30000, 40000, index=2)
        markers = await plex.get_base_markers(12)

        await plex.bulk_delete([markers[1]])
        result = await plex.reindex(12)

        assert result.success
        assert result.attempted == 1
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (1, 30000, 40000)]

    async def test_reindex_season(self, plex, plex_db):
        await add_tagging(plex_db, 12, 10000, 20000, index=7)
        await add_tagging(plex_db, 13, 0, 5000, index=3)

        await plex.reindex(SEASON_ONE)

        assert await stored_ranges(plex_db, 12) == [(0, 10000, 20000)]
        assert await stored_ranges(plex_db, 13) == [(0, 0, 5000)]


class TestBulkAdd:
    """Adding one marker to every episode of a season or show"""

    async def test_dry_run_writes_nothing(self, plex, plex_db):
        await add_tagging(plex_db, 12, 2000, 6000)

        result = await plex.bulk_add(SEASON_ONE, 0, 10000, resolve_type=BulkMarkerResolveType.DRY_RUN)

        assert not result.applied
        assert set(result.episode_map) == {12, 13, 14}
        assert len(result.episode_map[12].existing_markers) == 1
        assert result.conflict
        assert result.episode_map[12].conflict
        assert not result.episode_map[13].conflict
        assert await stored_ranges(plex_db, 13) == []

    async def test_fail_on_conflict(self, plex, plex_db):
        await add_tagging(plex_db, 12, 2000, 6000)

        result = await plex.bulk_add(SEASON_ONE, 0, 10000, resolve_type=BulkMarkerResolveType.FAIL)

        assert not result.applied
        assert result.conflict
        assert result.episode_map[12].conflict
        assert not result.episode_map[13].conflict
        assert await stored_ranges(plex_db, 13) == []

    async def test_ignore_conflicting_episodes(self, plex, plex_db):
        await add_tagging(plex_db, 12, 2000, 6000)

        result = await plex.bulk_add(SEASON_ONE, 0, 10000, resolve_type=BulkMarkerResolveType.IGNORE)

        assert result.applied
        assert 12 in result.ignored_episodes
        assert await stored_ranges(plex_db, 12) == [(0, 2000, 6000)]
        assert await stored_ranges(plex_db, 13) == [(0, 0, 10000)]
        assert await stored_ranges(plex_db, 14) == [(0, 0, 10000)]
        entry = result.episode_map[13]
        assert entry.is_add
        assert (entry.changed_marker.start, entry.changed_marker.end) == (0, 10000)

    async def test_merge_absorbs_colliding_markers(self, plex, plex_db):
        await add_tagging(plex_db, 12, 2000, 6000, index=0)
        absorbed = await add_tagging(plex_db, 12, 8000, 9000, index=1)
        await add_tagging(plex_db, 12, 20000, 30000, index=2)

        result = await plex.bulk_add(SEASON_ONE, 0, 10000, resolve_type=BulkMarkerResolveType.MERGE)

        assert result.applied
        entry = result.episode_map[12]
        assert not entry.is_add
        assert [m.id for m in entry.deleted_markers] == [absorbed]
        assert (entry.changed_marker.start, entry.changed_marker.end) == (0, 10000)
        assert await stored_ranges(plex_db, 12) == [(0, 0, 10000), (1, 20000, 30000)]
        assert await stored_ranges(plex_db, 13) == [(0, 0, 10000)]

    async def test_ignored_episodes_are_untouched(self, plex, plex_db):
        result = await plex.bulk_add(SEASON_ONE, 0, 10000, ignored=[13])

        assert result.applied
        assert 13 in result.ignored_episodes
        assert 13 not in result.episode_map
        assert await stored_ranges(plex_db, 13) == []
        assert await stored_ranges(plex_db, 12) == [(0, 0, 10000)]

    async def test_credits_clamped_and_final(self, plex, plex_db):
        result = await plex.bulk_add(SEASON_TWO, 1_790_000, 2_000_000, MarkerType.CREDITS)

        marker = result.episode_map[16].changed_marker
        assert (marker.start, marker.end) == (1_790_000, EPISODE_DURATION)
        assert marker.is_final

    async def test_credits_before_the_end_are_not_final(self, plex):
        result = await plex.bulk_add(SEASON_TWO, 1_000_000, 1_100_000, MarkerType.CREDITS)
        assert not result.episode_map[16].changed_marker.is_final

    async def test_start_after_episode_end(self, plex, plex_db):
        result = await plex.bulk_add(SEASON_TWO, 1_900_000, 2_000_000)

        assert result.applied
        assert result.ignored_episodes == [16]
        assert await stored_ranges(plex_db, 16) == []

    async def test_bulk_add_to_movie(self, plex):
        with pytest.raises(MarkerValidationError):
            await plex.bulk_add(MOVIE_ID, 0, 10000)


class TestBulkRestore:
    """Re-inserting purged markers"""

    async def test_identical_marker_is_not_duplicated(self, plex, plex_db):
        existing = await add_tagging(plex_db, 12, 0, 5000)
        candidate = RestoreCandidate(old_marker_id=100, parent_id=12, start=0, end=5000)

        result = await plex.bulk_restore({12: [candidate]})

        assert result.new_markers == []
        assert [(r.old_marker_id, r.marker.id) for r in result.identical_markers] == [(100, existing)]
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000)]

    async def test_restore_is_indexed_among_siblings(self, plex, plex_db):
        await add_tagging(plex_db, 12, 20000, 30000, index=0)
        candidate = RestoreCandidate(old_marker_id=100, parent_id=12, start=0, end=5000)

        result = await plex.bulk_restore({12: [candidate]})

        assert [r.old_marker_id for r in result.new_markers] == [100]
        assert result.new_markers[0].marker.index == 0
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (1, 20000, 30000)]

    async def test_duplicate_candidates_restore_once(self, plex, plex_db):
        candidates = [
            RestoreCandidate(old_marker_id=100, parent_id=12, start=0, end=5000),
            RestoreCandidate(old_marker_id=101, parent_id=12, start=0, end=5000),
        ]

        result = await plex.bulk_restore({12: candidates})

        assert [r.old_marker_id for r in result.new_markers] == [100]
        assert [r.old_marker_id for r in result.identical_markers] == [101]
        assert result.identical_markers[0].marker.id == result.new_markers[0].marker.id
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000)]

    async def test_overlap_fails(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000)
        candidate = RestoreCandidate(old_marker_id=100, parent_id=12, start=4000, end=8000)

        with pytest.raises(MarkerConflictError):
            await plex.bulk_restore({12: [candidate]})

    async def test_overlap_ignored(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000)
        candidate = RestoreCandidate(old_marker_id=100, parent_id=12, start=4000, end=8000)

        result = await plex.bulk_restore({12: [candidate]}, BulkMarkerResolveType.IGNORE)

        assert result.ignored_markers == [100]
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000)]

    async def test_merge_is_not_supported(self, plex):
        candidate = RestoreCandidate(old_marker_id=100, parent_id=12, start=0, end=5000)
        with pytest.raises(MarkerValidationError):
            await plex.bulk_restore({12: [candidate]}, BulkMarkerResolveType.MERGE)


class TestScenarios:
    """Ordering invariants across sequences of operations"""

    async def test_first_marker_of_an_episode(self, plex, plex_db):
        result = await plex.add_marker(12, 10000, 20000)
        assert result.marker.index == 0
        assert len(await plex.get_base_markers(12)) == 1

    async def test_delete_first_of_three(self, plex, plex_db):
        first = await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)
        await add_tagging(plex_db, 12, 30000, 40000, index=2)

        await plex.delete_marker(first)

        assert await stored_ranges(plex_db, 12) == [(0, 10000, 20000), (1, 30000, 40000)]

    async def test_indexes_stay_contiguous(self, plex):
        ids = []
        for start in (50000, 0, 20000, 80000, 10000):
            ids.append((await plex.add_marker(12, start, start + 5000)).marker.id)
        await plex.edit_marker(ids[1], 90000, 95000, user_created=True)
        await plex.delete_marker(ids[2])
        await plex.add_marker(12, 30000, 35000)
        await plex.edit_marker(ids[3], 1000, 2000, user_created=True)

        markers = await plex.get_base_markers(12)
        assert [m.index for m in markers] == list(range(len(markers)))
        assert all(a.end <= b.start for a, b in zip(markers, markers[1:]))


class TestHousekeepingFailures:
    """Primary writes survive failed sibling reindexing, bulk writes are all-or-nothing"""

    async def test_add_succeeds_when_sibling_reindex_fails(self, plex, plex_db):
        await add_tagging(plex_db, 12, 10000, 20000, index=0)
        await block_taggings(plex_db, "UPDATE OF `index`")

        result = await plex.add_marker(12, 0, 5000)

        assert result.marker.index == 0
        assert not result.reindex.success
        assert "blocked" in result.reindex.failures[0]
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000), (0, 10000, 20000)]

    async def test_delete_succeeds_when_sibling_reindex_fails(self, plex, plex_db):
        first = await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 12, 10000, 20000, index=1)
        await block_taggings(plex_db, "UPDATE OF `index`")

        result = await plex.delete_marker(first)

        assert result.marker.id == first
        assert not result.reindex.success
        assert await stored_ranges(plex_db, 12) == [(1, 10000, 20000)]

    async def test_reindex_reports_failure(self, plex, plex_db):
        await add_tagging(plex_db, 12, 10000, 20000, index=3)
        await block_taggings(plex_db, "UPDATE OF `index`")

        result = await plex.reindex(SEASON_ONE)

        assert not result.success
        assert result.attempted == 1

    async def test_failed_restore_applies_nothing(self, plex, plex_db):
        await block_taggings(plex_db, "INSERT", "NEW.time_offset = 20000")
        candidates = [
            RestoreCandidate(old_marker_id=100, parent_id=12, start=0, end=5000),
            RestoreCandidate(old_marker_id=101, parent_id=12, start=20000, end=30000),
        ]

        with pytest.raises(StorageError):
            await plex.bulk_restore({12: candidates})
        assert await stored_ranges(plex_db, 12) == []

    async def test_failed_bulk_delete_applies_nothing(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000, index=0)
        await add_tagging(plex_db, 13, 0, 5000, index=0)
        await block_taggings(plex_db, "DELETE", "OLD.metadata_item_id = 13")
        markers = await plex.get_season_markers(SEASON_ONE)

        with pytest.raises(StorageError):
            await plex.bulk_delete(markers)
        assert await stored_ranges(plex_db, 12) == [(0, 0, 5000)]
        assert await stored_ranges(plex_db, 13) == [(0, 0, 5000)]

    async def test_transaction_on_closed_connection(self, plex_db):
        db = await aiosqlite.connect(plex_db)
        await db.close()

        transaction = Transaction("closed").add("DELETE FROM taggings")
        with pytest.raises(StorageError):
            await transaction.execute(db)
