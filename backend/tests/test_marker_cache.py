"""In-memory marker statistics"""

from conftest import MOVIE_ID, SEASON_ONE, SEASON_TWO, SHOW_ID, add_tagging
from marker_editor.models import MarkerType
from marker_editor.services.marker_breakdown import CREDITS_SHIFT
from marker_editor.services.marker_cache import MarkerCache

CREDITS = 1 << CREDITS_SHIFT


class TestBuild:
    """Seeding the cache from the database"""

    async def test_empty_library(self, cache):
        assert cache.built
        assert cache.marker_count() == 0
        assert cache.get_section_overview(1) == {0: 4}
        assert cache.get_section_overview(2) == {0: 1}

    async def test_build_counts_existing_markers(self, plex, plex_db):
        await add_tagging(plex_db, 12, 0, 5000)
        await add_tagging(plex_db, 12, 1_700_000, 1_800_000, "credits", index=1)
        await add_tagging(plex_db, 13, 0, 5000)
        await add_tagging(plex_db, MOVIE_ID, 0, 5000)

        cache = MarkerCache(plex)
        await cache.build()

        assert cache.marker_count() == 4
        assert cache.get_section_overview(1) == {0: 2, 1: 1, 1 + CREDITS: 1}
        assert cache.get_section_overview(2) == {1: 1}
        assert cache.item_marker_count(12) == 2
        assert await cache.get_season_stats(SEASON_TWO) == {0: 1}

    async def test_clear_and_reinitialize(self, cache, plex_db):
        await add_tagging(plex_db, 12, 0, 5000)
        cache.clear()
        assert not cache.built
        assert cache.get_section_overview(1) is None

        await cache.reinitialize()
        assert cache.marker_count() == 1


class TestIncrementalUpdates:
    """Keeping the cache in step with live writes"""

    async def test_add_and_remove(self, plex, cache):
        marker = (await plex.add_marker(12, 0, 5000)).marker
        cache.add_marker(marker)

        assert cache.marker_exists(marker.id)
        assert cache.get_section_overview(1) == {0: 3, 1: 1}
        assert await cache.get_show_stats(SHOW_ID) == {0: 3, 1: 1}
        assert await cache.get_season_stats(SEASON_ONE) == {0: 2, 1: 1}

        cache.remove_marker(marker.id)
        assert not cache.marker_exists(marker.id)
        assert cache.get_section_overview(1) == {0: 4}

    async def test_duplicate_add_is_ignored(self, plex, cache):
        marker = (await plex.add_marker(12, 0, 5000)).marker
        cache.add_marker(marker)
        cache.add_marker(marker)
        assert cache.marker_count() == 1
        assert cache.get_section_overview(1) == {0: 3, 1: 1}

    async def test_type_change_moves_bucket(self, plex, cache):
        marker = (await plex.add_marker(12, 0, 5000)).marker
        cache.add_marker(marker)

        cache.update_marker_type(marker.model_copy(update={"marker_type": MarkerType.CREDITS}))

        assert cache.get_section_overview(1) == {0: 3, CREDITS: 1}

    async def test_nuke_section(self, plex, cache):
        for item_id in (12, 13):
            cache.add_marker((await plex.add_marker(item_id, 0, 5000)).marker)
        cache.add_marker((await plex.add_marker(MOVIE_ID, 0, 5000)).marker)

        assert cache.nuke_section(1) == 2
        assert cache.get_section_overview(1) == {0: 4}
        assert cache.get_section_overview(2) == {1: 1}

    async def test_cache_matches_fresh_scan(self, plex, cache):
        for item_id in (12, 13, 16):
            cache.add_marker((await plex.add_marker(item_id, 0, 5000)).marker)
        credits = (await plex.add_marker(12, 1_700_000, 1_800_000, MarkerType.CREDITS)).marker
        cache.add_marker(credits)
        cache.remove_marker(credits.id)
        await plex.delete_marker(credits.id)

        fresh = MarkerCache(plex)
        await fresh.build()
        assert cache.get_section_overview(1) == fresh.get_section_overview(1)
        assert await cache.get_tree_stats(SHOW_ID) == await fresh.get_tree_stats(SHOW_ID)


class TestLookups:
    """Show, season and tree statistics"""

    async def test_tree_stats(self, plex, cache):
        cache.add_marker((await plex.add_marker(16, 0, 5000)).marker)

        tree = await cache.get_tree_stats(SHOW_ID)

        assert tree.show_id == SHOW_ID
        assert tree.show == {0: 3, 1: 1}
        assert tree.seasons == {SEASON_ONE: {0: 3}, SEASON_TWO: {1: 1}}

    async def test_unknown_show(self, cache):
        assert await cache.get_show_stats(999) is None
        assert await cache.get_tree_stats(999) is None

    async def test_movie_stats_by_id(self, cache):
        assert await cache.get_show_stats(MOVIE_ID) == {0: 1}

    async def test_uncached_show_is_fetched(self, plex, plex_db):
        cache = MarkerCache(plex)
        cache.built = True
        await add_tagging(plex_db, 12, 0, 5000)

        assert await cache.get_show_stats(SHOW_ID) == {0: 3, 1: 1}
        assert cache.marker_exists(1)
