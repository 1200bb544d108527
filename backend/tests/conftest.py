"""Test configuration and fixtures"""

from pathlib import Path
from typing import Optional

import aiosqlite
import pytest
import pytest_asyncio

from marker_editor.services.backup import BackupService
from marker_editor.services.marker_cache import MarkerCache
from marker_editor.services.markers import MarkerService
from marker_editor.services.plex_queries import PlexQueryService
from marker_editor.services.purges import PurgeService

EPISODE_DURATION = 1_800_000
MOVIE_DURATION = 7_200_000
MARKER_TAG_ID = 5

TV_SECTION = 1
MOVIE_SECTION = 2
SHOW_ID = 10
SEASON_ONE = 11
SEASON_TWO = 15
EPISODES = (12, 13, 14)
LONE_EPISODE = 16
MOVIE_ID = 20

_PLEX_SCHEMA = """
CREATE TABLE library_sections (
    id INTEGER PRIMARY KEY,
    name TEXT,
    section_type INTEGER,
    uuid TEXT
);
CREATE TABLE metadata_items (
    id INTEGER PRIMARY KEY,
    library_section_id INTEGER,
    parent_id INTEGER,
    metadata_type INTEGER,
    guid TEXT,
    title TEXT,
    title_sort TEXT,
    original_title TEXT,
    `index` INTEGER,
    year INTEGER
);
CREATE TABLE media_items (
    id INTEGER PRIMARY KEY,
    metadata_item_id INTEGER,
    duration INTEGER
);
CREATE TABLE tags (
    id INTEGER PRIMARY KEY,
    tag_type INTEGER,
    created_at INTEGER,
    updated_at INTEGER
);
CREATE TABLE taggings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    metadata_item_id INTEGER,
    tag_id INTEGER,
    `index` INTEGER,
    text TEXT,
    time_offset INTEGER,
    end_time_offset INTEGER,
    thumb_url TEXT,
    created_at INTEGER,
    extra_data TEXT
);
"""


async def seed_plex_db(path: Path) -> None:
    """A TV library with one show (two seasons) and a movie library with one movie."""
    async with aiosqlite.connect(path) as db:
        await db.executescript(_PLEX_SCHEMA)
        await db.executemany(
            "INSERT INTO library_sections (id, name, section_type, uuid) VALUES (?, ?, ?, ?)",
            [(TV_SECTION, "TV Shows", 2, "uuid-tv"), (MOVIE_SECTION, "Movies", 1, "uuid-movies")],
        )
        items = [
            (SHOW_ID, TV_SECTION, None, 2, "plex://show/10", "The Show", "Show, The", None, 1, None),
            (SEASON_ONE, TV_SECTION, SHOW_ID, 3, "plex://season/11", "Season 1", None, None, 1, None),
            (SEASON_TWO, TV_SECTION, SHOW_ID, 3, "plex://season/15", "Season 2", None, None, 2, None),
            (MOVIE_ID, MOVIE_SECTION, None, 1, "plex://movie/20", "The Movie", "Movie, The", None, None, 2000),
        ]
        for i, episode_id in enumerate(EPISODES, start=1):
            items.append(
                (episode_id, TV_SECTION, SEASON_ONE, 4, f"plex://episode/{episode_id}", f"Episode {i}", None, None, i, None)
            )
        items.append(
            (LONE_EPISODE, TV_SECTION, SEASON_TWO, 4, "plex://episode/16", "Episode 1", None, None, 1, None)
        )
        await db.executemany(
            """INSERT INTO metadata_items
               (id, library_section_id, parent_id, metadata_type, guid, title, title_sort, original_title, `index`, year)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            items,
        )
        media = [(episode_id, EPISODE_DURATION) for episode_id in (*EPISODES, LONE_EPISODE)]
        media.append((MOVIE_ID, MOVIE_DURATION))
        await db.executemany("INSERT INTO media_items (metadata_item_id, duration) VALUES (?, ?)", media)
        await db.executemany(
            "INSERT INTO tags (id, tag_type, created_at, updated_at) VALUES (?, ?, 0, 0)",
            [(1, 0), (MARKER_TAG_ID, 12)],
        )
        await db.commit()


async def add_tagging(
    path,
    item_id: int,
    start: int,
    end: int,
    marker_type: str = "intro",
    index: int = 0,
    thumb_url: str = "",
    created_at: int = 1_600_000_000,
    extra_data: Optional[str] = None,
) -> int:
    """Insert a marker row directly, bypassing every service."""
    if extra_data is None:
        extra_data = "pv%3Aversion=4" if marker_type == "credits" else "pv%3Aversion=5"
    async with aiosqlite.connect(path) as db:
        cursor = await db.execute(
            """INSERT INTO taggings
               (metadata_item_id, tag_id, `index`, text, time_offset, end_time_offset, thumb_url, created_at, extra_data)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (item_id, MARKER_TAG_ID, index, marker_type, start, end, thumb_url, created_at, extra_data),
        )
        await db.commit()
        return cursor.lastrowid


async def delete_tagging(path, marker_id: int) -> None:
    """Remove a marker behind the services' back, like a Plex rescan would."""
    async with aiosqlite.connect(path) as db:
        await db.execute("DELETE FROM taggings WHERE id = ?", (marker_id,))
        await db.commit()


async def stored_ranges(path, item_id: int) -> list[tuple[int, int, int]]:
    """(index, start, end) of every marker of an item, ordered by start."""
    async with aiosqlite.connect(path) as db:
        cursor = await db.execute(
            "SELECT `index`, time_offset, end_time_offset FROM taggings WHERE metadata_item_id = ? ORDER BY time_offset",
            (item_id,),
        )
        return [tuple(row) for row in await cursor.fetchall()]


async def block_taggings(path, event: str, condition: str = "1") -> None:
    """Make the database reject some writes to taggings, e.g. event="UPDATE OF `index`"."""
    async with aiosqlite.connect(path) as db:
        await db.execute(
            f"CREATE TRIGGER block_taggings BEFORE {event} ON taggings WHEN {condition} "
            "BEGIN SELECT RAISE(ABORT, 'blocked'); END"
        )
        await db.commit()


@pytest_asyncio.fixture
async def plex_db(tmp_path):
    path = tmp_path / "com.plexapp.plugins.library.db"
    await seed_plex_db(path)
    return path


@pytest_asyncio.fixture
async def plex(plex_db):
    service = PlexQueryService(db_path=str(plex_db))
    await service.initialize()
    return service


@pytest_asyncio.fixture
async def backup(plex, tmp_path):
    service = BackupService(db_path=str(tmp_path / "Backup" / "markerActions.db"), plex=plex)
    await service.initialize()
    return service


@pytest_asyncio.fixture
async def cache(plex):
    marker_cache = MarkerCache(plex)
    await marker_cache.build()
    return marker_cache


@pytest_asyncio.fixture
async def marker_service(plex, backup, cache):
    return MarkerService(plex=plex, backup=backup, cache=cache)


@pytest_asyncio.fixture
async def purges(backup, plex, cache):
    return PurgeService(backup=backup, plex=plex, cache=cache)


@pytest.fixture
def durations():
    return {episode_id: EPISODE_DURATION for episode_id in (*EPISODES, LONE_EPISODE)}
