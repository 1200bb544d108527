"""
In-memory index of every marker in the Plex database.

Nodes live in a flat arena keyed by ``(level, id)``. Each node knows the key
of its parent, and count changes at a leaf are pushed to every ancestor by
``_propagate``. The cache is a projection of the Plex database and can be
thrown away and rebuilt at any time.
"""

from dataclasses import dataclass, field
from typing import Iterator, Optional

from marker_editor.logging import get_logger
from marker_editor.models import Marker, MarkerType, ShowBreakdownTree
from marker_editor.services.marker_breakdown import MarkerBreakdown, delta_from_type
from marker_editor.services.plex_queries import PlexQueryService

logger = get_logger("services.marker_cache")

SECTION = "section"
SHOW = "show"
SEASON = "season"
ITEM = "item"

NodeKey = tuple[str, int]


@dataclass
class CacheNode:
    key: NodeKey
    parent: Optional[NodeKey]
    section_id: int
    breakdown: MarkerBreakdown = field(default_factory=MarkerBreakdown)
    children: set[NodeKey] = field(default_factory=set)
    # Leaf nodes only: marker id -> marker type
    markers: dict[int, str] = field(default_factory=dict)

    def breakdown_key(self) -> int:
        return sum(delta_from_type(1, t) for t in self.markers.values())


class MarkerCache:
    """
    Section -> show -> season -> episode (or section -> movie) marker statistics.

    Lifecycle: ``build()`` once at startup, incremental ``add_marker`` /
    ``remove_marker`` while serving, ``reinitialize()`` to rebuild and
    ``clear()`` to tear down. A rebuild must never run while live updates are
    being applied.
    """

    def __init__(self, plex: PlexQueryService):
        self.plex = plex
        self._nodes: dict[NodeKey, CacheNode] = {}
        self._markers: dict[int, NodeKey] = {}
        self.built = False

    # ----- Lifecycle -----

    async def build(self) -> None:
        """Scan the whole Plex database and seed every node."""
        logger.info("Gathering markers...")
        items = await self.plex.get_base_items()
        markers = await self.plex.get_all_markers()
        self._load(items, markers)
        self.built = True
        logger.info(f"Cached {len(self._markers)} markers across {len(items)} items")

    async def reinitialize(self) -> None:
        self.clear()
        await self.build()

    def clear(self) -> None:
        self._nodes = {}
        self._markers = {}
        self.built = False

    def _load(self, items: list[dict], markers: list[Marker]) -> int:
        for item in items:
            self._ensure_item(item["parent_id"], item["season_id"], item["show_id"], item["section_id"])

        missing = 0
        added = 0
        for marker in markers:
            if (ITEM, marker.parent_id) not in self._nodes:
                missing += 1
                continue
            if marker.id in self._markers:
                continue
            self.add_marker(marker)
            added += 1

        if missing:
            logger.warning(f"Found {missing} marker(s) without an associated media item, these can't be tracked")
        return added

    # ----- Tree helpers -----

    def _ancestors(self, key: NodeKey) -> Iterator[CacheNode]:
        """The node itself followed by each of its ancestors."""
        current: Optional[NodeKey] = key
        while current is not None:
            node = self._nodes[current]
            yield node
            current = node.parent

    def _propagate(self, leaf_key: NodeKey, old_key: int, delta: int) -> None:
        for node in self._ancestors(leaf_key):
            node.breakdown.delta(old_key, delta)

    def _child(self, key: NodeKey, parent: Optional[NodeKey], section_id: int) -> tuple[CacheNode, bool]:
        node = self._nodes.get(key)
        if node is not None:
            return node, False
        node = CacheNode(key=key, parent=parent, section_id=section_id)
        self._nodes[key] = node
        if parent is not None:
            self._nodes[parent].children.add(key)
        return node, True

    def _ensure_item(self, item_id: int, season_id: int, show_id: int, section_id: int) -> CacheNode:
        section_key = (SECTION, section_id)
        self._child(section_key, None, section_id)
        if show_id == -1:
            parent = section_key
        else:
            self._child((SHOW, show_id), section_key, section_id)
            parent = (SEASON, season_id)
            self._child(parent, (SHOW, show_id), section_id)

        leaf, created = self._child((ITEM, item_id), parent, section_id)
        if created:
            for node in self._ancestors(leaf.key):
                node.breakdown.init_base()
        return leaf

    # ----- Incremental updates -----

    def add_marker(self, marker: Marker) -> None:
        """Track a marker that was just added to the database."""
        if marker.id in self._markers:
            logger.warning(f"Marker {marker.id} is already in the cache")
            return

        leaf = self._ensure_item(marker.parent_id, marker.season_id, marker.show_id, marker.section_id)
        marker_type = MarkerType(marker.marker_type).value
        self._propagate(leaf.key, leaf.breakdown_key(), delta_from_type(1, marker_type))
        leaf.markers[marker.id] = marker_type
        self._markers[marker.id] = leaf.key

    def remove_marker(self, marker_id: int) -> None:
        """Stop tracking a marker that was removed from the database."""
        leaf_key = self._markers.pop(marker_id, None)
        if leaf_key is None:
            logger.warning(f"Marker {marker_id} isn't in the cache, can't remove it")
            return

        leaf = self._nodes[leaf_key]
        marker_type = leaf.markers[marker_id]
        self._propagate(leaf_key, leaf.breakdown_key(), delta_from_type(-1, marker_type))
        del leaf.markers[marker_id]

    def update_marker_type(self, marker: Marker) -> None:
        """Re-bucket a marker whose type changed during an edit."""
        leaf_key = self._markers.get(marker.id)
        if leaf_key is None:
            self.add_marker(marker)
            return
        if self._nodes[leaf_key].markers[marker.id] != MarkerType(marker.marker_type).value:
            self.remove_marker(marker.id)
            self.add_marker(marker)

    def nuke_section(self, section_id: int, marker_type: Optional[MarkerType] = None) -> int:
        """
        Drop every marker of a section (optionally of one type) from the cache.

        :return: Number of markers removed
        :rtype: int
        """
        doomed = [
            marker_id for marker_id, key in self._markers.items()
            if self._nodes[key].section_id == section_id
            and (marker_type is None or self._nodes[key].markers[marker_id] == marker_type)
        ]
        for marker_id in doomed:
            self.remove_marker(marker_id)
        logger.info(f"Removed {len(doomed)} markers from the cache for section {section_id}")
        return len(doomed)

    # ----- Lookups -----

    def marker_exists(self, marker_id: int) -> bool:
        return marker_id in self._markers

    def base_item_exists(self, item_id: int) -> bool:
        return (ITEM, item_id) in self._nodes

    def item_marker_count(self, item_id: int) -> Optional[int]:
        node = self._nodes.get((ITEM, item_id))
        return len(node.markers) if node else None

    def marker_count(self) -> int:
        return len(self._markers)

    def get_section_overview(self, section_id: int) -> Optional[dict[int, int]]:
        node = self._nodes.get((SECTION, section_id))
        return node.breakdown.data() if node else None

    async def get_show_stats(self, show_id: int) -> Optional[dict[int, int]]:
        """
        Breakdown for a show, or for a movie when given a movie id.

        A show missing from the cache (added to Plex after the cache was
        built) is fetched and merged in.
        """
        node = self._nodes.get((SHOW, show_id)) or self._nodes.get((ITEM, show_id))
        if node is None:
            logger.info(f"Show {show_id} isn't cached, querying it directly")
            await self._try_update(show_id=show_id)
            node = self._nodes.get((SHOW, show_id))
        return node.breakdown.data() if node else None

    async def get_season_stats(self, season_id: int) -> Optional[dict[int, int]]:
        node = self._nodes.get((SEASON, season_id))
        if node is None:
            logger.info(f"Season {season_id} isn't cached, querying it directly")
            await self._try_update(season_id=season_id)
            node = self._nodes.get((SEASON, season_id))
        return node.breakdown.data() if node else None

    async def get_tree_stats(self, show_id: int) -> Optional[ShowBreakdownTree]:
        if (SHOW, show_id) not in self._nodes:
            await self._try_update(show_id=show_id)
        show = self._nodes.get((SHOW, show_id))
        if show is None:
            return None
        return ShowBreakdownTree(
            show_id=show_id,
            show=show.breakdown.data(),
            seasons={key[1]: self._nodes[key].breakdown.data() for key in sorted(show.children)},
        )

    async def _try_update(self, show_id: Optional[int] = None, season_id: Optional[int] = None) -> None:
        try:
            items = await self.plex.get_base_items(show_id=show_id, season_id=season_id)
            if show_id is not None:
                markers = await self.plex.get_show_markers(show_id)
            else:
                markers = await self.plex.get_season_markers(season_id)
        except Exception as e:
            logger.error(f"Unable to update marker cache for show={show_id} season={season_id}: {e}")
            return

        added = self._load(items, markers)
        logger.info(f"Cached {added} markers for show={show_id} season={season_id}")
