"""
Per-node marker statistics.

A breakdown maps a *key* to the number of items (episodes or movies) whose
markers produce that key. Intro counts live in the low 12 bits of the key and
credits counts in the next 12, so an item with 2 intros and 1 credits marker
has key ``2 + (1 << 12)``.
"""

from marker_editor.logging import get_logger
from marker_editor.models import MarkerType

logger = get_logger('services.marker_breakdown')

INTRO_MASK = 0x000000FFF
CREDITS_MASK = 0x000FFF000
CREDITS_SHIFT = 12


def delta_from_type(delta: int, marker_type: str) -> int:
    """Key delta for adding (or removing, with a negative delta) one marker of the given type."""
    if marker_type == MarkerType.CREDITS:
        return delta << CREDITS_SHIFT
    if marker_type != MarkerType.INTRO:
        logger.error(f"Invalid marker type '{marker_type}', counting it as an intro")
    return delta


def intro_count(key: int) -> int:
    return key & INTRO_MASK


def credits_count(key: int) -> int:
    return (key & CREDITS_MASK) >> CREDITS_SHIFT


def marker_count_from_key(key: int) -> int:
    return intro_count(key) + credits_count(key)


class MarkerBreakdown:
    """Bucket counts for one cache node."""

    def __init__(self):
        self._counts: dict[int, int] = {0: 0}

    def init_base(self) -> None:
        """Register one more item with no markers."""
        self._counts[0] = self._counts.get(0, 0) + 1

    def delta(self, old_key: int, delta: int) -> None:
        """
        Move one item from ``old_key`` to ``old_key + delta``.

        :raises ValueError: If no item currently has ``old_key``
        """
        if self._counts.get(old_key, 0) <= 0:
            raise ValueError(f"No items with breakdown key {old_key} to move")
        self._counts[old_key] -= 1
        new_key = old_key + delta
        self._counts[new_key] = self._counts.get(new_key, 0) + 1

    def add_item(self, key: int, count: int = 1) -> None:
        self._counts[key] = self._counts.get(key, 0) + count

    def remove_item(self, key: int) -> None:
        if self._counts.get(key, 0) <= 0:
            raise ValueError(f"No items with breakdown key {key} to remove")
        self._counts[key] -= 1

    def buckets(self) -> int:
        return sum(1 for v in self._counts.values() if v != 0)

    def data(self) -> dict[int, int]:
        """Snapshot of the raw buckets with empty buckets pruned."""
        self._minify()
        return dict(self._counts)

    def collapsed_buckets(self) -> dict[int, int]:
        """Number of items with exactly N markers, regardless of type."""
        return self._buckets(marker_count_from_key)

    def intro_buckets(self) -> dict[int, int]:
        return self._buckets(intro_count)

    def credits_buckets(self) -> dict[int, int]:
        return self._buckets(credits_count)

    def total_items(self) -> int:
        return sum(self._counts.values())

    def total_markers(self) -> int:
        return sum(marker_count_from_key(k) * v for k, v in self._counts.items())

    def total_intros(self) -> int:
        return sum(intro_count(k) * v for k, v in self._counts.items())

    def total_credits(self) -> int:
        return sum(credits_count(k) * v for k, v in self._counts.items())

    def items_with_markers(self) -> int:
        return sum(v for k, v in self._counts.items() if k > 0)

    def _buckets(self, key_func) -> dict[int, int]:
        collapsed: dict[int, int] = {}
        for key, value in self._counts.items():
            if value == 0:
                continue
            real_key = key_func(key)
            collapsed[real_key] = collapsed.get(real_key, 0) + value
        return collapsed

    def _minify(self) -> None:
        for key in [k for k, v in self._counts.items() if v == 0]:
            del self._counts[key]
