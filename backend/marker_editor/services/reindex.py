"""
Ordering and overlap rules for the markers of a single episode or movie.

Markers of one item are ordered by start time and carry a dense 0..N-1
index. Every function here is pure: it takes the current siblings and a
pending change and returns what the store should look like afterwards.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from marker_editor.models import Marker


@dataclass(frozen=True)
class IndexAssignment:
    marker_id: int
    old_index: int
    new_index: int

    @property
    def changed(self) -> bool:
        return self.old_index != self.new_index


@dataclass(frozen=True)
class ReindexPlan:
    """
    Result of placing a pending marker among its siblings.

    ``index`` is the pending marker's position, ``overlapping`` the first
    sibling it collides with (if any), and ``assignments`` the new indexes of
    the existing siblings.
    """
    index: int
    overlapping: Optional[Marker] = None
    assignments: tuple[IndexAssignment, ...] = field(default_factory=tuple)

    @property
    def has_overlap(self) -> bool:
        return self.overlapping is not None

    def changed(self) -> list[IndexAssignment]:
        return [a for a in self.assignments if a.changed]


def overlaps(start1: int, end1: int, start2: int, end2: int) -> bool:
    """
    Whether [start1, end1) and [start2, end2) intersect.

    Abutting ranges (end1 == start2) do not overlap.
    """
    return start1 < end2 and start2 < end1


def sort_by_start(markers: Iterable[Marker]) -> list[Marker]:
    """Stable sort by start time. Ties keep their incoming order."""
    return sorted(markers, key=lambda m: m.start)


def assign_indexes(markers: Iterable[Marker]) -> list[IndexAssignment]:
    """
    Compute dense indexes for one item's markers.

    :param markers: Every marker of a single episode or movie
    :type markers: Iterable[Marker]
    :return: One assignment per marker, in start order
    :rtype: list[IndexAssignment]
    """
    return [
        IndexAssignment(marker_id=m.id, old_index=m.index, new_index=i)
        for i, m in enumerate(sort_by_start(markers))
    ]


def reindex_for_add(siblings: Sequence[Marker], start: int, end: int) -> ReindexPlan:
    """
    Find where a new marker lands and whether it collides with a neighbor.

    :param siblings: Current markers of the item
    :type siblings: Sequence[Marker]
    :param start: Start of the new marker, in milliseconds
    :type start: int
    :param end: End of the new marker, in milliseconds
    :type end: int
    :return: The new marker's index, the sibling it overlaps (if any) and sibling index updates
    :rtype: ReindexPlan
    """
    ordered = sort_by_start(siblings)

    # A new marker sharing a start with an existing one goes after it.
    new_index = sum(1 for m in ordered if m.start <= start)

    overlapping = None
    if new_index > 0 and overlaps(ordered[new_index - 1].start, ordered[new_index - 1].end, start, end):
        overlapping = ordered[new_index - 1]
    elif new_index < len(ordered) and overlaps(ordered[new_index].start, ordered[new_index].end, start, end):
        overlapping = ordered[new_index]

    assignments = tuple(
        IndexAssignment(
            marker_id=m.id,
            old_index=m.index,
            new_index=i if i < new_index else i + 1,
        )
        for i, m in enumerate(ordered)
    )
    return ReindexPlan(index=new_index, overlapping=overlapping, assignments=assignments)


def reindex_for_edit(siblings: Sequence[Marker], marker_id: int, start: int, end: int) -> ReindexPlan:
    """
    Move an existing marker to a new range and reorder its siblings.

    Overlap is checked against every other sibling, not only the new neighbors.

    :raises KeyError: If ``marker_id`` is not one of the siblings
    """
    target = next((m for m in siblings if m.id == marker_id), None)
    if target is None:
        raise KeyError(marker_id)

    others = [m for m in siblings if m.id != marker_id]
    overlapping = next((m for m in sort_by_start(others) if overlaps(m.start, m.end, start, end)), None)

    edited = target.model_copy(update={"start": start, "end": end})
    ordered = sort_by_start(others + [edited])
    new_index = next(i for i, m in enumerate(ordered) if m.id == marker_id)
    assignments = tuple(
        IndexAssignment(marker_id=m.id, old_index=m.index, new_index=i)
        for i, m in enumerate(ordered)
        if m.id != marker_id
    )
    return ReindexPlan(index=new_index, overlapping=overlapping, assignments=assignments)


def reindex_for_delete(siblings: Sequence[Marker], marker_id: int) -> list[IndexAssignment]:
    """Indexes of the remaining siblings once ``marker_id`` is gone."""
    return assign_indexes(m for m in siblings if m.id != marker_id)


def find_overlaps(markers: Iterable[Marker]) -> list[tuple[Marker, Marker]]:
    """
    Adjacent pairs that overlap once sorted by start.

    Useful to validate a batch of changes before writing it.
    """
    ordered = sort_by_start(markers)
    return [
        (a, b) for a, b in zip(ordered, ordered[1:])
        if overlaps(a.start, a.end, b.start, b.end)
    ]


def is_contiguous(markers: Iterable[Marker]) -> bool:
    """Whether indexes are 0..N-1 in start order."""
    ordered = sort_by_start(markers)
    return all(m.index == i for i, m in enumerate(ordered))
