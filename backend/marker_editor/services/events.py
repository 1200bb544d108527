"""Real-time change notifications over Socket.IO."""

from typing import Iterable, Optional

import socketio

from marker_editor.logging import get_logger
from marker_editor.models import Marker

logger = get_logger("services.events")

MARKERS_CHANGED = "markers_changed"
PURGES_CHANGED = "purges_changed"


def section_room(section_id: int) -> str:
    return f"section:{section_id}"


class MarkerEventService:
    """
    Pushes marker and purge changes to clients watching a library section.

    Clients join the room of a section by connecting with ``?sectionId=<id>``.
    """

    def __init__(self, sio: Optional[socketio.AsyncServer] = None):
        self.sio = sio

    async def _emit(self, event: str, section_id: int, payload: dict) -> bool:
        if self.sio is None:
            return False
        try:
            await self.sio.emit(event, payload, room=section_room(section_id))
        except Exception as e:
            logger.warning(f"Failed to emit {event} for section {section_id}: {e}")
            return False
        return True

    async def markers_changed(self, action: str, markers: Iterable[Marker]) -> int:
        """
        Notify each affected section that some of its markers changed.

        :param action: What happened, e.g. ``add`` or ``bulk_delete``
        :type action: str
        :return: Number of sections notified
        :rtype: int
        """
        by_section: dict[int, list[Marker]] = {}
        for marker in markers:
            by_section.setdefault(marker.section_id, []).append(marker)

        sent = 0
        for section_id, section_markers in by_section.items():
            payload = {
                "action": action,
                "section_id": section_id,
                "markers": [m.model_dump(mode="json") for m in section_markers],
            }
            if await self._emit(MARKERS_CHANGED, section_id, payload):
                sent += 1
        return sent

    async def purges_changed(self, section_id: int, action: str, marker_ids: list[int]) -> bool:
        return await self._emit(
            PURGES_CHANGED,
            section_id,
            {"action": action, "section_id": section_id, "marker_ids": marker_ids},
        )
