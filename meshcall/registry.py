import logging
import threading
from typing import Dict, List, Optional

from meshcall.models import Participant

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Process-wide map of room id -> participants, in join order.

    A single lock serializes every operation, so read-then-write sequences
    such as "snapshot the room, then add the newcomer" happen as one
    critical section. Records handed out are copies; callers never touch
    the stored ones.
    """

    def __init__(self):
        # room_id -> {connection_id: Participant}
        self.rooms: Dict[str, Dict[str, Participant]] = {}
        # connection_id -> room_id (a connection is in at most one room)
        self.connection_rooms: Dict[str, str] = {}
        self._lock = threading.RLock()

    def join(self, room_id: str, connection_id: str, display_name: str) -> None:
        self.admit(room_id, connection_id, display_name)

    def admit(self, room_id: str, connection_id: str, display_name: str) -> List[Participant]:
        """Join and return the room as it was before this connection entered it."""
        with self._lock:
            previous_room = self.connection_rooms.get(connection_id)
            if previous_room is not None and previous_room != room_id:
                self._remove(connection_id)

            room = self.rooms.setdefault(room_id, {})
            snapshot = [p.model_copy() for cid, p in room.items() if cid != connection_id]

            existing = room.get(connection_id)
            if existing is not None:
                existing.display_name = display_name
            else:
                room[connection_id] = Participant(connection_id=connection_id, display_name=display_name)
            self.connection_rooms[connection_id] = room_id

        logger.info(f"✅ {display_name} ({connection_id}) joined room {room_id}")
        return snapshot

    def leave(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self._remove(connection_id)

    def _remove(self, connection_id: str) -> Optional[str]:
        room_id = self.connection_rooms.pop(connection_id, None)
        if room_id is None:
            return None
        room = self.rooms.get(room_id, {})
        room.pop(connection_id, None)
        logger.info(f"❌ {connection_id} left room {room_id}")
        if not room:
            self.rooms.pop(room_id, None)
            logger.info(f"🗑️  Room {room_id} is now empty")
        return room_id

    def list_participants(self, room_id: str, exclude: Optional[str] = None) -> List[Participant]:
        with self._lock:
            return [
                p.model_copy()
                for cid, p in self.rooms.get(room_id, {}).items()
                if cid != exclude
            ]

    def update_media_state(self, connection_id: str, is_muted: bool, is_video_off: bool) -> Optional[Participant]:
        with self._lock:
            participant = self._find(connection_id)
            if participant is None:
                logger.warning(f"Media state update for unknown connection {connection_id}")
                return None
            participant.is_muted = is_muted
            participant.is_video_off = is_video_off
            return participant.model_copy()

    def rename(self, connection_id: str, display_name: str) -> Optional[Participant]:
        with self._lock:
            participant = self._find(connection_id)
            if participant is None:
                logger.warning(f"Rename for unknown connection {connection_id}")
                return None
            participant.display_name = display_name
            return participant.model_copy()

    def room_of(self, connection_id: str) -> Optional[str]:
        with self._lock:
            return self.connection_rooms.get(connection_id)

    def room_count(self, room_id: str) -> int:
        with self._lock:
            return len(self.rooms.get(room_id, {}))

    def room_list(self) -> List[dict]:
        with self._lock:
            return [
                {
                    "roomId": room_id,
                    "participantCount": len(room),
                    "participants": [p.to_wire() for p in room.values()],
                }
                for room_id, room in self.rooms.items()
            ]

    def _find(self, connection_id: str) -> Optional[Participant]:
        room_id = self.connection_rooms.get(connection_id)
        if room_id is None:
            return None
        return self.rooms.get(room_id, {}).get(connection_id)
