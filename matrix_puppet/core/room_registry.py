"""
In-memory room state shared between the event router and the bridge.

Two maps are kept:
- membership: Matrix room id -> member user ids, overwritten on every
  membership update for that room
- third party bindings: Matrix room id -> external conversation id, written
  by the bridging application
"""
import logging
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Room membership and third party room bindings"""

    def __init__(self):
        self._members: Dict[str, List[str]] = {}
        self._third_party_rooms: Dict[str, str] = {}

    def bind_third_party_room(self, local_room_id: str, external_room_id: str) -> None:
        """Map a Matrix room to an external conversation (upsert)"""
        previous = self._third_party_rooms.get(local_room_id)
        self._third_party_rooms[local_room_id] = external_room_id
        if previous != external_room_id:
            logger.debug(
                f"Bound {local_room_id} to third party room {external_room_id}",
                extra={"previous": previous},
            )

    def third_party_room_id(self, local_room_id: str) -> Optional[str]:
        return self._third_party_rooms.get(local_room_id)

    def is_bound(self, local_room_id: str) -> bool:
        return local_room_id in self._third_party_rooms

    def replace_members(self, local_room_id: str, member_ids: Iterable[str]) -> None:
        # dict.fromkeys keeps first-seen order and drops repeats
        self._members[local_room_id] = list(dict.fromkeys(member_ids))

    def get_members(self, local_room_id: str) -> List[str]:
        """Members of a room, or an empty list if the room was never seen"""
        return list(self._members.get(local_room_id, []))

    def known_rooms(self) -> List[str]:
        return list(self._members)
