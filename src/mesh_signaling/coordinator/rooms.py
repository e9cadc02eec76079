import logging
from typing import Optional

from mesh_signaling.types import Departure, Member, ParticipantId, RoomId

logger = logging.getLogger(__name__)


class RoomRegistry:
    """
    Maps room identifiers to the participants currently joined.

    Every method runs to completion without awaiting, so on a single event
    loop each call is atomic with respect to other joins and leaves. Callers
    that need to pair a mutation with message delivery hold their own lock.

    A participant is in at most one room. Rooms are created on first join
    and dropped as soon as their last member leaves.
    """

    def __init__(self):
        self._rooms: dict[RoomId, dict[ParticipantId, Member]] = {}
        self._room_of: dict[ParticipantId, RoomId] = {}

    def join(self, member: Member, room: RoomId) -> list[Member]:
        """
        Adds the member to the room.

        Returns the members that were already present, taken in the same
        step as the add.

        Raises:
            ValueError: If the participant is already in a room.
        """
        current = self._room_of.get(member.id)
        if current is not None:
            raise ValueError(f"{member.id} is already in room {current}")

        members = self._rooms.setdefault(room, {})
        others = list(members.values())

        members[member.id] = member
        self._room_of[member.id] = room

        logger.debug(f"{member.id} joined {room} ({len(members)} members)")
        return others

    def leave(self, participant_id: ParticipantId) -> Optional[Departure]:
        """
        Removes the participant from whatever room it occupies.

        Safe to call any number of times; only the first call after a join
        returns a Departure, later calls return None.
        """
        room = self._room_of.pop(participant_id, None)
        if room is None:
            return None

        members = self._rooms[room]
        member = members.pop(participant_id)

        if not members:
            del self._rooms[room]
            logger.debug(f"Room {room} is empty, dropping it")

        return Departure(room=room, member=member, remaining=list(members.values()))

    def members_of(self, room: RoomId) -> list[Member]:
        return list(self._rooms.get(room, {}).values())

    def room_of(self, participant_id: ParticipantId) -> Optional[RoomId]:
        return self._room_of.get(participant_id)

    def member(self, participant_id: ParticipantId) -> Optional[Member]:
        room = self._room_of.get(participant_id)
        if room is None:
            return None
        return self._rooms[room][participant_id]

    def get_room_count(self) -> int:
        return len(self._rooms)
