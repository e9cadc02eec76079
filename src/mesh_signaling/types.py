from typing import NewType, Protocol, final, runtime_checkable
from dataclasses import dataclass
from ulid import ULID

#
## New Types
#

ParticipantId = NewType("ParticipantId", str)
RoomId = NewType("RoomId", str)


def new_participant_id() -> ParticipantId:
    """Opaque connection identity, assigned when the transport connects."""
    return ParticipantId(str(ULID()).lower())


@final
@dataclass(frozen=True)
class Member:
    """
    A participant as seen by the rest of its room.

    Attributes
    ----------
    id:
        identity assigned by the coordinator
    name:
        display name chosen at join, not unique
    """

    id: ParticipantId
    name: str


@dataclass(frozen=True)
class Departure:
    """Result of removing a participant from the room it occupied."""

    room: RoomId
    member: Member
    remaining: list[Member]


@runtime_checkable
class WebSocketProtocol(Protocol):
    async def send_text(self, data: str) -> None: ...
    async def receive_text(self) -> str: ...
    async def close(self) -> None: ...
