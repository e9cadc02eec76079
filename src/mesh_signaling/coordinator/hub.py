import base64
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import anyio
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from mesh_signaling.config import Settings
from mesh_signaling.coordinator.concurrent_websocket import (
    ConcurrentWebSocket,
    NonTextFrameError,
)
from mesh_signaling.coordinator.rooms import RoomRegistry
from mesh_signaling.messages import (
    Answer,
    Candidate,
    ChatMessage,
    ClientMessage,
    ErrorMessage,
    FileShare,
    JoinRoom,
    JoinedRoom,
    LeaveRoom,
    MemberInfo,
    NewFile,
    NewMessage,
    Offer,
    PingMessage,
    PongMessage,
    RelayAnswer,
    RelayCandidate,
    RelayOffer,
    ServerMessage,
    UserJoined,
    UserLeft,
)
from mesh_signaling.types import (
    Departure,
    Member,
    ParticipantId,
    RoomId,
    WebSocketProtocol,
    new_participant_id,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalingSession:
    """Handle for one transport connection, bound to the hub that owns it."""

    hub: "SignalingHub"
    participant_id: ParticipantId

    async def handle_message(self, message: ClientMessage) -> None:
        await self.hub.handle_message(self.participant_id, message)

    def send_error(self, error_code: str, message: str) -> None:
        self.hub.send_error(self.participant_id, error_code, message)

    def is_active(self) -> bool:
        return self.participant_id in self.hub.connections

    async def teardown(self) -> None:
        await self.hub.disconnect(self.participant_id)


class SignalingHub:
    """
    Relays negotiation messages between participants and drives presence.

    Owns the room registry and the live connection for every participant.
    Membership changes and the notifications they cause are queued under
    one lock, so a joiner's snapshot and the matching `user-joined`
    broadcast can never interleave with another join in the same room.
    """

    def __init__(self, settings: Settings | None = None):
        self.lock = anyio.Lock()
        self.registry = RoomRegistry()
        self.connections: dict[ParticipantId, ConcurrentWebSocket] = {}

        # Static for duration of this hub, doesn't require lock.
        self.settings = settings if settings is not None else Settings()

    # ---- connection lifecycle ----

    async def connect(self, cws: ConcurrentWebSocket) -> SignalingSession:
        participant_id = new_participant_id()

        async with self.lock:
            self.connections[participant_id] = cws

        logger.info(f"Participant connected: {participant_id}")
        return SignalingSession(hub=self, participant_id=participant_id)

    async def disconnect(self, participant_id: ParticipantId) -> None:
        """Leaves any room and forgets the connection. Idempotent."""
        async with self.lock:
            departure = self.registry.leave(participant_id)
            if departure is not None:
                self._announce_departure(departure)
            known = self.connections.pop(participant_id, None)

        if known is not None:
            logger.info(f"Participant disconnected: {participant_id}")

    # ---- dispatch ----

    async def handle_message(
        self, participant_id: ParticipantId, message: ClientMessage
    ) -> None:
        match message:
            case JoinRoom(name=name, room=room):
                await self.join(participant_id, name, room)
            case LeaveRoom():
                await self.leave(participant_id)
            case RelayOffer(target=target, session_description=sd):
                self.relay(
                    participant_id,
                    target,
                    lambda sender: Offer(
                        source=sender.id, session_description=sd, name=sender.name
                    ),
                )
            case RelayAnswer(target=target, session_description=sd):
                self.relay(
                    participant_id,
                    target,
                    lambda sender: Answer(source=sender.id, session_description=sd),
                )
            case RelayCandidate(target=target, candidate=candidate):
                self.relay(
                    participant_id,
                    target,
                    lambda sender: Candidate(source=sender.id, candidate=candidate),
                )
            case ChatMessage(message=text):
                self.broadcast_chat(participant_id, text)
            case FileShare():
                self.broadcast_file(participant_id, message)
            case PingMessage():
                self._post(participant_id, PongMessage())

    # ---- presence ----

    async def join(self, participant_id: ParticipantId, name: str, room: str) -> bool:
        name, room = name.strip(), room.strip()
        if not name or not room:
            self.send_error(participant_id, "invalid_join", "Name and room are required")
            return False

        member = Member(id=participant_id, name=name)

        async with self.lock:
            # Switching rooms is a full leave of the previous one
            departure = self.registry.leave(participant_id)
            if departure is not None:
                self._announce_departure(departure)

            others = self.registry.join(member, RoomId(room))

            # Joiner's snapshot is queued before anyone can learn about them
            self._post(
                participant_id,
                JoinedRoom(
                    room=room,
                    other_members=[MemberInfo(id=o.id, name=o.name) for o in others],
                ),
            )

            # Only the snapshot hears about the joiner; anyone who joins later
            # sees the joiner in their own snapshot instead.
            for other in others:
                self._post(other.id, UserJoined(id=participant_id, name=name))

        logger.info(
            f"User {name} ({participant_id}) joined room {room} with {len(others)} others"
        )
        return True

    async def leave(self, participant_id: ParticipantId) -> bool:
        async with self.lock:
            departure = self.registry.leave(participant_id)
            if departure is not None:
                self._announce_departure(departure)

        return departure is not None

    def _announce_departure(self, departure: Departure) -> None:
        for member in departure.remaining:
            self._post(
                member.id,
                UserLeft(id=departure.member.id, name=departure.member.name),
            )

        logger.info(
            f"User {departure.member.name} ({departure.member.id}) left room {departure.room}"
        )

    def members_of(self, room: str) -> list[Member]:
        return self.registry.members_of(RoomId(room))

    # ---- relay ----

    def relay(
        self,
        source: ParticipantId,
        target: str,
        build: Callable[[Member], ServerMessage],
    ) -> bool:
        """
        Forwards a negotiation message with the coordinator's view of the sender.

        Anything that cannot be routed is dropped without telling the sender.
        That covers a sender outside any room, a target that is gone or in
        another room, and a sender addressing itself.
        """
        sender = self.registry.member(source)
        if sender is None:
            logger.debug(f"Dropping relay from {source}: not in a room")
            return False

        target_id = ParticipantId(target)
        if target_id == source:
            logger.debug(f"Dropping relay from {source} addressed to itself")
            return False

        if self.registry.room_of(target_id) != self.registry.room_of(source):
            logger.debug(f"Dropping relay from {source} to {target}: not in the same room")
            return False

        message = build(sender)
        delivered = self._post(target_id, message)
        if delivered:
            logger.debug(f"Forwarded {message.type} from {source} to {target}")
        return delivered

    def broadcast_chat(self, participant_id: ParticipantId, text: str) -> None:
        sender = self._require_member(participant_id)
        if sender is None:
            return

        room = self.registry.room_of(participant_id)
        assert room is not None

        for member in self.registry.members_of(room):
            self._post(
                member.id, NewMessage(id=sender.id, name=sender.name, message=text)
            )

    def broadcast_file(self, participant_id: ParticipantId, share: FileShare) -> None:
        sender = self._require_member(participant_id)
        if sender is None:
            return

        try:
            size = len(base64.b64decode(share.file, validate=True))
        except ValueError:
            # binascii.Error, or non-ASCII characters in the string
            self.send_error(participant_id, "malformed_message", "File is not valid base64")
            return

        if size > self.settings.max_file_bytes:
            self.send_error(
                participant_id,
                "file_too_large",
                f"File exceeds {self.settings.max_file_bytes} bytes",
            )
            return

        room = self.registry.room_of(participant_id)
        assert room is not None

        logger.info(f"Sharing file {share.filename} ({size} bytes) in room {room}")
        for member in self.registry.members_of(room):
            self._post(
                member.id,
                NewFile(
                    id=sender.id,
                    name=sender.name,
                    file=share.file,
                    filename=share.filename,
                    filetype=share.filetype,
                ),
            )

    def _require_member(self, participant_id: ParticipantId) -> Optional[Member]:
        sender = self.registry.member(participant_id)
        if sender is None:
            self.send_error(participant_id, "not_in_room", "Join a room first")
        return sender

    # ---- delivery ----

    def send_error(self, participant_id: ParticipantId, error_code: str, message: str) -> None:
        logger.warning(f"Rejecting message from {participant_id}: {error_code}")
        self._post(participant_id, ErrorMessage(error_code=error_code, message=message))

    def _post(self, participant_id: ParticipantId, message: ServerMessage) -> bool:
        cws = self.connections.get(participant_id)
        if cws is None:
            logger.debug(f"Routing miss: {participant_id} is not connected")
            return False
        return cws.post(message)

    def get_connection_count(self) -> int:
        return len(self.connections)

    def get_room_count(self) -> int:
        return self.registry.get_room_count()


async def serve_connection(hub: SignalingHub, websocket: WebSocketProtocol) -> None:
    """
    Runs one accepted websocket until the client goes away.

    Malformed frames are answered with an error and the connection stays
    open. However the loop ends, the participant leaves its room.
    """
    cws = ConcurrentWebSocket(
        already_accepted_ws=websocket,
        message_buffer_size=hub.settings.message_buffer_size,
    )

    async with cws:
        session = await hub.connect(cws)
        try:
            while True:
                try:
                    message = await cws.receive_message()
                except ValidationError as e:
                    logger.warning(
                        f"Malformed message from {session.participant_id}: {e.error_count()} errors"
                    )
                    session.send_error("malformed_message", "Message could not be parsed")
                    continue
                except NonTextFrameError:
                    logger.warning(f"Binary frame from {session.participant_id}")
                    session.send_error("malformed_message", "Only text frames are accepted")
                    continue

                await session.handle_message(message)
        except WebSocketDisconnect:
            pass
        finally:
            with anyio.CancelScope(shield=True):
                await session.teardown()
