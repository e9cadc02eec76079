import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import anyio
import anyio.abc
from aiortc.mediastreams import MediaStreamTrack

from mesh_signaling.messages import (
    Answer,
    Candidate,
    ErrorMessage,
    JoinedRoom,
    JoinRoom,
    LeaveRoom,
    NewFile,
    NewMessage,
    Offer,
    PongMessage,
    ServerMessage,
    UserJoined,
    UserLeft,
)
from mesh_signaling.peer.session import (
    NegotiationState,
    PeerSession,
    SendCallback,
    StartOffer,
)
from mesh_signaling.peer.telemetry import PeerStats, TelemetrySampler
from mesh_signaling.peer.transport import PeerTransport, PeerTransportFactory
from mesh_signaling.types import ParticipantId

logger = logging.getLogger(__name__)


class InvalidJoinError(ValueError):
    """Name or room was empty after trimming; nothing was sent."""


@dataclass
class PeerHooks:
    """Optional callbacks for whatever presents the call."""

    on_track: Optional[Callable[[ParticipantId, MediaStreamTrack], Awaitable[None]]] = None
    on_peer_closed: Optional[Callable[[ParticipantId, str], Awaitable[None]]] = None
    on_stats: Optional[Callable[[ParticipantId, PeerStats], Awaitable[None]]] = None
    on_chat_message: Optional[Callable[[NewMessage], Awaitable[None]]] = None
    on_file: Optional[Callable[[NewFile], Awaitable[None]]] = None


class PeerSessionManager:
    """
    Keeps one PeerSession per remote participant in the current room.

    The side that learns about a newcomer through `user-joined` offers; the
    newcomer only answers. Sessions and the telemetry sampler run inside a
    task group that lives from start() to aclose().

    Usage:
        manager = PeerSessionManager(client.send, factory)
        async with manager:
            await manager.join("alice", "lobby")
            async for event in client.events():
                await manager.handle_event(event)
    """

    def __init__(
        self,
        send: SendCallback,
        transport_factory: PeerTransportFactory,
        *,
        stats_interval: float = 3.0,
        hooks: PeerHooks | None = None,
    ):
        self.sessions: dict[ParticipantId, PeerSession] = {}
        self.local_name: Optional[str] = None
        self.room: Optional[str] = None

        self._send = send
        self._transport_factory = transport_factory
        self._stats_interval = stats_interval
        self._hooks = hooks if hooks is not None else PeerHooks()
        self._sampler: Optional[TelemetrySampler] = None
        self._task_group: Optional[anyio.abc.TaskGroup] = None

    # ---------- lifecycle ----------
    async def start(self) -> "PeerSessionManager":
        if self._task_group is None:
            self._task_group = await anyio.create_task_group().__aenter__()
        return self

    async def aclose(self) -> None:
        await self.teardown()

        if self._task_group is not None:
            await self._task_group.__aexit__(None, None, None)
            self._task_group = None

    async def __aenter__(self) -> "PeerSessionManager":
        return await self.start()

    async def __aexit__(self, et, ev, tb) -> None:
        await self.aclose()

    # ---------- room ----------
    async def join(self, name: str, room: str) -> None:
        """
        Asks the coordinator to put us in a room.

        Raises:
            InvalidJoinError: If name or room is blank.
        """
        name, room = name.strip(), room.strip()
        if not name or not room:
            raise InvalidJoinError("Please enter a username and room code.")

        # The coordinator treats this as a leave of the previous room
        await self.teardown()

        self.local_name = name
        await self._send(JoinRoom(name=name, room=room))
        self._start_sampler()

    async def leave(self) -> None:
        """Leaves the current room. Calling it when not in a room does nothing."""
        if self.room is None and self._sampler is None and not self.sessions:
            return

        await self._send(LeaveRoom())
        await self.teardown()

    async def teardown(self) -> None:
        """Closes every session and stops sampling, without telling anyone."""
        self.room = None
        self._stop_sampler()

        for session in list(self.sessions.values()):
            await session.close("left")

    # ---------- signaling events ----------
    async def handle_event(self, message: ServerMessage) -> None:
        match message:
            case JoinedRoom(room=room, other_members=others):
                self.room = room
                # Existing members offer to us once they hear we joined
                logger.info(f"Joined room {room} with {len(others)} others")

            case UserJoined(id=peer_id, name=name):
                if not self._in_room(message):
                    return
                logger.info(f"{name} joined the room")
                session = self._get_or_create(ParticipantId(peer_id), name)
                if session.state is NegotiationState.CREATED:
                    session.deliver(StartOffer())

            case UserLeft(id=peer_id, name=name):
                logger.info(f"{name} left the room")
                session = self.sessions.get(ParticipantId(peer_id))
                if session is not None:
                    await session.close("left")

            case Offer(source=source, name=name):
                if not self._in_room(message):
                    return
                session = self._get_or_create(ParticipantId(source), name)
                session.deliver(message)

            case Answer(source=source) | Candidate(source=source):
                session = self.sessions.get(ParticipantId(source))
                if session is None:
                    logger.debug(f"Discarding {message.type} from {source}: no session")
                    return
                session.deliver(message)

            case NewMessage():
                if self._hooks.on_chat_message is not None:
                    await self._hooks.on_chat_message(message)
                else:
                    logger.info(f"{message.name}: {message.message}")

            case NewFile():
                if self._hooks.on_file is not None:
                    await self._hooks.on_file(message)
                else:
                    logger.info(f"{message.name} shared {message.filename}")

            case ErrorMessage(error_code=code, message=text):
                logger.warning(f"Coordinator rejected a message ({code}): {text}")

            case PongMessage():
                logger.debug("pong")

    def _in_room(self, message: ServerMessage) -> bool:
        if self.room is None:
            logger.debug(f"Discarding {message.type}: not in a room")
            return False
        return True

    # ---------- sessions ----------
    def _get_or_create(self, peer_id: ParticipantId, name: str) -> PeerSession:
        existing = self.sessions.get(peer_id)
        if existing is not None:
            return existing

        assert self._task_group is not None, "start() the manager first"

        transport = self._transport_factory()
        session = PeerSession(peer_id, name, transport, self._send, self._session_closed)

        async def on_track(track: MediaStreamTrack) -> None:
            logger.info(f"Received {track.kind} track from {name}")
            if self._hooks.on_track is not None:
                await self._hooks.on_track(peer_id, track)

        transport.on_track(on_track)

        self.sessions[peer_id] = session
        self._task_group.start_soon(session.run)
        return session

    async def _session_closed(self, session: PeerSession, reason: str) -> None:
        if self.sessions.get(session.remote_id) is session:
            del self.sessions[session.remote_id]

        if self._sampler is not None:
            self._sampler.forget(session.remote_id)

        if self._hooks.on_peer_closed is not None:
            await self._hooks.on_peer_closed(session.remote_id, reason)

    def connected_transports(self) -> dict[ParticipantId, PeerTransport]:
        return {
            peer_id: session.transport
            for peer_id, session in self.sessions.items()
            if session.state is NegotiationState.CONNECTED
        }

    # ---------- telemetry ----------
    def _start_sampler(self) -> None:
        assert self._task_group is not None, "start() the manager first"

        self._sampler = TelemetrySampler(
            self.connected_transports, self._report_stats, self._stats_interval
        )
        self._task_group.start_soon(self._sampler.run)

    def _stop_sampler(self) -> None:
        if self._sampler is not None:
            self._sampler.stop()
            self._sampler = None

    async def _report_stats(self, peer_id: ParticipantId, stats: PeerStats) -> None:
        if self._hooks.on_stats is not None:
            await self._hooks.on_stats(peer_id, stats)
        else:
            logger.debug(f"Stats for {peer_id}: {stats}")
