import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Protocol, Sequence, runtime_checkable

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamTrack

from mesh_signaling.config import ClientSettings
from mesh_signaling.messages import CandidateData, SessionDescription

logger = logging.getLogger(__name__)

type ConnectionStateCallback = Callable[[str], Awaitable[None]]
type LocalCandidateCallback = Callable[[Optional[CandidateData]], Awaitable[None]]
type TrackCallback = Callable[[MediaStreamTrack], Awaitable[None]]


@runtime_checkable
class PeerTransport(Protocol):
    """The direct peer connection a PeerSession negotiates over."""

    async def create_offer(self) -> SessionDescription: ...
    async def create_answer(self) -> SessionDescription: ...
    async def set_remote_description(self, description: SessionDescription) -> None: ...
    async def add_remote_candidate(self, candidate: Optional[CandidateData]) -> None: ...
    async def get_stats(self) -> Mapping[str, object]: ...
    async def close(self) -> None: ...

    def on_connection_state(self, callback: ConnectionStateCallback) -> None: ...
    def on_local_candidate(self, callback: LocalCandidateCallback) -> None: ...
    def on_track(self, callback: TrackCallback) -> None: ...


type PeerTransportFactory = Callable[[], PeerTransport]


@dataclass
class ICECandidate:
    foundation: str
    component: int
    protocol: str
    priority: int
    ip: str
    port: int
    ice_type: str


def parse_candidate(candidate_str: str) -> Optional[ICECandidate]:
    """Parse ICE candidate string into components"""
    parts = candidate_str.split()

    if len(parts) == 0:
        return None

    return ICECandidate(
        foundation=parts[0].removeprefix("candidate:"),
        component=int(parts[1]),
        protocol=parts[2].lower(),
        priority=int(parts[3]),
        ip=parts[4],
        port=int(parts[5]),
        ice_type=parts[7],
    )


class AiortcPeerTransport:
    """
    PeerTransport backed by aiortc.

    aiortc gathers every local candidate while setting the local description
    and ships them inside the SDP, so on_local_candidate never fires. Remote
    peers that trickle candidates (browsers) are still handled.
    """

    def __init__(
        self,
        ice_servers: Sequence[str] = (),
        tracks: Sequence[MediaStreamTrack] = (),
    ):
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=[url]) for url in ice_servers]
        )
        self._pc = RTCPeerConnection(configuration=configuration)

        for track in tracks:
            self._pc.addTrack(track)

    def on_connection_state(self, callback: ConnectionStateCallback) -> None:
        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange():
            await callback(self._pc.connectionState)

    def on_local_candidate(self, callback: LocalCandidateCallback) -> None:
        # Candidates travel inside the SDP with aiortc.
        _ = callback

    def on_track(self, callback: TrackCallback) -> None:
        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack):
            await callback(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_remote_candidate(self, candidate: Optional[CandidateData]) -> None:
        parsed = parse_candidate(candidate.candidate) if candidate is not None else None

        if candidate is None or parsed is None:
            # No more candidates
            await self._pc.addIceCandidate(None)
            return

        await self._pc.addIceCandidate(
            RTCIceCandidate(
                foundation=parsed.foundation,
                component=parsed.component,
                protocol=parsed.protocol,
                priority=parsed.priority,
                ip=parsed.ip,
                port=parsed.port,
                type=parsed.ice_type,
                sdpMid=candidate.sdp_mid,
                sdpMLineIndex=candidate.sdp_m_line_index,
            )
        )

    async def get_stats(self) -> Mapping[str, object]:
        return await self._pc.getStats()

    async def close(self) -> None:
        await self._pc.close()

    def _local_description(self) -> SessionDescription:
        local = self._pc.localDescription
        assert local is not None, "local description is set right before this"
        return SessionDescription(sdp=local.sdp, type=local.type)


def aiortc_transport_factory(
    settings: ClientSettings,
    tracks: Sequence[MediaStreamTrack] = (),
) -> PeerTransportFactory:
    """
    Builds transports that each carry their own subscription to the local
    capture tracks, so one source can feed every peer in the mesh.
    """
    relay = MediaRelay()

    def factory() -> PeerTransport:
        return AiortcPeerTransport(
            ice_servers=settings.ice_servers,
            tracks=[relay.subscribe(track) for track in tracks],
        )

    return factory
