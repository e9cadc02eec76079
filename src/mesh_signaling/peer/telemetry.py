"""
Connection-quality sampling for established peer sessions.

Every interval the sampler reads a stats report from each connected
transport, reduces it to a QualitySnapshot and derives the receive bitrate
from the previous snapshot of the same peer. Only the latest snapshot per
peer is kept.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import anyio
import anyio.abc

from mesh_signaling.peer.transport import PeerTransport
from mesh_signaling.types import ParticipantId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualitySnapshot:
    # seconds since the epoch
    timestamp: float
    round_trip_time: Optional[float] = None
    jitter: Optional[float] = None
    packets_lost: Optional[int] = None
    bytes_received: Optional[int] = None
    frame_width: Optional[int] = None
    frame_height: Optional[int] = None
    frames_per_second: Optional[float] = None
    codec: Optional[str] = None


@dataclass(frozen=True)
class PeerStats:
    """What one sample reports for a peer. None means not available."""

    latency_ms: Optional[float]
    jitter_ms: Optional[float]
    packets_lost: Optional[int]
    bitrate_kbps: Optional[float]
    resolution: Optional[str]
    framerate: Optional[float]
    codec: Optional[str]

    @classmethod
    def from_snapshot(
        cls, snapshot: QualitySnapshot, bitrate_kbps: Optional[float]
    ) -> "PeerStats":
        resolution = None
        if snapshot.frame_width and snapshot.frame_height:
            resolution = f"{snapshot.frame_width}x{snapshot.frame_height}"

        return cls(
            latency_ms=_millis(snapshot.round_trip_time),
            jitter_ms=_millis(snapshot.jitter),
            packets_lost=snapshot.packets_lost,
            bitrate_kbps=bitrate_kbps,
            resolution=resolution,
            framerate=snapshot.frames_per_second,
            codec=snapshot.codec,
        )


type StatsCallback = Callable[[ParticipantId, PeerStats], Awaitable[None]]
type SampleTargets = Callable[[], Mapping[ParticipantId, PeerTransport]]


def compute_bitrate(
    previous: Optional[QualitySnapshot], current: QualitySnapshot
) -> Optional[float]:
    """
    Receive bitrate in kbps between two snapshots.

    None when there is no previous sample, no byte counters, no elapsed time,
    or the counter went backwards.
    """
    if previous is None:
        return None
    if previous.bytes_received is None or current.bytes_received is None:
        return None

    elapsed = current.timestamp - previous.timestamp
    if elapsed <= 0:
        return None

    received = current.bytes_received - previous.bytes_received
    if received < 0:
        return None

    return received * 8 / elapsed / 1000


def snapshot_from_report(report: Mapping[str, object]) -> QualitySnapshot:
    """
    Reduces a stats report to the metrics we track.

    Accepts aiortc stats objects as well as plain dicts shaped like the W3C
    stats dictionaries. Inbound video is preferred over inbound audio.
    """
    round_trip_time = None
    inbound = None
    transport_bytes = None
    fallback_timestamp = None

    for stat in report.values():
        kind = _field(stat, "type")
        fallback_timestamp = fallback_timestamp or _field(stat, "timestamp")

        if kind == "candidate-pair":
            if _field(stat, "state") == "succeeded" and _field(stat, "currentRoundTripTime"):
                round_trip_time = _field(stat, "currentRoundTripTime")
        elif kind == "remote-inbound-rtp" and round_trip_time is None:
            round_trip_time = _field(stat, "roundTripTime")
        elif kind == "inbound-rtp":
            if inbound is None or _media_kind(stat) == "video":
                inbound = stat
        elif kind == "transport":
            transport_bytes = _field(stat, "bytesReceived")

    if inbound is None:
        return QualitySnapshot(
            timestamp=_seconds(fallback_timestamp),
            round_trip_time=round_trip_time,
            bytes_received=transport_bytes,
        )

    codec = None
    codec_id = _field(inbound, "codecId")
    if codec_id and codec_id in report:
        mime_type = _field(report[codec_id], "mimeType")
        if mime_type:
            codec = str(mime_type).split("/")[-1]

    bytes_received = _field(inbound, "bytesReceived")
    if bytes_received is None:
        # aiortc only counts bytes on the transport
        bytes_received = transport_bytes

    return QualitySnapshot(
        timestamp=_seconds(_field(inbound, "timestamp") or fallback_timestamp),
        round_trip_time=round_trip_time,
        jitter=_field(inbound, "jitter"),
        packets_lost=_field(inbound, "packetsLost"),
        bytes_received=bytes_received,
        frame_width=_field(inbound, "frameWidth"),
        frame_height=_field(inbound, "frameHeight"),
        frames_per_second=_field(inbound, "framesPerSecond"),
        codec=codec,
    )


def _field(stat: object, name: str):
    if isinstance(stat, Mapping):
        return stat.get(name)
    return getattr(stat, name, None)


def _media_kind(stat: object):
    return _field(stat, "kind") or _field(stat, "mediaType")


def _seconds(timestamp) -> float:
    if isinstance(timestamp, datetime):
        return timestamp.timestamp()
    if isinstance(timestamp, (int, float)):
        # W3C stats timestamps are milliseconds
        return timestamp / 1000
    return 0.0


def _millis(seconds: Optional[float]) -> Optional[float]:
    return seconds * 1000 if seconds is not None else None


class TelemetrySampler:
    """
    Samples every connected peer on a fixed period.

    run() loops until stop() is called; stop() may be called any number of
    times. forget() drops a peer's retained snapshot as soon as its session
    closes.
    """

    def __init__(
        self,
        targets: SampleTargets,
        on_report: StatsCallback,
        interval: float = 3.0,
    ):
        self.interval = interval
        self._targets = targets
        self._on_report = on_report
        self._last: dict[ParticipantId, QualitySnapshot] = {}
        self._scope: anyio.CancelScope | None = None
        self._stopped = False

    async def run(
        self, *, task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        with anyio.CancelScope() as scope:
            self._scope = scope
            if self._stopped:
                scope.cancel()
            task_status.started()

            while True:
                await anyio.sleep(self.interval)
                await self.sample_once()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True

        if self._scope is not None:
            self._scope.cancel()
        self._last.clear()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def forget(self, peer_id: ParticipantId) -> None:
        self._last.pop(peer_id, None)

    def has_snapshot(self, peer_id: ParticipantId) -> bool:
        return peer_id in self._last

    async def sample_once(self) -> dict[ParticipantId, PeerStats]:
        results: dict[ParticipantId, PeerStats] = {}

        for peer_id, transport in list(self._targets().items()):
            try:
                report = await transport.get_stats()
            except Exception as e:
                logger.warning(f"Error getting stats for peer {peer_id}: {e}")
                continue

            # Session may have closed while we were waiting on it
            if self._stopped or peer_id not in self._targets():
                continue

            snapshot = snapshot_from_report(report)
            stats = PeerStats.from_snapshot(
                snapshot, compute_bitrate(self._last.get(peer_id), snapshot)
            )

            if snapshot.bytes_received is not None:
                self._last[peer_id] = snapshot

            results[peer_id] = stats
            await self._on_report(peer_id, stats)

        return results
