import argparse
import logging

import anyio
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from aiortc.mediastreams import MediaStreamTrack

from mesh_signaling.config import ClientSettings
from mesh_signaling.messages import ChatMessage
from mesh_signaling.peer.client import SignalingClient, run_client
from mesh_signaling.peer.manager import PeerHooks, PeerSessionManager
from mesh_signaling.peer.telemetry import PeerStats
from mesh_signaling.peer.transport import aiortc_transport_factory
from mesh_signaling.types import ParticipantId

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Join a mesh call from the command line")
    parser.add_argument("--name", required=True, help="display name")
    parser.add_argument("--room", required=True, help="room to join")
    parser.add_argument("--play", help="media file or device to send (default: receive only)")
    parser.add_argument("--format", help="input format for --play, e.g. v4l2")
    parser.add_argument("--say", help="chat message to send after joining")
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    settings = ClientSettings()

    tracks: list[MediaStreamTrack] = []
    if args.play:
        player = MediaPlayer(args.play, format=args.format)
        tracks = [t for t in (player.audio, player.video) if t is not None]

    blackhole = MediaBlackhole()

    async def on_track(peer_id: ParticipantId, track: MediaStreamTrack) -> None:
        blackhole.addTrack(track)
        await blackhole.start()

    async def on_stats(peer_id: ParticipantId, stats: PeerStats) -> None:
        logger.info(
            f"{peer_id}: {stats.latency_ms} ms, {stats.bitrate_kbps} kbps, "
            f"{stats.resolution} @ {stats.framerate} fps ({stats.codec})"
        )

    async with SignalingClient(settings.signaling_url) as client:
        manager = PeerSessionManager(
            client.send,
            aiortc_transport_factory(settings, tracks),
            stats_interval=settings.stats_interval_secs,
            hooks=PeerHooks(on_track=on_track, on_stats=on_stats),
        )
        async with manager:
            await manager.join(args.name, args.room)
            if args.say:
                await client.send(ChatMessage(message=args.say))
            try:
                await run_client(client, manager)
            finally:
                await blackhole.stop()


def run() -> None:
    try:
        anyio.run(main)
    except KeyboardInterrupt:
        logger.info("Interrupted, leaving")


if __name__ == "__main__":
    run()
