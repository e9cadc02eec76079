import logging
from collections.abc import AsyncIterator
from typing import Optional

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed

from mesh_signaling.messages import ClientEnvelope, ClientMessage, ServerEnvelope, ServerMessage
from mesh_signaling.peer.manager import PeerSessionManager

logger = logging.getLogger(__name__)


class SignalingClient:
    """Websocket connection to the coordinator, speaking the envelope format."""

    def __init__(self, url: str):
        self.url = url
        self._websocket: Optional[ClientConnection] = None

    async def connect(self) -> "SignalingClient":
        self._websocket = await connect(self.url)
        logger.info(f"Connected to signaling server at {self.url}")
        return self

    async def aclose(self) -> None:
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None

    async def __aenter__(self) -> "SignalingClient":
        return await self.connect()

    async def __aexit__(self, et, ev, tb) -> None:
        await self.aclose()

    async def send(self, message: ClientMessage) -> None:
        if self._websocket is None:
            logger.warning(f"Not connected, dropping {message.type}")
            return
        try:
            await self._websocket.send(ClientEnvelope(message=message).to_json())
        except ConnectionClosed:
            logger.warning(f"Signaling connection closed, dropping {message.type}")

    async def events(self) -> AsyncIterator[ServerMessage]:
        """Yields server messages until the connection closes."""
        assert self._websocket is not None, "connect() first"

        try:
            async for raw in self._websocket:
                try:
                    yield ServerEnvelope.model_validate_json(raw).message
                except ValidationError as e:
                    logger.warning(f"Ignoring unparseable server message: {e.error_count()} errors")
        except ConnectionClosed:
            pass

        logger.info("Signaling connection closed")


async def run_client(client: SignalingClient, manager: PeerSessionManager) -> None:
    """Feeds server messages to the manager; drops every session when the server goes away."""
    try:
        async for event in client.events():
            await manager.handle_event(event)
    finally:
        await manager.teardown()
