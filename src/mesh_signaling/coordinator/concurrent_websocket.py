import logging

import anyio
import anyio.abc
from anyio import create_memory_object_stream
from anyio.streams.memory import MemoryObjectReceiveStream
from typing import Optional

from mesh_signaling.types import WebSocketProtocol
from mesh_signaling.messages import ClientEnvelope, ClientMessage, ServerEnvelope, ServerMessage

logger = logging.getLogger(__name__)


class NonTextFrameError(ValueError):
    """The client sent a binary frame where a JSON text frame was expected."""


class ConcurrentWebSocket:
    """
    Concurrency-safe websocket sender for AnyIO.

    - Multiple tasks can call send_* / post concurrently.
    - Exactly one background task touches ws.send_*, so messages leave in
      the order they were queued.
    - Bounded buffer for backpressure.
    - Clean shutdown (flushes channel, exits writer).

    Usage:
        cws = ConcurrentWebSocket(ws)
        await cws.start()
        await cws.send_message(model)
        await cws.receive_message()
        await cws.aclose()
    """

    def __init__(
        self,
        already_accepted_ws: WebSocketProtocol,
        *,
        message_buffer_size: int = 256,
    ):
        self._ws = already_accepted_ws
        self._send_to_client, self._recv_to_client = create_memory_object_stream[
            ServerMessage
        ](message_buffer_size)
        self._task_group: Optional[anyio.abc.TaskGroup] = None
        self._started = False
        self._closed = False

    # ---------- lifecycle ----------
    async def start(self) -> "ConcurrentWebSocket":
        if self._started:
            return self

        # We want to keep this open.
        self._task_group = await anyio.create_task_group().__aenter__()

        self._task_group.start_soon(self._writer, self._recv_to_client, self._ws)
        self._started = True
        return self

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Close the producer side so writer drains & exits
        await self._send_to_client.aclose()

        if self._task_group is not None:
            await self._task_group.__aexit__(None, None, None)
            self._task_group = None

    async def __aenter__(self) -> "ConcurrentWebSocket":
        return await self.start()

    async def __aexit__(self, et, ev, tb) -> None:
        await self.aclose()

    async def _writer(
        self,
        recieve_stream_to_client: MemoryObjectReceiveStream[ServerMessage],
        websocket: WebSocketProtocol,
    ) -> None:
        async with recieve_stream_to_client:
            async for msg in recieve_stream_to_client:
                try:
                    await websocket.send_text(ServerEnvelope(message=msg).to_json())
                except Exception as e:
                    # Peer went away; drop whatever is still queued.
                    logger.debug(f"Dropping outbound message, socket gone: {e}")
                    self._closed = True
                    return

        try:
            await websocket.close()
        except RuntimeError:
            # Already closed by the remote side
            pass

    async def send_message(self, message: ServerMessage) -> None:
        await self._send_to_client.send(message)

    def post(self, message: ServerMessage) -> bool:
        """
        Queue a message without yielding to the event loop.

        Returns False (and drops the message) when the connection is closed
        or its buffer is full.
        """
        if self._closed:
            return False
        try:
            self._send_to_client.send_nowait(message)
        except anyio.WouldBlock:
            logger.warning(f"Outbound buffer full, dropping {message.type} message")
            return False
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            return False
        return True

    async def receive_message(self) -> ClientMessage:
        try:
            msg = await self._ws.receive_text()
        except KeyError as e:
            # Starlette raises this when the frame carried bytes instead of text
            raise NonTextFrameError("Expected a text frame") from e
        recv_msg = ClientEnvelope.model_validate_json(msg)
        return recv_msg.message
