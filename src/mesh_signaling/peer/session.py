import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import anyio
import anyio.abc

from mesh_signaling.messages import (
    Answer,
    Candidate,
    CandidateData,
    ClientMessage,
    NegotiationMessage,
    NegotiationRequest,
    Offer,
    RelayAnswer,
    RelayCandidate,
    RelayOffer,
    SessionDescription,
)
from mesh_signaling.peer.transport import PeerTransport
from mesh_signaling.types import ParticipantId

logger = logging.getLogger(__name__)


class NegotiationState(Enum):
    CREATED = "created"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


_PROGRESS = {
    NegotiationState.CREATED: 0,
    NegotiationState.OFFER_SENT: 1,
    NegotiationState.OFFER_RECEIVED: 1,
    NegotiationState.NEGOTIATING: 2,
    NegotiationState.CONNECTED: 3,
    NegotiationState.CLOSED: 4,
}


@dataclass(frozen=True)
class StartOffer:
    """Asks a fresh session to make the first move."""


type SessionEvent = StartOffer | NegotiationMessage
type SendCallback = Callable[[ClientMessage], Awaitable[None]]
type ClosedCallback = Callable[["PeerSession", str], Awaitable[None]]


class PeerSession:
    """
    Negotiation with one remote participant.

    Events are handled one at a time by run(), in the order they were
    delivered. Remote candidates that arrive before the remote description
    are held back and applied right after it. Once closed, the session
    emits nothing further and ignores whatever is still in flight.
    """

    def __init__(
        self,
        remote_id: ParticipantId,
        remote_name: str,
        transport: PeerTransport,
        send: SendCallback,
        on_closed: ClosedCallback,
        *,
        inbox_size: int = 64,
    ):
        self.remote_id = remote_id
        self.remote_name = remote_name
        self.transport = transport
        self.state = NegotiationState.CREATED

        self._send = send
        self._on_closed = on_closed
        self._pending_candidates: list[Optional[CandidateData]] = []
        self._remote_description_set = False
        self._inbox_send, self._inbox_recv = anyio.create_memory_object_stream[
            SessionEvent
        ](inbox_size)
        self._scope: anyio.CancelScope | None = None

        transport.on_connection_state(self._connection_state_changed)
        transport.on_local_candidate(self._local_candidate)

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    def deliver(self, event: SessionEvent) -> bool:
        if self.closed:
            return False
        try:
            self._inbox_send.send_nowait(event)
        except anyio.WouldBlock:
            logger.warning(f"Inbox for {self.remote_id} is full, dropping {type(event).__name__}")
            return False
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            return False
        return True

    async def run(
        self, *, task_status: anyio.abc.TaskStatus[None] = anyio.TASK_STATUS_IGNORED
    ) -> None:
        with anyio.CancelScope() as scope:
            self._scope = scope
            if self.closed:
                scope.cancel()
            task_status.started()

            async with self._inbox_recv:
                async for event in self._inbox_recv:
                    try:
                        await self._handle(event)
                    except Exception as e:
                        logger.warning(f"Negotiation with {self.remote_id} failed: {e}")
                        await self.close("failed")

    async def close(self, reason: str = "closed") -> None:
        """Tears the session down. Only the first call has any effect."""
        if self.closed:
            return
        self.state = NegotiationState.CLOSED
        self._pending_candidates.clear()
        self._inbox_send.close()

        if self._scope is not None:
            self._scope.cancel()

        with anyio.CancelScope(shield=True):
            try:
                await self.transport.close()
            except Exception as e:
                logger.warning(f"Error closing transport for {self.remote_id}: {e}")

            logger.info(f"Session with {self.remote_name} ({self.remote_id}) closed: {reason}")
            await self._on_closed(self, reason)

    # ---- negotiation ----

    async def _handle(self, event: SessionEvent) -> None:
        match event:
            case StartOffer():
                await self._start_offer()
            case Offer(session_description=description):
                await self._accept_offer(description)
            case Answer(session_description=description):
                await self._accept_answer(description)
            case Candidate(candidate=candidate):
                await self._accept_candidate(candidate)

    async def _start_offer(self) -> None:
        if self.state is not NegotiationState.CREATED:
            logger.debug(f"Not offering to {self.remote_id} in state {self.state.value}")
            return

        description = await self.transport.create_offer()
        self._advance(NegotiationState.OFFER_SENT)
        await self._emit(RelayOffer(target=self.remote_id, session_description=description))

    async def _accept_offer(self, description: SessionDescription) -> None:
        if self.state is NegotiationState.OFFER_SENT:
            # Only the side that already knew about the other offers
            logger.warning(f"Discarding offer from {self.remote_id}: our own offer is pending")
            return

        self._advance(NegotiationState.OFFER_RECEIVED)
        await self._apply_remote_description(description)

        answer = await self.transport.create_answer()
        self._advance(NegotiationState.NEGOTIATING)
        await self._emit(RelayAnswer(target=self.remote_id, session_description=answer))

    async def _accept_answer(self, description: SessionDescription) -> None:
        if self.state is not NegotiationState.OFFER_SENT:
            logger.debug(f"Discarding stale answer from {self.remote_id} in state {self.state.value}")
            return

        await self._apply_remote_description(description)
        self._advance(NegotiationState.NEGOTIATING)

    async def _accept_candidate(self, candidate: Optional[CandidateData]) -> None:
        if not self._remote_description_set:
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(candidate)

    async def _apply_remote_description(self, description: SessionDescription) -> None:
        await self.transport.set_remote_description(description)
        self._remote_description_set = True

        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: Optional[CandidateData]) -> None:
        try:
            await self.transport.add_remote_candidate(candidate)
        except Exception as e:
            logger.warning(f"Error adding candidate from {self.remote_id}: {e}")

    def _advance(self, state: NegotiationState) -> None:
        if _PROGRESS[state] > _PROGRESS[self.state]:
            self.state = state

    async def _emit(self, message: NegotiationRequest) -> None:
        if self.closed:
            logger.debug(f"Session with {self.remote_id} closed, not sending {message.type}")
            return
        await self._send(message)

    # ---- transport callbacks ----

    async def _connection_state_changed(self, state: str) -> None:
        if self.closed:
            return

        match state:
            case "connected":
                self._advance(NegotiationState.CONNECTED)
                logger.info(f"Connected to {self.remote_name} ({self.remote_id})")
            case "failed":
                await self.close("failed")
            case "closed":
                await self.close("closed")

    async def _local_candidate(self, candidate: Optional[CandidateData]) -> None:
        await self._emit(RelayCandidate(target=self.remote_id, candidate=candidate))
