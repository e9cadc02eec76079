import base64

import anyio
import anyio.abc
import pytest
from anyio import wait_all_tasks_blocked
from starlette.websockets import WebSocketDisconnect

from mesh_signaling.config import Settings
from mesh_signaling.coordinator.hub import SignalingHub, serve_connection
from mesh_signaling.messages import (
    Answer,
    Candidate,
    CandidateData,
    ChatMessage,
    ErrorMessage,
    FileShare,
    JoinedRoom,
    JoinRoom,
    LeaveRoom,
    NewFile,
    NewMessage,
    Offer,
    PingMessage,
    PongMessage,
    RelayAnswer,
    RelayCandidate,
    RelayOffer,
    SessionDescription,
    UserJoined,
    UserLeft,
)
from mesh_signaling.tests.shared import FakeWebSocket

pytestmark = pytest.mark.anyio

offer_sdp = SessionDescription(sdp="v=0 offer", type="offer")
answer_sdp = SessionDescription(sdp="v=0 answer", type="answer")


async def connect_clients(
    hub: SignalingHub, tg: anyio.abc.TaskGroup, count: int
) -> list[FakeWebSocket]:
    sockets = []
    for _ in range(count):
        ws = FakeWebSocket()
        await ws.accept()
        tg.start_soon(serve_connection, hub, ws)
        sockets.append(ws)
    await wait_all_tasks_blocked()
    return sockets


async def send(ws: FakeWebSocket, message) -> None:
    ws.enqueue_message(message)
    await wait_all_tasks_blocked()


def disconnect_all(sockets: list[FakeWebSocket]) -> None:
    for ws in sockets:
        ws.enqueue(WebSocketDisconnect(code=1000))


def received(ws: FakeWebSocket, kind: type) -> list:
    return [m for m in ws.server_messages() if isinstance(m, kind)]


async def test_joiner_gets_snapshot_and_only_snapshot_hears_about_joiner():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob, carol = await connect_clients(hub, tg, 3)

            await send(alice, JoinRoom(name="Alice", room="lobby"))
            assert received(alice, JoinedRoom) == [JoinedRoom(room="lobby", other_members=[])]

            await send(bob, JoinRoom(name="Bob", room="lobby"))
            (bob_joined,) = received(bob, JoinedRoom)
            assert [m.name for m in bob_joined.other_members] == ["Alice"]
            alice_id = bob_joined.other_members[0].id

            await send(carol, JoinRoom(name="Carol", room="lobby"))
            (carol_joined,) = received(carol, JoinedRoom)
            assert [m.name for m in carol_joined.other_members] == ["Alice", "Bob"]
            bob_id = carol_joined.other_members[1].id

            # Alice heard about Bob and Carol, Bob only about Carol, Carol about nobody
            assert [m.name for m in received(alice, UserJoined)] == ["Bob", "Carol"]
            assert [m.name for m in received(bob, UserJoined)] == ["Carol"]
            assert received(carol, UserJoined) == []

            # The snapshot is the first thing a joiner hears
            assert isinstance(bob.server_messages()[0], JoinedRoom)

            assert received(alice, UserJoined)[0].id == bob_id
            assert alice_id != bob_id
            assert hub.get_room_count() == 1

            disconnect_all([alice, bob, carol])

    assert hub.get_connection_count() == 0
    assert hub.get_room_count() == 0


async def test_relay_stamps_sender():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob = await connect_clients(hub, tg, 2)
            await send(alice, JoinRoom(name="Alice", room="lobby"))
            await send(bob, JoinRoom(name="Bob", room="lobby"))

            alice_id = received(bob, JoinedRoom)[0].other_members[0].id
            bob_id = received(alice, UserJoined)[0].id

            await send(alice, RelayOffer(target=bob_id, session_description=offer_sdp))
            assert received(bob, Offer) == [
                Offer(source=alice_id, session_description=offer_sdp, name="Alice")
            ]

            await send(bob, RelayAnswer(target=alice_id, session_description=answer_sdp))
            assert received(alice, Answer) == [
                Answer(source=bob_id, session_description=answer_sdp)
            ]

            candidate = CandidateData(candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host")
            await send(alice, RelayCandidate(target=bob_id, candidate=candidate))
            await send(alice, RelayCandidate(target=bob_id, candidate=None))
            assert received(bob, Candidate) == [
                Candidate(source=alice_id, candidate=candidate),
                Candidate(source=alice_id, candidate=None),
            ]

            disconnect_all([alice, bob])


async def test_unroutable_relay_is_dropped_silently():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob, mallory = await connect_clients(hub, tg, 3)
            await send(alice, JoinRoom(name="Alice", room="lobby"))
            await send(bob, JoinRoom(name="Bob", room="lobby"))
            await send(mallory, JoinRoom(name="Mallory", room="elsewhere"))
            bob_id = received(alice, UserJoined)[0].id

            # Unknown target
            await send(alice, RelayOffer(target="nobody", session_description=offer_sdp))
            # Target in another room
            await send(mallory, RelayOffer(target=bob_id, session_description=offer_sdp))
            # Sender addressing itself
            await send(bob, RelayOffer(target=bob_id, session_description=offer_sdp))

            assert received(bob, Offer) == []
            assert received(alice, ErrorMessage) == []
            assert received(mallory, ErrorMessage) == []

            disconnect_all([alice, bob, mallory])


async def test_departure_notifies_remaining_members():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob, carol = await connect_clients(hub, tg, 3)
            for ws, name in ((alice, "Alice"), (bob, "Bob"), (carol, "Carol")):
                await send(ws, JoinRoom(name=name, room="lobby"))
            bob_id = received(alice, UserJoined)[0].id

            bob.enqueue(WebSocketDisconnect(code=1001))
            await wait_all_tasks_blocked()

            assert received(alice, UserLeft) == [UserLeft(id=bob_id, name="Bob")]
            assert received(carol, UserLeft) == [UserLeft(id=bob_id, name="Bob")]
            assert [m.name for m in hub.members_of("lobby")] == ["Alice", "Carol"]

            disconnect_all([alice, carol])


async def test_leave_is_idempotent():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob = await connect_clients(hub, tg, 2)
            await send(alice, JoinRoom(name="Alice", room="lobby"))
            await send(bob, JoinRoom(name="Bob", room="lobby"))

            await send(bob, LeaveRoom())
            await send(bob, LeaveRoom())

            assert len(received(alice, UserLeft)) == 1
            assert received(bob, ErrorMessage) == []

            disconnect_all([alice, bob])

    # Disconnect after leave announced nothing further
    assert len(received(alice, UserLeft)) == 1


async def test_switching_rooms_leaves_the_old_one():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob, carol = await connect_clients(hub, tg, 3)
            await send(alice, JoinRoom(name="Alice", room="lobby"))
            await send(bob, JoinRoom(name="Bob", room="lobby"))
            await send(carol, JoinRoom(name="Carol", room="kitchen"))

            await send(bob, JoinRoom(name="Bob", room="kitchen"))

            assert [m.name for m in received(alice, UserLeft)] == ["Bob"]
            assert [m.name for m in received(carol, UserJoined)] == ["Bob"]
            assert [m.name for m in received(bob, JoinedRoom)[-1].other_members] == ["Carol"]

            disconnect_all([alice, bob, carol])


async def test_invalid_join_is_rejected():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            (alice,) = await connect_clients(hub, tg, 1)

            await send(alice, JoinRoom(name="   ", room="lobby"))

            (error,) = received(alice, ErrorMessage)
            assert error.error_code == "invalid_join"
            assert hub.get_room_count() == 0

            disconnect_all([alice])


async def test_malformed_message_keeps_connection_open():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            (alice,) = await connect_clients(hub, tg, 1)

            alice.enqueue("this is not json")
            await wait_all_tasks_blocked()
            alice.enqueue('{"message": {"type": "offer"}}')
            await wait_all_tasks_blocked()
            alice.enqueue(b"\x00\x01")
            await wait_all_tasks_blocked()

            errors = received(alice, ErrorMessage)
            assert [e.error_code for e in errors] == ["malformed_message"] * 3

            await send(alice, PingMessage())
            assert received(alice, PongMessage) == [PongMessage()]

            disconnect_all([alice])


async def test_chat_reaches_whole_room_including_sender():
    hub = SignalingHub(Settings())

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob, outsider = await connect_clients(hub, tg, 3)

            await send(alice, ChatMessage(message="too early"))
            assert received(alice, ErrorMessage)[0].error_code == "not_in_room"

            await send(alice, JoinRoom(name="Alice", room="lobby"))
            await send(bob, JoinRoom(name="Bob", room="lobby"))
            await send(outsider, JoinRoom(name="Eve", room="other"))

            await send(bob, ChatMessage(message="hi all"))

            for ws in (alice, bob):
                (chat,) = received(ws, NewMessage)
                assert chat.name == "Bob"
                assert chat.message == "hi all"
            assert received(outsider, NewMessage) == []

            disconnect_all([alice, bob, outsider])


async def test_file_share_limits():
    hub = SignalingHub(Settings(MAX_FILE_BYTES=4))

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            alice, bob = await connect_clients(hub, tg, 2)
            await send(alice, JoinRoom(name="Alice", room="lobby"))
            await send(bob, JoinRoom(name="Bob", room="lobby"))

            small = base64.b64encode(b"1234").decode()
            large = base64.b64encode(b"12345").decode()

            await send(alice, FileShare(file=small, filename="a.txt", filetype="text/plain"))
            await send(alice, FileShare(file=large, filename="b.txt", filetype="text/plain"))
            await send(alice, FileShare(file="***", filename="c.txt", filetype="text/plain"))
            await send(alice, FileShare(file="h\u00e9llo", filename="d.txt", filetype="text/plain"))

            (shared,) = received(bob, NewFile)
            assert shared.filename == "a.txt"
            assert shared.file == small
            assert len(received(alice, NewFile)) == 1

            errors = [e.error_code for e in received(alice, ErrorMessage)]
            assert errors == ["file_too_large", "malformed_message", "malformed_message"]

            # Sender is still connected
            await send(alice, PingMessage())
            assert received(alice, PongMessage) == [PongMessage()]

            disconnect_all([alice, bob])
