import pytest
from pydantic import ValidationError

from mesh_signaling.messages import (
    ClientEnvelope,
    JoinRoom,
    RelayCandidate,
    RelayOffer,
    ServerEnvelope,
    SessionDescription,
    UserJoined,
)


def test_client_message_uses_camel_case_on_the_wire():
    raw = (
        '{"message": {"type": "offer", "target": "abc",'
        ' "sessionDescription": {"sdp": "v=0", "type": "offer"}}}'
    )

    message = ClientEnvelope.model_validate_json(raw).message

    assert message == RelayOffer(
        target="abc", session_description=SessionDescription(sdp="v=0", type="offer")
    )
    assert '"sessionDescription"' in ClientEnvelope(message=message).to_json()


def test_end_of_candidates_is_null_candidate():
    raw = '{"message": {"type": "candidate", "target": "abc", "candidate": null}}'

    message = ClientEnvelope.model_validate_json(raw).message

    assert isinstance(message, RelayCandidate)
    assert message.candidate is None


def test_unknown_type_is_rejected():
    with pytest.raises(ValidationError):
        ClientEnvelope.model_validate_json('{"message": {"type": "shout"}}')


def test_missing_field_is_rejected():
    with pytest.raises(ValidationError):
        ClientEnvelope.model_validate_json('{"message": {"type": "join-room", "name": "a"}}')


def test_server_message_parses():
    envelope = ServerEnvelope(message=UserJoined(id="abc", name="Bob"))

    parsed = ServerEnvelope.model_validate_json(envelope.to_json())

    assert parsed.message == UserJoined(id="abc", name="Bob")
    assert not isinstance(parsed.message, JoinRoom)
