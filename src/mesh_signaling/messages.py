from datetime import datetime
from typing import Optional, Literal, Annotated, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# WARNING: When adding new message types, be sure that type is unique
# within its direction. Offer/answer/candidate intentionally share a type
# across the two unions since the coordinator rewrites them in transit.


# converts Python snake_case fields to camelCase on the wire and vice versa
class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SessionDescription(WireModel):
    """SDP (Session Description Protocol) data"""

    sdp: str
    type: Literal["offer", "answer"]


class CandidateData(WireModel):
    """ICE candidate data, as produced by RTCIceCandidate.toJSON()"""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_m_line_index: Optional[int] = None


class MemberInfo(WireModel):
    id: str
    name: str


# ===== Client -> Server messages =====


class JoinRoom(WireModel):
    type: Literal["join-room"] = "join-room"
    name: str
    room: str


class LeaveRoom(WireModel):
    type: Literal["leave-room"] = "leave-room"


class RelayOffer(WireModel):
    type: Literal["offer"] = "offer"
    target: str
    session_description: SessionDescription


class RelayAnswer(WireModel):
    type: Literal["answer"] = "answer"
    target: str
    session_description: SessionDescription


class RelayCandidate(WireModel):
    type: Literal["candidate"] = "candidate"
    target: str
    # None signals end-of-candidates
    candidate: Optional[CandidateData] = None


class ChatMessage(WireModel):
    type: Literal["chat-message"] = "chat-message"
    message: str


class FileShare(WireModel):
    type: Literal["file-share"] = "file-share"
    # base64 encoded contents
    file: str
    filename: str
    filetype: str


class PingMessage(WireModel):
    type: Literal["ping"] = "ping"


ClientMessage = Union[
    JoinRoom,
    LeaveRoom,
    RelayOffer,
    RelayAnswer,
    RelayCandidate,
    ChatMessage,
    FileShare,
    PingMessage,
]

NegotiationRequest = Union[RelayOffer, RelayAnswer, RelayCandidate]


# ===== Server -> Client messages =====


class JoinedRoom(WireModel):
    type: Literal["joined-room"] = "joined-room"
    room: str
    other_members: list[MemberInfo]


class UserJoined(WireModel):
    type: Literal["user-joined"] = "user-joined"
    id: str
    name: str


class UserLeft(WireModel):
    type: Literal["user-left"] = "user-left"
    id: str
    name: str


class Offer(WireModel):
    type: Literal["offer"] = "offer"
    source: str
    session_description: SessionDescription
    name: str


class Answer(WireModel):
    type: Literal["answer"] = "answer"
    source: str
    session_description: SessionDescription


class Candidate(WireModel):
    type: Literal["candidate"] = "candidate"
    source: str
    candidate: Optional[CandidateData] = None


class NewMessage(WireModel):
    type: Literal["new-message"] = "new-message"
    timestamp: datetime = Field(default_factory=datetime.now)
    id: str
    name: str
    message: str


class NewFile(WireModel):
    type: Literal["new-file"] = "new-file"
    timestamp: datetime = Field(default_factory=datetime.now)
    id: str
    name: str
    file: str
    filename: str
    filetype: str


class ErrorMessage(WireModel):
    type: Literal["error"] = "error"
    timestamp: datetime = Field(default_factory=datetime.now)
    error_code: str
    message: str


class PongMessage(WireModel):
    type: Literal["pong"] = "pong"


ServerMessage = Union[
    JoinedRoom,
    UserJoined,
    UserLeft,
    Offer,
    Answer,
    Candidate,
    NewMessage,
    NewFile,
    ErrorMessage,
    PongMessage,
]

NegotiationMessage = Union[Offer, Answer, Candidate]


class ClientEnvelope(BaseModel):
    message: Annotated[
        ClientMessage,
        Field(discriminator="type"),
    ]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ServerEnvelope(BaseModel):
    message: Annotated[
        ServerMessage,
        Field(discriminator="type"),
    ]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)
