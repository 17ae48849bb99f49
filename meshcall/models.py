from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for everything that crosses the websocket (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Participant(WireModel):
    connection_id: str
    display_name: str
    is_muted: bool = False
    is_video_off: bool = False


class SessionDescription(BaseModel):
    sdp: str
    type: Literal["offer", "answer"]


# Client -> server

class JoinRoom(WireModel):
    type: Literal["join-room"] = "join-room"
    room_id: str
    display_name: str
    connection_id: Optional[str] = None


class GetUsers(WireModel):
    type: Literal["get-users"] = "get-users"
    room_id: str


class LeaveRoom(WireModel):
    type: Literal["leave-room"] = "leave-room"


class Offer(WireModel):
    type: Literal["offer"] = "offer"
    room_id: Optional[str] = None
    target_connection_id: str
    sdp: SessionDescription


class Answer(WireModel):
    type: Literal["answer"] = "answer"
    room_id: Optional[str] = None
    target_connection_id: str
    sdp: SessionDescription


class IceCandidate(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    room_id: Optional[str] = None
    target_connection_id: str
    candidate: Dict[str, Any]


class MediaStateChange(WireModel):
    type: Literal["media-state-change"] = "media-state-change"
    connection_id: str
    is_muted: bool
    is_video_off: bool


class ScreenShareStarted(WireModel):
    type: Literal["screen-share-started"] = "screen-share-started"
    room_id: Optional[str] = None


class ScreenShareEnded(WireModel):
    type: Literal["screen-share-ended"] = "screen-share-ended"
    room_id: Optional[str] = None


class SendMessage(WireModel):
    # Chat payloads are relayed as-is, extra keys included
    model_config = ConfigDict(extra="allow")

    type: Literal["send-message"] = "send-message"
    sender: str
    time: str
    text: str


class ParticipantUpdate(WireModel):
    type: Literal["participant-update"] = "participant-update"
    display_name: str


ClientMessage = Annotated[
    Union[
        JoinRoom,
        GetUsers,
        LeaveRoom,
        Offer,
        Answer,
        IceCandidate,
        MediaStateChange,
        ScreenShareStarted,
        ScreenShareEnded,
        SendMessage,
        ParticipantUpdate,
    ],
    Field(discriminator="type"),
]


# Server -> client

class Connected(WireModel):
    type: Literal["connected"] = "connected"
    connection_id: str


class ParticipantsList(WireModel):
    type: Literal["participants-list"] = "participants-list"
    participants: List[Participant] = []


class RoomUsers(WireModel):
    type: Literal["room-users"] = "room-users"
    participants: List[Participant] = []


class ParticipantJoined(WireModel):
    type: Literal["participant-joined", "user-joined"] = "participant-joined"
    connection_id: str
    display_name: str


class ParticipantLeft(WireModel):
    type: Literal["participant-left", "user-left"] = "participant-left"
    connection_id: str


class RelayedOffer(WireModel):
    type: Literal["offer"] = "offer"
    from_id: str
    sdp: SessionDescription


class RelayedAnswer(WireModel):
    type: Literal["answer"] = "answer"
    from_id: str
    sdp: SessionDescription


class RelayedIceCandidate(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    from_id: str
    candidate: Dict[str, Any]


class MediaStateUpdated(WireModel):
    type: Literal["media-state-updated"] = "media-state-updated"
    connection_id: str
    is_muted: bool
    is_video_off: bool


class ScreenShareNotice(WireModel):
    type: Literal["screen-share-started", "screen-share-ended"]
    connection_id: str


class NewMessage(WireModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["new-message"] = "new-message"
    sender: str
    time: str
    text: str


class ParticipantUpdated(WireModel):
    type: Literal["participant-updated"] = "participant-updated"
    connection_id: str
    display_name: str


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    detail: str


ServerEvent = Annotated[
    Union[
        Connected,
        ParticipantsList,
        RoomUsers,
        ParticipantJoined,
        ParticipantLeft,
        RelayedOffer,
        RelayedAnswer,
        RelayedIceCandidate,
        MediaStateUpdated,
        ScreenShareNotice,
        NewMessage,
        ParticipantUpdated,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]


class RenegotiateConnections(WireModel):
    """Local instruction to re-offer on every connected link; never sent to the relay."""

    type: Literal["renegotiate-connections"] = "renegotiate-connections"
    room_id: str


client_message_adapter = TypeAdapter(ClientMessage)
server_event_adapter = TypeAdapter(ServerEvent)


def parse_client_message(raw: Union[str, bytes, Dict[str, Any]]):
    """Raises pydantic.ValidationError for malformed or unknown frames."""
    if isinstance(raw, (str, bytes)):
        return client_message_adapter.validate_json(raw)
    return client_message_adapter.validate_python(raw)


def parse_server_event(raw: Union[str, bytes, Dict[str, Any]]):
    if isinstance(raw, (str, bytes)):
        return server_event_adapter.validate_json(raw)
    return server_event_adapter.validate_python(raw)
