import pytest
from pydantic import ValidationError

from meshcall.models import (
    IceCandidate,
    Offer,
    ParticipantJoined,
    SendMessage,
    parse_client_message,
    parse_server_event,
)


def test_offer_parses_camel_case_wire_format():
    message = parse_client_message(
        '{"type": "offer", "roomId": "abc123", "targetConnectionId": "p2", "sdp": {"type": "offer", "sdp": "v=0"}}'
    )
    assert isinstance(message, Offer)
    assert message.target_connection_id == "p2"
    assert message.sdp.sdp == "v=0"


def test_candidate_payload_kept_verbatim():
    payload = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0, "x": 1}
    message = parse_client_message({"type": "ice-candidate", "targetConnectionId": "p2", "candidate": payload})
    assert isinstance(message, IceCandidate)
    assert message.to_wire()["candidate"] == payload


def test_chat_message_keeps_extra_fields():
    message = parse_client_message({"type": "send-message", "sender": "Alice", "time": "12:00", "text": "hi", "id": 7})
    assert isinstance(message, SendMessage)
    assert message.model_dump(by_alias=True)["id"] == 7


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"type": "teleport"}',
        '{"type": "offer", "targetConnectionId": "p2"}',
        '{"type": "media-state-change", "connectionId": "p1", "isMuted": "maybe", "isVideoOff": false}',
    ],
)
def test_malformed_frames_raise_validation_error(raw):
    with pytest.raises(ValidationError):
        parse_client_message(raw)


def test_join_alias_events_share_a_model():
    event = parse_server_event({"type": "user-joined", "connectionId": "p2", "displayName": "Bob"})
    assert isinstance(event, ParticipantJoined)
    assert event.type == "user-joined"
    assert ParticipantJoined(connection_id="p2", display_name="Bob").to_wire() == {
        "type": "participant-joined",
        "connectionId": "p2",
        "displayName": "Bob",
    }
