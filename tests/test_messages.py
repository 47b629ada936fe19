import pytest

from errors import MalformedMessage, UnknownMessageType
from schemas.messages import (
    CreateRoomMessage,
    LegacyJoinMessage,
    PeerMessage,
    StreamInitMessage,
    parse_message,
    parse_upload_message,
)


def test_create_room_parsed_with_aliases():
    message = parse_message('{"type": "create-room", "roomCode": "ABC123", "createdAt": 1, "expiresAt": 20001}')

    assert isinstance(message, CreateRoomMessage)
    assert message.room_code == "ABC123"
    assert message.expires_at == 20001


def test_peer_message_keeps_unknown_fields():
    message = parse_message('{"type": "ice", "candidate": "a=1", "sdpMLineIndex": 0}')

    assert isinstance(message, PeerMessage)
    assert message.model_dump(by_alias=True) == {"type": "ice", "candidate": "a=1", "sdpMLineIndex": 0}


@pytest.mark.parametrize("text", ["not json", "[1, 2]", '"offer"', "null"])
def test_malformed_frames(text):
    with pytest.raises(MalformedMessage):
        parse_message(text)


@pytest.mark.parametrize("text", ['{"sdp": "v=0"}', '{"type": "teleport"}', '{"type": ["offer"]}'])
def test_unknown_types(text):
    with pytest.raises(UnknownMessageType):
        parse_message(text)


def test_missing_required_field_is_named():
    with pytest.raises(MalformedMessage) as exc_info:
        parse_message('{"type": "command", "data": 1}')

    assert exc_info.value.message == "command requires command"


def test_legacy_role_is_validated():
    assert isinstance(parse_message('{"type": "join", "sessionId": "s1", "role": "web"}'), LegacyJoinMessage)
    with pytest.raises(MalformedMessage):
        parse_message('{"type": "join", "sessionId": "s1", "role": "admin"}')


def test_upload_socket_only_accepts_init():
    assert isinstance(parse_upload_message('{"type": "init", "roomCode": "ABC123"}'), StreamInitMessage)
    with pytest.raises(UnknownMessageType):
        parse_upload_message('{"type": "offer", "sdp": "v=0"}')
