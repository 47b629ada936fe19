import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from errors import MalformedMessage, UnknownMessageType


class InboundMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class CreateRoomMessage(InboundMessage):
    type: Literal["create-room"]
    room_code: str = Field(alias="roomCode")
    created_at: int = Field(alias="createdAt")
    expires_at: int = Field(alias="expiresAt")


class JoinRoomMessage(InboundMessage):
    type: Literal["join-room"]
    room_code: str = Field(alias="roomCode")


class LegacyJoinMessage(InboundMessage):
    type: Literal["join"]
    session_id: str = Field(alias="sessionId")
    role: Literal["presenter", "viewer", "web", "android"]


class LeaveMessage(InboundMessage):
    type: Literal["leave"]


class PeerMessage(InboundMessage):
    """offer / answer / ice-candidate / cmd: forwarded to the peer untouched."""

    type: Literal["offer", "answer", "ice-candidate", "ice", "cmd"]


class CommandMessage(InboundMessage):
    type: Literal["command"]
    command: str
    data: Any = None


class CountdownStartMessage(InboundMessage):
    type: Literal["countdown-start"]


class StartStreamMessage(InboundMessage):
    type: Literal["start-stream"]
    input_url: Optional[str] = Field(default=None, alias="inputUrl")


class StopStreamMessage(InboundMessage):
    type: Literal["stop-stream"]


class StreamInitMessage(InboundMessage):
    """First text frame on the /stream-upload socket."""

    type: Literal["init"]
    room_code: str = Field(alias="roomCode")


SIGNALING_MODELS = (
    CreateRoomMessage,
    JoinRoomMessage,
    LegacyJoinMessage,
    LeaveMessage,
    PeerMessage,
    CommandMessage,
    CountdownStartMessage,
    StartStreamMessage,
    StopStreamMessage,
)
UPLOAD_MODELS = (StreamInitMessage,)

SignalingMessage = Annotated[Union[SIGNALING_MODELS], Field(discriminator="type")]

signaling_adapter = TypeAdapter(SignalingMessage)
# a single upload message type, so no discriminated union
upload_adapter = TypeAdapter(StreamInitMessage)


def _tags(models) -> dict:
    """Map each wire type tag to the model that handles it."""
    return {tag: model for model in models for tag in model.model_fields["type"].annotation.__args__}


SIGNALING_TYPES = _tags(SIGNALING_MODELS)
UPLOAD_TYPES = _tags(UPLOAD_MODELS)


def _required_fields(model) -> str:
    names = [
        field.alias or name
        for name, field in model.model_fields.items()
        if name != "type" and field.is_required()
    ]
    return ", ".join(names)


def parse_message(text, adapter: TypeAdapter = signaling_adapter, known: Optional[dict] = None):
    """Decode one JSON text frame into its typed message.

    Raises MalformedMessage for bad JSON or missing fields and UnknownMessageType
    for tags this socket does not handle.
    """
    known = SIGNALING_TYPES if known is None else known
    try:
        raw = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError):
        raise MalformedMessage("Invalid JSON")

    if not isinstance(raw, dict):
        raise MalformedMessage("Message must be a JSON object")

    message_type = raw.get("type")
    if not isinstance(message_type, str) or message_type not in known:
        raise UnknownMessageType(message_type)

    try:
        return adapter.validate_python(raw)
    except ValidationError:
        required = _required_fields(known[message_type])
        raise MalformedMessage(f"{message_type} requires {required}")


def parse_upload_message(text):
    return parse_message(text, adapter=upload_adapter, known=UPLOAD_TYPES)
