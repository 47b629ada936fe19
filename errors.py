from datetime import datetime
from typing import Optional


class SignalingError(Exception):
    """Per-message failure reported back to the sending channel only."""

    reply_type = "error"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_message(self, room_code: Optional[str] = None) -> dict:
        message = {
            "type": self.reply_type,
            "message": self.message,
            "code": self.code,
            "timestamp": datetime.now().isoformat(),
        }
        if room_code:
            message["roomCode"] = room_code
        return message


class MalformedMessage(SignalingError):
    default_message = "Invalid JSON"


class ProtocolViolation(SignalingError):
    default_message = "not joined to room yet"


class UnknownMessageType(SignalingError):
    def __init__(self, message_type):
        super().__init__(f"unknown type: {message_type}")
        self.message_type = message_type


class RoleNotAllowed(SignalingError):
    default_message = "role not allowed to perform this action"


class PeerUnavailable(SignalingError):
    default_message = "peer not available"


class StreamNotActive(SignalingError):
    default_message = "Stream not active for this room"


class RoomError(SignalingError):
    pass


class RoomNotFound(RoomError):
    reply_type = "room-not-found"
    default_message = "Room not found"


class RoomExpired(RoomError):
    reply_type = "room-expired"
    default_message = "Room has expired"


class RoomAlreadyUsed(RoomError):
    reply_type = "room-already-used"
    default_message = "Room already used"


class RoomNotReady(RoomError):
    reply_type = "room-not-ready"
    default_message = "Presenter not ready"


class RoomAlreadyExists(RoomError):
    default_message = "Room code already exists"


class RoomCreationInProgress(RoomError):
    default_message = "Room creation already in progress"


class TranscodeError(Exception):
    """Transcoder startup or runtime failure. Resources are released before it is raised."""

    def __init__(self, room_code: str, message: str):
        self.room_code = room_code
        self.message = message
        super().__init__(f"{message} (room {room_code})")

    @property
    def code(self) -> str:
        return type(self).__name__

    def to_message(self) -> dict:
        return {
            "type": "error",
            "message": self.message,
            "code": self.code,
            "roomCode": self.room_code,
            "timestamp": datetime.now().isoformat(),
        }


class SpawnError(TranscodeError):
    pass


class StdinTimeout(TranscodeError):
    pass


class PlaylistTimeout(TranscodeError):
    pass


class SubprocessCrash(TranscodeError):
    pass


class StreamCancelled(TranscodeError):
    """The stream was stopped while it was still starting."""
