import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from connections import Channel, Role
from constants import (
    ACTIVE_SESSION_EXTENSION_MS,
    LEGACY_SESSION_LIFETIME_MS,
    ROOM_CODE_LENGTH,
    ROOM_CREATION_STALE_SECONDS,
    ROOM_SWEEP_INTERVAL_SECONDS,
)
from errors import (
    MalformedMessage,
    ProtocolViolation,
    RoomAlreadyExists,
    RoomAlreadyUsed,
    RoomCreationInProgress,
    RoomExpired,
    RoomNotFound,
    RoomNotReady,
)
from logging_config import get_logger

logger = get_logger(__name__)

# (recipient, message) pairs collected while mutating the table, sent afterwards
Outbox = List[Tuple[Channel, dict]]


def current_time_millis() -> int:
    return int(time.time() * 1000)


def normalize_room_code(room_code) -> str:
    return str(room_code).strip().upper()


@dataclass(eq=False)
class Room:
    code: str
    created_at: int
    expires_at: int
    used: bool = False
    presenter: Optional[Channel] = None
    viewer: Optional[Channel] = None

    def occupant(self, role: Role) -> Optional[Channel]:
        return self.presenter if role is Role.PRESENTER else self.viewer

    def set_occupant(self, role: Role, channel: Optional[Channel]):
        if role is Role.PRESENTER:
            self.presenter = channel
        else:
            self.viewer = channel

    @property
    def occupants(self) -> List[Channel]:
        return [c for c in (self.presenter, self.viewer) if c is not None]

    @property
    def is_empty(self) -> bool:
        return self.presenter is None and self.viewer is None

    def is_expired(self, now: int) -> bool:
        return now > self.expires_at

    def snapshot(self) -> dict:
        # never includes channel handles
        return {
            "roomCode": self.code,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "used": self.used,
            "hasPresenter": self.presenter is not None,
            "hasViewer": self.viewer is not None,
        }


class RoomManager:
    """Owns the room table and every mutation of it.

    Table mutations happen in synchronous sections; notifications are collected
    into an outbox and sent once the table is consistent again, so concurrent
    handlers for the same code never observe a half-applied change.
    """

    def __init__(
        self,
        clock: Callable[[], int] = current_time_millis,
        active_session_extension_ms: int = ACTIVE_SESSION_EXTENSION_MS,
        creation_stale_seconds: float = ROOM_CREATION_STALE_SECONDS,
        sweep_interval: float = ROOM_SWEEP_INTERVAL_SECONDS,
        snapshot_backend=None,
        validator: Optional[Callable[..., Awaitable[None]]] = None,
        on_room_closed: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.clock = clock
        self.active_session_extension_ms = active_session_extension_ms
        self.creation_stale_seconds = creation_stale_seconds
        self.sweep_interval = sweep_interval
        self.snapshot_backend = snapshot_backend
        self.validator = validator
        self.on_room_closed = on_room_closed
        self._rooms: Dict[str, Room] = {}
        # room code -> (marker, monotonic start time)
        self._creating: Dict[str, Tuple[object, float]] = {}

    def __len__(self):
        return len(self._rooms)

    def __contains__(self, room_code):
        return normalize_room_code(room_code) in self._rooms

    def get(self, room_code) -> Optional[Room]:
        return self._rooms.get(normalize_room_code(room_code))

    def codes(self) -> List[str]:
        return list(self._rooms)

    def peer_of(self, channel: Channel) -> Optional[Channel]:
        if not channel.is_bound:
            return None
        room = self._rooms.get(channel.room_code)
        if room is None:
            return None
        return room.occupant(channel.role.other)

    def snapshot(self) -> List[dict]:
        return [room.snapshot() for room in self._rooms.values()]

    # -- pairing --------------------------------------------------------

    async def create_room(self, room_code, created_at: int, expires_at: int, channel: Channel) -> Room:
        code = self._validate_code(room_code)
        outbox: Outbox = []
        self._check_available(code)
        if self._creation_in_progress(code):
            logger.warning(f"Room creation for {code} rejected: already in progress")
            raise RoomCreationInProgress()

        marker = object()
        self._creating[code] = (marker, time.monotonic())
        try:
            if self.validator is not None:
                await self.validator(code, created_at, expires_at, channel)
            # the table may have changed while validating
            self._check_available(code)
            closed = self._vacate(channel, outbox)
            room = Room(code=code, created_at=created_at, expires_at=expires_at, presenter=channel)
            self._rooms[code] = room
            channel.bind(code, Role.PRESENTER)
        finally:
            if self._creating.get(code, (None,))[0] is marker:
                del self._creating[code]

        logger.info(f"Room created: {code} by connection {channel.connection_id} (expires at {expires_at})")
        outbox.append((channel, {"type": "room-created", "roomCode": code}))
        await self._deliver(outbox)
        await self._rooms_closed(closed)
        return room

    async def join_room(self, room_code, channel: Channel) -> Room:
        code = normalize_room_code(room_code)
        room = self._rooms.get(code)
        if room is None:
            logger.info(f"Join rejected: room {code} not found")
            raise RoomNotFound()

        now = self.clock()
        if room.is_expired(now):
            logger.info(f"Join rejected: room {code} expired at {room.expires_at}")
            if room.is_empty:
                self._delete(code)
            raise RoomExpired()

        if room.used:
            logger.warning(f"Join rejected: room {code} already used")
            raise RoomAlreadyUsed()

        if room.presenter is None:
            logger.info(f"Join rejected: room {code} has no presenter")
            raise RoomNotReady()

        if room.presenter is channel:
            raise ProtocolViolation("already joined to this room")

        outbox: Outbox = []
        closed = self._vacate(channel, outbox)
        room.viewer = channel
        room.used = True
        room.expires_at = max(room.expires_at, now + self.active_session_extension_ms)
        channel.bind(code, Role.VIEWER)

        logger.info(f"Room joined: {code} by connection {channel.connection_id}, expires at {room.expires_at}")
        outbox.append((channel, {"type": "room-joined", "roomCode": code, "peerReady": True}))
        outbox.append((room.presenter, {"type": "peer-joined", "roomCode": code, "role": Role.VIEWER.value}))
        await self._deliver(outbox)
        await self._rooms_closed(closed)
        return room

    async def legacy_join(self, session_id: str, role: Role, channel: Channel) -> Room:
        """sessionId-based join kept for older clients. Either role may claim a slot."""
        now = self.clock()
        room = self._rooms.get(session_id)
        outbox: Outbox = []
        closed = []
        if channel.room_code != session_id:
            closed = self._vacate(channel, outbox)
        if room is None:
            room = Room(code=session_id, created_at=now, expires_at=now + LEGACY_SESSION_LIFETIME_MS)
            self._rooms[session_id] = room
            logger.info(f"Legacy session room created: {session_id}")

        displaced = room.occupant(role)
        if displaced is not None and displaced is not channel:
            displaced.unbind()
        else:
            displaced = None
        if channel.role is not None and channel.role is not role and room.occupant(channel.role) is channel:
            room.set_occupant(channel.role, None)

        room.set_occupant(role, channel)
        channel.bind(session_id, role)
        peer = room.occupant(role.other)

        if displaced is not None:
            logger.info(f"Replacing {role.value} in session {session_id}: closing connection {displaced.connection_id}")
            await displaced.close(code=4001, reason="replaced by new client")

        logger.info(f"Legacy join: {session_id} by {role.value}")
        outbox.append((channel, {"type": "joined", "sessionId": session_id, "role": role.value, "peerReady": peer is not None}))
        if peer is not None:
            outbox.append((peer, {"type": "peer-joined", "sessionId": session_id, "role": role.value}))
        await self._deliver(outbox)
        await self._rooms_closed(closed)
        return room

    async def leave_room(self, channel: Channel) -> bool:
        """Explicit leave tears the whole room down."""
        if not channel.is_bound:
            return False

        code, role = channel.room_code, channel.role
        channel.unbind()
        room = self._rooms.get(code)
        if room is None:
            return True

        outbox: Outbox = []
        peer = room.occupant(role.other)
        if peer is not None:
            peer.unbind()
            outbox.append((peer, {"type": "room_closed", "roomCode": code, "reason": "peer_left"}))
            logger.info(f"Notified {role.other.value} that room {code} is closed")
        self._delete(code)
        logger.info(f"Room {code} deleted due to {role.value} leaving")

        await self._deliver(outbox)
        await self._rooms_closed([code])
        return True

    async def handle_disconnect(self, channel: Channel):
        """Vacate only the departing channel's slot."""
        outbox: Outbox = []
        closed = self._vacate(channel, outbox)
        await self._deliver(outbox)
        await self._rooms_closed(closed)

    # -- maintenance ----------------------------------------------------

    async def sweep(self) -> List[str]:
        now = self.clock()
        deleted = []
        for code, room in list(self._rooms.items()):
            if not room.is_expired(now):
                continue
            if room.is_empty:
                self._delete(code)
                deleted.append(code)
                logger.info(f"Room {code} expired and empty, deleted")
            else:
                room.expires_at = now + self.active_session_extension_ms
                logger.debug(f"Room {code} expired but occupied, extended to {room.expires_at}")

        await self.persist_snapshot()
        await self._rooms_closed(deleted)
        return deleted

    async def persist_snapshot(self) -> bool:
        if self.snapshot_backend is None:
            return False
        rooms = self.snapshot()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.snapshot_backend.save_snapshot, rooms)
            return True
        except Exception as e:
            logger.warning(f"Could not persist room snapshot: {e}")
            return False

    async def run_sweeper(self):
        logger.info(f"Room sweeper started (interval {self.sweep_interval}s)")
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.sweep()
            except asyncio.CancelledError:
                logger.info("Room sweeper cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in room sweeper: {e}", exc_info=True)

    async def notify_room(self, room_code, message: dict) -> int:
        room = self.get(room_code)
        if room is None:
            return 0
        notified = 0
        for channel in room.occupants:
            if await channel.send_json(message):
                notified += 1
        return notified

    async def notify_role(self, room_code, role: Role, message: dict) -> bool:
        room = self.get(room_code)
        if room is None or room.occupant(role) is None:
            return False
        return await room.occupant(role).send_json(message)

    # -- internals ------------------------------------------------------

    def _validate_code(self, room_code) -> str:
        if not isinstance(room_code, str):
            raise MalformedMessage(f"Invalid room code format (must be {ROOM_CODE_LENGTH} characters)")
        code = normalize_room_code(room_code)
        if len(code) != ROOM_CODE_LENGTH or not code.isalnum():
            raise MalformedMessage(f"Invalid room code format (must be {ROOM_CODE_LENGTH} characters)")
        return code

    def _check_available(self, code: str):
        room = self._rooms.get(code)
        if room is None:
            return
        if room.is_expired(self.clock()) and room.is_empty:
            logger.info(f"Reclaiming expired room code {code}")
            self._delete(code)
            return
        logger.warning(f"Room creation for {code} rejected: code already exists")
        raise RoomAlreadyExists()

    def _creation_in_progress(self, code: str) -> bool:
        entry = self._creating.get(code)
        if entry is None:
            return False
        if time.monotonic() - entry[1] > self.creation_stale_seconds:
            logger.warning(f"Discarding stale creation marker for room {code}")
            del self._creating[code]
            return False
        return True

    def _vacate(self, channel: Channel, outbox: Outbox) -> List[str]:
        """Release the channel's slot; returns codes of rooms deleted as a result."""
        if not channel.is_bound:
            return []
        code, role = channel.room_code, channel.role
        channel.unbind()
        room = self._rooms.get(code)
        if room is None or room.occupant(role) is not channel:
            return []

        room.set_occupant(role, None)
        peer = room.occupant(role.other)
        if peer is not None:
            outbox.append((peer, {"type": "peer-left", "roomCode": code, "role": role.value}))
        logger.info(f"Connection {channel.connection_id} left slot {role.value} of room {code}")

        if room.is_empty:
            self._delete(code)
            logger.info(f"Room {code} deleted: both slots empty")
            return [code]
        return []

    def _delete(self, code: str):
        self._rooms.pop(code, None)

    async def _deliver(self, outbox: Outbox):
        for channel, message in outbox:
            await channel.send_json(message)

    async def _rooms_closed(self, codes: List[str]):
        if self.on_room_closed is None:
            return
        for code in codes:
            try:
                await self.on_room_closed(code)
            except Exception as e:
                logger.error(f"Error in room-closed hook for {code}: {e}", exc_info=True)
