import asyncio
from datetime import datetime
from typing import Optional

from connections import Channel, Role
from constants import PENDING_CHUNK_LIMIT, ROOM_CODE_LENGTH, STREAM_CONTROLLER_ROLE
from errors import (
    MalformedMessage,
    PeerUnavailable,
    ProtocolViolation,
    RoleNotAllowed,
    RoomNotFound,
    SignalingError,
    StreamCancelled,
    StreamNotActive,
    TranscodeError,
)
from logging_config import get_logger
from room_manager import RoomManager, normalize_room_code
from schemas.messages import (
    CommandMessage,
    CountdownStartMessage,
    CreateRoomMessage,
    JoinRoomMessage,
    LeaveMessage,
    LegacyJoinMessage,
    PeerMessage,
    StartStreamMessage,
    StopStreamMessage,
    parse_message,
    parse_upload_message,
)
from transcoder import ChunkQueue, StreamState, TranscodeSupervisor, WriteStatus

logger = get_logger(__name__)


class SignalingRelay:
    """Routes every frame received on the signaling socket.

    Pairing goes to the RoomManager, handshake traffic is forwarded to the peer,
    media frames and stream control go to the TranscodeSupervisor.
    """

    def __init__(self, rooms: RoomManager, supervisor: TranscodeSupervisor, stream_controller: Optional[Role] = None):
        self.rooms = rooms
        self.supervisor = supervisor
        self.stream_controller = stream_controller or Role.parse(STREAM_CONTROLLER_ROLE)
        self.background_tasks = set()
        self._handlers = {
            CreateRoomMessage: self._create_room,
            JoinRoomMessage: self._join_room,
            LegacyJoinMessage: self._legacy_join,
            LeaveMessage: self._leave,
            PeerMessage: self._forward,
            CommandMessage: self._command,
            CountdownStartMessage: self._countdown_start,
            StartStreamMessage: self._start_stream,
            StopStreamMessage: self._stop_stream,
        }

    async def handle_text(self, channel: Channel, text: str):
        try:
            message = parse_message(text)
            logger.debug(f"Received {message.type} from connection {channel.connection_id}")
            await self.relay(channel, message)
        except SignalingError as e:
            logger.warning(f"Rejected message from connection {channel.connection_id}: {e.message}")
            await channel.send_json(e.to_message())

    async def handle_binary(self, channel: Channel, data: bytes):
        """Feed one media chunk to the room's transcoder, pausing the sender while the pipe drains."""
        try:
            await self._write_media(channel, data)
        except SignalingError as e:
            logger.warning(f"Rejected media chunk from connection {channel.connection_id}: {e.message}")
            await channel.send_json(e.to_message(channel.room_code))

    async def handle_disconnect(self, channel: Channel):
        logger.info(f"Connection {channel.connection_id} disconnected")
        await self.rooms.handle_disconnect(channel)

    async def relay(self, channel: Channel, message):
        handler = self._handlers.get(type(message))
        if handler is None:
            raise ProtocolViolation(f"unsupported message: {message.type}")
        await handler(channel, message)

    # -- pairing --------------------------------------------------------

    async def _create_room(self, channel: Channel, message: CreateRoomMessage):
        await self.rooms.create_room(message.room_code, message.created_at, message.expires_at, channel)

    async def _join_room(self, channel: Channel, message: JoinRoomMessage):
        await self.rooms.join_room(message.room_code, channel)

    async def _legacy_join(self, channel: Channel, message: LegacyJoinMessage):
        await self.rooms.legacy_join(message.session_id, Role.parse(message.role), channel)

    async def _leave(self, channel: Channel, message: LeaveMessage):
        if not await self.rooms.leave_room(channel):
            raise ProtocolViolation()
        await channel.send_json({"type": "left", "message": "Successfully left room"})

    # -- peer traffic ---------------------------------------------------

    async def _forward(self, channel: Channel, message: PeerMessage):
        peer = self._require_peer(channel)
        logger.debug(f"Forwarding {message.type} in room {channel.room_code} to {peer.role.value}")
        await peer.send_json(message.model_dump(by_alias=True))

    async def _command(self, channel: Channel, message: CommandMessage):
        peer = self._require_peer(channel)
        logger.info(f"Command from {channel.role.value} in room {channel.room_code}: {message.command}")
        await peer.send_json({"type": "cmd", "cmd": message.command, "payload": message.data})

    async def _countdown_start(self, channel: Channel, message: CountdownStartMessage):
        peer = self._require_peer(channel)
        logger.info(f"Countdown signal from {channel.role.value} -> forwarding to {peer.role.value}")
        await peer.send_json({"type": "countdown-start"})

    # -- stream control -------------------------------------------------

    async def _start_stream(self, channel: Channel, message: StartStreamMessage):
        self._require_controller(channel)
        room_code = channel.room_code
        state = self.supervisor.state(room_code)
        if state is StreamState.STARTING:
            logger.info(f"Stream for room {room_code} is already starting")
            return

        startup = self.supervisor.begin(room_code, message.input_url)
        if state is StreamState.STREAMING:
            await channel.send_json(self._stream_ready_message(
                room_code, startup.result(), self.supervisor.watch_url(room_code)
            ))
            return
        # the socket keeps reading while ffmpeg starts
        self._spawn(self._await_startup(channel, room_code, startup))

    async def _await_startup(self, channel: Channel, room_code: str, startup: asyncio.Future):
        try:
            await asyncio.shield(startup)
        except StreamCancelled:
            logger.info(f"Stream for room {room_code} stopped before it was ready")
        except TranscodeError as e:
            await self.notify_stream_failed(room_code, e)
            await channel.send_json(e.to_message())

    async def _stop_stream(self, channel: Channel, message: StopStreamMessage):
        self._require_controller(channel)
        room_code = channel.room_code
        was_streaming = self.supervisor.is_streaming(room_code)
        await self.supervisor.stop(room_code, reason="requested")
        if not was_streaming:
            # on_stopped only fires for streams that became ready
            await self.notify_room_of_stream_stopped(room_code, "requested")

    async def _write_media(self, channel: Channel, data: bytes):
        self._require_bound(channel)
        room_code = channel.room_code
        status = self.supervisor.write_chunk(room_code, data)
        if status is WriteStatus.REJECTED:
            raise StreamNotActive()
        if status is WriteStatus.BUSY:
            await channel.send_json({"type": "stream-paused", "roomCode": room_code})
            if not await self.supervisor.wait_for_drain(room_code):
                raise StreamNotActive("Stream stopped: transcoder stopped reading input")
            await channel.send_json({"type": "stream-resumed", "roomCode": room_code})

    # -- notifications --------------------------------------------------

    async def notify_room_of_stream_ready(self, room_code: str, hls_url: str, watch_url: str) -> int:
        message = self._stream_ready_message(room_code, hls_url, watch_url)
        notified = await self.rooms.notify_room(room_code, message)
        logger.info(f"Sent stream_ready for room {room_code} to {notified} clients")
        return notified

    async def notify_room_of_stream_stopped(self, room_code: str, reason: str = "requested") -> int:
        message = {
            "type": "stream_stopped",
            "roomCode": room_code,
            "reason": reason,
            "timestamp": datetime.now().isoformat(),
        }
        notified = await self.rooms.notify_room(room_code, message)
        logger.info(f"Stream stopped for room {room_code} ({reason}), notified {notified} clients")
        return notified

    async def notify_stream_failed(self, room_code: str, error: TranscodeError) -> int:
        message = {
            "type": "stream_failed",
            "roomCode": room_code,
            "error": error.message,
            "code": error.code,
            "timestamp": datetime.now().isoformat(),
        }
        notified = await self.rooms.notify_room(room_code, message)
        logger.error(f"Stream failed for room {room_code}: {error.message} (notified {notified} clients)")
        return notified

    async def notify_viewer_count(self, room_code: str, count: int):
        message = {
            "type": "viewer_count_update",
            "roomCode": room_code,
            "viewerCount": count,
            "timestamp": datetime.now().isoformat(),
        }
        if await self.rooms.notify_role(room_code, self.stream_controller, message):
            logger.debug(f"Sent viewer count update for room {room_code}: {count} viewers")

    def _stream_ready_message(self, room_code: str, hls_url: str, watch_url: str) -> dict:
        return {
            "type": "stream_ready",
            "roomCode": room_code,
            "hlsUrl": hls_url,
            "watchPageUrl": watch_url,
            "timestamp": datetime.now().isoformat(),
        }

    # -- helpers --------------------------------------------------------

    def _require_bound(self, channel: Channel):
        if not channel.is_bound:
            raise ProtocolViolation()

    def _require_peer(self, channel: Channel) -> Channel:
        self._require_bound(channel)
        peer = self.rooms.peer_of(channel)
        if peer is None:
            raise PeerUnavailable()
        return peer

    def _require_controller(self, channel: Channel):
        self._require_bound(channel)
        if channel.role is not self.stream_controller:
            raise RoleNotAllowed(f"only {self.stream_controller.value} can control streaming")

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def shutdown(self):
        for task in list(self.background_tasks):
            task.cancel()
        if self.background_tasks:
            await asyncio.gather(*self.background_tasks, return_exceptions=True)


class StreamUploadHandler:
    """One /stream-upload socket: `init{roomCode}` first, then raw webm chunks.

    Chunks that arrive before `init` are queued and handed over in order once
    the stream has been registered. Closing the socket stops the stream.
    """

    def __init__(
        self,
        channel: Channel,
        rooms: RoomManager,
        supervisor: TranscodeSupervisor,
        pending_limit: int = PENDING_CHUNK_LIMIT,
    ):
        self.channel = channel
        self.rooms = rooms
        self.supervisor = supervisor
        self.room_code: Optional[str] = None
        self.queue = ChunkQueue(pending_limit)
        self._startup_task: Optional[asyncio.Task] = None

    @property
    def initialized(self) -> bool:
        return self.room_code is not None

    async def handle_text(self, text: str):
        try:
            message = parse_upload_message(text)
            await self._init(message.room_code)
        except SignalingError as e:
            logger.warning(f"Rejected upload message from connection {self.channel.connection_id}: {e.message}")
            await self.channel.send_json(e.to_message(self.room_code))

    async def handle_binary(self, data: bytes):
        if not self.initialized:
            logger.debug(f"Queueing binary chunk (not initialized yet), queue size: {len(self.queue) + 1}")
            self.queue.push(data)
            return
        status = self.supervisor.write_chunk(self.room_code, data)
        if status is WriteStatus.REJECTED:
            logger.warning(f"Failed to write chunk for room {self.room_code}")
        elif status is WriteStatus.BUSY:
            if not await self.supervisor.wait_for_drain(self.room_code):
                logger.warning(f"Transcoder for room {self.room_code} stalled, upload stream stopped")

    async def _init(self, room_code):
        if self.initialized:
            raise ProtocolViolation(f"stream already initialized for room {self.room_code}")
        code = normalize_room_code(room_code)
        if len(code) != ROOM_CODE_LENGTH:
            raise MalformedMessage(f"Invalid room code format (must be {ROOM_CODE_LENGTH} characters)")
        if code not in self.rooms:
            raise RoomNotFound()

        logger.info(f"Starting transcoder for upload to room {code}")
        startup = self.supervisor.begin(code)
        self.room_code = code
        self.queue.label = code
        if len(self.queue):
            logger.info(f"Processing {len(self.queue)} queued binary chunks for room {code}")
        for chunk in self.queue.drain():
            self.supervisor.write_chunk(code, chunk)
        self._startup_task = asyncio.ensure_future(self._report_startup(code, startup))

    async def _report_startup(self, room_code: str, startup: asyncio.Future):
        try:
            playlist_url = await asyncio.shield(startup)
        except TranscodeError as e:
            self.room_code = None
            await self.channel.send_json({"type": "stream-failed", "error": e.message, "roomCode": room_code})
            return
        await self.channel.send_json({"type": "stream-started", "playlistUrl": playlist_url, "roomCode": room_code})

    async def close(self):
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
        self.queue.clear()
        if self.room_code is not None:
            logger.info(f"Upload socket for room {self.room_code} closed, stopping stream")
            await self.supervisor.stop(self.room_code, reason="upload_closed")
            self.room_code = None
