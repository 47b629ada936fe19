import asyncio
from typing import List, Optional

from backend import create_snapshot_backend
from connections import ConnectionRegistry, Role
from constants import SNAPSHOT_BACKEND, STREAM_CONTROLLER_ROLE
from logging_config import get_logger
from room_manager import RoomManager
from signaling import SignalingRelay
from transcoder import TranscodeSupervisor

logger = get_logger(__name__)


class ServerContext:
    """Everything the handlers share: connections, rooms, transcoders and the relay between them."""

    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        rooms: Optional[RoomManager] = None,
        supervisor: Optional[TranscodeSupervisor] = None,
        stream_controller: Optional[Role] = None,
    ):
        self.registry = registry or ConnectionRegistry()
        self.rooms = rooms or RoomManager(snapshot_backend=create_snapshot_backend(SNAPSHOT_BACKEND))
        self.supervisor = supervisor or TranscodeSupervisor()
        self.relay = SignalingRelay(
            self.rooms, self.supervisor, stream_controller or Role.parse(STREAM_CONTROLLER_ROLE)
        )

        self.supervisor.on_ready = self.relay.notify_room_of_stream_ready
        self.supervisor.on_stopped = self.relay.notify_room_of_stream_stopped
        self.supervisor.viewers.on_count_change = self.relay.notify_viewer_count
        self.rooms.on_room_closed = self._room_closed

        self._tasks: List[asyncio.Task] = []

    async def _room_closed(self, room_code: str):
        await self.supervisor.stop(room_code, reason="room_closed")
        self.supervisor.viewers.forget(room_code)

    def start(self):
        """Start the periodic loops; call from inside the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self.rooms.run_sweeper()),
            asyncio.create_task(self.supervisor.viewers.run()),
            asyncio.create_task(self.registry.run_heartbeat()),
        ]
        logger.info("Background tasks started")

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.relay.shutdown()
        await self.supervisor.shutdown()
        await self.rooms.persist_snapshot()
        logger.info("Server context stopped")
