import asyncio
import json
import uuid
from enum import Enum
from typing import Dict, Optional

from fastapi.websockets import WebSocketState

from constants import HEARTBEAT_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    PRESENTER = "presenter"
    VIEWER = "viewer"

    @property
    def other(self) -> "Role":
        return Role.VIEWER if self is Role.PRESENTER else Role.PRESENTER

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Accept the legacy client names as well: web created rooms, android joined them."""
        aliases = {"web": cls.PRESENTER, "android": cls.VIEWER}
        if value in aliases:
            return aliases[value]
        return cls(value)


class Channel:
    """One connected peer: a websocket plus the room/role it is bound to."""

    def __init__(self, websocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex
        self.room_code: Optional[str] = None
        self.role: Optional[Role] = None
        self.closed = False

    @property
    def is_bound(self) -> bool:
        return self.room_code is not None and self.role is not None

    def bind(self, room_code: str, role: Role):
        self.room_code = room_code
        self.role = role

    def unbind(self):
        self.room_code = None
        self.role = None

    @property
    def is_connected(self) -> bool:
        """False once either side of the socket has gone away."""
        if self.closed:
            return False
        for state in ("client_state", "application_state"):
            if getattr(self.websocket, state, None) is WebSocketState.DISCONNECTED:
                return False
        return True

    async def send_json(self, message: dict) -> bool:
        """Best-effort send. A dead socket is logged, never raised."""
        if self.closed:
            return False
        try:
            await self.websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            logger.debug(f"Could not send {message.get('type')} to connection {self.connection_id}: {e}")
            return False

    async def close(self, code: int = 1000, reason: str = ""):
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing connection {self.connection_id}: {e}")

    def __repr__(self):
        return f"<Channel {self.connection_id[:8]} room={self.room_code} role={self.role and self.role.value}>"


class ConnectionRegistry:
    def __init__(self, heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS):
        self.heartbeat_interval = heartbeat_interval
        self._channels: Dict[str, Channel] = {}

    def __len__(self):
        return len(self._channels)

    def __contains__(self, channel: Channel):
        return channel.connection_id in self._channels

    def register(self, websocket) -> Channel:
        channel = Channel(websocket)
        self._channels[channel.connection_id] = channel
        logger.debug(f"Registered connection {channel.connection_id} ({len(self._channels)} live)")
        return channel

    def unregister(self, channel: Channel):
        if self._channels.pop(channel.connection_id, None) is not None:
            logger.debug(f"Unregistered connection {channel.connection_id} ({len(self._channels)} live)")

    def get(self, connection_id: str) -> Optional[Channel]:
        return self._channels.get(connection_id)

    async def heartbeat(self) -> int:
        """One liveness round: drop channels whose socket is gone.

        Quiet peers are fine, media flows peer to peer once paired. Dead peers
        are detected by uvicorn's protocol-level ping (see entrypoint.py), which
        ends their receive loop.
        """
        dropped = 0
        for channel in list(self._channels.values()):
            if channel.is_connected:
                continue
            logger.info(f"Dropping disconnected connection {channel.connection_id}")
            await channel.close(code=1001, reason="connection lost")
            self.unregister(channel)
            dropped += 1
        if dropped:
            logger.debug(f"Heartbeat dropped {dropped} connections ({len(self._channels)} live)")
        return dropped

    async def run_heartbeat(self):
        logger.info(f"Heartbeat started (interval {self.heartbeat_interval}s)")
        while True:
            try:
                await asyncio.sleep(self.heartbeat_interval)
                await self.heartbeat()
            except asyncio.CancelledError:
                logger.info("Heartbeat task cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}", exc_info=True)
