import json
import os
import tempfile
from datetime import datetime
from typing import List, Optional

import redis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, SNAPSHOT_BACKEND, SNAPSHOT_PATH, SNAPSHOT_TTL_SECONDS
from redis_keys import REDIS_SNAPSHOT_KEY, REDIS_SNAPSHOT_INDEX_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class FileSnapshotBackend:
    """Writes the room snapshot as one JSON document, replaced atomically."""

    def __init__(self, path: str = SNAPSHOT_PATH):
        self.path = path
        logger.info(f"Initializing FileSnapshotBackend at {self.path}")

    def save_snapshot(self, rooms: List[dict]):
        document = {"savedAt": datetime.now().isoformat(), "rooms": rooms}
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".snapshot-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved snapshot of {len(rooms)} rooms to {self.path}")
        return True

    def load_snapshot(self) -> Optional[dict]:
        """Read back the last document, for inspection only."""
        if not os.path.exists(self.path):
            return None
        with open(self.path) as f:
            return json.load(f)


class RedisSnapshotBackend:
    def __init__(self, redis_client=None, ttl: int = SNAPSHOT_TTL_SECONDS):
        # redis.Redis connects lazily, so an unreachable server only fails at save time
        self.redis_client = redis_client or redis.Redis(
            host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True
        )
        self.ttl = ttl
        logger.info(f"Initializing RedisSnapshotBackend with connection to {REDIS_HOST}:{REDIS_PORT}")

    def save_snapshot(self, rooms: List[dict]):
        saved_at = datetime.now().isoformat()
        current = {room["roomCode"] for room in rooms}
        previous = self.redis_client.smembers(REDIS_SNAPSHOT_INDEX_KEY) or set()

        pipe = self.redis_client.pipeline()
        for code in set(previous) - current:
            pipe.delete(REDIS_SNAPSHOT_KEY.format(slug=code))
            pipe.srem(REDIS_SNAPSHOT_INDEX_KEY, code)
        for room in rooms:
            key = REDIS_SNAPSHOT_KEY.format(slug=room["roomCode"])
            # Convert values to strings for the Redis hash
            mapping = {k: json.dumps(v) if isinstance(v, bool) else str(v) for k, v in room.items()}
            mapping["savedAt"] = saved_at
            pipe.hset(key, mapping=mapping)
            if self.ttl:
                pipe.expire(key, self.ttl)
            pipe.sadd(REDIS_SNAPSHOT_INDEX_KEY, room["roomCode"])
        if self.ttl:
            pipe.expire(REDIS_SNAPSHOT_INDEX_KEY, self.ttl)
        pipe.execute()
        logger.debug(f"Saved snapshot of {len(rooms)} rooms to Redis")
        return True

    def load_snapshot(self) -> Optional[dict]:
        codes = self.redis_client.smembers(REDIS_SNAPSHOT_INDEX_KEY)
        if not codes:
            return None
        rooms = []
        for code in sorted(codes):
            data = self.redis_client.hgetall(REDIS_SNAPSHOT_KEY.format(slug=code))
            if not data:
                continue
            # Convert back from strings
            result = {}
            for k, v in data.items():
                if k in ("roomCode", "savedAt"):
                    result[k] = v
                    continue
                try:
                    result[k] = json.loads(v)
                except (json.JSONDecodeError, TypeError):
                    result[k] = v
            rooms.append(result)
        return {"rooms": rooms}


def create_snapshot_backend(kind: str = SNAPSHOT_BACKEND):
    kind = (kind or "none").lower()
    if kind == "file":
        return FileSnapshotBackend()
    if kind == "redis":
        return RedisSnapshotBackend()
    if kind == "none":
        return None
    raise ValueError(f"Unknown snapshot backend: {kind}")
