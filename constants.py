import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

# Public base URL used in hlsUrl / watchPageUrl
DOMAIN = os.getenv("DOMAIN", f"http://localhost:{PORT}").rstrip("/")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Rooms
ROOM_CODE_LENGTH = 6
ROOM_SWEEP_INTERVAL_SECONDS = float(os.getenv("ROOM_SWEEP_INTERVAL_SECONDS", 30))
ACTIVE_SESSION_EXTENSION_MS = int(os.getenv("ACTIVE_SESSION_EXTENSION_MS", 5 * 60 * 1000))
LEGACY_SESSION_LIFETIME_MS = 30 * 60 * 1000
ROOM_CREATION_STALE_SECONDS = 10.0
HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", 30))

# "presenter" (room creator) or "viewer"
STREAM_CONTROLLER_ROLE = os.getenv("STREAM_CONTROLLER_ROLE", "presenter")

# Snapshots: "file", "redis" or "none"
SNAPSHOT_BACKEND = os.getenv("SNAPSHOT_BACKEND", "file")
SNAPSHOT_PATH = os.getenv("SNAPSHOT_PATH", "rooms-snapshot.json")
SNAPSHOT_TTL_SECONDS = int(os.getenv("SNAPSHOT_TTL_SECONDS", 600))

# Transcoding
STREAM_DIR = os.getenv("STREAM_DIR", "streams")
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
PLAYLIST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
HLS_SEGMENT_SECONDS = 1
HLS_LIST_SIZE = 6

SPAWN_TIMEOUT_SECONDS = 5.0
STDIN_TIMEOUT_SECONDS = 10.0
STDIN_POLL_INTERVAL_SECONDS = 0.05
DRAIN_TIMEOUT_SECONDS = float(os.getenv("DRAIN_TIMEOUT_SECONDS", 10))
PLAYLIST_TIMEOUT_SECONDS = float(os.getenv("PLAYLIST_TIMEOUT_SECONDS", 15))
PLAYLIST_POLL_INTERVAL_SECONDS = 0.2
STOP_GRACE_SECONDS = 5.0
CLEANUP_DELAY_SECONDS = 30.0
ERROR_CLEANUP_DELAY_SECONDS = 2.0
PENDING_CHUNK_LIMIT = 100
PROGRESS_LOG_INTERVAL_SECONDS = 10.0

# Viewers
AUTO_STOP_DELAY_SECONDS = 30.0
VIEWER_IDLE_THRESHOLD_SECONDS = 60.0
VIEWER_SWEEP_INTERVAL_SECONDS = 60.0
