REDIS_SNAPSHOT_KEY = "room:snapshot:{slug}" # room code - hash of room metadata
REDIS_SNAPSHOT_INDEX_KEY = "room:snapshot:index" # set of room codes in the last snapshot

# **Example `room:snapshot:{code}` hash fields**
# - `roomCode` = `ABC123`
# - `createdAt` / `expiresAt` = epoch milliseconds
# - `used` = "true" / "false"
# - `hasPresenter` / `hasViewer` = "true" / "false"
# - `savedAt` = ISO timestamp
