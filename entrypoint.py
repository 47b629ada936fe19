import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import HOST, PORT, DOMAIN, FFMPEG_PATH, STREAM_DIR, HEARTBEAT_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    reload = os.getenv("RELOAD", "false").lower() == "true"
    logger.info(f"Starting signaling server on {HOST}:{PORT}")
    logger.info(f"Public URL: {DOMAIN}, streams in {STREAM_DIR}/ via {FFMPEG_PATH}")
    # protocol-level ping/pong; a peer that misses a pong is disconnected by uvicorn
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=reload,
        ws_ping_interval=HEARTBEAT_INTERVAL_SECONDS,
        ws_ping_timeout=HEARTBEAT_INTERVAL_SECONDS,
    )
