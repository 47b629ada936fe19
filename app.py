from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
from routers.rooms import rooms_router
from routers.streams import streams_router
from context import ServerContext
from signaling import StreamUploadHandler
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    context: ServerContext = app.state.context
    context.start()
    logger.info("Signaling server started")
    try:
        yield
    finally:
        await context.stop()
        logger.info("Signaling server stopped")


async def signaling_endpoint(websocket: WebSocket):
    """Signaling socket: JSON text frames for pairing and handshakes, binary frames for media."""
    context: ServerContext = websocket.app.state.context
    await websocket.accept()
    channel = context.registry.register(websocket)
    logger.info(f"New client connected: {channel.connection_id}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"Client {channel.connection_id} disconnected (code {message.get('code')})")
                break
            if message.get("text") is not None:
                await context.relay.handle_text(channel, message["text"])
            elif message.get("bytes") is not None:
                await context.relay.handle_binary(channel, message["bytes"])
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {channel.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {channel.connection_id}: {e}", exc_info=True)
    finally:
        # the socket is gone; peers must not get replies addressed to it
        channel.closed = True
        await context.relay.handle_disconnect(channel)
        context.registry.unregister(channel)


async def stream_upload_endpoint(websocket: WebSocket):
    """Media-only socket: `init{roomCode}` followed by webm chunks piped to ffmpeg."""
    context: ServerContext = websocket.app.state.context
    await websocket.accept()
    channel = context.registry.register(websocket)
    handler = StreamUploadHandler(channel, context.rooms, context.supervisor)
    logger.info(f"Stream upload connection opened: {channel.connection_id}")

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("text") is not None:
                await handler.handle_text(message["text"])
            elif message.get("bytes") is not None:
                await handler.handle_binary(message["bytes"])
    except WebSocketDisconnect:
        logger.info(f"Stream upload disconnected for connection {channel.connection_id}")
    except Exception as e:
        logger.error(f"Stream upload error for connection {channel.connection_id}: {e}", exc_info=True)
    finally:
        channel.closed = True
        await handler.close()
        context.registry.unregister(channel)
        logger.info(f"Stream upload connection closed: {channel.connection_id}")


def create_app(context: Optional[ServerContext] = None) -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    app.state.context = context or ServerContext()

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins
        allow_credentials=True,
        allow_methods=["*"],  # Allow all HTTP methods
        allow_headers=["*"],  # Allow all headers
    )

    app.include_router(rooms_router)
    app.include_router(streams_router)
    app.add_api_websocket_route("/", signaling_endpoint)
    app.add_api_websocket_route("/stream-upload", stream_upload_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
