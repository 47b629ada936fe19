from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse, PlainTextResponse
from schemas.rooms import RoomCodeRequest, StartStreamRequest, StopStreamResponse, StreamInfoResponse, ViewerCountResponse
from errors import TranscodeError
from room_manager import normalize_room_code
from logging_config import get_logger

logger = get_logger(__name__)

streams_router = APIRouter(tags=["streams"])

HLS_CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


def _require_room_code(body: RoomCodeRequest) -> str:
    if not body.room_code:
        raise HTTPException(status_code=400, detail="Missing roomCode")
    return normalize_room_code(body.room_code)


@streams_router.get("/", response_class=PlainTextResponse)
async def banner():
    return "Screen-cast signaling server is running"


@streams_router.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    return "ok"


@streams_router.post("/api/start-stream", response_model=StreamInfoResponse)
async def start_stream(body: StartStreamRequest, request: Request):
    supervisor = request.app.state.context.supervisor
    room_code = _require_room_code(body)
    logger.info(f"Start stream request for room {room_code}, input: {body.input_url or 'websocket'}")
    try:
        hls_url = await supervisor.start(room_code, body.input_url)
    except TranscodeError as e:
        logger.error(f"Error starting stream for room {room_code}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start stream: {e.message}")

    return StreamInfoResponse(
        room_code=room_code,
        hls_url=hls_url,
        watch_url=supervisor.watch_url(room_code),
        viewer_count=supervisor.viewer_count(room_code),
    )


@streams_router.post("/api/stop-stream", response_model=StopStreamResponse)
async def stop_stream(body: RoomCodeRequest, request: Request):
    supervisor = request.app.state.context.supervisor
    room_code = _require_room_code(body)
    stopped = await supervisor.stop(room_code, reason="requested")
    logger.info(f"Stop stream request for room {room_code}: {'stopped' if stopped else 'no active stream'}")
    return StopStreamResponse(room_code=room_code, stopped=stopped)


@streams_router.post("/api/viewer-connect", response_model=ViewerCountResponse)
async def viewer_connect(body: RoomCodeRequest, request: Request):
    supervisor = request.app.state.context.supervisor
    room_code = _require_room_code(body)
    count = supervisor.add_viewer(room_code)
    return ViewerCountResponse(room_code=room_code, viewer_count=count)


@streams_router.post("/api/viewer-disconnect", response_model=ViewerCountResponse)
async def viewer_disconnect(body: RoomCodeRequest, request: Request):
    supervisor = request.app.state.context.supervisor
    room_code = _require_room_code(body)
    count = supervisor.remove_viewer(room_code)
    return ViewerCountResponse(room_code=room_code, viewer_count=count)


@streams_router.get("/streams/{room_code}/{filename}")
async def serve_stream_file(room_code: str, filename: str, request: Request):
    """Serve playlist and segment files; every hit counts as viewer activity."""
    supervisor = request.app.state.context.supervisor
    room_code = normalize_room_code(room_code)
    room_dir = supervisor.room_dir(room_code).resolve()
    file_path = (room_dir / filename).resolve()
    if file_path.parent != room_dir or not file_path.is_file():
        raise HTTPException(status_code=404, detail="Stream not found")

    media_type = HLS_CONTENT_TYPES.get(file_path.suffix, "application/octet-stream")
    if file_path.suffix in HLS_CONTENT_TYPES:
        supervisor.record_activity(room_code)
    return FileResponse(file_path, media_type=media_type, headers={"Cache-Control": "no-cache"})
