from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import (
    NotifyStreamReadyRequest,
    NotifyStreamReadyResponse,
    RoomListResponse,
    RoomSnapshot,
    StreamInfoResponse,
)
from room_manager import normalize_room_code
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api", tags=["rooms"])


@rooms_router.post("/notify-stream-ready", response_model=NotifyStreamReadyResponse)
async def notify_stream_ready(body: NotifyStreamReadyRequest, request: Request):
    """Out-of-process transcoders report a finished playlist here; both room occupants get `stream_ready`."""
    context = request.app.state.context
    if not body.room_code or not body.hls_url or not body.watch_page_url:
        logger.warning("Stream ready notification rejected: missing required fields")
        raise HTTPException(status_code=400, detail="Missing required fields: roomCode, hlsUrl, watchPageUrl")

    room_code = normalize_room_code(body.room_code)
    if room_code not in context.rooms:
        logger.warning(f"Stream ready notification failed: Room {room_code} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    notified = await context.relay.notify_room_of_stream_ready(room_code, body.hls_url, body.watch_page_url)
    logger.info(f"Stream ready notification sent for room {room_code} to {notified} clients")
    return NotifyStreamReadyResponse(room_code=room_code, notified_clients=notified)


@rooms_router.get("/room/{room_code}", response_model=StreamInfoResponse)
async def get_room_stream(room_code: str, request: Request):
    """
    Stream metadata for display pages.

    Returns 404 when the room does not exist, and 404 with
    `status: room_exists_but_no_stream` when it has no playlist yet.
    """
    context = request.app.state.context
    room_code = normalize_room_code(room_code)
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room stream info request for {room_code} from {client_host}")

    if room_code not in context.rooms:
        raise HTTPException(status_code=404, detail={"error": "Room not found", "roomCode": room_code})

    supervisor = context.supervisor
    if not supervisor.playlist_exists(room_code):
        raise HTTPException(
            status_code=404,
            detail={"error": "Stream not active", "roomCode": room_code, "status": "room_exists_but_no_stream"},
        )

    return StreamInfoResponse(
        room_code=room_code,
        hls_url=supervisor.playlist_url(room_code),
        watch_url=supervisor.watch_url(room_code),
        viewer_count=supervisor.viewer_count(room_code),
    )


@rooms_router.get("/rooms", response_model=RoomListResponse)
async def list_rooms(request: Request):
    context = request.app.state.context
    rooms = [
        RoomSnapshot(**room, streaming=context.supervisor.is_streaming(room["roomCode"]))
        for room in context.rooms.snapshot()
    ]
    return RoomListResponse(count=len(rooms), rooms=rooms)
