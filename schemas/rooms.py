from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class NotifyStreamReadyRequest(ApiModel):
    room_code: Optional[str] = Field(None, alias="roomCode")
    hls_url: Optional[str] = Field(None, alias="hlsUrl")
    watch_page_url: Optional[str] = Field(None, alias="watchPageUrl")

class NotifyStreamReadyResponse(ApiModel):
    success: bool = True
    room_code: str = Field(alias="roomCode")
    notified_clients: int = Field(alias="notifiedClients")

class RoomCodeRequest(ApiModel):
    room_code: Optional[str] = Field(None, alias="roomCode")

class StartStreamRequest(RoomCodeRequest):
    # absent: the stream is fed by websocket media frames
    input_url: Optional[str] = Field(None, alias="inputUrl")

class StreamInfoResponse(ApiModel):
    success: bool = True
    room_code: str = Field(alias="roomCode")
    hls_url: str = Field(alias="hlsUrl")
    watch_url: str = Field(alias="watchUrl")
    status: str = "streaming_active"
    viewer_count: int = Field(0, alias="viewerCount")

class StopStreamResponse(ApiModel):
    success: bool = True
    room_code: str = Field(alias="roomCode")
    stopped: bool

class ViewerCountResponse(ApiModel):
    success: bool = True
    room_code: str = Field(alias="roomCode")
    viewer_count: int = Field(alias="viewerCount")

class RoomSnapshot(ApiModel):
    room_code: str = Field(alias="roomCode")
    created_at: int = Field(alias="createdAt")
    expires_at: int = Field(alias="expiresAt")
    used: bool
    has_presenter: bool = Field(alias="hasPresenter")
    has_viewer: bool = Field(alias="hasViewer")
    streaming: bool = False

class RoomListResponse(ApiModel):
    count: int
    rooms: list[RoomSnapshot]
