import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import make_supervisor
from context import ServerContext
from room_manager import RoomManager


@pytest.fixture
def context(tmp_path):
    return ServerContext(rooms=RoomManager(), supervisor=make_supervisor(tmp_path / "streams"))


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as client:
        yield client


def create_room(ws, code="ABC123"):
    ws.send_json({"type": "create-room", "roomCode": code, "createdAt": 0, "expiresAt": 9_999_999_999_999})
    return ws.receive_json()


def test_banner(client):
    response = client.get("/")

    assert response.status_code == 200
    assert "running" in response.text


def test_signaling_over_websocket(client):
    with client.websocket_connect("/") as presenter, client.websocket_connect("/") as viewer:
        assert create_room(presenter) == {"type": "room-created", "roomCode": "ABC123"}

        viewer.send_json({"type": "join-room", "roomCode": "abc123"})
        assert viewer.receive_json() == {"type": "room-joined", "roomCode": "ABC123", "peerReady": True}
        assert presenter.receive_json() == {"type": "peer-joined", "roomCode": "ABC123", "role": "viewer"}

        presenter.send_json({"type": "offer", "sdp": "v=0..."})
        assert viewer.receive_json() == {"type": "offer", "sdp": "v=0..."}

        viewer.send_text("garbage")
        assert viewer.receive_json()["message"] == "Invalid JSON"


def test_disconnect_frees_slot(client, context):
    with client.websocket_connect("/") as presenter:
        create_room(presenter)
        assert "ABC123" in context.rooms

    # the server side finishes its cleanup once the next request is served
    client.get("/healthz")
    assert "ABC123" not in context.rooms


def test_rooms_listing(client):
    with client.websocket_connect("/") as presenter:
        create_room(presenter)

        body = client.get("/api/rooms").json()

    assert body["count"] == 1
    assert body["rooms"][0]["roomCode"] == "ABC123"
    assert body["rooms"][0]["hasPresenter"] is True
    assert body["rooms"][0]["streaming"] is False


def test_notify_stream_ready_validation(client):
    assert client.post("/api/notify-stream-ready", json={"roomCode": "ABC123"}).status_code == 400

    response = client.post(
        "/api/notify-stream-ready",
        json={"roomCode": "NOPE00", "hlsUrl": "http://x/p.m3u8", "watchPageUrl": "http://x/watch"},
    )
    assert response.status_code == 404


def test_notify_stream_ready_reaches_occupants(client):
    with client.websocket_connect("/") as presenter:
        create_room(presenter)

        response = client.post(
            "/api/notify-stream-ready",
            json={"roomCode": "abc123", "hlsUrl": "http://x/p.m3u8", "watchPageUrl": "http://x/watch"},
        )
        message = presenter.receive_json()

    assert response.json() == {"success": True, "roomCode": "ABC123", "notifiedClients": 1}
    assert message["type"] == "stream_ready"
    assert message["hlsUrl"] == "http://x/p.m3u8"


def test_room_stream_info(client, context):
    assert client.get("/api/room/NOPE00").status_code == 404

    with client.websocket_connect("/") as presenter:
        create_room(presenter)

        response = client.get("/api/room/abc123")
        assert response.status_code == 404
        assert response.json()["detail"]["status"] == "room_exists_but_no_stream"

        room_dir = context.supervisor.room_dir("ABC123")
        room_dir.mkdir(parents=True)
        (room_dir / "playlist.m3u8").write_text("#EXTM3U\n")

        body = client.get("/api/room/ABC123").json()

    assert body["hlsUrl"] == "http://test/streams/ABC123/playlist.m3u8"
    assert body["watchUrl"] == "http://test/watch/ABC123"


def test_stream_files_served_with_hls_headers(client, context):
    room_dir = context.supervisor.room_dir("ABC123")
    room_dir.mkdir(parents=True)
    (room_dir / "playlist.m3u8").write_text("#EXTM3U\n")
    (room_dir / "segment_000.ts").write_bytes(b"\x47" * 188)

    playlist = client.get("/streams/ABC123/playlist.m3u8")
    segment = client.get("/streams/ABC123/segment_000.ts")

    assert playlist.status_code == 200
    assert playlist.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert playlist.headers["cache-control"] == "no-cache"
    assert segment.headers["content-type"] == "video/mp2t"
    assert context.supervisor.viewer_count("ABC123") == 1
    assert client.get("/streams/ABC123/missing.ts").status_code == 404


def test_viewer_endpoints(client):
    assert client.post("/api/viewer-connect", json={"roomCode": "ABC123"}).json()["viewerCount"] == 1
    assert client.post("/api/viewer-connect", json={"roomCode": "ABC123"}).json()["viewerCount"] == 2
    assert client.post("/api/viewer-disconnect", json={"roomCode": "ABC123"}).json()["viewerCount"] == 1
    assert client.post("/api/viewer-disconnect", json={}).status_code == 400


def test_http_start_and_stop_stream(client, context):
    started = client.post("/api/start-stream", json={"roomCode": "ABC123", "inputUrl": "rtmp://example/live"})

    assert started.status_code == 200
    assert started.json()["hlsUrl"] == "http://test/streams/ABC123/playlist.m3u8"
    assert context.supervisor.is_streaming("ABC123")

    stopped = client.post("/api/stop-stream", json={"roomCode": "ABC123"})
    assert stopped.json() == {"success": True, "roomCode": "ABC123", "stopped": True}
    assert client.post("/api/stop-stream", json={"roomCode": "ABC123"}).json()["stopped"] is False
