import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import Recorder
from connections import Role
from errors import (
    MalformedMessage,
    RoomAlreadyExists,
    RoomAlreadyUsed,
    RoomCreationInProgress,
    RoomExpired,
    RoomNotFound,
    RoomNotReady,
)
from room_manager import RoomManager


async def create(rooms, clock, channel, code="ABC123", lifetime_ms=20_000):
    return await rooms.create_room(code, clock(), clock() + lifetime_ms, channel)


async def test_create_binds_presenter(rooms, clock, make_channel):
    presenter = make_channel()

    room = await create(rooms, clock, presenter, code="abc123")

    assert room.code == "ABC123"
    assert presenter.room_code == "ABC123"
    assert presenter.role is Role.PRESENTER
    assert presenter.websocket.last == {"type": "room-created", "roomCode": "ABC123"}


async def test_join_succeeds_exactly_once(rooms, clock, make_channel):
    presenter, viewer, late = make_channel(), make_channel(), make_channel()
    await create(rooms, clock, presenter)

    room = await rooms.join_room("abc123", viewer)

    assert room.used
    assert viewer.role is Role.VIEWER
    assert viewer.websocket.last == {"type": "room-joined", "roomCode": "ABC123", "peerReady": True}
    assert presenter.websocket.last == {"type": "peer-joined", "roomCode": "ABC123", "role": "viewer"}
    with pytest.raises(RoomAlreadyUsed):
        await rooms.join_room("ABC123", late)


async def test_used_room_stays_used_after_viewer_leaves(rooms, clock, make_channel):
    presenter, viewer, late = make_channel(), make_channel(), make_channel()
    await create(rooms, clock, presenter)
    await rooms.join_room("ABC123", viewer)

    await rooms.handle_disconnect(viewer)

    assert presenter.websocket.last == {"type": "peer-left", "roomCode": "ABC123", "role": "viewer"}
    with pytest.raises(RoomAlreadyUsed):
        await rooms.join_room("ABC123", late)


async def test_join_extends_expiry(rooms, clock, make_channel):
    presenter, viewer = make_channel(), make_channel()
    room = await create(rooms, clock, presenter)

    await rooms.join_room("ABC123", viewer)

    assert room.expires_at == clock() + 300_000


async def test_room_unreachable_after_both_leave(rooms, clock, make_channel):
    presenter, viewer, late = make_channel(), make_channel(), make_channel()
    await create(rooms, clock, presenter)
    await rooms.join_room("ABC123", viewer)

    await rooms.handle_disconnect(presenter)
    await rooms.handle_disconnect(viewer)

    assert "ABC123" not in rooms
    with pytest.raises(RoomNotFound):
        await rooms.join_room("ABC123", late)


async def test_join_unknown_room(rooms, make_channel):
    with pytest.raises(RoomNotFound):
        await rooms.join_room("XYZ999", make_channel())


async def test_join_expired_room(rooms, clock, make_channel):
    await create(rooms, clock, make_channel(), lifetime_ms=20_000)
    clock.advance(20_001)

    with pytest.raises(RoomExpired):
        await rooms.join_room("ABC123", make_channel())


async def test_join_without_presenter(rooms, make_channel):
    await rooms.legacy_join("ABCDEF", Role.VIEWER, make_channel())

    with pytest.raises(RoomNotReady):
        await rooms.join_room("ABCDEF", make_channel())


async def test_duplicate_create_rejected(rooms, clock, make_channel):
    await create(rooms, clock, make_channel())

    with pytest.raises(RoomAlreadyExists):
        await create(rooms, clock, make_channel())


@pytest.mark.parametrize("code", ["ABC12", "ABC1234", "ABC-12", 123456])
async def test_invalid_code_rejected(rooms, clock, make_channel, code):
    with pytest.raises(MalformedMessage):
        await rooms.create_room(code, clock(), clock() + 1000, make_channel())


async def test_concurrent_create_for_same_code(clock, make_channel):
    release = asyncio.Event()

    async def validator(*args):
        await release.wait()

    rooms = RoomManager(clock=clock, validator=validator)
    first = asyncio.ensure_future(create(rooms, clock, make_channel()))
    await asyncio.sleep(0)

    with pytest.raises(RoomCreationInProgress):
        await create(rooms, clock, make_channel())

    release.set()
    room = await first
    assert rooms.get("ABC123") is room


async def test_stale_creation_marker_is_ignored(clock, make_channel):
    release = asyncio.Event()

    async def validator(*args):
        await release.wait()

    rooms = RoomManager(clock=clock, validator=validator, creation_stale_seconds=0)
    first = asyncio.ensure_future(create(rooms, clock, make_channel()))
    await asyncio.sleep(0.01)

    second = asyncio.ensure_future(create(rooms, clock, make_channel()))
    await asyncio.sleep(0)
    release.set()

    await first
    with pytest.raises(RoomAlreadyExists):
        await second


async def test_creating_new_room_vacates_old_one(rooms, clock, make_channel):
    presenter = make_channel()
    await create(rooms, clock, presenter, code="AAA111")

    await create(rooms, clock, presenter, code="BBB222")

    assert "AAA111" not in rooms
    assert presenter.room_code == "BBB222"


async def test_leave_closes_room_for_peer(clock, make_channel):
    closed = Recorder()
    rooms = RoomManager(clock=clock, on_room_closed=closed)
    presenter, viewer = make_channel(), make_channel()
    await create(rooms, clock, presenter)
    await rooms.join_room("ABC123", viewer)

    assert await rooms.leave_room(viewer) is True

    assert presenter.websocket.last == {"type": "room_closed", "roomCode": "ABC123", "reason": "peer_left"}
    assert not presenter.is_bound
    assert "ABC123" not in rooms
    assert closed.calls == [("ABC123",)]


async def test_leave_when_unbound_is_noop(rooms, make_channel):
    assert await rooms.leave_room(make_channel()) is False


async def test_room_closed_hook_errors_are_contained(clock, make_channel):
    async def broken(code):
        raise RuntimeError("boom")

    rooms = RoomManager(clock=clock, on_room_closed=broken)
    presenter = make_channel()
    await create(rooms, clock, presenter)

    await rooms.handle_disconnect(presenter)

    assert len(rooms) == 0


async def test_sweep_extends_occupied_expired_room(rooms, clock, make_channel):
    room = await create(rooms, clock, make_channel(), lifetime_ms=20_000)
    clock.advance(25_000)

    deleted = await rooms.sweep()

    assert deleted == []
    assert room.expires_at == clock() + 300_000


async def test_sweep_deletes_empty_expired_room(rooms, clock, make_channel):
    room = await create(rooms, clock, make_channel(), lifetime_ms=20_000)
    room.presenter = None
    clock.advance(25_000)

    assert await rooms.sweep() == ["ABC123"]
    assert "ABC123" not in rooms


async def test_sweep_keeps_rooms_before_expiry(rooms, clock, make_channel):
    room = await create(rooms, clock, make_channel(), lifetime_ms=20_000)
    room.presenter = None
    clock.advance(10_000)

    assert await rooms.sweep() == []


async def test_sweep_persists_snapshot(clock, make_channel):
    backend = MagicMock()
    rooms = RoomManager(clock=clock, snapshot_backend=backend)
    await create(rooms, clock, make_channel())

    await rooms.sweep()

    (saved,), _ = backend.save_snapshot.call_args
    assert saved == [{
        "roomCode": "ABC123",
        "createdAt": clock(),
        "expiresAt": clock() + 20_000,
        "used": False,
        "hasPresenter": True,
        "hasViewer": False,
    }]


async def test_snapshot_failure_is_not_raised(clock, make_channel):
    backend = MagicMock()
    backend.save_snapshot.side_effect = OSError("disk full")
    rooms = RoomManager(clock=clock, snapshot_backend=backend)

    assert await rooms.persist_snapshot() is False


async def test_legacy_join_replaces_previous_occupant(rooms, make_channel):
    first, second, viewer = make_channel(), make_channel(), make_channel()
    await rooms.legacy_join("session-1", Role.PRESENTER, first)
    await rooms.legacy_join("session-1", Role.VIEWER, viewer)

    await rooms.legacy_join("session-1", Role.PRESENTER, second)

    assert first.websocket.closed_with == (4001, "replaced by new client")
    assert not first.is_bound
    assert second.websocket.last == {"type": "joined", "sessionId": "session-1", "role": "presenter", "peerReady": True}
    assert viewer.websocket.last == {"type": "peer-joined", "sessionId": "session-1", "role": "presenter"}


async def test_notify_room_counts_recipients(rooms, clock, make_channel):
    presenter, viewer = make_channel(), make_channel()
    await create(rooms, clock, presenter)
    await rooms.join_room("ABC123", viewer)

    assert await rooms.notify_room("abc123", {"type": "hello"}) == 2
    assert await rooms.notify_room("NOPE00", {"type": "hello"}) == 0
