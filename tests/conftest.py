import asyncio
import json
import os
import tempfile
from pathlib import Path

# keep import-time side effects of app.py out of the working tree
os.environ.setdefault("STREAM_DIR", tempfile.mkdtemp(prefix="streams-"))
os.environ.setdefault("SNAPSHOT_BACKEND", "none")

import pytest

from connections import Channel
from room_manager import RoomManager
from transcoder import TranscodeSupervisor


class FakeWebSocket:
    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_text(self, text):
        if self.closed_with is not None:
            raise RuntimeError("websocket is closed")
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)

    def of_type(self, message_type):
        return [m for m in self.sent if m.get("type") == message_type]

    @property
    def last(self):
        return self.sent[-1] if self.sent else None


class ManualClock:
    """Epoch milliseconds that only move when told to."""

    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeTransport:
    def __init__(self, high=64 * 1024):
        self.high = high
        self.size = 0

    def get_write_buffer_limits(self):
        return self.high // 4, self.high

    def get_write_buffer_size(self):
        return self.size


class FakeStdin:
    def __init__(self, process):
        self.process = process
        self.transport = FakeTransport()
        self.written = []
        self.closing = False
        self._drained = asyncio.Event()

    def is_closing(self):
        return self.closing

    def write(self, data):
        if self.closing:
            raise BrokenPipeError("stdin closed")
        self.written.append(data)
        self.transport.size += len(data)

    async def drain(self):
        await self._drained.wait()
        self.transport.size = 0

    def release(self):
        """Let the pipe empty, as if ffmpeg caught up."""
        self._drained.set()

    def close(self):
        self.closing = True
        if self.process.exit_on_eof:
            self.process.exit(0)


class FakeStderr:
    def __init__(self, process):
        self.process = process

    async def read(self, n=-1):
        await self.process.exited.wait()
        return b""


class FakeProcess:
    _next_pid = 1000

    def __init__(self, with_stdin=True, exit_on_eof=True):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None
        self.exit_on_eof = exit_on_eof
        self.exited = asyncio.Event()
        self.stdin = FakeStdin(self) if with_stdin else None
        self.stderr = FakeStderr(self)
        self.signals = []

    def exit(self, code):
        if self.returncode is None:
            self.returncode = code
        self.exited.set()

    def terminate(self):
        self.signals.append("terminate")
        self.exit(-15)

    def kill(self):
        self.signals.append("kill")
        self.exit(-9)

    async def wait(self):
        await self.exited.wait()
        return self.returncode


class FakeSpawner:
    """Stands in for asyncio.create_subprocess_exec."""

    def __init__(self, create_playlist=True, exit_code=None, error=None, exit_on_eof=True):
        self.create_playlist = create_playlist
        self.exit_code = exit_code
        self.error = error
        self.exit_on_eof = exit_on_eof
        self.calls = []
        self.processes = []

    async def __call__(self, program, *args, **kwargs):
        self.calls.append((program, args, kwargs))
        if self.error is not None:
            raise self.error
        process = FakeProcess(
            with_stdin=kwargs.get("stdin") == asyncio.subprocess.PIPE,
            exit_on_eof=self.exit_on_eof,
        )
        if self.create_playlist:
            Path(args[-1]).write_text("#EXTM3U\n")
        if self.exit_code is not None:
            process.exit(self.exit_code)
        self.processes.append(process)
        return process

    @property
    def process(self):
        return self.processes[-1]


class Recorder:
    """Async callback that remembers its calls."""

    def __init__(self):
        self.calls = []

    async def __call__(self, *args):
        self.calls.append(args)


def make_supervisor(stream_dir, spawner=None, **overrides):
    options = dict(
        stream_dir=stream_dir,
        public_url="http://test",
        spawn=spawner or FakeSpawner(),
        spawn_timeout=0.5,
        stdin_timeout=0.2,
        stdin_poll_interval=0.001,
        playlist_timeout=0.2,
        playlist_poll_interval=0.001,
        stop_grace=0.05,
        cleanup_delay=0.05,
        error_cleanup_delay=0.01,
        auto_stop_delay=0.05,
    )
    options.update(overrides)
    return TranscodeSupervisor(**options)


@pytest.fixture
def clock():
    return ManualClock(now=1_000_000)


@pytest.fixture
def rooms(clock):
    return RoomManager(clock=clock, active_session_extension_ms=300_000)


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def supervisor(tmp_path, spawner):
    return make_supervisor(tmp_path / "streams", spawner)


@pytest.fixture
def make_channel():
    def factory():
        return Channel(FakeWebSocket())
    return factory
