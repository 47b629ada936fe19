import asyncio
import shutil
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from constants import (
    AUTO_STOP_DELAY_SECONDS,
    CLEANUP_DELAY_SECONDS,
    DOMAIN,
    DRAIN_TIMEOUT_SECONDS,
    ERROR_CLEANUP_DELAY_SECONDS,
    FFMPEG_PATH,
    HLS_LIST_SIZE,
    HLS_SEGMENT_SECONDS,
    PENDING_CHUNK_LIMIT,
    PLAYLIST_NAME,
    PLAYLIST_POLL_INTERVAL_SECONDS,
    PLAYLIST_TIMEOUT_SECONDS,
    PROGRESS_LOG_INTERVAL_SECONDS,
    SEGMENT_PATTERN,
    SPAWN_TIMEOUT_SECONDS,
    STDIN_POLL_INTERVAL_SECONDS,
    STDIN_TIMEOUT_SECONDS,
    STOP_GRACE_SECONDS,
    STREAM_DIR,
    VIEWER_IDLE_THRESHOLD_SECONDS,
    VIEWER_SWEEP_INTERVAL_SECONDS,
)
from errors import PlaylistTimeout, SpawnError, StdinTimeout, StreamCancelled, SubprocessCrash, TranscodeError
from logging_config import get_logger
from viewers import ViewerActivityTracker

logger = get_logger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    DRAINING = "draining"
    STOPPED = "stopped"


class WriteStatus(str, Enum):
    ACCEPTED = "accepted"
    BUSY = "busy"
    REJECTED = "rejected"


def build_ffmpeg_args(output_dir: Path, input_url: Optional[str] = None) -> List[str]:
    """webm from stdin (or a remote URL) to a rolling low-latency HLS playlist."""
    if input_url:
        source = ["-i", input_url]
        preset = "veryfast"
    else:
        source = ["-f", "webm", "-i", "pipe:0"]
        preset = "ultrafast"
    return source + [
        "-c:v", "libx264",
        "-c:a", "aac",
        "-preset", preset,
        "-tune", "zerolatency",
        "-profile:v", "baseline",
        "-level", "3.0",
        "-pix_fmt", "yuv420p",
        "-g", "30",
        "-keyint_min", "30",
        "-sc_threshold", "0",
        "-b:v", "2000k",
        "-maxrate", "2500k",
        "-bufsize", "3000k",
        "-b:a", "128k",
        "-ar", "44100",
        "-f", "hls",
        "-hls_time", str(HLS_SEGMENT_SECONDS),
        "-hls_list_size", str(HLS_LIST_SIZE),
        "-hls_flags", "delete_segments+independent_segments",
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
        "-loglevel", "warning",
        str(output_dir / PLAYLIST_NAME),
    ]


class ChunkQueue:
    """Bounded FIFO of media chunks; past the limit the oldest chunk is dropped."""

    def __init__(self, limit: int = PENDING_CHUNK_LIMIT, label: str = "unknown"):
        self.limit = limit
        self.label = label
        self._chunks = deque()

    def __len__(self):
        return len(self._chunks)

    def push(self, chunk: bytes):
        self._chunks.append(chunk)
        if len(self._chunks) > self.limit:
            dropped = self._chunks.popleft()
            logger.warning(f"Dropped queued chunk ({len(dropped)} bytes) for room {self.label}")

    def drain(self):
        while self._chunks:
            yield self._chunks.popleft()

    def clear(self):
        self._chunks.clear()


class TranscodeSession:
    def __init__(self, room_code: str, output_dir: Path, pending_limit: int, accepts_input: bool = True):
        self.room_code = room_code
        self.output_dir = output_dir
        self.accepts_input = accepts_input
        self.state = StreamState.IDLE
        self.process = None
        self.stdin = None
        self.pending = ChunkQueue(pending_limit, room_code)
        self.startup: Optional[asyncio.Future] = None
        self.watcher: Optional[asyncio.Task] = None
        self.stopper: Optional[asyncio.Task] = None
        self.drain_task: Optional[asyncio.Task] = None
        self.writable = asyncio.Event()
        self.writable.set()
        self.stop_requested = False
        self.failed = False
        self.last_progress_log = 0.0

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / PLAYLIST_NAME


class TranscodeSupervisor:
    """Runs one ffmpeg process per room, fed from websocket media chunks.

    Lifecycle per room: IDLE -> STARTING -> STREAMING -> DRAINING -> STOPPED.
    Output directories outlive the process by `cleanup_delay` so viewers can
    still fetch the last segments.
    """

    def __init__(
        self,
        stream_dir=STREAM_DIR,
        public_url: str = DOMAIN,
        ffmpeg_path: str = FFMPEG_PATH,
        spawn: Optional[Callable[..., Awaitable]] = None,
        spawn_timeout: float = SPAWN_TIMEOUT_SECONDS,
        stdin_timeout: float = STDIN_TIMEOUT_SECONDS,
        stdin_poll_interval: float = STDIN_POLL_INTERVAL_SECONDS,
        drain_timeout: float = DRAIN_TIMEOUT_SECONDS,
        playlist_timeout: float = PLAYLIST_TIMEOUT_SECONDS,
        playlist_poll_interval: float = PLAYLIST_POLL_INTERVAL_SECONDS,
        stop_grace: float = STOP_GRACE_SECONDS,
        cleanup_delay: float = CLEANUP_DELAY_SECONDS,
        error_cleanup_delay: float = ERROR_CLEANUP_DELAY_SECONDS,
        pending_chunk_limit: int = PENDING_CHUNK_LIMIT,
        auto_stop_delay: float = AUTO_STOP_DELAY_SECONDS,
        viewer_idle_threshold: float = VIEWER_IDLE_THRESHOLD_SECONDS,
        viewer_sweep_interval: float = VIEWER_SWEEP_INTERVAL_SECONDS,
        on_ready: Optional[Callable[[str, str, str], Awaitable]] = None,
        on_stopped: Optional[Callable[[str, str], Awaitable]] = None,
        on_viewer_count: Optional[Callable[[str, int], Awaitable]] = None,
    ):
        self.stream_dir = Path(stream_dir)
        self.public_url = public_url.rstrip("/")
        self.ffmpeg_path = ffmpeg_path
        self._spawn = spawn or asyncio.create_subprocess_exec
        self.spawn_timeout = spawn_timeout
        self.stdin_timeout = stdin_timeout
        self.stdin_poll_interval = stdin_poll_interval
        self.drain_timeout = drain_timeout
        self.playlist_timeout = playlist_timeout
        self.playlist_poll_interval = playlist_poll_interval
        self.stop_grace = stop_grace
        self.cleanup_delay = cleanup_delay
        self.error_cleanup_delay = error_cleanup_delay
        self.pending_chunk_limit = pending_chunk_limit
        self.on_ready = on_ready
        self.on_stopped = on_stopped

        self._sessions: Dict[str, TranscodeSession] = {}
        self._draining: Dict[str, TranscodeSession] = {}
        self._cleanups: Dict[str, asyncio.TimerHandle] = {}

        self.viewers = ViewerActivityTracker(
            is_active=self.is_streaming,
            on_idle=self._stop_idle,
            on_count_change=on_viewer_count,
            auto_stop_delay=auto_stop_delay,
            idle_threshold=viewer_idle_threshold,
            sweep_interval=viewer_sweep_interval,
        )

        self.stream_dir.mkdir(parents=True, exist_ok=True)

    # -- queries --------------------------------------------------------

    def playlist_url(self, room_code: str) -> str:
        return f"{self.public_url}/streams/{room_code}/{PLAYLIST_NAME}"

    def watch_url(self, room_code: str) -> str:
        return f"{self.public_url}/watch/{room_code}"

    def room_dir(self, room_code: str) -> Path:
        return self.stream_dir / room_code

    def playlist_exists(self, room_code: str) -> bool:
        return (self.room_dir(room_code) / PLAYLIST_NAME).exists()

    def state(self, room_code: str) -> StreamState:
        session = self._sessions.get(room_code)
        if session is not None:
            return session.state
        if room_code in self._draining:
            return StreamState.DRAINING
        return StreamState.IDLE

    def is_streaming(self, room_code: str) -> bool:
        return self.state(room_code) is StreamState.STREAMING

    def active_streams(self) -> List[str]:
        return [code for code, s in self._sessions.items() if s.state is StreamState.STREAMING]

    # -- start ----------------------------------------------------------

    def begin(self, room_code: str, input_url: Optional[str] = None) -> asyncio.Future:
        """Register the session synchronously and return the future of its playlist URL.

        Chunks written after this call are queued, even before startup has run.
        """
        session = self._sessions.get(room_code)
        if session is not None:
            if session.state is StreamState.STREAMING:
                logger.info(f"Stream {room_code} already exists")
                done = asyncio.get_running_loop().create_future()
                done.set_result(self.playlist_url(room_code))
                return done
            return session.startup

        session = TranscodeSession(
            room_code, self.room_dir(room_code), self.pending_chunk_limit, accepts_input=input_url is None
        )
        session.state = StreamState.STARTING
        self._sessions[room_code] = session
        session.startup = asyncio.ensure_future(self._start_session(session, input_url))
        session.startup.add_done_callback(_retrieve_exception)
        return session.startup

    async def start(self, room_code: str, input_url: Optional[str] = None) -> str:
        return await asyncio.shield(self.begin(room_code, input_url))

    async def _start_session(self, session: TranscodeSession, input_url: Optional[str]) -> str:
        room_code = session.room_code
        try:
            await self._retire_predecessor(room_code)
            self._prepare_output_dir(session)
            session.process = await self._spawn_process(session, input_url)
            self._check_stopped(session)
            if session.accepts_input:
                await self._wait_for_stdin(session)
                # ffmpeg needs input before it writes a playlist, so queued chunks go in now
                self._flush_pending(session)
            session.watcher = asyncio.ensure_future(self._watch_process(session))
            await self._wait_for_playlist(session)
        except TranscodeError as e:
            await self._abort(session, e)
            raise
        except OSError as e:
            error = SpawnError(room_code, f"could not prepare stream output: {e}")
            await self._abort(session, error)
            raise error from e

        session.state = StreamState.STREAMING
        hls_url = self.playlist_url(room_code)
        watch_url = self.watch_url(room_code)
        logger.info(f"HLS playlist ready for room {room_code}: {hls_url}")
        if self.on_ready is not None:
            try:
                await self.on_ready(room_code, hls_url, watch_url)
            except Exception as e:
                logger.error(f"Error notifying stream ready for room {room_code}: {e}", exc_info=True)
        return hls_url

    async def _retire_predecessor(self, room_code: str):
        old = self._draining.pop(room_code, None)
        if old is None or old.process is None:
            return
        logger.info(f"Killing draining transcoder for room {room_code} before restart")
        _signal(old.process, "kill")
        await _reap(old.process, self.stop_grace)

    def _prepare_output_dir(self, session: TranscodeSession):
        handle = self._cleanups.pop(session.room_code, None)
        if handle is not None:
            handle.cancel()
        if session.output_dir.exists():
            shutil.rmtree(session.output_dir)
        session.output_dir.mkdir(parents=True, exist_ok=True)

    async def _spawn_process(self, session: TranscodeSession, input_url: Optional[str]):
        room_code = session.room_code
        args = build_ffmpeg_args(session.output_dir, input_url)
        logger.info(f"Spawning {self.ffmpeg_path} for room {room_code}...")
        logger.debug(f"{self.ffmpeg_path} {' '.join(args)}")
        try:
            process = await asyncio.wait_for(
                self._spawn(
                    self.ffmpeg_path,
                    *args,
                    stdin=asyncio.subprocess.PIPE if session.accepts_input else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                ),
                self.spawn_timeout,
            )
        except asyncio.TimeoutError:
            raise SpawnError(room_code, f"{self.ffmpeg_path} spawn timed out after {self.spawn_timeout}s")
        except (OSError, ValueError) as e:
            raise SpawnError(room_code, f"{self.ffmpeg_path} could not be started: {e}")

        if not getattr(process, "pid", None):
            _signal(process, "kill")
            raise SpawnError(room_code, f"{self.ffmpeg_path} spawn failed - no PID assigned")
        logger.info(f"{self.ffmpeg_path} spawned for room {room_code}, PID: {process.pid}")
        return process

    async def _wait_for_stdin(self, session: TranscodeSession):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.stdin_timeout
        checks = 0
        while True:
            stdin = session.process.stdin
            if stdin is not None and not stdin.is_closing():
                session.stdin = stdin
                logger.info(f"Transcoder stdin ready after {checks} checks for room {session.room_code}")
                return
            self._check_stopped(session)
            self._check_alive(session)
            if loop.time() >= deadline:
                raise StdinTimeout(session.room_code, f"stdin not writable after {self.stdin_timeout}s")
            checks += 1
            await asyncio.sleep(self.stdin_poll_interval)

    async def _wait_for_playlist(self, session: TranscodeSession):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.playlist_timeout
        checks = 0
        logger.info(f"Waiting for playlist creation at: {session.playlist_path}")
        while True:
            if session.playlist_path.exists():
                return
            self._check_stopped(session)
            self._check_alive(session)
            if loop.time() >= deadline:
                raise PlaylistTimeout(
                    session.room_code, f"playlist not created within {self.playlist_timeout}s ({checks} checks)"
                )
            checks += 1
            if checks % 10 == 0:
                logger.debug(f"Playlist check #{checks} for room {session.room_code}")
            await asyncio.sleep(self.playlist_poll_interval)

    def _check_stopped(self, session: TranscodeSession):
        if session.stop_requested:
            raise StreamCancelled(session.room_code, "stream stopped before it became ready")

    def _check_alive(self, session: TranscodeSession):
        returncode = session.process.returncode
        if returncode is not None:
            raise SubprocessCrash(session.room_code, f"transcoder exited with code {returncode} during startup")

    async def _abort(self, session: TranscodeSession, error: TranscodeError):
        room_code = session.room_code
        session.failed = True
        session.state = StreamState.STOPPED
        if self._sessions.get(room_code) is session:
            del self._sessions[room_code]
        if self._draining.get(room_code) is session:
            del self._draining[room_code]
        session.pending.clear()
        self._close_stdin(session)
        if session.process is not None:
            _signal(session.process, "kill")
            await _reap(session.process, self.stop_grace)
        self._schedule_cleanup(room_code, self.error_cleanup_delay)
        if isinstance(error, StreamCancelled):
            logger.info(f"Stream startup for room {room_code} cancelled by stop")
        else:
            logger.error(f"Stream startup failed for room {room_code}: {error.message}")

    # -- input ----------------------------------------------------------

    def write_chunk(self, room_code: str, chunk: bytes) -> WriteStatus:
        """Hand one media chunk to the room's transcoder without ever blocking.

        BUSY means the pipe is above its high-water mark: the chunk was taken,
        but the caller should pause until `wait_for_drain` returns.
        """
        session = self._sessions.get(room_code)
        if session is None or not session.accepts_input:
            logger.debug(f"No transcoder input for room {room_code}")
            return WriteStatus.REJECTED
        if session.stdin is None:
            session.pending.push(chunk)
            return WriteStatus.ACCEPTED
        return self._write(session, chunk)

    async def wait_for_drain(self, room_code: str) -> bool:
        """Wait until the pipe is writable again, at most `drain_timeout` seconds.

        A transcoder that stays alive but stops reading its input is treated as
        crashed: the stream is stopped and False is returned.
        """
        session = self._sessions.get(room_code)
        if session is None:
            return True
        try:
            await asyncio.wait_for(session.writable.wait(), self.drain_timeout)
            return True
        except asyncio.TimeoutError:
            pass

        crash = SubprocessCrash(room_code, f"transcoder stopped reading input for {self.drain_timeout}s")
        logger.error(f"{crash}; stopping stream")
        if session.drain_task is not None:
            session.drain_task.cancel()
        if self._sessions.get(room_code) is session:
            await self.stop(room_code, reason="stalled")
        return False

    def _write(self, session: TranscodeSession, chunk: bytes) -> WriteStatus:
        stdin = session.stdin
        if stdin.is_closing():
            return WriteStatus.REJECTED
        try:
            stdin.write(chunk)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.error(f"Error writing chunk to {session.room_code}: {e}")
            return WriteStatus.REJECTED
        if _buffer_full(stdin):
            self._start_drain(session)
            return WriteStatus.BUSY
        if not session.writable.is_set():
            return WriteStatus.BUSY
        return WriteStatus.ACCEPTED

    def _start_drain(self, session: TranscodeSession):
        if session.drain_task is not None and not session.drain_task.done():
            return
        logger.warning(f"stdin buffer full for room {session.room_code}, waiting for drain...")
        session.writable.clear()
        session.drain_task = asyncio.ensure_future(self._drain(session))

    async def _drain(self, session: TranscodeSession):
        try:
            await session.stdin.drain()
            logger.info(f"stdin drained for room {session.room_code}, can resume")
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"stdin closed while draining for room {session.room_code}: {e}")
        finally:
            session.writable.set()

    def _flush_pending(self, session: TranscodeSession):
        if not session.pending:
            return
        logger.info(f"Processing {len(session.pending)} queued chunks for room {session.room_code}")
        for chunk in session.pending.drain():
            self._write(session, chunk)

    # -- stop -----------------------------------------------------------

    async def stop(self, room_code: str, reason: str = "requested") -> bool:
        """End the room's stream: EOF first, terminate after a grace period."""
        session = self._sessions.pop(room_code, None)
        self.viewers.disarm(room_code)
        if session is None:
            return False

        was_streaming = session.state is StreamState.STREAMING
        session.stop_requested = True
        session.state = StreamState.DRAINING
        self._draining[room_code] = session
        self._close_stdin(session)
        if session.process is not None:
            session.stopper = asyncio.ensure_future(self._terminate(session))
        self._schedule_cleanup(room_code, self.cleanup_delay)
        logger.info(f"Stopping stream for room {room_code} ({reason})")

        if was_streaming:
            await self._notify_stopped(room_code, reason)
        return True

    async def _stop_idle(self, room_code: str):
        await self.stop(room_code, reason="idle")

    async def _terminate(self, session: TranscodeSession):
        process = session.process
        if await _reap(process, self.stop_grace):
            return
        logger.info(f"Transcoder for room {session.room_code} still running, sending SIGTERM")
        _signal(process, "terminate")
        if await _reap(process, self.stop_grace):
            return
        logger.warning(f"Transcoder for room {session.room_code} ignored SIGTERM, killing")
        _signal(process, "kill")
        await _reap(process, self.stop_grace)

    def _close_stdin(self, session: TranscodeSession):
        stdin = session.stdin
        if stdin is None and session.process is not None:
            stdin = session.process.stdin
        if stdin is not None and not stdin.is_closing():
            logger.info(f"Closing stdin stream for room {session.room_code}")
            try:
                stdin.close()
            except Exception as e:
                logger.debug(f"Error closing stdin for room {session.room_code}: {e}")
        session.writable.set()

    async def shutdown(self):
        for room_code in list(self._sessions):
            await self.stop(room_code, reason="shutdown")
        for session in list(self._draining.values()):
            if session.process is not None:
                _signal(session.process, "kill")
                await _reap(session.process, 1.0)
        self._draining.clear()
        for room_code in list(self._cleanups):
            self._cleanups.pop(room_code).cancel()
            self._cleanup_dir(room_code)
        self.viewers.shutdown()

    # -- process exit ---------------------------------------------------

    async def _watch_process(self, session: TranscodeSession):
        process = session.process
        returncode = None
        try:
            if process.stderr is not None:
                while True:
                    data = await process.stderr.read(4096)
                    if not data:
                        break
                    self._log_output(session, data)
            returncode = await process.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error watching transcoder for room {session.room_code}: {e}", exc_info=True)
        await self._on_exit(session, returncode)

    def _log_output(self, session: TranscodeSession, data: bytes):
        output = data.decode(errors="replace").strip()
        if not output:
            return
        lowered = output.lower()
        if "error" in lowered or "failed" in lowered:
            logger.error(f"Transcoder {session.room_code} error: {output}")
        elif "frame=" in output or "time=" in output:
            now = asyncio.get_running_loop().time()
            if now - session.last_progress_log > PROGRESS_LOG_INTERVAL_SECONDS:
                logger.info(f"Transcoder {session.room_code} progress: {output.splitlines()[0]}")
                session.last_progress_log = now
        else:
            logger.debug(f"Transcoder {session.room_code}: {output}")

    async def _on_exit(self, session: TranscodeSession, returncode: Optional[int]):
        room_code = session.room_code
        was_active = self._sessions.get(room_code) is session
        if was_active:
            del self._sessions[room_code]
        if self._draining.get(room_code) is session:
            del self._draining[room_code]
        previous = session.state
        session.state = StreamState.STOPPED
        session.writable.set()
        logger.info(f"Transcoder {room_code} exited with code {returncode}")

        if session.failed:
            return
        if returncode not in (0, None):
            logger.error(f"Transcoder {room_code} exited with error code {returncode}")
        self._schedule_cleanup(room_code, self.cleanup_delay)

        if was_active and previous is StreamState.STREAMING:
            crash = SubprocessCrash(room_code, f"transcoder exited unexpectedly with code {returncode}")
            logger.error(f"{crash}; not restarting")
            self.viewers.disarm(room_code)
            await self._notify_stopped(room_code, "crashed")

    async def _notify_stopped(self, room_code: str, reason: str):
        if self.on_stopped is None:
            return
        try:
            await self.on_stopped(room_code, reason)
        except Exception as e:
            logger.error(f"Error notifying stream stop for room {room_code}: {e}", exc_info=True)

    # -- cleanup --------------------------------------------------------

    def _schedule_cleanup(self, room_code: str, delay: float):
        handle = self._cleanups.pop(room_code, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._cleanups[room_code] = loop.call_later(delay, self._run_cleanup, room_code)

    def _run_cleanup(self, room_code: str):
        self._cleanups.pop(room_code, None)
        if room_code in self._sessions:
            # a fresh session owns the directory now
            return
        self._cleanup_dir(room_code)

    def _cleanup_dir(self, room_code: str):
        room_dir = self.room_dir(room_code)
        if not room_dir.exists():
            return
        try:
            shutil.rmtree(room_dir)
            logger.info(f"Cleaned up room directory: {room_code}")
        except OSError as e:
            logger.error(f"Error cleaning up room {room_code}: {e}")

    # -- viewers --------------------------------------------------------

    def add_viewer(self, room_code: str) -> int:
        return self.viewers.add_viewer(room_code)

    def remove_viewer(self, room_code: str) -> int:
        return self.viewers.remove_viewer(room_code)

    def record_activity(self, room_code: str):
        self.viewers.record_activity(room_code)

    def viewer_count(self, room_code: str) -> int:
        return self.viewers.count(room_code)


def _buffer_full(stdin) -> bool:
    transport = stdin.transport
    _, high = transport.get_write_buffer_limits()
    return transport.get_write_buffer_size() > high


def _signal(process, action: str):
    if process.returncode is not None:
        return
    try:
        getattr(process, action)()
    except ProcessLookupError:
        pass


async def _reap(process, timeout: float) -> bool:
    """Wait for the process to exit; False if it is still running after `timeout`."""
    try:
        await asyncio.wait_for(process.wait(), timeout)
        return True
    except asyncio.TimeoutError:
        return False


def _retrieve_exception(future: asyncio.Future):
    if not future.cancelled():
        future.exception()
