import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional

from constants import AUTO_STOP_DELAY_SECONDS, VIEWER_IDLE_THRESHOLD_SECONDS, VIEWER_SWEEP_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class ViewerActivityTracker:
    """Counts HLS viewers per room and arms an auto-stop timer when a room has none.

    `is_active(code)` tells whether a stream is running for the room, `on_idle(code)`
    is awaited when the timer fires with still no viewers.
    """

    def __init__(
        self,
        is_active: Callable[[str], bool],
        on_idle: Callable[[str], Awaitable],
        on_count_change: Optional[Callable[[str, int], Awaitable]] = None,
        auto_stop_delay: float = AUTO_STOP_DELAY_SECONDS,
        idle_threshold: float = VIEWER_IDLE_THRESHOLD_SECONDS,
        sweep_interval: float = VIEWER_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.is_active = is_active
        self.on_idle = on_idle
        self.on_count_change = on_count_change
        self.auto_stop_delay = auto_stop_delay
        self.idle_threshold = idle_threshold
        self.sweep_interval = sweep_interval
        self.clock = clock
        self._counts: Dict[str, int] = {}
        self._last_activity: Dict[str, float] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks = set()

    def count(self, room_code: str) -> int:
        return self._counts.get(room_code, 0)

    def last_activity(self, room_code: str) -> Optional[float]:
        return self._last_activity.get(room_code)

    def is_armed(self, room_code: str) -> bool:
        return room_code in self._timers

    def add_viewer(self, room_code: str) -> int:
        count = self.count(room_code) + 1
        self._counts[room_code] = count
        self._last_activity[room_code] = self.clock()
        self.disarm(room_code)
        logger.info(f"Viewer joined room {room_code}. Total viewers: {count}")
        self._count_changed(room_code, count)
        return count

    def remove_viewer(self, room_code: str) -> int:
        count = max(0, self.count(room_code) - 1)
        self._counts[room_code] = count
        self._last_activity[room_code] = self.clock()
        logger.info(f"Viewer left room {room_code}. Total viewers: {count}")
        self._count_changed(room_code, count)
        if count == 0 and self.is_active(room_code):
            self.arm(room_code)
        return count

    def record_activity(self, room_code: str):
        """Segment fetches keep a room alive even when connect/disconnect beacons are lost."""
        self._last_activity[room_code] = self.clock()
        if self.count(room_code) == 0:
            self.add_viewer(room_code)

    def arm(self, room_code: str):
        self.disarm(room_code)
        loop = asyncio.get_running_loop()
        self._timers[room_code] = loop.call_later(self.auto_stop_delay, self._fire, room_code)
        logger.info(f"Auto-stop scheduled for room {room_code} in {self.auto_stop_delay}s")

    def disarm(self, room_code: str):
        timer = self._timers.pop(room_code, None)
        if timer is not None:
            timer.cancel()
            logger.debug(f"Auto-stop cancelled for room {room_code}")

    def forget(self, room_code: str):
        self.disarm(room_code)
        self._counts.pop(room_code, None)
        self._last_activity.pop(room_code, None)

    def sweep_idle(self):
        now = self.clock()
        for room_code, last in list(self._last_activity.items()):
            if now - last <= self.idle_threshold or self.count(room_code) == 0:
                continue
            logger.info(f"Detected inactive viewers in room {room_code}, resetting count")
            self._counts[room_code] = 0
            self._count_changed(room_code, 0)
            if self.is_active(room_code):
                self.arm(room_code)

    async def run(self):
        logger.info(f"Viewer monitor started (interval {self.sweep_interval}s)")
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                self.sweep_idle()
            except asyncio.CancelledError:
                logger.info("Viewer monitor cancelled")
                raise
            except Exception as e:
                logger.error(f"Error in viewer monitor: {e}", exc_info=True)

    def shutdown(self):
        for room_code in list(self._timers):
            self.disarm(room_code)

    def _fire(self, room_code: str):
        self._timers.pop(room_code, None)
        if self.count(room_code) == 0 and self.is_active(room_code):
            logger.info(f"Auto-stopping stream {room_code} - no viewers for {self.auto_stop_delay}s")
            self._spawn(self.on_idle(room_code))

    def _count_changed(self, room_code: str, count: int):
        if self.on_count_change is not None:
            self._spawn(self.on_count_change(room_code, count))

    def _spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Viewer tracker callback failed: {task.exception()}")
