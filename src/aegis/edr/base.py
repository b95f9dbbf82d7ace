"""Common observer capability shared by every monitor."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..events import SecurityEvent

logger = logging.getLogger("aegis.edr.base")

EventCallback = Callable[[SecurityEvent], None]


@dataclass
class MonitorError:
    """A failure scoped to a single observer."""
    monitor: str
    message: str
    exception: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"[{self.monitor}] {self.message}"


ErrorCallback = Callable[[MonitorError], None]


class BaseMonitor(ABC):
    """
    An independently startable observer with an event channel and an error
    channel. Subclasses implement ``_run``; ``start`` schedules it as a task
    and ``stop`` cancels it.
    """

    name = "monitor"

    def __init__(self):
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._event_callbacks: list[EventCallback] = []
        self._error_callbacks: list[ErrorCallback] = []

        self.stats = {
            "events_emitted": 0,
            "errors": 0,
            "start_time": None,
        }

    def on_event(self, callback: EventCallback) -> None:
        """Register callback for normalized events."""
        self._event_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        """Register callback for observer failures."""
        self._error_callbacks.append(callback)

    def remove_all_listeners(self) -> None:
        self._event_callbacks.clear()
        self._error_callbacks.clear()

    @property
    def is_running(self) -> bool:
        return self._running

    def _emit(self, event: SecurityEvent) -> None:
        self.stats["events_emitted"] += 1
        for callback in list(self._event_callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"{self.name} event callback error: {e}")

    def _emit_error(self, message: str, exception: Optional[BaseException] = None) -> None:
        self.stats["errors"] += 1
        error = MonitorError(monitor=self.name, message=message, exception=exception)
        logger.error(str(error))
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"{self.name} error callback error: {e}")

    async def start(self) -> None:
        """Start observing. Starting twice is a no-op."""
        if self._running:
            logger.warning(f"{self.name} monitor already running")
            return
        self._running = True
        self.stats["start_time"] = datetime.now(timezone.utc).isoformat()
        try:
            await self._on_start()
        except Exception:
            self._running = False
            raise
        self._task = asyncio.create_task(self._guarded_run(), name=f"monitor_{self.name}")
        logger.info(f"{self.name} monitor started")

    async def stop(self) -> None:
        """Stop observing and release listeners. Stopping twice is a no-op."""
        if not self._running and self._task is None:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self._on_stop()
        self.remove_all_listeners()
        logger.info(f"{self.name} monitor stopped")

    async def _guarded_run(self) -> None:
        try:
            await self._run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._emit_error(f"{self.name} monitor crashed: {e}", e)
        finally:
            self._running = False

    async def _on_start(self) -> None:
        """Hook run before the observer task is scheduled."""

    async def _on_stop(self) -> None:
        """Hook run after the observer task is cancelled."""

    @abstractmethod
    async def _run(self) -> None:
        """Observer body; runs until cancelled or a fatal error."""


class PollingMonitor(BaseMonitor):
    """Observer that takes a snapshot on a fixed interval."""

    def __init__(self, poll_interval: float):
        super().__init__()
        self.poll_interval = poll_interval

    async def _run(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._emit_error(f"{self.name} poll failed: {e}", e)
            await asyncio.sleep(self.poll_interval)

    @abstractmethod
    async def poll_once(self) -> None:
        """Take one snapshot and emit the differences."""
