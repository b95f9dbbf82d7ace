# Aegis Guard - Monitor Engine
"""
Monitor Engine - fans the output of every enabled observer into one stream.

Each event is republished on the engine's event channel. Network events that
carry a remote address are also checked against the threat intel table, and
a hit is reported on the threat channel alongside the raw event.
"""

import logging
from enum import Enum
from typing import Callable, Optional

from ..config import MonitorConfig
from ..events import EventSource, SecurityEvent
from .base import BaseMonitor, MonitorError
from .file_monitor import FileMonitor
from .log_monitor import LogMonitor
from .network_monitor import NetworkMonitor
from .process_monitor import ProcessMonitor
from .sensors import FalcoSensor, SuricataSensor
from .threat_intel import ThreatIntelEntry, ThreatIntelTable

logger = logging.getLogger("aegis.edr.monitor_engine")

ThreatCallback = Callable[[SecurityEvent, ThreatIntelEntry], None]


class MonitorStatus(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


class MonitorEngine:
    """
    Owns the observers and the threat intel table used for lookups.

    Usage:
        engine = MonitorEngine(MonitorConfig())
        engine.on_event(handle_event)
        engine.on_threat(handle_threat)
        await engine.start()
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        threat_intel: Optional[ThreatIntelTable] = None,
        monitors: Optional[list[BaseMonitor]] = None,
    ):
        """
        Args:
            config: Which observers to run
            threat_intel: Lookup table (a table with the builtin entries if omitted)
            monitors: Explicit observers, replacing the ones built from config
        """
        self.config = config or MonitorConfig()
        self.threat_intel = threat_intel or ThreatIntelTable()
        self._explicit_monitors = monitors
        self._monitors: list[BaseMonitor] = []
        self.status = MonitorStatus.STOPPED

        self._event_callbacks: list[Callable[[SecurityEvent], None]] = []
        self._threat_callbacks: list[ThreatCallback] = []
        self._error_callbacks: list[Callable[[MonitorError], None]] = []

        self.stats = {
            "events": 0,
            "threat_hits": 0,
            "errors": 0,
        }

    def on_event(self, callback: Callable[[SecurityEvent], None]) -> None:
        self._event_callbacks.append(callback)

    def on_threat(self, callback: ThreatCallback) -> None:
        self._threat_callbacks.append(callback)

    def on_error(self, callback: Callable[[MonitorError], None]) -> None:
        self._error_callbacks.append(callback)

    @property
    def is_running(self) -> bool:
        return self.status == MonitorStatus.RUNNING

    @property
    def monitors(self) -> list[BaseMonitor]:
        return list(self._monitors)

    def build_monitors(self) -> list[BaseMonitor]:
        """Instantiate the observers enabled in the config."""
        cfg = self.config
        monitors: list[BaseMonitor] = []
        if cfg.log:
            monitors.append(LogMonitor(log_paths=cfg.log_paths))
        if cfg.network:
            monitors.append(NetworkMonitor(poll_interval=cfg.network_poll_interval))
        if cfg.process:
            monitors.append(ProcessMonitor(poll_interval=cfg.process_poll_interval))
        if cfg.file and cfg.watch_paths:
            monitors.append(FileMonitor(cfg.watch_paths, poll_interval=cfg.file_poll_interval))

        sensors = []
        if cfg.falco:
            sensors.append(FalcoSensor())
        if cfg.suricata:
            sensors.append(SuricataSensor())
        monitors.extend(s for s in sensors if s.check_availability())
        return monitors

    async def start(self) -> None:
        if self.status == MonitorStatus.RUNNING:
            logger.warning("MonitorEngine is already running")
            return

        monitors = self._explicit_monitors if self._explicit_monitors is not None else self.build_monitors()
        logger.info(f"Starting MonitorEngine with {len(monitors)} observers: {[m.name for m in monitors]}")

        self._monitors = []
        for monitor in monitors:
            monitor.on_event(self._process_event)
            monitor.on_error(self._handle_error)
            try:
                await monitor.start()
            except Exception as e:
                self._handle_error(MonitorError(monitor=monitor.name, message=f"failed to start: {e}", exception=e))
                monitor.remove_all_listeners()
                continue
            self._monitors.append(monitor)

        self.status = MonitorStatus.RUNNING
        logger.info("MonitorEngine started")

    async def stop(self) -> None:
        if self.status == MonitorStatus.STOPPED:
            logger.warning("MonitorEngine is already stopped")
            return

        logger.info("Stopping MonitorEngine")
        for monitor in self._monitors:
            try:
                await monitor.stop()
            except Exception as e:
                logger.error(f"Error stopping {monitor.name} monitor: {e}")
        self._monitors = []
        self.status = MonitorStatus.STOPPED
        logger.info("MonitorEngine stopped")

    def _process_event(self, event: SecurityEvent) -> None:
        self.stats["events"] += 1
        for callback in list(self._event_callbacks):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

        if event.source != EventSource.NETWORK:
            return
        remote = event.metadata.get("remoteAddr")
        if not remote:
            return

        entry = self.threat_intel.check_ip(str(remote))
        if entry is None:
            return

        self.stats["threat_hits"] += 1
        logger.warning(f"Threat intelligence match: {remote} ({entry.threat_type} via {entry.source})")
        for callback in list(self._threat_callbacks):
            try:
                callback(event, entry)
            except Exception as e:
                logger.error(f"Threat callback error: {e}")

    def _handle_error(self, error: MonitorError) -> None:
        self.stats["errors"] += 1
        logger.error(f"Error from {error.monitor} monitor: {error.message}")
        for callback in list(self._error_callbacks):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback error: {e}")

    def get_status(self) -> dict:
        return {
            "status": self.status.value,
            "monitors": {m.name: m.is_running for m in self._monitors},
            **self.stats,
        }
