# Aegis Guard - Process Monitor
"""Process start/stop detection by diffing psutil process snapshots by PID."""

import asyncio
import logging
from typing import Callable, Optional

import psutil

from .base import PollingMonitor
from .normalizer import ProcessInfo, normalize_process_event

logger = logging.getLogger("aegis.edr.process_monitor")

SnapshotFunc = Callable[[], list[ProcessInfo]]


def snapshot_processes() -> list[ProcessInfo]:
    """Every visible process; ones that vanish mid-scan are skipped."""
    processes = []
    for proc in psutil.process_iter(["pid", "name", "exe", "cmdline", "ppid", "username"]):
        try:
            info = proc.info
            cmdline = info.get("cmdline")
            processes.append(ProcessInfo(
                pid=info["pid"],
                name=info.get("name") or "unknown",
                path=info.get("exe"),
                user=info.get("username"),
                command=" ".join(cmdline) if cmdline else None,
                parent_pid=info.get("ppid"),
            ))
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return processes


class ProcessMonitor(PollingMonitor):
    """Reports processes that started or stopped between polls."""

    name = "process"

    def __init__(self, poll_interval: float = 15.0, snapshot: Optional[SnapshotFunc] = None):
        super().__init__(poll_interval)
        self._snapshot = snapshot or snapshot_processes
        self._known: dict[int, ProcessInfo] = {}

    async def poll_once(self) -> None:
        current = {proc.pid: proc for proc in await asyncio.to_thread(self._snapshot)}

        for pid, proc in current.items():
            if pid not in self._known:
                self._emit(normalize_process_event(proc, "started"))

        for pid, proc in self._known.items():
            if pid not in current:
                self._emit(normalize_process_event(proc, "stopped"))

        self._known = current

    @property
    def known_processes(self) -> int:
        return len(self._known)

    async def _on_stop(self) -> None:
        self._known.clear()
