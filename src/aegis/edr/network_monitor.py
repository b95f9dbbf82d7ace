# Aegis Guard - Network Monitor
"""
Polls the socket table with psutil and reports connections that appeared or
disappeared since the previous snapshot.
"""

import asyncio
import logging
from typing import Callable, Optional

import psutil

from .base import PollingMonitor
from .normalizer import ConnectionInfo, normalize_network_event

logger = logging.getLogger("aegis.edr.network_monitor")

SnapshotFunc = Callable[[], list[ConnectionInfo]]


def snapshot_connections() -> list[ConnectionInfo]:
    """Current inet connections that have a remote endpoint."""
    connections = []
    names: dict[int, str] = {}

    for conn in psutil.net_connections(kind="inet"):
        if not conn.raddr:
            continue
        process_name = None
        if conn.pid:
            if conn.pid not in names:
                try:
                    names[conn.pid] = psutil.Process(conn.pid).name()
                except (psutil.NoSuchProcess, psutil.AccessDenied):
                    names[conn.pid] = "unknown"
            process_name = names[conn.pid]

        connections.append(ConnectionInfo(
            local_addr=conn.laddr.ip if conn.laddr else "",
            local_port=conn.laddr.port if conn.laddr else 0,
            remote_addr=conn.raddr.ip,
            remote_port=conn.raddr.port,
            state=conn.status,
            process=process_name,
            pid=conn.pid,
        ))
    return connections


class NetworkMonitor(PollingMonitor):
    """Diffs successive connection snapshots keyed by local and remote endpoint."""

    name = "network"

    def __init__(self, poll_interval: float = 30.0, snapshot: Optional[SnapshotFunc] = None):
        super().__init__(poll_interval)
        self._snapshot = snapshot or snapshot_connections
        self._known: dict[str, ConnectionInfo] = {}

    async def poll_once(self) -> None:
        try:
            current = await asyncio.to_thread(self._snapshot)
        except psutil.AccessDenied as e:
            self._emit_error(f"Access denied reading connections: {e}", e)
            return

        current_by_key = {conn.key: conn for conn in current}

        for key, conn in current_by_key.items():
            if key not in self._known:
                self._emit(normalize_network_event(conn, "new_connection"))

        for key, conn in self._known.items():
            if key not in current_by_key:
                closed = ConnectionInfo(
                    local_addr=conn.local_addr,
                    local_port=conn.local_port,
                    remote_addr=conn.remote_addr,
                    remote_port=conn.remote_port,
                    state="CLOSED",
                    process=conn.process,
                    pid=conn.pid,
                )
                self._emit(normalize_network_event(closed, "closed_connection"))

        self._known = current_by_key

    @property
    def known_connections(self) -> int:
        return len(self._known)

    async def _on_stop(self) -> None:
        self._known.clear()
