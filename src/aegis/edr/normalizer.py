"""Convert raw observations from each monitor into SecurityEvents."""

import json
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ..events import EventSource, SecurityEvent, Severity, log_source_for_platform

FILE_EVENT_TYPES = {
    "created": "file_created",
    "modified": "file_changed",
    "deleted": "file_deleted",
}

# Checked in order; the first keyword group found wins
_SEVERITY_KEYWORDS = [
    (Severity.CRITICAL, ("critical", "emergency", "fatal")),
    (Severity.HIGH, ("error", "fail", "denied")),
    (Severity.MEDIUM, ("warn", "suspicious")),
    (Severity.LOW, ("notice", "auth")),
]

_CATEGORY_KEYWORDS = [
    ("authentication", ("login", "logon", "auth", "ssh", "password", "invalid user")),
    ("privilege_escalation", ("sudo", "privilege", "elevation", "setuid")),
    ("defense_evasion", ("firewall", "iptables", "blocked", "audit")),
    ("persistence", ("cron", "scheduled", "persistence", "systemctl enable")),
    ("command_and_control", ("download", "curl", "wget")),
    ("execution", ("exec", "spawn", "script")),
]


@dataclass
class ConnectionInfo:
    """One socket as seen by the network monitor."""
    local_addr: str
    local_port: int
    remote_addr: str
    remote_port: int
    state: str
    process: Optional[str] = None
    pid: Optional[int] = None

    @property
    def key(self) -> str:
        return f"{self.local_addr}:{self.local_port}-{self.remote_addr}:{self.remote_port}"


@dataclass
class ProcessInfo:
    """One process as seen by the process monitor."""
    pid: int
    name: str
    path: Optional[str] = None
    user: Optional[str] = None
    command: Optional[str] = None
    parent_pid: Optional[int] = None


def severity_from_message(message: str) -> Severity:
    lower = message.lower()
    for severity, keywords in _SEVERITY_KEYWORDS:
        if any(k in lower for k in keywords):
            return severity
    return Severity.INFO


def category_from_message(message: str) -> str:
    lower = message.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(k in lower for k in keywords):
            return category
    return "general"


def normalize_log_event(
    message: str,
    log_source: str,
    timestamp: Optional[datetime] = None,
    platform: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> SecurityEvent:
    """A log line or record; severity and category are inferred from its text."""
    metadata = {"logSource": log_source}
    if extra:
        metadata.update(extra)
    return SecurityEvent.create(
        source=log_source_for_platform(platform),
        severity=severity_from_message(message),
        category=category_from_message(message),
        description=message,
        metadata=metadata,
        raw={"message": message, "source": log_source},
        timestamp=timestamp,
    )


def parse_unified_log_line(line: str) -> tuple[str, Optional[str], Optional[datetime]]:
    """
    Parse one line of ``log stream --style json`` output.

    Returns:
        (message, sender, timestamp); plain text lines come back unchanged
    """
    stripped = line.strip().rstrip(",")
    if stripped.startswith("{"):
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            return line.strip(), None, None
        if isinstance(record, dict):
            message = record.get("eventMessage") or record.get("composedMessage") or stripped
            timestamp = None
            if record.get("timestamp"):
                try:
                    timestamp = datetime.fromisoformat(str(record["timestamp"]).replace(" ", "T", 1))
                except ValueError:
                    timestamp = None
            return str(message), record.get("senderImagePath") or record.get("processImagePath"), timestamp
    return line.strip(), None, None


def normalize_network_event(conn: ConnectionInfo, action: str = "new_connection") -> SecurityEvent:
    description = (
        f"Network connection: {conn.local_addr}:{conn.local_port} -> "
        f"{conn.remote_addr}:{conn.remote_port} [{conn.state}]"
    )
    if conn.process:
        description += f" ({conn.process})"
    return SecurityEvent.create(
        source=EventSource.NETWORK,
        severity=Severity.INFO,
        category="network",
        description=description,
        metadata={
            "eventType": action,
            "localAddr": conn.local_addr,
            "localPort": conn.local_port,
            "remoteAddr": conn.remote_addr,
            "remotePort": conn.remote_port,
            "state": conn.state,
            "process": conn.process,
            "pid": conn.pid,
        },
        raw=conn,
    )


def normalize_process_event(proc: ProcessInfo, action: str) -> SecurityEvent:
    """``action`` is "started" or "stopped"."""
    description = f"Process {action}: {proc.name} (PID: {proc.pid})"
    if proc.user:
        description += f" by {proc.user}"
    if proc.command and action == "started":
        description += f": {proc.command}"
    return SecurityEvent.create(
        source=EventSource.PROCESS,
        severity=Severity.INFO,
        category="process_creation" if action == "started" else "process_termination",
        description=description,
        metadata={
            "eventType": f"process_{action}",
            "pid": proc.pid,
            "processName": proc.name,
            "action": action,
            "path": proc.path,
            "user": proc.user,
            "command": proc.command,
            "parentPid": proc.parent_pid,
        },
        raw=proc,
    )


def normalize_file_event(
    path: str,
    action: str,
    old_hash: Optional[str] = None,
    new_hash: Optional[str] = None,
) -> SecurityEvent:
    """``action`` is "created", "modified" or "deleted"."""
    severity = Severity.INFO
    if action == "modified" and old_hash and new_hash and old_hash != new_hash:
        severity = Severity.MEDIUM
    elif action in ("deleted", "created"):
        severity = Severity.LOW

    return SecurityEvent.create(
        source=EventSource.FILE,
        severity=severity,
        category="file",
        description=f"File {action}: {path}",
        metadata={
            "eventType": FILE_EVENT_TYPES.get(action, f"file_{action}"),
            "filePath": path,
            "action": action,
            "oldHash": old_hash,
            "newHash": new_hash,
        },
        raw={"path": path, "action": action, "platform": sys.platform},
    )
