# Aegis Guard - Event Model
"""Canonical security event that every monitor, sensor and adapter normalizes into."""

import socket
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Event and rule severity levels."""
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: "str | Severity | None", default: "Severity | None" = None) -> "Severity":
        """Parse a severity string, falling back to ``default`` (INFO) when unknown."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.INFO


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class EventSource(str, Enum):
    """Where an event was observed."""
    SYSLOG = "syslog"
    WINDOWS_EVENT = "windows_event"
    NETWORK = "network"
    PROCESS = "process"
    FILE = "file"
    FALCO = "falco"
    SURICATA = "suricata"
    ADAPTER = "adapter"

    @property
    def is_log(self) -> bool:
        return self in (EventSource.SYSLOG, EventSource.WINDOWS_EVENT)

    @property
    def is_network_like(self) -> bool:
        return self in (EventSource.NETWORK, EventSource.SURICATA)

    @property
    def is_process_like(self) -> bool:
        return self in (EventSource.PROCESS, EventSource.FALCO)

    @property
    def is_sensor(self) -> bool:
        return self in (EventSource.FALCO, EventSource.SURICATA)


def log_source_for_platform(platform: str | None = None) -> EventSource:
    """Log events are labeled windows_event on Windows and syslog everywhere else."""
    platform = platform or sys.platform
    return EventSource.WINDOWS_EVENT if platform == "win32" else EventSource.SYSLOG


def new_event_id() -> str:
    return str(uuid.uuid4())


def local_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


@dataclass(frozen=True)
class SecurityEvent:
    """
    Immutable fact about observed activity.

    ``category`` and ``description`` are matched directly by rules; every
    other rule field is looked up in ``metadata``.
    """
    id: str
    timestamp: datetime
    source: EventSource
    severity: Severity
    category: str
    description: str
    host: str = ""
    raw: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        source: EventSource,
        category: str,
        description: str,
        severity: Severity = Severity.INFO,
        metadata: dict[str, Any] | None = None,
        raw: Any = None,
        timestamp: datetime | None = None,
        host: str | None = None,
        event_id: str | None = None,
    ) -> "SecurityEvent":
        """Build an event stamped with a fresh id, the current time and the local hostname."""
        return cls(
            id=event_id or new_event_id(),
            timestamp=timestamp or datetime.now(timezone.utc),
            source=source,
            severity=severity,
            category=category,
            description=description,
            host=host if host is not None else local_hostname(),
            raw=raw,
            metadata=dict(metadata or {}),
        )

    def get_field(self, name: str) -> Any:
        """Resolve a rule field: core attributes first, then metadata."""
        if name in _CORE_FIELDS:
            value = getattr(self, name)
            return value.value if isinstance(value, Enum) else value
        return self.metadata.get(name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "severity": self.severity.value,
            "category": self.category,
            "description": self.description,
            "host": self.host,
            "metadata": self.metadata,
        }

    def summary(self) -> str:
        """One-line summary for logging."""
        preview = self.description[:80] + "..." if len(self.description) > 80 else self.description
        return f"[{self.source.value}] [{self.severity.value}] {self.category}: {preview}"


_CORE_FIELDS = frozenset({"id", "source", "severity", "category", "description", "host"})
