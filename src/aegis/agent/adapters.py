# Aegis Guard - Security Tool Adapters
"""
Integration contract for third-party security products (AV, EDR, SIEM).

An adapter reports whether its product is reachable and returns alerts
raised since a point in time. The registry polls every registered adapter
and converts the alerts into SecurityEvents for the guard pipeline.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from ..events import EventSource, SecurityEvent, Severity, new_event_id

logger = logging.getLogger("aegis.agent.adapters")

_SEVERITY_ALIASES = {
    Severity.CRITICAL: ("critical", "fatal", "emergency", "5"),
    Severity.HIGH: ("high", "severe", "major", "4"),
    Severity.MEDIUM: ("medium", "moderate", "warning", "warn", "3"),
    Severity.LOW: ("low", "minor", "2"),
}

# Checked in order against the lowercased alert source
_SOURCE_KEYWORDS = [
    (("falco",), EventSource.FALCO),
    (("suricata",), EventSource.SURICATA),
    (("syslog",), EventSource.SYSLOG),
    (("network", "wazuh"), EventSource.NETWORK),
    (("process",), EventSource.PROCESS),
    (("file",), EventSource.FILE),
    (("defender", "windows"), EventSource.WINDOWS_EVENT),
]


def map_severity(severity: Any) -> Severity:
    """Map a vendor severity label or number onto the five-level scale."""
    normalized = str(severity).strip().lower()
    for level, aliases in _SEVERITY_ALIASES.items():
        if normalized in aliases:
            return level
    return Severity.INFO


def map_event_source(source: str) -> EventSource:
    normalized = source.strip().lower()
    for keywords, event_source in _SOURCE_KEYWORDS:
        if any(k in normalized for k in keywords):
            return event_source
    return EventSource.SYSLOG


@dataclass
class AdapterAlert:
    """An alert as reported by an external product."""
    id: str
    timestamp: datetime
    severity: str
    title: str
    description: str
    source: str
    raw: Any = None


class SecurityAdapter(ABC):
    """Base class for product adapters."""

    name: str = "adapter"
    type: str = "generic"

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the product is installed and reachable."""

    @abstractmethod
    async def get_alerts(self, since: Optional[datetime] = None) -> list[AdapterAlert]:
        """Alerts raised after ``since`` (all recent alerts when None)."""

    def to_security_events(self, alerts: list[AdapterAlert]) -> list[SecurityEvent]:
        return [
            SecurityEvent.create(
                source=map_event_source(alert.source),
                severity=map_severity(alert.severity),
                category=f"adapter/{alert.source}",
                description=f"[{alert.title}] {alert.description}",
                timestamp=alert.timestamp,
                raw=alert.raw if alert.raw is not None else alert,
                event_id=alert.id or new_event_id(),
                metadata={
                    "adapterName": self.name,
                    "adapterType": self.type,
                    "originalSeverity": alert.severity,
                    "alertId": alert.id,
                },
            )
            for alert in alerts
        ]


class AdapterRegistry:
    """Holds adapters by name and gathers their alerts."""

    def __init__(self):
        self._adapters: dict[str, SecurityAdapter] = {}

    def register(self, adapter: SecurityAdapter) -> None:
        """Register an adapter, replacing any with the same name."""
        replaced = adapter.name in self._adapters
        self._adapters[adapter.name] = adapter
        verb = "Replaced existing" if replaced else "Registered"
        logger.info(f"{verb} adapter: {adapter.name} ({adapter.type})")

    def unregister(self, name: str) -> bool:
        if self._adapters.pop(name, None) is None:
            logger.warning(f"Adapter not found for removal: {name}")
            return False
        logger.info(f"Unregistered adapter: {name}")
        return True

    def get_adapter(self, name: str) -> Optional[SecurityAdapter]:
        return self._adapters.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._adapters)

    def __len__(self) -> int:
        return len(self._adapters)

    async def _collect_one(self, adapter: SecurityAdapter, since: Optional[datetime]) -> list[SecurityEvent]:
        if not await adapter.is_available():
            logger.debug(f"Adapter not available: {adapter.name}")
            return []
        alerts = await adapter.get_alerts(since)
        events = adapter.to_security_events(alerts)
        logger.debug(f"Collected {len(events)} events from {adapter.name}")
        return events

    async def collect_alerts(self, since: Optional[datetime] = None) -> list[SecurityEvent]:
        """
        Poll every adapter concurrently. A failing adapter is logged and
        contributes nothing; the others still report.
        """
        if not self._adapters:
            return []

        adapters = list(self._adapters.values())
        results = await asyncio.gather(
            *(self._collect_one(a, since) for a in adapters),
            return_exceptions=True,
        )

        events: list[SecurityEvent] = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to collect alerts from {adapter.name}: {result}")
                continue
            events.extend(result)

        logger.info(
            f"Collected {len(events)} events from {len(adapters)} adapters"
            + (f" since {since.astimezone(timezone.utc).isoformat()}" if since else "")
        )
        return events
