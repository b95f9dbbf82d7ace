# Aegis Guard - Environment Baseline
"""
Learned model of what is normal on this host.

During learning mode every event updates the baseline (process names,
network destinations, login users, listening ports). In protection mode
``check_deviation`` compares a new event against it.
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..events import EventSource, SecurityEvent

logger = logging.getLogger("aegis.agent.baseline")

MIN_EVENTS = 100
TARGET_EVENTS = 10000
MAX_CONFIDENCE = 0.95


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ProcessPattern:
    name: str
    path: Optional[str] = None
    frequency: int = 1
    first_seen: str = field(default_factory=_now)
    last_seen: str = field(default_factory=_now)


@dataclass
class ConnectionPattern:
    remote_address: str
    remote_port: int = 0
    protocol: str = "tcp"
    frequency: int = 1
    first_seen: str = field(default_factory=_now)
    last_seen: str = field(default_factory=_now)


@dataclass
class LoginPattern:
    username: str
    source_ip: Optional[str] = None
    hour_of_day: int = 0
    day_of_week: int = 0
    frequency: int = 1
    first_seen: str = field(default_factory=_now)
    last_seen: str = field(default_factory=_now)


@dataclass
class EnvironmentBaseline:
    """Historical profile of normal activity."""
    normal_processes: list[ProcessPattern] = field(default_factory=list)
    normal_connections: list[ConnectionPattern] = field(default_factory=list)
    normal_login_patterns: list[LoginPattern] = field(default_factory=list)
    normal_service_ports: list[int] = field(default_factory=list)
    learning_started: str = field(default_factory=_now)
    learning_complete: bool = False
    confidence_level: float = 0.0
    last_updated: str = field(default_factory=_now)
    event_count: int = 0

    def knows_process(self, name: str) -> bool:
        return any(p.name == name for p in self.normal_processes)

    def knows_destination(self, address: str) -> bool:
        return any(c.remote_address == address for c in self.normal_connections)

    def knows_user(self, username: str) -> bool:
        return any(l.username == username for l in self.normal_login_patterns)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnvironmentBaseline":
        return cls(
            normal_processes=[ProcessPattern(**p) for p in data.get("normal_processes", [])],
            normal_connections=[ConnectionPattern(**c) for c in data.get("normal_connections", [])],
            normal_login_patterns=[LoginPattern(**l) for l in data.get("normal_login_patterns", [])],
            normal_service_ports=list(data.get("normal_service_ports", [])),
            learning_started=data.get("learning_started") or _now(),
            learning_complete=bool(data.get("learning_complete", False)),
            confidence_level=float(data.get("confidence_level", 0.0)),
            last_updated=data.get("last_updated") or _now(),
            event_count=int(data.get("event_count", 0)),
        )


@dataclass(frozen=True)
class DeviationResult:
    is_deviation: bool
    deviation_type: str
    description: str
    confidence: int = 0


def create_empty_baseline() -> EnvironmentBaseline:
    return EnvironmentBaseline()


def extract_process_name(event: SecurityEvent) -> Optional[str]:
    return event.metadata.get("processName") or None


def extract_remote_address(event: SecurityEvent) -> Optional[str]:
    for key in ("remoteAddr", "remoteAddress", "destinationIP", "sourceIP"):
        value = event.metadata.get(key)
        if value:
            return str(value)
    return None


def extract_username(event: SecurityEvent) -> Optional[str]:
    return event.metadata.get("user") or event.metadata.get("username") or None


def check_deviation(baseline: EnvironmentBaseline, event: SecurityEvent) -> DeviationResult:
    """
    Compare one event with the baseline. Never modifies either argument.

    Checks, in order: unknown process name (process events), unknown remote
    destination (network events), unknown user (any event).
    """
    if event.source == EventSource.PROCESS:
        name = extract_process_name(event)
        if name and not baseline.knows_process(name):
            return DeviationResult(
                is_deviation=True,
                deviation_type="new_process",
                description=f"New process detected: {name} (not in baseline)",
                confidence=70,
            )

    if event.source == EventSource.NETWORK:
        remote = extract_remote_address(event)
        if remote and not baseline.knows_destination(remote):
            return DeviationResult(
                is_deviation=True,
                deviation_type="new_network_dest",
                description=f"New network destination: {remote} (not in baseline)",
                confidence=65,
            )

    username = extract_username(event)
    if username and not baseline.knows_user(username):
        return DeviationResult(
            is_deviation=True,
            deviation_type="new_user",
            description=f"New user activity: {username} (not in baseline)",
            confidence=60,
        )

    return DeviationResult(
        is_deviation=False,
        deviation_type="none",
        description="Event within normal baseline parameters",
    )


def calculate_confidence(event_count: int) -> float:
    """Linear to 0.3 over the first 100 events, then logarithmic up to 0.95."""
    if event_count < MIN_EVENTS:
        return event_count / MIN_EVENTS * 0.3
    progress = math.log(event_count / MIN_EVENTS) / math.log(TARGET_EVENTS / MIN_EVENTS)
    return min(MAX_CONFIDENCE, 0.3 + progress * 0.65)


def update_baseline(baseline: EnvironmentBaseline, event: SecurityEvent) -> EnvironmentBaseline:
    """Fold one event into the baseline (in place) and return it."""
    now = _now()
    baseline.event_count += 1
    baseline.last_updated = now

    if event.source == EventSource.PROCESS:
        name = extract_process_name(event)
        if name:
            existing = next((p for p in baseline.normal_processes if p.name == name), None)
            if existing:
                existing.frequency += 1
                existing.last_seen = now
            else:
                baseline.normal_processes.append(ProcessPattern(
                    name=name,
                    path=event.metadata.get("path"),
                    first_seen=now,
                    last_seen=now,
                ))

    if event.source == EventSource.NETWORK:
        remote = extract_remote_address(event)
        if remote:
            port = int(event.metadata.get("remotePort") or 0)
            existing = next(
                (c for c in baseline.normal_connections
                 if c.remote_address == remote and c.remote_port == port),
                None,
            )
            if existing:
                existing.frequency += 1
                existing.last_seen = now
            else:
                baseline.normal_connections.append(ConnectionPattern(
                    remote_address=remote,
                    remote_port=port,
                    protocol=event.metadata.get("protocol") or "tcp",
                    first_seen=now,
                    last_seen=now,
                ))
        if event.metadata.get("state") == "LISTEN":
            local_port = event.metadata.get("localPort")
            if local_port and local_port not in baseline.normal_service_ports:
                baseline.normal_service_ports.append(local_port)

    username = extract_username(event)
    if username:
        existing = next((l for l in baseline.normal_login_patterns if l.username == username), None)
        if existing:
            existing.frequency += 1
            existing.last_seen = now
        else:
            baseline.normal_login_patterns.append(LoginPattern(
                username=username,
                source_ip=event.metadata.get("sourceIP"),
                hour_of_day=event.timestamp.hour,
                day_of_week=event.timestamp.weekday(),
                first_seen=now,
                last_seen=now,
            ))

    baseline.confidence_level = calculate_confidence(baseline.event_count)
    logger.debug(
        f"Baseline updated: {event.source.value}/{event.category} "
        f"(events: {baseline.event_count}, confidence: {baseline.confidence_level * 100:.1f}%)"
    )
    return baseline


def _learning_elapsed_days(baseline: EnvironmentBaseline, now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    try:
        started = datetime.fromisoformat(baseline.learning_started)
    except ValueError:
        return 0.0
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    return max(0.0, (now - started).total_seconds() / 86400)


def is_learning_complete(
    baseline: EnvironmentBaseline,
    learning_days: int,
    now: Optional[datetime] = None,
) -> bool:
    """True once the learning period has elapsed (or was marked complete)."""
    return baseline.learning_complete or _learning_elapsed_days(baseline, now) >= learning_days


def get_learning_progress(
    baseline: EnvironmentBaseline,
    learning_days: int,
    now: Optional[datetime] = None,
) -> int:
    """Learning progress as a percentage of the learning period."""
    if baseline.learning_complete or learning_days <= 0:
        return 100
    return min(100, int(_learning_elapsed_days(baseline, now) / learning_days * 100))


def switch_to_protection_mode(baseline: EnvironmentBaseline) -> EnvironmentBaseline:
    baseline.learning_complete = True
    baseline.last_updated = _now()
    logger.info(
        f"Baseline frozen for protection mode: {len(baseline.normal_processes)} processes, "
        f"{len(baseline.normal_connections)} destinations, {len(baseline.normal_login_patterns)} users"
    )
    return baseline


def load_baseline(path: Path) -> EnvironmentBaseline:
    """Load a saved baseline; a missing or corrupt file yields an empty one."""
    path = Path(path)
    if not path.exists():
        return create_empty_baseline()
    try:
        baseline = EnvironmentBaseline.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, TypeError) as e:
        logger.error(f"Failed to load baseline from {path}: {e}")
        return create_empty_baseline()
    logger.info(f"Loaded baseline from {path} ({baseline.event_count} events)")
    return baseline


def save_baseline(baseline: EnvironmentBaseline, path: Path) -> None:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(baseline.to_dict(), indent=2), encoding="utf-8")
    except OSError as e:
        logger.error(f"Failed to save baseline to {path}: {e}")
        return
    logger.debug(f"Baseline saved to {path}")
