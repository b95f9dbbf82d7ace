# Aegis Guard - Detection Stage
"""Runs rules and threat intel against an event and reports what fired."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ..edr.threat_intel import ThreatIntelEntry, ThreatIntelTable
from ..events import SecurityEvent
from ..rules import RuleEngine, RuleMatch

logger = logging.getLogger("aegis.agent.detector")

# Metadata keys that may carry the peer address of a network-like event
REMOTE_ADDRESS_KEYS = ("remoteAddr", "remoteAddress", "sourceIP", "destIP")


@dataclass
class ThreatIntelMatch:
    ip: str
    entry: ThreatIntelEntry

    @property
    def threat(self) -> str:
        return f"{self.entry.threat_type} ({self.entry.source})"

    def to_dict(self) -> dict[str, Any]:
        return {"ip": self.ip, "threat": self.threat, "entry": self.entry.to_dict()}


@dataclass
class DetectionResult:
    """One event with the rules it matched and an optional threat intel hit."""
    event: SecurityEvent
    rule_matches: list[RuleMatch] = field(default_factory=list)
    threat_intel_match: Optional[ThreatIntelMatch] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_critical_match(self) -> bool:
        return any(m.severity == "critical" for m in self.rule_matches)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.to_dict(),
            "rule_matches": [m.to_dict() for m in self.rule_matches],
            "threat_intel_match": self.threat_intel_match.to_dict() if self.threat_intel_match else None,
            "timestamp": self.timestamp.isoformat(),
        }


class DetectAgent:
    """Detection stage: rule matching plus threat intel correlation."""

    def __init__(self, rule_engine: RuleEngine, threat_intel: ThreatIntelTable):
        self.rule_engine = rule_engine
        self.threat_intel = threat_intel
        self.detection_count = 0

    def _lookup_threat_intel(self, event: SecurityEvent) -> Optional[ThreatIntelMatch]:
        if not event.source.is_network_like:
            return None
        for key in REMOTE_ADDRESS_KEYS:
            ip = event.metadata.get(key)
            if not ip:
                continue
            entry = self.threat_intel.check_ip(str(ip))
            if entry is not None:
                return ThreatIntelMatch(ip=str(ip), entry=entry)
        return None

    def detect(self, event: SecurityEvent) -> Optional[DetectionResult]:
        """
        Returns:
            DetectionResult when at least one rule matched or the peer
            address is known-bad, otherwise None
        """
        logger.debug(f"Processing event {event.id} [{event.source.value}]")

        matches = self.rule_engine.match(event)
        intel = self._lookup_threat_intel(event)

        if not matches and intel is None:
            return None

        self.detection_count += 1
        logger.info(
            f"Threat detected for event {event.id}: {len(matches)} rule matches, "
            f"threat intel: {'yes' if intel else 'no'}"
        )
        return DetectionResult(event=event, rule_matches=matches, threat_intel_match=intel)
