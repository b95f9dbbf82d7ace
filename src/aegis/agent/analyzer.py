# Aegis Guard - Threat Analyzer
"""
Analysis stage: turns a detection into a scored verdict.

Evidence is gathered from rule matches, threat intel, sensor alerts, the
baseline deviation check and (optionally) an AI reasoning provider, then
combined by a weighted sum that depends on which evidence groups exist.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from ..events import EventSource, SecurityEvent, Severity
from ..llm import AIAnalysis, AIClassification, ReasoningProvider
from .baseline import DeviationResult, EnvironmentBaseline, check_deviation
from .detector import DetectionResult

logger = logging.getLogger("aegis.agent.analyzer")

SEVERITY_CONFIDENCE = {
    Severity.CRITICAL: 90,
    Severity.HIGH: 75,
    Severity.MEDIUM: 55,
    Severity.LOW: 35,
    Severity.INFO: 15,
}

THREAT_INTEL_CONFIDENCE = 85

MALICIOUS_THRESHOLD = 75
SUSPICIOUS_THRESHOLD = 40
STRONG_ACTION_THRESHOLD = 85
CRITICAL_RULE_ACTION_THRESHOLD = 70
NOTIFY_THRESHOLD = 50


class EvidenceSource(str, Enum):
    RULE_MATCH = "rule_match"
    THREAT_INTEL = "threat_intel"
    BASELINE_DEVIATION = "baseline_deviation"
    AI_ANALYSIS = "ai_analysis"
    FALCO = "falco"
    SURICATA = "suricata"


class Conclusion(str, Enum):
    BENIGN = "benign"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"


class ResponseAction(str, Enum):
    BLOCK_IP = "block_ip"
    KILL_PROCESS = "kill_process"
    NOTIFY = "notify"
    LOG_ONLY = "log_only"


@dataclass(frozen=True)
class RuleMatchData:
    rule_id: str
    rule_name: str
    severity: Severity
    matched_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ThreatIntelData:
    ip: str
    threat_type: str
    source: str


@dataclass(frozen=True)
class BaselineData:
    deviation_type: str


@dataclass(frozen=True)
class AIData:
    severity: Severity
    recommendations: tuple[str, ...] = ()


@dataclass(frozen=True)
class SensorData:
    severity: Severity
    category: str
    detail: Optional[str] = None


EvidenceData = Union[RuleMatchData, ThreatIntelData, BaselineData, AIData, SensorData]

_PAYLOAD_TYPES = {
    EvidenceSource.RULE_MATCH: RuleMatchData,
    EvidenceSource.THREAT_INTEL: ThreatIntelData,
    EvidenceSource.BASELINE_DEVIATION: BaselineData,
    EvidenceSource.AI_ANALYSIS: AIData,
    EvidenceSource.FALCO: SensorData,
    EvidenceSource.SURICATA: SensorData,
}


@dataclass(frozen=True)
class Evidence:
    """One weighted observation; the payload type is fixed by ``source``."""
    source: EvidenceSource
    description: str
    confidence: int
    data: EvidenceData

    def __post_init__(self):
        expected = _PAYLOAD_TYPES[self.source]
        if not isinstance(self.data, expected):
            raise TypeError(f"{self.source.value} evidence requires {expected.__name__}, got {type(self.data).__name__}")
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"Evidence confidence out of range: {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        data = {
            k: (v.value if isinstance(v, Enum) else list(v) if isinstance(v, tuple) else v)
            for k, v in vars(self.data).items()
        }
        return {
            "source": self.source.value,
            "description": self.description,
            "confidence": self.confidence,
            "data": data,
        }


@dataclass(frozen=True)
class ThreatVerdict:
    """Final scored conclusion for one event."""
    event: SecurityEvent
    conclusion: Conclusion
    confidence: int
    reasoning: str
    evidence: tuple[Evidence, ...]
    recommended_action: ResponseAction
    mitre_technique: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event.id,
            "conclusion": self.conclusion.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "evidence": [e.to_dict() for e in self.evidence],
            "recommended_action": self.recommended_action.value,
            "mitre_technique": self.mitre_technique,
        }


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _max_confidence(evidence: list[Evidence], *sources: EvidenceSource) -> int:
    return max((e.confidence for e in evidence if e.source in sources), default=0)


def calculate_final_confidence(evidence: list[Evidence], has_ai: bool) -> int:
    """
    Group evidence by source, take the strongest item per group and combine
    the groups by a weighted sum. Weights depend on whether sensor (eBPF/IDS)
    evidence and AI evidence are present.
    """
    rule_score = _max_confidence(evidence, EvidenceSource.RULE_MATCH, EvidenceSource.THREAT_INTEL)
    baseline = _max_confidence(evidence, EvidenceSource.BASELINE_DEVIATION)
    ai = _max_confidence(evidence, EvidenceSource.AI_ANALYSIS)
    ebpf = _max_confidence(evidence, EvidenceSource.FALCO, EvidenceSource.SURICATA)
    has_ebpf = ebpf > 0

    if has_ebpf and has_ai:
        score = 0.2 * ebpf + 0.3 * rule_score + 0.2 * baseline + 0.3 * ai
    elif has_ebpf:
        score = 0.25 * ebpf + 0.4 * rule_score + 0.35 * baseline
    elif has_ai:
        score = 0.4 * rule_score + 0.3 * baseline + 0.3 * ai
    else:
        score = 0.6 * rule_score + 0.4 * baseline
    return round_half_up(score)


def determine_conclusion(confidence: int) -> Conclusion:
    if confidence >= MALICIOUS_THRESHOLD:
        return Conclusion.MALICIOUS
    if confidence >= SUSPICIOUS_THRESHOLD:
        return Conclusion.SUSPICIOUS
    return Conclusion.BENIGN


def determine_action(confidence: int, detection: DetectionResult) -> ResponseAction:
    """Strong actions depend on where the event came from."""
    if confidence >= STRONG_ACTION_THRESHOLD or (
        detection.has_critical_match and confidence >= CRITICAL_RULE_ACTION_THRESHOLD
    ):
        source = detection.event.source
        if source.is_network_like:
            return ResponseAction.BLOCK_IP
        if source.is_process_like:
            return ResponseAction.KILL_PROCESS
        return ResponseAction.NOTIFY

    if confidence >= NOTIFY_THRESHOLD:
        return ResponseAction.NOTIFY
    return ResponseAction.LOG_ONLY


def build_analysis_prompt(detection: DetectionResult, deviation: DeviationResult) -> str:
    event = detection.event
    parts = [
        "Security Event Analysis",
        f"Event: {event.description}",
        f"Source: {event.source.value}",
        f"Severity: {event.severity.value}",
        f"Category: {event.category}",
    ]
    if detection.rule_matches:
        parts.append(f"Rule Matches: {', '.join(m.rule_name for m in detection.rule_matches)}")
    if detection.threat_intel_match:
        parts.append(f"Threat Intel: {detection.threat_intel_match.ip} - {detection.threat_intel_match.threat}")
    if deviation.is_deviation:
        parts.append(f"Baseline Deviation: {deviation.description}")
    parts.append("Analyze the threat level and provide recommendations.")
    return "\n".join(parts)


def build_reasoning(evidence: list[Evidence], ai_analysis: Optional[AIAnalysis]) -> str:
    parts = [f"[{e.source.value}] {e.description} (confidence: {e.confidence}%)" for e in evidence]
    if ai_analysis is not None:
        parts.append(f"AI Summary: {ai_analysis.summary}")
        if ai_analysis.recommendations:
            parts.append(f"Recommendations: {'; '.join(ai_analysis.recommendations)}")
    return "\n".join(parts)


class AnalyzeAgent:
    """
    Scores detections.

    Usage:
        agent = AnalyzeAgent(reasoning_provider, ai_timeout=15)
        verdict = await agent.analyze(detection, baseline)
    """

    def __init__(self, reasoning: Optional[ReasoningProvider] = None, ai_timeout: float = 15.0):
        """
        Args:
            reasoning: Optional AI backend; analysis is rule-based without it
            ai_timeout: Seconds allowed for the whole AI round trip
        """
        self.reasoning = reasoning
        self.ai_timeout = ai_timeout
        self.analysis_count = 0
        self.ai_failures = 0

    def _sensor_evidence(self, event: SecurityEvent) -> Optional[Evidence]:
        if not event.source.is_sensor:
            return None
        source = EvidenceSource.FALCO if event.source == EventSource.FALCO else EvidenceSource.SURICATA
        detail = event.metadata.get("rule") or event.metadata.get("signature")
        return Evidence(
            source=source,
            description=f"{event.source.value} alert: {event.description}",
            confidence=SEVERITY_CONFIDENCE[event.severity],
            data=SensorData(severity=event.severity, category=event.category, detail=detail),
        )

    async def _ask_ai(
        self, prompt: str, event: SecurityEvent
    ) -> Optional[tuple[AIAnalysis, AIClassification]]:
        if not await self.reasoning.is_available():
            logger.info("AI unavailable, using rule-based analysis only")
            return None
        analysis = await self.reasoning.analyze(prompt)
        classification = await self.reasoning.classify(event)
        return analysis, classification

    async def analyze(self, detection: DetectionResult, baseline: EnvironmentBaseline) -> ThreatVerdict:
        event = detection.event
        self.analysis_count += 1
        evidence: list[Evidence] = []

        for match in detection.rule_matches:
            evidence.append(Evidence(
                source=EvidenceSource.RULE_MATCH,
                description=f"Sigma rule matched: {match.rule_name} ({match.rule_id})",
                confidence=SEVERITY_CONFIDENCE.get(match.severity, 50),
                data=RuleMatchData(
                    rule_id=match.rule_id,
                    rule_name=match.rule_name,
                    severity=match.severity,
                    matched_fields=tuple(match.matched_fields),
                ),
            ))

        intel = detection.threat_intel_match
        if intel is not None:
            evidence.append(Evidence(
                source=EvidenceSource.THREAT_INTEL,
                description=f"Known malicious IP: {intel.ip} - {intel.threat}",
                confidence=THREAT_INTEL_CONFIDENCE,
                data=ThreatIntelData(ip=intel.ip, threat_type=intel.entry.threat_type, source=intel.entry.source),
            ))

        sensor = self._sensor_evidence(event)
        if sensor is not None:
            evidence.append(sensor)

        deviation = check_deviation(baseline, event)
        if deviation.is_deviation:
            evidence.append(Evidence(
                source=EvidenceSource.BASELINE_DEVIATION,
                description=deviation.description,
                confidence=deviation.confidence,
                data=BaselineData(deviation_type=deviation.deviation_type),
            ))

        ai_analysis: Optional[AIAnalysis] = None
        ai_classification: Optional[AIClassification] = None
        if self.reasoning is not None:
            prompt = build_analysis_prompt(detection, deviation)
            try:
                result = await asyncio.wait_for(self._ask_ai(prompt, event), timeout=self.ai_timeout)
            except asyncio.TimeoutError:
                self.ai_failures += 1
                logger.error(f"AI analysis timed out after {self.ai_timeout}s")
                result = None
            except Exception as e:
                self.ai_failures += 1
                logger.error(f"AI analysis failed: {e}")
                result = None

            if result is not None:
                ai_analysis, ai_classification = result
                evidence.append(Evidence(
                    source=EvidenceSource.AI_ANALYSIS,
                    description=ai_analysis.summary,
                    confidence=max(0, min(100, round_half_up(ai_analysis.confidence * 100))),
                    data=AIData(
                        severity=ai_analysis.severity,
                        recommendations=tuple(ai_analysis.recommendations),
                    ),
                ))

        confidence = calculate_final_confidence(evidence, has_ai=ai_analysis is not None)
        conclusion = determine_conclusion(confidence)

        verdict = ThreatVerdict(
            event=event,
            conclusion=conclusion,
            confidence=confidence,
            reasoning=build_reasoning(evidence, ai_analysis),
            evidence=tuple(evidence),
            recommended_action=determine_action(confidence, detection),
            mitre_technique=ai_classification.technique if ai_classification else None,
        )

        logger.info(f"Verdict for event {event.id}: {conclusion.value} (confidence: {confidence}%)")
        return verdict

    @property
    def stats(self) -> dict:
        return {
            "analyses_performed": self.analysis_count,
            "ai_failures": self.ai_failures,
            "ai_enabled": self.reasoning is not None,
        }
