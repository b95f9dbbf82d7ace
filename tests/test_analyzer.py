"""Tests for evidence weighting and verdicts."""

import asyncio

import pytest

from aegis.agent.analyzer import (
    AIData,
    AnalyzeAgent,
    BaselineData,
    Conclusion,
    Evidence,
    EvidenceSource,
    ResponseAction,
    RuleMatchData,
    SensorData,
    calculate_final_confidence,
    determine_action,
    determine_conclusion,
    round_half_up,
)
from aegis.agent.baseline import create_empty_baseline, update_baseline
from aegis.agent.detector import DetectAgent, DetectionResult
from aegis.edr.threat_intel import ThreatIntelTable
from aegis.events import EventSource, Severity
from aegis.llm import AIAnalysis, AIClassification, ReasoningProvider
from aegis.rules import RuleEngine
from aegis.rules.parser import parse_sigma_yaml

from conftest import BRUTE_FORCE_RULE, CRITICAL_RULE, make_event


class MockReasoningProvider(ReasoningProvider):
    """Canned AI backend."""

    def __init__(self, available=True, confidence=0.8, error=None, delay=0.0):
        self.available = available
        self.confidence = confidence
        self.error = error
        self.delay = delay
        self.prompts = []

    async def is_available(self) -> bool:
        return self.available

    async def analyze(self, prompt: str) -> AIAnalysis:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return AIAnalysis(
            summary="Repeated authentication failures from one source",
            confidence=self.confidence,
            severity=Severity.HIGH,
            recommendations=["Block the source address"],
        )

    async def classify(self, event) -> AIClassification:
        return AIClassification(technique="T1110", severity=Severity.HIGH, confidence=0.9)


def detect(rule_yaml, event, threat_intel=None):
    engine = RuleEngine(custom_rules=[parse_sigma_yaml(rule_yaml)], include_builtin=False)
    return DetectAgent(engine, threat_intel or ThreatIntelTable(include_builtin=False)).detect(event)


def evidence(source: EvidenceSource, confidence: int) -> Evidence:
    payloads = {
        EvidenceSource.RULE_MATCH: RuleMatchData("r", "Rule", Severity.HIGH),
        EvidenceSource.BASELINE_DEVIATION: BaselineData("new_process"),
        EvidenceSource.AI_ANALYSIS: AIData(Severity.HIGH),
        EvidenceSource.FALCO: SensorData(Severity.CRITICAL, "process"),
    }
    return Evidence(source=source, description=source.value, confidence=confidence, data=payloads[source])


@pytest.fixture
def baseline():
    return create_empty_baseline()


class TestScoring:
    """Weighted combination of evidence groups."""

    def test_round_half_up(self):
        assert round_half_up(52.5) == 53
        assert round_half_up(22.5) == 23
        assert round_half_up(45.49) == 45

    def test_rules_and_baseline_only(self):
        items = [evidence(EvidenceSource.RULE_MATCH, 75), evidence(EvidenceSource.BASELINE_DEVIATION, 70)]
        assert calculate_final_confidence(items, has_ai=False) == 73

    def test_sensor_weights(self):
        items = [
            evidence(EvidenceSource.FALCO, 80),
            evidence(EvidenceSource.RULE_MATCH, 75),
            evidence(EvidenceSource.BASELINE_DEVIATION, 60),
        ]
        assert calculate_final_confidence(items, has_ai=False) == 71

    def test_ai_weights(self):
        items = [
            evidence(EvidenceSource.RULE_MATCH, 75),
            evidence(EvidenceSource.BASELINE_DEVIATION, 60),
            evidence(EvidenceSource.AI_ANALYSIS, 80),
        ]
        assert calculate_final_confidence(items, has_ai=True) == 72

    def test_sensor_and_ai_weights(self):
        items = [
            evidence(EvidenceSource.FALCO, 80),
            evidence(EvidenceSource.RULE_MATCH, 70),
            evidence(EvidenceSource.BASELINE_DEVIATION, 60),
            evidence(EvidenceSource.AI_ANALYSIS, 90),
        ]
        assert calculate_final_confidence(items, has_ai=True) == 76

    def test_strongest_item_per_group(self):
        items = [evidence(EvidenceSource.RULE_MATCH, 35), evidence(EvidenceSource.RULE_MATCH, 90)]
        assert calculate_final_confidence(items, has_ai=False) == 54

    def test_more_evidence_never_lowers_score(self):
        base = [evidence(EvidenceSource.RULE_MATCH, 75)]
        more = base + [evidence(EvidenceSource.BASELINE_DEVIATION, 60)]

        assert calculate_final_confidence(more, has_ai=False) >= calculate_final_confidence(base, has_ai=False)

    def test_no_evidence(self):
        assert calculate_final_confidence([], has_ai=False) == 0

    @pytest.mark.parametrize("confidence,conclusion", [
        (100, Conclusion.MALICIOUS),
        (75, Conclusion.MALICIOUS),
        (74, Conclusion.SUSPICIOUS),
        (40, Conclusion.SUSPICIOUS),
        (39, Conclusion.BENIGN),
        (0, Conclusion.BENIGN),
    ])
    def test_conclusion_thresholds(self, confidence, conclusion):
        assert determine_conclusion(confidence) == conclusion


class TestActions:
    """Recommended action by confidence and event source."""

    @pytest.mark.parametrize("source,action", [
        (EventSource.NETWORK, ResponseAction.BLOCK_IP),
        (EventSource.SURICATA, ResponseAction.BLOCK_IP),
        (EventSource.PROCESS, ResponseAction.KILL_PROCESS),
        (EventSource.FALCO, ResponseAction.KILL_PROCESS),
        (EventSource.SYSLOG, ResponseAction.NOTIFY),
    ])
    def test_strong_action_by_source(self, source, action):
        assert determine_action(85, DetectionResult(make_event(source=source))) == action

    def test_notify_and_log_only(self):
        detection = DetectionResult(make_event(source=EventSource.NETWORK))

        assert determine_action(84, detection) == ResponseAction.NOTIFY
        assert determine_action(50, detection) == ResponseAction.NOTIFY
        assert determine_action(49, detection) == ResponseAction.LOG_ONLY

    def test_critical_rule_lowers_strong_threshold(self):
        detection = detect(CRITICAL_RULE, make_event(source=EventSource.PROCESS))

        assert detection.has_critical_match
        assert determine_action(70, detection) == ResponseAction.KILL_PROCESS
        assert determine_action(69, detection) == ResponseAction.NOTIFY


class TestEvidence:
    """Evidence payloads are tied to their source."""

    def test_mismatched_payload(self):
        with pytest.raises(TypeError):
            Evidence(EvidenceSource.RULE_MATCH, "x", 50, BaselineData("new_user"))

    def test_confidence_range(self):
        with pytest.raises(ValueError):
            evidence(EvidenceSource.RULE_MATCH, 101)

    def test_to_dict(self):
        item = Evidence(
            EvidenceSource.RULE_MATCH, "matched", 75,
            RuleMatchData("r1", "Rule", Severity.HIGH, ("description",)),
        )

        assert item.to_dict() == {
            "source": "rule_match",
            "description": "matched",
            "confidence": 75,
            "data": {"rule_id": "r1", "rule_name": "Rule", "severity": "high", "matched_fields": ["description"]},
        }


class TestAnalyzeAgent:
    """End-to-end analysis of detections."""

    @pytest.mark.asyncio
    async def test_high_rule_alone(self, baseline):
        detection = detect(BRUTE_FORCE_RULE, make_event())

        verdict = await AnalyzeAgent().analyze(detection, baseline)

        assert verdict.confidence == 45
        assert verdict.conclusion == Conclusion.SUSPICIOUS
        assert verdict.recommended_action == ResponseAction.LOG_ONLY
        assert [e.source for e in verdict.evidence] == [EvidenceSource.RULE_MATCH]

    @pytest.mark.asyncio
    async def test_critical_rule_alone(self, baseline):
        detection = detect(CRITICAL_RULE, make_event())

        verdict = await AnalyzeAgent().analyze(detection, baseline)

        assert verdict.confidence == 54
        assert verdict.conclusion == Conclusion.SUSPICIOUS
        assert verdict.recommended_action == ResponseAction.NOTIFY

    @pytest.mark.asyncio
    async def test_threat_intel_with_new_destination(self, baseline):
        event = make_event(category="network", description="conn", source=EventSource.NETWORK,
                           remoteAddr="185.220.101.34")
        detection = detect(BRUTE_FORCE_RULE, event, threat_intel=ThreatIntelTable())

        verdict = await AnalyzeAgent().analyze(detection, baseline)

        assert [e.source for e in verdict.evidence] == [
            EvidenceSource.THREAT_INTEL, EvidenceSource.BASELINE_DEVIATION,
        ]
        assert verdict.confidence == 77
        assert verdict.conclusion == Conclusion.MALICIOUS
        assert verdict.recommended_action == ResponseAction.NOTIFY

    @pytest.mark.asyncio
    async def test_known_user_adds_no_deviation(self, baseline):
        update_baseline(baseline, make_event(user="alice"))
        detection = detect(BRUTE_FORCE_RULE, make_event(user="alice"))

        verdict = await AnalyzeAgent().analyze(detection, baseline)

        assert verdict.confidence == 45

    @pytest.mark.asyncio
    async def test_sensor_evidence(self, baseline):
        event = make_event(category="process", description="Terminal shell in container",
                           source=EventSource.FALCO, severity=Severity.CRITICAL, rule="Terminal shell")

        verdict = await AnalyzeAgent().analyze(DetectionResult(event), baseline)

        assert verdict.evidence[0].source == EvidenceSource.FALCO
        assert verdict.evidence[0].data.detail == "Terminal shell"
        assert verdict.confidence == 23

    @pytest.mark.asyncio
    async def test_ai_evidence(self, baseline):
        provider = MockReasoningProvider(confidence=0.8)
        agent = AnalyzeAgent(provider)

        verdict = await agent.analyze(detect(BRUTE_FORCE_RULE, make_event()), baseline)

        assert verdict.confidence == 54
        assert verdict.mitre_technique == "T1110"
        assert "Rule Matches: Brute Force" in provider.prompts[0]
        assert "AI Summary" in verdict.reasoning
        assert agent.stats["ai_enabled"]

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back(self, baseline):
        agent = AnalyzeAgent(MockReasoningProvider(error=RuntimeError("model crashed")))

        verdict = await agent.analyze(detect(BRUTE_FORCE_RULE, make_event()), baseline)

        assert verdict.confidence == 45
        assert agent.ai_failures == 1
        assert verdict.mitre_technique is None

    @pytest.mark.asyncio
    async def test_ai_timeout_falls_back(self, baseline):
        agent = AnalyzeAgent(MockReasoningProvider(delay=1.0), ai_timeout=0.01)

        verdict = await agent.analyze(detect(BRUTE_FORCE_RULE, make_event()), baseline)

        assert verdict.confidence == 45
        assert agent.ai_failures == 1

    @pytest.mark.asyncio
    async def test_ai_unavailable(self, baseline):
        agent = AnalyzeAgent(MockReasoningProvider(available=False))

        verdict = await agent.analyze(detect(BRUTE_FORCE_RULE, make_event()), baseline)

        assert verdict.confidence == 45
        assert agent.ai_failures == 0
        assert agent.stats["analyses_performed"] == 1

    @pytest.mark.asyncio
    async def test_verdict_to_dict(self, baseline):
        verdict = await AnalyzeAgent().analyze(detect(BRUTE_FORCE_RULE, make_event()), baseline)

        data = verdict.to_dict()

        assert data["conclusion"] == "suspicious"
        assert data["recommended_action"] == "log_only"
        assert data["evidence"][0]["data"]["rule_id"] == "test-brute-force"
