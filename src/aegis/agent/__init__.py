# Aegis Guard - Detection & Response Agent
"""
The guard agent detects threats in the monitored event stream,
weighs the evidence into a verdict, and applies the action policy.
"""

from .baseline import (
    EnvironmentBaseline,
    DeviationResult,
    check_deviation,
    update_baseline,
    is_learning_complete,
    get_learning_progress,
    switch_to_protection_mode,
    load_baseline,
    save_baseline,
)
from .detector import DetectAgent, DetectionResult, ThreatIntelMatch
from .analyzer import (
    AnalyzeAgent,
    Conclusion,
    Evidence,
    EvidenceSource,
    ResponseAction,
    ThreatVerdict,
    calculate_final_confidence,
)
from .responder import ActionResponder, ActionResult, ConfirmationRequest, ConfirmationStatus
from .adapters import AdapterAlert, AdapterRegistry, SecurityAdapter
from .daemon import GuardEngine, GuardEngineError, GuardState, run_daemon

__all__ = [
    # Baseline
    "EnvironmentBaseline",
    "DeviationResult",
    "check_deviation",
    "update_baseline",
    "is_learning_complete",
    "get_learning_progress",
    "switch_to_protection_mode",
    "load_baseline",
    "save_baseline",
    # Detection
    "DetectAgent",
    "DetectionResult",
    "ThreatIntelMatch",
    # Analysis
    "AnalyzeAgent",
    "Conclusion",
    "Evidence",
    "EvidenceSource",
    "ResponseAction",
    "ThreatVerdict",
    "calculate_final_confidence",
    # Responder
    "ActionResponder",
    "ActionResult",
    "ConfirmationRequest",
    "ConfirmationStatus",
    # Adapters
    "AdapterAlert",
    "AdapterRegistry",
    "SecurityAdapter",
    # Engine
    "GuardEngine",
    "GuardEngineError",
    "GuardState",
    "run_daemon",
]
