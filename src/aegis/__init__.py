"""
Aegis Guard - host threat detection and response agent.

Watches system logs, network connections, processes and files, matches
them against Sigma rules and threat intelligence, learns a behavioural
baseline and responds according to a confidence-based action policy.
"""

__version__ = "0.3.0"

from aegis.config import GuardConfig, GuardMode, ActionPolicy, load_config
from aegis.events import SecurityEvent, EventSource, Severity
from aegis.agent.daemon import GuardEngine, GuardState

__all__ = [
    "GuardConfig",
    "GuardMode",
    "ActionPolicy",
    "load_config",
    "SecurityEvent",
    "EventSource",
    "Severity",
    "GuardEngine",
    "GuardState",
]
