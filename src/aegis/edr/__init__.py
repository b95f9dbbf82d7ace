"""EDR monitoring layer for Aegis Guard.

This module provides:
- System log streaming (unified log, syslog, Windows event log)
- Network connection and process polling
- File integrity monitoring
- Falco and Suricata sensor integration
- Threat intelligence lookups
"""

from .base import BaseMonitor, PollingMonitor, MonitorError
from .normalizer import (
    ConnectionInfo,
    ProcessInfo,
    normalize_log_event,
    normalize_network_event,
    normalize_process_event,
    normalize_file_event,
)
from .log_monitor import LogMonitor
from .network_monitor import NetworkMonitor
from .process_monitor import ProcessMonitor
from .file_monitor import FileMonitor
from .sensors import FalcoSensor, SuricataSensor, parse_falco_event, parse_suricata_event
from .threat_intel import ThreatIntelTable, ThreatIntelEntry, IndicatorType, is_private_address
from .monitor_engine import MonitorEngine, MonitorStatus

__all__ = [
    # Observers
    "BaseMonitor",
    "PollingMonitor",
    "MonitorError",
    "LogMonitor",
    "NetworkMonitor",
    "ProcessMonitor",
    "FileMonitor",
    "FalcoSensor",
    "SuricataSensor",
    # Normalization
    "ConnectionInfo",
    "ProcessInfo",
    "normalize_log_event",
    "normalize_network_event",
    "normalize_process_event",
    "normalize_file_event",
    "parse_falco_event",
    "parse_suricata_event",
    # Threat Intel
    "ThreatIntelTable",
    "ThreatIntelEntry",
    "IndicatorType",
    "is_private_address",
    # Engine
    "MonitorEngine",
    "MonitorStatus",
]
