# Aegis Guard - Kernel and IDS Sensors
"""
Falco (eBPF) and Suricata (IDS) integration.

Neither sensor is required. When its JSON alert log exists the sensor tails
it from the current end of file and converts each alert into a SecurityEvent
with ``source=falco`` or ``source=suricata``.
"""

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os

from ..events import EventSource, SecurityEvent, Severity, local_hostname
from .base import PollingMonitor

logger = logging.getLogger("aegis.edr.sensors")

FALCO_ALERT_PATHS = [
    "/var/log/falco/alerts.json",
    "/var/log/falco/events.json",
    "/etc/falco/alerts.json",
]

SURICATA_EVE_PATHS = [
    "/var/log/suricata/eve.json",
    "/var/log/suricata/fast.json",
    "/usr/local/var/log/suricata/eve.json",
]

_FALCO_TAG_CATEGORIES = [
    (("container", "escape"), "container_escape"),
    (("shell", "terminal"), "reverse_shell"),
    (("crypto", "mining"), "cryptomining"),
    (("credential", "shadow"), "credential_access"),
    (("network", "connect"), "network_activity"),
    (("file", "write", "read"), "file_access"),
    (("process", "exec"), "process_execution"),
]

_SURICATA_KEYWORD_CATEGORIES = [
    (("c2", "command and control", "cnc"), "command_and_control"),
    (("mining", "crypto", "stratum"), "cryptomining"),
    (("exfil", "data leak"), "data_exfiltration"),
    (("shellcode", "exploit"), "exploit"),
    (("trojan", "malware", "backdoor"), "malware"),
    (("scan", "recon", "discovery"), "reconnaissance"),
    (("dos", "denial"), "denial_of_service"),
    (("credential", "brute", "login"), "credential_access"),
    (("web", "sql", "xss", "rfi"), "web_attack"),
    (("policy", "not-suspicious"), "policy_violation"),
]


def _parse_time(value: Any) -> datetime:
    if value:
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def map_falco_priority(priority: str) -> Severity:
    p = (priority or "").upper()
    if p in ("CRITICAL", "EMERGENCY", "ALERT"):
        return Severity.CRITICAL
    if p == "ERROR":
        return Severity.HIGH
    if p == "WARNING":
        return Severity.MEDIUM
    if p == "NOTICE":
        return Severity.LOW
    return Severity.INFO


def map_falco_category(tags: Optional[list[str]]) -> str:
    if not tags:
        return "unknown"
    text = " ".join(tags).lower()
    for keywords, category in _FALCO_TAG_CATEGORIES:
        if any(k in text for k in keywords):
            return category
    return tags[0]


def map_suricata_severity(severity: Optional[int]) -> Severity:
    return {1: Severity.CRITICAL, 2: Severity.HIGH, 3: Severity.MEDIUM}.get(severity, Severity.LOW)


def map_suricata_category(category: Optional[str], signature: Optional[str]) -> str:
    if not category and not signature:
        return "unknown"
    text = f"{category or ''} {signature or ''}".lower()
    for keywords, mapped in _SURICATA_KEYWORD_CATEGORIES:
        if any(k in text for k in keywords):
            return mapped
    return category or "network_activity"


def parse_falco_event(alert: dict[str, Any]) -> Optional[SecurityEvent]:
    """Convert one Falco JSON alert; records without rule and priority are ignored."""
    if not alert.get("rule") or not alert.get("priority"):
        return None
    fields = alert.get("output_fields") or {}
    return SecurityEvent.create(
        source=EventSource.FALCO,
        severity=map_falco_priority(alert["priority"]),
        category=map_falco_category(alert.get("tags")),
        description=alert.get("output") or f"Falco rule triggered: {alert['rule']}",
        timestamp=_parse_time(alert.get("time")),
        host=alert.get("hostname") or fields.get("hostname") or local_hostname(),
        raw=alert,
        metadata={
            "rule": alert["rule"],
            "priority": alert["priority"],
            "tags": alert.get("tags"),
            "pid": fields.get("proc.pid"),
            "processName": fields.get("proc.name"),
            "userName": fields.get("user.name"),
            "containerName": fields.get("container.name"),
            "containerId": fields.get("container.id"),
            "filePath": fields.get("fd.name"),
            "sourceIP": fields.get("fd.sip"),
            "destIP": fields.get("fd.dip"),
        },
    )


def parse_suricata_event(record: dict[str, Any]) -> Optional[SecurityEvent]:
    """Convert one EVE record; only ``event_type == "alert"`` produces an event."""
    alert = record.get("alert")
    if record.get("event_type") != "alert" or not alert:
        return None
    return SecurityEvent.create(
        source=EventSource.SURICATA,
        severity=map_suricata_severity(alert.get("severity")),
        category=map_suricata_category(alert.get("category"), alert.get("signature")),
        description=alert.get("signature") or f"Suricata alert: SID {alert.get('signature_id', 'unknown')}",
        timestamp=_parse_time(record.get("timestamp")),
        host=record.get("host") or local_hostname(),
        raw=record,
        metadata={
            "signatureId": alert.get("signature_id"),
            "signature": alert.get("signature"),
            "alertCategory": alert.get("category"),
            "alertAction": alert.get("action"),
            "sourceIP": record.get("src_ip"),
            "sourcePort": record.get("src_port"),
            "destIP": record.get("dest_ip"),
            "destPort": record.get("dest_port"),
            "protocol": record.get("proto"),
            "appProto": record.get("app_proto"),
            "interface": record.get("in_iface"),
        },
    )


class JsonAlertSensor(PollingMonitor):
    """Tails a JSON-lines alert file, starting at its current end."""

    binary = ""
    default_paths: list[str] = []
    env_var = ""

    def __init__(self, alert_path: Optional[str | Path] = None, poll_interval: float = 1.0):
        super().__init__(poll_interval)
        self.alert_path: Optional[Path] = Path(alert_path) if alert_path else None
        self._offset = 0

    def check_availability(self) -> bool:
        """Locate the alert file; returns False when the sensor is not installed."""
        if self.alert_path is not None:
            return self.alert_path.exists()

        has_binary = shutil.which(self.binary) is not None
        if has_binary:
            logger.info(f"{self.binary} binary detected")

        candidates = list(self.default_paths)
        custom = os.environ.get(self.env_var)
        if custom:
            candidates.append(custom)

        for candidate in candidates:
            if Path(candidate).exists():
                self.alert_path = Path(candidate)
                logger.info(f"{self.name} alert file found: {candidate}")
                return True

        if has_binary:
            logger.warning(f"{self.binary} is installed but no JSON alert file was found")
        else:
            logger.info(f"{self.name} not detected, sensor disabled")
        return False

    def parse_record(self, record: dict[str, Any]) -> Optional[SecurityEvent]:
        raise NotImplementedError

    async def _on_start(self) -> None:
        if self.alert_path is None and not self.check_availability():
            raise FileNotFoundError(f"{self.name} alert file not found")
        try:
            self._offset = (await aiofiles.os.stat(self.alert_path)).st_size
        except OSError:
            self._offset = 0
        logger.info(f"{self.name} tailing {self.alert_path} from offset {self._offset}")

    async def poll_once(self) -> None:
        try:
            size = (await aiofiles.os.stat(self.alert_path)).st_size
        except FileNotFoundError:
            return

        if size < self._offset:
            logger.info(f"{self.alert_path} was truncated, rewinding")
            self._offset = 0
        if size == self._offset:
            return

        async with aiofiles.open(self.alert_path, "rb") as f:
            await f.seek(self._offset)
            chunk = await f.read(size - self._offset)

        # Keep a trailing partial line for the next poll
        end = chunk.rfind(b"\n")
        if end < 0:
            return
        self._offset += end + 1

        for line in chunk[:end].decode("utf-8", errors="replace").splitlines():
            self.handle_line(line)

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"{self.name} skipped non-JSON line")
            return
        if not isinstance(record, dict):
            return
        event = self.parse_record(record)
        if event is not None:
            self._emit(event)


class FalcoSensor(JsonAlertSensor):
    """Kernel-level (eBPF) runtime alerts from Falco."""

    name = "falco"
    binary = "falco"
    default_paths = FALCO_ALERT_PATHS
    env_var = "FALCO_ALERTS_PATH"

    def parse_record(self, record: dict[str, Any]) -> Optional[SecurityEvent]:
        return parse_falco_event(record)


class SuricataSensor(JsonAlertSensor):
    """Network IDS alerts from the Suricata EVE log."""

    name = "suricata"
    binary = "suricata"
    default_paths = SURICATA_EVE_PATHS
    env_var = "SURICATA_EVE_PATH"

    def parse_record(self, record: dict[str, Any]) -> Optional[SecurityEvent]:
        return parse_suricata_event(record)
