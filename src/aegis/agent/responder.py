# Aegis Guard - Action Responder
"""
Applies the action policy to verdicts and executes defensive actions.

Confidence at or above ``auto_respond`` executes the recommended action,
at or above ``notify_and_wait`` creates a confirmation request that a human
must confirm before it expires, anything lower is only logged. Safety rules
refuse to block loopback or whitelisted addresses and to kill protected
processes or the agent itself.
"""

import asyncio
import ipaddress
import logging
import os
import sys
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import psutil

from ..config import ActionPolicy, GuardMode
from .analyzer import EvidenceSource, ResponseAction, ThreatIntelData, ThreatVerdict

logger = logging.getLogger("aegis.agent.responder")

WHITELISTED_IPS = frozenset({"127.0.0.1", "::1", "localhost", "0.0.0.0"})

PROTECTED_PROCESSES = frozenset({
    "sshd", "systemd", "init", "launchd", "loginwindow",
    "explorer.exe", "svchost.exe", "csrss.exe", "lsass.exe",
    "services.exe", "winlogon.exe", "wininit.exe",
    "aegis-guard", "python",
})

BLOCK_TABLE = "aegis_blocked"

HISTORY_LIMIT = 1000

CommandRunner = Callable[[list[str]], Awaitable[tuple[int, str]]]


class ConfirmationStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class ActionResult:
    """Outcome of handling one verdict or executing one action."""
    action: ResponseAction
    success: bool
    details: str
    target: Optional[str] = None
    executed: bool = False
    confirmation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "success": self.success,
            "details": self.details,
            "target": self.target,
            "executed": self.executed,
            "confirmation_id": self.confirmation_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ConfirmationRequest:
    """A deferred action waiting for a human decision."""
    request_id: str
    verdict: ThreatVerdict
    created_at: datetime
    expires_at: datetime
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    result: Optional[ActionResult] = None

    @property
    def action(self) -> ResponseAction:
        return self.verdict.recommended_action

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "action": self.action.value,
            "event_id": self.verdict.event.id,
            "description": self.verdict.event.description,
            "conclusion": self.verdict.conclusion.value,
            "confidence": self.verdict.confidence,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
        }


async def run_command(argv: list[str]) -> tuple[int, str]:
    """Run a command without a shell; returns (exit code, stderr)."""
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    _, stderr = await process.communicate()
    return process.returncode, stderr.decode("utf-8", errors="replace").strip()


def block_ip_command(ip: str, platform: str) -> list[str]:
    if platform == "darwin":
        return ["/sbin/pfctl", "-t", BLOCK_TABLE, "-T", "add", ip]
    if platform.startswith("linux"):
        return ["/sbin/iptables", "-A", "INPUT", "-s", ip, "-j", "DROP"]
    if platform == "win32":
        return [
            "netsh", "advfirewall", "firewall", "add", "rule",
            f"name=AegisGuard_Block_{ip}", "dir=in", "action=block", f"remoteip={ip}",
        ]
    raise NotImplementedError(f"IP blocking not supported on {platform}")


def is_valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


class ActionResponder:
    """
    Decides what to do with each verdict and carries it out.

    Usage:
        responder = ActionResponder(ActionPolicy(), GuardMode.PROTECTION)
        result = await responder.respond(verdict)
        if result.confirmation_id:
            await responder.confirm(result.confirmation_id)
    """

    def __init__(
        self,
        policy: ActionPolicy,
        mode: GuardMode = GuardMode.LEARNING,
        whitelisted_ips: Optional[list[str]] = None,
        confirmation_timeout: float = 300.0,
        platform: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
    ):
        """
        Args:
            policy: Confidence thresholds
            mode: Learning mode never acts
            whitelisted_ips: Addresses that must never be blocked, in addition to loopback
            confirmation_timeout: Seconds a confirmation request stays open
            platform: Platform override for firewall commands
            runner: Command executor (defaults to an asyncio subprocess)
        """
        self.policy = policy
        self.mode = mode
        self.whitelisted_ips = WHITELISTED_IPS | set(whitelisted_ips or [])
        self.confirmation_timeout = confirmation_timeout
        self.platform = platform or sys.platform
        self._runner = runner or run_command

        self._pending: dict[str, ConfirmationRequest] = {}
        self._history: deque[ActionResult] = deque(maxlen=HISTORY_LIMIT)
        self._confirmation_callbacks: list[Callable[[ConfirmationRequest], None]] = []
        self.actions_executed = 0

    def set_mode(self, mode: GuardMode) -> None:
        self.mode = mode

    def on_confirmation_request(self, callback: Callable[[ConfirmationRequest], None]) -> None:
        self._confirmation_callbacks.append(callback)

    def _record(self, result: ActionResult) -> ActionResult:
        self._history.append(result)
        return result

    async def respond(self, verdict: ThreatVerdict) -> ActionResult:
        """Apply the action policy to a verdict."""
        if self.mode == GuardMode.LEARNING:
            logger.debug(f"Learning mode: no response for event {verdict.event.id}")
            return self._record(ActionResult(
                action=ResponseAction.LOG_ONLY,
                success=True,
                details="Learning mode - observation only",
            ))

        confidence = verdict.confidence
        if confidence >= self.policy.auto_respond:
            logger.info(
                f"Auto-responding (confidence {confidence}% >= {self.policy.auto_respond}%): "
                f"{verdict.recommended_action.value}"
            )
            return await self.execute(verdict)

        if confidence >= self.policy.notify_and_wait:
            request = self.create_confirmation(verdict)
            return self._record(ActionResult(
                action=ResponseAction.NOTIFY,
                success=True,
                details=(
                    f"Confirmation requested. Verdict: {verdict.conclusion.value}, "
                    f"recommended: {verdict.recommended_action.value}"
                ),
                confirmation_id=request.request_id,
            ))

        logger.info(f"Log only (confidence {confidence}%)")
        return self._record(ActionResult(
            action=ResponseAction.LOG_ONLY,
            success=True,
            details=f"Logged: {verdict.conclusion.value} (confidence: {confidence}%)",
        ))

    def create_confirmation(self, verdict: ThreatVerdict) -> ConfirmationRequest:
        """Every verdict gets its own request; identical detections are not merged."""
        now = datetime.now(timezone.utc)
        request = ConfirmationRequest(
            request_id=str(uuid.uuid4()),
            verdict=verdict,
            created_at=now,
            expires_at=now + timedelta(seconds=self.confirmation_timeout),
        )
        self._pending[request.request_id] = request
        logger.info(
            f"Confirmation {request.request_id[:8]} requested for {verdict.recommended_action.value} "
            f"(confidence {verdict.confidence}%)"
        )
        for callback in list(self._confirmation_callbacks):
            try:
                callback(request)
            except Exception as e:
                logger.error(f"Confirmation callback error: {e}")
        return request

    async def confirm(self, request_id: str) -> Optional[ActionResult]:
        """Execute a pending request; None if unknown or already expired."""
        self.sweep_expired()
        request = self._pending.pop(request_id, None)
        if request is None:
            logger.warning(f"No pending confirmation {request_id}")
            return None
        request.status = ConfirmationStatus.CONFIRMED
        request.result = await self.execute(request.verdict)
        return request.result

    def reject(self, request_id: str) -> bool:
        request = self._pending.pop(request_id, None)
        if request is None:
            return False
        request.status = ConfirmationStatus.REJECTED
        logger.info(f"Confirmation {request_id[:8]} rejected")
        return True

    def sweep_expired(self, now: Optional[datetime] = None) -> list[ConfirmationRequest]:
        """Drop requests past their expiry and return them marked expired."""
        expired = [r for r in self._pending.values() if r.is_expired(now)]
        for request in expired:
            request.status = ConfirmationStatus.EXPIRED
            del self._pending[request.request_id]
            logger.info(f"Confirmation {request.request_id[:8]} expired without a decision")
        return expired

    async def execute(self, verdict: ThreatVerdict) -> ActionResult:
        """Carry out the verdict's recommended action, subject to safety rules."""
        action = verdict.recommended_action
        if action == ResponseAction.BLOCK_IP:
            result = await self.block_ip(self._extract_ip(verdict))
        elif action == ResponseAction.KILL_PROCESS:
            result = self.kill_process(self._extract_pid(verdict), verdict.event.metadata.get("processName"))
        elif action == ResponseAction.NOTIFY:
            logger.warning(f"THREAT: {verdict.event.description} ({verdict.conclusion.value}, {verdict.confidence}%)")
            result = ActionResult(action=action, success=True, details="Notification dispatched", executed=True)
        else:
            result = ActionResult(action=ResponseAction.LOG_ONLY, success=True, details="Action logged")

        if result.executed and result.success:
            self.actions_executed += 1
        return self._record(result)

    async def block_ip(self, ip: Optional[str]) -> ActionResult:
        if not ip:
            return ActionResult(ResponseAction.BLOCK_IP, False, "No IP address found in verdict")
        if ip in self.whitelisted_ips:
            logger.warning(f"Refusing to block whitelisted IP: {ip}")
            return ActionResult(ResponseAction.BLOCK_IP, False, f"IP {ip} is whitelisted and cannot be blocked", target=ip)
        if not is_valid_ip(ip):
            return ActionResult(ResponseAction.BLOCK_IP, False, f"Invalid IP format: {ip}", target=ip)

        try:
            argv = block_ip_command(ip, self.platform)
            code, stderr = await self._runner(argv)
        except (OSError, NotImplementedError) as e:
            logger.error(f"Failed to block IP {ip}: {e}")
            return ActionResult(ResponseAction.BLOCK_IP, False, f"Failed to block IP {ip}: {e}", target=ip)

        if code != 0:
            logger.error(f"Failed to block IP {ip}: {stderr}")
            return ActionResult(ResponseAction.BLOCK_IP, False, f"Failed to block IP {ip}: {stderr}", target=ip)

        logger.warning(f"Blocked IP: {ip}")
        return ActionResult(
            ResponseAction.BLOCK_IP, True, f"IP {ip} blocked via {self.platform} firewall",
            target=ip, executed=True,
        )

    def kill_process(self, pid: Optional[int], process_name: Optional[str] = None) -> ActionResult:
        if not pid:
            return ActionResult(ResponseAction.KILL_PROCESS, False, "No PID found in verdict")
        target = str(pid)
        if process_name and process_name.lower() in PROTECTED_PROCESSES:
            logger.warning(f"Refusing to kill protected process: {process_name} (PID {pid})")
            return ActionResult(
                ResponseAction.KILL_PROCESS, False,
                f"Process {process_name} is protected and cannot be killed", target=target,
            )
        if pid == os.getpid():
            logger.warning("Refusing to kill own process")
            return ActionResult(ResponseAction.KILL_PROCESS, False, "Cannot kill own process", target=target)

        try:
            psutil.Process(pid).terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.error(f"Failed to kill process {pid}: {e}")
            return ActionResult(ResponseAction.KILL_PROCESS, False, f"Failed to kill process {pid}: {e}", target=target)

        logger.warning(f"Terminated process PID {pid}")
        return ActionResult(ResponseAction.KILL_PROCESS, True, f"Process PID {pid} terminated", target=target, executed=True)

    def _extract_ip(self, verdict: ThreatVerdict) -> Optional[str]:
        for evidence in verdict.evidence:
            if evidence.source == EvidenceSource.THREAT_INTEL and isinstance(evidence.data, ThreatIntelData):
                return evidence.data.ip
        metadata = verdict.event.metadata
        for key in ("remoteAddr", "remoteAddress", "sourceIP", "destIP"):
            if metadata.get(key):
                return str(metadata[key])
        return None

    def _extract_pid(self, verdict: ThreatVerdict) -> Optional[int]:
        pid = verdict.event.metadata.get("pid")
        try:
            return int(pid) if pid is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def pending_confirmations(self) -> list[ConfirmationRequest]:
        return list(self._pending.values())

    @property
    def history(self) -> list[ActionResult]:
        return list(self._history)

    @property
    def stats(self) -> dict:
        return {
            "pending_count": len(self._pending),
            "actions_executed": self.actions_executed,
            "total_failed": len([r for r in self._history if not r.success]),
        }
