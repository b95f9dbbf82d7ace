"""Tests for the three-tier action policy and defensive actions."""

import os
from datetime import datetime, timedelta, timezone

import psutil
import pytest

from aegis.agent import responder as responder_module
from aegis.agent.analyzer import Conclusion, Evidence, EvidenceSource, ResponseAction, ThreatIntelData, ThreatVerdict
from aegis.agent.responder import ActionResponder, ConfirmationStatus, block_ip_command
from aegis.config import ActionPolicy, GuardMode
from aegis.events import EventSource

from conftest import make_event


class FakeRunner:
    """Records firewall commands instead of running them."""

    def __init__(self, code: int = 0, stderr: str = ""):
        self.code = code
        self.stderr = stderr
        self.calls = []

    async def __call__(self, argv):
        self.calls.append(argv)
        return self.code, self.stderr


class FakeProcess:
    terminated = []

    def __init__(self, pid):
        self.pid = pid

    def terminate(self):
        FakeProcess.terminated.append(self.pid)


def make_verdict(confidence, action=ResponseAction.BLOCK_IP, source=EventSource.NETWORK, evidence=(), **metadata):
    metadata.setdefault("remoteAddr", "203.0.113.7")
    event = make_event(category="network", description="Suspicious connection", source=source, **metadata)
    return ThreatVerdict(
        event=event,
        conclusion=Conclusion.MALICIOUS if confidence >= 75 else Conclusion.SUSPICIOUS,
        confidence=confidence,
        reasoning="test",
        evidence=tuple(evidence),
        recommended_action=action,
    )


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def responder(runner):
    return ActionResponder(ActionPolicy(), GuardMode.PROTECTION, platform="linux", runner=runner)


class TestPolicy:
    """Confidence tiers decide between acting, asking and logging."""

    @pytest.mark.asyncio
    async def test_learning_mode_never_acts(self, runner):
        responder = ActionResponder(ActionPolicy(), GuardMode.LEARNING, platform="linux", runner=runner)

        result = await responder.respond(make_verdict(99))

        assert result.action == ResponseAction.LOG_ONLY
        assert not result.executed
        assert runner.calls == []
        assert responder.pending_confirmations == []

    @pytest.mark.asyncio
    async def test_auto_respond_threshold_inclusive(self, responder, runner):
        result = await responder.respond(make_verdict(85))

        assert result.action == ResponseAction.BLOCK_IP
        assert result.success and result.executed
        assert runner.calls == [["/sbin/iptables", "-A", "INPUT", "-s", "203.0.113.7", "-j", "DROP"]]
        assert responder.actions_executed == 1

    @pytest.mark.asyncio
    async def test_notify_threshold_inclusive(self, responder, runner):
        requests = []
        responder.on_confirmation_request(requests.append)

        result = await responder.respond(make_verdict(50))

        assert result.action == ResponseAction.NOTIFY
        assert result.confirmation_id == requests[0].request_id
        assert requests[0].status == ConfirmationStatus.PENDING
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_just_below_auto_asks(self, responder):
        result = await responder.respond(make_verdict(84))
        assert result.confirmation_id is not None

    @pytest.mark.asyncio
    async def test_below_notify_logs(self, responder):
        result = await responder.respond(make_verdict(49))

        assert result.action == ResponseAction.LOG_ONLY
        assert responder.pending_confirmations == []

    @pytest.mark.asyncio
    async def test_custom_policy(self, runner):
        policy = ActionPolicy(auto_respond=95, notify_and_wait=70, log_only=10)
        responder = ActionResponder(policy, GuardMode.PROTECTION, platform="linux", runner=runner)

        assert (await responder.respond(make_verdict(90))).action == ResponseAction.NOTIFY
        assert (await responder.respond(make_verdict(60))).action == ResponseAction.LOG_ONLY

    @pytest.mark.asyncio
    async def test_set_mode(self, runner):
        responder = ActionResponder(ActionPolicy(), GuardMode.LEARNING, platform="linux", runner=runner)
        responder.set_mode(GuardMode.PROTECTION)

        await responder.respond(make_verdict(90))

        assert len(runner.calls) == 1

    @pytest.mark.asyncio
    async def test_notify_action(self, responder):
        result = await responder.execute(make_verdict(90, ResponseAction.NOTIFY, source=EventSource.SYSLOG))

        assert result.executed
        assert responder.actions_executed == 1
        assert responder.history[-1] is result


class TestConfirmations:
    """Deferred actions wait for a human."""

    @pytest.mark.asyncio
    async def test_confirm_executes(self, responder, runner):
        pending = await responder.respond(make_verdict(60))

        result = await responder.confirm(pending.confirmation_id)

        assert result.action == ResponseAction.BLOCK_IP
        assert result.executed
        assert len(runner.calls) == 1
        assert responder.pending_confirmations == []
        assert await responder.confirm(pending.confirmation_id) is None

    @pytest.mark.asyncio
    async def test_reject(self, responder, runner):
        pending = await responder.respond(make_verdict(60))

        assert responder.reject(pending.confirmation_id)
        assert not responder.reject(pending.confirmation_id)
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_expiry(self, responder):
        await responder.respond(make_verdict(60))

        assert responder.sweep_expired() == []
        expired = responder.sweep_expired(datetime.now(timezone.utc) + timedelta(seconds=301))

        assert len(expired) == 1
        assert expired[0].status == ConfirmationStatus.EXPIRED
        assert responder.pending_confirmations == []

    @pytest.mark.asyncio
    async def test_expired_request_cannot_be_confirmed(self, runner):
        responder = ActionResponder(
            ActionPolicy(), GuardMode.PROTECTION, confirmation_timeout=0, platform="linux", runner=runner,
        )
        pending = await responder.respond(make_verdict(60))

        assert await responder.confirm(pending.confirmation_id) is None
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_identical_verdicts_get_separate_requests(self, responder):
        first = await responder.respond(make_verdict(60))
        second = await responder.respond(make_verdict(60))

        assert first.confirmation_id != second.confirmation_id
        assert len(responder.pending_confirmations) == 2

    @pytest.mark.asyncio
    async def test_request_to_dict(self, responder):
        await responder.respond(make_verdict(60))

        data = responder.pending_confirmations[0].to_dict()

        assert data["action"] == "block_ip"
        assert data["status"] == "pending"
        assert data["confidence"] == 60


class TestBlockIP:
    """Firewall blocking and its safety rules."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ip", ["127.0.0.1", "::1", "0.0.0.0"])
    async def test_loopback_never_blocked(self, responder, runner, ip):
        result = await responder.block_ip(ip)

        assert not result.success
        assert "whitelisted" in result.details
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_configured_whitelist(self, runner):
        responder = ActionResponder(
            ActionPolicy(), GuardMode.PROTECTION, whitelisted_ips=["198.51.100.1"], platform="linux", runner=runner,
        )

        result = await responder.block_ip("198.51.100.1")

        assert not result.success
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_invalid_ip(self, responder, runner):
        result = await responder.block_ip("999.1.1.1")

        assert not result.success
        assert "Invalid IP" in result.details
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_command_failure(self):
        responder = ActionResponder(
            ActionPolicy(), GuardMode.PROTECTION, platform="linux", runner=FakeRunner(1, "permission denied"),
        )

        result = await responder.execute(make_verdict(90))

        assert not result.success
        assert "permission denied" in result.details
        assert responder.actions_executed == 0
        assert responder.stats["total_failed"] == 1

    @pytest.mark.asyncio
    async def test_unsupported_platform(self, runner):
        responder = ActionResponder(ActionPolicy(), GuardMode.PROTECTION, platform="sunos5", runner=runner)

        result = await responder.block_ip("203.0.113.7")

        assert not result.success
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_threat_intel_address_preferred(self, responder, runner):
        intel = Evidence(
            EvidenceSource.THREAT_INTEL, "Known malicious IP", 85,
            ThreatIntelData(ip="45.33.32.156", threat_type="c2", source="feed"),
        )

        await responder.execute(make_verdict(90, evidence=[intel]))

        assert runner.calls[0][4] == "45.33.32.156"

    def test_platform_commands(self):
        assert block_ip_command("203.0.113.7", "darwin") == [
            "/sbin/pfctl", "-t", "aegis_blocked", "-T", "add", "203.0.113.7",
        ]
        assert block_ip_command("203.0.113.7", "linux")[0] == "/sbin/iptables"
        assert "remoteip=203.0.113.7" in block_ip_command("203.0.113.7", "win32")
        with pytest.raises(NotImplementedError):
            block_ip_command("203.0.113.7", "sunos5")


class TestKillProcess:
    """Process termination and its safety rules."""

    @pytest.fixture(autouse=True)
    def fake_psutil(self, monkeypatch):
        FakeProcess.terminated = []
        monkeypatch.setattr(responder_module.psutil, "Process", FakeProcess)

    @pytest.mark.asyncio
    async def test_kill(self, responder):
        verdict = make_verdict(
            90, ResponseAction.KILL_PROCESS, source=EventSource.PROCESS, pid=4242, processName="xmrig",
        )

        result = await responder.execute(verdict)

        assert result.success and result.executed
        assert FakeProcess.terminated == [4242]

    @pytest.mark.parametrize("name", ["sshd", "systemd", "launchd", "lsass.exe", "SVCHOST.EXE"])
    def test_protected_processes(self, responder, name):
        result = responder.kill_process(500, name)

        assert not result.success
        assert "protected" in result.details
        assert FakeProcess.terminated == []

    def test_own_process(self, responder):
        result = responder.kill_process(os.getpid(), "aegis-worker")

        assert not result.success
        assert FakeProcess.terminated == []

    def test_missing_pid(self, responder):
        assert not responder.kill_process(None, "xmrig").success

    def test_process_gone(self, responder, monkeypatch):
        def vanished(pid):
            raise psutil.NoSuchProcess(pid)

        monkeypatch.setattr(responder_module.psutil, "Process", vanished)

        result = responder.kill_process(4242, "xmrig")

        assert not result.success
        assert "Failed to kill" in result.details

