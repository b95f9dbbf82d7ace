"""Shared fixtures for the Aegis Guard test suite."""

import asyncio

import pytest

from aegis.edr.base import BaseMonitor
from aegis.events import EventSource, SecurityEvent, Severity


def make_event(
    category: str = "authentication",
    description: str = "Failed login attempt for user admin",
    source: EventSource = EventSource.SYSLOG,
    severity: Severity = Severity.MEDIUM,
    **metadata,
) -> SecurityEvent:
    """Build an event with a fixed host so tests never touch the real hostname."""
    return SecurityEvent.create(
        source=source,
        category=category,
        description=description,
        severity=severity,
        metadata=metadata,
        host="test-host",
    )


@pytest.fixture
def event_factory():
    return make_event


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class MockMonitor(BaseMonitor):
    """Observer driven by the test instead of the OS."""

    def __init__(self, name: str = "mock", fail_on_start: bool = False):
        super().__init__()
        self.name = name
        self.fail_on_start = fail_on_start
        self.stopped = False

    async def _on_start(self) -> None:
        if self.fail_on_start:
            raise RuntimeError("cannot open source")

    async def _on_stop(self) -> None:
        self.stopped = True

    async def _run(self) -> None:
        # Idle until cancelled
        await asyncio.Event().wait()

    def push(self, event) -> None:
        self._emit(event)

    def fail(self, message: str) -> None:
        self._emit_error(message)


BRUTE_FORCE_RULE = """
title: Brute Force
id: test-brute-force
level: high
detection:
  selection:
    category: authentication
    description|contains: 'failed login'
  condition: selection
"""

CRITICAL_RULE = """
title: Critical Login Abuse
id: test-critical-login
level: critical
detection:
  selection:
    category: authentication
    description|contains: 'failed login'
  condition: selection
"""
