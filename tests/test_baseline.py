"""Tests for baseline learning and deviation checks."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from aegis.agent.baseline import (
    EnvironmentBaseline,
    calculate_confidence,
    check_deviation,
    create_empty_baseline,
    get_learning_progress,
    is_learning_complete,
    load_baseline,
    save_baseline,
    switch_to_protection_mode,
    update_baseline,
)
from aegis.events import EventSource

from conftest import make_event


def process_event(name: str, **metadata):
    return make_event(category="process_creation", description=f"Process started: {name}",
                      source=EventSource.PROCESS, processName=name, **metadata)


def network_event(remote: str, port: int = 443, **metadata):
    return make_event(category="network", description=f"conn to {remote}",
                      source=EventSource.NETWORK, remoteAddr=remote, remotePort=port, **metadata)


@pytest.fixture
def baseline():
    return create_empty_baseline()


class TestDeviation:
    """Comparisons against the learned profile."""

    def test_new_process(self, baseline):
        result = check_deviation(baseline, process_event("xmrig"))

        assert result.is_deviation
        assert result.deviation_type == "new_process"
        assert result.confidence == 70

    def test_known_process(self, baseline):
        update_baseline(baseline, process_event("sshd"))
        assert not check_deviation(baseline, process_event("sshd")).is_deviation

    def test_new_destination(self, baseline):
        result = check_deviation(baseline, network_event("203.0.113.9"))

        assert result.deviation_type == "new_network_dest"
        assert result.confidence == 65

    def test_new_user(self, baseline):
        result = check_deviation(baseline, make_event(user="mallory"))

        assert result.deviation_type == "new_user"
        assert result.confidence == 60

    def test_process_checked_before_user(self, baseline):
        result = check_deviation(baseline, process_event("nc", user="mallory"))
        assert result.deviation_type == "new_process"

    def test_no_signal_is_normal(self, baseline):
        result = check_deviation(baseline, make_event())

        assert not result.is_deviation
        assert result.deviation_type == "none"
        assert result.confidence == 0

    def test_check_does_not_modify_baseline(self, baseline):
        check_deviation(baseline, process_event("xmrig"))
        assert baseline.event_count == 0
        assert baseline.normal_processes == []


class TestLearning:
    """update_baseline folds events into the profile."""

    def test_frequencies(self, baseline):
        for _ in range(3):
            update_baseline(baseline, process_event("sshd", path="/usr/sbin/sshd"))

        assert baseline.event_count == 3
        assert len(baseline.normal_processes) == 1
        assert baseline.normal_processes[0].frequency == 3
        assert baseline.normal_processes[0].path == "/usr/sbin/sshd"

    def test_connections_keyed_by_address_and_port(self, baseline):
        update_baseline(baseline, network_event("8.8.8.8", 53))
        update_baseline(baseline, network_event("8.8.8.8", 443))
        update_baseline(baseline, network_event("8.8.8.8", 53))

        assert [(c.remote_port, c.frequency) for c in baseline.normal_connections] == [(53, 2), (443, 1)]
        assert baseline.knows_destination("8.8.8.8")

    def test_listening_ports(self, baseline):
        update_baseline(baseline, network_event("0.0.0.0", 0, state="LISTEN", localPort=22))
        update_baseline(baseline, network_event("0.0.0.0", 0, state="LISTEN", localPort=22))

        assert baseline.normal_service_ports == [22]

    def test_users(self, baseline):
        update_baseline(baseline, make_event(username="alice", sourceIP="192.168.1.5"))

        assert baseline.knows_user("alice")
        assert baseline.normal_login_patterns[0].source_ip == "192.168.1.5"

    def test_confidence_curve(self):
        assert calculate_confidence(0) == 0
        assert calculate_confidence(50) == pytest.approx(0.15)
        assert calculate_confidence(100) == pytest.approx(0.3)
        assert calculate_confidence(1000) == pytest.approx(0.625)
        assert calculate_confidence(10**6) == 0.95

    def test_confidence_tracks_event_count(self, baseline):
        for _ in range(10):
            update_baseline(baseline, make_event())
        assert baseline.confidence_level == pytest.approx(0.03)


class TestLearningPeriod:
    """Learning progress and completion."""

    def test_progress(self, baseline):
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        baseline.learning_started = start.isoformat()

        assert get_learning_progress(baseline, 7, now=start + timedelta(days=3, hours=12)) == 50
        assert not is_learning_complete(baseline, 7, now=start + timedelta(days=6))
        assert is_learning_complete(baseline, 7, now=start + timedelta(days=7))
        assert get_learning_progress(baseline, 7, now=start + timedelta(days=30)) == 100

    def test_switch_to_protection_marks_complete(self, baseline):
        switch_to_protection_mode(baseline)

        assert baseline.learning_complete
        assert is_learning_complete(baseline, 7)
        assert get_learning_progress(baseline, 7) == 100


class TestPersistence:
    """JSON storage of the baseline."""

    def test_round_trip(self, tmp_path, baseline):
        update_baseline(baseline, process_event("sshd"))
        update_baseline(baseline, network_event("8.8.8.8", 53))
        path = tmp_path / "nested" / "baseline.json"

        save_baseline(baseline, path)
        loaded = load_baseline(path)

        assert isinstance(loaded, EnvironmentBaseline)
        assert loaded.event_count == 2
        assert loaded.knows_process("sshd")
        assert loaded.knows_destination("8.8.8.8")
        assert json.loads(path.read_text())["event_count"] == 2

    def test_missing_file(self, tmp_path):
        assert load_baseline(tmp_path / "nope.json").event_count == 0

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "baseline.json"
        path.write_text("[1, 2")

        assert load_baseline(path).event_count == 0
