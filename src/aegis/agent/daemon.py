# Aegis Guard - Guard Engine
"""
The Guard Engine wires monitoring, detection, analysis and response together.

Every event from the monitor layer (and from registered security adapters)
goes through one queue and is handled by a single worker, so verdicts are
produced in a total order no matter which observer raised the event.
"""

import asyncio
import inspect
import logging
import signal
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..config import GuardConfig, GuardMode
from ..edr.base import MonitorError
from ..edr.monitor_engine import MonitorEngine
from ..edr.threat_intel import ThreatIntelTable
from ..events import SecurityEvent, Severity
from ..llm import ReasoningProvider, create_reasoning_provider
from ..rules import RuleEngine
from .adapters import AdapterRegistry
from .analyzer import AnalyzeAgent, ThreatVerdict
from .baseline import (
    check_deviation,
    create_empty_baseline,
    get_learning_progress,
    load_baseline,
    save_baseline,
    switch_to_protection_mode,
    update_baseline,
)
from .detector import DetectAgent, DetectionResult
from .responder import ActionResponder, ActionResult, ConfirmationRequest

logger = logging.getLogger("aegis.agent.daemon")

HOUSEKEEPING_INTERVAL = 30.0

# How long stop() waits for async callbacks scheduled from sync hooks
CALLBACK_DRAIN_TIMEOUT = 5.0


class GuardState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LEARNING = "learning"
    PROTECTION = "protection"
    STOPPING = "stopping"
    ERROR = "error"


class GuardEngineError(RuntimeError):
    """The engine could not be brought up."""


def _state_for_mode(mode: GuardMode) -> GuardState:
    return GuardState.PROTECTION if mode == GuardMode.PROTECTION else GuardState.LEARNING


class GuardEngine:
    """
    Orchestrates the detect -> analyze -> respond pipeline.

    States: stopped -> starting -> learning|protection -> stopping -> stopped,
    with error reachable from starting. start() from error retries.

    Usage:
        engine = GuardEngine(load_config())
        engine.on_verdict(show_verdict)
        await engine.start()
        ...
        await engine.stop()
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        reasoning: Optional[ReasoningProvider] = None,
        monitor_engine: Optional[MonitorEngine] = None,
        rule_engine: Optional[RuleEngine] = None,
        threat_intel: Optional[ThreatIntelTable] = None,
        adapter_registry: Optional[AdapterRegistry] = None,
        responder: Optional[ActionResponder] = None,
    ):
        """
        Args:
            config: Guard configuration (defaults when omitted)
            reasoning: Optional AI reasoning backend
            monitor_engine: Event source (built from config.monitors if omitted)
            rule_engine: Rule set (builtin plus config.rules_dir if omitted)
            threat_intel: Lookup table shared by monitoring and detection
            adapter_registry: Third-party security tool adapters to poll
            responder: Action executor (built from config.action_policy if omitted)
        """
        self.config = config or GuardConfig()
        self.mode = self.config.mode
        self.state = GuardState.STOPPED

        self.threat_intel = threat_intel or ThreatIntelTable(
            data_file=self.config.data_dir / "threat_intel.json",
        )
        self._owns_rule_engine = rule_engine is None
        self.rule_engine = rule_engine or RuleEngine(rules_dir=self.config.rules_dir)
        self.monitor_engine = monitor_engine or MonitorEngine(self.config.monitors, self.threat_intel)
        self.adapters = adapter_registry or AdapterRegistry()

        self.detector = DetectAgent(self.rule_engine, self.threat_intel)
        self.analyzer = AnalyzeAgent(reasoning, ai_timeout=self.config.ai.timeout)
        self.responder = responder or ActionResponder(
            policy=self.config.action_policy,
            mode=self.mode,
            whitelisted_ips=self.config.whitelisted_ips,
            confirmation_timeout=self.config.confirmation_timeout,
        )
        self.responder.set_mode(self.mode)
        self.responder.on_confirmation_request(self._handle_confirmation_request)

        self.baseline = create_empty_baseline()

        self._queue: Optional[asyncio.Queue[SecurityEvent]] = None
        self._worker: Optional[asyncio.Task] = None
        self._background: list[asyncio.Task] = []
        self._callback_tasks: set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self._stopped.set()
        self._start_time: Optional[datetime] = None
        self._last_adapter_poll: Optional[datetime] = None
        self._events_since_save = 0

        # Statistics
        self.events_processed = 0
        self.threats_detected = 0

        # Subscribers
        self._on_event: list[Callable] = []
        self._on_threat: list[Callable] = []
        self._on_verdict: list[Callable] = []
        self._on_action: list[Callable] = []
        self._on_confirmation: list[Callable] = []
        self._on_error: list[Callable] = []

        self.monitor_engine.on_event(self.enqueue)
        self.monitor_engine.on_error(self._handle_monitor_error)

    # Subscription methods

    def on_event(self, callback: Callable) -> None:
        """Register callback for every event entering the pipeline."""
        self._on_event.append(callback)

    def on_threat(self, callback: Callable) -> None:
        """Register callback for detections (rule or threat intel hits)."""
        self._on_threat.append(callback)

    def on_verdict(self, callback: Callable) -> None:
        self._on_verdict.append(callback)

    def on_action(self, callback: Callable) -> None:
        self._on_action.append(callback)

    def on_confirmation_request(self, callback: Callable) -> None:
        """Register callback for notify-and-wait confirmation requests."""
        self._on_confirmation.append(callback)

    def on_error(self, callback: Callable) -> None:
        self._on_error.append(callback)

    async def _notify(self, callbacks: list[Callable], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def _notify_sync(self, callbacks: list[Callable], *args: Any) -> None:
        """Notify from a non-async hook; awaitable results run as tracked tasks."""
        for callback in list(callbacks):
            try:
                result = callback(*args)
            except Exception as e:
                logger.error(f"Callback error: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_callback(result))
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_tasks.discard)

    async def _await_callback(self, awaitable) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error(f"Callback error: {e}")

    async def _drain_callbacks(self) -> None:
        if not self._callback_tasks:
            return
        _, pending = await asyncio.wait(set(self._callback_tasks), timeout=CALLBACK_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} callbacks still running at stop")
            await asyncio.gather(*pending, return_exceptions=True)

    # Lifecycle

    @property
    def is_running(self) -> bool:
        return self.state in (GuardState.LEARNING, GuardState.PROTECTION)

    async def start(self) -> None:
        """Bring up every component. Raises GuardEngineError on failure."""
        if self.is_running or self.state == GuardState.STARTING:
            logger.warning(f"GuardEngine already {self.state.value}")
            return
        if self.state == GuardState.STOPPING:
            logger.warning("GuardEngine is stopping, start ignored")
            return

        self.state = GuardState.STARTING
        logger.info("=" * 60)
        logger.info("AEGIS GUARD STARTING")
        logger.info(f"Mode: {self.mode.value}")
        logger.info(f"AI reasoning: {'enabled' if self.analyzer.reasoning else 'disabled'}")
        logger.info("=" * 60)

        try:
            self.baseline = await asyncio.to_thread(load_baseline, self.config.baseline_path)
            if self._owns_rule_engine:
                self.rule_engine.reload()
            logger.info(f"Loaded {len(self.rule_engine)} detection rules")

            self._queue = asyncio.Queue()
            self._worker = asyncio.create_task(self._worker_loop(), name="guard_worker")
            await self.monitor_engine.start()
            self._background = [
                asyncio.create_task(self._adapter_loop(), name="guard_adapters"),
                asyncio.create_task(self._housekeeping_loop(), name="guard_housekeeping"),
            ]
        except Exception as e:
            self.state = GuardState.ERROR
            await self._cancel_tasks()
            logger.error(f"GuardEngine failed to start: {e}")
            await self._notify(self._on_error, MonitorError(monitor="guard", message=f"start failed: {e}", exception=e))
            raise GuardEngineError(f"Failed to start guard engine: {e}") from e

        self._start_time = datetime.now(timezone.utc)
        self._last_adapter_poll = self._start_time
        self._stopped.clear()
        self.state = _state_for_mode(self.mode)
        logger.info(f"GuardEngine running in {self.mode.value} mode")

    async def stop(self) -> None:
        """Stop monitoring, drop queued events and persist the baseline."""
        if self.state in (GuardState.STOPPED, GuardState.STOPPING):
            logger.warning(f"GuardEngine already {self.state.value}")
            return

        self.state = GuardState.STOPPING
        try:
            await self.monitor_engine.stop()
        except Exception as e:
            logger.error(f"Error stopping monitor engine: {e}")

        dropped = self._queue.qsize() if self._queue is not None else 0
        if dropped:
            logger.warning(f"Discarding {dropped} queued events")
        await self._cancel_tasks()
        self._queue = None
        await self._drain_callbacks()

        await asyncio.to_thread(save_baseline, self.baseline, self.config.baseline_path)
        self._events_since_save = 0

        self.state = GuardState.STOPPED
        self._stopped.set()

        logger.info("=" * 60)
        logger.info("AEGIS GUARD STOPPED")
        logger.info(f"Runtime: {self._get_runtime()}")
        logger.info(f"Events processed: {self.events_processed}")
        logger.info(f"Threats detected: {self.threats_detected}")
        logger.info(f"Actions executed: {self.responder.actions_executed}")
        logger.info("=" * 60)

    async def wait_stopped(self) -> None:
        """Block until the engine has been stopped."""
        await self._stopped.wait()

    async def _cancel_tasks(self) -> None:
        tasks = [t for t in [self._worker, *self._background] if t is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._worker = None
        self._background = []

    def set_mode(self, mode: GuardMode) -> None:
        """
        Switch between learning and protection.

        Entering protection freezes the baseline. The mode never changes on
        its own, even after the learning period has elapsed.
        """
        mode = GuardMode(mode)
        if mode == self.mode:
            return
        logger.info(f"Switching mode: {self.mode.value} -> {mode.value}")
        self.mode = mode
        self.responder.set_mode(mode)
        if mode == GuardMode.PROTECTION:
            switch_to_protection_mode(self.baseline)
            save_baseline(self.baseline, self.config.baseline_path)
        else:
            self.baseline.learning_complete = False
        if self.is_running:
            self.state = _state_for_mode(mode)

    # Event pipeline

    def enqueue(self, event: SecurityEvent) -> None:
        """Hand an event to the worker; dropped when the engine is not running."""
        if self._queue is None or not self.is_running:
            logger.debug(f"Engine not running, dropping event {event.id}")
            return
        self._queue.put_nowait(event)

    async def _worker_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process_event(event)
            except Exception as e:
                logger.error(f"Failed to process event {event.id}: {e}")
                await self._notify(
                    self._on_error,
                    MonitorError(monitor="guard", message=f"event {event.id}: {e}", exception=e),
                )
            finally:
                self._queue.task_done()

    async def process_event(self, event: SecurityEvent) -> Optional[ThreatVerdict]:
        """
        Run one event through detection, analysis and the action policy.

        Returns:
            The verdict, or None when nothing was detected
        """
        self.events_processed += 1
        await self._notify(self._on_event, event)

        try:
            detection = self.detector.detect(event)
            if detection is None:
                if self.mode == GuardMode.LEARNING:
                    return None
                deviation = check_deviation(self.baseline, event)
                if not deviation.is_deviation:
                    return None
                # Baseline-only verdict: nothing fired but the behaviour is new
                logger.debug(f"Baseline deviation without detection: {deviation.description}")
                detection = DetectionResult(event=event)
            else:
                await self._notify(self._on_threat, detection)

            self.threats_detected += 1
            verdict = await self.analyzer.analyze(detection, self.baseline)
            self._log_verdict(verdict)
            await self._notify(self._on_verdict, verdict)

            result = await self.responder.respond(verdict)
            await self._notify(self._on_action, result)
            return verdict
        finally:
            if self.mode == GuardMode.LEARNING:
                update_baseline(self.baseline, event)
                self._events_since_save += 1
                if self._events_since_save >= self.config.baseline_save_every:
                    self._events_since_save = 0
                    await asyncio.to_thread(save_baseline, self.baseline, self.config.baseline_path)

    def _log_verdict(self, verdict: ThreatVerdict) -> None:
        severity_colors = {
            Severity.CRITICAL: "\033[91m",  # Red
            Severity.HIGH: "\033[93m",      # Yellow
            Severity.MEDIUM: "\033[94m",    # Blue
            Severity.LOW: "\033[90m",       # Gray
        }
        reset = "\033[0m"
        event = verdict.event
        color = severity_colors.get(event.severity, "")

        logger.warning(
            f"{color}[{event.severity.value.upper()}]{reset} "
            f"{verdict.conclusion.value}: {event.description[:120]} "
            f"(confidence: {verdict.confidence}%)"
        )
        if verdict.mitre_technique:
            logger.info(f"  MITRE: {verdict.mitre_technique}")
        logger.debug(f"  Reasoning: {verdict.reasoning[:400]}")

    # Background tasks

    async def poll_adapters(self) -> int:
        """Collect adapter alerts raised since the last poll and queue them."""
        since = self._last_adapter_poll
        self._last_adapter_poll = datetime.now(timezone.utc)
        events = await self.adapters.collect_alerts(since)
        for event in events:
            self.enqueue(event)
        return len(events)

    async def _adapter_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.adapter_poll_interval)
            if not len(self.adapters):
                continue
            try:
                await self.poll_adapters()
            except Exception as e:
                logger.error(f"Adapter poll failed: {e}")

    async def _housekeeping_loop(self) -> None:
        interval = min(HOUSEKEEPING_INTERVAL, self.config.confirmation_timeout)
        while True:
            await asyncio.sleep(interval)
            self.responder.sweep_expired()

    # Collaborator hooks

    def _handle_monitor_error(self, error: MonitorError) -> None:
        self._notify_sync(self._on_error, error)

    def _handle_confirmation_request(self, request: ConfirmationRequest) -> None:
        self._notify_sync(self._on_confirmation, request)

    # Control methods

    async def confirm_action(self, request_id: str) -> Optional[ActionResult]:
        """Approve a pending confirmation request."""
        result = await self.responder.confirm(request_id)
        if result is not None:
            await self._notify(self._on_action, result)
        return result

    def reject_action(self, request_id: str) -> bool:
        return self.responder.reject(request_id)

    @property
    def pending_confirmations(self) -> list[ConfirmationRequest]:
        return self.responder.pending_confirmations

    def _get_runtime(self) -> str:
        """Get formatted runtime string."""
        if not self._start_time:
            return "0s"

        delta = datetime.now(timezone.utc) - self._start_time
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)

        if hours:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    def status(self) -> dict[str, Any]:
        """Snapshot of the engine for status displays."""
        uptime = 0.0
        if self._start_time and self.is_running:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "state": self.state.value,
            "mode": self.mode.value,
            "running": self.is_running,
            "uptime_seconds": uptime,
            "runtime": self._get_runtime(),
            "events_processed": self.events_processed,
            "threats_detected": self.threats_detected,
            "actions_executed": self.responder.actions_executed,
            "pending_confirmations": len(self.responder.pending_confirmations),
            "learning_progress": get_learning_progress(self.baseline, self.config.learning_days),
            "baseline_confidence": round(self.baseline.confidence_level * 100, 1),
            "rules_loaded": len(self.rule_engine),
            "monitors": self.monitor_engine.get_status(),
            "analyzer": self.analyzer.stats,
        }


def _setup_signals(engine: GuardEngine) -> None:
    """Set up signal handlers for graceful shutdown."""
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(engine.stop()))


async def run_daemon(config: Optional[GuardConfig] = None, verbose: bool = False) -> None:
    """
    Convenience function to run the guard until it is signalled to stop.

    Args:
        config: Guard configuration
        verbose: Enable verbose logging
    """
    config = config or GuardConfig()

    # Configure logging
    level = logging.DEBUG if verbose or config.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    reasoning = create_reasoning_provider(
        config.ai.provider,
        model=config.ai.model,
        api_key=config.ai.api_key,
        base_url=config.ai.base_url,
    )
    engine = GuardEngine(config, reasoning=reasoning)

    await engine.start()
    _setup_signals(engine)
    await engine.wait_stopped()


if __name__ == "__main__":
    asyncio.run(run_daemon(verbose=True))
