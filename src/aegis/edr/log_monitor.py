# Aegis Guard - System Log Monitor
"""
Streams the platform system log through a child process and emits one
event per line. macOS uses the unified log in JSON mode, Linux tails the
auth and syslog files, Windows exports the Security event log.
"""

import asyncio
import logging
import sys
from typing import Optional

from .base import BaseMonitor
from .normalizer import normalize_log_event, parse_unified_log_line

logger = logging.getLogger("aegis.edr.log_monitor")

DEFAULT_LINUX_LOGS = ["/var/log/auth.log", "/var/log/syslog"]

# Grace period between SIGTERM and SIGKILL when stopping the child process
TERMINATE_GRACE_SECONDS = 3.0

# Longest line kept from the child; longer lines are truncated, not fatal
MAX_LINE_BYTES = 1024 * 1024


def platform_command(platform: str, log_paths: Optional[list[str]] = None) -> tuple[list[str], str]:
    """Return (argv, log source label) for a platform."""
    if platform == "darwin":
        return ["log", "stream", "--style", "json", "--predicate", "eventType == logEvent"], "macos-log-stream"
    if platform.startswith("linux"):
        return ["tail", "-F", "-n", "0", *(log_paths or DEFAULT_LINUX_LOGS)], "syslog"
    if platform == "win32":
        return ["wevtutil", "qe", "Security", "/f:text", "/rd:true", "/c:1"], "windows-event"
    raise ValueError(f"Unsupported platform: {platform}")


class LogMonitor(BaseMonitor):
    """Tails the system log via a platform-specific child process."""

    name = "log"

    def __init__(
        self,
        log_paths: Optional[list[str]] = None,
        command: Optional[list[str]] = None,
        platform: Optional[str] = None,
        max_line_bytes: int = MAX_LINE_BYTES,
    ):
        """
        Args:
            log_paths: Files to tail on Linux
            command: Explicit argv to run instead of the platform default
            platform: Platform override (defaults to sys.platform)
            max_line_bytes: Lines longer than this are truncated
        """
        super().__init__()
        self.platform = platform or sys.platform
        self.log_paths = log_paths
        self.command = command
        self.max_line_bytes = max_line_bytes
        self._process: Optional[asyncio.subprocess.Process] = None

    def _resolve_command(self) -> tuple[list[str], str]:
        if self.command:
            return list(self.command), "custom"
        return platform_command(self.platform, self.log_paths)

    def handle_line(self, line: str, label: str) -> None:
        """Normalize one output line; unparsable records become plain-text events."""
        if not line.strip():
            return
        if self.platform == "darwin":
            if line.startswith("Filtering") or line.strip() in ("[", "]"):
                return
            message, sender, timestamp = parse_unified_log_line(line)
            event = normalize_log_event(
                message,
                log_source=sender or label,
                timestamp=timestamp,
                platform=self.platform,
            )
        else:
            event = normalize_log_event(line.rstrip("\r\n"), log_source=label, platform=self.platform)
        self._emit(event)

    async def _run(self) -> None:
        try:
            argv, label = self._resolve_command()
        except ValueError as e:
            self._emit_error(str(e), e)
            return

        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=self.max_line_bytes,
            )
        except OSError as e:
            self._emit_error(f"Failed to spawn {argv[0]}: {e}", e)
            return

        logger.info(f"Log monitor streaming from {argv[0]} (pid {self._process.pid})")
        process = self._process
        assert process.stdout is not None

        try:
            while True:
                raw = await self._read_line(process.stdout)
                if not raw:
                    break
                self.handle_line(raw.decode("utf-8", errors="replace"), label)
        except asyncio.CancelledError:
            raise
        except Exception:
            await self._terminate(process)
            raise

        code = await process.wait()
        if self._running:
            self._emit_error(f"{label} process exited unexpectedly (code: {code})")

    async def _read_line(self, stream: asyncio.StreamReader) -> bytes:
        """
        Next line from the child, or b"" at end of stream.

        A line longer than the stream limit is cut to ``max_line_bytes`` and
        the rest of it is discarded up to the next newline.
        """
        head: Optional[bytes] = None
        while True:
            try:
                chunk = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                chunk = e.partial
            except asyncio.LimitOverrunError as e:
                part = await stream.readexactly(e.consumed)
                if head is None:
                    head = part[:self.max_line_bytes]
                    logger.warning(f"Log line longer than {self.max_line_bytes} bytes, truncating")
                continue
            return chunk if head is None else head + b"\n"

    async def _on_stop(self) -> None:
        process, self._process = self._process, None
        if process is not None:
            await self._terminate(process)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the child, then SIGKILL it after the grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Log process {process.pid} ignored SIGTERM, killing")
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
