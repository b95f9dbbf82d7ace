# Aegis Guard - File Integrity Monitor
"""
File integrity monitoring by SHA-256 comparison.

Each poll hashes every watched file (directories contribute their direct
children). The first poll only records the baseline; later polls emit
file_created, file_changed and file_deleted events.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .base import PollingMonitor
from .normalizer import normalize_file_event

logger = logging.getLogger("aegis.edr.file_monitor")

HASH_CHUNK_SIZE = 65536


@dataclass
class FileHashRecord:
    path: str
    hash: str
    size: int
    last_checked: datetime


def compute_hash(path: Path) -> str:
    """SHA-256 hex digest of a file's contents."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FileMonitor(PollingMonitor):
    """Detects creation, modification and deletion of watched files."""

    name = "file"

    def __init__(self, watch_paths: list[str | Path], poll_interval: float = 60.0):
        super().__init__(poll_interval)
        self.watch_paths = [Path(p) for p in watch_paths]
        self._hashes: dict[str, FileHashRecord] = {}
        self._baseline_ready = False

    def _expand_paths(self) -> tuple[list[Path], set[str]]:
        """Files to hash, plus directories that could not be listed."""
        files: list[Path] = []
        unlisted: set[str] = set()
        for path in self.watch_paths:
            if path.is_dir():
                try:
                    files.extend(sorted(p for p in path.iterdir() if p.is_file()))
                except OSError as e:
                    unlisted.add(str(path))
                    self._emit_error(f"Failed to list {path}: {e}", e)
            else:
                files.append(path)
        return files, unlisted

    def _scan(self) -> tuple[dict[str, tuple[str, int]], set[str]]:
        """
        Hash every existing watched file.

        Returns the hashes and the set of paths whose state is unknown this
        poll (read errors other than "not found", or files inside a directory
        that could not be listed). Only files absent from both are deleted.
        """
        current = {}
        files, unlisted = self._expand_paths()
        unknown = {p for p in self._hashes if str(Path(p).parent) in unlisted}
        for path in files:
            try:
                size = path.stat().st_size
                current[str(path)] = (compute_hash(path), size)
            except FileNotFoundError:
                continue
            except OSError as e:
                unknown.add(str(path))
                self._emit_error(f"Failed to check file {path}: {e}", e)
        return current, unknown

    async def poll_once(self) -> None:
        current, unknown = await asyncio.to_thread(self._scan)
        now = datetime.now(timezone.utc)

        if not self._baseline_ready:
            self._hashes = {
                path: FileHashRecord(path=path, hash=digest, size=size, last_checked=now)
                for path, (digest, size) in current.items()
            }
            self._baseline_ready = True
            logger.info(f"File baseline recorded for {len(self._hashes)} files")
            return

        for path, (digest, size) in current.items():
            record = self._hashes.get(path)
            if record is None:
                self._hashes[path] = FileHashRecord(path=path, hash=digest, size=size, last_checked=now)
                logger.info(f"File created: {path}")
                self._emit(normalize_file_event(path, "created", new_hash=digest))
            elif record.hash != digest:
                old_hash = record.hash
                self._hashes[path] = FileHashRecord(path=path, hash=digest, size=size, last_checked=now)
                logger.info(f"File modified: {path} ({old_hash[:12]} -> {digest[:12]})")
                self._emit(normalize_file_event(path, "modified", old_hash=old_hash, new_hash=digest))
            else:
                record.last_checked = now

        for path in [p for p in self._hashes if p not in current and p not in unknown]:
            record = self._hashes.pop(path)
            logger.info(f"File deleted: {path}")
            self._emit(normalize_file_event(path, "deleted", old_hash=record.hash))

    def get_file_hashes(self) -> dict[str, FileHashRecord]:
        return dict(self._hashes)

    def hash_of(self, path: str | Path) -> Optional[str]:
        record = self._hashes.get(str(path))
        return record.hash if record else None
