"""Load Sigma rules from the filesystem."""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from .parser import SigmaRule, parse_sigma_file

logger = logging.getLogger("aegis.rules.loader")

SIGMA_EXTENSIONS = {".yml", ".yaml"}

BUILTIN_RULES_DIR = Path(__file__).parent / "builtin"


def _rule_files(directory: Path, recursive: bool) -> list[Path]:
    pattern = "**/*" if recursive else "*"
    return sorted(
        p for p in directory.glob(pattern)
        if p.is_file() and p.suffix.lower() in SIGMA_EXTENSIONS
    )


def load_rules_from_directory(directory: Path | str, recursive: bool = False) -> list[SigmaRule]:
    """
    Load every ``.yml``/``.yaml`` rule in a directory.

    A missing directory yields an empty list and unparsable files are
    skipped, so one bad file never prevents the rest from loading.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.debug(f"Rules directory does not exist: {directory}")
        return []

    try:
        files = _rule_files(directory, recursive)
    except OSError as e:
        logger.error(f"Failed to list rules directory {directory}: {e}")
        return []

    rules = [rule for rule in map(parse_sigma_file, files) if rule is not None]
    logger.info(f"Loaded {len(rules)}/{len(files)} rules from {directory}")
    return rules


def load_rules_from_files(paths: list[Path | str]) -> list[SigmaRule]:
    """Load an explicit list of rule files, skipping any that fail to parse."""
    rules = []
    for path in map(Path, paths):
        rule = parse_sigma_file(path)
        if rule is not None:
            rules.append(rule)
    return rules


def load_builtin_rules() -> list[SigmaRule]:
    """Rules shipped with the package."""
    return load_rules_from_directory(BUILTIN_RULES_DIR)


def directory_signature(directory: Path | str, recursive: bool = False) -> dict[str, float]:
    """Map of rule file path -> mtime, used to detect changes."""
    directory = Path(directory)
    if not directory.is_dir():
        return {}
    signature = {}
    for path in _rule_files(directory, recursive):
        try:
            signature[str(path)] = path.stat().st_mtime
        except OSError:
            continue
    return signature


async def watch_rules_directory(
    directory: Path | str,
    callback: Callable[[list[SigmaRule]], None],
    interval: float = 2.0,
    recursive: bool = False,
) -> None:
    """
    Poll a rules directory and invoke ``callback`` with the reloaded rules
    whenever a rule file is added, removed or modified. Runs until cancelled.
    """
    last = directory_signature(directory, recursive)
    logger.info(f"Watching rules directory {directory} (every {interval}s)")
    while True:
        await asyncio.sleep(interval)
        current = directory_signature(directory, recursive)
        if current != last:
            last = current
            logger.info(f"Rule files changed in {directory}, reloading")
            callback(load_rules_from_directory(directory, recursive))
