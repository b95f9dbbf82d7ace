"""Rule collection management and matching."""

import asyncio
import logging
from pathlib import Path

from ..events import SecurityEvent
from .loader import load_builtin_rules, load_rules_from_directory, watch_rules_directory
from .matcher import RuleMatch, match_event_against_rules
from .parser import SigmaRule

logger = logging.getLogger("aegis.rules.engine")


class RuleEngine:
    """
    Holds the active rule set and matches events against it.

    Rules come from three places, in priority order: custom rules passed in
    (or added at runtime), the builtin rule set, and a rules directory.
    A rule id already present is never shadowed by a later source.
    """

    def __init__(
        self,
        rules_dir: Path | str | None = None,
        custom_rules: list[SigmaRule] | None = None,
        include_builtin: bool = True,
        recursive: bool = False,
        hot_reload: bool = False,
        reload_interval: float = 2.0,
    ):
        self.rules_dir = Path(rules_dir).expanduser() if rules_dir else None
        self.custom_rules = list(custom_rules or [])
        self.include_builtin = include_builtin
        self.recursive = recursive
        self.hot_reload = hot_reload
        self.reload_interval = reload_interval

        self._rules: list[SigmaRule] = list(self.custom_rules)
        self._watch_task: asyncio.Task | None = None

        if self.custom_rules:
            logger.info(f"Rule engine initialized with {len(self.custom_rules)} custom rules")

    def _merge(self, rules: list[SigmaRule], source: str) -> int:
        known = {r.id for r in self._rules}
        added = 0
        for rule in rules:
            if rule.id in known:
                logger.warning(f"Duplicate rule id {rule.id} from {source}, keeping existing rule")
                continue
            self._rules.append(rule)
            known.add(rule.id)
            added += 1
        return added

    def _load_all(self) -> None:
        if self.include_builtin:
            self._merge(load_builtin_rules(), "builtin")
        if self.rules_dir is not None:
            self._merge(load_rules_from_directory(self.rules_dir, self.recursive), str(self.rules_dir))

    def load_rules(self) -> int:
        """Load builtin and directory rules; returns the total rule count."""
        self._load_all()
        logger.info(f"Rule engine has {len(self._rules)} rules")

        if self.hot_reload and self.rules_dir is not None:
            self.start_watching()
        return len(self._rules)

    def start_watching(self) -> None:
        """Start polling the rules directory for changes (needs a running loop)."""
        if self.rules_dir is None or self._watch_task is not None:
            return
        self._watch_task = asyncio.get_running_loop().create_task(
            watch_rules_directory(
                self.rules_dir,
                self._on_directory_changed,
                interval=self.reload_interval,
                recursive=self.recursive,
            ),
            name="rules_watch",
        )

    def _on_directory_changed(self, directory_rules: list[SigmaRule]) -> None:
        self._rules = list(self.custom_rules)
        if self.include_builtin:
            self._merge(load_builtin_rules(), "builtin")
        self._merge(directory_rules, str(self.rules_dir))
        logger.info(f"Rules hot-reloaded: {len(self._rules)} active")

    def add_rule(self, rule: SigmaRule) -> None:
        """Add a rule, replacing any rule with the same id."""
        for index, existing in enumerate(self._rules):
            if existing.id == rule.id:
                self._rules[index] = rule
                logger.info(f"Replaced rule {rule.id}")
                return
        self._rules.append(rule)
        logger.info(f"Added rule {rule.id}: {rule.title}")

    def remove_rule(self, rule_id: str) -> bool:
        """Remove a rule by id; returns False when it was not present."""
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.id != rule_id]
        removed = len(self._rules) < before
        if removed:
            logger.info(f"Removed rule {rule_id}")
        else:
            logger.warning(f"Rule not found for removal: {rule_id}")
        return removed

    def match(self, event: SecurityEvent) -> list[RuleMatch]:
        """Match an event against every active rule."""
        return match_event_against_rules(event, self._rules)

    def get_rules(self) -> list[SigmaRule]:
        return list(self._rules)

    def get_rule(self, rule_id: str) -> SigmaRule | None:
        return next((r for r in self._rules if r.id == rule_id), None)

    def reload(self) -> int:
        """Drop runtime additions and reload every source from scratch."""
        self._rules = list(self.custom_rules)
        self._load_all()
        logger.info(f"Rules reloaded: {len(self._rules)} active")
        return len(self._rules)

    def destroy(self) -> None:
        """Stop the directory watcher and clear the rule set."""
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        self._rules = []

    def __len__(self) -> int:
        return len(self._rules)
