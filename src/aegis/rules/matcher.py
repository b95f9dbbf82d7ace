"""Evaluate a single event against a Sigma rule."""

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..events import SecurityEvent, Severity
from .condition import ConditionSyntaxError, parse_condition
from .parser import Selection, SigmaRule

logger = logging.getLogger("aegis.rules.matcher")


@dataclass
class RuleMatch:
    """One rule firing on one event."""
    rule: SigmaRule
    event: SecurityEvent
    matched_fields: list[str]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def rule_id(self) -> str:
        return self.rule.id

    @property
    def rule_name(self) -> str:
        return self.rule.title

    @property
    def severity(self) -> Severity:
        return self.rule.level

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule.id,
            "rule_name": self.rule.title,
            "severity": self.rule.level.value,
            "matched_fields": self.matched_fields,
            "event_id": self.event.id,
            "timestamp": self.timestamp.isoformat(),
        }


def wildcard_to_regex(pattern: str) -> re.Pattern:
    """Sigma wildcard: ``*`` is zero or more characters, anchored at both ends."""
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL)


def split_modifiers(field_key: str) -> tuple[str, list[str]]:
    """``description|contains|all`` -> ("description", ["contains", "all"])."""
    name, *modifiers = field_key.split("|")
    return name, [m.lower() for m in modifiers]


def _field_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _to_number(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def _match_cidr(actual: str, expected: str) -> bool:
    try:
        return ipaddress.ip_address(actual) in ipaddress.ip_network(expected, strict=False)
    except ValueError:
        return False


def match_value(actual: str, expected: str, modifier: str | None) -> bool:
    """Compare one field value with one expected value."""
    actual_lower = actual.lower()
    expected_lower = expected.lower()

    if modifier == "contains":
        return expected_lower in actual_lower
    if modifier == "startswith":
        return actual_lower.startswith(expected_lower)
    if modifier == "endswith":
        return actual_lower.endswith(expected_lower)
    if modifier == "re":
        try:
            return re.search(expected, actual, re.IGNORECASE) is not None
        except re.error:
            logger.debug(f"Invalid regex in rule: {expected!r}")
            return False
    if modifier == "cidr":
        return _match_cidr(actual, expected)
    if modifier in ("gt", "gte", "lt", "lte"):
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        return {
            "gt": left > right,
            "gte": left >= right,
            "lt": left < right,
            "lte": left <= right,
        }[modifier]

    if "*" in expected:
        return wildcard_to_regex(expected).match(actual) is not None
    return actual_lower == expected_lower


def evaluate_selection(event: SecurityEvent, selection: Selection) -> tuple[bool, list[str]]:
    """
    Evaluate one selection: every field must match (AND), and a field with a
    list of values matches when any value does (OR) unless ``|all`` is given.

    Returns:
        (matched, base field names that matched)
    """
    fields: list[str] = []
    for field_key, expected in selection.items():
        name, modifiers = split_modifiers(field_key)
        actual = _field_text(event.get_field(name))
        if actual is None:
            return False, []

        require_all = "all" in modifiers
        primary = next((m for m in modifiers if m != "all"), None)
        values = expected if isinstance(expected, list) else [expected]

        checks = (match_value(actual, value, primary) for value in values)
        matched = all(checks) if require_all else any(checks)
        if not matched:
            return False, []
        fields.append(name)
    return True, fields


def match_event(event: SecurityEvent, rule: SigmaRule) -> RuleMatch | None:
    """
    Match one event against one rule.

    Returns:
        RuleMatch with the fields of the selections credited for the match,
        or None when the condition is false or cannot be parsed
    """
    results: dict[str, bool] = {}
    selection_fields: dict[str, list[str]] = {}
    for name, selection in rule.selections.items():
        matched, fields = evaluate_selection(event, selection)
        results[name] = matched
        selection_fields[name] = fields

    try:
        tree = parse_condition(rule.condition)
    except ConditionSyntaxError as e:
        logger.warning(f"Rule {rule.id} has an invalid condition {rule.condition!r}: {e}")
        return None

    undefined = tree.names() - results.keys()
    if undefined:
        logger.debug(f"Rule {rule.id} references undefined selections: {sorted(undefined)}")

    matched, contributors = tree.evaluate(results)
    if not matched:
        return None

    matched_fields: list[str] = []
    for name in rule.selections:
        if name in contributors:
            for field_name in selection_fields[name]:
                if field_name not in matched_fields:
                    matched_fields.append(field_name)

    logger.debug(f"Rule '{rule.title}' matched event {event.id} on {matched_fields}")
    return RuleMatch(rule=rule, event=event, matched_fields=matched_fields)


def match_event_against_rules(event: SecurityEvent, rules: list[SigmaRule]) -> list[RuleMatch]:
    """Match an event against every rule, keeping rule order."""
    matches = []
    for rule in rules:
        result = match_event(event, rule)
        if result is not None:
            matches.append(result)
    return matches
