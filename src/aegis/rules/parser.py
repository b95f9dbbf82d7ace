"""Sigma YAML rule parser.

Turns a YAML document into a :class:`SigmaRule`. Parsing is all-or-nothing:
a document without ``title``, ``detection.condition`` or a valid ``level``
yields ``None`` instead of a partial rule.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..events import Severity

logger = logging.getLogger("aegis.rules.parser")

VALID_STATUSES = {"experimental", "test", "stable"}
VALID_LEVELS = {s.value for s in Severity}

SelectionValue = str | list[str]
Selection = dict[str, SelectionValue]


@dataclass
class SigmaRule:
    """A parsed Sigma detection rule."""
    id: str
    title: str
    level: Severity
    condition: str
    selections: dict[str, Selection] = field(default_factory=dict)
    status: str = "experimental"
    description: str = ""
    author: str | None = None
    date: str | None = None
    logsource: dict[str, str] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    falsepositives: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    source_path: str | None = None

    @property
    def detection(self) -> dict[str, Any]:
        """The detection block as written: selections plus ``condition``."""
        return {**self.selections, "condition": self.condition}

    @property
    def mitre_techniques(self) -> list[str]:
        """ATT&CK technique ids from ``attack.tXXXX`` tags."""
        return [
            tag.split(".", 1)[1].upper()
            for tag in self.tags
            if tag.lower().startswith("attack.t") and tag[8:9].isdigit()
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "description": self.description,
            "author": self.author,
            "date": self.date,
            "logsource": self.logsource,
            "detection": self.detection,
            "level": self.level.value,
            "tags": self.tags,
            "falsepositives": self.falsepositives,
            "references": self.references,
        }


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _string_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [_to_text(v) for v in value]
    return []


def _normalize_selection(body: dict) -> Selection:
    selection: Selection = {}
    for field_name, field_value in body.items():
        if isinstance(field_value, list):
            selection[str(field_name)] = [_to_text(v) for v in field_value]
        else:
            selection[str(field_name)] = _to_text(field_value)
    return selection


def parse_sigma_yaml(content: str, source_path: str | None = None) -> SigmaRule | None:
    """
    Parse a Sigma rule from YAML text.

    Args:
        content: Raw YAML document
        source_path: Optional file the document came from (for diagnostics)

    Returns:
        SigmaRule, or None when the document is not a valid rule
    """
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.debug(f"YAML parse error in {source_path or '<string>'}: {e}")
        return None

    if not isinstance(doc, dict):
        return None

    title = doc.get("title")
    if not isinstance(title, str) or not title.strip():
        logger.debug("Rule rejected: missing title")
        return None

    raw_detection = doc.get("detection")
    if not isinstance(raw_detection, dict) or not isinstance(raw_detection.get("condition"), str):
        logger.debug(f"Rule '{title}' rejected: missing detection condition")
        return None

    level = doc.get("level")
    level = level.lower() if isinstance(level, str) else ""
    if level not in VALID_LEVELS:
        logger.debug(f"Rule '{title}' rejected: invalid level {doc.get('level')!r}")
        return None

    selections: dict[str, Selection] = {}
    for name, body in raw_detection.items():
        if name == "condition":
            continue
        if isinstance(body, dict):
            selections[str(name)] = _normalize_selection(body)

    status = doc.get("status")
    status = status.lower() if isinstance(status, str) else ""
    if status not in VALID_STATUSES:
        status = "experimental"

    raw_logsource = doc.get("logsource")
    logsource = {
        key: value
        for key, value in (raw_logsource.items() if isinstance(raw_logsource, dict) else [])
        if key in ("category", "product", "service") and isinstance(value, str)
    }

    rule_id = doc.get("id")
    return SigmaRule(
        id=str(rule_id) if rule_id is not None else f"auto-{uuid.uuid4()}",
        title=title,
        level=Severity(level),
        condition=raw_detection["condition"],
        selections=selections,
        status=status,
        description=doc["description"] if isinstance(doc.get("description"), str) else "",
        author=doc["author"] if isinstance(doc.get("author"), str) else None,
        date=str(doc["date"]) if doc.get("date") is not None else None,
        logsource=logsource,
        tags=_string_list(doc.get("tags")),
        falsepositives=_string_list(doc.get("falsepositives")),
        references=_string_list(doc.get("references")),
        source_path=source_path,
    )


def parse_sigma_file(path: Path | str) -> SigmaRule | None:
    """Read a rule file from disk; unreadable files yield None."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read rule file {path}: {e}")
        return None

    rule = parse_sigma_yaml(content, source_path=str(path))
    if rule is None:
        logger.warning(f"Skipping invalid rule file: {path}")
    return rule
