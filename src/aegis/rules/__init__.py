# Aegis Guard - Rule Engine
"""
Sigma-style detection rules: parsing, condition evaluation,
field matching and rule set management.
"""

from .parser import SigmaRule, parse_sigma_yaml, parse_sigma_file
from .condition import ConditionSyntaxError, parse_condition, evaluate_condition
from .matcher import RuleMatch, match_event, match_event_against_rules
from .loader import load_rules_from_directory, load_rules_from_files, load_builtin_rules, watch_rules_directory
from .engine import RuleEngine

__all__ = [
    # Parser
    "SigmaRule",
    "parse_sigma_yaml",
    "parse_sigma_file",
    # Condition
    "ConditionSyntaxError",
    "parse_condition",
    "evaluate_condition",
    # Matcher
    "RuleMatch",
    "match_event",
    "match_event_against_rules",
    # Loader
    "load_rules_from_directory",
    "load_rules_from_files",
    "load_builtin_rules",
    "watch_rules_directory",
    # Engine
    "RuleEngine",
]
