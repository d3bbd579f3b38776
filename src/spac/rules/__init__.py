"""Routing rule compilation, matching and live reload."""

from .compiler import (
    PatternError,
    RuleFileError,
    compile_rule,
    compile_rule_files,
    parse_rule_document,
    prepare_pattern,
)
from .matcher import FilterRegistry, match_regex_set, match_rule, select_by_rule_set
from .store import RuleStore
from .types import (
    ATTR_CRLF,
    ATTR_REDIRECT_HTTPS,
    Connection,
    ConnectionType,
    Decision,
    ListenerType,
    LocalAction,
    Request,
    Rule,
    RuleDecl,
    RuleSet,
    Target,
)
from .watcher import ReloadWatcher

__all__ = [
    # Types
    "Target",
    "ListenerType",
    "ConnectionType",
    "LocalAction",
    "Request",
    "Connection",
    "RuleDecl",
    "Rule",
    "RuleSet",
    "Decision",
    "ATTR_CRLF",
    "ATTR_REDIRECT_HTTPS",
    # Compiler
    "PatternError",
    "RuleFileError",
    "prepare_pattern",
    "compile_rule",
    "compile_rule_files",
    "parse_rule_document",
    # Matcher
    "FilterRegistry",
    "match_regex_set",
    "match_rule",
    "select_by_rule_set",
    # Store / reload
    "RuleStore",
    "ReloadWatcher",
]
