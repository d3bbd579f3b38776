"""Rule compiler - turns JSON rule declarations into compiled rule sets.

Rule files are JSON arrays of objects with the fields ``Method``, ``Host``,
``URL``, ``Proxy``, ``Filter``, ``Attr`` (arrays of strings) and
``Protocol`` (a single string). Patterns use ``*`` as a wildcard and ``.``
as a literal dot; any other regex syntax passes through as written.

Compilation is all-or-nothing: every pattern of every file compiles before
a RuleSet is returned, and one bad pattern raises PatternError.
"""

import json
import logging
import re
from pathlib import Path

from .types import Rule, RuleDecl, RuleSet, Target

logger = logging.getLogger(__name__)

LIST_FIELDS = {
    "Method": "method",
    "Host": "host",
    "URL": "url",
    "Proxy": "proxy",
    "Filter": "filter",
    "Attr": "attr",
}


class PatternError(ValueError):
    """A rule pattern failed to compile."""

    def __init__(self, pattern: str, index: int, source: str, reason: str):
        self.pattern = pattern
        self.index = index
        self.source = source
        self.reason = reason
        super().__init__(
            f"{source}: rule {index}: invalid pattern {pattern!r}: {reason}"
        )


class RuleFileError(ValueError):
    """A rule file is not a JSON array of rule objects."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source}: {reason}")


def prepare_pattern(text: str) -> re.Pattern:
    """Compile a wildcard pattern into an anchored, case-insensitive regex.

    Raises re.error if the result is not a valid regular expression.
    """
    expr = text.strip().replace(".", r"\.").replace("*", ".*")
    return re.compile(f"^(?:{expr})$", re.IGNORECASE)


def _compile_patterns(
    patterns: list[str], index: int, source: str
) -> tuple[re.Pattern, ...]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(prepare_pattern(pattern))
        except re.error as e:
            raise PatternError(pattern, index, source, str(e)) from e
    return tuple(compiled)


def compile_rule(decl: RuleDecl, index: int = 0, source: str = "<rules>") -> Rule:
    """Compile one rule declaration.

    Raises:
        PatternError: If any method, host or URL pattern is not a valid regex.
    """
    return Rule(
        methods=_compile_patterns(decl.method, index, source),
        hosts=_compile_patterns(decl.host, index, source),
        urls=_compile_patterns(decl.url, index, source),
        filters=tuple(decl.filter),
        protocol=decl.protocol.strip(),
        proxies=tuple(decl.proxy),
        attrs=tuple(decl.attr),
        source=f"{source}#{index}",
    )


def rule_decl_from_dict(data: dict, index: int = 0, source: str = "<rules>") -> RuleDecl:
    """Build a RuleDecl from one JSON object, checking field types."""
    if not isinstance(data, dict):
        raise RuleFileError(source, f"rule {index} is not an object")
    decl = RuleDecl()
    for key, attr in LIST_FIELDS.items():
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise RuleFileError(source, f"rule {index}: {key} must be a list of strings")
        setattr(decl, attr, list(value))
    protocol = data.get("Protocol")
    if protocol is not None:
        if not isinstance(protocol, str):
            raise RuleFileError(source, f"rule {index}: Protocol must be a string")
        decl.protocol = protocol
    return decl


def parse_rule_document(text: str, source: str = "<rules>") -> list[RuleDecl]:
    """Parse a JSON rule document into declarations.

    Raises:
        RuleFileError: If the text is not valid JSON or has the wrong shape.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise RuleFileError(source, f"invalid JSON: {e}") from e
    if data is None:
        return []
    if not isinstance(data, list):
        raise RuleFileError(source, "top level must be an array of rules")
    return [rule_decl_from_dict(item, i, source) for i, item in enumerate(data)]


def compile_rules(decls: list[RuleDecl], source: str = "<rules>") -> list[Rule]:
    """Compile a list of declarations, failing on the first bad pattern."""
    return [compile_rule(decl, i, source) for i, decl in enumerate(decls)]


def compile_rule_files(
    paths: list[str | Path], default: str = Target.GAE.value
) -> RuleSet:
    """Compile every rule file into one RuleSet, in path order.

    Earlier files take priority (the user file is listed before the cloud
    file). A missing file contributes no rules. A malformed file is logged
    and skipped.

    Raises:
        PatternError: If any pattern in any file fails to compile. Nothing
            is returned in that case, so callers keep their previous set.
    """
    rules: list[Rule] = []
    for path in paths:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"Rule file {path} not found, skipping")
            continue
        except UnicodeDecodeError as e:
            logger.error(f"Failed to parse rule file: {path}: not valid UTF-8: {e}")
            continue
        try:
            decls = parse_rule_document(text, source=str(path))
        except RuleFileError as e:
            logger.error(f"Failed to parse rule file: {e}")
            continue
        rules.extend(compile_rules(decls, source=str(path)))
    return RuleSet(rules=tuple(rules), default=default)
