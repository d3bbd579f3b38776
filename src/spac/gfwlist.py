"""AdBlock-style list translator - converts filter lines to regular expressions.

Lines are classified with a PEG grammar (comments, headers, ``@@`` allow
directives, block directives; bodies are either ``/regex/`` literals or
globs). Globs go through an ordered pipeline of rewrites, one pure function
per step, producing a case-insensitive expression that is searched in the
request URL. The same expressions feed the generated PAC script.
"""

import base64
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from string import Template

from parsimonious.exceptions import ParseError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from .rules.types import Request

logger = logging.getLogger(__name__)

# =============================================================================
# PEG Grammar (one list line, already stripped)
# =============================================================================

GRAMMAR = Grammar(r"""
line            = comment / header / allow / block
comment         = "!" ~".*"
header          = ~"\\[[^\\]]*\\]$"
allow           = "@@" pattern
block           = !"@@" pattern
pattern         = regex_literal / glob
regex_literal   = "/" ~".*(?=/$)" "/"
glob            = ~".+"
""")


class Outcome(Enum):
    """What a matching list line asks for."""

    BLOCK = "block"  # route through the proxy
    ALLOW = "allow"  # bypass, use the default (direct) route


class ListLineVisitor(NodeVisitor):
    """Reduces a parsed line to (outcome, kind, body) or None."""

    def visit_line(self, node, visited_children):
        return visited_children[0]

    def visit_comment(self, node, visited_children):
        return None

    def visit_header(self, node, visited_children):
        return None

    def visit_allow(self, node, visited_children):
        _, (kind, body) = visited_children
        return Outcome.ALLOW, kind, body

    def visit_block(self, node, visited_children):
        _, (kind, body) = visited_children
        return Outcome.BLOCK, kind, body

    def visit_pattern(self, node, visited_children):
        return visited_children[0]

    def visit_regex_literal(self, node, visited_children):
        return "regex", node.text[1:-1]

    def visit_glob(self, node, visited_children):
        return "glob", node.text

    def generic_visit(self, node, visited_children):
        return visited_children or node


# =============================================================================
# Glob translation pipeline
# =============================================================================

# "^" separator: anything that cannot be part of a URL word, or the end
SEPARATOR_CLASS = r"(?:[^\w\-.%\u0080-\uffff]|$)"

# "||" anchor: any scheme, then optional subdomain labels before the host
DOMAIN_ANCHOR = r"^[\w\-]+:\/+(?!\/)(?:[^\/]+\.)?"


def collapse_wildcards(expr: str) -> str:
    """Collapse runs of ``*`` into one."""
    return re.sub(r"\*+", "*", expr)


def anchor_trailing_separator(expr: str) -> str:
    """A trailing ``^|`` means the same as a trailing ``^``."""
    return re.sub(r"\^\|$", "^", expr, count=1)


def escape_non_word(expr: str) -> str:
    """Backslash-escape every non-word character."""
    return re.sub(r"(\W)", r"\\\1", expr, flags=re.ASCII)


def expand_wildcards(expr: str) -> str:
    return expr.replace(r"\*", ".*")


def expand_separators(expr: str) -> str:
    return expr.replace(r"\^", SEPARATOR_CLASS)


def anchor_domain(expr: str) -> str:
    """Leading ``||`` matches any scheme and optional subdomains."""
    if expr.startswith(r"\|\|"):
        return DOMAIN_ANCHOR + expr[4:]
    return expr


def anchor_ends(expr: str) -> str:
    """Single ``|`` anchors to the start or end of the URL."""
    if expr.startswith(r"\|"):
        expr = "^" + expr[2:]
    if expr.endswith(r"\|"):
        expr = expr[:-2] + "$"
    return expr


def strip_wildcard_edges(expr: str) -> str:
    """Drop a leading or trailing ``.*``, which a search does not need."""
    if expr.startswith(".*"):
        expr = expr[2:]
    if expr.endswith(".*"):
        expr = expr[:-2]
    return expr


GLOB_PIPELINE = (
    collapse_wildcards,
    anchor_trailing_separator,
    escape_non_word,
    expand_wildcards,
    expand_separators,
    anchor_domain,
    anchor_ends,
    strip_wildcard_edges,
)


def glob_to_regex(glob: str) -> str:
    """Translate a glob-style list pattern into a regular expression string."""
    expr = glob
    for step in GLOB_PIPELINE:
        expr = step(expr)
    return expr


# =============================================================================
# Parsed lists
# =============================================================================


@dataclass(frozen=True)
class ListEntry:
    """One translated list line."""

    outcome: Outcome
    source: str  # the original line
    expression: str
    pattern: re.Pattern

    def matches(self, url: str) -> bool:
        return self.pattern.search(url) is not None


def parse_line(line: str) -> ListEntry | None:
    """Translate one list line. Comments, headers and blanks yield None.

    Lines whose final expression is not a valid regular expression are
    logged and skipped.
    """
    text = line.strip()
    if not text:
        return None
    try:
        tree = GRAMMAR.parse(text)
    except ParseError:
        logger.warning(f"Skipping unparsable list line: {text}")
        return None
    result = ListLineVisitor().visit(tree)
    if result is None:
        return None

    outcome, kind, body = result
    if kind == "regex":
        expression = body
    else:
        expression = glob_to_regex(body)
        if not expression:
            logger.warning(
                f"There is one rule that matches all URL, which is highly *NOT* recommended: {text}"
            )

    try:
        pattern = re.compile(expression, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Skipping list line {text!r}: invalid expression {expression!r}: {e}")
        return None
    return ListEntry(outcome=outcome, source=text, expression=expression, pattern=pattern)


@dataclass
class RuleList:
    """A translated block/allow list.

    Allow entries are evaluated before block entries regardless of where
    they appear in the source.
    """

    entries: list[ListEntry] = field(default_factory=list)
    _ordered: list[ListEntry] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._ordered = self.allow_entries + self.block_entries

    @classmethod
    def parse(cls, text: str) -> "RuleList":
        entries = []
        for line in text.splitlines():
            entry = parse_line(line)
            if entry is not None:
                entries.append(entry)
        return cls(entries)

    @property
    def allow_entries(self) -> list[ListEntry]:
        return [e for e in self.entries if e.outcome == Outcome.ALLOW]

    @property
    def block_entries(self) -> list[ListEntry]:
        return [e for e in self.entries if e.outcome == Outcome.BLOCK]

    def ordered(self) -> list[ListEntry]:
        """Entries in evaluation order: allow first, then block."""
        return list(self._ordered)

    def decide(self, url: str) -> Outcome | None:
        """Outcome of the first matching entry, or None if nothing matches."""
        for entry in self._ordered:
            if entry.matches(url):
                return entry.outcome
        return None

    def is_blocked(self, url: str) -> bool:
        return self.decide(url) == Outcome.BLOCK

    def __len__(self) -> int:
        return len(self.entries)


def decode_list(body: bytes | str) -> str:
    """Decode a base64-encoded list as served by GFW-style list mirrors."""
    if isinstance(body, str):
        body = body.encode("ascii", errors="ignore")
    return base64.b64decode(body).decode("utf-8", errors="replace")


def load_list_files(paths: list[str | Path]) -> RuleList:
    """Parse and concatenate list files in order; missing files are skipped."""
    chunks = []
    for path in paths:
        try:
            chunks.append(Path(path).read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.debug(f"List file {path} not found, skipping")
    return RuleList.parse("\n".join(chunks))


class ListFilter:
    """Named-filter adapter: true when the list routes the request via proxy.

    The wrapped RuleList is replaced wholesale when the list is refreshed.
    """

    def __init__(self, rule_list: RuleList | None = None):
        self.rule_list = rule_list or RuleList()

    def update(self, rule_list: RuleList) -> None:
        self.rule_list = rule_list

    def __call__(self, request: Request) -> bool:
        return self.rule_list.is_blocked(request.url)


# =============================================================================
# PAC script generation
# =============================================================================

PAC_TEMPLATE = Template("""\
/*
 * Proxy Auto-Config file generated by spac
 *  Rule source: $rule_list_url
 *  Last update: $rule_list_date
 */
function FindProxyForURL(url, host) {
\tvar $proxy_var = "$proxy_string";
\tvar $default_var = "$default_string";
\t$rules_begin
\t$rule_list_code
\t$rules_end
\treturn $default_var;
}""")

PROXY_VAR = "PROXY"
DEFAULT_VAR = "DEFAULT"


def pac_line(entry: ListEntry) -> str:
    var = PROXY_VAR if entry.outcome == Outcome.BLOCK else DEFAULT_VAR
    return f"if(/{entry.expression}/i.test(url)) return {var};"


def generate_pac(
    rule_list: RuleList,
    proxy: str,
    source_url: str = "",
    last_modified: str = "",
) -> str:
    """Render a PAC script; allow entries come first so they short-circuit."""
    code = "\r\n\t".join(pac_line(e) for e in rule_list.ordered())
    return PAC_TEMPLATE.substitute(
        rule_list_url=source_url,
        rule_list_date=last_modified,
        proxy_var=PROXY_VAR,
        proxy_string=f"PROXY {proxy}",
        default_var=DEFAULT_VAR,
        default_string="DIRECT",
        rules_begin="//-- AUTO-GENERATED RULES, DO NOT MODIFY!",
        rule_list_code=code,
        rules_end="//-- END OF AUTO-GENERATED RULES",
    )
