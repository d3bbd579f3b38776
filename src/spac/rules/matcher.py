"""Request matching engine - matches requests against compiled routing rules."""

import logging
import re
import threading
from typing import Callable

from .types import Request, Rule, RuleSet

logger = logging.getLogger(__name__)

FilterFunc = Callable[[Request], bool]


class FilterRegistry:
    """Named request predicates that rules reference in their Filter field.

    Registration happens at startup and when a background fetch reloads a
    list; lookups happen on the request path.
    """

    def __init__(self):
        self._filters: dict[str, FilterFunc] = {}
        self._lock = threading.Lock()

    def register(self, name: str, predicate: FilterFunc) -> None:
        with self._lock:
            filters = dict(self._filters)
            filters[name.lower()] = predicate
            self._filters = filters

    def names(self) -> list[str]:
        return sorted(self._filters)

    def invoke(self, name: str, request: Request) -> bool:
        """Evaluate a named filter. Unknown names evaluate to False."""
        predicate = self._filters.get(name.lower())
        if predicate is None:
            logger.warning(f"No filter named {name!r} is registered")
            return False
        return bool(predicate(request))


def match_regex_set(value: str, patterns: tuple[re.Pattern, ...]) -> bool:
    """True if there are no patterns, or any pattern matches the value."""
    if not patterns:
        return True
    return any(p.match(value) for p in patterns)


def match_filters(rule: Rule, request: Request, filters: FilterRegistry | None) -> bool:
    """All named filters must pass (AND), stopping at the first failure."""
    for name in rule.filters:
        if filters is None or not filters.invoke(name, request):
            return False
    return True


def match_protocol(rule: Rule, request: Request, is_tunnel: bool) -> bool:
    """Match the rule's declared protocol, if any.

    A request is https when it is a CONNECT or arrives inside a tunnel.
    """
    if not rule.protocol:
        return True
    protocol = "https" if request.is_connect or is_tunnel else "http"
    return rule.protocol.lower() == protocol


def match_rule(
    rule: Rule,
    request: Request,
    is_tunnel: bool = False,
    filters: FilterRegistry | None = None,
) -> bool:
    """Check if a request matches a rule.

    All criteria must match (AND semantics within a rule); patterns within
    one criterion are OR'd.
    """
    return (
        match_filters(rule, request, filters)
        and match_protocol(rule, request, is_tunnel)
        and match_regex_set(request.method, rule.methods)
        and match_regex_set(request.hostname, rule.hosts)
        and match_regex_set(request.uri, rule.urls)
    )


def select_by_rule_set(
    request: Request,
    rule_set: RuleSet,
    is_tunnel: bool = False,
    filters: FilterRegistry | None = None,
    fallback: list[str] | None = None,
) -> tuple[list[str], dict[str, str], int | None]:
    """Return the first matching rule's targets and attribute tags.

    Returns (proxy_names, attrs, matched_rule_index). When no rule matches
    the fallback list is returned with empty attrs and a None index.
    """
    for i, rule in enumerate(rule_set.rules):
        if match_rule(rule, request, is_tunnel, filters):
            return list(rule.proxies), {a: a for a in rule.attrs}, i
    return list(fallback or []), {}, None
