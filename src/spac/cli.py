#!/usr/bin/env python3
"""Command-line utility for spac rule and list management.

Usage:
    spac validate <rules.json>... [--dump-rules]
    spac translate <gfwlist.txt> [--base64] [--pac] [--proxy HOST:PORT]
    spac check <url> [--rules FILE]... [--list FILE]... [--method GET]
    spac run [--config spac.yaml]

Exit codes:
    0 - Valid rules (or the check completed)
    1 - Invalid rules or patterns
    2 - File not found or unreadable input
"""

import argparse
import json
import sys
from pathlib import Path
from urllib.parse import urlsplit

from .gfwlist import Outcome, RuleList, decode_list, generate_pac
from .rules.compiler import PatternError, RuleFileError, compile_rules, parse_rule_document
from .rules.matcher import FilterRegistry
from .rules.store import RuleStore
from .rules.types import Connection, ConnectionType, Request, RuleSet
from .selector import ProxySelector
from .service import FILTER_GFWLIST
from .upstream import UpstreamRegistry


def _read_file(path: Path) -> str:
    """Read a text file, exiting with status 2 if it is missing."""
    if not path.exists():
        print(f"Error: File not found: {path}", file=sys.stderr)
        sys.exit(2)
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        print(f"Error: Cannot read {path}: {e}", file=sys.stderr)
        sys.exit(2)


def rule_to_dict(rule) -> dict:
    """Convert a compiled rule to a JSON-friendly dict."""
    result = {"source": rule.source}
    if rule.methods:
        result["method"] = [p.pattern for p in rule.methods]
    if rule.hosts:
        result["host"] = [p.pattern for p in rule.hosts]
    if rule.urls:
        result["url"] = [p.pattern for p in rule.urls]
    if rule.filters:
        result["filter"] = list(rule.filters)
    if rule.protocol:
        result["protocol"] = rule.protocol
    result["proxy"] = list(rule.proxies)
    if rule.attrs:
        result["attr"] = list(rule.attrs)
    return result


def load_rule_set(paths: list[Path]) -> RuleSet:
    """Compile rule files for the CLI. Errors exit with status 1."""
    rules = []
    for path in paths:
        text = _read_file(path)
        try:
            rules.extend(compile_rules(parse_rule_document(text, str(path)), str(path)))
        except (RuleFileError, PatternError) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    return RuleSet(rules=tuple(rules))


def load_rule_list(paths: list[Path], base64: bool = False) -> RuleList:
    chunks = []
    for path in paths:
        text = _read_file(path)
        if base64:
            try:
                text = decode_list(text)
            except ValueError as e:
                print(f"Error: {path} is not valid base64: {e}", file=sys.stderr)
                sys.exit(2)
        chunks.append(text)
    return RuleList.parse("\n".join(chunks))


def _cmd_validate(args) -> None:
    """Handle the 'validate' subcommand."""
    total_errors = 0
    dumped = []
    for path in args.files:
        text = _read_file(path)
        try:
            rules = compile_rules(parse_rule_document(text, str(path)), str(path))
        except (RuleFileError, PatternError) as e:
            total_errors += 1
            print(f"{path}: {e}")
            continue
        if args.dump_rules:
            dumped.extend(rule_to_dict(rule) for rule in rules)
        elif not args.quiet:
            print(f"{path}: {len(rules)} rule(s) OK")

    if args.dump_rules:
        print(json.dumps(dumped, indent=2))
    sys.exit(1 if total_errors else 0)


def _cmd_translate(args) -> None:
    """Handle the 'translate' subcommand."""
    rule_list = load_rule_list(args.files, base64=args.base64)
    if args.pac:
        print(generate_pac(rule_list, args.proxy))
        sys.exit(0)
    for entry in rule_list.ordered():
        tag = "allow" if entry.outcome == Outcome.ALLOW else "block"
        print(f"{tag}\t{entry.expression}\t{entry.source}")
    sys.exit(0)


def _cmd_check(args) -> None:
    """Handle the 'check' subcommand."""
    store = RuleStore(load_rule_set(args.rules or []).with_default(args.default))
    filters = FilterRegistry()
    if args.list:
        rule_list = load_rule_list(args.list, base64=args.base64)
        filters.register(FILTER_GFWLIST, lambda request: rule_list.is_blocked(request.url))
        outcome = rule_list.decide(args.url)
        print(f"list: {outcome.value if outcome else 'no match'}")

    parts = urlsplit(args.url)
    if not parts.netloc:
        print(f"Error: not an absolute URL: {args.url}", file=sys.stderr)
        sys.exit(2)
    tunnel = parts.scheme == "https"
    request = Request(method=args.method.upper(), host=parts.netloc, uri=args.url)
    connection = Connection(type=ConnectionType.HTTPS_TUNNEL if tunnel else ConnectionType.HTTP)

    selector = ProxySelector(store, UpstreamRegistry(), filters=filters, proxy_port=args.proxy_port)
    decision = selector.decide(request, connection)
    if decision.local is not None:
        print(f"local: {decision.local.value}")
    else:
        print(f"upstreams: {', '.join(decision.names) or '(none)'}")
    if decision.matched_rule is not None:
        print(f"rule: {store.current().rules[decision.matched_rule].source}")
    if decision.attrs:
        print(f"attrs: {', '.join(sorted(decision.attrs))}")
    sys.exit(0)


def _cmd_run(args) -> None:
    """Handle the 'run' subcommand."""
    from .main import run

    sys.exit(run(args.config))


def main():
    parser = argparse.ArgumentParser(
        description="spac routing rule tools.",
        epilog="Exit codes: 0=valid/ok, 1=invalid rules, 2=file error",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # validate
    p_validate = subparsers.add_parser("validate", help="Validate JSON rule files")
    p_validate.add_argument("files", type=Path, nargs="+", help="Rule files")
    p_validate.add_argument("-q", "--quiet", action="store_true",
                            help="Only output errors")
    p_validate.add_argument("--dump-rules", action="store_true",
                            help="Output compiled rules as JSON")
    p_validate.set_defaults(func=_cmd_validate)

    # translate
    p_translate = subparsers.add_parser(
        "translate", help="Translate an AdBlock-style list to regexes or a PAC script",
    )
    p_translate.add_argument("files", type=Path, nargs="+", help="List files")
    p_translate.add_argument("--base64", action="store_true",
                             help="Input files are base64-encoded")
    p_translate.add_argument("--pac", action="store_true",
                             help="Output a PAC script instead of regexes")
    p_translate.add_argument("--proxy", default="127.0.0.1:48100",
                             help="Proxy address used by the PAC script")
    p_translate.set_defaults(func=_cmd_translate)

    # check
    p_check = subparsers.add_parser("check", help="Show the routing decision for a URL")
    p_check.add_argument("url", help="Absolute URL to route")
    p_check.add_argument("--rules", type=Path, action="append", metavar="FILE",
                         help="Rule file (repeatable, earlier files win)")
    p_check.add_argument("--list", type=Path, action="append", metavar="FILE",
                         help="List file backing the InGFWList filter (repeatable)")
    p_check.add_argument("--base64", action="store_true",
                         help="List files are base64-encoded")
    p_check.add_argument("--method", default="GET", help="Request method")
    p_check.add_argument("--default", default="", help="Default target name")
    p_check.add_argument("--proxy-port", type=int, default=48100,
                         help="Local proxy port, for self-request detection")
    p_check.set_defaults(func=_cmd_check)

    # run
    p_run = subparsers.add_parser("run", help="Run the proxy")
    p_run.add_argument("--config", type=Path, default=None, help="Path to spac.yaml")
    p_run.set_defaults(func=_cmd_run)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
