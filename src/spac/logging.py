"""Logging configuration and routing decision logging."""

import json
import logging
import os
from datetime import datetime, timezone

# Configuration from environment
LOG_FILE = os.environ.get("SPAC_LOG_FILE", "/tmp/spac.log")
DECISIONS_FILE = os.environ.get("SPAC_DECISIONS_FILE", "/tmp/spac-decisions.jsonl")
MITMPROXY_LOG_FILE = os.environ.get("MITMPROXY_LOG_FILE", "/tmp/mitmproxy.log")
VERBOSE = os.environ.get("VERBOSE", "0") == "1"

# Module loggers (spac.rules.compiler, ...) propagate here
logger: logging.Logger = logging.getLogger("spac")
_decisions_file = None


def init_logging() -> logging.Logger:
    """Initialize logging. Returns the main logger."""
    global logger, _decisions_file

    # Operational logger (human-readable)
    logger = logging.getLogger("spac")
    logger.setLevel(logging.DEBUG if VERBOSE else logging.INFO)
    logger.propagate = False
    logger.handlers.clear()
    handler = logging.FileHandler(LOG_FILE)
    handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(levelname)s %(message)s'))
    logger.addHandler(handler)

    # Decision events file (JSONL format, line-buffered)
    _decisions_file = open(DECISIONS_FILE, "a", buffering=1)

    # Configure mitmproxy's internal logging (only in verbose mode)
    if VERBOSE:
        mitmproxy_handler = logging.FileHandler(MITMPROXY_LOG_FILE)
        mitmproxy_handler.setFormatter(logging.Formatter('%(asctime)s %(name)s %(levelname)s %(message)s'))
        for mlog_name in ["mitmproxy", "mitmproxy.proxy", "mitmproxy.options"]:
            mlog = logging.getLogger(mlog_name)
            mlog.setLevel(logging.DEBUG)
            mlog.addHandler(mitmproxy_handler)

    return logger


def close_logging():
    """Close logging resources."""
    global _decisions_file
    if _decisions_file:
        _decisions_file.close()
        _decisions_file = None


def log_decision(**kwargs) -> None:
    """Log a routing decision as JSONL (host and method first, attrs at end)."""
    if not _decisions_file:
        return
    attrs = kwargs.pop("attrs", None)
    event = {"ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds")}
    event.update(kwargs)
    if attrs:
        event["attrs"] = sorted(attrs)
    _decisions_file.write(json.dumps(event, separators=(",", ":")) + "\n")
