"""Process-wide holder of the active RuleSet.

Readers call current() and work on the returned snapshot without locking.
Writers build a complete RuleSet off to the side and publish it with one
reference assignment, so a reader sees either the old set or the new one.
"""

import logging
import threading
from pathlib import Path

from .compiler import PatternError, compile_rule_files
from .types import RuleSet

logger = logging.getLogger(__name__)


class RuleStore:
    """Atomically swappable RuleSet slot."""

    def __init__(self, rule_set: RuleSet | None = None):
        self._current = rule_set if rule_set is not None else RuleSet()
        self._write_lock = threading.Lock()
        self._reload_count = 0

    def current(self) -> RuleSet:
        return self._current

    def replace(self, rule_set: RuleSet) -> None:
        with self._write_lock:
            self._current = rule_set
            self._reload_count += 1

    def set_default(self, default: str) -> None:
        with self._write_lock:
            self._current = self._current.with_default(default)

    @property
    def reload_count(self) -> int:
        return self._reload_count

    def reload(self, paths: list[str | Path]) -> bool:
        """Recompile the rule files and publish the result.

        On any compile or read error the previous RuleSet stays active and
        the error is logged. Returns True if a new set was published.
        """
        default = self._current.default
        try:
            rule_set = compile_rule_files(paths, default=default)
        except PatternError as e:
            logger.error(f"Rule reload aborted, keeping {len(self._current)} rule(s): {e}")
            return False
        except OSError as e:
            logger.error(f"Rule reload aborted, cannot read rule file: {e}")
            return False

        with self._write_lock:
            # Default may have been resolved while we were compiling
            self._current = rule_set.with_default(self._current.default)
            self._reload_count += 1
        logger.info(f"Loaded {len(rule_set)} rule(s) from {len(paths)} file(s)")
        return True
