"""Shared test fixtures and mocks."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from spac.rules import RuleDecl, compile_rule


class RecordingHandle:
    """Upstream handle that records the flows it was asked to proxy."""

    def __init__(self, name):
        self.name = name
        self.calls = []

    def proxy(self, flow):
        self.calls.append(flow)


def make_rule(**fields):
    """Compile a rule from RuleDecl keyword fields."""
    return compile_rule(RuleDecl(**fields))


@pytest.fixture
def rule_file(tmp_path):
    """Write a JSON rule file under tmp_path and return its path."""
    def _write(name, text):
        path = tmp_path / name
        path.write_text(text)
        return path
    return _write
