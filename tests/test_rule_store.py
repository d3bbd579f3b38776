"""Tests for the atomically swappable rule store (spac.rules.store)."""

import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from hypothesis import given, settings
from hypothesis import strategies as st

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import make_rule
from spac.rules.store import RuleStore
from spac.rules.types import RuleSet


def rules_json(count: int) -> str:
    return "[" + ",".join(f'{{"Host": ["h{i}.com"], "Proxy": ["GAE"]}}' for i in range(count)) + "]"


class TestReload:

    def test_initial_set_is_empty(self):
        store = RuleStore()
        assert len(store.current()) == 0
        assert store.current().default == "GAE"

    def test_reload_publishes_new_set(self, rule_file):
        path = rule_file("user.json", rules_json(3))
        store = RuleStore()
        assert store.reload([path])
        assert len(store.current()) == 3
        assert store.reload_count == 1

    def test_bad_pattern_keeps_previous_set(self, rule_file):
        path = rule_file("user.json", rules_json(2))
        store = RuleStore()
        store.reload([path])
        before = store.current()

        path.write_text('[{"Host": ["ok.com"], "Proxy": ["GAE"]}, {"Host": ["bad("], "Proxy": ["C4"]}]')
        assert not store.reload([path])
        assert store.current() is before
        assert store.reload_count == 1

    def test_bad_pattern_on_first_load_leaves_empty_set(self, rule_file):
        path = rule_file("user.json", '[{"Host": ["bad("]}]')
        store = RuleStore()
        assert not store.reload([path])
        assert len(store.current()) == 0

    def test_unreadable_path_keeps_previous_set(self, tmp_path):
        store = RuleStore(RuleSet(rules=(make_rule(proxy=["C4"]),)))
        # A directory cannot be read as a file
        assert not store.reload([tmp_path])
        assert len(store.current()) == 1

    def test_default_survives_reload(self, rule_file):
        path = rule_file("user.json", rules_json(1))
        store = RuleStore()
        store.set_default("C4")
        store.reload([path])
        assert store.current().default == "C4"

    def test_empty_initial_set_keeps_its_default(self, rule_file):
        store = RuleStore(RuleSet(default="SSH"))
        assert store.current().default == "SSH"
        store.reload([rule_file("user.json", rules_json(1))])
        assert store.current().default == "SSH"

    def test_non_utf8_file_skipped(self, tmp_path, rule_file):
        bad = tmp_path / "cloud.json"
        bad.write_bytes(b'[{"Host": ["caf\xe9.com"], "Proxy": ["GAE"]}]')
        good = rule_file("user.json", rules_json(2))
        store = RuleStore()
        assert store.reload([good, bad])
        assert len(store.current()) == 2

    def test_set_default_keeps_rules(self):
        store = RuleStore(RuleSet(rules=(make_rule(proxy=["C4"]),)))
        store.set_default("SSH")
        assert len(store.current()) == 1
        assert store.current().default == "SSH"


class TestAtomicSwap:
    """Readers only ever see a complete pre- or post-reload set."""

    def test_concurrent_readers_never_see_torn_sets(self):
        small = RuleSet(rules=tuple(make_rule(proxy=["A"]) for _ in range(3)))
        large = RuleSet(rules=tuple(make_rule(proxy=["B"]) for _ in range(7)))
        store = RuleStore(small)
        stop = threading.Event()
        observed = []

        def reader():
            seen = set()
            while not stop.is_set():
                rule_set = store.current()
                proxies = {r.proxies for r in rule_set.rules}
                seen.add((len(rule_set), frozenset(proxies)))
            return seen

        def writer():
            for i in range(2000):
                store.replace(large if i % 2 == 0 else small)
            stop.set()

        with ThreadPoolExecutor(max_workers=5) as pool:
            readers = [pool.submit(reader) for _ in range(4)]
            pool.submit(writer).result()
            for f in readers:
                observed.extend(f.result())

        for count, proxies in observed:
            assert (count, proxies) in {
                (3, frozenset({("A",)})),
                (7, frozenset({("B",)})),
            }

    def test_reload_during_reads(self, rule_file):
        path = rule_file("user.json", rules_json(4))
        store = RuleStore()
        store.reload([path])
        stop = threading.Event()
        sizes = set()

        def reader():
            while not stop.is_set():
                sizes.add(len(store.current()))

        t = threading.Thread(target=reader)
        t.start()
        try:
            for count in (6, 4, 6, 4):
                path.write_text(rules_json(count))
                store.reload([path])
        finally:
            stop.set()
            t.join()

        assert sizes <= {4, 6}


@settings(max_examples=25, deadline=None)
@given(counts=st.lists(st.integers(min_value=0, max_value=6), min_size=1, max_size=5),
       bad_after=st.booleans())
def test_last_successful_reload_wins(tmp_path_factory, counts, bad_after):
    """After any sequence of reloads the store holds the last good set."""
    path = tmp_path_factory.mktemp("rules") / "user.json"
    store = RuleStore()
    for count in counts:
        path.write_text(rules_json(count))
        assert store.reload([path])
    if bad_after:
        path.write_text('[{"Host": ["("]}]')
        assert not store.reload([path])
    assert len(store.current()) == counts[-1]
