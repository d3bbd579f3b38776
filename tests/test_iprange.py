"""Tests for the IP range table (spac.iprange)."""

import ipaddress
import sys
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from spac.iprange import IPRangeFilter, IPRangeTable
from spac.rules.types import Request

SAMPLE = """\
# China ranges (sample)
1.0.1.0/24
1.0.2.0/23   # trailing comment
223.255.252.0/23
8.8.8.8
2001:250::/35

not-a-network
"""


class TestIPRangeTable:

    def test_parse_counts_valid_lines(self):
        table = IPRangeTable.parse(SAMPLE)
        assert len(table) == 5

    @pytest.mark.parametrize("ip,expected", [
        ("1.0.1.0", True),
        ("1.0.1.255", True),
        ("1.0.3.255", True),
        ("1.0.4.0", False),
        ("223.255.253.1", True),
        ("8.8.8.8", True),
        ("8.8.8.9", False),
        ("0.0.0.0", False),
        ("2001:250::1", True),
        ("2001:251::1", False),
        ("example.com", False),
        ("", False),
    ])
    def test_contains(self, ip, expected):
        table = IPRangeTable.parse(SAMPLE)
        assert table.contains(ip) == expected

    def test_adjacent_ranges_collapse(self):
        table = IPRangeTable.parse("10.0.0.0/25\n10.0.0.128/25\n")
        assert len(table) == 1
        assert table.contains("10.0.0.200")

    def test_host_bits_tolerated(self):
        table = IPRangeTable.parse("192.168.1.77/24")
        assert table.contains("192.168.1.1")

    def test_empty_table(self):
        table = IPRangeTable()
        assert len(table) == 0
        assert not table.contains("1.2.3.4")

    def test_load(self, tmp_path):
        path = tmp_path / "iprange.txt"
        path.write_text(SAMPLE)
        assert len(IPRangeTable.load(path)) == 5


@given(
    net=st.tuples(st.integers(0, 2**32 - 1), st.integers(8, 32)),
    probe=st.integers(0, 2**32 - 1),
)
def test_contains_agrees_with_ipaddress(net, probe):
    value, prefix = net
    network = ipaddress.ip_network((value, prefix), strict=False)
    table = IPRangeTable([network])
    addr = ipaddress.ip_address(probe)
    assert table.contains(str(addr)) == (addr in network)


class TestIPRangeFilter:

    def test_matches_literal_ip_host(self):
        f = IPRangeFilter(IPRangeTable.parse("1.0.1.0/24"))
        assert f(Request(method="GET", host="1.0.1.5:8080", uri="http://1.0.1.5:8080/"))
        assert not f(Request(method="GET", host="1.0.9.5", uri="http://1.0.9.5/"))

    def test_hostnames_never_resolved(self):
        f = IPRangeFilter(IPRangeTable.parse("0.0.0.0/0"))
        assert not f(Request(method="GET", host="example.com", uri="http://example.com/"))

    def test_update(self):
        f = IPRangeFilter()
        request = Request(method="CONNECT", host="1.0.1.5:443", uri="1.0.1.5:443")
        assert not f(request)
        f.update(IPRangeTable.parse("1.0.1.0/24"))
        assert f(request)
