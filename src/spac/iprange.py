"""IP range table used by the ``InIPRange`` rule filter.

The table file lists one network per line in CIDR notation (a bare address
is a /32 or /128). Blank lines and ``#`` comments are ignored. Only requests
whose host is a literal IP address can match; hostnames are never resolved.
"""

import bisect
import ipaddress
import logging
from pathlib import Path

from .rules.types import Request

logger = logging.getLogger(__name__)


class IPRangeTable:
    """Sorted, non-overlapping IPv4/IPv6 ranges with binary-search lookup."""

    def __init__(self, networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] | None = None):
        self._ranges: dict[int, list[tuple[int, int]]] = {4: [], 6: []}
        for net in ipaddress.collapse_addresses(n for n in networks or [] if n.version == 4):
            self._ranges[4].append((int(net.network_address), int(net.broadcast_address)))
        for net in ipaddress.collapse_addresses(n for n in networks or [] if n.version == 6):
            self._ranges[6].append((int(net.network_address), int(net.broadcast_address)))
        self._starts = {v: [r[0] for r in ranges] for v, ranges in self._ranges.items()}

    @classmethod
    def parse(cls, text: str) -> "IPRangeTable":
        networks = []
        for line_num, line in enumerate(text.splitlines(), 1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            try:
                networks.append(ipaddress.ip_network(line, strict=False))
            except ValueError:
                logger.warning(f"Skipping invalid IP range on line {line_num}: {line}")
        return cls(networks)

    @classmethod
    def load(cls, path: str | Path) -> "IPRangeTable":
        return cls.parse(Path(path).read_text(encoding="utf-8"))

    def contains(self, ip: str) -> bool:
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        value = int(addr)
        idx = bisect.bisect_right(self._starts[addr.version], value) - 1
        if idx < 0:
            return False
        return value <= self._ranges[addr.version][idx][1]

    def __len__(self) -> int:
        return len(self._ranges[4]) + len(self._ranges[6])


class IPRangeFilter:
    """Named-filter adapter over a replaceable IPRangeTable."""

    def __init__(self, table: IPRangeTable | None = None):
        self.table = table or IPRangeTable()

    def update(self, table: IPRangeTable) -> None:
        self.table = table

    def __call__(self, request: Request) -> bool:
        return self.table.contains(request.hostname)
