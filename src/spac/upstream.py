"""Upstream handles and the name -> handle registry.

A handle takes over a request once routing has decided on it. The concrete
tunnel transports live outside this package; they register a handle under
their symbolic name at startup. Forward handles (direct connections and
explicit HTTP forward proxies) are built per request by the selector.
"""

import threading
from dataclasses import dataclass
from typing import Protocol

from mitmproxy.connection import Server
from mitmproxy.net import server_spec


class UpstreamHandle(Protocol):
    """Capability: take over this request and proxy it."""

    name: str

    def proxy(self, flow) -> None:
        """Point the flow at this upstream."""
        ...


@dataclass
class ForwardHandle:
    """Direct connection to the origin, or via an HTTP forward proxy.

    Attributes:
        target: ``scheme://host:port`` of the origin (direct) or the proxy
        over_proxy: True when target is a forward proxy to send through
        name: Name used in logs and decision events
    """

    target: str
    over_proxy: bool = False
    name: str = "Direct"

    def proxy(self, flow) -> None:
        if flow.server_conn.timestamp_start is not None:
            # An open server connection cannot be re-pointed
            flow.server_conn = Server(address=flow.server_conn.address)
        if self.over_proxy:
            flow.server_conn.via = server_spec.parse(self.target, "http")
        else:
            flow.server_conn.via = None


def qualify(target: str, default_port: str | None = None) -> str:
    """Add ``http://`` (and optionally a default port) if missing."""
    target = target.strip()
    if default_port is not None:
        authority = target.split("://", 1)[-1]
        if ":" not in authority.rsplit("]", 1)[-1]:
            target = f"{target}:{default_port}"
    if "://" not in target:
        target = "http://" + target
    return target


class UpstreamRegistry:
    """Process-wide mapping of symbolic names to live handles.

    Names are case-insensitive. Registration happens at startup; lookups on
    the request path never mutate the mapping.
    """

    def __init__(self):
        self._handles: dict[str, UpstreamHandle] = {}
        self._lock = threading.Lock()

    def register(self, name: str, handle: UpstreamHandle) -> None:
        with self._lock:
            handles = dict(self._handles)
            handles[name.lower()] = handle
            self._handles = handles

    def lookup(self, name: str) -> UpstreamHandle | None:
        return self._handles.get(name.lower())

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._handles

    def names(self) -> list[str]:
        return sorted(self._handles)
