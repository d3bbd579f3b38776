"""Upstream selection - decides which transports carry a request.

The decision combines, in a fixed order: private/loopback detection (with
self-request detection), the listener the connection arrived on, the rule
set, the host-availability fallback and the HTTPS-redirect attribute. The
resulting names are then resolved to live upstream handles.

decide() is pure and easy to test; select() adds the local side effects
(self-request and redirect handlers) and name resolution.
"""

import ipaddress
import logging
import socket
from typing import Callable, Protocol

from .rules.matcher import FilterRegistry, select_by_rule_set
from .rules.store import RuleStore
from .rules.types import (
    ATTR_CRLF,
    ATTR_REDIRECT_HTTPS,
    LISTENER_TARGETS,
    Connection,
    Decision,
    LocalAction,
    Request,
    Target,
)
from .upstream import ForwardHandle, UpstreamHandle, UpstreamRegistry, qualify

logger = logging.getLogger(__name__)

LOOPBACK_NAMES = ("127.0.0.1", "localhost", "::1")

# Fallback order when the configured default is Auto
AUTO_PREFERENCE = (Target.GAE, Target.C4, Target.SSH)

LocalHandler = Callable[[Request, Connection], None]


class HostAvailability(Protocol):
    """Answers whether a host is known to be reachable directly."""

    def lookup(self, request: Request, host_port: str) -> object | None:
        ...


def is_private_host(host: str) -> bool:
    """True for localhost and private, loopback or link-local IP literals."""
    if host.lower() == "localhost":
        return True
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


def local_addresses() -> frozenset[str]:
    """Addresses of this machine, computed once at startup."""
    addresses = set(LOOPBACK_NAMES)
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
        addresses.update(ips)
    except OSError as e:
        logger.warning(f"Failed to resolve local addresses: {e}")
    return frozenset(addresses)


def resolve_default(name: str, registry: UpstreamRegistry) -> str:
    """Substitute the symbolic default with a concrete target name.

    Empty means GAE. Auto (or Default) picks the first registered tunnel
    in GAE, C4, SSH order, else Direct.
    """
    if not name:
        return Target.GAE.value
    if Target.parse(name) in (Target.AUTO, Target.DEFAULT):
        for target in AUTO_PREFERENCE:
            if target.value in registry:
                return target.value
        return Target.DIRECT.value
    return name


class ProxySelector:
    """Chooses ordered upstream candidates for each request.

    Example:
        store = RuleStore()
        store.reload(["user_spac.json", "cloud_spac.json"])
        selector = ProxySelector(store, registry, proxy_port=48100)

        handles, attrs = selector.select(request, connection)
        if not handles:
            # Handled locally (self request or redirect)
            ...
    """

    def __init__(
        self,
        store: RuleStore,
        registry: UpstreamRegistry,
        filters: FilterRegistry | None = None,
        hosts: HostAvailability | None = None,
        proxy_port: int | str = 48100,
        self_addresses: frozenset[str] | None = None,
        google_enable: bool = False,
        on_self_request: LocalHandler | None = None,
        on_redirect_https: LocalHandler | None = None,
    ):
        """Initialize the selector.

        Args:
            store: Holder of the active rule set
            registry: Symbolic name -> upstream handle
            filters: Named filters referenced by rules
            hosts: Host-availability fallback (None disables it)
            proxy_port: Port this proxy listens on, for self-request detection
            self_addresses: Addresses of this machine (see local_addresses())
            google_enable: Whether the Google HTTP/HTTPS handles may be used
            on_self_request: Called for requests aimed at the proxy itself
            on_redirect_https: Called for plain-HTTP requests to redirect
        """
        self.store = store
        self.registry = registry
        self.filters = filters or FilterRegistry()
        self.hosts = hosts
        self.proxy_port = str(proxy_port)
        self.self_addresses = self_addresses if self_addresses is not None else frozenset(LOOPBACK_NAMES)
        self.google_enable = google_enable
        self.on_self_request = on_self_request
        self.on_redirect_https = on_redirect_https

    def default_name(self) -> str:
        return resolve_default(self.store.current().default, self.registry)

    def _is_self(self, host: str) -> bool:
        return host.lower() in LOOPBACK_NAMES or host in self.self_addresses

    def _select_by_request(
        self,
        request: Request,
        host: str,
        port: str,
        is_tunnel: bool,
        fallback: list[str],
    ) -> tuple[list[str], dict[str, str], int | None]:
        rule_set = self.store.current()
        names, attrs, index = select_by_rule_set(
            request, rule_set, is_tunnel, self.filters, fallback=None
        )
        if index is not None:
            return names, attrs, index

        if self.hosts is not None:
            if self.hosts.lookup(request, f"{host}:{port}") is not None:
                if not request.is_connect:
                    attrs[ATTR_CRLF] = ATTR_CRLF
                return [Target.DIRECT.value, self.default_name()], attrs, None
        return list(fallback), attrs, None

    def decide(self, request: Request, connection: Connection) -> Decision:
        """Compute candidate names and attributes without side effects."""
        host, port = request.split_host()
        names = [self.default_name()]
        need_select = True

        if is_private_host(host):
            need_select = False
            names = [Target.DIRECT.value]
            if self._is_self(host) and port == self.proxy_port:
                return Decision(names=[], local=LocalAction.SELF_REQUEST)

        # Listener identity overrides content-based rules
        forced = LISTENER_TARGETS.get(connection.listener)
        if forced is not None:
            need_select = False
            names = [forced.value]

        if not need_select:
            return Decision(names=names)

        names, attrs, index = self._select_by_request(
            request, host, port, connection.is_tunnel, names
        )
        # Only plain HTTP can be redirected; CONNECT is already https
        plain_http = not connection.is_tunnel and not request.is_connect
        if plain_http and ATTR_REDIRECT_HTTPS in attrs:
            return Decision(names=[], attrs=attrs, local=LocalAction.REDIRECT_HTTPS, matched_rule=index)
        return Decision(names=names, attrs=attrs, matched_rule=index)

    def resolve(
        self, names: list[str], request: Request, connection: Connection
    ) -> list[UpstreamHandle]:
        """Resolve candidate names to handles, dropping unusable ones."""
        handles: list[UpstreamHandle] = []
        for name in names:
            target = Target.parse(name)
            if target in (Target.DEFAULT, Target.AUTO):
                name = self.default_name()
                target = Target.parse(name)
            if target == Target.GOOGLE:
                target = Target.GOOGLE_HTTPS if connection.is_tunnel else Target.GOOGLE_HTTP

            if target in (Target.GAE, Target.C4, Target.SSH):
                handle = self.registry.lookup(target.value)
                if handle is None:
                    logger.warning(f"No proxy:{target.value} defined for {request.host}")
                    continue
                handles.append(handle)
            elif target in (Target.GOOGLE_HTTP, Target.GOOGLE_HTTPS):
                if not self.google_enable:
                    continue
                handle = self.registry.lookup(target.value)
                if handle is None:
                    logger.warning(f"No proxy:{target.value} defined for {request.host}")
                    continue
                handles.append(handle)
            elif target == Target.DIRECT:
                handles.append(ForwardHandle(target=qualify(request.host, "80")))
            else:
                address = name.strip()
                handles.append(ForwardHandle(target=qualify(address), over_proxy=True, name=address))
        return handles

    def select(
        self, request: Request, connection: Connection
    ) -> tuple[list[UpstreamHandle], dict[str, str]]:
        """Decide and resolve. An empty handle list means handled locally."""
        decision = self.decide(request, connection)

        if decision.local == LocalAction.SELF_REQUEST:
            if self.on_self_request is not None:
                self.on_self_request(request, connection)
            return [], {}
        if decision.local == LocalAction.REDIRECT_HTTPS:
            if self.on_redirect_https is not None:
                self.on_redirect_https(request, connection)
            return [], {}

        logger.debug(f"Found {decision.names} for host:{request.hostname}")
        return self.resolve(decision.names, request, connection), decision.attrs
