"""Routing rule types and data structures."""

import re
from dataclasses import dataclass, field, replace
from enum import Enum


class Target(Enum):
    """Built-in symbolic upstream targets.

    Any proxy name that does not parse to one of these is an explicit
    forward-proxy address (``host:port`` or ``scheme://host:port``).
    """

    DIRECT = "Direct"
    DEFAULT = "Default"
    AUTO = "Auto"
    GAE = "GAE"
    C4 = "C4"
    SSH = "SSH"
    GOOGLE = "Google"
    GOOGLE_HTTP = "GoogleHttp"
    GOOGLE_HTTPS = "GoogleHttps"

    @classmethod
    def parse(cls, name: str) -> "Target | None":
        """Case-insensitive lookup by name. None for explicit addresses."""
        key = name.strip().lower()
        for target in cls:
            if target.value.lower() == key:
                return target
        return None


class ListenerType(Enum):
    """Which listener accepted the inbound connection."""

    NONE = "none"
    GAE = "gae"
    C4 = "c4"
    SSH = "ssh"


# Listener identity forces the matching tunnel target
LISTENER_TARGETS = {
    ListenerType.GAE: Target.GAE,
    ListenerType.C4: Target.C4,
    ListenerType.SSH: Target.SSH,
}


class ConnectionType(Enum):
    """Plain HTTP proxying, or requests inside an established CONNECT tunnel."""

    HTTP = "http"
    HTTPS_TUNNEL = "https_tunnel"


class LocalAction(Enum):
    """Terminal outcomes that bypass upstream proxying."""

    SELF_REQUEST = "self_request"
    REDIRECT_HTTPS = "redirect_https"


# Attribute tags (presence carries meaning, the value mirrors the key)
ATTR_REDIRECT_HTTPS = "RedirectHttps"
ATTR_CRLF = "CRLF"


@dataclass
class Request:
    """The parts of an inbound HTTP request that routing looks at."""

    method: str
    host: str  # Host header, may include a port
    uri: str  # Full request URI (authority form for CONNECT)

    @property
    def is_connect(self) -> bool:
        return self.method.upper() == "CONNECT"

    def split_host(self) -> tuple[str, str]:
        """Split the Host header into (hostname, port), default port 80."""
        return split_host_port(self.host)

    @property
    def hostname(self) -> str:
        return self.split_host()[0]

    @property
    def url(self) -> str:
        """Absolute URL for list matching."""
        if self.is_connect:
            return f"https://{self.hostname}/"
        if "://" in self.uri:
            return self.uri
        return f"http://{self.host}{self.uri}"


@dataclass
class Connection:
    """The inbound client connection a request arrived on."""

    type: ConnectionType = ConnectionType.HTTP
    listener: ListenerType = ListenerType.NONE
    local: object = None  # Opaque client handle (a mitmproxy flow in production)

    @property
    def is_tunnel(self) -> bool:
        return self.type == ConnectionType.HTTPS_TUNNEL


def split_host_port(hostport: str) -> tuple[str, str]:
    """Split ``host[:port]`` (IPv6 in brackets) into host and port strings."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end != -1:
            host = hostport[1:end]
            rest = hostport[end + 1:]
            if rest.startswith(":") and rest[1:].isdigit():
                return host, rest[1:]
            return host, "80"
    if hostport.count(":") == 1:
        host, port = hostport.split(":")
        if port.isdigit():
            return host, port
    return hostport, "80"


@dataclass
class RuleDecl:
    """A rule as declared in a JSON rule file, before compilation."""

    method: list[str] = field(default_factory=list)
    host: list[str] = field(default_factory=list)
    url: list[str] = field(default_factory=list)
    proxy: list[str] = field(default_factory=list)
    filter: list[str] = field(default_factory=list)
    protocol: str = ""
    attr: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Rule:
    """A compiled routing rule. Empty pattern tuples match anything."""

    methods: tuple[re.Pattern, ...] = ()
    hosts: tuple[re.Pattern, ...] = ()
    urls: tuple[re.Pattern, ...] = ()
    filters: tuple[str, ...] = ()
    protocol: str = ""
    proxies: tuple[str, ...] = ()
    attrs: tuple[str, ...] = ()
    source: str = ""  # "<file>#<index>" for diagnostics


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of the active rules plus the default target name."""

    rules: tuple[Rule, ...] = ()
    default: str = Target.GAE.value

    def with_default(self, default: str) -> "RuleSet":
        return replace(self, default=default)

    def __len__(self) -> int:
        return len(self.rules)


@dataclass
class Decision:
    """Result of upstream selection, before names are resolved to handles.

    Attributes:
        names: Ordered candidate target names
        attrs: Attribute tags (tag -> tag)
        local: Set when the request is handled locally (no upstream)
        matched_rule: Index of the rule that matched, if any
    """

    names: list[str]
    attrs: dict[str, str] = field(default_factory=dict)
    local: LocalAction | None = None
    matched_rule: int | None = None

    @property
    def handled_locally(self) -> bool:
        return self.local is not None
