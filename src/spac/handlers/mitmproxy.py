"""Mitmproxy addon that routes each request through the proxy selector."""

from __future__ import annotations

from urllib.parse import urlsplit

from mitmproxy import http

from .. import logging as spac_logging
from ..gfwlist import generate_pac
from ..rules.types import Connection, ConnectionType, ListenerType, Request
from ..service import SpacService
from . import log_errors

# Paths under which the proxy serves its own PAC script
PAC_PATHS = ("/", "/pac", "/proxy.pac", "/wpad.dat")
PAC_CONTENT_TYPE = "application/x-ns-proxy-autoconfig"


def _authority(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"{host}:{port}"


class SpacAddon:
    """Mitmproxy addon for rule-based upstream selection."""

    def __init__(self, service: SpacService):
        """Initialize the addon.

        Args:
            service: Routing state (selector, filters, config) to use
        """
        self.service = service
        self.selector = service.selector
        self.selector.on_self_request = self.serve_self_request
        self.selector.on_redirect_https = self.redirect_https

    def _connection(self, flow: http.HTTPFlow, conn_type: ConnectionType) -> Connection:
        """Describe the client connection, including the listener it arrived on."""
        port = flow.client_conn.sockname[1] if flow.client_conn.sockname else 0
        listener = self.service.config.listeners.get(port, ListenerType.NONE)
        return Connection(type=conn_type, listener=listener, local=flow)

    def _route(self, flow: http.HTTPFlow, request: Request, connection: Connection) -> None:
        handles, attrs = self.selector.select(request, connection)
        flow.metadata["spac.attrs"] = dict(attrs)

        if not handles:
            if flow.response is None:
                # Every candidate was unusable
                spac_logging.logger.warning(f"No usable upstream for {request.url}")
                flow.response = http.Response.make(
                    502,
                    f"No upstream available for {request.hostname}",
                    {"Content-Type": "text/plain"},
                )
            spac_logging.log_decision(
                method=request.method,
                host=request.host,
                url=request.url,
                local=flow.metadata.get("spac.local", "unrouted"),
                attrs=attrs,
            )
            return

        handles[0].proxy(flow)
        names = [handle.name for handle in handles]
        flow.metadata["spac.upstreams"] = names
        spac_logging.log_decision(
            method=request.method,
            host=request.host,
            url=request.url,
            upstreams=names,
            tunnel=connection.is_tunnel,
            attrs=attrs,
        )

    @log_errors
    def http_connect(self, flow: http.HTTPFlow) -> None:
        """Handle a CONNECT request from a client.

        Local outcomes and unroutable hosts answer the CONNECT here. Requests
        decrypted inside the tunnel are routed again by request().
        """
        authority = _authority(flow.request.host, flow.request.port)
        request = Request(method="CONNECT", host=authority, uri=authority)
        self._route(flow, request, self._connection(flow, ConnectionType.HTTP))

    @log_errors
    def request(self, flow: http.HTTPFlow) -> None:
        """Handle an HTTP request, plain or decrypted from a tunnel."""
        if flow.response is not None:
            return
        tunneled = flow.request.scheme == "https"
        host = flow.request.host_header or _authority(flow.request.pretty_host, flow.request.port)
        request = Request(method=flow.request.method, host=host, uri=flow.request.pretty_url)
        conn_type = ConnectionType.HTTPS_TUNNEL if tunneled else ConnectionType.HTTP
        self._route(flow, request, self._connection(flow, conn_type))

    # -- Local handlers --

    def pac_script(self) -> str:
        """The PAC script on disk, or one generated from the loaded list."""
        path = self.service.config.pac_path
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return generate_pac(self.service.list_filter.rule_list, self.service.config.pac_proxy)

    def serve_self_request(self, request: Request, connection: Connection) -> None:
        """Answer a request aimed at the proxy itself."""
        flow = connection.local
        flow.metadata["spac.local"] = "self"
        path = urlsplit(request.uri).path or "/"
        if path in PAC_PATHS and not request.is_connect:
            flow.response = http.Response.make(
                200, self.pac_script(), {"Content-Type": PAC_CONTENT_TYPE}
            )
        else:
            flow.response = http.Response.make(
                404, f"Not found: {path}", {"Content-Type": "text/plain"}
            )

    def redirect_https(self, request: Request, connection: Connection) -> None:
        """Send the client to the https:// form of its URL."""
        flow = connection.local
        flow.metadata["spac.local"] = "redirect"
        parts = urlsplit(request.url)
        location = f"https://{request.hostname}{parts.path or '/'}"
        if parts.query:
            location += f"?{parts.query}"
        flow.response = http.Response.make(302, "", {"Location": location})
