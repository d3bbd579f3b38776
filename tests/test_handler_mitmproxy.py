"""Tests for SpacAddon (spac.handlers.mitmproxy)."""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import RecordingHandle
from spac.config import SpacConfig
from spac.rules.types import ListenerType, RuleSet
from spac.service import SpacService
from spac.upstream import UpstreamRegistry

PROXY_PORT = 48100
SELF = frozenset({"127.0.0.1", "localhost", "::1"})


# -- Flow factories (SimpleNamespace-based, matching dump tool output) --

def make_http_flow(url="http://example.com/path", method="GET", host="example.com",
                   port=80, host_header=None, local_port=PROXY_PORT):
    """Create an http.HTTPFlow-like object for the request hook."""
    scheme = url.split("://", 1)[0]
    path = "/" + url.split("://", 1)[1].split("/", 1)[1] if url.count("/") > 2 else "/"
    return SimpleNamespace(
        client_conn=SimpleNamespace(
            peername=("127.0.0.1", 54321),
            sockname=("127.0.0.1", local_port),
        ),
        server_conn=SimpleNamespace(address=(host, port), via=None, timestamp_start=None),
        request=SimpleNamespace(
            method=method,
            scheme=scheme,
            host=host,
            port=port,
            pretty_host=host,
            host_header=host_header if host_header is not None else (
                host if port in (80, 443) else f"{host}:{port}"
            ),
            pretty_url=url,
            path=path,
        ),
        response=None,
        metadata={},
    )


def make_connect_flow(host="example.com", port=443, local_port=PROXY_PORT):
    """Create an http.HTTPFlow-like object for the http_connect hook."""
    return SimpleNamespace(
        client_conn=SimpleNamespace(
            peername=("127.0.0.1", 54321),
            sockname=("127.0.0.1", local_port),
        ),
        server_conn=SimpleNamespace(address=(host, port), via=None, timestamp_start=None),
        request=SimpleNamespace(method="CONNECT", host=host, port=port),
        response=None,
        metadata={},
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry():
    registry = UpstreamRegistry()
    for name in ("GAE", "C4", "SSH"):
        registry.register(name, RecordingHandle(name))
    return registry


@pytest.fixture
def config(tmp_path):
    return SpacConfig(home=tmp_path, listeners={48101: ListenerType.C4})


def _make_addon(config, registry, rules_json=None):
    """Helper: create addon with decision logging mocked.

    Returns (addon, log_decision_mock, logger_mock).
    """
    service = SpacService(config, registry=registry, self_addresses=SELF)
    if rules_json is not None:
        config.spac_dir.mkdir(parents=True, exist_ok=True)
        config.user_rules_path.write_text(rules_json)
        service.store.reload(config.rule_paths)

    with patch("spac.handlers.mitmproxy.spac_logging") as mock_logging:
        mock_logging.log_decision = MagicMock()
        mock_logging.logger = MagicMock()

        from spac.handlers.mitmproxy import SpacAddon
        a = SpacAddon(service)
        yield a, mock_logging.log_decision, mock_logging.logger


@pytest.fixture
def addon(config, registry):
    yield from _make_addon(config, registry)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


class TestRequest:

    def test_default_route(self, addon, registry):
        a, log_decision, _ = addon
        flow = make_http_flow()
        a.request(flow)
        assert registry.lookup("GAE").calls == [flow]
        assert flow.metadata["spac.upstreams"] == ["GAE"]
        assert flow.response is None
        log_decision.assert_called_once()
        kwargs = log_decision.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["host"] == "example.com"
        assert kwargs["url"] == "http://example.com/path"
        assert kwargs["upstreams"] == ["GAE"]
        assert kwargs["tunnel"] is False

    def test_rule_with_forward_proxy(self, config, registry):
        for a, log_decision, _ in _make_addon(
            config, registry, '[{"Host": ["example.com"], "Proxy": ["10.0.0.1:3128"]}]'
        ):
            flow = make_http_flow()
            a.request(flow)
            assert flow.server_conn.via == ("http", ("10.0.0.1", 3128))
            assert flow.metadata["spac.upstreams"] == ["10.0.0.1:3128"]

    def test_rule_direct(self, config, registry):
        for a, _, _ in _make_addon(config, registry, '[{"Proxy": ["Direct", "GAE"]}]'):
            flow = make_http_flow()
            flow.server_conn.via = ("http", ("10.0.0.1", 3128))
            a.request(flow)
            assert flow.server_conn.via is None
            assert flow.metadata["spac.upstreams"] == ["Direct", "GAE"]
            assert registry.lookup("GAE").calls == []

    def test_url_rule_sees_full_url(self, config, registry):
        for a, _, _ in _make_addon(
            config, registry, '[{"URL": ["http://example.com/path"], "Proxy": ["C4"]}]'
        ):
            flow = make_http_flow()
            a.request(flow)
            assert registry.lookup("C4").calls == [flow]

    def test_tunneled_request(self, config, registry):
        for a, log_decision, _ in _make_addon(
            config, registry, '[{"Protocol": "https", "Proxy": ["SSH"]}, {"Proxy": ["C4"]}]'
        ):
            flow = make_http_flow(url="https://example.com/secure", port=443)
            a.request(flow)
            assert registry.lookup("SSH").calls == [flow]
            assert log_decision.call_args.kwargs["tunnel"] is True

    def test_listener_port_forces_target(self, config, registry):
        for a, _, _ in _make_addon(config, registry, '[{"Proxy": ["SSH"]}]'):
            flow = make_http_flow(local_port=48101)
            a.request(flow)
            assert registry.lookup("C4").calls == [flow]
            assert registry.lookup("SSH").calls == []

    def test_private_host_goes_direct(self, addon, registry):
        a, _, _ = addon
        flow = make_http_flow(url="http://192.168.1.5/", host="192.168.1.5")
        a.request(flow)
        assert flow.metadata["spac.upstreams"] == ["Direct"]
        assert registry.lookup("GAE").calls == []

    def test_attrs_recorded(self, config, registry):
        for a, log_decision, _ in _make_addon(
            config, registry, '[{"Proxy": ["GAE"], "Attr": ["CRLF"]}]'
        ):
            flow = make_http_flow()
            a.request(flow)
            assert flow.metadata["spac.attrs"] == {"CRLF": "CRLF"}
            assert log_decision.call_args.kwargs["attrs"] == {"CRLF": "CRLF"}

    def test_no_usable_upstream(self, config):
        for a, log_decision, logger in _make_addon(config, UpstreamRegistry()):
            flow = make_http_flow()
            a.request(flow)
            assert flow.response.status_code == 502
            assert log_decision.call_args.kwargs["local"] == "unrouted"
            logger.warning.assert_called_once()

    def test_existing_response_untouched(self, addon, registry):
        a, log_decision, _ = addon
        flow = make_http_flow()
        flow.response = object()
        a.request(flow)
        assert registry.lookup("GAE").calls == []
        log_decision.assert_not_called()


class TestHttpConnect:

    def test_connect_routed(self, addon, registry):
        a, log_decision, _ = addon
        flow = make_connect_flow()
        a.http_connect(flow)
        assert registry.lookup("GAE").calls == [flow]
        kwargs = log_decision.call_args.kwargs
        assert kwargs["method"] == "CONNECT"
        assert kwargs["host"] == "example.com:443"
        assert kwargs["url"] == "https://example.com/"

    def test_connect_protocol_rule(self, config, registry):
        for a, _, _ in _make_addon(config, registry, '[{"Protocol": "https", "Proxy": ["C4"]}]'):
            flow = make_connect_flow()
            a.http_connect(flow)
            assert registry.lookup("C4").calls == [flow]

    def test_connect_ipv6_authority(self, addon):
        a, log_decision, _ = addon
        flow = make_connect_flow(host="2001:db8::1", port=443)
        a.http_connect(flow)
        assert log_decision.call_args.kwargs["host"] == "[2001:db8::1]:443"


# ---------------------------------------------------------------------------
# Local handlers
# ---------------------------------------------------------------------------


class TestSelfRequest:

    @pytest.mark.parametrize("path", ["/proxy.pac", "/wpad.dat", "/pac"])
    def test_serves_pac_file(self, addon, config, path):
        a, log_decision, _ = addon
        config.spac_dir.mkdir(parents=True, exist_ok=True)
        config.pac_path.write_text("function FindProxyForURL(url, host) { return \"DIRECT\"; }")
        flow = make_http_flow(url=f"http://127.0.0.1:{PROXY_PORT}{path}", host="127.0.0.1", port=PROXY_PORT)
        a.request(flow)
        assert flow.response.status_code == 200
        assert flow.response.headers["Content-Type"] == "application/x-ns-proxy-autoconfig"
        assert b"FindProxyForURL" in flow.response.content
        assert flow.metadata["spac.local"] == "self"
        assert log_decision.call_args.kwargs["local"] == "self"

    def test_generates_pac_when_file_missing(self, addon):
        a, _, _ = addon
        flow = make_http_flow(url=f"http://localhost:{PROXY_PORT}/proxy.pac", host="localhost", port=PROXY_PORT)
        a.request(flow)
        assert flow.response.status_code == 200
        assert b"FindProxyForURL" in flow.response.content

    def test_unknown_path_404(self, addon):
        a, _, _ = addon
        flow = make_http_flow(url=f"http://127.0.0.1:{PROXY_PORT}/favicon.ico", host="127.0.0.1", port=PROXY_PORT)
        a.request(flow)
        assert flow.response.status_code == 404


class TestRedirect:

    def test_redirects_plain_http(self, config, registry):
        for a, log_decision, _ in _make_addon(
            config, registry, '[{"Host": ["example.com"], "Proxy": ["GAE"], "Attr": ["RedirectHttps"]}]'
        ):
            flow = make_http_flow(url="http://example.com/login?next=%2F")
            a.request(flow)
            assert flow.response.status_code == 302
            assert flow.response.headers["Location"] == "https://example.com/login?next=%2F"
            assert registry.lookup("GAE").calls == []
            assert log_decision.call_args.kwargs["local"] == "redirect"

    def test_redirect_drops_port(self, config, registry):
        for a, _, _ in _make_addon(config, registry, '[{"Proxy": ["GAE"], "Attr": ["RedirectHttps"]}]'):
            flow = make_http_flow(url="http://example.com:8080/", port=8080)
            a.request(flow)
            assert flow.response.headers["Location"] == "https://example.com/"

    def test_tunnel_not_redirected(self, config, registry):
        for a, _, _ in _make_addon(config, registry, '[{"Proxy": ["GAE"], "Attr": ["RedirectHttps"]}]'):
            flow = make_http_flow(url="https://example.com/", port=443)
            a.request(flow)
            assert flow.response is None
            assert registry.lookup("GAE").calls == [flow]

    def test_connect_not_redirected(self, config, registry):
        for a, _, _ in _make_addon(config, registry, '[{"Proxy": ["GAE"], "Attr": ["RedirectHttps"]}]'):
            flow = make_connect_flow()
            a.http_connect(flow)
            assert flow.response is None
            assert registry.lookup("GAE").calls == [flow]


class TestErrors:

    def test_hook_errors_logged_and_reraised(self, addon):
        a, _, _ = addon
        a.selector.select = MagicMock(side_effect=RuntimeError("kaboom"))
        with patch("spac.handlers.spac_logging") as mock_logging:
            with pytest.raises(RuntimeError, match="kaboom"):
                a.request(make_http_flow())
            assert mock_logging.logger.error.call_count == 2


class TestService:

    def test_reload_reaches_addon(self, config, registry):
        for a, _, _ in _make_addon(config, registry):
            a.service.store.replace(RuleSet(rules=(), default="SSH"))
            flow = make_http_flow()
            a.request(flow)
            assert registry.lookup("SSH").calls == [flow]

    def test_configured_upstreams_registered(self, tmp_path):
        config = SpacConfig(home=tmp_path, upstreams={"GAE": "127.0.0.1:8001"})
        service = SpacService(config, self_addresses=SELF)
        handle = service.registry.lookup("GAE")
        assert handle.target == "http://127.0.0.1:8001"
        assert handle.over_proxy is True
        assert service.filters.names() == ["ingfwlist", "iniprange"]

    def test_load_local_reads_rules_when_enabled(self, tmp_path):
        config = SpacConfig(home=tmp_path, enable=True)
        config.spac_dir.mkdir(parents=True)
        config.user_rules_path.write_text('[{"Proxy": ["C4"]}]')
        config.iprange_path.write_text("1.0.1.0/24\n")
        service = SpacService(config, self_addresses=SELF)
        service.load_local()
        assert len(service.store.current()) == 1
        assert len(service.iprange_filter.table) == 1

    def test_load_local_skips_rules_when_disabled(self, tmp_path):
        config = SpacConfig(home=tmp_path, enable=False)
        config.spac_dir.mkdir(parents=True)
        config.user_rules_path.write_text('[{"Proxy": ["C4"]}]')
        service = SpacService(config, self_addresses=SELF)
        service.load_local()
        assert len(service.store.current()) == 0
