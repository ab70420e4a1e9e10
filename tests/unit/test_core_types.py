"""
Unit tests for ntlmproxy.core.types module.

Tests configuration validation, header mapping and request records.
"""

import attrs
import pytest

from ntlmproxy.core.exceptions import ConfigValidationError
from ntlmproxy.core.types import (
    Headers,
    InboundRequest,
    ProxyConfig,
    RequestKind,
    Timeouts,
    UpstreamExchange,
    merge_headers,
)
from tests.conftest import challenge_header, make_config


class TestTimeouts:
    """Tests for Timeouts type."""

    def test_defaults(self):
        """Test default deadlines."""
        timeouts = Timeouts()
        assert timeouts.connect == 10.0
        assert timeouts.response == 30.0
        assert timeouts.idle == 300.0
        assert timeouts.shutdown_grace == 5.0

    def test_zero_disables_deadline(self):
        """Test a zero value maps to no asyncio timeout."""
        assert Timeouts.deadline(0) is None
        assert Timeouts.deadline(2.5) == 2.5

    def test_negative_rejected(self):
        """Test negative timeouts fail validation."""
        with pytest.raises(ConfigValidationError):
            Timeouts(connect=-1)

    def test_immutable(self):
        """Test timeouts cannot be modified."""
        timeouts = Timeouts()
        with pytest.raises(attrs.exceptions.FrozenInstanceError):
            timeouts.connect = 1.0


class TestProxyConfig:
    """Tests for ProxyConfig type."""

    def test_valid_config(self, config):
        """Test a complete config is accepted."""
        assert config.target == f"127.0.0.1:{config.upstream_port}"
        assert config.account == "CORP\\alice"

    def test_defaults(self):
        """Test optional fields default as documented."""
        config = ProxyConfig(
            upstream_host="proxy.example.com",
            upstream_port=3128,
            username="alice",
            password="pw",
        )
        assert config.listen_host == "localhost"
        assert config.listen_port == 8080
        assert config.domain == ""
        assert config.workstation == "localhost"
        assert config.tls_enabled is False
        assert config.max_buffered_body == 8 * 1024 * 1024

    def test_missing_target_host(self):
        """Test an empty upstream host is rejected."""
        with pytest.raises(ConfigValidationError, match="Target proxy"):
            make_config(upstream_host="")

    @pytest.mark.parametrize("field", ["username", "password"])
    def test_missing_credentials(self, field):
        """Test empty credentials are rejected."""
        with pytest.raises(ConfigValidationError, match="credentials"):
            make_config(**{field: ""})

    @pytest.mark.parametrize("port", [0, 65536, -1])
    def test_invalid_upstream_port(self, port):
        """Test upstream port must be 1-65535."""
        with pytest.raises(ConfigValidationError):
            make_config(upstream_port=port)

    def test_listen_port_zero_allowed(self):
        """Test port 0 lets the OS pick the listen port."""
        assert make_config(listen_port=0).listen_port == 0

    def test_tls_requires_cert_and_key(self):
        """Test TLS needs both certificate and key."""
        with pytest.raises(ConfigValidationError, match="TLS"):
            make_config(tls_enabled=True, tls_cert_path="cert.pem")
        with pytest.raises(ConfigValidationError, match="TLS"):
            make_config(tls_enabled=True, tls_key_path="key.pem")

    def test_password_hidden_from_repr(self, config):
        """Test the password never appears in repr."""
        assert config.password not in repr(config)

    def test_immutable(self, config):
        """Test config cannot be modified after construction."""
        with pytest.raises(attrs.exceptions.FrozenInstanceError):
            config.username = "mallory"


class TestHeaders:
    """Tests for Headers multi-map."""

    def test_case_insensitive_lookup(self):
        """Test lookups ignore name case."""
        headers = Headers([("Content-Type", "text/plain")])
        assert headers.get("content-type") == "text/plain"
        assert "CONTENT-TYPE" in headers
        assert "Accept" not in headers

    def test_duplicates_preserved_in_order(self):
        """Test repeated names keep every value in wire order."""
        headers = Headers([("Via", "a"), ("Host", "h"), ("via", "b")])
        assert headers.get_all("VIA") == ["a", "b"]
        assert headers.get("Via") == "a"
        assert len(headers) == 3

    def test_replace_collapses_duplicates(self):
        """Test replace leaves a single field."""
        headers = Headers([("Via", "a"), ("Via", "b")])
        headers.replace("via", "c")
        assert headers.items() == [("via", "c")]

    def test_remove(self):
        """Test remove drops every field with that name."""
        headers = Headers([("A", "1"), ("B", "2"), ("a", "3")])
        headers.remove("a")
        assert headers.items() == [("B", "2")]

    def test_has_token(self):
        """Test comma-separated token matching."""
        headers = Headers([("Connection", "Upgrade, Close")])
        assert headers.has_token("connection", "close")
        assert not headers.has_token("connection", "keep-alive")

    def test_copy_is_independent(self):
        """Test copies do not share storage."""
        headers = Headers([("A", "1")])
        copy = headers.copy()
        copy.add("B", "2")
        assert len(headers) == 1


class TestMergeHeaders:
    """Tests for merge_headers."""

    def test_override_wins(self):
        """Test the proxy authorization replaces a client value."""
        client = Headers([("Host", "example.com"), ("proxy-authorization", "Basic abc")])
        overrides = Headers([("Proxy-Authorization", "NTLM xyz")])

        merged = merge_headers(client, overrides)

        assert merged.get_all("Proxy-Authorization") == ["NTLM xyz"]
        assert merged.get("Host") == "example.com"

    def test_client_order_kept_overrides_last(self):
        """Test client fields stay in order and overrides are appended."""
        client = Headers([("B", "1"), ("A", "2")])
        merged = merge_headers(client, Headers([("C", "3")]))
        assert merged.items() == [("B", "1"), ("A", "2"), ("C", "3")]

    def test_inputs_untouched(self):
        """Test merge returns a new mapping."""
        client = Headers([("A", "1")])
        merge_headers(client, Headers([("A", "2")]))
        assert client.items() == [("A", "1")]


class TestInboundRequest:
    """Tests for InboundRequest."""

    def test_kind(self):
        """Test CONNECT routing."""
        assert InboundRequest("CONNECT", "example.com:443").kind is RequestKind.CONNECT
        assert InboundRequest("GET", "http://example.com/").kind is RequestKind.FORWARD

    def test_wants_close_http11(self):
        """Test HTTP/1.1 persists unless Connection: close."""
        assert not InboundRequest("GET", "/").wants_close
        closing = InboundRequest("GET", "/", headers=Headers([("Connection", "close")]))
        assert closing.wants_close

    def test_wants_close_http10(self):
        """Test HTTP/1.0 closes unless keep-alive was asked for."""
        assert InboundRequest("GET", "/", version="HTTP/1.0").wants_close
        keep = InboundRequest(
            "GET", "/", version="HTTP/1.0", headers=Headers([("Connection", "keep-alive")])
        )
        assert not keep.wants_close


class TestUpstreamExchange:
    """Tests for UpstreamExchange."""

    def test_ntlm_challenge_detected(self):
        """Test a 407 offering NTLM is recognised."""
        value = challenge_header()
        exchange = UpstreamExchange(
            status=407,
            reason="Proxy Authentication Required",
            headers=Headers(
                [("Proxy-Authenticate", "Basic realm=x"), ("Proxy-Authenticate", value)]
            ),
        )
        assert exchange.has_ntlm_challenge
        assert exchange.ntlm_challenge() == value

    def test_non_ntlm_407(self):
        """Test a 407 without NTLM is not a challenge."""
        exchange = UpstreamExchange(
            status=407,
            reason="Proxy Authentication Required",
            headers=Headers([("Proxy-Authenticate", "Basic realm=x")]),
        )
        assert not exchange.has_ntlm_challenge
        assert exchange.ntlm_challenge() is None

    def test_ntlm_header_on_other_status_ignored(self):
        """Test only 407 responses carry challenges."""
        exchange = UpstreamExchange(
            status=403, reason="Forbidden", headers=Headers([("Proxy-Authenticate", "NTLM abc")])
        )
        assert not exchange.has_ntlm_challenge

    @pytest.mark.asyncio
    async def test_close_without_connection(self):
        """Test closing a head-only exchange is a no-op."""
        exchange = UpstreamExchange(status=403, reason="Forbidden")
        await exchange.close()
        assert exchange.writer is None
