"""
Tests for tiller.execution.egress.

Covers:
- Allowlist pattern rules (exact, wildcard, port-qualified, '*')
- EgressGate denial before any connection
- EgressClient forwarding allowed requests
"""

import httpx
import pytest

from tiller.core.errors import OutboundHostNotAllowedError
from tiller.execution.egress import EgressClient, EgressGate, extract_host, host_allowed


class TestHostAllowed:
    @pytest.mark.parametrize(
        "host,patterns,expected",
        [
            ("api.github.com", ["api.github.com"], True),
            ("API.GitHub.com", ["api.github.com"], True),
            ("api.example.com", ["*.example.com"], True),
            ("a.b.example.com", ["*.example.com"], True),
            ("example.com", ["*.example.com"], False),
            ("evilexample.com", ["*.example.com"], False),
            ("anything.net", ["*"], True),
            ("anything.net", [], False),
            ("", ["*.example.com"], False),
        ],
    )
    def test_patterns(self, host, patterns, expected):
        assert host_allowed(host, patterns) is expected

    def test_extract_host(self):
        assert extract_host("http://Prometheus:9090/api") == ("prometheus", 9090)
        assert extract_host("https://x.prometheus.io/q") == ("x.prometheus.io", None)


class TestEgressGate:
    def test_port_qualified_pattern(self):
        gate = EgressGate(["prometheus:9090"])
        assert gate.check("http://prometheus:9090/api/v1/query") == "prometheus:9090"
        with pytest.raises(OutboundHostNotAllowedError):
            gate.check("http://prometheus:9091/api/v1/query")

    def test_wildcard_with_explicit_port_matches_hostname(self):
        gate = EgressGate(["*.prometheus.io"])
        assert gate.check("https://eu.prometheus.io:443/q") == "eu.prometheus.io:443"

    def test_accepts_httpx_url(self):
        gate = EgressGate(["prometheus:9090"])
        assert gate.check(httpx.URL("http://prometheus:9090/api")) == "prometheus:9090"
        with pytest.raises(OutboundHostNotAllowedError):
            gate.check(httpx.URL("http://elsewhere:9090/api"))

    def test_denial_records_host(self):
        gate = EgressGate(["api.example.com"], capability_id="test.echo")
        with pytest.raises(OutboundHostNotAllowedError) as exc_info:
            gate.check("https://attacker.example.net/x")
        assert exc_info.value.host == "attacker.example.net"
        assert exc_info.value.context.capability_id == "test.echo"
        assert gate.denied == ["attacker.example.net"]


class TestEgressClient:
    def test_denied_request_never_reaches_transport(self):
        seen = []
        transport = httpx.MockTransport(lambda request: seen.append(request) or httpx.Response(200))
        with EgressClient(EgressGate(["api.example.com"]), transport=transport) as client:
            with pytest.raises(OutboundHostNotAllowedError):
                client.get("https://other.example.com/")
        assert seen == []

    def test_denies_httpx_url_before_sending(self):
        seen = []
        transport = httpx.MockTransport(lambda request: seen.append(request) or httpx.Response(200))
        with EgressClient(EgressGate(["api.example.com"]), transport=transport) as client:
            with pytest.raises(OutboundHostNotAllowedError):
                client.get(httpx.URL("https://other.example.com/"))
        assert seen == []

    def test_allowed_request_is_sent(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
        with EgressClient(EgressGate(["api.example.com"]), transport=transport) as client:
            response = client.post("https://api.example.com/v1", json={"a": 1})
        assert response.json() == {"ok": True}
