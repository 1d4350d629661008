"""
Tests for the Traffic Relay adapter and its size accounting
"""

import asyncio

import httpx
import pytest

from bandwidth_rail.errors import ExternalServiceError, ValidationError
from bandwidth_rail.relay.traffic import HttpxTrafficRelay, RelayRequest, header_block_size


class TestRelayRequest:
    """Test request normalization."""

    def test_defaults(self):
        request = RelayRequest.build("https://example.com")

        assert request.method == "GET"
        assert request.headers == {}
        assert request.body is None

    @pytest.mark.parametrize("url", [None, "", "   ", "ftp://example.com", "example.com"])
    def test_bad_target(self, url):
        with pytest.raises(ValidationError):
            RelayRequest.build(url)

    def test_unsupported_method(self):
        with pytest.raises(ValidationError):
            RelayRequest.build("https://example.com", "PATCH")

    def test_method_upper_cased(self):
        assert RelayRequest.build("https://example.com", "post").method == "POST"

    def test_dict_body_serialized(self):
        request = RelayRequest.build("https://example.com", "POST", body={"a": 1})

        assert request.body == '{"a":1}'

    def test_wire_size(self):
        """method + url + (name + value + 4) per header + body."""
        request = RelayRequest.build(
            "https://example.com/x",
            "POST",
            headers={"Accept": "json"},
            body="héllo",
        )

        expected = 4 + 21 + (6 + 4 + 4) + 6
        assert request.wire_size() == expected

    def test_header_block_size(self):
        assert header_block_size({"A": "bc", "De": "f"}) == (1 + 2 + 4) + (2 + 1 + 4)


class TestHttpxTrafficRelay:
    """Test the httpx-backed relay with a mock transport."""

    def _relay(self, handler, resolver=None):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpxTrafficRelay(timeout_seconds=1.0, address_resolver=resolver, client=client)

    def test_counts_bytes_and_parses_json(self):
        def handler(request):
            return httpx.Response(200, content=b'{"ok":true}', headers={"Content-Type": "application/json"})

        relay = self._relay(handler)
        request = RelayRequest.build("https://example.com/api")

        response = asyncio.run(relay.relay("contrib-1", request))

        assert response.status == 200
        assert response.data == {"ok": True}
        assert response.request_bytes == request.wire_size()
        assert response.response_size == 11
        assert response.response_bytes > response.response_size

    def test_non_json_body_is_text(self):
        relay = self._relay(lambda request: httpx.Response(404, text="not found"))

        response = asyncio.run(relay.relay("contrib-1", RelayRequest.build("https://example.com")))

        assert response.status == 404
        assert response.data == "not found"

    def test_forwarded_headers(self):
        seen = {}

        def handler(request):
            seen.update(request.headers)
            return httpx.Response(200, text="")

        relay = self._relay(handler, resolver=lambda contributor_id: "203.0.113.7")
        asyncio.run(relay.relay("contrib-1", RelayRequest.build("https://example.com")))

        assert seen["x-forwarded-for"] == "203.0.113.7"
        assert seen["x-real-ip"] == "203.0.113.7"

    def test_timeout_is_external_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        relay = self._relay(handler)

        with pytest.raises(ExternalServiceError):
            asyncio.run(relay.relay("contrib-1", RelayRequest.build("https://example.com")))

    def test_transport_error_is_external_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        relay = self._relay(handler)

        with pytest.raises(ExternalServiceError):
            asyncio.run(relay.relay("contrib-1", RelayRequest.build("https://example.com")))
