"""
Traffic Relay

Carries a partner's HTTP exchange through a contributor's connection and
reports how many bytes moved in each direction. Those byte counts are what
gets billed, so the size accounting here is explicit:

    request_bytes  = len(method) + len(url)
                     + sum(len(name) + len(value) + 4 for each header)
                     + len(body)
    response_bytes = sum(len(name) + len(value) + 4 for each response header)
                     + len(response body)

All lengths are taken on UTF-8 encoded bytes. The constant 4 is the
": " separator plus CRLF of an HTTP/1.1 header line.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union
import structlog

import httpx

from ..errors import ExternalServiceError, ValidationError

logger = structlog.get_logger()

HEADER_LINE_OVERHEAD = 4
ALLOWED_METHODS = ("GET", "POST", "PUT", "DELETE")

BodyType = Union[str, Dict[str, Any], list, None]


def _utf8_len(value: str) -> int:
    return len(value.encode("utf-8"))


def header_block_size(headers: Dict[str, str]) -> int:
    return sum(_utf8_len(k) + _utf8_len(v) + HEADER_LINE_OVERHEAD for k, v in headers.items())


@dataclass(frozen=True)
class RelayRequest:
    """A partner's request, normalized for relaying and size accounting."""
    target_url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None

    @classmethod
    def build(
        cls,
        target_url: Optional[str],
        method: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        body: BodyType = None,
    ) -> "RelayRequest":
        if not target_url or not str(target_url).strip():
            raise ValidationError("targetUrl is required")

        target_url = str(target_url).strip()
        if not target_url.startswith(("http://", "https://")):
            raise ValidationError("targetUrl must be an http(s) URL")

        method = (method or "GET").upper()
        if method not in ALLOWED_METHODS:
            raise ValidationError(f"Unsupported method: {method}")

        normalized_headers = {str(k): str(v) for k, v in (headers or {}).items()}

        if body is not None and not isinstance(body, str):
            body = json.dumps(body, separators=(",", ":"))

        return cls(target_url=target_url, method=method, headers=normalized_headers, body=body)

    @property
    def body_bytes(self) -> bytes:
        return self.body.encode("utf-8") if self.body is not None else b""

    def wire_size(self) -> int:
        return (
            _utf8_len(self.method)
            + _utf8_len(self.target_url)
            + header_block_size(self.headers)
            + len(self.body_bytes)
        )


@dataclass
class RelayResponse:
    """What came back through the contributor's connection."""
    status: int
    data: Any
    request_bytes: int
    response_bytes: int
    response_size: int = 0  # body only

    @property
    def total_bytes(self) -> int:
        return self.request_bytes + self.response_bytes


class TrafficRelay(ABC):
    """Executes an exchange "as" a contributor."""

    @abstractmethod
    async def relay(self, contributor_id: str, request: RelayRequest) -> RelayResponse:
        """
        Perform the exchange.

        Raises ExternalServiceError on timeout or transport failure; no
        bytes are billed in that case.
        """

    async def aclose(self) -> None:
        return None


AddressResolver = Callable[[str], Optional[str]]


class HttpxTrafficRelay(TrafficRelay):
    """
    Relay backed by an httpx client.

    Until contributor tunnels exist the request is made directly, tagged
    with the contributor's address (when a resolver knows it) in
    X-Forwarded-For / X-Real-IP.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        address_resolver: Optional[AddressResolver] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.address_resolver = address_resolver
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=False)

    def _outbound_headers(self, contributor_id: str, request: RelayRequest) -> Dict[str, str]:
        headers = dict(request.headers)
        address = self.address_resolver(contributor_id) if self.address_resolver else None
        if address:
            headers["X-Forwarded-For"] = address
            headers["X-Real-IP"] = address
        return headers

    async def relay(self, contributor_id: str, request: RelayRequest) -> RelayResponse:
        try:
            response = await self._client.request(
                request.method,
                request.target_url,
                headers=self._outbound_headers(contributor_id, request),
                content=request.body_bytes or None,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            logger.warning(
                "relay_timeout",
                contributor_id=contributor_id,
                target=request.target_url,
                timeout_s=self.timeout_seconds,
            )
            raise ExternalServiceError("Relay request timed out") from e
        except httpx.HTTPError as e:
            logger.warning(
                "relay_failed",
                contributor_id=contributor_id,
                target=request.target_url,
                error=str(e),
            )
            raise ExternalServiceError(f"Relay request failed: {e}") from e

        body = response.content
        response_header_bytes = sum(
            len(name) + len(value) + HEADER_LINE_OVERHEAD for name, value in response.headers.raw
        )

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return RelayResponse(
            status=response.status_code,
            data=data,
            request_bytes=request.wire_size(),
            response_bytes=response_header_bytes + len(body),
            response_size=len(body),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
