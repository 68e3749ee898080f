import asyncio
import errno
import logging
import socket
import ssl
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence, Tuple

import httpx

from fetch.tls_client import CertificateNames, peer_certificate_names
from models.outcome import ErrorKind

# Default timeout configuration (in seconds)
DEFAULT_TIMEOUT = 10.0
# Only this much of any response body is read
MAX_BODY_BYTES = 200_000

USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64; rv:94.0) Gecko/20100101 Firefox/94.0"
DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    # Makes Apache Shiro answer with its rememberMe=deleteMe cookie
    "Cookie": "rememberMe=admin;rememberMe-K=admin",
}

_DNS_HINTS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "no address associated",
    "getaddrinfo failed",
)
_TLS_HINTS = ("ssl", "certificate", "handshake", "tls")
_REFUSED_HINTS = ("connection refused", "actively refused")


@dataclass(frozen=True)
class FetchedResponse:
    url: str
    status_code: int
    reason: str
    http_version: str
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    certificate: Optional[CertificateNames] = None


def create_client(
    timeout: Optional[float] = None,
    proxy: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Builds the client used for one target's exchanges.

    Redirects are not followed here (the prober walks them itself) and
    certificates are not verified: fingerprinting needs the response, not trust.

    Args:
        timeout: Per-phase httpx timeout in seconds (default: 10s)
        proxy: Optional proxy URL (http://, https:// or socks5://)
        transport: Optional transport override, used by tests
    """
    kwargs = {}
    if transport is not None:
        kwargs["transport"] = transport
    elif proxy:
        kwargs["proxy"] = proxy
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout or DEFAULT_TIMEOUT),
        follow_redirects=False,
        verify=False,
        headers=DEFAULT_HEADERS,
        limits=httpx.Limits(max_keepalive_connections=0),
        **kwargs,
    )


async def fetch_url(
    client: httpx.AsyncClient,
    url: str,
    max_body: int = MAX_BODY_BYTES,
    capture_tls: bool = False,
    method: str = "GET",
    headers: Optional[Sequence[Tuple[str, str]]] = None,
    content: Optional[bytes] = None,
) -> FetchedResponse:
    """
    Sends one request, reading at most ``max_body`` bytes of the (decoded) body.

    Args:
        client: Client from ``create_client``
        url: The URL to fetch
        max_body: Body bytes to keep; the rest of the stream is never read
        capture_tls: Record the peer certificate names for HTTPS URLs
        method: HTTP method (default: GET)
        headers: Extra request headers, overriding the client defaults
        content: Request body

    Returns:
        FetchedResponse with headers in received order
    """
    logger = logging.getLogger(__name__)
    logger.debug(f"HTTP {method} {url}")

    try:
        async with client.stream(method, url, headers=headers, content=content or None) as response:
            certificate = None
            if capture_tls and response.url.scheme == "https":
                certificate = peer_certificate_names(response)

            body = bytearray()
            async for chunk in response.aiter_bytes():
                body.extend(chunk)
                if len(body) >= max_body:
                    logger.debug(f"Body of {url} truncated at {max_body} bytes")
                    break

            encoding = response.headers.encoding
            headers = [(k.decode(encoding), v.decode(encoding)) for k, v in response.headers.raw]
            logger.debug(f"HTTP {response.status_code} {url} ({len(body)} bytes read)")
            return FetchedResponse(
                url=str(response.url),
                status_code=response.status_code,
                reason=response.reason_phrase,
                http_version=response.http_version,
                headers=headers,
                body=bytes(body[:max_body]),
                certificate=certificate,
            )
    except httpx.TimeoutException as e:
        logger.debug(f"HTTP timeout for {url}: {e!r}")
        raise
    except httpx.HTTPError as e:
        logger.debug(f"HTTP request error for {url}: {e!r}")
        raise


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a transport exception onto the probe failure taxonomy."""
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, socket.timeout)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.TooManyRedirects):
        return ErrorKind.TOO_MANY_REDIRECTS

    for cause in _causes(exc):
        if isinstance(cause, socket.gaierror):
            return ErrorKind.DNS_FAILURE
        if isinstance(cause, (ssl.SSLError, ssl.CertificateError)):
            return ErrorKind.TLS_ERROR
        if isinstance(cause, ConnectionRefusedError) or getattr(cause, "errno", None) == errno.ECONNREFUSED:
            return ErrorKind.CONNECTION_REFUSED

    if isinstance(exc, (httpx.RemoteProtocolError, httpx.LocalProtocolError, httpx.DecodingError)):
        return ErrorKind.PROTOCOL_ERROR

    if isinstance(exc, (httpx.ConnectError, OSError)):
        message = " ".join(str(c) for c in _causes(exc)).lower()
        if any(hint in message for hint in _DNS_HINTS):
            return ErrorKind.DNS_FAILURE
        if any(hint in message for hint in _REFUSED_HINTS):
            return ErrorKind.CONNECTION_REFUSED
        if any(hint in message for hint in _TLS_HINTS):
            return ErrorKind.TLS_ERROR

    return ErrorKind.CONNECTION_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """The exception, its causes/contexts and members of exception groups."""
    pending = [exc]
    seen = set()
    while pending:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.extend(getattr(current, "exceptions", ()) or ())
        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                pending.append(linked)
