"""Network side of a scan: everything needed to build one target's feature sets."""
import asyncio
import logging
import time
from typing import AbstractSet, List, Optional, Sequence, Tuple

import httpx

from core.cache import ResourceCache
from core.context import FeatureSet, RawResponse
from core.errors import ProbeError
from core.extractor import (
    SOFT_REDIRECT_MAX_BODY,
    decode_body,
    extract,
    favicon_hash,
    favicon_links,
    next_hop,
    normalize_headers,
)
from fetch.http_client import MAX_BODY_BYTES, FetchedResponse, classify_error, create_client, fetch_url
from models.outcome import ErrorKind, ProbeFailure, ProbeOutcome, ProbeSuccess
from models.rule import Field, ProbeRequest
from models.target import ProxyConfig, Target

MAX_REDIRECTS = 5
MAX_FAVICON_BYTES = 1_000_000
# Icons fetched per page: the first declared links plus /favicon.ico
MAX_FAVICON_CANDIDATES = 4

TLS_FIELDS = frozenset({Field.TLS_SUBJECT, Field.TLS_ISSUER})

TRANSPORT_ERRORS = (httpx.HTTPError, OSError, asyncio.TimeoutError)


class Prober:
    """Performs the exchanges for one target and extracts its features.

    One instance is shared by all workers of a scan; it holds no per-target
    state apart from the favicon hash cache.
    """

    def __init__(
        self,
        max_redirects: int = MAX_REDIRECTS,
        max_body: int = MAX_BODY_BYTES,
        cache: Optional[ResourceCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_redirects = max_redirects
        self.max_body = max_body
        self.cache = cache if cache is not None else ResourceCache()
        self._transport = transport
        self.logger = logging.getLogger(__name__)

    async def probe(
        self,
        target: Target,
        timeout: float,
        proxy: Optional[ProxyConfig] = None,
        required_fields: AbstractSet[Field] = frozenset(),
        requests: Sequence[ProbeRequest] = (),
    ) -> ProbeOutcome:
        """Probe ``target`` and return its features or a classified failure.

        ``timeout`` bounds the primary exchange including every redirect hop.
        The favicon fetch and the rule-specific ``requests`` each get a budget
        of their own; their failures never fail the probe. Network problems
        are returned as ProbeFailure, never raised.
        """
        started = time.monotonic()
        capture_tls = target.scheme == "https" and bool(TLS_FIELDS & required_fields)

        async with create_client(timeout, proxy.url if proxy else None, self._transport) as client:
            try:
                chain = await asyncio.wait_for(self._follow_redirects(client, target.url, capture_tls), timeout)
            except ProbeError as e:
                self.logger.debug(f"{target}: {e}")
                return ProbeFailure(target=target, kind=e.kind, detail=e.detail)
            except TRANSPORT_ERRORS as e:
                kind = classify_error(e)
                self.logger.debug(f"{target}: {kind.value} ({e!r})")
                return ProbeFailure(target=target, kind=kind, detail=str(e) or type(e).__name__)

            page = chain[-1]
            icons: Tuple[str, ...] = ()
            if Field.FAVICON_HASH in required_fields:
                icons = await self._fetch_favicons(client, page, timeout)
            responses: Tuple[Tuple[ProbeRequest, FeatureSet], ...] = ()
            if requests:
                responses = await self._fetch_requests(client, target, requests, timeout, capture_tls)

        hops = tuple(extract(_raw_response(response)) for response in chain[:-1])
        features = extract(_raw_response(page, icons))
        elapsed = time.monotonic() - started
        self.logger.debug(f"{target}: {features.status_code} in {elapsed:.2f}s\n{features.banner}")
        return ProbeSuccess(target=target, features=features, elapsed=elapsed, hops=hops, responses=responses)

    async def _follow_redirects(self, client: httpx.AsyncClient, url: str, capture_tls: bool) -> List[FetchedResponse]:
        """Walk Location and soft redirects; every response in visiting order, final page last."""
        visited = set()
        chain: List[FetchedResponse] = []
        for _ in range(self.max_redirects + 1):
            visited.add(url)
            response = await fetch_url(client, url, self.max_body, capture_tls)
            chain.append(response)

            headers = normalize_headers(response.headers)
            text = decode_body(response.body, headers) if len(response.body) <= SOFT_REDIRECT_MAX_BODY else ""
            target_url = next_hop(response.status_code, headers, response.url, text)
            if target_url is None:
                return chain

            is_location = 300 <= response.status_code < 400 and bool(headers.get("location"))
            if target_url in visited:
                if is_location:
                    raise ProbeError(ErrorKind.TOO_MANY_REDIRECTS, f"redirect loop at {target_url}")
                # A page refreshing to itself is simply the final page
                return chain

            self.logger.debug(f"Redirect {url} -> {target_url} ({'location' if is_location else 'soft'})")
            url = target_url

        raise ProbeError(ErrorKind.TOO_MANY_REDIRECTS, f"more than {self.max_redirects} redirects")

    async def _fetch_favicons(self, client: httpx.AsyncClient, page: FetchedResponse, timeout: float) -> Tuple[str, ...]:
        """Hashes of every icon candidate that answered with an icon within ``timeout``."""
        text = decode_body(page.body, normalize_headers(page.headers))
        links = favicon_links(text, page.url)
        if len(links) > MAX_FAVICON_CANDIDATES:
            # Keep the conventional path, which is always last
            links = links[:MAX_FAVICON_CANDIDATES - 1] + links[-1:]

        tasks = [asyncio.ensure_future(self._favicon_hash(client, link)) for link in links]
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.debug(f"{len(pending)} favicon fetches for {page.url} timed out")
            await asyncio.gather(*pending, return_exceptions=True)

        hashes = []
        for task in tasks:
            if task in done and task.result() is not None and task.result() not in hashes:
                hashes.append(task.result())
        return tuple(hashes)

    async def _favicon_hash(self, client: httpx.AsyncClient, link: str) -> Optional[str]:
        cached = self.cache.get(link)
        if cached is not None:
            return cached
        try:
            response = await fetch_url(client, link, MAX_FAVICON_BYTES + 1)
        except TRANSPORT_ERRORS as e:
            self.logger.debug(f"Favicon {link} failed: {e!r}")
            return None
        if not _looks_like_icon(response):
            self.logger.debug(f"Favicon {link} rejected (status {response.status_code})")
            return None
        digest = favicon_hash(response.body)
        self.cache.set(link, digest)
        return digest

    async def _fetch_requests(
        self,
        client: httpx.AsyncClient,
        target: Target,
        requests: Sequence[ProbeRequest],
        timeout: float,
        capture_tls: bool,
    ) -> Tuple[Tuple[ProbeRequest, FeatureSet], ...]:
        """Send each rule-specific request once, without following redirects."""

        async def send(request: ProbeRequest) -> Optional[FeatureSet]:
            url = target.with_path(request.path)
            try:
                response = await fetch_url(
                    client,
                    url,
                    self.max_body,
                    capture_tls,
                    method=request.method,
                    headers=request.headers or None,
                    content=request.body,
                )
            except TRANSPORT_ERRORS as e:
                self.logger.debug(f"{request.method} {url} failed: {e!r}")
                return None
            return extract(_raw_response(response))

        tasks = [asyncio.ensure_future(send(request)) for request in requests]
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.debug(f"{len(pending)} rule requests to {target} timed out")
            await asyncio.gather(*pending, return_exceptions=True)

        return tuple(
            (request, task.result())
            for request, task in zip(requests, tasks)
            if task in done and task.result() is not None
        )


def _raw_response(response: FetchedResponse, favicon_hashes: Tuple[str, ...] = ()) -> RawResponse:
    certificate = response.certificate
    return RawResponse(
        url=response.url,
        status_code=response.status_code,
        reason=response.reason,
        http_version=response.http_version,
        headers=response.headers,
        body=response.body,
        favicon_hashes=favicon_hashes,
        tls_subject=certificate.subject if certificate else None,
        tls_issuer=certificate.issuer if certificate else None,
    )


def _looks_like_icon(response: FetchedResponse) -> bool:
    if response.status_code != 200 or not response.body:
        return False
    if len(response.body) > MAX_FAVICON_BYTES:
        return False
    content_types = [v.lower() for k, v in response.headers if k.lower() == "content-type"]
    # Soft-404 pages served at the icon path
    return not any(ct.startswith("text/html") for ct in content_types)
