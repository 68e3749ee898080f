"""Turns raw probe responses into normalized feature sets.

Everything here is pure: the same RawResponse always yields the same
FeatureSet, so extraction can be tested without any network.
"""
import codecs
import hashlib
import html
import re
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlparse

from core.context import FeatureSet, RawResponse

# Soft redirects (meta refresh, script jumps) are only honoured on pages this small
SOFT_REDIRECT_MAX_BODY = 1024

_CONTENT_TYPE_CHARSET = re.compile(r'charset\s*=\s*["\']?([\w.:-]+)', re.IGNORECASE)
_META_TAG = re.compile(r"<meta\b[^>]*>", re.IGNORECASE)
_LINK_TAG = re.compile(r"<link\b[^>]*>", re.IGNORECASE)
_TAG_ATTR = re.compile(r'([\w:-]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^\s"\'>]+))')
_TITLE = re.compile(r"<title\b[^>]*>(.*?)</title\s*>", re.IGNORECASE | re.DOTALL)
# Title cut off by the body bound
_TITLE_UNTERMINATED = re.compile(r"<title\b[^>]*>([^<]+)$", re.IGNORECASE)
_REFRESH_URL = re.compile(r"url\s*=\s*['\"]?([^'\";>]+)", re.IGNORECASE)
_SCRIPT_JUMPS = (
    re.compile(r"\.location(?:\.href)?\s*=\s*['\"](?P<url>[^'\"]*)['\"]", re.IGNORECASE),
    re.compile(r"\.location\.(?:open|replace|assign)\(\s*['\"](?P<url>[^'\"]*)['\"]", re.IGNORECASE),
)
_WHITESPACE = re.compile(r"\s+")

FAVICON_REL = {"icon", "shortcut icon"}
DEFAULT_FAVICON_PATH = "/favicon.ico"


def extract(raw: RawResponse) -> FeatureSet:
    """Build the feature set for one response."""
    headers = normalize_headers(raw.headers)
    text = decode_body(raw.body, headers)
    return FeatureSet(
        url=raw.url,
        status_code=raw.status_code,
        headers=headers,
        body_prefix=text,
        banner=build_banner(raw),
        title=extract_title(text),
        favicon_hashes=frozenset(h.lower() for h in raw.favicon_hashes),
        tls_subject=raw.tls_subject,
        tls_issuer=raw.tls_issuer,
    )


def normalize_headers(pairs: Sequence[Tuple[str, str]]) -> Dict[str, Tuple[str, ...]]:
    headers: Dict[str, List[str]] = {}
    for name, value in pairs:
        headers.setdefault(name.strip().lower(), []).append(value.strip())
    return {name: tuple(values) for name, values in headers.items()}


def build_banner(raw: RawResponse) -> str:
    """Status line followed by the header lines exactly as received."""
    status_line = f"{raw.http_version} {raw.status_code} {raw.reason}".rstrip()
    lines = [status_line] + [f"{name}: {value}" for name, value in raw.headers]
    return "\r\n".join(lines)


def decode_body(body: bytes, headers: Dict[str, Tuple[str, ...]]) -> str:
    """Decode with the Content-Type charset, then <meta charset>, then UTF-8."""
    if not body:
        return ""
    encoding = None
    for content_type in headers.get("content-type", ()):
        match = _CONTENT_TYPE_CHARSET.search(content_type)
        if match:
            encoding = match.group(1)
            break
    if not encoding:
        encoding = _meta_charset(body.decode("utf-8", errors="replace"))
    if not encoding or not _is_known_encoding(encoding):
        encoding = "utf-8"
    return body.decode(encoding, errors="replace")


def _meta_charset(text: str) -> Optional[str]:
    charset = None
    for tag in _META_TAG.findall(text):
        attrs = parse_attributes(tag)
        if attrs.get("charset"):
            charset = attrs["charset"]
        elif attrs.get("http-equiv", "").lower() == "content-type":
            match = _CONTENT_TYPE_CHARSET.search(attrs.get("content", ""))
            if match:
                charset = match.group(1)
    return charset


def _is_known_encoding(name: str) -> bool:
    try:
        codecs.lookup(name)
        return True
    except LookupError:
        return False


def parse_attributes(tag: str) -> Dict[str, str]:
    """Attributes of a single start tag, names lower-cased, entities unescaped."""
    attrs = {}
    for name, dq, sq, bare in _TAG_ATTR.findall(tag):
        attrs.setdefault(name.lower(), html.unescape(dq or sq or bare))
    return attrs


def extract_title(text: str) -> Optional[str]:
    """First non-empty <title>, else <meta property="title">; None when absent."""
    for raw_title in _TITLE.findall(text):
        title = _clean_text(raw_title)
        if title:
            return title
    match = _TITLE_UNTERMINATED.search(text)
    if match and _clean_text(match.group(1)):
        return _clean_text(match.group(1))
    for tag in _META_TAG.findall(text):
        attrs = parse_attributes(tag)
        if attrs.get("property", "").lower() == "title" and attrs.get("content", "").strip():
            return _clean_text(attrs["content"])
    return None


def _clean_text(value: str) -> str:
    return _WHITESPACE.sub(" ", html.unescape(value)).strip()


def favicon_hash(content: bytes) -> str:
    """Lower-case hex MD5 of the favicon bytes."""
    return hashlib.md5(content).hexdigest()


def favicon_links(text: str, base_url: str) -> List[str]:
    """Icons declared by the page, then the conventional /favicon.ico."""
    links: List[str] = []
    for tag in _LINK_TAG.findall(text):
        attrs = parse_attributes(tag)
        rel = _WHITESPACE.sub(" ", attrs.get("rel", "")).strip().lower()
        href = attrs.get("href", "").strip()
        if rel in FAVICON_REL and href and not href.startswith("data:"):
            url = urljoin(base_url, href)
            if url not in links and _is_http_url(url):
                links.append(url)
    default = urljoin(base_url, DEFAULT_FAVICON_PATH)
    # Always last, even when the page declares it
    if default in links:
        links.remove(default)
    links.append(default)
    return links


def next_hop(status_code: int, headers: Dict[str, Tuple[str, ...]], base_url: str, text: str) -> Optional[str]:
    """Where this response sends the client next, if anywhere.

    Location is honoured on 3xx responses. Small pages may also redirect via
    <meta http-equiv="refresh"> or a script assigning window.location.
    """
    candidate = None
    if 300 <= status_code < 400:
        locations = headers.get("location", ())
        if locations and locations[0]:
            candidate = locations[0]

    if candidate is None and text and len(text) <= SOFT_REDIRECT_MAX_BODY:
        for tag in _META_TAG.findall(text):
            attrs = parse_attributes(tag)
            if attrs.get("http-equiv", "").lower() == "refresh":
                match = _REFRESH_URL.search(attrs.get("content", ""))
                if match:
                    candidate = match.group(1).strip()
                    break
        if candidate is None:
            for pattern in _SCRIPT_JUMPS:
                match = pattern.search(text)
                if match and match.group("url").strip():
                    candidate = match.group("url").strip()
                    break

    if not candidate:
        return None
    url = urljoin(base_url, candidate)
    return url if _is_http_url(url) else None


def _is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)
