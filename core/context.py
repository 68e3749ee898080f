from dataclasses import dataclass, field
from functools import cached_property
from typing import Dict, FrozenSet, List, Optional, Tuple


@dataclass(frozen=True)
class RawResponse:
    """What the prober observed for one target, before normalization."""
    url: str  # Final URL after redirects
    status_code: int
    reason: str = ""
    http_version: str = "HTTP/1.1"
    headers: List[Tuple[str, str]] = field(default_factory=list)  # As received, repeats kept
    body: bytes = b""  # Bounded prefix only
    favicon_hashes: Tuple[str, ...] = ()  # MD5 of every icon fetched for the page
    tls_subject: Optional[str] = None
    tls_issuer: Optional[str] = None


@dataclass(frozen=True)
class FeatureSet:
    """Normalized, bounded features of one probe, used only for matching."""
    url: str
    status_code: int
    headers: Dict[str, Tuple[str, ...]]  # Lower-cased name -> values in order
    body_prefix: str
    banner: str
    title: Optional[str] = None
    favicon_hashes: FrozenSet[str] = frozenset()
    tls_subject: Optional[str] = None
    tls_issuer: Optional[str] = None

    def header(self, name: str) -> Tuple[str, ...]:
        return self.headers.get(name.lower(), ())

    # Lower-cased copies, computed once per feature set rather than once per leaf
    @cached_property
    def body_lower(self) -> str:
        return self.body_prefix.lower()

    @cached_property
    def banner_lower(self) -> str:
        return self.banner.lower()
