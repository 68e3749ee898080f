from dataclasses import dataclass, replace
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse

DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class Target:
    """One canonicalized endpoint to probe."""
    scheme: str
    host: str
    port: Optional[int] = None
    path: str = "/"

    @property
    def url(self) -> str:
        scheme = self.scheme.lower()
        host = self.host.lower()
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        netloc = host
        if self.port is not None and self.port != DEFAULT_PORTS.get(scheme):
            netloc = f"{host}:{self.port}"
        path = self.path or "/"
        if not path.startswith("/"):
            path = "/" + path
        return f"{scheme}://{netloc}{path}"

    def with_path(self, path: str) -> str:
        """URL of ``path`` (which may carry a query) on this target's origin."""
        return replace(self, path=path).url

    @classmethod
    def parse(cls, url: str, default_scheme: str = "http") -> "Target":
        """Build a target from a URL string.

        Input without a scheme gets ``default_scheme``. Trying https first and
        falling back to http for such input is left to the caller (see the CLI).
        """
        if "://" not in url:
            url = f"{default_scheme}://{url}"
        parsed = urlparse(url.strip())
        if parsed.scheme.lower() not in DEFAULT_PORTS:
            raise ValueError(f"Unsupported scheme in target: {url}")
        if not parsed.hostname:
            raise ValueError(f"No host in target: {url}")
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        return cls(
            scheme=parsed.scheme.lower(),
            host=parsed.hostname.lower(),
            port=parsed.port,
            path=path,
        )

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class ProxyConfig:
    """Upstream proxy, e.g. http://127.0.0.1:8080 or socks5://127.0.0.1:1080."""
    url: str


def dedupe_targets(targets: Iterable[Target]) -> Tuple[Target, ...]:
    """Drop targets whose canonical URL was already seen, keeping first occurrences."""
    seen = set()
    unique = []
    for target in targets:
        if target.url in seen:
            continue
        seen.add(target.url)
        unique.append(target)
    return tuple(unique)


@dataclass(frozen=True)
class ScanJob:
    """One batch of targets with its concurrency and time bounds."""
    targets: Tuple[Target, ...]
    concurrency_limit: int = 50
    per_request_timeout: float = 10.0
    global_deadline: Optional[float] = None  # Seconds from scan start
    proxy: Optional[ProxyConfig] = None

    def __post_init__(self):
        object.__setattr__(self, "targets", dedupe_targets(self.targets))
        if self.concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {self.concurrency_limit}")
        if self.per_request_timeout <= 0:
            raise ValueError(f"per_request_timeout must be > 0, got {self.per_request_timeout}")
        if self.global_deadline is not None and self.global_deadline <= 0:
            raise ValueError(f"global_deadline must be > 0, got {self.global_deadline}")
