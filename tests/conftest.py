import os
import sys
import pytest

# Ensure project root is on sys.path for imports like `core.*`
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

from core.context import FeatureSet  # noqa: E402


@pytest.fixture
def make_features():
    """Factory for feature sets; headers are given as {name: value or [values]}."""
    def _make(
        headers=None,
        body="",
        status_code=200,
        title=None,
        favicon_hashes=(),
        tls_subject=None,
        tls_issuer=None,
        url="https://example.com/",
    ):
        normalized = {}
        for name, value in (headers or {}).items():
            values = value if isinstance(value, (list, tuple)) else [value]
            normalized[name.lower()] = tuple(values)
        banner = "\r\n".join(
            [f"HTTP/1.1 {status_code}"] + [f"{k}: {v}" for k, vs in normalized.items() for v in vs]
        )
        return FeatureSet(
            url=url,
            status_code=status_code,
            headers=normalized,
            body_prefix=body,
            banner=banner,
            title=title,
            favicon_hashes=frozenset([favicon_hashes] if isinstance(favicon_hashes, str) else favicon_hashes),
            tls_subject=tls_subject,
            tls_issuer=tls_issuer,
        )
    return _make
