from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union, TYPE_CHECKING

from models.rule import ProbeRequest
from models.target import Target

if TYPE_CHECKING:
    from core.context import FeatureSet


class ErrorKind(str, Enum):
    """Why a target produced no feature set."""
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection-refused"
    DNS_FAILURE = "dns-failure"
    TLS_ERROR = "tls-error"
    TOO_MANY_REDIRECTS = "too-many-redirects"
    DEADLINE_EXCEEDED = "deadline-exceeded"
    CONNECTION_ERROR = "connection-error"  # Reset, unreachable, proxy failure
    PROTOCOL_ERROR = "protocol-error"  # Malformed HTTP from the peer


@dataclass(frozen=True)
class ProbeSuccess:
    """Features of the final page, plus the other responses seen for the target."""
    target: Target
    features: "FeatureSet"
    elapsed: float  # Seconds
    # Pages that redirected towards the final one, in the order visited
    hops: Tuple["FeatureSet", ...] = ()
    # Responses to rule-specific requests; requests that failed are absent
    responses: Tuple[Tuple[ProbeRequest, "FeatureSet"], ...] = ()


@dataclass(frozen=True)
class ProbeFailure:
    target: Target
    kind: ErrorKind
    detail: Optional[str] = None


ProbeOutcome = Union[ProbeSuccess, ProbeFailure]


@dataclass(frozen=True)
class MatchedRule:
    rule_id: str
    name: str
    priority: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.rule_id, "name": self.name, "priority": self.priority}


@dataclass(frozen=True)
class MatchResult:
    """All rules that matched one target, highest priority first."""
    target: Target
    matches: Tuple[MatchedRule, ...] = ()
    elapsed: Optional[float] = None


@dataclass(frozen=True)
class ReportEntry:
    """Terminal outcome for one target: matches (possibly none) or a failure."""
    target: Target
    matches: Tuple[MatchedRule, ...] = ()
    failure: Optional[ErrorKind] = None
    detail: Optional[str] = None
    elapsed: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.url,
            "status": "ok" if self.ok else "failed",
            "matches": [m.to_dict() for m in self.matches],
            "failure": self.failure.value if self.failure else None,
            "detail": self.detail,
            "elapsed": round(self.elapsed, 3) if self.elapsed is not None else None,
        }


@dataclass(frozen=True)
class ScanReport:
    """Target URL -> terminal entry, in submission order."""
    entries: Dict[str, ReportEntry]

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, url: str) -> ReportEntry:
        return self.entries[url]

    def __contains__(self, url: object) -> bool:
        return url in self.entries

    def get(self, target: Union[Target, str]) -> Optional[ReportEntry]:
        key = target.url if isinstance(target, Target) else target
        return self.entries.get(key)

    def failures(self) -> Dict[str, ReportEntry]:
        return {url: e for url, e in self.entries.items() if not e.ok}

    def summary(self) -> Dict[str, Any]:
        """Counts of matched, unmatched and failed targets (failures by kind)."""
        failed: Dict[str, int] = {}
        matched = unmatched = 0
        for entry in self.entries.values():
            if entry.failure:
                failed[entry.failure.value] = failed.get(entry.failure.value, 0) + 1
            elif entry.matches:
                matched += 1
            else:
                unmatched += 1
        return {
            "targets": len(self.entries),
            "matched": matched,
            "unmatched": unmatched,
            "failed": failed,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "results": [entry.to_dict() for entry in self.entries.values()],
        }
