"""Report aggregation: one terminal entry per submitted target.

Workers hand their per-target outcome to ``ReportAggregator.merge``. Matches
for a target are deduplicated by rule id, so a rule satisfied by several
facets of a response, or merged twice, is listed once.
"""
import logging
from typing import Dict, Iterable, List, Optional, Union

from core.matcher import dedupe_matches
from models.outcome import ErrorKind, MatchResult, ProbeFailure, ReportEntry, ScanReport
from models.target import Target

logger = logging.getLogger(__name__)


class ReportAggregator:
    """Collects terminal outcomes for a fixed set of targets."""

    def __init__(self, targets: Iterable[Target]):
        self._targets: Dict[str, Target] = {}
        for target in targets:
            self._targets.setdefault(target.url, target)
        self._entries: Dict[str, ReportEntry] = {}

    def merge(self, target: Target, result: Union[MatchResult, ProbeFailure]) -> ReportEntry:
        """
        Record a target's matches or failure.

        A failure never replaces an entry that already holds matches; matches
        merged into an existing successful entry are unioned by rule id.

        Args:
            target: One of the targets the aggregator was created with
            result: MatchResult on success, ProbeFailure otherwise

        Returns:
            The target's current report entry
        """
        key = target.url
        if key not in self._targets:
            raise ValueError(f"{key} is not part of this scan")
        existing = self._entries.get(key)

        if isinstance(result, ProbeFailure):
            if existing is not None and existing.ok:
                logger.debug(f"Ignoring {result.kind.value} for {key}: already has a result")
                return existing
            entry = ReportEntry(target=self._targets[key], failure=result.kind, detail=result.detail)
        elif isinstance(result, MatchResult):
            matches = result.matches
            elapsed = result.elapsed
            if existing is not None and existing.ok:
                matches = existing.matches + matches
                elapsed = existing.elapsed if elapsed is None else elapsed
            entry = ReportEntry(target=self._targets[key], matches=dedupe_matches(matches), elapsed=elapsed)
        else:
            raise TypeError(f"cannot merge {type(result).__name__}")

        self._entries[key] = entry
        return entry

    def pending(self) -> List[Target]:
        """Targets without a terminal outcome, in submission order."""
        return [t for url, t in self._targets.items() if url not in self._entries]

    @property
    def is_complete(self) -> bool:
        return len(self._entries) == len(self._targets)

    def finalize(self, kind: ErrorKind, detail: Optional[str] = None) -> int:
        """Record ``kind`` for every pending target; returns how many were filled."""
        missing = self.pending()
        for target in missing:
            self._entries[target.url] = ReportEntry(target=target, failure=kind, detail=detail)
        if missing:
            logger.info(f"Marked {len(missing)} unfinished targets as {kind.value}")
        return len(missing)

    def report(self) -> ScanReport:
        """The final report, keyed and ordered by submitted target."""
        if not self.is_complete:
            raise RuntimeError(f"{len(self.pending())} targets have no outcome yet")
        return ScanReport(entries={url: self._entries[url] for url in self._targets})

