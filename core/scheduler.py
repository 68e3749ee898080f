"""Bounded worker pool that probes and matches many targets concurrently."""
import asyncio
import logging
import time
from typing import AbstractSet, Optional, Tuple

from core.aggregator import ReportAggregator
from core.matcher import dedupe_matches, match_all, match_facets
from core.prober import Prober
from core.rule_store import RuleStore
from models.outcome import ErrorKind, MatchedRule, MatchResult, ProbeFailure, ProbeSuccess, ScanReport
from models.rule import Field
from models.target import ScanJob, Target

# Slack on top of the prober's own timeouts before a worker gives up on it
PROBE_GRACE_SECONDS = 1.0

_STOP = None


class Scheduler:
    """Runs a ScanJob against a RuleStore.

    A dispatcher feeds targets, in submission order, into a queue bounded by
    the job's concurrency limit; that many workers each probe one target,
    match it and merge the result before taking the next. At most
    ``concurrency_limit`` probes are ever in flight.
    """

    def __init__(self, prober: Optional[Prober] = None):
        self.prober = prober if prober is not None else Prober()
        self.logger = logging.getLogger(__name__)

    async def run(self, job: ScanJob, store: RuleStore) -> ScanReport:
        """Probe every target of ``job``; every target appears once in the report.

        When ``job.global_deadline`` elapses, outstanding probes are cancelled
        and their targets are reported as ``deadline-exceeded``; results that
        already completed are kept.
        """
        aggregator = ReportAggregator(job.targets)
        if not job.targets:
            return aggregator.report()

        started = time.monotonic()
        required = store.required_fields
        worker_count = min(job.concurrency_limit, len(job.targets))
        self.logger.info(
            f"Scanning {len(job.targets)} targets with {worker_count} workers, "
            f"{len(store)} rules, timeout {job.per_request_timeout}s"
            + (f", deadline {job.global_deadline}s" if job.global_deadline else "")
        )

        queue: asyncio.Queue = asyncio.Queue(maxsize=job.concurrency_limit)
        tasks = [asyncio.create_task(self._dispatch(queue, job, worker_count), name="scan-dispatcher")]
        tasks += [
            asyncio.create_task(self._worker(queue, job, store, required, aggregator), name=f"scan-worker-{i}")
            for i in range(worker_count)
        ]

        try:
            done, pending = await asyncio.wait(tasks, timeout=job.global_deadline)
            if pending:
                self.logger.warning(
                    f"Global deadline of {job.global_deadline}s reached with "
                    f"{len(aggregator.pending())} targets outstanding"
                )
            for task in done:
                # Workers contain per-target errors, so anything here is a bug
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        aggregator.finalize(ErrorKind.DEADLINE_EXCEEDED, f"global deadline of {job.global_deadline}s elapsed")
        report = aggregator.report()
        self.logger.info(f"Scan finished in {time.monotonic() - started:.2f}s: {report.summary()}")
        return report

    async def _dispatch(self, queue: asyncio.Queue, job: ScanJob, worker_count: int) -> None:
        for target in job.targets:
            await queue.put(target)
        for _ in range(worker_count):
            await queue.put(_STOP)

    async def _worker(
        self,
        queue: asyncio.Queue,
        job: ScanJob,
        store: RuleStore,
        required: AbstractSet[Field],
        aggregator: ReportAggregator,
    ) -> None:
        while True:
            target = await queue.get()
            try:
                if target is _STOP:
                    return
                result = await self._scan_target(target, job, store, required)
                aggregator.merge(target, result)
            finally:
                queue.task_done()

    async def _scan_target(self, target: Target, job: ScanJob, store: RuleStore, required: AbstractSet[Field]):
        """Probe then match one target; returns a MatchResult or ProbeFailure."""
        # Root chain, then the favicon and rule request stages, each with its own timeout
        stages = 1 + (Field.FAVICON_HASH in required) + bool(store.requests)
        budget = job.per_request_timeout * stages + PROBE_GRACE_SECONDS
        try:
            outcome = await asyncio.wait_for(
                self.prober.probe(
                    target, job.per_request_timeout, job.proxy, required, requests=tuple(store.requests)
                ),
                budget,
            )
        except asyncio.TimeoutError:
            self.logger.debug(f"{target}: prober overran its {budget:.1f}s budget")
            return ProbeFailure(target=target, kind=ErrorKind.TIMEOUT, detail=f"no response within {job.per_request_timeout}s")
        except Exception as e:
            self.logger.error(f"Unexpected error probing {target}: {e}", exc_info=True)
            return ProbeFailure(target=target, kind=ErrorKind.CONNECTION_ERROR, detail=str(e) or type(e).__name__)

        if isinstance(outcome, ProbeSuccess):
            return MatchResult(target=target, matches=match_outcome(outcome, store), elapsed=outcome.elapsed)
        return outcome


def match_outcome(outcome: ProbeSuccess, store: RuleStore) -> Tuple[MatchedRule, ...]:
    """Root rules against every page of the redirect chain, request rules against their own response."""
    matches = list(match_facets(outcome.hops + (outcome.features,), store.root_rules))
    for request, features in outcome.responses:
        matches.extend(match_all(features, store.requests.get(request, ())))
    return dedupe_matches(matches)
