"""Entry points used by the CLI and by request-handling front ends."""
import asyncio
import logging
from typing import Optional

from core.prober import Prober
from core.rule_store import RuleStore
from core.scheduler import Scheduler
from models.outcome import ScanReport
from models.target import ScanJob

logger = logging.getLogger(__name__)


class ScanHandle:
    """A submitted scan running on the current event loop.

    Poll with ``done()``/``result()`` or ``await handle.wait()``.
    """

    def __init__(self, job: ScanJob, task: "asyncio.Task[ScanReport]"):
        self.job = job
        self._task = task

    def done(self) -> bool:
        return self._task.done()

    def result(self) -> ScanReport:
        """The report; raises RuntimeError if the scan is still running."""
        if not self._task.done():
            raise RuntimeError("scan still running")
        return self._task.result()

    async def wait(self) -> ScanReport:
        return await self._task

    def cancel(self) -> bool:
        return self._task.cancel()

    def __await__(self):
        return self._task.__await__()


class Engine:
    """Binds a loaded rule store to a scheduler."""

    def __init__(self, store: RuleStore, prober: Optional[Prober] = None):
        self.store = store
        self.scheduler = Scheduler(prober)

    async def scan(self, job: ScanJob) -> ScanReport:
        return await self.scheduler.run(job, self.store)

    def submit(self, job: ScanJob) -> ScanHandle:
        """Start ``job`` in the background; must be called with a running loop."""
        task = asyncio.get_running_loop().create_task(self.scan(job), name=f"scan-{id(job):x}")
        logger.debug(f"Submitted scan of {len(job.targets)} targets")
        return ScanHandle(job, task)

    def run(self, job: ScanJob) -> ScanReport:
        """Blocking scan for callers without an event loop."""
        return asyncio.run(self.scan(job))


def run_scan(job: ScanJob, store: RuleStore, prober: Optional[Prober] = None) -> ScanReport:
    return Engine(store, prober).run(job)


def submit_scan(job: ScanJob, store: RuleStore, prober: Optional[Prober] = None) -> ScanHandle:
    return Engine(store, prober).submit(job)
