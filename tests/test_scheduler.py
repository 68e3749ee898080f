"""Scheduler properties, observed through instrumented probers."""
import asyncio

import httpx
import pytest

from core.prober import Prober
from core.rule_store import RuleStore
from core.scheduler import PROBE_GRACE_SECONDS, Scheduler, match_outcome
from models.outcome import ErrorKind, ProbeFailure, ProbeSuccess
from models.rule import Field, ProbeRequest
from models.target import ScanJob, Target

NGINX_RULE = {
    "id": "nginx",
    "name": "nginx",
    "priority": 10,
    "match": {"field": "header", "name": "Server", "operator": "contains", "value": "nginx"},
}


class InstrumentedProber:
    """Fake prober that records concurrency and per-target behaviour."""

    def __init__(self, make_features, delays=None, default_delay=0.02, errors=None):
        self.make_features = make_features
        self.delays = delays or {}
        self.default_delay = default_delay
        self.errors = errors or {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []
        self.required_fields = None
        self.requests = None

    async def probe(self, target, timeout, proxy=None, required_fields=frozenset(), requests=()):
        self.calls.append(target.url)
        self.required_fields = required_fields
        self.requests = requests
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(target.host, self.default_delay))
            if target.host in self.errors:
                raise self.errors[target.host]
            features = self.make_features(headers={"Server": "nginx/1.18.0"}, url=target.url)
            return ProbeSuccess(target=target, features=features, elapsed=0.01)
        finally:
            self.in_flight -= 1


def _targets(n):
    return tuple(Target.parse(f"http://host{i}.example") for i in range(n))


@pytest.fixture
def store():
    return RuleStore.load([NGINX_RULE])


@pytest.mark.asyncio
async def test_concurrency_never_exceeds_limit(make_features, store):
    prober = InstrumentedProber(make_features)
    job = ScanJob(targets=_targets(25), concurrency_limit=4)

    report = await Scheduler(prober).run(job, store)

    assert len(report) == 25
    assert prober.max_in_flight == 4
    assert len(prober.calls) == 25


@pytest.mark.asyncio
async def test_targets_pulled_in_submission_order(make_features, store):
    prober = InstrumentedProber(make_features)
    job = ScanJob(targets=_targets(10), concurrency_limit=1)

    report = await Scheduler(prober).run(job, store)

    expected = [t.url for t in job.targets]
    assert prober.calls == expected
    assert list(report.entries) == expected


@pytest.mark.asyncio
async def test_report_keyed_by_target_not_completion_order(make_features, store):
    # host0 finishes last, host2 first
    prober = InstrumentedProber(make_features, delays={"host0.example": 0.15, "host1.example": 0.05, "host2.example": 0.0})
    job = ScanJob(targets=_targets(3), concurrency_limit=3)

    report = await Scheduler(prober).run(job, store)

    assert list(report.entries) == [t.url for t in job.targets]
    assert all(entry.matches[0].rule_id == "nginx" for entry in report.entries.values())


@pytest.mark.asyncio
async def test_duplicate_targets_reported_once(make_features, store):
    prober = InstrumentedProber(make_features)
    job = ScanJob(targets=(
        Target.parse("http://Example.com"),
        Target.parse("http://example.com:80/"),
        Target.parse("https://example.com"),
    ))

    report = await Scheduler(prober).run(job, store)

    assert sorted(report.entries) == ["http://example.com/", "https://example.com/"]
    assert sorted(prober.calls) == ["http://example.com/", "https://example.com/"]


@pytest.mark.asyncio
async def test_hung_target_times_out_without_affecting_others(make_features, store):
    prober = InstrumentedProber(make_features, delays={"host1.example": 3600})
    job = ScanJob(targets=_targets(4), concurrency_limit=2, per_request_timeout=0.2)

    loop = asyncio.get_running_loop()
    started = loop.time()
    report = await Scheduler(prober).run(job, store)
    elapsed = loop.time() - started

    hung = report.get(Target.parse("http://host1.example"))
    assert hung.failure is ErrorKind.TIMEOUT
    assert elapsed < 0.2 + PROBE_GRACE_SECONDS + 1.0
    others = [e for url, e in report.entries.items() if url != hung.target.url]
    assert all(e.ok and e.matches for e in others)


@pytest.mark.asyncio
async def test_real_prober_timeout_is_reported_as_timeout(store):
    async def handler(request):
        if request.url.host == "slow.example":
            await asyncio.sleep(3600)
        return httpx.Response(200, headers={"Server": "nginx"})

    prober = Prober(transport=httpx.MockTransport(handler))
    job = ScanJob(
        targets=(Target.parse("http://slow.example"), Target.parse("http://fast.example")),
        per_request_timeout=0.2,
    )

    report = await Scheduler(prober).run(job, store)

    assert report["http://slow.example/"].failure is ErrorKind.TIMEOUT
    assert [m.rule_id for m in report["http://fast.example/"].matches] == ["nginx"]


@pytest.mark.asyncio
async def test_global_deadline_marks_outstanding_targets(make_features, store):
    prober = InstrumentedProber(
        make_features,
        delays={"host2.example": 3600, "host3.example": 3600},
        default_delay=0.0,
    )
    job = ScanJob(targets=_targets(5), concurrency_limit=5, per_request_timeout=7200, global_deadline=0.3)

    loop = asyncio.get_running_loop()
    started = loop.time()
    report = await Scheduler(prober).run(job, store)

    assert loop.time() - started < 2.0
    assert len(report) == 5
    for i in range(5):
        entry = report[f"http://host{i}.example/"]
        if i in (2, 3):
            assert entry.failure is ErrorKind.DEADLINE_EXCEEDED
        else:
            assert entry.ok and entry.matches
    assert prober.in_flight == 0


@pytest.mark.asyncio
async def test_deadline_covers_targets_never_dispatched(make_features, store):
    prober = InstrumentedProber(make_features, default_delay=3600)
    job = ScanJob(targets=_targets(6), concurrency_limit=2, per_request_timeout=7200, global_deadline=0.2)

    report = await Scheduler(prober).run(job, store)

    assert len(prober.calls) == 2
    assert report.summary()["failed"] == {"deadline-exceeded": 6}


@pytest.mark.asyncio
async def test_prober_exception_is_contained(make_features, store):
    prober = InstrumentedProber(make_features, errors={"host1.example": RuntimeError("boom")})
    job = ScanJob(targets=_targets(3), concurrency_limit=3)

    report = await Scheduler(prober).run(job, store)

    assert report["http://host1.example/"].failure is ErrorKind.CONNECTION_ERROR
    assert report["http://host0.example/"].ok
    assert report["http://host2.example/"].ok


@pytest.mark.asyncio
async def test_failures_are_recorded_once_and_scan_continues(store):
    class FailingProber:
        async def probe(self, target, timeout, proxy=None, required_fields=frozenset(), requests=()):
            return ProbeFailure(target=target, kind=ErrorKind.DNS_FAILURE, detail="nxdomain")

    job = ScanJob(targets=_targets(3))
    report = await Scheduler(FailingProber()).run(job, store)

    assert report.summary() == {"targets": 3, "matched": 0, "unmatched": 0, "failed": {"dns-failure": 3}}
    assert report["http://host0.example/"].detail == "nxdomain"


@pytest.mark.asyncio
async def test_required_fields_come_from_rule_store(make_features):
    store = RuleStore.load([
        NGINX_RULE,
        {"id": "jenkins", "name": "Jenkins", "match": {
            "field": "favicon-hash", "operator": "hash-equals", "value": "23e8c7bd78e8cd826c5a6073b15068b1",
        }},
    ])
    prober = InstrumentedProber(make_features)

    await Scheduler(prober).run(ScanJob(targets=_targets(1)), store)

    assert prober.required_fields == {Field.HEADER, Field.FAVICON_HASH}


@pytest.mark.asyncio
async def test_empty_job_returns_empty_report(make_features, store):
    report = await Scheduler(InstrumentedProber(make_features)).run(ScanJob(targets=()), store)
    assert len(report) == 0


SHIRO_RULE = {
    "id": "apache-shiro",
    "name": "Apache Shiro",
    "priority": 20,
    "match": {"field": "header", "name": "Set-Cookie", "operator": "contains", "value": "rememberMe=deleteMe"},
}
ACTUATOR_RULE = {
    "id": "spring-boot-actuator",
    "name": "Spring Boot Actuator",
    "priority": 25,
    "request": {"path": "/actuator", "headers": {"Accept": "application/json"}},
    "match": {"field": "body", "operator": "regex-match", "value": '"_links"\\s*:'},
}
LINKS_IN_BODY_RULE = {
    "id": "hal-links",
    "name": "HAL links on the front page",
    "match": {"field": "body", "operator": "contains", "value": "_links"},
}


@pytest.mark.asyncio
async def test_rule_matches_on_redirecting_page():
    def handler(request):
        if request.url.path == "/":
            return httpx.Response(302, headers=[("Location", "/login"), ("Set-Cookie", "rememberMe=deleteMe; Path=/")])
        return httpx.Response(200, headers={"Server": "nginx"}, html="<title>Login</title>")

    store = RuleStore.load([NGINX_RULE, SHIRO_RULE])
    report = await Scheduler(Prober(transport=httpx.MockTransport(handler))).run(
        ScanJob(targets=(Target.parse("http://shiro.example"),)), store
    )

    assert [m.rule_id for m in report["http://shiro.example/"].matches] == ["apache-shiro", "nginx"]


@pytest.mark.asyncio
async def test_request_rules_judged_only_on_their_own_response():
    requested = []

    def handler(request):
        requested.append((request.method, request.url.path, request.headers.get("accept")))
        if request.url.path == "/actuator":
            return httpx.Response(200, json={"_links": {"self": {"href": "/actuator"}}})
        return httpx.Response(200, html="<title>Home</title>")

    store = RuleStore.load([ACTUATOR_RULE, LINKS_IN_BODY_RULE])
    report = await Scheduler(Prober(transport=httpx.MockTransport(handler))).run(
        ScanJob(targets=(Target.parse("http://app.example"),)), store
    )

    entry = report["http://app.example/"]
    # The front page has no _links, and the actuator answer never feeds root rules
    assert [m.rule_id for m in entry.matches] == ["spring-boot-actuator"]
    assert ("GET", "/actuator", "application/json") in requested
    assert requested.count(("GET", "/actuator", "application/json")) == 1


@pytest.mark.asyncio
async def test_request_rule_not_matched_on_front_page():
    def handler(request):
        if request.url.path == "/actuator":
            return httpx.Response(404, html="<title>Not Found</title>")
        return httpx.Response(200, json={"_links": {}})

    store = RuleStore.load([ACTUATOR_RULE, LINKS_IN_BODY_RULE])
    report = await Scheduler(Prober(transport=httpx.MockTransport(handler))).run(
        ScanJob(targets=(Target.parse("http://app.example"),)), store
    )

    assert [m.rule_id for m in report["http://app.example/"].matches] == ["hal-links"]


@pytest.mark.asyncio
async def test_rule_requests_handed_to_prober(make_features):
    store = RuleStore.load([NGINX_RULE, ACTUATOR_RULE])
    prober = InstrumentedProber(make_features)

    await Scheduler(prober).run(ScanJob(targets=_targets(1)), store)

    assert prober.requests == (ProbeRequest(path="/actuator", headers=(("Accept", "application/json"),)),)


def test_match_outcome_unions_hops_and_deduplicates(make_features):
    store = RuleStore.load([NGINX_RULE, SHIRO_RULE])
    hop = make_features(headers={"Server": "nginx", "Set-Cookie": "rememberMe=deleteMe"}, status_code=302)
    final = make_features(headers={"Server": "nginx/1.18.0"})
    outcome = ProbeSuccess(target=Target.parse("http://example.com"), features=final, elapsed=0.1, hops=(hop,))

    assert [m.rule_id for m in match_outcome(outcome, store)] == ["apache-shiro", "nginx"]
