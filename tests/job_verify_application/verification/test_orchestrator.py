from __future__ import annotations

import asyncio
from typing import Dict, List

import httpx
import pytest

from job_verify_application.components.models import LivenessStatus
from job_verify_application.services.resilient_client import ResilientClient
from job_verify_application.verification import orchestrator
from job_verify_application.verification.classifier import ProbeOutcome
from job_verify_application.verification.orchestrator import (
    VerifyOptions,
    filter_by_company,
    verify_candidates,
)
from job_verify_application.verification.probe import UrlProber
from verify_fakes import FakeJobStore, candidate


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _alive(url: str) -> ProbeOutcome:
    return ProbeOutcome(requested_url=url, status_code=200, final_url=url)


@pytest.mark.asyncio
async def test_batches_run_sequentially_with_bounded_concurrency():
    state = {"active": 0, "max_active": 0}
    active_at_pause: List[int] = []
    sleep = _SleepRecorder()

    async def probe(url: str) -> ProbeOutcome:
        state["active"] += 1
        state["max_active"] = max(state["max_active"], state["active"])
        await asyncio.sleep(0)
        state["active"] -= 1
        return _alive(url)

    async def pausing_sleep(delay: float) -> None:
        active_at_pause.append(state["active"])
        await sleep(delay)

    candidates = [candidate(f"job-{i}", f"https://acme.com/jobs/{i}") for i in range(25)]
    report = await verify_candidates(
        candidates,
        VerifyOptions(batch_size=10, inter_batch_delay_ms=500),
        probe=probe,
        sleep=pausing_sleep,
    )

    assert len(report.verdicts) == 25
    assert state["max_active"] == 10
    assert sleep.delays == [0.5, 0.5]
    assert active_at_pause == [0, 0]
    assert report.summary.checked == 25
    assert report.summary.alive == 25


@pytest.mark.asyncio
async def test_verdicts_keep_input_order_when_probes_finish_out_of_order():
    delays: Dict[str, float] = {
        "https://acme.com/jobs/0": 0.03,
        "https://acme.com/jobs/1": 0.01,
        "https://acme.com/jobs/2": 0.02,
    }

    async def probe(url: str) -> ProbeOutcome:
        await asyncio.sleep(delays[url])
        return _alive(url)

    candidates = [candidate(f"job-{i}", f"https://acme.com/jobs/{i}") for i in range(3)]
    report = await verify_candidates(candidates, VerifyOptions(batch_size=3), probe=probe, sleep=_SleepRecorder())

    assert [v.candidate_id for v in report.verdicts] == ["job-0", "job-1", "job-2"]


@pytest.mark.asyncio
async def test_end_to_end_alive_dead_timeout_with_write_back():
    outcomes = {
        "https://acme.com/jobs/a": ProbeOutcome(requested_url="https://acme.com/jobs/a", status_code=200, final_url="https://acme.com/jobs/a"),
        "https://acme.com/jobs/b": ProbeOutcome(requested_url="https://acme.com/jobs/b", status_code=404, final_url="https://acme.com/jobs/b"),
        "https://acme.com/jobs/c": ProbeOutcome(requested_url="https://acme.com/jobs/c", error=TimeoutError()),
    }

    async def probe(url: str) -> ProbeOutcome:
        return outcomes[url]

    store = FakeJobStore()
    candidates = [
        candidate("A", "https://acme.com/jobs/a"),
        candidate("B", "acme.com/jobs/b"),
        candidate("C", "https://acme.com/jobs/c"),
    ]
    report = await verify_candidates(
        candidates,
        VerifyOptions(mark_dead=True),
        probe=probe,
        mark_dead=store.mark_removal_detected,
        sleep=_SleepRecorder(),
        clock=lambda: 1_700_000_000_000,
    )

    summary = report.summary.model_dump()
    assert {k: summary[k] for k in ("checked", "alive", "dead", "timeout", "dead_marked")} == {
        "checked": 3,
        "alive": 1,
        "dead": 1,
        "timeout": 1,
        "dead_marked": 1,
    }
    assert store.marked == [("B", 1_700_000_000_000)]
    assert [v.status for v in report.verdicts] == [
        LivenessStatus.ALIVE,
        LivenessStatus.DEAD,
        LivenessStatus.TIMEOUT,
    ]


@pytest.mark.asyncio
async def test_end_to_end_through_prober_and_resilient_client():
    requests: Dict[str, List[str]] = {"a": [], "b": [], "c": []}

    async def handler(request: httpx.Request) -> httpx.Response:
        key = request.url.path.rsplit("/", 1)[-1]
        requests[key].append(request.method)
        if key == "c":
            await asyncio.sleep(5)
        return httpx.Response(404 if key == "b" else 200)

    backoff = _SleepRecorder()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)
    prober = UrlProber(ResilientClient(http, sleep=backoff), timeout_ms=50, retries=2)
    store = FakeJobStore()
    candidates = [
        candidate("A", "https://acme.com/jobs/a"),
        candidate("B", "https://acme.com/jobs/b"),
        candidate("C", "https://acme.com/jobs/c"),
    ]

    report = await verify_candidates(
        candidates,
        VerifyOptions(mark_dead=True),
        probe=prober,
        mark_dead=store.mark_removal_detected,
        sleep=_SleepRecorder(),
        clock=lambda: 1_700_000_000_000,
    )

    summary = report.summary.model_dump()
    assert {k: summary[k] for k in ("checked", "alive", "dead", "timeout", "dead_marked")} == {
        "checked": 3,
        "alive": 1,
        "dead": 1,
        "timeout": 1,
        "dead_marked": 1,
    }
    assert requests == {"a": ["HEAD"], "b": ["HEAD"], "c": ["HEAD", "HEAD", "HEAD"]}
    assert len(backoff.delays) == 2
    assert [v.status for v in report.verdicts] == [
        LivenessStatus.ALIVE,
        LivenessStatus.DEAD,
        LivenessStatus.TIMEOUT,
    ]
    assert store.marked == [("B", 1_700_000_000_000)]
    await http.aclose()


@pytest.mark.asyncio
async def test_deadline_skips_batches_that_cannot_fit():
    now = [0]
    sleep = _SleepRecorder()

    async def probe(url: str) -> ProbeOutcome:
        now[0] += 4_000
        return _alive(url)

    candidates = [candidate(str(i), f"https://acme.com/jobs/{i}") for i in range(6)]
    report = await verify_candidates(
        candidates,
        VerifyOptions(batch_size=2, inter_batch_delay_ms=500, per_request_timeout_ms=12_000),
        probe=probe,
        sleep=sleep,
        clock=lambda: now[0],
        deadline_ms=28_000,
    )

    # 20s left after batch one; 12s after batch two, short of the 12.5s a further batch needs.
    assert [v.candidate_id for v in report.verdicts] == ["0", "1", "2", "3"]
    assert [c.id for c in report.candidates] == ["0", "1", "2", "3"]
    assert report.skipped == 2
    assert report.partial is True
    assert report.summary.checked == 4
    assert sleep.delays == [0.5]


@pytest.mark.asyncio
async def test_deadline_cuts_off_running_batch_with_timeout_verdicts():
    cancelled = []

    async def probe(url: str) -> ProbeOutcome:
        if url.endswith("/slow"):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(url)
                raise
        return _alive(url)

    store = FakeJobStore()
    report = await verify_candidates(
        [candidate("fast", "https://acme.com/jobs/fast"), candidate("slow", "https://acme.com/jobs/slow")],
        VerifyOptions(mark_dead=True),
        probe=probe,
        mark_dead=store.mark_removal_detected,
        deadline_ms=orchestrator.now_ms() + 100,
    )

    assert [v.status for v in report.verdicts] == [LivenessStatus.ALIVE, LivenessStatus.TIMEOUT]
    assert report.verdicts[1].error_detail == orchestrator.DEADLINE_DETAIL
    assert report.skipped == 0
    assert cancelled == ["https://acme.com/jobs/slow"]
    assert store.marked == []


@pytest.mark.asyncio
async def test_mark_dead_disabled_skips_write_back():
    async def probe(url: str) -> ProbeOutcome:
        return ProbeOutcome(requested_url=url, status_code=410)

    store = FakeJobStore()
    report = await verify_candidates(
        [candidate("gone", "https://acme.com/jobs/1")],
        VerifyOptions(mark_dead=False),
        probe=probe,
        mark_dead=store.mark_removal_detected,
        sleep=_SleepRecorder(),
    )

    assert report.summary.dead == 1
    assert report.summary.dead_marked == 0
    assert store.marked == []


@pytest.mark.asyncio
async def test_failed_write_back_is_logged_and_not_counted():
    async def probe(url: str) -> ProbeOutcome:
        return ProbeOutcome(requested_url=url, status_code=200, final_url="https://acme.com/careers")

    store = FakeJobStore()
    store.fail_mark_ids = {"x"}
    report = await verify_candidates(
        [candidate("x", "https://acme.com/jobs/x"), candidate("y", "https://acme.com/jobs/y")],
        VerifyOptions(mark_dead=True),
        probe=probe,
        mark_dead=store.mark_removal_detected,
        sleep=_SleepRecorder(),
        clock=lambda: 5,
    )

    assert report.summary.dead == 2
    assert report.summary.by_status["dead-redirect"] == 2
    assert report.summary.dead_marked == 1
    assert store.marked == [("y", 5)]


@pytest.mark.asyncio
async def test_probe_exception_and_missing_url_do_not_abort_batch():
    probed: List[str] = []

    async def probe(url: str) -> ProbeOutcome:
        probed.append(url)
        if url.endswith("/boom"):
            raise RuntimeError("unexpected parser failure")
        return _alive(url)

    report = await verify_candidates(
        [
            candidate("ok", "https://acme.com/jobs/ok"),
            candidate("boom", "https://acme.com/jobs/boom"),
            candidate("empty", ""),
        ],
        probe=probe,
        sleep=_SleepRecorder(),
    )

    statuses = {v.candidate_id: v.status for v in report.verdicts}
    assert statuses == {
        "ok": LivenessStatus.ALIVE,
        "boom": LivenessStatus.FETCH_ERROR,
        "empty": LivenessStatus.FETCH_ERROR,
    }
    assert report.verdicts[2].error_detail == orchestrator.MISSING_URL_DETAIL
    assert "" not in probed
    assert report.summary.error == 2


@pytest.mark.asyncio
async def test_company_filter_and_progress_callback():
    seen = []

    async def probe(url: str) -> ProbeOutcome:
        return _alive(url)

    report = await verify_candidates(
        [
            candidate("1", "https://acme.com/1", company="ACME Corp"),
            candidate("2", "https://globex.com/2", company="Globex"),
            candidate("3", "https://acme.com/3", company="Acme Labs"),
        ],
        VerifyOptions(company="  acme "),
        probe=probe,
        on_verdict=lambda index, total, cand, verdict: seen.append((index, total, cand.id)),
        sleep=_SleepRecorder(),
    )

    assert [c.id for c in report.candidates] == ["1", "3"]
    assert seen == [(0, 2, "1"), (1, 2, "3")]


def test_filter_by_company_without_needle_keeps_everything():
    items = [candidate("1", "u"), candidate("2", "v", company="")]
    assert filter_by_company(items, None) == items


@pytest.mark.parametrize(
    ("kwargs", "field", "expected"),
    [
        ({"per_request_timeout_ms": 5_000}, "per_request_timeout_ms", 12_000),
        ({"per_request_timeout_ms": 60_000}, "per_request_timeout_ms", 15_000),
        ({"per_request_timeout_ms": 13_500}, "per_request_timeout_ms", 13_500),
        ({"batch_size": 0}, "batch_size", 1),
        ({"retries": -3}, "retries", 0),
        ({"company": "   "}, "company", None),
    ],
)
def test_verify_options_are_clamped(kwargs, field, expected):
    assert getattr(VerifyOptions(**kwargs), field) == expected


def test_verify_options_from_runtime_config_applies_overrides():
    options = VerifyOptions.from_runtime_config(mark_dead=True, company="Acme")

    assert options.mark_dead is True
    assert options.company == "Acme"
    assert options.batch_size >= 1
