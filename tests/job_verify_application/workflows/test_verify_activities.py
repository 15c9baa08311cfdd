from __future__ import annotations

from typing import List

import pytest

from job_verify_application.services.job_store import DataStoreError
from job_verify_application.verification.classifier import ProbeOutcome
from job_verify_application.workflows import activities as acts
from job_verify_application.workflows.exceptions import DataStoreWorkflowError, InvalidBatchWorkflowError
from verify_fakes import FakeJobStore, candidate


@pytest.fixture
def fake_store(monkeypatch) -> FakeJobStore:
    store = FakeJobStore(
        [
            candidate("a", "https://acme.com/jobs/a"),
            candidate("b", "https://acme.com/jobs/b", removalDetectedAt=1),
        ]
    )
    monkeypatch.setattr(acts, "get_job_store", lambda: store)
    return store


@pytest.fixture
def fake_probe(monkeypatch) -> List[str]:
    probed: List[str] = []

    async def probe(url: str) -> ProbeOutcome:
        probed.append(url)
        code = 404 if url.endswith("/b") else 200
        return ProbeOutcome(requested_url=url, status_code=code, final_url=url)

    monkeypatch.setattr(acts, "get_client", lambda: None)
    monkeypatch.setattr(acts, "UrlProber", lambda client, **kwargs: probe)
    return probed


@pytest.mark.asyncio
async def test_fetch_verification_candidates_serializes_unflagged(fake_store):
    rows = await acts.fetch_verification_candidates({"unflaggedOnly": True})

    assert [r["id"] for r in rows] == ["a"]
    assert rows[0]["rawUrl"] == "https://acme.com/jobs/a"


@pytest.mark.asyncio
async def test_verify_candidate_batch_returns_ordered_verdicts_and_marks_dead(fake_store, fake_probe):
    batch = [c.model_dump(by_alias=True) for c in fake_store.candidates]

    result = await acts.verify_candidate_batch({"candidates": batch, "markDead": True})

    assert [v["candidateId"] for v in result["verdicts"]] == ["a", "b"]
    assert [v["status"] for v in result["verdicts"]] == ["alive", "dead"]
    assert result["deadMarked"] == 1
    assert [job_id for job_id, _ in fake_store.marked] == ["b"]
    assert fake_probe == ["https://acme.com/jobs/a", "https://acme.com/jobs/b"]


@pytest.mark.asyncio
async def test_verify_candidate_batch_empty_and_invalid(fake_store, fake_probe):
    assert await acts.verify_candidate_batch({"candidates": []}) == {"verdicts": [], "deadMarked": 0}

    with pytest.raises(InvalidBatchWorkflowError) as excinfo:
        await acts.verify_candidate_batch({"candidates": [{"title": "no id"}]})
    assert excinfo.value.non_retryable is True


@pytest.mark.asyncio
async def test_data_store_errors_become_retryable_workflow_errors(monkeypatch):
    class _Broken(FakeJobStore):
        async def deactivate_expired_flags(self, cutoff_ms: int) -> int:
            raise DataStoreError("jobs:deactivateExpiredRemovals failed: timeout")

    monkeypatch.setattr(acts, "get_job_store", lambda: _Broken())

    with pytest.raises(DataStoreWorkflowError) as excinfo:
        await acts.expire_flagged_jobs(1_000)
    assert excinfo.value.retryable is True
    assert excinfo.value.non_retryable is False


@pytest.mark.asyncio
async def test_mark_jobs_verified_and_record_run(fake_store):
    assert await acts.mark_jobs_verified({"ids": [], "verifiedAt": 1}) == 0
    assert await acts.mark_jobs_verified({"ids": ["a"], "verifiedAt": 9}) == 1
    assert fake_store.stamped == [(["a"], 9)]

    await acts.record_verification_run({"status": "completed", "failure": None})
    assert fake_store.runs == [{"status": "completed"}]


@pytest.mark.asyncio
async def test_record_run_failure_is_wrapped(monkeypatch):
    class _Broken(FakeJobStore):
        async def record_run(self, summary):
            raise DataStoreError("verification:recordRun failed")

    monkeypatch.setattr(acts, "get_job_store", lambda: _Broken())

    with pytest.raises(RuntimeError, match="Failed to record verification run"):
        await acts.record_verification_run({"status": "failed"})
