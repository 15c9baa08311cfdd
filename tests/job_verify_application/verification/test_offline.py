from __future__ import annotations

from typing import List

import pytest

from job_verify_application.components.models import LivenessStatus, LivenessVerdict
from job_verify_application.verification.classifier import ProbeOutcome
from job_verify_application.verification.offline import (
    build_bulk_update_statement,
    format_progress_line,
    run_offline_check,
)
from job_verify_application.verification.orchestrator import VerifyOptions
from verify_fakes import FakeJobStore, candidate


def test_bulk_update_statement_quotes_ids():
    statement = build_bulk_update_statement(["a1", "o'brien"])

    assert statement == (
        "UPDATE jobs SET is_active = false, updated_at = NOW(), removal_detected_at = NOW() "
        "WHERE id IN ('a1', 'o''brien');"
    )


def test_bulk_update_statement_empty_is_none():
    assert build_bulk_update_statement([]) is None


def test_progress_line_for_dead_redirect_shows_destination():
    cand = candidate("j1", "acme.com/jobs/1", title="Analyst")
    verdict = LivenessVerdict(
        candidateId="j1",
        status=LivenessStatus.DEAD_REDIRECT,
        httpStatusCode=200,
        finalUrl="https://acme.com/careers",
    )

    line = format_progress_line(2, 25, cand, verdict)

    assert line.startswith("[3/25] DEAD: Acme - Analyst (200) https://acme.com/jobs/1")
    assert "-> Redirected to: https://acme.com/careers" in line


def test_progress_line_for_timeout_and_unknown_company():
    cand = candidate("j2", "https://x.io/2", company="", title="Associate")
    verdict = LivenessVerdict(candidateId="j2", status=LivenessStatus.TIMEOUT)

    assert format_progress_line(0, 1, cand, verdict) == "[1/1] TIMEOUT: Unknown - Associate https://x.io/2"


@pytest.mark.asyncio
async def test_run_offline_check_prints_progress_summary_and_sql():
    store = FakeJobStore(
        [
            candidate("A", "https://acme.com/jobs/a"),
            candidate("B", "https://acme.com/jobs/b"),
            candidate("C", "https://acme.com/jobs/c"),
        ]
    )

    async def probe(url: str) -> ProbeOutcome:
        if url.endswith("/b"):
            return ProbeOutcome(requested_url=url, status_code=404, final_url=url)
        if url.endswith("/c"):
            return ProbeOutcome(requested_url=url, status_code=503, final_url=url)
        return ProbeOutcome(requested_url=url, status_code=200, final_url=url)

    lines: List[str] = []
    report = await run_offline_check(
        store=store,
        probe=probe,
        options=VerifyOptions(batch_size=10, inter_batch_delay_ms=0),
        echo=lines.append,
    )

    output = "\n".join(lines)
    assert "Total active jobs: 3" in output
    assert "[2/3] DEAD: Acme - Analyst (404) https://acme.com/jobs/b" in output
    assert "[3/3] ERROR: Acme - Analyst (503)" in output
    assert "  Dead: 1" in output
    assert "ERROR JOBS (may need manual check):" in output
    assert output.rstrip().endswith("WHERE id IN ('B');")
    assert report.summary.checked == 3
    assert store.marked == []
