from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from ..components.models import (
    LivenessStatus,
    LivenessVerdict,
    VerificationCandidate,
    VerificationReport,
)
from ..config import runtime_config, settings
from ..services.job_store import JobStore, get_job_store
from ..services.resilient_client import ResilientClient
from .classifier import build_generic_page_rules
from .orchestrator import VerifyOptions, verify_candidates
from .probe import ProbeFn, UrlProber

Echo = Callable[[str], None]

UNKNOWN_COMPANY = "Unknown"
SEPARATOR = "=" * 60

_PROGRESS_LABELS = {
    LivenessStatus.ALIVE: "ALIVE",
    LivenessStatus.DEAD: "DEAD",
    LivenessStatus.DEAD_REDIRECT: "DEAD",
    LivenessStatus.REDIRECT: "REDIRECT",
    LivenessStatus.ERROR: "ERROR",
    LivenessStatus.FETCH_ERROR: "ERROR",
    LivenessStatus.TIMEOUT: "TIMEOUT",
}


def _company(candidate: VerificationCandidate) -> str:
    return candidate.company_name or UNKNOWN_COMPANY


def _detail(verdict: LivenessVerdict) -> str:
    if verdict.http_status_code is not None:
        return str(verdict.http_status_code)
    return verdict.error_detail or "N/A"


def format_progress_line(
    index: int, total: int, candidate: VerificationCandidate, verdict: LivenessVerdict
) -> str:
    """One line per record, e.g. ``[3/25] DEAD: Acme - Analyst (404) https://...``."""

    label = _PROGRESS_LABELS.get(verdict.status, verdict.status.value.upper())
    line = f"[{index + 1}/{total}] {label}: {_company(candidate)} - {candidate.title}"
    if verdict.status not in (LivenessStatus.ALIVE, LivenessStatus.TIMEOUT):
        line += f" ({_detail(verdict)})"
    line += f" {candidate.probe_url()}"
    if verdict.final_url and verdict.final_url != candidate.probe_url() and verdict.status is not LivenessStatus.ALIVE:
        line += f"\n       -> Redirected to: {verdict.final_url}"
    return line


def build_bulk_update_statement(job_ids: Sequence[str]) -> Optional[str]:
    """SQL that deactivates the given jobs, or None when there is nothing to update."""

    if not job_ids:
        return None
    quoted = ", ".join("'" + str(job_id).replace("'", "''") + "'" for job_id in job_ids)
    return (
        "UPDATE jobs SET is_active = false, updated_at = NOW(), removal_detected_at = NOW() "
        f"WHERE id IN ({quoted});"
    )


def format_report(report: VerificationReport) -> List[str]:
    summary = report.summary
    lines = [
        "",
        SEPARATOR,
        "SUMMARY:",
        f"  Alive: {summary.alive}",
        f"  Dead: {summary.dead}",
        f"  Redirects (non-generic): {summary.redirect}",
        f"  Errors: {summary.error}",
        f"  Timeouts: {summary.timeout}",
        f"  TOTAL: {summary.checked}",
    ]

    pairs = list(zip(report.candidates, report.verdicts))
    dead = [(c, v) for c, v in pairs if v.status.is_dead]
    errors = [(c, v) for c, v in pairs if v.status in (LivenessStatus.ERROR, LivenessStatus.FETCH_ERROR)]
    timeouts = [(c, v) for c, v in pairs if v.status is LivenessStatus.TIMEOUT]

    if dead:
        lines.extend(["", "DEAD JOBS (need deactivation):"])
        for candidate, verdict in dead:
            lines.append(
                f"  - [{candidate.id}] {_company(candidate)}: {candidate.title} "
                f"({verdict.status.value}, HTTP {verdict.http_status_code})"
            )
            lines.append(f"    URL: {candidate.probe_url()}")
            if verdict.final_url and verdict.final_url != candidate.probe_url():
                lines.append(f"    Redirected to: {verdict.final_url}")

    if errors:
        lines.extend(["", "ERROR JOBS (may need manual check):"])
        for candidate, verdict in errors:
            lines.append(f"  - [{candidate.id}] {_company(candidate)}: {candidate.title} (HTTP {_detail(verdict)})")
            lines.append(f"    URL: {candidate.probe_url()}")

    if timeouts:
        lines.extend(["", "TIMEOUT JOBS (may need manual check):"])
        for candidate, _verdict in timeouts:
            lines.append(f"  - [{candidate.id}] {_company(candidate)}: {candidate.title}")
            lines.append(f"    URL: {candidate.probe_url()}")

    statement = build_bulk_update_statement([c.id for c, _ in dead])
    if statement:
        lines.extend(["", "SQL to deactivate dead jobs:", statement])
    return lines


async def run_offline_check(
    *,
    store: Optional[JobStore] = None,
    probe: Optional[ProbeFn] = None,
    options: Optional[VerifyOptions] = None,
    echo: Echo = print,
) -> VerificationReport:
    """Verify every active job and print progress, a summary and the deactivation SQL."""

    store = store or get_job_store()
    options = options or VerifyOptions.from_runtime_config(batch_size=10)
    candidates = await store.fetch_active_candidates()
    echo(f"\nTotal active jobs: {len(candidates)}\n")

    def _on_verdict(index: int, total: int, candidate: VerificationCandidate, verdict: LivenessVerdict) -> None:
        echo(format_progress_line(index, total, candidate, verdict))

    rules = build_generic_page_rules(runtime_config.generic_page_patterns)
    if probe is not None:
        report = await verify_candidates(
            candidates,
            options,
            probe=probe,
            mark_dead=store.mark_removal_detected,
            rules=rules,
            on_verdict=_on_verdict,
        )
    else:
        async with ResilientClient(user_agent=settings.verify_user_agent) as client:
            prober = UrlProber(
                client,
                timeout_ms=options.per_request_timeout_ms,
                retries=options.retries,
                user_agent=settings.verify_user_agent,
            )
            report = await verify_candidates(
                candidates,
                options,
                probe=prober,
                mark_dead=store.mark_removal_detected,
                rules=rules,
                on_verdict=_on_verdict,
            )

    for line in format_report(report):
        echo(line)
    return report
