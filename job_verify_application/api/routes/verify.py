from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...components.models import VerificationReport
from ...config import runtime_config, settings
from ...services.job_store import JobStore
from ...verification.classifier import build_generic_page_rules
from ...verification.orchestrator import VerifyOptions, now_ms, verify_candidates
from ..dependencies import ProberFactory, get_prober_factory, get_store, require_rate_limit

logger = logging.getLogger("verify.api")

router = APIRouter()

NO_STORE = {"Cache-Control": "no-store"}
SUMMARY_FIELDS = ("checked", "alive", "dead", "redirect", "error", "timeout", "dead_marked")


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return runtime_config.verify_default_limit
    return max(1, min(int(limit), runtime_config.verify_max_limit))


def serialize_report(report: VerificationReport) -> Dict[str, Any]:
    summary = report.summary.model_dump()
    payload_summary = {name: summary[name] for name in SUMMARY_FIELDS}
    payload_summary["by_status"] = summary["by_status"]

    results: List[Dict[str, Any]] = []
    for candidate, verdict in zip(report.candidates, report.verdicts):
        item = verdict.model_dump(by_alias=True, mode="json")
        item.update(
            {
                "title": candidate.title,
                "company": candidate.company_name,
                "url": candidate.probe_url(),
                "alreadyFlagged": candidate.already_flagged,
            }
        )
        results.append(item)
    return {
        "summary": payload_summary,
        "results": results,
        "partial": report.partial,
        "skipped": report.skipped,
    }


@router.get("/api/admin/verify-urls", dependencies=[Depends(require_rate_limit("verify-urls"))])
async def verify_urls(
    company: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    mark_dead: bool = Query(False, alias="markDead"),
    store: JobStore = Depends(get_store),
    prober_factory: ProberFactory = Depends(get_prober_factory),
):
    """Probe a page of active jobs and optionally flag the dead ones."""

    options = VerifyOptions.from_runtime_config(mark_dead=mark_dead, company=company)
    page_size = clamp_limit(limit)

    deadline_ms = now_ms() + int(settings.verify_max_duration_seconds * 1000)

    try:
        candidates = await store.fetch_active_candidates(
            limit=page_size, offset=max(0, offset), company=options.company
        )
        report = await verify_candidates(
            candidates,
            options,
            probe=prober_factory(options),
            mark_dead=store.mark_removal_detected,
            rules=build_generic_page_rules(runtime_config.generic_page_patterns),
            deadline_ms=deadline_ms,
        )
    except Exception:
        logger.exception("verify-urls failed limit=%s offset=%s company=%s", page_size, offset, company)
        return JSONResponse({"error": "Verification failed"}, status_code=500, headers=NO_STORE)

    if report.partial:
        logger.warning(
            "verify-urls returned partial results seconds=%s checked=%s skipped=%s",
            settings.verify_max_duration_seconds,
            report.summary.checked,
            report.skipped,
        )
    return JSONResponse(serialize_report(report), headers=NO_STORE)
