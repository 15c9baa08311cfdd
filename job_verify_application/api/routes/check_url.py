from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...components.models import LivenessStatus
from ...config import runtime_config
from ...services.job_store import JobStore
from ...verification.classifier import build_generic_page_rules
from ...verification.orchestrator import VerifyOptions, now_ms, verify_candidate
from ..dependencies import ProberFactory, get_prober_factory, get_store, require_rate_limit

logger = logging.getLogger("verify.api")

router = APIRouter()

CHECK_CACHE_CONTROL = {"Cache-Control": "s-maxage=120, stale-while-revalidate=300"}


@router.get("/api/jobs/check-url", dependencies=[Depends(require_rate_limit("check-url"))])
async def check_url(
    id: Optional[str] = None,
    store: JobStore = Depends(get_store),
    prober_factory: ProberFactory = Depends(get_prober_factory),
):
    """Probe one job's apply URL, flag it when dead and stamp it when alive."""

    job_id = (id or "").strip()
    if not job_id:
        return JSONResponse({"error": "Valid job ID required"}, status_code=400)

    try:
        candidate = await store.get_candidate(job_id)
    except Exception:
        logger.exception("check-url lookup failed job_id=%s", job_id)
        return JSONResponse({"error": "Check failed"}, status_code=500)
    if candidate is None:
        return JSONResponse({"error": "Job not found"}, status_code=404)

    options = VerifyOptions.from_runtime_config()
    verdict = await verify_candidate(
        candidate,
        prober_factory(options),
        build_generic_page_rules(runtime_config.generic_page_patterns),
    )

    flagged = False
    try:
        if verdict.status.is_dead:
            await store.mark_removal_detected(candidate.id, now_ms())
            flagged = True
        elif verdict.status is LivenessStatus.ALIVE:
            await store.stamp_last_verified([candidate.id], now_ms())
    except Exception as exc:  # noqa: BLE001
        logger.warning("check-url write-back failed job_id=%s status=%s error=%s", job_id, verdict.status.value, exc)

    payload = verdict.model_dump(by_alias=True, mode="json")
    payload.update(
        {
            "applyUrl": candidate.probe_url() or None,
            "alreadyFlagged": candidate.already_flagged,
            "flagged": flagged,
        }
    )
    return JSONResponse(payload, headers=CHECK_CACHE_CONTROL)
