from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from ..components.models import LivenessStatus, LivenessVerdict, VerificationSummary
    from ..config import runtime_config, settings
    from .activities import (
        expire_flagged_jobs,
        fetch_verification_candidates,
        mark_jobs_verified,
        parse_verdicts,
        record_verification_run,
        verify_candidate_batch,
    )

DAY_MS = 24 * 60 * 60 * 1000
VERIFIED_STATUSES = (LivenessStatus.ALIVE, LivenessStatus.REDIRECT)

BATCH_RETRY_POLICY = RetryPolicy(
    initial_interval=timedelta(seconds=5),
    maximum_attempts=3,
    non_retryable_error_types=["InvalidBatchWorkflowError"],
)


@dataclass
class VerifyJobsSummary:
    checked: int = 0
    alive: int = 0
    dead: int = 0
    redirect: int = 0
    error: int = 0
    timeout: int = 0
    newly_flagged: int = 0
    deactivated_expired: int = 0
    verified_stamped: int = 0
    elapsed_seconds: float = 0.0
    by_status: Dict[str, int] = field(default_factory=dict)


def _now_ms() -> int:
    return int(workflow.now().timestamp() * 1000)


def _workflow_logger() -> logging.Logger | logging.LoggerAdapter:
    """Workflow-aware logger; plain logger when run outside a workflow event loop."""

    try:
        workflow.logger.isEnabledFor(logging.INFO)
    except Exception:
        return logging.getLogger("temporalio.workflow")
    return workflow.logger


@workflow.defn(name="VerifyJobs")
class VerifyJobsWorkflow:
    """Daily sweep: expire stale flags, probe unflagged jobs, flag the dead, stamp the live."""

    @workflow.run
    async def run(self, request: Optional[Dict[str, Any]] = None) -> VerifyJobsSummary:  # type: ignore[override]
        request = request or {}
        logger = _workflow_logger()
        started_at = _now_ms()
        summary = VerifyJobsSummary()
        failure_reasons: List[str] = []
        status = "completed"

        try:
            cutoff = started_at - runtime_config.removal_grace_period_days * DAY_MS
            summary.deactivated_expired = await workflow.execute_activity(
                expire_flagged_jobs,
                args=[cutoff],
                start_to_close_timeout=timedelta(minutes=2),
            )

            candidates: List[Dict[str, Any]] = await workflow.execute_activity(
                fetch_verification_candidates,
                args=[{"unflaggedOnly": True, "company": request.get("company")}],
                start_to_close_timeout=timedelta(minutes=2),
            )
            logger.info("Checking %s active unflagged jobs", len(candidates))

            batch_size = max(1, int(request.get("batchSize") or runtime_config.verify_batch_size))
            delay_ms = max(0, runtime_config.verify_inter_batch_delay_ms)
            verdicts: List[LivenessVerdict] = []
            for start in range(0, len(candidates), batch_size):
                if start > 0 and delay_ms:
                    await workflow.sleep(timedelta(milliseconds=delay_ms))
                batch = candidates[start : start + batch_size]
                result = await workflow.execute_activity(
                    verify_candidate_batch,
                    args=[{"candidates": batch, "markDead": True}],
                    start_to_close_timeout=timedelta(minutes=5),
                    retry_policy=BATCH_RETRY_POLICY,
                )
                verdicts.extend(parse_verdicts(result.get("verdicts") or []))
                summary.newly_flagged += int(result.get("deadMarked") or 0)

            counts = VerificationSummary.from_verdicts(verdicts, dead_marked=summary.newly_flagged)
            summary.checked = counts.checked
            summary.alive = counts.alive
            summary.dead = counts.dead
            summary.redirect = counts.redirect
            summary.error = counts.error
            summary.timeout = counts.timeout
            summary.by_status = dict(counts.by_status)

            verified_ids = [v.candidate_id for v in verdicts if v.status in VERIFIED_STATUSES]
            chunk_size = max(1, runtime_config.last_verified_chunk_size)
            verified_at = _now_ms()
            for start in range(0, len(verified_ids), chunk_size):
                summary.verified_stamped += await workflow.execute_activity(
                    mark_jobs_verified,
                    args=[{"ids": verified_ids[start : start + chunk_size], "verifiedAt": verified_at}],
                    start_to_close_timeout=timedelta(minutes=1),
                )

            logger.info(
                "Results: %s alive, %s dead (%s flagged), %s redirect, %s error, %s timeout",
                summary.alive,
                summary.dead,
                summary.newly_flagged,
                summary.redirect,
                summary.error,
                summary.timeout,
            )
            return summary
        except Exception as e:  # noqa: BLE001
            status = "failed"
            if isinstance(e, ActivityError) and e.cause:
                failure_reasons.append(str(e.cause))
            else:
                failure_reasons.append(str(e))
            raise
        finally:
            completed_at = _now_ms()
            summary.elapsed_seconds = round((completed_at - started_at) / 1000, 1)
            try:
                await workflow.execute_activity(
                    record_verification_run,
                    args=[
                        {
                            "runId": workflow.info().run_id,
                            "workflowId": workflow.info().workflow_id,
                            "workflowName": "VerifyJobs",
                            "status": status,
                            "startedAt": started_at,
                            "completedAt": completed_at,
                            "checked": summary.checked,
                            "alive": summary.alive,
                            "dead": summary.dead,
                            "redirect": summary.redirect,
                            "error": summary.error,
                            "timeout": summary.timeout,
                            "newlyFlagged": summary.newly_flagged,
                            "deactivatedExpired": summary.deactivated_expired,
                            "taskQueue": settings.task_queue,
                            "failure": "; ".join(failure_reasons) if failure_reasons else None,
                        }
                    ],
                    schedule_to_close_timeout=timedelta(seconds=30),
                )
            except Exception:
                # Best effort; avoid failing workflow on logging
                pass
