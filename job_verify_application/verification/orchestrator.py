from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from ..components.models import (
    LivenessStatus,
    LivenessVerdict,
    VerificationCandidate,
    VerificationReport,
    VerificationSummary,
)
from ..config import runtime_config
from ..services import telemetry
from .classifier import DEFAULT_GENERIC_PAGE_RULES, GenericPageRule, ProbeOutcome, classify
from .probe import ProbeFn

logger = logging.getLogger("verify.orchestrator")

MIN_PER_REQUEST_TIMEOUT_MS = 12_000
MAX_PER_REQUEST_TIMEOUT_MS = 15_000
MISSING_URL_DETAIL = "missing apply url"
DEADLINE_DETAIL = "verification time limit reached"

MarkDeadFn = Callable[[str, int], Awaitable[Any]]
VerdictCallback = Callable[[int, int, VerificationCandidate, LivenessVerdict], None]
SleepFn = Callable[[float], Awaitable[Any]]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class VerifyOptions:
    batch_size: int = 10
    inter_batch_delay_ms: int = 500
    per_request_timeout_ms: int = MIN_PER_REQUEST_TIMEOUT_MS
    retries: int = 2
    mark_dead: bool = False
    company: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "batch_size", max(1, int(self.batch_size)))
        object.__setattr__(self, "inter_batch_delay_ms", max(0, int(self.inter_batch_delay_ms)))
        object.__setattr__(self, "retries", max(0, int(self.retries)))
        timeout = min(max(int(self.per_request_timeout_ms), MIN_PER_REQUEST_TIMEOUT_MS), MAX_PER_REQUEST_TIMEOUT_MS)
        object.__setattr__(self, "per_request_timeout_ms", timeout)
        company = (self.company or "").strip() or None
        object.__setattr__(self, "company", company)

    @classmethod
    def from_runtime_config(cls, **overrides: Any) -> "VerifyOptions":
        base = cls(
            batch_size=runtime_config.verify_batch_size,
            inter_batch_delay_ms=runtime_config.verify_inter_batch_delay_ms,
            per_request_timeout_ms=runtime_config.verify_per_request_timeout_ms,
            retries=runtime_config.verify_retries,
        )
        return replace(base, **overrides) if overrides else base


def filter_by_company(
    candidates: Iterable[VerificationCandidate], company: Optional[str]
) -> List[VerificationCandidate]:
    if not company:
        return list(candidates)
    needle = company.lower()
    return [c for c in candidates if needle in (c.company_name or "").lower()]


async def verify_candidate(
    candidate: VerificationCandidate,
    probe: ProbeFn,
    rules: Sequence[GenericPageRule] = DEFAULT_GENERIC_PAGE_RULES,
) -> LivenessVerdict:
    """Probe and classify one candidate. Only task cancellation escapes."""

    url = candidate.probe_url()
    if not url:
        return LivenessVerdict(
            candidateId=candidate.id,
            status=LivenessStatus.FETCH_ERROR,
            errorDetail=MISSING_URL_DETAIL,
        )
    try:
        outcome = await probe(url)
    except Exception as exc:  # noqa: BLE001
        logger.warning("probe raised candidate_id=%s url=%s error=%r", candidate.id, url, exc)
        outcome = ProbeOutcome(requested_url=url, error=exc)
    return classify(candidate.id, outcome, rules)


async def mark_dead_candidates(
    pairs: Sequence[tuple[VerificationCandidate, LivenessVerdict]],
    mark_dead: MarkDeadFn,
    *,
    clock: Callable[[], int] = now_ms,
) -> int:
    """Flag each dead candidate independently; a failed write never stops the rest."""

    detected_at = clock()
    marked = 0
    for candidate, verdict in pairs:
        try:
            await mark_dead(candidate.id, detected_at)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "mark dead failed candidate_id=%s status=%s error=%s",
                candidate.id,
                verdict.status.value,
                exc,
            )
            continue
        marked += 1
    return marked


async def _settle_batch(
    batch: Sequence[VerificationCandidate],
    probe: ProbeFn,
    rules: Sequence[GenericPageRule],
    timeout_s: Optional[float],
) -> List[LivenessVerdict]:
    """Run one batch concurrently; probes still running after ``timeout_s`` become timeout verdicts."""

    if timeout_s is None:
        return list(await asyncio.gather(*(verify_candidate(c, probe, rules) for c in batch)))

    tasks = [asyncio.ensure_future(verify_candidate(c, probe, rules)) for c in batch]
    _done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    verdicts: List[LivenessVerdict] = []
    for candidate, task in zip(batch, tasks):
        if task.cancelled():
            verdicts.append(
                LivenessVerdict(
                    candidateId=candidate.id,
                    status=LivenessStatus.TIMEOUT,
                    errorDetail=DEADLINE_DETAIL,
                )
            )
        else:
            verdicts.append(task.result())
    return verdicts


async def verify_candidates(
    candidates: Iterable[VerificationCandidate],
    options: Optional[VerifyOptions] = None,
    *,
    probe: ProbeFn,
    mark_dead: Optional[MarkDeadFn] = None,
    rules: Sequence[GenericPageRule] = DEFAULT_GENERIC_PAGE_RULES,
    on_verdict: Optional[VerdictCallback] = None,
    sleep: SleepFn = asyncio.sleep,
    clock: Callable[[], int] = now_ms,
    deadline_ms: Optional[int] = None,
) -> VerificationReport:
    """Verify candidates batch by batch and aggregate the verdicts.

    Probes inside a batch run concurrently; the next batch starts only after
    every probe of the current one has settled, with ``inter_batch_delay_ms``
    in between. Verdicts keep the input order of the (filtered) candidates.

    With ``deadline_ms`` (epoch ms, same clock as ``clock``) the first batch
    always starts, a later batch starts only while the delay plus one probe
    attempt still fits, and a running batch is cut off at the deadline. The
    report then covers the candidates reached so far and counts the rest as
    ``skipped``.
    """

    options = options or VerifyOptions()
    selected = filter_by_company(candidates, options.company)
    total = len(selected)
    verdicts: List[LivenessVerdict] = []
    started_at = clock()

    for start in range(0, total, options.batch_size):
        if start > 0:
            if deadline_ms is not None:
                remaining_ms = deadline_ms - clock()
                if remaining_ms < options.inter_batch_delay_ms + options.per_request_timeout_ms:
                    logger.warning(
                        "verification deadline reached verified=%s skipped=%s remaining_ms=%s",
                        start,
                        total - start,
                        remaining_ms,
                    )
                    break
            if options.inter_batch_delay_ms > 0:
                await sleep(options.inter_batch_delay_ms / 1000)

        batch = selected[start : start + options.batch_size]
        timeout_s = None if deadline_ms is None else (deadline_ms - clock()) / 1000
        results = await _settle_batch(batch, probe, rules, timeout_s)
        for offset, verdict in enumerate(results):
            index = start + offset
            verdicts.append(verdict)
            if on_verdict is not None:
                on_verdict(index, total, selected[index], verdict)
        logger.debug("verified batch start=%s size=%s total=%s", start, len(batch), total)

    reached = selected[: len(verdicts)]

    dead_marked = 0
    if options.mark_dead and mark_dead is not None:
        dead_pairs = [(c, v) for c, v in zip(reached, verdicts) if v.status.is_dead]
        dead_marked = await mark_dead_candidates(dead_pairs, mark_dead, clock=clock)

    summary = VerificationSummary.from_verdicts(verdicts, dead_marked=dead_marked)
    skipped = total - len(verdicts)
    logger.info(
        "verification complete checked=%s alive=%s dead=%s redirect=%s error=%s timeout=%s dead_marked=%s skipped=%s",
        summary.checked,
        summary.alive,
        summary.dead,
        summary.redirect,
        summary.error,
        summary.timeout,
        summary.dead_marked,
        skipped,
    )
    _emit_run_telemetry(summary, options, elapsed_ms=clock() - started_at, skipped=skipped)
    return VerificationReport(summary=summary, candidates=reached, verdicts=verdicts, skipped=skipped)


def _emit_run_telemetry(
    summary: VerificationSummary, options: VerifyOptions, *, elapsed_ms: int, skipped: int = 0
) -> None:
    if not telemetry.is_enabled():
        return
    try:
        telemetry.emit_event(
            "verify.run",
            f"verified {summary.checked} job urls",
            summary=summary.model_dump(),
            company=options.company,
            markDead=options.mark_dead,
            elapsedMs=elapsed_ms,
            skipped=skipped,
        )
    except Exception:  # noqa: BLE001
        # Best-effort; do not raise
        logger.debug("verify.run telemetry failed", exc_info=True)
