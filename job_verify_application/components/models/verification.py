from __future__ import annotations

from enum import StrEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LivenessStatus(StrEnum):
    ALIVE = "alive"
    DEAD = "dead"
    DEAD_REDIRECT = "dead-redirect"
    REDIRECT = "redirect"
    ERROR = "error"
    TIMEOUT = "timeout"
    FETCH_ERROR = "fetch-error"

    @property
    def is_dead(self) -> bool:
        return self in (LivenessStatus.DEAD, LivenessStatus.DEAD_REDIRECT)


class VerificationCandidate(BaseModel):
    """One job record whose apply URL should be probed."""

    id: str
    title: str = ""
    company_name: str = Field(default="", alias="companyName")
    raw_url: str = Field(default="", alias="rawUrl")
    removal_detected_at: Optional[int] = Field(default=None, alias="removalDetectedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("title", "company_name", "raw_url", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def already_flagged(self) -> bool:
        return self.removal_detected_at is not None

    def probe_url(self) -> str:
        """Return the URL to probe, defaulting to https when no scheme is present."""

        url = self.raw_url.strip()
        if not url:
            return ""
        if url.lower().startswith(("http://", "https://")):
            return url
        return f"https://{url}"


class LivenessVerdict(BaseModel):
    candidate_id: str = Field(alias="candidateId")
    status: LivenessStatus
    http_status_code: Optional[int] = Field(default=None, alias="httpStatusCode")
    final_url: Optional[str] = Field(default=None, alias="finalUrl")
    error_detail: Optional[str] = Field(default=None, alias="errorDetail")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class VerificationSummary(BaseModel):
    checked: int = 0
    alive: int = 0
    dead: int = 0
    redirect: int = 0
    error: int = 0
    timeout: int = 0
    dead_marked: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_verdicts(cls, verdicts: List[LivenessVerdict], *, dead_marked: int = 0) -> "VerificationSummary":
        by_status = {status.value: 0 for status in LivenessStatus}
        for verdict in verdicts:
            by_status[verdict.status.value] += 1
        return cls(
            checked=len(verdicts),
            alive=by_status[LivenessStatus.ALIVE],
            dead=by_status[LivenessStatus.DEAD] + by_status[LivenessStatus.DEAD_REDIRECT],
            redirect=by_status[LivenessStatus.REDIRECT],
            error=by_status[LivenessStatus.ERROR] + by_status[LivenessStatus.FETCH_ERROR],
            timeout=by_status[LivenessStatus.TIMEOUT],
            dead_marked=dead_marked,
            by_status=by_status,
        )


class VerificationReport(BaseModel):
    summary: VerificationSummary
    candidates: List[VerificationCandidate] = Field(default_factory=list)
    verdicts: List[LivenessVerdict] = Field(default_factory=list)
    # Candidates left unprobed because the run hit its deadline.
    skipped: int = 0

    @property
    def partial(self) -> bool:
        return self.skipped > 0

    def dead_pairs(self) -> List[tuple[VerificationCandidate, LivenessVerdict]]:
        return [(c, v) for c, v in zip(self.candidates, self.verdicts) if v.status.is_dead]


def load_candidates(rows: Any) -> List[VerificationCandidate]:
    """Normalize raw data store rows into candidates, dropping rows without an id."""

    if not isinstance(rows, list):
        return []
    candidates: List[VerificationCandidate] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        row_id = row.get("id") or row.get("_id")
        if not row_id:
            continue
        company = row.get("company")
        company_name = row.get("companyName")
        if company_name is None and isinstance(company, dict):
            company_name = company.get("name")
        candidates.append(
            VerificationCandidate(
                id=str(row_id),
                title=row.get("title") or "",
                companyName=company_name or "",
                rawUrl=row.get("rawUrl") or row.get("applyUrl") or row.get("apply_url") or "",
                removalDetectedAt=row.get("removalDetectedAt"),
            )
        )
    return candidates
