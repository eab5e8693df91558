from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import Field

from domain import OutcomeRecord, PromotionOutcome, PromotionPhase, PublicPromotionStatus
from models import Commit, RemoteStatus, WireModel


class ErrorResponse(WireModel):
    error: str = Field(..., description="Human readable reason.")
    code: str = Field(..., description="Stable machine readable error code.")


class PromoteConfig(WireModel):
    webhook_url_configured: bool = Field(..., description="PROMOTE_PROD_WEBHOOK_URL is set.")
    webhook_secret_configured: bool = Field(..., description="PROMOTE_PROD_WEBHOOK_SECRET is set.")


class LastOutcome(WireModel):
    outcome: PromotionOutcome
    at: datetime
    deployed_sha: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_record(cls, record: Optional[OutcomeRecord]) -> Optional["LastOutcome"]:
        if record is None:
            return None
        return cls(
            outcome=record.outcome,
            at=record.at,
            deployed_sha=record.deployed_sha,
            message=record.message,
        )


class PromotionView(WireModel):
    phase: PromotionPhase = Field(..., description="Reconciled promotion phase.")
    is_running: bool = Field(..., description="True while the UI should show a running promotion.")
    progress_label: str = Field(default="", description="Best-effort stage label from the executor log.")
    remote_available: bool = Field(..., description="Whether the executor status endpoint answered.")
    triggered_at: Optional[datetime] = Field(default=None, description="When this console triggered the run.")
    elapsed_seconds: Optional[float] = Field(default=None, description="Seconds since the local trigger.")
    poll_interval_seconds: int = Field(..., description="Suggested delay before the next status poll.")
    last_outcome: Optional[LastOutcome] = None

    @classmethod
    def from_status(cls, status: PublicPromotionStatus, *, poll_interval_seconds: int) -> "PromotionView":
        return cls(
            phase=status.phase,
            is_running=status.is_running,
            progress_label=status.progress_label,
            remote_available=status.remote_available,
            triggered_at=status.triggered_at,
            elapsed_seconds=round(status.elapsed_seconds, 1) if status.elapsed_seconds is not None else None,
            poll_interval_seconds=poll_interval_seconds,
            last_outcome=LastOutcome.from_record(status.last_outcome),
        )


class AdminStatus(WireModel):
    app_env: str
    branch: Optional[str] = None
    head_sha: Optional[str] = None
    prod_deployed_sha: Optional[str] = None
    prod_deployed_at: Optional[datetime] = None
    pending_count: int = 0
    recent_commit_count: int = 0
    promote_available: bool = False
    promote_config: PromoteConfig
    promote_in_progress: bool = Field(
        default=False, description="A live promotion lock exists in this server's own store."
    )
    promote_remote_status: Optional[RemoteStatus] = None
    recent_commits: List[Commit] = Field(default_factory=list)
    pending_commits: List[Commit] = Field(default_factory=list)
    pending_baseline_unknown: bool = False
    pending_diverged: bool = False
    pending_truncated: bool = False
    promotion: PromotionView
    errors: Dict[str, str] = Field(
        default_factory=dict, description="Sub-sources that failed, keyed by source name."
    )


class PromoteRequest(WireModel):
    promoted_by: Optional[str] = Field(
        default=None, max_length=120, description="Operator name recorded on the lock."
    )


class PromoteResponse(WireModel):
    accepted: bool = True
    triggered_at: datetime
    requested_by: str
    head_sha: Optional[str] = None
    message: Optional[str] = None


class TriggerRequest(WireModel):
    promoted_by: Optional[str] = Field(default=None, max_length=120)
    head_sha: Optional[str] = Field(default=None, pattern=r"^[0-9a-fA-F]{7,40}$")


class TriggerResponse(WireModel):
    accepted: bool = True
    message: str = "Promotion started"
    held_by: str
    started_at: datetime
    head_sha: Optional[str] = None
