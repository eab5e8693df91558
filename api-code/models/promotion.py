from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WireModel(BaseModel):
    """Base model serialised as camelCase on the wire, snake_case in Python."""

    model_config = {
        "populate_by_name": True,
        "alias_generator": to_camel,
    }


class Commit(WireModel):
    sha: str = Field(..., description="Full commit SHA.")
    short_sha: str = Field(..., description="Abbreviated SHA.")
    author: str = Field(default="", description="Author name.")
    subject: str = Field(default="", description="First line of the commit message.")
    date_iso: str = Field(default="", description="Author date, ISO-8601.")
    parents: list[str] = Field(default_factory=list, description="Parent SHAs.")


class DeploymentRecord(WireModel):
    deployed_sha: Optional[str] = Field(
        default=None, description="Last SHA successfully promoted; None before the first run."
    )
    deployed_at: Optional[datetime] = Field(default=None, description="Completion timestamp.")


class PromotionLock(WireModel):
    held_by: str = Field(..., description="Operator (or system) that started the promotion.")
    started_at: datetime = Field(default_factory=utc_now)
    token: str = Field(..., description="Compare-and-set identity of this lock instance.")
    head_sha: Optional[str] = Field(default=None, description="SHA requested by the trigger.")

    def to_document(self) -> dict[str, Any]:
        return {
            "held_by": self.held_by,
            "started_at": ensure_utc(self.started_at),
            "token": self.token,
            "head_sha": self.head_sha,
        }

    @classmethod
    def from_document(cls, document: Optional[dict[str, Any]]) -> Optional["PromotionLock"]:
        if not document:
            return None
        data = dict(document)
        data["started_at"] = ensure_utc(data.get("started_at"))
        return cls.model_validate(data)


class PromotionFailure(WireModel):
    message: str
    failed_at: datetime = Field(default_factory=utc_now)
    held_by: Optional[str] = None
    lock_started_at: Optional[datetime] = Field(
        default=None, description="started_at of the lock whose run failed, on the executor clock."
    )


class RemoteStatus(WireModel):
    """Snapshot of executor state as seen by the control plane."""

    in_progress: bool = False
    lock: Optional[PromotionLock] = None
    recent_log_lines: list[str] = Field(default_factory=list)
    deployed_sha: Optional[str] = None
    deployed_at: Optional[datetime] = None
    last_failure: Optional[PromotionFailure] = None
    error: Optional[str] = Field(
        default=None, description="Set when the status endpoint itself failed or is missing."
    )

    @property
    def available(self) -> bool:
        return self.error is None

    @classmethod
    def unavailable(cls, error: str) -> "RemoteStatus":
        return cls(error=error)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RemoteStatus":
        data = dict(payload)
        # Older production builds name the ledger fields prodDeployedSha/prodDeployedAt.
        if "prodDeployedSha" in data and "deployedSha" not in data:
            data["deployedSha"] = data.pop("prodDeployedSha")
        if "prodDeployedAt" in data and "deployedAt" not in data:
            data["deployedAt"] = data.pop("prodDeployedAt")
        lock = data.get("lock")
        if isinstance(lock, dict):
            lock = dict(lock)
            lock.setdefault("heldBy", lock.pop("by", None) or "unknown")
            lock.setdefault("token", "")
            data["lock"] = lock
        return cls.model_validate(data)


class LocalPromotionIntent(WireModel):
    triggered_at: datetime
    remote_started_at: Optional[datetime] = Field(
        default=None, description="Lock start reported by the executor when it accepted the trigger."
    )
    baseline_sha: Optional[str] = None
    requested_by: Optional[str] = None
