"""Reconciliation of authoritative executor state with local optimistic state.

The control plane cannot see the executor directly: it only gets a status
snapshot when the production status endpoint answers. ``reconcile`` merges
that snapshot with the time-bounded local intent recorded when an operator
clicks *promote* and yields the public status plus the next tracker. It is a
pure function of its inputs so every transition can be tested without a
network.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from models import LocalPromotionIntent, RemoteStatus, ensure_utc


DEFAULT_LOCAL_TTL_SECONDS = 120
LOG_TAIL_LINES = 12
DEFAULT_PROGRESS_LABEL = "Running…"

# Ordered from least to most advanced; the most advanced match in the tail wins.
PROGRESS_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("Starting", "Starting promotion..."),
    ("Installing", "Installing dependencies..."),
    ("Building", "Building production bundle..."),
    ("Restarting", "Restarting PM2..."),
    ("completed", "Completed!"),
)


class PromotionPhase(str, Enum):
    IDLE = "idle"
    LOCALLY_TRIGGERED = "locally_triggered"
    REMOTE_CONFIRMED_RUNNING = "remote_confirmed_running"
    LOCAL_FALLBACK = "local_fallback"
    REMOTE_CONFIRMED_COMPLETE = "remote_confirmed_complete"
    LOCAL_TIMEOUT_EXPIRED = "local_timeout_expired"

    @property
    def is_transient(self) -> bool:
        return self in {
            PromotionPhase.REMOTE_CONFIRMED_COMPLETE,
            PromotionPhase.LOCAL_TIMEOUT_EXPIRED,
        }

    @property
    def is_tracking(self) -> bool:
        return self in {
            PromotionPhase.LOCALLY_TRIGGERED,
            PromotionPhase.REMOTE_CONFIRMED_RUNNING,
            PromotionPhase.LOCAL_FALLBACK,
        }


class PromotionOutcome(str, Enum):
    COMPLETED = "completed"
    COMPLETED_UNOBSERVED = "completed_unobserved"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ENDED_WITHOUT_CHANGE = "ended_without_change"


ALLOWED_TRANSITIONS: dict[PromotionPhase, frozenset[PromotionPhase]] = {
    PromotionPhase.IDLE: frozenset(
        {PromotionPhase.LOCALLY_TRIGGERED, PromotionPhase.REMOTE_CONFIRMED_RUNNING}
    ),
    PromotionPhase.LOCALLY_TRIGGERED: frozenset(
        {
            PromotionPhase.REMOTE_CONFIRMED_RUNNING,
            PromotionPhase.LOCAL_FALLBACK,
            PromotionPhase.LOCAL_TIMEOUT_EXPIRED,
            PromotionPhase.IDLE,
        }
    ),
    PromotionPhase.REMOTE_CONFIRMED_RUNNING: frozenset(
        {
            PromotionPhase.REMOTE_CONFIRMED_COMPLETE,
            PromotionPhase.LOCAL_FALLBACK,
            PromotionPhase.IDLE,
        }
    ),
    PromotionPhase.LOCAL_FALLBACK: frozenset(
        {
            PromotionPhase.LOCALLY_TRIGGERED,
            PromotionPhase.REMOTE_CONFIRMED_RUNNING,
            PromotionPhase.REMOTE_CONFIRMED_COMPLETE,
            PromotionPhase.LOCAL_TIMEOUT_EXPIRED,
            PromotionPhase.IDLE,
        }
    ),
    PromotionPhase.REMOTE_CONFIRMED_COMPLETE: frozenset({PromotionPhase.IDLE}),
    PromotionPhase.LOCAL_TIMEOUT_EXPIRED: frozenset({PromotionPhase.IDLE}),
}


def is_valid_transition(current: PromotionPhase, new: PromotionPhase) -> bool:
    if current == new:
        return True
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class OutcomeRecord:
    outcome: PromotionOutcome
    at: datetime
    deployed_sha: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class CompletionSignal:
    deployed_sha: str
    observed_at: datetime


@dataclass(frozen=True)
class PromotionTracker:
    """Aggregator-side memory carried from one poll to the next."""

    phase: PromotionPhase = PromotionPhase.IDLE
    intent: Optional[LocalPromotionIntent] = None
    baseline_sha: Optional[str] = None
    observed_running: bool = False
    last_signalled_sha: Optional[str] = None
    last_outcome: Optional[OutcomeRecord] = None

    def begin(self, intent: LocalPromotionIntent) -> "PromotionTracker":
        """Idle -> LocallyTriggered after the executor acknowledged the trigger."""
        if not is_valid_transition(self.phase, PromotionPhase.LOCALLY_TRIGGERED):
            raise ValueError(f"cannot start tracking a promotion from phase {self.phase.value}")
        return replace(
            self,
            phase=PromotionPhase.LOCALLY_TRIGGERED,
            intent=intent,
            baseline_sha=intent.baseline_sha,
            observed_running=False,
        )

    def settle(self, outcome: Optional[OutcomeRecord]) -> "PromotionTracker":
        return replace(
            self,
            phase=PromotionPhase.IDLE,
            intent=None,
            baseline_sha=None,
            observed_running=False,
            last_outcome=outcome or self.last_outcome,
        )


@dataclass(frozen=True)
class PublicPromotionStatus:
    phase: PromotionPhase
    is_running: bool
    progress_label: str
    remote_available: bool
    triggered_at: Optional[datetime] = None
    elapsed_seconds: Optional[float] = None
    last_outcome: Optional[OutcomeRecord] = None


@dataclass(frozen=True)
class ReconcileResult:
    status: PublicPromotionStatus
    tracker: PromotionTracker
    signal: Optional[CompletionSignal] = None


def progress_label(log_lines: Sequence[str], *, tail: int = LOG_TAIL_LINES) -> str:
    """Best-effort label from the most advanced keyword found in the log tail."""
    best = -1
    for line in list(log_lines)[-tail:]:
        for rank, (keyword, _label) in enumerate(PROGRESS_KEYWORDS):
            if keyword in line and rank > best:
                best = rank
    if best < 0:
        return DEFAULT_PROGRESS_LABEL
    return PROGRESS_KEYWORDS[best][1]


def recommended_poll_interval(is_running: bool, *, fast: int = 3, slow: int = 10) -> int:
    return fast if is_running else slow


def _elapsed(intent: Optional[LocalPromotionIntent], now: datetime) -> Optional[float]:
    if intent is None:
        return None
    return max(0.0, (ensure_utc(now) - ensure_utc(intent.triggered_at)).total_seconds())


def _failed_since(remote: RemoteStatus, intent: Optional[LocalPromotionIntent]) -> bool:
    """Whether the executor's last failure belongs to the run this intent started.

    Timestamps from the executor are only compared with other executor
    timestamps; ``triggered_at`` is on the control-plane clock and is used
    only when the executor did not report when it took the lock.
    """
    failure = remote.last_failure
    if failure is None:
        return False
    if intent is None:
        return True
    if intent.remote_started_at is not None:
        started = ensure_utc(intent.remote_started_at)
        if failure.lock_started_at is not None:
            return ensure_utc(failure.lock_started_at) >= started
        return ensure_utc(failure.failed_at) >= started
    return ensure_utc(failure.failed_at) >= ensure_utc(intent.triggered_at)


def _advance(
    tracker: PromotionTracker,
    remote: Optional[RemoteStatus],
    now: datetime,
    ttl_seconds: float,
) -> tuple[PromotionPhase, PromotionTracker, Optional[CompletionSignal]]:
    phase = tracker.phase

    if phase == PromotionPhase.IDLE or not phase.is_tracking:
        if remote is not None and remote.available and remote.in_progress:
            running = replace(
                tracker,
                phase=PromotionPhase.REMOTE_CONFIRMED_RUNNING,
                intent=None,
                baseline_sha=remote.deployed_sha,
                observed_running=True,
            )
            return PromotionPhase.REMOTE_CONFIRMED_RUNNING, running, None
        return PromotionPhase.IDLE, tracker.settle(None), None

    intent = tracker.intent
    elapsed = _elapsed(intent, now)
    timed_out = elapsed is not None and elapsed >= ttl_seconds

    if remote is None or not remote.available:
        if intent is None:
            # Running was only ever known from the remote; without it there is nothing to time.
            return PromotionPhase.IDLE, tracker.settle(None), None
        if timed_out:
            outcome = OutcomeRecord(PromotionOutcome.TIMED_OUT, now, tracker.baseline_sha)
            return PromotionPhase.LOCAL_TIMEOUT_EXPIRED, tracker.settle(outcome), None
        return (
            PromotionPhase.LOCAL_FALLBACK,
            replace(tracker, phase=PromotionPhase.LOCAL_FALLBACK),
            None,
        )

    if remote.in_progress:
        running = replace(
            tracker, phase=PromotionPhase.REMOTE_CONFIRMED_RUNNING, observed_running=True
        )
        return PromotionPhase.REMOTE_CONFIRMED_RUNNING, running, None

    deployed_sha = remote.deployed_sha
    changed = deployed_sha is not None and deployed_sha != tracker.baseline_sha

    if changed and tracker.observed_running:
        outcome = OutcomeRecord(PromotionOutcome.COMPLETED, now, deployed_sha)
        signal = None
        if deployed_sha != tracker.last_signalled_sha:
            signal = CompletionSignal(deployed_sha=deployed_sha, observed_at=now)
        settled = replace(tracker.settle(outcome), last_signalled_sha=deployed_sha)
        return PromotionPhase.REMOTE_CONFIRMED_COMPLETE, settled, signal

    if changed:
        outcome = OutcomeRecord(PromotionOutcome.COMPLETED_UNOBSERVED, now, deployed_sha)
        return PromotionPhase.IDLE, tracker.settle(outcome), None

    if _failed_since(remote, intent):
        failure = remote.last_failure
        outcome = OutcomeRecord(
            PromotionOutcome.FAILED,
            now,
            deployed_sha,
            failure.message if failure else None,
        )
        return PromotionPhase.IDLE, tracker.settle(outcome), None

    if tracker.observed_running:
        outcome = OutcomeRecord(PromotionOutcome.ENDED_WITHOUT_CHANGE, now, deployed_sha)
        return PromotionPhase.IDLE, tracker.settle(outcome), None

    if timed_out:
        outcome = OutcomeRecord(PromotionOutcome.TIMED_OUT, now, deployed_sha)
        return PromotionPhase.LOCAL_TIMEOUT_EXPIRED, tracker.settle(outcome), None

    waiting = replace(tracker, phase=PromotionPhase.LOCALLY_TRIGGERED)
    return PromotionPhase.LOCALLY_TRIGGERED, waiting, None


def reconcile(
    tracker: PromotionTracker,
    remote: Optional[RemoteStatus],
    now: datetime,
    *,
    ttl_seconds: float = DEFAULT_LOCAL_TTL_SECONDS,
    admin_in_progress: bool = False,
) -> ReconcileResult:
    """Merge one status poll into the tracker.

    ``remote`` may be ``None`` or carry ``error`` when the executor could not
    be introspected; in that case the local intent decides, bounded by
    ``ttl_seconds``. ``admin_in_progress`` reflects a lock visible to this
    process and only widens ``is_running``.
    """
    public_phase, next_tracker, signal = _advance(tracker, remote, now, ttl_seconds)

    intent = tracker.intent if public_phase.is_tracking or public_phase.is_transient else None
    elapsed = _elapsed(intent, now)
    locally_running = (
        public_phase in {PromotionPhase.LOCALLY_TRIGGERED, PromotionPhase.LOCAL_FALLBACK}
        and elapsed is not None
        and elapsed < ttl_seconds
    )
    is_running = (
        public_phase == PromotionPhase.REMOTE_CONFIRMED_RUNNING
        or locally_running
        or admin_in_progress
    )

    remote_ok = remote is not None and remote.available
    label = ""
    if is_running:
        label = progress_label(remote.recent_log_lines) if remote_ok else DEFAULT_PROGRESS_LABEL

    status = PublicPromotionStatus(
        phase=public_phase,
        is_running=is_running,
        progress_label=label,
        remote_available=remote_ok,
        triggered_at=intent.triggered_at if intent else None,
        elapsed_seconds=elapsed,
        last_outcome=next_tracker.last_outcome,
    )
    return ReconcileResult(status=status, tracker=next_tracker, signal=signal)
