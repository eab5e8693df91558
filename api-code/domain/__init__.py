from .errors import (
    CommandExecutionError,
    ExecutorNotConfigured,
    InvalidTriggerSignature,
    LockHeld,
    PromotionAlreadyRunning,
    PromotionError,
    PromotionNotConfigured,
    PromotionTriggerFailed,
    VcsUnavailable,
)
from .promotion_states import (
    CompletionSignal,
    OutcomeRecord,
    PromotionOutcome,
    PromotionPhase,
    PromotionTracker,
    PublicPromotionStatus,
    ReconcileResult,
    is_valid_transition,
    progress_label,
    recommended_poll_interval,
    reconcile,
)

__all__ = [
    "CommandExecutionError",
    "CompletionSignal",
    "ExecutorNotConfigured",
    "InvalidTriggerSignature",
    "LockHeld",
    "OutcomeRecord",
    "PromotionAlreadyRunning",
    "PromotionError",
    "PromotionNotConfigured",
    "PromotionOutcome",
    "PromotionPhase",
    "PromotionTracker",
    "PromotionTriggerFailed",
    "PublicPromotionStatus",
    "ReconcileResult",
    "VcsUnavailable",
    "is_valid_transition",
    "progress_label",
    "recommended_poll_interval",
    "reconcile",
]
