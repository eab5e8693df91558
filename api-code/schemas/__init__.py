from .promotion import (
    AdminStatus,
    ErrorResponse,
    LastOutcome,
    PromoteConfig,
    PromoteRequest,
    PromoteResponse,
    PromotionView,
    TriggerRequest,
    TriggerResponse,
)

__all__ = [
    "AdminStatus",
    "ErrorResponse",
    "LastOutcome",
    "PromoteConfig",
    "PromoteRequest",
    "PromoteResponse",
    "PromotionView",
    "TriggerRequest",
    "TriggerResponse",
]
