from .promotion import (
    Commit,
    DeploymentRecord,
    LocalPromotionIntent,
    PromotionFailure,
    PromotionLock,
    RemoteStatus,
    WireModel,
    ensure_utc,
    utc_now,
)

__all__ = [
    "Commit",
    "DeploymentRecord",
    "LocalPromotionIntent",
    "PromotionFailure",
    "PromotionLock",
    "RemoteStatus",
    "WireModel",
    "ensure_utc",
    "utc_now",
]
