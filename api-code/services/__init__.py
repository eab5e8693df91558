from .commit_diff import CommitDiffCalculator, PendingCommits
from .commit_history import GitCommitHistoryProvider
from .promotion_executor import PromotionExecutor
from .promotion_lock import PromotionLockService
from .remote_gateway import RemoteExecutionGateway, TriggerAccepted
from .remote_status import RemoteStatusPoller
from .status_aggregator import StatusAggregator
from .trigger_signing import SIGNATURE_HEADER, TriggerSigner

__all__ = [
    "CommitDiffCalculator",
    "GitCommitHistoryProvider",
    "PendingCommits",
    "PromotionExecutor",
    "PromotionLockService",
    "RemoteExecutionGateway",
    "RemoteStatusPoller",
    "SIGNATURE_HEADER",
    "StatusAggregator",
    "TriggerAccepted",
    "TriggerSigner",
]
