"""Services layer - ビジネスロジック"""

from halloo.services.care_manager import CareManager
from halloo.services.classifier import classify
from halloo.services.dedup_ledger import DedupLedger
from halloo.services.reconciler import (
    PhotoArchiver,
    ReconcileOutcome,
    ReconcileReport,
    ReconcileResult,
    Reconciler,
    Transition,
)
from halloo.services.scheduler import ReminderScheduler
from halloo.services.sync_coordinator import (
    EventBus,
    Projection,
    SyncCoordinator,
    bind_reconciler,
)

__all__ = [
    "CareManager",
    "classify",
    "DedupLedger",
    "PhotoArchiver",
    "Reconciler",
    "ReconcileOutcome",
    "ReconcileReport",
    "ReconcileResult",
    "Transition",
    "ReminderScheduler",
    "EventBus",
    "Projection",
    "SyncCoordinator",
    "bind_reconciler",
]
