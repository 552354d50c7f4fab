"""
Household Points Ledger

This module provides:
- Validated reward entries, categories, redemptions, goals and achievements
- A redemption catalogue of options grouped into categories
- Redemption lifecycle: pending → completed / cancelled / expired
- All-or-nothing batches with a compensating fallback for stores without transactions
- Live total and available point subscriptions
- Offline-first sync that reports conflicts instead of overwriting them
"""

from .batch import BatchExecutor, BatchOperation, BatchOperationType
from .failures import (
    AuthorizationFailure,
    ConflictFailure,
    Failure,
    NotFoundFailure,
    PartialApplicationFailure,
    StateFailure,
    TransportFailure,
    ValidationFailure,
)
from .models import (
    Achievement,
    AchievementTier,
    Goal,
    GoalType,
    HistoryFilters,
    PaginatedResult,
    RedemptionCategory,
    RedemptionOption,
    RedemptionStats,
    RedemptionStatus,
    RedemptionTransaction,
    RewardCategory,
    RewardEntry,
    RewardType,
    SyncResult,
)
from .result import Err, Ok, Result
from .service import LedgerService
from .store import DocumentStore, InMemoryDocumentStore
from .sync import CancellationToken, ConflictResolution, SyncEngine

__all__ = [
    "Achievement",
    "AchievementTier",
    "AuthorizationFailure",
    "BatchExecutor",
    "BatchOperation",
    "BatchOperationType",
    "CancellationToken",
    "ConflictFailure",
    "ConflictResolution",
    "DocumentStore",
    "Err",
    "Failure",
    "Goal",
    "GoalType",
    "HistoryFilters",
    "InMemoryDocumentStore",
    "LedgerService",
    "NotFoundFailure",
    "Ok",
    "PaginatedResult",
    "PartialApplicationFailure",
    "RedemptionCategory",
    "RedemptionOption",
    "RedemptionStats",
    "RedemptionStatus",
    "RedemptionTransaction",
    "Result",
    "RewardCategory",
    "RewardEntry",
    "RewardType",
    "StateFailure",
    "SyncEngine",
    "SyncResult",
    "TransportFailure",
    "ValidationFailure",
]
