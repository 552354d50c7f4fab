"""
Ledger repository port.

The contract a persistence backend satisfies for one family's ledger. All
methods return a ``Result``; none raise for expected failures.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from .batch import BatchOperation
from .models import (
    HistoryFilters,
    PaginatedResult,
    RedemptionCategory,
    RedemptionOption,
    RedemptionStats,
    RedemptionStatus,
    RedemptionTransaction,
    RewardCategory,
    RewardEntry,
)
from .result import Result
from .watch import PointsSubscription


class LedgerRepository(ABC):
    # Reward entries

    @abstractmethod
    def get_history(self, user_id: str, filters: Optional[HistoryFilters] = None) -> Result[PaginatedResult[RewardEntry]]:
        """Newest-first page of a user's entries matching ``filters``."""

    @abstractmethod
    def get_entry(self, entry_id: str) -> Result[RewardEntry]:
        ...

    @abstractmethod
    def add_entry(self, entry: RewardEntry) -> Result[RewardEntry]:
        """Persist a new entry; the returned entry carries the store-assigned id."""

    @abstractmethod
    def update_entry(self, entry: RewardEntry) -> Result[RewardEntry]:
        """Re-validates BR-004 against the stored creation time."""

    @abstractmethod
    def delete_entry(self, entry_id: str, requesting_user_id: str) -> Result[None]:
        """Fails with AuthorizationFailure when the requester does not own the entry."""

    @abstractmethod
    def get_total_points(self, user_id: str) -> Result[int]:
        ...

    @abstractmethod
    def get_available_points(self, user_id: str) -> Result[int]:
        """Total points minus points held by pending or completed redemptions."""

    @abstractmethod
    def watch_total_points(self, user_id: str) -> PointsSubscription:
        """Live totals for a user until the subscription is cancelled."""

    # Categories

    @abstractmethod
    def get_categories(self, user_id: str) -> Result[list[RewardCategory]]:
        ...

    @abstractmethod
    def add_category(self, user_id: str, category: RewardCategory) -> Result[RewardCategory]:
        """BR-014: at most 20 custom categories per user."""

    @abstractmethod
    def update_category(self, user_id: str, category: RewardCategory) -> Result[RewardCategory]:
        """BR-012: default categories are read-only."""

    @abstractmethod
    def delete_category(self, user_id: str, category_id: str, reassign_to: str) -> Result[None]:
        """BR-012/BR-013: entries move to ``reassign_to`` in the same atomic unit."""

    # Redemption catalogue

    @abstractmethod
    def get_redemption_categories(self) -> Result[list[RedemptionCategory]]:
        ...

    @abstractmethod
    def add_redemption_option(self, option: RedemptionOption) -> Result[RedemptionOption]:
        ...

    @abstractmethod
    def get_redemption_options(self) -> Result[list[RedemptionOption]]:
        """Active, unexpired options sorted by required points."""

    @abstractmethod
    def get_redemption_options_by_category(self, category_id: Optional[str] = None) -> Result[list[RedemptionOption]]:
        ...

    # Redemptions

    @abstractmethod
    def can_redeem(self, user_id: str, points: int) -> Result[bool]:
        """Whether ``points`` is a valid redemption the available balance covers."""

    @abstractmethod
    def watch_available_points(self, user_id: str) -> PointsSubscription:
        ...

    @abstractmethod
    def redeem(
        self,
        user_id: str,
        option_id: str,
        points: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Result[RedemptionTransaction]:
        """BR-006/BR-008: creates a pending redemption of a catalogue option when the balance allows it."""

    @abstractmethod
    def get_redemption(self, transaction_id: str) -> Result[RedemptionTransaction]:
        ...

    @abstractmethod
    def get_redemption_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[RedemptionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Result[PaginatedResult[RedemptionTransaction]]:
        ...

    @abstractmethod
    def complete_redemption(self, transaction_id: str, requesting_user_id: str, notes: Optional[str] = None) -> Result[RedemptionTransaction]:
        ...

    @abstractmethod
    def cancel_redemption(self, transaction_id: str, requesting_user_id: str, reason: Optional[str] = None) -> Result[RedemptionTransaction]:
        ...

    @abstractmethod
    def expire_redemption(self, transaction_id: str, requesting_user_id: str, notes: Optional[str] = None) -> Result[RedemptionTransaction]:
        ...

    @abstractmethod
    def get_redemption_stats(self, user_id: str) -> Result[RedemptionStats]:
        ...

    # Batches

    @abstractmethod
    def apply_batch(self, operations: Sequence[BatchOperation]) -> Result[list[RewardEntry]]:
        ...
