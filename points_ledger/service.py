import logging
import threading
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from . import constants as c
from .batch import BatchExecutor, BatchOperation, LedgerView, store_failure
from .config import LedgerSettings
from .failures import AuthorizationFailure, NotFoundFailure, StateFailure, validation_error
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
    SyncResult,
    new_id,
    utc_now,
)
from .repository import LedgerRepository
from .result import Err, Ok, Result
from .store import DocumentStore, InMemoryDocumentStore, StoreError
from .sync import CancellationToken, ConflictResolution, SyncEngine
from .validation import as_utc, require_id, validate_date_range, validate_page, validate_redemption_points
from .watch import PointsSubscription, PointsWatchHub

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_IDS = frozenset(default["id"] for default in c.DEFAULT_CATEGORIES)


def default_categories() -> list[RewardCategory]:
    return [RewardCategory(**default, is_default=True) for default in c.DEFAULT_CATEGORIES]


def default_redemption_categories() -> list[RedemptionCategory]:
    categories = [RedemptionCategory(**default) for default in c.DEFAULT_REDEMPTION_CATEGORIES]
    return sorted((category for category in categories if category.is_active), key=lambda category: category.sort_order)


REDEMPTION_CATEGORY_IDS = frozenset(default["id"] for default in c.DEFAULT_REDEMPTION_CATEGORIES)


class LedgerService(LedgerRepository):
    """
    Ledger repository over a DocumentStore.

    Every mutation is planned and committed through the batch executor, which
    also records the pending-sync item and notifies point-total watchers once
    the write is durable. Passing ``remote`` enables ``sync``.
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        *,
        clock: Callable = utc_now,
        id_factory: Callable[[], str] = new_id,
        settings: Optional[LedgerSettings] = None,
        remote: Optional[DocumentStore] = None,
    ):
        self.store = store if store is not None else InMemoryDocumentStore()
        self.clock = clock
        self.id_factory = id_factory
        self.settings = settings or LedgerSettings()
        self.hub = PointsWatchHub()
        self.available_hub = PointsWatchHub()
        self._publish_lock = threading.Lock()
        self.executor = BatchExecutor(self.store, clock=clock, id_factory=id_factory, on_commit=self._publish_totals)
        self.sync_engine = None
        if remote is not None:
            self.sync_engine = SyncEngine(
                self.store, remote, self.executor, clock=clock,
                default_timeout=self.settings.sync_timeout_seconds,
            )

    def _view(self) -> LedgerView:
        return LedgerView(self.store, self.clock)

    def _read(self, action: str, fn: Callable[[], Any]) -> Result:
        try:
            return Ok(fn())
        except StoreError as e:
            logger.warning("%s failed: %s", action, e)
            return Err(store_failure(e, action))

    def _publish_totals(self, owners: set[str]) -> None:
        # Read and publish under one lock: the last value delivered is never older than the last commit
        with self._publish_lock:
            view = self._view()
            for owner in sorted(owners):
                try:
                    if self.hub.subscriber_count(owner):
                        self.hub.publish(owner, view.total_points(owner))
                    if self.available_hub.subscriber_count(owner):
                        self.available_hub.publish(owner, view.available_points(owner))
                except StoreError as e:
                    logger.warning("Could not publish totals for user %s: %s", owner, e)

    # Reward entries

    def get_history(self, user_id: str, filters: Optional[HistoryFilters] = None) -> Result[PaginatedResult[RewardEntry]]:
        checked = require_id(user_id, "User ID")
        if checked.is_err:
            return checked
        filters = filters or HistoryFilters(limit=self.settings.default_page_size)
        checked_filters = filters.check(self.settings.max_page_size)
        if checked_filters.is_err:
            return checked_filters

        def page() -> PaginatedResult[RewardEntry]:
            entries = [e for e in self._view().entries(checked.value) if filters.matches(e)]
            entries.sort(key=lambda e: e.created_at, reverse=True)
            return PaginatedResult[RewardEntry].paginate(entries, filters.page, filters.limit)

        return self._read("History query", page)

    def get_entry(self, entry_id: str) -> Result[RewardEntry]:
        found = self._read("Entry lookup", lambda: self.store.get(c.ENTRIES, entry_id))
        if found.is_err:
            return found
        if found.value is None:
            return Err(NotFoundFailure(f"Reward entry {entry_id} not found", resource="entry", resource_id=entry_id))
        return Ok(RewardEntry.from_dict(found.value.data))

    def add_entry(self, entry: RewardEntry) -> Result[RewardEntry]:
        return self.executor.apply([BatchOperation.add(entry)]).map(lambda results: results[0])

    def update_entry(self, entry: RewardEntry) -> Result[RewardEntry]:
        return self.executor.apply([BatchOperation.update(entry)]).map(lambda results: results[0])

    def delete_entry(self, entry_id: str, requesting_user_id: str) -> Result[None]:
        return self.executor.apply([BatchOperation.delete(entry_id, requesting_user_id)]).map(lambda _: None)

    def get_total_points(self, user_id: str) -> Result[int]:
        return self._read("Total points query", lambda: self._view().total_points(user_id))

    def get_available_points(self, user_id: str) -> Result[int]:
        return self._read("Available points query", lambda: self._view().available_points(user_id))

    def watch_total_points(self, user_id: str) -> PointsSubscription:
        with self._publish_lock:
            return self.hub.subscribe(user_id, initial=self.get_total_points(user_id).unwrap_or(None))

    def watch_available_points(self, user_id: str) -> PointsSubscription:
        with self._publish_lock:
            return self.available_hub.subscribe(user_id, initial=self.get_available_points(user_id).unwrap_or(None))

    # Categories

    def get_categories(self, user_id: str) -> Result[list[RewardCategory]]:
        def load() -> list[RewardCategory]:
            custom = [RewardCategory.from_dict(doc.data) for doc in self.store.query(c.CATEGORIES, owner=user_id)]
            return default_categories() + sorted(custom, key=lambda category: category.name.lower())

        return self._read("Category query", load)

    def add_category(self, user_id: str, category: RewardCategory) -> Result[RewardCategory]:
        checked = require_id(user_id, "User ID")
        if checked.is_err:
            return checked
        user_id = checked.value
        prepared = category.copy_with(id=self.id_factory(), is_default=False)
        if prepared.is_err:
            return prepared
        category = prepared.value

        def plan(view: LedgerView) -> Result[RewardCategory]:
            custom = [RewardCategory.from_dict(doc.data) for doc in view.query(c.CATEGORIES, owner=user_id)]
            if len(custom) >= c.MAX_CUSTOM_CATEGORIES:
                return Err(validation_error(
                    f"Cannot have more than {c.MAX_CUSTOM_CATEGORIES} custom categories", "BR-014"
                ))
            duplicate = self._check_unique_name(custom, category)
            if duplicate.is_err:
                return duplicate
            view.save_entity(c.CATEGORIES, category.id, user_id, category.to_dict())
            return Ok(category)

        return self.executor.run(plan)

    @staticmethod
    def _check_unique_name(custom: list[RewardCategory], category: RewardCategory) -> Result[None]:
        """Names are unique per user, ignoring case, defaults included."""
        taken = {other.name.lower() for other in default_categories() + custom if other.id != category.id}
        if category.name.lower() in taken:
            return Err(validation_error(f"Category name already exists: {category.name}", field_name="name"))
        return Ok(None)

    def _owned_category(self, view: LedgerView, user_id: str, category_id: str) -> Result[RewardCategory]:
        if category_id in DEFAULT_CATEGORY_IDS:
            return Err(validation_error("Default categories cannot be modified or deleted", "BR-012"))
        doc = view.get(c.CATEGORIES, category_id)
        if doc is None:
            return Err(NotFoundFailure(
                f"Category {category_id} not found", resource="category", resource_id=category_id
            ))
        if doc.owner != user_id:
            return Err(AuthorizationFailure(
                f"User {user_id} does not own category {category_id}", actor_id=user_id, resource_id=category_id
            ))
        return Ok(RewardCategory.from_dict(doc.data))

    def update_category(self, user_id: str, category: RewardCategory) -> Result[RewardCategory]:
        if category.is_default:
            return Err(validation_error("Default categories cannot be modified or deleted", "BR-012"))

        def plan(view: LedgerView) -> Result[RewardCategory]:
            existing = self._owned_category(view, user_id, category.id)
            if existing.is_err:
                return existing
            updated = existing.value.copy_with(
                name=category.name, description=category.description, color=category.color, icon=category.icon
            )
            if updated.is_err:
                return updated
            custom = [RewardCategory.from_dict(doc.data) for doc in view.query(c.CATEGORIES, owner=user_id)]
            duplicate = self._check_unique_name(custom, updated.value)
            if duplicate.is_err:
                return duplicate
            view.save_entity(c.CATEGORIES, category.id, user_id, updated.value.to_dict())
            return updated

        return self.executor.run(plan)

    def delete_category(self, user_id: str, category_id: str, reassign_to: str) -> Result[None]:
        def plan(view: LedgerView) -> Result[None]:
            existing = self._owned_category(view, user_id, category_id)
            if existing.is_err:
                return existing
            if reassign_to == category_id or not view.category_exists(user_id, reassign_to):
                return Err(NotFoundFailure(
                    f"Replacement category {reassign_to} not found", resource="category", resource_id=reassign_to
                ))
            now = self.clock()
            moved = 0
            for entry in view.entries(user_id):
                if entry.category_id != category_id:
                    continue
                # BR-013 reassignment is not an edit, so the BR-004 window does not apply
                reassigned = entry.model_copy(update={"category_id": reassign_to, "updated_at": now, "is_synced": False})
                view.save_entity(c.ENTRIES, entry.id, user_id, reassigned.to_dict())
                moved += 1
            view.remove_entity(c.CATEGORIES, category_id, user_id)
            logger.info("Deleting category %s for user %s, %d entries moved to %s", category_id, user_id, moved, reassign_to)
            return Ok(None)

        return self.executor.run(plan)

    # Redemption catalogue

    def get_redemption_categories(self) -> Result[list[RedemptionCategory]]:
        return Ok(default_redemption_categories())

    def add_redemption_option(self, option: RedemptionOption) -> Result[RedemptionOption]:
        def plan(view: LedgerView) -> Result[RedemptionOption]:
            if option.category_id not in REDEMPTION_CATEGORY_IDS:
                return Err(NotFoundFailure(
                    f"Redemption category {option.category_id} not found",
                    resource="redemption_category", resource_id=option.category_id,
                ))
            if view.get(c.REDEMPTION_OPTIONS, option.id) is not None:
                return Err(validation_error(f"Redemption option already exists: {option.id}", field_name="id"))
            view.put(c.REDEMPTION_OPTIONS, option.id, c.CATALOGUE_OWNER, option.to_dict())
            return Ok(option)

        return self.executor.run(plan)

    def _catalogue(self) -> list[RedemptionOption]:
        return [RedemptionOption.from_dict(doc.data) for doc in self.store.query(c.REDEMPTION_OPTIONS)]

    def get_redemption_options(self) -> Result[list[RedemptionOption]]:
        return self.get_redemption_options_by_category(None)

    def get_redemption_options_by_category(self, category_id: Optional[str] = None) -> Result[list[RedemptionOption]]:
        """Available options, cheapest first."""
        def load() -> list[RedemptionOption]:
            now = self.clock()
            options = [
                option for option in self._catalogue()
                if option.is_available(now) and (category_id is None or option.category_id == category_id)
            ]
            return sorted(options, key=lambda option: (option.required_points, option.title.lower()))

        return self._read("Redemption option query", load)

    # Redemptions

    def can_redeem(self, user_id: str, points: int) -> Result[bool]:
        checked = require_id(user_id, "User ID")
        if checked.is_err:
            return checked
        if validate_redemption_points(points).is_err:
            return Ok(False)
        return self.get_available_points(checked.value).map(lambda available: available >= points)

    def redeem(
        self,
        user_id: str,
        option_id: str,
        points: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Result[RedemptionTransaction]:
        checked_option = require_id(option_id, "Option ID")
        if checked_option.is_err:
            return checked_option
        if points is not None:
            checked_points = validate_redemption_points(points)
            if checked_points.is_err:
                return checked_points
        now = self.clock()

        def plan(view: LedgerView) -> Result[RedemptionTransaction]:
            doc = view.get(c.REDEMPTION_OPTIONS, checked_option.value)
            if doc is None:
                return Err(NotFoundFailure(
                    f"Redemption option {checked_option.value} not found",
                    resource="redemption_option", resource_id=checked_option.value,
                ))
            option = RedemptionOption.from_dict(doc.data)
            if not option.is_available(now):
                return Err(StateFailure(
                    f"Redemption option {option.id} is no longer available",
                    current="expired" if option.is_expired(now) else "inactive",
                    attempted="redeem",
                ))
            spend = option.required_points if points is None else points
            if spend < option.required_points:
                return Err(validation_error(
                    f"{option.title} needs at least {option.required_points} points, got {spend}",
                    field_name="points_used",
                ))
            created = RedemptionTransaction.create(
                user_id=user_id, option_id=option.id, points_used=spend, notes=notes,
                now=now, id_factory=self.id_factory,
            )
            if created.is_err:
                return created
            transaction = created.value
            available = view.available_points(transaction.user_id)
            if available < transaction.points_used:
                return Err(validation_error(
                    f"Insufficient points: {available} available, {transaction.points_used} requested", "BR-006"
                ))
            view.save_entity(c.REDEMPTIONS, transaction.id, transaction.user_id, transaction.to_dict())
            return Ok(transaction)

        return self.executor.run(plan)

    def get_redemption(self, transaction_id: str) -> Result[RedemptionTransaction]:
        found = self._read("Redemption lookup", lambda: self.store.get(c.REDEMPTIONS, transaction_id))
        if found.is_err:
            return found
        if found.value is None:
            return Err(NotFoundFailure(
                f"Redemption {transaction_id} not found", resource="redemption", resource_id=transaction_id
            ))
        return Ok(RedemptionTransaction.from_dict(found.value.data))

    def get_redemption_history(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[RedemptionStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Result[PaginatedResult[RedemptionTransaction]]:
        paging = validate_page(page, limit, self.settings.max_page_size)
        if paging.is_err:
            return paging
        window = validate_date_range(start_date, end_date)
        if window.is_err:
            return window
        start = as_utc(start_date) if start_date else None
        end = as_utc(end_date) if end_date else None

        def load() -> PaginatedResult[RedemptionTransaction]:
            transactions = [
                t for t in self._view().redemptions(user_id)
                if (status is None or t.status == status)
                and (start is None or t.redeemed_at >= start)
                and (end is None or t.redeemed_at <= end)
            ]
            transactions.sort(key=lambda t: t.redeemed_at, reverse=True)
            return PaginatedResult[RedemptionTransaction].paginate(transactions, page, limit)

        return self._read("Redemption history query", load)

    def _transition(
        self,
        transaction_id: str,
        requesting_user_id: str,
        step: Callable[[RedemptionTransaction], Result[RedemptionTransaction]],
    ) -> Result[RedemptionTransaction]:
        def plan(view: LedgerView) -> Result[RedemptionTransaction]:
            doc = view.get(c.REDEMPTIONS, transaction_id)
            if doc is None:
                return Err(NotFoundFailure(
                    f"Redemption {transaction_id} not found", resource="redemption", resource_id=transaction_id
                ))
            transaction = RedemptionTransaction.from_dict(doc.data)
            if transaction.user_id != requesting_user_id:
                return Err(AuthorizationFailure(
                    f"User {requesting_user_id} does not own redemption {transaction_id}",
                    actor_id=requesting_user_id, resource_id=transaction_id,
                ))
            moved = step(transaction)
            if moved.is_ok:
                view.save_entity(c.REDEMPTIONS, transaction_id, transaction.user_id, moved.value.to_dict())
            return moved

        return self.executor.run(plan)

    def complete_redemption(self, transaction_id: str, requesting_user_id: str, notes: Optional[str] = None) -> Result[RedemptionTransaction]:
        return self._transition(transaction_id, requesting_user_id, lambda t: t.complete(notes, now=self.clock()))

    def cancel_redemption(self, transaction_id: str, requesting_user_id: str, reason: Optional[str] = None) -> Result[RedemptionTransaction]:
        return self._transition(transaction_id, requesting_user_id, lambda t: t.cancel(reason, now=self.clock()))

    def expire_redemption(self, transaction_id: str, requesting_user_id: str, notes: Optional[str] = None) -> Result[RedemptionTransaction]:
        return self._transition(transaction_id, requesting_user_id, lambda t: t.expire(notes, now=self.clock()))

    def get_redemption_stats(self, user_id: str) -> Result[RedemptionStats]:
        def load() -> RedemptionStats:
            category_of = {option.id: option.category_id for option in self._catalogue()}
            return RedemptionStats.from_transactions(self._view().redemptions(user_id), category_of.get)

        return self._read("Redemption stats query", load)

    # Batches and sync

    def apply_batch(self, operations: Sequence[BatchOperation]) -> Result[list[RewardEntry]]:
        return self.executor.apply(operations)

    def _require_sync(self) -> Optional[StateFailure]:
        if self.sync_engine is None:
            return StateFailure("No remote store is configured", current="offline", attempted="sync")
        return None

    def sync(
        self,
        user_id: str,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Result[SyncResult]:
        missing = self._require_sync()
        if missing:
            return Err(missing)
        checked = require_id(user_id, "User ID")
        if checked.is_err:
            return checked
        return self.sync_engine.sync(checked.value, timeout=timeout, token=token)

    def resolve_conflict(
        self,
        user_id: str,
        entity_id: str,
        resolution: ConflictResolution,
        merged: Optional[dict[str, Any]] = None,
    ) -> Result[ConflictResolution]:
        missing = self._require_sync()
        if missing:
            return Err(missing)
        return self.sync_engine.resolve_conflict(user_id, entity_id, resolution, merged)
