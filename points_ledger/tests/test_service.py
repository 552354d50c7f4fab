"""
Unit Tests for the Ledger Service

Tests cover:
1. Entry CRUD, ownership and the edit window
2. History paging and filters
3. Categories: defaults, the custom cap, deletion with reassignment
4. Redemptions: balance checks and lifecycle through the repository
5. The redemption catalogue and how redeem resolves options
6. Live total and available points
"""

import threading
from datetime import timedelta

import pytest

from points_ledger import constants as c
from points_ledger.failures import (
    AuthorizationFailure,
    NotFoundFailure,
    StateFailure,
    ValidationFailure,
)
from points_ledger.models import HistoryFilters, RedemptionOption, RedemptionStatus, RewardCategory, RewardType
from points_ledger.service import LedgerService

from .conftest import KID, SIBLING, START, StalledReadStore


def custom_category(name: str = "Garden", **fields) -> RewardCategory:
    return RewardCategory.create(id="draft", name=name, **fields).value


class TestEntries:
    """Tests for reward entry operations."""

    def test_add_assigns_new_id(self, service, make_entry):
        """Test that the store assigns the entry id."""
        added = service.add_entry(make_entry(points=25)).value

        assert added.id == "id-1"
        assert service.get_entry("id-1").value == added
        assert service.get_total_points(KID).value == 25

    def test_update_within_window(self, service, clock, make_entry):
        """Test updating an entry inside 24 hours."""
        added = service.add_entry(make_entry(points=25)).value
        clock.advance(hours=5)

        updated = service.update_entry(added.model_copy(update={"points": 35})).value

        assert updated.points == 35
        assert updated.updated_at == clock()
        assert service.get_total_points(KID).value == 35

    def test_update_after_window_rejected(self, service, clock, make_entry):
        """Test that stale entries cannot be edited."""
        added = service.add_entry(make_entry(points=25)).value
        clock.advance(hours=25)

        result = service.update_entry(added.model_copy(update={"points": 35}))

        assert result.failure.rule == "BR-004"
        assert service.get_entry(added.id).value.points == 25

    def test_update_uses_stored_creation_time(self, service, clock, make_entry):
        """Test that a caller cannot refresh the window with a new created_at."""
        added = service.add_entry(make_entry()).value
        clock.advance(days=2)

        result = service.update_entry(added.model_copy(update={"points": 11, "created_at": clock()}))

        assert result.failure.rule == "BR-004"

    def test_delete_requires_owner(self, service, make_entry):
        """Test that only the owner may delete an entry."""
        added = service.add_entry(make_entry()).value

        result = service.delete_entry(added.id, SIBLING)

        assert isinstance(result.failure, AuthorizationFailure)
        assert service.get_entry(added.id).is_ok

    def test_delete_changes_total(self, service, make_entry):
        """Test that deleting an entry changes the total immediately."""
        keep = service.add_entry(make_entry(points=40)).value
        drop = service.add_entry(make_entry(points=15)).value

        assert service.delete_entry(drop.id, KID).is_ok

        assert service.get_total_points(KID).value == 40
        assert service.get_entry(keep.id).is_ok
        assert isinstance(service.get_entry(drop.id).failure, NotFoundFailure)

    def test_delete_unknown_entry(self, service):
        """Test deleting an id that does not exist."""
        assert isinstance(service.delete_entry("missing", KID).failure, NotFoundFailure)

    def test_adjustments_reduce_total(self, service, make_entry):
        """Test that adjusted entries may be negative."""
        service.add_entry(make_entry(points=50))
        service.add_entry(make_entry(points=-20, type=RewardType.ADJUSTED, description="Broke a rule"))

        assert service.get_total_points(KID).value == 30


class TestHistory:
    """Tests for paginated history."""

    def test_newest_first_with_paging(self, service, clock, make_entry):
        """Test ordering and page boundaries."""
        for points in range(1, 6):
            service.add_entry(make_entry(points=points))
            clock.advance(minutes=1)

        page = service.get_history(KID, HistoryFilters(page=1, limit=2)).value

        assert [e.points for e in page.items] == [5, 4]
        assert page.total_count == 5
        assert page.total_pages == 3
        assert page.has_next_page

    def test_filters(self, service, make_entry):
        """Test category and type filters."""
        service.add_entry(make_entry(points=10))
        service.add_entry(make_entry(points=20, category_id="homework", description="Maths sheet"))
        service.add_entry(make_entry(points=5, type=RewardType.BONUS, description="Birthday"))

        homework = service.get_history(KID, HistoryFilters(category_id="homework")).value
        bonus = service.get_history(KID, HistoryFilters(type=RewardType.BONUS)).value

        assert [e.points for e in homework.items] == [20]
        assert [e.points for e in bonus.items] == [5]

    def test_other_users_are_excluded(self, service, make_entry):
        """Test that history is scoped to one user."""
        service.add_entry(make_entry())
        service.add_entry(make_entry(user_id=SIBLING))

        assert service.get_history(KID).value.total_count == 1

    def test_limit_above_maximum(self, service):
        """Test that oversized pages are rejected."""
        result = service.get_history(KID, HistoryFilters(limit=500))
        assert isinstance(result.failure, ValidationFailure)


class TestCategories:
    """Tests for category management."""

    def test_defaults_listed_first(self, service):
        """Test that defaults come first and are read-only."""
        service.add_category(KID, custom_category("Zoo trips"))
        service.add_category(KID, custom_category("Art"))

        names = [category.name for category in service.get_categories(KID).value]

        assert names == ["Chores", "Homework", "Behavior", "Bonus", "Art", "Zoo trips"]

    def test_add_assigns_id(self, service):
        """Test that custom categories get a fresh id and are never defaults."""
        added = service.add_category(KID, custom_category(is_default=True)).value

        assert added.id == "id-1"
        assert added.is_default is False

    def test_custom_category_cap(self, service):
        """Test the limit of twenty custom categories per user."""
        for index in range(c.MAX_CUSTOM_CATEGORIES):
            assert service.add_category(KID, custom_category(f"Custom {index}")).is_ok

        result = service.add_category(KID, custom_category("One too many"))

        assert result.failure.rule == "BR-014"
        assert service.add_category(SIBLING, custom_category("One too many")).is_ok

    def test_duplicate_name_rejected(self, service):
        """Test that names are unique per user, defaults included."""
        assert service.add_category(KID, custom_category("chores")).is_err

    @pytest.mark.parametrize("category_id", ["chores", "homework", "behavior", "bonus"])
    def test_defaults_cannot_change(self, service, category_id):
        """Test that default categories cannot be updated or deleted."""
        default = next(cat for cat in service.get_categories(KID).value if cat.id == category_id)

        assert service.update_category(KID, default.model_copy(update={"name": "Renamed"})).failure.rule == "BR-012"
        assert service.delete_category(KID, category_id, "bonus").failure.rule == "BR-012"

    def test_update_custom(self, service):
        """Test renaming a custom category."""
        added = service.add_category(KID, custom_category()).value

        updated = service.update_category(KID, added.model_copy(update={"name": "Backyard"})).value

        assert updated.name == "Backyard"
        assert isinstance(
            service.update_category(SIBLING, updated.model_copy(update={"name": "Mine"})).failure,
            AuthorizationFailure,
        )

    def test_rename_to_taken_name_rejected(self, service):
        """Test that renaming follows the same unique-name rule as adding."""
        garden = service.add_category(KID, custom_category()).value
        service.add_category(KID, custom_category("Pets"))

        clash = service.update_category(KID, garden.model_copy(update={"name": "pets"}))
        default_clash = service.update_category(KID, garden.model_copy(update={"name": "BONUS"}))
        same_name = service.update_category(KID, garden.model_copy(update={"description": "Weeding"}))

        assert clash.failure.field == "name"
        assert default_clash.failure.field == "name"
        assert same_name.value.description == "Weeding"
        assert service.get_categories(KID).value[-1].name == "Pets"

    def test_delete_reassigns_entries(self, service, clock, make_entry):
        """Test that deleting a category moves its entries, even old ones."""
        garden = service.add_category(KID, custom_category()).value
        entry = service.add_entry(make_entry(category_id=garden.id, description="Weeding")).value
        clock.advance(days=3)

        assert service.delete_category(KID, garden.id, "chores").is_ok

        moved = service.get_entry(entry.id).value
        assert moved.category_id == "chores"
        assert moved.is_synced is False
        assert garden.id not in [cat.id for cat in service.get_categories(KID).value]

    def test_delete_needs_valid_target(self, service, make_entry):
        """Test that the replacement category must exist."""
        garden = service.add_category(KID, custom_category()).value
        service.add_entry(make_entry(category_id=garden.id))

        result = service.delete_category(KID, garden.id, "pets")

        assert isinstance(result.failure, NotFoundFailure)
        assert service.get_history(KID).value.items[0].category_id == garden.id


class TestRedemptions:
    """Tests for redemptions through the repository."""

    @pytest.fixture
    def funded(self, service, make_entry):
        service.add_entry(make_entry(points=100))
        service.add_entry(make_entry(points=50, description="Made the bed"))
        return service

    def test_redeem_holds_points(self, funded):
        """Test that a pending redemption reduces available points."""
        transaction = funded.redeem(KID, "ice-cream", 100, notes="Chocolate").value

        assert transaction.status == RedemptionStatus.PENDING
        assert funded.get_total_points(KID).value == 150
        assert funded.get_available_points(KID).value == 50

    def test_insufficient_points(self, funded):
        """Test that a redemption cannot exceed the available balance."""
        funded.redeem(KID, "ice-cream", 100)

        result = funded.redeem(KID, "movie-night", 100)

        assert result.failure.rule == "BR-006"
        assert funded.get_redemption_history(KID).value.total_count == 1

    def test_minimum_redemption(self, funded):
        """Test the minimum redemption size."""
        assert funded.redeem(KID, "sticker", 99).failure.rule == "BR-008"

    def test_complete_then_complete_again(self, funded):
        """Test that a completed redemption is final."""
        transaction = funded.redeem(KID, "ice-cream", 100).value

        completed = funded.complete_redemption(transaction.id, KID, "Served").value
        again = funded.complete_redemption(transaction.id, KID)

        assert completed.status == RedemptionStatus.COMPLETED
        assert isinstance(again.failure, StateFailure)
        assert isinstance(funded.cancel_redemption(transaction.id, KID).failure, StateFailure)
        assert funded.get_available_points(KID).value == 50

    def test_cancel_releases_points(self, funded):
        """Test that cancelling gives the points back."""
        transaction = funded.redeem(KID, "ice-cream", 100).value

        cancelled = funded.cancel_redemption(transaction.id, KID, "Changed mind").value

        assert cancelled.notes == "Changed mind"
        assert funded.get_available_points(KID).value == 150

    def test_expire(self, funded):
        """Test expiring a pending redemption."""
        transaction = funded.redeem(KID, "ice-cream", 100).value
        assert funded.expire_redemption(transaction.id, KID).value.status == RedemptionStatus.EXPIRED

    def test_transition_requires_owner(self, funded):
        """Test that another user cannot finish a redemption."""
        transaction = funded.redeem(KID, "ice-cream", 100).value

        result = funded.complete_redemption(transaction.id, SIBLING)

        assert isinstance(result.failure, AuthorizationFailure)
        assert funded.get_redemption(transaction.id).value.is_pending

    def test_unknown_redemption(self, funded):
        """Test transitions on a missing redemption."""
        assert isinstance(funded.expire_redemption("missing", KID).failure, NotFoundFailure)

    def test_history_and_stats(self, funded, clock, make_entry):
        """Test redemption history filters and statistics."""
        funded.add_entry(make_entry(points=300, description="Science fair"))
        first = funded.redeem(KID, "ice-cream", 100).value
        clock.advance(days=2)
        second = funded.redeem(KID, "movie-night", 200).value
        funded.complete_redemption(first.id, KID)
        funded.cancel_redemption(second.id, KID)

        history = funded.get_redemption_history(KID).value
        completed = funded.get_redemption_history(KID, status=RedemptionStatus.COMPLETED).value
        stats = funded.get_redemption_stats(KID).value

        assert [t.id for t in history.items] == [second.id, first.id]
        assert [t.id for t in completed.items] == [first.id]
        assert stats.total_transactions == 2
        assert stats.success_rate == 50.0
        assert stats.total_points_redeemed == 100
        assert stats.activity_span_days == 2
        assert stats.favorite_category == "treats"

    def test_history_date_range(self, funded, clock, make_entry):
        """Test filtering redemption history by date."""
        funded.add_entry(make_entry(points=300, description="Science fair"))
        first = funded.redeem(KID, "ice-cream").value
        clock.advance(days=3)
        second = funded.redeem(KID, "movie-night").value

        recent = funded.get_redemption_history(KID, start_date=START + timedelta(days=1)).value
        early = funded.get_redemption_history(KID, end_date=START + timedelta(days=1)).value
        reversed_range = funded.get_redemption_history(KID, start_date=clock(), end_date=START)

        assert [t.id for t in recent.items] == [second.id]
        assert [t.id for t in early.items] == [first.id]
        assert isinstance(reversed_range.failure, ValidationFailure)

    def test_can_redeem(self, funded):
        """Test the affordability check without creating a redemption."""
        assert funded.can_redeem(KID, 150).value is True
        assert funded.can_redeem(KID, 151).value is False
        assert funded.can_redeem(KID, 99).value is False
        assert isinstance(funded.can_redeem(" ", 100).failure, ValidationFailure)
        assert funded.get_redemption_history(KID).value.total_count == 0


class TestRedemptionCatalogue:
    """Tests for redemption options and how redeem resolves them."""

    @pytest.fixture
    def funded(self, service, make_entry):
        service.add_entry(make_entry(points=500))
        return service

    def add_option(self, service, clock, **fields):
        values = dict(
            id="zoo-trip", title="Zoo trip", description="A day at the zoo",
            required_points=300, category_id="outings", created_at=clock(),
        )
        values.update(fields)
        return service.add_redemption_option(RedemptionOption.create(**values).value)

    def test_options_sorted_and_filtered(self, service, clock):
        """Test that options come back cheapest first and filter by category."""
        self.add_option(service, clock)

        options = service.get_redemption_options().value
        outings = service.get_redemption_options_by_category("outings").value

        assert [option.id for option in options] == ["ice-cream", "movie-night", "late-bedtime", "zoo-trip"]
        assert [option.id for option in outings] == ["movie-night", "zoo-trip"]
        assert service.get_redemption_options_by_category("charity").value == []

    def test_unavailable_options_hidden(self, service, clock):
        """Test that inactive and expired options are not offered."""
        self.add_option(service, clock, is_active=False)
        self.add_option(service, clock, id="fair", title="Fair", expiry_date=clock() + timedelta(days=1))
        assert "fair" in [option.id for option in service.get_redemption_options().value]

        clock.advance(days=2)

        ids = [option.id for option in service.get_redemption_options().value]
        assert "zoo-trip" not in ids
        assert "fair" not in ids

    def test_add_option_checks(self, service, clock):
        """Test that options need a known category and a fresh id."""
        unknown = self.add_option(service, clock, category_id="ponies")
        duplicate = self.add_option(service, clock, id="ice-cream")

        assert isinstance(unknown.failure, NotFoundFailure)
        assert duplicate.failure.field == "id"

    def test_categories_in_sort_order(self, service):
        """Test the redemption categories."""
        categories = service.get_redemption_categories().value

        assert [category.sort_order for category in categories] == sorted(category.sort_order for category in categories)
        assert categories[0].id == "treats"

    def test_redeem_defaults_to_required_points(self, funded):
        """Test that omitting points spends the option's price."""
        transaction = funded.redeem(KID, "late-bedtime").value

        assert transaction.points_used == 200
        assert funded.get_available_points(KID).value == 300

    def test_redeem_unknown_option(self, funded):
        """Test that only catalogue options can be redeemed."""
        result = funded.redeem(KID, "pony", 100)

        assert isinstance(result.failure, NotFoundFailure)
        assert result.failure.resource == "redemption_option"
        assert funded.get_available_points(KID).value == 500

    def test_redeem_inactive_option(self, funded, clock):
        """Test that an inactive option cannot be redeemed."""
        self.add_option(funded, clock, is_active=False)

        result = funded.redeem(KID, "zoo-trip")

        assert isinstance(result.failure, StateFailure)
        assert result.failure.current == "inactive"

    def test_redeem_expired_option(self, funded, clock):
        """Test that an expired option cannot be redeemed."""
        self.add_option(funded, clock, expiry_date=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        result = funded.redeem(KID, "zoo-trip")

        assert result.failure.current == "expired"

    def test_redeem_below_option_price(self, funded):
        """Test that an option cannot be redeemed for less than it costs."""
        result = funded.redeem(KID, "late-bedtime", 150)

        assert isinstance(result.failure, ValidationFailure)
        assert result.failure.field == "points_used"


class TestWatchTotalPoints:
    """Tests for live point totals."""

    def test_receives_initial_and_updates(self, service, make_entry):
        """Test that watchers see the current total and every change."""
        subscription = service.watch_total_points(KID)

        added = service.add_entry(make_entry(points=30)).value
        service.delete_entry(added.id, KID)

        assert subscription.get(timeout=1) == 0
        assert subscription.get(timeout=1) == 30
        assert subscription.get(timeout=1) == 0
        subscription.cancel()

    def test_other_users_not_notified(self, service, make_entry):
        """Test that only the affected user is notified."""
        subscription = service.watch_total_points(SIBLING)
        assert subscription.get(timeout=1) == 0

        service.add_entry(make_entry(points=30))

        assert subscription.get(timeout=0.05) is None
        subscription.cancel()

    def test_cancel_stops_delivery(self, service, make_entry):
        """Test that nothing is delivered after cancelling."""
        with service.watch_total_points(KID) as subscription:
            assert subscription.get(timeout=1) == 0

        service.add_entry(make_entry(points=30))

        assert subscription.cancelled
        assert subscription.get(timeout=0.05) is None
        assert list(subscription) == []
        assert service.hub.subscriber_count(KID) == 0

    def test_failed_batch_publishes_nothing(self, service, make_entry):
        """Test that rejected mutations do not notify watchers."""
        subscription = service.watch_total_points(KID)
        assert subscription.get(timeout=1) == 0

        service.add_entry(make_entry(category_id="pets"))

        assert subscription.get(timeout=0.05) is None
        subscription.cancel()


    def test_available_points_follow_redemptions(self, service, make_entry):
        """Test that available-point watchers see holds and releases."""
        service.add_entry(make_entry(points=300))
        subscription = service.watch_available_points(KID)
        assert subscription.get(timeout=1) == 300

        transaction = service.redeem(KID, "late-bedtime").value
        service.cancel_redemption(transaction.id, KID)

        assert subscription.get(timeout=1) == 100
        assert subscription.get(timeout=1) == 300
        subscription.cancel()

    def test_overlapping_commits_end_on_latest_total(self, clock, ids, make_entry):
        """Test that a slow publisher cannot deliver an older total after a newer one."""
        store = StalledReadStore()
        service = LedgerService(store, clock=clock, id_factory=ids)
        subscription = service.watch_total_points(KID)
        assert subscription.get(timeout=1) == 0
        store.armed = True

        first = threading.Thread(target=service.add_entry, args=(make_entry(points=30),))
        first.start()
        assert store.entered.wait(5)
        second = threading.Thread(target=service.add_entry, args=(make_entry(points=20),))
        second.start()
        second.join(0.2)
        store.release.set()
        first.join(5)
        second.join(5)

        delivered = []
        total = subscription.get(timeout=0.1)
        while total is not None:
            delivered.append(total)
            total = subscription.get(timeout=0.1)

        # Verify the last value seen matches the store
        assert delivered[-1] == 50
        assert service.get_total_points(KID).value == 50
        subscription.cancel()


class TestOffline:
    """Tests for a service without a remote store."""

    def test_sync_without_remote(self):
        """Test that sync reports the missing remote as a state failure."""
        result = LedgerService().sync(KID)

        assert isinstance(result.failure, StateFailure)
        assert result.failure.current == "offline"
