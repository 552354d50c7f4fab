from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Generic, Iterable, Optional, TypeVar
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError

from . import constants as c
from .failures import ConflictFailure, StateFailure, ValidationFailure, validation_error
from .result import Err, Ok, Result
from .validation import (
    as_utc,
    require_id,
    validate_category_name,
    validate_date_range,
    validate_entry_points,
    validate_not_before,
    validate_page,
    validate_redemption_points,
    validate_text,
)

T = TypeVar("T")

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def _build(model: type, data: dict) -> Result:
    try:
        return Ok(model(**data))
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first["loc"])
        return Err(ValidationFailure(f"Invalid {loc}: {first['msg']}", field=loc or None))


def _unknown_fields(model: type, changes: dict[str, Any]) -> Optional[ValidationFailure]:
    unknown = sorted(set(changes) - set(model.model_fields))
    if unknown:
        return validation_error(f"Unknown {model.__name__} field: {unknown[0]}", field_name=unknown[0])
    return None


class RewardType(str, Enum):
    EARNED = "earned"
    ADJUSTED = "adjusted"
    BONUS = "bonus"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_final(self) -> bool:
        return self in (RedemptionStatus.COMPLETED, RedemptionStatus.CANCELLED, RedemptionStatus.EXPIRED)

    @property
    def can_be_cancelled(self) -> bool:
        return self == RedemptionStatus.PENDING

    @property
    def is_active(self) -> bool:
        return self == RedemptionStatus.PENDING


class GoalType(str, Enum):
    POINTS = "points"
    REWARD = "reward"


class AchievementTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


class LedgerModel(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        return cls.model_validate(data)


class RewardCategory(LedgerModel):
    id: str
    name: str
    description: Optional[str] = None
    color: int = 0xFF9E9E9E
    icon: str = "label"
    is_default: bool = False

    @classmethod
    def create(
        cls,
        *,
        id: str,
        name: str,
        description: Optional[str] = None,
        color: int = 0xFF9E9E9E,
        icon: str = "label",
        is_default: bool = False,
    ) -> Result["RewardCategory"]:
        checked_id = require_id(id, "Category ID")
        if checked_id.is_err:
            return checked_id
        checked_name = validate_category_name(name)
        if checked_name.is_err:
            return checked_name
        checked_description = validate_text(
            description, "Category description", c.MAX_CATEGORY_DESCRIPTION, required=False
        )
        if checked_description.is_err:
            return checked_description
        if not 0 <= color <= 0xFFFFFFFF:
            return Err(validation_error("Category color must be a 32-bit ARGB value", field_name="color"))
        checked_icon = require_id(icon, "Category icon")
        if checked_icon.is_err:
            return checked_icon
        return _build(cls, {
            "id": checked_id.value,
            "name": checked_name.value,
            "description": checked_description.value,
            "color": color,
            "icon": checked_icon.value,
            "is_default": is_default,
        })

    def copy_with(self, **changes: Any) -> Result["RewardCategory"]:
        unknown = _unknown_fields(RewardCategory, changes)
        if unknown:
            return Err(unknown)
        data = self.model_dump()
        data.update(changes)
        return RewardCategory.create(**data)


class RewardEntry(LedgerModel):
    id: str
    user_id: str
    points: int
    description: str
    category_id: str
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None
    is_synced: bool = False
    type: RewardType = RewardType.EARNED

    @classmethod
    def create(
        cls,
        *,
        id: str,
        user_id: str,
        points: int,
        description: str,
        category_id: str,
        created_at: datetime,
        updated_at: Optional[datetime] = None,
        is_synced: bool = False,
        type: RewardType = RewardType.EARNED,
    ) -> Result["RewardEntry"]:
        checked_id = require_id(id, "Reward entry ID")
        if checked_id.is_err:
            return checked_id
        checked_user = require_id(user_id, "User ID")
        if checked_user.is_err:
            return checked_user
        if category_id is None or not str(category_id).strip():
            return Err(validation_error(
                "Category ID cannot be empty: each reward entry must have a category", "BR-011", "category_id"
            ))
        if description is None or not description.strip():
            return Err(validation_error(
                "Description cannot be empty: each reward entry must be described", "BR-011", "description"
            ))
        try:
            type = RewardType(type)
        except ValueError:
            return Err(validation_error(f"Invalid reward type: {type}", field_name="type"))
        checked_points = validate_entry_points(points, allow_negative=type == RewardType.ADJUSTED)
        if checked_points.is_err:
            return checked_points
        checked_description = validate_text(description, "Description", c.MAX_ENTRY_DESCRIPTION)
        if checked_description.is_err:
            return checked_description
        checked_updated = validate_not_before(updated_at, created_at, "Updated date")
        if checked_updated.is_err:
            return checked_updated
        return _build(cls, {
            "id": checked_id.value,
            "user_id": checked_user.value,
            "points": checked_points.value,
            "description": checked_description.value,
            "category_id": str(category_id).strip(),
            "created_at": created_at,
            "updated_at": checked_updated.value,
            "is_synced": is_synced,
            "type": type,
        })

    def can_be_modified(self, now: Optional[datetime] = None) -> bool:
        """BR-004: entries are editable for 24 hours after creation."""
        now = as_utc(now or utc_now())
        return now - self.created_at < c.ENTRY_EDIT_WINDOW

    def is_recent(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now or utc_now())
        return now - self.created_at < c.RECENT_ENTRY_WINDOW

    def copy_with(self, now: Optional[datetime] = None, **changes: Any) -> Result["RewardEntry"]:
        """
        Return a re-validated copy. Changing any field other than
        ``updated_at``/``is_synced`` stamps ``updated_at``, clears ``is_synced``
        and is only allowed inside the BR-004 edit window.
        """
        unknown = _unknown_fields(RewardEntry, changes)
        if unknown:
            return Err(unknown)
        for frozen_field in ("id", "user_id", "created_at"):
            if frozen_field in changes and changes[frozen_field] != getattr(self, frozen_field):
                return Err(validation_error(f"{frozen_field} cannot be changed", field_name=frozen_field))

        now = as_utc(now or utc_now())
        meaningful = {
            k: v for k, v in changes.items()
            if k not in ("updated_at", "is_synced") and v != getattr(self, k)
        }
        data = self.model_dump()
        data.update(changes)
        if meaningful:
            if not self.can_be_modified(now):
                return Err(validation_error(
                    "Reward entries can only be modified within 24 hours of creation", "BR-004"
                ))
            data["updated_at"] = changes.get("updated_at") or now
            data["is_synced"] = False
        return RewardEntry.create(**data)


class RedemptionTransaction(LedgerModel):
    id: str
    user_id: str
    option_id: str
    points_used: int
    redeemed_at: UtcDatetime
    status: RedemptionStatus = RedemptionStatus.PENDING
    notes: Optional[str] = None
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    cancelled_at: Optional[UtcDatetime] = None

    @classmethod
    def create(
        cls,
        *,
        user_id: str,
        option_id: str,
        points_used: int,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
        id_factory: Callable[[], str] = new_id,
    ) -> Result["RedemptionTransaction"]:
        checked_user = require_id(user_id, "User ID")
        if checked_user.is_err:
            return checked_user
        checked_option = require_id(option_id, "Option ID")
        if checked_option.is_err:
            return checked_option
        checked_points = validate_redemption_points(points_used)
        if checked_points.is_err:
            return checked_points
        checked_notes = validate_text(notes, "Notes", c.MAX_NOTES_LENGTH, required=False)
        if checked_notes.is_err:
            return checked_notes

        now = as_utc(now or utc_now())
        return _build(cls, {
            "id": id_factory(),
            "user_id": checked_user.value,
            "option_id": checked_option.value,
            "points_used": checked_points.value,
            "redeemed_at": now,
            "status": RedemptionStatus.PENDING,
            "notes": checked_notes.value,
            "created_at": now,
        })

    def copy_with(self, now: Optional[datetime] = None, **changes: Any) -> Result["RedemptionTransaction"]:
        unknown = _unknown_fields(RedemptionTransaction, changes)
        if unknown:
            return Err(unknown)
        try:
            new_status = RedemptionStatus(changes.get("status", self.status))
        except ValueError:
            return Err(validation_error(f"Invalid redemption status: {changes['status']}", field_name="status"))
        # BR-009: the only place a finalized status is guarded
        if self.status.is_final and new_status != self.status:
            return Err(StateFailure(
                "Cannot change status of finalized redemption (BR-009). "
                f"Current status: {self.status.value}, attempted: {new_status.value}",
                current=self.status.value,
                attempted=new_status.value,
            ))
        if "points_used" in changes:
            checked = validate_redemption_points(changes["points_used"])
            if checked.is_err:
                return checked
        for key, label in (("user_id", "User ID"), ("option_id", "Option ID")):
            if key in changes:
                checked = require_id(changes[key], label)
                if checked.is_err:
                    return checked
                changes[key] = checked.value
        if changes.get("notes") is None:
            changes.pop("notes", None)
        else:
            checked = validate_text(changes["notes"], "Notes", c.MAX_NOTES_LENGTH, required=False)
            if checked.is_err:
                return checked
            changes["notes"] = checked.value

        data = self.model_dump()
        data.update(changes)
        data["status"] = new_status
        data["updated_at"] = changes.get("updated_at") or as_utc(now or utc_now())
        return _build(RedemptionTransaction, data)

    def complete(self, notes: Optional[str] = None, now: Optional[datetime] = None) -> Result["RedemptionTransaction"]:
        if self.status != RedemptionStatus.PENDING:
            return Err(self._illegal("complete", RedemptionStatus.COMPLETED))
        now = as_utc(now or utc_now())
        return self.copy_with(now=now, status=RedemptionStatus.COMPLETED, completed_at=now, notes=notes)

    def cancel(self, reason: Optional[str] = None, now: Optional[datetime] = None) -> Result["RedemptionTransaction"]:
        if not self.status.can_be_cancelled:
            return Err(StateFailure(
                f"Cannot cancel redemption with status: {self.status.value}",
                current=self.status.value,
                attempted=RedemptionStatus.CANCELLED.value,
            ))
        now = as_utc(now or utc_now())
        return self.copy_with(now=now, status=RedemptionStatus.CANCELLED, cancelled_at=now, notes=reason)

    def expire(self, notes: Optional[str] = None, now: Optional[datetime] = None) -> Result["RedemptionTransaction"]:
        if self.status != RedemptionStatus.PENDING:
            return Err(self._illegal("expire", RedemptionStatus.EXPIRED))
        return self.copy_with(now=now, status=RedemptionStatus.EXPIRED, notes=notes)

    def _illegal(self, verb: str, target: RedemptionStatus) -> StateFailure:
        return StateFailure(
            f"Can only {verb} pending redemptions. Current status: {self.status.value}",
            current=self.status.value,
            attempted=target.value,
        )

    @property
    def is_final(self) -> bool:
        return self.status.is_final

    @property
    def can_be_cancelled(self) -> bool:
        return self.status.can_be_cancelled

    @property
    def is_pending(self) -> bool:
        return self.status == RedemptionStatus.PENDING

    @property
    def is_successful(self) -> bool:
        return self.status == RedemptionStatus.COMPLETED

    @property
    def holds_points(self) -> bool:
        """Pending and completed redemptions count against the balance."""
        return self.status in (RedemptionStatus.PENDING, RedemptionStatus.COMPLETED)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return as_utc(now or utc_now()) - self.created_at


class RedemptionCategory(LedgerModel):
    id: str
    name: str
    description: str
    icon: str
    is_active: bool = True
    sort_order: int = 0


class RedemptionOption(LedgerModel):
    """Something a user can spend points on."""

    id: str
    title: str
    description: str
    required_points: int
    category_id: str
    is_active: bool = True
    expiry_date: Optional[UtcDatetime] = None
    image_url: Optional[str] = None
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None

    @classmethod
    def create(
        cls,
        *,
        id: str,
        title: str,
        description: str,
        required_points: int,
        category_id: str,
        created_at: datetime,
        is_active: bool = True,
        expiry_date: Optional[datetime] = None,
        image_url: Optional[str] = None,
        updated_at: Optional[datetime] = None,
    ) -> Result["RedemptionOption"]:
        checked_id = require_id(id, "Option ID")
        if checked_id.is_err:
            return checked_id
        checked_points = validate_redemption_points(required_points)
        if checked_points.is_err:
            return checked_points
        checked_title = validate_text(title, "Option title", c.MAX_OPTION_TITLE)
        if checked_title.is_err:
            return checked_title
        checked_description = validate_text(description, "Option description", c.MAX_OPTION_DESCRIPTION)
        if checked_description.is_err:
            return checked_description
        checked_category = require_id(category_id, "Redemption category ID")
        if checked_category.is_err:
            return checked_category
        checked_expiry = validate_not_before(expiry_date, created_at, "Expiry date")
        if checked_expiry.is_err:
            return checked_expiry
        checked_updated = validate_not_before(updated_at, created_at, "Updated date")
        if checked_updated.is_err:
            return checked_updated
        return _build(cls, {
            "id": checked_id.value,
            "title": checked_title.value,
            "description": checked_description.value,
            "required_points": checked_points.value,
            "category_id": checked_category.value,
            "is_active": is_active,
            "expiry_date": checked_expiry.value,
            "image_url": image_url.strip() if image_url and image_url.strip() else None,
            "created_at": created_at,
            "updated_at": checked_updated.value,
        })

    def copy_with(self, now: Optional[datetime] = None, **changes: Any) -> Result["RedemptionOption"]:
        unknown = _unknown_fields(RedemptionOption, changes)
        if unknown:
            return Err(unknown)
        if "id" in changes and changes["id"] != self.id:
            return Err(validation_error("id cannot be changed", field_name="id"))
        data = self.model_dump()
        data.update(changes)
        data["updated_at"] = changes.get("updated_at") or as_utc(now or utc_now())
        return RedemptionOption.create(**data)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expiry_date is not None and as_utc(now or utc_now()) >= self.expiry_date

    def is_available(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    def can_redeem_with(self, available_points: int, now: Optional[datetime] = None) -> bool:
        return self.is_available(now) and available_points >= self.required_points


class RedemptionStats(LedgerModel):
    total_transactions: int
    completed_transactions: int
    cancelled_transactions: int
    total_points_redeemed: int
    first_redemption_date: Optional[UtcDatetime] = None
    last_redemption_date: Optional[UtcDatetime] = None
    favorite_category: Optional[str] = None

    @property
    def success_rate(self) -> float:
        if self.total_transactions == 0:
            return 0.0
        return self.completed_transactions / self.total_transactions * 100

    @property
    def average_points_per_redemption(self) -> float:
        if self.completed_transactions == 0:
            return 0.0
        return self.total_points_redeemed / self.completed_transactions

    @property
    def pending_transactions(self) -> int:
        return self.total_transactions - self.completed_transactions - self.cancelled_transactions

    @property
    def has_activity(self) -> bool:
        return self.total_transactions > 0

    @property
    def activity_span_days(self) -> int:
        if self.first_redemption_date is None or self.last_redemption_date is None:
            return 0
        return (self.last_redemption_date - self.first_redemption_date).days

    @classmethod
    def from_transactions(
        cls,
        transactions: Iterable[RedemptionTransaction],
        category_of: Optional[Callable[[str], Optional[str]]] = None,
    ) -> "RedemptionStats":
        transactions = list(transactions)
        completed = [t for t in transactions if t.is_successful]
        dates = sorted(t.redeemed_at for t in transactions)

        favorite = None
        if category_of is not None and completed:
            counts: dict[str, int] = {}
            for t in completed:
                category = category_of(t.option_id)
                if category:
                    counts[category] = counts.get(category, 0) + 1
            if counts:
                favorite = min(counts, key=lambda name: (-counts[name], name))

        return cls(
            total_transactions=len(transactions),
            completed_transactions=len(completed),
            cancelled_transactions=sum(1 for t in transactions if t.status == RedemptionStatus.CANCELLED),
            total_points_redeemed=sum(t.points_used for t in completed),
            first_redemption_date=dates[0] if dates else None,
            last_redemption_date=dates[-1] if dates else None,
            favorite_category=favorite,
        )


class Goal(LedgerModel):
    id: str
    user_id: str
    title: str
    description: str = ""
    target_value: int
    current_value: int = 0
    type: GoalType = GoalType.POINTS
    category: str = "general"
    created_at: UtcDatetime
    target_date: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
    target_reward_id: Optional[str] = None
    priority: int = 1
    color: str = "#FF6B6B"
    icon: str = "star"

    @classmethod
    def create(cls, **fields: Any) -> Result["Goal"]:
        for key, label in (("id", "Goal ID"), ("user_id", "User ID")):
            checked = require_id(fields.get(key), label)
            if checked.is_err:
                return checked
            fields[key] = checked.value
        title = validate_text(fields.get("title"), "Goal title", c.MAX_GOAL_TITLE)
        if title.is_err:
            return title
        fields["title"] = title.value
        description = validate_text(fields.get("description", ""), "Goal description", c.MAX_GOAL_DESCRIPTION, required=False)
        if description.is_err:
            return description
        fields["description"] = description.value or ""

        target = fields.get("target_value")
        if not isinstance(target, int) or isinstance(target, bool) or target <= 0:
            return Err(validation_error("Goal target value must be a positive whole number", field_name="target_value"))
        current = fields.get("current_value", 0)
        if not isinstance(current, int) or isinstance(current, bool) or current < 0:
            return Err(validation_error("Goal current value cannot be negative", field_name="current_value"))
        try:
            goal_type = GoalType(fields.get("type", GoalType.POINTS))
        except ValueError:
            return Err(validation_error(f"Invalid goal type: {fields.get('type')}", field_name="type"))
        if goal_type == GoalType.REWARD and not fields.get("target_reward_id"):
            return Err(validation_error("Reward goals must reference a reward", field_name="target_reward_id"))
        created_at = fields.get("created_at")
        if created_at is None:
            return Err(validation_error("Goal created date is required", field_name="created_at"))
        for key, label in (("target_date", "Target date"), ("completed_at", "Completed date")):
            checked = validate_not_before(fields.get(key), created_at, label)
            if checked.is_err:
                return checked
        return _build(cls, fields)

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None or self.current_value >= self.target_value

    @property
    def is_active(self) -> bool:
        return not self.is_completed

    @property
    def progress(self) -> float:
        return max(0.0, min(1.0, self.current_value / self.target_value))

    @property
    def points_needed(self) -> int:
        return max(0, self.target_value - self.current_value)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.target_date is None or self.is_completed:
            return False
        return as_utc(now or utc_now()) > self.target_date

    def days_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        if self.target_date is None:
            return None
        return (self.target_date - as_utc(now or utc_now())).days

    def with_progress(self, current_value: int, now: Optional[datetime] = None) -> Result["Goal"]:
        if self.completed_at is not None:
            return Err(StateFailure("Goal is already completed", current="completed", attempted="progress"))
        data = self.model_dump()
        data["current_value"] = current_value
        if isinstance(current_value, int) and current_value >= self.target_value:
            data["completed_at"] = as_utc(now or utc_now())
        return Goal.create(**data)

    def mark_completed(self, now: Optional[datetime] = None) -> Result["Goal"]:
        if self.completed_at is not None:
            return Err(StateFailure("Goal is already completed", current="completed", attempted="completed"))
        return _build(Goal, {**self.model_dump(), "completed_at": as_utc(now or utc_now())})


class Achievement(LedgerModel):
    id: str
    user_id: str
    title: str
    description: str = ""
    icon: str = "emoji_events"
    color: str = "#FFD700"
    tier: AchievementTier = AchievementTier.BRONZE
    points_required: int
    earned_at: UtcDatetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(cls, **fields: Any) -> Result["Achievement"]:
        for key, label in (("id", "Achievement ID"), ("user_id", "User ID")):
            checked = require_id(fields.get(key), label)
            if checked.is_err:
                return checked
            fields[key] = checked.value
        title = validate_text(fields.get("title"), "Achievement title", c.MAX_GOAL_TITLE)
        if title.is_err:
            return title
        fields["title"] = title.value
        required = fields.get("points_required")
        if not isinstance(required, int) or isinstance(required, bool) or required < 0:
            return Err(validation_error("Points required cannot be negative", field_name="points_required"))
        if fields.get("earned_at") is None:
            return Err(validation_error("Achievement earned date is required", field_name="earned_at"))
        return _build(cls, fields)

    def is_unlocked_by(self, total_points: int) -> bool:
        return total_points >= self.points_required


class HistoryFilters(LedgerModel):
    page: int = 1
    limit: int = 20
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    category_id: Optional[str] = None
    type: Optional[RewardType] = None

    def check(self, max_limit: int) -> Result["HistoryFilters"]:
        paging = validate_page(self.page, self.limit, max_limit)
        if paging.is_err:
            return paging
        return validate_date_range(self.start_date, self.end_date).map(lambda _: self)

    def matches(self, entry: RewardEntry) -> bool:
        if self.start_date and entry.created_at < self.start_date:
            return False
        if self.end_date and entry.created_at > self.end_date:
            return False
        if self.category_id and entry.category_id != self.category_id:
            return False
        if self.type and entry.type != self.type:
            return False
        return True


class PaginatedResult(BaseModel, Generic[T]):
    model_config = ConfigDict(frozen=True)

    items: list[T]
    total_count: int
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        if self.total_count == 0:
            return 1
        return (self.total_count + self.limit - 1) // self.limit

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @classmethod
    def paginate(cls, items: list, page: int, limit: int) -> "PaginatedResult":
        start = (page - 1) * limit
        return cls(items=items[start:start + limit], total_count=len(items), page=page, limit=limit)


class SyncResult(LedgerModel):
    uploaded_count: int = 0
    downloaded_count: int = 0
    conflicted_entries: list[str] = Field(default_factory=list)
    sync_timestamp: UtcDatetime
    conflicts: list[ConflictFailure] = Field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicted_entries)
