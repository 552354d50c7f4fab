"""
Pure validators for ledger entities.

Each validator returns ``Ok(normalised_value)`` or ``Err(ValidationFailure)``.
Checks run in a fixed order: presence, whitespace trimming, length/range,
character set, then cross-field rules. Nothing here touches storage.
"""

import re
from datetime import datetime, timezone
from typing import Optional

from . import constants as c
from .failures import validation_error
from .result import Err, Ok, Result

_CATEGORY_NAME_RE = re.compile(c.CATEGORY_NAME_PATTERN)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def require_id(value: Optional[str], label: str) -> Result[str]:
    if value is None or not str(value).strip():
        return Err(validation_error(f"{label} cannot be empty", field_name=label))
    return Ok(str(value).strip())


def validate_text(
    value: Optional[str],
    label: str,
    max_length: int,
    *,
    required: bool = True,
    rule: Optional[str] = None,
) -> Result[Optional[str]]:
    if value is None:
        if required:
            return Err(validation_error(f"{label} cannot be empty", rule, label))
        return Ok(None)
    trimmed = value.strip()
    if required and not trimmed:
        return Err(validation_error(f"{label} cannot be empty", rule, label))
    if len(trimmed) > max_length:
        return Err(validation_error(f"{label} cannot exceed {max_length} characters", field_name=label))
    return Ok(trimmed)


def validate_category_name(name: Optional[str]) -> Result[str]:
    if name is None or not name.strip():
        return Err(validation_error("Category name cannot be empty", field_name="name"))
    trimmed = name.strip()
    if len(trimmed) > c.MAX_CATEGORY_NAME:
        return Err(validation_error(
            f"Category name cannot exceed {c.MAX_CATEGORY_NAME} characters", field_name="name"
        ))
    if not _CATEGORY_NAME_RE.match(trimmed):
        return Err(validation_error("Category name contains invalid characters", field_name="name"))
    return Ok(trimmed)


def validate_entry_points(points: int, allow_negative: bool) -> Result[int]:
    if isinstance(points, bool) or not isinstance(points, int):
        return Err(validation_error("Points must be a whole number", field_name="points"))
    if points < 0 and not allow_negative:
        return Err(validation_error(
            "Points cannot be negative except for adjusted entries", "BR-003", "points"
        ))
    if abs(points) > c.MAX_ENTRY_POINTS:
        return Err(validation_error(
            f"Maximum point entry value is {c.MAX_ENTRY_POINTS:,} points per transaction", "BR-002", "points"
        ))
    return Ok(points)


def validate_redemption_points(points: int) -> Result[int]:
    if isinstance(points, bool) or not isinstance(points, int):
        return Err(validation_error("Points used must be a whole number", field_name="points_used"))
    if points < c.MIN_REDEMPTION_POINTS:
        return Err(validation_error(
            f"Points used must be at least {c.MIN_REDEMPTION_POINTS}. Got: {points}", "BR-008", "points_used"
        ))
    if points > c.MAX_REDEMPTION_POINTS:
        return Err(validation_error(
            f"Points used cannot exceed {c.MAX_REDEMPTION_POINTS:,}. Got: {points}", "BR-008", "points_used"
        ))
    return Ok(points)


def validate_not_before(later: Optional[datetime], earlier: datetime, label: str) -> Result[Optional[datetime]]:
    if later is None:
        return Ok(None)
    later = as_utc(later)
    if later < as_utc(earlier):
        return Err(validation_error(f"{label} cannot be before created date", field_name=label))
    return Ok(later)


def validate_page(page: int, limit: int, max_limit: int) -> Result[tuple[int, int]]:
    if page < 1:
        return Err(validation_error("Page must be at least 1", field_name="page"))
    if limit < 1 or limit > max_limit:
        return Err(validation_error(f"Limit must be between 1 and {max_limit}", field_name="limit"))
    return Ok((page, limit))


def validate_date_range(start: Optional[datetime], end: Optional[datetime]) -> Result[None]:
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        return Err(validation_error("Start date cannot be after end date", field_name="start_date"))
    return Ok(None)
