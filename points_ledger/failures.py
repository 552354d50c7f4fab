from dataclasses import dataclass, field
from typing import ClassVar, Optional


@dataclass(frozen=True)
class Failure:
    message: str

    kind: ClassVar[str] = "failure"

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class ValidationFailure(Failure):
    """Input violates a business rule; ``rule`` holds its identifier (e.g. BR-008)."""

    rule: Optional[str] = None
    field: Optional[str] = None

    kind: ClassVar[str] = "validation"

    def __str__(self) -> str:
        if self.rule and self.rule not in self.message:
            return f"{self.message} ({self.rule})"
        return self.message


@dataclass(frozen=True)
class StateFailure(Failure):
    current: str = ""
    attempted: str = ""

    kind: ClassVar[str] = "state"


@dataclass(frozen=True)
class AuthorizationFailure(Failure):
    actor_id: str = ""
    resource_id: str = ""

    kind: ClassVar[str] = "authorization"


@dataclass(frozen=True)
class NotFoundFailure(Failure):
    resource: str = ""
    resource_id: str = ""

    kind: ClassVar[str] = "not_found"


@dataclass(frozen=True)
class TransportFailure(Failure):
    retryable: bool = True
    cancelled: bool = False

    kind: ClassVar[str] = "transport"


@dataclass(frozen=True)
class PartialApplicationFailure(Failure):
    """Compensating rollback failed; some writes of a batch may still be visible."""

    applied_keys: tuple[str, ...] = field(default_factory=tuple)

    kind: ClassVar[str] = "partial_application"


@dataclass(frozen=True)
class ConflictFailure(Failure):
    """Reported inside a SyncResult; never returned as an error."""

    entity_id: str = ""
    collection: str = ""
    base_version: Optional[int] = None
    remote_version: Optional[int] = None

    kind: ClassVar[str] = "conflict"


def validation_error(message: str, rule: Optional[str] = None, field_name: Optional[str] = None) -> ValidationFailure:
    if rule:
        message = f"{message} ({rule})"
    return ValidationFailure(message, rule=rule, field=field_name)
