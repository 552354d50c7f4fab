import itertools
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from points_ledger import constants as c
from points_ledger.models import RedemptionOption, RewardEntry, RewardType
from points_ledger.service import LedgerService
from points_ledger.store import InMemoryDocumentStore, TransportError

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
KID = "kid-1"
SIBLING = "kid-2"

CATALOGUE = (
    ("ice-cream", "Ice cream", 100, "treats"),
    ("movie-night", "Movie night", 100, "outings"),
    ("late-bedtime", "Late bedtime", 200, "privileges"),
)


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class SequentialIds:
    def __init__(self, prefix: str = "id"):
        self.prefix = prefix
        self._counter = itertools.count(1)

    def __call__(self) -> str:
        return f"{self.prefix}-{next(self._counter)}"


class FlakyRemoteStore(InMemoryDocumentStore):
    """Remote store double; calls named in ``fail_on`` raise TransportError."""

    def __init__(self):
        super().__init__()
        self.fail_on: set[str] = set()

    def _maybe_fail(self, call: str) -> None:
        if call in self.fail_on:
            raise TransportError(f"remote unreachable during {call}")

    def get(self, *args, **kwargs):
        self._maybe_fail("get")
        return super().get(*args, **kwargs)

    def put(self, *args, **kwargs):
        self._maybe_fail("put")
        return super().put(*args, **kwargs)

    def delete(self, *args, **kwargs):
        self._maybe_fail("delete")
        return super().delete(*args, **kwargs)

    def changes_since(self, *args, **kwargs):
        self._maybe_fail("changes_since")
        return super().changes_since(*args, **kwargs)


class BlockingRemoteStore(InMemoryDocumentStore):
    """Remote store double whose first ``changes_since`` waits until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self._blocked = False

    def changes_since(self, *args, **kwargs):
        if not self._blocked:
            self._blocked = True
            self.entered.set()
            self.release.wait(5)
        return super().changes_since(*args, **kwargs)


class FaultyLocalStore(InMemoryDocumentStore):
    """Store without transactions that drops the n-th put and, optionally, every delete."""

    def __init__(self, fail_put_at: Optional[int] = None, fail_deletes: bool = False):
        super().__init__(supports_transactions=False)
        self.fail_put_at = fail_put_at
        self.fail_deletes = fail_deletes
        self.armed = False
        self.puts = 0

    def put(self, *args, **kwargs):
        if self.armed:
            self.puts += 1
            if self.puts == self.fail_put_at:
                raise TransportError("write dropped")
        return super().put(*args, **kwargs)

    def delete(self, *args, **kwargs):
        if self.armed and self.fail_deletes:
            raise TransportError("delete dropped")
        return super().delete(*args, **kwargs)


class HoldingStore(InMemoryDocumentStore):
    """Store without transactions that holds the first armed write to ``hold_collection`` until released."""

    def __init__(self, hold_collection: str):
        super().__init__(supports_transactions=False)
        self.hold_collection = hold_collection
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def put(self, collection, *args, **kwargs):
        if self.armed and collection == self.hold_collection:
            self.armed = False
            self.entered.set()
            self.release.wait(5)
        return super().put(collection, *args, **kwargs)


class StalledReadStore(InMemoryDocumentStore):
    """Store whose first armed entry query stalls after reading until released."""

    def __init__(self):
        super().__init__()
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def query(self, collection, **kwargs):
        docs = super().query(collection, **kwargs)
        if self.armed and collection == c.ENTRIES:
            self.armed = False
            self.entered.set()
            self.release.wait(5)
        return docs


def stock_catalogue(service: LedgerService) -> LedgerService:
    for option_id, title, points, category_id in CATALOGUE:
        option = RedemptionOption.create(
            id=option_id,
            title=title,
            description=f"{title} for the household",
            required_points=points,
            category_id=category_id,
            created_at=service.clock(),
        ).value
        service.add_redemption_option(option)
    return service


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def ids():
    return SequentialIds()


@pytest.fixture(params=["transactional", "compensating"])
def store(request):
    return InMemoryDocumentStore(supports_transactions=request.param == "transactional")


@pytest.fixture
def service(store, clock, ids):
    return stock_catalogue(LedgerService(store, clock=clock, id_factory=ids))


@pytest.fixture
def remote():
    return FlakyRemoteStore()


@pytest.fixture
def device_a(remote, clock):
    return stock_catalogue(LedgerService(InMemoryDocumentStore(), clock=clock, id_factory=SequentialIds("a"), remote=remote))


@pytest.fixture
def device_b(remote, clock):
    return stock_catalogue(LedgerService(InMemoryDocumentStore(), clock=clock, id_factory=SequentialIds("b"), remote=remote))


@pytest.fixture
def make_entry(clock):
    def make(
        user_id: str = KID,
        points: int = 10,
        description: str = "Emptied the dishwasher",
        category_id: str = "chores",
        type: RewardType = RewardType.EARNED,
    ) -> RewardEntry:
        return RewardEntry.create(
            id="draft",
            user_id=user_id,
            points=points,
            description=description,
            category_id=category_id,
            created_at=clock(),
            type=type,
        ).value

    return make
