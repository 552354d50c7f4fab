"""
Atomic batch execution for ledger mutations.

A batch is planned against a ``LedgerView`` (the store as seen through the
writes staged so far) and then committed as one unit:

- stores with transactions: plan and commit inside ``store.transaction()``
- stores without: commit write by write, re-read to verify, re-check balances
  against the live store, and undo every applied write in reverse order if
  anything fails. If the undo itself fails the batch reports
  ``PartialApplicationFailure``.

Every entity write also records a pending-sync item so the sync engine can
upload it later.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence, TypeVar

from . import constants as c
from .failures import (
    AuthorizationFailure,
    NotFoundFailure,
    PartialApplicationFailure,
    TransportFailure,
    validation_error,
)
from .models import RedemptionTransaction, RewardEntry, new_id, utc_now
from .result import Err, Ok, Result
from .store import (
    Document,
    DocumentReader,
    DocumentStore,
    OperationCancelledError,
    StoreError,
    TransportError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def queue_key(collection: str, entity_id: str) -> str:
    return f"{collection}:{entity_id}"


def store_failure(error: StoreError, action: str) -> TransportFailure:
    if isinstance(error, OperationCancelledError):
        return TransportFailure(f"{action} cancelled", retryable=True, cancelled=True)
    if isinstance(error, VersionConflictError):
        return TransportFailure(f"{action} failed: concurrent modification ({error})", retryable=True)
    if isinstance(error, TransportError):
        return TransportFailure(f"{action} failed: {error}", retryable=True)
    return TransportFailure(f"{action} failed: {error}", retryable=False)


class BatchOperationType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class BatchOperation:
    type: BatchOperationType
    entry: Optional[RewardEntry] = None
    entry_id: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def add(cls, entry: RewardEntry) -> "BatchOperation":
        return cls(BatchOperationType.ADD, entry=entry, entry_id=entry.id, user_id=entry.user_id)

    @classmethod
    def update(cls, entry: RewardEntry) -> "BatchOperation":
        return cls(BatchOperationType.UPDATE, entry=entry, entry_id=entry.id, user_id=entry.user_id)

    @classmethod
    def delete(cls, entry_id: str, user_id: str) -> "BatchOperation":
        return cls(BatchOperationType.DELETE, entry_id=entry_id, user_id=user_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "entry": self.entry.to_dict() if self.entry else None,
            "entry_id": self.entry_id,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchOperation":
        op_type = BatchOperationType(data["type"])
        if op_type == BatchOperationType.DELETE:
            return cls.delete(data["entry_id"], data["user_id"])
        entry = RewardEntry.from_dict(data["entry"])
        return cls.add(entry) if op_type == BatchOperationType.ADD else cls.update(entry)


@dataclass
class Write:
    collection: str
    doc_id: str
    owner: str
    data: Optional[dict[str, Any]]
    expected_version: Optional[int] = None

    @property
    def is_delete(self) -> bool:
        return self.data is None

    @property
    def key(self) -> str:
        return f"{self.collection}/{self.doc_id}"


class StagedView:
    """Reads through an underlying reader with the staged writes layered on top."""

    def __init__(self, reader: DocumentReader, clock: Callable = utc_now, track_versions: bool = False):
        self.base = reader
        self.clock = clock
        self._track_versions = track_versions
        self._writes: dict[tuple[str, str], Write] = {}

    @property
    def writes(self) -> list[Write]:
        return list(self._writes.values())

    @property
    def owners(self) -> set[str]:
        return {w.owner for w in self._writes.values() if w.collection in c.SYNCED_COLLECTIONS}

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        staged = self._writes.get((collection, doc_id))
        if staged is not None:
            if staged.is_delete:
                return None
            return Document(collection, doc_id, staged.owner, staged.data, version=0)
        return self.base.get(collection, doc_id)

    def query(self, collection: str, owner: Optional[str] = None) -> list[Document]:
        docs = {doc.id: doc for doc in self.base.query(collection, owner=owner)}
        for (coll, doc_id), write in self._writes.items():
            if coll != collection or (owner is not None and write.owner != owner):
                continue
            if write.is_delete:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = Document(collection, doc_id, write.owner, write.data, version=0)
        return list(docs.values())

    def _stage(self, collection: str, doc_id: str, owner: str, data: Optional[dict[str, Any]]) -> None:
        key = (collection, doc_id)
        if key in self._writes:
            expected = self._writes[key].expected_version
        elif self._track_versions and isinstance(self.base, DocumentStore):
            expected = self.base.version_of(collection, doc_id) or 0
        else:
            expected = None
        self._writes[key] = Write(collection, doc_id, owner, data, expected)

    def put(self, collection: str, doc_id: str, owner: str, data: dict[str, Any]) -> None:
        self._stage(collection, doc_id, owner, data)

    def delete(self, collection: str, doc_id: str, owner: str) -> None:
        self._stage(collection, doc_id, owner, None)


class LedgerView(StagedView):
    """Staged view with the ledger's derived reads and pending-sync bookkeeping."""

    def entries(self, user_id: str) -> list[RewardEntry]:
        return [RewardEntry.from_dict(doc.data) for doc in self.query(c.ENTRIES, owner=user_id)]

    def redemptions(self, user_id: str) -> list[RedemptionTransaction]:
        return [RedemptionTransaction.from_dict(doc.data) for doc in self.query(c.REDEMPTIONS, owner=user_id)]

    def total_points(self, user_id: str) -> int:
        return sum(entry.points for entry in self.entries(user_id))

    def available_points(self, user_id: str) -> int:
        held = sum(t.points_used for t in self.redemptions(user_id) if t.holds_points)
        return self.total_points(user_id) - held

    def category_exists(self, user_id: str, category_id: str) -> bool:
        if any(default["id"] == category_id for default in c.DEFAULT_CATEGORIES):
            return True
        doc = self.get(c.CATEGORIES, category_id)
        return doc is not None and doc.owner == user_id

    def save_entity(self, collection: str, entity_id: str, owner: str, data: dict[str, Any], enqueue: bool = True) -> None:
        self.put(collection, entity_id, owner, data)
        if enqueue:
            self._enqueue(collection, entity_id, owner, "upsert")

    def remove_entity(self, collection: str, entity_id: str, owner: str, enqueue: bool = True) -> None:
        self.delete(collection, entity_id, owner)
        if enqueue:
            self._enqueue(collection, entity_id, owner, "delete")

    def _enqueue(self, collection: str, entity_id: str, owner: str, operation: str) -> None:
        key = queue_key(collection, entity_id)
        pending = self.get(c.SYNC_QUEUE, key)
        if pending is not None:
            base_version = pending.data["base_version"]
            conflicted = pending.data.get("conflicted", False)
        else:
            state = self.get(c.SYNC_STATE, key)
            base_version = state.data["remote_version"] if state else None
            conflicted = False
        self.put(c.SYNC_QUEUE, key, owner, {
            "collection": collection,
            "entity_id": entity_id,
            "operation": operation,
            "base_version": base_version,
            "conflicted": conflicted,
            "queued_at": self.clock().isoformat(),
        })


class BatchExecutor:
    def __init__(
        self,
        store: DocumentStore,
        clock: Callable = utc_now,
        id_factory: Callable[[], str] = new_id,
        on_commit: Optional[Callable[[set[str]], None]] = None,
    ):
        self.store = store
        self.clock = clock
        self.id_factory = id_factory
        self.on_commit = on_commit

    def apply(self, operations: Sequence[BatchOperation]) -> Result[list[RewardEntry]]:
        """Apply reward-entry operations all-or-nothing; returns add/update results in input order."""
        if not operations:
            return Ok([])

        def plan(view: LedgerView) -> Result[list[RewardEntry]]:
            results = []
            for index, operation in enumerate(operations):
                outcome = self._plan_operation(view, operation)
                if outcome.is_err:
                    logger.warning(
                        "Batch rejected at operation %d (%s %s): %s",
                        index, operation.type.value, operation.entry_id, outcome.failure,
                    )
                    return outcome
                if outcome.value is not None:
                    results.append(outcome.value)
            return Ok(results)

        return self.run(plan)

    def run(
        self,
        plan: Callable[[LedgerView], Result[T]],
        *,
        timeout: Optional[float] = None,
        check_balances: bool = True,
    ) -> Result[T]:
        """Plan against a staged view and commit the staged writes as one unit."""
        if self.store.supports_transactions:
            return self._run_transactional(plan, timeout, check_balances)
        return self._run_compensating(plan, timeout, check_balances)

    def _plan_operation(self, view: LedgerView, operation: BatchOperation) -> Result[Optional[RewardEntry]]:
        if operation.type == BatchOperationType.ADD:
            return self._plan_add(view, operation.entry)
        if operation.type == BatchOperationType.UPDATE:
            return self._plan_update(view, operation.entry)
        return self._plan_delete(view, operation.entry_id, operation.user_id)

    def _plan_add(self, view: LedgerView, entry: Optional[RewardEntry]) -> Result[RewardEntry]:
        if entry is None:
            return Err(validation_error("Add operation requires an entry"))
        data = entry.model_dump()
        data.update(id=self.id_factory(), updated_at=None, is_synced=False)
        created = RewardEntry.create(**data)
        if created.is_err:
            return created
        entry = created.value
        if not view.category_exists(entry.user_id, entry.category_id):
            return Err(NotFoundFailure(
                f"Category {entry.category_id} not found", resource="category", resource_id=entry.category_id
            ))
        view.save_entity(c.ENTRIES, entry.id, entry.user_id, entry.to_dict())
        return Ok(entry)

    def _plan_update(self, view: LedgerView, entry: Optional[RewardEntry]) -> Result[RewardEntry]:
        if entry is None:
            return Err(validation_error("Update operation requires an entry"))
        doc = view.get(c.ENTRIES, entry.id)
        if doc is None:
            return Err(NotFoundFailure(f"Reward entry {entry.id} not found", resource="entry", resource_id=entry.id))
        stored = RewardEntry.from_dict(doc.data)
        if stored.user_id != entry.user_id:
            return Err(AuthorizationFailure(
                f"User {entry.user_id} does not own entry {entry.id}", actor_id=entry.user_id, resource_id=entry.id
            ))
        # BR-004 is checked against the stored creation time, not the caller's copy
        updated = stored.copy_with(
            now=self.clock(),
            points=entry.points,
            description=entry.description,
            category_id=entry.category_id,
            type=entry.type,
        )
        if updated.is_err:
            return updated
        entry = updated.value
        if not view.category_exists(entry.user_id, entry.category_id):
            return Err(NotFoundFailure(
                f"Category {entry.category_id} not found", resource="category", resource_id=entry.category_id
            ))
        view.save_entity(c.ENTRIES, entry.id, entry.user_id, entry.to_dict())
        return Ok(entry)

    def _plan_delete(self, view: LedgerView, entry_id: Optional[str], user_id: Optional[str]) -> Result[None]:
        doc = view.get(c.ENTRIES, entry_id) if entry_id else None
        if doc is None:
            return Err(NotFoundFailure(f"Reward entry {entry_id} not found", resource="entry", resource_id=entry_id or ""))
        stored = RewardEntry.from_dict(doc.data)
        if stored.user_id != user_id:
            return Err(AuthorizationFailure(
                f"User {user_id} does not own entry {entry_id}", actor_id=user_id or "", resource_id=entry_id
            ))
        if not stored.can_be_modified(self.clock()):
            return Err(validation_error(
                "Reward entries can only be deleted within 24 hours of creation", "BR-004"
            ))
        view.remove_entity(c.ENTRIES, entry_id, stored.user_id)
        return Ok(None)

    def _balances(self, reader: DocumentReader, owners: set[str]) -> dict[str, int]:
        view = LedgerView(reader, self.clock)
        return {owner: view.available_points(owner) for owner in owners}

    def _check_balances(self, after: LedgerView, owners: set[str], before: dict[str, int]) -> Result[None]:
        """BR-006: a batch may not leave any touched user with a negative available balance."""
        for owner in sorted(owners):
            after_points = after.available_points(owner)
            if after_points < 0 and after_points < before[owner]:
                return Err(validation_error(
                    f"Insufficient points for user {owner}: balance would become {after_points}", "BR-006"
                ))
        return Ok(None)

    def _planned(self, plan, view: LedgerView, check_balances: bool) -> Result:
        outcome = plan(view)
        if check_balances:
            outcome = outcome.flat_map(
                lambda value: self._check_balances(
                    view, view.owners, self._balances(view.base, view.owners)
                ).map(lambda _: value)
            )
        return outcome

    def _run_transactional(self, plan, timeout, check_balances=True):
        try:
            with self.store.transaction(timeout=timeout) as txn:
                view = LedgerView(txn, self.clock)
                outcome = self._planned(plan, view, check_balances)
                if outcome.is_err:
                    raise _Rollback(outcome)
                for write in view.writes:
                    if write.is_delete:
                        txn.delete(write.collection, write.doc_id)
                    else:
                        txn.put(write.collection, write.doc_id, write.data, owner=write.owner)
        except _Rollback as rollback:
            return rollback.outcome
        except StoreError as e:
            logger.warning("Batch transaction failed: %s", e)
            return Err(store_failure(e, "Batch"))
        self._committed(view)
        return outcome

    def _run_compensating(self, plan, timeout, check_balances=True):
        try:
            view = LedgerView(self.store, self.clock, track_versions=True)
            outcome = self._planned(plan, view, check_balances)
            if outcome.is_ok and check_balances:
                before = self._balances(self.store, view.owners)
        except StoreError as e:
            return Err(store_failure(e, "Batch"))
        if outcome.is_err:
            return outcome

        overdrawn: Optional[Result] = None
        applied: list[tuple[Write, Optional[Document], Optional[Document]]] = []
        try:
            for write in view.writes:
                prior = self.store.get(write.collection, write.doc_id, timeout=timeout)
                if write.is_delete:
                    result = self.store.delete(
                        write.collection, write.doc_id, expected_version=write.expected_version, timeout=timeout
                    )
                else:
                    result = self.store.put(
                        write.collection, write.doc_id, write.data, owner=write.owner,
                        expected_version=write.expected_version, timeout=timeout,
                    )
                applied.append((write, prior, result))
            for write, _, result in applied:
                if result is None:
                    continue
                current = self.store.version_of(write.collection, write.doc_id, timeout=timeout)
                if current != result.version:
                    raise VersionConflictError(write.collection, write.doc_id, result.version, current)
            # Concurrent batches planned against the same balance are only visible once applied
            if check_balances:
                live = self._check_balances(LedgerView(self.store, self.clock), view.owners, before)
                if live.is_err:
                    overdrawn = live
        except StoreError as e:
            logger.warning("Batch commit failed after %d write(s), rolling back: %s", len(applied), e)
            undone = self._compensate(applied, timeout)
            if undone.is_err:
                return undone
            return Err(store_failure(e, "Batch"))

        if overdrawn is not None:
            logger.warning("Batch overdrew a balance once applied, rolling back: %s", overdrawn.failure)
            undone = self._compensate(applied, timeout)
            if undone.is_err:
                return undone
            return overdrawn

        self._committed(view)
        return outcome

    def _compensate(self, applied, timeout) -> Result[None]:
        for index in range(len(applied) - 1, -1, -1):
            write, prior, result = applied[index]
            try:
                if result is None:
                    continue
                if prior is None:
                    self.store.delete(write.collection, write.doc_id, expected_version=result.version, timeout=timeout)
                else:
                    self.store.put(
                        write.collection, write.doc_id, prior.data, owner=prior.owner,
                        expected_version=result.version, timeout=timeout,
                    )
            except StoreError as e:
                keys = tuple(w.key for w, _, r in applied[:index + 1] if r is not None)
                logger.error("Rollback failed; %d write(s) may remain applied: %s", len(keys), e)
                return Err(PartialApplicationFailure(
                    f"Batch rollback failed, writes may be partially applied: {e}", applied_keys=keys
                ))
        return Ok(None)

    def _committed(self, view: LedgerView) -> None:
        logger.info("Committed batch of %d write(s)", len(view.writes))
        if self.on_commit and view.owners:
            self.on_commit(view.owners)


class _Rollback(Exception):
    def __init__(self, outcome: Result):
        self.outcome = outcome
