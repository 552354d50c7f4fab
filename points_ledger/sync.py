"""
Offline-first synchronisation between the local store and a remote store.

A pass for one user:

1. uploads every pending local change with a conditional write keyed on the
   remote version the local copy last observed; a changed remote copy is
   reported as a conflict and left untouched
2. pulls remote changes since the user's checkpoint and applies them, except
   over entities that still have local changes pending
3. commits all local effects (acks, conflict marks, downloads, checkpoint) as
   one unit through the batch executor

Transport failures and cancellation abort the pass before step 3, so the
local store and checkpoint stay exactly as they were. Retrying is up to the
caller. Conflicts stay parked until ``resolve_conflict`` is called.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from . import constants as c
from .batch import BatchExecutor, LedgerView, queue_key, store_failure
from .failures import ConflictFailure, NotFoundFailure, StateFailure, ValidationFailure, validation_error
from .models import RedemptionTransaction, RewardCategory, RewardEntry, SyncResult, utc_now
from .result import Err, Ok, Result
from .store import (
    Document,
    DocumentStore,
    OperationCancelledError,
    StoreError,
    TransportError,
    VersionConflictError,
)

logger = logging.getLogger(__name__)

ENTITY_MODELS = {
    c.ENTRIES: RewardEntry,
    c.CATEGORIES: RewardCategory,
    c.REDEMPTIONS: RedemptionTransaction,
}


class ConflictResolution(str, Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_REMOTE = "keep_remote"
    MERGE = "merge"


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class Deadline:
    """Bounds a pass by wall-clock time and an optional cancellation token."""

    def __init__(self, timeout: Optional[float] = None, token: Optional[CancellationToken] = None):
        self._token = token
        self._expires = time.monotonic() + timeout if timeout is not None else None

    def remaining(self) -> Optional[float]:
        if self._token is not None and self._token.cancelled:
            raise OperationCancelledError("Sync cancelled")
        if self._expires is None:
            return None
        left = self._expires - time.monotonic()
        if left <= 0:
            raise TransportError("Sync timed out")
        return left


@dataclass
class _Ack:
    item: Document
    remote_version: Optional[int]
    local_version: Optional[int]
    uploaded: bool = True


@dataclass
class _PassOutcome:
    acks: list[_Ack] = field(default_factory=list)
    conflicts: list[ConflictFailure] = field(default_factory=list)
    newly_conflicted: list[tuple[Document, Optional[int]]] = field(default_factory=list)
    downloads: list[Document] = field(default_factory=list)
    cursors: dict[str, int] = field(default_factory=dict)


def _outgoing(collection: str, data: dict[str, Any]) -> dict[str, Any]:
    if collection == c.ENTRIES:
        return {**data, "is_synced": True}
    return dict(data)


class SyncEngine:
    def __init__(
        self,
        local: DocumentStore,
        remote: DocumentStore,
        executor: BatchExecutor,
        clock: Callable = utc_now,
        default_timeout: Optional[float] = None,
    ):
        self.local = local
        self.remote = remote
        self.executor = executor
        self.clock = clock
        self.default_timeout = default_timeout
        self._inflight: set[str] = set()
        self._guard = threading.Lock()

    def _claim(self, user_id: str) -> bool:
        with self._guard:
            if user_id in self._inflight:
                return False
            self._inflight.add(user_id)
            return True

    def _release(self, user_id: str) -> None:
        with self._guard:
            self._inflight.discard(user_id)

    def _busy(self, user_id: str) -> StateFailure:
        return StateFailure(
            f"A sync pass is already running for user {user_id}", current="in_progress", attempted="sync"
        )

    def sync(
        self,
        user_id: str,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Result[SyncResult]:
        if not self._claim(user_id):
            return Err(self._busy(user_id))
        try:
            deadline = Deadline(timeout if timeout is not None else self.default_timeout, token)
            return self._run_pass(user_id, deadline)
        finally:
            self._release(user_id)

    def _run_pass(self, user_id: str, deadline: Deadline) -> Result[SyncResult]:
        started = time.monotonic()
        try:
            pending = sorted(
                self.local.query(c.SYNC_QUEUE, owner=user_id), key=lambda d: d.data.get("queued_at", "")
            )
            checkpoint = self.local.get(c.SYNC_CHECKPOINTS, user_id)
            cursors = dict(checkpoint.data["cursors"]) if checkpoint else {}

            outcome = _PassOutcome()
            for item in pending:
                self._upload(user_id, item, deadline, outcome)
            for collection in c.SYNCED_COLLECTIONS:
                docs, cursor = self.remote.changes_since(
                    collection, owner=user_id, cursor=cursors.get(collection, 0), timeout=deadline.remaining()
                )
                outcome.downloads.extend(docs)
                outcome.cursors[collection] = cursor
            deadline.remaining()
        except StoreError as e:
            logger.warning("Sync for user %s aborted, checkpoint unchanged: %s", user_id, e)
            return Err(store_failure(e, "Sync"))

        result = self.executor.run(
            lambda view: self._apply_locally(view, user_id, outcome), check_balances=False
        )
        if result.is_ok:
            summary = result.value
            logger.info(
                "Sync for user %s: %d uploaded, %d downloaded, %d conflicted in %.3fs",
                user_id, summary.uploaded_count, summary.downloaded_count,
                len(summary.conflicted_entries), time.monotonic() - started,
            )
            for conflict in summary.conflicts:
                logger.warning(
                    "Sync conflict on %s/%s: local base v%s, remote v%s",
                    conflict.collection, conflict.entity_id, conflict.base_version, conflict.remote_version,
                )
        return result

    def _upload(self, user_id: str, item: Document, deadline: Deadline, outcome: _PassOutcome) -> None:
        data = item.data
        collection, entity_id, base = data["collection"], data["entity_id"], data["base_version"]
        if data.get("conflicted"):
            outcome.conflicts.append(self._conflict(collection, entity_id, base, data.get("remote_version")))
            return

        if data["operation"] == "delete":
            if base is None:
                # never reached the remote store
                outcome.acks.append(_Ack(item, None, None, uploaded=False))
                return
            try:
                tombstone = self.remote.delete(collection, entity_id, expected_version=base, timeout=deadline.remaining())
                remote_version = tombstone.version if tombstone else self.remote.version_of(
                    collection, entity_id, timeout=deadline.remaining()
                )
                outcome.acks.append(_Ack(item, remote_version, None))
            except VersionConflictError:
                remote_doc = self.remote.get(collection, entity_id, timeout=deadline.remaining())
                remote_version = self.remote.version_of(collection, entity_id, timeout=deadline.remaining())
                if remote_doc is None:
                    outcome.acks.append(_Ack(item, remote_version, None))
                else:
                    self._park(outcome, item, base, remote_version)
            return

        local_doc = self.local.get(collection, entity_id)
        if local_doc is None:
            outcome.acks.append(_Ack(item, None, None, uploaded=False))
            return
        payload = _outgoing(collection, local_doc.data)
        try:
            written = self.remote.put(
                collection, entity_id, payload, owner=user_id,
                expected_version=base if base is not None else 0,
                timeout=deadline.remaining(),
            )
            outcome.acks.append(_Ack(item, written.version, local_doc.version))
        except VersionConflictError:
            remote_doc = self.remote.get(collection, entity_id, timeout=deadline.remaining())
            if remote_doc is not None and remote_doc.data == payload:
                # our own write from an interrupted pass
                outcome.acks.append(_Ack(item, remote_doc.version, local_doc.version))
                return
            remote_version = self.remote.version_of(collection, entity_id, timeout=deadline.remaining())
            self._park(outcome, item, base, remote_version)

    def _park(self, outcome: _PassOutcome, item: Document, base: Optional[int], remote_version: Optional[int]) -> None:
        outcome.conflicts.append(self._conflict(item.data["collection"], item.data["entity_id"], base, remote_version))
        outcome.newly_conflicted.append((item, remote_version))

    def _conflict(self, collection: str, entity_id: str, base: Optional[int], remote_version: Optional[int]) -> ConflictFailure:
        return ConflictFailure(
            f"Remote copy of {collection}/{entity_id} changed since version {base}",
            entity_id=entity_id,
            collection=collection,
            base_version=base,
            remote_version=remote_version,
        )

    def _apply_locally(self, view: LedgerView, user_id: str, outcome: _PassOutcome) -> Result[SyncResult]:
        own_writes: dict[str, Optional[int]] = {}
        uploaded = 0

        for ack in outcome.acks:
            data = ack.item.data
            collection, entity_id = data["collection"], data["entity_id"]
            key = queue_key(collection, entity_id)
            if ack.uploaded:
                uploaded += 1
                own_writes[key] = ack.remote_version
            current = self.local.get(collection, entity_id)
            edited_meanwhile = ack.local_version is not None and (current is None or current.version != ack.local_version)
            if edited_meanwhile:
                queued = view.get(c.SYNC_QUEUE, key)
                if queued is not None:
                    view.put(c.SYNC_QUEUE, key, user_id, {**queued.data, "base_version": ack.remote_version})
            else:
                view.delete(c.SYNC_QUEUE, key, user_id)
                if collection == c.ENTRIES and current is not None:
                    view.save_entity(collection, entity_id, user_id, {**current.data, "is_synced": True}, enqueue=False)
            if ack.remote_version is not None:
                view.put(c.SYNC_STATE, key, user_id, {"remote_version": ack.remote_version})

        for item, remote_version in outcome.newly_conflicted:
            view.put(c.SYNC_QUEUE, queue_key(item.data["collection"], item.data["entity_id"]), user_id, {
                **item.data, "conflicted": True, "remote_version": remote_version,
            })

        downloaded = 0
        for doc in outcome.downloads:
            key = queue_key(doc.collection, doc.id)
            if key in own_writes and own_writes[key] == doc.version:
                continue
            if view.get(c.SYNC_QUEUE, key) is not None:
                continue
            if doc.deleted:
                if view.get(doc.collection, doc.id) is not None:
                    view.remove_entity(doc.collection, doc.id, user_id, enqueue=False)
            else:
                try:
                    entity = ENTITY_MODELS[doc.collection].from_dict(doc.data)
                except ValueError as e:
                    logger.warning("Skipping invalid remote document %s: %s", doc.key, e)
                    continue
                data = entity.to_dict()
                if doc.collection == c.ENTRIES:
                    data["is_synced"] = True
                view.save_entity(doc.collection, doc.id, user_id, data, enqueue=False)
            view.put(c.SYNC_STATE, key, user_id, {"remote_version": doc.version})
            downloaded += 1

        now = self.clock()
        view.put(c.SYNC_CHECKPOINTS, user_id, user_id, {"cursors": outcome.cursors, "synced_at": now.isoformat()})
        return Ok(SyncResult(
            uploaded_count=uploaded,
            downloaded_count=downloaded,
            conflicted_entries=[conflict.entity_id for conflict in outcome.conflicts],
            sync_timestamp=now,
            conflicts=outcome.conflicts,
        ))

    def pending_count(self, user_id: str) -> int:
        return len(self.local.query(c.SYNC_QUEUE, owner=user_id))

    def resolve_conflict(
        self,
        user_id: str,
        entity_id: str,
        resolution: ConflictResolution,
        merged: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> Result[ConflictResolution]:
        """Settle a parked conflict; the next sync pass uploads or drops it accordingly."""
        resolution = ConflictResolution(resolution)
        item = None
        for collection in c.SYNCED_COLLECTIONS:
            doc = self.local.get(c.SYNC_QUEUE, queue_key(collection, entity_id))
            if doc is not None and doc.owner == user_id and doc.data.get("conflicted"):
                item = doc
                break
        if item is None:
            return Err(NotFoundFailure(
                f"No conflict recorded for {entity_id}", resource="conflict", resource_id=entity_id
            ))

        collection = item.data["collection"]
        merged_data = None
        if resolution == ConflictResolution.MERGE:
            if merged is None:
                return Err(validation_error("A merge resolution needs the merged record", field_name="merged"))
            try:
                merged_data = ENTITY_MODELS[collection].from_dict({**merged, "id": entity_id}).to_dict()
            except ValueError as e:
                return Err(ValidationFailure(f"Merged record is invalid: {e}", field="merged"))

        if not self._claim(user_id):
            return Err(self._busy(user_id))
        try:
            deadline = Deadline(timeout if timeout is not None else self.default_timeout, token)
            try:
                remote_doc = self.remote.get(collection, entity_id, timeout=deadline.remaining())
                remote_version = self.remote.version_of(collection, entity_id, timeout=deadline.remaining())
            except StoreError as e:
                return Err(store_failure(e, "Conflict resolution"))

            key = queue_key(collection, entity_id)

            def plan(view: LedgerView) -> Result[ConflictResolution]:
                if resolution == ConflictResolution.KEEP_REMOTE:
                    if remote_doc is None:
                        if view.get(collection, entity_id) is not None:
                            view.remove_entity(collection, entity_id, user_id, enqueue=False)
                    else:
                        data = _outgoing(collection, remote_doc.data)
                        view.save_entity(collection, entity_id, user_id, data, enqueue=False)
                    view.delete(c.SYNC_QUEUE, key, user_id)
                else:
                    if merged_data is not None:
                        view.save_entity(collection, entity_id, user_id, {**merged_data, "is_synced": False}
                                         if collection == c.ENTRIES else merged_data, enqueue=False)
                    view.put(c.SYNC_QUEUE, key, user_id, {
                        **item.data,
                        "operation": "upsert" if merged_data is not None else item.data["operation"],
                        "base_version": remote_version,
                        "conflicted": False,
                        "remote_version": None,
                    })
                if remote_version is not None:
                    view.put(c.SYNC_STATE, key, user_id, {"remote_version": remote_version})
                return Ok(resolution)

            result = self.executor.run(plan, check_balances=resolution != ConflictResolution.KEEP_REMOTE)
            if result.is_ok:
                logger.info("Resolved conflict on %s/%s with %s", collection, entity_id, resolution.value)
            return result
        finally:
            self._release(user_id)
