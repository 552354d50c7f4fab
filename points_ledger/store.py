"""
Document Store Port
===================

The ledger persists everything as versioned JSON documents in an opaque keyed
store. The same contract describes the local (on-device) store and the remote
store reached over the network.

Contract:
- every document has a collection, an id, an owning user and a version that
  increases by one on every write
- ``put``/``delete`` accept ``expected_version``; ``None`` writes
  unconditionally, ``0`` requires that the document has never existed
- deletes leave tombstones so ``changes_since`` can report them
- ``changes_since`` returns documents written after a cursor plus the new cursor
- ``transaction()`` is optional; stores without multi-document transactions
  raise ``TransactionUnsupportedError``
- every call accepts ``timeout`` (seconds)
"""

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional


class StoreError(Exception):
    pass


class TransportError(StoreError):
    pass


class OperationCancelledError(StoreError):
    pass


class TransactionUnsupportedError(StoreError):
    pass


class VersionConflictError(StoreError):
    def __init__(self, collection: str, doc_id: str, expected: Optional[int], actual: Optional[int]):
        self.collection = collection
        self.doc_id = doc_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {collection}/{doc_id}: expected {expected}, found {actual}"
        )


@dataclass(frozen=True)
class Document:
    collection: str
    id: str
    owner: str
    data: Optional[dict[str, Any]]
    version: int
    seq: int = 0
    deleted: bool = False

    @property
    def key(self) -> str:
        return f"{self.collection}/{self.id}"


class DocumentReader(ABC):
    @abstractmethod
    def get(self, collection: str, doc_id: str, *, timeout: Optional[float] = None) -> Optional[Document]:
        """Return the live document or None (missing or deleted)."""

    @abstractmethod
    def query(
        self,
        collection: str,
        *,
        owner: Optional[str] = None,
        where: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> list[Document]:
        """Live documents filtered by owner and equality on data fields."""


class DocumentWriter(DocumentReader):
    @abstractmethod
    def put(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        *,
        owner: str,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Document:
        ...

    @abstractmethod
    def delete(
        self,
        collection: str,
        doc_id: str,
        *,
        expected_version: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Document]:
        ...


class DocumentStore(DocumentWriter):
    supports_transactions: bool = False

    @abstractmethod
    def changes_since(
        self,
        collection: str,
        *,
        owner: str,
        cursor: int = 0,
        timeout: Optional[float] = None,
    ) -> tuple[list[Document], int]:
        ...

    def version_of(self, collection: str, doc_id: str, *, timeout: Optional[float] = None) -> Optional[int]:
        """Version of the document record, tombstones included."""
        doc = self.get(collection, doc_id, timeout=timeout)
        return doc.version if doc else None

    def transaction(self, timeout: Optional[float] = None):
        raise TransactionUnsupportedError(f"{type(self).__name__} has no multi-document transactions")


def _matches(doc: Document, owner: Optional[str], where: Optional[dict[str, Any]]) -> bool:
    if doc.deleted:
        return False
    if owner is not None and doc.owner != owner:
        return False
    if where:
        return all(doc.data.get(field) == value for field, value in where.items())
    return True


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, supports_transactions: bool = True):
        self.supports_transactions = supports_transactions
        self._records: dict[tuple[str, str], Document] = {}
        self._seq = 0
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self, timeout: Optional[float]) -> Iterator[None]:
        if not self._lock.acquire(timeout=-1 if timeout is None else timeout):
            raise TransportError("Timed out waiting for the document store")
        try:
            yield
        finally:
            self._lock.release()

    def _record(self, collection: str, doc_id: str) -> Optional[Document]:
        return self._records.get((collection, doc_id))

    def _check_version(self, collection: str, doc_id: str, expected: Optional[int], current: Optional[Document]) -> None:
        if expected is None:
            return
        actual = current.version if current else 0
        if expected != actual:
            raise VersionConflictError(collection, doc_id, expected, actual)

    def _write(self, doc: Document) -> Document:
        self._seq += 1
        stored = Document(
            collection=doc.collection,
            id=doc.id,
            owner=doc.owner,
            data=copy.deepcopy(doc.data),
            version=doc.version,
            seq=self._seq,
            deleted=doc.deleted,
        )
        self._records[(doc.collection, doc.id)] = stored
        return stored

    def get(self, collection: str, doc_id: str, *, timeout: Optional[float] = None) -> Optional[Document]:
        with self._locked(timeout):
            doc = self._record(collection, doc_id)
            if doc is None or doc.deleted:
                return None
            return copy.deepcopy(doc)

    def version_of(self, collection: str, doc_id: str, *, timeout: Optional[float] = None) -> Optional[int]:
        with self._locked(timeout):
            doc = self._record(collection, doc_id)
            return doc.version if doc else None

    def query(self, collection, *, owner=None, where=None, timeout=None) -> list[Document]:
        with self._locked(timeout):
            docs = [
                doc for (coll, _), doc in self._records.items()
                if coll == collection and _matches(doc, owner, where)
            ]
            return [copy.deepcopy(doc) for doc in sorted(docs, key=lambda d: d.seq)]

    def put(self, collection, doc_id, data, *, owner, expected_version=None, timeout=None) -> Document:
        with self._locked(timeout):
            current = self._record(collection, doc_id)
            self._check_version(collection, doc_id, expected_version, current)
            version = current.version + 1 if current else 1
            return copy.deepcopy(self._write(Document(collection, doc_id, owner, data, version)))

    def delete(self, collection, doc_id, *, expected_version=None, timeout=None) -> Optional[Document]:
        with self._locked(timeout):
            current = self._record(collection, doc_id)
            self._check_version(collection, doc_id, expected_version, current)
            if current is None or current.deleted:
                return None
            tombstone = Document(collection, doc_id, current.owner, None, current.version + 1, deleted=True)
            return copy.deepcopy(self._write(tombstone))

    def changes_since(self, collection, *, owner, cursor=0, timeout=None) -> tuple[list[Document], int]:
        with self._locked(timeout):
            docs = sorted(
                (doc for (coll, _), doc in self._records.items()
                 if coll == collection and doc.owner == owner and doc.seq > cursor),
                key=lambda d: d.seq,
            )
            new_cursor = docs[-1].seq if docs else cursor
            return [copy.deepcopy(doc) for doc in docs], new_cursor

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator["InMemoryTransaction"]:
        if not self.supports_transactions:
            raise TransactionUnsupportedError(f"{type(self).__name__} has no multi-document transactions")
        with self._locked(timeout):
            txn = InMemoryTransaction(self)
            yield txn
            txn.commit()


class InMemoryTransaction(DocumentWriter):
    """Stages writes and applies them in one step when the block exits cleanly."""

    def __init__(self, store: InMemoryDocumentStore):
        self._store = store
        self._staged: dict[tuple[str, str], Document] = {}

    def _current(self, collection: str, doc_id: str) -> Optional[Document]:
        key = (collection, doc_id)
        if key in self._staged:
            return self._staged[key]
        return self._store._record(collection, doc_id)

    def get(self, collection, doc_id, *, timeout=None) -> Optional[Document]:
        doc = self._current(collection, doc_id)
        if doc is None or doc.deleted:
            return None
        return copy.deepcopy(doc)

    def query(self, collection, *, owner=None, where=None, timeout=None) -> list[Document]:
        merged = {
            key: doc for key, doc in self._store._records.items() if key[0] == collection
        }
        merged.update({key: doc for key, doc in self._staged.items() if key[0] == collection})
        docs = [doc for doc in merged.values() if _matches(doc, owner, where)]
        return [copy.deepcopy(doc) for doc in sorted(docs, key=lambda d: (d.seq == 0, d.seq))]

    def put(self, collection, doc_id, data, *, owner, expected_version=None, timeout=None) -> Document:
        current = self._current(collection, doc_id)
        self._store._check_version(collection, doc_id, expected_version, current)
        version = current.version + 1 if current else 1
        doc = Document(collection, doc_id, owner, copy.deepcopy(data), version)
        self._staged[(collection, doc_id)] = doc
        return copy.deepcopy(doc)

    def delete(self, collection, doc_id, *, expected_version=None, timeout=None) -> Optional[Document]:
        current = self._current(collection, doc_id)
        self._store._check_version(collection, doc_id, expected_version, current)
        if current is None or current.deleted:
            return None
        tombstone = Document(collection, doc_id, current.owner, None, current.version + 1, deleted=True)
        self._staged[(collection, doc_id)] = tombstone
        return copy.deepcopy(tombstone)

    def commit(self) -> None:
        for doc in self._staged.values():
            self._store._write(doc)
        self._staged.clear()
