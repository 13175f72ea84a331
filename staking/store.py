"""
Transactional document store.

Documents live in named collections keyed by id. The store offers:
- per-document reads and (merge) writes
- ordered range queries with cursor pagination (``start_after``)
- commutative atomic increments
- optimistic transactions: reads are versioned, writes are buffered and
  applied all-or-nothing at commit, and a stale read re-runs the transaction
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar

from .errors import TransactionError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Filter = tuple[str, str, Any]

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "in": lambda a, b: a in b,
}

_MISSING = object()


def _matches(doc: dict, filters: Iterable[Filter]) -> bool:
    for field_name, op, value in filters:
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        current = doc.get(field_name, _MISSING)
        if current is _MISSING or current is None:
            return False
        if not _OPERATORS[op](current, value):
            return False
    return True


def order_key(doc: dict, order_by: Sequence[str]) -> tuple:
    return tuple(doc[f] for f in order_by)


def _select(
    docs: Iterable[dict],
    filters: Sequence[Filter],
    order_by: Sequence[str],
    start_after: Optional[tuple],
    limit: Optional[int],
) -> list[dict]:
    selected = [d for d in docs if _matches(d, filters)]
    if order_by:
        # Like an index, a document without every ordering field is invisible.
        selected = [d for d in selected if all(d.get(f) is not None for f in order_by)]
        selected.sort(key=lambda d: order_key(d, order_by))
        if start_after is not None:
            selected = [d for d in selected if order_key(d, order_by) > tuple(start_after)]
    elif start_after is not None:
        raise ValueError("start_after requires order_by")
    if limit is not None:
        selected = selected[:limit]
    return selected


class DocumentStore(ABC):
    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        ...

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Sequence[str] = (),
        start_after: Optional[tuple] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        ...

    @abstractmethod
    def increment(self, collection: str, doc_id: str, deltas: dict, extra: Optional[dict] = None) -> None:
        ...

    @abstractmethod
    def run_transaction(self, fn: Callable[["Transaction"], T]) -> T:
        ...


class _Conflict(Exception):
    pass


class Transaction:
    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: list[tuple[str, str, str, dict]] = []

    def _check_can_read(self) -> None:
        if self._writes:
            raise TransactionError("Transactions require all reads to be executed before all writes")

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        self._check_can_read()
        doc, version = self._store._read(collection, doc_id)
        self._reads[(collection, doc_id)] = version
        return doc

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Sequence[str] = (),
        start_after: Optional[tuple] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        self._check_can_read()
        docs = self._store._query_versioned(collection, filters, order_by, start_after, limit)
        results = []
        for doc, version in docs:
            self._reads[(collection, doc["id"])] = version
            results.append(doc)
        return results

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        self._writes.append(("merge" if merge else "set", collection, doc_id, copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._writes.append(("update", collection, doc_id, copy.deepcopy(data)))

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self._writes.append(("create", collection, doc_id, copy.deepcopy(data)))

    def increment(self, collection: str, doc_id: str, deltas: dict, extra: Optional[dict] = None) -> None:
        self._writes.append(("increment", collection, doc_id, {"deltas": dict(deltas), "extra": copy.deepcopy(extra or {})}))

    def _commit(self) -> None:
        self._store._commit(self._reads, self._writes)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts
        self._collections: dict[str, dict[str, dict]] = {}
        self._versions: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()

    def _read(self, collection: str, doc_id: str) -> tuple[Optional[dict], int]:
        with self._lock:
            doc = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(doc), self._versions.get((collection, doc_id), 0)

    def _query_versioned(self, collection, filters, order_by, start_after, limit) -> list[tuple[dict, int]]:
        with self._lock:
            docs = _select(self._collections.get(collection, {}).values(), filters, order_by, start_after, limit)
            return [(copy.deepcopy(d), self._versions.get((collection, d["id"]), 0)) for d in docs]

    def _merged(self, op: str, collection: str, doc_id: str, current: Optional[dict], data: dict) -> dict:
        if op == "set":
            new_doc = dict(data)
        elif op == "merge":
            new_doc = {**(current or {}), **data}
        elif op == "update":
            if current is None:
                raise TransactionError(f"No document to update: {collection}/{doc_id}")
            new_doc = {**current, **data}
        elif op == "create":
            if current is not None:
                raise TransactionError(f"Document already exists: {collection}/{doc_id}")
            new_doc = dict(data)
        elif op == "increment":
            new_doc = dict(current or {})
            for field_name, delta in data["deltas"].items():
                new_doc[field_name] = (new_doc.get(field_name) or 0) + delta
            new_doc.update(data["extra"])
        else:
            raise TransactionError(f"Unknown write operation: {op}")
        new_doc["id"] = doc_id
        return new_doc

    def _put(self, collection: str, doc_id: str, doc: dict) -> None:
        self._collections.setdefault(collection, {})[doc_id] = doc
        key = (collection, doc_id)
        self._versions[key] = self._versions.get(key, 0) + 1

    def _apply(self, op: str, collection: str, doc_id: str, data: dict) -> None:
        current = self._collections.get(collection, {}).get(doc_id)
        self._put(collection, doc_id, self._merged(op, collection, doc_id, current, data))

    def _commit(self, reads: dict[tuple[str, str], int], writes: list[tuple[str, str, str, dict]]) -> None:
        with self._lock:
            for key, version in reads.items():
                if self._versions.get(key, 0) != version:
                    raise _Conflict(f"{key[0]}/{key[1]} changed during transaction")
            # Only the touched documents are staged; nothing is stored until every write is valid.
            staged: dict[tuple[str, str], dict] = {}
            for op, collection, doc_id, data in writes:
                key = (collection, doc_id)
                current = staged[key] if key in staged else self._collections.get(collection, {}).get(doc_id)
                staged[key] = self._merged(op, collection, doc_id, current, data)
            for (collection, doc_id), doc in staged.items():
                self._put(collection, doc_id, doc)

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc, _ = self._read(collection, doc_id)
        return doc

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = False) -> None:
        with self._lock:
            self._apply("merge" if merge else "set", collection, doc_id, copy.deepcopy(data))

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Sequence[str] = (),
        start_after: Optional[tuple] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        return [doc for doc, _ in self._query_versioned(collection, filters, order_by, start_after, limit)]

    def increment(self, collection: str, doc_id: str, deltas: dict, extra: Optional[dict] = None) -> None:
        with self._lock:
            self._apply("increment", collection, doc_id, {"deltas": dict(deltas), "extra": copy.deepcopy(extra or {})})

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            tx = Transaction(self)
            result = fn(tx)
            try:
                tx._commit()
            except _Conflict as exc:
                logger.debug(f"Transaction conflict on attempt {attempt}: {exc}")
                continue
            return result
        raise TransientStoreError(f"Transaction aborted after {self.max_attempts} conflicting attempts")

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))
