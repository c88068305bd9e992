"""
Document store collaborator.

The tracker keeps every piece of durable state in a document store: named
collections of JSON-like documents addressed by id. This module defines the
contract the services depend on and the pieces shared by every backend:

- equality (`==`) and membership (`in`) filters for advisory queries,
- optimistic transactions: reads remember the version they observed, writes
  are staged and applied together at commit, and a commit whose reads were
  invalidated by a concurrent writer is retried from scratch,
- real-time subscriptions that push the matching snapshot after every change.

Concrete backends only implement `query`, `get_by_id` and `_commit`.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar, Union

from .errors import StoreUnavailable, TransactionAborted
from .metrics import STORE_TRANSACTION_ABORTS, STORE_TRANSACTION_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")
DocKey = Tuple[str, str]
SnapshotCallback = Callable[[List["Document"]], Union[None, Awaitable[None]]]


class _ServerTimestamp:
    """Placeholder replaced with the commit time when a write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    # Writes are copied before they are applied; the sentinel must survive that.
    def __copy__(self) -> "_ServerTimestamp":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


def resolve_server_timestamps(data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    stamp = now.isoformat()
    return {k: (stamp if v is SERVER_TIMESTAMP else v) for k, v in data.items()}


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        current = data.get(self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "in":
            return current in self.value
        raise ValueError(f"Unsupported filter operator: {self.op}")


def where(field_name: str, op: str, value: Any) -> Filter:
    if op not in ("==", "in"):
        raise ValueError(f"Unsupported filter operator: {op}")
    if op == "in":
        value = tuple(value)
    return Filter(field_name, op, value)


@dataclass
class Document:
    id: str
    data: Dict[str, Any]
    version: int = 0

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.data}


@dataclass
class StagedWrite:
    kind: str  # "create", "set" or "update"
    collection: str
    doc_id: str
    data: Dict[str, Any] = field(default_factory=dict)


class WriteConflict(Exception):
    """Raised by a backend commit when an observed version changed underneath it."""


class Transaction:
    """Read/write handle passed to the function given to `run_transaction`.

    Reads go straight to the store and record the version they saw (None for a
    missing document). Writes are only staged; at most one write per document
    survives, later writes to the same document are merged into it.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._observed: Dict[DocKey, Optional[int]] = {}
        self._writes: Dict[DocKey, StagedWrite] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        doc = await self._store.get_by_id(collection, doc_id)
        self._observed.setdefault((collection, doc_id), doc.version if doc else None)
        return doc

    def create(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self._writes[(collection, doc_id)] = StagedWrite("create", collection, doc_id, dict(data))
        return doc_id

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        kind = "create" if key in self._writes and self._writes[key].kind == "create" else "set"
        self._writes[key] = StagedWrite(kind, collection, doc_id, dict(data))

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        staged = self._writes.get(key)
        if staged is None:
            self._writes[key] = StagedWrite("update", collection, doc_id, dict(fields))
        else:
            staged.data.update(fields)

    @property
    def observed_versions(self) -> Dict[DocKey, Optional[int]]:
        return dict(self._observed)

    @property
    def staged_writes(self) -> List[StagedWrite]:
        return list(self._writes.values())


class Subscription:
    """Cancellable handle for a live query registered with `DocumentStore.subscribe`.

    After a commit touches the collection the store marks the subscription
    stale; a background task re-runs the query and delivers the snapshot. Commits
    that land while a refresh is in flight are folded into one more refresh, so
    a listener always ends up with the latest state but may skip intermediate
    ones. The committer never waits for listeners.
    """

    def __init__(self, store: "DocumentStore", collection: str, filters: Sequence[Filter], callback: SnapshotCallback):
        self._store = store
        self.collection = collection
        self.filters = tuple(filters)
        self._callback = callback
        self.active = True
        self._stale = False
        self._refresher: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._store._remove_listener(self)

    def mark_stale(self) -> None:
        if not self.active:
            return
        self._stale = True
        if self._refresher is None or self._refresher.done():
            self._refresher = self._store._spawn(self._refresh())

    async def _refresh(self) -> None:
        while self._stale and self.active:
            self._stale = False
            try:
                docs = await self._store.query(self.collection, self.filters)
            except StoreUnavailable:
                logger.exception(f"Could not refresh listener on {self.collection}")
                return
            await self.deliver(docs)

    async def deliver(self, docs: List[Document]) -> None:
        if not self.active:
            return
        try:
            result = self._callback(docs)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Snapshot listener on {self.collection} failed; cancelling it")
            self.cancel()


class DocumentStore(ABC):
    """Asynchronous document store contract used by every service."""

    def __init__(self, max_attempts: int = 5):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._listeners: Dict[str, List[Subscription]] = {}
        self._background: Set[asyncio.Task] = set()

    # Backend hooks -----------------------------------------------------

    @abstractmethod
    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> List[Document]:
        """Advisory, non-atomic read of every document matching all filters."""

    @abstractmethod
    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        """Point read; returns None when the document does not exist."""

    @abstractmethod
    async def _commit(self, tx: Transaction, now: datetime) -> Set[str]:
        """Validate observed versions and apply staged writes atomically.

        Raises WriteConflict when the transaction must be retried. Returns the
        collections that changed.
        """

    async def close(self) -> None:
        for subscriptions in list(self._listeners.values()):
            for subscription in list(subscriptions):
                subscription.cancel()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()

    # Shared behaviour ---------------------------------------------------

    def server_timestamp(self) -> _ServerTimestamp:
        return SERVER_TIMESTAMP

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            tx = Transaction(self)
            result = await fn(tx)
            if not tx.staged_writes:
                return result
            try:
                changed = await self._commit(tx, datetime.now(timezone.utc))
            except WriteConflict as exc:
                logger.info(f"Transaction conflict on attempt {attempt}/{self.max_attempts}: {exc}")
                if attempt < self.max_attempts:
                    STORE_TRANSACTION_RETRIES.inc()
                continue
            self._notify(changed)
            return result

        STORE_TRANSACTION_ABORTS.inc()
        raise TransactionAborted(
            f"Transaction aborted after {self.max_attempts} conflicting attempts",
            attempts=self.max_attempts,
        )

    async def set_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        async def _write(tx: Transaction) -> None:
            tx.set(collection, doc_id, data)

        await self.run_transaction(_write)

    async def update_document(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge `fields` into an existing document; NotFound if it is missing."""

        async def _write(tx: Transaction) -> None:
            tx.update(collection, doc_id, fields)

        await self.run_transaction(_write)

    async def subscribe(
        self,
        collection: str,
        filters: Iterable[Filter],
        callback: SnapshotCallback,
    ) -> Subscription:
        """Register a live query; the current snapshot is delivered before returning."""
        subscription = Subscription(self, collection, list(filters), callback)
        self._listeners.setdefault(collection, []).append(subscription)
        await subscription.deliver(await self.query(collection, subscription.filters))
        return subscription

    def listener_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._listeners.get(collection, []))
        return sum(len(subs) for subs in self._listeners.values())

    def _remove_listener(self, subscription: Subscription) -> None:
        subs = self._listeners.get(subscription.collection, [])
        if subscription in subs:
            subs.remove(subscription)

    async def flush_listeners(self) -> None:
        """Wait until every scheduled listener refresh has been delivered."""
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _notify(self, collections: Iterable[str]) -> None:
        for collection in collections:
            for subscription in list(self._listeners.get(collection, [])):
                subscription.mark_stale()


def copy_document(doc: Document) -> Document:
    return Document(doc.id, copy.deepcopy(doc.data), doc.version)


__all__ = [
    "SERVER_TIMESTAMP",
    "Document",
    "DocumentStore",
    "Filter",
    "StagedWrite",
    "Subscription",
    "Transaction",
    "WriteConflict",
    "copy_document",
    "resolve_server_timestamps",
    "where",
]
