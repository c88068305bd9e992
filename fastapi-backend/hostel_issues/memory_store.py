"""
In-process document store.

Used for tests and for `STORE_BACKEND=memory` local runs. Every read yields to
the event loop before returning so concurrent transactions genuinely
interleave, while `_commit` never awaits and is therefore atomic with respect
to other coroutines on the same loop.
"""

import asyncio
import copy
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from .document_store import (
    Document,
    DocumentStore,
    Filter,
    Transaction,
    WriteConflict,
    copy_document,
    resolve_server_timestamps,
)
from .errors import NotFound, StoreUnavailable


class MemoryDocumentStore(DocumentStore):
    def __init__(self, max_attempts: int = 5):
        super().__init__(max_attempts=max_attempts)
        self._collections: Dict[str, Dict[str, Document]] = {}
        # Flip to False to simulate the store being unreachable.
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("in-memory document store is offline")

    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> List[Document]:
        self._ensure_available()
        filters = list(filters)
        await asyncio.sleep(0)
        docs = self._collections.get(collection, {}).values()
        return [copy_document(d) for d in docs if all(f.matches(d.data) for f in filters)]

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        self._ensure_available()
        await asyncio.sleep(0)
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy_document(doc) if doc else None

    async def _commit(self, tx: Transaction, now: datetime) -> Set[str]:
        self._ensure_available()

        for (collection, doc_id), seen in tx.observed_versions.items():
            current = self._collections.get(collection, {}).get(doc_id)
            if (current.version if current else None) != seen:
                raise WriteConflict(f"{collection}/{doc_id} changed since it was read")

        # Validate everything first so a failure leaves no partial writes.
        pending: List[tuple] = []
        for write in tx.staged_writes:
            current = self._collections.get(write.collection, {}).get(write.doc_id)
            data = copy.deepcopy(resolve_server_timestamps(write.data, now))
            if write.kind == "create" and current is not None:
                raise WriteConflict(f"{write.collection}/{write.doc_id} already exists")
            if write.kind == "update":
                if current is None:
                    raise NotFound(f"{write.collection}/{write.doc_id} does not exist")
                data = {**current.data, **data}
            version = (current.version if current else 0) + 1
            pending.append((write.collection, Document(write.doc_id, data, version)))

        for collection, doc in pending:
            self._collections.setdefault(collection, {})[doc.id] = doc
        return {collection for collection, _ in pending}

    def dump(self, collection: str) -> List[Dict]:
        """Plain copy of a collection, handy for assertions."""
        return [d.to_dict() for d in copy.deepcopy(list(self._collections.get(collection, {}).values()))]
