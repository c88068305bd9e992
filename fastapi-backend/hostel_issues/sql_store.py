"""
SQL-backed document store.

Documents live in a single `documents` table (see `models.StoredDocument`)
keyed by `(collection, doc_id)`. Transactions are optimistic: reads record the
row version they saw, and the commit re-checks those versions inside one
database transaction, then applies every staged write with a conditional
`UPDATE ... WHERE version = :seen` (or a primary-key insert for new rows). A
zero rowcount or a duplicate key means another writer got there first, which
surfaces as `WriteConflict` and makes `run_transaction` retry.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import insert, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from .document_store import (
    Document,
    DocumentStore,
    Filter,
    StagedWrite,
    Transaction,
    WriteConflict,
    resolve_server_timestamps,
)
from .errors import NotFound, StoreUnavailable
from .models import StoredDocument

logger = logging.getLogger(__name__)

_documents = StoredDocument.__table__


def _filter_clause(flt: Filter):
    column = StoredDocument.data[flt.field]
    values = list(flt.value) if flt.op == "in" else [flt.value]
    sample = values[0] if values else None
    # bool before int: bool is an int subclass
    if isinstance(sample, bool):
        expr = column.as_boolean()
    elif isinstance(sample, int):
        expr = column.as_integer()
    elif isinstance(sample, float):
        expr = column.as_float()
    else:
        expr = column.as_string()
    if flt.op == "in":
        return expr.in_(values)
    return expr == flt.value


def _to_document(row: StoredDocument) -> Document:
    return Document(row.doc_id, dict(row.data or {}), row.version)


class SqlDocumentStore(DocumentStore):
    def __init__(self, engine: AsyncEngine, max_attempts: int = 5):
        super().__init__(max_attempts=max_attempts)
        self.engine = engine
        self._session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        # SQLite allows a single writer; serialising local commits avoids lock
        # errors there. Cross-process races are still caught by the versions.
        self._commit_lock = asyncio.Lock()

    async def query(self, collection: str, filters: Iterable[Filter] = ()) -> List[Document]:
        statement = select(StoredDocument).where(StoredDocument.collection == collection)
        for flt in filters:
            statement = statement.where(_filter_clause(flt))
        statement = statement.order_by(StoredDocument.created_at)
        try:
            async with self._session_factory() as session:
                result = await session.exec(statement)
                rows = result.all()
        except (OSError, DBAPIError) as exc:
            raise StoreUnavailable(f"Query on {collection} failed: {exc}") from exc
        return [_to_document(r) for r in rows]

    async def get_by_id(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            async with self._session_factory() as session:
                row = await session.get(StoredDocument, (collection, doc_id))
        except (OSError, DBAPIError) as exc:
            raise StoreUnavailable(f"Read of {collection}/{doc_id} failed: {exc}") from exc
        return _to_document(row) if row else None

    async def _commit(self, tx: Transaction, now: datetime) -> Set[str]:
        observed = tx.observed_versions
        writes = tx.staged_writes
        async with self._commit_lock:
            try:
                async with self.engine.begin() as conn:
                    written = {(w.collection, w.doc_id) for w in writes}
                    for (collection, doc_id), seen in observed.items():
                        if (collection, doc_id) in written:
                            continue
                        current = await self._current(conn, collection, doc_id)
                        if (current["version"] if current else None) != seen:
                            raise WriteConflict(f"{collection}/{doc_id} changed since it was read")
                    for write in writes:
                        key = (write.collection, write.doc_id)
                        await self._apply(conn, write, observed.get(key, ...), now)
            except IntegrityError as exc:
                raise WriteConflict(f"Concurrent insert: {exc.orig}") from exc
            except (OSError, DBAPIError) as exc:
                raise StoreUnavailable(f"Commit failed: {exc}") from exc
        return {w.collection for w in writes}

    async def _current(self, conn: AsyncConnection, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        result = await conn.execute(
            select(_documents.c.version, _documents.c.data).where(
                _documents.c.collection == collection,
                _documents.c.doc_id == doc_id,
            )
        )
        row = result.first()
        return {"version": row.version, "data": row.data} if row else None

    async def _apply(self, conn: AsyncConnection, write: StagedWrite, seen: Any, now: datetime) -> None:
        """Apply one staged write; `seen` is the observed version, None if absent, ... if never read."""
        current = await self._current(conn, write.collection, write.doc_id)
        current_version = current["version"] if current else None
        if seen is not ... and seen != current_version:
            raise WriteConflict(f"{write.collection}/{write.doc_id} changed since it was read")

        data = resolve_server_timestamps(write.data, now)
        if write.kind == "create" and current is not None:
            raise WriteConflict(f"{write.collection}/{write.doc_id} already exists")
        if write.kind == "update":
            if current is None:
                raise NotFound(f"{write.collection}/{write.doc_id} does not exist")
            data = {**(current["data"] or {}), **data}

        if current is None:
            await conn.execute(
                insert(_documents).values(
                    collection=write.collection,
                    doc_id=write.doc_id,
                    data=data,
                    version=1,
                    created_at=now,
                )
            )
            return

        result = await conn.execute(
            update(_documents)
            .where(
                _documents.c.collection == write.collection,
                _documents.c.doc_id == write.doc_id,
                _documents.c.version == current_version,
            )
            .values(data=data, version=current_version + 1, updated_at=now)
        )
        if result.rowcount != 1:
            raise WriteConflict(f"{write.collection}/{write.doc_id} was modified concurrently")

    async def close(self) -> None:
        await super().close()
        await self.engine.dispose()
