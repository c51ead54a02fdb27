"""
Document Store - the narrow persistence interface the radar services use.

Supports get / put (with merge) / insert-only create / add / query / delete
and an atomic single-document increment. Three implementations:

- SQLDocumentStore: SQLAlchemy asyncio over the `documents` table
- MemoryDocumentStore: in-process dicts, for tests and local runs
- BoundedDocumentStore: wraps another store, bounding every call with a
  timeout and surfacing infrastructure failures as StoreUnavailableError
"""

import asyncio
import copy
import logging
import operator
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager, nullcontext
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from velora.db.models import DocumentRecord, utcnow
from velora.errors import (
    DocumentExistsError, DocumentNotFoundError, StoreUnavailableError
)

logger = logging.getLogger(__name__)

# (field, op, value) - e.g. ("status", "in", ["PENDING", "SNOOZED"])
Filter = Tuple[str, str, Any]
Snapshot = Tuple[str, Dict[str, Any]]

OWNER_FIELD = "userId"

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda field_value, options: field_value in options,
}


def matches(data: Dict[str, Any], filters: Iterable[Filter]) -> bool:
    """True when the document satisfies every filter. Missing fields never match."""
    for field, op, value in filters:
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        if field not in data:
            return False
        try:
            if not _OPERATORS[op](data[field], value):
                return False
        except TypeError:
            return False
    return True


def order_and_limit(
    snapshots: List[Snapshot],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int],
) -> List[Snapshot]:
    if order_by:
        snapshots.sort(
            key=lambda snap: (snap[1].get(order_by) is None, snap[1].get(order_by)),
            reverse=descending,
        )
    if limit is not None:
        snapshots = snapshots[:limit]
    return snapshots


def apply_increments(
    data: Dict[str, Any],
    deltas: Dict[str, float],
    fields: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    updated = dict(data)
    if fields:
        updated.update(fields)
    for name, delta in deltas.items():
        updated[name] = (data.get(name) or 0) + delta
    return updated


class DocumentStore(ABC):
    """Async document store interface"""

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(
        self, collection: str, key: str, fields: Dict[str, Any], merge: bool = False
    ) -> None:
        ...

    @abstractmethod
    async def create(self, collection: str, key: str, fields: Dict[str, Any]) -> None:
        """Insert-only write. Raises DocumentExistsError when the key is taken."""

    @abstractmethod
    async def update(self, collection: str, key: str, fields: Dict[str, Any]) -> None:
        """Merge into an existing document. Raises DocumentNotFoundError when absent."""

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        ...

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        ...

    @abstractmethod
    async def increment(
        self,
        collection: str,
        key: str,
        deltas: Dict[str, float],
        fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Atomically add each delta (missing fields start at zero, missing
        documents are created) and merge `fields` in the same write.
        Returns the document after the write.
        """

    async def add(self, collection: str, fields: Dict[str, Any]) -> str:
        key = uuid.uuid4().hex
        await self.create(collection, key, fields)
        return key


class MemoryDocumentStore(DocumentStore):
    """
    Dict-backed store.

    Each operation completes without awaiting, so it is atomic with respect
    to other coroutines on the same loop. Set `fail_with` to make every call
    raise (for exercising fail-open / fail-loud paths).
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail_with: Optional[Exception] = None
        self.reads = 0
        self.writes = 0

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection, key):
        self._check()
        self.reads += 1
        data = self._docs(collection).get(key)
        return copy.deepcopy(data) if data is not None else None

    async def put(self, collection, key, fields, merge=False):
        self._check()
        self.writes += 1
        docs = self._docs(collection)
        data = dict(docs.get(key, {})) if merge else {}
        data.update(copy.deepcopy(fields))
        docs[key] = data

    async def create(self, collection, key, fields):
        self._check()
        docs = self._docs(collection)
        if key in docs:
            raise DocumentExistsError(collection, key)
        self.writes += 1
        docs[key] = copy.deepcopy(fields)

    async def update(self, collection, key, fields):
        self._check()
        docs = self._docs(collection)
        if key not in docs:
            raise DocumentNotFoundError(collection, key)
        self.writes += 1
        docs[key] = {**docs[key], **copy.deepcopy(fields)}

    async def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        self._check()
        self.reads += 1
        snapshots = [
            (key, copy.deepcopy(data))
            for key, data in self._docs(collection).items()
            if matches(data, filters)
        ]
        return order_and_limit(snapshots, order_by, descending, limit)

    async def delete(self, collection, key):
        self._check()
        self.writes += 1
        self._docs(collection).pop(key, None)

    async def increment(self, collection, key, deltas, fields=None):
        self._check()
        self.writes += 1
        docs = self._docs(collection)
        docs[key] = apply_increments(docs.get(key, {}), deltas, copy.deepcopy(fields))
        return copy.deepcopy(docs[key])


def sql_filter(field: str, op: str, value: Any):
    """
    JSON-path WHERE clause narrowing a query in the database, or None when the
    filter is left to `matches`. Clauses may over-include; `matches` has the
    final say on every row.
    """
    column = DocumentRecord.data[field]
    if op == "==" and isinstance(value, str):
        return column.as_string() == value
    if op == "in" and value and all(isinstance(option, str) for option in value):
        return column.as_string().in_(list(value))
    if op in ("<", "<=", ">", ">=") and isinstance(value, (int, float)) and not isinstance(value, bool):
        return _OPERATORS[op](column.as_float(), value)
    return None


class SQLDocumentStore(DocumentStore):
    """
    Document store over the `documents` table.

    Read-modify-write operations run inside one transaction and lock the row
    with SELECT ... FOR UPDATE on PostgreSQL. SQLite has no row locks and the
    engine shares one connection between sessions, so there every call holds
    a store-wide asyncio.Lock for the whole transaction.
    """

    def __init__(self, session_maker: async_sessionmaker, serialize: Optional[bool] = None):
        self.session_maker = session_maker
        if serialize is None:
            bind = session_maker.kw.get("bind")
            serialize = bind is not None and bind.dialect.name == "sqlite"
        self._lock: Optional[asyncio.Lock] = asyncio.Lock() if serialize else None

    @asynccontextmanager
    async def _session(self, begin: bool = False):
        async with self._lock if self._lock is not None else nullcontext():
            factory = self.session_maker.begin() if begin else self.session_maker()
            async with factory as session:
                yield session

    @staticmethod
    def _owner(fields: Dict[str, Any]) -> Optional[str]:
        owner = fields.get(OWNER_FIELD)
        return str(owner) if owner is not None else None

    async def _locked(self, session, collection: str, key: str) -> Optional[DocumentRecord]:
        result = await session.execute(
            select(DocumentRecord)
            .where(DocumentRecord.collection == collection, DocumentRecord.key == key)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def get(self, collection, key):
        async with self._session() as session:
            record = await session.get(DocumentRecord, (collection, key))
            return copy.deepcopy(record.data) if record is not None else None

    async def put(self, collection, key, fields, merge=False):
        async with self._session(begin=True) as session:
            record = await self._locked(session, collection, key)
            if record is None:
                session.add(DocumentRecord(
                    collection=collection,
                    key=key,
                    owner_id=self._owner(fields),
                    data=copy.deepcopy(fields),
                ))
                return
            data = dict(record.data) if merge else {}
            data.update(copy.deepcopy(fields))
            record.data = data
            record.owner_id = self._owner(data)
            record.updated_at = utcnow()

    async def create(self, collection, key, fields):
        try:
            async with self._session(begin=True) as session:
                session.add(DocumentRecord(
                    collection=collection,
                    key=key,
                    owner_id=self._owner(fields),
                    data=copy.deepcopy(fields),
                ))
                await session.flush()
        except IntegrityError as e:
            raise DocumentExistsError(collection, key) from e

    async def update(self, collection, key, fields):
        async with self._session(begin=True) as session:
            record = await self._locked(session, collection, key)
            if record is None:
                raise DocumentNotFoundError(collection, key)
            data = dict(record.data)
            data.update(copy.deepcopy(fields))
            record.data = data
            record.owner_id = self._owner(data)
            record.updated_at = utcnow()

    async def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        stmt = select(DocumentRecord).where(DocumentRecord.collection == collection)
        for field, op, value in filters:
            if field == OWNER_FIELD and op == "==":
                stmt = stmt.where(DocumentRecord.owner_id == str(value))
                continue
            clause = sql_filter(field, op, value)
            if clause is not None:
                stmt = stmt.where(clause)
        async with self._session() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()
        snapshots = [
            (record.key, copy.deepcopy(record.data))
            for record in records
            if matches(record.data, filters)
        ]
        return order_and_limit(snapshots, order_by, descending, limit)

    async def delete(self, collection, key):
        async with self._session(begin=True) as session:
            record = await session.get(DocumentRecord, (collection, key))
            if record is not None:
                await session.delete(record)

    async def increment(self, collection, key, deltas, fields=None):
        # A concurrent first increment can win the insert; retry once as an update
        for attempt in range(2):
            try:
                async with self._session(begin=True) as session:
                    record = await self._locked(session, collection, key)
                    if record is None:
                        data = apply_increments({}, deltas, copy.deepcopy(fields))
                        session.add(DocumentRecord(
                            collection=collection,
                            key=key,
                            owner_id=self._owner(data),
                            data=data,
                        ))
                        await session.flush()
                    else:
                        data = apply_increments(record.data, deltas, copy.deepcopy(fields))
                        record.data = data
                        record.owner_id = self._owner(data)
                        record.updated_at = utcnow()
                    return copy.deepcopy(data)
            except IntegrityError:
                if attempt == 1:
                    raise
                logger.debug(f"Increment insert race on {collection}/{key}, retrying")
        raise RuntimeError("unreachable")


class BoundedDocumentStore(DocumentStore):
    """
    Bounds every call to the wrapped store with a timeout.

    Timeouts and driver/network errors become StoreUnavailableError so each
    service can apply its own failure policy (fail open, swallow, or raise).
    Conflict and not-found errors pass through unchanged.
    """

    def __init__(self, inner: DocumentStore, timeout: float):
        self.inner = inner
        self.timeout = timeout

    async def _call(self, description: str, coro):
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailableError(
                f"Document store {description} timed out after {self.timeout}s"
            ) from e
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Document store {description} failed: {e}") from e

    async def get(self, collection, key):
        return await self._call("get", self.inner.get(collection, key))

    async def put(self, collection, key, fields, merge=False):
        return await self._call("put", self.inner.put(collection, key, fields, merge=merge))

    async def create(self, collection, key, fields):
        return await self._call("create", self.inner.create(collection, key, fields))

    async def update(self, collection, key, fields):
        return await self._call("update", self.inner.update(collection, key, fields))

    async def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        return await self._call(
            "query",
            self.inner.query(collection, filters, order_by=order_by, descending=descending, limit=limit),
        )

    async def delete(self, collection, key):
        return await self._call("delete", self.inner.delete(collection, key))

    async def increment(self, collection, key, deltas, fields=None):
        return await self._call("increment", self.inner.increment(collection, key, deltas, fields))

    async def add(self, collection, fields):
        return await self._call("add", self.inner.add(collection, fields))
