import asyncio
import copy
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol
from uuid import uuid4

from loguru import logger

from recyclink.errors import ServiceError
from recyclink.models.store import Direction, DocumentSnapshot, FieldFilter, Query, QuerySnapshot


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Write transform appending values that are not already in a list field."""

    def __init__(self, values: list[Any]):
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


class DocumentNotFound(ServiceError):
    pass


def split_path(path: str) -> list[str]:
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if not segments:
        raise ValueError("Empty document path")
    return segments


def document_parts(path: str) -> tuple[str, str]:
    segments = split_path(path)
    if len(segments) % 2 != 0:
        raise ValueError(f"Not a document path: {path}")
    return "/".join(segments[:-1]), segments[-1]


def collection_path(path: str) -> str:
    segments = split_path(path)
    if len(segments) % 2 != 1:
        raise ValueError(f"Not a collection path: {path}")
    return "/".join(segments)


def put_latest(queue: asyncio.Queue, item: Any) -> None:
    """Queue ``item`` after dropping pending items of the same type.

    Markers of another type (failures, end of stream) stay queued, so a slow
    consumer sees only the newest value and still gets every terminal marker.
    """
    kept = []
    while not queue.empty():
        pending = queue.get_nowait()
        if type(pending) is not type(item):
            kept.append(pending)
    for pending in kept:
        queue.put_nowait(pending)
    queue.put_nowait(item)


class _Closed:
    pass


_CLOSED = _Closed()


class SnapshotStream:
    """Async iterator over the snapshots of one standing query."""

    def __init__(self, query: Query, on_close: Callable[[], None] | None = None):
        self.query = query
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: QuerySnapshot) -> None:
        if not self._closed:
            put_latest(self._queue, snapshot)

    def fail(self, exc: BaseException) -> None:
        if not self._closed:
            self._queue.put_nowait(exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "SnapshotStream":
        return self

    async def __anext__(self) -> QuerySnapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise ServiceError(f"Subscription failed: {item}") from item
        return item


class WriteBatch(Protocol):
    def set(self, path: str, data: dict[str, Any]) -> None: ...

    def update(self, path: str, data: dict[str, Any]) -> None: ...

    def delete(self, path: str) -> None: ...

    async def commit(self) -> None: ...


class DocumentStore(Protocol):
    async def get(self, path: str) -> DocumentSnapshot | None: ...

    async def set(self, path: str, data: dict[str, Any]) -> None: ...

    async def add(self, collection: str, data: dict[str, Any]) -> str: ...

    async def update(self, path: str, data: dict[str, Any]) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def query(self, query: Query) -> QuerySnapshot: ...

    def subscribe(self, query: Query) -> SnapshotStream: ...

    def batch(self) -> WriteBatch: ...


def _matches(data: dict[str, Any], flt: FieldFilter) -> bool:
    if flt.field not in data:
        return False
    value = data[flt.field]
    try:
        if flt.op == "==":
            return value == flt.value
        if flt.op == "!=":
            return value is not None and value != flt.value
        if flt.op == "<":
            return value < flt.value
        if flt.op == "<=":
            return value <= flt.value
        if flt.op == ">":
            return value > flt.value
        if flt.op == ">=":
            return value >= flt.value
        if flt.op == "in":
            return value in flt.value
        if flt.op == "array_contains":
            return isinstance(value, list) and flt.value in value
        if flt.op == "array_contains_any":
            return isinstance(value, list) and any(item in value for item in flt.value)
    except TypeError:
        return False
    raise ValueError(f"Unsupported filter operator: {flt.op}")


def run_query(documents: dict[str, dict[str, Any]], query: Query) -> list[DocumentSnapshot]:
    target = collection_path(query.collection)
    rows = []
    for path, data in documents.items():
        parent, doc_id = document_parts(path)
        if parent != target:
            continue
        if not all(_matches(data, flt) for flt in query.filters):
            continue
        # ordered queries skip documents that lack the ordering field
        if any(order.field not in data for order in query.order_by):
            continue
        rows.append(DocumentSnapshot(id=doc_id, path=path, data=copy.deepcopy(data)))

    for order in reversed(query.order_by):
        rows.sort(
            key=lambda doc: doc.data[order.field],
            reverse=order.direction == Direction.DESCENDING,
        )

    if query.start_after is not None:
        ids = [doc.id for doc in rows]
        if query.start_after.id in ids:
            rows = rows[ids.index(query.start_after.id) + 1 :]

    if query.limit is not None:
        rows = rows[: query.limit]
    return rows


class MemoryWriteBatch:
    def __init__(self, store: "MemoryDocumentStore"):
        self._store = store
        self._ops: list[tuple[str, str, dict[str, Any] | None]] = []
        self._committed = False

    def set(self, path: str, data: dict[str, Any]) -> None:
        document_parts(path)
        self._ops.append(("set", path, data))

    def update(self, path: str, data: dict[str, Any]) -> None:
        document_parts(path)
        self._ops.append(("update", path, data))

    def delete(self, path: str) -> None:
        document_parts(path)
        self._ops.append(("delete", path, None))

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if self._committed:
            raise ServiceError("Batch already committed")
        self._committed = True
        self._store._apply(self._ops)


class MemoryDocumentStore:
    """Dict-backed document store with the Firestore behaviors the client relies on."""

    def __init__(self):
        self._documents: dict[str, dict[str, Any]] = {}
        self._streams: list[tuple[SnapshotStream, list[tuple[str, dict[str, Any]]] | None]] = []
        self._last_timestamp = datetime.fromtimestamp(0, tz=timezone.utc)

    def _server_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _resolve(self, value: Any, existing: Any, timestamp: datetime) -> Any:
        if value is SERVER_TIMESTAMP:
            return timestamp
        if isinstance(value, ArrayUnion):
            current = list(existing) if isinstance(existing, list) else []
            for item in value.values:
                if item not in current:
                    current.append(item)
            return current
        if isinstance(value, dict):
            previous = existing if isinstance(existing, dict) else {}
            return {key: self._resolve(item, previous.get(key), timestamp) for key, item in value.items()}
        return copy.deepcopy(value)

    def _apply(self, ops: list[tuple[str, str, dict[str, Any] | None]]) -> None:
        staged = dict(self._documents)
        timestamp = self._server_timestamp()
        for op, path, data in ops:
            key = "/".join(split_path(path))
            if op == "set":
                staged[key] = self._resolve(data, None, timestamp)
            elif op == "update":
                if key not in staged:
                    raise DocumentNotFound(f"No document to update: {key}")
                merged = dict(staged[key])
                for field, value in data.items():
                    merged[field] = self._resolve(value, merged.get(field), timestamp)
                staged[key] = merged
            elif op == "delete":
                staged.pop(key, None)
        self._documents = staged
        logger.debug("Memory store commit ops={} documents={}", len(ops), len(staged))
        self._publish()

    def _publish(self) -> None:
        for index, (stream, last_rows) in enumerate(self._streams):
            rows = run_query(self._documents, stream.query)
            fingerprint = [(doc.id, doc.data) for doc in rows]
            if fingerprint == last_rows:
                continue
            self._streams[index] = (stream, fingerprint)
            stream.push(QuerySnapshot(docs=rows))

    async def get(self, path: str) -> DocumentSnapshot | None:
        parent, doc_id = document_parts(path)
        key = f"{parent}/{doc_id}"
        if key not in self._documents:
            return None
        return DocumentSnapshot(id=doc_id, path=key, data=copy.deepcopy(self._documents[key]))

    async def set(self, path: str, data: dict[str, Any]) -> None:
        document_parts(path)
        self._apply([("set", path, data)])

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid4().hex[:20]
        self._apply([("set", f"{collection_path(collection)}/{doc_id}", data)])
        return doc_id

    async def update(self, path: str, data: dict[str, Any]) -> None:
        document_parts(path)
        self._apply([("update", path, data)])

    async def delete(self, path: str) -> None:
        document_parts(path)
        self._apply([("delete", path, None)])

    async def query(self, query: Query) -> QuerySnapshot:
        return QuerySnapshot(docs=run_query(self._documents, query))

    def subscribe(self, query: Query) -> SnapshotStream:
        stream: SnapshotStream

        def _detach() -> None:
            self._streams = [entry for entry in self._streams if entry[0] is not stream]

        stream = SnapshotStream(query, on_close=_detach)
        self._streams.append((stream, None))
        logger.debug("Memory store subscription opened collection={}", query.collection)
        self._publish()
        return stream

    def batch(self) -> MemoryWriteBatch:
        return MemoryWriteBatch(self)
