import asyncio
import json
from typing import Any

import firebase_admin
from firebase_admin import auth, credentials, firestore, storage
from google.api_core.exceptions import NotFound
from google.cloud.firestore_v1.base_query import FieldFilter as FirestoreFieldFilter
from loguru import logger

from recyclink.config import Settings, settings
from recyclink.errors import NotAuthenticated, ServiceError
from recyclink.models.chat import UserProfile
from recyclink.models.store import Direction, DocumentSnapshot, Query, QuerySnapshot
from recyclink.services.documents import SERVER_TIMESTAMP, ArrayUnion, DocumentNotFound, SnapshotStream
from recyclink.services.identity import StaticIdentity


def initialize_app(app_settings: Settings = settings) -> firebase_admin.App:
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    raw = app_settings.firebase_credentials
    if not raw:
        raise RuntimeError("FIREBASE_CREDENTIALS is not configured")
    # inline service-account JSON or a path to the key file
    cert = json.loads(raw) if raw.lstrip().startswith("{") else raw
    options = {"storageBucket": app_settings.firebase_storage_bucket} if app_settings.firebase_storage_bucket else None
    app = firebase_admin.initialize_app(credentials.Certificate(cert), options)
    logger.info("Firebase initialized project_id={}", app.project_id)
    return app


def _to_firestore(value: Any) -> Any:
    if value is SERVER_TIMESTAMP:
        return firestore.SERVER_TIMESTAMP
    if isinstance(value, ArrayUnion):
        return firestore.ArrayUnion(value.values)
    if isinstance(value, dict):
        return {key: _to_firestore(item) for key, item in value.items()}
    return value


def _snapshot(doc) -> DocumentSnapshot:
    return DocumentSnapshot(id=doc.id, path=doc.reference.path, data=doc.to_dict() or {})


def _build_query(client, query: Query):
    ref = client.collection(query.collection)
    for flt in query.filters:
        ref = ref.where(filter=FirestoreFieldFilter(flt.field, flt.op, flt.value))
    for order in query.order_by:
        direction = firestore.Query.DESCENDING if order.direction == Direction.DESCENDING else firestore.Query.ASCENDING
        ref = ref.order_by(order.field, direction=direction)
    if query.start_after is not None:
        ref = ref.start_after(query.start_after.data)
    if query.limit is not None:
        ref = ref.limit(query.limit)
    return ref


LISTENER_POLL_SECONDS = 5.0


async def monitor_listener(stream: SnapshotStream, watch, collection: str) -> None:
    """Fail ``stream`` once the SDK watch stops without being unsubscribed.

    A watch whose RPC cannot recover shuts down on its own thread and never
    invokes the snapshot callback again.
    """
    while not stream.closed:
        await asyncio.sleep(LISTENER_POLL_SECONDS)
        if not stream.closed and not watch.is_active:
            logger.error("Firestore listener stopped collection={}", collection)
            stream.fail(ServiceError(f"Firestore listener stopped collection={collection}"))
            return


class FirestoreWriteBatch:
    def __init__(self, client):
        self._client = client
        self._batch = client.batch()

    def set(self, path: str, data: dict[str, Any]) -> None:
        self._batch.set(self._client.document(path), _to_firestore(data))

    def update(self, path: str, data: dict[str, Any]) -> None:
        self._batch.update(self._client.document(path), _to_firestore(data))

    def delete(self, path: str) -> None:
        self._batch.delete(self._client.document(path))

    async def commit(self) -> None:
        await asyncio.to_thread(self._batch.commit)


class FirestoreDocumentStore:
    """Document store backed by Cloud Firestore through the Admin SDK."""

    def __init__(self, client=None):
        self._client = client or firestore.client()

    async def get(self, path: str) -> DocumentSnapshot | None:
        doc = await asyncio.to_thread(self._client.document(path).get)
        return _snapshot(doc) if doc.exists else None

    async def set(self, path: str, data: dict[str, Any]) -> None:
        await asyncio.to_thread(self._client.document(path).set, _to_firestore(data))

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        _, ref = await asyncio.to_thread(self._client.collection(collection).add, _to_firestore(data))
        return ref.id

    async def update(self, path: str, data: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._client.document(path).update, _to_firestore(data))
        except NotFound as exc:
            raise DocumentNotFound(f"No document to update: {path}") from exc

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._client.document(path).delete)

    async def query(self, query: Query) -> QuerySnapshot:
        docs = await asyncio.to_thread(lambda: list(_build_query(self._client, query).stream()))
        return QuerySnapshot(docs=[_snapshot(doc) for doc in docs])

    def subscribe(self, query: Query) -> SnapshotStream:
        loop = asyncio.get_running_loop()
        watches = []
        monitors: list[asyncio.Task] = []

        def _unsubscribe() -> None:
            for monitor in monitors:
                monitor.cancel()
            for watch in watches:
                watch.unsubscribe()

        stream = SnapshotStream(query, on_close=_unsubscribe)

        # runs on the SDK's listener thread
        def _on_snapshot(docs, changes, read_time) -> None:
            snapshot = QuerySnapshot(docs=[_snapshot(doc) for doc in docs])
            loop.call_soon_threadsafe(stream.push, snapshot)

        watch = _build_query(self._client, query).on_snapshot(_on_snapshot)
        watches.append(watch)
        monitors.append(loop.create_task(monitor_listener(stream, watch, query.collection)))
        logger.debug("Firestore listener attached collection={}", query.collection)
        return stream

    def batch(self) -> FirestoreWriteBatch:
        return FirestoreWriteBatch(self._client)


class FirebaseObjectStore:
    def __init__(self, bucket=None):
        self._bucket = bucket or storage.bucket()

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        blob = self._bucket.blob(path)
        await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        logger.debug("Blob uploaded path={} content_type={} size_bytes={}", path, content_type, len(data))
        return blob.public_url

    async def delete(self, path: str) -> None:
        await asyncio.to_thread(self._bucket.blob(path).delete)
        logger.debug("Blob deleted path={}", path)


async def identity_from_id_token(id_token: str, app: firebase_admin.App | None = None) -> StaticIdentity:
    try:
        claims = await asyncio.to_thread(auth.verify_id_token, id_token, app)
    except (auth.InvalidIdTokenError, auth.ExpiredIdTokenError, auth.RevokedIdTokenError) as exc:
        logger.warning("ID token rejected error={}", str(exc))
        raise NotAuthenticated("User not authenticated") from exc
    record = await asyncio.to_thread(auth.get_user, claims["uid"], app)
    return StaticIdentity(
        UserProfile(id=record.uid, display_name=record.display_name or "User", photo_url=record.photo_url)
    )
