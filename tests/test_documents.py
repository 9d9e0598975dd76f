import asyncio

import pytest

from recyclink.errors import ServiceError
from recyclink.models.store import Direction, Query
from recyclink.services.documents import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocumentNotFound,
    collection_path,
    document_parts,
)


async def test_add_get_update_delete(store):
    doc_id = await store.add("listings", {"title": "Pallets", "price": 10})

    doc = await store.get(f"listings/{doc_id}")
    assert doc.id == doc_id
    assert doc.data == {"title": "Pallets", "price": 10}

    await store.update(f"listings/{doc_id}", {"price": 12})
    assert (await store.get(f"listings/{doc_id}")).data["price"] == 12

    await store.delete(f"listings/{doc_id}")
    assert await store.get(f"listings/{doc_id}") is None


async def test_update_missing_document_fails(store):
    with pytest.raises(DocumentNotFound):
        await store.update("listings/nope", {"price": 1})


async def test_returned_data_is_a_copy(store):
    await store.set("users/u1", {"tags": ["a"]})
    doc = await store.get("users/u1")
    doc.data["tags"].append("b")
    assert (await store.get("users/u1")).data["tags"] == ["a"]


async def test_server_timestamps_strictly_increase(store):
    for index in range(5):
        await store.set(f"events/e{index}", {"at": SERVER_TIMESTAMP})
    stamps = [(await store.get(f"events/e{index}")).data["at"] for index in range(5)]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == 5
    assert all(stamp.tzinfo is not None for stamp in stamps)


async def test_array_union_only_adds_missing_values(store):
    await store.set("chats/c/messages/m", {"read_by": ["alice"]})
    await store.update("chats/c/messages/m", {"read_by": ArrayUnion(["alice", "bob"])})
    await store.update("chats/c/messages/m", {"read_by": ArrayUnion(["bob"])})
    assert (await store.get("chats/c/messages/m")).data["read_by"] == ["alice", "bob"]


async def test_query_filters_orders_and_limits(store):
    await store.set("listings/a", {"city": "Oslo", "price": 30, "tags": ["wood"]})
    await store.set("listings/b", {"city": "Oslo", "price": 10, "tags": ["metal"]})
    await store.set("listings/c", {"city": "Bergen", "price": 20, "tags": ["wood"]})
    await store.set("listings/d", {"city": "Oslo", "tags": ["wood"]})

    by_price = await store.query(Query(collection="listings").where("city", "==", "Oslo").order("price"))
    assert [doc.id for doc in by_price.docs] == ["b", "a"]

    wood = await store.query(
        Query(collection="listings").where("tags", "array_contains", "wood").order("price", Direction.DESCENDING)
    )
    assert [doc.id for doc in wood.docs] == ["a", "c"]

    first = await store.query(Query(collection="listings").order("price", Direction.DESCENDING).limit_to(1))
    assert [doc.id for doc in first.docs] == ["a"]

    rest = await store.query(Query(collection="listings").order("price", Direction.DESCENDING).after(first.docs[0]))
    assert [doc.id for doc in rest.docs] == ["c", "b"]


async def test_query_scopes_to_collection(store):
    await store.set("chats/c1", {"participant_ids": ["a", "b"]})
    await store.set("chats/c1/messages/m1", {"text": "hi"})
    await store.set("chats/c2/messages/m2", {"text": "other"})

    messages = await store.query(Query(collection="chats/c1/messages"))
    assert [doc.id for doc in messages.docs] == ["m1"]
    assert messages.docs[0].path == "chats/c1/messages/m1"
    chats = await store.query(Query(collection="chats"))
    assert [doc.id for doc in chats.docs] == ["c1"]


def test_paths_are_checked():
    assert document_parts("chats/c1/messages/m1") == ("chats/c1/messages", "m1")
    with pytest.raises(ValueError):
        document_parts("chats")
    with pytest.raises(ValueError):
        collection_path("chats/c1")


async def test_batch_is_atomic(store):
    await store.set("chats/c/messages/m1", {"read_by": []})
    batch = store.batch()
    batch.update("chats/c/messages/m1", {"read_by": ArrayUnion(["bob"])})
    batch.update("chats/c/messages/missing", {"read_by": ArrayUnion(["bob"])})

    with pytest.raises(DocumentNotFound):
        await batch.commit()

    assert (await store.get("chats/c/messages/m1")).data["read_by"] == []


async def test_batch_commits_once(store):
    await store.set("a/1", {"n": 1})
    batch = store.batch()
    batch.update("a/1", {"n": 2})
    batch.delete("a/1")
    await batch.commit()
    assert await store.get("a/1") is None
    with pytest.raises(ServiceError):
        await batch.commit()


async def test_subscription_delivers_initial_and_changed_snapshots(store):
    await store.set("chats/c1", {"participant_ids": ["a", "b"], "last_message_at": 1})
    stream = store.subscribe(Query(collection="chats").where("participant_ids", "array_contains", "a"))

    initial = await asyncio.wait_for(anext(stream), 1)
    assert [doc.id for doc in initial.docs] == ["c1"]

    await store.set("chats/other", {"participant_ids": ["x", "y"], "last_message_at": 2})
    await store.set("chats/c2", {"participant_ids": ["a", "c"], "last_message_at": 3})

    changed = await asyncio.wait_for(anext(stream), 1)
    assert [doc.id for doc in changed.docs] == ["c1", "c2"]


async def test_subscription_stops_after_close(store):
    stream = store.subscribe(Query(collection="chats"))
    await asyncio.wait_for(anext(stream), 1)

    stream.close()
    await store.set("chats/c1", {"participant_ids": ["a", "b"]})

    with pytest.raises(StopAsyncIteration):
        await asyncio.wait_for(anext(stream), 1)


async def test_subscription_surfaces_failures(store):
    stream = store.subscribe(Query(collection="chats"))
    await asyncio.wait_for(anext(stream), 1)

    stream.fail(RuntimeError("listener dropped"))

    with pytest.raises(ServiceError, match="listener dropped"):
        await asyncio.wait_for(anext(stream), 1)


async def test_unread_snapshots_collapse_to_newest(store):
    stream = store.subscribe(Query(collection="listings").order("price"))
    await asyncio.wait_for(anext(stream), 1)

    for index in range(20):
        await store.set(f"listings/l{index}", {"price": index})

    newest = await asyncio.wait_for(anext(stream), 1)
    assert len(newest.docs) == 20
    assert stream._queue.empty()


async def test_collapsing_keeps_pending_failure(store):
    stream = store.subscribe(Query(collection="chats"))
    await asyncio.wait_for(anext(stream), 1)

    stream.fail(RuntimeError("listener dropped"))
    await store.set("chats/c1", {"participant_ids": ["a", "b"]})

    with pytest.raises(ServiceError, match="listener dropped"):
        await asyncio.wait_for(anext(stream), 1)
