import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from errors import StoreError
from store import BOOLEAN, INTEGER, JSON, REAL, TEXT, Store, TableSpec

LAYOUT = {
    "notes": TableSpec(
        {"id": INTEGER, "title": TEXT, "tags": JSON, "pinned": BOOLEAN, "folder_id": INTEGER},
        indexes=["title", "pinned", "folder_id"],
    ),
    "folders": TableSpec({"id": INTEGER, "name": TEXT}, indexes=["name"], unique=[("name",)]),
    "kv": TableSpec({"key": TEXT, "value": JSON}, primary_key="key", auto_increment=False),
}


async def open_test_store(tmp_path) -> Store:
    store = Store(str(tmp_path / "store.db"))
    await store.open()
    store.use_layout(LAYOUT)
    async with store.transaction("rw", LAYOUT) as tx:
        for name, spec in LAYOUT.items():
            await tx.execute(spec.create_sql(name))
            for statement in spec.index_sql(name):
                await tx.execute(statement)
    return store


def test_table_spec_validation():
    with pytest.raises(ValueError):
        TableSpec({"name": TEXT})
    with pytest.raises(ValueError):
        TableSpec({"id": INTEGER, "x": "BLOB"})
    with pytest.raises(ValueError):
        TableSpec({"id": INTEGER}, indexes=["missing"])
    base = TableSpec({"id": INTEGER, "a": TEXT}, indexes=["a"])
    wider = base.extend({"b": INTEGER}, indexes=["b"])
    assert wider.covers(base)
    assert not base.covers(wider)
    assert wider.queryable == {"id", "a", "b"}


@pytest.mark.asyncio
async def test_typed_round_trip(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        notes = store.table("notes")
        note_id = await notes.add({"title": "Leg day", "tags": ["legs", "heavy"], "pinned": True})
        row = await notes.get(note_id)
        assert row == {
            "id": note_id,
            "title": "Leg day",
            "tags": ["legs", "heavy"],
            "pinned": True,
            "folder_id": None,
        }
        await store.table("kv").put({"key": "seed", "value": {"v": 1}})
        await store.table("kv").put({"key": "seed", "value": {"v": 2}})
        assert await store.table("kv").get("seed") == {"key": "seed", "value": {"v": 2}}
        assert await store.table("kv").count() == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unknown_field_and_unindexed_query(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        with pytest.raises(StoreError):
            await store.table("notes").add({"title": "x", "body": "nope"})
        with pytest.raises(StoreError):
            store.table("notes").where(tags=["x"])
        with pytest.raises(StoreError):
            store.table("missing")
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_queries_and_collections(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        notes = store.table("notes")
        ids = await notes.bulk_add(
            [
                {"title": "b", "pinned": False, "folder_id": 1},
                {"title": "a", "pinned": True, "folder_id": 1},
                {"title": "c", "pinned": True, "folder_id": None},
            ]
        )
        assert [r["title"] for r in await notes.order_by("title")] == ["a", "b", "c"]
        assert [r["title"] for r in await notes.order_by("title", reverse=True)] == ["c", "b", "a"]
        assert await notes.where(pinned=True).count() == 2
        assert [r["title"] for r in await notes.where(folder_id=None).to_list()] == ["c"]
        assert await notes.where_in("folder_id", [1, 2]).primary_keys() == ids[:2]
        assert await notes.where_in("folder_id", []).to_list() == []

        found = await notes.bulk_get([ids[2], 999, ids[0]])
        assert [r["title"] if r else None for r in found] == ["c", None, "b"]

        changed = await notes.where(pinned=True).modify({"pinned": False})
        assert changed == 2
        assert await notes.where(pinned=True).count() == 0
        assert await notes.where(pinned=False).modify({"pinned": False}) == 0

        def retitle(row):
            row["title"] = row["title"].upper()

        await notes.where(folder_id=1).modify(retitle)
        assert sorted(r["title"] for r in await notes.to_list()) == ["A", "B", "c"]

        assert await notes.where(folder_id=1).filter(lambda r: r["title"] == "A").delete() == 1
        assert await notes.count() == 2
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_transaction_rolls_back_every_table(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        with pytest.raises(RuntimeError):
            async with store.transaction("rw", ["notes", "folders"]) as tx:
                await tx.table("folders").add({"name": "Push"})
                await tx.table("notes").add({"title": "bench"})
                raise RuntimeError("boom")
        assert await store.table("folders").count() == 0
        assert await store.table("notes").count() == 0
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_unique_index_violation_rolls_back(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        await store.table("folders").add({"name": "Push"})
        with pytest.raises(Exception):
            async with store.transaction("rw", ["folders", "notes"]) as tx:
                await tx.table("notes").add({"title": "orphan"})
                await tx.table("folders").add({"name": "Push"})
        assert await store.table("notes").count() == 0
        assert await store.table("folders").count() == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_transaction_scope_is_enforced(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        async with store.transaction("rw", ["notes"]) as tx:
            with pytest.raises(StoreError):
                tx.table("folders")
            with pytest.raises(StoreError):
                await store.table("folders").add({"name": "outside"})
        async with store.transaction("r", ["notes"]):
            with pytest.raises(StoreError):
                await store.table("notes").add({"title": "read only"})
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_nested_transactions_join(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        async with store.transaction("rw", ["notes", "folders"]):
            folder_id = await store.table("folders").add({"name": "Pull"})
            await store.table("notes").bulk_add([{"title": "row", "folder_id": folder_id}])
        assert await store.table("notes").where(folder_id=folder_id).count() == 1
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_dump_is_ordered(tmp_path):
    store = await open_test_store(tmp_path)
    try:
        await store.table("kv").put({"key": "b", "value": 2})
        await store.table("kv").put({"key": "a", "value": 1})
        dump = await store.dump()
        assert [r["key"] for r in dump["kv"]] == ["a", "b"]
        assert dump["notes"] == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_closed_store_rejects_work(tmp_path):
    store = Store(str(tmp_path / "closed.db"))
    store.use_layout(LAYOUT)
    with pytest.raises(StoreError):
        await store.table("notes").count()


@pytest.mark.asyncio
async def test_context_manager_and_bulk_put(tmp_path):
    layout = {"scores": TableSpec({"id": INTEGER, "value": REAL}, auto_increment=False)}
    async with Store(str(tmp_path / "ctx.db")) as store:
        assert store.is_open
        store.use_layout(layout)
        async with store.transaction("rw", layout) as tx:
            await tx.execute(layout["scores"].create_sql("scores"))
        await store.table("scores").bulk_put([{"id": 1, "value": 2.5}, {"id": 2, "value": 3.0}])
        await store.table("scores").bulk_put([{"id": 1, "value": 4.5}])
        assert [r["value"] for r in await store.table("scores").order_by("id")] == [4.5, 3.0]
    assert not store.is_open
