"""
Reactive collection store: point reads, mutations, live queries, batching,
rollback and persistence signalling.
"""

import pytest

from network_graph.collection import CollectionStore, JsonFileStorage, MemoryStorage
from network_graph.errors import PersistenceFailure


def make_store(storage=None):
    store = CollectionStore(storage or MemoryStorage())
    items = store.collection("items", lambda r: r["id"])
    return store, items


def test_insert_get_and_has():
    """Inserted records are readable by key."""
    _, items = make_store()
    items.insert({"id": "a", "n": 1})
    items.insert([{"id": "b", "n": 2}, {"id": "c", "n": 3}])

    assert items.has("a")
    assert items.get("b")["n"] == 2
    assert items.keys() == ["a", "b", "c"]
    assert len(items) == 3
    assert items.get("missing") is None


def test_insert_duplicate_key_is_rejected():
    _, items = make_store()
    items.insert({"id": "a"})
    with pytest.raises(KeyError):
        items.insert({"id": "a"})
    with pytest.raises(KeyError):
        items.insert([{"id": "x"}, {"id": "x"}])
    assert items.keys() == ["a"]


def test_update_works_on_a_draft_copy():
    """A mutator edits a copy; records read before the update stay unchanged."""
    _, items = make_store()
    items.insert({"id": "a", "tags": ["x"]})
    before = items.get("a")

    items.update("a", lambda draft: draft["tags"].append("y"))

    assert before["tags"] == ["x"]
    assert items.get("a")["tags"] == ["x", "y"]


def test_update_cannot_change_the_key():
    _, items = make_store()
    items.insert({"id": "a"})
    with pytest.raises(ValueError):
        items.update("a", lambda draft: {"id": "b"})
    assert items.has("a") and not items.has("b")


def test_update_and_delete_missing_keys_fail():
    _, items = make_store()
    with pytest.raises(KeyError):
        items.update("nope", lambda d: d)
    with pytest.raises(KeyError):
        items.delete("nope")


def test_live_query_tracks_changes():
    """A live query re-evaluates and notifies after every relevant change."""
    _, items = make_store()
    items.insert([{"id": "a", "on": True}, {"id": "b", "on": False}])
    live = items.query(lambda r: r["on"])
    seen = []
    live.subscribe(lambda results: seen.append([r["id"] for r in results]))

    assert [r["id"] for r in live.results] == ["a"]

    items.update("b", lambda d: d.update(on=True))
    items.delete("a")

    assert seen == [["a", "b"], ["b"]]
    assert [r["id"] for r in live.results] == ["b"]


def test_live_query_is_silent_when_results_do_not_change():
    _, items = make_store()
    items.insert({"id": "a", "on": False})
    live = items.query(lambda r: r["on"])
    calls = []
    live.subscribe(calls.append)

    items.insert({"id": "b", "on": False})

    assert calls == []


def test_closed_live_query_stops_updating():
    _, items = make_store()
    live = items.query(lambda r: True)
    live.close()
    items.insert({"id": "a"})
    assert live.results == []


def test_find_one_and_join():
    _, items = make_store()
    items.insert([{"id": "p", "parent": None, "sel": True},
                  {"id": "c1", "parent": "p", "sel": False},
                  {"id": "c2", "parent": "q", "sel": False}])

    one = items.find_one(lambda r: r["id"] == "c1")
    children = items.join(items, on=lambda c, p: c["parent"] == p["id"],
                          where=lambda c, p: p["sel"], select=lambda c, p: c["id"])

    assert one.results["id"] == "c1"
    assert children.results == ["c1"]

    items.update("p", lambda d: d.update(sel=False))
    assert children.results == []


def test_batch_notifies_once_after_all_mutations():
    """Observers see a batch as one change, with every mutation applied."""
    store, items = make_store()
    states = []
    items.subscribe(lambda mutations: states.append((len(mutations), items.keys())))

    with store.batch():
        items.insert({"id": "a"})
        items.insert({"id": "b"})
        items.delete("a")
        assert states == []

    assert states == [(3, ["b"])]


def test_batch_rolls_back_on_error():
    store, items = make_store()
    items.insert({"id": "a", "n": 1})
    calls = []
    items.subscribe(calls.append)

    with pytest.raises(RuntimeError):
        with store.batch() as tx:
            items.update("a", lambda d: d.update(n=2))
            items.insert({"id": "b"})
            raise RuntimeError("boom")

    assert items.keys() == ["a"]
    assert items.get("a")["n"] == 1
    assert calls == []
    assert tx.persisted.cancelled()


def test_failing_subscriber_does_not_block_other_collections():
    """A committed batch reaches every collection even if one observer raises."""
    store, items = make_store()
    others = store.collection("others", lambda r: r["id"])
    seen = []

    def broken(mutations):
        raise RuntimeError("observer bug")

    items.subscribe(broken)
    others.subscribe(lambda mutations: seen.append([m.key for m in mutations]))

    with store.batch() as tx:
        items.insert({"id": "a"})
        others.insert({"id": "x"})

    assert seen == [["x"]]
    assert items.keys() == ["a"]
    assert tx.is_persisted


def test_nested_batches_commit_with_the_outermost():
    store, items = make_store()
    with store.batch() as outer:
        with store.batch() as inner:
            items.insert({"id": "a"})
        assert inner is outer
        assert not outer.persisted.done()
    assert outer.is_persisted


def test_mutation_is_persisted_to_the_backend():
    storage = MemoryStorage()
    store, items = make_store(storage)
    tx = items.insert({"id": "a"})

    assert tx.is_persisted
    assert storage.load("items") == [{"id": "a"}]


def test_full_storage_rejects_the_transaction_but_keeps_memory():
    """A full backend rejects persistence; in-memory state stays authoritative."""
    store, items = make_store(MemoryStorage(capacity=1))
    items.insert({"id": "a"})
    tx = items.insert({"id": "b"})

    assert not tx.is_persisted
    assert isinstance(tx.error, PersistenceFailure)
    assert items.keys() == ["a", "b"]

    items.update("b", lambda d: d.update(edited=True))
    assert items.get("b")["edited"] is True


def test_unavailable_storage_then_flush():
    storage = MemoryStorage()
    store, items = make_store(storage)
    storage.available = False
    failed = items.insert({"id": "a"})
    assert isinstance(failed.error, PersistenceFailure)

    storage.available = True
    retry = store.flush()
    assert retry.is_persisted
    assert storage.load("items") == [{"id": "a"}]


@pytest.mark.asyncio
async def test_wait_persisted_resolves():
    _, items = make_store()
    tx = items.insert({"id": "a"})
    assert await tx.wait_persisted() is tx


@pytest.mark.asyncio
async def test_wait_persisted_raises_on_failure():
    storage = MemoryStorage()
    storage.available = False
    _, items = make_store(storage)
    tx = items.insert({"id": "a"})
    with pytest.raises(PersistenceFailure):
        await tx.wait_persisted()


def test_json_file_storage_round_trip(tmp_path):
    """Records persisted to JSON files are preloaded by a fresh store."""
    store, items = make_store(JsonFileStorage(tmp_path))
    items.insert([{"id": "a", "n": 1}, {"id": "b", "n": 2}])
    assert (tmp_path / "items.json").exists()

    _, reloaded = make_store(JsonFileStorage(tmp_path))
    reloaded.preload()
    assert reloaded.get("b") == {"id": "b", "n": 2}


def test_json_file_storage_unreadable_file(tmp_path):
    (tmp_path / "items.json").write_text("{not json", encoding="utf-8")
    _, items = make_store(JsonFileStorage(tmp_path))
    with pytest.raises(PersistenceFailure):
        items.preload()


def test_collection_names_are_unique():
    store, _ = make_store()
    with pytest.raises(ValueError):
        store.collection("items", lambda r: r["id"])
