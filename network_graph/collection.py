"""
Process Network — Reactive Collection Store
=============================================
Keyed, persisted record sets with live queries.

  CollectionStore  owns collections + one storage backend, batches mutations
  Collection       point lookups, insert / update / delete, subscriptions
  LiveQuery        filtered view, re-evaluated whenever its source changes
  LiveJoin         inner join of two collections (e.g. children of selected)
  Transaction      handle returned by every mutation; `persisted` is a future
                   settled once the backend accepted (or rejected) the write

Mutations are applied to memory synchronously. Observers are notified once
per committed batch, after every mutation of the batch has been applied, so
they never see a half-applied edit. Persistence follows the in-memory commit;
a backend failure rejects the transaction's future with PersistenceFailure
and leaves the in-memory state untouched and editable.
"""

from __future__ import annotations
import asyncio
import copy
import json
import itertools
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
from loguru import logger

from .errors import PersistenceFailure


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  STORAGE BACKENDS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class StorageBackend:
    """Durable home of collection records, one record list per collection."""

    def load(self, name: str) -> list[dict]:
        raise NotImplementedError

    def save(self, name: str, records: list[dict]) -> None:
        raise NotImplementedError


class MemoryStorage(StorageBackend):
    """
    Process-local backend. `capacity` caps the total number of stored
    records; a save beyond it is rejected like a full browser storage quota.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self.available = True
        self._data: dict[str, list[dict]] = {}

    def load(self, name: str) -> list[dict]:
        if not self.available:
            raise PersistenceFailure(f"Storage unavailable while loading {name!r}")
        return copy.deepcopy(self._data.get(name, []))

    def save(self, name: str, records: list[dict]) -> None:
        if not self.available:
            raise PersistenceFailure(f"Storage unavailable while saving {name!r}")
        if self.capacity is not None:
            used = sum(len(v) for k, v in self._data.items() if k != name)
            if used + len(records) > self.capacity:
                raise PersistenceFailure(
                    f"Storage full: {used + len(records)} records exceed capacity {self.capacity}"
                )
        self._data[name] = copy.deepcopy(records)


class JsonFileStorage(StorageBackend):
    """One JSON file per collection under `root`."""

    def __init__(self, root):
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        return self.root / f"{name.replace(':', '_')}.json"

    def load(self, name: str) -> list[dict]:
        path = self.path_for(name)
        if not path.exists():
            return []
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(f"Cannot read {path}: {exc}") from exc

    def save(self, name: str, records: list[dict]) -> None:
        path = self.path_for(name)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(records, indent=2), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"Cannot write {path}: {exc}") from exc


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  MUTATIONS & TRANSACTIONS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class Mutation:
    """One applied change; subscribers receive lists of these."""
    type: str          # insert, update, delete
    collection: str
    key: Any
    value: Any = None
    previous: Any = None


class Transaction:
    """Completion handle of a mutation or mutation batch."""

    _ids = itertools.count(1)

    def __init__(self):
        self.id = next(Transaction._ids)
        self.mutations: list[Mutation] = []
        self.persisted: Future = Future()

    @property
    def is_persisted(self) -> bool:
        return self.persisted.done() and not self.persisted.cancelled() \
            and self.persisted.exception() is None

    @property
    def error(self) -> Optional[BaseException]:
        if self.persisted.done() and not self.persisted.cancelled():
            return self.persisted.exception()
        return None

    async def wait_persisted(self) -> Transaction:
        """Await durable persistence; raises PersistenceFailure on rejection."""
        return await asyncio.wrap_future(self.persisted)

    def __repr__(self) -> str:
        state = "persisted" if self.is_persisted else ("failed" if self.error else "pending")
        return f"<Transaction {self.id} {len(self.mutations)} mutations {state}>"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  COLLECTION
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def _as_batch(items) -> list:
    if isinstance(items, (list, tuple, set, frozenset)):
        return list(items)
    return [items]


class Collection:
    """
    A keyed record set owned by a CollectionStore.

    Records are treated as immutable: `update` hands the mutator a deep copy
    (the draft) and swaps it in, so previously read records never change
    under a reader's feet.
    """

    def __init__(self, store: CollectionStore, name: str, get_key: Callable[[Any], Any],
                 encode: Optional[Callable] = None, decode: Optional[Callable] = None):
        self.store = store
        self.name = name
        self._get_key = get_key
        self._encode = encode or (lambda record: record)
        self._decode = decode or (lambda data: data)
        self._records: dict = {}
        self._subscribers: list[Callable] = []
        self._loaded = False

    # ── Reads ────────────────────────────────────────

    def get(self, key, default=None):
        return self._records.get(key, default)

    def has(self, key) -> bool:
        return key in self._records

    def keys(self) -> list:
        return list(self._records.keys())

    def values(self) -> list:
        return list(self._records.values())

    def items(self) -> list:
        return list(self._records.items())

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self):
        return iter(self.values())

    def __contains__(self, key) -> bool:
        return key in self._records

    # ── Mutations ────────────────────────────────────

    def insert(self, records) -> Transaction:
        batch = _as_batch(records)
        keys = [self._get_key(r) for r in batch]
        seen = set()
        for key in keys:
            if key in self._records or key in seen:
                raise KeyError(f"{self.name}: record {key!r} already exists")
            seen.add(key)
        with self.store.batch() as tx:
            for key, record in zip(keys, batch):
                self.store._apply(self, Mutation("insert", self.name, key, record))
        return tx

    def update(self, key, mutator: Callable[[Any], Any]) -> Transaction:
        """
        Apply `mutator` to a draft copy of the record. The mutator may edit
        the draft in place or return a replacement. Keys are immutable.
        """
        if key not in self._records:
            raise KeyError(f"{self.name}: no record {key!r}")
        previous = self._records[key]
        draft = copy.deepcopy(previous)
        result = mutator(draft)
        updated = draft if result is None else result
        if self._get_key(updated) != key:
            raise ValueError(f"{self.name}: record key {key!r} is immutable")
        with self.store.batch() as tx:
            self.store._apply(self, Mutation("update", self.name, key, updated, previous))
        return tx

    def delete(self, keys) -> Transaction:
        batch = list(dict.fromkeys(_as_batch(keys)))
        missing = [k for k in batch if k not in self._records]
        if missing:
            raise KeyError(f"{self.name}: no records {missing!r}")
        with self.store.batch() as tx:
            for key in batch:
                self.store._apply(self, Mutation("delete", self.name, key, None, self._records[key]))
        return tx

    # ── Live views ───────────────────────────────────

    def subscribe(self, callback: Callable[[list[Mutation]], None]) -> Callable[[], None]:
        """Register a change callback; returns the unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def query(self, predicate: Callable[[Any], bool]) -> LiveQuery:
        return LiveQuery(self, predicate)

    def find_one(self, predicate: Callable[[Any], bool]) -> LiveQuery:
        return LiveQuery(self, predicate, single=True)

    def join(self, other: Collection, on: Callable[[Any, Any], bool],
             where: Optional[Callable[[Any, Any], bool]] = None,
             select: Optional[Callable[[Any, Any], Any]] = None) -> LiveJoin:
        return LiveJoin(self, other, on, where, select)

    # ── Persistence ──────────────────────────────────

    def preload(self) -> None:
        """Hydrate from the backing store once; later calls are no-ops."""
        if self._loaded:
            return
        records = [self._decode(data) for data in self.store.storage.load(self.name)]
        self._records = {self._get_key(r): r for r in records}
        self._loaded = True
        logger.debug(f"Preloaded {len(self._records)} records into {self.name}")

    def snapshot(self) -> list:
        return [self._encode(r) for r in self._records.values()]

    def _notify(self, mutations: list[Mutation]) -> None:
        for callback in list(self._subscribers):
            callback(mutations)

    def __repr__(self) -> str:
        return f"<Collection {self.name} ({len(self._records)} records)>"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  LIVE QUERIES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class LiveQuery:
    """A filtered view over one collection that tracks its source."""

    def __init__(self, source: Collection, predicate: Callable[[Any], bool], single: bool = False):
        self.source = source
        self.predicate = predicate
        self.single = single
        self._subscribers: list[Callable] = []
        self._results = self._evaluate()
        self._unsubscribers = [c.subscribe(self._on_change) for c in self._sources()]

    def _sources(self) -> list[Collection]:
        return [self.source]

    def _evaluate(self) -> list:
        return [r for r in self.source.values() if self.predicate(r)]

    def _on_change(self, mutations: list[Mutation]) -> None:
        results = self._evaluate()
        if results == self._results:
            return
        self._results = results
        for callback in list(self._subscribers):
            callback(self.results)

    @property
    def results(self):
        if self.single:
            return self._results[0] if self._results else None
        return list(self._results)

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def __iter__(self):
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)


class LiveJoin(LiveQuery):
    """Inner join of two collections, re-evaluated when either changes."""

    def __init__(self, left: Collection, right: Collection, on: Callable[[Any, Any], bool],
                 where: Optional[Callable[[Any, Any], bool]] = None,
                 select: Optional[Callable[[Any, Any], Any]] = None):
        self.right = right
        self.on = on
        self.where = where or (lambda left_rec, right_rec: True)
        self.select = select or (lambda left_rec, right_rec: (left_rec, right_rec))
        super().__init__(left, lambda record: True)

    def _sources(self) -> list[Collection]:
        return [self.source] if self.right is self.source else [self.source, self.right]

    def _evaluate(self) -> list:
        return [
            self.select(left_rec, right_rec)
            for left_rec in self.source.values()
            for right_rec in self.right.values()
            if self.on(left_rec, right_rec) and self.where(left_rec, right_rec)
        ]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  STORE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class CollectionStore:
    """
    Owner of a set of collections and their storage backend.

    One store per session; graph and resolver receive it explicitly.
    """

    def __init__(self, storage: Optional[StorageBackend] = None):
        self.storage = storage or MemoryStorage()
        self._collections: dict[str, Collection] = {}
        self._depth = 0
        self._tx: Optional[Transaction] = None
        self._before: dict[str, dict] = {}

    def collection(self, name: str, get_key: Callable[[Any], Any],
                   encode: Optional[Callable] = None, decode: Optional[Callable] = None) -> Collection:
        if name in self._collections:
            raise ValueError(f"Collection {name!r} already exists")
        coll = Collection(self, name, get_key, encode, decode)
        self._collections[name] = coll
        return coll

    def __getitem__(self, name: str) -> Collection:
        return self._collections[name]

    @property
    def in_batch(self) -> bool:
        return self._depth > 0

    @contextmanager
    def batch(self):
        """
        Group mutations on any of this store's collections into one commit.

        Nested batches join the outermost one. An exception escaping the
        outermost batch restores every touched collection.
        """
        if self._depth == 0:
            self._tx = Transaction()
            self._before = {}
        self._depth += 1
        tx = self._tx
        try:
            yield tx
        except BaseException:
            self._depth -= 1
            if self._depth == 0:
                self._rollback()
            raise
        self._depth -= 1
        if self._depth == 0:
            self._commit()

    def _apply(self, coll: Collection, mutation: Mutation) -> None:
        if coll.name not in self._before:
            self._before[coll.name] = dict(coll._records)
        if mutation.type == "delete":
            del coll._records[mutation.key]
        else:
            coll._records[mutation.key] = mutation.value
        self._tx.mutations.append(mutation)
        logger.debug(f"{mutation.type} {coll.name}:{mutation.key}")

    def _rollback(self) -> None:
        tx, before = self._tx, self._before
        self._tx, self._before = None, {}
        for name, records in before.items():
            self._collections[name]._records = records
        tx.persisted.cancel()
        if tx.mutations:
            logger.debug(f"Rolled back transaction {tx.id} ({len(tx.mutations)} mutations)")

    def _commit(self) -> None:
        tx, touched = self._tx, list(self._before)
        self._tx, self._before = None, {}
        if not tx.mutations:
            tx.persisted.set_result(tx)
            return
        self._persist(tx, touched)
        # state is committed; a failing observer must not starve the others
        for name in touched:
            changes = [m for m in tx.mutations if m.collection == name]
            try:
                self._collections[name]._notify(changes)
            except Exception:
                logger.exception(f"Subscriber of {name} failed after transaction {tx.id}")

    def _persist(self, tx: Transaction, names: Iterable[str]) -> None:
        try:
            for name in names:
                self.storage.save(name, self._collections[name].snapshot())
        except PersistenceFailure as exc:
            logger.warning(f"Transaction {tx.id} kept in memory but not persisted: {exc}")
            tx.persisted.set_exception(exc)
        else:
            tx.persisted.set_result(tx)

    def flush(self) -> Transaction:
        """Re-persist every collection, e.g. to retry after a failure."""
        tx = Transaction()
        self._persist(tx, list(self._collections))
        return tx

    def preload(self) -> None:
        for coll in self._collections.values():
            coll.preload()
