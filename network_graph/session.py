"""
Process Network — Session
===========================
One editing session: a CollectionStore on the configured backend, the graph
over it, the schema registry, the resolver and the query surface. Nothing is
module-global; tests and the CLI create as many sessions as they need.

Tracks which network directory is loaded so a repeated load of the same
network is skipped unless forced.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from loguru import logger

from network_io.adapter import network_data
from network_io.directory import NetworkDirectory
from scope_resolution.query import NetworkQuery
from scope_resolution.registry import InMemorySchemaRegistry
from scope_resolution.resolver import ScopeResolver
from .collection import CollectionStore, JsonFileStorage, MemoryStorage, Transaction
from .graph import NetworkGraph, NetworkSnapshot
from .ontology import OnParentDeleted


@dataclass
class SessionConfig:
    """Session settings (the CLI maps its flags onto these)."""
    storage_dir: Optional[str] = None           # None = in-memory store
    on_parent_deleted: str = OnParentDeleted.ORPHAN.value
    schema_path: Optional[str] = None           # JSON schema registry file
    storage_capacity: Optional[int] = None      # record cap for the in-memory store


class NetworkSession:
    def __init__(self, config: Optional[SessionConfig] = None, registry=None):
        self.config = config or SessionConfig()
        if self.config.storage_dir:
            storage = JsonFileStorage(self.config.storage_dir)
        else:
            storage = MemoryStorage(self.config.storage_capacity)
        self.store = CollectionStore(storage)
        self.graph = NetworkGraph(self.store, self.config.on_parent_deleted)
        if self.config.storage_dir:
            self.store.preload()

        if registry is None and self.config.schema_path:
            registry = InMemorySchemaRegistry.from_json(self.config.schema_path)
        self.registry = registry
        self.resolver = ScopeResolver(self.graph, self.registry)
        self.query = NetworkQuery(self.resolver)

        self.network_id: Optional[str] = None
        self.source_dir: Optional[Path] = None

    # ── Loading ──────────────────────────────────────

    def is_network_loaded(self, network_id: str) -> bool:
        return self.network_id == network_id and len(self.graph.nodes) > 0

    def load_directory(self, path, force_reload: bool = False) -> Optional[Transaction]:
        """
        Replace the graph with the network stored in `path`. Returns None
        (and changes nothing) when that network is already loaded.
        """
        directory = NetworkDirectory(path)
        if not force_reload and self.is_network_loaded(directory.network_id):
            logger.info(f"Network {directory.network_id} already loaded; skipping")
            return None
        snapshot = directory.load_snapshot()
        tx = self.graph.load(snapshot)
        self.network_id = directory.network_id
        self.source_dir = directory.path
        return tx

    def load_snapshot(self, snapshot: NetworkSnapshot, network_id: Optional[str] = None) -> Transaction:
        tx = self.graph.load(snapshot)
        self.network_id = network_id
        self.source_dir = None
        return tx

    def reload(self) -> Transaction:
        if self.source_dir is None:
            raise RuntimeError("No network directory loaded")
        return self.load_directory(self.source_dir, force_reload=True)

    # ── Saving ───────────────────────────────────────

    def save_directory(self, path=None) -> list[Path]:
        target = path or self.source_dir
        if target is None:
            raise RuntimeError("No target directory to save to")
        return NetworkDirectory(target).save_graph(self.graph)

    # ── Outward surfaces ─────────────────────────────

    def run_query(self, query: str):
        return self.query.run(query)

    def operation_payload(self) -> dict:
        return network_data(self.graph)
