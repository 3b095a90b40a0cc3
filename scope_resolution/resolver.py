"""
Process Network — Scope Resolution Engine
===========================================
Resolves the effective value of a property for a block by walking the scope
hierarchy from the inside out:

  block properties → branch properties → group properties → global defaults

The first scope that defines the property wins and is reported as the
value's provenance. Groups may nest; the nearest containing group is
consulted first.

For outer-scope editing (global, group, branch) the engine aggregates, over
every block the edit would reach, which block types reference a property,
which of those require it, and the affected block paths, so an edit form can
say "this default affects 12 blocks across 3 types, required in 2 of them".

Setting a value writes at exactly one scope; clearing removes exactly one
entry so resolution falls through to the next outer scope.
"""

from __future__ import annotations
from typing import Optional, Union
from loguru import logger

from network_graph.collection import Transaction
from network_graph.errors import IndexOutOfRange, InvalidNode, UnknownBlockType
from network_graph.graph import NetworkGraph
from network_graph.ontology import (
    Block, BlockImpact, BlockPath, Node, PropertyAggregate, PropertyValue,
    ResolvedValue, Scope, ScopeRef, as_scope_ref,
)
from network_graph.ordering import topological_order
from .registry import SchemaRegistry, BlockSchema

Target = Union[ScopeRef, BlockPath, str]

# Block fields that are not part of the property map
RESERVED_BLOCK_KEYS = ("type", "quantity")


class ScopeResolver:
    """Resolution, override/clear and aggregation over one NetworkGraph."""

    def __init__(self, graph: NetworkGraph, registry: Optional[SchemaRegistry] = None):
        self.graph = graph
        self.registry = registry

    # ── Resolution ───────────────────────────────────

    def scope_chain(self, target: Target) -> list[tuple[Scope, Optional[str], dict]]:
        """
        Property maps consulted for `target`, innermost first, as
        (scope, source node id, map) triples. Empty if the target is gone.
        """
        ref = as_scope_ref(target)
        chain: list[tuple[Scope, Optional[str], dict]] = []
        anchor: Optional[Node] = None

        if ref.scope == Scope.BLOCK:
            path = ref.block_path
            try:
                block = self.graph.get_block(path.branch_id, path.index)
            except (KeyError, IndexOutOfRange):
                return []
            anchor = self.graph.get_node(path.branch_id)
            chain.append((Scope.BLOCK, path.branch_id, block.properties))
            chain.append((Scope.BRANCH, anchor.id, anchor.data.properties))
        elif ref.scope == Scope.BRANCH:
            anchor = self.graph.get_node(ref.path)
            if anchor is None or not anchor.is_branch:
                return []
            chain.append((Scope.BRANCH, anchor.id, anchor.data.properties))
        elif ref.scope == Scope.GROUP:
            anchor = self.graph.get_node(ref.path)
            if anchor is None or not anchor.is_group:
                return []
            chain.append((Scope.GROUP, anchor.id, anchor.data.properties))

        if anchor is not None:
            for group in self.graph.ancestor_groups(anchor.id):
                chain.append((Scope.GROUP, group.id, group.data.properties))
        chain.append((Scope.GLOBAL, None, self.graph.default_values()))
        return chain

    def resolve(self, prop: str, target: Target) -> Optional[ResolvedValue]:
        """Effective value of `prop` at `target`, or None if no scope defines it."""
        ref = as_scope_ref(target)
        for scope, source_id, values in self.scope_chain(ref):
            if prop in values:
                return ResolvedValue(values[prop], scope, source_id, ref.path or "")
        return None

    def resolve_block(self, target: Target) -> dict[str, ResolvedValue]:
        """Every property visible at `target` with its winning scope."""
        ref = as_scope_ref(target)
        resolved: dict[str, ResolvedValue] = {}
        for scope, source_id, values in self.scope_chain(ref):
            for name, value in values.items():
                if name not in resolved:
                    resolved[name] = ResolvedValue(value, scope, source_id, ref.path or "")
        return resolved

    def resolve_network(self) -> dict[str, dict[str, ResolvedValue]]:
        """Resolved property maps for every block, keyed by block path."""
        return {str(path): self.resolve_block(path) for path in self.graph.block_paths()}

    # ── Override / clear ─────────────────────────────

    def set_value(self, target: Target, prop: str, value: PropertyValue) -> Transaction:
        """Create or replace the entry for `prop` at exactly `target`'s scope."""
        if value is None:
            raise ValueError(f"Cannot set {prop!r} to None; clear it to inherit instead")
        ref = as_scope_ref(target)
        if ref.scope == Scope.BLOCK:
            if prop in RESERVED_BLOCK_KEYS:
                raise ValueError(f"{prop!r} is a block field, not a property")
            path = ref.block_path
            return self.graph.update_block(path.branch_id, path.index, {prop: value})
        if ref.scope == Scope.GLOBAL:
            return self.graph.set_default(prop, value)
        self._scope_node(ref)
        return self.graph.set_property(ref.path, prop, value)

    def clear_value(self, target: Target, prop: str) -> bool:
        """
        Remove the entry for `prop` at `target`'s scope only. Returns False
        (and changes nothing) when no entry exists there.
        """
        ref = as_scope_ref(target)
        if ref.scope == Scope.BLOCK:
            path = ref.block_path
            block = self.graph.get_block(path.branch_id, path.index)
            if prop not in block.properties:
                return False
            self.graph.update_block(path.branch_id, path.index, {prop: None})
            return True
        if ref.scope == Scope.GLOBAL:
            return self.graph.clear_default(prop) is not None
        self._scope_node(ref)
        return self.graph.clear_property(ref.path, prop) is not None

    def _scope_node(self, ref: ScopeRef) -> Node:
        node = self.graph.get_node(ref.path)
        wanted = "is_branch" if ref.scope == Scope.BRANCH else "is_group"
        if node is None or not getattr(node, wanted):
            raise InvalidNode(f"No {ref.scope.value} node {ref.path!r}")
        return node

    # ── Scope walking ────────────────────────────────

    def blocks_in_scope(self, target: Target) -> list[tuple[BlockPath, Block]]:
        """Every block an edit at `target` reaches, in render order."""
        ref = as_scope_ref(target)
        if ref.scope == Scope.BLOCK:
            path = ref.block_path
            return [(path, self.graph.get_block(path.branch_id, path.index))]
        if ref.scope == Scope.GLOBAL:
            branches = topological_order(self.graph.branches())
        elif ref.scope == Scope.BRANCH:
            branches = [self._scope_node(ref)]
        else:
            self._scope_node(ref)
            branches = self.graph.branches_in_group(ref.path)
        return [
            (BlockPath(branch.id, i), block)
            for branch in branches
            for i, block in enumerate(branch.data.blocks)
        ]

    def affected_block_paths(self, target: Target) -> list[BlockPath]:
        return [path for path, _ in self.blocks_in_scope(target)]

    # ── Aggregation ──────────────────────────────────

    def _describe(self, block_type: str) -> BlockSchema:
        if self.registry is None:
            raise ValueError("Aggregation needs a schema registry")
        return self.registry.describe(block_type)

    def aggregate(self, prop: str, target: Target) -> PropertyAggregate:
        """Which block types and paths an edit of `prop` at `target` affects."""
        result = PropertyAggregate(prop)
        unknown_types: set[str] = set()
        for path, block in self.blocks_in_scope(target):
            try:
                schema = self._describe(block.type)
            except UnknownBlockType:
                unknown_types.add(block.type)
                _record_unknown(result, path, block.type)
                continue
            if schema.references(prop):
                _record(result, path, block.type, schema.is_required(prop))
        if unknown_types:
            logger.warning(f"Aggregating {prop!r}: unregistered block types {sorted(unknown_types)}")
        logger.debug(result.summary())
        return result

    def aggregate_scope(self, target: Target) -> dict[str, PropertyAggregate]:
        """Aggregates for every property declared by a block type in scope."""
        aggregates: dict[str, PropertyAggregate] = {}
        unknown: list[tuple[BlockPath, str]] = []
        for path, block in self.blocks_in_scope(target):
            try:
                schema = self._describe(block.type)
            except UnknownBlockType:
                unknown.append((path, block.type))
                continue
            for name, spec in schema.properties.items():
                agg = aggregates.setdefault(name, PropertyAggregate(name))
                _record(agg, path, block.type, spec.required)
        for agg in aggregates.values():
            for path, block_type in unknown:
                _record_unknown(agg, path, block_type)
        if unknown:
            logger.warning(f"{len(unknown)} block(s) in {as_scope_ref(target)} have unregistered types")
        return aggregates


def _record(agg: PropertyAggregate, path: BlockPath, block_type: str, required: bool) -> None:
    if block_type not in agg.affected_block_types:
        agg.affected_block_types.append(block_type)
    if required and block_type not in agg.required_in_block_types:
        agg.required_in_block_types.append(block_type)
    agg.affected_block_paths.append(path)
    agg.impacts.append(BlockImpact(path, block_type, "required" if required else "optional"))


def _record_unknown(agg: PropertyAggregate, path: BlockPath, block_type: str) -> None:
    agg.unknown_block_paths.append(path)
    agg.impacts.append(BlockImpact(path, block_type, "unknown"))
