"""
Process Network — Graph Model
===============================
Nodes, edges and global defaults held in three collections of one
CollectionStore, plus every edit operation the drawing surface and the
file loader need:

  - Node edits: add / update / remove (with orphan or cascade policy)
  - Connections: connect / disconnect between branches
  - Block edits: add / update / remove / move inside a branch
  - Property maps: branch and group extras, network-wide defaults
  - Reload: delete-all-then-insert-all in one batch

Every operation validates first and mutates second, so a rejected edit
leaves the graph unchanged. Multi-record edits run inside `store.batch()`
and observers see them as one change.
"""

from __future__ import annotations
import copy
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional, Union
from loguru import logger

from .collection import CollectionStore, LiveQuery, LiveJoin, Transaction
from .errors import InvalidConnection, InvalidNode, IndexOutOfRange
from .ontology import (
    Node, Edge, Block, GlobalDefault, NodeKind, OnParentDeleted, Position,
    BlockPath, PropertyValue, PROPERTY_BEARING_KINDS, _uid, check_property_value,
    node_to_dict, node_from_dict, edge_to_dict, edge_from_dict,
    default_to_dict, default_from_dict,
)
from .ordering import topological_order


NODES = "flow:nodes"
EDGES = "flow:edges"
DEFAULTS = "flow:defaults"

# Node attributes a patch may set; `id` and `kind` are fixed at creation
_PATCHABLE = {"position", "parent_id", "width", "height", "selected", "z_index", "data"}


@dataclass
class NetworkSnapshot:
    """A whole network as plain model objects (what a reload inserts)."""
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    defaults: dict = field(default_factory=dict)


class NetworkGraph:
    """
    In-memory process network.

    Stores nodes, edges and global defaults, supports:
    - Edits with invariant checks (parents, edge endpoints, block indexes)
    - Render/export order (parent before child, layered by depth)
    - Neighbourhood lookups (outgoing, incoming, children, group members)
    - Live selection queries for the interaction layer
    """

    def __init__(self, store: Optional[CollectionStore] = None,
                 on_parent_deleted: Union[OnParentDeleted, str] = OnParentDeleted.ORPHAN):
        self.store = store or CollectionStore()
        self.on_parent_deleted = OnParentDeleted(on_parent_deleted)
        self.nodes = self.store.collection(NODES, lambda n: n.id, node_to_dict, node_from_dict)
        self.edges = self.store.collection(EDGES, lambda e: e.id, edge_to_dict, edge_from_dict)
        self.defaults = self.store.collection(DEFAULTS, lambda d: d.name, default_to_dict, default_from_dict)

    # ── Reads ────────────────────────────────────────

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return self.nodes.has(node_id)

    def get_edge(self, edge_id: str) -> Optional[Edge]:
        return self.edges.get(edge_id)

    def all_nodes(self) -> list[Node]:
        return self.nodes.values()

    def all_edges(self) -> list[Edge]:
        return self.edges.values()

    def ordered_nodes(self, by_depth: bool = True) -> list[Node]:
        """Nodes in render/export order."""
        return topological_order(self.nodes.values(), by_depth=by_depth)

    def branches(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.is_branch]

    def groups(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.is_group]

    def get_branch(self, branch_id: str) -> Node:
        node = self.nodes.get(branch_id)
        if node is None or not node.is_branch:
            raise KeyError(f"No branch {branch_id!r}")
        return node

    def get_block(self, branch_id: str, index: int) -> Block:
        blocks = self.get_branch(branch_id).data.blocks
        if not 0 <= index < len(blocks):
            raise IndexOutOfRange(branch_id, index, len(blocks))
        return blocks[index]

    def outgoing(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges.values() if e.source == node_id]

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges.values() if e.target == node_id]

    def children_of(self, node_id: str) -> list[Node]:
        return [n for n in self.nodes.values() if n.parent_id == node_id]

    def descendants_of(self, node_id: str) -> list[Node]:
        found: list[Node] = []
        seen = {node_id}
        frontier = [node_id]
        while frontier:
            parent = frontier.pop(0)
            for child in self.children_of(parent):
                if child.id not in seen:
                    seen.add(child.id)
                    found.append(child)
                    frontier.append(child.id)
        return found

    def branches_in_group(self, group_id: str, recursive: bool = True) -> list[Node]:
        members = self.descendants_of(group_id) if recursive else self.children_of(group_id)
        return [n for n in members if n.is_branch]

    def ancestor_groups(self, node_id: str) -> list[Node]:
        """Containing groups, nearest first. Stops on a parent cycle."""
        result: list[Node] = []
        seen = {node_id}
        node = self.nodes.get(node_id)
        while node is not None and node.parent_id and node.parent_id not in seen:
            seen.add(node.parent_id)
            node = self.nodes.get(node.parent_id)
            if node is not None and node.is_group:
                result.append(node)
        return result

    def default_values(self) -> dict:
        return {d.name: d.value for d in self.defaults.values()}

    # ── Node edits ───────────────────────────────────

    def add_node(self, node: Node) -> Transaction:
        if self.nodes.has(node.id):
            raise InvalidNode(f"Node {node.id!r} already exists")
        self._check_parent(node.id, node.parent_id)
        logger.debug(f"Adding {node.kind.value} node {node.id}")
        return self.nodes.insert(node)

    def update_node(self, node_id: str, patch: Union[dict, Callable[[Node], Optional[Node]]]) -> Transaction:
        """
        Apply a patch to a node. `patch` is either a dict of attributes
        (position, parent_id, width, height, selected, z_index, data) or a
        callable editing a draft copy of the node.
        """
        current = self.nodes.get(node_id)
        if current is None:
            raise InvalidNode(f"No node {node_id!r}")
        draft = copy.deepcopy(current)
        if callable(patch):
            result = patch(draft)
            draft = draft if result is None else result
        else:
            unknown = set(patch) - _PATCHABLE
            if unknown:
                raise InvalidNode(f"Cannot patch {sorted(unknown)} on node {node_id!r}")
            for name, value in patch.items():
                if name == "position" and isinstance(value, dict):
                    value = Position(**value)
                setattr(draft, name, value)
        if draft.id != node_id or draft.kind != current.kind:
            raise InvalidNode(f"Node {node_id!r}: id and kind are immutable")
        draft = replace(draft)    # re-run kind/data validation
        if draft.parent_id != current.parent_id:
            self._check_parent(node_id, draft.parent_id)
        return self.nodes.update(node_id, lambda _: draft)

    def remove_node(self, node_id: str,
                    on_parent_deleted: Optional[Union[OnParentDeleted, str]] = None) -> Transaction:
        """
        Delete a node with its edges. Children are promoted to top level
        (`orphan`) or deleted recursively (`cascade`). One batch, so
        observers never see a half-deleted node.
        """
        if not self.nodes.has(node_id):
            raise InvalidNode(f"No node {node_id!r}")
        policy = OnParentDeleted(on_parent_deleted or self.on_parent_deleted)

        if policy == OnParentDeleted.CASCADE:
            doomed = [node_id] + [n.id for n in self.descendants_of(node_id)]
            orphans: list[Node] = []
        else:
            doomed = [node_id]
            orphans = self.children_of(node_id)
        doomed_set = set(doomed)
        dead_edges = [e.id for e in self.edges.values()
                      if e.source in doomed_set or e.target in doomed_set]

        with self.store.batch() as tx:
            if dead_edges:
                self.edges.delete(dead_edges)
            for child in orphans:
                self.nodes.update(child.id, lambda draft: self._detach(draft))
            self.nodes.delete(doomed)
        logger.debug(f"Removed {len(doomed)} node(s) and {len(dead_edges)} edge(s) "
                     f"starting at {node_id} ({policy.value})")
        return tx

    def _detach(self, draft: Node) -> Node:
        # Children positions are parent-relative; keep them on the canvas
        parent = self.nodes.get(draft.parent_id)
        if parent is not None:
            draft.position = Position(draft.position.x + parent.position.x,
                                      draft.position.y + parent.position.y)
        draft.parent_id = None
        return draft

    def _check_parent(self, node_id: str, parent_id: Optional[str]) -> None:
        if parent_id is None:
            return
        parent = self.nodes.get(parent_id)
        if parent is None:
            raise InvalidNode(f"Parent {parent_id!r} of {node_id!r} does not exist")
        if not parent.is_group:
            raise InvalidNode(f"Parent {parent_id!r} of {node_id!r} is a {parent.kind.value}, not a group")
        if parent_id == node_id:
            raise InvalidNode(f"Node {node_id!r} cannot be its own parent")
        seen = {node_id}
        current = parent
        while current is not None and current.parent_id:
            if current.parent_id in seen or current.parent_id == node_id:
                raise InvalidNode(f"Parenting {node_id!r} under {parent_id!r} creates a cycle")
            seen.add(current.id)
            current = self.nodes.get(current.parent_id)

    # ── Connections ──────────────────────────────────

    def can_connect(self, source_id: str, target_id: str) -> bool:
        try:
            self._check_connection(source_id, target_id)
        except InvalidConnection:
            return False
        return True

    def _check_connection(self, source_id: str, target_id: str) -> None:
        if source_id == target_id:
            raise InvalidConnection(f"Cannot connect {source_id!r} to itself")
        for end in (source_id, target_id):
            node = self.nodes.get(end)
            if node is None:
                raise InvalidConnection(f"Endpoint {end!r} does not exist")
            if not node.is_branch:
                raise InvalidConnection(f"Endpoint {end!r} is a {node.kind.value}, not a branch")

    def connect(self, source_id: str, target_id: str, weight: float = 1.0) -> Edge:
        self._check_connection(source_id, target_id)
        edge = Edge(source=source_id, target=target_id, weight=weight, id=f"edge-{_uid()}")
        self.edges.insert(edge)
        logger.debug(f"Connected {source_id} -> {target_id} (weight {weight})")
        return edge

    def disconnect(self, edge_id: str) -> Optional[Transaction]:
        """Remove an edge. Absent edges are ignored."""
        if not self.edges.has(edge_id):
            return None
        return self.edges.delete(edge_id)

    def set_edge_weight(self, edge_id: str, weight: float) -> Transaction:
        if not self.edges.has(edge_id):
            raise InvalidConnection(f"No edge {edge_id!r}")
        updated = replace(self.edges.get(edge_id), weight=weight)
        return self.edges.update(edge_id, lambda _: updated)

    # ── Block edits ──────────────────────────────────

    def _edit_blocks(self, branch_id: str, edit: Callable[[list[Block]], list[Block]]) -> Transaction:
        branch = self.get_branch(branch_id)
        blocks = edit(list(branch.data.blocks))

        def apply(draft: Node):
            draft.data.blocks = blocks
        return self.update_node(branch_id, apply)

    def _check_index(self, branch_id: str, index: int, size: int) -> None:
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < size:
            raise IndexOutOfRange(branch_id, index, size)

    def add_block(self, branch_id: str, index: Optional[int], block: Block) -> Transaction:
        """Insert a block at `index` (0..len); None appends."""
        size = len(self.get_branch(branch_id).data.blocks)
        position = size if index is None else index
        self._check_index(branch_id, position, size + 1)
        return self._edit_blocks(branch_id, lambda blocks: blocks[:position] + [block] + blocks[position:])

    def update_block(self, branch_id: str, index: int,
                     patch: Union[dict, Callable[[Block], Optional[Block]]]) -> Transaction:
        """
        Patch a block. Dict keys `type` and `quantity` set those fields; any
        other key sets a property, and a None value removes that property.
        """
        blocks = self.get_branch(branch_id).data.blocks
        self._check_index(branch_id, index, len(blocks))
        draft = copy.deepcopy(blocks[index])
        if callable(patch):
            result = patch(draft)
            draft = draft if result is None else result
        else:
            for name, value in patch.items():
                if name in ("type", "quantity"):
                    setattr(draft, name, 1 if name == "quantity" and value is None else value)
                elif value is None:
                    draft.properties.pop(name, None)
                else:
                    draft.properties[name] = value
        for name, value in draft.properties.items():
            self._check_value(f"{branch_id}/blocks/{index}", name, value)
        draft = Block(draft.type, draft.quantity, dict(draft.properties))
        return self._edit_blocks(branch_id, lambda bl: bl[:index] + [draft] + bl[index + 1:])

    def remove_block(self, branch_id: str, index: int) -> Transaction:
        self._check_index(branch_id, index, len(self.get_branch(branch_id).data.blocks))
        return self._edit_blocks(branch_id, lambda blocks: blocks[:index] + blocks[index + 1:])

    def move_block(self, branch_id: str, from_index: int, to_index: int) -> Transaction:
        size = len(self.get_branch(branch_id).data.blocks)
        self._check_index(branch_id, from_index, size)
        self._check_index(branch_id, to_index, size)

        def move(blocks: list[Block]) -> list[Block]:
            block = blocks.pop(from_index)
            blocks.insert(to_index, block)
            return blocks
        return self._edit_blocks(branch_id, move)

    def block_paths(self, branch_ids: Optional[Iterable[str]] = None) -> list[BlockPath]:
        ids = branch_ids if branch_ids is not None else [n.id for n in topological_order(self.branches())]
        return [BlockPath(bid, i) for bid in ids for i in range(len(self.get_branch(bid).data.blocks))]

    # ── Property maps ────────────────────────────────

    def set_property(self, node_id: str, name: str, value: PropertyValue) -> Transaction:
        node = self.nodes.get(node_id)
        if node is None or node.kind not in PROPERTY_BEARING_KINDS:
            raise InvalidNode(f"Node {node_id!r} carries no property map")
        self._check_value(node_id, name, value)

        def apply(draft: Node):
            draft.data.properties[name] = value
        return self.update_node(node_id, apply)

    @staticmethod
    def _check_value(owner: str, name: str, value) -> None:
        try:
            check_property_value(name, value)
        except ValueError as exc:
            raise InvalidNode(f"{owner}: {exc}") from None

    def clear_property(self, node_id: str, name: str) -> Optional[Transaction]:
        """Drop a node-level property. Returns None when it was not set."""
        node = self.nodes.get(node_id)
        if node is None or node.kind not in PROPERTY_BEARING_KINDS:
            raise InvalidNode(f"Node {node_id!r} carries no property map")
        if name not in node.data.properties:
            return None

        def apply(draft: Node):
            del draft.data.properties[name]
        return self.update_node(node_id, apply)

    def set_label(self, node_id: str, label: str) -> Transaction:
        def apply(draft: Node):
            draft.data.label = label
        return self.update_node(node_id, apply)

    def set_default(self, name: str, value: PropertyValue) -> Transaction:
        record = GlobalDefault(name, check_property_value(name, value))
        if self.defaults.has(name):
            return self.defaults.update(name, lambda _: record)
        return self.defaults.insert(record)

    def clear_default(self, name: str) -> Optional[Transaction]:
        if not self.defaults.has(name):
            return None
        return self.defaults.delete(name)

    # ── Selection (queryable UI state) ───────────────

    def select(self, node_ids: Iterable[str], selected: bool = True) -> Transaction:
        with self.store.batch() as tx:
            for node_id in node_ids:
                self.update_node(node_id, {"selected": selected})
        return tx

    def clear_selection(self) -> Transaction:
        return self.select([n.id for n in self.nodes.values() if n.selected], False)

    def selected_nodes(self) -> LiveQuery:
        return self.nodes.query(lambda n: n.selected)

    def selected_branches(self) -> LiveQuery:
        return self.nodes.query(lambda n: n.is_branch and n.selected)

    def selected_groups(self) -> LiveQuery:
        return self.nodes.query(lambda n: n.is_group and n.selected)

    def selected_geography(self) -> LiveQuery:
        return self.nodes.query(lambda n: n.is_geographic and n.selected)

    def selected_children(self) -> LiveJoin:
        return self.nodes.join(
            self.nodes,
            on=lambda child, parent: child.parent_id == parent.id,
            where=lambda child, parent: parent.selected,
            select=lambda child, parent: child,
        )

    def find_by_id(self, node_id: str) -> LiveQuery:
        return self.nodes.find_one(lambda n: n.id == node_id)

    def edges_by_source(self, source_id: str) -> LiveQuery:
        return self.edges.query(lambda e: e.source == source_id)

    def edges_by_target(self, target_id: str) -> LiveQuery:
        return self.edges.query(lambda e: e.target == target_id)

    # ── Bulk load / reconcile ────────────────────────

    def valid_edges(self, nodes: Iterable[Node], edges: Iterable[Edge]) -> list[Edge]:
        """Edges whose endpoints are distinct branches among `nodes`."""
        kinds = {n.id: n.kind for n in nodes}
        kept = []
        for edge in edges:
            if edge.source == edge.target or kinds.get(edge.source) != NodeKind.BRANCH \
                    or kinds.get(edge.target) != NodeKind.BRANCH:
                logger.warning(f"Dropping invalid edge {edge.id} ({edge.source} -> {edge.target})")
                continue
            kept.append(edge)
        return kept

    def clear(self) -> Transaction:
        with self.store.batch() as tx:
            for coll in (self.edges, self.nodes, self.defaults):
                if len(coll):
                    coll.delete(coll.keys())
        return tx

    def load(self, snapshot: NetworkSnapshot) -> Transaction:
        """
        Replace the whole network (delete all, then insert all). Not
        resumable: a failed load must be retried from the start.
        """
        ordered = topological_order(snapshot.nodes)
        position = {n.id: i for i, n in enumerate(ordered)}
        kinds = {n.id: n.kind for n in ordered}
        nodes = []
        for node in ordered:
            parent_id = node.parent_id
            if parent_id is not None and (position.get(parent_id, len(ordered)) > position[node.id]
                                          or kinds[parent_id] != NodeKind.GROUP):
                logger.warning(f"Node {node.id} has an unusable parent {parent_id!r}; detaching")
                node = replace(node, parent_id=None)
            nodes.append(node)
        edges = self.valid_edges(nodes, snapshot.edges)
        with self.store.batch() as tx:
            self.clear()
            if nodes:
                self.nodes.insert(nodes)
            if edges:
                self.edges.insert(edges)
            defaults = [GlobalDefault(k, v) for k, v in snapshot.defaults.items()]
            if defaults:
                self.defaults.insert(defaults)
        logger.info(f"Loaded network: {len(nodes)} nodes, {len(edges)} edges, {len(defaults)} defaults")
        return tx

    def snapshot(self) -> NetworkSnapshot:
        return NetworkSnapshot(
            nodes=self.ordered_nodes(by_depth=False),
            edges=self.edges.values(),
            defaults=self.default_values(),
        )

    def write_nodes(self, updated: list[Node]) -> Transaction:
        """
        Reconcile the node collection to `updated` (delete missing, upsert
        rest). Parents must be groups within `updated`; edges touching a
        deleted node go in the same batch.
        """
        by_id = {n.id: n for n in updated}
        if len(by_id) != len(updated):
            raise InvalidNode("Duplicate node ids in reconcile")
        for node in updated:
            seen = {node.id}
            parent_id = node.parent_id
            while parent_id is not None:
                parent = by_id.get(parent_id)
                if parent is None:
                    raise InvalidNode(f"Parent {parent_id!r} of {node.id!r} does not exist")
                if not parent.is_group:
                    raise InvalidNode(f"Parent {parent_id!r} of {node.id!r} is a {parent.kind.value}, not a group")
                if parent_id in seen:
                    raise InvalidNode(f"Parenting {node.id!r} under {node.parent_id!r} creates a cycle")
                seen.add(parent_id)
                parent_id = parent.parent_id

        stale = [k for k in self.nodes.keys() if k not in by_id]
        survivors = {e.id for e in self.valid_edges(updated, self.edges.values())}
        dead_edges = [k for k in self.edges.keys() if k not in survivors]
        with self.store.batch() as tx:
            if dead_edges:
                self.edges.delete(dead_edges)
            if stale:
                self.nodes.delete(stale)
            for node in topological_order(updated):
                if self.nodes.has(node.id):
                    self.nodes.update(node.id, lambda _, n=node: n)
                else:
                    self.nodes.insert(node)
        logger.debug(f"Reconciled nodes: {len(updated)} kept, {len(stale)} removed, "
                     f"{len(dead_edges)} edge(s) dropped")
        return tx

    def write_edges(self, updated: list[Edge]) -> Transaction:
        """Reconcile the edge collection to `updated`; every edge must join two branches."""
        for edge in updated:
            self._check_connection(edge.source, edge.target)
        keep = {e.id for e in updated}
        with self.store.batch() as tx:
            stale = [k for k in self.edges.keys() if k not in keep]
            if stale:
                self.edges.delete(stale)
            for edge in updated:
                if self.edges.has(edge.id):
                    self.edges.update(edge.id, lambda _, e=edge: e)
                else:
                    self.edges.insert(edge)
        return tx

    # ── Statistics ───────────────────────────────────

    def stats(self) -> dict:
        branches = self.branches()
        return {
            "branches": len(branches),
            "groups": len(self.groups()),
            "geographic": sum(1 for n in self.nodes.values() if n.is_geographic),
            "images": sum(1 for n in self.nodes.values() if n.kind == NodeKind.IMAGE),
            "edges": len(self.edges),
            "blocks": sum(len(b.data.blocks) for b in branches),
            "defaults": len(self.defaults),
            "total_nodes": len(self.nodes),
        }
