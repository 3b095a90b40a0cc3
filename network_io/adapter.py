"""
Process Network — Serialization Adapter
=========================================
Converts between the in-memory graph and the flat persisted form:

  - one record per node, keyed by the node id
  - a Branch's outgoing edges embedded in its record as
    "outgoing": [{"target": ..., "weight": ...}], omitted when empty
  - blocks as "block": [{"type": ..., "quantity"?: ..., <properties>}],
    quantity omitted when it is 1
  - extra properties written as sibling keys of the record
  - parentId / width / height always written, None meaning "absent"
  - a separate config record: {"properties": {<global defaults>}}

Selection is session state and is not persisted. Edges have no identity in
the flat form; decoded edges get "<source>_<target>" ids.
"""

from __future__ import annotations
from typing import Iterable, Optional
from loguru import logger

from network_graph.errors import InvalidRecord
from network_graph.graph import NetworkGraph, NetworkSnapshot
from network_graph.ontology import (
    Block, BranchData, Edge, GeographicData, GroupData, ImageData, Node,
    NodeKind, Position, check_property_value,
)
from network_graph.ordering import topological_order

# Keys with a fixed meaning in a node record; extras may not use them
RESERVED_KEYS = frozenset({
    "id", "type", "label", "parentId", "width", "height", "position",
    "outgoing", "block", "path", "zIndex",
})
RESERVED_BLOCK_KEYS = frozenset({"type", "quantity"})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ENCODE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def encode_block(block: Block) -> dict:
    record = {"type": block.type}
    if block.quantity != 1:
        record["quantity"] = block.quantity
    for key, value in block.properties.items():
        if key in RESERVED_BLOCK_KEYS:
            raise InvalidRecord(f"Block property {key!r} collides with a block field")
        record[key] = _property(block.type, key, value)
    return record


def encode_node(node: Node, outgoing: Optional[Iterable[Edge]] = None) -> dict:
    """One flat record for `node`; `outgoing` only matters for branches."""
    record = {
        "id": node.id,
        "type": node.kind.value,
        "parentId": node.parent_id,
        "width": node.width,
        "height": node.height,
        "position": {"x": node.position.x, "y": node.position.y},
    }
    if node.label:
        record["label"] = node.label
    if node.z_index is not None:
        record["zIndex"] = node.z_index

    if node.is_branch:
        targets = [{"target": e.target, "weight": e.weight} for e in outgoing or []]
        if targets:
            record["outgoing"] = targets
        if node.data.blocks:
            record["block"] = [encode_block(b) for b in node.data.blocks]
    elif node.kind == NodeKind.IMAGE:
        record["path"] = node.data.path

    for key, value in (node.properties or {}).items():
        if key in RESERVED_KEYS:
            raise InvalidRecord(f"Property {key!r} on {node.id!r} collides with a record key")
        record[key] = _property(node.id, key, value)
    return record


def _property(where: str, name: str, value):
    try:
        return check_property_value(name, value)
    except ValueError as exc:
        raise InvalidRecord(f"{where}: {exc}") from None


def encode_network(graph: NetworkGraph) -> tuple[list[dict], dict]:
    """All node records in parent-before-child order, plus the config record."""
    by_source: dict[str, list[Edge]] = {}
    for edge in graph.all_edges():
        by_source.setdefault(edge.source, []).append(edge)
    records = [encode_node(node, by_source.get(node.id)) for node in graph.ordered_nodes(by_depth=False)]
    config = {"properties": graph.default_values()}
    logger.debug(f"Encoded {len(records)} records, {len(config['properties'])} defaults")
    return records, config


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  DECODE
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def decode_block(raw: dict, where: str) -> Block:
    if not isinstance(raw, dict) or "type" not in raw:
        raise InvalidRecord(f"{where}: block needs a type, got {raw!r}")
    props = {k: _property(where, k, v) for k, v in raw.items() if k not in RESERVED_BLOCK_KEYS}
    try:
        return Block(raw["type"], raw.get("quantity", 1), props)
    except ValueError as exc:
        raise InvalidRecord(f"{where}: {exc}") from exc


def _number(record: dict, key: str) -> Optional[float]:
    value = record.get(key)
    if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
        raise InvalidRecord(f"{record.get('id')!r}: {key} must be a number, got {value!r}")
    return value


def decode_record(record: dict, record_id: Optional[str] = None) -> Node:
    """
    Build a Node from one flat record. `record_id` overrides the record's
    own "id" (the file collaborator names records after their files).
    """
    if not isinstance(record, dict):
        raise InvalidRecord(f"Record must be an object, got {type(record).__name__}")
    node_id = record_id or record.get("id")
    if not node_id:
        raise InvalidRecord("Record has no id")
    try:
        kind = NodeKind(record.get("type"))
    except ValueError:
        raise InvalidRecord(f"{node_id!r}: unknown node type {record.get('type')!r}") from None

    pos = record.get("position") or {}
    label = record.get("label", "")
    extras = {k: _property(node_id, k, v) for k, v in record.items() if k not in RESERVED_KEYS}

    if kind == NodeKind.BRANCH:
        blocks = [decode_block(b, f"{node_id}/block[{i}]") for i, b in enumerate(record.get("block", []))]
        data = BranchData(label, blocks, extras)
    elif kind == NodeKind.GROUP:
        data = GroupData(label, extras)
    elif kind == NodeKind.IMAGE:
        data = ImageData(record.get("path", ""), label)
    else:
        data = GeographicData(label, extras)

    return Node(
        id=node_id, kind=kind,
        position=Position(pos.get("x", 0.0), pos.get("y", 0.0)),
        data=data,
        parent_id=record.get("parentId") or None,
        width=_number(record, "width"),
        height=_number(record, "height"),
        z_index=record.get("zIndex"),
    )


def decode_edges(record: dict) -> list[Edge]:
    edges = []
    for item in record.get("outgoing", []):
        if not isinstance(item, dict) or "target" not in item:
            raise InvalidRecord(f"{record.get('id')!r}: malformed outgoing entry {item!r}")
        try:
            edges.append(Edge(record["id"], item["target"], item.get("weight", 1.0),
                              id=f"{record['id']}_{item['target']}"))
        except ValueError as exc:
            raise InvalidRecord(f"{record['id']!r}: {exc}") from exc
    return edges


def decode_network(records: Iterable[dict], config: Optional[dict] = None) -> NetworkSnapshot:
    """
    Decode node records plus the config record. Duplicate ids are rejected;
    dangling, self and non-branch edges are dropped with a warning.
    """
    nodes: list[Node] = []
    raw_edges: list[Edge] = []
    seen: set[str] = set()
    for record in records:
        node = decode_record(record)
        if node.id in seen:
            raise InvalidRecord(f"Duplicate record id {node.id!r}")
        seen.add(node.id)
        nodes.append(node)
        if node.is_branch:
            raw_edges.extend(decode_edges({**record, "id": node.id}))

    kinds = {n.id: n.kind for n in nodes}
    edges: list[Edge] = []
    ids: set[str] = set()
    for edge in raw_edges:
        if edge.source == edge.target or kinds.get(edge.target) != NodeKind.BRANCH:
            logger.warning(f"Dropping edge {edge.source} -> {edge.target}: target is not another branch")
            continue
        base, n = edge.id, 1
        while edge.id in ids:
            n += 1
            edge.id = f"{base}_{n}"
        ids.add(edge.id)
        edges.append(edge)

    defaults = {k: _property("config", k, v)
                for k, v in ((config or {}).get("properties") or {}).items()}
    return NetworkSnapshot(nodes=topological_order(nodes), edges=edges, defaults=defaults)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  OPERATIONS PAYLOAD
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def network_data(graph: NetworkGraph) -> dict:
    """The in-memory network as sent to costing/snapshot operations."""
    branches = graph.branches()
    groups = [
        {
            "id": group.id,
            "label": group.label or None,
            "branchIds": [b.id for b in branches if b.parent_id == group.id],
        }
        for group in graph.groups()
    ]
    return {
        "type": "data",
        "network": {
            "groups": groups,
            "branches": [
                {
                    "id": b.id,
                    "label": b.label or None,
                    "parentId": b.parent_id,
                    "blocks": [{"type": blk.type, "quantity": blk.quantity, **blk.properties}
                               for blk in b.data.blocks],
                }
                for b in branches
            ],
        },
    }
