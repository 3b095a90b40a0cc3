"""
Process Network — Ontology & Schema
=====================================
Defines the data model for a process network:

NODE KINDS:
  branch → labeledGroup → geographicAnchor → geographicWindow → image

  A branch is a linear equipment segment owning an ordered list of blocks.
  A labeled group organizes branches (and other nodes) under one parent and
  carries group-level property defaults. Geographic nodes and images are
  reference backgrounds for the drawing surface.

EDGES:
  Directed, weighted connections between two branches. The weight is the
  flow-split ratio of the source branch.

SCOPES:
  global → group → branch → block

  A property may be defined at any subset of these levels. The narrowest
  defined level wins when a block's effective value is resolved.

Property maps are ordered dicts of plain values (number, string, boolean).
Strings that look like "100 bar" or "20*MW" are unit expressions; they are
kept verbatim and only the external evaluator interprets them.
"""

from __future__ import annotations
import re
import uuid
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Union


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ENUMERATIONS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class NodeKind(str, Enum):
    """Kinds of nodes on the network canvas."""
    BRANCH = "branch"
    GROUP = "labeledGroup"
    GEOGRAPHIC_ANCHOR = "geographicAnchor"
    GEOGRAPHIC_WINDOW = "geographicWindow"
    IMAGE = "image"


class Scope(str, Enum):
    """Levels at which a property value can be defined, outermost first."""
    GLOBAL = "global"
    GROUP = "group"
    BRANCH = "branch"
    BLOCK = "block"


class OnParentDeleted(str, Enum):
    """What happens to the children of a deleted node."""
    ORPHAN = "orphan"      # children are promoted to top level
    CASCADE = "cascade"    # children are deleted with their parent


class PropertyKind(str, Enum):
    """Tags of the value union stored in property maps."""
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    EXPRESSION = "expression"   # unit-bearing string, opaque to the core


class ValueKind(str, Enum):
    """Value kinds a schema registry can declare for a property."""
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    ENUM = "enum"


# Render depth per node kind: geographic backgrounds below reference
# images below everything else.
NODE_DEPTH = {
    NodeKind.GEOGRAPHIC_WINDOW: -2,
    NodeKind.GEOGRAPHIC_ANCHOR: -2,
    NodeKind.IMAGE: -1,
    NodeKind.BRANCH: 0,
    NodeKind.GROUP: 0,
}

# Kinds whose data carries an open-ended extra-property map
PROPERTY_BEARING_KINDS = (
    NodeKind.BRANCH, NodeKind.GROUP,
    NodeKind.GEOGRAPHIC_ANCHOR, NodeKind.GEOGRAPHIC_WINDOW,
)

PropertyValue = Union[bool, int, float, str]

_EXPRESSION_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*[*/]?\s*[A-Za-z°%µ]")


def property_kind(value: PropertyValue) -> PropertyKind:
    """Classify a raw property value. Units are never parsed here."""
    if isinstance(value, bool):
        return PropertyKind.BOOLEAN
    if isinstance(value, (int, float)):
        return PropertyKind.NUMBER
    if isinstance(value, str):
        if _EXPRESSION_RE.match(value):
            return PropertyKind.EXPRESSION
        return PropertyKind.STRING
    raise TypeError(f"Unsupported property value {value!r} ({type(value).__name__})")


def check_property_value(name: str, value) -> PropertyValue:
    """Accept only number / string / boolean / expression values."""
    if value is None:
        raise ValueError(f"Property {name!r} has no value; clear it to inherit instead")
    try:
        property_kind(value)
    except TypeError as exc:
        raise ValueError(f"Property {name!r}: {exc}") from None
    return value


def _uid() -> str:
    return uuid.uuid4().hex[:12]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  NODES, BLOCKS, EDGES
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass
class Block:
    """
    One equipment item inside a branch.

    Attributes:
        type: Symbolic equipment class (e.g. "Pipe", "Compressor")
        quantity: Number of identical instances, always >= 1
        properties: Named property values, in insertion order
                    Example: {"length": "12 km", "diameter": "0.5 m"}
    """
    type: str
    quantity: int = 1
    properties: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.quantity is None:
            self.quantity = 1
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Block quantity must be an integer, got {self.quantity!r}")
        if self.quantity < 1:
            raise ValueError(f"Block quantity must be >= 1, got {self.quantity}")
        if not self.type:
            raise ValueError("Block type is required")


@dataclass
class BranchData:
    """A linear segment: ordered blocks plus branch-level property defaults."""
    label: str = ""
    blocks: list[Block] = field(default_factory=list)
    properties: dict = field(default_factory=dict)


@dataclass
class GroupData:
    """Group-level property defaults for every branch the group contains."""
    label: str = ""
    properties: dict = field(default_factory=dict)


@dataclass
class GeographicData:
    label: str = ""
    properties: dict = field(default_factory=dict)


@dataclass
class ImageData:
    path: str = ""
    label: str = ""


NodeData = Union[BranchData, GroupData, GeographicData, ImageData]

_DATA_TYPES = {
    NodeKind.BRANCH: BranchData,
    NodeKind.GROUP: GroupData,
    NodeKind.GEOGRAPHIC_ANCHOR: GeographicData,
    NodeKind.GEOGRAPHIC_WINDOW: GeographicData,
    NodeKind.IMAGE: ImageData,
}


def data_type_for(kind: NodeKind) -> type:
    return _DATA_TYPES[NodeKind(kind)]


@dataclass
class Node:
    """
    A vertex of the network graph.

    Attributes:
        id: Stable identifier, doubles as the persisted record name
        kind: NodeKind of the node
        position: Canvas coordinate (relative to the parent when nested)
        data: Kind-specific payload (BranchData, GroupData, ...)
        parent_id: Owning group, or None for a top-level node
        width / height: Size for groups, geographic windows and images
        selected: Selection state exposed to live queries
        z_index: Explicit render depth; None falls back to NODE_DEPTH
    """
    id: str
    kind: NodeKind
    position: Position = field(default_factory=Position)
    data: NodeData = None
    parent_id: Optional[str] = None
    width: Optional[float] = None
    height: Optional[float] = None
    selected: bool = False
    z_index: Optional[int] = None

    def __post_init__(self):
        self.kind = NodeKind(self.kind)
        expected = data_type_for(self.kind)
        if self.data is None:
            self.data = expected()
        elif not isinstance(self.data, expected):
            raise TypeError(
                f"Node {self.id!r} of kind {self.kind.value} needs {expected.__name__}, "
                f"got {type(self.data).__name__}"
            )
        if not self.id:
            raise ValueError("Node id is required")

    @property
    def is_branch(self) -> bool:
        return self.kind == NodeKind.BRANCH

    @property
    def is_group(self) -> bool:
        return self.kind == NodeKind.GROUP

    @property
    def is_geographic(self) -> bool:
        return self.kind in (NodeKind.GEOGRAPHIC_ANCHOR, NodeKind.GEOGRAPHIC_WINDOW)

    @property
    def label(self) -> str:
        return self.data.label

    @property
    def properties(self) -> Optional[dict]:
        """Extra-property map, or None for kinds that carry none."""
        return getattr(self.data, "properties", None)

    @property
    def blocks(self) -> list[Block]:
        return self.data.blocks if self.is_branch else []

    @property
    def depth(self) -> int:
        if self.z_index is not None:
            return self.z_index
        return NODE_DEPTH.get(self.kind, 0)


@dataclass
class Edge:
    """Directed, weighted connection from one branch to another."""
    source: str
    target: str
    weight: float = 1.0
    id: str = field(default_factory=lambda: f"edge-{_uid()}")

    def __post_init__(self):
        if isinstance(self.weight, bool) or not isinstance(self.weight, (int, float)):
            raise ValueError(f"Edge weight must be a number, got {self.weight!r}")
        if self.weight <= 0:
            raise ValueError(f"Edge weight must be positive, got {self.weight}")


@dataclass
class GlobalDefault:
    """A network-wide property default (the `config` record's properties)."""
    name: str
    value: PropertyValue


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  ADDRESSING: block paths and scope references
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass(frozen=True)
class BlockPath:
    """Address of a block: "<branch_id>/blocks/<index>"."""
    branch_id: str
    index: int

    def __str__(self) -> str:
        return f"{self.branch_id}/blocks/{self.index}"

    @classmethod
    def parse(cls, text: str) -> BlockPath:
        head, sep, tail = text.rpartition("/blocks/")
        if not sep or not head or not tail.isdigit():
            raise ValueError(f"Not a block path: {text!r}")
        return cls(head, int(tail))


@dataclass(frozen=True)
class ScopeRef:
    """A resolution context: a scope level plus the id/path it applies to."""
    scope: Scope
    path: Optional[str] = None

    @classmethod
    def global_(cls) -> ScopeRef:
        return cls(Scope.GLOBAL)

    @classmethod
    def group(cls, group_id: str) -> ScopeRef:
        return cls(Scope.GROUP, group_id)

    @classmethod
    def branch(cls, branch_id: str) -> ScopeRef:
        return cls(Scope.BRANCH, branch_id)

    @classmethod
    def block(cls, branch_id: str, index: int) -> ScopeRef:
        return cls(Scope.BLOCK, str(BlockPath(branch_id, index)))

    @property
    def block_path(self) -> BlockPath:
        return BlockPath.parse(self.path)

    def __str__(self) -> str:
        return self.scope.value if self.path is None else f"{self.scope.value}:{self.path}"


def as_scope_ref(target) -> ScopeRef:
    """Accept a ScopeRef, a BlockPath or a "<branch>/blocks/<i>" string."""
    if isinstance(target, ScopeRef):
        return target
    if isinstance(target, BlockPath):
        return ScopeRef(Scope.BLOCK, str(target))
    if isinstance(target, str):
        return ScopeRef(Scope.BLOCK, str(BlockPath.parse(target)))
    raise TypeError(f"Cannot use {target!r} as a scope target")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  RESOLUTION RESULTS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class ResolvedValue:
    """Effective value of a property plus the scope that supplied it."""
    value: PropertyValue
    scope: Scope
    source_id: Optional[str] = None    # node id, None for global defaults
    path: str = ""                     # target the value was resolved for

    @property
    def kind(self) -> PropertyKind:
        return property_kind(self.value)


@dataclass
class BlockImpact:
    path: BlockPath
    block_type: str
    status: str    # "required", "optional" or "unknown"


@dataclass
class PropertyAggregate:
    """
    What an outer-scope edit of one property would touch.

    affected_block_types lists types in first-seen walk order; a property is
    universally required only when every type referencing it requires it.
    """
    property: str
    affected_block_types: list[str] = field(default_factory=list)
    required_in_block_types: list[str] = field(default_factory=list)
    affected_block_paths: list[BlockPath] = field(default_factory=list)
    unknown_block_paths: list[BlockPath] = field(default_factory=list)
    impacts: list[BlockImpact] = field(default_factory=list)

    @property
    def universally_required(self) -> bool:
        return bool(self.affected_block_types) and \
            len(self.required_in_block_types) == len(self.affected_block_types)

    def summary(self) -> str:
        return (f"{self.property}: affects {len(self.affected_block_paths)} blocks across "
                f"{len(self.affected_block_types)} types, required in "
                f"{len(self.required_in_block_types)} of them")

    def to_dict(self) -> dict:
        return {
            "property": self.property,
            "affectedBlockTypes": list(self.affected_block_types),
            "requiredInBlockTypes": list(self.required_in_block_types),
            "affectedBlockPaths": [str(p) for p in self.affected_block_paths],
            "unknownBlockPaths": [str(p) for p in self.unknown_block_paths],
            "universallyRequired": self.universally_required,
        }


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  STORAGE FORM: plain dicts for the collection store backends
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

def node_to_dict(node: Node) -> dict:
    data = asdict(node)
    data["kind"] = node.kind.value
    return data


def node_from_dict(data: dict) -> Node:
    kind = NodeKind(data["kind"])
    payload = dict(data.get("data") or {})
    if kind == NodeKind.BRANCH:
        payload["blocks"] = [Block(**b) for b in payload.get("blocks", [])]
    position = data.get("position") or {}
    return Node(
        id=data["id"], kind=kind,
        position=Position(position.get("x", 0.0), position.get("y", 0.0)),
        data=data_type_for(kind)(**payload),
        parent_id=data.get("parent_id"),
        width=data.get("width"), height=data.get("height"),
        selected=data.get("selected", False),
        z_index=data.get("z_index"),
    )


def edge_to_dict(edge: Edge) -> dict:
    return asdict(edge)


def edge_from_dict(data: dict) -> Edge:
    return Edge(**data)


def default_to_dict(default: GlobalDefault) -> dict:
    return asdict(default)


def default_from_dict(data: dict) -> GlobalDefault:
    return GlobalDefault(**data)
