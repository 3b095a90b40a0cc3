"""
Query path addressing for downstream operations and the UI.

Examples:
  branch-1                                  → the node
  branch-1/blocks                           → every block of branch-1
  branch-1/blocks[type=Compressor]          → only compressors
  branch-2/blocks[type=Compressor]/0/pressure
                                            → resolved pressure of the first compressor
  branch-3/blocks/1:2[quantity>=2]          → 2nd and 3rd block if quantity >= 2
  branch-1/ambientTemperature               → branch-level resolved value
  edges[target=branch-2]                    → edges into branch-2
  nodes[type=labeledGroup]                  → every group

Ranges are inclusive. Filters support =, !=, >, >=, <, <= and compare
numerically when the field holds a number. Indexes after a filter count
within the filtered list; every block match still reports its original
"<branch>/blocks/<index>" path. A "data" segment after the node id is
accepted and ignored, and a "?..." suffix (unit overrides for the
formatter) is stripped.
"""

from __future__ import annotations
import operator
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from network_graph.errors import QueryError
from network_graph.ontology import Block, BlockPath, Edge, Node, ResolvedValue, Scope, ScopeRef
from .resolver import ScopeResolver

_SEGMENT_RE = re.compile(r"^([^\[\]]*)((?:\[[^\[\]]*\])*)$")
_FILTER_RE = re.compile(r"^\s*([A-Za-z_][\w.\-]*)\s*(>=|<=|!=|=|>|<)\s*(.*?)\s*$")
_RANGE_RE = re.compile(r"^(\d*):(\d*)$")

_OPS = {
    "=": operator.eq, "!=": operator.ne,
    ">": operator.gt, ">=": operator.ge,
    "<": operator.lt, "<=": operator.le,
}


@dataclass
class Filter:
    key: str
    op: str
    value: str

    def matches(self, actual: Any) -> bool:
        if actual is None:
            return self.op == "!="
        if isinstance(actual, (int, float)) and not isinstance(actual, bool):
            try:
                expected = float(self.value)
            except ValueError:
                return self.op == "!="
            return _OPS[self.op](actual, expected)
        if isinstance(actual, bool):
            actual = "true" if actual else "false"
        if self.op not in ("=", "!="):
            return False
        return _OPS[self.op](str(actual), self.value)


@dataclass
class Segment:
    name: str
    filters: list[Filter] = field(default_factory=list)


@dataclass
class QueryMatch:
    """A block selected by a query, with its stable address."""
    path: BlockPath
    block: Block

    def to_dict(self) -> dict:
        return {"path": str(self.path), "type": self.block.type,
                "quantity": self.block.quantity, **self.block.properties}


def parse_query(text: str) -> list[Segment]:
    """Split a query path into segments with their filters."""
    base = text.split("?", 1)[0].strip().strip("/")
    if not base:
        raise QueryError("Empty query")
    segments = []
    for raw in base.split("/"):
        match = _SEGMENT_RE.match(raw.strip())
        if not match or not match.group(1):
            raise QueryError(f"Malformed segment {raw!r} in {text!r}")
        filters = []
        for body in re.findall(r"\[([^\[\]]*)\]", match.group(2)):
            fm = _FILTER_RE.match(body)
            if not fm:
                raise QueryError(f"Malformed filter [{body}] in {text!r}")
            filters.append(Filter(*fm.groups()))
        segments.append(Segment(match.group(1), filters))
    return segments


class NetworkQuery:
    """Evaluates query paths against a graph through its resolver."""

    def __init__(self, resolver: ScopeResolver):
        self.resolver = resolver
        self.graph = resolver.graph

    def run(self, query: str):
        segments = parse_query(query)
        head, rest = segments[0], segments[1:]

        if head.name == "edges":
            self._expect_end(rest, query)
            return [e for e in self.graph.all_edges()
                    if all(f.matches(_edge_field(e, f.key)) for f in head.filters)]
        if head.name == "nodes":
            self._expect_end(rest, query)
            return [n for n in self.graph.ordered_nodes()
                    if all(f.matches(_node_field(n, f.key)) for f in head.filters)]

        node = self.graph.get_node(head.name)
        if node is None:
            raise QueryError(f"No node {head.name!r}")
        if head.filters:
            raise QueryError(f"Filters are not allowed on a node id: {query!r}")
        if rest and rest[0].name == "data" and not rest[0].filters:
            rest = rest[1:]
        if not rest:
            return node

        segment = rest[0]
        if segment.name == "blocks":
            if not node.is_branch:
                raise QueryError(f"{node.id!r} is a {node.kind.value} and has no blocks")
            return self._blocks(node, segment.filters, rest[1:], query)
        if segment.filters or len(rest) > 1:
            raise QueryError(f"Unsupported path below {node.id!r}: {query!r}")
        return self._node_property(node, segment.name)

    # ── Blocks ───────────────────────────────────────

    def _blocks(self, branch: Node, filters: list[Filter], rest: list[Segment], query: str):
        matches = [QueryMatch(BlockPath(branch.id, i), b) for i, b in enumerate(branch.data.blocks)]
        matches = self._filter(matches, filters)
        if not rest:
            return matches

        selector = rest[0]
        single, matches = self._select(matches, selector.name, query)
        matches = self._filter(matches, selector.filters)
        rest = rest[1:]
        if not rest:
            if single:
                return matches[0] if matches else None
            return matches

        self._expect_end(rest[1:], query)
        if rest[0].filters:
            raise QueryError(f"Filters are not allowed on a property: {query!r}")
        prop = rest[0].name
        if single:
            return self._block_property(matches[0], prop) if matches else None
        return {str(m.path): self._block_property(m, prop) for m in matches}

    def _select(self, matches: list[QueryMatch], token: str, query: str) -> tuple[bool, list[QueryMatch]]:
        if token.isdigit():
            index = int(token)
            return True, matches[index:index + 1]
        rng = _RANGE_RE.match(token)
        if rng and token != ":":
            start = int(rng.group(1)) if rng.group(1) else 0
            end = int(rng.group(2)) if rng.group(2) else len(matches) - 1
            return False, matches[start:end + 1]
        raise QueryError(f"Expected a block index or range, got {token!r} in {query!r}")

    def _filter(self, matches: list[QueryMatch], filters: list[Filter]) -> list[QueryMatch]:
        return [m for m in matches if all(f.matches(self._block_field(m, f.key)) for f in filters)]

    def _block_field(self, match: QueryMatch, key: str):
        if key == "type":
            return match.block.type
        if key == "quantity":
            return match.block.quantity
        resolved = self.resolver.resolve(key, match.path)
        return resolved.value if resolved else None

    def _block_property(self, match: QueryMatch, prop: str) -> Optional[ResolvedValue]:
        if prop in ("type", "quantity"):
            return ResolvedValue(getattr(match.block, prop), Scope.BLOCK,
                                 match.path.branch_id, str(match.path))
        return self.resolver.resolve(prop, match.path)

    # ── Node level ───────────────────────────────────

    def _node_property(self, node: Node, prop: str):
        if prop == "label":
            return node.label
        if node.is_branch:
            return self.resolver.resolve(prop, ScopeRef.branch(node.id))
        if node.is_group:
            return self.resolver.resolve(prop, ScopeRef.group(node.id))
        # backgrounds take no part in resolution; return their raw value
        return (node.properties or {}).get(prop)

    @staticmethod
    def _expect_end(rest: list[Segment], query: str) -> None:
        if rest:
            raise QueryError(f"Unexpected segment {rest[0].name!r} in {query!r}")


def _edge_field(edge: Edge, key: str):
    return {"id": edge.id, "source": edge.source, "target": edge.target,
            "weight": edge.weight}.get(key)


def _node_field(node: Node, key: str):
    if key in ("type", "kind"):
        return node.kind.value
    if key in ("parentId", "parent_id"):
        return node.parent_id
    if key == "id":
        return node.id
    if key == "label":
        return node.label
    if key == "selected":
        return node.selected
    return (node.properties or {}).get(key)
