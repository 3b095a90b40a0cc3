"""
Parent-before-child ordering for single-pass consumers.

Renderers and exporters walk nodes once and need a parent's transform and
state settled before any of its children. `topological_order` guarantees
that, keeps input order among siblings, and terminates on a corrupt parent
cycle by treating the cycle's first-seen node as parentless.
"""

from __future__ import annotations
import warnings
from typing import Iterable
from loguru import logger

from .errors import CycleDetected
from .ontology import Node


def node_depth(node: Node) -> int:
    """Render layer of a node (lower is drawn first)."""
    return node.depth


def topological_order(nodes: Iterable[Node], by_depth: bool = False) -> list[Node]:
    """
    Return the nodes with every node after its parent.

    A parent that is not part of the input imposes no constraint. With
    `by_depth`, render depth is applied as a stable secondary key: nodes are
    pre-sorted by layer and the parent constraint is enforced on top of that.

    Emits a CycleDetected warning per parent cycle found.
    """
    ordered_input = list(nodes)
    if by_depth:
        ordered_input = sorted(ordered_input, key=node_depth)

    by_id: dict[str, Node] = {}
    rank: dict[str, int] = {}
    for i, node in enumerate(ordered_input):
        if node.id not in by_id:
            by_id[node.id] = node
            rank[node.id] = i

    placed: set[str] = set()
    broken: set[str] = set()
    result: list[Node] = []

    for node in ordered_input:
        chain: list[Node] = []
        on_chain: dict[str, int] = {}
        current = node
        while current is not None and current.id not in placed:
            if current.id in on_chain:
                cycle = chain[on_chain[current.id]:]
                root = min(cycle, key=lambda n: rank[n.id])
                broken.add(root.id)
                _report_cycle(cycle, root)
                chain = chain[:on_chain[root.id] + 1]
                break
            on_chain[current.id] = len(chain)
            chain.append(current)
            if current.id in broken or not current.parent_id:
                break
            current = by_id.get(current.parent_id)

        for member in reversed(chain):
            if member.id not in placed:
                placed.add(member.id)
                result.append(member)

    return result


def find_parent_cycles(nodes: Iterable[Node]) -> list[list[str]]:
    """Diagnostic: every parent cycle as a list of node ids."""
    by_id = {n.id: n for n in nodes}
    cycles: list[list[str]] = []
    settled: set[str] = set()
    for start in by_id:
        path: list[str] = []
        index: dict[str, int] = {}
        current = start
        while current in by_id and current not in settled:
            if current in index:
                cycles.append(path[index[current]:])
                break
            index[current] = len(path)
            path.append(current)
            current = by_id[current].parent_id
        settled.update(path)
    return cycles


def _report_cycle(cycle: list[Node], root: Node) -> None:
    ids = [n.id for n in cycle]
    logger.warning(f"Parent cycle {' -> '.join(ids)}; treating {root.id!r} as top level")
    warnings.warn(CycleDetected(ids), stacklevel=3)
